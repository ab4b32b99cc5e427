import asyncio
import contextlib
import socket
from pathlib import Path
from typing import AsyncIterator, NamedTuple

import pytest

from conftest import parseRequest
from dialectica import server as server_module
from dialectica.__main__ import main
from dialectica.config import ServerConfig
from dialectica.decorators import on
from dialectica.http.model import HTTPBodyWriter, HTTPRequest, HTTPResponse
from dialectica.model import Application, Service, mount
from dialectica.server import AIOSocketServer, ServerOptions


class Response(NamedTuple):
	status: int
	headers: dict[str, str]
	body: bytes


@contextlib.asynccontextmanager
async def serving(app: Application) -> AsyncIterator[int]:
	"""Runs the server on an ephemeral port for the duration of the block."""
	running: list[bool] = [True]
	options = ServerOptions(
		host="127.0.0.1",
		port=0,
		polling=0.05,
		timeout=1.0,
		keepalive=2.0,
		logRequests=False,
		stopSignals=False,
		condition=lambda: running[0],
	)
	server = AIOSocketServer.Bind(options)
	task = asyncio.create_task(AIOSocketServer.Serve(app, options, server))
	try:
		yield server.getsockname()[1]
	finally:
		running[0] = False
		await asyncio.wait_for(task, timeout=5)


async def exchange(port: int, payload: bytes) -> bytes:
	"""Sends the payload and reads until the server closes the connection."""
	reader, writer = await asyncio.open_connection("127.0.0.1", port)
	try:
		writer.write(payload)
		await writer.drain()
		return await asyncio.wait_for(reader.read(), timeout=5)
	finally:
		writer.close()


def responses(data: bytes, head: bool = False) -> list[Response]:
	"""Splits the data into the responses it contains."""
	res: list[Response] = []
	while data:
		raw_head, data = data.split(b"\r\n\r\n", 1)
		lines = raw_head.decode("ascii").split("\r\n")
		headers = dict(_.split(": ", 1) for _ in lines[1:])
		length = 0 if head else int(headers.get("Content-Length", "0"))
		res.append(Response(int(lines[0].split(" ")[1]), headers, data[:length]))
		data = data[length:]
	return res


async def fetch(port: int, path: str, method: str = "GET", **headers: str) -> Response:
	lines = [f"{method} {path} HTTP/1.1", "Host: localhost", "Connection: close"]
	lines += [f"{k.replace('_', '-')}: {v}" for k, v in headers.items()]
	data = await exchange(port, ("\r\n".join(lines) + "\r\n\r\n").encode())
	(res,) = responses(data, head=method == "HEAD")
	return res


@pytest.mark.asyncio
async def test_scenarios(app: Application):
	async with serving(app) as port:
		res = await fetch(port, "/")
		assert (res.status, res.body) == (200, b"<h1>Home</h1>")
		res = await fetch(port, "/style.css")
		assert (res.status, res.body) == (200, b"body{}")
		assert res.headers["Content-Type"] == "text/css"
		assert res.headers["Connection"] == "close"
		assert (await fetch(port, "/missing.js")).status == 404
		res = await fetch(port, "/../../../etc/hosts")
		assert res.status == 404
		assert b"localhost" not in res.body
		res = await fetch(port, "/app/")
		assert (res.status, res.body) == (200, b"<app/>")


@pytest.mark.asyncio
async def test_head_and_methods(app: Application):
	async with serving(app) as port:
		res = await fetch(port, "/style.css", "HEAD")
		assert res.status == 200
		assert res.headers["Content-Length"] == "6"
		assert res.body == b""
		res = await fetch(port, "/style.css", "POST")
		assert res.status == 405
		assert res.headers["Allow"] == "GET, HEAD"


@pytest.mark.asyncio
async def test_range(app: Application):
	async with serving(app) as port:
		res = await fetch(port, "/data.bin", Range="bytes=100-149")
		assert res.status == 206
		assert res.body == bytes(range(100, 150))


@pytest.mark.asyncio
async def test_keep_alive(app: Application):
	async with serving(app) as port:
		data = await exchange(
			port,
			b"GET /style.css HTTP/1.1\r\nHost: x\r\n\r\n"
			b"GET /main.js HTTP/1.1\r\nHost: x\r\n\r\n"
			b"GET / HTTP/1.1\r\nHost: x\r\nConnection: close\r\n\r\n",
		)
		assert [_.body for _ in responses(data)] == [
			b"body{}",
			b"console.log(1)",
			b"<h1>Home</h1>",
		]


@pytest.mark.asyncio
async def test_http10_closes(app: Application):
	async with serving(app) as port:
		data = await exchange(port, b"GET /style.css HTTP/1.0\r\n\r\n")
		(res,) = responses(data)
		assert data.startswith(b"HTTP/1.0 200 OK\r\n")
		assert res.body == b"body{}"


@pytest.mark.asyncio
async def test_malformed_requests(app: Application):
	async with serving(app) as port:
		data = await exchange(port, b"NOT HTTP AT ALL\r\n\r\n")
		assert data.startswith(b"HTTP/1.1 400 Bad Request\r\n")
		data = await exchange(port, b"GET / HTTP/2.0\r\n\r\n")
		assert data.startswith(b"HTTP/1.1 505 ")
		# The server is still there
		assert (await fetch(port, "/")).status == 200


@pytest.mark.asyncio
async def test_concurrent_requests(site: Path, app: Application):
	files = {f"/file{i}.txt": bytes([65 + i]) * (10_000 * (i + 1)) for i in range(16)}
	for name, data in files.items():
		(site / name[1:]).write_bytes(data)
	async with serving(app) as port:
		results = await asyncio.gather(*(fetch(port, _) for _ in files))
	for (name, data), res in zip(files.items(), results):
		assert res.status == 200, name
		assert res.body == data, name


@pytest.mark.asyncio
async def test_client_disconnect(site: Path, app: Application):
	(site / "large.bin").write_bytes(b"x" * 8_000_000)
	async with serving(app) as port:
		reader, writer = await asyncio.open_connection("127.0.0.1", port)
		writer.write(b"GET /large.bin HTTP/1.1\r\nHost: x\r\n\r\n")
		await writer.drain()
		assert (await reader.read(1024)).startswith(b"HTTP/1.1 200 OK")
		writer.transport.abort()
		# Other clients are not affected
		res = await fetch(port, "/style.css")
		assert res.body == b"body{}"


def test_bind_failure():
	with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as blocker:
		blocker.bind(("127.0.0.1", 0))
		blocker.listen(1)
		port = blocker.getsockname()[1]
		with pytest.raises(OSError):
			AIOSocketServer.Bind(ServerOptions(host="127.0.0.1", port=port))


def test_main_exits_on_bind_failure(site: Path, monkeypatch: pytest.MonkeyPatch):
	with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as blocker:
		blocker.bind(("127.0.0.1", 0))
		blocker.listen(1)
		config = ServerConfig.Make(site, port=blocker.getsockname()[1])
		monkeypatch.setattr(ServerConfig, "Default", staticmethod(lambda: config))
		assert main() == 1



class BufferWriter(HTTPBodyWriter):
	"""Collects what the server writes, in place of a socket."""

	def __init__(self) -> None:
		super().__init__()
		self.data = bytearray()

	async def _writeBytes(self, chunk: bytes) -> bool:
		self.data += chunk
		self.written += len(chunk)
		return True


class Vanishing(Service):
	"""Removes the file once the response points to it, like a deployment
	replacing the bundle while a request is processed."""

	def __init__(self, path: Path) -> None:
		super().__init__()
		self.path = path

	@on(GET="/")
	def read(self, request: HTTPRequest, path: str) -> HTTPResponse:
		res = request.respondFile(self.path)
		self.path.unlink()
		return res


@pytest.mark.asyncio
async def test_send_vanished_file(site: Path):
	writer = BufferWriter()
	req = parseRequest(b"GET /style.css HTTP/1.1\r\n\r\n")
	res = await AIOSocketServer.SendResponse(
		req, mount(Vanishing(site / "style.css")), writer
	)
	assert res.status == 404
	assert bytes(writer.data).startswith(b"HTTP/1.1 404 Not Found\r\n")
	assert bytes(writer.data).endswith(b"\r\n\r\nNot Found")


@pytest.mark.asyncio
async def test_send_unreadable_file(app: Application, monkeypatch: pytest.MonkeyPatch):
	def denied(*args, **kwargs):
		raise PermissionError(13, "Permission denied")

	# Denies access regardless of the user running the tests
	monkeypatch.setattr(server_module, "open", denied, raising=False)
	writer = BufferWriter()
	req = parseRequest(b"GET /style.css HTTP/1.1\r\n\r\n")
	res = await AIOSocketServer.SendResponse(req, app, writer)
	assert res.status == 500
	data = bytes(writer.data)
	assert data.startswith(b"HTTP/1.1 500 Internal Server Error\r\n")
	assert b"body{}" not in data


@pytest.mark.asyncio
async def test_send_file(app: Application):
	writer = BufferWriter()
	req = parseRequest(b"GET /style.css HTTP/1.1\r\n\r\n")
	res = await AIOSocketServer.SendResponse(req, app, writer)
	assert res.status == 200
	assert bytes(writer.data).endswith(b"\r\n\r\nbody{}")
	assert b"Connection:" not in bytes(writer.data)


@pytest.mark.asyncio
async def test_send_http10_keep_alive(app: Application):
	req = parseRequest(b"GET /style.css HTTP/1.0\r\nConnection: keep-alive\r\n\r\n")
	writer = BufferWriter()
	await AIOSocketServer.SendResponse(req, app, writer)
	assert b"\r\nConnection: keep-alive\r\n" in bytes(writer.data)
	writer = BufferWriter()
	await AIOSocketServer.SendResponse(req, app, writer, close=True)
	assert b"\r\nConnection: close\r\n" in bytes(writer.data)


@pytest.mark.asyncio
async def test_http10_keep_alive(app: Application):
	async with serving(app) as port:
		data = await exchange(
			port,
			b"GET /style.css HTTP/1.0\r\nConnection: keep-alive\r\n\r\n"
			b"GET / HTTP/1.0\r\n\r\n",
		)
	first, last = responses(data)
	assert first.headers["Connection"] == "keep-alive"
	assert first.body == b"body{}"
	assert last.headers["Connection"] == "close"
	assert last.body == b"<h1>Home</h1>"


# EOF
