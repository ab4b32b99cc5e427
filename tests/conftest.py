from pathlib import Path
from typing import Callable

import pytest

from dialectica.config import ServerConfig
from dialectica.http.model import HTTPBodyBlob, HTTPBodyFile, HTTPRequest, HTTPResponse
from dialectica.http.parser import HTTPParser
from dialectica.model import Application, mount
from dialectica.services.files import StaticFileService
from dialectica.utils.logging import LogLevel, setLogLevel


@pytest.fixture(autouse=True)
def quiet():
	previous = setLogLevel(LogLevel.Warning)
	yield
	setLogLevel(previous)


@pytest.fixture
def site(tmp_path: Path) -> Path:
	"""A deployed bundle, with a secret file next to (not within) it."""
	root = tmp_path / "site"
	root.mkdir()
	(root / "index.html").write_text("<h1>Home</h1>")
	(root / "style.css").write_text("body{}")
	(root / "main.js").write_text("console.log(1)")
	(root / "data.bin").write_bytes(bytes(range(256)))
	(root / "LICENSE").write_text("MIT")
	(root / ".env").write_text("SECRET=1")
	(root / "app").mkdir()
	(root / "app" / "index.html").write_text("<app/>")
	(root / "empty").mkdir()
	(tmp_path / "secret.txt").write_text("top secret")
	return root


@pytest.fixture
def config(site: Path) -> ServerConfig:
	return ServerConfig.Make(site, port=0)


@pytest.fixture
def app(config: ServerConfig) -> Application:
	return mount(StaticFileService(config))


def parseRequest(payload: bytes) -> HTTPRequest:
	requests = [_ for _ in HTTPParser().feed(payload) if isinstance(_, HTTPRequest)]
	assert len(requests) == 1, f"Expected one request in {payload!r}"
	return requests[0]


def content(response: HTTPResponse) -> bytes:
	"""Returns the bytes that the response body stands for."""
	body = response.body
	if isinstance(body, HTTPBodyFile):
		with open(body.path, "rb") as f:
			f.seek(body.offset)
			return f.read(body.length)
	elif isinstance(body, HTTPBodyBlob):
		return body.payload
	else:
		return b""


@pytest.fixture
def get(app: Application) -> Callable[..., HTTPResponse]:
	"""Processes a request for `path` through the application, without
	going through a socket."""

	def get(
		path: str, method: str = "GET", headers: dict[str, str] | None = None
	) -> HTTPResponse:
		lines = [f"{method} {path} HTTP/1.1", "Host: localhost"]
		lines += [f"{k}: {v}" for k, v in (headers or {}).items()]
		payload = ("\r\n".join(lines) + "\r\n\r\n").encode("ascii")
		return app.process(parseRequest(payload))

	return get


# EOF
