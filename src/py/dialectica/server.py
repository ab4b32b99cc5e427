import asyncio
import socket
import threading
from dataclasses import dataclass
from signal import SIGINT, SIGTERM
from typing import Any, BinaryIO, Callable, NamedTuple

from mypy_extensions import i64

from .config import ServerConfig
from .http.model import (
	HTTPBodyFile,
	HTTPBodyWriter,
	HTTPProcessingStatus,
	HTTPRequest,
	HTTPResponse,
)
from .http.parser import HTTPParser
from .model import Application, Service, mount
from .services.files import StaticFileService
from .utils.limits import LimitType, unlimit
from .utils.logging import debug, error, event, exception, info, logged, warning


@dataclass(slots=True)
class ServerState:
	isRunning: bool = True

	def stop(self) -> None:
		info("Server stopping…")
		self.isRunning = False

	def onException(
		self, loop: asyncio.AbstractEventLoop, context: dict[str, Any]
	) -> None:
		e = context.get("exception")
		if e:
			exception(e)


class ServerOptions(NamedTuple):
	host: str = "127.0.0.1"
	port: int = 8000
	backlog: int = 1_024
	# Time allowed to receive the rest of a request that has started
	timeout: float = 10.0
	# This is the polling timeout for accepting new requests. Every second is
	# good
	polling: float = 1.0
	readsize: int = 4_096
	# Idle time after which a kept-alive connection is closed, this needs to
	# be longer than the keepalive timeout of the reverse proxy upstream.
	keepalive: float = 75.0
	logRequests: bool = True
	condition: Callable[[], bool] | None = None
	stopSignals: bool = True

	@staticmethod
	def FromConfig(config: ServerConfig, **options: Any) -> "ServerOptions":
		return ServerOptions(host=config.host, port=config.port, **options)


OPTIONS: ServerOptions = ServerOptions()

SERVER_BAD_REQUEST: bytes = (
	b"HTTP/1.1 400 Bad Request\r\n"
	b"Content-Type: text/plain\r\n"
	b"Content-Length: 11\r\n"
	b"Connection: close\r\n"
	b"\r\n"
	b"Bad Request"
)

SERVER_UNSUPPORTED: bytes = (
	b"HTTP/1.1 505 HTTP Version Not Supported\r\n"
	b"Content-Type: text/plain\r\n"
	b"Content-Length: 26\r\n"
	b"Connection: close\r\n"
	b"\r\n"
	b"HTTP Version Not Supported"
)


class AIOSocketBodyWriter(HTTPBodyWriter):
	"""Specialized body writer to work with AIO sockets."""

	__slots__ = ["client", "loop"]

	def __init__(
		self,
		client: "socket.socket",
		loop: asyncio.AbstractEventLoop,
	) -> None:
		super().__init__()
		self.client: socket.socket = client
		self.loop: asyncio.AbstractEventLoop = loop

	async def _writeBytes(self, chunk: bytes) -> bool:
		if chunk:
			await self.loop.sock_sendall(self.client, chunk)
			self.written += len(chunk)
		return True

	async def _writeFile(self, file: BinaryIO, offset: int, count: int) -> int:
		if not count:
			return 0
		sent: int = await self.loop.sock_sendfile(self.client, file, offset, count)
		self.written += sent
		return sent


# NOTE: Based on benchmarks, raw non-blocking sockets gave the best
# performance. TLS is done by the reverse proxy, so we don't need asyncio
# streams.
class AIOSocketServer:
	"""AsyncIO backend using sockets directly."""

	@classmethod
	async def OnRequest(
		cls,
		app: Application,
		client: socket.socket,
		*,
		loop: asyncio.AbstractEventLoop,
		options: ServerOptions,
	) -> None:
		"""Asynchronous worker, processing a connection in the context
		of an application, until the client or the server closes it."""
		size: int = options.readsize
		buffer = bytearray(size)
		keep_alive: bool = True
		status: HTTPProcessingStatus = HTTPProcessingStatus.Processing
		read_count: i64 = 0
		req_count: i64 = 0
		res_count: i64 = 0
		parser: HTTPParser = HTTPParser()
		writer: AIOSocketBodyWriter = AIOSocketBodyWriter(client, loop)
		try:
			# NOTE: The reverse proxy may sustain a single connection and
			# send all the requests through this loop, until there's
			# Connection: close, or the keepalive timeout has expired.
			while keep_alive and not writer.shouldClose:
				try:
					n = await asyncio.wait_for(
						loop.sock_recv_into(client, buffer),
						timeout=options.keepalive if parser.isIdle else options.timeout,
					)
				except asyncio.TimeoutError:
					status = HTTPProcessingStatus.Timeout
					break
				if not n:
					# A no-data means a close
					status = HTTPProcessingStatus.NoData
					break
				read_count += n
				# NOTE: With HTTP Pipelining, we may receive more than one
				# request in the same payload, so we need to be prepared
				# to answer more than one request.
				for atom in parser.feed(bytes(buffer[:n])):
					if atom is HTTPProcessingStatus.BadFormat:
						warning("Malformed request", Client=f"{id(client):x}")
						await writer.write(SERVER_BAD_REQUEST)
						keep_alive = False
					elif atom is HTTPProcessingStatus.Unsupported:
						warning("Unsupported protocol", Client=f"{id(client):x}")
						await writer.write(SERVER_UNSUPPORTED)
						keep_alive = False
					elif isinstance(atom, HTTPRequest):
						req = atom
						req_count += 1
						if options.logRequests:
							event(req.method, req.path)
						if not req.keepAlive:
							keep_alive = False
						await cls.SendResponse(req, app, writer, close=not keep_alive)
						res_count += 1
					if not keep_alive or writer.shouldClose:
						break
			if res_count != req_count:
				warning("Incomplete responses", Requests=req_count, Responses=res_count)
			elif status is HTTPProcessingStatus.NoData and read_count and not parser.isIdle:
				warning(
					"Client did not feed a complete request",
					ReadCount=read_count,
					Requests=req_count,
				)
			elif status is HTTPProcessingStatus.Timeout and not parser.isIdle:
				warning(
					"Client timed out",
					ReadCount=read_count,
					Requests=req_count,
				)
		except (BrokenPipeError, ConnectionResetError):
			# Client did an early close, the file (if any) has been closed
			# already.
			logged(debug) and debug(
				"Client disconnected", Requests=req_count, Written=writer.written
			)
		except Exception as e:
			exception(e)
		finally:
			# NOTE: The above loop takes care of keep alive, so we always close
			# the connection on exit.
			client.close()

	@staticmethod
	async def SendResponse(
		request: HTTPRequest,
		app: Application,
		writer: HTTPBodyWriter,
		*,
		close: bool = False,
	) -> HTTPResponse:
		"""Processes the request within the application and sends a response
		using the given writer. File bodies are opened before the head is
		sent, so that a missing or unreadable file still gets a proper
		status."""
		keep_alive: bool = request.protocol == "HTTP/1.0" and not close
		try:
			res: HTTPResponse = app.process(request)
		except Exception as e:
			exception(e)
			res = request.fail()
		if isinstance(res.body, HTTPBodyFile):
			body: HTTPBodyFile = res.body
			try:
				file = open(body.path, "rb")
			except FileNotFoundError:
				res = request.notFound()
			except OSError as e:
				warning("Could not open file", Path=str(body.path), Reason=str(e))
				res = request.fail()
			else:
				with file:
					await writer.write(AIOSocketServer.Head(res, close, keep_alive))
					if request.method != "HEAD" and not await writer.writeFile(
						file, body
					):
						warning(
							"File is shorter than announced",
							Path=str(body.path),
							Expected=body.length,
						)
				return res
		await writer.write(AIOSocketServer.Head(res, close, keep_alive))
		if request.method != "HEAD":
			await writer.write(res.body)
		return res

	@staticmethod
	def Head(
		response: HTTPResponse, close: bool = False, keepAlive: bool = False
	) -> bytes:
		"""Serializes the response head, announcing the connection's fate
		when it differs from the protocol's default."""
		if close:
			response.setHeader("Connection", "close")
		elif keepAlive:
			# HTTP/1.0 connections close unless told otherwise
			response.setHeader("Connection", "keep-alive")
		return response.head()

	@staticmethod
	def Bind(options: ServerOptions) -> socket.socket:
		"""Binds a listening socket, there's no retry: a failure to bind
		is for the operator to fix."""
		server = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
		server.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
		server.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
		try:
			server.bind((options.host, options.port))
		except OSError as e:
			server.close()
			error(
				f"Unable to bind to {options.host}:{options.port}, aborting.",
				"HOSTPORTERR",
				Reason=str(e),
			)
			raise
		# The argument is the backlog of connections that will be accepted before
		# they are refused.
		server.listen(options.backlog)
		# This is what we need to use it with asyncio
		server.setblocking(False)
		return server

	@classmethod
	async def Serve(
		cls,
		app: Application,
		options: ServerOptions = OPTIONS,
		server: socket.socket | None = None,
	) -> None:
		"""Main server coroutine, serving until stopped by a signal or
		the options' condition."""
		if server is None:
			server = cls.Bind(options)
		host, port = server.getsockname()[:2]
		tasks: set[asyncio.Task[None]] = set()
		loop = asyncio.get_running_loop()

		# Manage server state
		state = ServerState()
		# Registers handlers for signals and exception (so that we log them). Note
		# that we'll get a `set_wakeup_fd only works in main thread of the main interpreter`
		# when this is not run out of the main thread.
		signals: bool = (
			options.stopSignals
			and threading.current_thread() is threading.main_thread()
		)
		if signals:
			loop.add_signal_handler(SIGINT, state.stop)
			loop.add_signal_handler(SIGTERM, state.stop)
		loop.set_exception_handler(state.onException)

		info(
			"Dialectica server listening",
			icon="🚀",
			Host=host,
			Port=port,
		)

		try:
			while state.isRunning:
				if options.condition and not options.condition():
					break
				try:
					client, _ = await asyncio.wait_for(
						loop.sock_accept(server), timeout=options.polling or 1.0
					)
				except asyncio.TimeoutError:
					continue
				except OSError as e:
					# This can be: [OSError] [Errno 24] Too many open files
					if e.errno == 24:
						await asyncio.sleep(0.1)
					else:
						exception(e)
					continue
				task = loop.create_task(
					cls.OnRequest(app, client, loop=loop, options=options)
				)
				tasks.add(task)
				task.add_done_callback(tasks.discard)
		finally:
			server.close()
			if signals:
				loop.remove_signal_handler(SIGINT)
				loop.remove_signal_handler(SIGTERM)
			for task in tasks:
				task.cancel()
			await asyncio.gather(*tasks, return_exceptions=True)


def run(
	*components: Application | Service,
	config: ServerConfig | None = None,
	backlog: int = OPTIONS.backlog,
	condition: Callable[[], bool] | None = None,
	timeout: float = OPTIONS.timeout,
	polling: float = OPTIONS.polling,
	logRequests: bool = OPTIONS.logRequests,
	keepalive: float = OPTIONS.keepalive,
) -> None:
	"""High level function to run the server, serving the configured root
	when no component is given. Raises `OSError` when the server can't
	bind its address."""
	config = config or ServerConfig.Default()
	unlimit(LimitType.Files)
	options = ServerOptions.FromConfig(
		config,
		backlog=backlog,
		condition=condition,
		timeout=timeout,
		polling=polling,
		logRequests=logRequests,
		keepalive=keepalive,
	)
	app = mount(*components) if components else mount(StaticFileService(config))
	try:
		asyncio.run(AIOSocketServer.Serve(app, options))
	except KeyboardInterrupt:
		event("ManualShutdown")
	event("EOK")


# EOF
