from abc import ABC, abstractmethod
from enum import Enum
from pathlib import Path
from typing import Any, BinaryIO, NamedTuple, TypeAlias

from mypy_extensions import i64

from ..utils.files import contentType as getContentType
from ..utils.io import DEFAULT_ENCODING
from .api import ResponseFactory
from .status import HTTP_STATUS

# -----------------------------------------------------------------------------
#
# HELPERS
#
# -----------------------------------------------------------------------------


# Normalized names of the headers we expect, indexed by their lowercase
# form. Other names are normalized on each call, so that clients can't
# grow the table.
HEADER_NAMES: dict[str, str] = {
	_.lower(): _
	for _ in (
		"Accept",
		"Accept-Encoding",
		"Accept-Language",
		"Accept-Ranges",
		"Allow",
		"Cache-Control",
		"Connection",
		"Content-Length",
		"Content-Range",
		"Content-Type",
		"Cookie",
		"Host",
		"If-Modified-Since",
		"If-None-Match",
		"Range",
		"Referer",
		"Transfer-Encoding",
		"Upgrade",
		"User-Agent",
		"X-Forwarded-For",
		"X-Forwarded-Proto",
		"X-Real-Ip",
	)
}


def headername(name: str) -> str:
	"""Normalizes the header name as `Kebab-Case`."""
	known: str | None = HEADER_NAMES.get(name.lower())
	if known is not None:
		return known
	else:
		return "-".join(_.capitalize() for _ in name.split("-"))


# -----------------------------------------------------------------------------
#
# DATA MODEL
#
# -----------------------------------------------------------------------------


class HTTPRequestLine(NamedTuple):
	"""Represents a request status line"""

	method: str
	path: str
	query: str
	protocol: str


class HTTPHeaders(NamedTuple):
	"""Wraps HTTP headers, keeping key information for response/request processing."""

	headers: dict[str, str]
	contentType: str | None = None
	contentLength: int | None = None


class HTTPProcessingStatus(Enum):
	"""Internal parser/processor state management"""

	Processing = 0
	Timeout = 10
	NoData = 11
	BadFormat = 12
	Unsupported = 13


# -----------------------------------------------------------------------------
#
# ERRORS
#
# -----------------------------------------------------------------------------


class HTTPRequestError(Exception):
	"""To be raised by handlers to generate an error response, 500 by default."""

	def __init__(
		self,
		message: str,
		status: int | None = None,
		contentType: str | None = None,
	):
		super().__init__(message)
		self.message: str = message
		self.status: int | None = status
		self.contentType: str | None = contentType


# -----------------------------------------------------------------------------
#
# BODY
#
# -----------------------------------------------------------------------------


class HTTPBodyBlob(NamedTuple):
	"""Represents a body as bytes."""

	payload: bytes = b""
	length: int = 0

	@staticmethod
	def FromBytes(data: bytes) -> "HTTPBodyBlob":
		return HTTPBodyBlob(payload=data, length=len(data))


class HTTPBodyFile(NamedTuple):
	"""Represents an HTTP body read from `length` bytes of the file at
	`path`, starting at `offset`."""

	path: Path
	offset: int = 0
	length: int = 0


# The different types of bodies that are managed
THTTPBody: TypeAlias = HTTPBodyBlob | HTTPBodyFile


class HTTPBodyWriter(ABC):
	"""A generic writer for response heads and bodies."""

	__slots__ = ["shouldClose", "written"]

	def __init__(self) -> None:
		self.shouldClose: bool = False
		self.written: i64 = 0

	async def write(self, body: THTTPBody | bytes | None) -> bool:
		"""Writes the given type of body. File bodies need to be written
		with `writeFile`, as the file needs to be opened by the caller."""
		if isinstance(body, bytes):
			return await self._writeBytes(body)
		elif isinstance(body, HTTPBodyBlob):
			return await self._writeBytes(body.payload)
		elif body is None:
			return True
		else:
			raise ValueError(f"Unsupported body format: {body}")

	async def writeFile(self, file: BinaryIO, body: HTTPBodyFile) -> bool:
		"""Writes the range of the open `file` described by `body`, returns
		`False` when the file ended before the expected length."""
		sent = await self._writeFile(file, body.offset, body.length)
		if sent < body.length:
			# The client was promised more bytes, the only way to
			# notify it is to close the connection.
			self.shouldClose = True
			return False
		return True

	async def _writeFile(self, file: BinaryIO, offset: int, count: int) -> int:
		file.seek(offset)
		left: int = count
		while left > 0:
			chunk = file.read(min(64_000, left))
			if not chunk:
				break
			await self._writeBytes(chunk)
			left -= len(chunk)
		return count - left

	@abstractmethod
	async def _writeBytes(self, chunk: bytes) -> bool: ...


# -----------------------------------------------------------------------------
#
# REQUESTS
#
# -----------------------------------------------------------------------------


class HTTPRequest(ResponseFactory["HTTPResponse"]):
	"""Represents an HTTP requests, which also acts as a factory for
	responses."""

	__slots__ = [
		"protocol",
		"method",
		"path",
		"query",
		"_headers",
	]

	def __init__(
		self,
		method: str,
		path: str,
		query: str | None,
		headers: HTTPHeaders,
		protocol: str = "HTTP/1.1",
	):
		super().__init__()
		self.method: str = method
		self.path: str = path
		self.query: str | None = query
		self.protocol: str = protocol
		self._headers: HTTPHeaders = headers

	@property
	def headers(self) -> dict[str, str]:
		return self._headers.headers

	def header(self, name: str) -> str | None:
		return self._headers.headers.get(headername(name))

	@property
	def contentLength(self) -> int | None:
		return self._headers.contentLength

	@property
	def keepAlive(self) -> bool:
		"""Tells if the connection can be reused after this request."""
		connection: str = (self.header("Connection") or "").lower()
		if self.protocol == "HTTP/1.0":
			return connection == "keep-alive"
		else:
			return connection != "close"

	def respond(
		self,
		content: Any = None,
		contentType: str | None = None,
		contentLength: int | None = None,
		status: int = 200,
		headers: dict[str, str] | None = None,
		message: str | None = None,
	) -> "HTTPResponse":
		return HTTPResponse.Create(
			status=status,
			message=message,
			content=content,
			contentType=contentType,
			contentLength=contentLength,
			protocol=self.protocol,
			headers=headers,
		)

	def respondFile(
		self,
		path: Path,
		headers: dict[str, str] | None = None,
		status: int = 200,
		contentType: str | None = None,
		*,
		offset: int = 0,
		length: int | None = None,
	) -> "HTTPResponse":
		"""Responds with the contents of the file at `path`, or the `length`
		bytes starting at `offset`. Raises `OSError` if the file
		can't be accessed."""
		size: int = path.stat().st_size
		body = HTTPBodyFile(path, offset, size - offset if length is None else length)
		return self.respond(
			content=body,
			contentType=contentType or getContentType(path),
			status=status,
			headers=headers,
		)

	def __str__(self) -> str:
		return f"Request({self.method} {self.path}{f'?{self.query}' if self.query else ''} {self.headers})"


# -----------------------------------------------------------------------------
#
# RESPONSE
#
# -----------------------------------------------------------------------------


class HTTPResponse:
	"""An HTTP response."""

	@staticmethod
	def Create(
		content: Any = None,
		contentType: str | None = None,
		contentLength: int | None = None,
		headers: dict[str, str] | None = None,
		status: int = 200,
		message: str | None = None,
		protocol: str = "HTTP/1.1",
	) -> "HTTPResponse":
		"""Factory method to create HTTP response objects."""
		body: THTTPBody | None = None
		if content is None:
			pass
		elif isinstance(content, str):
			body = HTTPBodyBlob.FromBytes(content.encode(DEFAULT_ENCODING))
		elif isinstance(content, bytes):
			body = HTTPBodyBlob.FromBytes(content)
		elif isinstance(content, HTTPBodyFile):
			body = content
		else:
			raise ValueError(f"Unsupported content {type(content)}:{content}")
		if body is not None:
			contentLength = body.length
		updated_headers: dict[str, str] = {}
		if contentType is not None:
			updated_headers["Content-Type"] = contentType
		# Responses without a body still need an explicit length to
		# keep the connection usable.
		updated_headers["Content-Length"] = str(contentLength or 0)
		# The response is ready to be packaged
		return HTTPResponse(
			status=status,
			message=message or HTTP_STATUS.get(status, "Unknown status"),
			headers=HTTPHeaders(
				(headers | updated_headers) if headers else updated_headers,
				contentType=contentType,
				contentLength=contentLength or 0,
			),
			body=body,
			protocol=protocol,
		)

	__slots__ = [
		"protocol",
		"status",
		"message",
		"headers",
		"body",
	]

	def __init__(
		self,
		protocol: str,
		status: int,
		message: str | None,
		headers: HTTPHeaders,
		body: THTTPBody | None = None,
	):
		self.protocol: str = protocol
		self.status: int = status
		self.message: str | None = message
		self.headers: HTTPHeaders = headers
		self.body: THTTPBody | None = body

	def getHeader(self, name: str) -> str | None:
		return self.headers.headers.get(headername(name))

	def setHeader(self, name: str, value: str | int | None) -> "HTTPResponse":
		if value is None:
			self.headers.headers.pop(headername(name), None)
		else:
			self.headers.headers[headername(name)] = str(value)
		return self

	def head(self) -> bytes:
		"""Serializes the head as a payload."""
		message: str = self.message or HTTP_STATUS.get(self.status, "Unknown status")
		lines: list[str] = [
			f"{headername(k)}: {v}" for k, v in self.headers.headers.items()
		]
		lines.insert(0, f"{self.protocol} {self.status} {message}")
		lines.append("")
		lines.append("")
		# Header values are produced by us, and are ASCII
		return "\r\n".join(lines).encode("ascii")

	def __str__(self) -> str:
		return f"Response({self.protocol} {self.status} {self.message} {self.headers} {self.body})"


# EOF
