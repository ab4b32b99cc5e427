import re
from typing import Iterator, Literal, Pattern, TypeAlias, Union
from urllib.parse import urlsplit

from mypy_extensions import i64

from ..utils.io import LineParser, LineTooLong
from .model import (
	HTTPHeaders,
	HTTPProcessingStatus,
	HTTPRequest,
	HTTPRequestLine,
	headername,
)

# Type alias for the parser would produce
HTTPAtom: TypeAlias = Union[
	HTTPRequestLine,
	HTTPHeaders,
	HTTPProcessingStatus,
	HTTPRequest,
]

MAX_LINE: int = 8_192
MAX_HEADERS: int = 100
MAX_HEADERS_SIZE: int = 65_536
PROTOCOLS: tuple[str, ...] = ("HTTP/1.1", "HTTP/1.0")

# SEE: https://httpwg.org/specs/rfc9110.html#tokens
RE_TOKEN: Pattern[str] = re.compile(r"[!#$%&'*+\-.^_`|~0-9A-Za-z]+")


def parseRequestLine(line: bytes) -> HTTPRequestLine | HTTPProcessingStatus:
	"""Parses a request line like `GET /path?query HTTP/1.1`, returning
	a processing status when the line is not valid."""
	try:
		ln: str = line.decode("ascii")
	except UnicodeDecodeError:
		return HTTPProcessingStatus.BadFormat
	parts: list[str] = ln.split(" ")
	if len(parts) != 3:
		return HTTPProcessingStatus.BadFormat
	method, target, protocol = parts
	if not RE_TOKEN.fullmatch(method) or not protocol.startswith("HTTP/"):
		return HTTPProcessingStatus.BadFormat
	elif protocol not in PROTOCOLS:
		return HTTPProcessingStatus.Unsupported
	if target.startswith("/") or target == "*":
		pass
	elif target.startswith("http://") or target.startswith("https://"):
		# Absolute form, as sent to proxies
		url = urlsplit(target)
		target = f"{url.path or '/'}{f'?{url.query}' if url.query else ''}"
	else:
		return HTTPProcessingStatus.BadFormat
	p: list[str] = target.split("?", 1)
	return HTTPRequestLine(method, p[0], p[1] if len(p) > 1 else "", protocol)


class MessageParser:
	"""Parses an HTTP request line."""

	__slots__ = ["line", "value", "skipping"]

	def __init__(self) -> None:
		self.line: LineParser = LineParser(MAX_LINE)
		self.value: HTTPRequestLine | None = None
		self.skipping: i64 = 0

	def flush(self) -> HTTPRequestLine | None:
		res = self.value
		self.reset()
		return res

	def reset(self) -> "MessageParser":
		self.line.reset()
		self.value = None
		self.skipping = 0
		return self

	def feed(
		self, chunk: bytes, start: int = 0
	) -> tuple[HTTPRequestLine | HTTPProcessingStatus | None, int]:
		n = len(chunk)
		available = n - start
		if self.skipping:
			# We have remaining data to read/skip, so we do that
			read = min(available, self.skipping)
			self.skipping -= read
			return None, read
		elif available >= 5 and chunk[start] == 0x16 and not self.line.buffer:
			# This is a TLS Handshake sent to the plain port (browsers do that
			# when given an `https` URL), we parse the length and skip it.
			size = 5 + (chunk[start + 3] << 8) + chunk[start + 4]
			if available >= size:
				return None, size
			else:
				self.skipping = size - available
				return None, available
		else:
			line, read = self.line.feed(chunk, start)
			if not line:
				# Either no line yet, or an empty line, which clients may
				# send before a request line.
				return None, read
			res = parseRequestLine(line)
			if isinstance(res, HTTPRequestLine):
				self.value = res
			return res, read

	def __str__(self) -> str:
		return f"MessageParser({self.value})"


class HeadersParser:
	__slots__ = [
		"headers",
		"contentType",
		"contentLength",
		"line",
		"size",
		"invalid",
	]

	def __init__(self) -> None:
		self.line: LineParser = LineParser(MAX_LINE)
		self.headers: dict[str, str] = {}
		self.contentType: str | None = None
		self.contentLength: int | None = None
		self.size: i64 = 0
		self.invalid: bool = False

	def flush(self) -> HTTPHeaders:
		res = HTTPHeaders(self.headers, self.contentType, self.contentLength)
		self.reset()
		return res

	def reset(self) -> "HeadersParser":
		self.line.reset()
		self.headers = {}
		self.contentType = None
		self.contentLength = None
		self.size = 0
		self.invalid = False
		return self

	def feed(
		self, chunk: bytes, start: int = 0
	) -> tuple[str | Literal[False] | HTTPProcessingStatus | None, int]:
		"""Feeds data from chunk, starting at `start` offset. Returns
		a value and the next start offset. When the value is `None`, no
		header has been extracted, when the value is `False` it's the empty
		line ending the headers, and when it is a string, it is the name
		of the header that was added."""
		line, read = self.line.feed(chunk, start)
		self.size += read
		if self.size > MAX_HEADERS_SIZE or len(self.headers) > MAX_HEADERS:
			return HTTPProcessingStatus.BadFormat, read
		elif line is None:
			return None, read
		elif not line:
			# An empty line denotes the end of headers
			if self.invalid or "Transfer-Encoding" in self.headers:
				# We don't decode chunked request bodies, so we can't know
				# where the next request starts.
				return HTTPProcessingStatus.BadFormat, read
			return False, read
		# Headers are expected to be in ASCII format, and we
		# don't support obsolete line folding.
		try:
			ln: str = line.decode("ascii")
		except UnicodeDecodeError:
			return HTTPProcessingStatus.BadFormat, read
		i = ln.find(":")
		if i <= 0 or ln[0] in " \t" or not RE_TOKEN.fullmatch(ln[:i]):
			return HTTPProcessingStatus.BadFormat, read
		h = ln[:i].lower()
		v = ln[i + 1 :].strip()
		if h == "content-length":
			length = int(v) if v.isdigit() else None
			if length is None or (
				self.contentLength is not None and self.contentLength != length
			):
				self.invalid = True
			self.contentLength = length
		elif h == "content-type":
			self.contentType = v
		n: str = headername(h)
		self.headers[n] = v
		return n, read

	def __str__(self) -> str:
		return f"HeadersParser({self.headers})"


class HTTPParser:
	"""A stateful HTTP request parser. Feeding chunks yields the request line,
	headers and request of each request in turn. Request bodies are
	skipped, as they are not used when serving files. Once a
	`BadFormat` or `Unsupported` status is yielded, the parser stops."""

	def __init__(self) -> None:
		self.message: MessageParser = MessageParser()
		self.headers: HeadersParser = HeadersParser()
		self.parser: MessageParser | HeadersParser = self.message
		self.requestLine: HTTPRequestLine | None = None
		self.skipping: i64 = 0
		self.failed: HTTPProcessingStatus | None = None

	@property
	def isIdle(self) -> bool:
		"""Tells if the parser is between requests."""
		return (
			self.parser is self.message
			and not self.skipping
			and not self.message.line.buffer
		)

	def feed(self, chunk: bytes) -> Iterator[HTTPAtom]:
		size: int = len(chunk)
		offset: int = 0
		while offset < size and self.failed is None:
			if self.skipping:
				# We're skipping the body of the previous request
				read = min(self.skipping, size - offset)
				self.skipping -= read
				offset += read
				continue
			# The expectation here is that when we feed a chunk and it's
			# partially read, we don't need to re-feed it again. The underlying
			# parser will keep a buffer up until it is flushed.
			try:
				value, read = self.parser.feed(chunk, offset)
			except LineTooLong:
				value, read = HTTPProcessingStatus.BadFormat, size - offset
			offset += read
			if value is None:
				continue
			elif isinstance(value, HTTPProcessingStatus):
				self.failed = value
				yield value
			elif self.parser is self.message:
				# We've parsed a request line
				self.requestLine = self.message.flush()
				if self.requestLine is not None:
					yield self.requestLine
					self.parser = self.headers.reset()
			elif value is False and self.requestLine is not None:
				# We've parsed the headers
				headers = self.headers.flush()
				line = self.requestLine
				yield headers
				yield HTTPRequest(
					method=line.method,
					path=line.path,
					query=line.query or None,
					headers=headers,
					protocol=line.protocol,
				)
				self.skipping = headers.contentLength or 0
				self.requestLine = None
				self.parser = self.message.reset()
			else:
				# `value` is the name of the header that was just parsed
				pass


# EOF
