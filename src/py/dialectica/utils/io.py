from mypy_extensions import i64

DEFAULT_ENCODING: str = "utf8"
EOL: bytes = b"\r\n"


class LineTooLong(ValueError):
	"""Raised when a line exceeds the parser's limit."""


class LineParser:
	"""Accumulates chunks until an end of line is found."""

	__slots__ = ["buffer", "line", "eol", "eolsize", "offset", "limit"]

	def __init__(self, limit: int | None = None) -> None:
		self.buffer: bytearray = bytearray()
		self.line: bytes | None = None
		self.offset: i64 = 0
		self.eol: bytes = EOL
		self.eolsize: i64 = len(EOL)
		self.limit: int | None = limit

	def reset(self, eol: bytes = EOL) -> "LineParser":
		self.buffer.clear()
		self.line = None
		self.offset = 0
		self.eol = eol
		self.eolsize = len(eol)
		return self

	def flush(self) -> bytes | None:
		return self.line

	def feed(self, chunk: bytes, start: int = 0) -> tuple[bytes | None, int]:
		"""Returns the matching line and how many bytes were read in chunk from start. When line is None,
		then the whole chunk has been processed."""
		pos: i64 = len(self.buffer)
		self.buffer += chunk[start:]
		end = self.buffer.find(self.eol, self.offset)
		if end == -1:
			if self.limit is not None and len(self.buffer) > self.limit:
				raise LineTooLong(f"Line exceeds {self.limit} bytes")
			self.offset = max(0, len(self.buffer) - self.eolsize + 1)
			return None, len(chunk) - start
		elif self.limit is not None and end > self.limit:
			raise LineTooLong(f"Line exceeds {self.limit} bytes")
		else:
			self.line = bytes(self.buffer[:end])
			self.buffer.clear()
			self.offset = 0
			return self.line, (end - pos) + self.eolsize


# EOF
