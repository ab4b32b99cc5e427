import os
from pathlib import Path
from typing import Literal

from ..config import ServerConfig
from ..decorators import on
from ..http.model import HTTPRequest, HTTPResponse
from ..model import Service
from ..utils.logging import debug, logged, warning
from ..utils.paths import resolvePath


def byteRange(header: str, size: int) -> tuple[int, int] | Literal[False] | None:
	"""Parses a `Range` header for a resource of the given size, returning
	the first and last byte offsets (inclusive). Returns `False` when the
	range can't be satisfied, and `None` when the header should be ignored
	(malformed, other units or multiple ranges)."""
	unit, _, ranges = header.partition("=")
	if unit.strip().lower() != "bytes" or "," in ranges:
		return None
	first, sep, last = ranges.strip().partition("-")
	if not sep:
		return None
	elif not first:
		# Suffix range, ie. the last N bytes
		if not last.isdigit():
			return None
		count = int(last)
		if count == 0 or size == 0:
			return False
		return max(0, size - count), size - 1
	elif not first.isdigit() or (last and not last.isdigit()):
		return None
	start: int = int(first)
	if last and int(last) < start:
		return None
	elif start >= size:
		return False
	else:
		return start, (min(int(last), size - 1) if last else size - 1)


class StaticFileService(Service):
	"""Serves the files of a single root directory, where the index file
	stands for its directory."""

	def __init__(self, config: ServerConfig | None = None):
		super().__init__()
		self.config: ServerConfig = config or ServerConfig.Default()
		self.root: Path = self.config.root
		self.index: str = self.config.index
		if not self.root.is_dir():
			# The assets may be deployed after we start, so we keep going and
			# answer 404 in the meantime.
			warning("Root directory does not exist", Root=str(self.root))

	def resolvePath(self, path: str) -> Path | None:
		return resolvePath(self.root, path, self.index)

	@on(GET_HEAD="/")
	def read(self, request: HTTPRequest, path: str) -> HTTPResponse:
		local_path = self.resolvePath(path)
		if local_path is None:
			logged(debug) and debug("Resource not found", Path=path)
			return request.notFound()
		try:
			return self.respondResource(request, local_path)
		except FileNotFoundError:
			# The file was removed after we resolved it
			return request.notFound()

	def respondResource(self, request: HTTPRequest, local_path: Path) -> HTTPResponse:
		size: int = local_path.stat().st_size
		if not os.access(local_path, os.R_OK):
			warning("Resource is not readable", Path=str(local_path))
			return request.fail("Resource is not readable")
		headers: dict[str, str] = {"Accept-Ranges": "bytes"}
		if header := request.header("Range"):
			match byteRange(header, size):
				case None:
					pass
				case False:
					return request.error(
						416, headers=headers | {"Content-Range": f"bytes */{size}"}
					)
				case (start, end):
					return request.respondFile(
						local_path,
						headers | {"Content-Range": f"bytes {start}-{end}/{size}"},
						status=206,
						offset=start,
						length=end - start + 1,
					)
		return request.respondFile(local_path, headers)


# EOF
