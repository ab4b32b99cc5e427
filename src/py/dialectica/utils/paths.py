from pathlib import Path
from urllib.parse import unquote


def safePath(path: str) -> list[str] | None:
	"""Turns a request path into the list of segments it designates relative
	to the root, or `None` when the path is not safe to serve.

	The path is percent-decoded first, so that `%2e%2e` is treated as `..`.
	Empty and `.` segments are dropped and `..` segments remove the previous
	segment. A `..` that would go above the root makes the path unsafe, as do
	hidden segments (starting with `.`), NUL bytes and backslashes."""
	try:
		decoded: str = unquote(path, errors="strict")
	except UnicodeDecodeError:
		return None
	segments: list[str] = []
	for segment in decoded.split("/"):
		if not segment or segment == ".":
			continue
		elif segment == "..":
			if not segments:
				return None
			segments.pop()
		elif segment.startswith(".") or "\x00" in segment or "\\" in segment:
			return None
		else:
			segments.append(segment)
	return segments


def resolvePath(root: Path, path: str, index: str = "index.html") -> Path | None:
	"""Resolves the request `path` to a regular file within `root`. Paths that
	designate a directory (including `/`) resolve to the `index` file in that
	directory. Returns `None` when there is no such file, or when the file
	is outside of the root once symlinks are resolved."""
	segments = safePath(path)
	if segments is None:
		return None
	local: Path = root.joinpath(*segments)
	# A trailing slash means the client expects a directory
	wants_dir: bool = not segments or unquote(path).endswith("/")
	try:
		if local.is_dir():
			local = local / index
		elif wants_dir:
			return None
		if not local.is_file():
			return None
		real: Path = local.resolve()
		if not real.is_relative_to(root.resolve()):
			return None
	except OSError:
		return None
	return real


# EOF
