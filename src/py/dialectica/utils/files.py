import mimetypes
from pathlib import Path

mimetypes.init()

DEFAULT_CONTENT_TYPE: str = "application/octet-stream"

# Front-end bundle types that the platform tables get wrong or miss
MIME_TYPES: dict[str, str] = dict(
	css="text/css",
	html="text/html",
	htm="text/html",
	js="text/javascript",
	mjs="text/javascript",
	json="application/json",
	map="application/json",
	wasm="application/wasm",
	svg="image/svg+xml",
	webmanifest="application/manifest+json",
	woff="font/woff",
	woff2="font/woff2",
	webp="image/webp",
	avif="image/avif",
	txt="text/plain",
)


def contentType(path: Path | str) -> str:
	"""Guesses the content type from the given path's extension, defaulting
	to an octet stream."""
	name = str(path)
	if "." not in Path(name).name:
		return DEFAULT_CONTENT_TYPE
	return (
		res
		if (res := MIME_TYPES.get(name.rsplit(".", 1)[-1].lower()))
		else mimetypes.guess_type(name)[0] or DEFAULT_CONTENT_TYPE
	)


# EOF
