from pathlib import Path
from typing import NamedTuple

# The reverse proxy forwards to this address, it must not be exposed
# directly.
HOST: str = "127.0.0.1"
PORT: int = 8000
ROOT: str = "/var/www/assets/dialectica"
INDEX: str = "index.html"


class ServerConfig(NamedTuple):
	"""The configuration of the static server, created once at startup and
	passed to the components that need it."""

	host: str = HOST
	port: int = PORT
	root: Path = Path(ROOT)
	index: str = INDEX

	@staticmethod
	def Default() -> "ServerConfig":
		return ServerConfig()

	@staticmethod
	def Make(
		root: str | Path = ROOT,
		*,
		host: str = HOST,
		port: int = PORT,
		index: str = INDEX,
	) -> "ServerConfig":
		if not index or "/" in index:
			raise ValueError(f"Index file must be a file name, got: {index!r}")
		return ServerConfig(
			host=host, port=port, root=Path(root).absolute(), index=index
		)

	@property
	def bindAddress(self) -> str:
		return f"{self.host}:{self.port}"


# EOF
