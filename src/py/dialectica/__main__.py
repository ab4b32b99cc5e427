import sys

from .config import ServerConfig
from .server import run
from .services.files import StaticFileService
from .utils.logging import info


def main() -> int:
	"""Serves the fixed asset root on the loopback address, exits with 1
	when the address can't be bound."""
	config = ServerConfig.Default()
	info(
		"Starting Dialectica static server",
		Address=config.bindAddress,
		Root=str(config.root),
	)
	try:
		run(StaticFileService(config), config=config)
	except OSError:
		# The error has been logged when binding
		return 1
	return 0


if __name__ == "__main__":
	sys.exit(main())

# EOF
