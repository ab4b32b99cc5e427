from .http.model import (
	HTTPRequest,
	HTTPResponse,
	HTTPRequestError,
)  # NOQA: F401
from .config import ServerConfig  # NOQA: F401
from .decorators import on  # NOQA: F401
from .server import run  # NOQA: F401
from .model import Application, Service, mount  # NOQA: F401
from .services.files import StaticFileService  # NOQA: F401


# EOF
