from typing import Callable, ClassVar, Iterable, NamedTuple

from .decorators import Meta
from .http.model import HTTPRequest, HTTPRequestError, HTTPResponse
from .utils.logging import exception

# -----------------------------------------------------------------------------
#
# HANDLER
#
# -----------------------------------------------------------------------------


class Handler(NamedTuple):
	"""A service method bound to an HTTP method and a path prefix."""

	method: str
	prefix: str
	functor: Callable[[HTTPRequest, str], HTTPResponse]

	def match(self, path: str) -> str | None:
		"""Returns the path relative to the prefix, or `None` when the path
		is not under the prefix."""
		base: str = self.prefix.rstrip("/")
		if not base:
			return path
		elif path == base:
			return "/"
		elif path.startswith(f"{base}/"):
			return path[len(base) :]
		else:
			return None


# -----------------------------------------------------------------------------
#
# SERVICE
#
# -----------------------------------------------------------------------------


class Service:
	PREFIX: ClassVar[str] = ""
	NO_HANDLER: ClassVar[list[str]] = [
		"name",
		"prefix",
		"handlers",
		"_handlers",
	]

	def __init__(self, name: str | None = None, *, prefix: str | None = None) -> None:
		self.name: str = name or self.__class__.__name__
		self.prefix: str = prefix or self.PREFIX
		self._handlers: list[Handler] | None = None

	@property
	def handlers(self) -> list[Handler]:
		if self._handlers is None:
			self._handlers = list(self.iterHandlers())
		return self._handlers

	def iterHandlers(self) -> Iterable[Handler]:
		for name in dir(self):
			if name in self.NO_HANDLER or name.startswith("__"):
				continue
			value = getattr(self, name)
			if not callable(value) or not hasattr(value, "__func__"):
				continue
			for method, prefix in Meta.Get(value).get(Meta.ON, ()):
				yield Handler(
					method, f"{self.prefix.rstrip('/')}{prefix}" or "/", value
				)

	def __repr__(self) -> str:
		return f"(Service {self.name})"


# -----------------------------------------------------------------------------
#
# APPLICATION
#
# -----------------------------------------------------------------------------


class Application:
	"""Dispatches requests to the handlers of the mounted services."""

	def __init__(self, services: list[Service] | None = None) -> None:
		self.handlers: list[Handler] = []
		self.services: list[Service] = []
		for service in services or ():
			self.mount(service)

	def mount(self, service: Service) -> Service:
		if service in self.services:
			raise RuntimeError(f"Cannot mount service, it is already mounted: {service}")
		self.services.append(service)
		self.handlers += service.handlers
		# Longest prefixes are matched first
		self.handlers.sort(key=lambda _: len(_.prefix), reverse=True)
		return service

	def process(self, request: HTTPRequest) -> HTTPResponse:
		"""Returns the response produced by the handler matching the
		request. Paths matched only for other methods yield a 405, unmatched
		paths a 404."""
		path: str = request.path or "/"
		allowed: list[str] = []
		for handler in self.handlers:
			relative = handler.match(path)
			if relative is None:
				continue
			elif handler.method != request.method:
				if handler.method not in allowed:
					allowed.append(handler.method)
				continue
			try:
				return handler.functor(request, relative)
			except HTTPRequestError as e:
				return request.error(
					e.status or 500, e.message, e.contentType or "text/plain"
				)
			except Exception as e:
				exception(e, f"Handler failed on {request.method} {path}")
				return request.fail()
		if allowed:
			return request.notAllowed(allowed)
		else:
			return request.notFound()


def mount(*components: Application | Service) -> Application:
	"""Mounts the given components into an application"""
	apps: list[Application] = [_ for _ in components if isinstance(_, Application)]
	app: Application = apps[0] if apps else Application()
	for item in components:
		if isinstance(item, Service):
			app.mount(item)
		elif not isinstance(item, Application):
			raise RuntimeError(f"Unsupported component type {type(item)}: {item}")
	return app


# EOF
