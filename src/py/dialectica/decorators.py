from typing import Any, Callable, ClassVar, TypeVar, cast

T = TypeVar("T")


class Meta:
	"""Defines the attributes used by decorators"""

	ON: ClassVar[str] = "_dialectica_on"

	@staticmethod
	def Get(scope: Any) -> dict[str, Any]:
		"""Returns the dictionary of meta attributes for the given value."""
		if hasattr(scope, "__func__"):
			# Bound methods share the metadata of their function
			scope = scope.__func__
		if hasattr(scope, "__dict__"):
			return cast(dict[str, Any], scope.__dict__)
		else:
			raise RuntimeError(f"Metadata cannot be attached to object: {scope}")


def on(**methods: str | list[str] | tuple[str, ...]) -> Callable[[T], T]:
	"""The @on decorator indicates that the wrapped method will be used to
	process HTTP requests. Keywords are HTTP methods (joined with `_` to
	declare more than one), values are the path prefixes handled by the
	method.

	For instance:

	>    @on(GET_HEAD="/")

	implies that the wrapped method is like

	>    def read(self, request, path):
	>        ....

	where `path` is the request path relative to the prefix, and the
	method must return a response."""

	def decorator(function: T) -> T:
		v = Meta.Get(function).setdefault(Meta.ON, [])
		for http_methods, prefix in list(methods.items()):
			prefixes = (prefix,) if isinstance(prefix, str) else prefix
			for http_method in http_methods.upper().split("_"):
				for _ in prefixes:
					v.append((http_method, _))
		return function

	return decorator


# EOF
