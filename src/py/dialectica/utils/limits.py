from typing import NamedTuple
from enum import Enum
import resource


class LimitType(Enum):
	Files = resource.RLIMIT_NOFILE


REASONABLE_LIMITS: dict[LimitType, int] = {
	# One descriptor per open connection, plus one per file being streamed
	LimitType.Files: 10 * 10240,
}


class Limit(NamedTuple):
	type: LimitType
	soft: int
	hard: int


def limit(scope: LimitType) -> Limit:
	return Limit(scope, *resource.getrlimit(scope.value))


def unlimit(
	scope: LimitType, ratio: float = 1.0, *, maximum: int | None = 0
) -> int | bool:
	"""Raises the soft limit towards the hard limit, capped by `maximum`
	(or the reasonable limit when `maximum` is 0). Returns the new limit, or
	`False` when it could not be changed."""
	lm = limit(scope)
	try:
		# RLIM_INFINITY is -1, we don't want to go above the reasonable limit
		hard = lm.hard if lm.hard >= 0 else REASONABLE_LIMITS.get(scope, lm.soft)
		target = int(lm.soft + ratio * (hard - lm.soft))
		# We apply reasonable limits, as for instance Darwin has really high
		# limits that will lead to OverflowErrors.
		maximum = REASONABLE_LIMITS.get(scope) if maximum == 0 else maximum
		if maximum:
			target = min(maximum, target)
		if target <= lm.soft:
			return lm.soft
		resource.setrlimit(scope.value, (target, lm.hard))
		return target
	except ValueError:
		return False
	except OSError:
		return False


# EOF
