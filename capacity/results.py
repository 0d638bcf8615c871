"""
Discriminated results returned by every external-facing operation.

A :class:`Result` is either a success carrying ``value`` or a failure
carrying the ``kind`` of one of the engine errors.  ``warnings`` lists
non-fatal conditions such as a forecast produced from stale inputs.
"""
from __future__ import annotations

import functools
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from .exceptions import CapacityError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Result:
    ok: bool
    value: Any = None
    kind: Optional[str] = None
    message: str = ''
    warnings: tuple = field(default_factory=tuple)

    def unwrap(self):
        """Return the value or raise ``ValueError`` for a failure."""
        if not self.ok:
            raise ValueError(f"{self.kind}: {self.message}")
        return self.value

    def to_payload(self, data: Any = None) -> dict:
        if self.ok:
            payload = {'ok': True, 'data': self.value if data is None else data}
            if self.warnings:
                payload['warnings'] = list(self.warnings)
            return payload
        return {'ok': False, 'error': {'code': self.kind, 'message': self.message}}


def success(value: Any = None, warnings=()) -> Result:
    return Result(ok=True, value=value, warnings=tuple(warnings))


def failure(kind: str, message: str = '') -> Result:
    return Result(ok=False, kind=kind, message=message or kind)


def from_error(exc: CapacityError) -> Result:
    return failure(exc.kind, exc.message)


def as_result(func: Callable) -> Callable[..., Result]:
    """Wrap an engine call so engine errors come back as failures.

    Anything that is not a :class:`CapacityError` is a programming or
    infrastructure fault and propagates unchanged.
    """
    @functools.wraps(func)
    def wrapper(*args, **kwargs) -> Result:
        try:
            value = func(*args, **kwargs)
        except CapacityError as exc:
            logger.info("%s failed: %s (%s)", func.__name__, exc.kind, exc.message)
            return from_error(exc)
        if isinstance(value, Result):
            return value
        return success(value)
    return wrapper
