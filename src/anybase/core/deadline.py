"""Per-call deadlines.

A deadline is bound to the current thread/task with a ``ContextVar`` so it
flows through repository code without extra parameters. Adapters read it
before every backend round-trip:

- MongoDB wraps the call in ``pymongo.timeout(remaining)``
- PostgreSQL bounds the pool wait and issues ``SET LOCAL statement_timeout``

An expired deadline raises ``OperationTimeoutError``.

Example:
    with deadline(2.5):
        users.find_one({"email": email})
"""

from __future__ import annotations

import time
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar

from anybase.core.errors import OperationTimeoutError

_deadline: ContextVar[float | None] = ContextVar("anybase_deadline", default=None)


@contextmanager
def deadline(seconds: float) -> Iterator[float]:
    """Bound every database call in the block to ``seconds`` from now.

    Nested deadlines never extend an outer one.
    """
    expires = time.monotonic() + seconds
    outer = _deadline.get()
    if outer is not None:
        expires = min(expires, outer)
    token = _deadline.set(expires)
    try:
        yield expires
    finally:
        _deadline.reset(token)


def remaining() -> float | None:
    """Seconds left on the active deadline, or ``None`` when unbounded."""
    expires = _deadline.get()
    if expires is None:
        return None
    return expires - time.monotonic()


def check(operation: str = "operation") -> float | None:
    """Return the remaining budget, raising when it is already spent."""
    left = remaining()
    if left is not None and left <= 0:
        raise OperationTimeoutError(f"deadline exceeded before {operation}")
    return left


def bounded(default: float) -> float:
    """``default`` clipped to the active deadline."""
    left = check()
    if left is None:
        return default
    return min(default, left)


__all__ = [
    "deadline",
    "remaining",
    "check",
    "bounded",
]
