"""
Engine-only write scope for request status.

Request status is a derived field: only the lifecycle engine may change it,
in response to engagement transitions. The engine opens this scope around its
cascades; the request store refuses status writes outside it.
"""

from contextlib import contextmanager
from contextvars import ContextVar

from core.errors import InvalidTransition

_engine_writing: ContextVar[bool] = ContextVar("engine_writing", default=False)


@contextmanager
def engine_write_scope():
    """Mark the enclosed block as running on behalf of the lifecycle engine."""
    token = _engine_writing.set(True)
    try:
        yield
    finally:
        _engine_writing.reset(token)


def require_engine_scope(what: str) -> None:
    """Raise InvalidTransition unless called from inside engine_write_scope()."""
    if not _engine_writing.get():
        raise InvalidTransition(
            f"{what} may only be changed by the lifecycle engine"
        )
