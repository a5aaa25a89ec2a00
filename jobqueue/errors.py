"""Error taxonomy for the queue engine.

Drivers and stores map backend failures to these so callers never have to
know whether asyncpg or redis sits underneath.
"""

import asyncio
import functools
from typing import Any, Awaitable, Callable, TypeVar

import asyncpg
import redis.exceptions as redis_exc

T = TypeVar("T")


class QueueError(Exception):
    """Base error for the queue engine."""


class DriverError(QueueError):
    """A storage backend operation failed."""

    def __init__(self, message: str, driver: str = "unknown"):
        self.driver = driver
        super().__init__(message)


class DriverConnectionError(DriverError):
    """The storage backend is unreachable or dropped the connection."""


class InvalidPayloadError(QueueError):
    """A persisted payload cannot be turned back into an executable job."""


class UnknownIntervalError(ValueError):
    """Scheduler interval token is not in the interval table."""

    def __init__(self, interval: str, known: list[str]):
        self.interval = interval
        self.known = known
        super().__init__(
            f"Unknown schedule interval {interval!r}; expected one of: {', '.join(known)}"
        )


class CallbackNotSerializableError(ValueError):
    """Callback cannot be persisted as a named reference."""


# SQLSTATE codes for which the connection, not the statement, is at fault
_CONNECTION_SQLSTATES = {
    "08000",  # connection_exception
    "08001",  # sqlclient_unable_to_establish_sqlconnection
    "08003",  # connection_does_not_exist
    "08004",  # sqlserver_rejected_establishment_of_sqlconnection
    "08006",  # connection_failure
    "57P01",  # admin_shutdown
    "57P02",  # crash_shutdown
    "57P03",  # cannot_connect_now
}

_BACKEND_ERRORS = (
    OSError,
    asyncio.TimeoutError,
    redis_exc.RedisError,
    asyncpg.PostgresError,
    asyncpg.InterfaceError,
)


def _is_connection_error(error: BaseException) -> bool:
    """Check whether a backend error means the backend itself is unavailable."""
    if isinstance(
        error,
        (
            ConnectionRefusedError,
            ConnectionResetError,
            TimeoutError,
            asyncio.TimeoutError,
            redis_exc.ConnectionError,
            redis_exc.TimeoutError,
            asyncpg.InterfaceError,
            asyncpg.TooManyConnectionsError,
        ),
    ):
        return True

    if isinstance(error, asyncpg.PostgresError):
        return getattr(error, "sqlstate", None) in _CONNECTION_SQLSTATES

    return isinstance(error, OSError)


def translate_errors(driver: str) -> Callable[
    [Callable[..., Awaitable[T]]], Callable[..., Awaitable[T]]
]:
    """Decorator mapping backend exceptions of an async method to DriverError."""

    def decorator(fn: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        @functools.wraps(fn)
        async def wrapper(*args: Any, **kwargs: Any) -> T:
            try:
                return await fn(*args, **kwargs)
            except QueueError:
                raise
            except _BACKEND_ERRORS as e:
                if _is_connection_error(e):
                    raise DriverConnectionError(str(e) or type(e).__name__, driver) from e
                raise DriverError(str(e) or type(e).__name__, driver) from e

        return wrapper

    return decorator
