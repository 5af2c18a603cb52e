from __future__ import annotations

import asyncio
import functools
from typing import Any, Awaitable, Callable, TypeVar, TYPE_CHECKING

if TYPE_CHECKING:
    from .models import QuotaState

T = TypeVar("T")


class CompanionError(Exception):
    """Base class for errors raised by the conversational pipeline."""


class ValidationError(CompanionError, ValueError):
    pass


class QuotaExceededError(CompanionError):
    def __init__(self, state: "QuotaState") -> None:
        super().__init__(
            f"Free message limit reached ({state.message_count}/{state.limit})"
        )
        self.state = state


class TransientUpstreamError(CompanionError, RuntimeError):
    def __init__(self, message: str, *, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class PersistenceError(CompanionError, RuntimeError):
    pass


class PersistenceReadError(PersistenceError):
    pass


class PersistenceWriteError(PersistenceError):
    pass


def _translate(error_cls: type[PersistenceError]) -> Callable[[Callable[..., Awaitable[T]]], Callable[..., Awaitable[T]]]:
    def decorator(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> T:
            try:
                return await func(*args, **kwargs)
            except (asyncio.CancelledError, PersistenceError):
                raise
            except Exception as exc:
                raise error_cls(f"{func.__name__} failed: {exc}") from exc

        return wrapper

    return decorator


persistence_read = _translate(PersistenceReadError)
persistence_write = _translate(PersistenceWriteError)
