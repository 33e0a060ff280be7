"""Typed errors and the result type returned by engine and guard operations.

Operations exposed to callers return either :class:`Ok` or :class:`Err`
instead of raising. Handlers unwrap the result and render the error in a
caller-appropriate way (JSON error body, tool result, chat message).
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Generic, NoReturn, TypeVar

T = TypeVar("T")
E = TypeVar("E", bound="AvaError")


class AvaError(Exception):
    """Base class for every error that crosses the engine boundary."""

    code = "error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message}


class NotFoundError(AvaError):
    """Session or block report is absent or outside the caller's scope."""

    code = "not_found"


class InvalidStateError(AvaError):
    """Transition attempted from a status outside its valid-from set."""

    code = "invalid_state"

    def __init__(self, operation: str, current: str, message: str | None = None) -> None:
        super().__init__(
            message or f"Cannot {operation.replace('_', ' ')} a session that is {current}."
        )
        self.operation = operation
        self.current = current

    def to_dict(self) -> dict:
        return {**super().to_dict(), "operation": self.operation, "status": self.current}


class PlanLimitError(AvaError):
    """Free-plan session ceiling reached."""

    code = "plan_limit_exceeded"

    def __init__(self, limit: int, upgrade_url: str) -> None:
        super().__init__(
            f"Free plan limit ({limit} sessions) reached. "
            f"Upgrade to a paid plan to keep starting sessions.\nDetails: {upgrade_url}"
        )
        self.limit = limit
        self.upgrade_url = upgrade_url

    def to_dict(self) -> dict:
        return {**super().to_dict(), "limit": self.limit, "upgrade_url": self.upgrade_url}


class StorageError(AvaError):
    """Wraps any failure of the transactional store."""

    code = "storage_failure"

    def __init__(self, message: str = "Storage operation failed.") -> None:
        super().__init__(message)


class InputError(AvaError):
    """Caller supplied an empty or malformed field."""

    code = "invalid_input"


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T

    @property
    def ok(self) -> bool:
        return True

    def unwrap(self) -> T:
        return self.value


@dataclass(frozen=True)
class Err(Generic[E]):
    error: E

    @property
    def ok(self) -> bool:
        return False

    def unwrap(self) -> NoReturn:
        raise self.error
