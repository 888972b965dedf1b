from dataclasses import dataclass
from typing import Generic, Optional, TypeVar

T = TypeVar("T")

# error codes returned by the state store
VERSION_CONFLICT = "version_conflict"
NOT_FOUND = "not_found"
INVALID_TRANSITION = "invalid_transition"
SERVICE_LOCKED = "service_locked"
ABANDONED = "abandoned"


@dataclass
class Result(Generic[T]):
    """Outcome of a store write: the new value, or an error code the caller branches on."""

    ok: bool
    value: Optional[T] = None
    error: Optional[str] = None
    error_code: Optional[str] = None

    @staticmethod
    def success(value: T) -> "Result[T]":
        return Result(ok=True, value=value)

    @staticmethod
    def failure(error: str, code: str = "unknown") -> "Result[T]":
        return Result(ok=False, error=error, error_code=code)

    @property
    def is_conflict(self) -> bool:
        """Lost a compare-and-swap race; reloading and retrying may succeed."""
        return not self.ok and self.error_code == VERSION_CONFLICT

    @property
    def is_abandoned(self) -> bool:
        return not self.ok and self.error_code == ABANDONED

    def unwrap_or(self, default: T) -> T:
        return self.value if self.ok else default
