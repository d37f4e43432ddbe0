"""Tagged operation outcomes returned by services."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from typing import Generic, TypeVar

T = TypeVar("T")


class Outcome(StrEnum):
    """Outcome tag carried by every service result."""

    OK = "ok"
    NOT_FOUND = "not_found"
    UNAUTHORIZED = "unauthorized"
    FORBIDDEN = "forbidden"
    VALIDATION_FAILED = "validation_failed"
    CONFLICT = "conflict"
    FAILED = "failed"


@dataclass(frozen=True)
class ServiceResult(Generic[T]):
    """Success or expected-failure value; callers must check `success`."""

    outcome: Outcome
    message: str
    data: T | None = None
    errors: dict[str, list[str]] | None = field(default=None)

    @property
    def success(self) -> bool:
        return self.outcome is Outcome.OK

    @classmethod
    def ok(cls, data: T | None = None, message: str = "Success.") -> ServiceResult[T]:
        return cls(outcome=Outcome.OK, message=message, data=data)

    @classmethod
    def failed(cls, message: str) -> ServiceResult[T]:
        return cls(outcome=Outcome.FAILED, message=message)

    @classmethod
    def conflict(cls, message: str) -> ServiceResult[T]:
        return cls(outcome=Outcome.CONFLICT, message=message)

    @classmethod
    def validation_failed(
        cls, errors: dict[str, list[str]], message: str = "Validation failed."
    ) -> ServiceResult[T]:
        return cls(outcome=Outcome.VALIDATION_FAILED, message=message, errors=errors)


class ServiceError(Exception):
    """Raised for missing referenced entities and missing authentication context."""

    def __init__(self, outcome: Outcome, message: str) -> None:
        super().__init__(message)
        self.outcome = outcome
        self.message = message

    @classmethod
    def not_found(cls, message: str) -> ServiceError:
        return cls(Outcome.NOT_FOUND, message)

    @classmethod
    def unauthorized(cls, message: str = "Authentication is required.") -> ServiceError:
        return cls(Outcome.UNAUTHORIZED, message)
