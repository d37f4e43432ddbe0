"""Uniform response envelope."""

from typing import Any, Generic, TypeVar

from pydantic import BaseModel

T = TypeVar("T")


class ResponseEnvelope(BaseModel, Generic[T]):
    """Body shape shared by every endpoint."""

    success: bool
    message: str
    data: T | None = None
    errors: dict[str, list[str]] | None = None


AnyEnvelope = ResponseEnvelope[Any]
