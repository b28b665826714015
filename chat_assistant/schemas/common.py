"""Shared response envelopes."""

from typing import Generic, TypeVar

from pydantic import BaseModel

T = TypeVar("T")


class ApiResponse(BaseModel, Generic[T]):
    """Consistent JSON envelope for API responses."""

    data: T


class ProviderErrorDetail(BaseModel):
    """Error body the completion proxy returns when the model provider fails."""

    error: str
    type: str
