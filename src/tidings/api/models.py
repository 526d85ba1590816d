"""Shared Pydantic response models for the admin API."""

from __future__ import annotations

from typing import Generic, TypeVar

from pydantic import BaseModel, Field

T = TypeVar("T")


class ApiMeta(BaseModel):
    """Extensible metadata bag attached to every API response."""

    model_config = {"extra": "allow"}


class ApiResponse(BaseModel, Generic[T]):
    """Generic API response wrapper.

    All successful responses follow ``{"data": T, "meta": {...}}``.
    """

    data: T
    meta: ApiMeta = Field(default_factory=ApiMeta)


class ErrorDetail(BaseModel):
    code: str
    message: str


class ErrorResponse(BaseModel):
    error: ErrorDetail


class JobStats(BaseModel):
    by_status: dict[str, int]
    by_kind: dict[str, int]


class BatchStatusView(BaseModel):
    batch_id: str
    state: str
    total: int
    counts: dict[str, int]
