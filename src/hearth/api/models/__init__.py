"""Shared Pydantic request/response models for the sync API.

Provides the generic ``ApiResponse`` wrapper, the error envelope, and the
request bodies accepted by the calendar sync routes.
"""

from __future__ import annotations

from typing import Generic, TypeVar

from pydantic import BaseModel, Field

from hearth.calendar.models import CursorState, Domain, PushAction

# ---------------------------------------------------------------------------
# Base response wrappers
# ---------------------------------------------------------------------------


class ApiMeta(BaseModel):
    """Extensible metadata bag attached to every API response."""

    model_config = {"extra": "allow"}


T = TypeVar("T")


class ApiResponse(BaseModel, Generic[T]):
    """Generic API response wrapper.

    All successful responses follow ``{"data": T, "meta": {...}}``.
    """

    data: T
    meta: ApiMeta = Field(default_factory=ApiMeta)


class ErrorDetail(BaseModel):
    """Structured error payload."""

    code: str
    message: str
    event_id: str | None = None
    details: dict | None = None


class ErrorResponse(BaseModel):
    """Standard error response envelope."""

    error: ErrorDetail


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------


class PullRequest(BaseModel):
    """Optional filters for a pull run; empty means every readable calendar."""

    user_id: str | None = None
    calendar_id: str | None = None


class PushRequest(BaseModel):
    user_id: str
    calendar_id: str | None = None
    action: PushAction = PushAction.UPDATE


class PushPendingRequest(BaseModel):
    user_id: str
    calendar_id: str | None = None


class WatchRequest(BaseModel):
    user_id: str
    calendar_id: str


# ---------------------------------------------------------------------------
# Responses
# ---------------------------------------------------------------------------


class RefreshResult(BaseModel):
    """Domains refreshed locally and the cross-context marker written."""

    domains: list[Domain] = Field(default_factory=list)
    marker: str | None = None


class CursorStatus(BaseModel):
    user_id: str
    calendar_id: str
    state: CursorState
    has_sync_token: bool = False
