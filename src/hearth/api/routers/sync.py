"""Calendar sync endpoints: pull, push, unpush, refresh and provider webhooks.

Provides a single router mounted at ``/api/calendar``. Every handler delegates
to the process-wide :class:`~hearth.services.SyncServices`; domain errors are
translated to the error envelope by :mod:`hearth.api.middleware`.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Header, Query

from hearth.api.models import (
    ApiResponse,
    CursorStatus,
    PullRequest,
    PushPendingRequest,
    PushRequest,
    RefreshResult,
    WatchRequest,
)
from hearth.calendar.errors import ValidationError
from hearth.calendar.models import (
    NotificationResult,
    PullBatchResult,
    PushAction,
    PushResult,
    WatchResult,
)
from hearth.services import SyncServices

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/calendar", tags=["calendar", "sync"])


def _get_services() -> SyncServices:
    """Dependency stub -- overridden at app startup or in tests."""
    raise RuntimeError("SyncServices not initialized")


# ---------------------------------------------------------------------------
# Pull
# ---------------------------------------------------------------------------


@router.post("/poll", response_model=ApiResponse[PullBatchResult])
async def poll(
    request: PullRequest | None = None,
    services: SyncServices = Depends(_get_services),
) -> ApiResponse[PullBatchResult]:
    """Run one pull cycle now and broadcast a change marker if anything changed."""
    request = request or PullRequest()
    batch = await services.pull.run_batch(user_id=request.user_id, calendar_id=request.calendar_id)
    changed = sum(r.created + r.updated + r.deleted for r in batch.calendars)
    marker = await services.cross_context.broadcast() if changed else None
    return ApiResponse[PullBatchResult](data=batch, meta={"changed": changed, "marker": marker})


@router.get("/cursor", response_model=ApiResponse[CursorStatus])
async def cursor_status(
    user_id: str = Query(...),
    calendar_id: str = Query(...),
    services: SyncServices = Depends(_get_services),
) -> ApiResponse[CursorStatus]:
    """Pull state of one (user, calendar) pair."""
    cursor = await services.store.get_cursor(user_id, calendar_id)
    return ApiResponse[CursorStatus](
        data=CursorStatus(
            user_id=user_id,
            calendar_id=calendar_id,
            state=services.pull.state_of(user_id, calendar_id),
            has_sync_token=cursor is not None,
        )
    )


# ---------------------------------------------------------------------------
# Push
# ---------------------------------------------------------------------------


@router.post("/events/{event_id}/push", response_model=ApiResponse[PushResult])
async def push_event(
    event_id: str,
    request: PushRequest,
    services: SyncServices = Depends(_get_services),
) -> ApiResponse[PushResult]:
    """Mirror a local create/update (or delete) of *event_id* to the provider."""
    result = await services.push.push(
        event_id, request.action, user_id=request.user_id, calendar_id=request.calendar_id
    )
    return ApiResponse[PushResult](data=result)


@router.delete("/events/{event_id}/push", response_model=ApiResponse[PushResult])
async def unpush_event(
    event_id: str,
    user_id: str = Query(...),
    calendar_id: str | None = Query(default=None),
    services: SyncServices = Depends(_get_services),
) -> ApiResponse[PushResult]:
    """Delete the remote counterpart of *event_id* and stop syncing it."""
    result = await services.push.push(
        event_id, PushAction.DELETE, user_id=user_id, calendar_id=calendar_id
    )
    return ApiResponse[PushResult](data=result)


@router.post("/push-pending", response_model=ApiResponse[list[PushResult]])
async def push_pending(
    request: PushPendingRequest,
    services: SyncServices = Depends(_get_services),
) -> ApiResponse[list[PushResult]]:
    """Push every sync-enabled event that has no remote counterpart yet."""
    results = await services.push.push_pending(
        user_id=request.user_id, calendar_id=request.calendar_id
    )
    return ApiResponse[list[PushResult]](data=results)


# ---------------------------------------------------------------------------
# Refresh
# ---------------------------------------------------------------------------


@router.post("/refresh", response_model=ApiResponse[RefreshResult])
async def refresh(services: SyncServices = Depends(_get_services)) -> ApiResponse[RefreshResult]:
    """Refresh every local subscriber now and tell other contexts to do the same."""
    await services.dispatcher.refresh_all()
    marker = await services.cross_context.broadcast()
    logger.info("Manual refresh requested; marker=%s", marker)
    return ApiResponse[RefreshResult](
        data=RefreshResult(domains=services.dispatcher.domains, marker=marker)
    )


# ---------------------------------------------------------------------------
# Watch channels
# ---------------------------------------------------------------------------


@router.post("/watch", response_model=ApiResponse[WatchResult])
async def start_watch(
    request: WatchRequest,
    services: SyncServices = Depends(_get_services),
) -> ApiResponse[WatchResult]:
    """Register (or reuse) a push-notification channel for one calendar."""
    result = await services.watches.ensure_watch(request.user_id, request.calendar_id)
    return ApiResponse[WatchResult](data=result)


@router.delete("/watch", response_model=ApiResponse[bool])
async def stop_watch(
    user_id: str = Query(...),
    calendar_id: str = Query(...),
    services: SyncServices = Depends(_get_services),
) -> ApiResponse[bool]:
    """Stop the channel of one calendar; ``false`` when none was registered."""
    stopped = await services.watches.stop_watch(user_id, calendar_id)
    return ApiResponse[bool](data=stopped)


@router.post("/webhook", response_model=ApiResponse[NotificationResult])
async def webhook(
    channel_id: str | None = Header(default=None, alias="X-Goog-Channel-ID"),
    resource_id: str | None = Header(default=None, alias="X-Goog-Resource-ID"),
    resource_state: str | None = Header(default=None, alias="X-Goog-Resource-State"),
    channel_token: str | None = Header(default=None, alias="X-Goog-Channel-Token"),
    services: SyncServices = Depends(_get_services),
) -> ApiResponse[NotificationResult]:
    """Receive a provider change notification and pull the calendar it names."""
    if not channel_id or not resource_id:
        raise ValidationError("Missing channel or resource headers")
    result = await services.watches.handle_notification(
        channel_id=channel_id,
        resource_id=resource_id,
        resource_state=resource_state,
        token=channel_token,
    )
    return ApiResponse[NotificationResult](data=result)
