"""FastAPI route definitions for the link resolver REST API.

This module provides all HTTP endpoints with dependency injection, error
handling and response serialization. Business rules live in the services;
routes only translate their results into HTTP.

API Endpoint Overview
=====================
::
    GET   /health
        └─ HealthResponse (200)

    POST  /api/shorten
        ├─ LinkCreate (request body)
        └─ LinkResponse (201) or 409/422

    GET   /api/links/:code              LinkResponse or 404
    PATCH /api/links/:code              LinkUpdate → LinkResponse, 404/409/422
    GET   /api/links/:code/status       LinkStatusResponse or 404

    GET   /api/analytics/:code          ClickAnalytics (optional start/end)
    GET   /api/analytics/:code/realtime ClickAnalytics for the last 24h
    GET   /api/analytics/:code/daily    {date: clicks}
    GET   /api/analytics/:code/hourly   {hour: clicks}
    GET   /api/analytics/:code/recent   [ClickEventResponse]
    GET   /api/analytics/:code/clicks   ClickPage

    POST  /api/maintenance/cleanup      CleanupResponse

    GET   /:code
        └─ 307 Redirect, 400, 401 (password required), 403 (reason), 404
    POST  /:code/verify
        └─ 303 Redirect, 401 (generic), 403 (reason)

Resolution → HTTP
=================
::
    SUCCESS            → 307 (GET) / 303 (verify), Location: target
    NOT_FOUND          → 404
    FORBIDDEN(reason)  → 403 {"detail": ..., "reason": reason}
    PASSWORD_REQUIRED  → 401 {"detail": ..., "password_required": true}
    UNAUTHORIZED       → 401 "Invalid short code or password"

Key Behaviours
===============
- All endpoints use async/await for non-blocking I/O.
- Click events are captured on redirect and written by background workers,
  so the redirect never waits on enrichment.
- A session cookie identifies repeat visitors for unique visitor counts.
- Storage failures surface as 503 through the application error handler.
"""

import datetime

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import JSONResponse, RedirectResponse, Response
from sqlalchemy import text

from app.analytics import MAX_PAGE_SIZE, ClickAnalyticsService
from app.dependencies import (
    get_analytics_service,
    get_link_service,
    get_request_context,
    get_resolver,
    get_tracking_data,
)
from app.enums import HealthStatus, ResolutionStatus
from app.exceptions import ConflictError, InvalidArgumentError, NotFoundError, UnauthorizedError
from app.links import LinkService
from app.models import ShortLink
from app.resolver import RedirectResolver, Resolution
from app.schemas import (
    ClickAnalytics,
    ClickEventResponse,
    ClickPage,
    ClickTrackingData,
    CleanupResponse,
    HealthResponse,
    LinkCreate,
    LinkResponse,
    LinkStatusResponse,
    LinkUpdate,
    PasswordVerify,
)

__all__ = ["router"]

router = APIRouter()

SESSION_COOKIE_MAX_AGE = 60 * 60 * 24 * 365


# ============================================================================
# HELPERS
# ============================================================================


def _link_response(link: ShortLink, base_url: str) -> LinkResponse:
    return LinkResponse(
        id=link.id,
        short_code=link.short_code,
        original_url=link.original_url,
        short_url=f"{base_url}/{link.short_code}",
        is_active=link.is_active,
        expires_at=link.expires_at,
        click_limit=link.click_limit,
        total_clicks=link.total_clicks,
        is_password_protected=link.is_password_protected,
        title=link.title,
        created_at=link.created_at,
        updated_at=link.updated_at,
    )


async def _find_link(service: LinkService, short_code: str, ctx) -> ShortLink:
    try:
        return await service.get_link(short_code)
    except NotFoundError as exc:
        ctx.logger.warning(f"Short link not found: {short_code}")
        raise HTTPException(status_code=404, detail="Short URL not found") from exc


def _resolution_response(
    resolution: Resolution,
    request: Request,
    tracking: ClickTrackingData,
    ctx,
    success_status: int,
) -> Response:
    if resolution.status is ResolutionStatus.SUCCESS:
        response = RedirectResponse(url=resolution.target_url, status_code=success_status)
        cookie_name = ctx.settings.SESSION_COOKIE_NAME
        if request.cookies.get(cookie_name) != tracking.session_id:
            response.set_cookie(
                cookie_name,
                tracking.session_id,
                max_age=SESSION_COOKIE_MAX_AGE,
                httponly=True,
                samesite="lax",
            )
        return response

    if resolution.status is ResolutionStatus.NOT_FOUND:
        raise HTTPException(status_code=404, detail="Short URL not found")
    if resolution.status is ResolutionStatus.FORBIDDEN:
        return JSONResponse(
            status_code=403,
            content={"detail": "Short URL is not available", "reason": resolution.reason.value},
        )
    if resolution.status is ResolutionStatus.PASSWORD_REQUIRED:
        return JSONResponse(
            status_code=401,
            content={"detail": "Password required", "password_required": True},
        )
    raise HTTPException(status_code=401, detail=str(UnauthorizedError()))


# ============================================================================
# HEALTH
# ============================================================================


@router.get("/health", response_model=HealthResponse, tags=["health"])
async def health_check(ctx=Depends(get_request_context)) -> HealthResponse:
    ctx.logger.info("Health check requested")
    db_status = HealthStatus.HEALTHY
    cache_status = HealthStatus.HEALTHY

    try:
        await ctx.database.execute(text("SELECT 1"))
    except Exception as e:
        ctx.logger.error(f"Database health check failed: {e}")
        db_status = HealthStatus.UNHEALTHY

    try:
        await ctx.cache.ping()
    except Exception as e:
        ctx.logger.error(f"Cache health check failed: {e}")
        cache_status = HealthStatus.UNHEALTHY

    status = (
        HealthStatus.HEALTHY
        if db_status is HealthStatus.HEALTHY and cache_status is HealthStatus.HEALTHY
        else HealthStatus.UNHEALTHY
    )
    ctx.logger.info(f"Health check completed: {status.value}")
    return HealthResponse(status=status, database=db_status, cache=cache_status)


# ============================================================================
# LINK MANAGEMENT
# ============================================================================


@router.post("/api/shorten", response_model=LinkResponse, status_code=201, tags=["links"])
async def shorten_url(
    payload: LinkCreate,
    ctx=Depends(get_request_context),
    service: LinkService = Depends(get_link_service),
) -> LinkResponse:
    ctx.add_tag("link_creation")
    ctx.logger.info(
        f"URL shortening requested: {payload.url}",
        extra={"operation": "create_link", "custom_code": payload.custom_code},
    )

    try:
        link = await service.create_link(payload)
    except ConflictError as exc:
        ctx.logger.warning(
            f"URL shortening failed: {exc}",
            extra={"operation": "create_link", "duration_ms": ctx.get_duration()},
        )
        raise HTTPException(status_code=409, detail=str(exc)) from exc

    ctx.logger.info(
        f"URL shortened successfully: {link.short_code}",
        extra={"operation": "create_link", "duration_ms": ctx.get_duration()},
    )
    return _link_response(link, ctx.settings.BASE_URL)


@router.get("/api/links/{short_code}", response_model=LinkResponse, tags=["links"])
async def get_link(
    short_code: str,
    ctx=Depends(get_request_context),
    service: LinkService = Depends(get_link_service),
) -> LinkResponse:
    link = await _find_link(service, short_code, ctx)
    return _link_response(link, ctx.settings.BASE_URL)


@router.patch("/api/links/{short_code}", response_model=LinkResponse, tags=["links"])
async def update_link(
    short_code: str,
    payload: LinkUpdate,
    ctx=Depends(get_request_context),
    service: LinkService = Depends(get_link_service),
) -> LinkResponse:
    ctx.add_tag("link_update")
    try:
        link = await service.get_link(short_code)
        if payload.expires_at is not None or payload.clear_expiration:
            link = await service.update_expiration(short_code, payload.expires_at)
        if payload.is_active is not None:
            link = await service.set_active(short_code, payload.is_active)
        if payload.short_code is not None:
            link = await service.update_code(short_code, payload.short_code)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail="Short URL not found") from exc
    except ConflictError as exc:
        ctx.logger.warning(f"Link update failed: {exc}", extra={"operation": "update_link"})
        raise HTTPException(status_code=409, detail=str(exc)) from exc

    ctx.logger.info(
        f"Link updated: {short_code}",
        extra={"operation": "update_link", "duration_ms": ctx.get_duration()},
    )
    return _link_response(link, ctx.settings.BASE_URL)


@router.get("/api/links/{short_code}/status", response_model=LinkStatusResponse, tags=["links"])
async def get_link_status(
    short_code: str,
    ctx=Depends(get_request_context),
    service: LinkService = Depends(get_link_service),
    resolver: RedirectResolver = Depends(get_resolver),
) -> LinkStatusResponse:
    link = await _find_link(service, short_code, ctx)
    return LinkStatusResponse(
        short_code=link.short_code,
        is_valid=await resolver.is_valid(link.id),
        is_active=await resolver.is_active(link.id),
        is_click_limit_reached=await resolver.is_click_limit_reached(link.id),
        is_password_protected=await resolver.is_password_protected(link.id),
    )


# ============================================================================
# ANALYTICS
# ============================================================================


@router.get("/api/analytics/{short_code}", response_model=ClickAnalytics, tags=["analytics"])
async def get_analytics(
    short_code: str,
    start: datetime.datetime | None = None,
    end: datetime.datetime | None = None,
    ctx=Depends(get_request_context),
    service: LinkService = Depends(get_link_service),
    analytics: ClickAnalyticsService = Depends(get_analytics_service),
) -> ClickAnalytics:
    link = await _find_link(service, short_code, ctx)
    try:
        return await analytics.summary(link.id, start, end)
    except InvalidArgumentError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@router.get("/api/analytics/{short_code}/realtime", response_model=ClickAnalytics, tags=["analytics"])
async def get_realtime_analytics(
    short_code: str,
    ctx=Depends(get_request_context),
    service: LinkService = Depends(get_link_service),
    analytics: ClickAnalyticsService = Depends(get_analytics_service),
) -> ClickAnalytics:
    link = await _find_link(service, short_code, ctx)
    return await analytics.realtime(link.id)


@router.get("/api/analytics/{short_code}/daily", response_model=dict[datetime.date, int], tags=["analytics"])
async def get_daily_clicks(
    short_code: str,
    start: datetime.datetime,
    end: datetime.datetime,
    ctx=Depends(get_request_context),
    service: LinkService = Depends(get_link_service),
    analytics: ClickAnalyticsService = Depends(get_analytics_service),
) -> dict[datetime.date, int]:
    link = await _find_link(service, short_code, ctx)
    try:
        return await analytics.daily_clicks(link.id, start, end)
    except InvalidArgumentError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@router.get("/api/analytics/{short_code}/hourly", response_model=dict[int, int], tags=["analytics"])
async def get_hourly_clicks(
    short_code: str,
    day: datetime.date,
    ctx=Depends(get_request_context),
    service: LinkService = Depends(get_link_service),
    analytics: ClickAnalyticsService = Depends(get_analytics_service),
) -> dict[int, int]:
    link = await _find_link(service, short_code, ctx)
    return await analytics.hourly_clicks(link.id, day)


@router.get("/api/analytics/{short_code}/recent", response_model=list[ClickEventResponse], tags=["analytics"])
async def get_recent_clicks(
    short_code: str,
    count: int = Query(10, ge=1, le=MAX_PAGE_SIZE),
    ctx=Depends(get_request_context),
    service: LinkService = Depends(get_link_service),
    analytics: ClickAnalyticsService = Depends(get_analytics_service),
) -> list[ClickEventResponse]:
    link = await _find_link(service, short_code, ctx)
    events = await analytics.recent_clicks(link.id, count)
    return [ClickEventResponse.model_validate(event) for event in events]


@router.get("/api/analytics/{short_code}/clicks", response_model=ClickPage, tags=["analytics"])
async def get_click_history(
    short_code: str,
    page: int = Query(1, ge=1),
    size: int = Query(50, ge=1, le=MAX_PAGE_SIZE),
    ctx=Depends(get_request_context),
    service: LinkService = Depends(get_link_service),
    analytics: ClickAnalyticsService = Depends(get_analytics_service),
) -> ClickPage:
    link = await _find_link(service, short_code, ctx)
    return await analytics.click_history(link.id, page, size)


@router.post("/api/maintenance/cleanup", response_model=CleanupResponse, tags=["maintenance"])
async def cleanup_clicks(
    older_than: datetime.datetime | None = None,
    retention_days: int | None = Query(None, ge=1),
    ctx=Depends(get_request_context),
    analytics: ClickAnalyticsService = Depends(get_analytics_service),
) -> CleanupResponse:
    if older_than is not None and retention_days is not None:
        raise HTTPException(status_code=400, detail="Pass either older_than or retention_days, not both")

    if older_than is not None:
        cutoff = older_than
    else:
        cutoff = analytics.cutoff_for(retention_days or ctx.settings.CLICK_RETENTION_DAYS)
    deleted = await analytics.delete_older_than(cutoff)
    return CleanupResponse(cutoff=cutoff, deleted=deleted)


# ============================================================================
# REDIRECT
# ============================================================================


@router.get("/{short_code}", tags=["redirect"])
async def redirect_to_url(
    short_code: str,
    request: Request,
    ctx=Depends(get_request_context),
    resolver: RedirectResolver = Depends(get_resolver),
    tracking: ClickTrackingData = Depends(get_tracking_data),
) -> Response:
    ctx.add_tag("redirect")
    try:
        resolution = await resolver.resolve(short_code, tracking)
    except InvalidArgumentError as exc:
        ctx.logger.warning(f"Malformed short code: {short_code}", extra={"operation": "redirect"})
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    ctx.logger.info(
        f"Redirect {resolution.status.value} for short code: {short_code}",
        extra={"operation": "redirect", "duration_ms": ctx.get_duration()},
    )
    return _resolution_response(resolution, request, tracking, ctx, success_status=307)


@router.post("/{short_code}/verify", tags=["redirect"])
async def verify_password(
    short_code: str,
    payload: PasswordVerify,
    request: Request,
    ctx=Depends(get_request_context),
    resolver: RedirectResolver = Depends(get_resolver),
    tracking: ClickTrackingData = Depends(get_tracking_data),
) -> Response:
    ctx.add_tag("verify")
    resolution = await resolver.verify_password_and_resolve(short_code, payload.password, tracking)
    ctx.logger.info(
        f"Password verification {resolution.status.value} for short code: {short_code}",
        extra={"operation": "verify", "duration_ms": ctx.get_duration()},
    )
    return _resolution_response(resolution, request, tracking, ctx, success_status=303)
