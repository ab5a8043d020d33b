"""Redirect resolution: short code in, redirect decision out.

Resolution Flow
===============
::
    ┌─────────────┐
    │ resolve()   │
    └──────┬──────┘
           ▼
    ┌─────────────┐  not in alphabet
    │ check code  │ ─────────────────▶ InvalidArgumentError (no I/O)
    └──────┬──────┘
           ▼
    ┌─────────────┐  miss (limited links always miss)
    │ projection  │ ─────────────────▶ store.find_link_projection()
    │ cache       │                          │
    └──────┬──────┘ ◀────────────────────────┘
           ▼
     not found ──────────────────────────────▶ NOT_FOUND
     expired / inactive / limit reached ─────▶ FORBIDDEN(reason)
     password protected ─────────────────────▶ PASSWORD_REQUIRED
           ▼
    ┌─────────────┐
    │ increment   │  conditional UPDATE, lost races are a debug log
    └──────┬──────┘
           ▼
    ┌─────────────┐
    │ enqueue     │  never awaits; workers persist the click event
    │ ClickJob    │
    └──────┬──────┘
           ▼
        SUCCESS(target_url)

How to Use
===========
**From a route**::
    resolver = RedirectResolver.from_context(ctx)
    resolution = await resolver.resolve(code, tracking)
    if resolution.status is ResolutionStatus.SUCCESS:
        return RedirectResponse(resolution.target_url, status_code=307)

Key Behaviours
===============
- Gating order is expired, then inactive, then click limit.
- Expiry is exclusive: a link expiring exactly at ``now`` is expired.
- Password failures are indistinguishable from unknown codes.
- The hash is read only on the verify path, never on plain redirects.
"""

import datetime
import logging
import time
from dataclasses import dataclass

from app.codec import is_valid_code
from app.config import Settings, get_settings
from app.enums import DenialReason, ResolutionStatus
from app.exceptions import InvalidArgumentError
from app.ingestion import ClickJob, ClickQueue
from app.metrics import CLICK_INCREMENTS_TOTAL, REDIRECTS_TOTAL, RESOLVE_DURATION
from app.models import utcnow
from app.passwords import verify_password
from app.redis import LinkProjectionCache
from app.repositories import ShortLinkStore, SQLAlchemyShortLinkStore
from app.schemas import ClickTrackingData, LinkProjection

__all__ = ["Resolution", "RedirectResolver"]


@dataclass(frozen=True)
class Resolution:
    status: ResolutionStatus
    reason: DenialReason | None = None
    target_url: str | None = None
    link_id: int | None = None

    @classmethod
    def success(cls, projection: LinkProjection) -> "Resolution":
        return cls(ResolutionStatus.SUCCESS, target_url=projection.original_url, link_id=projection.id)

    @classmethod
    def not_found(cls) -> "Resolution":
        return cls(ResolutionStatus.NOT_FOUND)

    @classmethod
    def forbidden(cls, reason: DenialReason, link_id: int) -> "Resolution":
        return cls(ResolutionStatus.FORBIDDEN, reason=reason, link_id=link_id)

    @classmethod
    def password_required(cls, link_id: int) -> "Resolution":
        return cls(ResolutionStatus.PASSWORD_REQUIRED, link_id=link_id)

    @classmethod
    def unauthorized(cls) -> "Resolution":
        return cls(ResolutionStatus.UNAUTHORIZED)

    @property
    def succeeded(self) -> bool:
        return self.status is ResolutionStatus.SUCCESS


class RedirectResolver:
    """Hot-path resolver for short codes.

    Example:
        >>> resolver = RedirectResolver(SQLAlchemyShortLinkStore(session))
        >>> resolution = await resolver.resolve("Ab3xQ9")
        >>> resolution.status
        <ResolutionStatus.SUCCESS: 'success'>
    """

    def __init__(
        self,
        store: ShortLinkStore,
        cache: LinkProjectionCache | None = None,
        click_queue: ClickQueue | None = None,
        logger: logging.Logger | logging.LoggerAdapter | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._store = store
        self._settings = settings or get_settings()
        self._cache = cache or LinkProjectionCache(None, self._settings.LINK_CACHE_TTL_SECONDS)
        self._click_queue = click_queue
        self._logger = logger or logging.getLogger(__name__)

    @classmethod
    def from_context(cls, ctx: "RequestContext") -> "RedirectResolver":  # noqa: F821
        return cls(
            store=SQLAlchemyShortLinkStore(ctx.database),
            cache=LinkProjectionCache(ctx.cache, ctx.settings.LINK_CACHE_TTL_SECONDS),
            click_queue=ctx.click_queue,
            logger=ctx.logger,
            settings=ctx.settings,
        )

    # ========================================================================
    # RESOLUTION
    # ========================================================================

    async def resolve(
        self,
        short_code: str,
        tracking: ClickTrackingData | None = None,
        now: datetime.datetime | None = None,
    ) -> Resolution:
        self._check_code(short_code)
        now = now or utcnow()
        start_time = time.perf_counter()

        projection = await self._load_projection(short_code)
        if projection is None:
            return self._finish(short_code, Resolution.not_found(), start_time)

        reason = projection.denial_reason(now)
        if reason is not None:
            return self._finish(short_code, Resolution.forbidden(reason, projection.id), start_time)

        if projection.is_password_protected:
            return self._finish(short_code, Resolution.password_required(projection.id), start_time)

        await self._record_click(projection, tracking, now)
        return self._finish(short_code, Resolution.success(projection), start_time)

    async def verify_password_and_resolve(
        self,
        short_code: str,
        password: str,
        tracking: ClickTrackingData | None = None,
        now: datetime.datetime | None = None,
    ) -> Resolution:
        if not password:
            raise InvalidArgumentError("Password cannot be empty")
        now = now or utcnow()
        start_time = time.perf_counter()

        if not is_valid_code(short_code):
            return self._finish(short_code, Resolution.unauthorized(), start_time)

        stored_hash = await self._store.get_password_hash(short_code)
        if not verify_password(password, stored_hash):
            return self._finish(short_code, Resolution.unauthorized(), start_time)

        projection = await self._store.find_link_projection(short_code)
        if projection is None:
            return self._finish(short_code, Resolution.unauthorized(), start_time)

        reason = projection.denial_reason(now)
        if reason is not None:
            return self._finish(short_code, Resolution.forbidden(reason, projection.id), start_time)

        await self._record_click(projection, tracking, now)
        return self._finish(short_code, Resolution.success(projection), start_time)

    # ========================================================================
    # PRE-FLIGHT CHECKS
    # ========================================================================

    async def is_valid(self, link_id: int, now: datetime.datetime | None = None) -> bool:
        return await self._store.is_valid(link_id, now or utcnow())

    async def is_active(self, link_id: int, now: datetime.datetime | None = None) -> bool:
        return await self._store.is_active(link_id, now or utcnow())

    async def is_click_limit_reached(self, link_id: int) -> bool:
        return await self._store.is_click_limit_reached(link_id)

    async def is_password_protected(self, link_id: int) -> bool:
        return await self._store.is_password_protected(link_id)

    # ========================================================================
    # PRIVATE HELPERS
    # ========================================================================

    @staticmethod
    def _check_code(short_code: str) -> None:
        if not is_valid_code(short_code):
            raise InvalidArgumentError(f"Malformed short code: {short_code!r}")

    async def _load_projection(self, short_code: str) -> LinkProjection | None:
        projection = await self._cache.get(short_code)
        if projection is not None:
            return projection

        projection = await self._store.find_link_projection(short_code)
        if projection is not None:
            await self._cache.set(projection)
        return projection

    async def _record_click(
        self, projection: LinkProjection, tracking: ClickTrackingData | None, now: datetime.datetime
    ) -> None:
        applied = await self._store.increment_click_atomic(projection.short_code, now)
        CLICK_INCREMENTS_TOTAL.labels(applied=str(applied).lower()).inc()
        if not applied:
            # the link changed state between the read and the update
            self._logger.debug(f"Click increment was a no-op for short code: {projection.short_code}")

        if tracking is not None and self._click_queue is not None:
            self._click_queue.enqueue(
                ClickJob(link_id=projection.id, short_code=projection.short_code, tracking=tracking, occurred_at=now)
            )

    def _finish(self, short_code: str, resolution: Resolution, start_time: float) -> Resolution:
        duration = time.perf_counter() - start_time
        RESOLVE_DURATION.observe(duration)
        reason = resolution.reason.value if resolution.reason else ""
        REDIRECTS_TOTAL.labels(status=resolution.status.value, reason=reason).inc()
        self._logger.debug(
            f"Resolved {short_code}: {resolution.status.value} {reason}".rstrip(),
            extra={"operation": "resolve", "short_code": short_code, "duration_ms": duration * 1000},
        )
        return resolution
