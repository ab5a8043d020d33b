"""Read-side analytics over stored click events.

Every query is scoped to a link id (``clicks_in_range`` may span all links)
and optionally to an inclusive ``[start, end]`` window.

Summary Assembly
================
::
    summary(link_id, start, end)
    ├─ total_clicks / unique_visitors
    ├─ first_click_at / last_click_at
    ├─ clicks_by_country          None merged into "Unknown"
    ├─ clicks_by_device_type / traffic_source / browser / operating_system
    ├─ top_referrers              descending by clicks
    ├─ daily_clicks               only with a range, days without clicks absent
    └─ hourly_clicks              only with a range, for the end day

How to Use
===========
**From a route**::
    analytics = ClickAnalyticsService.from_context(ctx)
    report = await analytics.summary(link.id, start, end)

**Retention**::
    deleted = await analytics.cleanup(retention_days=90)

Key Behaviours
===============
- Argument errors raise InvalidArgumentError before touching storage.
- Datetimes are normalised to UTC; naive values are taken as UTC.
- ``realtime`` is the summary of the 24 hours ending now.
- Cleanup deletes strictly older rows; a click exactly at the cutoff stays.
"""

import datetime
import logging
import time

from app.config import Settings, get_settings
from app.enums import UNKNOWN
from app.exceptions import InvalidArgumentError
from app.models import ClickEvent, utcnow
from app.repositories import ClickEventStore, SQLAlchemyClickEventStore
from app.schemas import ClickAnalytics, ClickEventResponse, ClickPage, ReferrerCount, as_utc

__all__ = ["ClickAnalyticsService", "MAX_PAGE_SIZE", "REALTIME_WINDOW"]

MAX_PAGE_SIZE = 1000
REALTIME_WINDOW = datetime.timedelta(hours=24)


def _check_range(
    start: datetime.datetime | None, end: datetime.datetime | None
) -> tuple[datetime.datetime | None, datetime.datetime | None]:
    start, end = as_utc(start), as_utc(end)
    if start is not None and end is not None and start > end:
        raise InvalidArgumentError("start must not be after end")
    return start, end


def _check_page(page: int, size: int) -> None:
    if page < 1:
        raise InvalidArgumentError(f"page must be >= 1, got {page}")
    if not 1 <= size <= MAX_PAGE_SIZE:
        raise InvalidArgumentError(f"size must be between 1 and {MAX_PAGE_SIZE}, got {size}")


class ClickAnalyticsService:
    def __init__(
        self,
        store: ClickEventStore,
        logger: logging.Logger | logging.LoggerAdapter | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._store = store
        self._logger = logger or logging.getLogger(__name__)
        self._settings = settings or get_settings()

    @classmethod
    def from_context(cls, ctx: "RequestContext") -> "ClickAnalyticsService":  # noqa: F821
        return cls(SQLAlchemyClickEventStore(ctx.database), logger=ctx.logger, settings=ctx.settings)

    # ========================================================================
    # COUNTS AND BREAKDOWNS
    # ========================================================================

    async def total_clicks(self, link_id: int, start=None, end=None) -> int:
        start, end = _check_range(start, end)
        return await self._store.total_clicks(link_id, start, end)

    async def unique_visitors(self, link_id: int, start=None, end=None) -> int:
        start, end = _check_range(start, end)
        return await self._store.unique_visitors(link_id, start, end)

    async def clicks_by_country(self, link_id: int, start=None, end=None) -> dict[str | None, int]:
        start, end = _check_range(start, end)
        return await self._store.clicks_by_country(link_id, start, end)

    async def clicks_by_device_type(self, link_id: int, start=None, end=None) -> dict[str, int]:
        start, end = _check_range(start, end)
        return await self._store.clicks_by_device_type(link_id, start, end)

    async def clicks_by_traffic_source(self, link_id: int, start=None, end=None) -> dict[str, int]:
        start, end = _check_range(start, end)
        return await self._store.clicks_by_traffic_source(link_id, start, end)

    async def clicks_by_browser(self, link_id: int, start=None, end=None) -> dict[str, int]:
        start, end = _check_range(start, end)
        return await self._store.clicks_by_browser(link_id, start, end)

    async def clicks_by_operating_system(self, link_id: int, start=None, end=None) -> dict[str, int]:
        start, end = _check_range(start, end)
        return await self._store.clicks_by_operating_system(link_id, start, end)

    async def top_referrers(self, link_id: int, limit: int = 10, start=None, end=None) -> list[ReferrerCount]:
        if limit < 1:
            raise InvalidArgumentError(f"limit must be >= 1, got {limit}")
        start, end = _check_range(start, end)
        rows = await self._store.top_referrers(link_id, limit, start, end)
        return [ReferrerCount(domain=domain, clicks=clicks) for domain, clicks in rows]

    # ========================================================================
    # TIME SERIES
    # ========================================================================

    async def daily_clicks(
        self, link_id: int, start: datetime.datetime, end: datetime.datetime
    ) -> dict[datetime.date, int]:
        if start is None or end is None:
            raise InvalidArgumentError("daily_clicks requires both start and end")
        start, end = _check_range(start, end)
        return await self._store.daily_clicks(link_id, start, end)

    async def hourly_clicks(self, link_id: int, day: datetime.date) -> dict[int, int]:
        if isinstance(day, datetime.datetime):
            day = as_utc(day).date()
        return await self._store.hourly_clicks(link_id, day)

    # ========================================================================
    # EVENT LISTINGS
    # ========================================================================

    async def recent_clicks(self, link_id: int, count: int = 10) -> list[ClickEvent]:
        if not 1 <= count <= MAX_PAGE_SIZE:
            raise InvalidArgumentError(f"count must be between 1 and {MAX_PAGE_SIZE}, got {count}")
        return await self._store.recent_clicks(link_id, count)

    async def click_history(self, link_id: int, page: int = 1, size: int = 50) -> ClickPage:
        _check_page(page, size)
        items = await self._store.clicks_page(link_id, page, size)
        total_count = await self._store.total_clicks(link_id)
        return ClickPage(
            items=[ClickEventResponse.model_validate(item) for item in items],
            total_count=total_count,
            page=page,
            size=size,
        )

    async def clicks_in_range(
        self,
        start: datetime.datetime,
        end: datetime.datetime,
        link_id: int | None = None,
        page: int = 1,
        size: int = 50,
    ) -> list[ClickEvent]:
        if start is None or end is None:
            raise InvalidArgumentError("clicks_in_range requires both start and end")
        _check_page(page, size)
        start, end = _check_range(start, end)
        return await self._store.clicks_in_range(start, end, link_id, page, size)

    # ========================================================================
    # REPORTS
    # ========================================================================

    async def summary(self, link_id: int, start=None, end=None) -> ClickAnalytics:
        start, end = _check_range(start, end)
        start_time = time.perf_counter()

        countries: dict[str, int] = {}
        for country, clicks in (await self._store.clicks_by_country(link_id, start, end)).items():
            key = country or UNKNOWN
            countries[key] = countries.get(key, 0) + clicks

        first_click_at, last_click_at = await self._store.click_time_bounds(link_id, start, end)
        report = ClickAnalytics(
            short_link_id=link_id,
            start_date=start,
            end_date=end,
            total_clicks=await self._store.total_clicks(link_id, start, end),
            unique_visitors=await self._store.unique_visitors(link_id, start, end),
            first_click_at=first_click_at,
            last_click_at=last_click_at,
            clicks_by_country=countries,
            clicks_by_device_type=await self._store.clicks_by_device_type(link_id, start, end),
            clicks_by_traffic_source=await self._store.clicks_by_traffic_source(link_id, start, end),
            clicks_by_browser=await self._store.clicks_by_browser(link_id, start, end),
            clicks_by_operating_system=await self._store.clicks_by_operating_system(link_id, start, end),
            top_referrers=[
                ReferrerCount(domain=domain, clicks=clicks)
                for domain, clicks in await self._store.top_referrers(link_id, 10, start, end)
            ],
            generated_at=utcnow(),
        )
        if start is not None and end is not None:
            report.daily_clicks = await self._store.daily_clicks(link_id, start, end)
            report.hourly_clicks = await self._store.hourly_clicks(link_id, end.date())

        self._logger.info(
            f"Analytics summary built for link {link_id}: {report.total_clicks} clicks",
            extra={"operation": "analytics_summary", "duration_ms": (time.perf_counter() - start_time) * 1000},
        )
        return report

    async def realtime(self, link_id: int, now: datetime.datetime | None = None) -> ClickAnalytics:
        end = as_utc(now) or utcnow()
        return await self.summary(link_id, end - REALTIME_WINDOW, end)

    # ========================================================================
    # RETENTION
    # ========================================================================

    async def delete_older_than(self, cutoff: datetime.datetime) -> int:
        if cutoff is None:
            raise InvalidArgumentError("cutoff is required")
        cutoff = as_utc(cutoff)
        deleted = await self._store.delete_clicks_older_than(cutoff)
        self._logger.info(
            f"Deleted {deleted} click events older than {cutoff.isoformat()}",
            extra={"operation": "cleanup", "cutoff": cutoff.isoformat(), "deleted": deleted},
        )
        return deleted

    async def cleanup(self, retention_days: int | None = None, now: datetime.datetime | None = None) -> int:
        days = self._settings.CLICK_RETENTION_DAYS if retention_days is None else retention_days
        if days < 1:
            raise InvalidArgumentError(f"retention_days must be >= 1, got {days}")
        return await self.delete_older_than(self.cutoff_for(days, now))

    @staticmethod
    def cutoff_for(retention_days: int, now: datetime.datetime | None = None) -> datetime.datetime:
        return (as_utc(now) or utcnow()) - datetime.timedelta(days=retention_days)
