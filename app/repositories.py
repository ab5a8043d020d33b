"""Persistence contracts for short links and click events.

The resolver and the analytics service only see the abstract stores below.
The SQLAlchemy implementations work against any async SQLAlchemy backend
(PostgreSQL via asyncpg in production, SQLite via aiosqlite in tests).

Contract Overview
=================
::
    ShortLinkStore                         ClickEventStore
    ├─ find_link_projection(code)          ├─ insert_click_event(event)
    ├─ increment_click_atomic(code, now)   ├─ total_clicks / unique_visitors
    ├─ code_exists(code)                   ├─ clicks_by_{country, device_type,
    ├─ get_password_hash(code)             │   traffic_source, browser,
    ├─ is_valid / is_active /              │   operating_system}
    │  is_click_limit_reached /            ├─ top_referrers
    │  is_password_protected               ├─ daily_clicks / hourly_clicks
    ├─ create_link / get_link              ├─ recent_clicks / clicks_page /
    └─ update_code / update_expiration /   │  clicks_in_range
       set_active                          ├─ click_time_bounds
                                           └─ delete_clicks_older_than(cutoff)

Atomic Increment
================
::
    UPDATE short_links
       SET total_clicks = total_clicks + 1, updated_at = :now
     WHERE short_code = :code
       AND is_active
       AND (expires_at IS NULL OR expires_at > :now)
       AND (click_limit < 0 OR total_clicks < click_limit)

    rowcount == 1  → applied
    rowcount == 0  → link became invalid meanwhile (no-op, not an error)

Key Behaviours
===============
- The projection query selects only the gating columns, never the hash.
- Counters are never read-modified-written in Python.
- Every driver error is logged with operation, identifiers and duration
  and re-raised as StorageError; unique violations become ConflictError.
- Date ranges are inclusive on both ends; ordering is always by clicked_at.
- All methods are coroutines, so cancelling the calling task cancels them.
"""

import datetime
import logging
import time
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from sqlalchemy import delete, extract, func, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.enums import UNKNOWN
from app.exceptions import ConflictError, StorageError
from app.metrics import STORAGE_ERRORS_TOTAL
from app.models import PROJECTION_COLUMNS, ClickEvent, ShortLink
from app.schemas import LinkProjection, as_utc

__all__ = [
    "ShortLinkStore",
    "ClickEventStore",
    "SQLAlchemyShortLinkStore",
    "SQLAlchemyClickEventStore",
]

logger = logging.getLogger(__name__)


# ============================================================================
# CONTRACTS
# ============================================================================


class ShortLinkStore(ABC):
    """Link state reads and writes needed by resolution and management."""

    @abstractmethod
    async def find_link_projection(self, code: str) -> LinkProjection | None: ...

    @abstractmethod
    async def increment_click_atomic(self, code: str, now: datetime.datetime) -> bool: ...

    @abstractmethod
    async def code_exists(self, code: str) -> bool: ...

    @abstractmethod
    async def get_password_hash(self, code: str) -> str | None: ...

    @abstractmethod
    async def is_valid(self, link_id: int, now: datetime.datetime) -> bool: ...

    @abstractmethod
    async def is_active(self, link_id: int, now: datetime.datetime) -> bool: ...

    @abstractmethod
    async def is_click_limit_reached(self, link_id: int) -> bool: ...

    @abstractmethod
    async def is_password_protected(self, link_id: int) -> bool: ...

    @abstractmethod
    async def create_link(self, link: ShortLink, *, commit: bool = True) -> ShortLink: ...

    @abstractmethod
    async def assign_code(self, link: ShortLink, code: str) -> ShortLink: ...

    @abstractmethod
    async def get_link(self, code: str) -> ShortLink | None: ...

    @abstractmethod
    async def update_code(self, code: str, new_code: str) -> ShortLink | None: ...

    @abstractmethod
    async def update_expiration(self, code: str, expires_at: datetime.datetime | None) -> ShortLink | None: ...

    @abstractmethod
    async def set_active(self, code: str, active: bool) -> ShortLink | None: ...


class ClickEventStore(ABC):
    """Append-only click storage plus the aggregation queries over it."""

    @abstractmethod
    async def insert_click_event(self, event: ClickEvent) -> ClickEvent: ...

    @abstractmethod
    async def total_clicks(
        self, link_id: int, start: datetime.datetime | None = None, end: datetime.datetime | None = None
    ) -> int: ...

    @abstractmethod
    async def unique_visitors(
        self, link_id: int, start: datetime.datetime | None = None, end: datetime.datetime | None = None
    ) -> int: ...

    @abstractmethod
    async def clicks_by_country(
        self, link_id: int, start: datetime.datetime | None = None, end: datetime.datetime | None = None
    ) -> dict[str | None, int]: ...

    @abstractmethod
    async def clicks_by_device_type(
        self, link_id: int, start: datetime.datetime | None = None, end: datetime.datetime | None = None
    ) -> dict[str, int]: ...

    @abstractmethod
    async def clicks_by_traffic_source(
        self, link_id: int, start: datetime.datetime | None = None, end: datetime.datetime | None = None
    ) -> dict[str, int]: ...

    @abstractmethod
    async def clicks_by_browser(
        self, link_id: int, start: datetime.datetime | None = None, end: datetime.datetime | None = None
    ) -> dict[str, int]: ...

    @abstractmethod
    async def clicks_by_operating_system(
        self, link_id: int, start: datetime.datetime | None = None, end: datetime.datetime | None = None
    ) -> dict[str, int]: ...

    @abstractmethod
    async def top_referrers(
        self,
        link_id: int,
        limit: int = 10,
        start: datetime.datetime | None = None,
        end: datetime.datetime | None = None,
    ) -> list[tuple[str, int]]: ...

    @abstractmethod
    async def daily_clicks(
        self, link_id: int, start: datetime.datetime, end: datetime.datetime
    ) -> dict[datetime.date, int]: ...

    @abstractmethod
    async def hourly_clicks(self, link_id: int, day: datetime.date) -> dict[int, int]: ...

    @abstractmethod
    async def recent_clicks(self, link_id: int, count: int) -> list[ClickEvent]: ...

    @abstractmethod
    async def clicks_page(self, link_id: int, page: int, size: int) -> list[ClickEvent]: ...

    @abstractmethod
    async def clicks_in_range(
        self,
        start: datetime.datetime,
        end: datetime.datetime,
        link_id: int | None = None,
        page: int = 1,
        size: int = 50,
    ) -> list[ClickEvent]: ...

    @abstractmethod
    async def click_time_bounds(
        self, link_id: int, start: datetime.datetime | None = None, end: datetime.datetime | None = None
    ) -> tuple[datetime.datetime | None, datetime.datetime | None]: ...

    @abstractmethod
    async def delete_clicks_older_than(self, cutoff: datetime.datetime) -> int: ...


# ============================================================================
# SHARED SQLALCHEMY PLUMBING
# ============================================================================


class _SQLAlchemyStore:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    @asynccontextmanager
    async def _guard(self, operation: str, **context: Any) -> AsyncIterator[None]:
        """Translate driver errors into StorageError with full context."""
        start_time = time.perf_counter()
        try:
            yield
        except SQLAlchemyError as exc:
            await self._session.rollback()
            duration_ms = (time.perf_counter() - start_time) * 1000
            STORAGE_ERRORS_TOTAL.labels(operation=operation).inc()
            logger.error(
                f"Storage failure during {operation}: {exc}",
                extra={"operation": operation, "duration_ms": duration_ms, **context},
                exc_info=True,
            )
            raise StorageError(operation, f"Failed to {operation.replace('_', ' ')}") from exc

    async def _exists(self, stmt) -> bool:
        result = await self._session.execute(stmt.limit(1))
        return result.first() is not None


# ============================================================================
# SHORT LINKS
# ============================================================================


class SQLAlchemyShortLinkStore(_SQLAlchemyStore, ShortLinkStore):
    async def find_link_projection(self, code: str) -> LinkProjection | None:
        async with self._guard("find_link_projection", short_code=code):
            result = await self._session.execute(
                select(*PROJECTION_COLUMNS).where(ShortLink.short_code == code)
            )
            row = result.mappings().first()
        return LinkProjection.model_validate(dict(row)) if row else None

    async def increment_click_atomic(self, code: str, now: datetime.datetime) -> bool:
        stmt = (
            update(ShortLink)
            .where(
                ShortLink.short_code == code,
                ShortLink.is_active.is_(True),
                or_(ShortLink.expires_at.is_(None), ShortLink.expires_at > now),
                or_(ShortLink.click_limit < 0, ShortLink.total_clicks < ShortLink.click_limit),
            )
            .values(total_clicks=ShortLink.total_clicks + 1, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        async with self._guard("increment_click", short_code=code):
            result = await self._session.execute(stmt)
            await self._session.commit()
        applied = result.rowcount > 0
        if applied:
            logger.debug(f"Incremented click count for short code: {code}")
        return applied

    async def code_exists(self, code: str) -> bool:
        async with self._guard("check_code_exists", short_code=code):
            return await self._exists(select(ShortLink.id).where(ShortLink.short_code == code))

    async def get_password_hash(self, code: str) -> str | None:
        async with self._guard("get_password_hash", short_code=code):
            result = await self._session.execute(
                select(ShortLink.password_hash).where(
                    ShortLink.short_code == code, ShortLink.is_password_protected.is_(True)
                )
            )
            return result.scalar_one_or_none()

    async def is_valid(self, link_id: int, now: datetime.datetime) -> bool:
        async with self._guard("check_valid", link_id=link_id):
            return await self._exists(
                select(ShortLink.id).where(
                    ShortLink.id == link_id,
                    or_(ShortLink.expires_at.is_(None), ShortLink.expires_at > now),
                )
            )

    async def is_active(self, link_id: int, now: datetime.datetime) -> bool:
        async with self._guard("check_active", link_id=link_id):
            return await self._exists(
                select(ShortLink.id).where(
                    ShortLink.id == link_id,
                    ShortLink.is_active.is_(True),
                    or_(ShortLink.expires_at.is_(None), ShortLink.expires_at > now),
                )
            )

    async def is_click_limit_reached(self, link_id: int) -> bool:
        async with self._guard("check_click_limit", link_id=link_id):
            return await self._exists(
                select(ShortLink.id).where(
                    ShortLink.id == link_id,
                    ShortLink.click_limit >= 0,
                    ShortLink.total_clicks >= ShortLink.click_limit,
                )
            )

    async def is_password_protected(self, link_id: int) -> bool:
        async with self._guard("check_password_protected", link_id=link_id):
            return await self._exists(
                select(ShortLink.id).where(ShortLink.id == link_id, ShortLink.is_password_protected.is_(True))
            )

    async def create_link(self, link: ShortLink, *, commit: bool = True) -> ShortLink:
        """Insert a link. Without ``commit`` the row is only flushed so its id is known."""
        async with self._guard("create_link", short_code=link.short_code):
            try:
                self._session.add(link)
                if commit:
                    await self._session.commit()
                    await self._session.refresh(link)
                else:
                    await self._session.flush()
            except IntegrityError as exc:
                await self._session.rollback()
                raise ConflictError(f"Short code '{link.short_code}' is already taken") from exc
        return link

    async def assign_code(self, link: ShortLink, code: str) -> ShortLink:
        async with self._guard("assign_code", link_id=link.id, short_code=code):
            try:
                link.short_code = code
                await self._session.commit()
                await self._session.refresh(link)
            except IntegrityError as exc:
                await self._session.rollback()
                raise ConflictError(f"Short code '{code}' collision detected") from exc
        return link

    async def get_link(self, code: str) -> ShortLink | None:
        async with self._guard("get_link", short_code=code):
            # total_clicks changes through bulk UPDATEs that bypass the identity map
            result = await self._session.execute(
                select(ShortLink).where(ShortLink.short_code == code).execution_options(populate_existing=True)
            )
            return result.scalar_one_or_none()

    async def _mutate(self, operation: str, code: str, **values: Any) -> ShortLink | None:
        link = await self.get_link(code)
        if link is None:
            return None
        async with self._guard(operation, short_code=code):
            try:
                for name, value in values.items():
                    setattr(link, name, value)
                await self._session.commit()
                await self._session.refresh(link)
            except IntegrityError as exc:
                await self._session.rollback()
                raise ConflictError(f"Short code '{values.get('short_code')}' is already taken") from exc
        return link

    async def update_code(self, code: str, new_code: str) -> ShortLink | None:
        return await self._mutate("update_code", code, short_code=new_code)

    async def update_expiration(self, code: str, expires_at: datetime.datetime | None) -> ShortLink | None:
        return await self._mutate("update_expiration", code, expires_at=expires_at)

    async def set_active(self, code: str, active: bool) -> ShortLink | None:
        return await self._mutate("set_active", code, is_active=active)


# ============================================================================
# CLICK EVENTS
# ============================================================================


def _range_filters(
    link_id: int | None, start: datetime.datetime | None, end: datetime.datetime | None
) -> list:
    clauses = []
    if link_id is not None:
        clauses.append(ClickEvent.short_link_id == link_id)
    if start is not None:
        clauses.append(ClickEvent.clicked_at >= start)
    if end is not None:
        clauses.append(ClickEvent.clicked_at <= end)
    return clauses


def _as_date(value: Any) -> datetime.date:
    # PostgreSQL returns a date, SQLite an ISO string
    if isinstance(value, datetime.datetime):
        return value.date()
    if isinstance(value, datetime.date):
        return value
    return datetime.date.fromisoformat(str(value)[:10])


class SQLAlchemyClickEventStore(_SQLAlchemyStore, ClickEventStore):
    async def insert_click_event(self, event: ClickEvent) -> ClickEvent:
        async with self._guard("insert_click_event", link_id=event.short_link_id):
            self._session.add(event)
            await self._session.commit()
        return event

    async def total_clicks(self, link_id, start=None, end=None) -> int:
        async with self._guard("total_clicks", link_id=link_id):
            result = await self._session.execute(
                select(func.count(ClickEvent.id)).where(*_range_filters(link_id, start, end))
            )
            return int(result.scalar_one())

    async def unique_visitors(self, link_id, start=None, end=None) -> int:
        async with self._guard("unique_visitors", link_id=link_id):
            result = await self._session.execute(
                select(func.count(func.distinct(ClickEvent.session_id))).where(
                    *_range_filters(link_id, start, end)
                )
            )
            return int(result.scalar_one())

    async def _group_counts(
        self,
        operation: str,
        column,
        link_id: int,
        start: datetime.datetime | None,
        end: datetime.datetime | None,
        normalize: bool = True,
    ) -> dict:
        stmt = (
            select(column, func.count(ClickEvent.id))
            .where(*_range_filters(link_id, start, end))
            .group_by(column)
        )
        async with self._guard(operation, link_id=link_id):
            rows = (await self._session.execute(stmt)).all()

        counts: dict = {}
        for value, clicks in rows:
            key = (value or UNKNOWN) if normalize else value
            counts[key] = counts.get(key, 0) + int(clicks)
        return counts

    async def clicks_by_country(self, link_id, start=None, end=None) -> dict[str | None, int]:
        # grouped by the literal stored value, None included
        return await self._group_counts("clicks_by_country", ClickEvent.country, link_id, start, end, normalize=False)

    async def clicks_by_device_type(self, link_id, start=None, end=None) -> dict[str, int]:
        return await self._group_counts("clicks_by_device_type", ClickEvent.device_type, link_id, start, end)

    async def clicks_by_traffic_source(self, link_id, start=None, end=None) -> dict[str, int]:
        return await self._group_counts("clicks_by_traffic_source", ClickEvent.traffic_source, link_id, start, end)

    async def clicks_by_browser(self, link_id, start=None, end=None) -> dict[str, int]:
        return await self._group_counts("clicks_by_browser", ClickEvent.browser, link_id, start, end)

    async def clicks_by_operating_system(self, link_id, start=None, end=None) -> dict[str, int]:
        return await self._group_counts(
            "clicks_by_operating_system", ClickEvent.operating_system, link_id, start, end
        )

    async def top_referrers(self, link_id, limit=10, start=None, end=None) -> list[tuple[str, int]]:
        clicks = func.count(ClickEvent.id)
        stmt = (
            select(ClickEvent.referrer_domain, clicks)
            .where(
                *_range_filters(link_id, start, end),
                ClickEvent.referrer_domain.is_not(None),
                ClickEvent.referrer_domain != "",
            )
            .group_by(ClickEvent.referrer_domain)
            .order_by(clicks.desc(), ClickEvent.referrer_domain)
            .limit(limit)
        )
        async with self._guard("top_referrers", link_id=link_id):
            rows = (await self._session.execute(stmt)).all()
        return [(domain, int(count)) for domain, count in rows]

    async def daily_clicks(self, link_id, start, end) -> dict[datetime.date, int]:
        day = func.date(ClickEvent.clicked_at)
        stmt = (
            select(day, func.count(ClickEvent.id))
            .where(*_range_filters(link_id, start, end))
            .group_by(day)
            .order_by(day)
        )
        async with self._guard("daily_clicks", link_id=link_id):
            rows = (await self._session.execute(stmt)).all()
        return {_as_date(value): int(count) for value, count in rows}

    async def hourly_clicks(self, link_id, day) -> dict[int, int]:
        start = datetime.datetime.combine(day, datetime.time.min, tzinfo=datetime.UTC)
        end = start + datetime.timedelta(days=1)
        hour = extract("hour", ClickEvent.clicked_at)
        stmt = (
            select(hour, func.count(ClickEvent.id))
            .where(
                ClickEvent.short_link_id == link_id,
                ClickEvent.clicked_at >= start,
                ClickEvent.clicked_at < end,
            )
            .group_by(hour)
            .order_by(hour)
        )
        async with self._guard("hourly_clicks", link_id=link_id):
            rows = (await self._session.execute(stmt)).all()
        return {int(value): int(count) for value, count in rows}

    async def _fetch_events(self, operation: str, stmt, **context: Any) -> list[ClickEvent]:
        async with self._guard(operation, **context):
            result = await self._session.execute(stmt)
            return list(result.scalars().all())

    async def recent_clicks(self, link_id, count) -> list[ClickEvent]:
        stmt = (
            select(ClickEvent)
            .where(ClickEvent.short_link_id == link_id)
            .order_by(ClickEvent.clicked_at.desc())
            .limit(count)
        )
        return await self._fetch_events("recent_clicks", stmt, link_id=link_id)

    async def clicks_page(self, link_id, page, size) -> list[ClickEvent]:
        stmt = (
            select(ClickEvent)
            .where(ClickEvent.short_link_id == link_id)
            .order_by(ClickEvent.clicked_at.desc())
            .offset((page - 1) * size)
            .limit(size)
        )
        return await self._fetch_events("clicks_page", stmt, link_id=link_id)

    async def clicks_in_range(self, start, end, link_id=None, page=1, size=50) -> list[ClickEvent]:
        stmt = (
            select(ClickEvent)
            .where(*_range_filters(link_id, start, end))
            .order_by(ClickEvent.clicked_at.desc())
            .offset((page - 1) * size)
            .limit(size)
        )
        return await self._fetch_events("clicks_in_range", stmt, link_id=link_id)

    async def click_time_bounds(
        self, link_id, start=None, end=None
    ) -> tuple[datetime.datetime | None, datetime.datetime | None]:
        async with self._guard("click_time_bounds", link_id=link_id):
            result = await self._session.execute(
                select(func.min(ClickEvent.clicked_at), func.max(ClickEvent.clicked_at)).where(
                    *_range_filters(link_id, start, end)
                )
            )
            first, last = result.one()
        return as_utc(first), as_utc(last)

    async def delete_clicks_older_than(self, cutoff: datetime.datetime) -> int:
        async with self._guard("delete_clicks_older_than", cutoff=cutoff.isoformat()):
            result = await self._session.execute(
                delete(ClickEvent)
                .where(ClickEvent.clicked_at < cutoff)
                .execution_options(synchronize_session=False)
            )
            await self._session.commit()
        return int(result.rowcount or 0)

