"""Click ingestion: bounded in-process queue plus enrichment workers.

The redirect handler pushes a :class:`ClickJob` and returns immediately.
Worker tasks drain the queue, enrich each click and insert one
``click_events`` row per job in their own database session.

Pipeline Diagram
================
::
    redirect handler                       worker task(s)
    ────────────────                       ──────────────
    ClickQueue.enqueue(job)  ──▶ [ bounded asyncio.Queue ] ──▶ process(job)
      never awaits                 full? drop oldest + log        │
                                                                  ▼
                                                     build raw ClickEvent
                                                                  │
                                   ┌──────────────────────────────┼───────────────┐
                                   ▼                              ▼               ▼
                             user agent parse               geo lookup     traffic source
                             (fails → Unknown)          (fails → Unknown) (fails → Unknown)
                                   └──────────────────────────────┬───────────────┘
                                                                  ▼
                                                       insert_click_event()
                                                  (failure logged, never raised)

How to Use
===========
**Producer side**::
    queue.enqueue(ClickJob(link_id=link.id, short_code=code, tracking=data))

**Consumer side**::
    worker = ClickIngestionWorker(queue, async_session, geo_locator)
    worker.start(count=2)
    ...
    await worker.stop()

Key Behaviours
===============
- The queue is bounded; overflow drops the oldest job, not the newest.
- Enrichment stages fail independently and degrade to "Unknown".
- If the worker is cancelled mid-enrichment the raw event is still saved,
  with every stage it never reached recorded as "Unknown".
- Insert failures of any kind are logged with short code, timestamp and stage
  and never stop the worker.

Classes:
    ClickJob:  One click waiting to be ingested.
    ClickQueue:  Non-blocking bounded queue with drop-oldest overflow.
    ClickEnricher:  Applies the three enrichment stages to an event.
    ClickIngestionWorker:  Consumer tasks writing click events.
"""

import asyncio
import datetime
import logging
from collections.abc import Callable
from dataclasses import dataclass, field

from sqlalchemy.ext.asyncio import AsyncSession

from app.enums import UNKNOWN, TrafficSource
from app.geolocation import GeoLocator, NullGeoLocator
from app.metrics import (
    CLICK_EVENTS_FAILED_TOTAL,
    CLICK_EVENTS_PERSISTED_TOTAL,
    CLICKS_DROPPED_TOTAL,
    CLICKS_ENQUEUED_TOTAL,
    ENRICHMENT_FAILURES_TOTAL,
)
from app.models import ClickEvent, utcnow
from app.repositories import SQLAlchemyClickEventStore
from app.schemas import ClickTrackingData
from app.traffic_source import TrafficSourceClassifier
from app.user_agent import UserAgentParser

__all__ = ["ClickJob", "ClickQueue", "ClickEnricher", "ClickIngestionWorker", "build_click_event"]

logger = logging.getLogger(__name__)


# ============================================================================
# QUEUE
# ============================================================================


@dataclass
class ClickJob:
    link_id: int
    short_code: str
    tracking: ClickTrackingData
    occurred_at: datetime.datetime = field(default_factory=utcnow)


class ClickQueue:
    """Bounded queue shared by the redirect path and the ingestion workers."""

    def __init__(self, capacity: int) -> None:
        if capacity < 1:
            raise ValueError(f"capacity must be positive, got {capacity}")
        self._queue: asyncio.Queue[ClickJob] = asyncio.Queue(maxsize=capacity)
        self.dropped = 0

    @property
    def capacity(self) -> int:
        return self._queue.maxsize

    def qsize(self) -> int:
        return self._queue.qsize()

    def empty(self) -> bool:
        return self._queue.empty()

    def enqueue(self, job: ClickJob) -> bool:
        """Push without waiting. Returns False when an older job had to be dropped."""
        dropped_any = False
        while True:
            try:
                self._queue.put_nowait(job)
                break
            except asyncio.QueueFull:
                try:
                    oldest = self._queue.get_nowait()
                except asyncio.QueueEmpty:
                    continue
                self._queue.task_done()
                self.dropped += 1
                dropped_any = True
                CLICKS_DROPPED_TOTAL.inc()
                logger.warning(
                    f"Click queue full ({self.capacity}); dropped oldest click for {oldest.short_code}",
                    extra={"short_code": oldest.short_code, "occurred_at": oldest.occurred_at.isoformat()},
                )

        CLICKS_ENQUEUED_TOTAL.inc()
        return not dropped_any

    async def get(self) -> ClickJob:
        return await self._queue.get()

    def get_nowait(self) -> ClickJob:
        return self._queue.get_nowait()

    def task_done(self) -> None:
        self._queue.task_done()

    async def join(self) -> None:
        await self._queue.join()


# ============================================================================
# ENRICHMENT
# ============================================================================


class ClickEnricher:
    """Runs each enrichment stage on its own so one failure never hides another."""

    def __init__(
        self,
        geo_locator: GeoLocator | None = None,
        user_agent_parser: UserAgentParser | None = None,
        traffic_classifier: TrafficSourceClassifier | None = None,
    ) -> None:
        self._geo = geo_locator or NullGeoLocator()
        self._ua = user_agent_parser or UserAgentParser()
        self._traffic = traffic_classifier or TrafficSourceClassifier()

    def apply_user_agent(self, event: ClickEvent) -> None:
        try:
            info = self._ua.parse(event.user_agent)
        except Exception:
            self._failed("user_agent", event)
            info = None
        event.browser = info.browser_label if info else UNKNOWN
        event.operating_system = info.os_label if info else UNKNOWN
        event.device = info.device if info else UNKNOWN
        event.device_type = info.device_type if info else UNKNOWN

    def apply_traffic_source(self, event: ClickEvent) -> None:
        try:
            info = self._traffic.classify(event.referrer, event.utm_source, event.utm_medium)
            event.traffic_source = info.source.value
            event.referrer_domain = info.referrer_domain
        except Exception:
            self._failed("traffic_source", event)
            event.traffic_source = TrafficSource.UNKNOWN.value

    async def apply_geolocation(self, event: ClickEvent) -> None:
        try:
            location = await self._geo.locate(event.ip_address)
            event.country = location.country
            event.city = location.city
        except Exception:
            self._failed("geolocation", event)
            event.country = UNKNOWN
            event.city = UNKNOWN

    async def enrich(self, event: ClickEvent) -> None:
        # local stages first so a cancelled geo lookup still leaves them filled
        self.apply_user_agent(event)
        self.apply_traffic_source(event)
        await self.apply_geolocation(event)

    @staticmethod
    def _failed(stage: str, event: ClickEvent) -> None:
        ENRICHMENT_FAILURES_TOTAL.labels(stage=stage).inc()
        logger.warning(
            f"Enrichment stage {stage} failed for link {event.short_link_id}",
            extra={"stage": "persist", "link_id": event.short_link_id},
            exc_info=True,
        )


# ============================================================================
# WORKER
# ============================================================================


def build_click_event(job: ClickJob) -> ClickEvent:
    tracking = job.tracking
    return ClickEvent(
        short_link_id=job.link_id,
        clicked_at=job.occurred_at,
        ip_address=tracking.ip_address,
        session_id=tracking.session_id,
        user_agent=tracking.user_agent or UNKNOWN,
        referrer=tracking.referrer,
        utm_source=tracking.utm_source,
        utm_medium=tracking.utm_medium,
        utm_campaign=tracking.utm_campaign,
        utm_term=tracking.utm_term,
        utm_content=tracking.utm_content,
    )


ENRICHED_FIELDS = ("browser", "operating_system", "device", "device_type", "traffic_source", "country", "city")


def mark_unenriched(event: ClickEvent) -> None:
    """Set every enrichment field the pipeline never reached to Unknown."""
    for name in ENRICHED_FIELDS:
        if getattr(event, name) is None:
            setattr(event, name, UNKNOWN)


class ClickIngestionWorker:
    """Consumer side of the click queue."""

    def __init__(
        self,
        queue: ClickQueue,
        session_factory: Callable[[], AsyncSession],
        geo_locator: GeoLocator | None = None,
        enricher: ClickEnricher | None = None,
    ) -> None:
        self._queue = queue
        self._session_factory = session_factory
        self._enricher = enricher or ClickEnricher(geo_locator)
        self._tasks: list[asyncio.Task] = []
        self.processed = 0
        self.failed = 0

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    def start(self, count: int = 1) -> None:
        if self.running:
            return
        self._tasks = [
            asyncio.create_task(self._run(index), name=f"click-ingestion-{index}") for index in range(count)
        ]
        logger.info(f"Click ingestion started with {count} worker(s)")

    async def stop(self, drain: bool = True) -> None:
        """Cancel the worker tasks, then optionally flush what is still queued."""
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        if drain:
            await self.drain()
        logger.info(f"Click ingestion stopped (processed={self.processed}, failed={self.failed})")

    async def drain(self) -> int:
        """Process every job currently queued. Returns how many were handled."""
        handled = 0
        while not self._queue.empty():
            job = self._queue.get_nowait()
            try:
                await self.process(job)
            finally:
                self._queue.task_done()
            handled += 1
        return handled

    async def _run(self, index: int) -> None:
        while True:
            job = await self._queue.get()
            try:
                await self.process(job)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception(f"Unexpected error in click ingestion worker {index}")
            finally:
                self._queue.task_done()

    async def process(self, job: ClickJob) -> bool:
        """Enrich and persist one click. Returns whether the row was written."""
        event = build_click_event(job)
        try:
            await self._enricher.enrich(event)
        except asyncio.CancelledError:
            logger.warning(
                f"Ingestion cancelled during enrichment; saving raw click for {job.short_code}",
                extra={"short_code": job.short_code, "stage": "enrichment"},
            )
            mark_unenriched(event)
            await self._persist(job, event, enriched=False)
            raise
        return await self._persist(job, event, enriched=True)

    async def _persist(self, job: ClickJob, event: ClickEvent, enriched: bool) -> bool:
        try:
            async with self._session_factory() as session:
                await SQLAlchemyClickEventStore(session).insert_click_event(event)
        except Exception:
            self.failed += 1
            CLICK_EVENTS_FAILED_TOTAL.inc()
            logger.error(
                f"Failed to persist click for {job.short_code} at {job.occurred_at.isoformat()}",
                extra={
                    "short_code": job.short_code,
                    "link_id": job.link_id,
                    "occurred_at": job.occurred_at.isoformat(),
                    "stage": "persist",
                },
                exc_info=True,
            )
            return False

        self.processed += 1
        CLICK_EVENTS_PERSISTED_TOTAL.labels(enriched=str(enriched).lower()).inc()
        logger.debug(f"Click tracked for {job.short_code} (event {event.id})")
        return True
