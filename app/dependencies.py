"""Dependency injection with a singleton service manager.

This module provides a centralized way to inject database and cache dependencies
with consistent naming across all API endpoints, using a singleton pattern for
the resources that live for the whole process: settings, the shared logger,
the click queue, its ingestion workers and the geolocation client.
"""

import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Optional

import redis.asyncio as redis
from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from app.analytics import ClickAnalyticsService
from app.config import Settings, get_settings
from app.database import async_session, get_db
from app.geolocation import GeoLocator, HttpGeoLocator, NullGeoLocator
from app.ingestion import ClickIngestionWorker, ClickQueue
from app.links import LinkService
from app.redis import get_redis
from app.resolver import RedirectResolver
from app.schemas import ClickTrackingData

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


# ============================================================================
# SINGLETON SERVICE MANAGER
# ============================================================================


class ServiceManager:
    """Singleton service manager for shared resources.

    This class manages shared resources that don't need to be created per request,
    significantly reducing per-request overhead.
    """

    _instance: Optional["ServiceManager"] = None
    _initialized: bool = False

    def __new__(cls) -> "ServiceManager":
        """Implement singleton pattern."""
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    async def initialize(self) -> None:
        """Initialize shared resources once at startup."""
        if not self._initialized:
            self.settings = get_settings()
            self.logger = self._setup_logger()
            self.click_queue = ClickQueue(self.settings.CLICK_QUEUE_CAPACITY)
            self.geo_locator = self._setup_geo_locator()
            self.worker = ClickIngestionWorker(self.click_queue, async_session, self.geo_locator)
            self._initialized = True

    def _setup_logger(self) -> logging.Logger:
        """Setup the request logger and the background module loggers once."""
        level = getattr(logging, self.settings.LOG_LEVEL.upper(), logging.INFO)
        for name in ("urlshortener", "app"):
            logger = logging.getLogger(name)
            if not logger.handlers:
                handler = logging.StreamHandler()
                handler.setFormatter(logging.Formatter(LOG_FORMAT))
                logger.addHandler(handler)
                logger.setLevel(level)
        return logging.getLogger("urlshortener")

    def _setup_geo_locator(self) -> GeoLocator:
        if not self.settings.GEO_LOOKUP_ENABLED:
            return NullGeoLocator()
        return HttpGeoLocator(self.settings.GEO_API_URL, timeout=self.settings.GEO_TIMEOUT_SECONDS)

    def start_workers(self) -> None:
        self.worker.start(self.settings.CLICK_WORKER_COUNT)

    async def cleanup(self) -> None:
        """Stop ingestion, flushing queued clicks, and release shared resources."""
        if hasattr(self, "worker"):
            await self.worker.stop(drain=True)
        if hasattr(self, "geo_locator"):
            await self.geo_locator.aclose()
        self._initialized = False


# Global singleton instance
_service_manager = ServiceManager()


# ============================================================================
# LIGHTWEIGHT REQUEST CONTEXT
# ============================================================================


@dataclass
class RequestContext:
    """Request context with tracking and shared resource access.

    Attributes:
        database: Async database session (per-request resource)
        cache: Redis client backing the link projection cache
        service_manager: Singleton service manager with shared resources
        request_id: Unique identifier for this request
        trace_id: Correlation ID for distributed tracing
        user_agent: Client user agent string
        client_ip: Client IP address
        start_time: Request start timestamp
        tags: Request tags for categorization
    """

    database: AsyncSession
    cache: redis.Redis
    service_manager: ServiceManager
    request_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    trace_id: Optional[str] = None
    user_agent: Optional[str] = None
    client_ip: Optional[str] = None
    start_time: float = field(default_factory=lambda: time.time())
    tags: list[str] = field(default_factory=list)

    @property
    def click_queue(self) -> ClickQueue:
        return self.service_manager.click_queue

    @property
    def logger(self) -> logging.LoggerAdapter:
        """Get shared logger with request context."""
        return logging.LoggerAdapter(
            self.service_manager.logger,
            {
                "request_id": self.request_id,
                "trace_id": self.trace_id or self.request_id,
                "client_ip": self.client_ip,
                "user_agent": self.user_agent,
                "tags": ",".join(self.tags),
            },
        )

    @property
    def settings(self) -> Settings:
        return self.service_manager.settings

    def add_tag(self, tag: str) -> None:
        """Add a tag to the request context."""
        if tag not in self.tags:
            self.tags.append(tag)

    def get_duration(self) -> float:
        """Get request duration in milliseconds."""
        return (time.time() - self.start_time) * 1000


# ============================================================================
# DEPENDENCY FUNCTIONS
# ============================================================================


def client_ip_from(request: Request) -> str:
    """First hop of X-Forwarded-For, then X-Real-IP, else the socket peer."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()
    return request.client.host if request.client else "unknown"


async def get_service_manager() -> ServiceManager:
    """Get the singleton service manager, initializing it on first use."""
    if not _service_manager._initialized:
        await _service_manager.initialize()
    return _service_manager


async def get_request_context(
    request: Request,
    db: AsyncSession = Depends(get_db),
    cache: redis.Redis = Depends(get_redis),
    manager: ServiceManager = Depends(get_service_manager),
) -> RequestContext:
    """Build the per-request context.

    Args:
        request: FastAPI Request object for extracting client info
        db: Database session (only per-request resource)
        cache: Shared Redis client
        manager: Singleton service manager with shared resources

    Returns:
        RequestContext: Context for the request
    """
    return RequestContext(
        database=db,
        cache=cache,
        service_manager=manager,
        trace_id=request.headers.get("x-trace-id"),
        user_agent=request.headers.get("user-agent"),
        client_ip=client_ip_from(request),
    )


def get_tracking_data(
    request: Request, manager: ServiceManager = Depends(get_service_manager)
) -> ClickTrackingData:
    """Capture raw click metadata; enrichment happens later in the workers."""
    params = request.query_params
    session_id = request.cookies.get(manager.settings.SESSION_COOKIE_NAME) or uuid.uuid4().hex
    return ClickTrackingData(
        ip_address=client_ip_from(request),
        session_id=session_id,
        user_agent=request.headers.get("user-agent") or "Unknown",
        referrer=request.headers.get("referer"),
        utm_source=params.get("utm_source"),
        utm_medium=params.get("utm_medium"),
        utm_campaign=params.get("utm_campaign"),
        utm_term=params.get("utm_term"),
        utm_content=params.get("utm_content"),
    )


def get_link_service(ctx: RequestContext = Depends(get_request_context)) -> LinkService:
    return LinkService.from_context(ctx)


def get_resolver(ctx: RequestContext = Depends(get_request_context)) -> RedirectResolver:
    return RedirectResolver.from_context(ctx)


def get_analytics_service(ctx: RequestContext = Depends(get_request_context)) -> ClickAnalyticsService:
    return ClickAnalyticsService.from_context(ctx)
