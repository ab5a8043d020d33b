"""Link management service: creation and lifecycle updates.

Link Creation Flow
==================
::
    ┌──────────────────┐
    │ POST /api/shorten│
    └────────┬─────────┘
             ▼
      custom code? ──── yes ──▶ code_exists()? ── taken ──▶ ConflictError
             │ no                     │ free
             ▼                        ▼
    ┌──────────────────┐      ┌──────────────┐
    │ insert + flush   │      │ insert +     │
    │ (id assigned)    │      │ commit       │
    └────────┬─────────┘      └──────────────┘
             ▼
    ┌──────────────────┐
    │ generate_unique_ │  encode(id) first, fallback strategies on collision
    │ code(id, exists) │
    └────────┬─────────┘
             ▼
    ┌──────────────────┐
    │ assign + commit  │
    └──────────────────┘

Key Behaviours
===============
- Generated codes are at least ``settings.code_length`` characters.
- Passwords are stored as SHA-256 hex digests only.
- Every mutation invalidates the projection cache for old and new codes.
- Missing links raise NotFoundError; duplicate codes raise ConflictError.
"""

import datetime
import logging
import time

from app.codec import generate_unique_code
from app.config import Settings, get_settings
from app.exceptions import ConflictError, NotFoundError
from app.metrics import CODE_COLLISIONS_TOTAL, LINKS_CREATED_TOTAL
from app.models import UNLIMITED_CLICKS, ShortLink
from app.passwords import hash_password
from app.redis import LinkProjectionCache
from app.repositories import ShortLinkStore, SQLAlchemyShortLinkStore
from app.schemas import LinkCreate

__all__ = ["LinkService"]


class LinkService:
    """Creates short links and applies lifecycle changes to them.

    Example:
        >>> service = LinkService.from_context(ctx)
        >>> link = await service.create_link(LinkCreate(url="https://example.com"))
        >>> link.short_code
        'aaaaaab'
    """

    def __init__(
        self,
        store: ShortLinkStore,
        cache: LinkProjectionCache | None = None,
        logger: logging.Logger | logging.LoggerAdapter | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._store = store
        self._settings = settings or get_settings()
        self._cache = cache or LinkProjectionCache(None, self._settings.LINK_CACHE_TTL_SECONDS)
        self._logger = logger or logging.getLogger(__name__)

    @classmethod
    def from_context(cls, ctx: "RequestContext") -> "LinkService":  # noqa: F821
        return cls(
            store=SQLAlchemyShortLinkStore(ctx.database),
            cache=LinkProjectionCache(ctx.cache, ctx.settings.LINK_CACHE_TTL_SECONDS),
            logger=ctx.logger,
            settings=ctx.settings,
        )

    @property
    def settings(self) -> Settings:
        return self._settings

    # ========================================================================
    # CREATION
    # ========================================================================

    async def create_link(self, payload: LinkCreate) -> ShortLink:
        start_time = time.perf_counter()
        link = ShortLink(
            original_url=payload.url,
            expires_at=payload.expires_at,
            click_limit=payload.click_limit if payload.click_limit is not None else UNLIMITED_CLICKS,
            is_password_protected=payload.password is not None,
            password_hash=hash_password(payload.password) if payload.password is not None else None,
            title=payload.title,
        )

        if payload.custom_code:
            if await self._store.code_exists(payload.custom_code):
                raise ConflictError(f"Custom code '{payload.custom_code}' is already taken")
            link.short_code = payload.custom_code
            link = await self._store.create_link(link)
            code_source = "custom"
        else:
            link = await self._store.create_link(link, commit=False)
            code = await generate_unique_code(
                link.id,
                self._code_exists,
                min_length=self._settings.code_length,
                max_attempts=self._settings.CODE_GENERATION_MAX_ATTEMPTS,
            )
            link = await self._store.assign_code(link, code)
            code_source = "generated"

        LINKS_CREATED_TOTAL.labels(code_source=code_source).inc()
        self._logger.info(
            f"Short link created: {link.short_code}",
            extra={
                "operation": "create_link",
                "short_code": link.short_code,
                "link_id": link.id,
                "duration_ms": (time.perf_counter() - start_time) * 1000,
            },
        )
        return link

    async def _code_exists(self, code: str) -> bool:
        exists = await self._store.code_exists(code)
        if exists:
            CODE_COLLISIONS_TOTAL.inc()
            self._logger.warning(f"Short code collision detected: {code}")
        return exists

    # ========================================================================
    # LOOKUP AND LIFECYCLE
    # ========================================================================

    async def get_link(self, code: str) -> ShortLink:
        link = await self._store.get_link(code)
        if link is None:
            raise NotFoundError("Short link", code)
        return link

    async def update_code(self, code: str, new_code: str) -> ShortLink:
        if new_code == code:
            return await self.get_link(code)
        if await self._store.code_exists(new_code):
            raise ConflictError(f"Short code '{new_code}' is already taken")
        link = self._require(code, await self._store.update_code(code, new_code))
        await self._cache.invalidate(code, new_code)
        self._logger.info(f"Short code changed: {code} -> {new_code}", extra={"operation": "update_code"})
        return link

    async def update_expiration(self, code: str, expires_at: datetime.datetime | None) -> ShortLink:
        link = self._require(code, await self._store.update_expiration(code, expires_at))
        await self._cache.invalidate(code)
        self._logger.info(
            f"Expiration for {code} set to {expires_at.isoformat() if expires_at else 'never'}",
            extra={"operation": "update_expiration"},
        )
        return link

    async def set_active(self, code: str, active: bool) -> ShortLink:
        link = self._require(code, await self._store.set_active(code, active))
        await self._cache.invalidate(code)
        self._logger.info(
            f"Short link {code} {'activated' if active else 'deactivated'}", extra={"operation": "set_active"}
        )
        return link

    @staticmethod
    def _require(code: str, link: ShortLink | None) -> ShortLink:
        if link is None:
            raise NotFoundError("Short link", code)
        return link
