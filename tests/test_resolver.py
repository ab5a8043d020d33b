"""RedirectResolver tests against the SQLite store with a mocked cache."""

import datetime
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from redis.exceptions import ConnectionError as RedisConnectionError
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import get_settings
from app.enums import DenialReason, ResolutionStatus
from app.exceptions import InvalidArgumentError
from app.ingestion import ClickQueue
from app.models import ShortLink
from app.passwords import hash_password
from app.redis import LinkProjectionCache
from app.repositories import ShortLinkStore, SQLAlchemyShortLinkStore
from app.resolver import RedirectResolver
from app.schemas import ClickTrackingData, LinkProjection

NOW = datetime.datetime(2024, 3, 10, 12, 0, tzinfo=datetime.UTC)
TRACKING = ClickTrackingData(ip_address="203.0.113.9", session_id="s1", user_agent="curl/8.4.0")


@pytest.fixture
def store(db_session: AsyncSession) -> SQLAlchemyShortLinkStore:
    return SQLAlchemyShortLinkStore(db_session)


@pytest.fixture
def queue() -> ClickQueue:
    return ClickQueue(10)


@pytest.fixture
def resolver(store: SQLAlchemyShortLinkStore, mock_redis: AsyncMock, queue: ClickQueue) -> RedirectResolver:
    return RedirectResolver(store, LinkProjectionCache(mock_redis, 300), queue, settings=get_settings())


@pytest_asyncio.fixture
async def make_link(store: SQLAlchemyShortLinkStore):
    async def _make(code: str = "Ab3xQ9", **fields) -> ShortLink:
        return await store.create_link(ShortLink(short_code=code, original_url="https://example.com", **fields))

    return _make


class TestResolve:
    @pytest.mark.asyncio
    async def test_success_increments_and_enqueues(
        self, resolver: RedirectResolver, store: SQLAlchemyShortLinkStore, queue: ClickQueue, make_link
    ) -> None:
        link = await make_link()

        resolution = await resolver.resolve("Ab3xQ9", TRACKING, now=NOW)
        assert resolution.succeeded
        assert resolution.target_url == "https://example.com"
        assert resolution.link_id == link.id
        assert (await store.find_link_projection("Ab3xQ9")).total_clicks == 1

        job = queue.get_nowait()
        assert job.short_code == "Ab3xQ9"
        assert job.link_id == link.id
        assert job.occurred_at == NOW
        assert job.tracking == TRACKING

    @pytest.mark.asyncio
    async def test_without_tracking_nothing_is_enqueued(
        self, resolver: RedirectResolver, queue: ClickQueue, make_link
    ) -> None:
        await make_link()
        assert (await resolver.resolve("Ab3xQ9", now=NOW)).succeeded
        assert queue.empty()

    @pytest.mark.asyncio
    async def test_malformed_code_raises_before_io(self, mock_redis: AsyncMock, queue: ClickQueue) -> None:
        store = AsyncMock(spec=ShortLinkStore)
        resolver = RedirectResolver(store, LinkProjectionCache(mock_redis, 300), queue)

        for code in ("", "bad-code!", "c0de"):
            with pytest.raises(InvalidArgumentError):
                await resolver.resolve(code, TRACKING)
        store.find_link_projection.assert_not_awaited()
        mock_redis.get.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_not_found(self, resolver: RedirectResolver, queue: ClickQueue) -> None:
        resolution = await resolver.resolve("Zzzzzz", TRACKING, now=NOW)
        assert resolution.status is ResolutionStatus.NOT_FOUND
        assert queue.empty()

    @pytest.mark.asyncio
    async def test_expiry_at_now_is_expired(self, resolver: RedirectResolver, make_link) -> None:
        await make_link(expires_at=NOW)
        resolution = await resolver.resolve("Ab3xQ9", now=NOW)
        assert resolution.status is ResolutionStatus.FORBIDDEN
        assert resolution.reason is DenialReason.EXPIRED

    @pytest.mark.asyncio
    async def test_expiry_just_after_now_resolves(self, resolver: RedirectResolver, make_link) -> None:
        await make_link(expires_at=NOW + datetime.timedelta(seconds=1))
        assert (await resolver.resolve("Ab3xQ9", now=NOW)).succeeded

    @pytest.mark.asyncio
    async def test_expired_wins_over_inactive_and_limit(self, resolver: RedirectResolver, make_link) -> None:
        await make_link(expires_at=NOW - datetime.timedelta(days=1), is_active=False, click_limit=0)
        assert (await resolver.resolve("Ab3xQ9", now=NOW)).reason is DenialReason.EXPIRED

    @pytest.mark.asyncio
    async def test_inactive_wins_over_limit(self, resolver: RedirectResolver, make_link) -> None:
        await make_link(is_active=False, click_limit=0)
        assert (await resolver.resolve("Ab3xQ9", now=NOW)).reason is DenialReason.INACTIVE

    @pytest.mark.asyncio
    async def test_denial_wins_over_password(self, resolver: RedirectResolver, make_link) -> None:
        await make_link(is_active=False, is_password_protected=True, password_hash=hash_password("pw"))
        assert (await resolver.resolve("Ab3xQ9", now=NOW)).reason is DenialReason.INACTIVE

    @pytest.mark.asyncio
    async def test_last_click_before_limit(
        self, resolver: RedirectResolver, store: SQLAlchemyShortLinkStore, make_link
    ) -> None:
        await make_link(click_limit=2, total_clicks=1)

        first = await resolver.resolve("Ab3xQ9", TRACKING, now=NOW)
        assert first.succeeded
        assert (await store.find_link_projection("Ab3xQ9")).total_clicks == 2

        second = await resolver.resolve("Ab3xQ9", TRACKING, now=NOW)
        assert second.status is ResolutionStatus.FORBIDDEN
        assert second.reason is DenialReason.LIMIT_REACHED

    @pytest.mark.asyncio
    async def test_password_required_does_not_count(
        self, resolver: RedirectResolver, store: SQLAlchemyShortLinkStore, queue: ClickQueue, make_link
    ) -> None:
        await make_link(is_password_protected=True, password_hash=hash_password("pw"))

        resolution = await resolver.resolve("Ab3xQ9", TRACKING, now=NOW)
        assert resolution.status is ResolutionStatus.PASSWORD_REQUIRED
        assert (await store.find_link_projection("Ab3xQ9")).total_clicks == 0
        assert queue.empty()

    @pytest.mark.asyncio
    async def test_lost_increment_race_still_redirects(self, queue: ClickQueue) -> None:
        projection = LinkProjection(id=7, short_code="Ab3xQ9", original_url="https://example.com", is_active=True)
        store = AsyncMock(spec=ShortLinkStore)
        store.find_link_projection.return_value = projection
        store.increment_click_atomic.return_value = False

        resolution = await RedirectResolver(store, click_queue=queue).resolve("Ab3xQ9", TRACKING, now=NOW)
        assert resolution.succeeded
        assert queue.qsize() == 1


class TestProjectionCache:
    @pytest.mark.asyncio
    async def test_miss_populates_cache(self, resolver: RedirectResolver, mock_redis: AsyncMock, make_link) -> None:
        await make_link()
        await resolver.resolve("Ab3xQ9", now=NOW)

        mock_redis.get.assert_awaited_once_with("link:Ab3xQ9")
        key, payload = mock_redis.set.await_args.args
        assert key == "link:Ab3xQ9"
        assert LinkProjection.model_validate_json(payload).original_url == "https://example.com"
        assert mock_redis.set.await_args.kwargs == {"ex": 300}

    @pytest.mark.asyncio
    async def test_limited_links_are_not_cached(
        self, resolver: RedirectResolver, mock_redis: AsyncMock, make_link
    ) -> None:
        await make_link(click_limit=5)
        await resolver.resolve("Ab3xQ9", now=NOW)
        mock_redis.set.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_hit_skips_projection_query(self, mock_redis: AsyncMock, queue: ClickQueue) -> None:
        projection = LinkProjection(id=7, short_code="Ab3xQ9", original_url="https://cached.example", is_active=True)
        mock_redis.get.return_value = projection.model_dump_json()
        store = AsyncMock(spec=ShortLinkStore)
        store.increment_click_atomic.return_value = True

        resolution = await RedirectResolver(store, LinkProjectionCache(mock_redis, 300), queue).resolve(
            "Ab3xQ9", now=NOW
        )
        assert resolution.target_url == "https://cached.example"
        store.find_link_projection.assert_not_awaited()
        store.increment_click_atomic.assert_awaited_once_with("Ab3xQ9", NOW)

    @pytest.mark.asyncio
    async def test_corrupt_entry_is_dropped(
        self, resolver: RedirectResolver, mock_redis: AsyncMock, make_link
    ) -> None:
        await make_link()
        mock_redis.get.return_value = "{not json"

        assert (await resolver.resolve("Ab3xQ9", now=NOW)).succeeded
        mock_redis.delete.assert_awaited_once_with("link:Ab3xQ9")

    @pytest.mark.asyncio
    async def test_redis_outage_falls_back_to_store(
        self, resolver: RedirectResolver, mock_redis: AsyncMock, make_link
    ) -> None:
        await make_link()
        mock_redis.get.side_effect = RedisConnectionError("connection refused")
        mock_redis.set.side_effect = RedisConnectionError("connection refused")

        assert (await resolver.resolve("Ab3xQ9", now=NOW)).succeeded

    @pytest.mark.asyncio
    async def test_no_client_bypasses_cache(self, store: SQLAlchemyShortLinkStore, make_link) -> None:
        await make_link()
        assert (await RedirectResolver(store).resolve("Ab3xQ9", now=NOW)).succeeded

    @pytest.mark.asyncio
    async def test_invalidate_ignores_empty_codes(self, mock_redis: AsyncMock) -> None:
        cache = LinkProjectionCache(mock_redis, 300)
        await cache.invalidate(None, "")
        mock_redis.delete.assert_not_awaited()

        await cache.invalidate("Ab3xQ9", "Zz9")
        mock_redis.delete.assert_awaited_once_with("link:Ab3xQ9", "link:Zz9")


class TestVerifyPassword:
    @pytest_asyncio.fixture
    async def protected(self, make_link) -> ShortLink:
        return await make_link(is_password_protected=True, password_hash=hash_password("s3cret"))

    @pytest.mark.asyncio
    async def test_correct_password(
        self, resolver: RedirectResolver, store: SQLAlchemyShortLinkStore, queue: ClickQueue, protected: ShortLink
    ) -> None:
        resolution = await resolver.verify_password_and_resolve("Ab3xQ9", "s3cret", TRACKING, now=NOW)
        assert resolution.succeeded
        assert (await store.find_link_projection("Ab3xQ9")).total_clicks == 1
        assert queue.qsize() == 1

    @pytest.mark.asyncio
    async def test_wrong_password_and_unknown_code_look_the_same(
        self, resolver: RedirectResolver, protected: ShortLink
    ) -> None:
        wrong = await resolver.verify_password_and_resolve("Ab3xQ9", "nope", now=NOW)
        unknown = await resolver.verify_password_and_resolve("Zzzzzz", "s3cret", now=NOW)
        malformed = await resolver.verify_password_and_resolve("bad!", "s3cret", now=NOW)
        assert wrong == unknown == malformed
        assert wrong.status is ResolutionStatus.UNAUTHORIZED

    @pytest.mark.asyncio
    async def test_empty_password_is_rejected(self, resolver: RedirectResolver, protected: ShortLink) -> None:
        with pytest.raises(InvalidArgumentError):
            await resolver.verify_password_and_resolve("Ab3xQ9", "")

    @pytest.mark.asyncio
    async def test_correct_password_on_expired_link(self, resolver: RedirectResolver, make_link) -> None:
        await make_link(
            expires_at=NOW - datetime.timedelta(minutes=1),
            is_password_protected=True,
            password_hash=hash_password("s3cret"),
        )
        resolution = await resolver.verify_password_and_resolve("Ab3xQ9", "s3cret", now=NOW)
        assert resolution.status is ResolutionStatus.FORBIDDEN
        assert resolution.reason is DenialReason.EXPIRED


class TestPreflightChecks:
    @pytest.mark.asyncio
    async def test_flags_delegate_to_store(self, resolver: RedirectResolver, make_link) -> None:
        link = await make_link(click_limit=0, is_password_protected=True, password_hash=hash_password("x"))

        assert await resolver.is_valid(link.id, NOW)
        assert await resolver.is_active(link.id, NOW)
        assert await resolver.is_click_limit_reached(link.id)
        assert await resolver.is_password_protected(link.id)
        assert not await resolver.is_valid(link.id + 100, NOW)
