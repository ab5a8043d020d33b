"""Click analytics service and API tests."""

import datetime

import pytest
import pytest_asyncio
from httpx import AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

from app.analytics import ClickAnalyticsService
from app.exceptions import InvalidArgumentError
from app.models import ClickEvent, ShortLink
from app.repositories import SQLAlchemyClickEventStore, SQLAlchemyShortLinkStore

NOW = datetime.datetime(2024, 3, 10, 12, 0, tzinfo=datetime.UTC)


@pytest_asyncio.fixture
async def link(db_session: AsyncSession) -> ShortLink:
    store = SQLAlchemyShortLinkStore(db_session)
    return await store.create_link(ShortLink(short_code="ghub", original_url="https://github.com"))


@pytest.fixture
def click_store(db_session: AsyncSession) -> SQLAlchemyClickEventStore:
    return SQLAlchemyClickEventStore(db_session)


@pytest.fixture
def analytics(click_store: SQLAlchemyClickEventStore) -> ClickAnalyticsService:
    return ClickAnalyticsService(click_store)


async def _record(store: SQLAlchemyClickEventStore, link_id: int, at: datetime.datetime, **fields) -> None:
    values = {
        "ip_address": "8.8.8.8",
        "session_id": "s1",
        "user_agent": "ua",
        "country": "France",
        "browser": "Chrome 120",
        "operating_system": "Windows 10",
        "device": "Desktop",
        "device_type": "Desktop",
        "traffic_source": "Direct",
    }
    values.update(fields)
    await store.insert_click_event(ClickEvent(short_link_id=link_id, clicked_at=at, **values))


class TestArgumentValidation:
    @pytest.mark.asyncio
    async def test_start_after_end(self, analytics: ClickAnalyticsService) -> None:
        with pytest.raises(InvalidArgumentError):
            await analytics.total_clicks(1, NOW, NOW - datetime.timedelta(days=1))

    @pytest.mark.asyncio
    async def test_daily_requires_both_bounds(self, analytics: ClickAnalyticsService) -> None:
        with pytest.raises(InvalidArgumentError):
            await analytics.daily_clicks(1, None, NOW)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("count", [0, -1, 1001])
    async def test_recent_count_bounds(self, analytics: ClickAnalyticsService, count: int) -> None:
        with pytest.raises(InvalidArgumentError):
            await analytics.recent_clicks(1, count)

    @pytest.mark.asyncio
    @pytest.mark.parametrize(("page", "size"), [(0, 10), (1, 0), (1, 1001)])
    async def test_page_bounds(self, analytics: ClickAnalyticsService, page: int, size: int) -> None:
        with pytest.raises(InvalidArgumentError):
            await analytics.click_history(1, page, size)

    @pytest.mark.asyncio
    async def test_top_referrers_limit(self, analytics: ClickAnalyticsService) -> None:
        with pytest.raises(InvalidArgumentError):
            await analytics.top_referrers(1, limit=0)

    @pytest.mark.asyncio
    async def test_cleanup_needs_positive_retention(self, analytics: ClickAnalyticsService) -> None:
        with pytest.raises(InvalidArgumentError):
            await analytics.cleanup(retention_days=0)


class TestAggregations:
    @pytest.mark.asyncio
    async def test_summary(
        self, analytics: ClickAnalyticsService, click_store: SQLAlchemyClickEventStore, link: ShortLink
    ) -> None:
        await _record(click_store, link.id, NOW - datetime.timedelta(days=2), referrer_domain="google.com")
        await _record(click_store, link.id, NOW - datetime.timedelta(hours=1), session_id="s2", country=None)
        await _record(click_store, link.id, NOW, session_id="s2", country="Unknown", device_type="Mobile")

        report = await analytics.summary(link.id)
        assert report.total_clicks == 3
        assert report.unique_visitors == 2
        assert report.clicks_by_country == {"France": 1, "Unknown": 2}
        assert report.clicks_by_device_type == {"Desktop": 2, "Mobile": 1}
        assert report.top_referrers[0].domain == "google.com"
        assert report.first_click_at == NOW - datetime.timedelta(days=2)
        assert report.last_click_at == NOW
        assert report.daily_clicks == {}

    @pytest.mark.asyncio
    async def test_summary_with_range_adds_time_series(
        self, analytics: ClickAnalyticsService, click_store: SQLAlchemyClickEventStore, link: ShortLink
    ) -> None:
        await _record(click_store, link.id, NOW - datetime.timedelta(days=2))
        await _record(click_store, link.id, NOW - datetime.timedelta(minutes=30))
        await _record(click_store, link.id, NOW)

        report = await analytics.summary(link.id, NOW - datetime.timedelta(days=3), NOW)
        assert report.total_clicks == 3
        assert report.daily_clicks == {datetime.date(2024, 3, 8): 1, datetime.date(2024, 3, 10): 2}
        assert report.hourly_clicks == {11: 1, 12: 1}

    @pytest.mark.asyncio
    async def test_summary_bounds_stay_inside_range(
        self, analytics: ClickAnalyticsService, click_store: SQLAlchemyClickEventStore, link: ShortLink
    ) -> None:
        await _record(click_store, link.id, NOW - datetime.timedelta(days=10))
        await _record(click_store, link.id, NOW - datetime.timedelta(days=2))
        await _record(click_store, link.id, NOW - datetime.timedelta(days=1))
        await _record(click_store, link.id, NOW)

        report = await analytics.summary(link.id, NOW - datetime.timedelta(days=3), NOW - datetime.timedelta(hours=1))
        assert report.total_clicks == 2
        assert report.first_click_at == NOW - datetime.timedelta(days=2)
        assert report.last_click_at == NOW - datetime.timedelta(days=1)

    @pytest.mark.asyncio
    async def test_naive_bounds_are_utc(
        self, analytics: ClickAnalyticsService, click_store: SQLAlchemyClickEventStore, link: ShortLink
    ) -> None:
        await _record(click_store, link.id, NOW)
        assert await analytics.total_clicks(link.id, NOW.replace(tzinfo=None), NOW.replace(tzinfo=None)) == 1

    @pytest.mark.asyncio
    async def test_realtime_covers_last_day(
        self, analytics: ClickAnalyticsService, click_store: SQLAlchemyClickEventStore, link: ShortLink
    ) -> None:
        await _record(click_store, link.id, NOW - datetime.timedelta(hours=25))
        await _record(click_store, link.id, NOW - datetime.timedelta(hours=23))

        report = await analytics.realtime(link.id, now=NOW)
        assert report.total_clicks == 1
        assert report.start_date == NOW - datetime.timedelta(hours=24)

    @pytest.mark.asyncio
    async def test_click_history_pages(
        self, analytics: ClickAnalyticsService, click_store: SQLAlchemyClickEventStore, link: ShortLink
    ) -> None:
        for minutes in range(5):
            await _record(click_store, link.id, NOW - datetime.timedelta(minutes=minutes))

        page = await analytics.click_history(link.id, page=3, size=2)
        assert page.total_count == 5
        assert page.total_pages == 3
        assert len(page.items) == 1
        assert page.items[0].clicked_at == NOW - datetime.timedelta(minutes=4)

    @pytest.mark.asyncio
    async def test_clicks_in_range_across_links(
        self, analytics: ClickAnalyticsService, click_store: SQLAlchemyClickEventStore, link: ShortLink
    ) -> None:
        await _record(click_store, link.id, NOW)
        await _record(click_store, link.id + 1, NOW)

        assert len(await analytics.clicks_in_range(NOW, NOW)) == 2
        assert len(await analytics.clicks_in_range(NOW, NOW, link_id=link.id)) == 1


class TestRetention:
    @pytest.mark.asyncio
    async def test_cleanup_uses_retention_days(
        self, analytics: ClickAnalyticsService, click_store: SQLAlchemyClickEventStore, link: ShortLink
    ) -> None:
        await _record(click_store, link.id, NOW - datetime.timedelta(days=31))
        await _record(click_store, link.id, NOW - datetime.timedelta(days=30))
        await _record(click_store, link.id, NOW)

        assert await analytics.cleanup(retention_days=30, now=NOW) == 1
        assert await analytics.total_clicks(link.id) == 2

    def test_cutoff_for(self) -> None:
        assert ClickAnalyticsService.cutoff_for(7, NOW) == NOW - datetime.timedelta(days=7)


class TestAnalyticsAPI:
    @pytest.mark.asyncio
    async def test_summary_endpoint(
        self, client: AsyncClient, click_store: SQLAlchemyClickEventStore, link: ShortLink
    ) -> None:
        await _record(click_store, link.id, NOW)

        response = await client.get("/api/analytics/ghub")
        assert response.status_code == 200
        data = response.json()
        assert data["short_link_id"] == link.id
        assert data["total_clicks"] == 1
        assert data["clicks_by_country"] == {"France": 1}

    @pytest.mark.asyncio
    async def test_summary_bad_range(self, client: AsyncClient, link: ShortLink) -> None:
        response = await client.get(
            "/api/analytics/ghub", params={"start": "2024-03-10T00:00:00Z", "end": "2024-03-01T00:00:00Z"}
        )
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_unknown_link(self, client: AsyncClient) -> None:
        assert (await client.get("/api/analytics/nexistent")).status_code == 404

    @pytest.mark.asyncio
    async def test_daily_endpoint(
        self, client: AsyncClient, click_store: SQLAlchemyClickEventStore, link: ShortLink
    ) -> None:
        await _record(click_store, link.id, NOW)
        response = await client.get(
            "/api/analytics/ghub/daily", params={"start": "2024-03-01T00:00:00Z", "end": "2024-03-10T23:59:59Z"}
        )
        assert response.status_code == 200
        assert response.json() == {"2024-03-10": 1}

    @pytest.mark.asyncio
    async def test_daily_requires_range(self, client: AsyncClient, link: ShortLink) -> None:
        assert (await client.get("/api/analytics/ghub/daily")).status_code == 422

    @pytest.mark.asyncio
    async def test_hourly_endpoint(
        self, client: AsyncClient, click_store: SQLAlchemyClickEventStore, link: ShortLink
    ) -> None:
        await _record(click_store, link.id, NOW)
        response = await client.get("/api/analytics/ghub/hourly", params={"day": "2024-03-10"})
        assert response.json() == {"12": 1}

    @pytest.mark.asyncio
    async def test_recent_endpoint(
        self, client: AsyncClient, click_store: SQLAlchemyClickEventStore, link: ShortLink
    ) -> None:
        for minutes in range(3):
            await _record(click_store, link.id, NOW - datetime.timedelta(minutes=minutes))

        response = await client.get("/api/analytics/ghub/recent", params={"count": 2})
        assert response.status_code == 200
        assert len(response.json()) == 2
        assert (await client.get("/api/analytics/ghub/recent", params={"count": 0})).status_code == 422

    @pytest.mark.asyncio
    async def test_clicks_endpoint(
        self, client: AsyncClient, click_store: SQLAlchemyClickEventStore, link: ShortLink
    ) -> None:
        for minutes in range(3):
            await _record(click_store, link.id, NOW - datetime.timedelta(minutes=minutes))

        data = (await client.get("/api/analytics/ghub/clicks", params={"page": 1, "size": 2})).json()
        assert data["total_count"] == 3
        assert data["total_pages"] == 2
        assert len(data["items"]) == 2

    @pytest.mark.asyncio
    async def test_realtime_endpoint(self, client: AsyncClient, link: ShortLink) -> None:
        response = await client.get("/api/analytics/ghub/realtime")
        assert response.status_code == 200
        assert response.json()["total_clicks"] == 0

    @pytest.mark.asyncio
    async def test_cleanup_endpoint(
        self, client: AsyncClient, click_store: SQLAlchemyClickEventStore, link: ShortLink
    ) -> None:
        await _record(click_store, link.id, NOW - datetime.timedelta(days=1))
        await _record(click_store, link.id, NOW)

        response = await client.post("/api/maintenance/cleanup", params={"older_than": "2024-03-10T12:00:00Z"})
        assert response.status_code == 200
        assert response.json()["deleted"] == 1

    @pytest.mark.asyncio
    async def test_cleanup_rejects_both_modes(self, client: AsyncClient) -> None:
        response = await client.post(
            "/api/maintenance/cleanup", params={"older_than": "2024-03-10T12:00:00Z", "retention_days": 30}
        )
        assert response.status_code == 400
