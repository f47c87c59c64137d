"""
Tests for chart generation and text reports.
"""
import pytest
import pytest_asyncio
from datetime import datetime, timedelta, UTC
from pathlib import Path

from src.modules.adaptive.infrastructure.storage import SQLiteAdaptiveRepository
from src.modules.adaptive.infrastructure.memory import InMemoryVisitorTracker
from src.modules.adaptive.services.adaptive_service import AdaptiveLinkService
from src.modules.adaptive.services.analytics_service import AnalyticsService
from src.modules.adaptive.services.resolver import AdaptiveResolver


@pytest_asyncio.fixture
async def repository(tmp_path: Path):
    """Create a temporary repository for testing."""
    repo = SQLiteAdaptiveRepository(tmp_path / "test_adaptive.db")
    await repo.initialize()
    return repo


@pytest_asyncio.fixture
async def service(repository):
    tracker = InMemoryVisitorTracker()
    return AdaptiveLinkService(repository, tracker, AdaptiveResolver(tracker))


@pytest_asyncio.fixture
async def analytics_service(repository):
    """Create analytics service with test repository."""
    return AnalyticsService(repository)


async def _scanned_link(service):
    link = await service.create_link("Menu", "42", [("Menu", "https://example.com/menu")])
    now = datetime.now(UTC)
    await service.handle_scan(link.slug, fingerprint="f1", now=now - timedelta(days=2))
    await service.handle_scan(link.slug, fingerprint="f2", now=now)
    await service.handle_scan(link.slug, fingerprint="f2", now=now)
    return link


class TestChartGeneration:
    """Test chart generation."""

    @pytest.mark.asyncio
    async def test_generate_chart_basic(self, service, analytics_service):
        """Test basic chart generation."""
        link = await _scanned_link(service)

        chart_buffer = await analytics_service.generate_chart(
            link_ids=[link.link_id],
            metrics=['total', 'unique']
        )

        chart_data = chart_buffer.read()
        assert len(chart_data) > 0
        assert chart_data.startswith(b'\x89PNG')

    @pytest.mark.asyncio
    async def test_generate_chart_all_metrics(self, service, analytics_service):
        """Test chart with all metrics and custom period."""
        link = await _scanned_link(service)

        chart_buffer = await analytics_service.generate_chart(
            link_ids=[link.link_id],
            start_date=datetime.now(UTC) - timedelta(days=7),
            end_date=datetime.now(UTC),
            metrics=['total', 'unique', 'first_visit'],
            title="Custom title"
        )

        assert chart_buffer.read().startswith(b'\x89PNG')

    @pytest.mark.asyncio
    async def test_generate_chart_without_data(self, analytics_service):
        """Test empty periods still render a chart."""
        chart_buffer = await analytics_service.generate_chart()

        assert chart_buffer.read().startswith(b'\x89PNG')


class TestStatsText:
    """Test text formatting."""

    @pytest.mark.asyncio
    async def test_format_summary(self, service, analytics_service):
        link = await _scanned_link(service)

        stats = await analytics_service.get_aggregated_stats(link_ids=[link.link_id], daily=False)
        text = analytics_service.format_stats_text(stats)

        assert "Menu (menu)" in text
        assert "Total scans: 3" in text
        assert "Unique visitors: 2" in text

    @pytest.mark.asyncio
    async def test_format_daily(self, service, analytics_service):
        link = await _scanned_link(service)

        stats = await analytics_service.get_aggregated_stats(link_ids=[link.link_id], daily=True)
        text = analytics_service.format_stats_text(stats, include_daily=True)

        assert text.count(" scans, ") == 2

    @pytest.mark.asyncio
    async def test_format_empty(self, analytics_service):
        assert analytics_service.format_stats_text([]) == "No scans in the selected period."

    @pytest.mark.asyncio
    async def test_format_escapes_names(self, service, analytics_service):
        """Names end up in HTML bot replies."""
        link = await service.create_link(
            "Fish & <Chips>", "42", [("<b>Specials</b>", "https://example.com/fish")], slug="fish"
        )
        await service.handle_scan(link.slug, fingerprint="f1")

        stats = await analytics_service.get_aggregated_stats(link_ids=[link.link_id], daily=False)
        daily = await analytics_service.get_aggregated_stats(link_ids=[link.link_id], daily=True)
        slot_stats = await analytics_service.get_slot_stats(link.link_id)

        summary = analytics_service.format_stats_text(stats)
        assert "Fish &amp; &lt;Chips&gt; (fish)" in summary
        assert "<Chips>" not in summary
        assert "Fish &amp; &lt;Chips&gt;" in analytics_service.format_stats_text(daily, include_daily=True)

        breakdown = analytics_service.format_slot_breakdown(link, slot_stats)
        assert "&lt;b&gt;Specials&lt;/b&gt;: 1 (100%)" in breakdown
