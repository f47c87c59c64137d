"""
Tests for visitor state trackers (SQLite and in-memory).
"""
import asyncio
import pytest
import pytest_asyncio
from datetime import datetime, timedelta, UTC
from pathlib import Path

from src.modules.adaptive.domain.errors import TransientStorageError
from src.modules.adaptive.infrastructure.memory import InMemoryVisitorTracker
from src.modules.adaptive.infrastructure.storage import SQLiteVisitorTracker


NOW = datetime(2024, 1, 1, 12, 0, tzinfo=UTC)


@pytest_asyncio.fixture(params=["sqlite", "memory"])
async def tracker(request, tmp_path: Path):
    """Create each tracker implementation."""
    if request.param == "memory":
        return InMemoryVisitorTracker()

    store = SQLiteVisitorTracker(tmp_path / "test_visitors.db")
    await store.initialize()
    return store


class TestCheckAndRecord:
    """Test the atomic first-visit check."""

    @pytest.mark.asyncio
    async def test_first_then_return(self, tracker):
        """Test a fingerprint is first only once per link."""
        first = await tracker.check_and_record(1, "f1", NOW)
        second = await tracker.check_and_record(1, "f1", NOW + timedelta(minutes=5))

        assert first.was_first_visit is True
        assert second.was_first_visit is False

    @pytest.mark.asyncio
    async def test_links_are_independent(self, tracker):
        """Test the same fingerprint is new on another link."""
        await tracker.check_and_record(1, "f1", NOW)
        other = await tracker.check_and_record(2, "f1", NOW)

        assert other.was_first_visit is True

    @pytest.mark.asyncio
    async def test_concurrent_first_visits(self, tracker):
        """Test exactly one concurrent call wins the first visit."""
        results = await asyncio.gather(*[
            tracker.check_and_record(1, "racer", NOW) for _ in range(10)
        ])

        assert sum(1 for result in results if result.was_first_visit) == 1

    @pytest.mark.asyncio
    async def test_record_keeps_first_seen(self, tracker):
        """Test first_seen_at is not overwritten by later visits."""
        await tracker.check_and_record(1, "f1", NOW)
        await tracker.check_and_record(1, "f1", NOW + timedelta(days=3))

        record = await tracker.get_record(1, "f1")
        assert record is not None
        assert record.first_seen_at == NOW
        assert await tracker.get_record(1, "unknown") is None


class TestHousekeeping:
    """Test forgetting and pruning records."""

    @pytest.mark.asyncio
    async def test_forget_link(self, tracker):
        await tracker.check_and_record(1, "f1", NOW)
        await tracker.check_and_record(1, "f2", NOW)
        await tracker.check_and_record(2, "f1", NOW)

        assert await tracker.forget_link(1) == 2
        assert (await tracker.check_and_record(1, "f1", NOW)).was_first_visit is True
        assert (await tracker.check_and_record(2, "f1", NOW)).was_first_visit is False

    @pytest.mark.asyncio
    async def test_prune_before(self, tracker):
        await tracker.check_and_record(1, "old", NOW - timedelta(days=400))
        await tracker.check_and_record(1, "recent", NOW)

        assert await tracker.prune_before(NOW - timedelta(days=365)) == 1
        assert await tracker.get_record(1, "old") is None
        assert await tracker.get_record(1, "recent") is not None


class TestSQLiteFailures:
    """Test storage errors surface as TransientStorageError."""

    @pytest.mark.asyncio
    async def test_missing_table(self, tmp_path: Path):
        store = SQLiteVisitorTracker(tmp_path / "uninitialized.db")

        with pytest.raises(TransientStorageError):
            await store.check_and_record(1, "f1", NOW)
