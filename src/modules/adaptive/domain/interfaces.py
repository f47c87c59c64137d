"""
Domain interfaces for adaptive link module.
"""
from abc import ABC, abstractmethod
from datetime import datetime
from typing import List, Optional

from src.modules.adaptive.domain.models import (
    AdaptiveLink,
    CheckResult,
    LinkStats,
    ScanEvent,
    SlotStats,
    VisitorRecord,
)


class VisitorStateTracker(ABC):
    """Remembers which fingerprints have already scanned a link."""

    @abstractmethod
    async def check_and_record(self, link_id: int, fingerprint: str, now: datetime) -> CheckResult:
        """
        Atomically record a fingerprint for a link if it is not known yet.

        Of any number of concurrent calls for the same (link_id, fingerprint),
        exactly one reports ``was_first_visit=True``.

        Args:
            link_id: Link identifier
            fingerprint: Opaque visitor key
            now: Scan instant, stored as first_seen_at on insert

        Returns:
            Whether this call created the record

        Raises:
            TransientStorageError: If the backing store fails or times out
        """
        pass

    @abstractmethod
    async def get_record(self, link_id: int, fingerprint: str) -> Optional[VisitorRecord]:
        pass

    @abstractmethod
    async def forget_link(self, link_id: int) -> int:
        """Drop all visitor records of a link. Returns the number removed."""
        pass

    @abstractmethod
    async def prune_before(self, cutoff: datetime) -> int:
        """Drop visitor records first seen before ``cutoff``. Returns the number removed."""
        pass


class AdaptiveLinkRepository(ABC):
    """Repository interface for adaptive links and their scan events."""

    @abstractmethod
    async def create_link(self, link: AdaptiveLink) -> AdaptiveLink:
        """
        Persist a new adaptive link.

        The ``link_id`` and ``created_at`` of the argument are ignored and
        assigned by the repository.

        Returns:
            Stored link with its identifier
        """
        pass

    @abstractmethod
    async def update_link(self, link: AdaptiveLink) -> bool:
        """
        Replace the stored configuration of an active link.

        Returns:
            True if updated, False if not found or deleted
        """
        pass

    @abstractmethod
    async def get_link_by_id(self, link_id: int, include_deleted: bool = False) -> Optional[AdaptiveLink]:
        pass

    @abstractmethod
    async def get_link_by_slug(self, slug: str, include_deleted: bool = False) -> Optional[AdaptiveLink]:
        pass

    @abstractmethod
    async def list_links(
        self,
        owner_id: Optional[str] = None,
        include_deleted: bool = False
    ) -> List[AdaptiveLink]:
        pass

    @abstractmethod
    async def soft_delete_link(self, link_id: int) -> bool:
        """
        Soft delete an adaptive link.

        Returns:
            True if deleted, False if not found or already deleted
        """
        pass

    @abstractmethod
    async def log_scan(
        self,
        link_id: int,
        slot_id: str,
        matched_rule: str,
        fingerprint: Optional[str],
        first_visit: Optional[bool],
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
        created_at: Optional[datetime] = None
    ) -> ScanEvent:
        pass

    @abstractmethod
    async def count_scans_since(self, link_id: int, since: datetime) -> int:
        pass

    @abstractmethod
    async def get_scans_for_link(
        self,
        link_id: int,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None
    ) -> List[ScanEvent]:
        """
        Get scan events for a link with optional date filtering.

        Args:
            link_id: Link identifier
            start_date: Start date (inclusive, UTC)
            end_date: End date (inclusive, UTC)
        """
        pass

    @abstractmethod
    async def get_aggregated_stats(
        self,
        link_ids: Optional[List[int]] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        daily: bool = False
    ) -> List[LinkStats]:
        """
        Get aggregated scan statistics.

        Args:
            link_ids: Filter by specific link IDs (None for all active links)
            start_date: Start date (inclusive, UTC)
            end_date: End date (inclusive, UTC)
            daily: Whether to aggregate by day (True) or all-time (False)
        """
        pass

    @abstractmethod
    async def get_slot_stats(
        self,
        link_id: int,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None
    ) -> List[SlotStats]:
        pass
