from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Dict, Optional, Tuple

from ..domain.interfaces import VisitorStateTracker
from ..domain.models import CheckResult, VisitorRecord


class InMemoryVisitorTracker(VisitorStateTracker):
    """Process-local visitor store for tests and single-instance deployments."""

    def __init__(self) -> None:
        self._records: Dict[Tuple[int, str], VisitorRecord] = {}
        self._lock = asyncio.Lock()

    async def check_and_record(self, link_id: int, fingerprint: str, now: datetime) -> CheckResult:
        key = (link_id, fingerprint)
        async with self._lock:
            if key in self._records:
                return CheckResult(was_first_visit=False)
            self._records[key] = VisitorRecord(link_id=link_id, fingerprint=fingerprint, first_seen_at=now)
            return CheckResult(was_first_visit=True)

    async def get_record(self, link_id: int, fingerprint: str) -> Optional[VisitorRecord]:
        async with self._lock:
            return self._records.get((link_id, fingerprint))

    async def forget_link(self, link_id: int) -> int:
        async with self._lock:
            keys = [key for key in self._records if key[0] == link_id]
            for key in keys:
                del self._records[key]
            return len(keys)

    async def prune_before(self, cutoff: datetime) -> int:
        async with self._lock:
            keys = [key for key, record in self._records.items() if record.first_seen_at < cutoff]
            for key in keys:
                del self._records[key]
            return len(keys)
