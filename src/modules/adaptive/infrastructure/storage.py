"""
SQLite-based storage for adaptive links, scan events and visitor records.
"""
import json
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import List, Optional

import aiosqlite

from src.modules.adaptive.domain.errors import TransientStorageError
from src.modules.adaptive.domain.interfaces import AdaptiveLinkRepository, VisitorStateTracker
from src.modules.adaptive.domain.models import (
    AdaptiveLink,
    CheckResult,
    LinkStats,
    ScanEvent,
    SlotStats,
    VisitorRecord,
)
from src.modules.adaptive.utils.options import dump_adaptive_options, parse_adaptive_options
from src.modules.adaptive.utils.schedule import month_start


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def _parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


class SQLiteAdaptiveRepository(AdaptiveLinkRepository):

    LINK_COLUMNS = """
        l.link_id, l.slug, l.name, l.owner_id, l.options, l.timezone,
        l.scan_limit, l.created_at, l.deleted_at,
        (SELECT COUNT(*) FROM adaptive_scans s
         WHERE s.link_id = l.link_id AND s.created_at >= ?) AS scan_count
    """

    def __init__(self, db_path: Path):
        self.db_path = db_path

    async def initialize(self) -> None:
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("""
                CREATE TABLE IF NOT EXISTS adaptive_links (
                    link_id INTEGER PRIMARY KEY AUTOINCREMENT,
                    slug TEXT NOT NULL,
                    name TEXT NOT NULL,
                    owner_id TEXT NOT NULL,
                    options TEXT NOT NULL,
                    timezone TEXT,
                    scan_limit INTEGER NOT NULL,
                    created_at TEXT NOT NULL,
                    deleted_at TEXT
                )
            """)

            await db.execute("""
                CREATE TABLE IF NOT EXISTS adaptive_scans (
                    event_id INTEGER PRIMARY KEY AUTOINCREMENT,
                    link_id INTEGER NOT NULL,
                    slot_id TEXT NOT NULL,
                    matched_rule TEXT NOT NULL,
                    fingerprint TEXT,
                    first_visit INTEGER,
                    ip TEXT,
                    user_agent TEXT,
                    created_at TEXT NOT NULL,
                    FOREIGN KEY (link_id) REFERENCES adaptive_links(link_id)
                )
            """)

            await db.execute("""
                CREATE INDEX IF NOT EXISTS idx_adaptive_links_slug
                ON adaptive_links(slug)
                WHERE deleted_at IS NULL
            """)

            await db.execute("""
                CREATE INDEX IF NOT EXISTS idx_adaptive_links_owner
                ON adaptive_links(owner_id)
            """)

            await db.execute("""
                CREATE INDEX IF NOT EXISTS idx_adaptive_scans_link_created
                ON adaptive_scans(link_id, created_at)
            """)

            await db.commit()

    async def create_link(self, link: AdaptiveLink) -> AdaptiveLink:
        now = datetime.now(UTC)

        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                """
                INSERT INTO adaptive_links (slug, name, owner_id, options, timezone, scan_limit, created_at, deleted_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, NULL)
                """,
                (
                    link.slug,
                    link.name,
                    link.owner_id,
                    json.dumps(dump_adaptive_options(link)),
                    link.timezone,
                    link.scan_limit,
                    now.isoformat(),
                )
            )
            link_id = cursor.lastrowid
            await db.commit()
            await cursor.close()

        stored = await self.get_link_by_id(link_id, include_deleted=True)
        assert stored is not None
        return stored

    async def update_link(self, link: AdaptiveLink) -> bool:
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                """
                UPDATE adaptive_links
                SET slug = ?, name = ?, options = ?, timezone = ?, scan_limit = ?
                WHERE link_id = ? AND deleted_at IS NULL
                """,
                (
                    link.slug,
                    link.name,
                    json.dumps(dump_adaptive_options(link)),
                    link.timezone,
                    link.scan_limit,
                    link.link_id,
                )
            )
            affected = cursor.rowcount
            await db.commit()
            await cursor.close()

        return affected > 0

    async def get_link_by_id(self, link_id: int, include_deleted: bool = False) -> Optional[AdaptiveLink]:
        query = f"SELECT {self.LINK_COLUMNS} FROM adaptive_links l WHERE l.link_id = ?"
        if not include_deleted:
            query += " AND l.deleted_at IS NULL"

        return await self._fetch_one_link(query, (link_id,))

    async def get_link_by_slug(self, slug: str, include_deleted: bool = False) -> Optional[AdaptiveLink]:
        query = f"SELECT {self.LINK_COLUMNS} FROM adaptive_links l WHERE l.slug = ?"
        if not include_deleted:
            query += " AND l.deleted_at IS NULL"
        query += " ORDER BY l.link_id DESC LIMIT 1"

        return await self._fetch_one_link(query, (slug,))

    async def list_links(
        self,
        owner_id: Optional[str] = None,
        include_deleted: bool = False
    ) -> List[AdaptiveLink]:
        query = f"SELECT {self.LINK_COLUMNS} FROM adaptive_links l WHERE 1 = 1"
        params: list = [month_start(datetime.now(UTC)).isoformat()]

        if owner_id is not None:
            query += " AND l.owner_id = ?"
            params.append(owner_id)
        if not include_deleted:
            query += " AND l.deleted_at IS NULL"
        query += " ORDER BY l.created_at DESC, l.link_id DESC"

        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(query, params)
            rows = await cursor.fetchall()
            await cursor.close()

        return [self._row_to_link(row) for row in rows]

    async def soft_delete_link(self, link_id: int) -> bool:
        now = datetime.now(UTC)

        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                """
                UPDATE adaptive_links
                SET deleted_at = ?
                WHERE link_id = ? AND deleted_at IS NULL
                """,
                (now.isoformat(), link_id)
            )
            affected = cursor.rowcount
            await db.commit()
            await cursor.close()

        return affected > 0

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
        created_at = _as_utc(created_at) if created_at else datetime.now(UTC)
        first_visit_value = None if first_visit is None else int(first_visit)

        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                """
                INSERT INTO adaptive_scans
                    (link_id, slot_id, matched_rule, fingerprint, first_visit, ip, user_agent, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    link_id,
                    slot_id,
                    matched_rule,
                    fingerprint,
                    first_visit_value,
                    ip,
                    user_agent,
                    created_at.isoformat(),
                )
            )
            event_id = cursor.lastrowid
            await db.commit()
            await cursor.close()

        return ScanEvent(
            event_id=event_id,
            link_id=link_id,
            slot_id=slot_id,
            matched_rule=matched_rule,
            fingerprint=fingerprint,
            first_visit=first_visit,
            ip=ip,
            user_agent=user_agent,
            created_at=created_at
        )

    async def count_scans_since(self, link_id: int, since: datetime) -> int:
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                "SELECT COUNT(*) FROM adaptive_scans WHERE link_id = ? AND created_at >= ?",
                (link_id, _as_utc(since).isoformat())
            )
            row = await cursor.fetchone()
            await cursor.close()

        return int(row[0]) if row else 0

    async def get_scans_for_link(
        self,
        link_id: int,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None
    ) -> List[ScanEvent]:
        query = """
            SELECT event_id, link_id, slot_id, matched_rule, fingerprint, first_visit, ip, user_agent, created_at
            FROM adaptive_scans
            WHERE link_id = ?
        """
        params: list = [link_id]

        if start_date:
            query += " AND created_at >= ?"
            params.append(_as_utc(start_date).isoformat())

        if end_date:
            query += " AND created_at < ?"
            params.append((_as_utc(end_date) + timedelta(days=1)).isoformat())

        query += " ORDER BY created_at DESC, event_id DESC"

        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(query, params)
            rows = await cursor.fetchall()
            await cursor.close()

        return [self._row_to_event(row) for row in rows]

    async def get_aggregated_stats(
        self,
        link_ids: Optional[List[int]] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        daily: bool = False
    ) -> List[LinkStats]:
        date_column = "date(s.created_at)" if daily else "NULL"
        query = f"""
            SELECT
                l.link_id,
                l.name,
                l.slug,
                {date_column} as scan_date,
                COUNT(*) as total_scans,
                COUNT(DISTINCT s.fingerprint) as unique_visitors,
                SUM(CASE WHEN s.first_visit = 1 THEN 1 ELSE 0 END) as first_visits
            FROM adaptive_links l
            INNER JOIN adaptive_scans s ON l.link_id = s.link_id
            WHERE l.deleted_at IS NULL
        """
        params: list = []

        if link_ids:
            placeholders = ','.join('?' * len(link_ids))
            query += f" AND l.link_id IN ({placeholders})"
            params.extend(link_ids)

        if start_date:
            query += " AND s.created_at >= ?"
            params.append(_as_utc(start_date).isoformat())

        if end_date:
            query += " AND s.created_at < ?"
            params.append((_as_utc(end_date) + timedelta(days=1)).isoformat())

        if daily:
            query += " GROUP BY l.link_id, l.name, l.slug, scan_date ORDER BY scan_date, l.link_id"
        else:
            query += " GROUP BY l.link_id, l.name, l.slug ORDER BY l.link_id"

        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(query, params)
            rows = await cursor.fetchall()
            await cursor.close()

        results = []
        for row in rows:
            date_str = row[3]
            date_obj = datetime.fromisoformat(date_str).replace(tzinfo=UTC) if date_str else None

            results.append(LinkStats(
                link_id=row[0],
                name=row[1],
                slug=row[2],
                date=date_obj,
                total_scans=row[4],
                unique_visitors=row[5],
                first_visits=row[6] or 0
            ))

        return results

    async def get_slot_stats(
        self,
        link_id: int,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None
    ) -> List[SlotStats]:
        query = "SELECT slot_id, COUNT(*) FROM adaptive_scans WHERE link_id = ?"
        params: list = [link_id]

        if start_date:
            query += " AND created_at >= ?"
            params.append(_as_utc(start_date).isoformat())

        if end_date:
            query += " AND created_at < ?"
            params.append((_as_utc(end_date) + timedelta(days=1)).isoformat())

        query += " GROUP BY slot_id ORDER BY COUNT(*) DESC, slot_id"

        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(query, params)
            rows = await cursor.fetchall()
            await cursor.close()

        return [SlotStats(link_id=link_id, slot_id=row[0], total_scans=row[1]) for row in rows]

    async def _fetch_one_link(self, query: str, params: tuple) -> Optional[AdaptiveLink]:
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(query, (month_start(datetime.now(UTC)).isoformat(), *params))
            row = await cursor.fetchone()
            await cursor.close()

        if not row:
            return None

        return self._row_to_link(row)

    def _row_to_link(self, row) -> AdaptiveLink:
        options = parse_adaptive_options(json.loads(row[4]))

        return AdaptiveLink(
            link_id=row[0],
            slug=row[1],
            name=row[2],
            owner_id=row[3],
            slots=options.slots,
            date_rules=options.date_rules,
            first_return=options.first_return,
            admin=options.admin,
            default_slot_id=options.default_slot_id,
            timezone=row[5],
            scan_limit=row[6],
            created_at=_parse_timestamp(row[7]),
            deleted_at=_parse_timestamp(row[8]),
            scan_count=row[9] or 0,
        )

    def _row_to_event(self, row) -> ScanEvent:
        return ScanEvent(
            event_id=row[0],
            link_id=row[1],
            slot_id=row[2],
            matched_rule=row[3],
            fingerprint=row[4],
            first_visit=None if row[5] is None else bool(row[5]),
            ip=row[6],
            user_agent=row[7],
            created_at=_parse_timestamp(row[8])
        )


class SQLiteVisitorTracker(VisitorStateTracker):
    """
    Visitor store backed by a primary key on (link_id, fingerprint).

    ``check_and_record`` is a single conflict-ignoring INSERT, so SQLite's
    write lock serializes concurrent first scans and only one of them sees
    an inserted row.
    """

    def __init__(self, db_path: Path, busy_timeout: float = 5.0):
        self.db_path = db_path
        self.busy_timeout = busy_timeout

    async def initialize(self) -> None:
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("""
                CREATE TABLE IF NOT EXISTS visitor_records (
                    link_id INTEGER NOT NULL,
                    fingerprint TEXT NOT NULL,
                    first_seen_at TEXT NOT NULL,
                    PRIMARY KEY (link_id, fingerprint)
                )
            """)

            await db.execute("""
                CREATE INDEX IF NOT EXISTS idx_visitor_records_first_seen
                ON visitor_records(first_seen_at)
            """)

            await db.commit()

    async def check_and_record(self, link_id: int, fingerprint: str, now: datetime) -> CheckResult:
        try:
            async with aiosqlite.connect(self.db_path, timeout=self.busy_timeout) as db:
                cursor = await db.execute(
                    """
                    INSERT INTO visitor_records (link_id, fingerprint, first_seen_at)
                    VALUES (?, ?, ?)
                    ON CONFLICT(link_id, fingerprint) DO NOTHING
                    """,
                    (link_id, fingerprint, _as_utc(now).isoformat())
                )
                inserted = cursor.rowcount
                await db.commit()
                await cursor.close()
        except aiosqlite.Error as e:
            raise TransientStorageError(f"Visitor store write failed: {e}") from e

        return CheckResult(was_first_visit=inserted == 1)

    async def get_record(self, link_id: int, fingerprint: str) -> Optional[VisitorRecord]:
        try:
            async with aiosqlite.connect(self.db_path, timeout=self.busy_timeout) as db:
                cursor = await db.execute(
                    """
                    SELECT first_seen_at FROM visitor_records
                    WHERE link_id = ? AND fingerprint = ?
                    """,
                    (link_id, fingerprint)
                )
                row = await cursor.fetchone()
                await cursor.close()
        except aiosqlite.Error as e:
            raise TransientStorageError(f"Visitor store read failed: {e}") from e

        if not row:
            return None

        return VisitorRecord(
            link_id=link_id,
            fingerprint=fingerprint,
            first_seen_at=_parse_timestamp(row[0])
        )

    async def forget_link(self, link_id: int) -> int:
        return await self._delete("DELETE FROM visitor_records WHERE link_id = ?", (link_id,))

    async def prune_before(self, cutoff: datetime) -> int:
        return await self._delete(
            "DELETE FROM visitor_records WHERE first_seen_at < ?",
            (_as_utc(cutoff).isoformat(),)
        )

    async def _delete(self, query: str, params: tuple) -> int:
        try:
            async with aiosqlite.connect(self.db_path, timeout=self.busy_timeout) as db:
                cursor = await db.execute(query, params)
                affected = cursor.rowcount
                await db.commit()
                await cursor.close()
        except aiosqlite.Error as e:
            raise TransientStorageError(f"Visitor store delete failed: {e}") from e

        return affected
