"""
Domain models for the adaptive link module.
"""
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional, Tuple


DEFAULT_SCAN_LIMIT = 500


class MatchedRule(str, Enum):
    ADMIN = "admin"
    FIRST_RETURN = "first-return"
    DATE_RULE = "date-rule"
    DEFAULT = "default"


class StorageFailurePolicy(str, Enum):
    """What the resolver does when the visitor store is unavailable."""

    RAISE = "raise"
    RETRY = "retry"
    SERVE_DEFAULT = "serve-default"


@dataclass(frozen=True)
class Slot:
    id: str
    name: str
    content: str


@dataclass(frozen=True)
class DateRule:
    """
    Maps a day/time window to a slot.

    Times are ``HH:MM`` strings and dates ``YYYY-MM-DD`` strings, kept raw so
    that a malformed value only disables its own rule at evaluation time.
    A ``start_time`` later than ``end_time`` wraps past midnight.
    """

    slot: str
    days: Tuple[str, ...] = ()
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    start_date: Optional[str] = None
    end_date: Optional[str] = None


@dataclass(frozen=True)
class FirstReturnRule:
    enabled: bool = False
    first_slot: Optional[str] = None
    return_slot: Optional[str] = None


@dataclass(frozen=True)
class AdminOverride:
    enabled: bool = False
    ips: Tuple[str, ...] = ()
    slot: Optional[str] = None


@dataclass(frozen=True)
class AdaptiveLink:
    link_id: int
    slug: str
    name: str
    owner_id: str
    slots: Tuple[Slot, ...] = ()
    date_rules: Tuple[DateRule, ...] = ()
    first_return: FirstReturnRule = field(default_factory=FirstReturnRule)
    admin: AdminOverride = field(default_factory=AdminOverride)
    default_slot_id: Optional[str] = None
    timezone: Optional[str] = None
    scan_limit: int = DEFAULT_SCAN_LIMIT
    scan_count: int = 0
    created_at: Optional[datetime] = None
    deleted_at: Optional[datetime] = None

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    @property
    def effective_default_slot_id(self) -> Optional[str]:
        if self.default_slot_id:
            return self.default_slot_id
        if self.slots:
            return self.slots[0].id
        return None


@dataclass(frozen=True)
class VisitorRecord:
    link_id: int
    fingerprint: str
    first_seen_at: datetime


@dataclass(frozen=True)
class CheckResult:
    was_first_visit: bool


@dataclass(frozen=True)
class Resolution:
    content: str
    slot_id: str
    matched_rule: MatchedRule
    rule_index: Optional[int] = None
    first_visit: Optional[bool] = None
    degraded: bool = False


@dataclass(frozen=True)
class ScanEvent:
    event_id: int
    link_id: int
    slot_id: str
    matched_rule: str
    fingerprint: Optional[str]
    first_visit: Optional[bool]
    ip: Optional[str]
    user_agent: Optional[str]
    created_at: datetime


@dataclass(frozen=True)
class LinkStats:
    link_id: int
    name: str
    slug: str
    date: Optional[datetime]
    total_scans: int
    unique_visitors: int
    first_visits: int


@dataclass(frozen=True)
class SlotStats:
    link_id: int
    slot_id: str
    total_scans: int
