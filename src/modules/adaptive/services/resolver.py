"""
Request-time resolver that picks the slot an adaptive link serves.

Precedence: admin override, then first/return routing, then date rules in
declaration order, then the default slot. The only side effect is the
visitor tracker write made by first/return routing.
"""
import asyncio
import logging
from datetime import UTC, datetime
from typing import Callable, Optional, Sequence, Tuple

from src.modules.adaptive.domain.errors import ConfigurationError, TransientStorageError
from src.modules.adaptive.domain.interfaces import VisitorStateTracker
from src.modules.adaptive.domain.models import (
    AdaptiveLink,
    CheckResult,
    DateRule,
    MatchedRule,
    Resolution,
    Slot,
    StorageFailurePolicy,
)
from src.modules.adaptive.domain.registry import SlotRegistry
from src.modules.adaptive.utils.retry import retry_async
from src.modules.adaptive.utils.schedule import load_zone, rule_matches, to_local

logger = logging.getLogger(__name__)

MalformedRuleHandler = Callable[[int, DateRule, ValueError], None]


def select_date_rule(
    rules: Sequence[DateRule],
    local_now: datetime,
    registry: SlotRegistry,
    on_malformed: Optional[MalformedRuleHandler] = None
) -> Optional[Tuple[int, Slot]]:
    """
    Find the first rule, in declaration order, that matches and points at an existing slot.

    Args:
        rules: Date rules as stored on the link
        local_now: Current wall-clock time in the governing zone
        registry: Slots of the link
        on_malformed: Called for every rule skipped because a field is malformed

    Returns:
        (rule index, slot) of the winning rule, or None
    """
    for index, rule in enumerate(rules):
        try:
            matched = rule_matches(rule, local_now)
        except ValueError as e:
            if on_malformed:
                on_malformed(index, rule, e)
            continue

        if not matched:
            continue

        slot = registry.get(rule.slot)
        if slot is None:
            continue

        return index, slot

    return None


class AdaptiveResolver:

    def __init__(
        self,
        tracker: VisitorStateTracker,
        *,
        failure_policy: StorageFailurePolicy = StorageFailurePolicy.RAISE,
        default_timezone: str = "UTC",
        storage_timeout: Optional[float] = None,
        retry_delay: float = 0.05,
    ):
        self._tracker = tracker
        self._failure_policy = StorageFailurePolicy(failure_policy)
        self._default_timezone = default_timezone
        self._storage_timeout = storage_timeout
        self._retry_delay = retry_delay

    @property
    def failure_policy(self) -> StorageFailurePolicy:
        return self._failure_policy

    async def resolve(
        self,
        link: AdaptiveLink,
        now: Optional[datetime] = None,
        fingerprint: Optional[str] = None,
        *,
        timezone: Optional[str] = None,
        ip: Optional[str] = None
    ) -> Resolution:
        """
        Resolve the content served for one scan.

        Args:
            link: Link configuration, never mutated
            now: Scan instant (defaults to the current UTC time)
            fingerprint: Visitor key, required when first/return routing is on
            timezone: IANA zone overriding the link's own zone
            ip: Client address, used by the admin override

        Returns:
            Selected slot content with the rule that selected it

        Raises:
            ConfigurationError: If the link has no usable default slot or zone
            TransientStorageError: If the visitor store fails and the policy does not degrade
        """
        now = _normalize_now(now)
        registry, default_slot = self._prepare(link)
        zone_name = self._zone_name(link, timezone)

        admin = self._admin_resolution(link, registry, ip)
        if admin:
            return admin

        if link.first_return.enabled:
            return await self._resolve_first_return(link, registry, default_slot, fingerprint, now)

        return self._resolve_date_rules(link, registry, default_slot, now, zone_name)

    def preview(
        self,
        link: AdaptiveLink,
        now: Optional[datetime] = None,
        *,
        timezone: Optional[str] = None,
        ip: Optional[str] = None,
        returning: bool = False
    ) -> Resolution:
        """Resolve without touching the visitor store, as a first-time (or returning) visitor."""
        now = _normalize_now(now)
        registry, default_slot = self._prepare(link)
        zone_name = self._zone_name(link, timezone)

        admin = self._admin_resolution(link, registry, ip)
        if admin:
            return admin

        if link.first_return.enabled:
            return self._first_return_resolution(
                link, registry, default_slot, CheckResult(was_first_visit=not returning)
            )

        return self._resolve_date_rules(link, registry, default_slot, now, zone_name)

    def _prepare(self, link: AdaptiveLink) -> Tuple[SlotRegistry, Slot]:
        if not link.slots:
            raise ConfigurationError(f"Link {link.link_id} has no slots", link_id=link.link_id)

        registry = SlotRegistry(link.slots)
        default_id = link.effective_default_slot_id
        default_slot = registry.get(default_id)
        if default_slot is None:
            raise ConfigurationError(
                f"Default slot {default_id!r} of link {link.link_id} does not exist",
                link_id=link.link_id,
            )
        return registry, default_slot

    def _zone_name(self, link: AdaptiveLink, timezone: Optional[str]) -> str:
        zone_name = timezone or link.timezone or self._default_timezone
        try:
            load_zone(zone_name)
        except ValueError as e:
            raise ConfigurationError(str(e), link_id=link.link_id) from e
        return zone_name

    def _admin_resolution(
        self,
        link: AdaptiveLink,
        registry: SlotRegistry,
        ip: Optional[str]
    ) -> Optional[Resolution]:
        admin = link.admin
        if not admin.enabled or not ip or ip not in admin.ips:
            return None

        slot = registry.get(admin.slot)
        if slot is None:
            logger.warning(f"Admin slot {admin.slot!r} of link {link.link_id} does not exist, ignoring override")
            return None

        return Resolution(content=slot.content, slot_id=slot.id, matched_rule=MatchedRule.ADMIN)

    async def _resolve_first_return(
        self,
        link: AdaptiveLink,
        registry: SlotRegistry,
        default_slot: Slot,
        fingerprint: Optional[str],
        now: datetime
    ) -> Resolution:
        if not fingerprint:
            raise ValueError("fingerprint is required when first/return routing is enabled")

        try:
            check = await self._check_and_record(link.link_id, fingerprint, now)
        except TransientStorageError as e:
            if self._failure_policy is not StorageFailurePolicy.SERVE_DEFAULT:
                raise
            logger.warning(f"Visitor store unavailable for link {link.link_id}, serving default slot: {e}")
            return Resolution(
                content=default_slot.content,
                slot_id=default_slot.id,
                matched_rule=MatchedRule.DEFAULT,
                degraded=True,
            )

        return self._first_return_resolution(link, registry, default_slot, check)

    def _first_return_resolution(
        self,
        link: AdaptiveLink,
        registry: SlotRegistry,
        default_slot: Slot,
        check: CheckResult
    ) -> Resolution:
        rule = link.first_return
        slot_id = rule.first_slot if check.was_first_visit else rule.return_slot
        slot = registry.get(slot_id)

        if slot is None:
            logger.warning(f"First/return slot {slot_id!r} of link {link.link_id} does not exist, using default")
            return Resolution(
                content=default_slot.content,
                slot_id=default_slot.id,
                matched_rule=MatchedRule.DEFAULT,
                first_visit=check.was_first_visit,
            )

        return Resolution(
            content=slot.content,
            slot_id=slot.id,
            matched_rule=MatchedRule.FIRST_RETURN,
            first_visit=check.was_first_visit,
        )

    def _resolve_date_rules(
        self,
        link: AdaptiveLink,
        registry: SlotRegistry,
        default_slot: Slot,
        now: datetime,
        zone_name: str
    ) -> Resolution:
        local_now = to_local(now, load_zone(zone_name))

        def log_malformed(index: int, rule: DateRule, error: ValueError) -> None:
            logger.warning(f"Skipping malformed date rule #{index} of link {link.link_id}: {error}")

        selected = select_date_rule(link.date_rules, local_now, registry, on_malformed=log_malformed)
        if selected is None:
            return Resolution(
                content=default_slot.content,
                slot_id=default_slot.id,
                matched_rule=MatchedRule.DEFAULT,
            )

        index, slot = selected
        return Resolution(
            content=slot.content,
            slot_id=slot.id,
            matched_rule=MatchedRule.DATE_RULE,
            rule_index=index,
        )

    async def _check_and_record(self, link_id: int, fingerprint: str, now: datetime) -> CheckResult:
        if self._failure_policy is StorageFailurePolicy.RETRY:
            return await retry_async(
                lambda: self._call_tracker(link_id, fingerprint, now),
                attempts=2,
                initial_delay=self._retry_delay,
                retry_exceptions=(TransientStorageError,),
                label=f"Visitor check for link {link_id}",
            )
        return await self._call_tracker(link_id, fingerprint, now)

    async def _call_tracker(self, link_id: int, fingerprint: str, now: datetime) -> CheckResult:
        try:
            if self._storage_timeout is None:
                return await self._tracker.check_and_record(link_id, fingerprint, now)
            return await asyncio.wait_for(
                self._tracker.check_and_record(link_id, fingerprint, now),
                timeout=self._storage_timeout,
            )
        except OSError as e:
            # TimeoutError is an OSError subclass
            raise TransientStorageError(f"Visitor store failed for link {link_id}: {e!r}") from e


def _normalize_now(now: Optional[datetime]) -> datetime:
    if now is None:
        return datetime.now(UTC)
    if now.tzinfo is None:
        return now.replace(tzinfo=UTC)
    return now
