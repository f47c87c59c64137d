"""
Adaptive link service: owner configuration and the scan pipeline.
"""
import logging
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple
from uuid import uuid4

from src.modules.adaptive.domain.errors import ScanLimitExceededError
from src.modules.adaptive.domain.interfaces import AdaptiveLinkRepository, VisitorStateTracker
from src.modules.adaptive.domain.models import (
    DEFAULT_SCAN_LIMIT,
    AdaptiveLink,
    AdminOverride,
    DateRule,
    FirstReturnRule,
    Resolution,
    ScanEvent,
    Slot,
)
from src.modules.adaptive.services.resolver import AdaptiveResolver
from src.modules.adaptive.utils.options import apply_adaptive_options
from src.modules.adaptive.utils.schedule import (
    load_zone,
    month_start,
    parse_days,
    parse_rule_date,
    parse_time_of_day,
)
from src.modules.adaptive.utils.slug_generator import (
    generate_slug,
    resolve_slug_collision,
    validate_slug,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ScanOutcome:
    link: AdaptiveLink
    resolution: Resolution
    event: Optional[ScanEvent]


def validate_link_configuration(link: AdaptiveLink) -> None:
    """
    Check a link configuration before it is stored.

    Resolution tolerates stale or malformed configuration; this is the
    stricter gate applied to owner edits.

    Raises:
        ValueError: Describing the first problem found
    """
    slot_ids = [slot.id for slot in link.slots]
    if not slot_ids:
        raise ValueError("At least one content slot is required")
    if len(set(slot_ids)) != len(slot_ids):
        raise ValueError("Slot ids must be unique")

    known = set(slot_ids)
    for slot in link.slots:
        if not slot.content.strip():
            raise ValueError(f"Slot {slot.id!r} has no content")

    if link.default_slot_id and link.default_slot_id not in known:
        raise ValueError(f"Default slot {link.default_slot_id!r} does not exist")

    if link.date_rules and link.first_return.enabled:
        raise ValueError("Choose either date rules or visit rules, not both")

    for index, rule in enumerate(link.date_rules, start=1):
        if rule.slot not in known:
            raise ValueError(f"Rule {index} references unknown slot {rule.slot!r}")
        try:
            parse_days(rule.days)
            parse_time_of_day(rule.start_time)
            parse_time_of_day(rule.end_time)
            start_date = parse_rule_date(rule.start_date)
            end_date = parse_rule_date(rule.end_date)
        except ValueError as e:
            raise ValueError(f"Rule {index}: {e}") from e
        if start_date and end_date and start_date > end_date:
            raise ValueError(f"Rule {index}: start date is after end date")

    if link.first_return.enabled:
        for label, slot_id in (("first", link.first_return.first_slot), ("return", link.first_return.return_slot)):
            if slot_id not in known:
                raise ValueError(f"Visit rule {label} slot {slot_id!r} does not exist")

    if link.admin.enabled:
        if link.admin.slot not in known:
            raise ValueError(f"Admin slot {link.admin.slot!r} does not exist")
        if not link.admin.ips:
            raise ValueError("Admin override needs at least one IP address")

    if link.timezone:
        load_zone(link.timezone)


class AdaptiveLinkService:

    def __init__(
        self,
        repository: AdaptiveLinkRepository,
        tracker: VisitorStateTracker,
        resolver: AdaptiveResolver,
        *,
        default_timezone: Optional[str] = None,
        default_scan_limit: int = DEFAULT_SCAN_LIMIT,
        one_link_per_owner: bool = True,
    ):
        self._repository = repository
        self._tracker = tracker
        self._resolver = resolver
        self._default_timezone = default_timezone
        self._default_scan_limit = default_scan_limit
        self._one_link_per_owner = one_link_per_owner

    @property
    def resolver(self) -> AdaptiveResolver:
        return self._resolver

    async def create_link(
        self,
        name: str,
        owner_id: str,
        contents: Sequence[Tuple[str, str]],
        slug: Optional[str] = None,
        timezone: Optional[str] = None,
        scan_limit: Optional[int] = None
    ) -> AdaptiveLink:
        """
        Create an adaptive link with one slot per (name, content) pair.

        The first slot becomes the default. Rules are configured afterwards.
        """
        if not name or not name.strip():
            raise ValueError("Name is required and cannot be empty")
        name = name.strip()

        if self._one_link_per_owner:
            existing = await self._repository.list_links(owner_id=owner_id)
            if existing:
                raise ValueError(
                    "You can only have one Adaptive QRC per account. "
                    "Modify your existing Adaptive QRC instead."
                )

        if slug:
            slug = slug.strip()
            if not validate_slug(slug):
                raise ValueError(
                    "Invalid slug: letters, digits and hyphens only, "
                    "no leading/trailing hyphens, max 50 characters"
                )
        else:
            slug = generate_slug(name)

        existing_slugs = await self._get_all_active_slugs()
        if slug in existing_slugs:
            slug = resolve_slug_collision(slug, existing_slugs)

        slots = tuple(
            Slot(id=uuid4().hex, name=(label or f"Content {index}").strip(), content=content)
            for index, (label, content) in enumerate(contents, start=1)
        )

        link = AdaptiveLink(
            link_id=0,
            slug=slug,
            name=name,
            owner_id=owner_id,
            slots=slots,
            default_slot_id=slots[0].id if slots else None,
            timezone=timezone or self._default_timezone,
            scan_limit=self._default_scan_limit if scan_limit is None else scan_limit,
        )
        validate_link_configuration(link)

        created = await self._repository.create_link(link)
        logger.info(f"Created adaptive link {created.link_id} ({created.slug}) for owner {owner_id}")
        return created

    async def get_link_by_id(self, link_id: int) -> Optional[AdaptiveLink]:
        return await self._repository.get_link_by_id(link_id, include_deleted=False)

    async def get_link_by_slug(self, slug: str) -> Optional[AdaptiveLink]:
        return await self._repository.get_link_by_slug(slug, include_deleted=False)

    async def list_links(
        self,
        owner_id: Optional[str] = None,
        include_deleted: bool = False
    ) -> List[AdaptiveLink]:
        return await self._repository.list_links(owner_id=owner_id, include_deleted=include_deleted)

    async def add_slot(self, link_id: int, name: str, content: str) -> AdaptiveLink:
        link = await self._require_link(link_id)
        slot = Slot(id=uuid4().hex, name=name.strip() or f"Content {len(link.slots) + 1}", content=content)
        return await self._save(replace(link, slots=link.slots + (slot,)))

    async def remove_slot(self, link_id: int, slot_id: str) -> AdaptiveLink:
        """
        Delete a slot and every reference to it.

        Date rules pointing at the slot are dropped, visit and admin rules
        lose it (and are switched off), and the default moves to the first
        remaining slot.
        """
        link = await self._require_link(link_id)
        if slot_id not in {slot.id for slot in link.slots}:
            raise ValueError(f"Slot {slot_id!r} not found")
        if len(link.slots) == 1:
            raise ValueError("Cannot remove the last content slot")

        slots = tuple(slot for slot in link.slots if slot.id != slot_id)
        date_rules = tuple(rule for rule in link.date_rules if rule.slot != slot_id)

        first_return = link.first_return
        if slot_id in (first_return.first_slot, first_return.return_slot):
            first_return = FirstReturnRule(
                enabled=False,
                first_slot=None if first_return.first_slot == slot_id else first_return.first_slot,
                return_slot=None if first_return.return_slot == slot_id else first_return.return_slot,
            )

        admin = link.admin
        if admin.slot == slot_id:
            admin = AdminOverride(enabled=False, ips=admin.ips, slot=None)

        default_slot_id = link.default_slot_id
        if default_slot_id == slot_id:
            default_slot_id = slots[0].id

        updated = replace(
            link,
            slots=slots,
            date_rules=date_rules,
            first_return=first_return,
            admin=admin,
            default_slot_id=default_slot_id,
        )
        removed_rules = len(link.date_rules) - len(date_rules)
        logger.info(f"Removed slot {slot_id} from link {link_id} ({removed_rules} date rules dropped)")
        return await self._save(updated)

    async def set_default_slot(self, link_id: int, slot_id: str) -> AdaptiveLink:
        link = await self._require_link(link_id)
        return await self._save(replace(link, default_slot_id=slot_id))

    async def set_date_rules(self, link_id: int, rules: Iterable[DateRule]) -> AdaptiveLink:
        link = await self._require_link(link_id)
        return await self._save(replace(link, date_rules=tuple(rules)))

    async def set_first_return(
        self,
        link_id: int,
        first_slot: Optional[str],
        return_slot: Optional[str],
        enabled: bool = True
    ) -> AdaptiveLink:
        link = await self._require_link(link_id)
        rule = FirstReturnRule(enabled=enabled, first_slot=first_slot, return_slot=return_slot)
        return await self._save(replace(link, first_return=rule))

    async def set_admin_override(
        self,
        link_id: int,
        ips: Iterable[str],
        slot_id: Optional[str],
        enabled: bool = True
    ) -> AdaptiveLink:
        link = await self._require_link(link_id)
        admin = AdminOverride(enabled=enabled, ips=tuple(ip.strip() for ip in ips if ip.strip()), slot=slot_id)
        return await self._save(replace(link, admin=admin))

    async def set_timezone(self, link_id: int, timezone: Optional[str]) -> AdaptiveLink:
        link = await self._require_link(link_id)
        return await self._save(replace(link, timezone=timezone or None))

    async def apply_options(self, link_id: int, options: Dict[str, Any]) -> AdaptiveLink:
        """Replace a link's whole configuration from an options document."""
        link = await self._require_link(link_id)
        return await self._save(apply_adaptive_options(link, options))

    async def delete_link(self, link_id: int) -> bool:
        deleted = await self._repository.soft_delete_link(link_id)
        if deleted:
            forgotten = await self._tracker.forget_link(link_id)
            logger.info(f"Deleted adaptive link {link_id}, dropped {forgotten} visitor records")
        return deleted

    async def handle_scan(
        self,
        slug: str,
        *,
        fingerprint: Optional[str],
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
        now: Optional[datetime] = None,
        timezone: Optional[str] = None
    ) -> Optional[ScanOutcome]:
        """
        Serve one scan of a short link.

        Returns:
            The link, its resolution and the recorded scan event, or None if
            no active link has this slug. The event is None when the scan
            log could not be written; the resolution is served regardless.

        Raises:
            ScanLimitExceededError: If the monthly scan quota is used up
            ConfigurationError: If the link cannot produce content
            TransientStorageError: If the visitor store fails under the raise/retry policies
        """
        link = await self._repository.get_link_by_slug(slug, include_deleted=False)
        if not link:
            return None

        now = now or datetime.now(UTC)

        if link.scan_limit > 0:
            used = await self._repository.count_scans_since(link.link_id, month_start(now))
            if used >= link.scan_limit:
                raise ScanLimitExceededError(link.link_id, link.scan_limit, used)

        resolution = await self._resolver.resolve(link, now, fingerprint, timezone=timezone, ip=ip)

        try:
            event = await self._repository.log_scan(
                link_id=link.link_id,
                slot_id=resolution.slot_id,
                matched_rule=resolution.matched_rule.value,
                fingerprint=fingerprint,
                first_visit=resolution.first_visit,
                ip=ip,
                user_agent=user_agent,
                created_at=now
            )
        except Exception as e:
            logger.error(f"Failed to record scan of link {link.link_id}: {e}", exc_info=True)
            event = None

        return ScanOutcome(link=link, resolution=resolution, event=event)

    async def _require_link(self, link_id: int) -> AdaptiveLink:
        link = await self._repository.get_link_by_id(link_id, include_deleted=False)
        if not link:
            raise ValueError(f"Adaptive link {link_id} not found")
        return link

    async def _save(self, link: AdaptiveLink) -> AdaptiveLink:
        validate_link_configuration(link)
        if not await self._repository.update_link(link):
            raise ValueError(f"Adaptive link {link.link_id} not found")
        stored = await self._repository.get_link_by_id(link.link_id)
        assert stored is not None
        return stored

    async def _get_all_active_slugs(self) -> set[str]:
        links = await self._repository.list_links(include_deleted=False)
        return {link.slug for link in links}
