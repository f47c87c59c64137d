"""
Conversion between stored link options JSON and adaptive domain models.

Two shapes are accepted: the nested ``{"adaptive": {...}}`` document written
by the editor, and the older flat ``adaptive*`` keys. When both are present
the nested values win. Output is always the nested shape.
"""
from dataclasses import dataclass, replace
from typing import Any, Dict, List, Optional, Tuple
from uuid import uuid4

from src.modules.adaptive.domain.models import (
    AdaptiveLink,
    AdminOverride,
    DateRule,
    FirstReturnRule,
    Slot,
)


@dataclass(frozen=True)
class AdaptiveOptions:
    slots: Tuple[Slot, ...]
    date_rules: Tuple[DateRule, ...]
    first_return: FirstReturnRule
    admin: AdminOverride
    default_slot_id: Optional[str]
    timezone: Optional[str]


def parse_adaptive_options(options: Dict[str, Any]) -> AdaptiveOptions:
    """
    Parse link options into domain objects.

    Args:
        options: Decoded options document

    Returns:
        Parsed adaptive configuration

    Raises:
        ValueError: If the document or one of its sections has the wrong type
    """
    if not isinstance(options, dict):
        raise ValueError("Options must be a JSON object")

    adaptive = options.get("adaptive") or {}
    if not isinstance(adaptive, dict):
        raise ValueError("'adaptive' must be a JSON object")

    def pick(nested_key: str, flat_key: str, default: Any = None) -> Any:
        value = adaptive.get(nested_key)
        if value is None:
            value = options.get(flat_key)
        return default if value is None else value

    raw_slots = pick("slots", "adaptiveSlots", [])
    raw_rules = pick("dateRules", "adaptiveDateRules", [])

    first_return_raw = adaptive.get("firstReturn") or {}
    admin_raw = adaptive.get("admin") or {}
    if not isinstance(first_return_raw, dict) or not isinstance(admin_raw, dict):
        raise ValueError("'firstReturn' and 'admin' must be JSON objects")

    first_return = FirstReturnRule(
        enabled=_as_bool(
            _first_not_none(first_return_raw.get("enabled"), options.get("adaptiveFirstReturnEnabled"), False),
            "firstReturn.enabled",
        ),
        first_slot=_clean_id(_first_not_none(first_return_raw.get("firstSlot"), options.get("adaptiveFirstSlot"))),
        return_slot=_clean_id(_first_not_none(first_return_raw.get("returnSlot"), options.get("adaptiveReturnSlot"))),
    )

    admin_ips = _as_list(_first_not_none(admin_raw.get("ips"), options.get("adaptiveAdminIps"), []), "ips")
    admin = AdminOverride(
        enabled=_as_bool(_first_not_none(admin_raw.get("enabled"), options.get("adaptiveAdminEnabled"), False), "admin.enabled"),
        ips=tuple(str(ip).strip() for ip in admin_ips if str(ip).strip()),
        slot=_clean_id(_first_not_none(admin_raw.get("slot"), options.get("adaptiveAdminSlot"))),
    )

    timezone = _clean_id(_first_not_none(adaptive.get("timezone"), options.get("timezone")))

    return AdaptiveOptions(
        slots=tuple(_parse_slots(_as_list(raw_slots, "slots"))),
        date_rules=tuple(_parse_rule(item) for item in _as_list(raw_rules, "dateRules")),
        first_return=first_return,
        admin=admin,
        default_slot_id=_clean_id(pick("defaultSlot", "adaptiveDefaultSlot")),
        timezone=timezone,
    )


def apply_adaptive_options(link: AdaptiveLink, options: Dict[str, Any]) -> AdaptiveLink:
    """Return a copy of ``link`` with the configuration replaced by ``options``."""
    parsed = parse_adaptive_options(options)
    return replace(
        link,
        slots=parsed.slots,
        date_rules=parsed.date_rules,
        first_return=parsed.first_return,
        admin=parsed.admin,
        default_slot_id=parsed.default_slot_id,
        timezone=parsed.timezone or link.timezone,
    )


def dump_adaptive_options(link: AdaptiveLink) -> Dict[str, Any]:
    adaptive: Dict[str, Any] = {
        "slots": [
            {"id": slot.id, "name": slot.name, "content": slot.content}
            for slot in link.slots
        ],
        "defaultSlot": link.default_slot_id,
        "dateRules": [_dump_rule(rule) for rule in link.date_rules],
        "firstReturn": {
            "enabled": link.first_return.enabled,
            "firstSlot": link.first_return.first_slot,
            "returnSlot": link.first_return.return_slot,
        },
        "admin": {
            "enabled": link.admin.enabled,
            "ips": list(link.admin.ips),
            "slot": link.admin.slot,
        },
    }
    if link.timezone:
        adaptive["timezone"] = link.timezone
    return {"adaptive": adaptive}


def _as_bool(value: Any, name: str) -> bool:
    if not isinstance(value, bool):
        raise ValueError(f"'{name}' must be true or false")
    return value


def _parse_slots(items: List[Any]) -> List[Slot]:
    slots = []
    for index, item in enumerate(items):
        if not isinstance(item, dict):
            raise ValueError(f"Slot #{index} must be a JSON object")

        content = _first_not_none(item.get("fileUrl"), item.get("url"), item.get("content"), "")
        content = str(content)
        if not content.strip():
            # The editor keeps empty content rows around; they are not slots
            continue

        slot_id = _clean_id(item.get("id")) or uuid4().hex
        name = str(_first_not_none(item.get("name"), item.get("label"), f"Content {index + 1}")).strip()
        slots.append(Slot(id=slot_id, name=name, content=content))
    return slots


def _parse_rule(item: Any) -> DateRule:
    if not isinstance(item, dict):
        raise ValueError("Date rules must be JSON objects")

    days = item.get("days") or []
    if isinstance(days, str):
        days = days.split(",")

    return DateRule(
        slot=_clean_id(item.get("slot")) or "",
        days=tuple(str(day).strip() for day in _as_list(days, "days") if str(day).strip()),
        start_time=_clean_id(item.get("startTime")),
        end_time=_clean_id(item.get("endTime")),
        start_date=_clean_id(item.get("startDate")),
        end_date=_clean_id(item.get("endDate")),
    )


def _dump_rule(rule: DateRule) -> Dict[str, Any]:
    data: Dict[str, Any] = {"slot": rule.slot}
    if rule.days:
        data["days"] = list(rule.days)
    for key, value in (
        ("startTime", rule.start_time),
        ("endTime", rule.end_time),
        ("startDate", rule.start_date),
        ("endDate", rule.end_date),
    ):
        if value:
            data[key] = value
    return data


def _as_list(value: Any, name: str) -> List[Any]:
    if isinstance(value, (list, tuple)):
        return list(value)
    raise ValueError(f"'{name}' must be a list")


def _first_not_none(*values: Any) -> Any:
    for value in values:
        if value is not None:
            return value
    return None


def _clean_id(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None