"""
Tests for link options parsing and serialization.
"""
import pytest

from src.modules.adaptive.domain.models import AdaptiveLink, DateRule, Slot
from src.modules.adaptive.utils.options import (
    apply_adaptive_options,
    dump_adaptive_options,
    parse_adaptive_options,
)


NESTED = {
    "adaptive": {
        "slots": [
            {"id": "a", "name": "Menu", "url": "https://example.com/menu"},
            {"id": "b", "label": "Brochure", "fileUrl": "https://files.example.com/b.pdf", "url": "ignored"},
        ],
        "defaultSlot": "a",
        "dateRules": [
            {"slot": "b", "days": ["Sat", "Sun"], "startTime": "10:00", "endTime": "16:00"},
        ],
        "firstReturn": {"enabled": False},
        "admin": {"enabled": True, "ips": [" 203.0.113.5 ", ""], "slot": "b"},
        "timezone": "Europe/Paris",
    }
}

LEGACY = {
    "adaptiveSlots": [
        {"id": "x", "url": "https://example.com/x"},
        {"id": "y", "url": "https://example.com/y"},
    ],
    "adaptiveDefaultSlot": "y",
    "adaptiveFirstReturnEnabled": True,
    "adaptiveFirstSlot": "x",
    "adaptiveReturnSlot": "y",
    "timezone": "UTC",
}


class TestParseOptions:
    """Test both accepted shapes."""

    def test_nested_shape(self):
        parsed = parse_adaptive_options(NESTED)

        assert [slot.id for slot in parsed.slots] == ["a", "b"]
        assert parsed.slots[1].content == "https://files.example.com/b.pdf"
        assert parsed.slots[1].name == "Brochure"
        assert parsed.default_slot_id == "a"
        assert parsed.date_rules == (
            DateRule(slot="b", days=("Sat", "Sun"), start_time="10:00", end_time="16:00"),
        )
        assert parsed.admin.enabled is True
        assert parsed.admin.ips == ("203.0.113.5",)
        assert parsed.timezone == "Europe/Paris"

    def test_legacy_flat_keys(self):
        parsed = parse_adaptive_options(LEGACY)

        assert [slot.id for slot in parsed.slots] == ["x", "y"]
        assert parsed.default_slot_id == "y"
        assert parsed.first_return.enabled is True
        assert parsed.first_return.first_slot == "x"
        assert parsed.first_return.return_slot == "y"
        assert parsed.date_rules == ()

    def test_nested_wins_over_legacy(self):
        options = {**LEGACY, **NESTED}
        parsed = parse_adaptive_options(options)

        assert [slot.id for slot in parsed.slots] == ["a", "b"]
        assert parsed.default_slot_id == "a"
        assert parsed.timezone == "Europe/Paris"

    def test_empty_content_slots_are_skipped(self):
        parsed = parse_adaptive_options({"adaptive": {"slots": [
            {"id": "a", "url": ""},
            {"url": "https://example.com/b"},
        ]}})

        assert len(parsed.slots) == 1
        assert parsed.slots[0].content == "https://example.com/b"
        assert parsed.slots[0].name == "Content 2"
        assert len(parsed.slots[0].id) == 32

    def test_content_is_kept_verbatim(self):
        parsed = parse_adaptive_options({"adaptive": {"slots": [
            {"id": "a", "content": "  Network: cafe\n"},
            {"id": "b", "content": "   "},
        ]}})

        assert [slot.content for slot in parsed.slots] == ["  Network: cafe\n"]

    def test_days_as_string(self):
        parsed = parse_adaptive_options({"adaptive": {"dateRules": [{"slot": "a", "days": "Mon, Tue"}]}})

        assert parsed.date_rules[0].days == ("Mon", "Tue")

    @pytest.mark.parametrize("options", [
        [],
        {"adaptive": "nope"},
        {"adaptive": {"slots": "a,b"}},
        {"adaptive": {"dateRules": ["Mon"]}},
        {"adaptive": {"slots": ["https://example.com"]}},
    ])
    def test_wrong_types(self, options):
        with pytest.raises(ValueError):
            parse_adaptive_options(options)

    @pytest.mark.parametrize("options", [
        {"adaptive": {"firstReturn": {"enabled": "false"}}},
        {"adaptive": {"admin": {"enabled": "true"}}},
        {"adaptiveAdminEnabled": 1},
        {"adaptiveFirstReturnEnabled": "no"},
    ])
    def test_flags_must_be_booleans(self, options):
        with pytest.raises(ValueError, match="must be true or false"):
            parse_adaptive_options(options)

    def test_missing_flags_are_off(self):
        parsed = parse_adaptive_options({"adaptive": {"firstReturn": {"enabled": None}}})

        assert parsed.first_return.enabled is False
        assert parsed.admin.enabled is False


class TestDumpOptions:
    """Test serialization back into the nested shape."""

    def test_dump_and_apply(self):
        link = AdaptiveLink(link_id=1, slug="menu", name="Menu", owner_id="1")
        configured = apply_adaptive_options(link, NESTED)
        dumped = dump_adaptive_options(configured)

        adaptive = dumped["adaptive"]
        assert adaptive["defaultSlot"] == "a"
        assert adaptive["slots"][1] == {"id": "b", "name": "Brochure", "content": "https://files.example.com/b.pdf"}
        assert adaptive["dateRules"] == [
            {"slot": "b", "days": ["Sat", "Sun"], "startTime": "10:00", "endTime": "16:00"},
        ]
        assert adaptive["timezone"] == "Europe/Paris"
        assert parse_adaptive_options(dumped) == parse_adaptive_options(NESTED)

    def test_apply_keeps_timezone_when_absent(self):
        link = AdaptiveLink(
            link_id=1,
            slug="menu",
            name="Menu",
            owner_id="1",
            slots=(Slot(id="old", name="Old", content="https://old.example.com"),),
            timezone="Asia/Tokyo",
        )

        configured = apply_adaptive_options(link, {"adaptive": {"slots": [{"id": "n", "url": "https://new.example.com"}]}})
        assert configured.timezone == "Asia/Tokyo"
        assert [slot.id for slot in configured.slots] == ["n"]
        assert link.slots[0].id == "old"
