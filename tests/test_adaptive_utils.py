"""
Tests for slug generation, fingerprints and retry helpers.
"""
import pytest

from src.modules.adaptive.domain.models import Slot
from src.modules.adaptive.domain.registry import SlotRegistry, resolve_slot_by_id
from src.modules.adaptive.utils.fingerprint import client_ip, derive_fingerprint
from src.modules.adaptive.utils.retry import retry_async
from src.modules.adaptive.utils.slug_generator import (
    BASE62_ALPHABET,
    generate_short_code,
    generate_slug,
    normalize_slug,
    resolve_slug_collision,
    validate_slug,
)


class TestSlugGeneration:
    """Test slug generation and normalization."""

    def test_normalize_basic(self):
        """Test basic slug normalization."""
        assert normalize_slug("Lunch Menu") == "lunch-menu"
        assert normalize_slug("Test_123") == "test-123"
        assert normalize_slug("Multiple   Spaces") == "multiple-spaces"

    def test_normalize_special_chars(self):
        """Test removal of special characters."""
        assert normalize_slug("Hello!@#$%World") == "helloworld"
        assert normalize_slug("---Multiple---Hyphens---") == "multiple-hyphens"
        assert normalize_slug("Café") == "cafe"
        assert normalize_slug("Привет") == ""

    def test_normalize_length_limit(self):
        """Test slug length limitation."""
        assert len(normalize_slug("a" * 100)) == 50

    def test_short_code(self):
        """Test random base62 codes."""
        code = generate_short_code()
        assert len(code) == 8
        assert all(char in BASE62_ALPHABET for char in code)
        assert len(generate_short_code(12)) == 12

    def test_generate_slug(self):
        """Test name-based slugs with short-code fallback."""
        assert generate_slug("My Menu") == "my-menu"
        assert len(generate_slug("!!!")) == 8
        assert len(generate_slug(None)) == 8

    def test_resolve_collision(self):
        """Test collision resolution."""
        existing = {"menu"}

        assert resolve_slug_collision("other", existing) == "other"
        assert resolve_slug_collision("menu", existing) == "menu-2"

        existing.add("menu-2")
        assert resolve_slug_collision("menu", existing) == "menu-3"

    def test_validate_slug(self):
        """Test slug validation."""
        assert validate_slug("my-link") is True
        assert validate_slug("aZ09xY12") is True

        assert validate_slug("") is False
        assert validate_slug("-start") is False
        assert validate_slug("end-") is False
        assert validate_slug("has space") is False
        assert validate_slug("a" * 51) is False


class TestFingerprint:
    """Test visitor fingerprint derivation."""

    def test_client_ip_prefers_forwarded(self):
        assert client_ip({"X-Forwarded-For": "203.0.113.7, 10.0.0.1"}, "10.0.0.1") == "203.0.113.7"
        assert client_ip({"X-Real-IP": "203.0.113.8"}, "10.0.0.1") == "203.0.113.8"
        assert client_ip({}, "10.0.0.1") == "10.0.0.1"
        assert client_ip({}, None) is None

    def test_fingerprint_is_stable(self):
        first = derive_fingerprint("203.0.113.7", "phone", "salt")

        assert first == derive_fingerprint("203.0.113.7", "phone", "salt")
        assert len(first) == 64

    def test_fingerprint_varies(self):
        base = derive_fingerprint("203.0.113.7", "phone", "salt")

        assert base != derive_fingerprint("203.0.113.8", "phone", "salt")
        assert base != derive_fingerprint("203.0.113.7", "laptop", "salt")
        assert base != derive_fingerprint("203.0.113.7", "phone", "other")

    def test_fingerprint_missing_parts(self):
        assert len(derive_fingerprint(None, None)) == 64


class TestSlotRegistry:
    """Test slot lookup."""

    def test_lookup(self):
        registry = SlotRegistry([
            Slot(id="a", name="First", content="1"),
            Slot(id="a", name="Duplicate", content="2"),
            Slot(id="b", name="Second", content="3"),
        ])

        assert len(registry) == 2
        assert registry.get("a").name == "First"
        assert registry.get(None) is None
        assert registry.get("ghost") is None
        assert "b" in registry

    def test_resolve_slot_by_id(self):
        slots = [Slot(id="a", name="First", content="1")]

        assert resolve_slot_by_id(slots, "a") == slots[0]
        assert resolve_slot_by_id(slots, "ghost") is None
        assert resolve_slot_by_id([], "a") is None


class TestRetry:
    """Test the async retry helper."""

    @pytest.mark.asyncio
    async def test_retries_then_succeeds(self):
        calls = []

        async def flaky():
            calls.append(1)
            if len(calls) < 2:
                raise ConnectionError("blip")
            return "ok"

        assert await retry_async(flaky, attempts=3, initial_delay=0) == "ok"
        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_gives_up(self):
        calls = []

        async def broken():
            calls.append(1)
            raise ConnectionError("down")

        with pytest.raises(ConnectionError):
            await retry_async(broken, attempts=2, initial_delay=0)
        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_other_errors_are_not_retried(self):
        calls = []

        async def wrong():
            calls.append(1)
            raise KeyError("bug")

        with pytest.raises(KeyError):
            await retry_async(wrong, attempts=3, initial_delay=0, retry_exceptions=(ConnectionError,))
        assert len(calls) == 1
