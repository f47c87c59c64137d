"""
Slug generation for adaptive short links.
"""
import re
import secrets
import unicodedata
from typing import Optional


MAX_SLUG_LENGTH = 50
SHORT_CODE_LENGTH = 8
BASE62_ALPHABET = "0123456789abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ"
SLUG_PATTERN = re.compile(r'^[A-Za-z0-9-]+$')


def normalize_slug(text: str) -> str:
    """
    Normalize a link name into a slug.

    Rules:
    - Remove accents, drop non-ASCII characters
    - Lowercase
    - Spaces and underscores become hyphens, repeated hyphens collapse
    - Only [a-z0-9-] survive, no leading/trailing hyphens
    - At most MAX_SLUG_LENGTH characters

    Examples:
        >>> normalize_slug("Lunch Menu!")
        'lunch-menu'
        >>> normalize_slug("Café  Hours")
        'cafe-hours'
    """
    text = unicodedata.normalize('NFKD', text)
    text = text.encode('ascii', 'ignore').decode('ascii')
    text = text.lower()
    text = re.sub(r'[\s_]+', '-', text)
    text = re.sub(r'[^a-z0-9-]', '', text)
    text = re.sub(r'-+', '-', text)
    text = text.strip('-')
    text = text[:MAX_SLUG_LENGTH].rstrip('-')
    return text


def generate_short_code(length: int = SHORT_CODE_LENGTH) -> str:
    """Random base62 code, the format printed into QR symbols."""
    return ''.join(secrets.choice(BASE62_ALPHABET) for _ in range(length))


def generate_slug(name: Optional[str] = None) -> str:
    """
    Slug from the link name, or a random short code when the name has no
    usable characters (or is not given).
    """
    slug = normalize_slug(name) if name else ""
    return slug or generate_short_code()


def resolve_slug_collision(base_slug: str, existing_slugs: set[str]) -> str:
    """
    Append the lowest numeric suffix that makes the slug unique.

    Examples:
        >>> resolve_slug_collision("menu", {"menu"})
        'menu-2'
        >>> resolve_slug_collision("menu", {"menu", "menu-2"})
        'menu-3'
    """
    if base_slug not in existing_slugs:
        return base_slug

    counter = 2
    while True:
        candidate = f"{base_slug}-{counter}"
        if candidate not in existing_slugs:
            return candidate
        counter += 1


def validate_slug(slug: str) -> bool:
    """
    Custom slugs: letters, digits and hyphens, 1..MAX_SLUG_LENGTH characters,
    no leading/trailing hyphen. Mixed case is allowed so generated base62
    codes validate too.
    """
    if not slug or len(slug) > MAX_SLUG_LENGTH:
        return False

    if slug.startswith('-') or slug.endswith('-'):
        return False

    return bool(SLUG_PATTERN.match(slug))
