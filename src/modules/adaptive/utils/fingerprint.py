"""
Visitor fingerprint derivation from request metadata.

Two visitors behind the same address with the same user agent share a
fingerprint; first/return routing accepts that approximation.
"""
import hashlib
from typing import Mapping, Optional


def client_ip(headers: Mapping[str, str], remote: Optional[str]) -> Optional[str]:
    """
    Client address, preferring the first ``X-Forwarded-For`` entry.

    Examples:
        >>> client_ip({"X-Forwarded-For": "203.0.113.7, 10.0.0.1"}, "10.0.0.1")
        '203.0.113.7'
    """
    forwarded = headers.get("X-Forwarded-For") or headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first

    real_ip = headers.get("X-Real-IP") or headers.get("x-real-ip")
    if real_ip and real_ip.strip():
        return real_ip.strip()

    return remote or None


def derive_fingerprint(ip: Optional[str], user_agent: Optional[str], salt: str = "") -> str:
    """
    Hash salt, address and user agent into a hex SHA-256 digest.

    Missing parts hash as empty strings, so the result is always defined.
    """
    material = "\x1f".join([salt, ip or "", (user_agent or "").strip()])
    return hashlib.sha256(material.encode("utf-8")).hexdigest()
