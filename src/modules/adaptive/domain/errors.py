"""
Errors raised by adaptive link resolution.
"""


class AdaptiveError(Exception):
    """Base class for adaptive resolution failures."""


class ConfigurationError(AdaptiveError):
    """The link cannot produce content for any scan (no slots, bad default, bad zone)."""

    def __init__(self, message: str, link_id: int | None = None):
        super().__init__(message)
        self.link_id = link_id


class TransientStorageError(AdaptiveError):
    """The visitor store is unreachable or timed out."""


class ScanLimitExceededError(AdaptiveError):
    def __init__(self, link_id: int, limit: int, used: int):
        super().__init__(
            f"Monthly scan limit reached for link {link_id} ({used}/{limit} scans)"
        )
        self.link_id = link_id
        self.limit = limit
        self.used = used
