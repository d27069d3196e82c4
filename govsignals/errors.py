"""Exception taxonomy for the signals pipeline."""

from __future__ import annotations


class GovSignalsError(Exception):
    """Base class for pipeline errors."""


class ConfigurationError(GovSignalsError):
    """Configuration is missing or unusable. Aborts a run."""


class UnauthorizedTrigger(GovSignalsError):
    """A run was triggered without a valid scheduler token."""


class LockHeld(GovSignalsError):
    """Another run holds the named lease."""


class FeedFetchError(GovSignalsError):
    """A single feed/language fetch failed (transient upstream)."""

    def __init__(self, message: str, kind: str = "network"):
        super().__init__(message)
        self.kind = kind  # timeout, http, network, parse


# Enrichment failure categories
AUTH = "auth"
RATE_LIMIT = "rate_limit"
QUOTA = "quota"
CONTENT_POLICY = "content_policy"
TIMEOUT = "timeout"
INVALID_RESPONSE = "invalid_response"
UPSTREAM = "upstream"

# Categories that point at misconfiguration rather than load; never retried
NON_RETRYABLE = {AUTH, QUOTA, CONTENT_POLICY, INVALID_RESPONSE}


class EnrichmentError(GovSignalsError):
    """The content-enrichment collaborator failed for one signal."""

    def __init__(self, message: str, category: str = UPSTREAM):
        super().__init__(message)
        self.category = category

    @property
    def retryable(self) -> bool:
        return self.category not in NON_RETRYABLE

    def describe(self) -> str:
        return f"{self.category}: {self}"


class ImageLookupError(GovSignalsError):
    """The image-lookup collaborator found nothing usable."""
