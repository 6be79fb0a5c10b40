# keydeal_selector/errors.py
from __future__ import annotations


class KeydealError(Exception):
    """Base error for the comparison pipeline."""


class SettingsError(KeydealError):
    """settings.json is unreadable or holds invalid values."""


class FetchError(KeydealError):
    """An HTTP fetch failed after all retries."""


class SourceUnavailable(KeydealError):
    """
    The listing storefront could not be fetched or parsed.

    This is the only failure that aborts a whole comparison run.
    """


class MatchNotFound(KeydealError):
    """Every search variant was tried and none hit the catalog."""


class QuoteUnavailable(KeydealError):
    """The catalog returned no usable price for a resolved item."""


class MetadataUnavailable(KeydealError):
    """Descriptive catalog data could not be fetched."""
