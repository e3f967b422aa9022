"""Exception types raised across the price tracker.

Per-item errors are contained by the scheduler; nothing here is user-visible
on the background path.
"""

from __future__ import annotations


class PriceTrackerError(Exception):
    """Base class for all price tracker errors."""


class UnsupportedSiteError(PriceTrackerError, ValueError):
    """Raised when a URL does not belong to a supported e-commerce site."""


class ProviderError(PriceTrackerError):
    """Raised by provider adapters when an item cannot be fetched."""


class ProviderTransient(ProviderError):
    """Network, HTTP 5xx or parse failure. Retried on the next tick."""


class ProviderNotFound(ProviderError):
    """The listing is gone (delisted or never existed)."""


class StoreWriteFailed(PriceTrackerError):
    """A store write did not go through."""


class ItemNotModified(StoreWriteFailed):
    """Compare-and-swap replace lost to a concurrent writer."""


class NotifierFailed(PriceTrackerError):
    """The push provider rejected the batch or could not be reached."""


class TrackedItemLimitError(PriceTrackerError):
    """The user already tracks the maximum number of items."""


class UserNotFound(PriceTrackerError):
    pass


__all__ = [
    "PriceTrackerError",
    "UnsupportedSiteError",
    "ProviderError",
    "ProviderTransient",
    "ProviderNotFound",
    "StoreWriteFailed",
    "ItemNotModified",
    "NotifierFailed",
    "TrackedItemLimitError",
    "UserNotFound",
]
