"""
Price tracking service package.

This package contains modules for refreshing tracked e-commerce listings
(Shopee, Tokopedia, Blibli), keeping their price/stock history, deciding
which subscribers to notify and pushing price drops through Firebase Cloud
Messaging.  The request-serving layer imports `tracker.Tracker`; the
background fetcher is started from `main`.
"""

__all__ = [
    "config",
    "db",
    "eligibility",
    "errors",
    "main",
    "merge",
    "models",
    "notifier",
    "providers",
    "sites",
    "tracker",
    "utils",
]
