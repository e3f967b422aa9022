"""Dataclasses shared by the stores, the merge engine and the notifier."""

from __future__ import annotations

import datetime as _dt
from dataclasses import dataclass, field
from typing import List, Optional

from .sites import Site


@dataclass
class ExternalItem:
    """A listing as normalized by a provider adapter, prices in whole rupiah."""
    site: Site
    merchant_id: str
    product_id: str
    url: str
    name: str
    price: int
    stock: int
    image_url: str = ""
    description: str = ""
    rating: float = 0.0
    sold: int = 0


@dataclass
class Item:
    site: Site
    merchant_id: str
    product_id: str
    url: str
    name: str
    price: int
    stock: int
    image_url: str = ""
    description: str = ""
    rating: float = 0.0
    sold: int = 0
    price_history_previous: Optional[int] = None
    price_history_highest: Optional[int] = None
    price_history_lowest: Optional[int] = None
    price_last_changed_at: Optional[_dt.datetime] = None
    created_at: Optional[_dt.datetime] = None
    updated_at: Optional[_dt.datetime] = None
    id: Optional[int] = None

    @property
    def identity(self) -> tuple[Site, str, str]:
        return (self.site, self.merchant_id, self.product_id)


@dataclass
class ItemHistory:
    item_id: int
    price: int
    stock: int
    rating: float
    sold: int
    timestamp: _dt.datetime
    id: Optional[int] = None


@dataclass
class TrackedItem:
    item_id: int
    price_lower_threshold: int
    notification_enabled: bool = True
    notification_count: int = 0
    notification_count_total: int = 0
    last_notified_at: Optional[_dt.datetime] = None
    created_at: Optional[_dt.datetime] = None
    updated_at: Optional[_dt.datetime] = None


@dataclass
class Device:
    device_id: str
    fcm_token: str = ""
    last_seen: Optional[_dt.datetime] = None
    created_at: Optional[_dt.datetime] = None


@dataclass
class User:
    id: int
    name: str = ""
    email: str = ""
    devices: List[Device] = field(default_factory=list)
    tracked_items: List[TrackedItem] = field(default_factory=list)
    created_at: Optional[_dt.datetime] = None
    updated_at: Optional[_dt.datetime] = None

    def push_tokens(self) -> List[str]:
        return [d.fcm_token for d in self.devices if d.fcm_token]


@dataclass
class SendResult:
    success: int
    failure: int


__all__ = [
    "ExternalItem",
    "Item",
    "ItemHistory",
    "TrackedItem",
    "Device",
    "User",
    "SendResult",
]
