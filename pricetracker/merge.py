"""Folding freshly fetched listings into persisted Items.

Both functions are pure: they never touch a store and take the current time
as an argument.
"""

from __future__ import annotations

import datetime as _dt
from dataclasses import replace
from typing import Tuple

from .models import ExternalItem, Item


def new_item(fetched: ExternalItem, now: _dt.datetime) -> Item:
    """Build the Item for a listing observed for the first time.

    Both price extrema start at the first observed price.
    """
    return Item(
        site=fetched.site,
        merchant_id=fetched.merchant_id,
        product_id=fetched.product_id,
        url=fetched.url,
        name=fetched.name,
        price=fetched.price,
        stock=fetched.stock,
        image_url=fetched.image_url,
        description=fetched.description,
        rating=fetched.rating,
        sold=fetched.sold,
        price_history_previous=None,
        price_history_highest=fetched.price,
        price_history_lowest=fetched.price,
        price_last_changed_at=now,
        created_at=now,
        updated_at=now,
    )


def merge_item(current: Item, fetched: ExternalItem, now: _dt.datetime) -> Tuple[Item, bool]:
    """Return (updated item, price_changed).

    `current` is left untouched. The identity triple, `id` and `created_at`
    are carried over; everything the provider reports is overwritten and
    `updated_at` always moves to `now`, even when nothing else changed.
    """
    highest = current.price_history_highest
    lowest = current.price_history_lowest
    # Records written before extrema were tracked start from the stored price.
    if highest is None:
        highest = current.price
    if lowest is None:
        lowest = current.price

    price_changed = fetched.price != current.price
    previous = current.price_history_previous
    last_changed = current.price_last_changed_at
    if price_changed:
        previous = current.price
        last_changed = now

    updated = replace(
        current,
        name=fetched.name or current.name,
        price=fetched.price,
        stock=fetched.stock,
        image_url=fetched.image_url,
        description=fetched.description,
        rating=fetched.rating,
        sold=fetched.sold,
        price_history_previous=previous,
        price_history_highest=max(highest, fetched.price),
        price_history_lowest=min(lowest, fetched.price),
        price_last_changed_at=last_changed,
        updated_at=now,
    )
    return updated, price_changed


__all__ = ["new_item", "merge_item"]
