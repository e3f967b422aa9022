"""Deciding which subscribers get a price-drop push."""

from __future__ import annotations

from typing import Iterable, List, Optional, Tuple

from .models import TrackedItem, User


def is_eligible(
    tracked: TrackedItem,
    price: int,
    stock: int,
    *,
    max_count: Optional[int] = None,
) -> bool:
    """True when this subscription should hear about `price` at `stock`.

    Requires notifications enabled, the price at or under the user's
    threshold and at least one unit in stock. When `max_count` is a positive
    number, subscriptions that already reached it are skipped.
    """
    if not tracked.notification_enabled:
        return False
    if price > tracked.price_lower_threshold or stock <= 0:
        return False
    if max_count and tracked.notification_count >= max_count:
        return False
    return True


def select_recipients(
    users: Iterable[User],
    item_id: int,
    price: int,
    stock: int,
    *,
    max_count: Optional[int] = None,
) -> Tuple[List[int], List[str]]:
    """Return (user_ids, push_tokens) for one changed item.

    Users without a single push token are left out of both lists, so they are
    never counted as notified. Tokens keep device order and are de-duplicated
    across users.
    """
    user_ids: List[int] = []
    tokens: List[str] = []
    seen: set[str] = set()
    for u in users:
        tracked = next((t for t in u.tracked_items if t.item_id == item_id), None)
        if tracked is None or not is_eligible(tracked, price, stock, max_count=max_count):
            continue
        user_tokens = u.push_tokens()
        if not user_tokens:
            continue
        user_ids.append(u.id)
        for tok in user_tokens:
            if tok not in seen:
                seen.add(tok)
                tokens.append(tok)
    return user_ids, tokens


__all__ = ["is_eligible", "select_recipients"]
