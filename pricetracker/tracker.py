"""Refresh pipeline shared by the scheduler and the request path.

For one item: fetch -> merge -> replace -> history sample -> (price changed
and in stock) -> eligible subscribers -> one push batch -> one counter
increment. No store transaction is open while a provider or the push
service is being called.
"""

from __future__ import annotations

import datetime as _dt
import logging
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from . import config
from .eligibility import select_recipients
from .errors import (ItemNotModified, NotifierFailed, ProviderNotFound,
                     ProviderTransient, StoreWriteFailed, TrackedItemLimitError,
                     UserNotFound)
from .merge import merge_item, new_item
from .models import ExternalItem, Item, ItemHistory, SendResult, TrackedItem
from .notifier import build_message
from .sites import Site, classify_url
from .utils import string_limit, utcnow

logger = logging.getLogger(__name__)


@dataclass
class NotifyOutcome:
    user_ids: List[int]
    tokens: int = 0
    result: Optional[SendResult] = None
    modified: Optional[int] = None

    @property
    def dispatched(self) -> bool:
        return self.result is not None

    @property
    def mismatch(self) -> bool:
        return self.modified is not None and self.modified != len(self.user_ids)


@dataclass
class RefreshOutcome:
    item: Item
    price_changed: bool
    stored: bool
    notify: Optional[NotifyOutcome] = None


class Tracker:
    """Wires the stores, the provider adapters and the push notifier.

    `database` provides the Item, History and Subscription Store operations
    (see db.Database); `providers` maps each site to its adapter; `notifier`
    exposes `send(tokens, title, body, item_id) -> SendResult`.
    """

    def __init__(
        self,
        database,
        providers: Dict[Site, object],
        notifier,
        *,
        clock: Callable[[], _dt.datetime] = utcnow,
        notification_count_limit: int = config.NOTIFICATION_COUNT_LIMIT,
        max_tracked_items: int = config.MAX_TRACKED_ITEMS,
    ) -> None:
        self.db = database
        self.providers = providers
        self.notifier = notifier
        self.clock = clock
        self.notification_count_limit = notification_count_limit
        self.max_tracked_items = max_tracked_items

    def _provider(self, site: Site):
        provider = self.providers.get(Site(site))
        if provider is None:
            raise ProviderTransient(f"no provider registered for site {site}")
        return provider

    # ---- background path ----------------------------------------------------

    def refresh_item(self, item: Item) -> Optional[RefreshOutcome]:
        """Fetch `item` again and run it through the pipeline.

        Returns None when the provider could not deliver the listing this
        cycle. Store and notifier failures are logged, never raised.
        """
        try:
            fetched = self._provider(item.site).fetch_item(item.url)
        except ProviderNotFound as e:
            logger.debug("refresh: item id=%s not found at provider, skipping this cycle: %s", item.id, e)
            return None
        except ProviderTransient as e:
            logger.warning("refresh: error fetching item id=%s (%s), will retry next tick: %s", item.id, item.url, e)
            return None
        return self.apply_fetched(item, fetched)

    def apply_fetched(self, current: Item, fetched: ExternalItem) -> RefreshOutcome:
        now = self.clock()
        updated, price_changed = merge_item(current, fetched, now)
        name = string_limit(updated.name, config.NOTIFICATION_TITLE_NAME_LIMIT)

        stored = True
        concurrent = False
        try:
            self.db.replace_item(updated, expected_updated_at=current.updated_at)
        except ItemNotModified:
            stored = False
            concurrent = True
            logger.warning(
                "refresh: item %s (id=%s) was updated concurrently, keeping the other write",
                name, updated.id,
            )
        except StoreWriteFailed:
            stored = False
            logger.exception("refresh: error replacing item %s (id=%s)", name, updated.id)

        self._record_history(updated, now)

        outcome = RefreshOutcome(item=updated, price_changed=price_changed, stored=stored)
        if not price_changed:
            logger.debug("refresh: price unchanged for item %s (id=%s)", name, updated.id)
        elif updated.stock <= 0:
            logger.debug("refresh: item %s (id=%s) changed price but is out of stock", name, updated.id)
        elif concurrent:
            logger.debug("refresh: skipping notification for item id=%s, concurrent writer owns it", updated.id)
        else:
            outcome.notify = self.notify(updated)
        return outcome

    def _record_history(self, item: Item, now: _dt.datetime) -> None:
        sample = ItemHistory(
            item_id=item.id,
            price=item.price,
            stock=item.stock,
            rating=item.rating,
            sold=item.sold,
            timestamp=now,
        )
        try:
            self.db.append_history(sample)
        except StoreWriteFailed:
            logger.exception("refresh: error inserting history for item id=%s", item.id)

    def notify(self, item: Item) -> NotifyOutcome:
        """Push the price drop of `item` to every eligible subscriber."""
        name = string_limit(item.name, config.NOTIFICATION_TITLE_NAME_LIMIT)
        try:
            users = self.db.find_users_tracking_item(item.id)
        except StoreWriteFailed:
            logger.exception("notify: error finding users tracking item %s (id=%s)", name, item.id)
            return NotifyOutcome(user_ids=[])
        logger.debug("notify: found %d user(s) tracking item %s (id=%s)", len(users), name, item.id)

        user_ids, tokens = select_recipients(
            users, item.id, item.price, item.stock, max_count=self.notification_count_limit,
        )
        outcome = NotifyOutcome(user_ids=user_ids, tokens=len(tokens))
        if not user_ids:
            logger.debug("notify: no users to notify for item %s (id=%s)", name, item.id)
            return outcome

        title, body = build_message(item)
        logger.info(
            "notify: sending notification to %d device(s) for %d user(s) for item %s (id=%s)",
            len(tokens), len(user_ids), name, item.id,
        )
        try:
            outcome.result = self.notifier.send(tokens, title, body, str(item.id))
        except NotifierFailed:
            logger.exception("notify: error sending notification for item %s (id=%s)", name, item.id)
            return outcome
        logger.info(
            "notify: send results for item %s (id=%s): success=%d, failure=%d",
            name, item.id, outcome.result.success, outcome.result.failure,
        )

        try:
            outcome.modified = self.db.increment_notification_counters(user_ids, item.id, self.clock())
        except StoreWriteFailed:
            logger.exception("notify: error incrementing notification counts for item id=%s", item.id)
            return outcome
        if outcome.mismatch:
            logger.error(
                "notify: reconciliation mismatch for item id=%s: updated %d user(s), notified %d, user_ids=%s",
                item.id, outcome.modified, len(user_ids), user_ids,
            )
        return outcome

    # ---- request path -------------------------------------------------------

    def check_item(self, url: str) -> ExternalItem:
        """Fetch a listing without storing anything. Provider errors propagate."""
        site, clean_url = classify_url(url)
        return self._provider(site).fetch_item(clean_url)

    def add_item(
        self,
        user_id: int,
        url: str,
        price_lower_threshold: int,
        notification_enabled: bool = True,
    ) -> Item:
        """Fetch `url`, store or refresh its Item, and subscribe the user to it.

        A brand-new Item gets exactly one history sample; an existing one goes
        through the same merge path as the scheduler.
        """
        fetched = self.check_item(url)
        user = self.db.find_user(user_id)
        if user is None:
            raise UserNotFound(f"no user with id={user_id}")

        item, created = self.db.insert_or_get_item(new_item(fetched, self.clock()))
        if created:
            logger.info("add: stored new item %s (id=%s)", string_limit(item.name, config.NOTIFICATION_TITLE_NAME_LIMIT), item.id)
            self._record_history(item, item.created_at or self.clock())
        else:
            item = self.apply_fetched(item, fetched).item

        already = any(t.item_id == item.id for t in user.tracked_items)
        if not already and len(user.tracked_items) >= self.max_tracked_items:
            raise TrackedItemLimitError(
                f"tracked items are limited to {self.max_tracked_items} per user, user_id={user_id}"
            )
        self.db.upsert_tracked_item(
            user_id,
            TrackedItem(
                item_id=item.id,
                price_lower_threshold=int(price_lower_threshold),
                notification_enabled=bool(notification_enabled),
                notification_count=0,
            ),
            limit=self.max_tracked_items,
        )
        return item

    def untrack_item(self, user_id: int, item_id: int) -> bool:
        return self.db.remove_tracked_item(user_id, item_id)

    def item_history(
        self,
        item_id: int,
        start: Optional[_dt.datetime] = None,
        end: Optional[_dt.datetime] = None,
    ) -> List[ItemHistory]:
        return self.db.find_history(item_id, start, end)


__all__ = ["Tracker", "RefreshOutcome", "NotifyOutcome"]
