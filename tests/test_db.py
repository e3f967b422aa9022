import datetime as dt
import sqlite3

import pytest

from pricetracker import db as db_module
from pricetracker.errors import ItemNotModified, StoreWriteFailed, UserNotFound
from pricetracker.merge import merge_item, new_item
from pricetracker.models import Device, ItemHistory, TrackedItem
from pricetracker.sites import Site

from .conftest import make_external

T0 = dt.datetime(2024, 3, 1, 8, 0, tzinfo=dt.timezone.utc)


def _store(database, price=100000, **kwargs):
    item, created = database.insert_or_get_item(new_item(make_external(price=price, **kwargs), T0))
    assert created
    return item


def test_insert_and_find_item(database):
    item = _store(database)
    assert item.id is not None
    found = database.find_item(item.id)
    assert found == item
    assert found.site is Site.SHOPEE
    assert found.updated_at == T0
    assert database.find_item_by_identity(Site.SHOPEE, "111", "222").id == item.id


def test_insert_or_get_returns_existing_on_identity_conflict(database):
    first = _store(database, price=100000)
    again, created = database.insert_or_get_item(new_item(make_external(price=1), T0))
    assert created is False
    assert again.id == first.id
    assert again.price == 100000


def test_insert_item_rejects_duplicate_identity(database):
    database.insert_item(new_item(make_external(), T0))
    with pytest.raises(StoreWriteFailed):
        database.insert_item(new_item(make_external(), T0))


def test_replace_item_with_matching_version(database):
    item = _store(database)
    updated, _ = merge_item(item, make_external(price=80000), T0 + dt.timedelta(minutes=5))
    database.replace_item(updated, expected_updated_at=item.updated_at)

    stored = database.find_item(item.id)
    assert stored.price == 80000
    assert stored.price_history_lowest == 80000
    assert stored.updated_at == updated.updated_at


def test_replace_item_with_stale_version_is_rejected(database):
    item = _store(database)
    winner, _ = merge_item(item, make_external(price=90000), T0 + dt.timedelta(minutes=1))
    database.replace_item(winner, expected_updated_at=item.updated_at)

    loser, _ = merge_item(item, make_external(price=70000), T0 + dt.timedelta(minutes=2))
    with pytest.raises(ItemNotModified):
        database.replace_item(loser, expected_updated_at=item.updated_at)
    assert database.find_item(item.id).price == 90000


def test_replace_missing_item_is_not_modified(database):
    item = new_item(make_external(), T0)
    item.id = 999
    with pytest.raises(ItemNotModified):
        database.replace_item(item)


def test_iter_items_by_site_pages_through_one_site(database, monkeypatch):
    monkeypatch.setattr(db_module, "_PAGE_SIZE", 2)
    ids = [_store(database, product_id=str(n)).id for n in range(5)]
    _store(database, site=Site.TOKOPEDIA, merchant_id="toko", product_id="kopi",
           url="https://www.tokopedia.com/toko/kopi")

    items = list(database.iter_items_by_site(Site.SHOPEE))
    assert [i.id for i in items] == ids
    assert [i.product_id for i in database.iter_items_by_site(Site.TOKOPEDIA)] == ["kopi"]
    assert list(database.iter_items_by_site(Site.BLIBLI)) == []


def test_history_is_returned_oldest_first_within_range(database):
    item = _store(database)
    for minutes, price in [(20, 90000), (0, 100000), (10, 95000), (30, 85000)]:
        database.append_history(ItemHistory(
            item_id=item.id, price=price, stock=1, rating=4.5, sold=10,
            timestamp=T0 + dt.timedelta(minutes=minutes),
        ))

    all_samples = database.find_history(item.id)
    assert [h.price for h in all_samples] == [100000, 95000, 90000, 85000]

    window = database.find_history(item.id, T0 + dt.timedelta(minutes=10), T0 + dt.timedelta(minutes=20))
    assert [h.price for h in window] == [95000, 90000]
    assert window[0].timestamp == T0 + dt.timedelta(minutes=10)
    assert database.find_history(item.id + 1) == []


def test_upsert_tracked_item_updates_and_rearms(database, make_user):
    user_id = make_user(item_id=1, threshold=100000)
    database.increment_notification_counters([user_id], 1, T0)

    database.upsert_tracked_item(user_id, TrackedItem(item_id=1, price_lower_threshold=90000, notification_enabled=False))
    tracked = database.find_user(user_id).tracked_items
    assert len(tracked) == 1
    assert tracked[0].price_lower_threshold == 90000
    assert tracked[0].notification_enabled is False
    assert tracked[0].notification_count == 0
    assert tracked[0].notification_count_total == 1


def test_upsert_tracked_item_trims_to_limit(database, make_user):
    user_id = make_user()
    for item_id in range(1, 5):
        database.upsert_tracked_item(user_id, TrackedItem(item_id=item_id, price_lower_threshold=1000), limit=3)

    kept = sorted(t.item_id for t in database.find_user(user_id).tracked_items)
    assert kept == [2, 3, 4]


def test_upsert_tracked_item_for_unknown_user(database):
    with pytest.raises(UserNotFound):
        database.upsert_tracked_item(42, TrackedItem(item_id=1, price_lower_threshold=1000))


def test_add_device_keeps_most_recently_seen(database, make_user):
    user_id = make_user(tokens=())
    for n in range(7):
        database.add_device(
            user_id,
            Device(device_id=f"d{n}", fcm_token=f"tok-{n}", last_seen=T0 + dt.timedelta(minutes=n)),
            limit=5,
        )
    devices = database.find_user(user_id).devices
    assert [d.device_id for d in devices] == ["d6", "d5", "d4", "d3", "d2"]


def test_add_device_refreshes_existing_token(database, make_user):
    user_id = make_user(tokens=())
    database.add_device(user_id, Device(device_id="phone", fcm_token="old", last_seen=T0))
    database.add_device(user_id, Device(device_id="phone", fcm_token="new", last_seen=T0 + dt.timedelta(hours=1)))
    devices = database.find_user(user_id).devices
    assert len(devices) == 1
    assert devices[0].fcm_token == "new"

    assert database.update_device_token(user_id, "phone", "newer")
    assert database.find_user(user_id).push_tokens() == ["newer"]
    assert database.remove_device(user_id, "phone")
    assert not database.remove_device(user_id, "phone")


def test_find_users_tracking_item_carries_only_that_subscription(database, make_user):
    a = make_user(tokens=("tok-a",), item_id=1)
    b = make_user(tokens=("tok-b1", "tok-b2"), item_id=1)
    database.upsert_tracked_item(a, TrackedItem(item_id=2, price_lower_threshold=5))
    make_user(tokens=("tok-c",), item_id=2)

    users = database.find_users_tracking_item(1)
    assert [u.id for u in users] == [a, b]
    assert all([t.item_id for t in u.tracked_items] == [1] for u in users)
    assert sorted(users[1].push_tokens()) == ["tok-b1", "tok-b2"]
    assert database.find_users_tracking_item(3) == []


def test_increment_counts_only_existing_subscriptions(database, make_user):
    a = make_user(item_id=1)
    b = make_user(item_id=1)
    c = make_user(item_id=1)
    assert database.remove_tracked_item(c, 1)

    modified = database.increment_notification_counters([a, b, c], 1, T0)
    assert modified == 2

    tracked = database.find_user(a).tracked_items[0]
    assert tracked.notification_count == 1
    assert tracked.notification_count_total == 1
    assert tracked.last_notified_at == T0
    assert database.increment_notification_counters([], 1, T0) == 0


def test_history_range_bounds_in_other_timezones(database):
    item = _store(database)
    database.append_history(ItemHistory(item_id=item.id, price=100000, stock=1, rating=0, sold=0,
                                        timestamp=T0))
    wib = dt.timezone(dt.timedelta(hours=7))

    # 14:00+07:00 is 07:00Z, before the 08:00Z sample.
    assert len(database.find_history(item.id, start=dt.datetime(2024, 3, 1, 14, 0, tzinfo=wib))) == 1
    assert database.find_history(item.id, end=dt.datetime(2024, 3, 1, 14, 0, tzinfo=wib)) == []
    # Naive bounds are read as UTC.
    assert len(database.find_history(item.id, start=dt.datetime(2024, 3, 1, 8, 0))) == 1


def test_history_is_ordered_by_instant(database):
    item = _store(database)
    wib = dt.timezone(dt.timedelta(hours=7))
    database.append_history(ItemHistory(item_id=item.id, price=2, stock=1, rating=0, sold=0,
                                        timestamp=T0 + dt.timedelta(hours=1)))
    database.append_history(ItemHistory(item_id=item.id, price=1, stock=1, rating=0, sold=0,
                                        timestamp=dt.datetime(2024, 3, 1, 15, 30, tzinfo=wib)))
    assert [h.price for h in database.find_history(item.id)] == [1, 2]


@pytest.mark.parametrize(
    "read",
    [
        lambda db: db.find_item(1),
        lambda db: db.find_item_by_identity(Site.SHOPEE, "111", "222"),
        lambda db: list(db.iter_items_by_site(Site.SHOPEE)),
        lambda db: db.find_history(1),
        lambda db: db.find_user(1),
        lambda db: db.find_users_tracking_item(1),
    ],
)
def test_read_errors_are_store_errors(database, read):
    conn = sqlite3.connect(database.path)
    for table in ("items", "item_history", "devices", "tracked_items", "users"):
        conn.execute(f"DROP TABLE {table}")
    conn.commit()
    conn.close()
    with pytest.raises(StoreWriteFailed):
        read(database)
