from pricetracker.eligibility import is_eligible, select_recipients
from pricetracker.models import Device, TrackedItem, User


def _tracked(threshold=100000, enabled=True, count=0, item_id=1):
    return TrackedItem(
        item_id=item_id,
        price_lower_threshold=threshold,
        notification_enabled=enabled,
        notification_count=count,
    )


def _user(user_id, tokens, tracked):
    return User(
        id=user_id,
        devices=[Device(device_id=f"d{i}", fcm_token=t) for i, t in enumerate(tokens)],
        tracked_items=[tracked],
    )


def test_price_at_or_under_threshold_in_stock_is_eligible():
    assert is_eligible(_tracked(100000), 90000, 5)
    assert is_eligible(_tracked(100000), 100000, 1)


def test_price_above_threshold_is_not_eligible():
    assert not is_eligible(_tracked(100000), 110000, 5)


def test_out_of_stock_is_not_eligible():
    assert not is_eligible(_tracked(100000), 90000, 0)


def test_disabled_subscription_is_not_eligible():
    assert not is_eligible(_tracked(100000, enabled=False), 1, 5)


def test_count_limit_only_applies_when_set():
    tracked = _tracked(count=3)
    assert is_eligible(tracked, 90000, 5)
    assert is_eligible(tracked, 90000, 5, max_count=0)
    assert not is_eligible(tracked, 90000, 5, max_count=3)
    assert is_eligible(tracked, 90000, 5, max_count=4)


def test_select_recipients_skips_users_without_tokens():
    users = [
        _user(1, ["tok-a"], _tracked()),
        _user(2, [], _tracked()),
        _user(3, ["", "tok-c"], _tracked()),
    ]
    user_ids, tokens = select_recipients(users, 1, 90000, 2)
    assert user_ids == [1, 3]
    assert tokens == ["tok-a", "tok-c"]


def test_select_recipients_filters_by_threshold_and_item():
    users = [
        _user(1, ["tok-a"], _tracked(threshold=85000)),
        _user(2, ["tok-b"], _tracked(threshold=95000)),
        _user(3, ["tok-c"], _tracked(threshold=95000, item_id=2)),
    ]
    user_ids, tokens = select_recipients(users, 1, 90000, 2)
    assert user_ids == [2]
    assert tokens == ["tok-b"]


def test_select_recipients_deduplicates_tokens():
    users = [
        _user(1, ["shared", "tok-a"], _tracked()),
        _user(2, ["shared"], _tracked()),
    ]
    user_ids, tokens = select_recipients(users, 1, 90000, 2)
    assert user_ids == [1, 2]
    assert tokens == ["shared", "tok-a"]
