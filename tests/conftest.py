import datetime as dt
import os

# Keep provider retries out of the unit tests.
os.environ.setdefault("HTTP_MAX_ATTEMPTS", "1")

import pytest

from pricetracker.db import Database
from pricetracker.errors import NotifierFailed
from pricetracker.models import Device, ExternalItem, SendResult, TrackedItem
from pricetracker.sites import Site
from pricetracker.tracker import Tracker

SHOPEE_URL = "https://shopee.co.id/product/111/222"


def make_external(price=100000, stock=5, **kwargs):
    data = dict(
        site=Site.SHOPEE,
        merchant_id="111",
        product_id="222",
        url=SHOPEE_URL,
        name="Kopi Arabika Gayo 1kg",
        price=price,
        stock=stock,
        image_url="https://cf.shopee.co.id/file/abc",
        description="Biji kopi",
        rating=4.8,
        sold=120,
    )
    data.update(kwargs)
    return ExternalItem(**data)


class FakeProvider:
    """Returns queued results per URL; an exception instance is raised."""

    def __init__(self):
        self.results = {}
        self.calls = []

    def queue(self, url, *results):
        self.results.setdefault(url, []).extend(results)

    def fetch_item(self, url):
        self.calls.append(url)
        pending = self.results.get(url)
        if not pending:
            raise AssertionError(f"unexpected fetch for {url}")
        result = pending.pop(0) if len(pending) > 1 else pending[0]
        if isinstance(result, Exception):
            raise result
        return result


class FakeNotifier:
    def __init__(self, fail=False):
        self.fail = fail
        self.sent = []

    def send(self, tokens, title, body, item_id):
        self.sent.append({"tokens": list(tokens), "title": title, "body": body, "item_id": item_id})
        if self.fail:
            raise NotifierFailed("push service unavailable")
        return SendResult(success=len(tokens), failure=0)


class Clock:
    def __init__(self, start=dt.datetime(2024, 3, 1, 8, 0, tzinfo=dt.timezone.utc), step=dt.timedelta(minutes=1)):
        self.now = start
        self.step = step

    def __call__(self):
        current = self.now
        self.now = self.now + self.step
        return current


@pytest.fixture
def database(tmp_path):
    db = Database(str(tmp_path / "tracker.db"))
    db.init_db()
    return db


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def tracker(database, provider, notifier, clock):
    providers = {Site.SHOPEE: provider, Site.TOKOPEDIA: provider, Site.BLIBLI: provider}
    return Tracker(database, providers, notifier, clock=clock, max_tracked_items=25)


@pytest.fixture
def make_user(database):
    counter = {"n": 0}

    def _make(tokens=("token-1",), item_id=None, threshold=100000, enabled=True):
        counter["n"] += 1
        user_id = database.create_user(f"User {counter['n']}", f"user{counter['n']}@example.com")
        for i, tok in enumerate(tokens):
            database.add_device(user_id, Device(device_id=f"dev-{counter['n']}-{i}", fcm_token=tok))
        if item_id is not None:
            database.upsert_tracked_item(
                user_id,
                TrackedItem(item_id=item_id, price_lower_threshold=threshold, notification_enabled=enabled),
            )
        return user_id

    return _make
