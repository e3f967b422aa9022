from __future__ import annotations

import logging
import random
import signal
import sys
import threading
import time
from logging.handlers import RotatingFileHandler
from typing import Callable, Dict, List, Optional, Sequence

from . import config
from .db import Database
from .notifier import FCMNotifier
from .providers import build_providers
from .sites import Site, parse_site
from .tracker import Tracker
from .utils import get_http_session


def setup_logging() -> None:
    level = getattr(logging, config.LOG_LEVEL.upper(), logging.INFO)
    fmt = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if config.LOG_TO_FILE:
        handlers.append(RotatingFileHandler(config.LOG_FILE, maxBytes=2 * 1024 * 1024, backupCount=3))
    logging.basicConfig(level=level, format=fmt, handlers=handlers)


def refresh_site(
    tracker: Tracker,
    site: Site,
    stop_event: threading.Event,
    *,
    item_delay: float = config.ITEM_DELAY_SECONDS,
    item_jitter: float = config.ITEM_JITTER_SECONDS,
    rand: Callable[[float, float], float] = random.uniform,
) -> int:
    """One tick for one site: refresh every known item of `site`, serially.

    Waits `item_delay` plus a uniform jitter between two items. A failing
    item is logged and skipped. Returns the number of items processed; stops
    early, between items, once `stop_event` is set.
    """
    logger = logging.getLogger(__name__)
    logger.info("Refreshing all %s items…", site.value)
    processed = 0
    try:
        for item in tracker.db.iter_items_by_site(site):
            if processed:
                pause = item_delay + (rand(0.0, item_jitter) if item_jitter > 0 else 0.0)
                if stop_event.wait(pause):
                    break
            elif stop_event.is_set():
                break
            try:
                tracker.refresh_item(item)
            except Exception:
                logger.exception("Unexpected error refreshing %s item id=%s", site.value, item.id)
            processed += 1
    except Exception:
        logger.exception("Error reading %s items from the database.", site.value)
    logger.info("Finished refreshing %d %s item(s).", processed, site.value)
    return processed


def site_loop(
    tracker: Tracker,
    site: Site,
    stop_event: threading.Event,
    *,
    interval: float,
    start_offset: float = 0.0,
    item_delay: float = config.ITEM_DELAY_SECONDS,
    item_jitter: float = config.ITEM_JITTER_SECONDS,
) -> None:
    """Tick every `interval` seconds for one site, first tick after `start_offset`."""
    logger = logging.getLogger(__name__)
    if start_offset > 0 and stop_event.wait(start_offset):
        return
    logger.info("Starting %s loop (interval=%ss)", site.value, interval)
    while not stop_event.is_set():
        started = time.monotonic()
        refresh_site(tracker, site, stop_event, item_delay=item_delay, item_jitter=item_jitter)
        remaining = interval - (time.monotonic() - started)
        if stop_event.wait(max(0.0, remaining)):
            break
    logger.info("%s loop stopped.", site.value)


class Scheduler:
    """One background thread per site; parallel across sites, serial within one."""

    def __init__(
        self,
        tracker: Tracker,
        sites: Sequence[Site],
        *,
        interval: float = config.FETCH_INTERVAL_SECONDS,
        offsets: Optional[Dict[Site, float]] = None,
        item_delay: float = config.ITEM_DELAY_SECONDS,
        item_jitter: float = config.ITEM_JITTER_SECONDS,
    ) -> None:
        self.tracker = tracker
        self.sites = list(sites)
        self.interval = interval
        self.offsets = offsets or {}
        self.item_delay = item_delay
        self.item_jitter = item_jitter
        self.stop_event = threading.Event()
        self.threads: List[threading.Thread] = []

    def start(self) -> None:
        for site in self.sites:
            t = threading.Thread(
                target=site_loop,
                args=(self.tracker, site, self.stop_event),
                kwargs={
                    "interval": self.interval,
                    "start_offset": self.offsets.get(site, 0.0),
                    "item_delay": self.item_delay,
                    "item_jitter": self.item_jitter,
                },
                name=f"fetch-{site.value.lower()}",
                daemon=True,
            )
            t.start()
            self.threads.append(t)

    def stop(self, timeout: Optional[float] = None) -> None:
        """Stop issuing new fetches; an item already being processed finishes."""
        self.stop_event.set()
        self.join(timeout)

    def join(self, timeout: Optional[float] = None) -> None:
        for t in self.threads:
            t.join(timeout)

    @property
    def running(self) -> bool:
        return any(t.is_alive() for t in self.threads)


def configured_sites() -> tuple[List[Site], Dict[Site, float]]:
    """Sites from ENABLED_SITES and their phase offsets from SITE_START_OFFSETS."""
    sites = [parse_site(s) for s in config.ENABLED_SITES]
    offsets: Dict[Site, float] = {}
    for i, site in enumerate(sites):
        offsets[site] = config.SITE_START_OFFSETS[i] if i < len(config.SITE_START_OFFSETS) else 0.0
    return sites, offsets


def main() -> None:
    """Initialise and run the per-site fetch loops until SIGINT/SIGTERM."""
    config.validate()
    setup_logging()
    logger = logging.getLogger(__name__)

    if not config.FETCHER_ENABLED:
        logger.error("No functionality enabled (FETCHER_ENABLED=false).")
        return

    logger.info("Initializing database at %s…", config.SQLITE_DB_PATH)
    database = Database(config.SQLITE_DB_PATH)
    database.init_db()

    session = get_http_session()
    notifier = FCMNotifier(config.FCM_SERVER_KEY)
    tracker = Tracker(database, build_providers(session), notifier)

    sites, offsets = configured_sites()
    logger.info(
        "Starting fetcher for %s with interval %ss.",
        ", ".join(s.value for s in sites), config.FETCH_INTERVAL_SECONDS,
    )
    scheduler = Scheduler(tracker, sites, offsets=offsets)

    def _shutdown(signum, _frame) -> None:
        logger.info("Received signal %s, stopping fetch loops…", signum)
        scheduler.stop_event.set()

    signal.signal(signal.SIGINT, _shutdown)
    signal.signal(signal.SIGTERM, _shutdown)

    scheduler.start()
    try:
        while scheduler.running:
            scheduler.join(timeout=1.0)
    finally:
        scheduler.stop()
        session.close()
        notifier.close()
        logger.info("Exiting…")


if __name__ == "__main__":
    main()
