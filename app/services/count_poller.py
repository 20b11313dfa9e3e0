"""
Count Poller

Polls list totals (new tickets, unread notifications) on a timer and reports
increases. The first observation of a watcher only records a baseline, so a
restart never replays old items as new.
"""

import asyncio
import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx

logger = logging.getLogger(__name__)

CountFetcher = Callable[[], Awaitable[Optional[int]]]
IncreaseCallback = Callable[[str, int], Awaitable[None]]


class CountWatcher:
    """Remembers the last total seen for one list."""

    def __init__(self, name: str):
        self.name = name
        self.last_total: Optional[int] = None

    def observe(self, total: Optional[int]) -> Optional[int]:
        """
        Record a new total.

        Returns the increase since the previous observation, or None when
        this is the baseline or the total did not grow.
        """
        total = total or 0
        previous = self.last_total
        self.last_total = total

        if previous is None or total <= previous:
            return None
        return total - previous


class _Watch:
    def __init__(self, watcher: CountWatcher, fetch: CountFetcher, on_increase: IncreaseCallback):
        self.watcher = watcher
        self.fetch = fetch
        self.on_increase = on_increase


class CountPoller:
    """Runs registered watchers every `interval_seconds`."""

    def __init__(self, interval_seconds: float = 30.0):
        self.interval_seconds = interval_seconds
        self._watches: Dict[str, _Watch] = {}
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._last_run: Optional[datetime] = None
        self._run_count = 0

    def watch(self, name: str, fetch: CountFetcher, on_increase: IncreaseCallback) -> CountWatcher:
        watcher = CountWatcher(name)
        self._watches[name] = _Watch(watcher, fetch, on_increase)
        return watcher

    def unwatch(self, name: str) -> None:
        self._watches.pop(name, None)

    async def poll_once(self) -> Dict[str, int]:
        """Check every watcher once; returns the increases that fired."""
        increases = {}
        for name, watch in list(self._watches.items()):
            try:
                total = await watch.fetch()
            except Exception as e:
                logger.warning(f"Count fetch for {name} failed: {e}")
                total = 0

            increase = watch.watcher.observe(total)
            if increase is None:
                continue

            increases[name] = increase
            try:
                await watch.on_increase(name, increase)
            except Exception as e:
                logger.error(f"Count watcher callback for {name} failed: {e}", exc_info=True)

        self._last_run = datetime.utcnow()
        self._run_count += 1
        return increases

    async def _poll_loop(self):
        while self._running:
            await self.poll_once()
            await asyncio.sleep(self.interval_seconds)

    def start(self):
        if self._running:
            logger.warning("Count poller is already running")
            return

        self._running = True
        self._task = asyncio.create_task(self._poll_loop())
        logger.info(f"Count poller started with interval {self.interval_seconds} seconds")

    async def stop(self):
        self._running = False

        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        logger.info("Count poller stopped")

    def get_status(self) -> Dict[str, Any]:
        return {
            "running": self._running,
            "interval_seconds": self.interval_seconds,
            "last_run": self._last_run.isoformat() if self._last_run else None,
            "run_count": self._run_count,
            "watchers": {name: w.watcher.last_total for name, w in self._watches.items()},
        }


def api_total_fetcher(
    client: httpx.AsyncClient,
    path: str,
    params: Optional[Dict[str, Any]] = None,
    field: str = "total"
) -> CountFetcher:
    """
    Build a fetcher that reads `meta.<field>` from a list endpoint.

    Any HTTP or decoding error degrades to a count of 0.
    """
    async def fetch() -> int:
        try:
            response = await client.get(path, params=params)
            response.raise_for_status()
            body = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(f"Count request to {path} failed: {e}")
            return 0

        meta = body.get("meta") or body.get("data") or {}
        return int(meta.get(field) or 0)

    return fetch
