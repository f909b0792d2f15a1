from __future__ import annotations

import asyncio
import logging
from collections import deque
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional, Tuple

from nebuchadnezzar.adapters.router_api import RouterClient
from nebuchadnezzar.config import Settings, load_settings
from nebuchadnezzar.models import HealthSnapshot
from nebuchadnezzar.utils.storage import append_event

logger = logging.getLogger(__name__)

HISTORY_CAPACITY = 200


class PollHandle:
    """The running poll loop: read `snapshots`, stop with `cancel()`."""

    def __init__(self, poller: "HistoryPoller", task: "asyncio.Task[None]"):
        self._poller = poller
        self.task = task

    @property
    def snapshots(self) -> Tuple[HealthSnapshot, ...]:
        return self._poller.snapshots

    def cancel(self) -> None:
        self._poller.cancel()

    async def wait(self) -> None:
        await self.task


class HistoryPoller:
    """Polls health, balance and providers on a fixed cadence.

    Keeps the last `capacity` snapshots, oldest evicted first. The buffer has
    a single writer (the loop); readers get a tuple copy. Cancellation is
    cooperative: an in-flight tick always completes and is appended before
    the loop exits.
    """

    def __init__(
        self,
        client: RouterClient,
        settings: Settings,
        capacity: int = HISTORY_CAPACITY,
        clock: Optional[Callable[[], datetime]] = None,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
        journal_path: Optional[str] = None,
    ):
        self.client = client
        self.settings = settings
        self.journal_path = journal_path
        self.tick_count = 0
        self._buffer: deque = deque(maxlen=capacity)
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._sleep = sleep
        self._cancelled = False
        self._wake: Optional[asyncio.Event] = None

    @property
    def snapshots(self) -> Tuple[HealthSnapshot, ...]:
        return tuple(self._buffer)

    @property
    def latest(self) -> Optional[HealthSnapshot]:
        return self._buffer[-1] if self._buffer else None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    async def tick(self) -> HealthSnapshot:
        ts = self._clock()
        try:
            health, balance, providers = await asyncio.gather(
                self.client.get_health(),
                self.client.get_balance(),
                self.client.get_providers(),
            )
            error = next((r.error for r in (health, balance, providers) if r.error), None)
            snap = HealthSnapshot(
                ts=ts,
                health=health.data if health.ok else None,
                balance=balance.data if balance.ok else None,
                providers=providers.data if providers.ok else None,
                error=error,
            )
        except Exception as e:
            logger.exception("Poll tick failed")
            snap = HealthSnapshot(ts=ts, error=str(e) or e.__class__.__name__)

        self._buffer.append(snap)
        self.tick_count += 1
        if snap.error:
            logger.warning(f"Poll tick {self.tick_count}: {snap.error}")
        await self._journal(snap)
        return snap

    async def _journal(self, snap: HealthSnapshot) -> None:
        if not self.journal_path:
            return
        try:
            event = {"type": "health_snapshot", **snap.model_dump(mode="json")}
            await asyncio.to_thread(append_event, self.journal_path, event)
        except OSError as e:
            logger.warning(f"Could not write journal {self.journal_path}: {e}")

    async def _pause(self, interval_ms: Optional[int]) -> None:
        ms = interval_ms if interval_ms is not None else self.settings.poll_interval_ms
        delay = max(0.0, ms / 1000.0)
        if self._sleep is not None:
            await self._sleep(delay)
            return
        if self._wake is None:
            self._wake = asyncio.Event()
        try:
            await asyncio.wait_for(self._wake.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass

    async def run(self, interval_ms: Optional[int] = None) -> None:
        self._wake = asyncio.Event()
        while not self._cancelled:
            await self.tick()
            if self._cancelled:
                break
            await self._pause(interval_ms)
        logger.info(f"Poller stopped after {self.tick_count} ticks")

    def start(self, interval_ms: Optional[int] = None) -> PollHandle:
        """Schedule the loop on the running event loop."""
        self._cancelled = False
        task = asyncio.get_running_loop().create_task(self.run(interval_ms))
        return PollHandle(self, task)

    def cancel(self) -> None:
        self._cancelled = True
        if self._wake is not None:
            self._wake.set()


async def _poll(settings: Settings, interval_ms: Optional[int]) -> None:
    async with RouterClient(settings) as client:
        poller = HistoryPoller(client, settings, journal_path=settings.events_path)
        await poller.run(interval_ms)


def run_forever(config_path: Optional[str] = None, interval_ms: Optional[int] = None):
    settings = load_settings(config_path)
    asyncio.run(_poll(settings, interval_ms))


if __name__ == "__main__":
    run_forever("config/default.yaml")
