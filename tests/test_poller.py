import asyncio
import threading
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from nebuchadnezzar.adapters.router_api import ApiResult, RouterClient
from nebuchadnezzar.config import Settings
from nebuchadnezzar.models import BlockchainBalance, Provider, RouterHealth
from nebuchadnezzar.poller import HISTORY_CAPACITY, HistoryPoller
from nebuchadnezzar.utils.storage import read_events

T0 = datetime(2024, 5, 1, tzinfo=timezone.utc)


class FakeClient:
    def __init__(self, health=None, balance=None, providers=None):
        self.health = health or ApiResult.success(RouterHealth(status="ok"))
        self.balance = balance or ApiResult.success(BlockchainBalance())
        self.providers = providers or ApiResult.success([Provider(id="p")])
        self.gate = None
        self.started = asyncio.Event()

    async def get_health(self):
        self.started.set()
        if self.gate is not None:
            await self.gate.wait()
        if isinstance(self.health, Exception):
            raise self.health
        return self.health

    async def get_balance(self):
        return self.balance

    async def get_providers(self):
        return self.providers


def counting_clock():
    state = {"n": 0}

    def clock():
        state["n"] += 1
        return T0 + timedelta(seconds=state["n"])

    return clock


@pytest.mark.asyncio
async def test_tick_collects_all_three_payloads():
    poller = HistoryPoller(FakeClient(), Settings(), clock=counting_clock())
    snap = await poller.tick()
    assert snap.ts == T0 + timedelta(seconds=1)
    assert snap.health.status == "ok"
    assert snap.balance == BlockchainBalance()
    assert [p.id for p in snap.providers] == ["p"]
    assert snap.models is None
    assert snap.error is None
    assert poller.latest is snap
    assert poller.snapshots == (snap,)


@pytest.mark.asyncio
async def test_first_error_wins_in_fixed_order():
    client = FakeClient(
        balance=ApiResult.failure("balance down", status=500),
        providers=ApiResult.failure("providers down"),
    )
    poller = HistoryPoller(client, Settings())
    snap = await poller.tick()
    assert snap.error == "balance down"
    assert snap.health.status == "ok"
    assert snap.balance is None
    assert snap.providers is None

    client.health = ApiResult.failure("health down")
    snap = await poller.tick()
    assert snap.error == "health down"
    assert snap.health is None


@pytest.mark.asyncio
async def test_buffer_keeps_most_recent_entries_in_order():
    poller = HistoryPoller(FakeClient(), Settings(), clock=counting_clock())
    for _ in range(250):
        await poller.tick()
    snaps = poller.snapshots
    assert len(snaps) == HISTORY_CAPACITY
    assert snaps[0].ts == T0 + timedelta(seconds=51)
    assert snaps[-1].ts == T0 + timedelta(seconds=250)
    assert all(a.ts < b.ts for a, b in zip(snaps, snaps[1:]))
    assert poller.tick_count == 250


@pytest.mark.asyncio
async def test_snapshots_is_a_copy():
    poller = HistoryPoller(FakeClient(), Settings())
    await poller.tick()
    view = poller.snapshots
    await poller.tick()
    assert len(view) == 1
    assert len(poller.snapshots) == 2


@pytest.mark.asyncio
async def test_unexpected_exception_still_records_snapshot():
    poller = HistoryPoller(FakeClient(health=RuntimeError("boom")), Settings())
    snap = await poller.tick()
    assert snap.error == "boom"
    assert snap.health is None
    assert len(poller.snapshots) == 1


@pytest.mark.asyncio
async def test_loop_runs_until_cancelled():
    delays = []

    async def fake_sleep(delay):
        delays.append(delay)
        await asyncio.sleep(0)

    poller = HistoryPoller(FakeClient(), Settings(poll_interval_ms=1500), sleep=fake_sleep)
    handle = poller.start()
    while poller.tick_count < 3:
        await asyncio.sleep(0)
    handle.cancel()
    await asyncio.wait_for(handle.wait(), timeout=2)
    assert poller.cancelled
    assert len(handle.snapshots) >= 3
    assert set(delays) == {1.5}


@pytest.mark.asyncio
async def test_interval_override():
    delays = []

    async def fake_sleep(delay):
        delays.append(delay)
        poller.cancel()

    poller = HistoryPoller(FakeClient(), Settings(poll_interval_ms=15000), sleep=fake_sleep)
    await poller.run(interval_ms=250)
    assert delays == [0.25]
    assert poller.tick_count == 1


@pytest.mark.asyncio
async def test_cancel_lets_in_flight_tick_finish():
    client = FakeClient()
    client.gate = asyncio.Event()
    poller = HistoryPoller(client, Settings(poll_interval_ms=60000))
    handle = poller.start()
    await asyncio.wait_for(client.started.wait(), timeout=2)

    handle.cancel()
    assert handle.snapshots == ()
    client.gate.set()
    await asyncio.wait_for(handle.wait(), timeout=2)
    assert len(handle.snapshots) == 1
    assert handle.snapshots[0].health.status == "ok"


@pytest.mark.asyncio
async def test_cancel_wakes_long_sleep():
    poller = HistoryPoller(FakeClient(), Settings(poll_interval_ms=60000))
    handle = poller.start()
    while poller.tick_count < 1:
        await asyncio.sleep(0)
    handle.cancel()
    await asyncio.wait_for(handle.wait(), timeout=1)
    assert poller.tick_count == 1


@pytest.mark.asyncio
async def test_journal_records_snapshots(tmp_path):
    path = tmp_path / "events.jsonl"
    poller = HistoryPoller(
        FakeClient(providers=ApiResult.failure("nope")),
        Settings(),
        clock=counting_clock(),
        journal_path=str(path),
    )
    await poller.tick()
    events = read_events(str(path))
    assert len(events) == 1
    assert events[0]["type"] == "health_snapshot"
    assert events[0]["error"] == "nope"
    assert events[0]["ts"].startswith("2024-05-01T00:00:01")


@pytest.mark.asyncio
async def test_tick_against_router_client():
    def handler(request):
        if request.url.path == "/healthcheck":
            return httpx.Response(200, json={"status": "ok"})
        if request.url.path == "/blockchain/balance":
            return httpx.Response(200, json={"MOR": "2500000000000000000"})
        return httpx.Response(503, text="providers unavailable")

    settings = Settings(base_url="http://router.local:8082")
    async with RouterClient(settings, transport=httpx.MockTransport(handler)) as client:
        snap = await HistoryPoller(client, settings).tick()
    assert snap.balance.mor.balance == 2.5
    assert snap.providers is None
    assert snap.error == "providers unavailable"


@pytest.mark.asyncio
async def test_journal_write_runs_off_the_event_loop(tmp_path, monkeypatch):
    loop_thread = threading.get_ident()
    writers = []

    def recording_append(path, event):
        writers.append(threading.get_ident())

    monkeypatch.setattr("nebuchadnezzar.poller.append_event", recording_append)
    poller = HistoryPoller(FakeClient(), Settings(), journal_path=str(tmp_path / "events.jsonl"))
    await poller.tick()
    assert len(writers) == 1
    assert writers[0] != loop_thread


@pytest.mark.asyncio
async def test_no_journal_by_default(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    settings = Settings()
    assert settings.events_path is None
    await HistoryPoller(FakeClient(), settings, journal_path=settings.events_path).tick()
    assert list(tmp_path.iterdir()) == []
