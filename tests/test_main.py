import httpx
import pytest

from nebuchadnezzar.adapters.router_api import RouterClient
from nebuchadnezzar.config import Settings
from nebuchadnezzar.engine.readiness import READY, REASON_BID
from nebuchadnezzar.main import build_parser, collect_status, main


def router_handler(bids_status=200):
    def handler(request):
        path = request.url.path
        if path == "/healthcheck":
            return httpx.Response(200, json={"status": "ok", "version": "v5"})
        if path == "/blockchain/balance":
            return httpx.Response(200, json={"MOR": "5000000000000000000"})
        if path == "/blockchain/providers":
            return httpx.Response(200, json={"providers": [
                {"Address": "0xOTHER"},
                {"Address": "0xWallet", "IsRegistered": True},
            ]})
        if path == "/blockchain/models":
            return httpx.Response(200, json={"models": [{"Id": "m1", "Owner": "0xWallet"}]})
        if path == "/blockchain/providers/0xWallet/bids":
            if bids_status != 200:
                return httpx.Response(bids_status, text="bids unavailable")
            return httpx.Response(200, json=[{"Id": "b1"}])
        return httpx.Response(404)

    return handler


@pytest.mark.asyncio
async def test_collect_status_ready():
    settings = Settings(base_url="http://router.local:8082", wallet_address="0xwallet")
    async with RouterClient(settings, transport=httpx.MockTransport(router_handler())) as client:
        st = await collect_status(client, settings)
    assert st["primary"].address == "0xWallet"
    assert [b.id for b in st["bids"]] == ["b1"]
    assert st["readiness"].label == READY
    assert st["errors"] == []


@pytest.mark.asyncio
async def test_collect_status_reports_bid_error():
    settings = Settings(base_url="http://router.local:8082", wallet_address="0xwallet")
    async with RouterClient(settings, transport=httpx.MockTransport(router_handler(500))) as client:
        st = await collect_status(client, settings)
    assert st["readiness"].score == 75
    assert st["readiness"].reasons == [REASON_BID]
    assert st["errors"] == ["bids unavailable"]


def test_parser_commands():
    args = build_parser().parse_args(["--config", "c.yaml", "poll", "--interval-ms", "500", "--ticks", "2"])
    assert (args.config, args.command, args.interval_ms, args.ticks) == ("c.yaml", "poll", 500, 2)
    assert args.journal is None
    args = build_parser().parse_args(["poll", "--journal", "data/events.jsonl"])
    assert args.journal == "data/events.jsonl"
    args = build_parser().parse_args(["dashboard", "--journal", "data/events.jsonl"])
    assert args.journal == "data/events.jsonl"
    args = build_parser().parse_args(["providers", "--bids"])
    assert args.bids is True


def test_main_control_commands(tmp_path):
    assert main(["tunnel", "--root", str(tmp_path)]) == 1
    assert main(["start-router", "--root", str(tmp_path)]) == 1
    (tmp_path / "setup.sh").write_text("echo ok\n")
    assert main(["setup", "--root", str(tmp_path)]) == 0


def test_main_rejects_missing_config(tmp_path):
    assert main(["--config", str(tmp_path / "missing.yaml"), "status"]) == 1
