import argparse
import asyncio
import logging
import sys
from typing import List, Optional

from pydantic import ValidationError
from rich import print
from rich.markup import escape
from rich.table import Table

from nebuchadnezzar.adapters.router_api import RouterClient
from nebuchadnezzar.config import Settings, load_settings
from nebuchadnezzar.control import ControlResult, run_setup, start_router, tunnel_status
from nebuchadnezzar.dashboard import serve
from nebuchadnezzar.engine.readiness import (
    DEGRADED,
    READY,
    evaluate,
    find_primary_provider,
    mor_balance,
)
from nebuchadnezzar.models import Bid, HealthSnapshot, Provider
from nebuchadnezzar.poller import HistoryPoller
from nebuchadnezzar.utils.formatting import format_number, format_uptime, short_address


_LABEL_STYLE = {READY: "green", DEGRADED: "yellow"}


async def collect_status(client: RouterClient, settings: Settings) -> dict:
    health, balance, providers, models = await asyncio.gather(
        client.get_health(),
        client.get_balance(),
        client.get_providers(),
        client.get_models(),
    )
    provider_list = providers.data if providers.ok else []
    primary = find_primary_provider(provider_list, settings.primary_provider_id, settings.wallet_address)
    bids: List[Bid] = []
    bids_error = None
    if primary is not None and primary.id:
        res = await client.get_provider_bids(primary.id)
        if res.ok:
            bids = res.data or []
        else:
            bids_error = res.error
    readiness = evaluate(
        health.data if health.ok else None,
        balance.data if balance.ok else None,
        provider_list,
        models.data if models.ok else [],
        bids,
        primary.id if primary else None,
        settings,
    )
    errors = [r.error for r in (health, balance, providers, models) if r.error]
    if bids_error:
        errors.append(bids_error)
    return {
        "health": health.data if health.ok else None,
        "balance": balance.data if balance.ok else None,
        "providers": provider_list,
        "models": models.data if models.ok else [],
        "primary": primary,
        "bids": bids,
        "readiness": readiness,
        "errors": errors,
    }


async def _status(settings: Settings) -> int:
    async with RouterClient(settings) as client:
        st = await collect_status(client, settings)

    r = st["readiness"]
    style = _LABEL_STYLE.get(r.label, "red")
    print(f"[bold {style}]{r.label}[/] score={r.score}")
    for reason in r.reasons:
        print(f"  - {reason}")

    health = st["health"]
    if health is not None:
        uptime = health.uptime if health.uptime is not None else health.uptime_seconds
        print(f"router: status={health.status or 'n/a'} version={health.version or 'n/a'} uptime={format_uptime(uptime)}")
    if st["balance"] is not None:
        print(f"wallet: {short_address(st['balance'].address or settings.wallet_address, 6)}"
              f" MOR={format_number(mor_balance(st['balance']), 3)} (min {format_number(settings.min_mor_balance, 3)})")
    primary = st["primary"]
    print(f"providers={len(st['providers'])} models={len(st['models'])} bids={len(st['bids'])}"
          f" primary={short_address(primary.address or primary.id, 6) if primary else 'none'}")
    for err in st["errors"]:
        print(f"[red]error:[/] {escape(err)}")
    return 0 if r.label == READY else 1


async def _providers(settings: Settings, with_bids: bool) -> int:
    async with RouterClient(settings) as client:
        res = await client.get_providers()
        if not res.ok:
            print(f"[red]error:[/] {escape(res.error or '')}")
            return 1
        providers: List[Provider] = res.data or []
        bid_counts: List[Optional[int]] = [None] * len(providers)
        if with_bids:
            results = await asyncio.gather(*(client.get_provider_bids(p.id) for p in providers))
            bid_counts = [len(r.data or []) if r.ok else None for r in results]

    table = Table(title=f"Providers ({len(providers)})")
    table.add_column("Provider")
    table.add_column("Stake (MOR)", justify="right")
    table.add_column("Status")
    table.add_column("Registered")
    if with_bids:
        table.add_column("Bids", justify="right")
    for p, n in zip(providers, bid_counts):
        row = [
            short_address(p.address or p.id),
            format_number(p.stake if p.stake is not None else 0, 3),
            p.status or ("active" if p.active else "-"),
            "yes" if p.is_registered else "no",
        ]
        if with_bids:
            row.append("?" if n is None else str(n))
        table.add_row(*row)
    print(table)
    return 0


async def _config(settings: Settings) -> int:
    async with RouterClient(settings) as client:
        cfg, underlying = await asyncio.gather(client.get_config(), client.get_underlying_config())
    rc = 0
    for name, res in (("router config", cfg), ("underlying config", underlying)):
        print(f"[bold]{name}[/]")
        if res.ok:
            print(res.data)
        else:
            print(f"[red]error:[/] {escape(res.error or '')}")
            rc = 1
    return rc


def _print_snapshot(s: HealthSnapshot):
    status = s.health.status if s.health else None
    mor = format_number(mor_balance(s.balance), 3) if s.balance else "–"
    n = len(s.providers) if s.providers is not None else "–"
    line = f"{s.ts.isoformat()} status={status or 'n/a'} MOR={mor} providers={n}"
    if s.error:
        line += f" [red]error={escape(s.error)}[/]"
    print(line)


async def _poll(settings: Settings, interval_ms: Optional[int], ticks: Optional[int]) -> int:
    async with RouterClient(settings) as client:
        poller = HistoryPoller(client, settings, journal_path=settings.events_path)
        if ticks is not None:
            for i in range(ticks):
                _print_snapshot(await poller.tick())
                if i < ticks - 1:
                    await asyncio.sleep((interval_ms or settings.poll_interval_ms) / 1000.0)
            return 0

        handle = poller.start(interval_ms)
        seen = 0
        try:
            while not handle.task.done():
                await asyncio.sleep(0.2)
                if poller.tick_count > seen:
                    seen = poller.tick_count
                    _print_snapshot(poller.latest)
        finally:
            handle.cancel()
            await handle.wait()
    return 0


def _print_control(r: ControlResult) -> int:
    style = "green" if r.ok else "red"
    if r.message:
        print(f"[{style}]{r.message}[/]")
    if r.output:
        print(escape(r.output))
    if r.log:
        print(escape(r.log))
    return 0 if r.ok else 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="nebuchadnezzar")
    parser.add_argument("--config", default=None, help="YAML file with a settings: mapping")
    parser.add_argument("--log-level", default="WARNING")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("status")
    p = sub.add_parser("providers")
    p.add_argument("--bids", action="store_true")
    sub.add_parser("config")
    p = sub.add_parser("poll")
    p.add_argument("--interval-ms", type=int, default=None)
    p.add_argument("--ticks", type=int, default=None)
    p.add_argument("--journal", default=None, help="append each snapshot to this JSONL file")
    p = sub.add_parser("dashboard")
    p.add_argument("--host", default="127.0.0.1")
    p.add_argument("--port", type=int, default=8787)
    p.add_argument("--root", default=".")
    p.add_argument("--journal", default=None, help="JSONL file written by `poll --journal`")
    for name in ("start-router", "setup", "tunnel"):
        p = sub.add_parser(name)
        p.add_argument("--root", default=".")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=args.log_level.upper(), format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    try:
        settings = load_settings(args.config)
    except (FileNotFoundError, ValidationError) as e:
        print(f"[red]Invalid config:[/] {e}")
        return 1
    if getattr(args, "journal", None):
        settings = settings.model_copy(update={"events_path": args.journal})

    if args.command == "status":
        return asyncio.run(_status(settings))
    if args.command == "providers":
        return asyncio.run(_providers(settings, args.bids))
    if args.command == "config":
        return asyncio.run(_config(settings))
    if args.command == "poll":
        try:
            return asyncio.run(_poll(settings, args.interval_ms, args.ticks))
        except KeyboardInterrupt:
            return 0
    if args.command == "dashboard":
        serve(settings, host=args.host, port=args.port, root=args.root)
        return 0
    if args.command == "start-router":
        return _print_control(start_router(args.root))
    if args.command == "setup":
        return _print_control(run_setup(args.root))
    if args.command == "tunnel":
        return _print_control(tunnel_status(args.root))
    return 1


if __name__ == "__main__":
    sys.exit(main())
