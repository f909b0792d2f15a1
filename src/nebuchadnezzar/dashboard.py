import json
import logging
import time
from datetime import datetime, timedelta, timezone
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import List

from pydantic import ValidationError

from nebuchadnezzar.config import Settings, load_settings
from nebuchadnezzar.control import run_setup, start_router, tunnel_status
from nebuchadnezzar.engine.readiness import evaluate, evaluate_snapshot, mor_balance
from nebuchadnezzar.models import HealthSnapshot
from nebuchadnezzar.poller import HISTORY_CAPACITY
from nebuchadnezzar.utils.storage import read_events

logger = logging.getLogger(__name__)


def history_from_events(events: List[dict]) -> List[HealthSnapshot]:
    out: List[HealthSnapshot] = []
    for e in events:
        if e.get("type") != "health_snapshot":
            continue
        try:
            out.append(HealthSnapshot.model_validate(e))
        except ValidationError:
            continue
    return out[-HISTORY_CAPACITY:]


def _history_row(s: HealthSnapshot) -> dict:
    return {
        "ts": s.ts.isoformat(),
        "status": s.health.status if s.health else None,
        "mor": mor_balance(s.balance) if s.balance else None,
        "providers": len(s.providers) if s.providers is not None else None,
        "error": s.error,
    }


def api_stats(snaps: List[HealthSnapshot]) -> dict:
    now = datetime.now(timezone.utc)
    one_hour = now - timedelta(hours=1)
    recent = [s for s in snaps if s.ts.astimezone(timezone.utc) > one_hour]
    last_error = next((s for s in reversed(snaps) if s.error), None)
    return {
        "snapshots": len(snaps),
        "lastHourSnapshots": len(recent),
        "lastHourErrors": sum(1 for s in recent if s.error),
        "latestDataTs": snaps[-1].ts.isoformat() if snaps else None,
        "lastError": last_error.error if last_error else None,
        "lastErrorTs": last_error.ts.isoformat() if last_error else None,
    }


def dashboard_payload(events: List[dict], settings: Settings) -> dict:
    snaps = history_from_events(events)
    latest = snaps[-1] if snaps else None
    if latest is not None:
        readiness = evaluate_snapshot(latest, settings)
    else:
        readiness = evaluate(None, None, None, None, None, settings.primary_provider_id, settings)
    return {
        "serverTime": datetime.now(timezone.utc).isoformat(),
        "latest": latest.model_dump(mode="json") if latest else None,
        "readiness": readiness.model_dump(),
        "history": [_history_row(s) for s in snaps],
        "apiStats": api_stats(snaps),
    }


def make_handler(settings: Settings, root: str = "."):
    class Handler(BaseHTTPRequestHandler):
        def _send_json(self, payload: dict, status: int = 200):
            body = json.dumps(payload).encode()
            self.send_response(status)
            self.send_header("Content-Type", "application/json")
            self.send_header("Content-Length", str(len(body)))
            self.end_headers()
            self.wfile.write(body)

        def _payload(self) -> dict:
            return dashboard_payload(read_events(settings.events_path, 800), settings)

        def do_GET(self):
            if self.path == "/health":
                self.send_response(200)
                self.end_headers()
                self.wfile.write(b"ok")
                return

            if self.path == "/json":
                self._send_json(self._payload())
                return

            if self.path == "/api/tunnel/status":
                r = tunnel_status(root)
                self._send_json({"ok": r.ok, "pid": r.pid, "message": r.message, "log": r.log})
                return

            if self.path == "/events":
                self.send_response(200)
                self.send_header("Content-Type", "text/event-stream")
                self.send_header("Cache-Control", "no-cache")
                self.send_header("Connection", "keep-alive")
                self.end_headers()

                last_blob = None
                try:
                    while True:
                        payload = self._payload()
                        # serverTime changes every call; compare the rest
                        blob = json.dumps({k: v for k, v in payload.items() if k != "serverTime"})
                        if blob != last_blob:
                            self.wfile.write(f"data: {json.dumps(payload)}\n\n".encode())
                            self.wfile.flush()
                            last_blob = blob
                        time.sleep(0.5)
                except (BrokenPipeError, ConnectionResetError):
                    return

            self._send_json({"ok": False, "error": f"Unknown path {self.path}"}, status=404)

        def do_POST(self):
            if self.path == "/api/router/start":
                r = start_router(root)
                if r.ok:
                    self._send_json({"ok": True, "message": r.message})
                else:
                    self._send_json({"ok": False, "error": r.message}, status=400)
                return

            if self.path == "/api/setup":
                r = run_setup(root)
                self._send_json({"ok": r.ok, "output": r.output})
                return

            self._send_json({"ok": False, "error": f"Unknown path {self.path}"}, status=404)

        def log_message(self, format, *args):
            logger.debug("%s - %s", self.address_string(), format % args)

    return Handler


def serve(settings: Settings, host: str = "127.0.0.1", port: int = 8787, root: str = "."):
    server = ThreadingHTTPServer((host, port), make_handler(settings, root))
    logger.info(f"Dashboard listening on http://{host}:{port}")
    if not settings.events_path:
        logger.warning("No journal configured; history stays empty until one is set with --journal")
    try:
        server.serve_forever()
    finally:
        server.server_close()


if __name__ == "__main__":
    serve(load_settings(None), host="0.0.0.0")
