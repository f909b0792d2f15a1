from __future__ import annotations

import logging
import os
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

ROUTER_BIN = Path("bin") / "proxy-router"
LOG_DIR = Path("logs")
MAX_LOG_BYTES = 32 * 1024


@dataclass
class ControlResult:
    ok: bool
    message: str = ""
    output: str = ""
    pid: Optional[int] = None
    log: Optional[str] = None


def _read_pid(path: Path) -> int:
    try:
        return int(path.read_text().strip())
    except (OSError, ValueError):
        return 0


def is_running(pid: int) -> bool:
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # exists but owned by another user
        return True
    except OSError:
        return False
    return True


def start_router(root: str = ".") -> ControlResult:
    base = Path(root).resolve()
    binary = base / ROUTER_BIN
    if not binary.is_file():
        return ControlResult(ok=False, message="Router binary missing at bin/proxy-router")

    pid_file = base / LOG_DIR / "router.pid"
    pid = _read_pid(pid_file)
    if is_running(pid):
        return ControlResult(ok=True, message=f"Router already running (pid {pid})", pid=pid)

    try:
        (base / LOG_DIR).mkdir(parents=True, exist_ok=True)
        with (base / LOG_DIR / "router.log").open("ab") as log:
            proc = subprocess.Popen(
                [str(binary)],
                cwd=base,
                stdin=subprocess.DEVNULL,
                stdout=log,
                stderr=subprocess.STDOUT,
                env=os.environ.copy(),
                start_new_session=True,
            )
    except OSError as e:
        logger.error(f"Failed to start router: {e}")
        return ControlResult(ok=False, message=str(e) or "Failed to start router")

    try:
        pid_file.write_text(f"{proc.pid}\n")
    except OSError as e:
        logger.warning(f"Could not write {pid_file}: {e}")
    logger.info(f"Router started (pid {proc.pid})")
    return ControlResult(ok=True, message=f"Router started (pid {proc.pid})", pid=proc.pid)


def run_setup(root: str = ".") -> ControlResult:
    base = Path(root).resolve()
    script = base / "setup.sh"
    if not script.is_file():
        return ControlResult(ok=False, output=f"Setup script missing at {script}")
    try:
        proc = subprocess.run(
            ["bash", str(script)],
            cwd=base,
            env=os.environ.copy(),
            capture_output=True,
            text=True,
        )
    except OSError as e:
        return ControlResult(ok=False, output=str(e))
    output = "\n".join(x for x in (proc.stdout, proc.stderr) if x).strip()
    if proc.returncode != 0:
        logger.warning(f"setup.sh exited with {proc.returncode}")
    return ControlResult(ok=proc.returncode == 0, output=output)


def _tail(path: Path, max_bytes: int = MAX_LOG_BYTES) -> str:
    size = path.stat().st_size
    with path.open("rb") as f:
        f.seek(max(0, size - max_bytes))
        return f.read().decode("utf-8", errors="replace")


def tunnel_status(root: str = ".") -> ControlResult:
    base = Path(root).resolve()
    pid = _read_pid(base / LOG_DIR / "tunnel.pid")
    running = is_running(pid)
    try:
        log = _tail(base / LOG_DIR / "tunnel.log")
    except OSError:
        log = "No tunnel log found. Run cloudflare-tunnel.sh."
    return ControlResult(
        ok=running,
        message=f"Tunnel running (pid {pid})" if running else "Tunnel not running",
        pid=pid if running else None,
        log=log,
    )
