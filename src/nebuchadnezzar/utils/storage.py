from __future__ import annotations
import json
import os
from pathlib import Path
from datetime import datetime, timezone
from typing import List, Optional

READ_BLOCK_BYTES = 64 * 1024


def append_event(path: str, event: dict) -> None:
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    event = {"ts": datetime.now(timezone.utc).isoformat(), **event}
    with p.open("a") as f:
        f.write(json.dumps(event) + "\n")


def _tail_lines(p: Path, n: int, block: int) -> List[str]:
    with p.open("rb") as f:
        f.seek(0, os.SEEK_END)
        pos = f.tell()
        data = b""
        # n complete lines need n + 1 newlines once the first line may be cut
        while pos > 0 and data.count(b"\n") <= n:
            step = min(block, pos)
            pos -= step
            f.seek(pos)
            data = f.read(step) + data
    lines = data.decode("utf-8", errors="replace").splitlines()
    if pos > 0:
        lines = lines[1:]
    return [ln for ln in lines if ln.strip()][-n:]


def read_events(path: Optional[str], n: int = 400, block: int = READ_BLOCK_BYTES) -> List[dict]:
    """Last `n` journal events, reading backwards from the end of the file."""
    if not path or n <= 0:
        return []
    p = Path(path)
    if not p.exists():
        return []
    out = []
    for ln in _tail_lines(p, n, block):
        try:
            out.append(json.loads(ln))
        except ValueError:
            # partially written line from a concurrent append
            continue
    return out
