import math
from typing import Optional


def format_number(value: Optional[float], digits: int = 2) -> str:
    if value is None or (isinstance(value, float) and math.isnan(value)):
        return "–"
    return f"{float(value):,.{digits}f}"


def format_uptime(seconds: Optional[float]) -> str:
    if not seconds or math.isnan(seconds):
        return "Unknown"
    days = int(seconds // 86400)
    hours = int((seconds % 86400) // 3600)
    minutes = int((seconds % 3600) // 60)
    parts = []
    if days:
        parts.append(f"{days}d")
    if hours:
        parts.append(f"{hours}h")
    if minutes:
        parts.append(f"{minutes}m")
    if not parts:
        parts.append(f"{int(seconds)}s")
    return " ".join(parts)


def short_address(address: Optional[str], chars: int = 4) -> str:
    if not address:
        return "Unknown"
    if len(address) <= chars * 2:
        return address
    return f"{address[:chars + 2]}…{address[-chars:]}"
