from __future__ import annotations

import math
import re
from typing import Any, Callable, Iterable, List, Optional, TypeVar

from nebuchadnezzar.models import (
    Allowance,
    Bid,
    BlockchainBalance,
    Model,
    Provider,
    RouterHealth,
    TokenBalance,
)

T = TypeVar("T")

WEI_PER_UNIT = 10**18
# Plain numbers above this are assumed to be wei that went through a JSON float.
WEI_HEURISTIC_THRESHOLD = 1_000_000

_DIGITS = re.compile(r"[0-9]+")

HEALTH_ALIASES = {
    "status": ("status", "Status"),
    "version": ("version", "Version"),
    "uptime": ("uptime", "Uptime"),
    "uptime_seconds": ("uptimeSeconds", "UptimeSeconds"),
    "message": ("message", "Message"),
    "timestamp": ("timestamp", "Timestamp"),
}

BALANCE_ALIASES = {
    "address": ("address", "Address", "wallet", "Wallet"),
    "mor": ("mor", "MOR", "Mor", "MOR_BALANCE"),
    "eth": ("eth", "ETH", "Eth"),
    "tokens": ("tokens", "Tokens"),
    "allowance": ("allowance", "Allowance"),
}

TOKEN_ALIASES = {
    "symbol": ("symbol", "Symbol", "token"),
    "balance": ("balance", "Balance", "amount", "Amount"),
}

ALLOWANCE_ALIASES = {
    "approved": ("approved", "Approved", "isApproved"),
    "amount": ("amount", "Amount"),
}

PROVIDER_ALIASES = {
    "address": ("address", "Address", "Provider", "Id"),
    "id": ("id", "Id"),
    "stake": ("stake", "Stake"),
    "status": ("status", "Status"),
    "registered": ("isRegistered", "IsRegistered", "Active", "active"),
    "deleted": ("IsDeleted", "isDeleted"),
    "active": ("active", "Active"),
    "models": ("models", "Models"),
    "bids": ("bids", "Bids"),
}

MODEL_ALIASES = {
    "id": ("id", "Id", "modelId"),
    "provider_id": ("providerId", "ProviderId", "Owner", "owner"),
    "stake": ("stake", "Stake"),
    "fee": ("fee", "Fee"),
    "price_floor": ("priceFloor", "PriceFloor"),
    "tags": ("tags", "Tags"),
}

BID_ALIASES = {
    "id": ("id", "Id"),
    "provider_id": ("providerId", "Provider", "provider"),
    "model_id": ("modelId", "ModelId", "ModelAgentId"),
    "price_per_second": ("pricePerSecond", "PricePerSecond"),
    "status": ("status", "Status"),
    "created_at": ("createdAt", "CreatedAt"),
}


def from_wei(value: Any) -> Optional[float]:
    """Convert a raw token amount to whole units.

    Digit-only strings are always wei and are divided exactly. Numbers are
    only rescaled when above WEI_HEURISTIC_THRESHOLD. Anything else is parsed
    as a plain decimal; unparseable or non-finite input gives None.
    """
    if value is None or isinstance(value, bool):
        return None
    try:
        if isinstance(value, (int, float)):
            if not math.isfinite(value):
                return None
            return value / WEI_PER_UNIT if value > WEI_HEURISTIC_THRESHOLD else float(value)
        if not isinstance(value, str):
            return None
        s = value.strip()
        if not s:
            return None
        if _DIGITS.fullmatch(s):
            # int / int is correctly rounded, no precision lost before the division
            return int(s) / WEI_PER_UNIT
        num = float(s)
    except (ValueError, OverflowError):
        return None
    return num if math.isfinite(num) else None


def pick(obj: dict, keys: Iterable[str]) -> Any:
    for k in keys:
        v = obj.get(k)
        if v is not None:
            return v
    return None


def pick_str(obj: dict, keys: Iterable[str]) -> Optional[str]:
    for k in keys:
        v = obj.get(k)
        if v and not isinstance(v, (dict, list)):
            return str(v)
    return None


def pick_list(obj: dict, keys: Iterable[str]) -> Optional[list]:
    for k in keys:
        v = obj.get(k)
        if isinstance(v, list):
            return v
    return None


def _as_float(x) -> Optional[float]:
    if x is None or isinstance(x, bool):
        return None
    try:
        v = float(x)
    except (TypeError, ValueError):
        return None
    return v if math.isfinite(v) else None


def unwrap_list(value: Any, key: str) -> list:
    if isinstance(value, list):
        return value
    if isinstance(value, dict) and isinstance(value.get(key), list):
        return value[key]
    return []


def normalize_list(value: Any, key: str, fn: Callable[[Any], Optional[T]]) -> List[T]:
    out: List[T] = []
    for raw in unwrap_list(value, key):
        item = fn(raw)
        if item is not None:
            out.append(item)
    return out


def normalize_health(raw: Any) -> Optional[RouterHealth]:
    if not isinstance(raw, dict):
        return None
    a = HEALTH_ALIASES
    return RouterHealth(
        status=pick_str(raw, a["status"]),
        version=pick_str(raw, a["version"]),
        uptime=_as_float(pick(raw, a["uptime"])),
        uptime_seconds=_as_float(pick(raw, a["uptime_seconds"])),
        message=pick_str(raw, a["message"]),
        timestamp=pick_str(raw, a["timestamp"]),
    )


def _normalize_token(raw: Any) -> Optional[TokenBalance]:
    if not isinstance(raw, dict):
        return None
    symbol = pick_str(raw, TOKEN_ALIASES["symbol"])
    balance = from_wei(pick(raw, TOKEN_ALIASES["balance"]))
    if not symbol or balance is None:
        return None
    return TokenBalance(symbol=symbol.upper(), balance=balance)


def _normalize_allowance(raw: Any) -> Optional[Allowance]:
    if not isinstance(raw, dict):
        return None
    a = ALLOWANCE_ALIASES
    if not any(k in raw for k in a["approved"] + a["amount"]):
        return None
    return Allowance(
        approved=bool(pick(raw, a["approved"])),
        amount=from_wei(pick(raw, a["amount"])),
    )


def normalize_balance(raw: Any) -> BlockchainBalance:
    obj = raw if isinstance(raw, dict) else {}
    a = BALANCE_ALIASES

    mor_val = from_wei(pick(obj, a["mor"]))
    eth_val = from_wei(pick(obj, a["eth"]))
    mor = TokenBalance(symbol="MOR", balance=mor_val) if mor_val is not None else None
    eth = TokenBalance(symbol="ETH", balance=eth_val) if eth_val is not None else None

    tokens = [t for t in (mor, eth) if t is not None]
    for entry in pick_list(obj, a["tokens"]) or []:
        tok = _normalize_token(entry)
        if tok is not None:
            tokens.append(tok)

    allowance_raw = None
    for k in a["allowance"]:
        if obj.get(k):
            allowance_raw = obj[k]
            break

    return BlockchainBalance(
        address=pick_str(obj, a["address"]),
        mor=mor,
        eth=eth,
        tokens=tokens,
        allowance=_normalize_allowance(allowance_raw),
    )


def normalize_model(raw: Any) -> Optional[Model]:
    if not isinstance(raw, dict):
        return None
    a = MODEL_ALIASES
    return Model(
        id=pick_str(raw, a["id"]) or "",
        provider_id=pick_str(raw, a["provider_id"]),
        stake=from_wei(pick(raw, a["stake"])),
        fee_per_second=from_wei(pick(raw, a["fee"])),
        price_floor=from_wei(pick(raw, a["price_floor"])),
        tags=[str(t) for t in (pick_list(raw, a["tags"]) or []) if t is not None],
        metadata=raw,
    )


def normalize_bid(raw: Any) -> Optional[Bid]:
    if not isinstance(raw, dict):
        return None
    a = BID_ALIASES
    return Bid(
        id=pick_str(raw, a["id"]) or "",
        provider_id=pick_str(raw, a["provider_id"]),
        model_id=pick_str(raw, a["model_id"]),
        price_per_second=from_wei(pick(raw, a["price_per_second"])),
        status=pick_str(raw, a["status"]),
        created_at=pick_str(raw, a["created_at"]),
        metadata=raw,
    )


def normalize_provider(raw: Any) -> Optional[Provider]:
    if not isinstance(raw, dict):
        return None
    a = PROVIDER_ALIASES
    address = pick_str(raw, a["address"]) or ""
    nested_models = pick_list(raw, a["models"])
    nested_bids = pick_list(raw, a["bids"])
    return Provider(
        id=pick_str(raw, a["id"]) or address,
        address=address,
        stake=from_wei(pick(raw, a["stake"])),
        status=pick_str(raw, a["status"]),
        is_registered=bool(pick(raw, a["registered"])) and not any(raw.get(k) for k in a["deleted"]),
        active=bool(pick(raw, a["active"])),
        models=normalize_list(nested_models, "models", normalize_model) if nested_models is not None else None,
        bids=normalize_list(nested_bids, "bids", normalize_bid) if nested_bids is not None else None,
        metadata=raw,
    )
