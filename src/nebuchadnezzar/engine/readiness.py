from __future__ import annotations

import math
from typing import List, Optional, Sequence, Tuple

from nebuchadnezzar.config import Settings
from nebuchadnezzar.models import (
    Bid,
    BlockchainBalance,
    HealthSnapshot,
    Model,
    Provider,
    ReadinessDetails,
    RouterHealth,
)

READY = "Ready"
DEGRADED = "Degraded"
NOT_READY = "Not Ready"

READY_MIN_SCORE = 90
DEGRADED_MIN_SCORE = 50

HEALTHY_STATUSES = {"ok", "healthy", "up"}

REASON_HEALTH = "Router offline or unhealthy"
REASON_BALANCE = "Low MOR balance"
REASON_MODEL = "No registered models"
REASON_BID = "No active bids"


def is_health_ok(health: Optional[RouterHealth]) -> bool:
    if health is None:
        return False
    if health.status:
        return health.status.lower() in HEALTHY_STATUSES
    uptime = health.uptime if health.uptime is not None else health.uptime_seconds
    return (uptime or 0) > 0


def mor_balance(balance: Optional[BlockchainBalance]) -> float:
    if balance is None:
        return 0.0
    if balance.mor is not None:
        return balance.mor.balance
    for t in balance.tokens:
        if (t.symbol or "").lower() == "mor":
            return t.balance
    return 0.0


def is_balance_ok(balance: Optional[BlockchainBalance], min_mor: float) -> bool:
    if balance is None:
        return False
    return mor_balance(balance) >= min_mor


def find_primary_provider(
    providers: Optional[Sequence[Provider]],
    primary_id: Optional[str] = None,
    wallet: Optional[str] = None,
) -> Optional[Provider]:
    if not providers:
        return None
    if primary_id:
        for p in providers:
            if p.id == primary_id:
                return p
    if wallet:
        w = wallet.lower()
        for p in providers:
            if (p.address or "").lower() == w or (p.id or "").lower() == w:
                return p
    return providers[0]


def _has_models(models: Optional[Sequence[Model]], provider: Optional[Provider]) -> bool:
    for m in models or []:
        if provider is None or not m.provider_id or m.provider_id == provider.id:
            return True
    return False


def _has_bids(
    bids: Optional[Sequence[Bid]],
    provider: Optional[Provider],
    providers: Optional[Sequence[Provider]],
) -> bool:
    if bids:
        return True
    if provider is not None and provider.bids:
        return True
    return any(p.bids for p in providers or [])


def label_for(score: int) -> str:
    if score >= READY_MIN_SCORE:
        return READY
    if score >= DEGRADED_MIN_SCORE:
        return DEGRADED
    return NOT_READY


def evaluate(
    health: Optional[RouterHealth],
    balance: Optional[BlockchainBalance],
    providers: Optional[Sequence[Provider]],
    models: Optional[Sequence[Model]],
    bids: Optional[Sequence[Bid]],
    primary_provider_id: Optional[str],
    settings: Settings,
) -> ReadinessDetails:
    rules = settings.readiness_rules
    provider = find_primary_provider(providers, primary_provider_id, settings.wallet_address)

    # fixed order: health, balance, model, bid
    checks: List[Tuple[bool, str]] = []
    if rules.require_health:
        checks.append((is_health_ok(health), REASON_HEALTH))
    if rules.require_balance:
        checks.append((is_balance_ok(balance, settings.min_mor_balance), REASON_BALANCE))
    if rules.require_model:
        checks.append((_has_models(models, provider), REASON_MODEL))
    if rules.require_bid:
        checks.append((_has_bids(bids, provider, providers), REASON_BID))

    evaluated = len(checks) or 1
    passed = sum(1 for ok, _ in checks if ok)
    score = int(math.floor(passed * 100 / evaluated + 0.5))
    return ReadinessDetails(
        score=score,
        label=label_for(score),
        reasons=[reason for ok, reason in checks if not ok],
    )


def evaluate_snapshot(
    snapshot: HealthSnapshot,
    settings: Settings,
    bids: Optional[Sequence[Bid]] = None,
) -> ReadinessDetails:
    """Score a polled snapshot.

    Polling does not fetch the model list, so when `snapshot.models` is unset
    the primary provider's embedded models stand in for it.
    """
    models = snapshot.models
    if models is None:
        primary = find_primary_provider(
            snapshot.providers, settings.primary_provider_id, settings.wallet_address
        )
        if primary is not None:
            models = primary.models
    return evaluate(
        snapshot.health,
        snapshot.balance,
        snapshot.providers,
        models,
        bids,
        settings.primary_provider_id,
        settings,
    )
