from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class RouterHealth(BaseModel):
    status: Optional[str] = None
    version: Optional[str] = None
    uptime: Optional[float] = None
    uptime_seconds: Optional[float] = None
    message: Optional[str] = None
    timestamp: Optional[str] = None


class TokenBalance(BaseModel):
    symbol: str
    balance: float  # whole units, never wei


class Allowance(BaseModel):
    approved: bool = False
    amount: Optional[float] = None


class BlockchainBalance(BaseModel):
    address: Optional[str] = None
    mor: Optional[TokenBalance] = None
    eth: Optional[TokenBalance] = None
    tokens: List[TokenBalance] = Field(default_factory=list)
    allowance: Optional[Allowance] = None


class Model(BaseModel):
    model_config = ConfigDict(protected_namespaces=())

    id: str = ""
    provider_id: Optional[str] = None
    stake: Optional[float] = None
    fee_per_second: Optional[float] = None
    price_floor: Optional[float] = None
    tags: List[str] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class Bid(BaseModel):
    model_config = ConfigDict(protected_namespaces=())

    id: str = ""
    provider_id: Optional[str] = None
    model_id: Optional[str] = None
    price_per_second: Optional[float] = None
    status: Optional[str] = None
    created_at: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class Provider(BaseModel):
    id: str = ""
    address: str = ""
    stake: Optional[float] = None
    status: Optional[str] = None
    is_registered: bool = False
    active: bool = False
    models: Optional[List[Model]] = None
    bids: Optional[List[Bid]] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class HealthSnapshot(BaseModel):
    model_config = ConfigDict(frozen=True)

    ts: datetime
    health: Optional[RouterHealth] = None
    balance: Optional[BlockchainBalance] = None
    providers: Optional[List[Provider]] = None
    models: Optional[List[Model]] = None
    error: Optional[str] = None


class ReadinessDetails(BaseModel):
    score: int
    label: str  # Ready / Degraded / Not Ready
    reasons: List[str] = Field(default_factory=list)
