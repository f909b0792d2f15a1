from __future__ import annotations

import math
import os
import re
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field

DEFAULT_BASE_URL = "http://localhost:8082"
DEFAULT_UNDERLYING_CONFIG_URL = "http://localhost:8080/config"


class ReadinessRules(BaseModel):
    require_health: bool = True
    require_balance: bool = True
    require_model: bool = True
    require_bid: bool = True


class Settings(BaseModel):
    base_url: str = DEFAULT_BASE_URL
    username: str = ""
    password: str = ""
    wallet_address: str = ""
    primary_provider_id: Optional[str] = None
    min_mor_balance: float = 1.0
    config_url: str = ""
    underlying_config_url: str = DEFAULT_UNDERLYING_CONFIG_URL
    readiness_rules: ReadinessRules = Field(default_factory=ReadinessRules)
    poll_interval_ms: int = 15000
    timeout_ms: int = 8000
    events_path: Optional[str] = None


def load_config(path: str) -> dict:
    p = Path(path)
    if not p.exists():
        raise FileNotFoundError(path)
    return yaml.safe_load(p.read_text()) or {}


def sanitize_base_url(url: str) -> str:
    return re.sub(r"\s+", "", url or "").rstrip("/")


def _number_from_env(name: str, fallback: float) -> float:
    raw = os.getenv(name, "").strip()
    if not raw:
        return fallback
    try:
        val = float(raw)
    except ValueError:
        return fallback
    return val if math.isfinite(val) else fallback


def default_settings() -> Settings:
    return Settings(
        base_url=sanitize_base_url(os.getenv("MOR_PROXY_API_BASE") or DEFAULT_BASE_URL),
        username=os.getenv("MOR_PROXY_USERNAME", ""),
        password=os.getenv("MOR_PROXY_PASSWORD", ""),
        wallet_address=os.getenv("MOR_WALLET_ADDRESS", ""),
        min_mor_balance=_number_from_env("MIN_MOR_BALANCE", 1.0),
        config_url=os.getenv("MOR_PROXY_CONFIG_URL", ""),
        underlying_config_url=os.getenv("LUMERIN_CONFIG_URL") or DEFAULT_UNDERLYING_CONFIG_URL,
        poll_interval_ms=int(_number_from_env("POLL_INTERVAL_MS", 15000)),
    )


def reset_settings() -> Settings:
    return default_settings()


def _snake(key: str) -> str:
    # baseUrl -> base_url, minMorBalance -> min_mor_balance
    return re.sub(r"(?<!^)(?=[A-Z])", "_", str(key)).lower()


def _snake_keys(obj):
    if isinstance(obj, dict):
        return {_snake(k): _snake_keys(v) for k, v in obj.items()}
    return obj


def load_settings(path: Optional[str] = None) -> Settings:
    base = default_settings()
    if not path:
        return base
    raw = load_config(path).get("settings") or {}
    overrides = _snake_keys(raw)
    # lumerinConfigUrl is the upstream name for the underlying config endpoint.
    if "lumerin_config_url" in overrides:
        overrides.setdefault("underlying_config_url", overrides.pop("lumerin_config_url"))
    merged = {**base.model_dump(), **overrides}
    if isinstance(overrides.get("readiness_rules"), dict):
        merged["readiness_rules"] = {**base.readiness_rules.model_dump(), **overrides["readiness_rules"]}
    settings = Settings.model_validate(merged)
    return settings.model_copy(update={"base_url": sanitize_base_url(settings.base_url)})


def save_settings(path: str, settings: Settings) -> None:
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    doc = load_config(path) if p.exists() else {}
    doc["settings"] = settings.model_dump()
    p.write_text(yaml.safe_dump(doc, sort_keys=False))
