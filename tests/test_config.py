import pytest
from pydantic import ValidationError

from nebuchadnezzar.config import (
    DEFAULT_BASE_URL,
    DEFAULT_UNDERLYING_CONFIG_URL,
    Settings,
    default_settings,
    load_config,
    load_settings,
    reset_settings,
    sanitize_base_url,
    save_settings,
)

ENV_KEYS = [
    "MOR_PROXY_API_BASE",
    "MOR_PROXY_USERNAME",
    "MOR_PROXY_PASSWORD",
    "MOR_WALLET_ADDRESS",
    "MIN_MOR_BALANCE",
    "MOR_PROXY_CONFIG_URL",
    "LUMERIN_CONFIG_URL",
    "POLL_INTERVAL_MS",
]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for k in ENV_KEYS:
        monkeypatch.delenv(k, raising=False)


def test_sanitize_base_url():
    assert sanitize_base_url(" http://host:8082/// ") == "http://host:8082"
    assert sanitize_base_url("http://ho st/") == "http://host"
    assert sanitize_base_url("") == ""


def test_defaults_without_env():
    s = default_settings()
    assert s.base_url == DEFAULT_BASE_URL
    assert s.underlying_config_url == DEFAULT_UNDERLYING_CONFIG_URL
    assert s.min_mor_balance == 1
    assert s.poll_interval_ms == 15000
    assert s.timeout_ms == 8000
    assert s.readiness_rules.require_health and s.readiness_rules.require_bid
    assert reset_settings() == s


def test_defaults_from_env(monkeypatch):
    monkeypatch.setenv("MOR_PROXY_API_BASE", "http://10.0.0.5:8082/")
    monkeypatch.setenv("MOR_PROXY_USERNAME", "admin")
    monkeypatch.setenv("MIN_MOR_BALANCE", "2.5")
    monkeypatch.setenv("POLL_INTERVAL_MS", "not-a-number")
    s = default_settings()
    assert s.base_url == "http://10.0.0.5:8082"
    assert s.username == "admin"
    assert s.min_mor_balance == 2.5
    assert s.poll_interval_ms == 15000


def test_load_settings_without_path_is_env_defaults():
    assert load_settings(None) == default_settings()


def test_load_settings_camel_case_yaml(tmp_path):
    p = tmp_path / "cfg.yaml"
    p.write_text(
        "settings:\n"
        "  baseUrl: 'http://router:9000/ '\n"
        "  walletAddress: '0xabc'\n"
        "  minMorBalance: 3\n"
        "  lumerinConfigUrl: http://router:8080/config\n"
        "  readinessRules:\n"
        "    requireBid: false\n"
    )
    s = load_settings(str(p))
    assert s.base_url == "http://router:9000"
    assert s.wallet_address == "0xabc"
    assert s.min_mor_balance == 3
    assert s.underlying_config_url == "http://router:8080/config"
    assert s.readiness_rules.require_bid is False
    assert s.readiness_rules.require_health is True


def test_load_settings_empty_file(tmp_path):
    p = tmp_path / "empty.yaml"
    p.write_text("")
    assert load_settings(str(p)) == default_settings()


def test_load_settings_rejects_bad_types(tmp_path):
    p = tmp_path / "bad.yaml"
    p.write_text("settings:\n  minMorBalance: lots\n")
    with pytest.raises(ValidationError):
        load_settings(str(p))


def test_load_config_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_config(str(tmp_path / "nope.yaml"))


def test_save_then_load(tmp_path):
    p = tmp_path / "nested" / "cfg.yaml"
    s = Settings(base_url="http://r:1", password="pw", poll_interval_ms=500)
    save_settings(str(p), s)
    assert load_settings(str(p)) == s


def test_save_keeps_other_sections(tmp_path):
    p = tmp_path / "cfg.yaml"
    p.write_text("other:\n  keep: 1\n")
    save_settings(str(p), Settings())
    assert load_config(str(p))["other"] == {"keep": 1}
