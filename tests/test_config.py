"""
Tests for settings resolution (config.py).
"""

import os

import pytest

from paper_trader.config import Settings, load_profile, load_settings

CONFIG = """\
default_profile: dev
profiles:
  dev:
    identity_url: https://dev.example/api
    quote_source: polygon
    polygon_api_key: PK-DEV
    db_path: ~/ledger-dev.db
  prod:
    identity_url: https://prod.example/api
    http_timeout: 3
"""


@pytest.fixture
def config_path(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text(CONFIG)
    return str(path)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for var in ("PAPER_TRADER_IDENTITY_URL", "POLYGON_API_KEY", "PAPER_TRADER_DB_PATH",
                "PAPER_TRADER_CACHE_DIR", "PAPER_TRADER_QUOTE_SOURCE",
                "PAPER_TRADER_HTTP_TIMEOUT"):
        monkeypatch.delenv(var, raising=False)


class TestLoadProfile:

    def test_missing_file(self, tmp_path):
        assert load_profile(config_path=str(tmp_path / "none.yaml")) == {}

    def test_default_profile(self, config_path):
        assert load_profile(config_path=config_path)["polygon_api_key"] == "PK-DEV"

    def test_named_profile(self, config_path):
        assert load_profile("prod", config_path)["http_timeout"] == 3

    def test_unknown_profile(self, config_path):
        with pytest.raises(KeyError, match="Available profiles: dev, prod"):
            load_profile("staging", config_path)


class TestLoadSettings:

    def test_defaults(self, tmp_path):
        s = load_settings(config_path=str(tmp_path / "none.yaml"))
        assert s == Settings()
        assert s.quote_source == "yfinance"
        assert s.http_timeout == 10.0

    def test_env(self, tmp_path, monkeypatch):
        monkeypatch.setenv("POLYGON_API_KEY", "PK-ENV")
        monkeypatch.setenv("PAPER_TRADER_QUOTE_SOURCE", "polygon")
        monkeypatch.setenv("PAPER_TRADER_HTTP_TIMEOUT", "2.5")
        s = load_settings(config_path=str(tmp_path / "none.yaml"))
        assert s.polygon_api_key == "PK-ENV"
        assert s.quote_source == "polygon"
        assert s.http_timeout == 2.5

    def test_profile_beats_env_and_override_beats_profile(self, config_path, monkeypatch):
        monkeypatch.setenv("POLYGON_API_KEY", "PK-ENV")
        s = load_settings(config_path=config_path)
        assert s.polygon_api_key == "PK-DEV"
        assert s.db_path == os.path.expanduser("~/ledger-dev.db")

        s = load_settings(config_path=config_path, polygon_api_key="PK-ARG", db_path=None)
        assert s.polygon_api_key == "PK-ARG"
        assert s.db_path == os.path.expanduser("~/ledger-dev.db")

    def test_timeout_coerced(self, config_path):
        assert load_settings("prod", config_path).http_timeout == 3.0

    def test_bad_quote_source(self, tmp_path):
        with pytest.raises(ValueError):
            load_settings(config_path=str(tmp_path / "none.yaml"), quote_source="bloomberg")

    def test_unknown_override(self, tmp_path):
        with pytest.raises(KeyError):
            load_settings(config_path=str(tmp_path / "none.yaml"), colour="blue")
