"""
Configuration for the paper trader client.

Settings are resolved in order:
  1. Explicit keyword arguments to ``load_settings``
  2. A YAML profile from ~/.paper_trader/config.yaml (``profile`` parameter)
  3. PAPER_TRADER_* / POLYGON_API_KEY environment variables
  4. Built-in defaults

Example config.yaml:

    default_profile: dev
    profiles:
      dev:
        identity_url: https://example.execute-api.us-east-2.amazonaws.com/dev
        polygon_api_key: PK...
        quote_source: polygon
        db_path: ~/.paper_trader/dev.db

Usage:
    from paper_trader.config import load_settings
    settings = load_settings()                 # env vars / defaults
    settings = load_settings(profile="dev")    # YAML profile
"""

import os
from dataclasses import dataclass, fields, replace

CONFIG_PATH = os.path.expanduser("~/.paper_trader/config.yaml")
DATA_DIR = os.path.expanduser("~/.paper_trader")

QUOTE_SOURCES = ("polygon", "yfinance")

_ENV_VARS = {
    "identity_url": "PAPER_TRADER_IDENTITY_URL",
    "polygon_api_key": "POLYGON_API_KEY",
    "db_path": "PAPER_TRADER_DB_PATH",
    "cache_dir": "PAPER_TRADER_CACHE_DIR",
    "quote_source": "PAPER_TRADER_QUOTE_SOURCE",
    "http_timeout": "PAPER_TRADER_HTTP_TIMEOUT",
}


@dataclass(frozen=True)
class Settings:
    """Resolved client settings."""
    identity_url: str = ""
    polygon_api_key: str = ""
    db_path: str = os.path.join(DATA_DIR, "paper_trader.db")
    cache_dir: str = os.path.join(DATA_DIR, "charts")
    quote_source: str = "yfinance"
    http_timeout: float = 10.0


def load_profile(profile: str | None = None,
                 config_path: str = CONFIG_PATH) -> dict:
    """Load one profile from the YAML config file.

    If *profile* is None, uses ``default_profile`` from the config.
    Returns an empty dict when the config file doesn't exist.

    Raises
    ------
    KeyError
        If the requested profile is not found in the config.
    """
    if not os.path.exists(config_path):
        return {}

    import yaml  # lazy import: only needed when a config file exists

    with open(config_path) as f:
        config = yaml.safe_load(f) or {}

    profiles = config.get("profiles", {})
    if profile is None:
        profile = config.get("default_profile")
        if profile is None:
            return {}

    if profile not in profiles:
        available = ", ".join(profiles.keys()) if profiles else "(none)"
        raise KeyError(
            f"Profile '{profile}' not found in {config_path}. "
            f"Available profiles: {available}"
        )
    return dict(profiles[profile] or {})


def _from_env() -> dict:
    values = {}
    for name, var in _ENV_VARS.items():
        raw = os.environ.get(var)
        if raw:
            values[name] = raw
    return values


def load_settings(profile: str | None = None,
                  config_path: str = CONFIG_PATH, **overrides) -> Settings:
    """Merge defaults, environment, YAML profile and explicit overrides."""
    known = {f.name for f in fields(Settings)}
    merged: dict = {}
    merged.update(_from_env())
    merged.update({k: v for k, v in load_profile(profile, config_path).items()
                   if k in known})
    merged.update({k: v for k, v in overrides.items() if v is not None})

    unknown = set(merged) - known
    if unknown:
        raise KeyError(f"Unknown settings: {', '.join(sorted(unknown))}")

    if "http_timeout" in merged:
        merged["http_timeout"] = float(merged["http_timeout"])
    for key in ("db_path", "cache_dir"):
        if key in merged:
            merged[key] = os.path.expanduser(str(merged[key]))

    settings = replace(Settings(), **merged)
    if settings.quote_source not in QUOTE_SOURCES:
        raise ValueError(
            f"Unsupported quote source '{settings.quote_source}'; "
            f"expected one of {', '.join(QUOTE_SOURCES)}"
        )
    return settings
