"""
TOML-based configuration for the LumenRelay server.

Loads settings from a TOML file and/or environment variables.
Environment variables take precedence over file values.

Usage:
    from lumenrelay_core.config import load_config
    cfg = load_config("lumenrelay.toml")
"""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib

TESTNET_PASSPHRASE = "Test SDF Network ; September 2015"


@dataclass
class HorizonConfig:
    """Ledger service endpoint and network identity."""
    url: str = "https://horizon-testnet.stellar.org"
    network_passphrase: str = TESTNET_PASSPHRASE
    timeout_seconds: float = 30.0
    # Test-network faucet used to fund a fresh signing account.
    # Empty disables funding (always empty on the public network).
    friendbot_url: str = "https://friendbot.stellar.org"


@dataclass
class SigningConfig:
    """Operator signing key.

    When ``secret`` is empty an ephemeral keypair is generated at startup
    and lost on restart.  Prefer the ``SERVER_SECRET`` environment variable
    over writing the secret into a config file.
    """
    secret: str = field(default="", repr=False)
    auto_fund: bool = True


@dataclass
class PipelineConfig:
    """Transaction assembly and submission settings."""
    base_fee: int = 100                  # stroops per operation
    validity_window_seconds: int = 300
    # Hold a lock from source fetch to submit so this process never
    # races itself on the signing account's sequence number.
    serialize_submissions: bool = False


@dataclass
class APIConfig:
    """REST API settings."""
    host: str = "127.0.0.1"
    port: int = 5000
    prefix: str = "/api"
    api_key: str = ""                 # require this key on POST endpoints (empty = no auth)
    rate_limit_rpm: int = 0            # max requests per minute per IP (0 = unlimited)
    cors_origins: list[str] = field(default_factory=lambda: ["http://localhost:3000"])
    max_body_bytes: int = 1_048_576    # 1 MiB max request body
    history_default_limit: int = 50
    history_max_limit: int = 200


@dataclass
class LoggingConfig:
    """Logging settings."""
    level: str = "INFO"
    format: str = "human"   # "human" or "json"
    file: str | None = None


@dataclass
class RelayConfig:
    """Top-level configuration container."""
    horizon: HorizonConfig = field(default_factory=HorizonConfig)
    signing: SigningConfig = field(default_factory=SigningConfig)
    pipeline: PipelineConfig = field(default_factory=PipelineConfig)
    api: APIConfig = field(default_factory=APIConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def _merge(dc: Any, raw: dict[str, Any]) -> None:
    """Merge a raw dict into a dataclass instance (in-place)."""
    for key, value in raw.items():
        key_under = key.replace("-", "_")
        if hasattr(dc, key_under):
            setattr(dc, key_under, value)


def _env_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


def load_config(path: str | None = None) -> RelayConfig:
    """
    Load configuration from a TOML file, then overlay environment variables.

    Env-var mapping:
        SERVER_SECRET / LUMENRELAY_SERVER_SECRET -> signing.secret
        PORT / LUMENRELAY_PORT                   -> api.port
        LUMENRELAY_HOST                          -> api.host
        LUMENRELAY_HORIZON_URL                   -> horizon.url
        LUMENRELAY_NETWORK_PASSPHRASE            -> horizon.network_passphrase
        LUMENRELAY_FRIENDBOT_URL                 -> horizon.friendbot_url
        LUMENRELAY_TIMEOUT                       -> horizon.timeout_seconds
        LUMENRELAY_API_KEY                       -> api.api_key
        LUMENRELAY_CORS_ORIGINS                  -> api.cors_origins (comma-separated)
        LUMENRELAY_SERIALIZE                     -> pipeline.serialize_submissions
        LUMENRELAY_LOG_LEVEL                     -> logging.level
        LUMENRELAY_LOG_FMT                       -> logging.format
    """
    cfg = RelayConfig()

    # ── TOML file ────────────────────────────────────────────────
    if path is not None:
        p = Path(path)
        if p.exists():
            with open(p, "rb") as f:
                data = tomllib.load(f)
            for section_name, section_dc in [
                ("horizon", cfg.horizon),
                ("signing", cfg.signing),
                ("pipeline", cfg.pipeline),
                ("api", cfg.api),
                ("logging", cfg.logging),
            ]:
                if section_name in data:
                    _merge(section_dc, data[section_name])

    # ── Environment variable overrides ───────────────────────────
    if v := os.environ.get("LUMENRELAY_SERVER_SECRET") or os.environ.get("SERVER_SECRET"):
        cfg.signing.secret = v
    if v := os.environ.get("LUMENRELAY_PORT") or os.environ.get("PORT"):
        cfg.api.port = int(v)
    if v := os.environ.get("LUMENRELAY_HOST"):
        cfg.api.host = v
    if v := os.environ.get("LUMENRELAY_HORIZON_URL"):
        cfg.horizon.url = v
    if v := os.environ.get("LUMENRELAY_NETWORK_PASSPHRASE"):
        cfg.horizon.network_passphrase = v
    if (v := os.environ.get("LUMENRELAY_FRIENDBOT_URL")) is not None:
        cfg.horizon.friendbot_url = v
    if v := os.environ.get("LUMENRELAY_TIMEOUT"):
        cfg.horizon.timeout_seconds = float(v)
    if v := os.environ.get("LUMENRELAY_API_KEY"):
        cfg.api.api_key = v
    if v := os.environ.get("LUMENRELAY_CORS_ORIGINS"):
        cfg.api.cors_origins = [o.strip() for o in v.split(",") if o.strip()]
    if v := os.environ.get("LUMENRELAY_SERIALIZE"):
        cfg.pipeline.serialize_submissions = _env_bool(v)
    if v := os.environ.get("LUMENRELAY_LOG_LEVEL"):
        cfg.logging.level = v.upper()
    if v := os.environ.get("LUMENRELAY_LOG_FMT"):
        cfg.logging.format = v

    return cfg
