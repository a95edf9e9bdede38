"""
Service configuration, read from the environment (and an optional .env file).
"""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass
from typing import Optional, Tuple

from dotenv import load_dotenv
from loguru import logger

from .lnaddress import validate_address_format
from .middleware import WINDOW_PATTERN


def _env_str(name: str, default: Optional[str] = None) -> Optional[str]:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip()


def _env_int(name: str, default: int, min_value: Optional[int] = None) -> int:
    raw = _env_str(name)
    if raw is None:
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}")
    if min_value is not None and value < min_value:
        raise ValueError(f"{name} must be >= {min_value}, got {value}")
    return value


def _env_float(name: str, default: float, min_value: Optional[float] = None) -> float:
    raw = _env_str(name)
    if raw is None:
        return default
    try:
        value = float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}")
    if min_value is not None and value < min_value:
        raise ValueError(f"{name} must be >= {min_value}, got {value}")
    return value


def _env_list(name: str) -> Tuple[str, ...]:
    raw = _env_str(name, "") or ""
    return tuple(item.strip() for item in raw.split(",") if item.strip())


@dataclass(frozen=True)
class RedeemConfig:
    allowed_domains: Tuple[str, ...] = ()
    default_address: Optional[str] = None
    rate_limit: int = 100
    rate_limit_window: str = "1m"
    sweep_interval: float = 3600.0
    max_age: float = 86400.0
    lnurl_timeout: float = 10.0
    mint_timeout: float = 30.0
    comment: str = "Cashu redemption"
    log_level: str = "INFO"
    host: str = "0.0.0.0"
    port: int = 3000


def load_config(env_file: Optional[str] = None) -> RedeemConfig:
    """
    Build a RedeemConfig from the environment.

    Args:
        env_file: Path of a .env file to load first (default: search from cwd).
            Variables already set in the environment win.

    Raises:
        ValueError: A variable is present but invalid.
    """
    load_dotenv(env_file)

    default_address = _env_str("DEFAULT_LIGHTNING_ADDRESS")
    if default_address is not None and not validate_address_format(default_address):
        raise ValueError(f"DEFAULT_LIGHTNING_ADDRESS is not a Lightning address: {default_address!r}")

    window = _env_str("RATE_LIMIT_WINDOW", "1m")
    if not WINDOW_PATTERN.match(window):
        raise ValueError(f"RATE_LIMIT_WINDOW must look like 30s, 1m or 1h, got {window!r}")

    return RedeemConfig(
        allowed_domains=_env_list("ALLOW_REDEEM_DOMAINS"),
        default_address=default_address,
        rate_limit=_env_int("RATE_LIMIT", 100, min_value=0),
        rate_limit_window=window,
        sweep_interval=_env_float("SWEEP_INTERVAL", 3600.0, min_value=1.0),
        max_age=_env_float("REDEMPTION_MAX_AGE", 86400.0, min_value=0.0),
        lnurl_timeout=_env_float("LNURL_TIMEOUT", 10.0, min_value=0.1),
        mint_timeout=_env_float("MINT_TIMEOUT", 30.0, min_value=0.1),
        comment=_env_str("REDEEM_COMMENT", "Cashu redemption"),
        log_level=(_env_str("LOG_LEVEL", "INFO")).upper(),
        host=_env_str("HOST", "0.0.0.0"),
        port=_env_int("PORT", 3000, min_value=1),
    )


def configure_logging(level: str = "INFO") -> None:
    """Replace loguru's default sink with a single stderr sink at `level`."""
    logger.remove()
    logger.add(sys.stderr, level=level.upper())
