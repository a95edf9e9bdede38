"""
Run the redemption service.

    ALLOW_REDEEM_DOMAINS=getalby.com,walletofsatoshi.com \
    DEFAULT_LIGHTNING_ADDRESS=you@getalby.com \
    cashu-redeem
"""

from __future__ import annotations

from typing import Optional

import uvicorn
from fastapi import FastAPI

from .api import create_app
from .config import RedeemConfig, configure_logging, load_config
from .redeemer import create_redeemer


def build_app(config: Optional[RedeemConfig] = None) -> FastAPI:
    """Wire a Redeemer from `config` (default: the environment) into an app."""
    config = config or load_config()
    redeemer = create_redeemer(
        allowed_domains=list(config.allowed_domains),
        default_address=config.default_address,
        comment=config.comment,
        max_age=config.max_age,
        lnurl_timeout=config.lnurl_timeout,
        mint_timeout=config.mint_timeout,
    )
    return create_app(redeemer, config)


def main() -> None:
    config = load_config()
    configure_logging(config.log_level)
    uvicorn.run(build_app(config), host=config.host, port=config.port, log_config=None)


if __name__ == "__main__":
    main()
