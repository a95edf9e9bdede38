"""
HTTP surface for the redeemer.

    POST /api/decode            {token}
    POST /api/redeem            {token, lightningAddress?}
    POST /api/status            {redeemId}
    GET  /api/status/{redeemId}
    POST /api/validate-address  {lightningAddress}
    POST /api/check-spendable   {token}
    GET  /api/health
    GET  /api/stats

Every JSON body carries `success`. Client errors are 400, an unreachable
mint or Lightning provider 503, unknown redemptions 404, rate limiting 429.
Anything unexpected is logged and answered with a generic 500.
"""

from __future__ import annotations

import functools
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Optional

from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.responses import JSONResponse
from loguru import logger
from pydantic import BaseModel
from starlette.exceptions import HTTPException as StarletteHTTPException

from . import __version__
from .config import RedeemConfig
from .errors import ErrorKind, RedeemError
from .middleware import RateLimiter
from .redeemer import Redeemer

INTERNAL_ERROR_MESSAGE = "Internal server error"

# upstream failures, not the caller's fault
UNAVAILABLE_KINDS = frozenset({ErrorKind.ENDPOINT_UNREACHABLE, ErrorKind.TRANSIENT_NETWORK_ERROR})


class TokenRequest(BaseModel):
    token: Any = None


class RedeemRequest(BaseModel):
    token: Any = None
    lightningAddress: Optional[Any] = None


class StatusRequest(BaseModel):
    redeemId: Optional[Any] = None


class AddressRequest(BaseModel):
    lightningAddress: Optional[Any] = None


def _error(status_code: int, message: str, kind: Optional[ErrorKind] = None, **extra: Any) -> JSONResponse:
    body = {"success": False, "error": message, **extra}
    if kind is not None:
        body["errorKind"] = kind.value
    return JSONResponse(status_code=status_code, content=body)


def _status_for(kind: Optional[ErrorKind]) -> int:
    return 503 if kind in UNAVAILABLE_KINDS else 400


def _handle_errors(endpoint):
    """RedeemError -> 400 or 503, anything else -> logged 500."""

    @functools.wraps(endpoint)
    async def wrapper(*args, **kwargs):
        try:
            return await endpoint(*args, **kwargs)
        except RedeemError as e:
            return _error(_status_for(e.kind), e.message, e.kind)
        except Exception:
            logger.exception(f"Unhandled error in {endpoint.__name__}")
            return _error(500, INTERNAL_ERROR_MESSAGE)

    return wrapper


def _status_response(redeemer: Redeemer, redeem_id: Any) -> JSONResponse:
    if not redeem_id or not isinstance(redeem_id, str):
        return _error(400, "Redeem ID is required")
    attempt = redeemer.get_status(redeem_id)
    if attempt is None:
        return _error(404, "Redemption not found")
    return JSONResponse(content=attempt.to_status_dict())


def create_app(redeemer: Redeemer, config: Optional[RedeemConfig] = None) -> FastAPI:
    """
    Build the FastAPI application around a Redeemer.

    The app's lifespan runs the periodic ledger sweep and closes the
    redeemer's HTTP clients on shutdown.
    """
    config = config or RedeemConfig()
    limiter = RateLimiter(config.rate_limit, config.rate_limit_window)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        redeemer.start_sweeper(config.sweep_interval)
        logger.info(
            f"cashu-redeem {__version__} ready; default address: "
            f"{redeemer.default_address or 'none'}; allowed domains: "
            f"{', '.join(redeemer.resolver.allow_list.to_list())}"
        )
        yield
        await redeemer.close()

    app = FastAPI(
        title="cashu-redeem",
        description="Redeem Cashu ecash tokens to Lightning addresses",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.redeemer = redeemer
    app.state.rate_limiter = limiter

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        if isinstance(exc.detail, dict):
            content = exc.detail
        else:
            content = {"success": False, "error": str(exc.detail)}
        return JSONResponse(status_code=exc.status_code, content=content, headers=exc.headers)

    router = APIRouter(prefix="/api", dependencies=[Depends(limiter)])

    @router.post("/decode")
    @_handle_errors
    async def decode(body: TokenRequest):
        return {"success": True, "decoded": redeemer.decode_token(body.token)}

    @router.post("/redeem")
    @_handle_errors
    async def redeem(body: RedeemRequest):
        result = await redeemer.redeem(body.token, body.lightningAddress)
        if result.success:
            return result.to_dict()
        if result.error_kind == ErrorKind.INTERNAL_ERROR:
            return _error(500, INTERNAL_ERROR_MESSAGE, redeemId=result.redeem_id)
        return JSONResponse(status_code=_status_for(result.error_kind), content=result.to_dict())

    @router.post("/status")
    @_handle_errors
    async def status(body: StatusRequest):
        return _status_response(redeemer, body.redeemId)

    @router.get("/status/{redeem_id}")
    @_handle_errors
    async def status_by_id(redeem_id: str):
        return _status_response(redeemer, redeem_id)

    @router.post("/validate-address")
    @_handle_errors
    async def validate_address(body: AddressRequest):
        if not body.lightningAddress:
            return _error(400, "Lightning address is required", valid=False)
        result = await redeemer.validate_address(body.lightningAddress)
        if not result["valid"]:
            return JSONResponse(status_code=400, content={"success": False, **result})
        return {"success": True, **result}

    @router.post("/check-spendable")
    @_handle_errors
    async def check_spendable(body: TokenRequest):
        return {"success": True, **(await redeemer.check_spendable(body.token))}

    app.include_router(router)

    @app.get("/api/health")
    async def health():
        return {
            "status": "ok",
            "service": "cashu-redeem",
            "version": __version__,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "defaultAddress": redeemer.default_address,
            "allowedDomains": redeemer.resolver.allow_list.to_list(),
        }

    @app.get("/api/stats")
    async def stats():
        data = redeemer.stats.to_dict()
        data["activeRedemptions"] = len(redeemer.ledger)
        return {"success": True, **data}

    return app
