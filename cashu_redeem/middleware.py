"""
FastAPI request helpers: client identification and per-client rate limiting.
"""

from __future__ import annotations

import re
import time
from typing import Any, Callable, Dict, Union

from fastapi import HTTPException, Request
from loguru import logger

WINDOW_PATTERN = re.compile(r"^(\d+)(ms|s|m|h|d)$")
DEFAULT_WINDOW_MS = 60000  # 1m

RATE_LIMIT_MESSAGE = "Rate limit exceeded. Please try again later."


def parse_window(window: Union[str, int, None]) -> int:
    """
    Parse a time window string like '30s', '1m', '1h' to milliseconds.

    Args:
        window: Time window as string or milliseconds as int.

    Returns:
        Window duration in milliseconds (1m when unparseable).
    """
    if isinstance(window, int):
        return window
    if not window or not isinstance(window, str):
        return DEFAULT_WINDOW_MS

    match = WINDOW_PATTERN.match(window)
    if not match:
        return DEFAULT_WINDOW_MS

    num = int(match.group(1))
    unit = match.group(2)
    multipliers = {"ms": 1, "s": 1000, "m": 60000, "h": 3600000, "d": 86400000}
    return num * multipliers[unit]


def get_client_id(request: Any) -> str:
    """
    Get client identifier from a request.

    Prefers X-Forwarded-For, falls back to client host.
    """
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()

    if hasattr(request, "client") and request.client:
        return request.client.host or "unknown"

    return "unknown"


class RateLimiter:
    """
    Fixed-window request counter per client, used as a FastAPI dependency.

    A limit of 0 disables limiting.
    """

    def __init__(
        self,
        limit: int = 100,
        window: Union[str, int] = "1m",
        clock: Callable[[], float] = time.time,
        max_clients: int = 10000,
    ):
        self.limit = limit
        self.max_clients = max_clients
        self.window_ms = parse_window(window)
        self._clock = clock
        # client_id → { count, window_start }
        self._clients: Dict[str, Dict[str, float]] = {}

    def hit(self, client_id: str) -> bool:
        """Count one request; False once the client is over the limit."""
        if self.limit <= 0:
            return True

        now = self._clock() * 1000  # ms
        entry = self._clients.get(client_id)

        if not entry and len(self._clients) >= self.max_clients:
            self.prune()

        if not entry or (now - entry["window_start"]) >= self.window_ms:
            entry = {"count": 0, "window_start": now}
            self._clients[client_id] = entry

        if entry["count"] < self.limit:
            entry["count"] += 1
            return True

        return False

    def prune(self) -> None:
        """Forget clients whose window has closed."""
        now = self._clock() * 1000
        expired = [
            cid for cid, entry in self._clients.items()
            if (now - entry["window_start"]) >= self.window_ms
        ]
        for cid in expired:
            del self._clients[cid]

    async def __call__(self, request: Request) -> None:
        client_id = get_client_id(request)
        if not self.hit(client_id):
            logger.warning(f"Rate limit exceeded for {client_id} on {request.url.path}")
            raise HTTPException(
                status_code=429,
                detail={"success": False, "error": RATE_LIMIT_MESSAGE},
            )
