"""
In-memory redemption stats tracker.

Tracks redeemed value, fees, success/failure counts per mint, failure kinds
and recent redemptions. Served by the /api/stats endpoint.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Set


@dataclass
class RedemptionRecord:
    """A single finished redemption."""
    redeem_id: str
    paid: bool
    amount: int
    fee: int
    mint: Optional[str]
    destination: Optional[str]
    error_kind: Optional[str]
    timestamp: float  # milliseconds since epoch


class RedemptionStats:
    """In-memory redemption statistics tracker."""

    def __init__(self, max_recent: int = 100):
        self.max_recent = max_recent

        # Totals
        self.total_redemptions: int = 0
        self.total_paid: int = 0
        self.total_failed: int = 0
        self.total_amount: int = 0
        self.total_fees: int = 0

        # Per-mint: url → { redemptions, paid, failed, amount }
        self._mints: Dict[str, Dict[str, int]] = {}

        # Failure kind → count
        self._failures: Dict[str, int] = {}

        self._destinations: Set[str] = set()

        # Recent redemptions (ring buffer)
        self._recent: List[RedemptionRecord] = []

    def record(
        self,
        redeem_id: str,
        paid: bool,
        amount: int = 0,
        fee: int = 0,
        mint: Optional[str] = None,
        destination: Optional[str] = None,
        error_kind: Optional[str] = None,
    ) -> None:
        """
        Record a finished redemption (paid or failed).

        Args:
            redeem_id: Attempt id.
            paid: Whether the mint paid the invoice.
            amount: Token value in sats.
            fee: Fee the mint charged in sats.
            mint: Mint URL.
            destination: Lightning address paid to.
            error_kind: ErrorKind value for failures.
        """
        self.total_redemptions += 1

        if mint:
            if mint not in self._mints:
                self._mints[mint] = {"redemptions": 0, "paid": 0, "failed": 0, "amount": 0}
            per_mint = self._mints[mint]
            per_mint["redemptions"] += 1
        else:
            per_mint = None

        if paid:
            self.total_paid += 1
            self.total_amount += amount
            self.total_fees += fee
            if per_mint is not None:
                per_mint["paid"] += 1
                per_mint["amount"] += amount
            if destination:
                self._destinations.add(destination)
        else:
            self.total_failed += 1
            if per_mint is not None:
                per_mint["failed"] += 1
            kind = error_kind or "Unknown"
            self._failures[kind] = self._failures.get(kind, 0) + 1

        self._recent.append(
            RedemptionRecord(
                redeem_id=redeem_id,
                paid=paid,
                amount=amount,
                fee=fee,
                mint=mint,
                destination=destination,
                error_kind=error_kind,
                timestamp=time.time() * 1000,
            )
        )
        if len(self._recent) > self.max_recent:
            self._recent = self._recent[-self.max_recent:]

    @property
    def success_rate(self) -> float:
        if not self.total_redemptions:
            return 0.0
        return self.total_paid / self.total_redemptions

    def to_dict(self) -> Dict[str, Any]:
        """Stats summary as a plain dict."""
        recent = [
            {
                "redeemId": r.redeem_id,
                "paid": r.paid,
                "amount": r.amount,
                "fee": r.fee,
                "mint": r.mint,
                "to": r.destination,
                "errorKind": r.error_kind,
                "timestamp": r.timestamp,
            }
            for r in self._recent[-20:]
        ]
        recent.reverse()

        return {
            "totalRedemptions": self.total_redemptions,
            "totalPaid": self.total_paid,
            "totalFailed": self.total_failed,
            "totalAmount": self.total_amount,
            "totalFees": self.total_fees,
            "successRate": round(self.success_rate, 4),
            "uniqueDestinations": len(self._destinations),
            "mints": {url: dict(data) for url, data in self._mints.items()},
            "failures": dict(self._failures),
            "recentRedemptions": recent,
        }
