"""
Melt response normalization and payment verification.

Mints disagree on how they report a paid melt: some set `paid`, some only
return the Lightning preimage, newer ones report `state: "PAID"`. We map
every response onto one Settlement shape and run an ordered list of
predicates over it; the first one that holds names the signal that proved
payment.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple


@dataclass
class Settlement:
    """A melt response, normalized."""
    paid_flag: Optional[bool] = None
    payment_proof: Optional[str] = None
    state: Optional[str] = None
    fee_paid: Optional[int] = None
    change: List[Dict[str, Any]] = field(default_factory=list)
    raw: Dict[str, Any] = field(default_factory=dict)


def _optional_int(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def normalize_melt_response(response: Dict[str, Any]) -> Settlement:
    """Map a raw melt response onto a Settlement."""
    if not isinstance(response, dict):
        return Settlement()

    paid = response.get("paid")
    proof = response.get("payment_preimage") or response.get("preimage")
    state = response.get("state")

    fee_paid = _optional_int(response.get("fee_paid"))
    if fee_paid is None:
        fee_paid = _optional_int(response.get("fee"))

    change = response.get("change") or []

    return Settlement(
        paid_flag=paid if isinstance(paid, bool) else None,
        payment_proof=str(proof) if proof else None,
        state=str(state).upper() if state else None,
        fee_paid=fee_paid,
        change=list(change) if isinstance(change, list) else [],
        raw=response,
    )


# Evaluated in order; any one is sufficient.
PAID_SIGNALS: Tuple[Tuple[str, Callable[[Settlement], bool]], ...] = (
    ("paid_flag", lambda s: s.paid_flag is True),
    ("payment_proof", lambda s: bool(s.payment_proof)),
    ("state", lambda s: s.state == "PAID"),
)


def settled_by(settlement: Settlement) -> Optional[str]:
    """Name of the first paid signal present, or None when there is none."""
    for name, predicate in PAID_SIGNALS:
        if predicate(settlement):
            return name
    return None

