"""
In-memory redemption ledger.

Each redemption attempt is one RedemptionAttempt keyed by a uuid. A second
index maps token fingerprints to the latest attempt for that token, which is
what the duplicate-redemption guard consults.

Readers always get copies; only the redeemer mutates entries, and only
through update().
"""

from __future__ import annotations

import copy
import threading
import time
import uuid
from dataclasses import dataclass, fields, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

DEFAULT_MAX_AGE = 24 * 60 * 60  # seconds


class RedemptionState(str, Enum):
    PROCESSING = "processing"
    PARSING_TOKEN = "parsing_token"
    CHECKING_SPENDABILITY = "checking_spendability"
    RESOLVING_INVOICE = "resolving_invoice"
    MELTING_TOKEN = "melting_token"
    PAID = "paid"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (RedemptionState.PAID, RedemptionState.FAILED)


@dataclass
class RedemptionAttempt:
    """One redemption, from request to terminal state."""
    id: str
    token_fingerprint: str
    state: RedemptionState = RedemptionState.PROCESSING
    target_address: Optional[str] = None
    using_default_address: bool = False
    mint_url: Optional[str] = None
    token_format: Optional[str] = None
    num_proofs: Optional[int] = None
    domain: Optional[str] = None
    declared_amount: Optional[int] = None
    computed_fee: Optional[int] = None
    quoted_fee: Optional[int] = None
    net_invoice_amount: Optional[int] = None
    actual_fee: Optional[int] = None
    settled_amount: Optional[int] = None
    paid: bool = False
    payment_proof: Optional[str] = None
    settled_by: Optional[str] = None
    error: Optional[Dict[str, Any]] = None
    created_at: float = 0.0
    updated_at: float = 0.0
    paid_at: Optional[float] = None

    @property
    def terminal(self) -> bool:
        return self.state.terminal

    def to_status_dict(self) -> Dict[str, Any]:
        """Status payload returned by the status endpoint."""
        details: Dict[str, Any] = {
            "amount": self.declared_amount,
            "to": self.target_address,
            "paid": self.paid,
            "createdAt": _iso(self.created_at),
            "updatedAt": _iso(self.updated_at),
        }
        if self.paid_at:
            details["paidAt"] = _iso(self.paid_at)
        if self.net_invoice_amount is not None:
            details["invoiceAmount"] = self.net_invoice_amount
        if self.computed_fee is not None:
            details["expectedFee"] = self.computed_fee
        if self.actual_fee is not None:
            details["fee"] = self.actual_fee
        if self.settled_amount is not None:
            details["netAmount"] = self.settled_amount
        if self.error:
            details["error"] = self.error.get("message")
            details["errorKind"] = self.error.get("kind")
        if self.mint_url:
            details["mint"] = self.mint_url
        if self.domain:
            details["domain"] = self.domain

        return {
            "success": True,
            "redeemId": self.id,
            "status": self.state.value,
            "details": details,
        }


def _iso(ts: Optional[float]) -> Optional[str]:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


IMMUTABLE_FIELDS = frozenset({"id", "token_fingerprint", "created_at"})
_ATTEMPT_FIELDS = frozenset(f.name for f in fields(RedemptionAttempt))


def _snapshot(attempt: RedemptionAttempt) -> RedemptionAttempt:
    return replace(attempt, error=copy.deepcopy(attempt.error))


class RedemptionLedger:
    """
    Keyed store of redemption attempts with a token-fingerprint index.

    All mutations hold one lock, so claim() is an atomic check-then-create
    and sweep() never interleaves with itself.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._lock = threading.Lock()
        self._attempts: Dict[str, RedemptionAttempt] = {}
        self._fingerprints: Dict[str, str] = {}

    def __len__(self) -> int:
        return len(self._attempts)

    def _check_fields(self, updates: Dict[str, Any]) -> None:
        for name in updates:
            if name in IMMUTABLE_FIELDS:
                raise ValueError(f"RedemptionAttempt.{name} cannot be changed")
            if name not in _ATTEMPT_FIELDS:
                raise ValueError(f"Unknown RedemptionAttempt field: {name}")

    def _create_locked(self, fingerprint: str, initial: Dict[str, Any]) -> str:
        self._check_fields(initial)
        now = self._clock()
        attempt_id = str(uuid.uuid4())
        attempt = RedemptionAttempt(
            id=attempt_id,
            token_fingerprint=fingerprint,
            created_at=now,
            updated_at=now,
        )
        for name, value in initial.items():
            setattr(attempt, name, value)
        self._attempts[attempt_id] = attempt
        self._fingerprints[fingerprint] = attempt_id
        return attempt_id

    def create(self, fingerprint: str, **initial: Any) -> str:
        """Record a new attempt and index it by fingerprint. Returns its id."""
        with self._lock:
            return self._create_locked(fingerprint, initial)

    def claim(
        self,
        fingerprint: str,
        blocks: Callable[[RedemptionAttempt], bool],
        **initial: Any,
    ) -> Tuple[Optional[str], Optional[RedemptionAttempt]]:
        """
        Create an attempt unless a prior one for the same token blocks it.

        Args:
            fingerprint: Token fingerprint.
            blocks: Policy deciding whether an existing attempt forbids a new one.
            **initial: Initial attempt fields.

        Returns:
            (new_id, None) on success, (None, blocking_attempt) otherwise.
        """
        with self._lock:
            existing_id = self._fingerprints.get(fingerprint)
            existing = self._attempts.get(existing_id) if existing_id else None
            if existing is not None and blocks(existing):
                return None, _snapshot(existing)
            return self._create_locked(fingerprint, initial), None

    def update(self, attempt_id: str, **updates: Any) -> None:
        """Merge fields into an attempt and refresh updated_at."""
        self._check_fields(updates)
        with self._lock:
            attempt = self._attempts.get(attempt_id)
            if attempt is None:
                return
            for name, value in updates.items():
                setattr(attempt, name, value)
            attempt.updated_at = self._clock()

    def get(self, attempt_id: str) -> Optional[RedemptionAttempt]:
        with self._lock:
            attempt = self._attempts.get(attempt_id)
            return _snapshot(attempt) if attempt else None

    def find_by_fingerprint(self, fingerprint: str) -> Optional[RedemptionAttempt]:
        with self._lock:
            attempt_id = self._fingerprints.get(fingerprint)
            attempt = self._attempts.get(attempt_id) if attempt_id else None
            return _snapshot(attempt) if attempt else None

    def all(self) -> List[RedemptionAttempt]:
        with self._lock:
            return [_snapshot(a) for a in self._attempts.values()]

    def sweep(self, max_age: float = DEFAULT_MAX_AGE) -> int:
        """
        Drop terminal attempts created more than `max_age` seconds ago.

        Returns:
            Number of attempts removed.
        """
        with self._lock:
            cutoff = self._clock() - max_age
            stale = [
                a for a in self._attempts.values()
                if a.created_at < cutoff and a.state.terminal
            ]
            for attempt in stale:
                del self._attempts[attempt.id]
                if self._fingerprints.get(attempt.token_fingerprint) == attempt.id:
                    del self._fingerprints[attempt.token_fingerprint]
            return len(stale)
