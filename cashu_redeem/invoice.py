"""
BOLT11 invoice inspection.

Only the fields redemption cares about are extracted: amount, creation time,
expiry and network. Decoding is delegated to the `bolt11` library.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Optional

import bolt11

from .errors import ErrorKind, RedeemError

DEFAULT_EXPIRY = 3600  # BOLT11 default when the x tag is absent

NETWORKS = {
    "bc": "mainnet",
    "tb": "testnet",
    "tbs": "signet",
    "bcrt": "regtest",
}


@dataclass
class DecodedInvoice:
    amount_msat: Optional[int]
    timestamp: int
    expiry: int
    network: str
    payment_hash: Optional[str] = None

    @property
    def amount_sats(self) -> Optional[int]:
        if self.amount_msat is None:
            return None
        return self.amount_msat // 1000

    @property
    def expires_at(self) -> int:
        return self.timestamp + self.expiry

    def is_expired(self, now: Optional[float] = None) -> bool:
        return (now if now is not None else time.time()) >= self.expires_at


def decode_invoice(invoice: str) -> DecodedInvoice:
    """
    Decode a BOLT11 payment request.

    Raises:
        RedeemError: MalformedInvoice when the string is not a valid invoice.
    """
    if not invoice or not isinstance(invoice, str):
        raise RedeemError(ErrorKind.MALFORMED_INVOICE, "Invoice is empty")

    try:
        decoded = bolt11.decode(invoice.strip())
    except Exception as e:
        raise RedeemError(ErrorKind.MALFORMED_INVOICE, f"Invoice parsing failed: {e}") from e

    amount_msat = getattr(decoded, "amount_msat", None)
    currency = getattr(decoded, "currency", "") or ""

    return DecodedInvoice(
        amount_msat=int(amount_msat) if amount_msat is not None else None,
        timestamp=int(getattr(decoded, "date", 0) or 0),
        expiry=int(getattr(decoded, "expiry", None) or DEFAULT_EXPIRY),
        network=NETWORKS.get(currency, currency or "unknown"),
        payment_hash=getattr(decoded, "payment_hash", None),
    )


def verify_invoice(
    decoded: DecodedInvoice,
    expected_sats: Optional[int] = None,
    now: Optional[float] = None,
) -> None:
    """
    Check an invoice returned by a Lightning address provider.

    Raises:
        RedeemError: InvoiceEndpointError if the invoice has expired or is
            not for the amount that was requested.
    """
    if decoded.is_expired(now):
        raise RedeemError(ErrorKind.INVOICE_ENDPOINT_ERROR, "Invoice from provider has already expired")

    if expected_sats is not None and decoded.amount_sats != expected_sats:
        raise RedeemError(
            ErrorKind.INVOICE_ENDPOINT_ERROR,
            f"Invoice amount mismatch. Expected: {expected_sats} sats, "
            f"Got: {decoded.amount_sats} sats",
        )
