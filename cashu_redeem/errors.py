"""
Error taxonomy for token redemption.

Every failure the redemption engine reports carries an ErrorKind so callers
can tell "already spent" from "insufficient value" from "try again later"
without parsing messages.

Mint failures arrive as MintError (HTTP status + optional NUT error code +
detail text). classify_mint_error() is the single place that turns those into
an ErrorKind; text matching only happens there, and only after the structured
fields have been checked.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Optional


class ErrorKind(str, Enum):
    """Failure categories surfaced to callers."""

    INVALID_FORMAT = "InvalidFormat"
    DECODE_FAILURE = "DecodeFailure"
    EMPTY_VALUE = "EmptyValue"
    INSUFFICIENT_VALUE = "InsufficientValue"
    ALREADY_REDEEMED = "AlreadyRedeemed"
    ALREADY_SPENT = "AlreadySpent"
    DOMAIN_NOT_ALLOWED = "DomainNotAllowed"
    INVALID_ADDRESS_FORMAT = "InvalidAddressFormat"
    ENDPOINT_UNREACHABLE = "EndpointUnreachable"
    MALFORMED_RESPONSE = "MalformedResponse"
    AMOUNT_OUT_OF_RANGE = "AmountOutOfRange"
    INVOICE_ENDPOINT_ERROR = "InvoiceEndpointError"
    SETTLEMENT_AMBIGUOUS = "SettlementAmbiguous"
    TRANSIENT_NETWORK_ERROR = "TransientNetworkError"
    MALFORMED_INVOICE = "MalformedInvoice"
    MINT_REJECTED = "MintRejected"
    INTERNAL_ERROR = "InternalError"


class RedeemError(Exception):
    """A classified redemption failure."""

    def __init__(self, kind: ErrorKind, message: str, step: Optional[str] = None):
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.step = step

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"kind": self.kind.value, "message": self.message}
        if self.step:
            data["step"] = self.step
        return data

    def __repr__(self) -> str:
        return f"RedeemError({self.kind.value}, {self.message!r}, step={self.step!r})"


class MintError(Exception):
    """
    A failed call to a Cashu mint.

    Attributes:
        status_code: HTTP status, or None when the request never got a response.
        code: NUT error code from the mint's JSON body, when present.
        detail: The mint's error text (or the transport error text).
    """

    def __init__(
        self,
        detail: str,
        status_code: Optional[int] = None,
        code: Optional[int] = None,
        mint_url: Optional[str] = None,
    ):
        super().__init__(detail)
        self.detail = detail
        self.status_code = status_code
        self.code = code
        self.mint_url = mint_url


class MintUnsupported(MintError):
    """The mint does not implement the requested endpoint."""


# NUT error codes
SPENT_CODES = frozenset({11001})
UNBALANCED_CODES = frozenset({11002})
UNSUPPORTED_STATUSES = frozenset({404, 405, 501})

# Last-resort wording seen from mints that omit error codes
SPENT_HINTS = (
    "already spent",
    "already been used",
    "not spendable",
    "invalid proofs",
)
INSUFFICIENT_HINTS = (
    "insufficient",
    "not balanced",
    "not enough",
)


def classify_mint_error(error: MintError) -> ErrorKind:
    """
    Map a mint failure onto the redemption error taxonomy.

    Order: NUT error code, then HTTP status, then wording of the detail text.
    """
    if error.code in SPENT_CODES:
        return ErrorKind.ALREADY_SPENT
    if error.code in UNBALANCED_CODES:
        return ErrorKind.INSUFFICIENT_VALUE

    status = error.status_code
    if status is None or status >= 500 or status == 429:
        return ErrorKind.TRANSIENT_NETWORK_ERROR

    text = (error.detail or "").lower()
    if any(hint in text for hint in SPENT_HINTS):
        return ErrorKind.ALREADY_SPENT
    if any(hint in text for hint in INSUFFICIENT_HINTS):
        return ErrorKind.INSUFFICIENT_VALUE

    return ErrorKind.MINT_REJECTED


def mint_error_to_redeem_error(error: MintError, step: str) -> RedeemError:
    """Wrap a MintError in a RedeemError for the given orchestration step."""
    kind = classify_mint_error(error)
    if kind == ErrorKind.ALREADY_SPENT:
        message = "This token has already been spent and cannot be redeemed again"
    elif kind == ErrorKind.TRANSIENT_NETWORK_ERROR and error.status_code is None:
        message = f"Could not reach mint: {error.detail}"
    else:
        message = f"Mint error: {error.detail}"
    return RedeemError(kind, message, step=step)
