"""
Cashu token validation.

parse_token() is the cheap front gate of a redemption: it rejects anything
that does not look like a Cashu token before handing it to the mint client's
decoder, then checks that the decoded token actually carries value.

Nothing here talks to the network.
"""

from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional

from .errors import ErrorKind, RedeemError

# cashuA = JSON (v3), cashuB = CBOR (v4); payload is base64url
TOKEN_PATTERN = re.compile(r"^cashu[AB][A-Za-z0-9_\-]+=*$")


class TokenFormat(str, Enum):
    CASHU_A = "cashuA"
    CASHU_B = "cashuB"


@dataclass
class Proof:
    """A single ecash proof."""
    amount: int
    secret: str
    id: str = ""
    C: str = ""
    witness: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Wire format expected by the mint's melt endpoint."""
        data: Dict[str, Any] = {
            "id": self.id,
            "amount": self.amount,
            "secret": self.secret,
            "C": self.C,
        }
        if self.witness:
            data["witness"] = self.witness
        return data


@dataclass
class TokenRecord:
    """A decoded token, normalized across encodings."""
    mint_url: str
    proofs: List[Proof]
    format: TokenFormat
    unit: str = "sat"
    memo: Optional[str] = None

    @property
    def total_amount(self) -> int:
        return sum(p.amount for p in self.proofs)

    @property
    def denominations(self) -> List[int]:
        return [p.amount for p in self.proofs]

    @property
    def secrets(self) -> List[str]:
        return [p.secret for p in self.proofs]

    @property
    def num_proofs(self) -> int:
        return len(self.proofs)

    def summary(self) -> Dict[str, Any]:
        return {
            "mint": self.mint_url,
            "totalAmount": self.total_amount,
            "numProofs": self.num_proofs,
            "denominations": self.denominations,
            "format": self.format.value,
            "unit": self.unit,
        }


def is_valid_token_format(token: Any) -> bool:
    """Check the textual token grammar without decoding."""
    if not isinstance(token, str):
        return False
    return bool(TOKEN_PATTERN.match(token.strip()))


def token_fingerprint(token: str) -> str:
    """
    Stable, non-reversible identifier for an encoded token.

    Used to detect repeat redemptions of the same token.
    """
    return hashlib.sha256(token.strip().encode("utf-8")).hexdigest()


def parse_token(raw: Any, decoder: Any) -> TokenRecord:
    """
    Parse and sanity-check an encoded token.

    Args:
        raw: The encoded token as received from the caller.
        decoder: Object with a decode(token) -> TokenRecord method
            (normally the mint client).

    Returns:
        TokenRecord with at least one proof and a positive total.

    Raises:
        RedeemError: InvalidFormat, DecodeFailure or EmptyValue.
    """
    if not isinstance(raw, str) or not raw.strip():
        raise RedeemError(ErrorKind.INVALID_FORMAT, "Token is required and must be a string")

    token = raw.strip()
    if not is_valid_token_format(token):
        raise RedeemError(
            ErrorKind.INVALID_FORMAT,
            "Invalid token format. Must be a valid Cashu token",
        )

    try:
        record = decoder.decode(token)
    except RedeemError:
        raise
    except Exception as e:
        raise RedeemError(ErrorKind.DECODE_FAILURE, f"Token decoding failed: {e}") from e

    if not isinstance(record.mint_url, str) or not record.mint_url.strip():
        raise RedeemError(ErrorKind.DECODE_FAILURE, "Token has no mint URL")

    if not record.proofs:
        raise RedeemError(ErrorKind.EMPTY_VALUE, "Invalid token structure - no proofs found")

    for proof in record.proofs:
        if not isinstance(proof.amount, int) or isinstance(proof.amount, bool):
            raise RedeemError(ErrorKind.DECODE_FAILURE, "Proof amounts must be integers")
        if not isinstance(proof.secret, str) or not proof.secret:
            raise RedeemError(ErrorKind.DECODE_FAILURE, "Proof secrets must be non-empty strings")

    if record.total_amount <= 0:
        raise RedeemError(ErrorKind.EMPTY_VALUE, "Token has no value")

    if any(p.amount <= 0 for p in record.proofs):
        raise RedeemError(ErrorKind.DECODE_FAILURE, "Proof amounts must be positive")

    return record
