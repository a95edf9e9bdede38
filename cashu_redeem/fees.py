"""
Fee model for melting tokens into Lightning payments.

The mint's Lightning fee is paid out of the token itself, never on top of
it. Before the mint has been asked, we size the invoice with a protocol
minimum fee (2% of the amount, at least 1 sat). Once the mint quotes its own
fee reserve for that invoice we check the token still covers both, and once
the melt settles we record what the mint actually charged next to the
original estimate.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from .errors import ErrorKind, RedeemError

FEE_PERCENT = 2
MIN_FEE_SATS = 1


@dataclass
class FeeReconciliation:
    """Outcome of checking a mint quote against the token value."""
    net_invoice_amount: int
    expected_fee: int
    quoted_total: int


@dataclass
class SettlementAmounts:
    """Final figures after the mint has settled."""
    expected_fee: int
    actual_fee: int
    net_amount: int


def protocol_min_fee(amount: int) -> int:
    """
    Expected fee for melting `amount` sats: max(1, ceil(amount * 2%)).

    >>> protocol_min_fee(21000)
    420
    >>> protocol_min_fee(10)
    1
    """
    percent_fee = -(-amount * FEE_PERCENT // 100)
    return max(MIN_FEE_SATS, percent_fee)


def net_invoice_amount(declared_amount: int) -> int:
    """Amount to request from the payee so the fee fits inside the token."""
    return declared_amount - protocol_min_fee(declared_amount)


def reconcile(declared_amount: int, quoted_amount: int, fee_reserve: int) -> FeeReconciliation:
    """
    Check a mint melt quote against the token's value.

    Args:
        declared_amount: Total value of the token in sats.
        quoted_amount: Invoice amount the mint will pay.
        fee_reserve: Lightning fee the mint reserves on top of it.

    Raises:
        RedeemError: InsufficientValue when amount + reserve exceeds the token.
    """
    quoted_total = quoted_amount + fee_reserve
    if quoted_total > declared_amount:
        raise RedeemError(
            ErrorKind.INSUFFICIENT_VALUE,
            f"Insufficient funds. Required: {quoted_total} sats "
            f"(including {fee_reserve} sats fee), Available: {declared_amount} sats",
        )
    return FeeReconciliation(
        net_invoice_amount=net_invoice_amount(declared_amount),
        expected_fee=protocol_min_fee(declared_amount),
        quoted_total=quoted_total,
    )


def settle_amounts(
    declared_amount: int,
    fee_reserve: int,
    fee_paid: Optional[int] = None,
) -> SettlementAmounts:
    """
    Compute the actual fee and net amount once the melt has returned.

    The mint-reported fee wins; when the mint does not report one the quoted
    reserve is assumed spent.
    """
    actual_fee = fee_paid if fee_paid is not None else fee_reserve
    return SettlementAmounts(
        expected_fee=protocol_min_fee(declared_amount),
        actual_fee=actual_fee,
        net_amount=declared_amount - actual_fee,
    )
