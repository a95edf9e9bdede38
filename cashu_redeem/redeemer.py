"""
Redemption orchestrator.

create_redeemer() builds a Redeemer, which drives a token through:

    processing -> parsing_token -> checking_spendability
               -> resolving_invoice -> melting_token -> paid | failed

Each redemption is one RedemptionAttempt in the ledger. The mint, the
Lightning address provider and the invoice decoder are injected, so any
object with the same methods can stand in for them.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from loguru import logger

from .errors import (
    ErrorKind,
    MintError,
    MintUnsupported,
    RedeemError,
    classify_mint_error,
    mint_error_to_redeem_error,
)
from .fees import net_invoice_amount, protocol_min_fee, reconcile, settle_amounts
from .invoice import DecodedInvoice, decode_invoice, verify_invoice
from .ledger import DEFAULT_MAX_AGE, RedemptionAttempt, RedemptionLedger, RedemptionState
from .lnaddress import AddressResolver, validate_address_format
from .mint import CashuMintClient
from .settlement import normalize_melt_response, settled_by
from .stats import RedemptionStats
from .token import TokenRecord, parse_token, token_fingerprint

DEFAULT_COMMENT = "Cashu redemption"
DEFAULT_SWEEP_INTERVAL = 60 * 60  # seconds

MINT_CLIENT_METHODS = ("decode", "ensure_connected", "create_melt_quote", "melt", "check_spendable")

# A failed attempt with one of these kinds keeps blocking its token.
PERMANENT_FAILURE_KINDS = frozenset({
    ErrorKind.ALREADY_SPENT.value,
    ErrorKind.SETTLEMENT_AMBIGUOUS.value,
})

SPENT_MESSAGE = "This token has already been spent and cannot be redeemed again"
UNSUPPORTED_CHECK_MESSAGE = "This mint does not support spendability checking. Token may still be valid."


def blocks_retry(attempt: RedemptionAttempt) -> bool:
    """
    Duplicate-redemption policy for a prior attempt on the same token.

    In-flight and paid attempts always block. Failed attempts block only
    when the token is known spent or the payment outcome is unknown.
    """
    if attempt.state != RedemptionState.FAILED:
        return True
    kind = (attempt.error or {}).get("kind")
    return kind in PERMANENT_FAILURE_KINDS


@dataclass
class RedemptionResult:
    """Outcome of Redeemer.redeem()."""
    success: bool
    redeem_id: Optional[str] = None
    paid: bool = False
    declared_amount: Optional[int] = None
    invoice_amount: Optional[int] = None
    expected_fee: Optional[int] = None
    actual_fee: Optional[int] = None
    net_amount: Optional[int] = None
    destination: Optional[str] = None
    using_default_address: bool = False
    mint_url: Optional[str] = None
    token_format: Optional[str] = None
    payment_proof: Optional[str] = None
    settled_by: Optional[str] = None
    change: List[Dict[str, Any]] = field(default_factory=list)
    error: Optional[RedeemError] = None

    @property
    def error_kind(self) -> Optional[ErrorKind]:
        return self.error.kind if self.error else None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "success": self.success,
            "redeemId": self.redeem_id,
            "paid": self.paid,
            "amount": self.declared_amount,
            "invoiceAmount": self.invoice_amount,
            "expectedFee": self.expected_fee,
            "actualFee": self.actual_fee,
            "fee": self.actual_fee,
            "netAmount": self.net_amount,
            "to": self.destination,
            "usingDefaultAddress": self.using_default_address,
            "mint": self.mint_url,
            "format": self.token_format,
        }
        if self.success and self.using_default_address:
            data["message"] = f"Redeemed to default Lightning address: {self.destination}"
        if self.payment_proof:
            data["preimage"] = self.payment_proof
        if self.change:
            data["change"] = self.change
        if self.settled_by:
            data["settledBy"] = self.settled_by
        if self.error:
            data["error"] = self.error.message
            data["errorKind"] = self.error.kind.value
            if self.error.step:
                data["step"] = self.error.step
        return data


class Redeemer:
    """
    Redeems Cashu tokens to Lightning addresses.

    Created by create_redeemer(). All public methods are safe to call from
    concurrent tasks; concurrent redemptions of the same token are resolved
    by the ledger's atomic claim.
    """

    def __init__(
        self,
        mint_client: Any,
        resolver: AddressResolver,
        ledger: RedemptionLedger,
        stats: RedemptionStats,
        default_address: Optional[str] = None,
        invoice_decoder: Optional[Callable[[str], DecodedInvoice]] = decode_invoice,
        comment: str = DEFAULT_COMMENT,
        max_age: float = DEFAULT_MAX_AGE,
    ):
        self.mint = mint_client
        self.resolver = resolver
        self.ledger = ledger
        self.stats = stats
        self.default_address = default_address
        self.invoice_decoder = invoice_decoder
        self.comment = comment
        self.max_age = max_age

        self._inflight: Set[asyncio.Task] = set()
        self._sweeper: Optional[asyncio.Task] = None

    # ── Read-only operations ─────────────────────────────────────────────

    def select_address(self, address: Optional[str]) -> Tuple[str, bool]:
        """
        Pick the destination: the caller's address, else the configured default.

        Returns:
            (address, using_default)
        """
        if address and isinstance(address, str) and address.strip():
            return address.strip(), False
        if not self.default_address:
            raise RedeemError(
                ErrorKind.INVALID_ADDRESS_FORMAT,
                "No Lightning address provided and no default Lightning address configured",
            )
        return self.default_address, True

    def decode_token(self, token: Any) -> Dict[str, Any]:
        """Decode a token without contacting its mint."""
        return parse_token(token, self.mint).summary()

    async def validate_address(self, address: Any) -> Dict[str, Any]:
        """Check an address's format, allow-list status and LNURL-pay endpoint."""
        if not validate_address_format(address):
            return {"valid": False, "error": "Invalid Lightning address format"}

        try:
            parsed = self.resolver.parse(address)
            resolution = await self.resolver.fetch_capabilities(parsed)
        except RedeemError as e:
            return {"valid": False, "error": e.message, "errorKind": e.kind.value}

        return {
            "valid": True,
            "domain": resolution.domain,
            "minSendable": resolution.min_sats,
            "maxSendable": resolution.max_sats,
            "commentAllowed": resolution.comment_allowed,
        }

    async def check_spendable(self, token: Any) -> Dict[str, Any]:
        """
        Ask the token's mint which proofs are still spendable.

        Raises:
            RedeemError: token validation errors, or a classified mint failure.
        """
        record = parse_token(token, self.mint)
        base = {"mintUrl": record.mint_url, "totalAmount": record.total_amount}
        logger.info(f"Checking spendability for {record.num_proofs} proofs at mint: {record.mint_url}")

        try:
            state = await self.mint.check_spendable(record.mint_url, record.proofs)
        except MintUnsupported as e:
            logger.warning(f"Spendability check unsupported by {record.mint_url}: {e.detail}")
            return {"supported": False, "reason": UNSUPPORTED_CHECK_MESSAGE, **base}
        except MintError as e:
            raise mint_error_to_redeem_error(e, RedemptionState.CHECKING_SPENDABILITY.value)

        return {
            "supported": True,
            "spendable": state.spendable,
            "pending": state.pending,
            **base,
        }

    def get_status(self, redeem_id: str) -> Optional[RedemptionAttempt]:
        return self.ledger.get(redeem_id)

    # ── Redemption ───────────────────────────────────────────────────────

    async def redeem(self, token: Any, address: Optional[str] = None) -> RedemptionResult:
        """
        Redeem `token` to `address` (or the default address).

        Never raises for redemption failures; the result carries the
        classified error instead. Cancelling the caller after the melt has
        started does not cancel the melt.
        """
        if not isinstance(token, str) or not token.strip():
            error = RedeemError(
                ErrorKind.INVALID_FORMAT,
                "Token is required and must be a string",
                step=RedemptionState.PROCESSING.value,
            )
            return RedemptionResult(success=False, error=error)

        redeem_id, blocking = self.ledger.claim(
            token_fingerprint(token),
            blocks_retry,
            state=RedemptionState.PROCESSING,
        )
        if redeem_id is None:
            logger.warning(
                f"Duplicate redemption rejected; attempt {blocking.id} is {blocking.state.value}"
            )
            error = RedeemError(
                ErrorKind.ALREADY_REDEEMED,
                "Token has already been redeemed",
                step=RedemptionState.PROCESSING.value,
            )
            return RedemptionResult(success=False, error=error)

        result = RedemptionResult(success=False, redeem_id=redeem_id)
        step = RedemptionState.PROCESSING

        try:
            step = self._advance(redeem_id, RedemptionState.PARSING_TOKEN)
            record = self._prepare(redeem_id, token, address, result)

            step = self._advance(redeem_id, RedemptionState.CHECKING_SPENDABILITY)
            await self._check_spendability(record)

            step = self._advance(redeem_id, RedemptionState.RESOLVING_INVOICE)
            invoice = await self.resolver.resolve_invoice(
                result.destination, result.invoice_amount, self.comment
            )
            self._verify_invoice(invoice.bolt11, result.invoice_amount)
            self.ledger.update(redeem_id, domain=invoice.domain)

            step = self._advance(redeem_id, RedemptionState.MELTING_TOKEN)
            task = asyncio.ensure_future(self._settle(redeem_id, record, invoice.bolt11, result))
            self._inflight.add(task)
            task.add_done_callback(self._inflight.discard)
            await asyncio.shield(task)

        except RedeemError as e:
            if e.step is None:
                e.step = step.value
            self._fail(redeem_id, result, e)
        except asyncio.CancelledError:
            if step != RedemptionState.MELTING_TOKEN:
                self._fail(redeem_id, result, RedeemError(
                    ErrorKind.TRANSIENT_NETWORK_ERROR,
                    "Redemption cancelled before settlement",
                    step=step.value,
                ))
            raise
        except Exception as e:
            logger.exception(f"Redemption {redeem_id} failed unexpectedly during {step.value}")
            self._fail(redeem_id, result, RedeemError(ErrorKind.INTERNAL_ERROR, str(e), step=step.value))

        return result

    def _advance(self, redeem_id: str, state: RedemptionState) -> RedemptionState:
        self.ledger.update(redeem_id, state=state)
        logger.debug(f"Redemption {redeem_id}: {state.value}")
        return state

    def _prepare(
        self,
        redeem_id: str,
        token: str,
        address: Optional[str],
        result: RedemptionResult,
    ) -> TokenRecord:
        """Everything that can be checked locally, before any network call."""
        destination, using_default = self.select_address(address)
        result.destination = destination
        result.using_default_address = using_default
        self.ledger.update(
            redeem_id,
            target_address=destination,
            using_default_address=using_default,
        )
        self.resolver.parse(destination)

        record = parse_token(token, self.mint)
        expected_fee = protocol_min_fee(record.total_amount)
        net = net_invoice_amount(record.total_amount)

        result.declared_amount = record.total_amount
        result.expected_fee = expected_fee
        result.mint_url = record.mint_url
        result.token_format = record.format.value
        self.ledger.update(
            redeem_id,
            declared_amount=record.total_amount,
            computed_fee=expected_fee,
            net_invoice_amount=net,
            mint_url=record.mint_url,
            token_format=record.format.value,
            num_proofs=record.num_proofs,
        )

        if net <= 0:
            raise RedeemError(
                ErrorKind.INSUFFICIENT_VALUE,
                f"Token amount ({record.total_amount} sats) is insufficient to cover "
                f"the minimum fee ({expected_fee} sats)",
            )
        result.invoice_amount = net
        return record

    async def _check_spendability(self, record: TokenRecord) -> None:
        """Advisory: only a clear "spent" answer stops the redemption."""
        try:
            state = await self.mint.check_spendable(record.mint_url, record.proofs)
        except MintUnsupported as e:
            logger.warning(f"Spendability check unsupported by {record.mint_url}: {e.detail}")
            return
        except MintError as e:
            if classify_mint_error(e) == ErrorKind.ALREADY_SPENT:
                raise RedeemError(ErrorKind.ALREADY_SPENT, SPENT_MESSAGE)
            logger.warning(f"Spendability check failed: {e.detail}")
            return

        if state.any_spent:
            raise RedeemError(ErrorKind.ALREADY_SPENT, SPENT_MESSAGE)
        if any(state.pending):
            logger.warning(f"Token has pending proofs at {record.mint_url}; continuing")

    def _verify_invoice(self, bolt11: str, expected_sats: int) -> None:
        if self.invoice_decoder is None:
            return
        decoded = self.invoice_decoder(bolt11)
        verify_invoice(decoded, expected_sats=expected_sats)

    async def _settle(
        self,
        redeem_id: str,
        record: TokenRecord,
        bolt11: str,
        result: RedemptionResult,
    ) -> None:
        """Melt step; always leaves the attempt in a terminal state."""
        step = RedemptionState.MELTING_TOKEN.value
        try:
            await self._melt(redeem_id, record, bolt11, result)
        except RedeemError as e:
            if e.step is None:
                e.step = step
            self._fail(redeem_id, result, e)
        except Exception as e:
            logger.exception(f"Redemption {redeem_id}: melt failed unexpectedly")
            self._fail(redeem_id, result, RedeemError(ErrorKind.SETTLEMENT_AMBIGUOUS, str(e), step=step))

    async def _melt(
        self,
        redeem_id: str,
        record: TokenRecord,
        bolt11: str,
        result: RedemptionResult,
    ) -> None:
        step = RedemptionState.MELTING_TOKEN.value
        mint_url = record.mint_url

        try:
            await self.mint.ensure_connected(mint_url)
        except MintError as e:
            raise RedeemError(
                ErrorKind.ENDPOINT_UNREACHABLE,
                f"Failed to connect to mint {mint_url}: {e.detail}",
            )

        try:
            quote = await self.mint.create_melt_quote(mint_url, bolt11, record.unit)
        except MintError as e:
            raise mint_error_to_redeem_error(e, step)

        fees = reconcile(record.total_amount, quote.amount, quote.fee_reserve)
        self.ledger.update(redeem_id, quoted_fee=quote.fee_reserve)
        logger.debug(
            f"Redemption {redeem_id}: quote {quote.quote} needs {fees.quoted_total} of "
            f"{record.total_amount} sats (expected fee {fees.expected_fee})"
        )

        try:
            response = await self.mint.melt(mint_url, quote, record.proofs)
        except MintError as e:
            # no answer, or a server-side failure without a NUT code: the mint may still pay
            if e.code is None and (e.status_code is None or e.status_code >= 500):
                raise RedeemError(
                    ErrorKind.SETTLEMENT_AMBIGUOUS,
                    f"Mint did not confirm the melt request ({e.detail}); the payment may still complete",
                )
            raise mint_error_to_redeem_error(e, step)

        settlement = normalize_melt_response(response)
        signal = settled_by(settlement)
        amounts = settle_amounts(record.total_amount, quote.fee_reserve, settlement.fee_paid)

        result.actual_fee = amounts.actual_fee
        result.net_amount = amounts.net_amount
        result.payment_proof = settlement.payment_proof
        result.change = settlement.change
        result.settled_by = signal

        logger.info(
            f"Redemption {redeem_id}: melt result paid={settlement.paid_flag} "
            f"preimage={bool(settlement.payment_proof)} state={settlement.state} "
            f"fee={amounts.actual_fee} expected_fee={amounts.expected_fee}"
        )

        self.ledger.update(
            redeem_id,
            actual_fee=amounts.actual_fee,
            settled_amount=amounts.net_amount,
            payment_proof=settlement.payment_proof,
        )

        if signal is None:
            raise RedeemError(
                ErrorKind.SETTLEMENT_AMBIGUOUS,
                "Mint response did not confirm the payment",
            )

        self.ledger.update(
            redeem_id,
            state=RedemptionState.PAID,
            paid=True,
            settled_by=signal,
            paid_at=time.time(),
        )
        result.success = True
        result.paid = True
        self.stats.record(
            redeem_id,
            True,
            amount=record.total_amount,
            fee=amounts.actual_fee,
            mint=mint_url,
            destination=result.destination,
        )
        logger.info(f"Redemption {redeem_id} paid {result.invoice_amount} sats to {result.destination}")

    def _fail(self, redeem_id: str, result: RedemptionResult, error: RedeemError) -> None:
        result.success = False
        result.paid = False
        result.error = error
        self.ledger.update(
            redeem_id,
            state=RedemptionState.FAILED,
            paid=False,
            error=error.to_dict(),
        )
        self.stats.record(
            redeem_id,
            False,
            amount=result.declared_amount or 0,
            mint=result.mint_url,
            destination=result.destination,
            error_kind=error.kind.value,
        )
        logger.warning(f"Redemption {redeem_id} failed at {error.step}: {error.kind.value}: {error.message}")

    # ── Housekeeping ─────────────────────────────────────────────────────

    def sweep(self) -> int:
        """Remove finished attempts older than max_age."""
        removed = self.ledger.sweep(self.max_age)
        if removed:
            logger.info(f"Cleaned up {removed} old redemptions")
        return removed

    async def _sweep_loop(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                self.sweep()
            except Exception:
                logger.exception("Error cleaning up redemptions")

    def start_sweeper(self, interval: float = DEFAULT_SWEEP_INTERVAL) -> asyncio.Task:
        """Start the periodic ledger sweep (one task per Redeemer)."""
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.create_task(self._sweep_loop(interval))
        return self._sweeper

    async def stop_sweeper(self) -> None:
        if self._sweeper is None:
            return
        self._sweeper.cancel()
        try:
            await self._sweeper
        except asyncio.CancelledError:
            pass
        self._sweeper = None

    async def close(self) -> None:
        """Stop the sweeper, let in-flight melts finish, close HTTP clients."""
        await self.stop_sweeper()
        if self._inflight:
            await asyncio.gather(*self._inflight, return_exceptions=True)
        for client in (self.mint, self.resolver):
            if hasattr(client, "close"):
                await client.close()


def create_redeemer(
    mint_client: Optional[Any] = None,
    resolver: Optional[AddressResolver] = None,
    allowed_domains: Optional[List[str]] = None,
    default_address: Optional[str] = None,
    ledger: Optional[RedemptionLedger] = None,
    stats: Optional[RedemptionStats] = None,
    invoice_decoder: Optional[Callable[[str], DecodedInvoice]] = decode_invoice,
    comment: str = DEFAULT_COMMENT,
    max_age: float = DEFAULT_MAX_AGE,
    lnurl_timeout: float = 10.0,
    mint_timeout: float = 30.0,
) -> Redeemer:
    """
    Create a Redeemer.

    Args:
        mint_client: Mint client (default: CashuMintClient). Must provide
            decode, ensure_connected, create_melt_quote, melt, check_spendable.
        resolver: Address resolver (default: AddressResolver over allowed_domains).
        allowed_domains: Payout domain allow-list; empty or ["*"] allows all.
        default_address: Lightning address used when a request names none.
        ledger: Redemption ledger (default: a new in-memory ledger).
        stats: Stats tracker (default: a new RedemptionStats).
        invoice_decoder: BOLT11 decoder used to verify provider invoices;
            None disables the check.
        comment: Comment sent with invoice requests.
        max_age: Seconds a finished attempt is kept before sweeping.
        lnurl_timeout: Timeout for Lightning address HTTP calls.
        mint_timeout: Timeout for mint HTTP calls.

    Returns:
        Redeemer instance.
    """
    if mint_client is not None:
        missing = [m for m in MINT_CLIENT_METHODS if not hasattr(mint_client, m)]
        if missing:
            raise ValueError(
                f"cashu-redeem: mint_client must have {', '.join(m + '()' for m in missing)}"
            )
    else:
        mint_client = CashuMintClient(timeout=mint_timeout)

    if default_address is not None and not validate_address_format(default_address):
        raise ValueError(f"cashu-redeem: invalid default Lightning address: {default_address}")

    if resolver is None:
        resolver = AddressResolver(allowed_domains, timeout=lnurl_timeout)

    return Redeemer(
        mint_client=mint_client,
        resolver=resolver,
        ledger=ledger if ledger is not None else RedemptionLedger(),
        stats=stats if stats is not None else RedemptionStats(),
        default_address=default_address,
        invoice_decoder=invoice_decoder,
        comment=comment,
        max_age=max_age,
    )
