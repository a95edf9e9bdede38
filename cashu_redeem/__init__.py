"""
cashu-redeem: redeem Cashu ecash tokens to Lightning addresses.

The token's mint pays a Lightning invoice obtained from the recipient's
Lightning address, spending the token's proofs (a "melt").

Usage:
    from cashu_redeem import create_redeemer

    redeemer = create_redeemer(default_address="you@getalby.com")
    result = await redeemer.redeem("cashuB...", "friend@walletofsatoshi.com")
    if result.paid:
        print(result.net_amount, "sats sent")
"""

__version__ = "0.1.0"

from .api import create_app
from .config import RedeemConfig, configure_logging, load_config
from .errors import ErrorKind, MintError, MintUnsupported, RedeemError, classify_mint_error
from .fees import protocol_min_fee, reconcile
from .invoice import DecodedInvoice, decode_invoice
from .ledger import RedemptionAttempt, RedemptionLedger, RedemptionState
from .lnaddress import AddressResolver, DomainAllowList, validate_address_format
from .mint import CashuMintClient, decode_token
from .redeemer import RedemptionResult, Redeemer, create_redeemer
from .stats import RedemptionStats
from .token import Proof, TokenFormat, TokenRecord, parse_token

__all__ = [
    # Main API
    "create_redeemer",
    "Redeemer",
    "RedemptionResult",
    "create_app",
    # Config
    "RedeemConfig",
    "load_config",
    "configure_logging",
    # Errors
    "ErrorKind",
    "RedeemError",
    "MintError",
    "MintUnsupported",
    "classify_mint_error",
    # Tokens
    "Proof",
    "TokenFormat",
    "TokenRecord",
    "parse_token",
    "decode_token",
    # Collaborators
    "AddressResolver",
    "DomainAllowList",
    "validate_address_format",
    "CashuMintClient",
    "DecodedInvoice",
    "decode_invoice",
    # Ledger
    "RedemptionAttempt",
    "RedemptionLedger",
    "RedemptionState",
    # Fees
    "protocol_min_fee",
    "reconcile",
    # Stats
    "RedemptionStats",
]
