"""
Lightning address resolution (LUD-16 over LNURL-pay, LUD-06).

A Lightning address `user@domain` is resolved in two HTTP round trips:

1. GET https://<domain>/.well-known/lnurlp/<user>
   -> { callback, minSendable, maxSendable, commentAllowed, ... }
2. GET <callback>?amount=<msat>&comment=<text>
   -> { pr: "<bolt11 invoice>", successAction, verify }

Amounts on the wire are millisatoshis; everything above this module works
in sats.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Optional, Union

import httpx
from loguru import logger

from .errors import ErrorKind, RedeemError

ADDRESS_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
WELL_KNOWN_PATH = "/.well-known/lnurlp/"
COMMENT_MAX_LENGTH = 144  # LUD-12 ceiling imposed by most providers
MSATS_PER_SAT = 1000
DEFAULT_TIMEOUT = 10.0
USER_AGENT = "cashu-redeem/0.1.0"


@dataclass
class LightningAddress:
    username: str
    domain: str

    def __str__(self) -> str:
        return f"{self.username}@{self.domain}"


@dataclass
class AddressResolution:
    """Capabilities advertised by a Lightning address provider."""
    payable: bool
    domain: str
    min_sendable: int  # msat
    max_sendable: int  # msat
    comment_allowed: int
    callback: str
    metadata: Optional[str] = None

    @property
    def min_sats(self) -> int:
        return msats_to_sats(self.min_sendable)

    @property
    def max_sats(self) -> int:
        return msats_to_sats(self.max_sendable)


@dataclass
class InvoiceResult:
    """An invoice obtained from a provider callback."""
    bolt11: str
    amount_sats: int
    domain: str
    address: str
    success_action: Optional[Dict[str, Any]] = None
    verify: Optional[str] = None
    resolution: Optional[AddressResolution] = field(default=None, repr=False)

    @property
    def amount_msats(self) -> int:
        return sats_to_msats(self.amount_sats)


def sats_to_msats(sats: int) -> int:
    return sats * MSATS_PER_SAT


def msats_to_sats(msats: int) -> int:
    return msats // MSATS_PER_SAT


def validate_address_format(address: Any) -> bool:
    """Loose `local@domain.tld` check; not RFC validation."""
    if not address or not isinstance(address, str):
        return False
    return bool(ADDRESS_PATTERN.match(address))


class DomainAllowList:
    """
    Domains a redemption may pay out to.

    An empty list or a `*` entry allows every domain; otherwise domains
    must match exactly, ignoring case.
    """

    def __init__(self, domains: Optional[Iterable[str]] = None):
        cleaned = [d.strip().lower() for d in (domains or []) if d and d.strip()]
        self.allow_all = not cleaned or "*" in cleaned
        self.domains = frozenset(d for d in cleaned if d != "*")

    @classmethod
    def from_string(cls, value: Optional[str]) -> "DomainAllowList":
        """Build from a comma separated list such as `ln.tips,getalby.com`."""
        return cls((value or "").split(","))

    def is_allowed(self, domain: str) -> bool:
        if self.allow_all:
            return True
        return domain.strip().lower() in self.domains

    def to_list(self):
        return ["*"] if self.allow_all else sorted(self.domains)


def _parse_msat(data: Dict[str, Any], key: str) -> int:
    value = data.get(key)
    if value is None or isinstance(value, bool):
        raise RedeemError(
            ErrorKind.MALFORMED_RESPONSE,
            "Invalid LNURLp response - missing required fields",
        )
    try:
        return int(value)
    except (TypeError, ValueError):
        raise RedeemError(
            ErrorKind.MALFORMED_RESPONSE,
            f"Invalid LNURLp response - {key} is not an integer",
        )


class AddressResolver:
    """
    Resolves Lightning addresses to invoices.

    One httpx.AsyncClient is shared by all lookups so connections to popular
    providers are pooled. Pass `client` to supply your own (tests use an
    httpx.MockTransport); it will not be closed by close().
    """

    def __init__(
        self,
        allowed_domains: Union[DomainAllowList, Iterable[str], None] = None,
        timeout: float = DEFAULT_TIMEOUT,
        client: Optional[httpx.AsyncClient] = None,
    ):
        if isinstance(allowed_domains, DomainAllowList):
            self.allow_list = allowed_domains
        else:
            self.allow_list = DomainAllowList(allowed_domains)
        self.timeout = timeout
        self._client = client
        self._owns_client = client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self.timeout,
                headers={"User-Agent": USER_AGENT},
                follow_redirects=True,
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    def parse(self, address: str) -> LightningAddress:
        """
        Split and gate an address before any network call.

        Raises:
            RedeemError: InvalidAddressFormat or DomainNotAllowed.
        """
        if not validate_address_format(address):
            raise RedeemError(ErrorKind.INVALID_ADDRESS_FORMAT, "Invalid Lightning address format")

        username, domain = address.strip().split("@", 1)
        if not self.allow_list.is_allowed(domain):
            raise RedeemError(
                ErrorKind.DOMAIN_NOT_ALLOWED,
                f"Domain {domain} is not allowed for redemption",
            )
        return LightningAddress(username=username, domain=domain)

    def well_known_url(self, address: LightningAddress) -> str:
        return f"https://{address.domain}{WELL_KNOWN_PATH}{address.username}"

    async def fetch_capabilities(self, address: Union[str, LightningAddress]) -> AddressResolution:
        """
        Fetch the LNURL-pay parameters for an address.

        Raises:
            RedeemError: EndpointUnreachable or MalformedResponse (plus the
                parse() errors when given a string).
        """
        if not isinstance(address, LightningAddress):
            address = self.parse(address)

        url = self.well_known_url(address)
        logger.debug(f"LNURLp endpoint: {url}")

        try:
            response = await self._get_client().get(url, timeout=self.timeout)
        except httpx.TimeoutException:
            raise RedeemError(
                ErrorKind.ENDPOINT_UNREACHABLE,
                f"Lightning address provider {address.domain} timed out",
            )
        except httpx.HTTPError as e:
            raise RedeemError(
                ErrorKind.ENDPOINT_UNREACHABLE,
                f"Unable to connect to Lightning address provider: {e}",
            )

        if response.status_code != 200:
            raise RedeemError(
                ErrorKind.ENDPOINT_UNREACHABLE,
                f"LNURLp fetch failed: HTTP {response.status_code}",
            )

        try:
            data = response.json()
        except ValueError:
            raise RedeemError(ErrorKind.MALFORMED_RESPONSE, "LNURLp endpoint did not return JSON")

        if not isinstance(data, dict):
            raise RedeemError(ErrorKind.MALFORMED_RESPONSE, "LNURLp endpoint did not return an object")

        if str(data.get("status", "")).upper() == "ERROR":
            raise RedeemError(
                ErrorKind.MALFORMED_RESPONSE,
                data.get("reason") or "LNURLp endpoint returned error",
            )

        callback = data.get("callback")
        if not callback or not isinstance(callback, str):
            raise RedeemError(
                ErrorKind.MALFORMED_RESPONSE,
                "Invalid LNURLp response - missing required fields",
            )

        min_sendable = _parse_msat(data, "minSendable")
        max_sendable = _parse_msat(data, "maxSendable")

        try:
            comment_allowed = int(data.get("commentAllowed") or 0)
        except (TypeError, ValueError):
            comment_allowed = 0

        return AddressResolution(
            payable=min_sendable <= max_sendable and max_sendable > 0,
            domain=address.domain,
            min_sendable=min_sendable,
            max_sendable=max_sendable,
            comment_allowed=comment_allowed,
            callback=callback,
            metadata=data.get("metadata"),
        )

    def check_amount(self, resolution: AddressResolution, amount_sats: int) -> None:
        """
        Raises:
            RedeemError: AmountOutOfRange unless min <= amount*1000 <= max.
        """
        amount_msats = sats_to_msats(amount_sats)
        if not resolution.min_sendable <= amount_msats <= resolution.max_sendable:
            raise RedeemError(
                ErrorKind.AMOUNT_OUT_OF_RANGE,
                f"Amount {amount_sats} sats is outside allowed range: "
                f"{resolution.min_sats}-{resolution.max_sats} sats",
            )

    async def request_invoice(
        self,
        resolution: AddressResolution,
        amount_sats: int,
        comment: str = "",
        address: str = "",
    ) -> InvoiceResult:
        """
        Ask the provider's callback for an invoice.

        Raises:
            RedeemError: AmountOutOfRange or InvoiceEndpointError.
        """
        self.check_amount(resolution, amount_sats)

        params: Dict[str, Any] = {"amount": str(sats_to_msats(amount_sats))}
        if comment:
            limit = COMMENT_MAX_LENGTH
            if 0 < resolution.comment_allowed < limit:
                limit = resolution.comment_allowed
            params["comment"] = comment[:limit]

        try:
            url = httpx.URL(resolution.callback).copy_merge_params(params)
        except (httpx.InvalidURL, TypeError) as e:
            raise RedeemError(ErrorKind.INVOICE_ENDPOINT_ERROR, f"Invalid callback URL: {e}")

        logger.debug(f"Requesting invoice for {params['amount']} msats from {resolution.domain}")

        try:
            response = await self._get_client().get(url, timeout=self.timeout)
        except httpx.HTTPError as e:
            raise RedeemError(
                ErrorKind.INVOICE_ENDPOINT_ERROR,
                f"Invoice generation failed: {e.__class__.__name__}",
            )

        if response.status_code != 200:
            raise RedeemError(
                ErrorKind.INVOICE_ENDPOINT_ERROR,
                f"Invoice generation failed: HTTP {response.status_code}",
            )

        try:
            data = response.json()
        except ValueError:
            raise RedeemError(ErrorKind.INVOICE_ENDPOINT_ERROR, "Invoice generation failed: invalid JSON")

        if not isinstance(data, dict):
            raise RedeemError(ErrorKind.INVOICE_ENDPOINT_ERROR, "Invoice generation failed: invalid response")

        if str(data.get("status", "")).upper() == "ERROR":
            raise RedeemError(
                ErrorKind.INVOICE_ENDPOINT_ERROR,
                f"Invoice generation failed: {data.get('reason') or 'provider returned error'}",
            )

        bolt11 = data.get("pr")
        if not bolt11 or not isinstance(bolt11, str):
            raise RedeemError(ErrorKind.INVOICE_ENDPOINT_ERROR, "No invoice returned from callback")

        return InvoiceResult(
            bolt11=bolt11,
            amount_sats=amount_sats,
            domain=resolution.domain,
            address=address,
            success_action=data.get("successAction"),
            verify=data.get("verify"),
            resolution=resolution,
        )

    async def resolve_invoice(self, address: str, amount_sats: int, comment: str = "") -> InvoiceResult:
        """Address -> capabilities -> amount check -> invoice."""
        logger.info(f"Resolving Lightning address {address} for {amount_sats} sats")
        parsed = self.parse(address)
        resolution = await self.fetch_capabilities(parsed)
        invoice = await self.request_invoice(resolution, amount_sats, comment, address=str(parsed))
        logger.info(f"Invoice created for {address}: {invoice.bolt11[:50]}...")
        return invoice
