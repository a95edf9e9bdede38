"""
Minimal Cashu mint client.

Implements just what redemption needs from a mint, against the v1 REST API:

- decode:            cashuA (base64url JSON) and cashuB (base64url CBOR) tokens
- GET  /v1/info:     connectivity check, cached per mint
- POST /v1/melt/quote/bolt11: quote the fee reserve for paying an invoice
- POST /v1/melt/bolt11:       spend the proofs to pay the quoted invoice
- POST /v1/checkstate:        NUT-07 proof state lookup by Y = hash_to_curve(secret)

No blinding, signing or unblinding happens here; the mint does the Lightning
payment and this client only moves JSON around.
"""

from __future__ import annotations

import base64
import hashlib
import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import cbor2
import httpx
from coincurve import PublicKey
from loguru import logger

from .errors import UNSUPPORTED_STATUSES, MintError, MintUnsupported
from .token import Proof, TokenFormat, TokenRecord

DEFAULT_TIMEOUT = 30.0
DOMAIN_SEPARATOR = b"Secp256k1_HashToCurve_Cashu_"


@dataclass
class MeltQuote:
    """A mint's quote for paying one invoice."""
    quote: str
    amount: int
    fee_reserve: int
    expiry: Optional[int] = None
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)


@dataclass
class SpendableState:
    """Per-proof spendability, in the order the proofs were given."""
    spendable: List[bool]
    pending: List[bool]
    spent: List[bool] = field(default_factory=list)

    @property
    def any_spent(self) -> bool:
        return any(self.spent)


def hash_to_curve(message: bytes) -> PublicKey:
    """Map a proof secret onto secp256k1 (NUT-00), used to address NUT-07 lookups."""
    msg_to_hash = hashlib.sha256(DOMAIN_SEPARATOR + message).digest()
    counter = 0
    while counter < 2**16:
        candidate = hashlib.sha256(msg_to_hash + counter.to_bytes(4, "little")).digest()
        try:
            return PublicKey(b"\x02" + candidate)
        except ValueError:
            counter += 1
    raise ValueError("No valid point found")


def proof_y(secret: str) -> str:
    return hash_to_curve(secret.encode("utf-8")).format(compressed=True).hex()


def _b64url_decode(payload: str) -> bytes:
    padded = payload + "=" * (-len(payload) % 4)
    return base64.urlsafe_b64decode(padded)


def _decode_cashu_a(payload: str) -> TokenRecord:
    data = json.loads(_b64url_decode(payload).decode("utf-8"))
    entries = data.get("token") if isinstance(data, dict) else None
    if not entries or not isinstance(entries, list):
        raise ValueError("Invalid token structure")

    mint_url = entries[0].get("mint")
    proofs: List[Proof] = []
    for entry in entries:
        if entry.get("mint") != mint_url:
            raise ValueError("Tokens spanning multiple mints are not supported")
        for p in entry.get("proofs") or []:
            proofs.append(Proof(
                amount=p["amount"],
                secret=p["secret"],
                id=p.get("id", ""),
                C=p.get("C", ""),
                witness=p.get("witness"),
            ))

    if not mint_url:
        raise ValueError("Token has no mint URL")

    return TokenRecord(
        mint_url=mint_url,
        proofs=proofs,
        format=TokenFormat.CASHU_A,
        unit=data.get("unit") or "sat",
        memo=data.get("memo"),
    )


def _hex(value: Any) -> str:
    return value.hex() if isinstance(value, (bytes, bytearray)) else str(value)


def _decode_cashu_b(payload: str) -> TokenRecord:
    data = cbor2.loads(_b64url_decode(payload))
    if not isinstance(data, dict) or "m" not in data:
        raise ValueError("Invalid token structure")

    proofs: List[Proof] = []
    # 't' = [{ 'i': keyset id, 'p': [{ 'a': amount, 's': secret, 'c': C }] }]
    for entry in data.get("t") or []:
        keyset_id = _hex(entry["i"])
        for p in entry.get("p") or []:
            witness = p.get("w")
            proofs.append(Proof(
                amount=p["a"],
                secret=p["s"],
                id=keyset_id,
                C=_hex(p["c"]),
                witness=witness if isinstance(witness, str) else None,
            ))

    return TokenRecord(
        mint_url=data["m"],
        proofs=proofs,
        format=TokenFormat.CASHU_B,
        unit=data.get("u") or "sat",
        memo=data.get("d"),
    )


def decode_token(token: str) -> TokenRecord:
    """
    Decode an encoded token into a TokenRecord.

    Raises:
        ValueError: Unknown version prefix or malformed payload.
    """
    token = token.strip()
    if token.startswith(TokenFormat.CASHU_A.value):
        return _decode_cashu_a(token[6:])
    if token.startswith(TokenFormat.CASHU_B.value):
        return _decode_cashu_b(token[6:])
    raise ValueError(f"Unknown token version: {token[:7]}")


def _error_from_response(response: httpx.Response, mint_url: str) -> MintError:
    detail = f"HTTP {response.status_code}"
    code = None
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict):
        detail = str(body.get("detail") or body.get("error") or detail)
        raw_code = body.get("code")
        if isinstance(raw_code, int):
            code = raw_code

    error_cls = MintUnsupported if response.status_code in UNSUPPORTED_STATUSES else MintError
    return error_cls(detail, status_code=response.status_code, code=code, mint_url=mint_url)


class CashuMintClient:
    """
    HTTP client for the mints named in tokens.

    Mint info is cached per mint URL after the first successful /v1/info
    call. Concurrent first calls may both fetch; the last write wins and
    both results are equivalent.
    """

    def __init__(
        self,
        timeout: float = DEFAULT_TIMEOUT,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.timeout = timeout
        self._client = client
        self._owns_client = client is None
        self._info: Dict[str, Dict[str, Any]] = {}

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    def decode(self, token: str) -> TokenRecord:
        return decode_token(token)

    async def _request(
        self,
        method: str,
        mint_url: str,
        path: str,
        payload: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> Dict[str, Any]:
        url = mint_url.rstrip("/") + path
        try:
            response = await self._get_client().request(
                method,
                url,
                json=payload,
                timeout=timeout or self.timeout,
            )
        except httpx.HTTPError as e:
            raise MintError(
                f"{e.__class__.__name__}: {e}" if str(e) else e.__class__.__name__,
                mint_url=mint_url,
            )

        if response.status_code >= 400:
            raise _error_from_response(response, mint_url)

        try:
            data = response.json()
        except ValueError:
            raise MintError(
                "Invalid JSON from mint",
                status_code=response.status_code,
                mint_url=mint_url,
            )
        if not isinstance(data, dict):
            raise MintError("Unexpected response shape from mint", status_code=response.status_code, mint_url=mint_url)
        return data

    async def get_info(self, mint_url: str) -> Dict[str, Any]:
        info = await self._request("GET", mint_url, "/v1/info")
        self._info[mint_url] = info
        return info

    async def ensure_connected(self, mint_url: str) -> Dict[str, Any]:
        """Return cached mint info, fetching it on first use."""
        cached = self._info.get(mint_url)
        if cached is not None:
            return cached
        logger.debug(f"Connecting to mint {mint_url}")
        return await self.get_info(mint_url)

    async def create_melt_quote(self, mint_url: str, bolt11: str, unit: str = "sat") -> MeltQuote:
        data = await self._request(
            "POST", mint_url, "/v1/melt/quote/bolt11",
            {"request": bolt11, "unit": unit},
        )
        try:
            return MeltQuote(
                quote=str(data["quote"]),
                amount=int(data["amount"]),
                fee_reserve=int(data.get("fee_reserve") or 0),
                expiry=data.get("expiry"),
                raw=data,
            )
        except (KeyError, TypeError, ValueError):
            raise MintError("Malformed melt quote from mint", status_code=200, mint_url=mint_url)

    async def melt(self, mint_url: str, quote: MeltQuote, proofs: List[Proof]) -> Dict[str, Any]:
        """
        Spend `proofs` to pay the quoted invoice.

        Returns the raw melt response; see settlement.normalize_melt_response.
        The request waits as long as the quote's Lightning payment needs, up
        to four times the normal timeout.
        """
        return await self._request(
            "POST", mint_url, "/v1/melt/bolt11",
            {"quote": quote.quote, "inputs": [p.to_dict() for p in proofs]},
            timeout=self.timeout * 4,
        )

    async def check_spendable(self, mint_url: str, proofs: List[Proof]) -> SpendableState:
        """
        NUT-07 state check.

        Raises:
            MintUnsupported: The mint does not expose /v1/checkstate.
            MintError: Any other failure.
        """
        ys = [proof_y(p.secret) for p in proofs]
        data = await self._request("POST", mint_url, "/v1/checkstate", {"Ys": ys})

        states = {s.get("Y"): str(s.get("state", "")).upper() for s in data.get("states") or []}
        if not states:
            raise MintUnsupported(
                "Mint returned no proof states",
                status_code=200,
                mint_url=mint_url,
            )

        ordered = [states.get(y, "") for y in ys]
        return SpendableState(
            spendable=[s == "UNSPENT" for s in ordered],
            pending=[s == "PENDING" for s in ordered],
            spent=[s == "SPENT" for s in ordered],
        )
