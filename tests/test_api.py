"""Tests for the HTTP API."""

from unittest.mock import AsyncMock, MagicMock

import httpx
from fastapi.testclient import TestClient

from cashu_redeem.api import create_app
from cashu_redeem.config import RedeemConfig
from cashu_redeem.errors import MintError
from cashu_redeem.lnaddress import AddressResolver
from cashu_redeem.mint import MeltQuote, SpendableState
from cashu_redeem.redeemer import create_redeemer
from cashu_redeem.token import Proof, TokenFormat, TokenRecord


MINT_URL = "https://mint.example.com"
TOKEN = "cashuBo2FteBtodHRwczovL21pbnQuZXhhbXBsZS5jb20"
PREIMAGE = "deadbeefdeadbeefdeadbeefdeadbeefdeadbeefdeadbeefdeadbeefdeadbeef"


def make_fake_mint():
    record = TokenRecord(
        mint_url=MINT_URL,
        proofs=[Proof(amount=a, secret=f"s{a}") for a in (16384, 4096, 512, 8)],
        format=TokenFormat.CASHU_B,
    )
    mint = MagicMock()
    mint.decode = MagicMock(return_value=record)
    mint.ensure_connected = AsyncMock(return_value={})
    mint.check_spendable = AsyncMock(
        return_value=SpendableState(spendable=[True] * 4, pending=[False] * 4, spent=[False] * 4)
    )
    mint.create_melt_quote = AsyncMock(return_value=MeltQuote(quote="q1", amount=20580, fee_reserve=420))
    mint.melt = AsyncMock(return_value={"paid": True, "payment_preimage": PREIMAGE})
    mint.close = AsyncMock()
    return mint


def lnurl_provider(request):
    if request.url.host == "down.example":
        return httpx.Response(503, text="maintenance")
    if request.url.path.startswith("/.well-known/lnurlp/"):
        return httpx.Response(200, json={
            "callback": f"https://{request.url.host}/callback",
            "minSendable": 1000,
            "maxSendable": 100000000000,
            "commentAllowed": 144,
        })
    return httpx.Response(200, json={"pr": "lnbc205800n1fake"})


def make_client(mint=None, config=None, allowed_domains=None, default_address="admin@example.org"):
    resolver = AddressResolver(
        allowed_domains,
        client=httpx.AsyncClient(transport=httpx.MockTransport(lnurl_provider)),
    )
    redeemer = create_redeemer(
        mint_client=mint or make_fake_mint(),
        resolver=resolver,
        default_address=default_address,
        invoice_decoder=None,
    )
    return TestClient(create_app(redeemer, config)), redeemer


class TestDecode:
    def test_decode(self):
        client, _ = make_client()
        resp = client.post("/api/decode", json={"token": TOKEN})
        assert resp.status_code == 200
        body = resp.json()
        assert body["success"] is True
        assert body["decoded"]["totalAmount"] == 21000
        assert body["decoded"]["mint"] == MINT_URL

    def test_invalid_token(self):
        client, _ = make_client()
        resp = client.post("/api/decode", json={"token": "hello"})
        assert resp.status_code == 400
        assert resp.json() == {
            "success": False,
            "error": "Invalid token format. Must be a valid Cashu token",
            "errorKind": "InvalidFormat",
        }

    def test_missing_token(self):
        client, _ = make_client()
        resp = client.post("/api/decode", json={})
        assert resp.status_code == 400
        assert resp.json()["errorKind"] == "InvalidFormat"


class TestRedeem:
    def test_redeem_to_default(self):
        client, _ = make_client()
        resp = client.post("/api/redeem", json={"token": TOKEN})
        assert resp.status_code == 200
        body = resp.json()
        assert body["success"] is True
        assert body["paid"] is True
        assert body["amount"] == 21000
        assert body["invoiceAmount"] == 20580
        assert body["fee"] == 420
        assert body["netAmount"] == 20580
        assert body["usingDefaultAddress"] is True
        assert body["message"] == "Redeemed to default Lightning address: admin@example.org"
        assert body["preimage"] == PREIMAGE

    def test_duplicate_rejected(self):
        client, _ = make_client()
        assert client.post("/api/redeem", json={"token": TOKEN}).status_code == 200
        resp = client.post("/api/redeem", json={"token": TOKEN})
        assert resp.status_code == 400
        assert resp.json()["errorKind"] == "AlreadyRedeemed"
        assert resp.json()["redeemId"] is None

    def test_domain_not_allowed(self):
        client, _ = make_client(allowed_domains=["example.org"])
        resp = client.post("/api/redeem", json={"token": TOKEN, "lightningAddress": "bob@evil.com"})
        assert resp.status_code == 400
        body = resp.json()
        assert body["success"] is False
        assert body["errorKind"] == "DomainNotAllowed"
        assert body["error"] == "Domain evil.com is not allowed for redemption"

    def test_mint_failure(self):
        mint = make_fake_mint()
        mint.melt = AsyncMock(side_effect=MintError("quote expired", status_code=400))
        client, _ = make_client(mint)
        resp = client.post("/api/redeem", json={"token": TOKEN})
        assert resp.status_code == 400
        assert resp.json()["errorKind"] == "MintRejected"
        assert resp.json()["step"] == "melting_token"

    def test_internal_error_hidden(self):
        mint = make_fake_mint()
        mint.check_spendable = AsyncMock(side_effect=RuntimeError("secret stack detail"))
        client, _ = make_client(mint)
        resp = client.post("/api/redeem", json={"token": TOKEN})
        assert resp.status_code == 500
        assert resp.json()["error"] == "Internal server error"
        assert "secret" not in resp.text

    def test_unreachable_provider_is_503(self):
        client, _ = make_client()
        resp = client.post("/api/redeem", json={"token": TOKEN, "lightningAddress": "bob@down.example"})
        assert resp.status_code == 503
        assert resp.json()["errorKind"] == "EndpointUnreachable"


class TestStatus:
    def test_status_after_redeem(self):
        client, _ = make_client()
        redeem_id = client.post("/api/redeem", json={"token": TOKEN}).json()["redeemId"]

        by_post = client.post("/api/status", json={"redeemId": redeem_id})
        by_get = client.get(f"/api/status/{redeem_id}")
        assert by_post.status_code == by_get.status_code == 200
        assert by_post.json() == by_get.json()
        assert by_post.json()["status"] == "paid"
        assert by_post.json()["details"]["amount"] == 21000

    def test_unknown(self):
        client, _ = make_client()
        resp = client.get("/api/status/nope")
        assert resp.status_code == 404
        assert resp.json() == {"success": False, "error": "Redemption not found"}

    def test_missing_id(self):
        client, _ = make_client()
        assert client.post("/api/status", json={}).status_code == 400


class TestAddressAndSpendability:
    def test_validate_address(self):
        client, _ = make_client()
        resp = client.post("/api/validate-address", json={"lightningAddress": "admin@example.org"})
        assert resp.status_code == 200
        body = resp.json()
        assert body["success"] is True
        assert body["valid"] is True
        assert body["minSendable"] == 1
        assert body["maxSendable"] == 100000000

    def test_validate_bad_address(self):
        client, _ = make_client()
        resp = client.post("/api/validate-address", json={"lightningAddress": "nope"})
        assert resp.status_code == 400
        assert resp.json()["valid"] is False

    def test_validate_missing_address(self):
        client, _ = make_client()
        assert client.post("/api/validate-address", json={}).status_code == 400

    def test_check_spendable(self):
        client, _ = make_client()
        resp = client.post("/api/check-spendable", json={"token": TOKEN})
        assert resp.status_code == 200
        body = resp.json()
        assert body["success"] is True
        assert body["supported"] is True
        assert body["totalAmount"] == 21000

    def test_check_spendable_mint_down_is_503(self):
        mint = make_fake_mint()
        mint.check_spendable = AsyncMock(side_effect=MintError("Bad Gateway", status_code=502))
        client, _ = make_client(mint)
        resp = client.post("/api/check-spendable", json={"token": TOKEN})
        assert resp.status_code == 503
        assert resp.json()["errorKind"] == "TransientNetworkError"


class TestServiceEndpoints:
    def test_health(self):
        client, _ = make_client(allowed_domains=["example.org"])
        resp = client.get("/api/health")
        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "ok"
        assert body["defaultAddress"] == "admin@example.org"
        assert body["allowedDomains"] == ["example.org"]

    def test_stats(self):
        client, _ = make_client()
        client.post("/api/redeem", json={"token": TOKEN})
        client.post("/api/redeem", json={"token": TOKEN})
        body = client.get("/api/stats").json()
        assert body["success"] is True
        assert body["totalRedemptions"] == 1
        assert body["totalPaid"] == 1
        assert body["totalAmount"] == 21000
        assert body["activeRedemptions"] == 1

    def test_rate_limit(self):
        client, _ = make_client(config=RedeemConfig(rate_limit=2))
        assert client.post("/api/decode", json={"token": TOKEN}).status_code == 200
        assert client.post("/api/decode", json={"token": TOKEN}).status_code == 200
        resp = client.post("/api/decode", json={"token": TOKEN})
        assert resp.status_code == 429
        assert resp.json() == {"success": False, "error": "Rate limit exceeded. Please try again later."}
        # health is not rate limited
        assert client.get("/api/health").status_code == 200
