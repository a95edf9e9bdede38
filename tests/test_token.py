"""Tests for token validation."""

from unittest.mock import MagicMock

import pytest

from cashu_redeem.errors import ErrorKind, RedeemError
from cashu_redeem.token import (
    Proof,
    TokenFormat,
    TokenRecord,
    is_valid_token_format,
    parse_token,
    token_fingerprint,
)


MINT_URL = "https://mint.example.com"
TOKEN = "cashuBo2FteBtodHRwczovL21pbnQuZXhhbXBsZS5jb20"


def make_record(*amounts, format=TokenFormat.CASHU_B):
    proofs = [Proof(amount=a, secret=f"secret-{i}", id="009a1f293253e41e", C="02ab") for i, a in enumerate(amounts)]
    return TokenRecord(mint_url=MINT_URL, proofs=proofs, format=format)


def make_decoder(record=None, error=None):
    decoder = MagicMock()
    if error is not None:
        decoder.decode = MagicMock(side_effect=error)
    else:
        decoder.decode = MagicMock(return_value=record)
    return decoder


class TestIsValidTokenFormat:
    def test_cashu_a(self):
        assert is_valid_token_format("cashuAeyJ0b2tlbiI6W119")

    def test_cashu_b(self):
        assert is_valid_token_format(TOKEN)

    def test_padding_allowed(self):
        assert is_valid_token_format("cashuAeyJ0b2tlbiI6W119==")

    def test_unknown_version(self):
        assert not is_valid_token_format("cashuCeyJ0b2tlbiI6W119")

    def test_not_base64url(self):
        assert not is_valid_token_format("cashuA eyJ0b2tlbiI6W119")
        assert not is_valid_token_format("cashuA+/+/")

    def test_prefix_only(self):
        assert not is_valid_token_format("cashuA")

    def test_non_string(self):
        assert not is_valid_token_format(None)
        assert not is_valid_token_format(12345)


class TestTokenFingerprint:
    def test_stable(self):
        assert token_fingerprint(TOKEN) == token_fingerprint(TOKEN)

    def test_ignores_surrounding_whitespace(self):
        assert token_fingerprint(f"  {TOKEN}\n") == token_fingerprint(TOKEN)

    def test_does_not_contain_token(self):
        fp = token_fingerprint(TOKEN)
        assert len(fp) == 64
        assert TOKEN not in fp

    def test_differs_per_token(self):
        assert token_fingerprint(TOKEN) != token_fingerprint(TOKEN + "A")


class TestParseToken:
    def test_valid_token(self):
        record = make_record(16384, 4096, 512, 8)
        parsed = parse_token(TOKEN, make_decoder(record))
        assert parsed.total_amount == 21000
        assert parsed.num_proofs == 4
        assert parsed.mint_url == MINT_URL

    def test_strips_whitespace_before_decoding(self):
        decoder = make_decoder(make_record(8))
        parse_token(f"  {TOKEN} ", decoder)
        decoder.decode.assert_called_once_with(TOKEN)

    @pytest.mark.parametrize("raw", [None, "", "   ", 42, ["cashuA"]])
    def test_missing_or_non_string(self, raw):
        decoder = make_decoder(make_record(8))
        with pytest.raises(RedeemError) as exc_info:
            parse_token(raw, decoder)
        assert exc_info.value.kind == ErrorKind.INVALID_FORMAT
        decoder.decode.assert_not_called()

    def test_bad_grammar_never_reaches_decoder(self):
        decoder = make_decoder(make_record(8))
        with pytest.raises(RedeemError) as exc_info:
            parse_token("not-a-token", decoder)
        assert exc_info.value.kind == ErrorKind.INVALID_FORMAT
        decoder.decode.assert_not_called()

    def test_decoder_failure(self):
        decoder = make_decoder(error=ValueError("bad cbor"))
        with pytest.raises(RedeemError) as exc_info:
            parse_token(TOKEN, decoder)
        assert exc_info.value.kind == ErrorKind.DECODE_FAILURE
        assert "bad cbor" in exc_info.value.message

    def test_no_proofs(self):
        with pytest.raises(RedeemError) as exc_info:
            parse_token(TOKEN, make_decoder(make_record()))
        assert exc_info.value.kind == ErrorKind.EMPTY_VALUE

    def test_zero_total(self):
        with pytest.raises(RedeemError) as exc_info:
            parse_token(TOKEN, make_decoder(make_record(0, 0)))
        assert exc_info.value.kind == ErrorKind.EMPTY_VALUE
        assert exc_info.value.message == "Token has no value"

    def test_negative_proof(self):
        with pytest.raises(RedeemError) as exc_info:
            parse_token(TOKEN, make_decoder(make_record(8, -2)))
        assert exc_info.value.kind == ErrorKind.DECODE_FAILURE

    def test_non_integer_amount(self):
        record = make_record(8)
        record.proofs[0].amount = "8"
        with pytest.raises(RedeemError) as exc_info:
            parse_token(TOKEN, make_decoder(record))
        assert exc_info.value.kind == ErrorKind.DECODE_FAILURE

    @pytest.mark.parametrize("secret", [12345, None, ""])
    def test_bad_secret(self, secret):
        record = make_record(8)
        record.proofs[0].secret = secret
        with pytest.raises(RedeemError) as exc_info:
            parse_token(TOKEN, make_decoder(record))
        assert exc_info.value.kind == ErrorKind.DECODE_FAILURE

    @pytest.mark.parametrize("mint_url", [None, "", "  ", 42])
    def test_bad_mint_url(self, mint_url):
        record = make_record(8)
        record.mint_url = mint_url
        with pytest.raises(RedeemError) as exc_info:
            parse_token(TOKEN, make_decoder(record))
        assert exc_info.value.kind == ErrorKind.DECODE_FAILURE
        assert exc_info.value.message == "Token has no mint URL"


class TestTokenRecord:
    def test_summary(self):
        summary = make_record(16384, 4096, 512, 8).summary()
        assert summary == {
            "mint": MINT_URL,
            "totalAmount": 21000,
            "numProofs": 4,
            "denominations": [16384, 4096, 512, 8],
            "format": "cashuB",
            "unit": "sat",
        }

    def test_proof_wire_format(self):
        proof = Proof(amount=8, secret="s", id="00ab", C="02cd")
        assert proof.to_dict() == {"id": "00ab", "amount": 8, "secret": "s", "C": "02cd"}

    def test_proof_wire_format_with_witness(self):
        proof = Proof(amount=8, secret="s", id="00ab", C="02cd", witness='{"signatures":[]}')
        assert proof.to_dict()["witness"] == '{"signatures":[]}'
