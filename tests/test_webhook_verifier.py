import hashlib
import hmac
from unittest.mock import patch

import pytest

from junicore.service.webhooks import CheckrSignatureVerifier, StripeSignatureVerifier

SECRET = "whsec_unit_secret"
BODY = b'{"id":"evt_1","type":"invoice.payment_succeeded"}'
NOW = 1_700_000_000


def _hex(secret: str, message: bytes) -> str:
    return hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()


def _flip_last_hex_digit(value: str) -> str:
    return value[:-1] + ("0" if value[-1] != "0" else "1")


class TestCheckr:
    def setup_method(self):
        self.verifier = CheckrSignatureVerifier()

    def test_valid_signature(self):
        assert self.verifier.verify(BODY, _hex(SECRET, BODY), SECRET)

    def test_uppercase_hex_accepted(self):
        assert self.verifier.verify(BODY, _hex(SECRET, BODY).upper(), SECRET)

    def test_single_bit_change_in_body_fails(self):
        signature = _hex(SECRET, BODY)
        tampered = bytes([BODY[0] ^ 0x01]) + BODY[1:]
        assert not self.verifier.verify(tampered, signature, SECRET)

    def test_altered_signature_fails(self):
        assert not self.verifier.verify(BODY, _flip_last_hex_digit(_hex(SECRET, BODY)), SECRET)

    def test_missing_header_fails(self):
        assert not self.verifier.verify(BODY, None, SECRET)
        assert not self.verifier.verify(BODY, "", SECRET)

    def test_wrong_secret_fails(self):
        assert not self.verifier.verify(BODY, _hex("other-secret", BODY), SECRET)

    def test_unset_secret_never_verifies(self):
        with patch("junicore.service.webhooks.logger") as mock_logger:
            assert not self.verifier.verify(BODY, _hex("", BODY), None)
            assert not self.verifier.verify(BODY, _hex("", BODY), "")
        assert mock_logger.warning.call_args.args[0] == "webhook_secret_unset"

    def test_non_ascii_header_is_rejected_not_raised(self):
        assert not self.verifier.verify(BODY, "ü" * 64, SECRET)


class TestStripe:
    def setup_method(self):
        self.verifier = StripeSignatureVerifier(300, clock=lambda: NOW)

    def test_valid_signature(self):
        header = StripeSignatureVerifier.sign(BODY, SECRET, NOW)
        assert self.verifier.verify(BODY, header, SECRET)

    def test_signed_message_includes_timestamp(self):
        expected = _hex(SECRET, f"{NOW}.".encode() + BODY)
        assert self.verifier.verify(BODY, f"t={NOW},v1={expected}", SECRET)

    def test_any_of_several_v1_entries_may_match(self):
        good = _hex(SECRET, f"{NOW}.".encode() + BODY)
        header = f"t={NOW},v1={'0' * 64},v0=ignored,v1={good}"
        assert self.verifier.verify(BODY, header, SECRET)

    def test_body_tamper_fails(self):
        header = StripeSignatureVerifier.sign(BODY, SECRET, NOW)
        assert not self.verifier.verify(BODY + b" ", header, SECRET)

    def test_timestamp_swap_fails(self):
        signature = _hex(SECRET, f"{NOW}.".encode() + BODY)
        assert not self.verifier.verify(BODY, f"t={NOW - 1},v1={signature}", SECRET)

    @pytest.mark.parametrize("skew", [301, -301, 3600])
    def test_timestamp_outside_tolerance_fails(self, skew):
        header = StripeSignatureVerifier.sign(BODY, SECRET, NOW - skew)
        with patch("junicore.service.webhooks.logger") as mock_logger:
            assert not self.verifier.verify(BODY, header, SECRET)
        assert mock_logger.info.call_args.args[0] == "webhook_timestamp_outside_tolerance"

    def test_timestamp_at_tolerance_edge_passes(self):
        header = StripeSignatureVerifier.sign(BODY, SECRET, NOW - 300)
        assert self.verifier.verify(BODY, header, SECRET)

    @pytest.mark.parametrize(
        "header",
        [
            "garbage",
            "t=notanumber,v1=abc",
            f"v1={'a' * 64}",
            f"t={NOW}",
            f"t={NOW},v0={'a' * 64}",
        ],
    )
    def test_malformed_header_fails(self, header):
        assert not self.verifier.verify(BODY, header, SECRET)

    def test_unset_secret_never_verifies(self):
        header = StripeSignatureVerifier.sign(BODY, "", NOW)
        assert not self.verifier.verify(BODY, header, None)

    def test_parse_header_collects_every_v1(self):
        timestamp, signatures = StripeSignatureVerifier.parse_header(
            f"t={NOW}, v1=AAA, v1=bbb"
        )
        assert timestamp == NOW
        assert signatures == ["aaa", "bbb"]
