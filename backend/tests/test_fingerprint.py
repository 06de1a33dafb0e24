"""
Tests for receipt fingerprinting: stability under volatile-field noise and
discrimination between genuinely different receipts.
"""
import pytest

from samples import BUNDLE_RECEIPT, NO_PRODUCT_RECEIPT, VALID_RECEIPT, VALID_RECEIPT_RESCAN
from services.fingerprint import canonical_amount, fingerprint, stable_content
from services.normalizer import normalize


def fp(raw, total=None):
    return fingerprint(normalize(raw).text, total)


class TestStableContent:

    @pytest.mark.parametrize("noise", [
        "14/03/2025",
        "2025-03-14",
        "14 March 2025",
        "14:32",
        "2:32 PM",
        "Ref: 88231",
        "Transaction # A1B2C3",
        "Receipt No. 000123",
        "Invoice INV-2025-0042",
        "Auth code 773311",
        "Till 04",
    ])
    def test_volatile_fields_removed(self, noise):
        assert stable_content(f"Checkers\n{noise}\nBloedlemoen Gin") == "checkers bloedlemoen gin"

    def test_case_and_punctuation_ignored(self):
        assert stable_content("CHECKERS -- Hyper!") == stable_content("checkers hyper")

    def test_product_prices_are_kept(self):
        assert "299 99" in stable_content("Bloedlemoen Gin 299.99")


class TestCanonicalAmount:

    @pytest.mark.parametrize("raw, expected", [
        ("299.99", "299.99"),
        ("299,99", "299.99"),
        ("R 299,99", "299.99"),
        ("0299.99", "299.99"),
        (None, None),
        ("", None),
        ("n/a", None),
    ])
    def test_canonical(self, raw, expected):
        assert canonical_amount(raw) == expected


class TestFingerprint:

    def test_is_sha256_hex(self):
        value = fp(VALID_RECEIPT, "299.99")
        assert len(value) == 64
        int(value, 16)

    def test_rescan_of_same_receipt_matches(self):
        assert fp(VALID_RECEIPT, "299.99") == fp(VALID_RECEIPT_RESCAN, "299.99")

    def test_whitespace_noise_matches(self):
        noisy = VALID_RECEIPT.replace("\n", "\r\n").replace("CHECKERS HYPER", "CHECKERS     HYPER")
        assert fp(noisy, "299.99") == fp(VALID_RECEIPT, "299.99")

    def test_amount_format_does_not_matter(self):
        assert fp(VALID_RECEIPT, "299.99") == fp(VALID_RECEIPT, "R 299,99")

    def test_amount_salts_the_hash(self):
        assert fp(VALID_RECEIPT, "299.99") != fp(VALID_RECEIPT, "199.99")
        assert fp(VALID_RECEIPT) != fp(VALID_RECEIPT, "299.99")

    def test_different_receipts_do_not_collide(self):
        values = {
            fp(VALID_RECEIPT, "299.99"),
            fp(BUNDLE_RECEIPT, "299,99"),
            fp(NO_PRODUCT_RECEIPT, "141.98"),
            fp(VALID_RECEIPT.replace("CHECKERS", "SHOPRITE"), "299.99"),
            fp(VALID_RECEIPT.replace("BLOEDLEMOEN GIN 750ML", "2 x BLOEDLEMOEN GIN 750ML"), "299.99"),
        }
        assert len(values) == 5

    def test_deterministic(self):
        assert fp(BUNDLE_RECEIPT, "299,99") == fp(BUNDLE_RECEIPT, "299,99")
