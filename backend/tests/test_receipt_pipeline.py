"""
Tests for evaluate_submission: the path from extracted text to an accepted
receipt, and the two rejection outcomes before persistence.
"""
import pytest

from samples import BUNDLE_RECEIPT, NO_PRODUCT_RECEIPT, VALID_RECEIPT
from services.corruption import EMAIL_PDF_CORRUPTION, GLYPH_CORRUPTION, INSUFFICIENT_TEXT
from services.errors import CorruptionDetected, ValidationFailed
from services.fingerprint import fingerprint
from services.policy import BundlePolicy, ScoringPolicy
from services.receipt_pipeline import analyze_text, evaluate_submission, product_names
from services.text_extraction import ExtractedText, ExtractionConfidence, SourceMethod


def extracted(text, method=SourceMethod.TEXT_UPLOAD, confidence=ExtractionConfidence.HIGH):
    return ExtractedText(text=text, method=method, confidence=confidence)


class TestAccepted:

    def test_valid_receipt(self):
        accepted = evaluate_submission(extracted(VALID_RECEIPT))
        assert accepted.store_name == "Checkers"
        assert accepted.total_amount == "299.99"
        assert accepted.transaction_date == "14/03/2025"
        assert accepted.detected_product_names == ("Bloedlemoen Gin 750ml",)
        assert accepted.points_earned == 100
        assert accepted.source_method is SourceMethod.TEXT_UPLOAD

    def test_accepted_text_is_normalized(self):
        accepted = evaluate_submission(extracted(VALID_RECEIPT))
        assert "   " not in accepted.accepted_text
        assert accepted.accepted_text.splitlines()[0] == "CHECKERS HYPER"

    def test_fingerprint_covers_normalized_text_and_total(self):
        accepted = evaluate_submission(extracted(VALID_RECEIPT))
        assert accepted.fingerprint == fingerprint(accepted.accepted_text, "299.99")

    def test_source_method_is_carried(self):
        accepted = evaluate_submission(extracted(VALID_RECEIPT, method=SourceMethod.PDF_FALLBACK))
        assert accepted.source_method is SourceMethod.PDF_FALLBACK

    def test_low_confidence_extraction_can_still_pass(self):
        accepted = evaluate_submission(extracted(VALID_RECEIPT, confidence=ExtractionConfidence.LOW))
        assert accepted.points_earned == 100

    def test_leading_glyph_garbage_is_ignored(self):
        plain = evaluate_submission(extracted(VALID_RECEIPT))
        noisy = evaluate_submission(extracted("VGG GGG VGG " + VALID_RECEIPT))
        assert noisy.accepted_text == plain.accepted_text
        assert noisy.fingerprint == plain.fingerprint

    def test_mostly_glyph_text_is_rejected_even_with_a_product(self):
        text = "VGG " * 200 + "CHECKERS\nBloedlemoen Gin 750ml\nTOTAL 299.99\n12/05/2024"
        with pytest.raises(CorruptionDetected) as exc:
            evaluate_submission(extracted(text, method=SourceMethod.PDF_PRIMARY))
        assert exc.value.corruption_kind == GLYPH_CORRUPTION

    def test_bundle_split(self):
        accepted = evaluate_submission(extracted(BUNDLE_RECEIPT))
        assert accepted.points_earned == 150
        assert len(accepted.detected_product_names) == 2

    def test_bundle_combined(self):
        policy = ScoringPolicy(bundle_policy=BundlePolicy.COMBINED)
        accepted = evaluate_submission(extracted(BUNDLE_RECEIPT), policy)
        assert accepted.points_earned == 150
        assert accepted.detected_product_names == (
            "Bloedlemoen Gin 750ml + Fever-Tree Tonic Water (Pack of 4)",
        )


class TestCorrupted:

    def test_glyph_corruption(self):
        text = "Receipt " + "VGG GGG " * 40 + "Bloedlemoen"
        with pytest.raises(CorruptionDetected) as exc:
            evaluate_submission(extracted(text, method=SourceMethod.PDF_PRIMARY))
        assert exc.value.corruption_kind == GLYPH_CORRUPTION
        assert "corrupted" in exc.value.details

    def test_email_pdf_corruption(self):
        text = "Subject: Order #12345\n" + "VGG GGG " * 40
        with pytest.raises(CorruptionDetected) as exc:
            evaluate_submission(extracted(text, method=SourceMethod.PDF_PRIMARY))
        assert exc.value.corruption_kind == EMAIL_PDF_CORRUPTION
        assert "email" in exc.value.hint.lower()

    def test_insufficient_text(self):
        with pytest.raises(CorruptionDetected) as exc:
            evaluate_submission(extracted("12 34 56 gin"))
        assert exc.value.corruption_kind == INSUFFICIENT_TEXT

    def test_payload_shape(self):
        with pytest.raises(CorruptionDetected) as exc:
            evaluate_submission(extracted("12 34 56 gin"))
        payload = exc.value.to_payload()
        assert payload["error_kind"] == "corruption-detected"
        assert payload["remediation_hint"]
        assert exc.value.status_code == 422


class TestValidationFailed:

    def test_no_products(self):
        with pytest.raises(ValidationFailed) as exc:
            evaluate_submission(extracted(NO_PRODUCT_RECEIPT))
        assert "No participating products" in exc.value.details
        assert exc.value.confidence == 50

    def test_product_below_threshold(self):
        with pytest.raises(ValidationFailed) as exc:
            evaluate_submission(extracted("Indian Tonic Water\n12/03/2025"))
        assert "Confidence 30 is below the required 40" in exc.value.details
        assert "Store: not found" in exc.value.details


class TestHelpers:

    def test_product_names_show_quantity(self):
        _, analysis = analyze_text("2 x Bloedlemoen Gin\nFever Tree Tonic")
        assert product_names(analysis) == (
            "2x Bloedlemoen Gin 750ml",
            "Fever-Tree Tonic Water (Pack of 4)",
        )

    def test_analyze_text_has_no_usability_gate(self):
        normalized, analysis = analyze_text("12 34 56 gin")
        assert normalized.lines == ("12 34 56 gin",)
        assert not analysis.is_valid
