"""
Receipt pipeline: everything between raw extracted text and an accepted
receipt ready for persistence.

    classify → normalize → detect → score → fingerprint

Pure and synchronous; failures are raised as SubmissionError subclasses.
"""
import logging
from dataclasses import dataclass
from typing import Optional

from services import corruption, normalizer, product_detector, receipt_scorer
from services.errors import CorruptionDetected, ValidationFailed
from services.fingerprint import fingerprint
from services.policy import DEFAULT_POLICY, ScoringPolicy
from services.receipt_scorer import ReceiptAnalysis
from services.text_extraction import ExtractedText, SourceMethod

logger = logging.getLogger("rewards.pipeline")


@dataclass(frozen=True)
class AcceptedReceipt:
    accepted_text: str
    source_method: SourceMethod
    store_name: Optional[str]
    total_amount: Optional[str]
    transaction_date: Optional[str]
    detected_product_names: tuple
    points_earned: int
    fingerprint: str
    analysis: ReceiptAnalysis


def analyze_text(raw_text: str, policy: ScoringPolicy = DEFAULT_POLICY) -> tuple:
    """
    Normalize, detect and score without any usability gate.
    Returns (NormalizedText, ReceiptAnalysis).
    """
    normalized = normalizer.normalize(raw_text)
    products = product_detector.detect(normalized.lines, policy)
    analysis = receipt_scorer.score(normalized.lines, products, policy)
    return normalized, analysis


def product_names(analysis: ReceiptAnalysis) -> tuple:
    return tuple(
        f"{p.quantity}x {p.display_name}" if p.quantity > 1 else p.display_name
        for p in analysis.products
    )


def _validation_details(analysis: ReceiptAnalysis, policy: ScoringPolicy) -> str:
    if not analysis.products:
        return "No participating products were found on the receipt."
    return (
        f"Confidence {analysis.confidence_score} is below the required {policy.min_confidence}. "
        f"Store: {analysis.store_name or 'not found'}, "
        f"total: {analysis.total_amount or 'not found'}, "
        f"date: {analysis.transaction_date or 'not found'}."
    )


def evaluate_submission(extracted: ExtractedText, policy: ScoringPolicy = DEFAULT_POLICY) -> AcceptedReceipt:
    """
    Run the detection pipeline on extracted text.

    Raises CorruptionDetected when the text is unusable and ValidationFailed
    when it is usable but not a qualifying receipt.
    """
    # Judged before glyph stripping so mostly-garbage text cannot pass the gate
    verdict = corruption.classify(normalizer.clean_whitespace(extracted.text))
    if not verdict.usable:
        kind = corruption.detect_corruption_kind(extracted.text)
        logger.info(
            "Rejecting %s text as %s (%s; attempts: %s)",
            extracted.method.value, kind, verdict.describe(), ", ".join(extracted.attempts) or "none",
        )
        raise CorruptionDetected(kind, details=verdict.describe())

    normalized = normalizer.normalize(extracted.text)

    products = product_detector.detect(normalized.lines, policy)
    analysis = receipt_scorer.score(normalized.lines, products, policy)
    logger.info(
        "Analysis: valid=%s confidence=%d store=%s bottles=%d packs=%d total=%s",
        analysis.is_valid, analysis.confidence_score, analysis.store_name,
        analysis.total_bottle_count, analysis.total_pack_count, analysis.total_amount,
    )

    if not analysis.is_valid:
        raise ValidationFailed(_validation_details(analysis, policy), confidence=analysis.confidence_score)

    return AcceptedReceipt(
        accepted_text=normalized.text,
        source_method=extracted.method,
        store_name=analysis.store_name,
        total_amount=analysis.total_amount,
        transaction_date=analysis.transaction_date,
        detected_product_names=product_names(analysis),
        points_earned=receipt_scorer.award(analysis),
        fingerprint=fingerprint(normalized.text, analysis.total_amount),
        analysis=analysis,
    )
