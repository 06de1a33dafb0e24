"""
Corruption Classifier

Decides whether extracted text is usable at all and, when it is not, which
failure mode it looks like.  The kind only selects the remediation message
shown to the user; it never affects scoring.
"""
import logging
import re
from dataclasses import dataclass
from typing import Optional

logger = logging.getLogger("rewards.corruption")

EMAIL_PDF_CORRUPTION = "email-pdf-corruption"
GLYPH_CORRUPTION = "glyph-corruption"
INSUFFICIENT_TEXT = "insufficient-text"

# ── Policy constants ──────────────────────────────────────────────────────────
MIN_WORD_DENSITY = 0.5          # readable words per 10 chars
SHORT_TEXT_LENGTH = 100
MAX_CORRUPTION_RATIO = 0.5
MIN_READABLE_WORDS = 3

# Stricter gate used to decide whether a PDF extraction method produced
# trustworthy text or the next method should be tried.
HIGH_CONFIDENCE_DENSITY = 1.0
HIGH_CONFIDENCE_MAX_CORRUPTION = 0.3
HIGH_CONFIDENCE_MIN_WORDS = 10

READABLE_WORD_RE = re.compile(r"\b[a-zA-Z]{3,}\b")
# Email-to-PDF conversions with unmapped fonts render glyphs as G/V triplets
GLYPH_TRIPLET_RE = re.compile(r"GGG|VGG")
GLYPH_RUN_RE = re.compile(r"[VG]{3,}")
ORDER_CONFIRMATION_RE = re.compile(
    r"order\s*(?:#|no\.?|number)?\s*:?\s*\d{3,}|order\s+confirm|confirmed", re.IGNORECASE
)
EMAIL_HEADER_RE = re.compile(r"\b(?:subject|from|to):", re.IGNORECASE)


@dataclass(frozen=True)
class CorruptionVerdict:
    usable: bool
    kind: Optional[str]
    readable_words: int
    word_density: float
    corruption_ratio: float

    def describe(self) -> str:
        return (
            f"{self.corruption_ratio * 100:.1f}% corrupted, "
            f"{self.readable_words} readable words found"
        )


def readable_word_count(text: str) -> int:
    return len(READABLE_WORD_RE.findall(text))


def word_density(text: str) -> float:
    return readable_word_count(text) / max(len(text) / 10, 1)


def corruption_ratio(text: str) -> float:
    if not text:
        return 0.0
    return len(GLYPH_TRIPLET_RE.findall(text)) * 3 / len(text)


def detect_corruption_kind(text: str) -> str:
    has_glyph_runs = GLYPH_RUN_RE.search(text) is not None
    if has_glyph_runs and ORDER_CONFIRMATION_RE.search(text) and EMAIL_HEADER_RE.search(text):
        return EMAIL_PDF_CORRUPTION
    if has_glyph_runs:
        return GLYPH_CORRUPTION
    return INSUFFICIENT_TEXT


def classify(text: str) -> CorruptionVerdict:
    words = readable_word_count(text)
    density = words / max(len(text) / 10, 1)
    ratio = corruption_ratio(text)

    unusable = (
        (density < MIN_WORD_DENSITY and len(text) < SHORT_TEXT_LENGTH)
        or ratio > MAX_CORRUPTION_RATIO
        or words < MIN_READABLE_WORDS
    )
    kind = detect_corruption_kind(text) if unusable else None

    logger.debug(
        "Text analysis: %d words, %d chars, density %.2f, corruption %.1f%% → %s",
        words, len(text), density, ratio * 100, kind or "usable",
    )
    return CorruptionVerdict(
        usable=not unusable,
        kind=kind,
        readable_words=words,
        word_density=density,
        corruption_ratio=ratio,
    )


def is_high_confidence(text: str) -> bool:
    """True when text is clean enough that no fallback extraction is needed."""
    words = readable_word_count(text)
    density = words / max(len(text) / 10, 1)
    return (
        density > HIGH_CONFIDENCE_DENSITY
        and corruption_ratio(text) < HIGH_CONFIDENCE_MAX_CORRUPTION
        and words > HIGH_CONFIDENCE_MIN_WORDS
    )
