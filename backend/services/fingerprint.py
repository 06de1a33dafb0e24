"""
Receipt fingerprinting for duplicate detection.

Two photos or PDF exports of the same physical receipt differ mostly in the
volatile fields (print time, till reference, auth codes) and in OCR noise
around them.  Those fields are stripped before hashing, and the canonical
total is folded back in so receipts with identical bodies but different
totals stay distinct.
"""
import hashlib
import re
from typing import Optional

_VOLATILE_PATTERNS = [
    # Reference-style identifiers with their label: "Ref: 12345", "Txn # A1B2", "Auth 0099"
    re.compile(
        r"\b(?:ref(?:erence)?|trans(?:action)?|txn|receipt|invoice|inv|auth(?:orisation|orization)?"
        r"|slip|till|order)\s*(?:no\.?|number|id|code)?\s*[:#]?\s*[a-z0-9\-/]*\d[a-z0-9\-/]*",
        re.IGNORECASE,
    ),
    # Dates: 12/05/2024, 2024-05-12, 12 May 2024
    re.compile(r"\b\d{1,2}[/\-.]\d{1,2}[/\-.]\d{2,4}\b"),
    re.compile(r"\b\d{4}[/\-.]\d{1,2}[/\-.]\d{1,2}\b"),
    re.compile(
        r"\b\d{1,2}\s+(?:jan|feb|mar|apr|may|jun|jul|aug|sep|oct|nov|dec)[a-z]*\.?\s+\d{2,4}\b",
        re.IGNORECASE,
    ),
    # Times: 14:32, 14:32:07, 2:32 PM
    re.compile(r"\b\d{1,2}:\d{2}(?::\d{2})?(?:\s*[ap]\.?m\.?)?\b", re.IGNORECASE),
]

_NON_ALNUM = re.compile(r"[^a-z0-9 ]+")
_SPACES = re.compile(r"\s+")
_AMOUNT_RE = re.compile(r"(\d+)[.,](\d{2})")


def canonical_amount(amount: Optional[str]) -> Optional[str]:
    """Canonical printed amount ("R 299,99" → "299.99"), or None if there is none."""
    if not amount:
        return None
    m = _AMOUNT_RE.search(amount)
    if not m:
        return None
    return f"{int(m.group(1))}.{m.group(2)}"


def stable_content(normalized_text: str) -> str:
    """The receipt text with volatile fields removed, lowercased and squashed."""
    text = normalized_text.lower()
    for pattern in _VOLATILE_PATTERNS:
        text = pattern.sub(" ", text)
    text = _NON_ALNUM.sub(" ", text)
    return _SPACES.sub(" ", text).strip()


def fingerprint(normalized_text: str, total_amount: Optional[str] = None) -> str:
    """SHA-256 hex digest identifying the physical receipt."""
    material = stable_content(normalized_text)
    amount = canonical_amount(total_amount)
    if amount:
        material = f"{material}|total={amount}"
    return hashlib.sha256(material.encode("utf-8")).hexdigest()
