"""
Receipt Validator & Confidence Scorer

Aggregates independent signals into one integer confidence score:

  store name   first allow-listed retailer found in the text
  total        first line matching a total / amount pattern
  date         first line matching a date pattern
  products     the per-product confidence assigned by the detector

A receipt is accepted only when the score reaches the policy minimum AND at
least one bottle or pack was detected.  Everything here is pure.
"""
import re
from dataclasses import dataclass
from typing import Iterable, Optional

from services.policy import DEFAULT_POLICY, ScoringPolicy
from services.product_detector import DetectedProduct
from services.product_rules import ProductFamily

# Participating retailers → canonical display name.  Matched case-insensitively
# against the whole receipt text, in this order; the first hit wins.
KNOWN_STORES: list[tuple[str, str]] = [
    # keyword                canonical name
    ("makro",                "Makro"),
    ("shoprite",             "Shoprite"),
    ("checkers",             "Checkers"),
    ("pick n pay",           "Pick n Pay"),
    ("woolworths",           "Woolworths"),
    ("spar",                 "Spar"),
    ("liquor city",          "Liquor City"),
    ("tops",                 "Tops"),
    ("ultra liquors",        "Ultra Liquors"),
    ("norman goodfellows",   "Norman Goodfellows"),
    ("wine route",           "Wine Route"),
    ("clicks",               "Clicks"),
    ("dischem",              "Dis-Chem"),
    ("game",                 "Game"),
    ("builders warehouse",   "Builders Warehouse"),
    ("bottle store",         "Bottle Store"),
    ("liquor store",         "Liquor Store"),
    ("wine shop",            "Wine Shop"),
    ("spirit store",         "Spirit Store"),
]

TOTAL_PATTERNS = [
    re.compile(r"total[:\s]+r?[\s]*(\d+[.,]\d{2})", re.IGNORECASE),
    re.compile(r"amount[:\s]+r?[\s]*(\d+[.,]\d{2})", re.IGNORECASE),
    re.compile(r"^r[\s]*(\d+[.,]\d{2})$", re.IGNORECASE),
    re.compile(r"(\d+[.,]\d{2})[*\s]*total", re.IGNORECASE),
]

_MONTHS = r"(?:jan|feb|mar|apr|may|jun|jul|aug|sep|oct|nov|dec)[a-z]*"
DATE_PATTERNS = [
    re.compile(r"(?<!\d)(\d{1,2}[/\-.]\d{1,2}[/\-.]\d{2,4})"),
    re.compile(rf"(\d{{1,2}}\s+{_MONTHS}\s+\d{{2,4}})", re.IGNORECASE),
    re.compile(r"(\d{4}[/\-.]\d{1,2}[/\-.]\d{1,2})"),
]


@dataclass(frozen=True)
class ReceiptAnalysis:
    is_valid: bool
    store_name: Optional[str]
    products: tuple
    total_bottle_count: int
    total_pack_count: int
    total_amount: Optional[str]
    transaction_date: Optional[str]
    confidence_score: int


def detect_store(text: str) -> Optional[str]:
    lower = text.lower()
    for keyword, name in KNOWN_STORES:
        if keyword in lower:
            return name
    return None


def _first_capture(lines: Iterable[str], patterns) -> Optional[str]:
    for line in lines:
        stripped = line.strip()
        for pattern in patterns:
            m = pattern.search(stripped)
            if m:
                return m.group(1)
    return None


def find_total(lines: Iterable[str]) -> Optional[str]:
    """First total/amount on the receipt, as printed ("299,99" stays "299,99")."""
    return _first_capture(lines, TOTAL_PATTERNS)


def find_date(lines: Iterable[str]) -> Optional[str]:
    return _first_capture(lines, DATE_PATTERNS)


def count_units(products: Iterable[DetectedProduct]) -> tuple[int, int]:
    """(bottles, packs).  A combined bundle item counts toward both."""
    bottles = packs = 0
    for p in products:
        if p.family in (ProductFamily.PRIMARY, ProductFamily.BUNDLE):
            bottles += p.quantity
        if p.family in (ProductFamily.SECONDARY, ProductFamily.BUNDLE):
            packs += p.quantity
    return bottles, packs


def is_valid(confidence: int, bottles: int, packs: int, policy: ScoringPolicy = DEFAULT_POLICY) -> bool:
    return confidence >= policy.min_confidence and (bottles > 0 or packs > 0)


def score(
    lines: Iterable[str],
    products: Iterable[DetectedProduct],
    policy: ScoringPolicy = DEFAULT_POLICY,
) -> ReceiptAnalysis:
    lines = tuple(lines)
    products = tuple(products)
    confidence = 0

    store_name = detect_store("\n".join(lines))
    if store_name:
        confidence += policy.store_confidence

    total_amount = find_total(lines)
    if total_amount:
        confidence += policy.total_confidence

    transaction_date = find_date(lines)
    if transaction_date:
        confidence += policy.date_confidence

    confidence += sum(p.confidence for p in products)
    bottles, packs = count_units(products)

    return ReceiptAnalysis(
        is_valid=is_valid(confidence, bottles, packs, policy),
        store_name=store_name,
        products=products,
        total_bottle_count=bottles,
        total_pack_count=packs,
        total_amount=total_amount,
        transaction_date=transaction_date,
        confidence_score=confidence,
    )


def award(analysis: ReceiptAnalysis) -> int:
    """Points for an analysis: the plain sum of per-product points."""
    return sum(p.points_awarded for p in analysis.products)
