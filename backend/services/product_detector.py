"""
Product Detector

Scans normalized receipt lines and emits one DetectedProduct per matched
(family, line).  The scan is a fold over the lines with an immutable
accumulator, so detect() is a pure function of its input.

Each physical line contributes at most one product per family, however many
rules match it; a line matching both families yields two independent
products under BundlePolicy.SPLIT or one bundle product under COMBINED.
On such a line each family reads its quantity only from its own side.
"""
import logging
import re
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from functools import reduce
from typing import Iterable, Optional

from services.policy import DEFAULT_POLICY, BundlePolicy, ScoringPolicy
from services.product_rules import (
    BUNDLE_DISPLAY_NAME,
    PRICE_RE,
    PRIMARY_DISPLAY_NAME,
    PRIMARY_QUANTITY_PATTERNS,
    PRIMARY_RULES,
    SECONDARY_DISPLAY_NAME,
    SECONDARY_LEADING_QUANTITY,
    SECONDARY_NAME_RE,
    SECONDARY_QUANTITY_PATTERNS,
    SECONDARY_RULES,
    MatchStrength,
    ProductFamily,
    ProductRule,
    first_match,
    is_disqualified,
)

logger = logging.getLogger("rewards.detect")

MIN_LINE_LENGTH = 3


@dataclass(frozen=True)
class DetectedProduct:
    family: ProductFamily
    display_name: str
    quantity: int
    source_line: str
    points_awarded: int
    confidence: int
    rule: str


@dataclass(frozen=True)
class _ScanState:
    products: tuple = ()
    seen: frozenset = frozenset()   # {(family, lowercased line)}


# ── Quantity extraction ───────────────────────────────────────────────────────

def _parse_price(raw: str) -> Optional[Decimal]:
    try:
        return Decimal(raw.replace(",", "."))
    except InvalidOperation:
        return None


def infer_quantity_from_prices(line: str, max_quantity: int) -> Optional[int]:
    """
    Last-resort quantity from a "unit price … line total" pair.

    Only the first two prices on the line are considered, and only when the
    second is an exact integer multiple (2..max_quantity) of the first.
    """
    prices = [_parse_price(p) for p in PRICE_RE.findall(line)]
    prices = [p for p in prices if p is not None]
    if len(prices) < 2:
        return None
    unit, line_total = prices[0], prices[1]
    if unit <= 0 or line_total <= unit:
        return None
    multiple, remainder = divmod(line_total, unit)
    if remainder != 0:
        return None
    multiple = int(multiple)
    if 2 <= multiple <= max_quantity:
        return multiple
    return None


def extract_quantity(
    line: str,
    patterns: Iterable,
    max_quantity: int,
    leading_pattern=None,
) -> int:
    """
    Try each quantity pattern in order; out-of-range values are discarded and
    the next pattern is tried.  Falls back to price inference only when no
    pattern matched anything at all, then to 1.
    """
    candidates = list(patterns)
    if leading_pattern is not None:
        candidates.insert(0, leading_pattern)

    any_marker = False
    for pattern in candidates:
        m = pattern.search(line)
        if not m or not m.group(1):
            continue
        any_marker = True
        qty = int(m.group(1))
        if 0 < qty <= max_quantity:
            return qty
        logger.debug("Discarding implausible quantity %d from %r", qty, line)

    if not any_marker:
        inferred = infer_quantity_from_prices(line, max_quantity)
        if inferred:
            logger.debug("Quantity %d inferred from prices on %r", inferred, line)
            return inferred
    return 1


# ── Per-family matchers ───────────────────────────────────────────────────────

def _confidence_for(rule: ProductRule, policy: ScoringPolicy) -> int:
    if rule.family is ProductFamily.PRIMARY:
        if rule.strength is MatchStrength.DIRECT:
            return policy.primary_direct_confidence
        return policy.primary_fuzzy_confidence
    if rule.strength is MatchStrength.DIRECT:
        return policy.secondary_direct_confidence
    return policy.secondary_fuzzy_confidence


def _gin_part(clean: str, gin: re.Match) -> str:
    """The side of a shared line that belongs to the gin."""
    tonic = SECONDARY_NAME_RE.search(clean, gin.start())
    if tonic is not None:
        return clean[:tonic.start()]
    earlier = [m.end() for m in SECONDARY_NAME_RE.finditer(clean, 0, gin.start())]
    return clean[earlier[-1]:] if earlier else clean


def _tonic_part(clean: str, gin: re.Match) -> str:
    """The side of a shared line that belongs to the tonic."""
    if SECONDARY_NAME_RE.search(clean, gin.end()):
        return clean[gin.end():]
    return clean[:gin.start()]


def _match_primary(
    clean: str, original: str, policy: ScoringPolicy, shares_line_with_secondary: bool
) -> Optional[DetectedProduct]:
    rule = first_match(PRIMARY_RULES, clean)
    if rule is None:
        return None
    text = _gin_part(clean, rule.pattern.search(clean)) if shares_line_with_secondary else clean
    qty = extract_quantity(text, PRIMARY_QUANTITY_PATTERNS, policy.max_primary_quantity)
    return DetectedProduct(
        family=ProductFamily.PRIMARY,
        display_name=PRIMARY_DISPLAY_NAME,
        quantity=qty,
        source_line=original,
        points_awarded=policy.primary_points * qty,
        confidence=_confidence_for(rule, policy),
        rule=f"primary:{rule.name}",
    )


def _match_secondary(
    clean: str, original: str, policy: ScoringPolicy, shares_line_with_primary: bool
) -> Optional[DetectedProduct]:
    rule = first_match(SECONDARY_RULES, clean)
    if rule is None:
        return None
    text, leading = clean, SECONDARY_LEADING_QUANTITY
    if shares_line_with_primary:
        gin = first_match(PRIMARY_RULES, clean)
        text, leading = _tonic_part(clean, gin.pattern.search(clean)), None
    qty = extract_quantity(
        text, SECONDARY_QUANTITY_PATTERNS, policy.max_secondary_quantity, leading_pattern=leading
    )
    return DetectedProduct(
        family=ProductFamily.SECONDARY,
        display_name=SECONDARY_DISPLAY_NAME,
        quantity=qty,
        source_line=original,
        points_awarded=policy.secondary_points * qty,
        confidence=_confidence_for(rule, policy),
        rule=f"secondary:{rule.name}",
    )


def _as_bundle(primary: DetectedProduct, secondary: DetectedProduct, policy: ScoringPolicy) -> DetectedProduct:
    return DetectedProduct(
        family=ProductFamily.BUNDLE,
        display_name=BUNDLE_DISPLAY_NAME,
        quantity=primary.quantity,
        source_line=primary.source_line,
        points_awarded=policy.bundle_points * primary.quantity,
        confidence=primary.confidence + secondary.confidence,
        rule=f"bundle:{primary.rule}+{secondary.rule}",
    )


# ── Fold ──────────────────────────────────────────────────────────────────────

def _scan_line(state: _ScanState, line: str, policy: ScoringPolicy) -> _ScanState:
    original = line.strip()
    clean = original.lower()
    if len(clean) < MIN_LINE_LENGTH:
        return state

    primary_key = (ProductFamily.PRIMARY, clean)
    secondary_key = (ProductFamily.SECONDARY, clean)
    seen = state.seen
    found: list[DetectedProduct] = []

    mentions_secondary = first_match(SECONDARY_RULES, clean) is not None
    primary = None
    primary_matched = False
    if primary_key not in seen:
        primary = _match_primary(clean, original, policy, shares_line_with_secondary=mentions_secondary)
        primary_matched = primary is not None
        if primary_matched:
            seen = seen | {primary_key}
            if is_disqualified(clean):
                logger.info("Skipping ineligible pack size: %r", original)
                primary = None

    secondary = None
    if secondary_key not in seen:
        secondary = _match_secondary(clean, original, policy, shares_line_with_primary=primary_matched)
        if secondary is not None:
            seen = seen | {secondary_key}

    if primary and secondary and policy.bundle_policy is BundlePolicy.COMBINED:
        found.append(_as_bundle(primary, secondary, policy))
    else:
        found.extend(p for p in (primary, secondary) if p is not None)

    for product in found:
        logger.debug(
            "%s detected: %dx on %r (%s, +%d pts)",
            product.family.value, product.quantity, original, product.rule, product.points_awarded,
        )

    if not found and seen is state.seen:
        return state
    return _ScanState(products=state.products + tuple(found), seen=seen)


def detect(lines: Iterable[str], policy: ScoringPolicy = DEFAULT_POLICY) -> tuple:
    """Return the ordered DetectedProduct tuple for the given lines."""
    final = reduce(lambda state, line: _scan_line(state, line, policy), lines, _ScanState())
    return final.products
