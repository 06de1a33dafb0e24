"""
Product rule table.

Each product family has an ordered list of (pattern, family, strength, name)
rules that are matched against a lowercased receipt line.  The first rule
that matches decides the match strength, so stronger forms come first.

Strength maps to a confidence increment from ScoringPolicy:
  direct: exact name or separator-tolerant spelling
  fuzzy:  misspellings, OCR letter confusions, truncations, generic phrasing

Quantity patterns are kept per family and are always anchored on that
family's own names so a number never leaks from one family to the other.
"""
import re
from dataclasses import dataclass
from enum import Enum


class ProductFamily(str, Enum):
    PRIMARY = "primary"
    SECONDARY = "secondary"
    BUNDLE = "bundle"


class MatchStrength(str, Enum):
    DIRECT = "direct"
    FUZZY = "fuzzy"


@dataclass(frozen=True)
class ProductRule:
    pattern: re.Pattern
    family: ProductFamily
    strength: MatchStrength
    name: str

    def matches(self, line: str) -> bool:
        return self.pattern.search(line) is not None


def _rule(regex: str, family: ProductFamily, strength: MatchStrength, name: str) -> ProductRule:
    return ProductRule(re.compile(regex, re.IGNORECASE), family, strength, name)


P, S = ProductFamily.PRIMARY, ProductFamily.SECONDARY
DIRECT, FUZZY = MatchStrength.DIRECT, MatchStrength.FUZZY

PRIMARY_DISPLAY_NAME = "Bloedlemoen Gin 750ml"
SECONDARY_DISPLAY_NAME = "Fever-Tree Tonic Water (Pack of 4)"
BUNDLE_DISPLAY_NAME = "Bloedlemoen Gin 750ml + Fever-Tree Tonic Water (Pack of 4)"

# ── Primary: Bloedlemoen gin ──────────────────────────────────────────────────
PRIMARY_RULES: list[ProductRule] = [
    _rule(r"bloedlemoen",                        P, DIRECT, "exact"),
    _rule(r"bloed[\s\-_./]+lemoen",              P, DIRECT, "separated"),
    _rule(r"bloedlemon",                         P, FUZZY,  "misspelt-lemon"),
    _rule(r"bloedlemoe",                         P, FUZZY,  "truncated-lemoe"),
    _rule(r"bloed[\s\-_./]*lemoe",               P, FUZZY,  "separated-truncated"),
    _rule(r"\bb[\s/\-.]*lemoen?\b",              P, FUZZY,  "abbreviated-b-lemoen"),
    _rule(r"b[l1i|][o0]e?d[\s\-]*l[e3]m[o0][e3]n?", P, FUZZY, "ocr-confusion"),
    _rule(r"\bbl[o0]edl",                        P, FUZZY,  "truncated-bloedl"),
]

# Pack sizes that are not eligible for points
PRIMARY_DISQUALIFIERS = [
    re.compile(r"\b50\s*ml\b", re.IGNORECASE),
]

_PRIMARY_NAME = r"(?:bloedlemoen|bloedlemoe|bloedlemon|bloed[\s\-]*lemoen|b[\s/\-.]*lemoen)"

PRIMARY_QUANTITY_PATTERNS: list[re.Pattern] = [
    re.compile(r"^(\d+)\s"),                                   # "2 BLOEDLEMOEN …"
    re.compile(r"\bqty[:\s]*(\d+)", re.IGNORECASE),            # "Qty 2", "QTY: 2"
    re.compile(r"\bquantity[:\s]*(\d+)", re.IGNORECASE),       # "Quantity 2"
    re.compile(rf"(\d+)\s*[x×*]\s*{_PRIMARY_NAME}", re.IGNORECASE),         # "2x Bloedlemoen"
    re.compile(rf"(\d+)\s+{_PRIMARY_NAME}", re.IGNORECASE),                 # "2 Bloedlemoen"
    re.compile(rf"{_PRIMARY_NAME}.*?\s[x×*]\s*(\d+)\b", re.IGNORECASE),     # "Bloedlemoen x2"
    re.compile(rf"(\d+)\s*bottles?\s*{_PRIMARY_NAME}", re.IGNORECASE),      # "2 bottles Bloedlemoen"
    re.compile(rf"{_PRIMARY_NAME}.*?(\d+)\s*bottles?", re.IGNORECASE),      # "Bloedlemoen 2 bottles"
]

# ── Secondary: Fever-Tree tonic ───────────────────────────────────────────────
SECONDARY_RULES: list[ProductRule] = [
    _rule(r"fever[\s\-]*tree",                   S, DIRECT, "exact"),
    _rule(r"f[o0]ver[\s\-]*tr[e0o][e0o]",        S, FUZZY,  "ocr-confusion"),
    _rule(r"f[eo]vertr[o0]",                     S, FUZZY,  "ocr-truncated"),
    _rule(r"fever.*tonic|tonic.*fever",          S, FUZZY,  "fever-tonic"),
    _rule(r"tree.*tonic",                        S, FUZZY,  "tree-tonic"),
    _rule(r"tonic[\s\-]*water|water.*tonic",     S, FUZZY,  "tonic-water"),
    _rule(r"\b200\s*ml\b.*tonic",                S, FUZZY,  "can-size-tonic"),
    _rule(r"tonic.*(?:\b4\s*[x×]|[x×]\s*4\b|\b4\s*pk\b|pack\s*of\s*4)", S, FUZZY, "four-pack-tonic"),
]

_SECONDARY_NAME = r"(?:fever[\s\-]*tree|fevertree|tonic)"

SECONDARY_QUANTITY_PATTERNS: list[re.Pattern] = [
    re.compile(rf"(\d+)\s*[x×*]\s*{_SECONDARY_NAME}", re.IGNORECASE),        # "2 x Fever Tree"
    re.compile(rf"(\d+)\s*(?:packs?|pk)\s+(?:of\s+)?{_SECONDARY_NAME}", re.IGNORECASE),  # "2 packs Fever Tree"
    re.compile(rf"{_SECONDARY_NAME}.*?(?<!ml)\s[x×*]\s*(\d+)\b(?!\s*(?:ml|x))", re.IGNORECASE),  # "Fever Tree … x 2", not "200ml x 4"
    re.compile(rf"{_SECONDARY_NAME}.*?\bqty[:\s]*(\d+)", re.IGNORECASE),    # "Fever Tree Qty 2"
]

# Where the tonic part of a shared line begins; the gin quantity is read
# from the other side of it
SECONDARY_NAME_RE = re.compile(r"f[eo0]ver[\s\-]*tr|f[eo]vertr|tonic")

# Only trusted on lines that did not match the primary family
SECONDARY_LEADING_QUANTITY = re.compile(r"^(\d+)\s+(?![x×*]\s*\d)")

PRICE_RE = re.compile(r"(?<![\d.,])(\d{1,6}[.,]\d{2})(?![\d])")


def first_match(rules: list[ProductRule], line: str):
    """Return the first rule in table order that matches line, or None."""
    for rule in rules:
        if rule.matches(line):
            return rule
    return None


def is_disqualified(line: str) -> bool:
    return any(p.search(line) for p in PRIMARY_DISQUALIFIERS)
