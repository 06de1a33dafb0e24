"""
Text Normalizer: cleans raw OCR / PDF text into a line-oriented view.

Steps, in order:
  1. CRLF / CR → LF, runs of 3+ spaces or tabs → one space
  2. Repair letter-spaced corruption ("B L O E D L E M O E N" → "BLOEDLEMOEN")
  3. Strip a leading run of email-to-PDF glyph garbage ("VGG GGG …") that
     precedes real text
  4. Split into trimmed, non-empty lines
  5. Re-split a single over-long line on receipt section keywords (email-to-PDF
     conversions often flatten the whole receipt onto one line)

normalize() is pure, never raises and is idempotent.
"""
import re
from dataclasses import dataclass

_HSPACE_RUN = re.compile(r"[ \t\f\v\u00a0]{3,}")
_LEADING_GLYPH_GARBAGE = re.compile(r"^(?:[VG]{3,}\s*)+(?=[^VG\s])")

# 3+ single letters of the same case separated by spaces/tabs
_SPACED_UPPER = re.compile(r"(?<![A-Za-z])(?:[A-Z][ \t]+){2,}[A-Z](?![A-Za-z])")
_SPACED_LOWER = re.compile(r"(?<![A-Za-z])(?:[a-z][ \t]+){2,}[a-z](?![A-Za-z])")
_HSPACE = re.compile(r"[ \t]+")

# Brand / product tokens that show up letter-spaced in mixed case
# ("F e v e r T r e e" survives the same-case rule as "F ever T ree").
KNOWN_TOKENS = [
    "Bloedlemoen",
    "Fever",
    "Tree",
    "Tonic",
    "Water",
    "Indian",
    "Elderflower",
    "Mediterranean",
]


def _spaced_token_re(token: str) -> re.Pattern:
    body = r"[ \t]*".join(re.escape(c) for c in token)
    return re.compile(rf"(?<![A-Za-z]){body}(?![A-Za-z])", re.IGNORECASE)


_KNOWN_TOKEN_RES = [(token, _spaced_token_re(token)) for token in KNOWN_TOKENS]

LONG_LINE_THRESHOLD = 200
SECTION_SPLIT_RE = re.compile(
    r"(?=\b(?:Subject:|From:|To:|ORDER\b|Thank you|Bloedlemoen|Fever[\s\-]*Tree"
    r"|Subtotal|Total\b|Customer information))",
    re.IGNORECASE,
)


@dataclass(frozen=True)
class NormalizedText:
    text: str
    lines: tuple


def clean_whitespace(raw: str) -> str:
    """Line-ending and horizontal whitespace cleanup only."""
    text = raw.replace("\r\n", "\n").replace("\r", "\n")
    return _HSPACE_RUN.sub(" ", text)


def strip_glyph_garbage(text: str) -> str:
    return _LEADING_GLYPH_GARBAGE.sub("", text.lstrip())


def repair_letter_spacing(text: str) -> str:
    """Collapse spaced-out words back together.

    Known brand tokens are repaired first when spelled with interleaved spaces
    in any case mix, then the general same-case rule collapses any other run
    of 3+ single letters.
    """
    for token, pattern in _KNOWN_TOKEN_RES:
        text = pattern.sub(
            lambda m, token=token: token if _HSPACE.search(m.group(0)) else m.group(0),
            text,
        )

    collapse = lambda m: _HSPACE.sub("", m.group(0))  # noqa: E731
    text = _SPACED_UPPER.sub(collapse, text)
    text = _SPACED_LOWER.sub(collapse, text)
    return text


def split_lines(text: str) -> list[str]:
    lines = [ln.strip() for ln in text.split("\n")]
    lines = [ln for ln in lines if ln]

    if len(lines) == 1 and len(lines[0]) > LONG_LINE_THRESHOLD:
        parts = [p.strip() for p in SECTION_SPLIT_RE.split(lines[0])]
        lines = [p for p in parts if p]
    return lines


def normalize(raw: str) -> NormalizedText:
    if not raw:
        return NormalizedText(text="", lines=())

    text = clean_whitespace(raw)
    text = repair_letter_spacing(text)
    text = strip_glyph_garbage(text)
    lines = tuple(split_lines(text))
    return NormalizedText(text="\n".join(lines), lines=lines)
