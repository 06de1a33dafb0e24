"""
Text Acquisition: turns an uploaded receipt file into raw text.

Images go through Tesseract (with the band-inversion preprocessing that copes
with dark till-slip headers).  When the OCR output is not clean enough and
ANTHROPIC_API_KEY is set, Claude Vision transcribes the image instead.

PDFs are read with pdfplumber first.  If that text fails the readability gate
(services/corruption.is_high_confidence) pypdf is tried as a fallback.  When
neither gives clean text the best attempt is still returned, tagged low
confidence, so the corruption classifier can explain what went wrong.

Plain-text uploads (a receipt copied out of an email) are decoded as-is.

All blocking work runs in a worker thread under EXTRACTION_TIMEOUT_S.
"""
import asyncio
import base64
import io
import logging
import os
import re
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Optional

import pdfplumber
from pypdf import PdfReader

from services.corruption import is_high_confidence
from services.errors import ExtractionFailure

logger = logging.getLogger("rewards.extract")

try:
    import pytesseract
    from PIL import Image, ImageEnhance, ImageFilter, ImageOps
    OCR_AVAILABLE = True
except ImportError:
    OCR_AVAILABLE = False
    logger.warning("pytesseract/Pillow not available — image receipts disabled")

# Register HEIC/HEIF support via pillow-heif if available
try:
    from pillow_heif import register_heif_opener
    register_heif_opener()
    HEIF_AVAILABLE = True
except ImportError:
    HEIF_AVAILABLE = False
    logger.info("pillow-heif not installed — HEIC files will not be supported")

EXTRACTION_TIMEOUT_S = float(os.environ.get("EXTRACTION_TIMEOUT_S", "60"))
TESSERACT_CMD = os.environ.get("TESSERACT_CMD", "")
VISION_MODEL = os.environ.get("VISION_MODEL", "claude-sonnet-4-5")

if OCR_AVAILABLE and TESSERACT_CMD:
    pytesseract.pytesseract.tesseract_cmd = TESSERACT_CMD

# Minimum cleaned length for the pypdf fallback to be accepted on its own
FALLBACK_MIN_LENGTH = 100

IMAGE_EXTENSIONS = {".jpg", ".jpeg", ".png", ".webp", ".heic", ".heif", ".tif", ".tiff", ".bmp", ".gif"}
TEXT_EXTENSIONS = {".txt", ".text", ".eml"}


class SourceMethod(str, Enum):
    OCR = "ocr"
    OCR_VISION = "ocr-vision"
    PDF_PRIMARY = "pdf-primary"
    PDF_FALLBACK = "pdf-fallback"
    TEXT_UPLOAD = "text-upload"


class ExtractionConfidence(str, Enum):
    HIGH = "high"
    LOW = "low"


@dataclass(frozen=True)
class ExtractedText:
    text: str
    method: SourceMethod
    confidence: ExtractionConfidence
    attempts: tuple = ()


def _confidence_of(text: str) -> ExtractionConfidence:
    return ExtractionConfidence.HIGH if is_high_confidence(text) else ExtractionConfidence.LOW


def detect_category(filename: str = "", content_type: str = "", declared: Optional[str] = None) -> str:
    """Resolve an upload to "image", "pdf" or "text"."""
    if declared:
        declared = declared.strip().lower()
        if declared in ("image", "pdf", "text"):
            return declared

    ext = Path(filename or "").suffix.lower()
    ctype = (content_type or "").lower()
    if ext == ".pdf" or ctype == "application/pdf":
        return "pdf"
    if ext in TEXT_EXTENSIONS or ctype.startswith("text/"):
        return "text"
    if ext in IMAGE_EXTENSIONS or ctype.startswith("image/"):
        return "image"
    raise ExtractionFailure(
        "Unsupported file type",
        details=f"Cannot read '{filename or 'upload'}' ({content_type or 'unknown type'}). "
                "Upload a photo, a PDF or a .txt copy of the receipt.",
    )


# ── Images ────────────────────────────────────────────────────────────────────

def preprocess_image(image: "Image.Image") -> "Image.Image":
    """
    Improve OCR accuracy by preprocessing the receipt image:
    - Convert to grayscale
    - Upscale if small
    - Invert dark-background bands (white-on-black headers and totals)
    - Enhance contrast and sharpen
    """
    import numpy as np

    img = image.convert("L")

    w, h = img.size
    if w < 800:
        scale = 800 / w
        img = img.resize((int(w * scale), int(h * scale)), Image.LANCZOS)

    # Scan in ~40 horizontal bands; a band averaging below 80 is mostly dark,
    # so invert it to give Tesseract black-on-white text.
    arr = np.array(img)
    band_height = max(1, arr.shape[0] // 40)
    for y in range(0, arr.shape[0], band_height):
        band = arr[y:y + band_height, :]
        if band.mean() < 80:
            arr[y:y + band_height, :] = 255 - band
    img = Image.fromarray(arr)

    img = ImageEnhance.Contrast(img).enhance(2.0)
    img = img.filter(ImageFilter.SHARPEN)
    return img


def _open_image(image_bytes: bytes) -> "Image.Image":
    try:
        image = Image.open(io.BytesIO(image_bytes))
    except Exception as e:
        msg = str(e)
        if not HEIF_AVAILABLE and any(k in msg.lower() for k in ("heif", "heic", "cannot identify")):
            raise RuntimeError("HEIC/HEIF files require pillow-heif") from e
        raise RuntimeError(f"Cannot open image: {msg}") from e
    image = ImageOps.exif_transpose(image)
    # HEIF/palette/CMYK modes → RGB for Tesseract compatibility
    if image.mode not in ("RGB", "L", "RGBA"):
        image = image.convert("RGB")
    return image


def extract_text_from_image(image_bytes: bytes) -> str:
    """Run Tesseract on image bytes and return the raw text."""
    if not OCR_AVAILABLE:
        raise RuntimeError("OCR dependencies not installed (pytesseract, Pillow)")

    processed = preprocess_image(_open_image(image_bytes))
    text = pytesseract.image_to_string(processed, config="--psm 6")
    return text.strip()


def _prepare_image_for_vision(image_bytes: bytes) -> tuple[bytes, str]:
    """
    Resize + re-encode an image to fit Claude Vision limits (long side ≤ 1568px,
    JPEG quality 92 to keep small receipt print legible).
    """
    if not OCR_AVAILABLE:
        return image_bytes, "image/jpeg"

    img = _open_image(image_bytes)
    if img.mode not in ("RGB", "L"):
        img = img.convert("RGB")

    max_dim = 1568
    w, h = img.size
    long_side = max(w, h)
    if long_side > max_dim:
        scale = max_dim / long_side
        img = img.resize((int(w * scale), int(h * scale)), Image.LANCZOS)
        logger.debug("Resized image %d×%d → %d×%d", w, h, img.size[0], img.size[1])

    buf = io.BytesIO()
    img.save(buf, format="JPEG", quality=92, optimize=True)
    compressed = buf.getvalue()
    logger.debug("Image size: %d KB → %d KB", len(image_bytes) // 1024, len(compressed) // 1024)
    return compressed, "image/jpeg"


VISION_PROMPT = """Transcribe this till slip / receipt exactly as printed, line by line, top to bottom.

Rules:
- One printed line per output line, in the original order.
- Copy product names, quantities, prices, totals, dates and the store name verbatim.
  Do NOT expand abbreviations, correct spelling or translate.
- Keep quantity markers such as "2 x", "QTY 2" or "@" exactly where they appear.
- Skip barcodes and decorative characters.
- Output ONLY the transcribed text: no commentary, no markdown."""

_FENCE_START = re.compile(r"^```[a-z]*\n?")
_FENCE_END = re.compile(r"\n?```$")


async def transcribe_with_vision(image_bytes: bytes) -> Optional[str]:
    """
    Ask Claude Vision for a verbatim transcription of the receipt image.
    Returns None when no API key is configured.  API errors propagate to the
    caller, which records them as a failed attempt.
    """
    api_key = os.environ.get("ANTHROPIC_API_KEY", "")
    if not api_key:
        return None

    vision_bytes, media_type = await asyncio.to_thread(_prepare_image_for_vision, image_bytes)
    b64 = base64.standard_b64encode(vision_bytes).decode()
    logger.info("Sending %d KB b64 (%s) to Claude Vision", len(b64) // 1024, media_type)

    import anthropic
    client = anthropic.AsyncAnthropic(api_key=api_key)
    message = await client.messages.create(
        model=VISION_MODEL,
        max_tokens=4096,
        messages=[{
            "role": "user",
            "content": [
                {
                    "type": "image",
                    "source": {"type": "base64", "media_type": media_type, "data": b64},
                },
                {"type": "text", "text": VISION_PROMPT},
            ],
        }],
    )
    raw = message.content[0].text.strip()
    raw = _FENCE_START.sub("", raw)
    raw = _FENCE_END.sub("", raw)
    return raw.strip()


async def _acquire_image(content: bytes) -> ExtractedText:
    attempts: list[str] = []
    ocr_text = ""
    try:
        ocr_text = await asyncio.to_thread(extract_text_from_image, content)
    except (RuntimeError, OSError) as e:
        logger.warning("Tesseract failed: %s", e)
        attempts.append(f"ocr-error: {e}")
    else:
        logger.info("Tesseract extracted %d chars", len(ocr_text))
        if ocr_text and is_high_confidence(ocr_text):
            return ExtractedText(ocr_text, SourceMethod.OCR, ExtractionConfidence.HIGH, tuple(attempts))
        attempts.append("ocr-unreadable" if ocr_text else "ocr-empty")

    try:
        vision_text = await transcribe_with_vision(content)
    except Exception as e:
        logger.warning("Claude Vision transcription failed: %s", e)
        attempts.append(f"ocr-vision-error: {e}")
        vision_text = None

    if vision_text:
        logger.info("Claude Vision transcribed %d chars", len(vision_text))
        return ExtractedText(vision_text, SourceMethod.OCR_VISION, _confidence_of(vision_text), tuple(attempts))

    if ocr_text:
        return ExtractedText(ocr_text, SourceMethod.OCR, ExtractionConfidence.LOW, tuple(attempts))

    raise ExtractionFailure(
        "Could not read any text from the image",
        attempts=attempts,
        details="; ".join(attempts),
    )


# ── PDFs ──────────────────────────────────────────────────────────────────────

def extract_pdf_primary(content: bytes) -> str:
    """Text layer via pdfplumber, pages joined with newlines."""
    pages = []
    with pdfplumber.open(io.BytesIO(content)) as pdf:
        logger.debug("pdfplumber: %d page(s)", len(pdf.pages))
        for page in pdf.pages:
            pages.append(page.extract_text() or "")
    return "\n".join(pages).strip()


def extract_pdf_fallback(content: bytes) -> str:
    """Text via pypdf, used when pdfplumber output is unreadable."""
    reader = PdfReader(io.BytesIO(content))
    pages = [(page.extract_text() or "") for page in reader.pages]
    return "\n".join(pages).strip()


_WS_RUN = re.compile(r"\s+")


def extract_pdf(content: bytes) -> ExtractedText:
    attempts: list[str] = []

    primary_text = ""
    try:
        primary_text = extract_pdf_primary(content)
    except Exception as e:
        logger.warning("pdfplumber failed: %s", e)
        attempts.append(f"pdf-primary-error: {e}")
    else:
        logger.info("pdfplumber extracted %d chars", len(primary_text))
        if primary_text and is_high_confidence(primary_text):
            return ExtractedText(primary_text, SourceMethod.PDF_PRIMARY, ExtractionConfidence.HIGH, tuple(attempts))
        attempts.append("pdf-primary-unreadable" if primary_text else "pdf-primary-empty")

    fallback_text = ""
    try:
        fallback_text = extract_pdf_fallback(content)
    except Exception as e:
        logger.warning("pypdf failed: %s", e)
        attempts.append(f"pdf-fallback-error: {e}")
    else:
        logger.info("pypdf extracted %d chars", len(fallback_text))
        cleaned = _WS_RUN.sub(" ", fallback_text).strip()
        if len(cleaned) > FALLBACK_MIN_LENGTH:
            return ExtractedText(fallback_text, SourceMethod.PDF_FALLBACK, _confidence_of(fallback_text), tuple(attempts))
        attempts.append("pdf-fallback-unreadable" if fallback_text else "pdf-fallback-empty")

    # Nothing clean: hand back the best raw text so the classifier can name the corruption
    if primary_text:
        return ExtractedText(primary_text, SourceMethod.PDF_PRIMARY, ExtractionConfidence.LOW, tuple(attempts))
    if fallback_text:
        return ExtractedText(fallback_text, SourceMethod.PDF_FALLBACK, ExtractionConfidence.LOW, tuple(attempts))

    raise ExtractionFailure(
        "Could not extract any text from the PDF",
        attempts=attempts,
        details="; ".join(attempts),
    )


# ── Plain text ────────────────────────────────────────────────────────────────

def decode_text_upload(content: bytes) -> ExtractedText:
    text = content.decode("utf-8-sig", errors="replace").strip()
    if not text:
        raise ExtractionFailure("The uploaded text file is empty", attempts=("text-upload-empty",))
    return ExtractedText(text, SourceMethod.TEXT_UPLOAD, _confidence_of(text))


# ── Entry point ───────────────────────────────────────────────────────────────

async def _acquire(content: bytes, category: str) -> ExtractedText:
    if category == "pdf":
        return await asyncio.to_thread(extract_pdf, content)
    if category == "text":
        return decode_text_upload(content)
    return await _acquire_image(content)


async def acquire_text(content: bytes, category: str, filename: str = "") -> ExtractedText:
    """
    Extract raw text from an uploaded file.

    Raises ExtractionFailure when no method produced any text, or when the
    whole acquisition exceeds EXTRACTION_TIMEOUT_S.
    """
    if not content:
        raise ExtractionFailure("Empty upload", details=f"'{filename or 'upload'}' contains no data.")

    logger.info("Extracting text from %s (%s, %d bytes)", filename or "upload", category, len(content))
    try:
        extracted = await asyncio.wait_for(_acquire(content, category), timeout=EXTRACTION_TIMEOUT_S)
    except asyncio.TimeoutError as e:
        logger.warning("Extraction of %s timed out after %.0fs", filename or "upload", EXTRACTION_TIMEOUT_S)
        raise ExtractionFailure(
            "Text extraction timed out",
            attempts=(f"{category}-timeout",),
            details=f"Reading the file took longer than {EXTRACTION_TIMEOUT_S:.0f} seconds.",
        ) from e

    logger.info(
        "Extracted %d chars via %s (%s confidence)",
        len(extracted.text), extracted.method.value, extracted.confidence.value,
    )
    return extracted
