"""
Receipts Router

POST /api/receipts/upload     — upload image / PDF / text, detect products, award points
POST /api/receipts/analyze    — dry-run analysis of pasted text (nothing stored)
GET  /api/receipts            — current user's accepted receipts
GET  /api/receipts/diagnose   — dependency check
"""
import logging
import os
from typing import Optional

import aiosqlite
from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile

from db.database import get_db
from models.schemas import (
    AnalysisResult,
    AnalyzeRequest,
    DetectedItem,
    ReceiptSummary,
    SubmissionFailure,
    SubmissionRejected,
    SubmissionSuccess,
)
from routers.users import get_current_user
from services import corruption, normalizer
from services.errors import SubmissionError
from services.policy import load_policy
from services.product_detector import DetectedProduct
from services.receipt_pipeline import analyze_text, evaluate_submission
from services.receipt_scorer import award
from services.rewards_service import list_receipts as list_user_receipts
from services.rewards_service import record_accepted_receipt
from services.text_extraction import TESSERACT_CMD, acquire_text, detect_category

logger = logging.getLogger("rewards.receipts")
router = APIRouter()

POLICY = load_policy()
MAX_UPLOAD_BYTES = int(os.environ.get("MAX_UPLOAD_MB", "15")) * 1024 * 1024


def _item(p: DetectedProduct) -> DetectedItem:
    return DetectedItem(
        family=p.family.value,
        display_name=p.display_name,
        quantity=p.quantity,
        points=p.points_awarded,
        confidence=p.confidence,
        source_line=p.source_line,
        rule=p.rule,
    )


def _rejected(err: SubmissionError, filename: str) -> HTTPException:
    logger.info("Rejected %s: %s (%s)", filename or "upload", err.kind, err.details or err.message)
    return HTTPException(status_code=err.status_code, detail=SubmissionFailure(**err.to_payload()).model_dump())


# ── Diagnostics ───────────────────────────────────────────────────────────────

@router.get("/diagnose")
async def diagnose():
    """Check that all extraction dependencies (Tesseract, PDF readers, Pillow, Anthropic key) work."""
    import subprocess
    results = {}

    # Tesseract
    binary = TESSERACT_CMD or "tesseract"
    try:
        r = subprocess.run([binary, "--version"], capture_output=True, text=True, timeout=5)
        results["tesseract"] = {"ok": r.returncode == 0, "version": r.stdout.split("\n")[0]}
    except FileNotFoundError:
        results["tesseract"] = {"ok": False, "error": f"{binary} binary not found in PATH"}
    except (OSError, subprocess.SubprocessError) as e:
        results["tesseract"] = {"ok": False, "error": str(e)}

    for label, module in (
        ("pytesseract", "pytesseract"),
        ("pillow", "PIL"),
        ("heic_support", "pillow_heif"),
        ("pdfplumber", "pdfplumber"),
        ("pypdf", "pypdf"),
    ):
        try:
            __import__(module)
            results[label] = {"ok": True}
        except ImportError as e:
            results[label] = {"ok": False, "error": str(e)}

    # Anthropic key: report presence only, never key material
    key = os.environ.get("ANTHROPIC_API_KEY", "")
    results["anthropic_key"] = {
        "ok": bool(key and key.startswith("sk-")),
        "set": bool(key),
    }

    all_ok = all(v.get("ok") for v in results.values())
    return {"all_ok": all_ok, "checks": results}


# ── Upload & Process ──────────────────────────────────────────────────────────

@router.post(
    "/upload",
    response_model=SubmissionSuccess,
    responses={409: {"model": SubmissionRejected}, 422: {"model": SubmissionRejected}},
)
async def upload_receipt(
    file: UploadFile = File(...),
    category: Optional[str] = Form(None),   # image | pdf | text; inferred from the file when omitted
    user: dict = Depends(get_current_user),
    db: aiosqlite.Connection = Depends(get_db),
):
    """
    Run the full submission pipeline for one uploaded receipt.

    Extraction, corruption and validation failures return 422 and a duplicate
    returns 409, each with {error_kind, error_details, remediation_hint}.
    Points are only awarded once the receipt is committed.
    """
    filename = file.filename or "upload"
    contents = await file.read()
    if len(contents) > MAX_UPLOAD_BYTES:
        raise HTTPException(status_code=413, detail="File too large")

    try:
        kind = detect_category(filename, file.content_type or "", category)
        extracted = await acquire_text(contents, kind, filename)
        accepted = evaluate_submission(extracted, POLICY)
        saved = await record_accepted_receipt(db, user["id"], accepted, file_name=filename)
    except SubmissionError as e:
        raise _rejected(e, filename) from e

    analysis = accepted.analysis
    return SubmissionSuccess(
        accepted_text=accepted.accepted_text,
        source_method=accepted.source_method.value,
        store_name=accepted.store_name,
        total_amount=accepted.total_amount,
        transaction_date=accepted.transaction_date,
        detected_items=[_item(p) for p in analysis.products],
        points_earned=accepted.points_earned,
        fingerprint=accepted.fingerprint,
        receipt_id=saved["receipt_id"],
        new_balance=saved["new_balance"],
        total_earned=saved["total_earned"],
        bottles=analysis.total_bottle_count,
        packs=analysis.total_pack_count,
        confidence_score=analysis.confidence_score,
    )


# ── Dry run ───────────────────────────────────────────────────────────────────

@router.post("/analyze", response_model=AnalysisResult)
async def analyze_receipt_text(body: AnalyzeRequest):
    """Score pasted receipt text without storing anything or awarding points."""
    normalized, analysis = analyze_text(body.text, POLICY)
    verdict = corruption.classify(normalizer.clean_whitespace(body.text))
    return AnalysisResult(
        is_valid=analysis.is_valid and verdict.usable,
        usable=verdict.usable,
        corruption_kind=None if verdict.usable else corruption.detect_corruption_kind(body.text),
        store_name=analysis.store_name,
        total_amount=analysis.total_amount,
        transaction_date=analysis.transaction_date,
        products=[_item(p) for p in analysis.products],
        bottles=analysis.total_bottle_count,
        packs=analysis.total_pack_count,
        confidence_score=analysis.confidence_score,
        points=award(analysis) if analysis.is_valid and verdict.usable else 0,
        lines=list(normalized.lines),
    )


# ── List Receipts ─────────────────────────────────────────────────────────────

@router.get("", response_model=list[ReceiptSummary])
async def list_receipts(
    limit: int = 50,
    offset: int = 0,
    user: dict = Depends(get_current_user),
    db: aiosqlite.Connection = Depends(get_db),
):
    rows = await list_user_receipts(db, user["id"], limit=limit, offset=offset)
    logger.debug("list_receipts returning %d receipts for user %d", len(rows), user["id"])
    return [ReceiptSummary(**r) for r in rows]
