from pydantic import BaseModel, Field
from typing import Optional, List


# ── Users ──────────────────────────────────────────────
class UserCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    email: str = Field(..., min_length=3, max_length=254)

class User(BaseModel):
    id: int
    name: str
    email: str
    points: int = 0
    total_earned: int = 0
    created_at: Optional[str] = None

    class Config:
        from_attributes = True


# ── Receipts ───────────────────────────────────────────
class ReceiptSummary(BaseModel):
    """One accepted receipt, as listed on the dashboard."""
    id: int
    file_name: Optional[str] = None
    store_name: Optional[str] = None
    total_amount: Optional[str] = None
    transaction_date: Optional[str] = None
    source_method: Optional[str] = None
    detected_items: List[str] = []
    points_earned: int = 0
    status: str = "approved"
    uploaded_at: Optional[str] = None

class UserProfile(User):
    """Balance plus the last few accepted receipts."""
    recent_activity: List[ReceiptSummary] = []


# ── Detection results ──────────────────────────────────
class DetectedItem(BaseModel):
    family: str                 # primary | secondary | bundle
    display_name: str
    quantity: int
    points: int
    confidence: int
    source_line: str
    rule: str

class SubmissionSuccess(BaseModel):
    """Returned by POST /api/receipts/upload when points were awarded."""
    accepted_text: str
    source_method: str
    store_name: Optional[str] = None
    total_amount: Optional[str] = None
    transaction_date: Optional[str] = None
    detected_items: List[DetectedItem]
    points_earned: int
    fingerprint: str
    receipt_id: int
    new_balance: int
    total_earned: int
    bottles: int
    packs: int
    confidence_score: int

class SubmissionFailure(BaseModel):
    """Shape of `detail` on a 409/422 upload response."""
    error_kind: str             # extraction-failed | corruption-detected | validation-failed | duplicate-detected
    error_details: str
    remediation_hint: str

class SubmissionRejected(BaseModel):
    """Error body of a rejected upload."""
    detail: SubmissionFailure

class AnalyzeRequest(BaseModel):
    text: str

class AnalysisResult(BaseModel):
    """Dry-run analysis. Nothing is stored and no points are awarded."""
    is_valid: bool
    usable: bool
    corruption_kind: Optional[str] = None
    store_name: Optional[str] = None
    total_amount: Optional[str] = None
    transaction_date: Optional[str] = None
    products: List[DetectedItem] = []
    bottles: int = 0
    packs: int = 0
    confidence_score: int = 0
    points: int = 0
    lines: List[str] = []
