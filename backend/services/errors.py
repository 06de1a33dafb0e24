"""
Submission error taxonomy.

Every failure path of a receipt submission ends in exactly one of these.
All of them are terminal for the submission and none of them award points.
"""
from typing import Optional


class SubmissionError(Exception):
    """Base class. Carries the user-facing details and a remediation hint."""

    kind = "submission-failed"
    status_code = 422

    def __init__(self, message: str, details: str = "", hint: str = ""):
        super().__init__(message)
        self.message = message
        self.details = details
        self.hint = hint

    def to_payload(self) -> dict:
        return {
            "error_kind": self.kind,
            "error_details": self.details or self.message,
            "remediation_hint": self.hint,
        }


class ExtractionFailure(SubmissionError):
    """No usable text after every extraction method for the file type."""

    kind = "extraction-failed"

    def __init__(self, message: str, attempts: tuple = (), details: str = ""):
        super().__init__(
            message,
            details=details,
            hint="Please try again with a clear photo of the receipt or the original PDF.",
        )
        self.attempts = tuple(attempts)


# Remediation per corruption kind (see services/corruption.py)
_CORRUPTION_HINTS = {
    "email-pdf-corruption": (
        "This PDF was created by converting an email, which corrupted the text. "
        "Copy the receipt text from the original email, paste it into a .txt file "
        "and upload that instead, or upload a screenshot of the receipt."
    ),
    "glyph-corruption": (
        "This PDF uses fonts that cannot be decoded. "
        "Upload the original receipt image or a screenshot instead."
    ),
    "insufficient-text": (
        "We could not read enough text from this file. "
        "Upload a sharper photo with the whole receipt in frame."
    ),
}


class CorruptionDetected(SubmissionError):
    """Text was produced but is unusable."""

    kind = "corruption-detected"

    def __init__(self, corruption_kind: str, details: str = ""):
        super().__init__(
            f"Unusable receipt text ({corruption_kind})",
            details=details,
            hint=_CORRUPTION_HINTS.get(corruption_kind, _CORRUPTION_HINTS["insufficient-text"]),
        )
        self.corruption_kind = corruption_kind


class ValidationFailed(SubmissionError):
    """Usable text that did not reach the confidence/product threshold."""

    kind = "validation-failed"

    def __init__(self, details: str = "", confidence: Optional[int] = None):
        super().__init__(
            "Receipt could not be validated",
            details=details,
            hint=(
                "Make sure the receipt clearly shows a participating product "
                "(Bloedlemoen Gin or Fever-Tree Tonic), the store name, the total and the date."
            ),
        )
        self.confidence = confidence


class DuplicateDetected(SubmissionError):
    """Fingerprint collision with a previously accepted receipt."""

    kind = "duplicate-detected"
    status_code = 409

    def __init__(self, same_user: bool):
        if same_user:
            message = "You have already submitted this receipt."
        else:
            message = "This receipt has already been claimed by another account."
        super().__init__(
            message,
            hint="Each purchase can only earn points once.",
        )
        self.same_user = same_user
