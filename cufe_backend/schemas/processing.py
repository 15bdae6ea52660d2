"""
Pydantic schemas for CUFE validation and processing sessions.
"""

from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from cufe_backend.schemas.acquisition import CaptchaInfo
from cufe_backend.schemas.expenses import SuggestedExpense
from cufe_backend.schemas.invoices import ProcessedInvoice
from cufe_backend.utils.errors import ProcessingErrorCode

ProcessingStatus = Literal[
    "idle",
    "validating",
    "downloading",
    "extracting",
    "reviewing",
    "saving",
    "success",
    "error",
]

# States in which the session owns an in-flight operation
ACTIVE_STATUSES = frozenset({"validating", "downloading", "extracting", "saving"})


class ProcessingErrorInfo(BaseModel):
    code: ProcessingErrorCode
    message: str


class ProcessingSession(BaseModel):
    """
    Snapshot of one invoice processing run.

    Mutated only by InvoiceProcessor. Callers receive copies (see
    InvoiceProcessor.session), so holding a snapshot never aliases the live
    state.
    """
    status: ProcessingStatus = "idle"
    progress: int = Field(0, ge=0, le=100)
    message: str = ""
    details: str = ""
    captcha_info: Optional[CaptchaInfo] = None
    current_invoice: Optional[ProcessedInvoice] = None
    suggested_expenses: List[SuggestedExpense] = Field(default_factory=list)
    error: Optional[ProcessingErrorInfo] = None
    processing_time: Optional[float] = None
    items_found: Optional[int] = None


# --- CUFE validation ---

class CufeValidationResult(BaseModel):
    """
    Outcome of validate_cufe().

    Format failures and duplicates are different error kinds: error_code is
    INVALID_CUFE for the former and DUPLICATE_CUFE for the latter.
    """
    is_valid: bool
    format_valid: bool = False
    already_exists: bool = False
    error_code: Optional[ProcessingErrorCode] = None
    error: Optional[str] = None


class CufeValidateRequest(BaseModel):
    """Body for POST /invoices/validate-cufe. One of the two fields is required."""
    model_config = ConfigDict(str_strip_whitespace=True)

    cufe_code: Optional[str] = Field(None, description="CUFE typed or pasted by the user")
    qr_content: Optional[str] = Field(None, description="Raw text decoded from the invoice QR")


class CufeValidationDetails(BaseModel):
    format_valid: bool
    already_exists: bool
    error_message: Optional[str] = None


class QrProcessingInfo(BaseModel):
    cufe_extracted: bool
    looks_like_invoice_qr: bool
    confidence: float


class CufeValidateResponse(BaseModel):
    success: bool = True
    valid: bool
    cufe_code: str = Field(..., description="Normalized CUFE")
    original_cufe: str = Field(..., description="CUFE before normalization")
    validation: CufeValidationDetails
    qr_processing: Optional[QrProcessingInfo] = None


# --- Streamed processing ---

class ProcessInvoiceRequest(BaseModel):
    """Body for POST /invoices/process. One of cufe_code / qr_content is required."""
    model_config = ConfigDict(str_strip_whitespace=True, extra="forbid")

    cufe_code: Optional[str] = None
    qr_content: Optional[str] = None
    max_retries: Optional[int] = Field(None, ge=0, le=10)
