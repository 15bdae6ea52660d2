"""
Typed events of the acquisition stream.

The external processing service answers a request with a server-sent event
stream of three named events. Each event name maps to one model below; the
union is discriminated on `event` so callers can match on the type instead of
poking at free-form dicts.

Payloads are loosely typed: numbers may arrive as printed strings ("119.000",
"119,000") and any field may be null. Nulls fall back to the field default.
"""

from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, field_validator, model_validator

from cufe_backend.utils.amounts import parse_amount


def _coerce_amount(value, default: float = 0.0):
    """Accept numbers sent as printed strings; null and blank become the default."""
    if value is None:
        return default
    if isinstance(value, str):
        if not value.strip():
            return default
        parsed = parse_amount(value)
        return value if parsed is None else parsed
    return value


def _coerce_text(value):
    """NITs and invoice numbers sometimes arrive as JSON numbers."""
    if isinstance(value, (int, float)):
        return str(value)
    return value


def _drop_nulls(data):
    if isinstance(data, dict):
        return {key: value for key, value in data.items() if value is not None}
    return data


Amount = Annotated[float, BeforeValidator(_coerce_amount)]
Quantity = Annotated[float, BeforeValidator(lambda v: _coerce_amount(v, default=1.0))]
Text = Annotated[str, BeforeValidator(lambda v: "" if v is None else _coerce_text(v))]
OptionalText = Annotated[Optional[str], BeforeValidator(_coerce_text)]


# --- Request ---

class AcquisitionRequest(BaseModel):
    """Body POSTed to the acquisition service to open the stream."""
    model_config = ConfigDict(populate_by_name=True)

    cufe: str
    max_retries: Optional[int] = Field(None, alias="maxRetries", ge=0)
    captcha_api_key: Optional[str] = Field(None, alias="captchaApiKey")

    def to_payload(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)


# --- progress ---

class CaptchaInfo(BaseModel):
    """Opaque captcha metadata surfaced to the UI as progress detail."""
    model_config = ConfigDict(populate_by_name=True)

    number: Optional[int] = None
    status: Optional[str] = None
    task_id: Optional[str] = Field(None, alias="taskId")
    attempt: Optional[int] = None
    max_attempts: Optional[int] = Field(None, alias="maxAttempts")
    solve_time: Optional[float] = Field(None, alias="solveTime")


class ProgressEvent(BaseModel):
    event: Literal["progress"] = "progress"
    step: Text = ""
    progress: int = Field(0, ge=0, le=100)
    message: Text = ""
    details: Optional[str] = None
    captcha: Optional[CaptchaInfo] = None
    processing_time: Optional[float] = None

    @field_validator("progress", mode="before")
    @classmethod
    def clamp_progress(cls, value):
        if value is None:
            return 0
        return max(0, min(100, int(float(value))))


# --- complete ---

class AcquiredInvoiceDetails(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    store_name: Text = Field("", alias="storeName")
    nit: Text = ""
    date: Text = ""
    total_amount: Amount = 0.0
    subtotal: Optional[Amount] = None
    invoice_number: OptionalText = Field(None, alias="invoiceNumber")
    currency: Optional[str] = None


class AcquiredItem(BaseModel):
    idx: Optional[int] = None
    description: Text = ""
    quantity: Quantity = 1.0
    unit_price: Amount = 0.0
    total_price: Amount = 0.0
    iva_percent: Optional[Amount] = None
    iva_amount: Optional[Amount] = None
    unit_measure: Optional[str] = None
    code: OptionalText = None


class AcquisitionProcessingInfo(BaseModel):
    total_time: Optional[float] = None
    pdf_size: Optional[int] = None
    items_found: Optional[int] = None


class AcquisitionResult(BaseModel):
    invoice_details: AcquiredInvoiceDetails = Field(default_factory=AcquiredInvoiceDetails)
    items: List[AcquiredItem] = Field(default_factory=list)
    processing_info: AcquisitionProcessingInfo = Field(default_factory=AcquisitionProcessingInfo)

    @model_validator(mode="before")
    @classmethod
    def null_sections_use_defaults(cls, data):
        return _drop_nulls(data)


class CompleteEvent(BaseModel):
    event: Literal["complete"] = "complete"
    result: AcquisitionResult


# --- error ---

class ErrorEvent(BaseModel):
    event: Literal["error"] = "error"
    error: str = "Unknown processing error"


StreamEvent = Annotated[
    Union[ProgressEvent, CompleteEvent, ErrorEvent],
    Field(discriminator="event"),
]
