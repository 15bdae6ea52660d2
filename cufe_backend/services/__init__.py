"""
Service layer for the CUFE invoice backend.

- cufe_codec: CUFE normalization, validation, QR extraction
- duplicate_gate: "already registered?" lookup
- acquisition_client: streamed acquisition from the external service
- invoice_parser: regex parser for invoice PDF text
- expense_categorizer: items -> suggested expenses
- invoice_processor: the processing state machine tying them together
- pdf_processing: one-shot PDF fallback
"""

from .acquisition_client import AcquisitionClient, AcquisitionStream
from .cufe_codec import (
    extract_cufe_from_qr,
    is_valid_cufe_format,
    looks_like_invoice_qr,
    normalize_cufe,
    validate_cufe,
)
from .duplicate_gate import DuplicateGate, SupabaseDuplicateGate
from .expense_categorizer import build_suggested_expenses, categorize
from .invoice_parser import InvoiceTextParser
from .invoice_processor import InvoiceProcessor
from .pdf_processing import PdfInvoiceProcessor
from .persistence import InvoicePersistence

__all__ = [
    "AcquisitionClient",
    "AcquisitionStream",
    "DuplicateGate",
    "InvoicePersistence",
    "InvoiceProcessor",
    "InvoiceTextParser",
    "PdfInvoiceProcessor",
    "SupabaseDuplicateGate",
    "build_suggested_expenses",
    "categorize",
    "extract_cufe_from_qr",
    "is_valid_cufe_format",
    "looks_like_invoice_qr",
    "normalize_cufe",
    "validate_cufe",
]
