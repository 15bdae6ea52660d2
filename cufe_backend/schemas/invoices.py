"""
Pydantic schemas for extracted DIAN electronic invoices.

ExtractedInvoiceData is the structured document produced either by the
external acquisition service (mapped from its `complete` event) or by the
local InvoiceTextParser. Fields the source text did not contain stay None;
only totals default to zero.
"""

from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

# --- Document parts ---

class SupplierInfo(BaseModel):
    """Issuer of the invoice (the store or service provider)."""
    name: str = Field("", description="Legal name (razón social)")
    nit: str = Field("", description="Tax id, digits only (e.g. '9001234567')")
    address: Optional[str] = Field(None, description="Street address")
    phone: Optional[str] = Field(None, description="Phone number as printed")
    email: Optional[str] = Field(None, description="Contact email")


class CustomerInfo(BaseModel):
    """Buyer (adquiriente) printed on the invoice."""
    name: str = Field("", description="Customer name")
    nit: Optional[str] = Field(None, description="Customer NIT / C.C., digits only")
    address: Optional[str] = Field(None, description="Customer address")


class InvoiceDetails(BaseModel):
    number: str = Field("", description="Invoice number (e.g. 'FE1234')")
    date: str = Field("", description="Issue date, ISO YYYY-MM-DD")
    due_date: Optional[str] = Field(None, description="Due date, ISO YYYY-MM-DD")
    currency: str = Field("COP", description="Currency code")


class InvoiceItem(BaseModel):
    """A single line of the invoice."""
    description: str = Field(..., description="Product or service description")
    quantity: float = Field(1.0, description="Quantity")
    unit_price: float = Field(0.0, description="Price per unit")
    total_price: float = Field(0.0, description="Line total")
    tax_rate: Optional[float] = Field(None, description="Tax rate in percent (19 means 19%)")
    tax_amount: Optional[float] = Field(None, description="Tax amount for the line")
    unit: Optional[str] = Field(None, description="Unit of measure (UN, KG, ...)")
    product_code: Optional[str] = Field(None, description="Product code if printed")


class InvoiceTotals(BaseModel):
    subtotal: float = Field(0.0, description="Amount before taxes")
    tax_amount: float = Field(0.0, description="Total taxes (mostly IVA)")
    discount_amount: Optional[float] = Field(None, description="Discounts applied")
    total_amount: float = Field(0.0, description="Final amount; authoritative")


class InvoiceTax(BaseModel):
    type: str = Field("IVA", description="Tax type (IVA, ICA, INC, ...)")
    rate: float = Field(19.0, description="Rate in percent")
    base_amount: float = Field(0.0, description="Base the tax was computed on")
    tax_amount: float = Field(0.0, description="Tax amount")


class AdditionalInfo(BaseModel):
    notes: Optional[str] = None
    observations: Optional[str] = None
    qr_code: Optional[str] = Field(None, description="Original QR payload, if known")


class ExtractedInvoiceData(BaseModel):
    """
    Structured invoice document.

    INVARIANT: totals.total_amount is authoritative. The sum of
    items[].total_price is NOT reconciled against totals.subtotal because the
    source text is unreliable.
    """
    supplier: SupplierInfo = Field(default_factory=SupplierInfo)
    customer: Optional[CustomerInfo] = None
    invoice_details: InvoiceDetails = Field(default_factory=InvoiceDetails)
    items: List[InvoiceItem] = Field(default_factory=list)
    totals: InvoiceTotals = Field(default_factory=InvoiceTotals)
    taxes: List[InvoiceTax] = Field(default_factory=list)
    additional_info: Optional[AdditionalInfo] = None


class ProcessedInvoice(BaseModel):
    """
    Invoice produced by a processing session, not yet persisted.

    This is what the persistence collaborator receives in save().
    """
    cufe_code: str = Field(..., description="Normalized CUFE")
    supplier_name: str = Field("", description="Supplier name")
    supplier_nit: str = Field("", description="Supplier NIT")
    invoice_date: str = Field(..., description="ISO date; today when the source had none")
    total_amount: float = Field(0.0, description="Invoice total")
    extracted_data: ExtractedInvoiceData
    pdf_url: Optional[str] = None
    processed_at: str = Field(..., description="ISO-8601 timestamp of processing")


# --- Synchronous PDF fallback endpoint ---

class ProcessPdfRequest(BaseModel):
    """
    Request for POST /invoices/process-pdf.

    Exactly one source is used, in priority order: pdf_base64, pdf_url,
    cufe_code. camelCase names (cufeCode, pdfUrl, pdfBase64) are accepted.
    """
    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)

    cufe_code: Optional[str] = Field(None, alias="cufeCode")
    pdf_url: Optional[str] = Field(None, alias="pdfUrl")
    pdf_base64: Optional[str] = Field(None, alias="pdfBase64")

    def has_source(self) -> bool:
        return bool(self.cufe_code or self.pdf_url or self.pdf_base64)


class PdfProcessingInfo(BaseModel):
    method: Literal["base64", "url", "cufe", "unknown"] = "unknown"
    pages_processed: int = 0
    text_length: int = 0
    extraction_time: int = Field(0, description="Milliseconds spent on the request")


class ProcessPdfResponse(BaseModel):
    success: bool
    data: Optional[ExtractedInvoiceData] = None
    processing_info: Optional[PdfProcessingInfo] = None
    error: Optional[str] = None
    error_code: Optional[str] = None

    @model_validator(mode="after")
    def validate_outcome(self):
        """A successful response carries data; a failed one carries an error."""
        if self.success and self.data is None:
            raise ValueError("success=True requires data")
        if not self.success and not self.error:
            raise ValueError("success=False requires error")
        return self
