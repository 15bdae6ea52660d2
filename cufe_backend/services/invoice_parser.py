"""
Regex-based parser for the text of DIAN electronic invoice PDFs.

The text comes from a PDF text layer (see pdf_processing) and is
inconsistently formatted: labels change between issuers, accents come and go,
amounts may or may not carry a currency symbol. Parsing is therefore
best-effort:

- Every scalar field has its own Extractor, a pure function
  `text -> value | None` built from an ordered list of patterns; the first
  pattern that yields a value wins.
- Extractors are independent of each other and of the order they run in.
- A field that is not found stays empty. Totals default to 0.
- parse() never raises. Only parse_or_raise() reports EXTRACTION_FAILED, and
  only when nothing at all was recognized.

Per-item taxes are rarely printed, so every item gets the invoice-wide
effective rate (tax / subtotal). That is an approximation and is kept as
documented behaviour.
"""

import math
import re
import unicodedata
from typing import Callable, Dict, List, Optional, TypeVar

from cufe_backend.schemas.invoices import (
    AdditionalInfo,
    CustomerInfo,
    ExtractedInvoiceData,
    InvoiceDetails,
    InvoiceItem,
    InvoiceTax,
    InvoiceTotals,
    SupplierInfo,
)
from cufe_backend.utils.amounts import parse_amount
from cufe_backend.utils.errors import InvoiceProcessingError
from cufe_backend.utils.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")
Extractor = Callable[[str], Optional[T]]

DEFAULT_CURRENCY = "COP"
# Colombian standard IVA rate, used when the invoice does not print a rate
DEFAULT_IVA_RATE = 19.0

ITEM_HEADING_KEYWORDS = ("descripcion", "description", "product", "servicio", "service")
ITEM_REGION_TERMINATORS = ("subtotal", "total")

_AMOUNT = r"\$?\s*(\d[\d.,]*)"
_DATE = r"(\d{1,2}[/-]\d{1,2}[/-]\d{4}|\d{4}-\d{1,2}-\d{1,2})"
_LABEL_SEP = r"\s*[:.#]?\s*"

ITEM_LINE_RE = re.compile(
    r"^(.+?)\s+(\d+(?:[.,]\d+)?)\s+\$?\s*(\d[\d.,]*)\s+\$?\s*(\d[\d.,]*)$"
)

_DECIMAL_COMMA_QTY_RE = re.compile(r"^\d+,\d{1,2}$")


# --- Value normalization ---

def fold_accents(text: str) -> str:
    """Lower-case and strip diacritics ("DESCRIPCIÓN" -> "descripcion")."""
    decomposed = unicodedata.normalize("NFKD", text)
    return "".join(c for c in decomposed if not unicodedata.combining(c)).lower()


def parse_quantity(raw: str) -> float:
    if _DECIMAL_COMMA_QTY_RE.match(raw):
        return float(raw.replace(",", "."))
    amount = parse_amount(raw)
    return amount if amount is not None else 1.0


def normalize_date(raw: Optional[str]) -> Optional[str]:
    """Turn D/M/Y or D-M-Y into ISO YYYY-MM-DD; ISO input is zero-padded and kept."""
    if not raw:
        return None
    parts = re.split(r"[/-]", raw.strip())
    if len(parts) != 3 or not all(p.isdigit() for p in parts):
        return None
    if len(parts[0]) == 4:
        year, month, day = parts
    else:
        day, month, year = parts
    return f"{year}-{month.zfill(2)}-{day.zfill(2)}"


def _clean_text(raw: str) -> Optional[str]:
    value = re.sub(r"\s+", " ", raw).strip(" \t:;,-")
    return value or None


def _digits_only(raw: str) -> Optional[str]:
    digits = re.sub(r"\D", "", raw)
    return digits or None


def _invoice_number(raw: str) -> Optional[str]:
    value = re.sub(r"\s+", "", raw).upper()
    return value or None


def _rate(raw: str) -> Optional[float]:
    return parse_amount(raw.replace(",", "."))


# --- Extractors ---

def pattern_extractor(
    *patterns: str,
    transform: Callable[[str], Optional[T]] = _clean_text,
) -> Extractor:
    """
    Build an Extractor from an ordered list of patterns.

    Each pattern must capture the value in group 1. Patterns are tried in
    order; the first one whose transformed capture is not empty wins.
    """
    compiled = [re.compile(p, re.IGNORECASE) for p in patterns]

    def extract(text: str) -> Optional[T]:
        for pattern in compiled:
            for match in pattern.finditer(text):
                value = transform(match.group(1))
                if value is not None and value != "":
                    return value
        return None

    return extract


extract_supplier_name: Extractor = pattern_extractor(
    r"RAZ[OÓ]N\s+SOCIAL" + _LABEL_SEP + r"([^\n]+?)(?=\s*(?:\bNIT\b|DIRECCI[OÓ]N)|\n|$)",
    r"(?:NOMBRE\s+(?:DEL\s+)?(?:EMISOR|VENDEDOR|PROVEEDOR)|EMISOR|VENDEDOR|PROVEEDOR|EMPRESA)"
    + _LABEL_SEP + r"([^\n]+?)(?=\s*(?:\bNIT\b|DIRECCI[OÓ]N)|\n|$)",
    r"\bNOMBRE" + _LABEL_SEP + r"([^\n]+?)(?=\s*(?:\bNIT\b|DIRECCI[OÓ]N)|\n|$)",
)

extract_supplier_nit: Extractor = pattern_extractor(
    r"\bNIT\b(?:\s+(?:DEL\s+)?(?:EMISOR|VENDEDOR))?" + _LABEL_SEP + r"(?:No\.?\s*)?(\d[\d.]*(?:\s*-\s*\d+)?)",
    transform=_digits_only,
)

extract_supplier_address: Extractor = pattern_extractor(
    r"DIRECCI[OÓ]N" + _LABEL_SEP
    + r"([^\n]+?)(?=\s*(?:\bTEL(?:[EÉ]FONOS?)?\b|E-?MAIL|CORREO|\bNIT\b)|\n|$)",
)

extract_supplier_phone: Extractor = pattern_extractor(
    r"\b(?:TEL[EÉ]FONOS?|TEL|CELULAR|CEL|M[OÓ]VIL)\b\.?" + _LABEL_SEP + r"(\+?\d[\d ()-]{5,}\d)",
)

extract_supplier_email: Extractor = pattern_extractor(
    r"(?:E-?MAIL|CORREO(?:\s+ELECTR[OÓ]NICO)?)" + _LABEL_SEP + r"([\w.+-]+@[\w-]+(?:\.[\w-]+)+)",
    r"([\w.+-]+@[\w-]+(?:\.[\w-]+)+)",
)

extract_invoice_number: Extractor = pattern_extractor(
    r"FACTURA\s+ELECTR[OÓ]NICA(?:\s+DE\s+VENTA)?\s*(?:No\.?|N[°º]|#)?" + _LABEL_SEP + r"([A-Z]{0,6}\s?-?\s?\d+)\b",
    r"(?:FACTURA(?:\s+DE\s+VENTA)?|N[UÚ]MERO(?:\s+DE\s+FACTURA)?)\s*(?:No\.?|N[°º]|#)?" + _LABEL_SEP
    + r"([A-Z]{0,6}-?\d+)\b",
    r"\bNo\." + _LABEL_SEP + r"([A-Z]{0,6}-?\d+)\b",
    transform=_invoice_number,
)

extract_invoice_date: Extractor = pattern_extractor(
    r"FECHA\s+(?:DE\s+)?(?:EMISI[OÓ]N|EXPEDICI[OÓ]N|FACTURA(?:CI[OÓ]N)?|GENERACI[OÓ]N)" + _LABEL_SEP + _DATE,
    r"\b(?:FECHA|DATE)" + _LABEL_SEP + _DATE,
    transform=normalize_date,
)

extract_due_date: Extractor = pattern_extractor(
    r"(?:FECHA\s+(?:DE\s+)?VENCIMIENTO|VENCIMIENTO|VENCE|DUE\s+DATE)" + _LABEL_SEP + _DATE,
    transform=normalize_date,
)

extract_subtotal: Extractor = pattern_extractor(
    r"SUB\s?-?\s?TOTAL" + _LABEL_SEP + _AMOUNT,
    transform=parse_amount,
)

extract_tax_amount: Extractor = pattern_extractor(
    r"(?:\bIVA\b|\bI\.V\.A\.?)(?:\s*\(?\s*\d{1,2}(?:[.,]\d+)?\s*%\s*\)?)?" + _LABEL_SEP + _AMOUNT,
    transform=parse_amount,
)

extract_tax_rate: Extractor = pattern_extractor(
    r"(?:\bIVA\b|\bI\.V\.A\.?)\s*\(?\s*(\d{1,2}(?:[.,]\d+)?)\s*%",
    transform=_rate,
)

extract_total_amount: Extractor = pattern_extractor(
    r"TOTAL\s+A\s+PAGAR" + _LABEL_SEP + _AMOUNT,
    r"(?:VALOR\s+TOTAL|TOTAL\s+FACTURA|GRAN\s+TOTAL|TOTAL\s+NETO)" + _LABEL_SEP + _AMOUNT,
    r"(?<![A-Za-z])(?<!SUB-)(?<!SUB )TOTAL" + _LABEL_SEP + _AMOUNT,
    transform=parse_amount,
)

extract_discount_amount: Extractor = pattern_extractor(
    r"(?:TOTAL\s+)?DESCUENTOS?" + _LABEL_SEP + _AMOUNT,
    transform=parse_amount,
)

extract_customer_name: Extractor = pattern_extractor(
    r"(?:ADQUIRIENTE|CLIENTE|COMPRADOR|SE[NÑ]OR(?:ES)?)" + _LABEL_SEP
    + r"([^\n]+?)(?=\s*(?:\bNIT\b|\bC\.?C\.?(?=[\s:.])|DIRECCI[OÓ]N)|\n|$)",
)

extract_customer_nit: Extractor = pattern_extractor(
    r"(?:ADQUIRIENTE|CLIENTE|COMPRADOR)[^\n]*?(?:\bNIT\b|\bC\.?C\.?)" + _LABEL_SEP + r"(\d[\d.]*(?:\s*-\s*\d+)?)",
    transform=_digits_only,
)

extract_observations: Extractor = pattern_extractor(
    r"OBSERVACI[OÓ]N(?:ES)?" + _LABEL_SEP + r"([^\n]+)",
)

# Every scalar field of the document and the extractor that fills it
FIELD_EXTRACTORS: Dict[str, Extractor] = {
    "supplier_name": extract_supplier_name,
    "supplier_nit": extract_supplier_nit,
    "supplier_address": extract_supplier_address,
    "supplier_phone": extract_supplier_phone,
    "supplier_email": extract_supplier_email,
    "customer_name": extract_customer_name,
    "customer_nit": extract_customer_nit,
    "invoice_number": extract_invoice_number,
    "invoice_date": extract_invoice_date,
    "due_date": extract_due_date,
    "subtotal": extract_subtotal,
    "tax_amount": extract_tax_amount,
    "tax_rate": extract_tax_rate,
    "total_amount": extract_total_amount,
    "discount_amount": extract_discount_amount,
    "observations": extract_observations,
}


# --- Line items ---

def find_item_region(lines: List[str]) -> Optional[range]:
    """
    Locate the item table between a heading line and the first total line.

    The first line containing a heading keyword opens the region. If that
    line is itself a well-formed item line it belongs to the region. The
    first later line mentioning subtotal/total closes it.
    """
    heading = next(
        (i for i, line in enumerate(lines)
         if any(keyword in fold_accents(line) for keyword in ITEM_HEADING_KEYWORDS)),
        None,
    )
    if heading is None:
        return None

    start = heading if ITEM_LINE_RE.match(lines[heading]) else heading + 1
    end = next(
        (j for j in range(heading + 1, len(lines))
         if any(word in lines[j].lower() for word in ITEM_REGION_TERMINATORS)),
        None,
    )
    if end is None or end <= start:
        return None
    return range(start, end)


def parse_item_line(line: str) -> Optional[InvoiceItem]:
    """Match `description quantity unit_price total_price`; None if it does not fit."""
    match = ITEM_LINE_RE.match(line)
    if not match:
        return None
    description, quantity, unit_price, total_price = match.groups()
    unit_value = parse_amount(unit_price)
    total_value = parse_amount(total_price)
    if unit_value is None or total_value is None:
        return None
    return InvoiceItem(
        description=description.strip(),
        quantity=parse_quantity(quantity),
        unit_price=unit_value,
        total_price=total_value,
    )


def extract_items(text: str) -> List[InvoiceItem]:
    lines = [line.strip() for line in text.splitlines() if line.strip()]
    region = find_item_region(lines)
    if region is None:
        return []
    items = []
    for index in region:
        item = parse_item_line(lines[index])
        if item is not None:
            items.append(item)
    return items


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def has_usable_data(data: ExtractedInvoiceData) -> bool:
    """False when not a single meaningful field was recognized."""
    return bool(
        data.supplier.name
        or data.supplier.nit
        or data.invoice_details.number
        or data.invoice_details.date
        or data.totals.total_amount > 0
        or data.totals.subtotal > 0
        or data.items
    )


class InvoiceTextParser:
    """
    Turns raw invoice text into ExtractedInvoiceData.

    Usage:
        >>> parser = InvoiceTextParser()
        >>> data = parser.parse(pdf_text)
        >>> data.totals.total_amount
        119000.0
    """

    def __init__(
        self,
        extractors: Optional[Dict[str, Extractor]] = None,
        default_currency: str = DEFAULT_CURRENCY,
        default_tax_rate: float = DEFAULT_IVA_RATE,
    ):
        self.extractors = dict(FIELD_EXTRACTORS if extractors is None else extractors)
        self.default_currency = default_currency
        self.default_tax_rate = default_tax_rate

    def extract_fields(self, text: str) -> Dict[str, object]:
        """Run every field extractor over the same text."""
        return {name: extractor(text) for name, extractor in self.extractors.items()}

    def parse(self, text: Optional[str]) -> ExtractedInvoiceData:
        """Parse invoice text. Never raises; unknown fields stay empty."""
        text = text or ""
        fields = self.extract_fields(text)
        logger.debug(
            f"Parsing invoice text ({len(text)} chars): "
            f"{sum(1 for v in fields.values() if v is not None)} fields recognized"
        )

        total = fields.get("total_amount") or 0.0
        tax = fields.get("tax_amount") or 0.0
        subtotal = fields.get("subtotal")
        if subtotal is None and total > 0 and 0 < tax < total:
            # No SUBTOTAL label: the pre-tax base is what remains after IVA
            subtotal = total - tax
        subtotal = subtotal or 0.0
        explicit_rate = fields.get("tax_rate")

        data = ExtractedInvoiceData(
            supplier=SupplierInfo(
                name=fields.get("supplier_name") or "",
                nit=fields.get("supplier_nit") or "",
                address=fields.get("supplier_address"),
                phone=fields.get("supplier_phone"),
                email=fields.get("supplier_email"),
            ),
            invoice_details=InvoiceDetails(
                number=fields.get("invoice_number") or "",
                date=fields.get("invoice_date") or "",
                due_date=fields.get("due_date"),
                currency=self.default_currency,
            ),
            totals=InvoiceTotals(
                subtotal=subtotal,
                tax_amount=tax,
                discount_amount=fields.get("discount_amount"),
                total_amount=total,
            ),
        )

        if fields.get("customer_name") or fields.get("customer_nit"):
            data.customer = CustomerInfo(
                name=fields.get("customer_name") or "",
                nit=fields.get("customer_nit"),
            )
        if fields.get("observations"):
            data.additional_info = AdditionalInfo(observations=fields["observations"])

        data.items = extract_items(text)
        if data.items and tax > 0 and subtotal > 0:
            effective_rate = tax / subtotal * 100
            for item in data.items:
                item.tax_rate = _round_half_up(effective_rate)
                item.tax_amount = round(item.total_price * effective_rate / 100, 2)

        if not data.items and total > 0:
            data.items.append(self._fallback_item(data, explicit_rate))

        if tax > 0:
            data.taxes.append(
                InvoiceTax(
                    type="IVA",
                    rate=explicit_rate if explicit_rate is not None else self.default_tax_rate,
                    base_amount=subtotal,
                    tax_amount=tax,
                )
            )

        logger.info(
            f"Invoice text parsed: items={len(data.items)}, "
            f"has_total={total > 0}, has_nit={bool(data.supplier.nit)}"
        )
        return data

    def parse_or_raise(self, text: Optional[str]) -> ExtractedInvoiceData:
        """
        Parse, reporting EXTRACTION_FAILED when the text is unreadable.

        Partial data is not an error; only blank text or text in which
        nothing at all was recognized is.
        """
        if not text or not text.strip():
            raise InvoiceProcessingError("EXTRACTION_FAILED", "The document contains no readable text")
        data = self.parse(text)
        if not has_usable_data(data):
            raise InvoiceProcessingError(
                "EXTRACTION_FAILED",
                "No invoice data could be recognized in the document",
                {"text_length": len(text)},
            )
        return data

    def _fallback_item(self, data: ExtractedInvoiceData, explicit_rate: Optional[float]) -> InvoiceItem:
        totals = data.totals
        amount = totals.subtotal or totals.total_amount
        if data.supplier.name:
            description = f"Purchase at {data.supplier.name}"
        else:
            description = "General expense"
        has_tax = totals.tax_amount > 0
        return InvoiceItem(
            description=description,
            quantity=1,
            unit_price=amount,
            total_price=amount,
            tax_rate=(explicit_rate or self.default_tax_rate) if has_tax else 0,
            tax_amount=totals.tax_amount if has_tax else 0,
        )
