"""
Synchronous fallback: invoice PDF -> text -> InvoiceTextParser.

Used by POST /invoices/process-pdf when the streamed acquisition is not an
option (the client already has the PDF, or only wants a one-shot request).

Sources, in priority order:
1. pdf_base64  - the PDF itself, base64 encoded
2. pdf_url     - downloaded with httpx
3. cufe_code   - the acquisition service is asked for the PDF download URL
                 (returnUrl=true), then the PDF is downloaded

Text extraction uses pdfplumber and runs in a worker thread.
"""

import asyncio
import base64
import binascii
import io
import time
from typing import Optional, Tuple

import httpx
import pdfplumber

from cufe_backend.config import settings
from cufe_backend.schemas.invoices import (
    PdfProcessingInfo,
    ProcessPdfRequest,
    ProcessPdfResponse,
)
from cufe_backend.services.cufe_codec import INVALID_FORMAT_MESSAGE, is_valid_cufe_format, normalize_cufe
from cufe_backend.services.invoice_parser import InvoiceTextParser
from cufe_backend.utils.errors import InvoiceProcessingError
from cufe_backend.utils.logging import get_logger, short_cufe

logger = get_logger(__name__)

PDF_MAGIC = b"%PDF"

DOWNLOAD_HEADERS = {
    "User-Agent": (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
    ),
    "Accept": "application/pdf,*/*",
}


def _max_pdf_bytes() -> int:
    return settings.MAX_PDF_SIZE_MB * 1024 * 1024


def decode_base64_pdf(encoded: str) -> bytes:
    """
    Decode a base64 PDF. A data-URL prefix ("data:application/pdf;base64,") is allowed.

    Raises:
        InvoiceProcessingError: PROCESSING_FAILED if the payload is not valid base64
            or exceeds MAX_PDF_SIZE_MB
    """
    if encoded.startswith("data:") and "," in encoded:
        encoded = encoded.split(",", 1)[1]
    try:
        pdf_bytes = base64.b64decode(encoded, validate=False)
    except (binascii.Error, ValueError) as e:
        raise InvoiceProcessingError("PROCESSING_FAILED", f"pdfBase64 is not valid base64: {e}") from e

    if not pdf_bytes:
        raise InvoiceProcessingError("PROCESSING_FAILED", "pdfBase64 is empty")
    if len(pdf_bytes) > _max_pdf_bytes():
        raise InvoiceProcessingError(
            "PROCESSING_FAILED",
            f"PDF exceeds the maximum size of {settings.MAX_PDF_SIZE_MB} MB",
        )
    return pdf_bytes


async def download_pdf(url: str, client: httpx.AsyncClient) -> bytes:
    """
    Download a PDF, enforcing MAX_PDF_SIZE_MB while streaming.

    Raises:
        InvoiceProcessingError: NETWORK_ERROR on transport failure or HTTP error status,
            PROCESSING_FAILED if the file is too large
    """
    limit = _max_pdf_bytes()
    logger.info("Downloading invoice PDF")

    try:
        async with client.stream(
            "GET",
            url,
            headers=DOWNLOAD_HEADERS,
            timeout=settings.PDF_DOWNLOAD_TIMEOUT_SECONDS,
            follow_redirects=True,
        ) as response:
            if response.is_error:
                raise InvoiceProcessingError(
                    "NETWORK_ERROR",
                    f"Error downloading PDF: HTTP {response.status_code}",
                    {"status_code": response.status_code},
                )

            content_type = response.headers.get("content-type", "")
            if content_type and "pdf" not in content_type:
                logger.warning(f"Unexpected content type for PDF download: {content_type}")

            buffer = bytearray()
            async for chunk in response.aiter_bytes():
                buffer.extend(chunk)
                if len(buffer) > limit:
                    raise InvoiceProcessingError(
                        "PROCESSING_FAILED",
                        f"PDF exceeds the maximum size of {settings.MAX_PDF_SIZE_MB} MB",
                    )
    except httpx.HTTPError as e:
        raise InvoiceProcessingError("NETWORK_ERROR", f"Error downloading PDF: {e}") from e

    logger.info(f"PDF downloaded: {len(buffer)} bytes")
    return bytes(buffer)


async def resolve_pdf_url(cufe: str, client: httpx.AsyncClient) -> str:
    """
    Ask the acquisition service for the download URL of the invoice PDF.

    Raises:
        InvoiceProcessingError: NETWORK_ERROR if the service fails or returns no URL
    """
    if not settings.CUFE_API_URL:
        raise InvoiceProcessingError("NETWORK_ERROR", "CUFE_API_URL is not configured")

    payload = {
        "cufe": cufe,
        "returnUrl": True,
        "maxRetries": settings.ACQUISITION_MAX_RETRIES,
    }
    if settings.CAPTCHA_API_KEY:
        payload["captchaApiKey"] = settings.CAPTCHA_API_KEY

    logger.info(f"Requesting PDF URL for CUFE {short_cufe(cufe)}")
    try:
        response = await client.post(
            settings.CUFE_API_URL,
            json=payload,
            timeout=settings.PDF_URL_TIMEOUT_SECONDS,
        )
    except httpx.HTTPError as e:
        raise InvoiceProcessingError("NETWORK_ERROR", f"Error requesting PDF URL: {e}") from e

    if response.is_error:
        raise InvoiceProcessingError(
            "NETWORK_ERROR",
            f"Error requesting PDF URL: HTTP {response.status_code}",
            {"status_code": response.status_code},
        )

    try:
        result = response.json()
    except ValueError as e:
        raise InvoiceProcessingError("NETWORK_ERROR", "Acquisition service returned invalid JSON") from e

    download_url = result.get("downloadUrl") if isinstance(result, dict) else None
    if not (isinstance(result, dict) and result.get("success") and download_url):
        reason = result.get("error") if isinstance(result, dict) else None
        raise InvoiceProcessingError(
            "NETWORK_ERROR",
            f"Could not obtain the PDF URL: {reason or 'invalid response'}",
        )
    return download_url


def extract_pdf_text(pdf_bytes: bytes) -> Tuple[str, int]:
    """
    Extract the text layer of a PDF.

    Returns:
        (text, page_count). Pages are joined with newlines.

    Raises:
        InvoiceProcessingError: EXTRACTION_FAILED if the bytes are not a readable PDF
    """
    if not pdf_bytes.lstrip()[:4].startswith(PDF_MAGIC):
        raise InvoiceProcessingError("EXTRACTION_FAILED", "The file is not a PDF document")

    try:
        text_parts = []
        with pdfplumber.open(io.BytesIO(pdf_bytes)) as pdf:
            page_count = len(pdf.pages)
            for page in pdf.pages:
                page_text = page.extract_text()
                if page_text:
                    text_parts.append(page_text)
    except Exception as e:
        logger.error(f"PDF text extraction failed: {e}", exc_info=True)
        raise InvoiceProcessingError("EXTRACTION_FAILED", f"Could not read the PDF: {e}") from e

    return "\n".join(text_parts), page_count


def source_method(request: ProcessPdfRequest) -> str:
    """Which source a request will use: base64, then url, then cufe."""
    if request.pdf_base64:
        return "base64"
    if request.pdf_url:
        return "url"
    if request.cufe_code:
        return "cufe"
    return "unknown"


class PdfInvoiceProcessor:
    """
    Runs one process-pdf request end to end.

    Args:
        http_client: Client used for downloads and the PDF URL lookup
        parser: Text parser (defaults to InvoiceTextParser())
    """

    def __init__(self, http_client: httpx.AsyncClient, parser: Optional[InvoiceTextParser] = None):
        self.http_client = http_client
        self.parser = parser or InvoiceTextParser()

    async def _load_pdf(self, method: str, request: ProcessPdfRequest) -> bytes:
        if method == "base64":
            logger.info("Using PDF from base64 payload")
            return decode_base64_pdf(request.pdf_base64)

        if method == "url":
            return await download_pdf(request.pdf_url, self.http_client)

        if method == "cufe":
            cufe = normalize_cufe(request.cufe_code)
            if not is_valid_cufe_format(cufe):
                raise InvoiceProcessingError("INVALID_CUFE", INVALID_FORMAT_MESSAGE)
            url = await resolve_pdf_url(cufe, self.http_client)
            return await download_pdf(url, self.http_client)

        raise InvoiceProcessingError("PROCESSING_FAILED", "cufeCode, pdfUrl or pdfBase64 is required")

    async def process(self, request: ProcessPdfRequest) -> ProcessPdfResponse:
        """
        Load, extract and parse. Failures are returned as an unsuccessful
        ProcessPdfResponse carrying the error code, never raised.
        """
        started = time.monotonic()
        method = source_method(request)
        try:
            pdf_bytes = await self._load_pdf(method, request)
            text, pages = await asyncio.to_thread(extract_pdf_text, pdf_bytes)
            data = self.parser.parse_or_raise(text)
        except InvoiceProcessingError as e:
            logger.warning(f"PDF processing failed ({method}): {e.code} - {e.message}")
            return ProcessPdfResponse(
                success=False,
                error=e.message,
                error_code=e.code,
                processing_info=PdfProcessingInfo(
                    method=method,
                    extraction_time=int((time.monotonic() - started) * 1000),
                ),
            )

        elapsed_ms = int((time.monotonic() - started) * 1000)
        logger.info(
            f"PDF processed via {method}: pages={pages}, text_length={len(text)}, "
            f"items={len(data.items)}, took={elapsed_ms}ms"
        )
        return ProcessPdfResponse(
            success=True,
            data=data,
            processing_info=PdfProcessingInfo(
                method=method,
                pages_processed=pages,
                text_length=len(text),
                extraction_time=elapsed_ms,
            ),
        )
