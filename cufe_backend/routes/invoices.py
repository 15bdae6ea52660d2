"""
Electronic invoice API endpoints.

Flow:
1. POST/GET /invoices/validate-cufe - Quick check: CUFE format + already registered?
2. POST /invoices/process           - Streamed acquisition (text/event-stream of
                                      session snapshots: progress, then complete or error)
3. POST /invoices/process-pdf       - One-shot fallback: PDF (base64, URL or CUFE) -> parsed data

Nothing here persists invoices. The review and save steps belong to the
bookkeeping side, which receives the suggested expenses.
"""

import logging
from typing import Annotated, AsyncIterator, Optional

import httpx
from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import JSONResponse, StreamingResponse

from cufe_backend.auth.dependencies import AuthenticatedUser, get_authenticated_user
from cufe_backend.db.client import get_supabase_client
from cufe_backend.schemas.invoices import ProcessPdfRequest, ProcessPdfResponse
from cufe_backend.schemas.processing import (
    CufeValidateRequest,
    CufeValidateResponse,
    CufeValidationDetails,
    ProcessInvoiceRequest,
    ProcessingSession,
    QrProcessingInfo,
)
from cufe_backend.services.acquisition_client import AcquisitionClient
from cufe_backend.services.cufe_codec import (
    extract_cufe_from_qr,
    looks_like_invoice_qr,
    normalize_cufe,
    qr_confidence,
    validate_cufe,
)
from cufe_backend.services.duplicate_gate import DuplicateGate, SupabaseDuplicateGate, checker_for
from cufe_backend.services.invoice_processor import InvoiceProcessor
from cufe_backend.services.pdf_processing import PdfInvoiceProcessor

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/invoices", tags=["invoices"])

QR_EXTRACTION_FAILED_MESSAGE = "Could not extract a valid CUFE from the QR content"

# HTTP status for unsuccessful process-pdf responses, by error code
PDF_ERROR_STATUS = {
    "INVALID_CUFE": status.HTTP_400_BAD_REQUEST,
    "NETWORK_ERROR": status.HTTP_502_BAD_GATEWAY,
    "EXTRACTION_FAILED": status.HTTP_422_UNPROCESSABLE_ENTITY,
}


# --- Dependencies ---

def get_duplicate_gate(
    auth_user: Annotated[AuthenticatedUser, Depends(get_authenticated_user)]
) -> DuplicateGate:
    """Duplicate lookups run with the caller's token so RLS scopes them."""
    return SupabaseDuplicateGate(get_supabase_client(auth_user.access_token))


def get_acquisition_client() -> AcquisitionClient:
    return AcquisitionClient()


async def get_pdf_processor() -> AsyncIterator[PdfInvoiceProcessor]:
    async with httpx.AsyncClient() as http_client:
        yield PdfInvoiceProcessor(http_client)


# --- Helpers ---

def format_sse(event: str, data: str) -> str:
    """Encode one server-sent event."""
    return f"event: {event}\ndata: {data}\n\n"


def event_name_for(snapshot: ProcessingSession) -> str:
    if snapshot.status == "success":
        return "complete"
    if snapshot.status == "error":
        return "error"
    return "progress"


async def session_events(
    processor: InvoiceProcessor,
    cufe: str,
    max_retries: Optional[int] = None,
) -> AsyncIterator[str]:
    """Relay every session snapshot of one run as an SSE event."""
    async for snapshot in processor.run_to_completion(cufe, max_retries=max_retries):
        yield format_sse(event_name_for(snapshot), snapshot.model_dump_json())


async def _validate_for_user(
    original: str,
    gate: DuplicateGate,
    user_id: str,
    qr_processing: Optional[QrProcessingInfo] = None,
) -> CufeValidateResponse:
    result = await validate_cufe(original, checker_for(gate, user_id))

    if result.error_code == "NETWORK_ERROR":
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail={
                "error": "duplicate_check_failed",
                "details": result.error,
            }
        )

    return CufeValidateResponse(
        valid=result.is_valid,
        cufe_code=normalize_cufe(original),
        original_cufe=original,
        validation=CufeValidationDetails(
            format_valid=result.format_valid,
            already_exists=result.already_exists,
            error_message=result.error,
        ),
        qr_processing=qr_processing,
    )


# --- Endpoints ---

@router.post(
    "/validate-cufe",
    response_model=CufeValidateResponse,
    status_code=status.HTTP_200_OK,
    summary="Validate a CUFE code or QR payload",
    description="""
    Validates the format of a CUFE and checks whether the authenticated user
    already registered it. Accepts the CUFE itself or the raw QR text (DIAN
    portal URL, JSON, key/value payload).

    Does NOT process or store the invoice.
    """
)
async def validate_cufe_code(
    request: CufeValidateRequest,
    auth_user: Annotated[AuthenticatedUser, Depends(get_authenticated_user)],
    gate: Annotated[DuplicateGate, Depends(get_duplicate_gate)],
) -> CufeValidateResponse:
    """
    Step 1: Auth - get_authenticated_user dependency
    Step 2: Validate request - one of cufe_code / qr_content
    Step 3: Extract the CUFE from the QR when no code was typed
    Step 4: Format + duplicate check
    """
    if not request.cufe_code and not request.qr_content:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={
                "error": "invalid_request",
                "details": "cufe_code or qr_content is required"
            }
        )

    original = request.cufe_code
    qr_processing = None

    if request.qr_content:
        extracted = extract_cufe_from_qr(request.qr_content)
        qr_processing = QrProcessingInfo(
            cufe_extracted=extracted is not None,
            looks_like_invoice_qr=looks_like_invoice_qr(request.qr_content),
            confidence=qr_confidence(request.qr_content),
        )

        if not original:
            if extracted is None:
                logger.info(f"No CUFE found in QR content for user_id={auth_user.user_id}")
                return CufeValidateResponse(
                    success=False,
                    valid=False,
                    cufe_code="",
                    original_cufe="",
                    validation=CufeValidationDetails(
                        format_valid=False,
                        already_exists=False,
                        error_message=QR_EXTRACTION_FAILED_MESSAGE,
                    ),
                    qr_processing=qr_processing,
                )
            original = extracted

    return await _validate_for_user(original, gate, auth_user.user_id, qr_processing)


@router.get(
    "/validate-cufe",
    response_model=CufeValidateResponse,
    status_code=status.HTTP_200_OK,
    summary="Validate a CUFE code (query string)",
)
async def validate_cufe_query(
    auth_user: Annotated[AuthenticatedUser, Depends(get_authenticated_user)],
    gate: Annotated[DuplicateGate, Depends(get_duplicate_gate)],
    cufe: Annotated[Optional[str], Query(description="CUFE to validate")] = None,
) -> CufeValidateResponse:
    """Same check as the POST variant for a CUFE passed as ?cufe=..."""
    if not cufe or not cufe.strip():
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={
                "error": "invalid_request",
                "details": "Query parameter 'cufe' is required"
            }
        )

    return await _validate_for_user(cufe.strip(), gate, auth_user.user_id)


@router.post(
    "/process",
    status_code=status.HTTP_200_OK,
    summary="Process an invoice by CUFE (streamed)",
    response_class=StreamingResponse,
    description="""
    Runs the full acquisition for one CUFE and streams the processing
    session as server-sent events:

    - `progress`: validating / downloading / extracting snapshots
    - `complete`: final snapshot with current_invoice and suggested_expenses
    - `error`: final snapshot with error.code (INVALID_CUFE, DUPLICATE_CUFE,
      NETWORK_ERROR, PROCESSING_FAILED)

    Disconnecting cancels the acquisition.
    """
)
async def process_invoice(
    request: ProcessInvoiceRequest,
    auth_user: Annotated[AuthenticatedUser, Depends(get_authenticated_user)],
    gate: Annotated[DuplicateGate, Depends(get_duplicate_gate)],
    acquisition_client: Annotated[AcquisitionClient, Depends(get_acquisition_client)],
) -> StreamingResponse:
    """
    Step 1: Auth - get_authenticated_user dependency
    Step 2: Resolve the CUFE (typed, or extracted from the QR)
    Step 3: Stream a per-request InvoiceProcessor run
    """
    cufe = request.cufe_code
    if not cufe and request.qr_content:
        cufe = extract_cufe_from_qr(request.qr_content)
        if not cufe:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail={
                    "error": "invalid_qr",
                    "details": QR_EXTRACTION_FAILED_MESSAGE
                }
            )

    if not cufe:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={
                "error": "invalid_request",
                "details": "cufe_code or qr_content is required"
            }
        )

    logger.info(f"Starting streamed invoice processing for user_id={auth_user.user_id}")
    processor = InvoiceProcessor(
        acquisition_client,
        duplicate_gate=gate,
        user_id=auth_user.user_id,
    )

    return StreamingResponse(
        session_events(processor, cufe, request.max_retries),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@router.post(
    "/process-pdf",
    response_model=ProcessPdfResponse,
    status_code=status.HTTP_200_OK,
    summary="Extract invoice data from a PDF",
    description="""
    Synchronous fallback. Provide ONE of (camelCase or snake_case):
    - pdfBase64: the PDF itself
    - pdfUrl: a downloadable PDF
    - cufeCode: the PDF URL is obtained from the acquisition service

    Unsuccessful responses keep the same shape with success=false, error
    and error_code.
    """
)
async def process_invoice_pdf(
    request: ProcessPdfRequest,
    auth_user: Annotated[AuthenticatedUser, Depends(get_authenticated_user)],
    processor: Annotated[PdfInvoiceProcessor, Depends(get_pdf_processor)],
):
    """
    Step 1: Auth - get_authenticated_user dependency
    Step 2: Validate request - at least one PDF source
    Step 3: Load PDF, extract text, parse
    Step 4: Map failures to an HTTP status, keeping the response body
    """
    if not request.has_source():
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={
                "error": "invalid_request",
                "details": "cufeCode, pdfUrl or pdfBase64 is required"
            }
        )

    try:
        response = await processor.process(request)
    except Exception as e:
        logger.error(f"Unexpected error processing PDF for user_id={auth_user.user_id}: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={
                "error": "processing_error",
                "details": "Failed to process invoice PDF"
            }
        )

    if response.success:
        return response

    return JSONResponse(
        status_code=PDF_ERROR_STATUS.get(response.error_code, status.HTTP_500_INTERNAL_SERVER_ERROR),
        content=response.model_dump(mode="json"),
    )
