"""
Invoice processing state machine.

InvoiceProcessor drives one CUFE through the whole pipeline:

    idle -> validating -> downloading -> extracting -> success
                \\             \\            \\
                 +-------------+------------+--> error
    success/reviewing -> saving -> success   (persist)
    any -> idle                              (cancel / reset)

CRITICAL RULES:
- One processor owns one ProcessingSession. Nothing is shared between
  processors; there is no module-level state.
- start() while a run is active raises ProcessingInProgressError and leaves
  the running session untouched.
- Invalid and duplicate CUFEs fail before any network call.
- complete/error events are terminal. Events arriving after a terminal
  event, or after cancel(), are ignored.
- A failed save keeps current_invoice and suggested_expenses so persist()
  can be retried.

Every run gets its own CancellationToken. cancel() sets it, cancels the task
consuming the stream and closes the stream; the token is checked after each
await before the session is mutated.
"""

import asyncio
import re
import time
from datetime import date, datetime, timezone
from typing import AsyncIterator, Callable, Dict, List, Optional, Sequence

from cufe_backend.config import settings
from cufe_backend.schemas.acquisition import (
    AcquisitionRequest,
    AcquisitionResult,
    CompleteEvent,
    ErrorEvent,
    ProgressEvent,
    StreamEvent,
)
from cufe_backend.schemas.expenses import CategoryMappingRule, SuggestedExpense
from cufe_backend.schemas.invoices import (
    ExtractedInvoiceData,
    InvoiceDetails,
    InvoiceItem,
    InvoiceTax,
    InvoiceTotals,
    ProcessedInvoice,
    SupplierInfo,
)
from cufe_backend.schemas.processing import (
    ACTIVE_STATUSES,
    ProcessingErrorInfo,
    ProcessingSession,
)
from cufe_backend.services.acquisition_client import AcquisitionClient, AcquisitionStream
from cufe_backend.services.cufe_codec import normalize_cufe, validate_cufe
from cufe_backend.services.duplicate_gate import DuplicateGate, checker_for
from cufe_backend.services.expense_categorizer import DEFAULT_CATEGORY_RULES, build_suggested_expenses
from cufe_backend.services.invoice_parser import normalize_date
from cufe_backend.services.persistence import InvoicePersistence
from cufe_backend.utils.errors import (
    InvoiceProcessingError,
    ProcessingErrorCode,
    ProcessingInProgressError,
)
from cufe_backend.utils.logging import get_logger, short_cufe

logger = get_logger(__name__)

REVIEWABLE_STATUSES = frozenset({"success", "reviewing"})
STREAMING_STATUSES = frozenset({"downloading", "extracting"})

DOWNLOAD_STEP_KEYWORDS = ("captcha", "connect", "download")
EXTRACT_STEP_KEYWORDS = ("processing", "extract", "pars")

CANCELLED_MESSAGE = "Processing cancelled"

SessionListener = Callable[[ProcessingSession], None]


class CancellationToken:
    """Cooperative cancellation flag for one run."""

    def __init__(self):
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        self._cancelled = True


def status_for_step(step: Optional[str], current: str) -> str:
    """
    Map a server-reported step to the UI-facing state.

    captcha/connect/download steps are `downloading`; processing/ai/extract/
    parse steps are `extracting`; anything else keeps the current state.
    """
    step = (step or "").lower()
    if any(keyword in step for keyword in DOWNLOAD_STEP_KEYWORDS):
        return "downloading"
    words = re.split(r"[^a-z]+", step)
    if "ai" in words or any(keyword in step for keyword in EXTRACT_STEP_KEYWORDS):
        return "extracting"
    return current


def _iso_date(raw: Optional[str]) -> str:
    if raw:
        iso_prefix = re.match(r"\d{4}-\d{2}-\d{2}", raw.strip())
        if iso_prefix:
            return iso_prefix.group(0)
        parts = raw.split()
        normalized = normalize_date(parts[0]) if parts else None
        if normalized:
            return normalized
    return date.today().isoformat()


def build_processed_invoice(cufe: str, result: AcquisitionResult) -> ProcessedInvoice:
    """Map the `complete` payload of the acquisition service to a ProcessedInvoice."""
    details = result.invoice_details
    invoice_date = _iso_date(details.date)

    items = [
        InvoiceItem(
            description=item.description or f"Item {item.idx if item.idx is not None else index + 1}",
            quantity=item.quantity,
            unit_price=item.unit_price,
            total_price=item.total_price,
            tax_rate=item.iva_percent,
            tax_amount=item.iva_amount,
            unit=item.unit_measure,
            product_code=item.code,
        )
        for index, item in enumerate(result.items)
    ]

    # One IVA record per rate found on the items
    taxes_by_rate: Dict[float, InvoiceTax] = {}
    for item in items:
        if not item.tax_amount:
            continue
        rate = item.tax_rate if item.tax_rate is not None else 0.0
        tax = taxes_by_rate.setdefault(rate, InvoiceTax(type="IVA", rate=rate))
        tax.base_amount += item.total_price
        tax.tax_amount += item.tax_amount
    tax_total = sum(tax.tax_amount for tax in taxes_by_rate.values())

    if details.subtotal is not None:
        subtotal = details.subtotal
    elif tax_total:
        subtotal = details.total_amount - tax_total
    else:
        subtotal = details.total_amount

    nit = re.sub(r"\D", "", details.nit or "")
    extracted = ExtractedInvoiceData(
        supplier=SupplierInfo(name=details.store_name, nit=nit),
        invoice_details=InvoiceDetails(
            number=details.invoice_number or "",
            date=invoice_date,
            currency=details.currency or "COP",
        ),
        items=items,
        totals=InvoiceTotals(
            subtotal=subtotal,
            tax_amount=tax_total,
            total_amount=details.total_amount,
        ),
        taxes=list(taxes_by_rate.values()),
    )

    return ProcessedInvoice(
        cufe_code=cufe,
        supplier_name=details.store_name,
        supplier_nit=nit,
        invoice_date=invoice_date,
        total_amount=details.total_amount,
        extracted_data=extracted,
        processed_at=datetime.now(timezone.utc).isoformat(),
    )


class InvoiceProcessor:
    """
    Orchestrates CUFE validation, duplicate check, streamed acquisition and
    categorization for one user.

    Usage:
        >>> processor = InvoiceProcessor(AcquisitionClient(), duplicate_gate=gate, user_id=user_id)
        >>> session = await processor.start(cufe)
        >>> session.suggested_expenses
        [...]
        >>> invoice_id = await processor.persist()

    Args:
        acquisition_client: Opens the acquisition event stream
        duplicate_gate: Optional duplicate lookup (skipped when None or
            when user_id is None)
        user_id: Owner of the invoices, scopes the duplicate lookup
        persistence: Collaborator used by persist()
        rules: Supplier categorization rules
        timeout: Default deadline in seconds for one acquisition
    """

    def __init__(
        self,
        acquisition_client: AcquisitionClient,
        duplicate_gate: Optional[DuplicateGate] = None,
        user_id: Optional[str] = None,
        persistence: Optional[InvoicePersistence] = None,
        rules: Sequence[CategoryMappingRule] = DEFAULT_CATEGORY_RULES,
        timeout: Optional[float] = None,
    ):
        self.acquisition_client = acquisition_client
        self.duplicate_gate = duplicate_gate
        self.user_id = user_id
        self.persistence = persistence
        self.rules = rules
        self.timeout = timeout if timeout is not None else settings.ACQUISITION_TIMEOUT_SECONDS

        self._session = ProcessingSession()
        self._token: Optional[CancellationToken] = None
        self._stream: Optional[AcquisitionStream] = None
        self._consumer: Optional[asyncio.Task] = None
        self._cufe = ""
        self._started_at: Optional[float] = None
        self._listeners: List[SessionListener] = []

    # --- State ---

    @property
    def session(self) -> ProcessingSession:
        """Copy of the current session; mutating it does not affect the processor."""
        return self._session.model_copy(deep=True)

    @property
    def is_active(self) -> bool:
        return self._session.status in ACTIVE_STATUSES

    def subscribe(self, listener: SessionListener) -> Callable[[], None]:
        """Call `listener` with a snapshot after every change. Returns an unsubscribe function."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _update(self, **changes) -> None:
        previous = self._session.status
        self._session = self._session.model_copy(update=changes)
        if self._session.status != previous:
            logger.info(f"Session {previous} -> {self._session.status} (CUFE {short_cufe(self._cufe)})")
        self._notify()

    def _replace(self, session: ProcessingSession) -> None:
        previous = self._session.status
        self._session = session
        if session.status != previous:
            logger.info(f"Session {previous} -> {session.status} (CUFE {short_cufe(self._cufe)})")
        self._notify()

    def _notify(self) -> None:
        for listener in list(self._listeners):
            listener(self.session)

    def _elapsed(self) -> Optional[float]:
        if self._started_at is None:
            return None
        return round(time.monotonic() - self._started_at, 3)

    def _fail(
        self,
        code: ProcessingErrorCode,
        message: str,
        details: Optional[dict] = None,
    ) -> InvoiceProcessingError:
        logger.warning(f"Processing failed for CUFE {short_cufe(self._cufe)}: {code} - {message}")
        self._update(
            status="error",
            error=ProcessingErrorInfo(code=code, message=message),
            message="Processing error",
            details=message,
            processing_time=self._elapsed(),
        )
        return InvoiceProcessingError(code, message, details)

    # --- Acquisition ---

    async def start(
        self,
        code: str,
        *,
        max_retries: Optional[int] = None,
        captcha_api_key: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> ProcessingSession:
        """
        Process one CUFE end to end.

        Args:
            code: CUFE as typed, pasted or extracted from a QR
            max_retries: Captcha retries for the acquisition service
            captcha_api_key: Key forwarded to the acquisition service
            timeout: Deadline in seconds (defaults to the processor timeout)

        Returns:
            The final session: `success` with the invoice and suggested
            expenses, or `idle` if the run was cancelled.

        Raises:
            ProcessingInProgressError: A run is already active
            InvoiceProcessingError: INVALID_CUFE, DUPLICATE_CUFE,
                NETWORK_ERROR or PROCESSING_FAILED; the session is left in
                `error` with the same code
        """
        if self.is_active:
            raise ProcessingInProgressError()

        token = CancellationToken()
        self._token = token
        self._cufe = normalize_cufe(code)
        self._started_at = time.monotonic()
        self._replace(ProcessingSession(status="validating", message="Validating CUFE code..."))

        # Step 1: format + duplicate check (no network call to the acquisition service)
        checker = None
        if self.duplicate_gate is not None and self.user_id:
            checker = checker_for(self.duplicate_gate, self.user_id)
        validation = await validate_cufe(code, checker)
        if token.cancelled:
            return self.session
        if not validation.is_valid:
            raise self._fail(validation.error_code or "INVALID_CUFE", validation.error or "Invalid CUFE")

        # Step 2: open the stream
        self._update(
            status="downloading",
            progress=5,
            message="Starting processing...",
            details="Connecting to the processing server",
        )
        request = AcquisitionRequest(
            cufe=self._cufe,
            max_retries=max_retries if max_retries is not None else settings.ACQUISITION_MAX_RETRIES,
            captcha_api_key=captcha_api_key or settings.CAPTCHA_API_KEY or None,
        )
        try:
            stream = await self.acquisition_client.open(request)
        except InvoiceProcessingError as e:
            if token.cancelled:
                return self.session
            raise self._fail(e.code, e.message, e.details) from e
        except Exception as e:
            if token.cancelled:
                return self.session
            raise self._fail("PROCESSING_FAILED", str(e) or type(e).__name__) from e

        self._stream = stream
        if token.cancelled:
            await self._close_stream()
            return self.session

        # Step 3: consume events until a terminal one, under the deadline
        deadline = timeout if timeout is not None else self.timeout
        self._consumer = asyncio.ensure_future(self._consume(stream, token))
        try:
            await asyncio.wait_for(self._consumer, timeout=deadline)
        except asyncio.TimeoutError:
            if token.cancelled:
                return self.session
            raise self._fail(
                "NETWORK_ERROR",
                f"The acquisition did not finish within {deadline:g} seconds",
            )
        except asyncio.CancelledError:
            if token.cancelled:
                return self.session
            # The caller went away: stop the run instead of leaving it active
            token.cancel()
            self._replace(ProcessingSession(status="idle", message=CANCELLED_MESSAGE))
            raise
        except InvoiceProcessingError as e:
            if token.cancelled:
                return self.session
            raise self._fail(e.code, e.message, e.details) from e
        except Exception as e:
            if token.cancelled:
                return self.session
            logger.error(f"Unexpected failure processing {short_cufe(self._cufe)}: {e}", exc_info=True)
            raise self._fail("PROCESSING_FAILED", str(e) or type(e).__name__) from e
        finally:
            self._consumer = None
            await self._close_stream()

        session = self._session
        if session.status == "error" and session.error is not None:
            raise InvoiceProcessingError(session.error.code, session.error.message)
        return self.session

    async def _consume(self, stream: AcquisitionStream, token: CancellationToken) -> None:
        async for event in stream:
            self.handle_event(event)
            if token.cancelled or self._session.status not in STREAMING_STATUSES:
                return
        if not token.cancelled:
            raise InvoiceProcessingError(
                "NETWORK_ERROR",
                "The acquisition stream ended before the invoice was processed",
            )

    def handle_event(self, event: StreamEvent) -> bool:
        """
        Apply one stream event to the session.

        Returns:
            True if the event changed the session; False if it was ignored
            (no active stream, run cancelled, or a terminal event was already
            applied).
        """
        token = self._token
        if token is None or token.cancelled:
            return False
        if self._session.status not in STREAMING_STATUSES:
            return False

        if isinstance(event, ProgressEvent):
            self._update(
                status=status_for_step(event.step, self._session.status),
                progress=event.progress,
                message=event.message,
                details=event.details or "",
                captcha_info=event.captcha,
                processing_time=event.processing_time,
            )
            return True

        if isinstance(event, CompleteEvent):
            self._complete(event.result)
            return True

        if isinstance(event, ErrorEvent):
            self._fail("PROCESSING_FAILED", event.error)
            return True

        return False

    def _complete(self, result: AcquisitionResult) -> None:
        invoice = build_processed_invoice(self._cufe, result)
        data = invoice.extracted_data
        expenses = build_suggested_expenses(
            data.items,
            data.invoice_details,
            supplier_name=invoice.supplier_name,
            total_amount=invoice.total_amount,
            rules=self.rules,
            supplier_nit=invoice.supplier_nit,
        )
        logger.info(
            f"Invoice {short_cufe(self._cufe)} processed: "
            f"items={len(data.items)}, suggested_expenses={len(expenses)}"
        )
        self._update(
            status="success",
            progress=100,
            message="Processing completed successfully",
            details=f"{len(expenses)} expenses extracted",
            current_invoice=invoice,
            suggested_expenses=expenses,
            error=None,
            items_found=result.processing_info.items_found or len(data.items),
            processing_time=result.processing_info.total_time or self._elapsed(),
        )

    async def run_to_completion(self, code: str, **options) -> AsyncIterator[ProcessingSession]:
        """
        Run start() and yield every session snapshot as it happens.

        The last snapshot is terminal (`success`, `error` or `idle` when
        cancelled). Failures are reported through that snapshot, not raised.
        Closing the iterator early cancels the run.

        Raises:
            ProcessingInProgressError: A run is already active
        """
        if self.is_active:
            raise ProcessingInProgressError()

        queue: asyncio.Queue = asyncio.Queue()
        unsubscribe = self.subscribe(queue.put_nowait)
        task = asyncio.ensure_future(self.start(code, **options))
        task.add_done_callback(lambda _: queue.put_nowait(None))
        try:
            while True:
                snapshot = await queue.get()
                if snapshot is None:
                    break
                yield snapshot
            if not task.cancelled() and task.exception() is not None:
                error = task.exception()
                if not isinstance(error, InvoiceProcessingError):
                    logger.error(f"Unexpected processing failure: {error}", exc_info=error)
        finally:
            unsubscribe()
            if not task.done():
                await self.cancel()
                task.cancel()

    async def cancel(self) -> ProcessingSession:
        """
        Abort the current run and return to `idle`.

        Later events from the stream are ignored; no invoice or suggestions
        are kept.
        """
        if self._token is not None:
            self._token.cancel()
        if self._consumer is not None and not self._consumer.done():
            self._consumer.cancel()
        logger.info(f"Processing cancelled for CUFE {short_cufe(self._cufe)}")
        self._replace(ProcessingSession(status="idle", message=CANCELLED_MESSAGE))
        await self._close_stream()
        return self.session

    async def reset(self) -> ProcessingSession:
        """Forget the current session (cancelling a running one)."""
        if self.is_active:
            await self.cancel()
        self._token = None
        self._cufe = ""
        self._started_at = None
        self._replace(ProcessingSession())
        return self.session

    async def _close_stream(self) -> None:
        stream, self._stream = self._stream, None
        if stream is not None:
            await stream.aclose()

    # --- Review ---

    def _reviewable(self) -> bool:
        session = self._session
        if session.current_invoice is None:
            return False
        if session.status in REVIEWABLE_STATUSES:
            return True
        return session.status == "error" and session.error is not None and session.error.code == "SAVE_FAILED"

    def _require_reviewable(self) -> None:
        if self.is_active:
            raise ProcessingInProgressError()
        if not self._reviewable():
            raise InvoiceProcessingError("PROCESSING_FAILED", "There is no processed invoice to review")

    def update_suggested_expense(self, expense_id: str, **changes) -> SuggestedExpense:
        """Edit one suggestion (amount, category, description, ...)."""
        self._require_reviewable()
        expenses = list(self._session.suggested_expenses)
        for index, expense in enumerate(expenses):
            if expense.id == expense_id:
                updated = SuggestedExpense.model_validate({**expense.model_dump(), **changes, "id": expense_id})
                expenses[index] = updated
                self._update(status="reviewing", suggested_expenses=expenses)
                return updated.model_copy(deep=True)
        raise KeyError(expense_id)

    def remove_suggested_expense(self, expense_id: str) -> None:
        self._require_reviewable()
        expenses = [e for e in self._session.suggested_expenses if e.id != expense_id]
        if len(expenses) == len(self._session.suggested_expenses):
            raise KeyError(expense_id)
        self._update(status="reviewing", suggested_expenses=expenses)

    def add_suggested_expense(self, expense: SuggestedExpense) -> SuggestedExpense:
        """Append a manual suggestion; a clashing id is replaced by a fresh one."""
        self._require_reviewable()
        existing = {e.id for e in self._session.suggested_expenses}
        if expense.id in existing:
            suffix = len(existing) + 1
            while f"manual-{suffix}" in existing:
                suffix += 1
            expense = expense.model_copy(update={"id": f"manual-{suffix}"})
        self._update(
            status="reviewing",
            suggested_expenses=[*self._session.suggested_expenses, expense],
        )
        return expense.model_copy(deep=True)

    # --- Persistence ---

    async def persist(self, expenses: Optional[List[SuggestedExpense]] = None) -> str:
        """
        Save the processed invoice and the reviewed expenses.

        Args:
            expenses: Expenses to create (defaults to the current suggestions)

        Returns:
            Id of the saved invoice

        Raises:
            ProcessingInProgressError: A run is active
            InvoiceProcessingError: SAVE_FAILED. When the collaborator
                fails the session keeps the invoice and suggestions, so the
                call can be retried.
        """
        if self.persistence is None:
            raise InvoiceProcessingError("SAVE_FAILED", "No persistence collaborator configured")
        self._require_reviewable()

        invoice = self._session.current_invoice
        to_save = list(expenses) if expenses is not None else list(self._session.suggested_expenses)
        token = CancellationToken()
        self._token = token
        self._update(status="saving", message="Saving invoice...", details="", error=None)

        try:
            invoice_id = await self.persistence.save(invoice)
            if to_save:
                await self.persistence.create_expenses(invoice_id, to_save)
        except Exception as e:
            logger.error(f"Failed to save invoice {short_cufe(invoice.cufe_code)}: {e}", exc_info=True)
            if not token.cancelled:
                self._update(
                    status="error",
                    error=ProcessingErrorInfo(code="SAVE_FAILED", message=str(e)),
                    message="Could not save the invoice",
                    details=str(e),
                )
            raise InvoiceProcessingError("SAVE_FAILED", f"Could not save the invoice: {e}") from e

        if not token.cancelled:
            self._update(
                status="success",
                message="Invoice saved",
                details=f"{len(to_save)} expenses created",
                suggested_expenses=to_save,
            )
        logger.info(f"Invoice {short_cufe(invoice.cufe_code)} saved with id {invoice_id}")
        return invoice_id
