"""
Tests for the /invoices endpoints.

Auth, the duplicate gate, the acquisition client and the PDF processor are
replaced through app.dependency_overrides:
- Happy paths: validate-cufe, streamed process, process-pdf
- Failure paths: missing token -> 401, missing input -> 400,
  unknown fields -> 422, error codes mapped to HTTP statuses
"""

import json
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from cufe_backend.auth.dependencies import AuthenticatedUser, get_authenticated_user
from cufe_backend.main import app
from cufe_backend.routes.invoices import get_acquisition_client, get_duplicate_gate, get_pdf_processor
from cufe_backend.schemas.acquisition import AcquisitionResult, CompleteEvent, ProgressEvent
from cufe_backend.schemas.invoices import PdfProcessingInfo, ProcessPdfResponse
from cufe_backend.services.invoice_parser import InvoiceTextParser

DIAN_URL = "https://catalogo-vpfe.dian.gov.co/document/searchqr?documentkey={}"


class FakeStream:
    def __init__(self, events):
        self._events = list(events)

    def __aiter__(self):
        return self

    async def __anext__(self):
        if not self._events:
            raise StopAsyncIteration
        return self._events.pop(0)

    async def aclose(self):
        self._events = []


class FakeAcquisitionClient:
    def __init__(self):
        self.requests = []

    async def open(self, request):
        self.requests.append(request)
        return FakeStream([
            ProgressEvent(step="connect", progress=10, message="Connecting"),
            ProgressEvent(step="ai_extraction", progress=80, message="Extracting"),
            CompleteEvent(result=AcquisitionResult.model_validate({
                "invoice_details": {"storeName": "ACME SAS", "nit": "900123456", "date": "2024-01-15", "total_amount": 119000},
                "items": [{"description": "Servicio X", "quantity": 1, "unit_price": 100000, "total_price": 100000}],
            })),
        ])


def parse_sse(body: str):
    """Split a text/event-stream body into (event, data) pairs."""
    events = []
    for block in body.strip().split("\n\n"):
        name, data = "message", ""
        for line in block.splitlines():
            if line.startswith("event: "):
                name = line[len("event: "):]
            elif line.startswith("data: "):
                data = line[len("data: "):]
        events.append((name, json.loads(data)))
    return events


@pytest.fixture
def client():
    """Create test client for FastAPI app."""
    return TestClient(app)


@pytest.fixture
def duplicate_gate():
    gate = MagicMock()
    gate.exists = AsyncMock(return_value=False)
    return gate


@pytest.fixture
def acquisition_client():
    return FakeAcquisitionClient()


@pytest.fixture
def pdf_processor():
    processor = MagicMock()
    processor.process = AsyncMock()
    return processor


@pytest.fixture
def overrides(duplicate_gate, acquisition_client, pdf_processor):
    """Authenticated user plus fake collaborators."""
    app.dependency_overrides[get_authenticated_user] = lambda: AuthenticatedUser(
        user_id="test-user-uuid-123", access_token="test-token"
    )
    app.dependency_overrides[get_duplicate_gate] = lambda: duplicate_gate
    app.dependency_overrides[get_acquisition_client] = lambda: acquisition_client
    app.dependency_overrides[get_pdf_processor] = lambda: pdf_processor

    yield

    app.dependency_overrides.clear()


@pytest.fixture
def unauthenticated(duplicate_gate, acquisition_client, pdf_processor):
    """Fake collaborators but the real auth dependency."""
    app.dependency_overrides[get_duplicate_gate] = lambda: duplicate_gate
    app.dependency_overrides[get_acquisition_client] = lambda: acquisition_client
    app.dependency_overrides[get_pdf_processor] = lambda: pdf_processor

    yield

    app.dependency_overrides.clear()


class TestValidateCufe:
    """Tests for POST/GET /invoices/validate-cufe."""

    def test_valid_code(self, client, overrides, duplicate_gate, valid_cufe):
        response = client.post("/invoices/validate-cufe", json={"cufe_code": valid_cufe.upper()})

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["valid"] is True
        assert body["cufe_code"] == valid_cufe
        assert body["original_cufe"] == valid_cufe.upper()
        assert body["validation"]["format_valid"] is True
        assert body["validation"]["already_exists"] is False
        duplicate_gate.exists.assert_awaited_once_with("test-user-uuid-123", valid_cufe)

    def test_duplicate(self, client, overrides, duplicate_gate, valid_cufe):
        duplicate_gate.exists.return_value = True

        body = client.post("/invoices/validate-cufe", json={"cufe_code": valid_cufe}).json()

        assert body["valid"] is False
        assert body["validation"]["format_valid"] is True
        assert body["validation"]["already_exists"] is True
        assert "already exists" in body["validation"]["error_message"]

    def test_bad_format(self, client, overrides, duplicate_gate):
        body = client.post("/invoices/validate-cufe", json={"cufe_code": "12345"}).json()

        assert body["valid"] is False
        assert body["validation"]["format_valid"] is False
        duplicate_gate.exists.assert_not_called()

    def test_qr_content(self, client, overrides, valid_cufe):
        body = client.post("/invoices/validate-cufe", json={"qr_content": DIAN_URL.format(valid_cufe)}).json()

        assert body["valid"] is True
        assert body["cufe_code"] == valid_cufe
        assert body["qr_processing"]["cufe_extracted"] is True
        assert body["qr_processing"]["looks_like_invoice_qr"] is True

    def test_qr_without_cufe(self, client, overrides):
        response = client.post("/invoices/validate-cufe", json={"qr_content": "https://example.com/menu"})

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is False
        assert body["valid"] is False
        assert body["cufe_code"] == ""
        assert body["qr_processing"]["cufe_extracted"] is False

    def test_missing_input(self, client, overrides):
        response = client.post("/invoices/validate-cufe", json={})

        assert response.status_code == 400
        assert response.json()["detail"]["error"] == "invalid_request"

    def test_duplicate_check_failure(self, client, overrides, duplicate_gate, valid_cufe):
        duplicate_gate.exists.side_effect = RuntimeError("db down")

        response = client.post("/invoices/validate-cufe", json={"cufe_code": valid_cufe})

        assert response.status_code == 502
        assert response.json()["detail"]["error"] == "duplicate_check_failed"

    def test_query_variant(self, client, overrides, valid_cufe):
        response = client.get("/invoices/validate-cufe", params={"cufe": valid_cufe})

        assert response.status_code == 200
        assert response.json()["valid"] is True

    def test_query_variant_requires_cufe(self, client, overrides):
        assert client.get("/invoices/validate-cufe").status_code == 400

    def test_missing_token(self, client, unauthenticated, valid_cufe):
        response = client.post("/invoices/validate-cufe", json={"cufe_code": valid_cufe})

        assert response.status_code == 401
        assert response.json()["detail"]["error"] == "unauthorized"


class TestProcessInvoice:
    """Tests for POST /invoices/process (server-sent events)."""

    def test_streams_progress_then_complete(self, client, overrides, acquisition_client, valid_cufe):
        response = client.post("/invoices/process", json={"cufe_code": valid_cufe, "max_retries": 2})

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")

        events = parse_sse(response.text)
        names = [name for name, _ in events]
        assert names[0] == "progress"
        assert names[-1] == "complete"
        assert names.count("complete") == 1

        final = events[-1][1]
        assert final["status"] == "success"
        assert final["current_invoice"]["supplier_name"] == "ACME SAS"
        assert final["suggested_expenses"][0]["amount"] == 100000.0

        assert acquisition_client.requests[0].max_retries == 2

    def test_qr_content_is_accepted(self, client, overrides, valid_cufe):
        response = client.post("/invoices/process", json={"qr_content": DIAN_URL.format(valid_cufe)})

        assert parse_sse(response.text)[-1][0] == "complete"

    def test_invalid_cufe_streams_error(self, client, overrides, acquisition_client):
        response = client.post("/invoices/process", json={"cufe_code": "12345"})

        assert response.status_code == 200
        name, data = parse_sse(response.text)[-1]
        assert name == "error"
        assert data["error"]["code"] == "INVALID_CUFE"
        assert acquisition_client.requests == []

    def test_duplicate_streams_error(self, client, overrides, duplicate_gate, valid_cufe):
        duplicate_gate.exists.return_value = True

        name, data = parse_sse(client.post("/invoices/process", json={"cufe_code": valid_cufe}).text)[-1]

        assert name == "error"
        assert data["error"]["code"] == "DUPLICATE_CUFE"

    def test_unreadable_qr(self, client, overrides):
        response = client.post("/invoices/process", json={"qr_content": "hello"})

        assert response.status_code == 400
        assert response.json()["detail"]["error"] == "invalid_qr"

    def test_missing_input(self, client, overrides):
        response = client.post("/invoices/process", json={})
        assert response.status_code == 400

    def test_unknown_fields_are_rejected(self, client, overrides, valid_cufe):
        response = client.post("/invoices/process", json={"cufe_code": valid_cufe, "user_id": "someone-else"})

        assert response.status_code == 422
        assert response.json()["error"] == "validation_error"

    def test_missing_token(self, client, unauthenticated, valid_cufe):
        assert client.post("/invoices/process", json={"cufe_code": valid_cufe}).status_code == 401


class TestProcessPdf:
    """Tests for POST /invoices/process-pdf."""

    def test_success(self, client, overrides, pdf_processor, happy_path_text):
        pdf_processor.process.return_value = ProcessPdfResponse(
            success=True,
            data=InvoiceTextParser().parse(happy_path_text),
            processing_info=PdfProcessingInfo(method="url", pages_processed=1, text_length=len(happy_path_text)),
        )

        response = client.post("/invoices/process-pdf", json={"pdfUrl": "http://files.test/invoice.pdf"})

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["data"]["totals"]["total_amount"] == 119000.0
        assert body["processing_info"]["method"] == "url"

        sent = pdf_processor.process.await_args.args[0]
        assert sent.pdf_url == "http://files.test/invoice.pdf"

    @pytest.mark.parametrize(
        "error_code,expected_status",
        [
            ("INVALID_CUFE", 400),
            ("NETWORK_ERROR", 502),
            ("EXTRACTION_FAILED", 422),
            ("PROCESSING_FAILED", 500),
        ],
    )
    def test_failures_keep_the_response_shape(self, client, overrides, pdf_processor, error_code, expected_status):
        pdf_processor.process.return_value = ProcessPdfResponse(
            success=False,
            error="Something went wrong",
            error_code=error_code,
        )

        response = client.post("/invoices/process-pdf", json={"cufeCode": "abc"})

        assert response.status_code == expected_status
        body = response.json()
        assert body["success"] is False
        assert body["error_code"] == error_code

    def test_missing_source(self, client, overrides, pdf_processor):
        response = client.post("/invoices/process-pdf", json={})

        assert response.status_code == 400
        pdf_processor.process.assert_not_called()

    def test_unexpected_error(self, client, overrides, pdf_processor):
        pdf_processor.process.side_effect = RuntimeError("boom")

        response = client.post("/invoices/process-pdf", json={"pdfBase64": "JVBERi0="})

        assert response.status_code == 500
        assert response.json()["detail"]["error"] == "processing_error"

    def test_missing_token(self, client, unauthenticated):
        response = client.post("/invoices/process-pdf", json={"pdfBase64": "JVBERi0="})
        assert response.status_code == 401

    def test_only_post_is_allowed(self, client, overrides):
        assert client.get("/invoices/process-pdf").status_code == 405
