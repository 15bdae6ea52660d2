"""
Tests for the acquisition stream client.

The HTTP side is exercised with httpx.MockTransport, so no sockets are opened.
"""

import json

import httpx
import pytest

from cufe_backend.schemas.acquisition import AcquisitionRequest, CompleteEvent, ErrorEvent, ProgressEvent
from cufe_backend.services.acquisition_client import AcquisitionClient, iter_sse, parse_stream_event
from cufe_backend.utils.errors import InvoiceProcessingError

API_URL = "http://acquisition.test/api/cufe"

COMPLETE_PAYLOAD = {
    "result": {
        "invoice_details": {"storeName": "ACME SAS", "nit": 900123456, "date": "2024-01-15", "total_amount": "119,000"},
        "items": [{"description": "Servicio X", "quantity": 1, "unit_price": 100000, "total_price": 100000, "iva_percent": 19}],
        "processing_info": {"total_time": 12.5, "items_found": 1},
    }
}


def _sse(*events) -> str:
    chunks = [f"event: {name}\ndata: {json.dumps(data)}\n\n" for name, data in events]
    return "".join(chunks)


async def _lines(*lines):
    for line in lines:
        yield line


async def _collect(agen):
    return [item async for item in agen]


class TestIterSse:
    @pytest.mark.asyncio
    async def test_groups_lines_into_events(self):
        events = await _collect(iter_sse(_lines(
            "event: progress",
            'data: {"step": "connect"}',
            "",
            ": keep-alive",
            "",
            "event: error",
            'data: {"error": "boom"}',
            "",
        )))

        assert events == [("progress", '{"step": "connect"}'), ("error", '{"error": "boom"}')]

    @pytest.mark.asyncio
    async def test_multiline_data_and_default_name(self):
        events = await _collect(iter_sse(_lines("data: first", "data: second", "")))
        assert events == [("message", "first\nsecond")]

    @pytest.mark.asyncio
    async def test_trailing_event_without_blank_line(self):
        events = await _collect(iter_sse(_lines("event: complete", "data: {}")))
        assert events == [("complete", "{}")]

    @pytest.mark.asyncio
    async def test_crlf_line_endings(self):
        events = await _collect(iter_sse(_lines("event: progress\r", "data: {}\r", "\r")))
        assert events == [("progress", "{}")]


class TestParseStreamEvent:
    def test_progress(self):
        event = parse_stream_event("progress", json.dumps({"step": "captcha", "progress": 30, "message": "Solving"}))

        assert isinstance(event, ProgressEvent)
        assert event.step == "captcha"
        assert event.progress == 30

    def test_progress_is_clamped(self):
        event = parse_stream_event("progress", json.dumps({"step": "x", "progress": 250}))
        assert event.progress == 100

    def test_complete_coerces_numbers(self):
        event = parse_stream_event("complete", json.dumps(COMPLETE_PAYLOAD))

        assert isinstance(event, CompleteEvent)
        assert event.result.invoice_details.store_name == "ACME SAS"
        assert event.result.invoice_details.nit == "900123456"
        assert event.result.invoice_details.total_amount == 119000.0
        assert event.result.items[0].iva_percent == 19

    def test_complete_without_result_wrapper(self):
        event = parse_stream_event("complete", json.dumps(COMPLETE_PAYLOAD["result"]))

        assert isinstance(event, CompleteEvent)
        assert event.result.processing_info.items_found == 1

    @pytest.mark.parametrize(
        "printed,expected",
        [
            ("119.000", 119000.0),
            ("$ 1.234.567", 1234567.0),
            ("1.234,56", 1234.56),
            ("119,000.50", 119000.5),
            ("19.5", 19.5),
        ],
    )
    def test_complete_reads_local_amount_formats(self, printed, expected):
        payload = {"invoice_details": {"storeName": "ACME SAS", "total_amount": printed}, "items": []}

        event = parse_stream_event("complete", json.dumps(payload))

        assert event.result.invoice_details.total_amount == expected

    def test_complete_nulls_fall_back_to_defaults(self):
        payload = {
            "invoice_details": {"storeName": None, "nit": None, "date": None, "total_amount": None},
            "items": [{"description": None, "quantity": None, "unit_price": None, "total_price": "5.000"}],
            "processing_info": None,
        }

        event = parse_stream_event("complete", json.dumps(payload))

        assert isinstance(event, CompleteEvent)
        details = event.result.invoice_details
        assert details.store_name == ""
        assert details.nit == ""
        assert details.total_amount == 0.0
        item = event.result.items[0]
        assert item.description == ""
        assert item.quantity == 1.0
        assert item.unit_price == 0.0
        assert item.total_price == 5000.0
        assert event.result.processing_info.items_found is None

    def test_complete_with_null_sections(self):
        event = parse_stream_event("complete", json.dumps({"invoice_details": None, "items": None}))

        assert isinstance(event, CompleteEvent)
        assert event.result.invoice_details.store_name == ""
        assert event.result.items == []

    @pytest.mark.parametrize(
        "data",
        [
            json.dumps({"invoice_details": {"storeName": "ACME SAS", "total_amount": "abc"}}),
            json.dumps({"items": [{"description": "X", "total_price": {"value": 1}}]}),
            json.dumps({"items": "none"}),
            "not json",
            "[1, 2]",
        ],
    )
    def test_malformed_complete_is_an_error(self, data):
        event = parse_stream_event("complete", data)

        assert isinstance(event, ErrorEvent)
        assert event.error.startswith("The processing result could not be read")

    def test_error(self):
        event = parse_stream_event("error", json.dumps({"error": "Captcha failed"}))

        assert isinstance(event, ErrorEvent)
        assert event.error == "Captcha failed"

    def test_malformed_error_is_still_an_error(self):
        event = parse_stream_event("error", "upstream exploded")

        assert isinstance(event, ErrorEvent)
        assert event.error == "upstream exploded"

    def test_message_event_with_type_field(self):
        event = parse_stream_event("message", json.dumps({"type": "progress", "step": "download", "progress": 50}))
        assert isinstance(event, ProgressEvent)

    @pytest.mark.parametrize(
        "name,data",
        [
            ("heartbeat", "{}"),
            ("progress", "not json"),
            ("progress", "[1, 2]"),
            ("progress", json.dumps({"progress": "lots"})),
        ],
    )
    def test_unknown_or_malformed_is_skipped(self, name, data):
        assert parse_stream_event(name, data) is None


class TestAcquisitionClient:
    @pytest.mark.asyncio
    async def test_streams_typed_events(self, valid_cufe):
        seen_requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen_requests.append(request)
            body = _sse(
                ("progress", {"step": "connect", "progress": 10, "message": "Connecting"}),
                ("progress", {"step": "captcha", "progress": 40, "message": "Solving captcha"}),
                ("complete", COMPLETE_PAYLOAD),
            )
            return httpx.Response(200, text=body, headers={"content-type": "text/event-stream"})

        http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        client = AcquisitionClient(api_url=API_URL, http_client=http_client)

        stream = await client.open(AcquisitionRequest(cufe=valid_cufe, max_retries=2))
        try:
            events = [event async for event in stream]
        finally:
            await stream.aclose()
        await http_client.aclose()

        assert [event.event for event in events] == ["progress", "progress", "complete"]
        assert stream.closed is True

        sent = json.loads(seen_requests[0].content)
        assert sent == {"cufe": valid_cufe, "maxRetries": 2}
        assert seen_requests[0].headers["accept"] == "text/event-stream"

    @pytest.mark.asyncio
    async def test_http_error_status_is_network_error(self, valid_cufe):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(500, text="internal error")

        http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        client = AcquisitionClient(api_url=API_URL, http_client=http_client)

        with pytest.raises(InvoiceProcessingError) as exc_info:
            await client.open(AcquisitionRequest(cufe=valid_cufe))
        await http_client.aclose()

        assert exc_info.value.code == "NETWORK_ERROR"
        assert exc_info.value.details["status_code"] == 500

    @pytest.mark.asyncio
    async def test_connection_failure_is_network_error(self, valid_cufe):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        client = AcquisitionClient(api_url=API_URL, http_client=http_client)

        with pytest.raises(InvoiceProcessingError) as exc_info:
            await client.open(AcquisitionRequest(cufe=valid_cufe))
        await http_client.aclose()

        assert exc_info.value.code == "NETWORK_ERROR"

    @pytest.mark.asyncio
    async def test_aclose_is_idempotent(self, valid_cufe):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, text=_sse(("progress", {"step": "connect"})))

        http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        stream = await AcquisitionClient(api_url=API_URL, http_client=http_client).open(
            AcquisitionRequest(cufe=valid_cufe)
        )

        await stream.aclose()
        await stream.aclose()
        await http_client.aclose()

        assert [event async for event in stream] == []
