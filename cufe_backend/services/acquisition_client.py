"""
Client for the external invoice acquisition service.

The service downloads the invoice PDF from the DIAN portal (solving the
captcha on its side), extracts the data and reports back over a server-sent
event stream:

    event: progress   {"step", "progress", "message", "details"?, "captcha"?}
    event: complete   {"result": {"invoice_details", "items", "processing_info"}}
    event: error      {"error": "..."}

AcquisitionClient.open() POSTs the request and returns an AcquisitionStream,
an async iterator of typed StreamEvent models. Closing the stream closes the
HTTP response; that is how a running acquisition is cancelled.

Transport problems (connection refused, HTTP error status, broken stream)
are raised as InvoiceProcessingError("NETWORK_ERROR"). Unknown events and
malformed progress events are logged and skipped. A malformed error or
complete event is delivered as an ErrorEvent because it ends the stream.
"""

import json
from contextlib import AsyncExitStack
from typing import AsyncIterator, Optional, Tuple

import httpx
from pydantic import TypeAdapter, ValidationError

from cufe_backend.config import settings
from cufe_backend.schemas.acquisition import AcquisitionRequest, ErrorEvent, StreamEvent
from cufe_backend.utils.errors import InvoiceProcessingError
from cufe_backend.utils.logging import get_logger, short_cufe

logger = get_logger(__name__)

STREAM_EVENT_NAMES = ("progress", "complete", "error")

_stream_event_adapter = TypeAdapter(StreamEvent)


async def iter_sse(lines: AsyncIterator[str]) -> AsyncIterator[Tuple[str, str]]:
    """
    Group raw SSE lines into (event_name, data) pairs.

    A blank line dispatches the pending event; multi-line data is joined with
    newlines; comment lines (":keep-alive") are ignored. Events without an
    `event:` field are named "message".
    """
    event_name = "message"
    data_lines = []

    async for raw_line in lines:
        line = raw_line.rstrip("\r")
        if not line:
            if data_lines:
                yield event_name, "\n".join(data_lines)
            event_name = "message"
            data_lines = []
            continue
        if line.startswith(":"):
            continue

        field, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if field == "event":
            event_name = value.strip()
        elif field == "data":
            data_lines.append(value)

    if data_lines:
        yield event_name, "\n".join(data_lines)


def parse_stream_event(name: str, data: str) -> Optional[StreamEvent]:
    """
    Turn one SSE event into a typed StreamEvent.

    Returns:
        The event, or None for unknown events and malformed progress events.
        A malformed error or complete event becomes an ErrorEvent, since both
        end the stream.
    """
    try:
        payload = json.loads(data)
    except ValueError:
        if name == "error":
            return ErrorEvent(error=data.strip() or ErrorEvent().error)
        if name == "complete":
            return _unreadable_result("the payload is not JSON")
        logger.warning(f"Skipping '{name}' event with non-JSON data ({len(data)} chars)")
        return None

    if name == "message" and isinstance(payload, dict):
        name = payload.get("event") or payload.get("type") or name

    if name not in STREAM_EVENT_NAMES:
        logger.debug(f"Ignoring unknown stream event '{name}'")
        return None

    if not isinstance(payload, dict):
        if name == "error":
            return ErrorEvent(error=str(payload))
        if name == "complete":
            return _unreadable_result("the payload is not an object")
        logger.warning(f"Skipping '{name}' event: payload is not an object")
        return None

    if name == "complete" and "result" not in payload:
        payload = {"result": payload}

    try:
        return _stream_event_adapter.validate_python({**payload, "event": name})
    except ValidationError as e:
        if name == "error":
            return ErrorEvent()
        if name == "complete":
            return _unreadable_result(f"{e.error_count()} validation errors")
        logger.warning(f"Skipping malformed '{name}' event: {e.error_count()} validation errors")
        return None


def _unreadable_result(reason: str) -> ErrorEvent:
    logger.warning(f"Malformed 'complete' event: {reason}")
    return ErrorEvent(error=f"The processing result could not be read ({reason})")


class AcquisitionStream:
    """
    Async iterator over the events of one acquisition.

    Usage:
        >>> stream = await client.open(request)
        >>> try:
        ...     async for event in stream:
        ...         handle(event)
        ... finally:
        ...     await stream.aclose()
    """

    def __init__(self, response: httpx.Response, exit_stack: AsyncExitStack):
        self._response = response
        self._exit_stack = exit_stack
        self._events = self._iter_events()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def __aiter__(self) -> "AcquisitionStream":
        return self

    async def __anext__(self) -> StreamEvent:
        if self._closed:
            raise StopAsyncIteration
        try:
            return await self._events.__anext__()
        except httpx.HTTPError as e:
            if self._closed:
                raise StopAsyncIteration
            await self.aclose()
            raise InvoiceProcessingError(
                "NETWORK_ERROR",
                f"Connection to the acquisition service was interrupted: {e}",
            ) from e

    async def _iter_events(self) -> AsyncIterator[StreamEvent]:
        async for name, data in iter_sse(self._response.aiter_lines()):
            event = parse_stream_event(name, data)
            if event is not None:
                yield event

    async def aclose(self) -> None:
        """Close the HTTP response. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        if not self._events.ag_running:
            await self._events.aclose()
        await self._exit_stack.aclose()


class AcquisitionClient:
    """
    Opens acquisition streams against CUFE_API_URL.

    Args:
        api_url: Endpoint of the acquisition service (defaults to settings)
        http_client: Shared httpx.AsyncClient; when omitted each stream owns
            a client of its own that is closed with the stream
        connect_timeout: Seconds allowed to connect and send the request.
            Reads are unbounded here; the overall deadline belongs to the
            caller (InvoiceProcessor.start timeout)
    """

    def __init__(
        self,
        api_url: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        connect_timeout: float = 30.0,
    ):
        self.api_url = api_url or settings.CUFE_API_URL
        self._http_client = http_client
        self.connect_timeout = connect_timeout

    async def open(self, request: AcquisitionRequest) -> AcquisitionStream:
        """
        Start an acquisition and return its event stream.

        Raises:
            InvoiceProcessingError: NETWORK_ERROR if the service is not
                configured, unreachable, or answers with an HTTP error
        """
        if not self.api_url:
            raise InvoiceProcessingError("NETWORK_ERROR", "CUFE_API_URL is not configured")

        logger.info(f"Opening acquisition stream for CUFE {short_cufe(request.cufe)}")

        exit_stack = AsyncExitStack()
        try:
            client = self._http_client
            if client is None:
                client = await exit_stack.enter_async_context(
                    httpx.AsyncClient(timeout=httpx.Timeout(self.connect_timeout, read=None))
                )
            response = await exit_stack.enter_async_context(
                client.stream(
                    "POST",
                    self.api_url,
                    json=request.to_payload(),
                    headers={"Accept": "text/event-stream"},
                )
            )
            if response.is_error:
                body = (await response.aread()).decode("utf-8", errors="replace")
                raise InvoiceProcessingError(
                    "NETWORK_ERROR",
                    f"Acquisition service responded with HTTP {response.status_code}",
                    {"status_code": response.status_code, "body": body[:500]},
                )
        except httpx.HTTPError as e:
            await exit_stack.aclose()
            logger.error(f"Acquisition service unreachable: {e}")
            raise InvoiceProcessingError(
                "NETWORK_ERROR",
                f"Could not reach the acquisition service: {e}",
            ) from e
        except BaseException:
            await exit_stack.aclose()
            raise

        return AcquisitionStream(response, exit_stack)
