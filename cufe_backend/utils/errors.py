"""
Error kinds for the invoice acquisition pipeline.

Every failure the pipeline reports carries one of the codes below so callers
(routes, UI) can tell a bad CUFE from a duplicate, a network problem, or a
failed save without parsing messages.
"""

from typing import Any, Dict, Literal, Optional

ProcessingErrorCode = Literal[
    "INVALID_CUFE",
    "DUPLICATE_CUFE",
    "NETWORK_ERROR",
    "PROCESSING_FAILED",
    "EXTRACTION_FAILED",
    "SAVE_FAILED",
]


class InvoiceProcessingError(Exception):
    """Failure of a pipeline step, tagged with its error kind."""

    def __init__(
        self,
        code: ProcessingErrorCode,
        message: str,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.code: ProcessingErrorCode = code
        self.message = message
        self.details = details or {}

    def __repr__(self) -> str:
        return f"InvoiceProcessingError(code={self.code!r}, message={self.message!r})"


class ProcessingInProgressError(RuntimeError):
    """Raised when start() is called while a session is already running."""

    def __init__(self, message: str = "Processing already in progress"):
        super().__init__(message)
