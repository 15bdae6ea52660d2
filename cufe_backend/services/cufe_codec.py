"""
CUFE (Código Único de Facturación Electrónica) normalization and extraction.

A CUFE is the 96-character hexadecimal digest DIAN prints (and encodes in a
QR) on every Colombian electronic invoice. Users paste it with spaces, quotes
or upper-case letters, or scan a QR that wraps it in a portal URL or a JSON
blob; everything here turns that input into the canonical lower-case form.

All functions except validate_cufe are pure.
"""

import inspect
import json
import re
from typing import Any, Awaitable, Callable, Optional, Union
from urllib.parse import parse_qsl, urlsplit

from cufe_backend.schemas.processing import CufeValidationResult
from cufe_backend.utils.logging import get_logger, short_cufe

logger = get_logger(__name__)

CUFE_LENGTH = 96

_CUFE_RE = re.compile(r"^[0-9a-f]{96}$")
_NON_HEX_RE = re.compile(r"[^0-9a-f]")
_EMBEDDED_CUFE_RE = re.compile(r"(?<![0-9a-fA-F])[0-9a-fA-F]{96}(?![0-9a-fA-F])")

# Query parameters / JSON keys known to carry the CUFE (compared lower-cased)
CUFE_KEYS = ("documentkey", "cufe", "document_key", "cude", "uuid")

DIAN_QR_KEYWORDS = (
    "dian.gov.co",
    "catalogo-vpfe",
    "facturacionelectronica",
    "cufe",
    "numfac",
    "fecfac",
)

INVALID_FORMAT_MESSAGE = f"CUFE must be exactly {CUFE_LENGTH} hexadecimal characters"
EMPTY_CUFE_MESSAGE = "CUFE cannot be empty"
DUPLICATE_MESSAGE = "This invoice already exists: the CUFE was already registered"

ExistsChecker = Callable[[str], Union[bool, Awaitable[bool]]]


def normalize_cufe(raw: Optional[str]) -> str:
    """
    Return the canonical form of a CUFE.

    Trims, lower-cases and drops every character outside [0-9a-f] (spaces,
    quotes, line breaks picked up by copy/paste). Idempotent.
    """
    if not raw:
        return ""
    return _NON_HEX_RE.sub("", raw.strip().lower())


def is_valid_cufe_format(code: Optional[str]) -> bool:
    """True iff `code` is exactly 96 lower-case hexadecimal characters."""
    return bool(code) and _CUFE_RE.match(code) is not None


async def validate_cufe(
    code: Optional[str],
    exists_checker: Optional[ExistsChecker] = None,
) -> CufeValidationResult:
    """
    Validate format and, optionally, uniqueness of a CUFE.

    The duplicate check only runs for format-valid codes. `exists_checker`
    receives the normalized code and may be sync or async (see
    DuplicateGate.checker_for).

    Returns:
        CufeValidationResult. Format problems carry error_code INVALID_CUFE,
        duplicates DUPLICATE_CUFE. A failing checker yields NETWORK_ERROR
        instead of raising.
    """
    normalized = normalize_cufe(code)

    if not normalized:
        return CufeValidationResult(
            is_valid=False,
            error_code="INVALID_CUFE",
            error=EMPTY_CUFE_MESSAGE,
        )

    if not is_valid_cufe_format(normalized):
        return CufeValidationResult(
            is_valid=False,
            error_code="INVALID_CUFE",
            error=INVALID_FORMAT_MESSAGE,
        )

    if exists_checker is None:
        return CufeValidationResult(is_valid=True, format_valid=True)

    try:
        exists = exists_checker(normalized)
        if inspect.isawaitable(exists):
            exists = await exists
    except Exception as e:
        logger.error(f"Duplicate check failed for CUFE {short_cufe(normalized)}: {e}", exc_info=True)
        return CufeValidationResult(
            is_valid=False,
            format_valid=True,
            error_code="NETWORK_ERROR",
            error=f"Could not verify whether the invoice was already registered: {e}",
        )

    if exists:
        logger.info(f"CUFE {short_cufe(normalized)} already registered")
        return CufeValidationResult(
            is_valid=False,
            format_valid=True,
            already_exists=True,
            error_code="DUPLICATE_CUFE",
            error=DUPLICATE_MESSAGE,
        )

    return CufeValidationResult(is_valid=True, format_valid=True)


def _accept(candidate: Any) -> Optional[str]:
    if not isinstance(candidate, str):
        return None
    normalized = normalize_cufe(candidate)
    return normalized if is_valid_cufe_format(normalized) else None


def _from_url(text: str) -> Optional[str]:
    try:
        parts = urlsplit(text)
    except ValueError:
        return None
    if not parts.scheme or not parts.netloc:
        return None
    for key, value in parse_qsl(parts.query, keep_blank_values=False):
        if key.lower() in CUFE_KEYS:
            cufe = _accept(value)
            if cufe:
                return cufe
    return None


def _find_in_mapping(obj: dict, depth: int = 0) -> Optional[str]:
    for key, value in obj.items():
        if isinstance(key, str) and key.lower() in CUFE_KEYS:
            cufe = _accept(value)
            if cufe:
                return cufe
    if depth == 0:
        for value in obj.values():
            if isinstance(value, dict):
                cufe = _find_in_mapping(value, depth + 1)
                if cufe:
                    return cufe
    return None


def _from_json(text: str) -> Optional[str]:
    try:
        payload = json.loads(text)
    except (ValueError, TypeError):
        return None
    if isinstance(payload, dict):
        return _find_in_mapping(payload)
    return None


def _from_embedded_token(text: str) -> Optional[str]:
    match = _EMBEDDED_CUFE_RE.search(text)
    return match.group(0).lower() if match else None


def extract_cufe_from_qr(text: Optional[str]) -> Optional[str]:
    """
    Extract a CUFE from the text decoded from an invoice QR.

    Tries, in order:
    1. a DIAN portal URL with a documentkey/cufe query parameter
    2. a JSON object with a CUFE-bearing key (top level or one level down)
    3. the whole text, if it is a CUFE once normalized
    4. a standalone 96-hex token anywhere in the text (the "CUFE: ..." line of
       the key/value QR printed on DIAN invoices)

    Returns:
        The normalized CUFE, or None when nothing could be extracted. None is
        not a validation failure.
    """
    if not text or not text.strip():
        return None
    stripped = text.strip()

    for strategy in (_from_url, _from_json, _accept, _from_embedded_token):
        cufe = strategy(stripped)
        if cufe:
            logger.debug(f"CUFE {short_cufe(cufe)} extracted via {strategy.__name__}")
            return cufe
    return None


def looks_like_invoice_qr(text: Optional[str]) -> bool:
    """Heuristic: does the QR text look like it came from a DIAN invoice?"""
    if not text:
        return False
    lowered = text.lower()
    return any(keyword in lowered for keyword in DIAN_QR_KEYWORDS)


def qr_confidence(text: Optional[str]) -> float:
    """Confidence score shown next to a scanned QR (never gates correctness)."""
    if extract_cufe_from_qr(text):
        return 0.95
    if looks_like_invoice_qr(text):
        return 0.8
    return 0.2
