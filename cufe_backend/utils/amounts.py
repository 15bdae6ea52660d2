"""
Amount parsing shared by the invoice text parser and the acquisition stream
schemas.
"""

import re
from typing import Optional

_DOT_THOUSANDS_RE = re.compile(r"^-?\d{1,3}(?:\.\d{3})+$")


def parse_amount(raw: Optional[str]) -> Optional[float]:
    """
    Parse an amount as printed on the invoice.

    Commas are thousands separators ("119,000.50"). Two local variants are
    also accepted: dot-grouped thousands ("119.000") and a decimal comma after
    dot thousands ("1.234,56").

    Returns:
        The amount, or None when the text is not a number
    """
    if raw is None:
        return None
    value = raw.replace("$", "").replace(" ", "").strip().rstrip(".,")
    if not value:
        return None

    if "," in value and "." in value and value.rfind(",") > value.rfind("."):
        value = value.replace(".", "").replace(",", ".")
    elif _DOT_THOUSANDS_RE.match(value):
        value = value.replace(".", "")
    else:
        value = value.replace(",", "")

    try:
        return float(value)
    except ValueError:
        return None
