"""
Logging utilities for the CUFE invoice backend.

SECURITY / PRIVACY RULES:
- NEVER log raw PDF bytes or base64 payloads
- NEVER log the full extracted invoice text (contains PII and amounts)
- NEVER log captcha API keys, Supabase tokens or other secrets
- CUFE codes are logged truncated (see short_cufe)

Acceptable logging:
- High-level events (e.g., "Acquisition stream opened", "PDF parsed")
- Non-sensitive metadata (e.g., "items_found=4", "step=captcha_solving")
- State machine transitions (e.g., "downloading -> extracting")
"""

import logging
from typing import Optional

from cufe_backend.config import settings


def get_logger(name: str, level: Optional[int] = None) -> logging.Logger:
    """
    Get a configured logger for the specified module.

    Args:
        name: Module name (typically __name__)
        level: Optional logging level (defaults to settings.LOG_LEVEL)

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(name)

    if level is None:
        level = logging.getLevelName(settings.LOG_LEVEL.upper())
        if not isinstance(level, int):
            level = logging.INFO

    logger.setLevel(level)

    # Avoid duplicate handlers when the module is imported more than once
    if not logger.handlers:
        handler = logging.StreamHandler()
        formatter = logging.Formatter(
            fmt='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )
        handler.setFormatter(formatter)
        logger.addHandler(handler)

    return logger


def short_cufe(cufe: Optional[str]) -> str:
    """Truncate a CUFE for log lines ("fe8b0ece...d1e0b4")."""
    if not cufe:
        return "<empty>"
    if len(cufe) <= 16:
        return cufe
    return f"{cufe[:8]}...{cufe[-6:]}"
