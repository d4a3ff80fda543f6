# utils.py
"""
Utility functions for the casino core

Includes:
- Cryptographic helpers (seed generation, SHA-256 commitments)
- Robust number handling (Decimal/Float agnostic)
- Formatting helpers for logs and API payloads
"""

from __future__ import annotations

import secrets
import hashlib
import hmac
import logging
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Union

# =========================
# LOGGING CONFIG
# =========================

logger = logging.getLogger("casinox.utils")

# =========================
# RANDOM & PROVABLY FAIR
# =========================

def generate_server_seed(length: int = 32) -> str:
    """
    Generate a cryptographically secure random server seed (hex).
    32 bytes gives 256 bits of entropy.
    """
    return secrets.token_hex(length)


def generate_client_seed(length: int = 16) -> str:
    """
    Generate a random client seed (hex) for players who do not pick one.
    """
    return secrets.token_hex(length)


def generate_unique_id(length: int = 8) -> str:
    """
    Generate a short, URL-safe unique ID (hex).
    Used for round IDs.
    """
    return secrets.token_hex(length)


def hash_sha256(value: str) -> str:
    """
    Compute standard SHA256 hash of a string (UTF-8).
    Used for the published server seed commitment and for draws.
    """
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def verify_server_seed_hash(server_seed: str, expected_hash: str) -> bool:
    """
    Check a revealed server seed against its published commitment.
    """
    calculated = hash_sha256(server_seed)
    # constant_time_compare prevents timing attacks
    return hmac.compare_digest(calculated, expected_hash.lower())


# =========================
# NUMBERS & FORMATTING
# =========================

NumberType = Union[float, Decimal, int, str]


def safe_decimal(value: NumberType) -> Decimal:
    """
    Convert API input to Decimal via its string form, so 0.1 stays 0.1.
    Raises ValueError on garbage instead of inventing a default.
    """
    try:
        result = Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError) as e:
        logger.warning(f"Failed to convert {value!r} to Decimal")
        raise ValueError(f"Not a number: {value!r}") from e
    if not result.is_finite():
        raise ValueError(f"Not a finite number: {value!r}")
    return result


def format_balance(amount: NumberType) -> str:
    """
    Format balance with 2 decimals.
    """
    try:
        return f"{float(amount):.2f}"
    except (ValueError, TypeError, InvalidOperation):
        logger.warning(f"Invalid balance format input: {amount}")
        return "0.00"


def format_multiplier(mult: NumberType) -> str:
    """
    Format multiplier with 2 decimals (e.g., 'x1.00').
    """
    try:
        return f"x{float(mult):.2f}"
    except (ValueError, TypeError, InvalidOperation):
        return "x1.00"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)
