"""Helper utilities for the lending ledger"""

import re
import secrets
import string
import time
import logging
from decimal import Decimal, InvalidOperation
from typing import Optional

logger = logging.getLogger(__name__)

DISBURSEMENT_PREFIX = "DISB"
REPAYMENT_PREFIX = "RPY"

_REFERENCE_ALPHABET = string.ascii_uppercase + string.digits
_REFERENCE_PATTERN = re.compile(r"^[A-Z]+_\d{13,}_[A-Z0-9]{6}$")


def generate_payment_reference(prefix: str) -> str:
    """
    Generate a gateway correlation reference.

    Format: ``<PREFIX>_<epoch-milliseconds>_<6 upper-case alphanumerics>``,
    e.g. ``DISB_1718000000000_Q7K2ZP``. The reference is what provider
    webhooks echo back, so it must be unique per gateway operation.
    """
    timestamp_ms = int(time.time() * 1000)
    suffix = "".join(secrets.choice(_REFERENCE_ALPHABET) for _ in range(6))
    return f"{prefix.upper()}_{timestamp_ms}_{suffix}"


def generate_disbursement_reference() -> str:
    return generate_payment_reference(DISBURSEMENT_PREFIX)


def generate_repayment_reference() -> str:
    return generate_payment_reference(REPAYMENT_PREFIX)


def is_payment_reference(value: Optional[str], prefix: Optional[str] = None) -> bool:
    """Check a string has the reference shape (optionally with a given prefix)"""
    if not value or not _REFERENCE_PATTERN.match(value):
        return False
    return prefix is None or value.startswith(f"{prefix.upper()}_")


def mask_account_number(account_number: Optional[str]) -> str:
    """Mask a bank account number for logs, keeping the last four digits"""
    if not account_number:
        return "****"
    digits = str(account_number)
    if len(digits) <= 4:
        return "*" * len(digits)
    return f"{'*' * (len(digits) - 4)}{digits[-4:]}"


def to_decimal(value, default: Decimal = Decimal("0")) -> Decimal:
    """Coerce numbers coming from JSON or the database into Decimal"""
    if value is None:
        return default
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        logger.warning(f"⚠️ DECIMAL_COERCION_FAILED: {value!r}")
        return default
