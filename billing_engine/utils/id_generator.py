"""Identifier generation for billing records and lock ownership tokens."""

import re
import uuid
from datetime import datetime
from typing import Optional

_ID_PATTERN = re.compile(r"^(sub|pay|hist)_[a-f0-9]{24}$")


def generate_subscription_id() -> str:
    """Generate a unique subscription ID.

    Format: sub_{24 hex chars}
    """
    return f"sub_{uuid.uuid4().hex[:24]}"


def generate_payment_id() -> str:
    """Generate a unique payment row ID.

    Format: pay_{24 hex chars}
    """
    return f"pay_{uuid.uuid4().hex[:24]}"


def generate_history_id() -> str:
    """Generate a unique history entry ID.

    Format: hist_{24 hex chars}
    """
    return f"hist_{uuid.uuid4().hex[:24]}"


def generate_lock_token() -> str:
    """Generate an opaque lock ownership token."""
    return uuid.uuid4().hex


def generate_manual_reference(subscription_id: str, now: Optional[datetime] = None) -> str:
    """Generate a payment reference for activations that arrive without one.

    Format: manual_{subscription_id}_{epoch millis}
    Example: manual_sub_1_1767225600000
    """
    timestamp = int((now or datetime.now()).timestamp() * 1000)
    return f"manual_{subscription_id}_{timestamp}"


def is_manual_reference(reference: str) -> bool:
    """Check whether a reference was generated for a manual activation."""
    return bool(reference) and reference.startswith("manual_")


def validate_record_id(record_id: str) -> bool:
    """Validate subscription/payment/history ID format."""
    if not record_id or not isinstance(record_id, str):
        return False
    return bool(_ID_PATTERN.match(record_id))
