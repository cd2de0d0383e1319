"""Utility functions and helpers for the billing engine."""

from billing_engine.utils.billing_period import (
    BillingPeriod,
    add_billing_period,
    add_months,
    billing_period_to_timedelta,
    parse_billing_period,
    validate_billing_period,
)
from billing_engine.utils.id_generator import (
    generate_history_id,
    generate_lock_token,
    generate_manual_reference,
    generate_payment_id,
    generate_subscription_id,
    is_manual_reference,
    validate_record_id,
)

__all__ = [
    # Identifiers
    "generate_history_id",
    "generate_lock_token",
    "generate_manual_reference",
    "generate_payment_id",
    "generate_subscription_id",
    "is_manual_reference",
    "validate_record_id",
    # Billing period
    "BillingPeriod",
    "add_billing_period",
    "add_months",
    "billing_period_to_timedelta",
    "parse_billing_period",
    "validate_billing_period",
]
