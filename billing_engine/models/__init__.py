"""Pydantic models for domain objects, settings and operation results."""

# Settings models
from .settings import (
    BillingSettings,
    GracePeriodConfig,
    IdempotencySettings,
    LockSettings,
    MatcherSettings,
    NotificationSettings,
    PlanDefinition,
    RedisSettings,
    RetryConfig,
    WebhookSettings,
)

# Subscription models
from .subscription import (
    ACTIVATABLE_STATUSES,
    PERMITTED_TRANSITIONS,
    TERMINAL_STATUSES,
    Subscription,
    SubscriptionStatus,
    is_transition_permitted,
)

# Payment models
from .payment import (
    Authorization,
    Payment,
    PaymentData,
    PaymentEvent,
    PaymentStatus,
    map_provider_payment_status,
)

# History models
from .history import (
    HistoryAction,
    SubscriptionHistoryEntry,
    TransitionSource,
)

# Outcomes and results
from .results import (
    ActivationResponse,
    AmountValidationResult,
    EventProcessingResult,
    ExpiringGracePeriod,
    FailureKind,
    GraceEnforcementReport,
    MatchValidation,
    Ok,
    Outcome,
    PermanentError,
    RetryableError,
    SubscriptionMatch,
    TransitionResult,
    failure,
)

# HTTP models
from .api import (
    CancelSubscriptionRequest,
    CreateSubscriptionRequest,
    EnforceGracePeriodsRequest,
    SubscriptionStatusResponse,
    VerifyPaymentRequest,
    WebhookAck,
    parse_provider_event,
)

__all__ = [
    # Settings
    "BillingSettings",
    "GracePeriodConfig",
    "IdempotencySettings",
    "LockSettings",
    "MatcherSettings",
    "NotificationSettings",
    "PlanDefinition",
    "RedisSettings",
    "RetryConfig",
    "WebhookSettings",
    # Subscription
    "ACTIVATABLE_STATUSES",
    "PERMITTED_TRANSITIONS",
    "TERMINAL_STATUSES",
    "Subscription",
    "SubscriptionStatus",
    "is_transition_permitted",
    # Payment
    "Authorization",
    "Payment",
    "PaymentData",
    "PaymentEvent",
    "PaymentStatus",
    "map_provider_payment_status",
    # History
    "HistoryAction",
    "SubscriptionHistoryEntry",
    "TransitionSource",
    # Results
    "ActivationResponse",
    "AmountValidationResult",
    "EventProcessingResult",
    "ExpiringGracePeriod",
    "FailureKind",
    "GraceEnforcementReport",
    "MatchValidation",
    "Ok",
    "Outcome",
    "PermanentError",
    "RetryableError",
    "SubscriptionMatch",
    "TransitionResult",
    "failure",
    # HTTP
    "CancelSubscriptionRequest",
    "CreateSubscriptionRequest",
    "EnforceGracePeriodsRequest",
    "SubscriptionStatusResponse",
    "VerifyPaymentRequest",
    "WebhookAck",
    "parse_provider_event",
]
