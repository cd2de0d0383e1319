"""Shared fixtures: isolated configuration, fresh singletons and a manual clock."""

from datetime import datetime, timezone

import pytest

from billing_engine.config import reset_config
from billing_engine.repositories.history_store import reset_history_store
from billing_engine.repositories.payment_store import reset_payment_store
from billing_engine.repositories.plan_repository import reset_plan_repository
from billing_engine.repositories.subscription_store import reset_subscription_store
from billing_engine.repositories.transaction import reset_transaction_manager
from billing_engine.services.activation import reset_activation_service
from billing_engine.services.clock import ManualClock, reset_clock, set_clock
from billing_engine.services.event_processor import reset_event_processor
from billing_engine.services.idempotency import reset_idempotency_store
from billing_engine.services.lock_provider import reset_lock_provider
from billing_engine.services.notifications import reset_notification_dispatcher
from billing_engine.services.payment_matcher import reset_payment_matcher
from billing_engine.services.subscription_engine import reset_subscription_engine

START_TIME = datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)
WEBHOOK_SECRET = "whsec_test_secret"

TEST_CONFIG = f"""
plans:
  - id: plan_pro_monthly
    name: Pro Monthly
    price: 1500000
    currency: NGN
    billing_period: P1M
    grace_period: P7D
  - id: plan_starter_monthly
    name: Starter Monthly
    price: 500000
    currency: NGN
    billing_period: P1M
  - id: plan_team_monthly
    name: Team Monthly
    price: 4900
    currency: USD
    billing_period: P1M

lock:
  backend: memory
  acquire_timeout_seconds: 5
  key_prefix: "lock:"

idempotency:
  backend: memory
  ttl_seconds: 300

retry:
  max_attempts: 3
  base_delay_seconds: 0
  max_delay_seconds: 0

grace_period:
  grace_period_days: 7
  warning_days: [3, 1]
  enable_auto_cancel: true
  max_workers: 4

matcher:
  min_confidence: 70
  lookback_hours: 72
  amount_tolerance_ratio: 0.02
  amount_tolerance_absolute: 500
  max_candidates: 5

incomplete_expiry_hours: 23

notifications:
  enabled: false

webhook:
  secret: {WEBHOOK_SECRET}
"""


def _reset_all() -> None:
    reset_event_processor()
    reset_activation_service()
    reset_payment_matcher()
    reset_subscription_engine()
    reset_transaction_manager()
    reset_subscription_store()
    reset_payment_store()
    reset_history_store()
    reset_idempotency_store()
    reset_lock_provider()
    reset_notification_dispatcher()
    reset_plan_repository()
    reset_config()
    reset_clock()


@pytest.fixture(autouse=True)
def billing_environment(tmp_path, monkeypatch):
    """Point every test at its own billing.yaml and fresh global state."""
    config_file = tmp_path / "billing.yaml"
    config_file.write_text(TEST_CONFIG, encoding="utf-8")
    monkeypatch.setenv("BILLING_CONFIG_PATH", str(config_file))
    monkeypatch.delenv("BILLING_WEBHOOK_SECRET", raising=False)

    _reset_all()
    manual_clock = ManualClock(START_TIME)
    set_clock(manual_clock)

    yield manual_clock

    _reset_all()


@pytest.fixture
def clock(billing_environment) -> ManualClock:
    """The manual clock installed for this test."""
    return billing_environment


@pytest.fixture
def config_file(tmp_path):
    return tmp_path / "billing.yaml"


@pytest.fixture
def engine(billing_environment):
    """Global subscription engine wired to the fresh stores."""
    from billing_engine.services.subscription_engine import get_subscription_engine

    return get_subscription_engine()


@pytest.fixture
def make_subscription(engine):
    """Factory for incomplete subscriptions on the Pro Monthly plan by default."""

    def _make(
        subscription_id: str = "sub_1",
        plan_id: str = "plan_pro_monthly",
        customer_email: str = "ada@example.com",
        user_id: str = "user-123",
    ):
        return engine.create_subscription(
            user_id=user_id,
            plan_id=plan_id,
            customer_email=customer_email,
            subscription_id=subscription_id,
        )

    return _make


@pytest.fixture
def make_payment_data():
    """Factory for PaymentData paying the Pro Monthly price."""
    from billing_engine.models import PaymentData

    def _make(
        reference: str = "pay_abc",
        payment_id: str = "4099260516",
        amount: int = 1500000,
        currency: str = "NGN",
    ):
        return PaymentData(
            reference=reference, payment_id=payment_id, amount=amount, currency=currency
        )

    return _make
