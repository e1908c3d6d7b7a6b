from datetime import datetime, timedelta, timezone

import pytest

import billing.models  # noqa: F401
from billing.automaton import RetryablePaymentAutomatonRunner, RetryPolicy
from billing.dao import PaymentDao
from billing.database import Base, build_engine, build_session_factory
from billing.dependencies import build_payment_api
from billing.domain import CallContext
from billing.payment_methods import PaymentMethodDao
from billing.plugins import (
    PaymentPluginApi,
    PaymentPluginStatus,
    PaymentTransactionInfo,
    PluginDispatcher,
    PluginRegistry,
)

FAKE_PLUGIN = "fake"


class FakeClock:
    def __init__(self, now=None):
        self.now = now or datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def add_days(self, days):
        self.now = self.now + timedelta(days=days)


class FakePlugin(PaymentPluginApi):
    """Replays queued outcomes; an empty queue means PROCESSED."""

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.calls = []
        self.properties = []

    def queue(self, *outcomes):
        self.outcomes.extend(outcomes)

    def _answer(self, operation, account_id, payment_id, external_key, amount, currency, properties, context):
        self.calls.append((operation, payment_id, external_key, amount, currency))
        self.properties.append(dict(properties))
        outcome = self.outcomes.pop(0) if self.outcomes else PaymentPluginStatus.PROCESSED
        if isinstance(outcome, Exception):
            raise outcome
        if isinstance(outcome, PaymentPluginStatus):
            return PaymentTransactionInfo(status=outcome, amount=amount, currency=currency)
        return outcome

    def authorize_payment(self, *args):
        return self._answer("AUTHORIZE", *args)

    def capture_payment(self, *args):
        return self._answer("CAPTURE", *args)

    def purchase_payment(self, *args):
        return self._answer("PURCHASE", *args)

    def refund_payment(self, *args):
        return self._answer("REFUND", *args)


@pytest.fixture
def engine(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'billing_test.db'}")
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def context():
    return CallContext(tenant_id="tenant-1", user_name="alice")


@pytest.fixture
def other_tenant():
    return CallContext(tenant_id="tenant-2", user_name="bob")


@pytest.fixture
def payment_dao(session_factory, clock):
    return PaymentDao(session_factory, clock=clock)


@pytest.fixture
def method_dao(session_factory, clock):
    return PaymentMethodDao(session_factory, clock=clock)


@pytest.fixture
def plugin():
    return FakePlugin()


@pytest.fixture
def registry(plugin):
    return PluginRegistry({FAKE_PLUGIN: plugin})


@pytest.fixture
def retry_policy():
    return RetryPolicy(max_attempts=3, delays_seconds=(60, 120))


@pytest.fixture
def scheduled():
    return []


@pytest.fixture
def runner(payment_dao, registry, retry_policy, scheduled):
    dispatcher = PluginDispatcher(timeout_seconds=5)
    yield RetryablePaymentAutomatonRunner(
        payment_dao, registry, dispatcher, retry_policy,
        lambda payment_id, attempt_id, when: scheduled.append((payment_id, attempt_id, when)),
    )
    dispatcher.shutdown()


@pytest.fixture
def payment_api(session_factory, registry, retry_policy, scheduled, clock):
    api = build_payment_api(
        session_factory, registry, retry_policy,
        lambda payment_id, attempt_id, when: scheduled.append((payment_id, attempt_id, when)),
        clock=clock,
    )
    yield api
    api.runner.dispatcher.shutdown()
