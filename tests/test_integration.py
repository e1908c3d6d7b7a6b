import pytest
import stripe
from fastapi.testclient import TestClient
from sqlalchemy import select

from billing.auth import get_call_context
from billing.automaton import RetryPolicy
from billing.dependencies import build_payment_api, get_payment_api
from billing.main import app as fastapi_app
from billing.models import AuditLogRecord, PaymentAttemptRecord, PaymentRecord, RefundRecord
from billing.plugins import PluginRegistry
from billing.stripe_plugin import PLUGIN_NAME, StripePaymentPlugin


@pytest.fixture
def client(session_factory, context, clock):
    api = build_payment_api(
        session_factory,
        PluginRegistry({PLUGIN_NAME: StripePaymentPlugin(api_key="sk_test_123")}),
        RetryPolicy(max_attempts=2, delays_seconds=(60,)),
        clock=clock,
    )
    fastapi_app.dependency_overrides[get_call_context] = lambda: context
    fastapi_app.dependency_overrides[get_payment_api] = lambda: api

    with TestClient(fastapi_app) as c:
        yield c

    fastapi_app.dependency_overrides.clear()
    api.runner.dispatcher.shutdown()


def _stripe_object(mocker, object_id, status):
    obj = mocker.Mock()
    obj.id = object_id
    obj.status = status
    return obj


def _add_card(client):
    response = client.post("/accounts/account-1/payment-methods", json={"plugin_name": "stripe"})
    assert response.status_code == 201
    return response.json()["id"]


def _pay(client, method_id, amount=25):
    return client.post("/payments", json={
        "account_id": "account-1",
        "currency": "eur",
        "payment_method_id": method_id,
        "invoice_id": "invoice-int-001",
        "amount": amount,
        "properties": {"payment_method": "pm_card_visa", "customer": "cus_123"},
    })


def test_full_payment_lifecycle_integration(client, session_factory, mocker):
    """
    Test the full lifecycle:
    1. Register a Stripe payment method
    2. Pay an invoice (API -> automaton -> Stripe mocked -> DB)
    3. Refund part of it (API -> automaton -> Stripe mocked -> DB)
    """

    # --- 1. PAYMENT METHOD ---
    method_id = _add_card(client)

    # --- 2. PAYMENT ---
    create = mocker.patch("stripe.PaymentIntent.create",
                          return_value=_stripe_object(mocker, "pi_integration_test_123", "succeeded"))

    response = _pay(client, method_id)

    assert response.status_code == 201
    payment_id = response.json()["id"]
    assert response.json()["status"] == "SUCCESS"
    assert response.json()["gateway_reference_id"] == "pi_integration_test_123"
    assert create.call_args.kwargs["amount"] == 2500
    assert create.call_args.kwargs["currency"] == "eur"
    assert create.call_args.kwargs["customer"] == "cus_123"

    with session_factory() as db:
        payment = db.scalar(select(PaymentRecord).where(PaymentRecord.id == payment_id))
        assert payment.payment_status == "SUCCESS"
        assert payment.tenant_id == "tenant-1"
        attempt = db.scalar(select(PaymentAttemptRecord).where(PaymentAttemptRecord.payment_id == payment_id))
        assert attempt.state_name == "SUCCESS"
        # Stripe deduplicates on the same key as the attempt
        assert create.call_args.kwargs["idempotency_key"] == attempt.transaction_external_key

    # --- 3. REFUND ---
    refund_create = mocker.patch("stripe.Refund.create", return_value=_stripe_object(mocker, "re_123", "succeeded"))

    refund_response = client.post(f"/payments/{payment_id}/refunds", json={
        "account_id": "account-1",
        "amount": "10.00",
    })

    assert refund_response.status_code == 201
    assert refund_response.json()["status"] == "COMPLETED"
    assert refund_create.call_args.kwargs["amount"] == 1000
    # the intent id stored with the payment is what gets refunded
    assert refund_create.call_args.kwargs["payment_intent"] == "pi_integration_test_123"
    assert client.get(f"/payments/{payment_id}").json()["gateway_reference_id"] == "pi_integration_test_123"

    with session_factory() as db:
        refund = db.scalar(select(RefundRecord).where(RefundRecord.payment_id == payment_id))
        assert refund.refund_status == "COMPLETED"
        states = db.scalars(
            select(PaymentAttemptRecord.state_name)
            .where(PaymentAttemptRecord.payment_id == payment_id)
            .order_by(PaymentAttemptRecord.record_id)
        ).all()
        assert states == ["SUCCESS", "SUCCESS"]
        references = db.scalars(
            select(PaymentAttemptRecord.gateway_reference_id)
            .where(PaymentAttemptRecord.payment_id == payment_id)
            .order_by(PaymentAttemptRecord.record_id)
        ).all()
        assert references == ["pi_integration_test_123", "re_123"]
        assert db.scalars(select(AuditLogRecord)).all()


def test_card_declined(client, session_factory, mocker):
    method_id = _add_card(client)
    mocker.patch("stripe.PaymentIntent.create",
                 side_effect=stripe.CardError("Your card was declined.", param=None, code="card_declined"))

    response = _pay(client, method_id)

    assert response.status_code == 201
    assert response.json()["status"] == "FAILED"
    with session_factory() as db:
        attempt = db.scalar(select(PaymentAttemptRecord))
        assert attempt.state_name == "FAILED"
        assert attempt.gateway_error_code == "card_declined"


def test_stripe_outage_schedules_retry(client, session_factory, mocker):
    method_id = _add_card(client)
    mocker.patch("stripe.PaymentIntent.create", side_effect=stripe.APIConnectionError("network down"))

    response = _pay(client, method_id)

    assert response.status_code == 201
    assert response.json()["status"] == "UNKNOWN"
    with session_factory() as db:
        states = db.scalars(select(PaymentAttemptRecord.state_name).order_by(PaymentAttemptRecord.record_id)).all()
        assert states == ["RETRIED", "INIT"]


def test_create_payment_on_stripe_error(client, session_factory, mocker):
    """If Stripe fails unexpectedly, the call fails and the attempt is left aborted."""
    method_id = _add_card(client)
    mocker.patch("stripe.PaymentIntent.create", side_effect=Exception("Stripe Service Unavailable"))

    response = _pay(client, method_id)

    assert response.status_code == 502
    assert "Stripe Service Unavailable" in response.json()["detail"]
    with session_factory() as db:
        payment = db.scalar(select(PaymentRecord))
        assert payment.payment_status == "UNKNOWN"
        attempt = db.scalar(select(PaymentAttemptRecord))
        assert attempt.state_name == "ABORTED"


def test_missing_stripe_property(client, mocker):
    method_id = _add_card(client)
    create = mocker.patch("stripe.PaymentIntent.create")

    response = client.post("/payments", json={
        "account_id": "account-1",
        "payment_method_id": method_id,
        "invoice_id": "invoice-int-002",
        "amount": 10,
    })

    assert response.status_code == 502
    create.assert_not_called()
