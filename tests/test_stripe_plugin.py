from decimal import Decimal

import pytest
import stripe

from billing.domain import CallContext
from billing.plugins import (
    GATEWAY_REFERENCE_PROPERTY,
    PaymentPluginApiException,
    PaymentPluginStatus,
    TransientPluginError,
)
from billing.stripe_plugin import StripePaymentPlugin, to_minor_units

CONTEXT = CallContext(tenant_id="tenant-1")


@pytest.fixture
def plugin():
    return StripePaymentPlugin(api_key="sk_test_123")


def _intent(mocker, status, intent_id="pi_123"):
    intent = mocker.Mock()
    intent.id = intent_id
    intent.status = status
    return intent


def test_minor_units():
    assert to_minor_units(Decimal("10.50"), "EUR") == 1050
    assert to_minor_units(Decimal("500"), "jpy") == 500


def test_purchase_creates_confirmed_intent(plugin, mocker):
    create = mocker.patch("stripe.PaymentIntent.create", return_value=_intent(mocker, "succeeded"))

    info = plugin.purchase_payment("account-1", "payment-1", "key-1", Decimal("25.00"), "EUR",
                                   {"payment_method": "pm_card_visa"}, CONTEXT)

    assert info.status is PaymentPluginStatus.PROCESSED
    assert info.first_reference_id == "pi_123"
    assert info.amount == Decimal("25.00")
    kwargs = create.call_args.kwargs
    assert kwargs["amount"] == 2500
    assert kwargs["currency"] == "eur"
    assert kwargs["capture_method"] == "automatic"
    assert kwargs["idempotency_key"] == "key-1"
    assert kwargs["metadata"] == {"account_id": "account-1", "payment_id": "payment-1"}


def test_authorize_uses_manual_capture(plugin, mocker):
    create = mocker.patch("stripe.PaymentIntent.create", return_value=_intent(mocker, "requires_capture"))

    info = plugin.authorize_payment("account-1", "payment-1", "key-1", Decimal("5"), "USD",
                                    {"payment_method": "pm_card_visa"}, CONTEXT)

    assert info.status is PaymentPluginStatus.PROCESSED
    assert create.call_args.kwargs["capture_method"] == "manual"


def test_processing_intent_is_pending(plugin, mocker):
    mocker.patch("stripe.PaymentIntent.create", return_value=_intent(mocker, "processing"))

    info = plugin.purchase_payment("account-1", "payment-1", "key-1", Decimal("5"), "USD",
                                   {"payment_method": "pm_card_visa"}, CONTEXT)

    assert info.status is PaymentPluginStatus.PENDING


def test_card_error_is_a_decline(plugin, mocker):
    error = stripe.CardError("Your card was declined.", param=None, code="card_declined")
    mocker.patch("stripe.PaymentIntent.create", side_effect=error)

    info = plugin.purchase_payment("account-1", "payment-1", "key-1", Decimal("5"), "USD",
                                   {"payment_method": "pm_card_visa"}, CONTEXT)

    assert info.status is PaymentPluginStatus.ERROR
    assert info.gateway_error_code == "card_declined"


@pytest.mark.parametrize("error", [
    stripe.APIConnectionError("network down"),
    stripe.RateLimitError("slow down"),
    stripe.APIError("internal error"),
])
def test_transient_stripe_errors(plugin, mocker, error):
    mocker.patch("stripe.PaymentIntent.create", side_effect=error)

    with pytest.raises(TransientPluginError):
        plugin.purchase_payment("account-1", "payment-1", "key-1", Decimal("5"), "USD",
                                {"payment_method": "pm_card_visa"}, CONTEXT)


def test_invalid_request_is_a_plugin_failure(plugin, mocker):
    mocker.patch("stripe.PaymentIntent.create", side_effect=stripe.InvalidRequestError("bad", param="amount"))

    with pytest.raises(PaymentPluginApiException) as excinfo:
        plugin.purchase_payment("account-1", "payment-1", "key-1", Decimal("5"), "USD",
                                {"payment_method": "pm_card_visa"}, CONTEXT)

    assert not isinstance(excinfo.value, TransientPluginError)
    assert excinfo.value.error_type == "InvalidRequestError"


def test_missing_payment_method_property(plugin, mocker):
    create = mocker.patch("stripe.PaymentIntent.create")

    with pytest.raises(PaymentPluginApiException):
        plugin.purchase_payment("account-1", "payment-1", "key-1", Decimal("5"), "USD", {}, CONTEXT)
    create.assert_not_called()


def test_unexpected_intent_status(plugin, mocker):
    mocker.patch("stripe.PaymentIntent.create", return_value=_intent(mocker, "exploded"))

    with pytest.raises(PaymentPluginApiException):
        plugin.purchase_payment("account-1", "payment-1", "key-1", Decimal("5"), "USD",
                                {"payment_method": "pm_card_visa"}, CONTEXT)


def test_capture(plugin, mocker):
    capture = mocker.patch("stripe.PaymentIntent.capture", return_value=_intent(mocker, "succeeded"))

    info = plugin.capture_payment("account-1", "payment-1", "capture-1", Decimal("5"), "USD",
                                  {"payment_intent": "pi_123"}, CONTEXT)

    assert info.status is PaymentPluginStatus.PROCESSED
    assert capture.call_args.args == ("pi_123",)
    assert capture.call_args.kwargs["amount_to_capture"] == 500


def test_refund(plugin, mocker):
    refund = mocker.patch("stripe.Refund.create", return_value=_intent(mocker, "pending", "re_123"))

    info = plugin.refund_payment("account-1", "payment-1", "refund-1", Decimal("2.50"), "USD",
                                 {"payment_intent": "pi_123"}, CONTEXT)

    assert info.status is PaymentPluginStatus.PENDING
    assert info.first_reference_id == "re_123"
    assert refund.call_args.kwargs == {"payment_intent": "pi_123", "amount": 250, "idempotency_key": "refund-1"}


def test_capture_falls_back_on_payment_reference(plugin, mocker):
    capture = mocker.patch("stripe.PaymentIntent.capture", return_value=_intent(mocker, "succeeded"))

    plugin.capture_payment("account-1", "payment-1", "capture-1", Decimal("5"), "USD",
                           {GATEWAY_REFERENCE_PROPERTY: "pi_123"}, CONTEXT)

    assert capture.call_args.args == ("pi_123",)


def test_refund_without_intent(plugin, mocker):
    refund = mocker.patch("stripe.Refund.create")

    with pytest.raises(PaymentPluginApiException):
        plugin.refund_payment("account-1", "payment-1", "refund-1", Decimal("2.50"), "USD", {}, CONTEXT)

    refund.assert_not_called()
