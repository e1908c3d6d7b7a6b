from decimal import Decimal

import pytest

from billing.dependencies import build_payment_api
from billing.domain import Account, PaymentStatus, RefundStatus
from billing.errors import NotFound, PaymentApiException, PluginError
from billing.plugins import PaymentPluginStatus


@pytest.fixture
def method(payment_api, context):
    return payment_api.add_payment_method(Account(id="account-1", currency="USD"), "fake", "pm_card_visa", context)


@pytest.fixture
def account(method):
    return Account(id="account-1", currency="USD", payment_method_id=method.id)


def test_create_payment_with_default_method(payment_api, account, method, plugin, context):
    payment = payment_api.create_payment(account, "invoice-1", Decimal("25.00"), {}, context)

    assert payment.status is PaymentStatus.SUCCESS
    assert payment.payment_method_id == method.id
    assert payment.invoice_id == "invoice-1"
    assert payment.currency == "USD"
    assert payment_api.get_payment(payment.id, context) == payment
    assert [p.id for p in payment_api.get_account_payments("account-1", context)] == [payment.id]
    assert plugin.calls[0][0] == "PURCHASE"


def test_each_create_payment_is_a_new_payment(payment_api, account, context):
    first = payment_api.create_payment(account, "invoice-1", Decimal("5"), {}, context)
    second = payment_api.create_payment(account, "invoice-1", Decimal("5"), {}, context)

    assert first.id != second.id


def test_create_payment_without_default_method(payment_api, method, context):
    with pytest.raises(NotFound):
        payment_api.create_payment(Account(id="account-1", currency="USD"), "invoice-1", Decimal("5"), {}, context)


def test_create_payment_with_deleted_method(payment_api, account, method, plugin, context):
    payment_api.delete_payment_method(method.id, context)

    with pytest.raises(NotFound):
        payment_api.create_payment(account, "invoice-1", Decimal("5"), {}, context)
    assert plugin.calls == []


def test_create_payment_with_foreign_method(payment_api, method, context):
    account = Account(id="account-2", currency="USD", payment_method_id=method.id)

    with pytest.raises(NotFound):
        payment_api.create_payment(account, "invoice-1", Decimal("5"), {}, context)


@pytest.mark.parametrize("amount", [Decimal("0"), Decimal("-1"), Decimal("NaN"), "abc", 1.5])
def test_create_payment_rejects_bad_amount(payment_api, account, plugin, context, amount):
    with pytest.raises(PaymentApiException):
        payment_api.create_payment(account, "invoice-1", amount, {}, context)
    assert plugin.calls == []


def test_declined_payment_is_returned(payment_api, account, plugin, context):
    plugin.queue(PaymentPluginStatus.ERROR)

    payment = payment_api.create_payment(account, "invoice-1", Decimal("5"), {}, context)

    assert payment.status is PaymentStatus.FAILED


def test_refund_payment(payment_api, account, context):
    payment = payment_api.create_payment(account, "invoice-1", Decimal("25"), {}, context)

    refund = payment_api.refund_payment(account, payment.id, Decimal("10"), {"adjusted": True}, context)

    assert refund.status is RefundStatus.COMPLETED
    assert refund.amount == Decimal("10")
    assert refund.is_adjusted is True
    assert payment_api.get_refunds(payment.id, context) == [refund]


def test_refund_after_method_deleted(payment_api, account, method, context):
    payment = payment_api.create_payment(account, "invoice-1", Decimal("25"), {}, context)
    payment_api.delete_payment_method(method.id, context)

    refund = payment_api.refund_payment(account, payment.id, Decimal("25"), {}, context)

    assert refund.status is RefundStatus.COMPLETED


def test_refund_of_other_account(payment_api, account, context):
    payment = payment_api.create_payment(account, "invoice-1", Decimal("25"), {}, context)

    with pytest.raises(NotFound):
        payment_api.refund_payment(Account(id="account-2", currency="USD"), payment.id, Decimal("1"), {}, context)


def test_get_unknown_payment(payment_api, context):
    with pytest.raises(NotFound):
        payment_api.get_payment("nope", context)
    with pytest.raises(NotFound):
        payment_api.get_refunds("nope", context)


def test_payment_method_lookup(payment_api, method, context):
    payment_api.delete_payment_method(method.id, context)

    with pytest.raises(NotFound):
        payment_api.get_payment_method_by_id(method.id, False, context)
    assert payment_api.get_payment_method_by_id(method.id, True, context).is_active is False
    assert payment_api.get_payment_methods(Account(id="account-1", currency="USD"), context) == []


def test_add_payment_method_for_unknown_plugin(payment_api, context):
    with pytest.raises(PluginError):
        payment_api.add_payment_method(Account(id="account-1", currency="USD"), "nope", None, context)


def test_other_tenant_sees_nothing(payment_api, account, context, other_tenant):
    payment = payment_api.create_payment(account, "invoice-1", Decimal("25"), {}, context)

    with pytest.raises(NotFound):
        payment_api.get_payment(payment.id, other_tenant)
    assert payment_api.get_account_payments("account-1", other_tenant) == []


def test_plugin_dispatcher_is_reachable_for_shutdown(session_factory, registry):
    api = build_payment_api(session_factory, registry)

    api.runner.dispatcher.shutdown()

    with pytest.raises(RuntimeError):
        api.runner.dispatcher.dispatch("fake", "payment-1", lambda: None)
