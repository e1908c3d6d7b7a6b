import logging
from decimal import Decimal, InvalidOperation
from typing import List, Optional

from billing.automaton import RetryablePaymentAutomatonRunner
from billing.dao import PaymentDao
from billing.domain import (
    Account,
    CallContext,
    Payment,
    PaymentMethod,
    Refund,
    TenantContext,
    TransactionType,
    new_id,
)
from billing.errors import ErrorCode, NotFound, PaymentApiException
from billing.payment_methods import PaymentMethodDao

logger = logging.getLogger(__name__)


def _positive_amount(amount) -> Decimal:
    try:
        value = amount if isinstance(amount, Decimal) else Decimal(str(amount))
    except (InvalidOperation, TypeError, ValueError) as exc:
        raise PaymentApiException(ErrorCode.PAYMENT_BAD_AMOUNT, amount) from exc
    if isinstance(amount, float) or not value.is_finite() or value <= 0:
        raise PaymentApiException(ErrorCode.PAYMENT_BAD_AMOUNT, amount)
    return value


class PaymentInternalApi:
    """Entry point used by the rest of the platform to pay invoices and read payments."""

    def __init__(self, runner: RetryablePaymentAutomatonRunner, payment_dao: PaymentDao,
                 payment_method_dao: PaymentMethodDao):
        self.runner = runner
        self.payment_dao = payment_dao
        self.payment_method_dao = payment_method_dao

    def create_payment(self, account: Account, invoice_id: str, amount, properties: Optional[dict],
                       context: CallContext) -> Payment:
        if account.payment_method_id is None:
            raise NotFound(ErrorCode.PAYMENT_NO_DEFAULT_PAYMENT_METHOD, account.id)
        method = self._active_method(account, account.payment_method_id, context)
        return self.runner.run(
            True,
            TransactionType.PURCHASE,
            account,
            method.id,
            None,
            invoice_id,
            new_id(),
            _positive_amount(amount),
            account.currency,
            False,
            properties,
            method.plugin_name,
            context,
        )

    def refund_payment(self, account: Account, payment_id: str, amount, properties: Optional[dict],
                       context: CallContext) -> Refund:
        payment = self.get_payment(payment_id, context)
        if payment.account_id != account.id:
            raise NotFound(ErrorCode.PAYMENT_NO_SUCH_PAYMENT, payment_id)
        method = self.payment_method_dao.get_payment_method_including_deleted(payment.payment_method_id, context)
        if method is None:
            raise NotFound(ErrorCode.PAYMENT_NO_SUCH_PAYMENT_METHOD, payment.payment_method_id)
        self.runner.run(
            True,
            TransactionType.REFUND,
            account,
            None,
            payment.id,
            payment.invoice_id,
            new_id(),
            _positive_amount(amount),
            payment.currency,
            False,
            properties,
            method.plugin_name,
            context,
        )
        return self.payment_dao.get_refunds_for_payment(payment.id, context)[-1]

    def get_payment(self, payment_id: str, context: TenantContext) -> Payment:
        payment = self.payment_dao.get_payment(payment_id, context)
        if payment is None:
            raise NotFound(ErrorCode.PAYMENT_NO_SUCH_PAYMENT, payment_id)
        return payment

    def get_account_payments(self, account_id: str, context: TenantContext) -> List[Payment]:
        return self.payment_dao.get_payments_for_account(account_id, context)

    def get_refunds(self, payment_id: str, context: TenantContext) -> List[Refund]:
        self.get_payment(payment_id, context)
        return self.payment_dao.get_refunds_for_payment(payment_id, context)

    def get_payment_method_by_id(self, payment_method_id: str, include_inactive: bool,
                                 context: TenantContext) -> PaymentMethod:
        if include_inactive:
            method = self.payment_method_dao.get_payment_method_including_deleted(payment_method_id, context)
        else:
            method = self.payment_method_dao.get_payment_method(payment_method_id, context)
        if method is None:
            raise NotFound(ErrorCode.PAYMENT_NO_SUCH_PAYMENT_METHOD, payment_method_id)
        return method

    def get_payment_methods(self, account: Account, context: TenantContext) -> List[PaymentMethod]:
        return self.payment_method_dao.get_payment_methods(account.id, context)

    def add_payment_method(self, account: Account, plugin_name: str, external_key: Optional[str],
                           context: CallContext) -> PaymentMethod:
        self.runner.plugins.get(plugin_name)
        method = PaymentMethod(account_id=account.id, plugin_name=plugin_name, external_key=external_key)
        return self.payment_method_dao.insert_payment_method(method, context)

    def delete_payment_method(self, payment_method_id: str, context: CallContext) -> None:
        self.payment_method_dao.delete_payment_method(payment_method_id, context)

    def _active_method(self, account: Account, payment_method_id: str, context: TenantContext) -> PaymentMethod:
        method = self.payment_method_dao.get_payment_method(payment_method_id, context)
        if method is None or method.account_id != account.id:
            logger.info("Payment method %s is unknown or inactive for account %s", payment_method_id, account.id)
            raise NotFound(ErrorCode.PAYMENT_NO_SUCH_PAYMENT_METHOD, payment_method_id)
        return method
