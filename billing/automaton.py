"""Retryable payment state machine.

One run drives one operation (authorize, capture, purchase or refund) of a
payment through the attempt states::

    INIT -> SUCCESS | FAILED | ABORTED
    INIT -> RETRIED  (+ a new INIT attempt on the same payment)

Every transition is persisted before the next step.  The plugin call happens
outside any database transaction; the unique attempt external key is what
makes concurrent runs of the same logical operation safe.
"""

import logging
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable, List, Optional

from billing.config import settings
from billing.dao import PaymentDao
from billing.domain import (
    Account,
    AttemptState,
    CallContext,
    Payment,
    PaymentAttempt,
    PaymentStatus,
    Refund,
    RefundStatus,
    TenantContext,
    TransactionType,
    new_id,
)
from billing.errors import DuplicateKey, ErrorCode, NotFound, PluginError, RetryableFailure
from billing.plugins import (
    GATEWAY_REFERENCE_PROPERTY,
    PaymentPluginStatus,
    PaymentTransactionInfo,
    PluginDispatcher,
    PluginRegistry,
    TransientPluginError,
)

logger = logging.getLogger(__name__)

RetryScheduler = Callable[[str, str, datetime], None]


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int
    delays_seconds: tuple = ()

    @classmethod
    def from_settings(cls, config=settings) -> "RetryPolicy":
        return cls(config.PAYMENT_RETRY_MAX_ATTEMPTS, tuple(config.PAYMENT_RETRY_DELAYS_SECONDS))

    def is_exhausted(self, attempt_number: int) -> bool:
        return attempt_number >= self.max_attempts

    def next_retry_date(self, attempt_number: int, now: datetime) -> datetime:
        if not self.delays_seconds:
            return now
        delay = self.delays_seconds[min(attempt_number, len(self.delays_seconds)) - 1]
        return now + timedelta(seconds=delay)


class RetryablePaymentAutomatonRunner:

    def __init__(self, dao: PaymentDao, plugins: PluginRegistry, dispatcher: PluginDispatcher,
                 retry_policy: RetryPolicy, retry_scheduler: Optional[RetryScheduler] = None):
        self.dao = dao
        self.plugins = plugins
        self.dispatcher = dispatcher
        self.retry_policy = retry_policy
        self.retry_scheduler = retry_scheduler

    def run(self, is_api_payment: bool, transaction_type: TransactionType, account: Account,
            payment_method_id: Optional[str], payment_id: Optional[str], invoice_id: Optional[str],
            external_key: str, amount: Decimal, currency: str, is_instant_payment: bool,
            properties: Optional[dict], plugin_name: str, context: CallContext) -> Payment:
        """Execute ``transaction_type`` once, idempotently on ``external_key``.

        Without ``payment_id`` a new payment is created along with its first
        attempt; otherwise a new attempt is appended to that payment. A key
        that was already used returns the payment it belongs to.
        """
        transaction_type = TransactionType(transaction_type)
        properties = dict(properties or {})
        plugin = self.plugins.get(plugin_name)

        existing = self.dao.get_payment_attempt_by_external_key(external_key, context)
        if existing is not None:
            logger.info("Attempt %s already exists, returning payment %s", external_key, existing.payment_id)
            return self._payment(existing.payment_id, context)

        attempt = PaymentAttempt(
            transaction_external_key=external_key,
            operation_name=transaction_type,
            plugin_name=plugin_name,
            amount=amount,
            currency=currency,
            payment_method_id=payment_method_id,
        )
        refund = None
        try:
            if payment_id is None:
                if transaction_type in (TransactionType.CAPTURE, TransactionType.REFUND):
                    raise NotFound(ErrorCode.PAYMENT_NO_SUCH_PAYMENT, payment_id)
                payment = Payment(
                    account_id=account.id,
                    invoice_id=invoice_id,
                    payment_method_id=payment_method_id,
                    amount=amount,
                    currency=currency,
                    effective_date=self.dao.clock(),
                )
                payment = self.dao.insert_payment_with_first_attempt(payment, attempt, context)
            elif transaction_type is TransactionType.REFUND:
                refund = self.dao.insert_refund_with_attempt(
                    payment_id,
                    attempt,
                    Refund(
                        account_id=account.id,
                        payment_id=payment_id,
                        amount=amount,
                        currency=currency,
                        processed_amount=amount,
                        processed_currency=currency,
                        is_adjusted=bool(properties.get("adjusted", False)),
                    ),
                    context,
                )
                payment = self._payment(payment_id, context)
            else:
                payment = self.dao.update_payment_with_new_attempt(payment_id, attempt, context)
        except DuplicateKey:
            # lost the race against a concurrent run with the same key
            existing = self.dao.get_payment_attempt_by_external_key(external_key, context)
            if existing is None:
                raise
            return self._payment(existing.payment_id, context)

        return self._execute(plugin, account.id, payment, attempt.for_payment(payment.id), refund,
                             properties, is_api_payment, is_instant_payment, context)

    def retry(self, payment_id: str, properties: Optional[dict], context: CallContext) -> Payment:
        """Execute the pending attempt of a payment scheduled by a retryable failure."""
        payment = self._payment(payment_id, context)
        pending = [attempt for attempt in self.dao.get_attempts_for_payment(payment_id, context)
                   if attempt.state_name is AttemptState.INIT]
        if not pending:
            logger.info("Payment %s has no pending attempt", payment_id)
            return payment

        attempt = pending[-1]
        plugin = self.plugins.get(attempt.plugin_name)
        refund = None
        if attempt.operation_name is TransactionType.REFUND:
            open_refunds = [refund for refund in self.dao.get_refunds_for_payment(payment_id, context)
                            if refund.status is RefundStatus.CREATED]
            if not open_refunds:
                logger.error("Refund attempt %s on payment %s has no open refund, aborting it",
                             attempt.id, payment_id)
                self.dao.update_attempt_state(attempt.id, AttemptState.ABORTED, None, "no open refund", context)
                return payment
            refund = open_refunds[-1]
        return self._execute(plugin, payment.account_id, payment, attempt, refund, dict(properties or {}),
                             False, False, context)

    def _execute(self, plugin, account_id: str, payment: Payment, attempt: PaymentAttempt,
                 refund: Optional[Refund], properties: dict, is_api_payment: bool,
                 is_instant_payment: bool, context: CallContext) -> Payment:
        if (attempt.operation_name in (TransactionType.CAPTURE, TransactionType.REFUND)
                and payment.gateway_reference_id is not None):
            properties.setdefault(GATEWAY_REFERENCE_PROPERTY, payment.gateway_reference_id)
        try:
            info = self.dispatcher.dispatch(
                attempt.plugin_name, payment.id, plugin.call,
                attempt.operation_name, account_id, payment.id, attempt.transaction_external_key,
                attempt.amount, attempt.currency, properties, context,
            )
        except (TransientPluginError, ConnectionError, TimeoutError) as exc:
            return self._on_retryable(payment, attempt, refund, None, str(exc), is_instant_payment, context)
        except Exception as exc:
            return self._on_plugin_failure(payment, attempt, refund, str(exc), is_api_payment, context, exc)

        if not isinstance(info, PaymentTransactionInfo):
            return self._on_plugin_failure(payment, attempt, refund, f"malformed plugin result {info!r}",
                                           is_api_payment, context)

        status = PaymentPluginStatus(info.status)
        info = replace(info, status=status)
        if status is PaymentPluginStatus.UNDEFINED:
            return self._on_retryable(payment, attempt, refund, info.gateway_error_code, info.gateway_error,
                                      is_instant_payment, context)
        if status in (PaymentPluginStatus.ERROR, PaymentPluginStatus.CANCELED):
            return self._on_decline(payment, attempt, refund, info, context)
        return self._on_success(payment, attempt, refund, info, context)

    def _on_success(self, payment, attempt, refund, info: PaymentTransactionInfo, context) -> Payment:
        amount = info.amount if info.amount is not None else attempt.amount
        currency = info.currency or attempt.currency
        if refund is not None:
            if info.status is PaymentPluginStatus.PROCESSED:
                self.dao.update_refund_status(refund.id, RefundStatus.COMPLETED, amount, currency, context,
                                              attempt_id=attempt.id, gateway_reference_id=info.first_reference_id)
            else:
                self.dao.update_attempt_state(attempt.id, AttemptState.SUCCESS, None, None, context,
                                              gateway_reference_id=info.first_reference_id)
            logger.info("Refund %s on payment %s accepted (%s)", refund.id, payment.id, info.status.value)
            return self._payment(payment.id, context)

        status = PaymentStatus.SUCCESS if info.status is PaymentPluginStatus.PROCESSED else PaymentStatus.PENDING
        return self.dao.update_payment_and_attempt_on_completion(
            payment.id, status, amount, currency, attempt.id, None, None, context,
            attempt_state=AttemptState.SUCCESS, gateway_reference_id=info.first_reference_id,
        )

    def _on_decline(self, payment, attempt, refund, info: PaymentTransactionInfo, context) -> Payment:
        logger.info("Plugin %s declined %s on payment %s: %s", attempt.plugin_name,
                    attempt.operation_name.value, payment.id, info.gateway_error_code)
        if refund is not None:
            self.dao.update_refund_status(refund.id, RefundStatus.FAILED, refund.amount, refund.currency, context,
                                          attempt_id=attempt.id, gateway_error_code=info.gateway_error_code,
                                          gateway_error_msg=info.gateway_error,
                                          gateway_reference_id=info.first_reference_id)
            return self._payment(payment.id, context)
        return self.dao.update_payment_and_attempt_on_completion(
            payment.id, PaymentStatus.FAILED, None, None, attempt.id,
            info.gateway_error_code, info.gateway_error, context,
            attempt_state=AttemptState.FAILED, gateway_reference_id=info.first_reference_id,
        )

    def _on_retryable(self, payment, attempt, refund, error_code, error_msg, is_instant_payment,
                      context) -> Payment:
        if is_instant_payment:
            self._abort(attempt, refund, error_code, error_msg, context)
            raise RetryableFailure(ErrorCode.PAYMENT_RETRYABLE_FAILURE, payment.id, error_msg)

        attempt_number = len(self._retry_chain(attempt, context))
        if self.retry_policy.is_exhausted(attempt_number):
            logger.warning("Payment %s exhausted %s attempts", payment.id, attempt_number)
            if refund is not None:
                self._abort(attempt, refund, error_code, error_msg, context)
                return self._payment(payment.id, context)
            return self.dao.update_payment_and_attempt_on_completion(
                payment.id, PaymentStatus.FAILED, None, None, attempt.id, error_code, error_msg, context,
                attempt_state=AttemptState.ABORTED,
            )

        # retry keys never come from callers; retry_of_attempt_id carries the chain
        next_attempt = PaymentAttempt(
            transaction_external_key=new_id(),
            operation_name=attempt.operation_name,
            plugin_name=attempt.plugin_name,
            amount=attempt.amount,
            currency=attempt.currency,
        )
        payment = self.dao.retry_attempt(attempt.id, error_code, error_msg, next_attempt, context)
        retry_date = self.retry_policy.next_retry_date(attempt_number, self.dao.clock())
        logger.info("Scheduled attempt %s of payment %s for %s", attempt_number + 1, payment.id,
                    retry_date.isoformat())
        if self.retry_scheduler is not None:
            self.retry_scheduler(payment.id, next_attempt.id, retry_date)
        return payment

    def _on_plugin_failure(self, payment, attempt, refund, message, is_api_payment, context,
                           cause=None) -> Payment:
        logger.error("Plugin %s failed on payment %s: %s", attempt.plugin_name, payment.id, message)
        self._abort(attempt, refund, None, message, context)
        if not is_api_payment:
            return self._payment(payment.id, context)
        raise PluginError(ErrorCode.PAYMENT_PLUGIN_EXCEPTION, attempt.plugin_name, message) from cause

    def _abort(self, attempt, refund, error_code, error_msg, context) -> None:
        if refund is None:
            self.dao.update_attempt_state(attempt.id, AttemptState.ABORTED, error_code, error_msg, context)
            return
        # the refund fails together with its aborted attempt
        self.dao.update_refund_status(refund.id, RefundStatus.FAILED, refund.amount, refund.currency, context,
                                      attempt_id=attempt.id, gateway_error_code=error_code,
                                      gateway_error_msg=error_msg, attempt_state=AttemptState.ABORTED)

    def _retry_chain(self, attempt: PaymentAttempt, context: TenantContext) -> List[PaymentAttempt]:
        """``attempt`` preceded by the attempts it retries, oldest first."""
        if attempt.retry_of_attempt_id is None:
            return [attempt]
        attempts = {candidate.id: candidate
                    for candidate in self.dao.get_attempts_for_payment(attempt.payment_id, context)}
        chain = [attempt]
        while chain[0].retry_of_attempt_id in attempts:
            chain.insert(0, attempts[chain[0].retry_of_attempt_id])
        return chain

    def _payment(self, payment_id: str, context: TenantContext) -> Payment:
        payment = self.dao.get_payment(payment_id, context)
        if payment is None:
            raise NotFound(ErrorCode.PAYMENT_NO_SUCH_PAYMENT, payment_id)
        return payment
