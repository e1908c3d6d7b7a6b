"""Each public write is exactly one transaction; reads are filtered by the
tenant of the context they are given.
"""

import logging
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime
from decimal import Decimal
from typing import Callable, List, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from billing.binders import (
    attempt_params,
    audit_params,
    payment_params,
    refund_params,
    to_attempt,
    to_audit_log,
    to_payment,
    to_refund,
)
from billing.domain import (
    AttemptState,
    AuditLog,
    CallContext,
    ChangeType,
    EntityAudit,
    Payment,
    PaymentAttempt,
    PaymentStatus,
    Refund,
    RefundStatus,
    TenantContext,
    TransactionType,
    utc_now,
)
from billing.errors import DuplicateKey, ErrorCode, NotFound, PaymentApiException, PersistenceError
from billing.models import (
    AuditLogRecord,
    PaymentAttemptRecord,
    PaymentMethodRecord,
    PaymentRecord,
    RefundRecord,
)

logger = logging.getLogger(__name__)

AUDITED_TABLES = {
    PaymentRecord.__tablename__: PaymentRecord,
    PaymentAttemptRecord.__tablename__: PaymentAttemptRecord,
    RefundRecord.__tablename__: RefundRecord,
    PaymentMethodRecord.__tablename__: PaymentMethodRecord,
}

_ATTEMPT_STATE_ON_COMPLETION = {
    PaymentStatus.SUCCESS: AttemptState.SUCCESS,
    PaymentStatus.PENDING: AttemptState.SUCCESS,
    PaymentStatus.FAILED: AttemptState.FAILED,
    PaymentStatus.UNKNOWN: AttemptState.ABORTED,
}

_REQUESTING_OPERATIONS = (TransactionType.AUTHORIZE, TransactionType.PURCHASE)


class EntityDao:
    """Session, clock and audit plumbing shared by the payment daos."""

    def __init__(self, session_factory: sessionmaker, clock: Callable[[], datetime] = utc_now):
        self.session_factory = session_factory
        self.clock = clock

    @contextmanager
    def transaction(self, what: str, duplicate_key: Optional[str] = None):
        session = self.session_factory()
        try:
            with session.begin():
                yield session
        except IntegrityError as exc:
            if duplicate_key is not None:
                raise DuplicateKey(duplicate_key) from exc
            raise PersistenceError(ErrorCode.PAYMENT_PERSISTENCE_ERROR, what) from exc
        except SQLAlchemyError as exc:
            logger.exception("Database failure while handling %s", what)
            raise PersistenceError(ErrorCode.PAYMENT_PERSISTENCE_ERROR, what) from exc
        finally:
            session.close()

    def audit(self, session: Session, row, change_type: ChangeType, context: CallContext, now: datetime) -> None:
        audit = EntityAudit(row.__tablename__, row.record_id, change_type)
        session.add(AuditLogRecord(**audit_params(audit, context, now)))

    @staticmethod
    def touch(row, context: CallContext, now: datetime) -> None:
        row.updated_by = context.user_name
        row.updated_date = now

    @staticmethod
    def scoped(model, context: TenantContext):
        return select(model).where(model.tenant_id == context.tenant_id)

    def get_audit_logs(self, table_name: str, entity_id: str, context: TenantContext) -> List[AuditLog]:
        model = AUDITED_TABLES[table_name]
        with self.transaction("audit log") as session:
            record_id = session.scalar(
                select(model.record_id).where(model.id == entity_id, model.tenant_id == context.tenant_id)
            )
            if record_id is None:
                return []
            rows = session.scalars(
                select(AuditLogRecord)
                .where(
                    AuditLogRecord.table_name == table_name,
                    AuditLogRecord.target_record_id == record_id,
                    AuditLogRecord.tenant_id == context.tenant_id,
                )
                .order_by(AuditLogRecord.record_id)
            ).all()
            return [to_audit_log(row) for row in rows]


class PaymentDao(EntityDao):

    def insert_payment_with_first_attempt(self, payment: Payment, attempt: PaymentAttempt,
                                          context: CallContext) -> Payment:
        now = self.clock()
        with self.transaction("payment", duplicate_key=attempt.transaction_external_key) as session:
            payment_row = PaymentRecord(**payment_params(payment, context, now))
            attempt_row = PaymentAttemptRecord(**attempt_params(attempt.for_payment(payment.id), context, now))
            session.add(payment_row)
            session.add(attempt_row)
            session.flush()
            self.audit(session, payment_row, ChangeType.INSERT, context, now)
            self.audit(session, attempt_row, ChangeType.INSERT, context, now)
            saved = to_payment(payment_row)
        logger.info("Created payment %s with attempt %s", payment.id, attempt.transaction_external_key)
        return saved

    def update_payment_with_new_attempt(self, payment_id: str, attempt: PaymentAttempt,
                                        context: CallContext) -> Payment:
        now = self.clock()
        with self.transaction("payment attempt", duplicate_key=attempt.transaction_external_key) as session:
            payment_row = self._append_attempt(session, payment_id, attempt, context, now)
            saved = to_payment(payment_row)
        logger.info("Appended attempt %s to payment %s", attempt.transaction_external_key, payment_id)
        return saved

    def retry_attempt(self, attempt_id: str, gateway_error_code: Optional[str], gateway_error_msg: Optional[str],
                      next_attempt: PaymentAttempt, context: CallContext) -> Payment:
        """Mark ``attempt_id`` RETRIED and append ``next_attempt`` in its place."""
        now = self.clock()
        with self.transaction("payment retry", duplicate_key=next_attempt.transaction_external_key) as session:
            attempt_row = self._attempt_row(session, attempt_id, context)
            self._complete_attempt(attempt_row, AttemptState.RETRIED, gateway_error_code, gateway_error_msg,
                                   context, now)
            self.audit(session, attempt_row, ChangeType.UPDATE, context, now)
            payment_row = self._append_attempt(
                session, attempt_row.payment_id, replace(next_attempt, retry_of_attempt_id=attempt_id), context, now
            )
            saved = to_payment(payment_row)
        logger.info("Attempt %s retried as %s", attempt_id, next_attempt.id)
        return saved

    def update_payment_and_attempt_on_completion(self, payment_id: str, status: PaymentStatus,
                                                 amount: Optional[Decimal], currency: Optional[str],
                                                 attempt_id: str, gateway_error_code: Optional[str],
                                                 gateway_error_msg: Optional[str], context: CallContext,
                                                 attempt_state: Optional[AttemptState] = None,
                                                 gateway_reference_id: Optional[str] = None) -> Payment:
        status = PaymentStatus(status)
        state = AttemptState(attempt_state) if attempt_state is not None else _ATTEMPT_STATE_ON_COMPLETION[status]
        now = self.clock()
        with self.transaction("payment completion") as session:
            payment_row = self._payment_row(session, payment_id, context)
            attempt_row = self._attempt_row(session, attempt_id, context)
            if attempt_row.payment_id != payment_id:
                raise NotFound(ErrorCode.PAYMENT_NO_SUCH_PAYMENT, payment_id)
            payment_row.payment_status = status.value
            payment_row.processed_amount = amount
            payment_row.processed_currency = currency
            # the first gateway object created for the payment stays its reference
            if payment_row.gateway_reference_id is None:
                payment_row.gateway_reference_id = gateway_reference_id
            self.touch(payment_row, context, now)
            self._complete_attempt(attempt_row, state, gateway_error_code, gateway_error_msg, context, now,
                                   gateway_reference_id)
            self.audit(session, payment_row, ChangeType.UPDATE, context, now)
            self.audit(session, attempt_row, ChangeType.UPDATE, context, now)
            saved = to_payment(payment_row)
        logger.info("Payment %s completed with status %s", payment_id, status.value)
        return saved

    def update_attempt_state(self, attempt_id: str, state: AttemptState, gateway_error_code: Optional[str],
                             gateway_error_msg: Optional[str], context: CallContext,
                             gateway_reference_id: Optional[str] = None) -> PaymentAttempt:
        now = self.clock()
        with self.transaction("payment attempt state") as session:
            attempt_row = self._attempt_row(session, attempt_id, context)
            self._complete_attempt(attempt_row, AttemptState(state), gateway_error_code, gateway_error_msg,
                                   context, now, gateway_reference_id)
            self.audit(session, attempt_row, ChangeType.UPDATE, context, now)
            return to_attempt(attempt_row)

    def get_payment(self, payment_id: str, context: TenantContext) -> Optional[Payment]:
        with self.transaction("payment") as session:
            row = session.scalar(self.scoped(PaymentRecord, context).where(PaymentRecord.id == payment_id))
            return to_payment(row) if row is not None else None

    def get_payments_for_invoice(self, invoice_id: str, context: TenantContext) -> List[Payment]:
        return self._payments(context, PaymentRecord.invoice_id == invoice_id)

    def get_payments_for_account(self, account_id: str, context: TenantContext) -> List[Payment]:
        return self._payments(context, PaymentRecord.account_id == account_id)

    def get_last_payment_for_payment_method(self, account_id: str, payment_method_id: str,
                                            context: TenantContext) -> Optional[Payment]:
        with self.transaction("payment") as session:
            row = session.scalar(
                self.scoped(PaymentRecord, context)
                .where(PaymentRecord.account_id == account_id,
                       PaymentRecord.payment_method_id == payment_method_id)
                .order_by(PaymentRecord.created_date.desc(), PaymentRecord.record_id.desc())
                .limit(1)
            )
            return to_payment(row) if row is not None else None

    def get_attempts_for_payment(self, payment_id: str, context: TenantContext) -> List[PaymentAttempt]:
        with self.transaction("payment attempts") as session:
            rows = session.scalars(
                self.scoped(PaymentAttemptRecord, context)
                .where(PaymentAttemptRecord.payment_id == payment_id)
                .order_by(PaymentAttemptRecord.created_date, PaymentAttemptRecord.record_id)
            ).all()
            return [to_attempt(row) for row in rows]

    def get_payment_attempt(self, attempt_id: str, context: TenantContext) -> Optional[PaymentAttempt]:
        with self.transaction("payment attempt") as session:
            row = session.scalar(
                self.scoped(PaymentAttemptRecord, context).where(PaymentAttemptRecord.id == attempt_id)
            )
            return to_attempt(row) if row is not None else None

    def get_payment_attempt_by_external_key(self, external_key: str,
                                            context: TenantContext) -> Optional[PaymentAttempt]:
        with self.transaction("payment attempt") as session:
            row = session.scalar(
                self.scoped(PaymentAttemptRecord, context)
                .where(PaymentAttemptRecord.transaction_external_key == external_key)
            )
            return to_attempt(row) if row is not None else None

    def insert_refund(self, refund: Refund, context: CallContext) -> Refund:
        now = self.clock()
        with self.transaction("refund") as session:
            row = self._add_refund(session, refund, context, now)
            return to_refund(row)

    def insert_refund_with_attempt(self, payment_id: str, attempt: PaymentAttempt, refund: Refund,
                                   context: CallContext) -> Refund:
        """Append the REFUND ``attempt`` to the payment and create ``refund`` together."""
        now = self.clock()
        with self.transaction("refund", duplicate_key=attempt.transaction_external_key) as session:
            self._append_attempt(session, payment_id, attempt, context, now)
            row = self._add_refund(session, replace(refund, payment_id=payment_id), context, now)
            saved = to_refund(row)
        logger.info("Created refund %s with attempt %s on payment %s", refund.id,
                    attempt.transaction_external_key, payment_id)
        return saved

    def get_refund(self, refund_id: str, context: TenantContext) -> Optional[Refund]:
        with self.transaction("refund") as session:
            row = session.scalar(self.scoped(RefundRecord, context).where(RefundRecord.id == refund_id))
            return to_refund(row) if row is not None else None

    def update_refund_status(self, refund_id: str, status: RefundStatus, processed_amount: Decimal,
                             processed_currency: str, context: CallContext, attempt_id: Optional[str] = None,
                             gateway_error_code: Optional[str] = None, gateway_error_msg: Optional[str] = None,
                             attempt_state: Optional[AttemptState] = None,
                             gateway_reference_id: Optional[str] = None) -> Refund:
        status = RefundStatus(status)
        now = self.clock()
        with self.transaction("refund status") as session:
            row = session.scalar(self.scoped(RefundRecord, context).where(RefundRecord.id == refund_id))
            if row is None:
                raise NotFound(ErrorCode.PAYMENT_NO_SUCH_REFUND, refund_id)
            current = RefundStatus(row.refund_status)
            if current is not RefundStatus.CREATED and current is not status:
                raise PaymentApiException(ErrorCode.PAYMENT_INVALID_REFUND_TRANSITION, refund_id,
                                          current.value, status.value)
            row.refund_status = status.value
            row.processed_amount = processed_amount
            row.processed_currency = processed_currency
            self.touch(row, context, now)
            self.audit(session, row, ChangeType.UPDATE, context, now)
            if attempt_id is not None:
                if attempt_state is None:
                    attempt_state = AttemptState.SUCCESS if status is RefundStatus.COMPLETED else AttemptState.FAILED
                attempt_row = self._attempt_row(session, attempt_id, context)
                self._complete_attempt(attempt_row, AttemptState(attempt_state), gateway_error_code,
                                       gateway_error_msg, context, now, gateway_reference_id)
                self.audit(session, attempt_row, ChangeType.UPDATE, context, now)
            return to_refund(row)

    def get_refunds_for_payment(self, payment_id: str, context: TenantContext) -> List[Refund]:
        return self._refunds(context, RefundRecord.payment_id == payment_id)

    def get_refunds_for_account(self, account_id: str, context: TenantContext) -> List[Refund]:
        return self._refunds(context, RefundRecord.account_id == account_id)

    def _payments(self, context: TenantContext, criterion) -> List[Payment]:
        with self.transaction("payments") as session:
            rows = session.scalars(
                self.scoped(PaymentRecord, context)
                .where(criterion)
                .order_by(PaymentRecord.created_date, PaymentRecord.record_id)
            ).all()
            return [to_payment(row) for row in rows]

    def _refunds(self, context: TenantContext, criterion) -> List[Refund]:
        with self.transaction("refunds") as session:
            rows = session.scalars(
                self.scoped(RefundRecord, context)
                .where(criterion)
                .order_by(RefundRecord.created_date, RefundRecord.record_id)
            ).all()
            return [to_refund(row) for row in rows]

    def _payment_row(self, session: Session, payment_id: str, context: TenantContext) -> PaymentRecord:
        row = session.scalar(self.scoped(PaymentRecord, context).where(PaymentRecord.id == payment_id))
        if row is None:
            raise NotFound(ErrorCode.PAYMENT_NO_SUCH_PAYMENT, payment_id)
        return row

    def _attempt_row(self, session: Session, attempt_id: str, context: TenantContext) -> PaymentAttemptRecord:
        row = session.scalar(self.scoped(PaymentAttemptRecord, context).where(PaymentAttemptRecord.id == attempt_id))
        if row is None:
            raise NotFound(ErrorCode.PAYMENT_NO_SUCH_ATTEMPT, attempt_id)
        return row

    def _append_attempt(self, session: Session, payment_id: str, attempt: PaymentAttempt,
                        context: CallContext, now: datetime) -> PaymentRecord:
        payment_row = self._payment_row(session, payment_id, context)
        attempt_row = PaymentAttemptRecord(**attempt_params(attempt.for_payment(payment_id), context, now))
        session.add(attempt_row)
        # account and invoice never move with a new attempt; capture and
        # refund amounts are not a new requested amount
        if attempt.payment_method_id is not None:
            payment_row.payment_method_id = attempt.payment_method_id
        if attempt.amount is not None and attempt.operation_name in _REQUESTING_OPERATIONS:
            payment_row.amount = attempt.amount
        if attempt.effective_date is not None:
            payment_row.effective_date = attempt.effective_date
        self.touch(payment_row, context, now)
        session.flush()
        self.audit(session, attempt_row, ChangeType.INSERT, context, now)
        self.audit(session, payment_row, ChangeType.UPDATE, context, now)
        return payment_row

    def _add_refund(self, session: Session, refund: Refund, context: CallContext, now: datetime) -> RefundRecord:
        row = RefundRecord(**refund_params(refund, context, now))
        session.add(row)
        session.flush()
        self.audit(session, row, ChangeType.INSERT, context, now)
        return row

    def _complete_attempt(self, row: PaymentAttemptRecord, state: AttemptState, gateway_error_code: Optional[str],
                          gateway_error_msg: Optional[str], context: CallContext, now: datetime,
                          gateway_reference_id: Optional[str] = None) -> None:
        row.state_name = state.value
        row.gateway_error_code = gateway_error_code
        row.gateway_error_msg = gateway_error_msg
        if gateway_reference_id is not None:
            row.gateway_reference_id = gateway_reference_id
        self.touch(row, context, now)
