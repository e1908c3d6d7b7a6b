from datetime import datetime

from billing.domain import (
    AttemptState,
    AuditLog,
    CallContext,
    ChangeType,
    EntityAudit,
    Payment,
    PaymentAttempt,
    PaymentMethod,
    PaymentStatus,
    Refund,
    RefundStatus,
    TransactionType,
)
from billing.models import (
    AuditLogRecord,
    PaymentAttemptRecord,
    PaymentMethodRecord,
    PaymentRecord,
    RefundRecord,
)


def _ownership(context: CallContext, now: datetime) -> dict:
    return {
        "created_by": context.user_name,
        "updated_by": context.user_name,
        "created_date": now,
        "updated_date": now,
        "tenant_id": context.tenant_id,
    }


def payment_params(payment: Payment, context: CallContext, now: datetime) -> dict:
    return {
        "id": payment.id,
        "account_id": payment.account_id,
        "invoice_id": payment.invoice_id,
        "payment_method_id": payment.payment_method_id,
        "amount": payment.amount,
        "currency": payment.currency,
        "effective_date": payment.effective_date,
        "payment_status": PaymentStatus(payment.status).value,
        "processed_amount": payment.processed_amount,
        "processed_currency": payment.processed_currency,
        "gateway_reference_id": payment.gateway_reference_id,
        **_ownership(context, now),
    }


def attempt_params(attempt: PaymentAttempt, context: CallContext, now: datetime) -> dict:
    return {
        "id": attempt.id,
        "payment_id": attempt.payment_id,
        "transaction_external_key": attempt.transaction_external_key,
        "operation_name": TransactionType(attempt.operation_name).value,
        "plugin_name": attempt.plugin_name,
        "state_name": AttemptState(attempt.state_name).value,
        "amount": attempt.amount,
        "currency": attempt.currency,
        "payment_method_id": attempt.payment_method_id,
        "gateway_error_code": attempt.gateway_error_code,
        "gateway_error_msg": attempt.gateway_error_msg,
        "gateway_reference_id": attempt.gateway_reference_id,
        "retry_of_attempt_id": attempt.retry_of_attempt_id,
        **_ownership(context, now),
    }


def refund_params(refund: Refund, context: CallContext, now: datetime) -> dict:
    return {
        "id": refund.id,
        "account_id": refund.account_id,
        "payment_id": refund.payment_id,
        "amount": refund.amount,
        "currency": refund.currency,
        "processed_amount": refund.processed_amount,
        "processed_currency": refund.processed_currency,
        "is_adjusted": refund.is_adjusted,
        "refund_status": RefundStatus(refund.status).value,
        **_ownership(context, now),
    }


def payment_method_params(method: PaymentMethod, context: CallContext, now: datetime) -> dict:
    return {
        "id": method.id,
        "account_id": method.account_id,
        "plugin_name": method.plugin_name,
        "is_active": method.is_active,
        "external_key": method.external_key,
        **_ownership(context, now),
    }


def audit_params(audit: EntityAudit, context: CallContext, now: datetime) -> dict:
    return {
        "table_name": audit.table_name,
        "target_record_id": audit.record_id,
        "change_type": ChangeType(audit.change_type).value,
        "changed_by": context.user_name,
        "user_token": context.user_token,
        "created_date": now,
        "tenant_id": context.tenant_id,
    }


def to_payment(row: PaymentRecord) -> Payment:
    return Payment(
        id=row.id,
        account_id=row.account_id,
        invoice_id=row.invoice_id,
        payment_method_id=row.payment_method_id,
        amount=row.amount,
        currency=row.currency,
        effective_date=row.effective_date,
        status=PaymentStatus(row.payment_status),
        processed_amount=row.processed_amount,
        processed_currency=row.processed_currency,
        gateway_reference_id=row.gateway_reference_id,
        created_date=row.created_date,
        updated_date=row.updated_date,
    )


def to_attempt(row: PaymentAttemptRecord) -> PaymentAttempt:
    return PaymentAttempt(
        id=row.id,
        payment_id=row.payment_id,
        transaction_external_key=row.transaction_external_key,
        operation_name=TransactionType(row.operation_name),
        plugin_name=row.plugin_name,
        state_name=AttemptState(row.state_name),
        amount=row.amount,
        currency=row.currency,
        payment_method_id=row.payment_method_id,
        gateway_error_code=row.gateway_error_code,
        gateway_error_msg=row.gateway_error_msg,
        gateway_reference_id=row.gateway_reference_id,
        retry_of_attempt_id=row.retry_of_attempt_id,
        created_date=row.created_date,
        updated_date=row.updated_date,
    )


def to_refund(row: RefundRecord) -> Refund:
    return Refund(
        id=row.id,
        account_id=row.account_id,
        payment_id=row.payment_id,
        amount=row.amount,
        currency=row.currency,
        processed_amount=row.processed_amount,
        processed_currency=row.processed_currency,
        is_adjusted=row.is_adjusted,
        status=RefundStatus(row.refund_status),
        created_date=row.created_date,
        updated_date=row.updated_date,
    )


def to_payment_method(row: PaymentMethodRecord) -> PaymentMethod:
    return PaymentMethod(
        id=row.id,
        account_id=row.account_id,
        plugin_name=row.plugin_name,
        is_active=row.is_active,
        external_key=row.external_key,
        created_date=row.created_date,
        updated_date=row.updated_date,
    )


def to_audit_log(row: AuditLogRecord) -> AuditLog:
    return AuditLog(
        table_name=row.table_name,
        record_id=row.target_record_id,
        change_type=ChangeType(row.change_type),
        changed_by=row.changed_by,
        user_token=row.user_token,
        created_date=row.created_date,
    )
