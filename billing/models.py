from datetime import timezone
from decimal import Decimal

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Index, Integer, Numeric, String, Text
from sqlalchemy.types import TypeDecorator

from billing.database import Base


class Amount(TypeDecorator):
    """Exact decimal column; SQLite has no native decimal so it stores text."""

    impl = Numeric(20, 9)
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "sqlite":
            return dialect.type_descriptor(String(40))
        return dialect.type_descriptor(Numeric(20, 9, asdecimal=True))

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        value = Decimal(value)
        return str(value) if dialect.name == "sqlite" else value

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return value if isinstance(value, Decimal) else Decimal(str(value))


class UTCDateTime(TypeDecorator):
    """Timestamps are stored as naive UTC and always read back as aware UTC."""

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc)
        return value.replace(tzinfo=None)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return value.replace(tzinfo=timezone.utc)


class PaymentRecord(Base):
    __tablename__ = "payments"

    record_id = Column(Integer, primary_key=True, autoincrement=True)
    id = Column(String(36), unique=True, nullable=False)
    account_id = Column(String(36), nullable=False, index=True)
    invoice_id = Column(String(36), index=True)
    payment_method_id = Column(String(36), nullable=False)
    amount = Column(Amount, nullable=False)
    currency = Column(String(3), nullable=False)
    effective_date = Column(UTCDateTime, nullable=False)
    payment_status = Column(String(16), nullable=False)        # UNKNOWN | PENDING | SUCCESS | FAILED
    processed_amount = Column(Amount)
    processed_currency = Column(String(3))
    gateway_reference_id = Column(String(255))
    created_by = Column(String(50), nullable=False)
    updated_by = Column(String(50), nullable=False)
    created_date = Column(UTCDateTime, nullable=False)
    updated_date = Column(UTCDateTime, nullable=False)
    tenant_id = Column(String(36), nullable=False, index=True)


class PaymentAttemptRecord(Base):
    __tablename__ = "payment_attempts"

    record_id = Column(Integer, primary_key=True, autoincrement=True)
    id = Column(String(36), unique=True, nullable=False)
    payment_id = Column(String(36), ForeignKey("payments.id"), nullable=False, index=True)
    transaction_external_key = Column(String(128), unique=True, nullable=False)
    operation_name = Column(String(16), nullable=False)
    plugin_name = Column(String(50), nullable=False)
    state_name = Column(String(16), nullable=False)
    amount = Column(Amount)
    currency = Column(String(3))
    payment_method_id = Column(String(36))
    gateway_error_code = Column(String(32))
    gateway_error_msg = Column(Text)
    gateway_reference_id = Column(String(255))
    retry_of_attempt_id = Column(String(36), ForeignKey("payment_attempts.id"))
    created_by = Column(String(50), nullable=False)
    updated_by = Column(String(50), nullable=False)
    created_date = Column(UTCDateTime, nullable=False)
    updated_date = Column(UTCDateTime, nullable=False)
    tenant_id = Column(String(36), nullable=False, index=True)


class RefundRecord(Base):
    __tablename__ = "refunds"

    record_id = Column(Integer, primary_key=True, autoincrement=True)
    id = Column(String(36), unique=True, nullable=False)
    account_id = Column(String(36), nullable=False, index=True)
    payment_id = Column(String(36), nullable=False, index=True)
    amount = Column(Amount, nullable=False)
    currency = Column(String(3), nullable=False)
    processed_amount = Column(Amount, nullable=False)
    processed_currency = Column(String(3), nullable=False)
    is_adjusted = Column(Boolean, nullable=False, default=False)
    refund_status = Column(String(16), nullable=False)         # CREATED | COMPLETED | FAILED
    created_by = Column(String(50), nullable=False)
    updated_by = Column(String(50), nullable=False)
    created_date = Column(UTCDateTime, nullable=False)
    updated_date = Column(UTCDateTime, nullable=False)
    tenant_id = Column(String(36), nullable=False, index=True)


class PaymentMethodRecord(Base):
    __tablename__ = "payment_methods"

    record_id = Column(Integer, primary_key=True, autoincrement=True)
    id = Column(String(36), unique=True, nullable=False)
    account_id = Column(String(36), nullable=False, index=True)
    plugin_name = Column(String(50), nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    external_key = Column(String(128))
    created_by = Column(String(50), nullable=False)
    updated_by = Column(String(50), nullable=False)
    created_date = Column(UTCDateTime, nullable=False)
    updated_date = Column(UTCDateTime, nullable=False)
    tenant_id = Column(String(36), nullable=False, index=True)


class AuditLogRecord(Base):
    __tablename__ = "audit_log"

    record_id = Column(Integer, primary_key=True, autoincrement=True)
    table_name = Column(String(50), nullable=False)
    target_record_id = Column(Integer, nullable=False)
    change_type = Column(String(6), nullable=False)
    changed_by = Column(String(50), nullable=False)
    user_token = Column(String(36), nullable=False)
    created_date = Column(UTCDateTime, nullable=False)
    tenant_id = Column(String(36), nullable=False)

    __table_args__ = (Index("audit_log_fetch_record", "table_name", "target_record_id", "tenant_id"),)
