import enum
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class PaymentStatus(str, enum.Enum):
    UNKNOWN = "UNKNOWN"
    PENDING = "PENDING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


class RefundStatus(str, enum.Enum):
    CREATED = "CREATED"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class TransactionType(str, enum.Enum):
    AUTHORIZE = "AUTHORIZE"
    CAPTURE = "CAPTURE"
    PURCHASE = "PURCHASE"
    REFUND = "REFUND"


class AttemptState(str, enum.Enum):
    INIT = "INIT"
    RETRIED = "RETRIED"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    ABORTED = "ABORTED"


class ChangeType(str, enum.Enum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


@dataclass(frozen=True)
class TenantContext:
    tenant_id: str


@dataclass(frozen=True)
class CallContext(TenantContext):
    """Who performs a mutation, on behalf of which tenant."""

    user_name: str = "system"
    reason_code: Optional[str] = None
    comments: Optional[str] = None
    user_token: str = field(default_factory=new_id)


@dataclass(frozen=True)
class Account:
    id: str
    currency: str
    payment_method_id: Optional[str] = None


@dataclass(frozen=True)
class Payment:
    account_id: str
    invoice_id: str
    payment_method_id: str
    amount: Decimal
    currency: str
    effective_date: datetime
    status: PaymentStatus = PaymentStatus.UNKNOWN
    processed_amount: Optional[Decimal] = None
    processed_currency: Optional[str] = None
    gateway_reference_id: Optional[str] = None
    id: str = field(default_factory=new_id)
    created_date: Optional[datetime] = None
    updated_date: Optional[datetime] = None


@dataclass(frozen=True)
class PaymentAttempt:
    transaction_external_key: str
    operation_name: TransactionType
    plugin_name: str
    state_name: AttemptState = AttemptState.INIT
    payment_id: Optional[str] = None
    # When set, these move the payment's mutable fields along with the attempt
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    payment_method_id: Optional[str] = None
    effective_date: Optional[datetime] = None
    gateway_error_code: Optional[str] = None
    gateway_error_msg: Optional[str] = None
    gateway_reference_id: Optional[str] = None
    # the attempt this one retries after a transient failure
    retry_of_attempt_id: Optional[str] = None
    id: str = field(default_factory=new_id)
    created_date: Optional[datetime] = None
    updated_date: Optional[datetime] = None

    def for_payment(self, payment_id: str) -> "PaymentAttempt":
        return replace(self, payment_id=payment_id)


@dataclass(frozen=True)
class Refund:
    account_id: str
    payment_id: str
    amount: Decimal
    currency: str
    processed_amount: Decimal
    processed_currency: str
    is_adjusted: bool
    status: RefundStatus = RefundStatus.CREATED
    id: str = field(default_factory=new_id)
    created_date: Optional[datetime] = None
    updated_date: Optional[datetime] = None


@dataclass(frozen=True)
class PaymentMethod:
    account_id: str
    plugin_name: str
    is_active: bool = True
    external_key: Optional[str] = None
    id: str = field(default_factory=new_id)
    created_date: Optional[datetime] = None
    updated_date: Optional[datetime] = None


@dataclass(frozen=True)
class EntityAudit:
    table_name: str
    record_id: int
    change_type: ChangeType


@dataclass(frozen=True)
class AuditLog:
    table_name: str
    record_id: int
    change_type: ChangeType
    changed_by: str
    user_token: str
    created_date: datetime
