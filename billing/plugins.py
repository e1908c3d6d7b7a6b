import enum
import logging
from abc import ABC, abstractmethod
from concurrent import futures
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, Optional

from billing.domain import CallContext, TransactionType
from billing.errors import ErrorCode, PluginError

logger = logging.getLogger(__name__)

# Filled by the runner with the payment's gateway reference on capture and refund
GATEWAY_REFERENCE_PROPERTY = "gateway_reference_id"


class PaymentPluginStatus(str, enum.Enum):
    PROCESSED = "PROCESSED"
    PENDING = "PENDING"
    ERROR = "ERROR"          # explicit decline by the gateway
    CANCELED = "CANCELED"
    UNDEFINED = "UNDEFINED"  # outcome unknown, safe to try again


@dataclass(frozen=True)
class PaymentTransactionInfo:
    status: PaymentPluginStatus
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    gateway_error_code: Optional[str] = None
    gateway_error: Optional[str] = None
    first_reference_id: Optional[str] = None


class PaymentPluginApiException(Exception):
    """Raised by a plugin that could not perform the call at all."""

    def __init__(self, message: str, error_type: str = "plugin"):
        super().__init__(message)
        self.error_type = error_type


class TransientPluginError(PaymentPluginApiException):
    """Network-level failure; the gateway may not have seen the call."""

    def __init__(self, message: str):
        super().__init__(message, error_type="transient")


class PluginTimeout(TransientPluginError):
    pass


class PaymentPluginApi(ABC):

    @abstractmethod
    def authorize_payment(self, account_id: str, payment_id: str, external_key: str, amount: Decimal,
                          currency: str, properties: dict, context: CallContext) -> PaymentTransactionInfo:
        ...

    @abstractmethod
    def capture_payment(self, account_id: str, payment_id: str, external_key: str, amount: Decimal,
                        currency: str, properties: dict, context: CallContext) -> PaymentTransactionInfo:
        ...

    @abstractmethod
    def purchase_payment(self, account_id: str, payment_id: str, external_key: str, amount: Decimal,
                         currency: str, properties: dict, context: CallContext) -> PaymentTransactionInfo:
        ...

    @abstractmethod
    def refund_payment(self, account_id: str, payment_id: str, external_key: str, amount: Decimal,
                       currency: str, properties: dict, context: CallContext) -> PaymentTransactionInfo:
        ...

    def call(self, transaction_type: TransactionType, *args) -> PaymentTransactionInfo:
        operation = {
            TransactionType.AUTHORIZE: self.authorize_payment,
            TransactionType.CAPTURE: self.capture_payment,
            TransactionType.PURCHASE: self.purchase_payment,
            TransactionType.REFUND: self.refund_payment,
        }[TransactionType(transaction_type)]
        return operation(*args)


class PluginRegistry:

    def __init__(self, plugins: Optional[Dict[str, PaymentPluginApi]] = None):
        self._plugins = dict(plugins or {})

    def register(self, name: str, plugin: PaymentPluginApi) -> None:
        self._plugins[name] = plugin

    def get(self, name: str) -> PaymentPluginApi:
        plugin = self._plugins.get(name)
        if plugin is None:
            raise PluginError(ErrorCode.PAYMENT_NO_SUCH_PAYMENT_PLUGIN, name)
        return plugin


class PluginDispatcher:
    """Runs plugin calls on a worker pool so a slow gateway cannot hang the caller.

    A call that outlives the timeout keeps running on its worker; only the
    caller stops waiting for it.
    """

    def __init__(self, timeout_seconds: float, max_workers: int = 8):
        self.timeout_seconds = timeout_seconds
        self._executor = futures.ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="payment-plugin")

    def dispatch(self, plugin_name: str, payment_id: str, fn, *args, **kwargs):
        future = self._executor.submit(fn, *args, **kwargs)
        try:
            return future.result(timeout=self.timeout_seconds)
        except futures.TimeoutError:
            logger.warning("Plugin %s timed out after %ss on payment %s",
                           plugin_name, self.timeout_seconds, payment_id)
            raise PluginTimeout(ErrorCode.PAYMENT_PLUGIN_TIMEOUT.template.format(plugin_name, payment_id))

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False)
