import enum


class ErrorCode(enum.Enum):
    PAYMENT_NO_SUCH_PAYMENT = (7100, "Payment {} does not exist")
    PAYMENT_NO_SUCH_PAYMENT_METHOD = (7101, "Payment method {} does not exist")
    PAYMENT_NO_DEFAULT_PAYMENT_METHOD = (7102, "Account {} does not have a default payment method")
    PAYMENT_NO_SUCH_PAYMENT_PLUGIN = (7104, "Payment plugin {} is not registered")
    PAYMENT_NO_SUCH_REFUND = (7105, "Refund {} does not exist")
    PAYMENT_NO_SUCH_ATTEMPT = (7106, "Payment attempt {} does not exist")
    PAYMENT_INVALID_REFUND_TRANSITION = (7107, "Refund {} cannot move from {} to {}")
    PAYMENT_DUPLICATE_KEY = (7110, "External key {} is already in use")
    PAYMENT_PLUGIN_EXCEPTION = (7120, "Payment plugin {} failed: {}")
    PAYMENT_PLUGIN_TIMEOUT = (7121, "Payment plugin {} did not answer for payment {}")
    PAYMENT_RETRYABLE_FAILURE = (7122, "Payment {} failed with a transient error: {}")
    PAYMENT_BAD_AMOUNT = (7130, "Invalid payment amount {}")
    PAYMENT_PERSISTENCE_ERROR = (7140, "Failed to persist {}")
    CAT_BAD_PHASE_NAME = (2010, "Bad phase name {}")
    CAT_INVALID_CATALOG = (2020, "Invalid catalog {}: {}")

    def __init__(self, number: int, template: str):
        self.number = number
        self.template = template


class BillingError(Exception):
    def __init__(self, code: ErrorCode, *args):
        self.code = code
        self.args_ = args
        super().__init__(code.template.format(*args))


class PaymentApiException(BillingError):
    pass


class NotFound(PaymentApiException):
    pass


class DuplicateKey(PaymentApiException):
    def __init__(self, external_key: str):
        super().__init__(ErrorCode.PAYMENT_DUPLICATE_KEY, external_key)
        self.external_key = external_key


class PluginError(PaymentApiException):
    pass


class RetryableFailure(PaymentApiException):
    pass


class PersistenceError(PaymentApiException):
    pass


class CatalogApiException(BillingError):
    pass


class CatalogValidationException(CatalogApiException):
    def __init__(self, uri: str, errors: list):
        self.errors = list(errors)
        super().__init__(
            ErrorCode.CAT_INVALID_CATALOG,
            uri,
            "; ".join(error.message for error in self.errors),
        )
