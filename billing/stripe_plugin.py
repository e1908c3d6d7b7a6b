import logging
from decimal import Decimal

import stripe

from billing.config import settings
from billing.domain import CallContext
from billing.plugins import (
    GATEWAY_REFERENCE_PROPERTY,
    PaymentPluginApi,
    PaymentPluginApiException,
    PaymentPluginStatus,
    PaymentTransactionInfo,
    TransientPluginError,
)

logger = logging.getLogger(__name__)

PLUGIN_NAME = "stripe"

ZERO_DECIMAL_CURRENCIES = {"BIF", "CLP", "DJF", "GNF", "JPY", "KMF", "KRW", "MGA",
                           "PYG", "RWF", "UGX", "VND", "VUV", "XAF", "XOF", "XPF"}

INTENT_STATUSES = {
    "succeeded": PaymentPluginStatus.PROCESSED,
    "requires_capture": PaymentPluginStatus.PROCESSED,
    "processing": PaymentPluginStatus.PENDING,
    "requires_action": PaymentPluginStatus.PENDING,
    "requires_confirmation": PaymentPluginStatus.PENDING,
    "requires_payment_method": PaymentPluginStatus.ERROR,
    "canceled": PaymentPluginStatus.CANCELED,
}

REFUND_STATUSES = {
    "succeeded": PaymentPluginStatus.PROCESSED,
    "pending": PaymentPluginStatus.PENDING,
    "requires_action": PaymentPluginStatus.PENDING,
    "failed": PaymentPluginStatus.ERROR,
    "canceled": PaymentPluginStatus.CANCELED,
}


def to_minor_units(amount: Decimal, currency: str) -> int:
    if currency.upper() in ZERO_DECIMAL_CURRENCIES:
        return int(amount.to_integral_value())
    return int((amount * 100).to_integral_value())


class StripePaymentPlugin(PaymentPluginApi):
    """Gateway plugin on top of Stripe PaymentIntents.

    Properties understood: ``payment_method`` and ``customer`` for new
    intents, ``payment_intent`` for capture and refund, falling back on the
    reference of the payment being captured or refunded.  The attempt's
    external key is forwarded as the Stripe idempotency key.
    """

    def __init__(self, api_key: str = None):
        stripe.api_key = api_key or settings.STRIPE_SECRET_KEY

    def authorize_payment(self, account_id, payment_id, external_key, amount, currency, properties,
                          context: CallContext) -> PaymentTransactionInfo:
        return self._create_intent(account_id, payment_id, external_key, amount, currency, properties, "manual")

    def purchase_payment(self, account_id, payment_id, external_key, amount, currency, properties,
                         context: CallContext) -> PaymentTransactionInfo:
        return self._create_intent(account_id, payment_id, external_key, amount, currency, properties, "automatic")

    def capture_payment(self, account_id, payment_id, external_key, amount, currency, properties,
                        context: CallContext) -> PaymentTransactionInfo:
        intent_id = properties.get("payment_intent") or self._require(properties, GATEWAY_REFERENCE_PROPERTY)
        return self._stripe_call(
            INTENT_STATUSES, amount, currency,
            stripe.PaymentIntent.capture,
            intent_id,
            amount_to_capture=to_minor_units(amount, currency),
            idempotency_key=external_key,
        )

    def refund_payment(self, account_id, payment_id, external_key, amount, currency, properties,
                       context: CallContext) -> PaymentTransactionInfo:
        intent_id = properties.get("payment_intent") or self._require(properties, GATEWAY_REFERENCE_PROPERTY)
        return self._stripe_call(
            REFUND_STATUSES, amount, currency,
            stripe.Refund.create,
            payment_intent=intent_id,
            amount=to_minor_units(amount, currency),
            idempotency_key=external_key,
        )

    def _create_intent(self, account_id, payment_id, external_key, amount, currency, properties, capture_method):
        return self._stripe_call(
            INTENT_STATUSES, amount, currency,
            stripe.PaymentIntent.create,
            amount=to_minor_units(amount, currency),
            currency=currency.lower(),
            payment_method=self._require(properties, "payment_method"),
            customer=properties.get("customer"),
            capture_method=capture_method,
            confirm=True,
            off_session=True,
            metadata={"account_id": account_id, "payment_id": payment_id},
            idempotency_key=external_key,
        )

    @staticmethod
    def _require(properties: dict, name: str) -> str:
        value = properties.get(name)
        if not value:
            raise PaymentPluginApiException(f"Missing plugin property '{name}'", error_type="invalid_request")
        return value

    @staticmethod
    def _stripe_call(statuses: dict, amount: Decimal, currency: str, fn, /, *args, **kwargs) -> PaymentTransactionInfo:
        try:
            obj = fn(*args, **kwargs)
        except stripe.CardError as exc:
            logger.info("Stripe declined the card: %s", exc.code)
            return PaymentTransactionInfo(
                status=PaymentPluginStatus.ERROR,
                amount=amount,
                currency=currency,
                gateway_error_code=exc.code,
                gateway_error=exc.user_message or str(exc),
            )
        except (stripe.RateLimitError, stripe.APIConnectionError) as exc:
            raise TransientPluginError(str(exc)) from exc
        except stripe.APIError as exc:
            # 5xx from Stripe: the request may or may not have been applied
            raise TransientPluginError(str(exc)) from exc
        except stripe.StripeError as exc:
            raise PaymentPluginApiException(str(exc), error_type=type(exc).__name__) from exc

        status = statuses.get(obj.status)
        if status is None:
            raise PaymentPluginApiException(f"Unexpected Stripe status '{obj.status}' for {obj.id}")
        return PaymentTransactionInfo(status=status, amount=amount, currency=currency, first_reference_id=obj.id)
