from functools import lru_cache

from billing.automaton import RetryablePaymentAutomatonRunner, RetryPolicy
from billing.config import settings
from billing.dao import PaymentDao
from billing.database import SessionLocal
from billing.internal_api import PaymentInternalApi
from billing.payment_methods import PaymentMethodDao
from billing.plugins import PluginDispatcher, PluginRegistry
from billing.stripe_plugin import PLUGIN_NAME, StripePaymentPlugin


def build_payment_api(session_factory, plugins: PluginRegistry, retry_policy: RetryPolicy = None,
                      retry_scheduler=None, clock=None) -> PaymentInternalApi:
    dao_kwargs = {"clock": clock} if clock is not None else {}
    payment_dao = PaymentDao(session_factory, **dao_kwargs)
    runner = RetryablePaymentAutomatonRunner(
        payment_dao,
        plugins,
        PluginDispatcher(settings.PAYMENT_PLUGIN_TIMEOUT_SECONDS),
        retry_policy or RetryPolicy.from_settings(),
        retry_scheduler,
    )
    return PaymentInternalApi(runner, payment_dao, PaymentMethodDao(session_factory, **dao_kwargs))


@lru_cache()
def get_payment_api() -> PaymentInternalApi:
    plugins = PluginRegistry()
    plugins.register(PLUGIN_NAME, StripePaymentPlugin())
    return build_payment_api(SessionLocal, plugins)
