"""Payment provider adapters."""

from typing import Dict

from paygate.config import Settings
from paygate.core.errors import ConfigurationError
from paygate.providers.base import ChargeHandle, EventOutcome, PaymentProvider, ProviderEvent
from paygate.providers.opay_provider import OPayProvider
from paygate.providers.stripe_provider import StripeProvider


def build_providers(settings: Settings) -> Dict[str, PaymentProvider]:
    """Instantiate the enabled providers once at startup."""
    providers: Dict[str, PaymentProvider] = {}
    for name in settings.ENABLED_PAYMENT_PROVIDERS:
        if name == "stripe":
            providers[name] = StripeProvider(
                secret_key=settings.STRIPE_SECRET_KEY,
                webhook_secret=settings.STRIPE_WEBHOOK_SECRET,
                currency=settings.STRIPE_CURRENCY,
            )
        elif name == "opay":
            providers[name] = OPayProvider(
                base_url=settings.OPAY_BASE_URL,
                public_key=settings.OPAY_PUBLIC_KEY,
                merchant_id=settings.OPAY_MERCHANT_ID,
                secret_key=settings.OPAY_SECRET_KEY,
                currency=settings.OPAY_CURRENCY,
                country=settings.OPAY_COUNTRY,
                return_url=settings.OPAY_RETURN_URL,
                callback_url=settings.OPAY_CALLBACK_URL,
            )
        else:
            raise ConfigurationError(f"Unknown payment provider: {name}")

    if settings.DEFAULT_PAYMENT_PROVIDER not in providers:
        raise ConfigurationError(
            f"DEFAULT_PAYMENT_PROVIDER {settings.DEFAULT_PAYMENT_PROVIDER!r} is not enabled"
        )
    return providers


__all__ = [
    "ChargeHandle",
    "EventOutcome",
    "PaymentProvider",
    "ProviderEvent",
    "OPayProvider",
    "StripeProvider",
    "build_providers",
]
