"""Card payments through Stripe PaymentIntents."""

import asyncio
import json
import logging
from typing import Any, Dict, Mapping

import stripe

from paygate.core.errors import ProviderError, WebhookSignatureError
from paygate.providers.base import ChargeHandle, EventOutcome, PaymentProvider, ProviderEvent

logger = logging.getLogger(__name__)

SUCCEEDED_EVENT = "payment_intent.succeeded"
FAILED_EVENT = "payment_intent.payment_failed"
SIGNATURE_TOLERANCE_SECONDS = 300


class StripeProvider(PaymentProvider):
    """
    Stripe adapter.

    The transaction id is both the PaymentIntent idempotency key and its
    ``transactionId`` metadata, which is how webhooks find the pending record.
    """

    name = "stripe"

    def __init__(self, secret_key: str, webhook_secret: str, currency: str = "usd"):
        self.secret_key = secret_key
        self.webhook_secret = webhook_secret
        self.currency = currency.lower()

    async def create_charge(
        self,
        transaction_id: str,
        amount_minor: int,
        metadata: Dict[str, Any]
    ) -> ChargeHandle:
        logger.info(f"Creating Stripe PaymentIntent for {transaction_id}: {amount_minor} {self.currency}")

        try:
            intent = await asyncio.to_thread(
                stripe.PaymentIntent.create,
                api_key=self.secret_key,
                amount=amount_minor,
                currency=self.currency,
                idempotency_key=transaction_id,
                metadata={"transactionId": transaction_id, **metadata},
                description=metadata.get("description", f"Transaction {transaction_id}"),
                automatic_payment_methods={"enabled": True},
            )
        except stripe.StripeError as e:
            logger.error(f"Stripe charge creation failed for {transaction_id}: {e}")
            raise ProviderError("Card provider rejected the charge") from e

        logger.info(f"PaymentIntent {intent.id} created for {transaction_id}")
        return ChargeHandle(provider_ref=intent.id, client_handle=intent.client_secret)

    def parse_webhook(self, body: bytes, headers: Mapping[str, str]) -> ProviderEvent:
        signature = headers.get("stripe-signature")
        if not signature:
            raise WebhookSignatureError("Missing Stripe-Signature header")

        try:
            stripe.WebhookSignature.verify_header(
                body.decode("utf-8"), signature, self.webhook_secret, tolerance=SIGNATURE_TOLERANCE_SECONDS
            )
            event = json.loads(body)
        except stripe.SignatureVerificationError as e:
            logger.warning(f"Stripe webhook signature verification failed: {e}")
            raise WebhookSignatureError("Invalid webhook signature") from e
        except ValueError as e:
            raise WebhookSignatureError("Invalid webhook body") from e

        if not isinstance(event, dict) or "type" not in event:
            raise WebhookSignatureError("Invalid webhook body")

        event_type = event["type"]
        if event_type == SUCCEEDED_EVENT:
            outcome = EventOutcome.SUCCEEDED
        elif event_type == FAILED_EVENT:
            outcome = EventOutcome.FAILED
        else:
            return ProviderEvent(
                outcome=EventOutcome.IGNORED,
                provider=self.name,
                event_id=event.get("id"),
                event_type=event_type
            )

        intent = (event.get("data") or {}).get("object") or {}
        metadata = intent.get("metadata") or {}
        failure = None
        if outcome == EventOutcome.FAILED:
            last_error = intent.get("last_payment_error") or {}
            failure = last_error.get("message") or "payment_failed"

        return ProviderEvent(
            outcome=outcome,
            provider=self.name,
            event_id=event.get("id"),
            event_type=event_type,
            transaction_id=metadata.get("transactionId"),
            provider_ref=intent.get("id"),
            amount_minor=intent.get("amount"),
            failure_reason=failure,
        )
