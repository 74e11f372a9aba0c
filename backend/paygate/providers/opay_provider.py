"""Mobile-money payments through the OPay cashier."""

import hashlib
import hmac
import json
import logging
from typing import Any, Dict, Mapping, Optional

import httpx

from paygate.core.errors import ProviderError, WebhookSignatureError
from paygate.providers.base import ChargeHandle, EventOutcome, PaymentProvider, ProviderEvent

logger = logging.getLogger(__name__)

CASHIER_CREATE_PATH = "/api/v1/international/cashier/create"
SUCCESS_CODE = "00000"

SUCCEEDED_STATUSES = {"SUCCESS"}
FAILED_STATUSES = {"FAIL", "CLOSE"}


def callback_signature(payload: Dict[str, Any], secret_key: str) -> str:
    """HMAC-SHA3-512 over OPay's canonical callback string."""
    refunded = "t" if payload.get("refunded") else "f"
    message = (
        '{Amount:"%s",Currency:"%s",Reference:"%s",Refunded:%s,Status:"%s",'
        'Timestamp:"%s",Token:"%s",TransactionID:"%s"}'
    ) % (
        payload.get("amount", ""),
        payload.get("currency", ""),
        payload.get("reference", ""),
        refunded,
        payload.get("status", ""),
        payload.get("timestamp", ""),
        payload.get("token", ""),
        payload.get("transactionId", ""),
    )
    return hmac.new(secret_key.encode("utf-8"), message.encode("utf-8"), hashlib.sha3_512).hexdigest()


class OPayProvider(PaymentProvider):
    """OPay adapter; the cashier ``reference`` is our transaction id."""

    name = "opay"

    def __init__(
        self,
        base_url: str,
        public_key: str,
        merchant_id: str,
        secret_key: str,
        currency: str = "NGN",
        country: str = "NG",
        return_url: str = "",
        callback_url: str = "",
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 30.0
    ):
        self.base_url = base_url.rstrip("/")
        self.public_key = public_key
        self.merchant_id = merchant_id
        self.secret_key = secret_key
        self.currency = currency
        self.country = country
        self.return_url = return_url
        self.callback_url = callback_url
        self._transport = transport
        self._timeout = timeout

    async def create_charge(
        self,
        transaction_id: str,
        amount_minor: int,
        metadata: Dict[str, Any]
    ) -> ChargeHandle:
        headers = {
            "Authorization": f"Bearer {self.public_key}",
            "MerchantId": self.merchant_id,
            "Content-Type": "application/json",
        }
        payload = {
            "country": self.country,
            "reference": transaction_id,
            "amount": {"total": amount_minor, "currency": self.currency},
            "returnUrl": self.return_url,
            "callbackUrl": self.callback_url,
            "cancelUrl": self.return_url,
            "expireAt": 30,
            "userInfo": {"userId": metadata.get("uid", "")},
            "product": {
                "name": metadata.get("kind", "payment"),
                "description": metadata.get("description", f"Transaction {transaction_id}"),
            },
        }

        logger.info(f"OPay API Request: POST {CASHIER_CREATE_PATH} for {transaction_id}")
        try:
            async with httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self._timeout,
                transport=self._transport
            ) as client:
                resp = await client.post(CASHIER_CREATE_PATH, json=payload, headers=headers)
        except httpx.HTTPError as e:
            logger.error(f"OPay API Request Error for {transaction_id}: {e}")
            raise ProviderError("Mobile-money provider unreachable") from e

        if resp.status_code >= 400:
            logger.error(f"OPay API Response Error: {resp.status_code} {resp.text}")
            raise ProviderError("Mobile-money provider rejected the charge")

        data = resp.json()
        if data.get("code") != SUCCESS_CODE or not data.get("data"):
            logger.error(f"OPay cashier create failed for {transaction_id}: {data.get('message')}")
            raise ProviderError(data.get("message") or "Mobile-money provider rejected the charge")

        order = data["data"]
        logger.info(f"OPay API Response: order {order.get('orderNo')} for {transaction_id}")
        return ChargeHandle(provider_ref=order["orderNo"], client_handle=order["cashierUrl"])

    def parse_webhook(self, body: bytes, headers: Mapping[str, str]) -> ProviderEvent:
        try:
            envelope = json.loads(body)
            payload = envelope["payload"]
            signature = envelope["sha512"]
        except (ValueError, KeyError, TypeError) as e:
            raise WebhookSignatureError("Invalid webhook body") from e
        if not isinstance(payload, dict):
            raise WebhookSignatureError("Invalid webhook body")

        expected = callback_signature(payload, self.secret_key)
        if not isinstance(signature, str) or not hmac.compare_digest(expected, signature.lower()):
            logger.warning("OPay callback signature verification failed")
            raise WebhookSignatureError("Invalid webhook signature")

        status = str(payload.get("status", "")).upper()
        if status in SUCCEEDED_STATUSES:
            outcome = EventOutcome.SUCCEEDED
        elif status in FAILED_STATUSES:
            outcome = EventOutcome.FAILED
        else:
            outcome = EventOutcome.IGNORED

        try:
            amount_minor = int(payload["amount"]) if payload.get("amount") not in (None, "") else None
        except (TypeError, ValueError):
            amount_minor = None

        return ProviderEvent(
            outcome=outcome,
            provider=self.name,
            event_id=payload.get("transactionId"),
            event_type=envelope.get("type"),
            transaction_id=payload.get("reference"),
            provider_ref=payload.get("transactionId"),
            amount_minor=amount_minor,
            failure_reason=payload.get("displayedFailure") if outcome == EventOutcome.FAILED else None,
        )
