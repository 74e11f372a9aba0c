"""Payment provider capability interface.

A provider can create a charge for a transaction and turn a signed webhook
delivery into a provider-agnostic event. Wire formats stay inside the
concrete adapters.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Mapping, Optional


class EventOutcome(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    IGNORED = "ignored"


@dataclass(frozen=True)
class ChargeHandle:
    """Result of a successful charge creation."""
    provider_ref: str  # provider order / intent id
    client_handle: str  # what the client needs to complete payment (client secret, cashier URL)


@dataclass(frozen=True)
class ProviderEvent:
    """A verified webhook delivery."""
    outcome: EventOutcome
    provider: str
    event_id: Optional[str] = None
    event_type: Optional[str] = None
    transaction_id: Optional[str] = None
    provider_ref: Optional[str] = None
    amount_minor: Optional[int] = None
    failure_reason: Optional[str] = None


class PaymentProvider(ABC):
    """Capability implemented by each payment rail."""

    name: str
    currency: str

    @abstractmethod
    async def create_charge(
        self,
        transaction_id: str,
        amount_minor: int,
        metadata: Dict[str, Any]
    ) -> ChargeHandle:
        """
        Ask the provider to create a charge.

        Raises:
            ProviderError: if the provider refuses or cannot be reached
        """

    @abstractmethod
    def parse_webhook(self, body: bytes, headers: Mapping[str, str]) -> ProviderEvent:
        """
        Verify the delivery signature and decode it.

        Raises:
            WebhookSignatureError: bad signature or unparsable body
        """
