"""Payment request and response schemas.

Fields are snake_case in Python and camelCase on the wire.
"""

from decimal import Decimal
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class FundRequest(CamelModel):
    """Request to add funds to the caller's balance."""

    # Validated by the engine so every bad amount answers 400
    amount: Any = Field(..., description="Amount in major units, at most two decimals")
    provider: Optional[str] = Field(None, description="Payment provider; defaults to the configured one")


class PayObligationRequest(CamelModel):
    """Request to pay for a delivery."""

    obligation_id: str = Field(..., min_length=1, description="Delivery id")
    amount: Any = Field(..., description="Must equal the delivery price")
    provider: Optional[str] = None


class InitiationResponse(CamelModel):
    transaction_id: str
    kind: str
    amount: Decimal
    provider: str
    provider_charge_handle: str


class TransactionStatusResponse(CamelModel):
    transaction_id: str
    status: str  # pending|processing
    kind: str


class ManualConfirmRequest(CamelModel):
    transaction_id: str = Field(..., min_length=1)


class ManualConfirmResponse(CamelModel):
    transaction_id: str
    outcome: str
    new_balance: Optional[Decimal] = None
    reason: Optional[str] = None


class RealtimeTokenResponse(CamelModel):
    token: str
    expires_in: int


class WebhookAck(BaseModel):
    received: bool = True
