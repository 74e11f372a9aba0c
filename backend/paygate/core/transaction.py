"""Transaction record carried through initiation, sealing and settlement."""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, Optional
import uuid

from paygate.core.errors import ValidationError

MINOR_UNITS_PER_UNIT = 100
CENT = Decimal("0.01")


class TransactionKind(str, Enum):
    BALANCE_FUNDING = "balance_funding"
    OBLIGATION_PAYMENT = "obligation_payment"


class TransactionStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


def parse_amount(value: Any, maximum: Decimal) -> Decimal:
    """
    Validate a client-supplied amount.

    Accepts numbers or numeric strings with at most two decimal places.
    Rejects non-positive, non-finite and amounts above ``maximum``.
    """
    if isinstance(value, bool) or value is None:
        raise ValidationError("Invalid amount")
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValidationError("Invalid amount")

    if not amount.is_finite() or amount <= 0 or amount > maximum:
        raise ValidationError("Invalid amount")
    if amount != amount.quantize(CENT):
        raise ValidationError("Amount supports at most two decimal places")
    return amount.quantize(CENT)


def to_minor_units(amount: Decimal) -> int:
    """Convert to integer minor units (cents/kobo) at the provider boundary."""
    minor = amount * MINOR_UNITS_PER_UNIT
    if minor != minor.to_integral_value():
        raise ValidationError("Amount has sub-minor-unit precision")
    return int(minor)


def from_minor_units(minor: int) -> Decimal:
    return (Decimal(minor) / MINOR_UNITS_PER_UNIT).quantize(CENT)


def new_transaction_id() -> str:
    return str(uuid.uuid4())


@dataclass
class TransactionRecord:
    """Plaintext form of a pending transaction (only ever stored sealed)."""

    transaction_id: str
    uid: str
    kind: TransactionKind
    amount: Decimal
    provider: str
    created_at: datetime
    obligation_ref: Optional[str] = None
    provider_ref: Optional[str] = None
    status: TransactionStatus = field(default=TransactionStatus.PENDING)

    def signed_fields(self) -> Dict[str, Any]:
        """Fields covered by the integrity digest, fixed before the provider call."""
        return {
            "transactionId": self.transaction_id,
            "uid": self.uid,
            "kind": self.kind.value,
            "amount": str(self.amount),
            "obligationRef": self.obligation_ref,
            "provider": self.provider,
            "createdAt": self.created_at.isoformat(),
        }

    def to_dict(self) -> Dict[str, Any]:
        data = self.signed_fields()
        data["providerRef"] = self.provider_ref
        data["status"] = self.status.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TransactionRecord":
        try:
            return cls(
                transaction_id=data["transactionId"],
                uid=data["uid"],
                kind=TransactionKind(data["kind"]),
                amount=Decimal(data["amount"]),
                provider=data["provider"],
                created_at=datetime.fromisoformat(data["createdAt"]),
                obligation_ref=data.get("obligationRef"),
                provider_ref=data.get("providerRef"),
                status=TransactionStatus(data.get("status", TransactionStatus.PENDING.value)),
            )
        except (KeyError, ValueError, InvalidOperation) as e:
            raise ValidationError(f"Malformed transaction record: {e}") from e
