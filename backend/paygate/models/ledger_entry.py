"""Immutable ledger entries, one per balance delta."""

from datetime import datetime
from decimal import Decimal
from enum import Enum
import uuid

from sqlalchemy import String, Numeric, TIMESTAMP, Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column

from paygate.database import Base


class LedgerDirection(str, Enum):
    """Ledger entry direction."""
    CREDIT = "credit"
    DEBIT = "debit"


class LedgerEntry(Base):
    """Append-only ledger record written with its balance mutation."""

    __tablename__ = "ledger_entries"

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid.uuid4())
    )

    uid: Mapped[str] = mapped_column(String(36), nullable=False, index=True)

    # At most one entry per settled transaction
    transaction_id: Mapped[str] = mapped_column(
        String(36),
        unique=True,
        nullable=False
    )

    direction: Mapped[LedgerDirection] = mapped_column(
        SQLEnum(LedgerDirection),
        nullable=False
    )

    amount: Mapped[Decimal] = mapped_column(Numeric(20, 2), nullable=False)

    description: Mapped[str] = mapped_column(String(255), nullable=False)

    timestamp: Mapped[datetime] = mapped_column(
        TIMESTAMP,
        nullable=False,
        default=datetime.utcnow,
        index=True
    )

    def __repr__(self) -> str:
        return f"<LedgerEntry(id={self.id}, direction={self.direction}, amount={self.amount})>"
