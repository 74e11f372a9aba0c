"""Delivery database model: the payable obligation."""

from datetime import datetime
from decimal import Decimal
import uuid

from sqlalchemy import String, Numeric, Boolean, ForeignKey, TIMESTAMP
from sqlalchemy.orm import Mapped, mapped_column

from paygate.database import Base


class DeliveryStatus:
    PENDING = "pending"
    CONFIRMED = "confirmed"
    IN_TRANSIT = "in_transit"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"

    # Only confirmed deliveries can be paid for
    PAYABLE = frozenset({CONFIRMED})


class Delivery(Base):
    """A delivery awaiting payment; marked paid exactly once."""

    __tablename__ = "deliveries"

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid.uuid4())
    )

    user_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )

    price: Mapped[Decimal] = mapped_column(Numeric(20, 2), nullable=False)

    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=DeliveryStatus.PENDING,
        index=True
    )  # pending|confirmed|in_transit|delivered|cancelled

    paid: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    paid_at: Mapped[datetime | None] = mapped_column(TIMESTAMP, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP,
        nullable=False,
        default=datetime.utcnow
    )

    @property
    def is_payable(self) -> bool:
        return self.status in DeliveryStatus.PAYABLE and not self.paid

    def __repr__(self) -> str:
        return f"<Delivery(id={self.id}, status={self.status}, paid={self.paid})>"
