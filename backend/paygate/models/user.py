"""User database model (balance-bearing subset of the user entity)."""

from datetime import datetime
from decimal import Decimal
import uuid

from sqlalchemy import CheckConstraint, String, Numeric, TIMESTAMP
from sqlalchemy.orm import Mapped, mapped_column

from paygate.database import Base


class AccountLevel:
    STANDARD = "standard"
    PREMIUM = "premium"


class User(Base):
    """User owning a spendable balance."""

    __tablename__ = "users"
    __table_args__ = (
        CheckConstraint("balance >= 0", name="ck_users_balance_non_negative"),
    )

    # Primary Key
    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid.uuid4())
    )

    # Basic Info
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)
    full_name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    role: Mapped[str] = mapped_column(String(20), nullable=False, default="user")

    # SHA-256 of the bearer session token issued at login
    session_token_hash: Mapped[str | None] = mapped_column(
        String(64),
        unique=True,
        nullable=True,
        index=True
    )

    # Wallet
    balance: Mapped[Decimal] = mapped_column(
        Numeric(20, 2),
        nullable=False,
        default=Decimal("0.00")
    )
    balance_updated_at: Mapped[datetime | None] = mapped_column(TIMESTAMP, nullable=True)

    account_level: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=AccountLevel.STANDARD
    )  # standard|premium
    upgraded_at: Mapped[datetime | None] = mapped_column(TIMESTAMP, nullable=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP,
        nullable=False,
        default=datetime.utcnow
    )

    def __repr__(self) -> str:
        return f"<User(id={self.id}, balance={self.balance}, level={self.account_level})>"
