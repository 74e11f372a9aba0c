"""Pending transaction model: encrypted envelope plus integrity digest."""

from datetime import datetime
import uuid

from sqlalchemy import String, Text, TIMESTAMP
from sqlalchemy.orm import Mapped, mapped_column

from paygate.database import Base


class PendingTransaction(Base):
    """
    A transaction awaiting provider confirmation.

    Amount, uid and kind live only inside the sealed envelope. Completed and
    failed transactions are deleted, so a row here is pending (or processing
    while its lock is held).
    """

    __tablename__ = "pending_transactions"

    # Primary Key (the idempotency key for the whole flow)
    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid.uuid4())
    )

    # Provider lookup
    provider: Mapped[str] = mapped_column(String(20), nullable=False)
    provider_ref: Mapped[str | None] = mapped_column(
        String(128),
        unique=True,
        nullable=True,
        index=True
    )

    # Sealed record (base64)
    nonce: Mapped[str] = mapped_column(String(32), nullable=False)
    auth_tag: Mapped[str] = mapped_column(String(32), nullable=False)
    ciphertext: Mapped[str] = mapped_column(Text, nullable=False)

    # HMAC-SHA256 over the plaintext record
    digest: Mapped[str] = mapped_column(String(64), nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP,
        nullable=False,
        default=datetime.utcnow,
        index=True
    )

    @property
    def envelope(self) -> dict:
        return {"nonce": self.nonce, "tag": self.auth_tag, "ciphertext": self.ciphertext}

    def __repr__(self) -> str:
        return f"<PendingTransaction(id={self.id}, provider={self.provider})>"
