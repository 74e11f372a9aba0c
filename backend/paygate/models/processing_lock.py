"""Processing lock rows: one per transaction being settled."""

from datetime import datetime

from sqlalchemy import String, TIMESTAMP
from sqlalchemy.orm import Mapped, mapped_column

from paygate.database import Base


class ProcessingLock(Base):
    """Existence of a row means a settlement is in progress (or was interrupted)."""

    __tablename__ = "processing_locks"

    # Primary key uniqueness is what makes acquisition a single conditional insert
    transaction_id: Mapped[str] = mapped_column(String(36), primary_key=True)

    locked_at: Mapped[datetime] = mapped_column(
        TIMESTAMP,
        nullable=False,
        default=datetime.utcnow
    )

    def __repr__(self) -> str:
        return f"<ProcessingLock(transaction_id={self.transaction_id}, locked_at={self.locked_at})>"
