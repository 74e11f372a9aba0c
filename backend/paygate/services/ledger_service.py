"""Balance ledger: the atomic settlement mutation and read-only wallet views."""

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import List

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from paygate.core.errors import (
    AlreadyPaidError,
    InsufficientFundsError,
    IntegrityError,
    OwnershipError,
    TransactionNotFoundError,
)
from paygate.core.transaction import TransactionKind, TransactionRecord
from paygate.models.delivery import Delivery, DeliveryStatus
from paygate.models.ledger_entry import LedgerDirection, LedgerEntry
from paygate.models.pending_transaction import PendingTransaction
from paygate.models.user import AccountLevel, User

logger = logging.getLogger(__name__)


@dataclass
class LedgerMutation:
    """Outcome of a committed settlement."""
    transaction_id: str
    kind: TransactionKind
    amount: Decimal
    new_balance: Decimal
    obligation_ref: str | None = None
    upgraded: bool = False


async def apply_settlement(
    db: AsyncSession,
    record: TransactionRecord,
    premium_threshold: Decimal
) -> LedgerMutation:
    """
    Apply a confirmed transaction to the user's balance.

    Must run inside the caller's transaction (``async with db.begin()``):
    the pending-record delete, the balance update, the obligation flip and
    the ledger insert commit together or not at all.

    Raises:
        TransactionNotFoundError: pending record already consumed
        IntegrityError: owning user no longer exists
        OwnershipError: obligation missing, not owned or not payable
        AlreadyPaidError: obligation already paid
        InsufficientFundsError: balance below the payment amount
    """
    now = datetime.utcnow()

    consumed = await db.execute(
        delete(PendingTransaction).where(PendingTransaction.id == record.transaction_id)
    )
    if consumed.rowcount == 0:
        raise TransactionNotFoundError(f"Transaction {record.transaction_id} already settled")

    result = await db.execute(
        select(User).where(User.id == record.uid).with_for_update()
    )
    user = result.scalar_one_or_none()

    if not user:
        raise IntegrityError(f"User {record.uid} for transaction {record.transaction_id} not found")

    upgraded = False

    if record.kind == TransactionKind.BALANCE_FUNDING:
        user.balance += record.amount
        if user.balance >= premium_threshold and user.account_level != AccountLevel.PREMIUM:
            user.account_level = AccountLevel.PREMIUM
            user.upgraded_at = now
            upgraded = True
        direction = LedgerDirection.CREDIT
        description = "Wallet funding"

    else:
        await _check_obligation(db, record)

        if user.balance < record.amount:
            raise InsufficientFundsError(
                f"Balance {user.balance} below payment amount {record.amount}"
            )

        flipped = await db.execute(
            update(Delivery)
            .where(Delivery.id == record.obligation_ref, Delivery.paid.is_(False))
            .values(paid=True, paid_at=now)
        )
        if flipped.rowcount == 0:
            raise AlreadyPaidError(f"Delivery {record.obligation_ref} already paid")

        user.balance -= record.amount
        direction = LedgerDirection.DEBIT
        description = f"Delivery payment for {record.obligation_ref}"

    user.balance_updated_at = now
    await db.flush()

    await _record_entry(db, record, direction, description, now)

    logger.info(
        f"Settled {record.kind.value} {record.transaction_id}: "
        f"{direction.value} {record.amount} for user {record.uid} (new balance: {user.balance})"
    )

    return LedgerMutation(
        transaction_id=record.transaction_id,
        kind=record.kind,
        amount=record.amount,
        new_balance=user.balance,
        obligation_ref=record.obligation_ref,
        upgraded=upgraded,
    )


async def _check_obligation(db: AsyncSession, record: TransactionRecord) -> None:
    """Re-validate the obligation at settlement time, under a row lock."""
    result = await db.execute(
        select(Delivery).where(Delivery.id == record.obligation_ref).with_for_update()
    )
    delivery = result.scalar_one_or_none()

    if not delivery or delivery.user_id != record.uid:
        raise OwnershipError(f"Delivery {record.obligation_ref} is not payable by {record.uid}")
    if delivery.paid:
        raise AlreadyPaidError(f"Delivery {record.obligation_ref} already paid")
    if delivery.status not in DeliveryStatus.PAYABLE:
        raise OwnershipError(f"Delivery {record.obligation_ref} is {delivery.status}, not payable")


async def _record_entry(
    db: AsyncSession,
    record: TransactionRecord,
    direction: LedgerDirection,
    description: str,
    timestamp: datetime
) -> None:
    db.add(LedgerEntry(
        uid=record.uid,
        transaction_id=record.transaction_id,
        direction=direction,
        amount=record.amount,
        description=description,
        timestamp=timestamp
    ))
    await db.flush()


async def get_wallet(db: AsyncSession, uid: str) -> User | None:
    result = await db.execute(select(User).where(User.id == uid))
    return result.scalar_one_or_none()


async def get_history(
    db: AsyncSession,
    uid: str,
    limit: int = 50,
    offset: int = 0
) -> List[LedgerEntry]:
    """Ledger entries for a user, newest first."""
    result = await db.execute(
        select(LedgerEntry)
        .where(LedgerEntry.uid == uid)
        .order_by(LedgerEntry.timestamp.desc())
        .limit(limit)
        .offset(offset)
    )
    return list(result.scalars().all())
