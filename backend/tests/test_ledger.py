"""Tests for the atomic settlement mutation."""

from datetime import datetime
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from conftest import create_delivery, create_user, reload_delivery, reload_user
from paygate.core.errors import (
    AlreadyPaidError,
    InsufficientFundsError,
    OwnershipError,
    TransactionNotFoundError,
)
from paygate.core.transaction import TransactionKind, TransactionRecord, new_transaction_id
from paygate.models.delivery import DeliveryStatus
from paygate.models.ledger_entry import LedgerDirection, LedgerEntry
from paygate.models.pending_transaction import PendingTransaction
from paygate.models.user import AccountLevel
from paygate.services import ledger_service
from paygate.services.ledger_service import apply_settlement

THRESHOLD = Decimal("50000")


def _record(uid, amount, kind=TransactionKind.BALANCE_FUNDING, obligation_ref=None):
    return TransactionRecord(
        transaction_id=new_transaction_id(),
        uid=uid,
        kind=kind,
        amount=Decimal(amount),
        provider="fake",
        created_at=datetime.utcnow(),
        obligation_ref=obligation_ref,
    )


async def _store_pending(session_factory, record):
    async with session_factory() as session:
        session.add(PendingTransaction(
            id=record.transaction_id,
            provider=record.provider,
            nonce="bm9uY2U=",
            auth_tag="dGFn",
            ciphertext="Y2lwaGVy",
            digest="0" * 64,
        ))
        await session.commit()


async def _settle(session_factory, record):
    async with session_factory() as session:
        async with session.begin():
            return await apply_settlement(session, record, premium_threshold=THRESHOLD)


async def _ledger_count(session_factory, uid):
    async with session_factory() as session:
        result = await session.execute(select(func.count()).select_from(LedgerEntry).where(LedgerEntry.uid == uid))
        return result.scalar()


async def _pending_exists(session_factory, transaction_id):
    async with session_factory() as session:
        return await session.get(PendingTransaction, transaction_id) is not None


@pytest.mark.asyncio
async def test_funding_credits_balance_and_writes_ledger(session_factory):
    user, _ = await create_user(session_factory, balance="10.00")
    record = _record(user.id, "100.00")
    await _store_pending(session_factory, record)

    mutation = await _settle(session_factory, record)

    assert mutation.new_balance == Decimal("110.00")
    assert not mutation.upgraded
    refreshed = await reload_user(session_factory, user.id)
    assert refreshed.balance == Decimal("110.00")
    assert refreshed.balance_updated_at is not None
    assert not await _pending_exists(session_factory, record.transaction_id)

    async with session_factory() as session:
        entries = await ledger_service.get_history(session, user.id)
    assert len(entries) == 1
    assert entries[0].direction == LedgerDirection.CREDIT
    assert entries[0].amount == Decimal("100.00")
    assert entries[0].transaction_id == record.transaction_id


@pytest.mark.asyncio
async def test_funding_past_threshold_upgrades_account(session_factory):
    user, _ = await create_user(session_factory, balance="49990.00")
    record = _record(user.id, "10.00")
    await _store_pending(session_factory, record)

    mutation = await _settle(session_factory, record)

    assert mutation.upgraded
    refreshed = await reload_user(session_factory, user.id)
    assert refreshed.account_level == AccountLevel.PREMIUM
    assert refreshed.upgraded_at is not None


@pytest.mark.asyncio
async def test_obligation_payment_debits_and_marks_paid(session_factory):
    user, _ = await create_user(session_factory, balance="25.00")
    delivery = await create_delivery(session_factory, user.id, price="25.00")
    record = _record(user.id, "25.00", TransactionKind.OBLIGATION_PAYMENT, delivery.id)
    await _store_pending(session_factory, record)

    mutation = await _settle(session_factory, record)

    assert mutation.new_balance == Decimal("0.00")
    assert (await reload_user(session_factory, user.id)).balance == Decimal("0.00")
    paid = await reload_delivery(session_factory, delivery.id)
    assert paid.paid
    assert paid.paid_at is not None

    async with session_factory() as session:
        entries = await ledger_service.get_history(session, user.id)
    assert [e.direction for e in entries] == [LedgerDirection.DEBIT]


@pytest.mark.asyncio
async def test_insufficient_funds_leaves_everything_unchanged(session_factory):
    user, _ = await create_user(session_factory, balance="10.00")
    delivery = await create_delivery(session_factory, user.id, price="25.00")
    record = _record(user.id, "25.00", TransactionKind.OBLIGATION_PAYMENT, delivery.id)
    await _store_pending(session_factory, record)

    with pytest.raises(InsufficientFundsError):
        await _settle(session_factory, record)

    assert (await reload_user(session_factory, user.id)).balance == Decimal("10.00")
    assert not (await reload_delivery(session_factory, delivery.id)).paid
    assert await _ledger_count(session_factory, user.id) == 0
    # The rollback also restores the pending record
    assert await _pending_exists(session_factory, record.transaction_id)


@pytest.mark.asyncio
async def test_failure_between_balance_update_and_ledger_insert_rolls_back(session_factory, monkeypatch):
    user, _ = await create_user(session_factory, balance="5.00")
    record = _record(user.id, "100.00")
    await _store_pending(session_factory, record)

    async def crash(*args, **kwargs):
        raise RuntimeError("connection lost")

    monkeypatch.setattr(ledger_service, "_record_entry", crash)

    with pytest.raises(RuntimeError):
        await _settle(session_factory, record)

    assert (await reload_user(session_factory, user.id)).balance == Decimal("5.00")
    assert await _ledger_count(session_factory, user.id) == 0
    assert await _pending_exists(session_factory, record.transaction_id)


@pytest.mark.asyncio
async def test_obligation_settles_only_once(session_factory):
    user, _ = await create_user(session_factory, balance="100.00")
    delivery = await create_delivery(session_factory, user.id, price="25.00")
    first = _record(user.id, "25.00", TransactionKind.OBLIGATION_PAYMENT, delivery.id)
    second = _record(user.id, "25.00", TransactionKind.OBLIGATION_PAYMENT, delivery.id)
    await _store_pending(session_factory, first)
    await _store_pending(session_factory, second)

    await _settle(session_factory, first)
    with pytest.raises(AlreadyPaidError):
        await _settle(session_factory, second)

    assert (await reload_user(session_factory, user.id)).balance == Decimal("75.00")
    assert await _ledger_count(session_factory, user.id) == 1


@pytest.mark.asyncio
async def test_consumed_record_is_not_settled_again(session_factory):
    user, _ = await create_user(session_factory)
    record = _record(user.id, "100.00")
    await _store_pending(session_factory, record)

    await _settle(session_factory, record)
    with pytest.raises(TransactionNotFoundError):
        await _settle(session_factory, record)

    assert (await reload_user(session_factory, user.id)).balance == Decimal("100.00")


@pytest.mark.asyncio
async def test_obligation_revalidated_at_settlement(session_factory):
    owner, _ = await create_user(session_factory, balance="100.00")
    other, _ = await create_user(session_factory, balance="100.00")
    delivery = await create_delivery(session_factory, owner.id, price="25.00")
    cancelled = await create_delivery(session_factory, owner.id, price="25.00", status=DeliveryStatus.CANCELLED)

    stolen = _record(other.id, "25.00", TransactionKind.OBLIGATION_PAYMENT, delivery.id)
    unpayable = _record(owner.id, "25.00", TransactionKind.OBLIGATION_PAYMENT, cancelled.id)
    await _store_pending(session_factory, stolen)
    await _store_pending(session_factory, unpayable)

    with pytest.raises(OwnershipError):
        await _settle(session_factory, stolen)
    with pytest.raises(OwnershipError):
        await _settle(session_factory, unpayable)

    assert (await reload_user(session_factory, other.id)).balance == Decimal("100.00")
    assert (await reload_user(session_factory, owner.id)).balance == Decimal("100.00")
