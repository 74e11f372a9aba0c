"""Tests for the settlement engine: initiation, webhooks, expiry."""

import asyncio
import base64
import logging
from datetime import datetime, timedelta
from decimal import Decimal

import pytest
from sqlalchemy import func, select, update

from conftest import (
    RecordingChannel,
    create_delivery,
    create_user,
    failed,
    reload_delivery,
    reload_user,
    succeeded,
)
from paygate.core import realtime
from paygate.core.errors import (
    AlreadyPaidError,
    ObligationNotFoundError,
    OwnershipError,
    ProviderError,
    TransactionNotFoundError,
    ValidationError,
)
from paygate.models.delivery import DeliveryStatus
from paygate.models.ledger_entry import LedgerEntry
from paygate.models.pending_transaction import PendingTransaction
from paygate.providers.base import EventOutcome, ProviderEvent
from paygate.services.settlement_service import SettlementOutcome


async def _ledger_count(session_factory, uid):
    async with session_factory() as session:
        result = await session.execute(select(func.count()).select_from(LedgerEntry).where(LedgerEntry.uid == uid))
        return result.scalar()


async def _pending(session_factory, transaction_id):
    async with session_factory() as session:
        return await session.get(PendingTransaction, transaction_id)


@pytest.fixture
async def channel(registry, user):
    channel = RecordingChannel()
    await registry.register(user[0].id, channel)
    return channel


@pytest.mark.asyncio
async def test_initiate_funding_persists_sealed_record(engine, session_factory, provider, user, channel):
    result = await engine.initiate_funding(user[0].id, "100")

    assert result.amount == Decimal("100.00")
    assert result.provider_charge_handle == f"secret_{result.transaction_id}"
    assert provider.charges[0]["amount_minor"] == 10000
    assert provider.charges[0]["transaction_id"] == result.transaction_id

    row = await _pending(session_factory, result.transaction_id)
    assert row.provider == "fake"
    assert row.provider_ref == f"ref_{result.transaction_id}"
    assert user[0].id.encode() not in base64.b64decode(row.ciphertext)

    assert channel.events() == [realtime.TRANSACTION_INITIATED]
    assert channel.last(realtime.TRANSACTION_INITIATED)["transactionId"] == result.transaction_id


@pytest.mark.asyncio
async def test_provider_failure_persists_nothing(engine, session_factory, provider, user):
    provider.fail_next = True

    with pytest.raises(ProviderError):
        await engine.initiate_funding(user[0].id, "100")

    async with session_factory() as session:
        count = await session.execute(select(func.count()).select_from(PendingTransaction))
    assert count.scalar() == 0


@pytest.mark.asyncio
async def test_invalid_amount_never_reaches_provider(engine, provider, user):
    for amount in ["0", "-1", "abc", "1000000.01", "1.001"]:
        with pytest.raises(ValidationError):
            await engine.initiate_funding(user[0].id, amount)

    assert provider.charges == []


@pytest.mark.asyncio
async def test_unknown_provider_is_rejected(engine, user):
    with pytest.raises(ValidationError):
        await engine.initiate_funding(user[0].id, "10", provider_name="paypal")


@pytest.mark.asyncio
async def test_fund_then_duplicate_concurrent_webhooks_credit_once(engine, session_factory, user, channel):
    """Fund $100, the provider fires the success webhook twice at the same time."""
    uid = user[0].id
    initiated = await engine.initiate_funding(uid, "100.00")

    results = await asyncio.gather(
        engine.handle_event(succeeded(initiated.transaction_id)),
        engine.handle_event(succeeded(initiated.transaction_id)),
    )

    outcomes = sorted(r.outcome.value for r in results)
    assert outcomes.count(SettlementOutcome.SETTLED.value) == 1
    assert (await reload_user(session_factory, uid)).balance == Decimal("100.00")
    assert await _ledger_count(session_factory, uid) == 1
    assert await _pending(session_factory, initiated.transaction_id) is None
    assert channel.events().count(realtime.FUNDING_SETTLED) == 1
    assert channel.last(realtime.FUNDING_SETTLED)["newBalance"] == "100.00"


@pytest.mark.asyncio
async def test_many_concurrent_deliveries_settle_exactly_once(engine, session_factory, user):
    uid = user[0].id
    initiated = await engine.initiate_funding(uid, "42.50")

    results = await asyncio.gather(*[
        engine.handle_event(succeeded(initiated.transaction_id)) for _ in range(8)
    ])

    settled = [r for r in results if r.outcome == SettlementOutcome.SETTLED]
    assert len(settled) == 1
    assert all(
        r.outcome in (SettlementOutcome.SETTLED, SettlementOutcome.DUPLICATE, SettlementOutcome.UNKNOWN)
        for r in results
    )
    assert (await reload_user(session_factory, uid)).balance == Decimal("42.50")
    assert await _ledger_count(session_factory, uid) == 1


@pytest.mark.asyncio
async def test_obligation_paid_then_retried_webhook_is_noop(engine, session_factory):
    """Price 25, balance 25: pay, then the provider retries the webhook."""
    payer, _ = await create_user(session_factory, balance="25.00")
    delivery = await create_delivery(session_factory, payer.id, price="25.00")

    initiated = await engine.initiate_obligation_payment(payer.id, delivery.id, "25.00")
    first = await engine.handle_event(succeeded(initiated.transaction_id))
    retry = await engine.handle_event(succeeded(initiated.transaction_id))

    assert first.outcome == SettlementOutcome.SETTLED
    assert retry.outcome == SettlementOutcome.UNKNOWN
    assert (await reload_user(session_factory, payer.id)).balance == Decimal("0.00")
    assert (await reload_delivery(session_factory, delivery.id)).paid
    assert await _ledger_count(session_factory, payer.id) == 1


@pytest.mark.asyncio
async def test_obligation_with_insufficient_funds_is_rejected(engine, session_factory, registry):
    """Price 25, balance 10: settlement fails and nothing changes."""
    payer, _ = await create_user(session_factory, balance="10.00")
    delivery = await create_delivery(session_factory, payer.id, price="25.00")
    channel = RecordingChannel()
    await registry.register(payer.id, channel)

    initiated = await engine.initiate_obligation_payment(payer.id, delivery.id, "25.00")
    result = await engine.handle_event(succeeded(initiated.transaction_id))

    assert result.outcome == SettlementOutcome.REJECTED
    assert result.reason == "INSUFFICIENT_FUNDS"
    assert (await reload_user(session_factory, payer.id)).balance == Decimal("10.00")
    assert not (await reload_delivery(session_factory, delivery.id)).paid
    assert await _ledger_count(session_factory, payer.id) == 0
    assert await _pending(session_factory, initiated.transaction_id) is None
    assert channel.last(realtime.PAYMENT_FAILED)["reason"] == "INSUFFICIENT_FUNDS"


@pytest.mark.asyncio
async def test_two_payments_for_one_obligation_debit_once(engine, session_factory):
    payer, _ = await create_user(session_factory, balance="100.00")
    delivery = await create_delivery(session_factory, payer.id, price="25.00")

    first = await engine.initiate_obligation_payment(payer.id, delivery.id, "25.00")
    second = await engine.initiate_obligation_payment(payer.id, delivery.id, "25.00")
    results = await asyncio.gather(
        engine.handle_event(succeeded(first.transaction_id)),
        engine.handle_event(succeeded(second.transaction_id)),
    )

    outcomes = sorted(r.outcome.value for r in results)
    assert outcomes == sorted([SettlementOutcome.SETTLED.value, SettlementOutcome.REJECTED.value])
    assert (await reload_user(session_factory, payer.id)).balance == Decimal("75.00")
    assert await _ledger_count(session_factory, payer.id) == 1


@pytest.mark.asyncio
async def test_tampered_envelope_is_logged_and_skipped(engine, session_factory, user, caplog):
    uid = user[0].id
    initiated = await engine.initiate_funding(uid, "100.00")

    row = await _pending(session_factory, initiated.transaction_id)
    corrupted = bytearray(base64.b64decode(row.ciphertext))
    corrupted[0] ^= 0xFF
    async with session_factory() as session:
        await session.execute(
            update(PendingTransaction)
            .where(PendingTransaction.id == initiated.transaction_id)
            .values(ciphertext=base64.b64encode(bytes(corrupted)).decode())
        )
        await session.commit()

    with caplog.at_level(logging.ERROR, logger="paygate.services.settlement_service"):
        result = await engine.handle_event(succeeded(initiated.transaction_id))

    assert result.outcome == SettlementOutcome.INTEGRITY_FAILED
    assert result.correlation_id
    assert result.correlation_id in caplog.text
    assert (await reload_user(session_factory, uid)).balance == Decimal("0.00")
    assert await _ledger_count(session_factory, uid) == 0
    assert await _pending(session_factory, initiated.transaction_id) is not None


@pytest.mark.asyncio
async def test_digest_mismatch_is_an_integrity_failure(engine, session_factory, user):
    initiated = await engine.initiate_funding(user[0].id, "100.00")
    async with session_factory() as session:
        await session.execute(
            update(PendingTransaction)
            .where(PendingTransaction.id == initiated.transaction_id)
            .values(digest="0" * 64)
        )
        await session.commit()

    result = await engine.handle_event(succeeded(initiated.transaction_id))

    assert result.outcome == SettlementOutcome.INTEGRITY_FAILED
    assert (await reload_user(session_factory, user[0].id)).balance == Decimal("0.00")


@pytest.mark.asyncio
async def test_event_must_match_stored_amount_and_reference(engine, session_factory, user):
    initiated = await engine.initiate_funding(user[0].id, "100.00")

    wrong_amount = await engine.handle_event(succeeded(initiated.transaction_id, amount_minor=1))
    wrong_ref = await engine.handle_event(succeeded(initiated.transaction_id, provider_ref="ref_other"))

    assert wrong_amount.outcome == SettlementOutcome.INTEGRITY_FAILED
    assert wrong_ref.outcome == SettlementOutcome.INTEGRITY_FAILED
    assert (await reload_user(session_factory, user[0].id)).balance == Decimal("0.00")

    matching = await engine.handle_event(succeeded(
        initiated.transaction_id,
        amount_minor=10000,
        provider_ref=f"ref_{initiated.transaction_id}"
    ))
    assert matching.outcome == SettlementOutcome.SETTLED


@pytest.mark.asyncio
async def test_event_from_another_provider_is_an_integrity_failure(engine, user):
    initiated = await engine.initiate_funding(user[0].id, "100.00")
    event = ProviderEvent(
        outcome=EventOutcome.SUCCEEDED,
        provider="stripe",
        transaction_id=initiated.transaction_id,
    )

    result = await engine.handle_event(event)

    assert result.outcome == SettlementOutcome.INTEGRITY_FAILED


@pytest.mark.asyncio
async def test_event_found_by_provider_reference(engine, session_factory, user):
    initiated = await engine.initiate_funding(user[0].id, "15.00")
    event = ProviderEvent(
        outcome=EventOutcome.SUCCEEDED,
        provider="fake",
        provider_ref=f"ref_{initiated.transaction_id}",
    )

    result = await engine.handle_event(event)

    assert result.outcome == SettlementOutcome.SETTLED
    assert (await reload_user(session_factory, user[0].id)).balance == Decimal("15.00")


@pytest.mark.asyncio
async def test_unknown_transaction_is_ignored(engine):
    result = await engine.handle_event(succeeded("00000000-0000-4000-8000-000000000000"))

    assert result.outcome == SettlementOutcome.UNKNOWN


@pytest.mark.asyncio
async def test_ignored_event_types_do_nothing(engine, user, session_factory):
    initiated = await engine.initiate_funding(user[0].id, "15.00")
    event = ProviderEvent(outcome=EventOutcome.IGNORED, provider="fake", transaction_id=initiated.transaction_id)

    result = await engine.handle_event(event)

    assert result.outcome == SettlementOutcome.IGNORED
    assert await _pending(session_factory, initiated.transaction_id) is not None


@pytest.mark.asyncio
async def test_failure_event_discards_record_and_notifies(engine, session_factory, user, channel):
    initiated = await engine.initiate_funding(user[0].id, "100.00")

    result = await engine.handle_event(failed(initiated.transaction_id, reason="card_declined"))
    duplicate = await engine.handle_event(failed(initiated.transaction_id))

    assert result.outcome == SettlementOutcome.FAILED
    assert duplicate.outcome == SettlementOutcome.UNKNOWN
    assert await _pending(session_factory, initiated.transaction_id) is None
    assert channel.events().count(realtime.PAYMENT_FAILED) == 1
    assert channel.last(realtime.PAYMENT_FAILED)["reason"] == "card_declined"
    assert (await reload_user(session_factory, user[0].id)).balance == Decimal("0.00")


@pytest.mark.asyncio
async def test_failure_event_while_settling_is_a_noop(engine, user):
    initiated = await engine.initiate_funding(user[0].id, "100.00")
    assert await engine.lock.acquire(initiated.transaction_id)

    result = await engine.handle_event(failed(initiated.transaction_id))

    assert result.outcome == SettlementOutcome.DUPLICATE


@pytest.mark.asyncio
async def test_notification_without_channel_is_dropped(engine, session_factory, user):
    initiated = await engine.initiate_funding(user[0].id, "100.00")

    result = await engine.handle_event(succeeded(initiated.transaction_id))

    assert result.outcome == SettlementOutcome.SETTLED
    assert (await reload_user(session_factory, user[0].id)).balance == Decimal("100.00")


@pytest.mark.asyncio
async def test_initiate_obligation_validation(engine, session_factory):
    owner, _ = await create_user(session_factory, balance="100.00")
    stranger, _ = await create_user(session_factory, balance="100.00")
    delivery = await create_delivery(session_factory, owner.id, price="25.00")
    paid = await create_delivery(session_factory, owner.id, price="25.00", paid=True)
    pending = await create_delivery(session_factory, owner.id, price="25.00", status=DeliveryStatus.PENDING)

    with pytest.raises(ObligationNotFoundError):
        await engine.initiate_obligation_payment(owner.id, "missing", "25.00")
    with pytest.raises(OwnershipError):
        await engine.initiate_obligation_payment(stranger.id, delivery.id, "25.00")
    with pytest.raises(AlreadyPaidError):
        await engine.initiate_obligation_payment(owner.id, paid.id, "25.00")
    with pytest.raises(OwnershipError):
        await engine.initiate_obligation_payment(owner.id, pending.id, "25.00")
    with pytest.raises(ValidationError):
        await engine.initiate_obligation_payment(owner.id, delivery.id, "20.00")


@pytest.mark.asyncio
async def test_transaction_status(engine, session_factory, user):
    stranger, _ = await create_user(session_factory)
    initiated = await engine.initiate_funding(user[0].id, "10.00")

    status = await engine.transaction_status(user[0].id, initiated.transaction_id)
    assert status == {
        "transactionId": initiated.transaction_id,
        "status": "pending",
        "kind": "balance_funding",
    }

    await engine.lock.acquire(initiated.transaction_id)
    assert (await engine.transaction_status(user[0].id, initiated.transaction_id))["status"] == "processing"
    await engine.lock.release(initiated.transaction_id)

    with pytest.raises(OwnershipError):
        await engine.transaction_status(stranger.id, initiated.transaction_id)

    await engine.handle_event(succeeded(initiated.transaction_id))
    with pytest.raises(TransactionNotFoundError):
        await engine.transaction_status(user[0].id, initiated.transaction_id)


@pytest.mark.asyncio
async def test_manual_confirmation_uses_the_same_settlement(engine, session_factory, user):
    stranger, _ = await create_user(session_factory)
    initiated = await engine.initiate_funding(user[0].id, "30.00")

    with pytest.raises(OwnershipError):
        await engine.confirm_manually(stranger.id, initiated.transaction_id)

    result = await engine.confirm_manually(user[0].id, initiated.transaction_id)
    assert result.outcome == SettlementOutcome.SETTLED
    assert result.mutation.new_balance == Decimal("30.00")

    with pytest.raises(TransactionNotFoundError):
        await engine.confirm_manually(user[0].id, initiated.transaction_id)


@pytest.mark.asyncio
async def test_sweep_discards_expired_records(engine, session_factory, user, channel):
    engine.settings.PENDING_TRANSACTION_TTL_SECONDS = 3600
    old = await engine.initiate_funding(user[0].id, "10.00")
    fresh = await engine.initiate_funding(user[0].id, "20.00")
    async with session_factory() as session:
        await session.execute(
            update(PendingTransaction)
            .where(PendingTransaction.id == old.transaction_id)
            .values(created_at=datetime.utcnow() - timedelta(hours=2))
        )
        await session.commit()

    removed = await engine.sweep_expired()

    assert removed == 1
    assert await _pending(session_factory, old.transaction_id) is None
    assert await _pending(session_factory, fresh.transaction_id) is not None
    expired = channel.last(realtime.PAYMENT_FAILED)
    assert expired["transactionId"] == old.transaction_id
    assert expired["reason"] == "expired"

    late = await engine.handle_event(succeeded(old.transaction_id))
    assert late.outcome == SettlementOutcome.UNKNOWN
    assert (await reload_user(session_factory, user[0].id)).balance == Decimal("0.00")


@pytest.mark.asyncio
async def test_sweep_is_disabled_with_zero_ttl(engine, user):
    await engine.initiate_funding(user[0].id, "10.00")

    assert await engine.sweep_expired(now=datetime.utcnow() + timedelta(days=30)) == 0


@pytest.mark.asyncio
async def test_realtime_channel_can_be_required(engine, registry, user):
    engine.settings.REQUIRE_REALTIME_CHANNEL = True

    with pytest.raises(ValidationError) as exc_info:
        await engine.initiate_funding(user[0].id, "10.00")
    assert exc_info.value.code == "WEBSOCKET_REQUIRED"

    await registry.register(user[0].id, RecordingChannel())
    assert (await engine.initiate_funding(user[0].id, "10.00")).transaction_id
