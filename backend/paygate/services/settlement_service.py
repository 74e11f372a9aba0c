"""Transaction state machine: initiation, provider confirmation and settlement."""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Mapping, Optional

from sqlalchemy import delete, select
from sqlalchemy import exc as sa_exc
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from paygate.config import Settings
from paygate.core import realtime
from paygate.core.envelope import TransactionEnvelope
from paygate.core.errors import (
    AlreadyPaidError,
    DecryptionError,
    InsufficientFundsError,
    IntegrityError,
    ObligationNotFoundError,
    OwnershipError,
    StoreUnavailableError,
    TransactionNotFoundError,
    ValidationError,
)
from paygate.core.locks import TransactionLock
from paygate.core.realtime import ConnectionRegistry, timestamp_ms
from paygate.core.signer import IntegritySigner
from paygate.core.transaction import (
    TransactionKind,
    TransactionRecord,
    TransactionStatus,
    new_transaction_id,
    parse_amount,
    to_minor_units,
)
from paygate.models.delivery import Delivery
from paygate.models.pending_transaction import PendingTransaction
from paygate.providers.base import EventOutcome, PaymentProvider, ProviderEvent
from paygate.services.ledger_service import LedgerMutation, apply_settlement

logger = logging.getLogger(__name__)


class SettlementOutcome(str, Enum):
    SETTLED = "settled"
    DUPLICATE = "duplicate"  # lock contended or record already consumed
    UNKNOWN = "unknown"  # no pending record for the event
    IGNORED = "ignored"  # provider event type with no business meaning
    INTEGRITY_FAILED = "integrity_failed"
    REJECTED = "rejected"  # business failure at settlement (funds, ownership, already paid)
    FAILED = "failed"  # provider reported failure; record discarded


@dataclass
class SettlementResult:
    outcome: SettlementOutcome
    transaction_id: Optional[str] = None
    mutation: Optional[LedgerMutation] = None
    reason: Optional[str] = None
    correlation_id: Optional[str] = None


@dataclass
class InitiationResult:
    transaction_id: str
    kind: TransactionKind
    amount: Decimal
    provider: str
    provider_charge_handle: str


class SettlementEngine:
    """
    Orchestrates a transaction from initiation to exactly-once settlement.

    Initiation signs and seals the record before anything is persisted; a
    provider failure leaves no pending row. Settlement runs under the
    per-transaction processing lock and applies the ledger mutation in a
    single database transaction. Notifications are pushed after commit and
    are best-effort.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        envelope: TransactionEnvelope,
        signer: IntegritySigner,
        lock: TransactionLock,
        providers: Mapping[str, PaymentProvider],
        registry: ConnectionRegistry,
        settings: Settings
    ):
        self.session_factory = session_factory
        self.envelope = envelope
        self.signer = signer
        self.lock = lock
        self.providers = dict(providers)
        self.registry = registry
        self.settings = settings

    # ------------------------------------------------------------------
    # Initiation
    # ------------------------------------------------------------------

    async def initiate_funding(
        self,
        uid: str,
        amount: Any,
        provider_name: Optional[str] = None
    ) -> InitiationResult:
        """Start a BalanceFunding transaction for ``uid``."""
        self._require_channel(uid)
        value = parse_amount(amount, self.settings.MAX_TRANSACTION_AMOUNT)
        provider = self._provider(provider_name)

        record = TransactionRecord(
            transaction_id=new_transaction_id(),
            uid=uid,
            kind=TransactionKind.BALANCE_FUNDING,
            amount=value,
            provider=provider.name,
            created_at=datetime.utcnow(),
        )
        return await self._initiate(record, provider, description="Wallet funding")

    async def initiate_obligation_payment(
        self,
        uid: str,
        obligation_id: str,
        amount: Any,
        provider_name: Optional[str] = None
    ) -> InitiationResult:
        """
        Start an ObligationPayment transaction.

        Raises:
            ObligationNotFoundError: unknown delivery
            OwnershipError: delivery belongs to someone else or is not payable
            AlreadyPaidError: delivery already paid
            ValidationError: bad amount or amount differs from the delivery price
        """
        self._require_channel(uid)
        value = parse_amount(amount, self.settings.MAX_TRANSACTION_AMOUNT)
        provider = self._provider(provider_name)

        async with self.session_factory() as session:
            delivery = await session.get(Delivery, obligation_id)

        if not delivery:
            raise ObligationNotFoundError(f"Delivery {obligation_id} not found")
        if delivery.user_id != uid:
            raise OwnershipError("Delivery does not belong to you")
        if delivery.paid:
            raise AlreadyPaidError("Delivery already paid")
        if not delivery.is_payable:
            raise OwnershipError(f"Delivery is {delivery.status} and cannot be paid")
        if value != delivery.price:
            raise ValidationError(f"Amount must equal the delivery price ({delivery.price})")

        record = TransactionRecord(
            transaction_id=new_transaction_id(),
            uid=uid,
            kind=TransactionKind.OBLIGATION_PAYMENT,
            amount=value,
            provider=provider.name,
            created_at=datetime.utcnow(),
            obligation_ref=obligation_id,
        )
        return await self._initiate(record, provider, description=f"Delivery payment for {obligation_id}")

    async def _initiate(
        self,
        record: TransactionRecord,
        provider: PaymentProvider,
        description: str
    ) -> InitiationResult:
        # Keys are checked before the provider is asked to charge anything
        self.envelope.ensure_key()
        digest = self.signer.sign(record.signed_fields())

        handle = await provider.create_charge(
            record.transaction_id,
            to_minor_units(record.amount),
            metadata={
                "uid": record.uid,
                "kind": record.kind.value,
                "description": description,
                "obligationRef": record.obligation_ref or "",
            }
        )

        record.provider_ref = handle.provider_ref
        sealed = self.envelope.seal(record.to_dict())

        try:
            async with self.session_factory() as session:
                async with session.begin():
                    session.add(PendingTransaction(
                        id=record.transaction_id,
                        provider=record.provider,
                        provider_ref=record.provider_ref,
                        nonce=sealed["nonce"],
                        auth_tag=sealed["tag"],
                        ciphertext=sealed["ciphertext"],
                        digest=digest,
                        created_at=record.created_at
                    ))
        except (sa_exc.SQLAlchemyError, OSError) as e:
            logger.error(
                f"Could not persist pending transaction {record.transaction_id} "
                f"(provider ref {record.provider_ref}): {e}"
            )
            raise StoreUnavailableError("Could not record the transaction") from e

        logger.info(
            f"Initiated {record.kind.value} {record.transaction_id} for user {record.uid}: "
            f"{record.amount} via {record.provider}"
        )

        await self.registry.notify(record.uid, realtime.TRANSACTION_INITIATED, {
            "transactionId": record.transaction_id,
            "kind": record.kind.value,
            "amount": str(record.amount),
            "obligationId": record.obligation_ref,
            "provider": record.provider,
            "providerChargeHandle": handle.client_handle,
            "timestamp": timestamp_ms(),
        })

        return InitiationResult(
            transaction_id=record.transaction_id,
            kind=record.kind,
            amount=record.amount,
            provider=record.provider,
            provider_charge_handle=handle.client_handle,
        )

    def _require_channel(self, uid: str) -> None:
        if self.settings.REQUIRE_REALTIME_CHANNEL and not self.registry.is_connected(uid):
            raise ValidationError(
                "Open a realtime connection before starting a payment",
                code="WEBSOCKET_REQUIRED"
            )

    def _provider(self, name: Optional[str]) -> PaymentProvider:
        provider = self.providers.get(name or self.settings.DEFAULT_PAYMENT_PROVIDER)
        if provider is None:
            raise ValidationError(f"Payment provider '{name}' is not available")
        return provider

    # ------------------------------------------------------------------
    # Settlement
    # ------------------------------------------------------------------

    async def handle_event(self, event: ProviderEvent) -> SettlementResult:
        """
        Apply a verified provider event.

        Business outcomes are returned, never raised, so the webhook can be
        acknowledged. Only StoreUnavailableError escapes, to let the
        provider redeliver later.
        """
        if event.outcome == EventOutcome.IGNORED:
            logger.info(f"Ignoring {event.provider} event {event.event_type} ({event.event_id})")
            return SettlementResult(SettlementOutcome.IGNORED, event.transaction_id)

        row = await self._find(event.transaction_id, event.provider_ref)
        if row is None:
            logger.warning(
                f"No pending transaction for {event.provider} event {event.event_id} "
                f"(transaction {event.transaction_id}, ref {event.provider_ref}); "
                f"unknown or already handled"
            )
            return SettlementResult(SettlementOutcome.UNKNOWN, event.transaction_id)

        try:
            record = self._open(row)
            self._match_event(record, event)
        except (DecryptionError, IntegrityError) as e:
            return self._integrity_failure(row.id, e)

        if event.outcome == EventOutcome.SUCCEEDED:
            return await self._settle(record)
        return await self._fail(record, event.failure_reason or "provider_failed")

    async def confirm_manually(self, uid: str, transaction_id: str) -> SettlementResult:
        """
        Settle a transaction without a provider event (non-production only).

        Goes through the same lock and atomic step as a webhook.
        """
        row = await self._find(transaction_id, None)
        if row is None:
            raise TransactionNotFoundError("Transaction not found")

        record = self._open(row)
        if record.uid != uid:
            raise OwnershipError("Transaction does not belong to you")

        logger.warning(f"Manual confirmation of {transaction_id} requested by {uid}")
        return await self._settle(record)

    async def _settle(self, record: TransactionRecord) -> SettlementResult:
        reason = None

        async with self.lock.hold(record.transaction_id) as acquired:
            if not acquired:
                logger.debug(f"Transaction {record.transaction_id} already processing; skipping duplicate")
                return SettlementResult(SettlementOutcome.DUPLICATE, record.transaction_id)

            try:
                async with self.session_factory() as session:
                    async with session.begin():
                        mutation = await apply_settlement(
                            session,
                            record,
                            premium_threshold=self.settings.PREMIUM_UPGRADE_THRESHOLD
                        )

            except TransactionNotFoundError:
                logger.debug(f"Transaction {record.transaction_id} already settled")
                return SettlementResult(SettlementOutcome.DUPLICATE, record.transaction_id)

            except (InsufficientFundsError, OwnershipError, AlreadyPaidError) as e:
                logger.info(f"Settlement of {record.transaction_id} rejected: {e.message}")
                await self._discard(record.transaction_id)
                reason = e.code

            except IntegrityError as e:
                return self._integrity_failure(record.transaction_id, e)

            except (sa_exc.SQLAlchemyError, OSError) as e:
                logger.error(f"Ledger store unavailable settling {record.transaction_id}: {e}")
                raise StoreUnavailableError("Ledger store unavailable") from e

        if reason:
            await self._notify_failure(record, reason)
            return SettlementResult(SettlementOutcome.REJECTED, record.transaction_id, reason=reason)

        await self._notify_settled(record, mutation)
        return SettlementResult(SettlementOutcome.SETTLED, record.transaction_id, mutation=mutation)

    async def _fail(self, record: TransactionRecord, reason: str) -> SettlementResult:
        async with self.lock.hold(record.transaction_id) as acquired:
            if not acquired:
                logger.debug(f"Transaction {record.transaction_id} already processing; skipping failure notice")
                return SettlementResult(SettlementOutcome.DUPLICATE, record.transaction_id)

            if not await self._discard(record.transaction_id):
                return SettlementResult(SettlementOutcome.DUPLICATE, record.transaction_id)

        logger.info(f"Transaction {record.transaction_id} failed at provider: {reason}")
        await self._notify_failure(record, reason)
        return SettlementResult(SettlementOutcome.FAILED, record.transaction_id, reason=reason)

    async def _notify_settled(self, record: TransactionRecord, mutation: LedgerMutation) -> None:
        if record.kind == TransactionKind.BALANCE_FUNDING:
            await self.registry.notify(record.uid, realtime.FUNDING_SETTLED, {
                "transactionId": record.transaction_id,
                "amount": str(mutation.amount),
                "newBalance": str(mutation.new_balance),
                "upgraded": mutation.upgraded,
                "timestamp": timestamp_ms(),
            })
        else:
            await self.registry.notify(record.uid, realtime.OBLIGATION_SETTLED, {
                "transactionId": record.transaction_id,
                "obligationId": mutation.obligation_ref,
                "amount": str(mutation.amount),
                "newBalance": str(mutation.new_balance),
                "timestamp": timestamp_ms(),
            })

    async def _notify_failure(self, record: TransactionRecord, reason: str) -> None:
        await self.registry.notify(record.uid, realtime.PAYMENT_FAILED, {
            "transactionId": record.transaction_id,
            "kind": record.kind.value,
            "obligationId": record.obligation_ref,
            "reason": reason,
            "timestamp": timestamp_ms(),
        })

    def _integrity_failure(self, transaction_id: str, error: Exception) -> SettlementResult:
        correlation_id = uuid.uuid4().hex
        logger.error(
            f"Integrity check failed for transaction {transaction_id} "
            f"[correlation {correlation_id}]: {error}"
        )
        return SettlementResult(
            SettlementOutcome.INTEGRITY_FAILED,
            transaction_id,
            correlation_id=correlation_id
        )

    # ------------------------------------------------------------------
    # Queries and housekeeping
    # ------------------------------------------------------------------

    async def transaction_status(self, uid: str, transaction_id: str) -> Dict[str, Any]:
        """
        Status of a pending transaction owned by ``uid``.

        Settled and failed transactions no longer exist and raise
        TransactionNotFoundError.
        """
        row = await self._find(transaction_id, None)
        if row is None:
            raise TransactionNotFoundError("Transaction not found")

        record = self._open(row)
        if record.uid != uid:
            raise OwnershipError("Transaction does not belong to you")

        status = TransactionStatus.PENDING
        if await self.lock.is_held(transaction_id):
            status = TransactionStatus.PROCESSING

        return {
            "transactionId": transaction_id,
            "status": status.value,
            "kind": record.kind.value,
        }

    async def sweep_expired(self, now: Optional[datetime] = None, batch_size: int = 100) -> int:
        """
        Discard pending transactions older than the configured TTL.

        Each record is removed under its processing lock so a late webhook
        cannot race the sweep. Returns the number of records removed.
        """
        ttl = self.settings.PENDING_TRANSACTION_TTL_SECONDS
        if ttl <= 0:
            return 0

        cutoff = (now or datetime.utcnow()) - timedelta(seconds=ttl)
        async with self.session_factory() as session:
            result = await session.execute(
                select(PendingTransaction)
                .where(PendingTransaction.created_at < cutoff)
                .order_by(PendingTransaction.created_at)
                .limit(batch_size)
            )
            rows = list(result.scalars().all())

        removed = 0
        for row in rows:
            async with self.lock.hold(row.id) as acquired:
                if not acquired or not await self._discard(row.id):
                    continue
            removed += 1

            try:
                record = self._open(row)
            except (DecryptionError, IntegrityError) as e:
                self._integrity_failure(row.id, e)
                continue
            await self._notify_failure(record, "expired")

        if removed:
            logger.info(f"Expired {removed} pending transaction(s) older than {cutoff.isoformat()}")
        return removed

    # ------------------------------------------------------------------
    # Store helpers
    # ------------------------------------------------------------------

    async def _find(
        self,
        transaction_id: Optional[str],
        provider_ref: Optional[str]
    ) -> Optional[PendingTransaction]:
        if not transaction_id and not provider_ref:
            return None
        try:
            async with self.session_factory() as session:
                if transaction_id:
                    return await session.get(PendingTransaction, transaction_id)
                result = await session.execute(
                    select(PendingTransaction).where(PendingTransaction.provider_ref == provider_ref)
                )
                return result.scalar_one_or_none()
        except (sa_exc.SQLAlchemyError, OSError) as e:
            logger.error(f"Pending transaction store unavailable: {e}")
            raise StoreUnavailableError("Pending transaction store unavailable") from e

    async def _discard(self, transaction_id: str) -> bool:
        """Delete a pending record; False if it was already gone."""
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    result = await session.execute(
                        delete(PendingTransaction).where(PendingTransaction.id == transaction_id)
                    )
        except (sa_exc.SQLAlchemyError, OSError) as e:
            logger.error(f"Pending transaction store unavailable discarding {transaction_id}: {e}")
            raise StoreUnavailableError("Pending transaction store unavailable") from e
        return result.rowcount > 0

    def _open(self, row: PendingTransaction) -> TransactionRecord:
        """Decrypt and verify a stored record."""
        data = self.envelope.open(row.envelope)
        try:
            record = TransactionRecord.from_dict(data)
        except ValidationError as e:
            raise IntegrityError(e.message) from e

        if record.transaction_id != row.id:
            raise IntegrityError("Sealed transaction id does not match its row")
        if not self.signer.verify(record.signed_fields(), row.digest):
            raise IntegrityError("Integrity digest mismatch")
        return record

    @staticmethod
    def _match_event(record: TransactionRecord, event: ProviderEvent) -> None:
        """A provider event must agree with the record it settles."""
        if event.provider != record.provider:
            raise IntegrityError(
                f"Event from {event.provider} for a transaction created with {record.provider}"
            )
        if event.provider_ref and record.provider_ref and event.provider_ref != record.provider_ref:
            raise IntegrityError("Provider reference does not match the stored transaction")
        if event.amount_minor is not None and event.amount_minor != to_minor_units(record.amount):
            raise IntegrityError(
                f"Event amount {event.amount_minor} does not match stored amount {record.amount}"
            )
