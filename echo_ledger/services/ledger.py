"""
Transaction Ledger - append-only record of chargeable events.

NO DICTIONARIES - All operations use strongly typed domain models.
NO UPDATES - Transactions are inserted once and never mutated or deleted.
"""

from datetime import UTC, datetime
from uuid import UUID, uuid4

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from echo_ledger.db.models import EchoApp, Transaction
from echo_ledger.exceptions import (
    ConstraintViolationError,
    NotFoundError,
    WriteVerificationError,
)
from echo_ledger.models.domain import (
    MarkUpData,
    TransactionData,
    TransactionIntent,
    price_with_markup,
    quantize_money,
)
from echo_ledger.observability.metrics import metrics
from echo_ledger.observability.tracing import traced
from echo_ledger.services.markup import MarkupResolver

logger = get_logger(__name__)


def _utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


def transaction_to_domain(transaction: Transaction) -> TransactionData:
    """Convert ORM transaction to domain model."""
    return TransactionData(
        transaction_id=transaction.id,
        user_id=transaction.user_id,
        app_id=transaction.echo_app_id,
        provider=transaction.provider,
        model=transaction.model,
        raw_cost=transaction.raw_cost,
        markup_rate=transaction.markup_rate,
        markup_id=transaction.markup_id,
        markup_profit=transaction.markup_profit,
        total_cost=transaction.total_cost,
        request_id=transaction.request_id,
        created_at=transaction.created_at,
    )


class TransactionLedger:
    """
    Ledger writer with write verification.

    record_transaction follows the pattern:
    1. Replay check on (app, request_id)
    2. Insert + flush
    3. Read back and verify
    4. Commit
    """

    def __init__(self, session: AsyncSession) -> None:
        """Initialize ledger with database session."""
        self.session = session

    @traced("ledger.record_transaction")
    async def record_transaction(
        self, intent: TransactionIntent, markup: MarkUpData | None
    ) -> TransactionData:
        """
        Record a transaction using the markup the caller already resolved.

        The markup is never re-resolved here; a rate set after the caller's
        resolution does not affect this transaction.

        request_id is scoped to the app. A replay returns the stored row only
        when it describes the same charge (user, provider, raw cost).

        Raises:
            NotFoundError: App doesn't exist
            ConstraintViolationError: Markup belongs to another app, replayed
                request_id with a different charge, or storage rejected the row
            WriteVerificationError: Row not readable after insert
        """
        if intent.request_id:
            existing = await self._find_by_request_id(intent.app_id, intent.request_id)
            if existing is not None:
                self._check_replay_matches(existing, intent)
                logger.info(
                    "transaction_replayed",
                    transaction_id=str(existing.id),
                    request_id=intent.request_id,
                )
                return transaction_to_domain(existing)

        app = await self.session.get(EchoApp, intent.app_id)
        if app is None:
            raise NotFoundError("EchoApp", intent.app_id)

        if markup is not None and markup.app_id != intent.app_id:
            raise ConstraintViolationError(
                "transaction_markup_app",
                f"markup {markup.markup_id} belongs to app {markup.app_id}, not {intent.app_id}",
            )

        priced = price_with_markup(intent.raw_cost, MarkupResolver.effective_rate(markup))

        transaction = Transaction(
            id=uuid4(),
            user_id=intent.user_id,
            echo_app_id=intent.app_id,
            provider=intent.provider,
            model=intent.model,
            raw_cost=priced.raw_cost,
            markup_rate=priced.markup_rate,
            markup_id=markup.markup_id if markup is not None else None,
            markup_profit=priced.markup_profit,
            total_cost=priced.total_cost,
            request_id=intent.request_id,
            created_at=_utc_now(),
        )
        self.session.add(transaction)

        try:
            await self.session.flush()
        except IntegrityError as e:
            await self.session.rollback()
            # Concurrent insert with the same request_id won the race
            if intent.request_id:
                existing = await self._find_by_request_id(intent.app_id, intent.request_id)
                if existing is not None:
                    self._check_replay_matches(existing, intent)
                    logger.info(
                        "transaction_replayed_after_race",
                        transaction_id=str(existing.id),
                        request_id=intent.request_id,
                    )
                    return transaction_to_domain(existing)
            metrics.record_error("integrity_error", "record_transaction")
            logger.error("transaction_integrity_error", error=str(e), app_id=str(intent.app_id))
            raise ConstraintViolationError("transactions", str(e.orig)) from e

        verified = await self.session.get(Transaction, transaction.id)
        if verified is None:
            raise WriteVerificationError(f"Transaction {transaction.id} not found after insert")

        if verified.total_cost != verified.raw_cost + verified.markup_profit:
            raise WriteVerificationError(
                f"Transaction {transaction.id} total mismatch: "
                f"{verified.total_cost} != {verified.raw_cost} + {verified.markup_profit}"
            )

        await self.session.commit()

        metrics.record_transaction(verified.provider, verified.total_cost)
        logger.info(
            "transaction_recorded",
            transaction_id=str(verified.id),
            user_id=str(verified.user_id),
            app_id=str(verified.echo_app_id),
            provider=verified.provider,
            markup_rate=str(verified.markup_rate),
            total_cost=str(verified.total_cost),
        )
        return transaction_to_domain(verified)

    async def get_transaction(self, transaction_id: UUID) -> TransactionData | None:
        """Get a single transaction by ID."""
        transaction = await self.session.get(Transaction, transaction_id)
        if transaction is None:
            return None
        return transaction_to_domain(transaction)

    async def _find_by_request_id(self, app_id: UUID, request_id: str) -> Transaction | None:
        """Find an app's transaction by idempotency key."""
        stmt = select(Transaction).where(
            Transaction.echo_app_id == app_id,
            Transaction.request_id == request_id,
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    @staticmethod
    def _check_replay_matches(existing: Transaction, intent: TransactionIntent) -> None:
        """Reject a request_id reused for a different charge."""
        if (
            existing.user_id != intent.user_id
            or existing.provider != intent.provider
            or existing.raw_cost != quantize_money(intent.raw_cost)
        ):
            metrics.record_error("request_id_conflict", "record_transaction")
            logger.warning(
                "transaction_request_id_conflict",
                transaction_id=str(existing.id),
                app_id=str(intent.app_id),
                request_id=intent.request_id,
            )
            raise ConstraintViolationError(
                "uq_transaction_app_request_id",
                f"request_id {intent.request_id} already recorded for a different charge",
            )
