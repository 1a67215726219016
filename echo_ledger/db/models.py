"""
Database Models - SQLAlchemy ORM models with strict typing.

NO DICTIONARIES - All columns use Mapped[] type annotations.
NO FLOATS - Money columns are Numeric and map to Decimal.
"""

from datetime import UTC, datetime
from decimal import Decimal
from uuid import UUID, uuid4

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

# Numeric(precision, scale) for money-like columns
MONEY = Numeric(30, 10)
RATE = Numeric(12, 6)


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


class User(Base):
    """
    ORM model for users table.

    Payers of transactions, owners of echo apps, redeemers of grants.
    """

    __tablename__ = "users"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    admin: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    memberships: Mapped[list["AppMembership"]] = relationship(back_populates="user")

    __table_args__ = (Index("idx_users_created_at", "created_at"),)

    def __repr__(self) -> str:
        """String representation for debugging."""
        return f"<User(id={self.id}, email={self.email}, admin={self.admin})>"


class EchoApp(Base):
    """
    ORM model for echo_apps table.

    A tenant application consuming metered services.
    """

    __tablename__ = "echo_apps"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    memberships: Mapped[list["AppMembership"]] = relationship(back_populates="echo_app")

    def __repr__(self) -> str:
        """String representation for debugging."""
        return f"<EchoApp(id={self.id}, name={self.name})>"


class AppMembership(Base):
    """
    ORM model for app_memberships table.

    Links users to apps with a role. The owner earns the app's markup profit.
    """

    __tablename__ = "app_memberships"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    echo_app_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True), ForeignKey("echo_apps.id", ondelete="CASCADE"), nullable=False
    )
    role: Mapped[str] = mapped_column(String(20), nullable=False, default="member")

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    user: Mapped[User] = relationship(back_populates="memberships")
    echo_app: Mapped[EchoApp] = relationship(back_populates="memberships")

    __table_args__ = (
        CheckConstraint("role IN ('owner', 'admin', 'member')", name="ck_app_memberships_role"),
        UniqueConstraint("user_id", "echo_app_id", name="uq_app_membership"),
        Index("idx_app_memberships_app_role", "echo_app_id", "role"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<AppMembership(user_id={self.user_id}, echo_app_id={self.echo_app_id}, "
            f"role={self.role})>"
        )


class MarkUp(Base):
    """
    ORM model for markups table.

    Append-only rate history. The current markup is the newest row per app.
    """

    __tablename__ = "markups"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    echo_app_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True), ForeignKey("echo_apps.id", ondelete="CASCADE"), nullable=False
    )
    rate: Mapped[Decimal] = mapped_column(RATE, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        CheckConstraint("rate >= 0", name="ck_markup_rate_non_negative"),
        Index("idx_markups_app_created", "echo_app_id", "created_at"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return f"<MarkUp(id={self.id}, echo_app_id={self.echo_app_id}, rate={self.rate})>"


class Transaction(Base):
    """
    ORM model for transactions table.

    Immutable ledger of chargeable events. Never updated, never deleted.
    """

    __tablename__ = "transactions"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)

    # Payer and context
    user_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True), ForeignKey("users.id"), nullable=False
    )
    echo_app_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True), ForeignKey("echo_apps.id"), nullable=False
    )

    # Provider metadata
    provider: Mapped[str] = mapped_column(String(100), nullable=False)
    model: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Amounts
    raw_cost: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    markup_rate: Mapped[Decimal] = mapped_column(RATE, nullable=False)
    markup_id: Mapped[UUID | None] = mapped_column(
        PG_UUID(as_uuid=True), ForeignKey("markups.id"), nullable=True
    )
    markup_profit: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    total_cost: Mapped[Decimal] = mapped_column(MONEY, nullable=False)

    # Idempotency
    request_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        CheckConstraint("raw_cost >= 0", name="ck_transaction_raw_cost_non_negative"),
        CheckConstraint("markup_profit >= 0", name="ck_transaction_markup_profit_non_negative"),
        CheckConstraint(
            "total_cost = raw_cost + markup_profit",
            name="ck_transaction_total_consistency",
        ),
        UniqueConstraint("echo_app_id", "request_id", name="uq_transaction_app_request_id"),
        Index("idx_transactions_user_created", "user_id", "created_at"),
        Index("idx_transactions_app_created", "echo_app_id", "created_at"),
        Index("idx_transactions_created_at", "created_at"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<Transaction(id={self.id}, user_id={self.user_id}, "
            f"echo_app_id={self.echo_app_id}, total_cost={self.total_cost})>"
        )


class CreditGrantCode(Base):
    """
    ORM model for credit_grant_codes table.

    Redeemable promotional codes. Only the archive flag and amount change after creation.
    """

    __tablename__ = "credit_grant_codes"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    code: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    grant_amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)

    # Metadata
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    is_archived: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("grant_amount > 0", name="ck_credit_grant_amount_positive"),
        Index(
            "idx_credit_grant_codes_active_created",
            "created_at",
            postgresql_where=(is_archived.is_(False)),
        ),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<CreditGrantCode(id={self.id}, code={self.code}, "
            f"amount={self.grant_amount}, archived={self.is_archived})>"
        )


class CreditGrantCodeUsage(Base):
    """
    ORM model for credit_grant_code_usages table.

    One row per redemption. The (user, code) unique constraint is what prevents
    double redemption under concurrency.
    """

    __tablename__ = "credit_grant_code_usages"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True), ForeignKey("users.id"), nullable=False
    )
    credit_grant_code_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True), ForeignKey("credit_grant_codes.id"), nullable=False
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        UniqueConstraint("user_id", "credit_grant_code_id", name="uq_credit_grant_usage_user_code"),
        Index("idx_credit_grant_code_usages_code", "credit_grant_code_id"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<CreditGrantCodeUsage(user_id={self.user_id}, "
            f"credit_grant_code_id={self.credit_grant_code_id})>"
        )


class CreditDeposit(Base):
    """
    ORM model for credit_deposits table.

    Immutable ledger of balance top-ups (grant redemptions, admin mints).
    """

    __tablename__ = "credit_deposits"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True), ForeignKey("users.id"), nullable=False
    )
    amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    source: Mapped[str] = mapped_column(String(20), nullable=False)
    credit_grant_code_id: Mapped[UUID | None] = mapped_column(
        PG_UUID(as_uuid=True), ForeignKey("credit_grant_codes.id"), nullable=True
    )
    description: Mapped[str] = mapped_column(String, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_credit_deposit_amount_positive"),
        CheckConstraint("source IN ('grant', 'admin_mint')", name="ck_credit_deposit_source"),
        Index("idx_credit_deposits_user_created", "user_id", "created_at"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<CreditDeposit(id={self.id}, user_id={self.user_id}, "
            f"amount={self.amount}, source={self.source})>"
        )


class RefreshToken(Base):
    """
    ORM model for refresh_tokens table.

    Stores SHA-256 hashes of refresh tokens (never the raw token).
    A lineage has at most one active row (archived_at IS NULL), enforced by a
    partial unique index.
    """

    __tablename__ = "refresh_tokens"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    token_hash: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    lineage_id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), nullable=False)

    user_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    echo_app_id: Mapped[UUID | None] = mapped_column(
        PG_UUID(as_uuid=True), ForeignKey("echo_apps.id", ondelete="CASCADE"), nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    # Rotation state
    archived_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    archive_expires_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    __table_args__ = (
        Index(
            "uq_refresh_tokens_active_lineage",
            "lineage_id",
            unique=True,
            postgresql_where=(archived_at.is_(None)),
        ),
        Index("idx_refresh_tokens_lineage", "lineage_id"),
        Index("idx_refresh_tokens_user_id", "user_id"),
        Index("idx_refresh_tokens_expires_at", "expires_at"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<RefreshToken(hash={self.token_hash[:16]}..., lineage_id={self.lineage_id}, "
            f"archived={self.archived_at is not None})>"
        )
