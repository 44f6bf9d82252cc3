"""Credit ledger models: balances, the append-only transaction log, costs and abuse signals."""

import uuid

from sqlalchemy import (
    Boolean, CheckConstraint, Column, DateTime, ForeignKey, Index, Integer,
    String, Text, Uuid, text,
)

from .base import JSONType, TimestampMixin, as_utc, utcnow
from src.core.database import Base

TRANSACTION_TYPES = ("purchase", "usage", "refund", "free_grant", "bonus", "adjustment")


class CreditAccount(Base, TimestampMixin):
    """
    Per-tenant credit balance.

    Only the credit ledger service mutates this row, always under a row lock
    and always together with a ``CreditTransaction`` insert. The storage layer
    enforces both ``balance >= 0`` and ``balance = lifetime_earned - lifetime_spent``.
    """

    __tablename__ = "credit_accounts"

    tenant_id = Column(
        Uuid,
        ForeignKey("tenants.id", ondelete="CASCADE"),
        primary_key=True,
        comment="Owning tenant; one account per tenant"
    )
    balance = Column(Integer, nullable=False, default=0)
    lifetime_earned = Column(Integer, nullable=False, default=0)
    lifetime_spent = Column(Integer, nullable=False, default=0)
    is_free_tier = Column(
        Boolean,
        nullable=False,
        default=True,
        comment="Only free-tier accounts are metered"
    )

    # Monthly free grant cadence
    last_free_grant_at = Column(DateTime(timezone=True), nullable=True)
    next_free_grant_at = Column(DateTime(timezone=True), nullable=True)

    # Rolling usage counters, reset by scheduled jobs
    credits_used_today = Column(Integer, nullable=False, default=0)
    credits_used_this_week = Column(Integer, nullable=False, default=0)
    credits_used_this_month = Column(Integer, nullable=False, default=0)
    last_daily_reset = Column(DateTime(timezone=True), nullable=True)
    last_weekly_reset = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint("balance >= 0", name="credit_balance_non_negative"),
        CheckConstraint(
            "lifetime_earned >= 0 AND lifetime_spent >= 0",
            name="credit_lifetime_non_negative"
        ),
        CheckConstraint(
            "balance = lifetime_earned - lifetime_spent",
            name="credit_balance_reconciles"
        ),
        CheckConstraint(
            "credits_used_today >= 0 AND credits_used_this_week >= 0 "
            "AND credits_used_this_month >= 0",
            name="credit_usage_non_negative"
        ),
    )

    @property
    def reconciles(self) -> bool:
        return self.balance == self.lifetime_earned - self.lifetime_spent

    def to_dict(self) -> dict:
        last_grant = as_utc(self.last_free_grant_at)
        next_grant = as_utc(self.next_free_grant_at)
        return {
            "tenant_id": str(self.tenant_id),
            "balance": self.balance,
            "lifetime_earned": self.lifetime_earned,
            "lifetime_spent": self.lifetime_spent,
            "is_free_tier": self.is_free_tier,
            "last_free_grant_at": last_grant.isoformat() if last_grant else None,
            "next_free_grant_at": next_grant.isoformat() if next_grant else None,
            "credits_used_today": self.credits_used_today,
            "credits_used_this_week": self.credits_used_this_week,
            "credits_used_this_month": self.credits_used_this_month,
        }

    def __repr__(self) -> str:
        return f"<CreditAccount(tenant_id={self.tenant_id}, balance={self.balance})>"


class CreditTransaction(Base):
    """
    Immutable ledger entry.

    ``(tenant_id, action_type, reference_id)`` is unique whenever a reference
    is present, and purchase references are unique platform-wide. These two
    partial indexes are the idempotency guarantee; application-level lookups
    only make the common case cheaper.
    """

    __tablename__ = "credit_transactions"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id = Column(
        Uuid,
        ForeignKey("tenants.id", ondelete="CASCADE"),
        nullable=False
    )
    amount = Column(Integer, nullable=False, comment="Signed credit delta")
    balance_after = Column(Integer, nullable=False, comment="Balance once this entry applied")
    transaction_type = Column(String(20), nullable=False)
    action_type = Column(String(100), nullable=True, comment="Action key or grant kind")
    reference_id = Column(String(255), nullable=True, comment="Idempotency key")
    reference_type = Column(String(50), nullable=True)
    description = Column(Text, nullable=True)
    details = Column(JSONType, default=dict)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        CheckConstraint("amount <> 0", name="credit_transaction_non_zero"),
        CheckConstraint("balance_after >= 0", name="credit_transaction_balance_non_negative"),
        CheckConstraint(
            "transaction_type IN ('purchase', 'usage', 'refund', 'free_grant', 'bonus', 'adjustment')",
            name="valid_credit_transaction_type"
        ),
        Index("idx_credit_transactions_tenant_created", "tenant_id", "created_at"),
        Index(
            "uq_credit_transactions_reference",
            "tenant_id", "action_type", "reference_id",
            unique=True,
            postgresql_where=text("reference_id IS NOT NULL"),
            sqlite_where=text("reference_id IS NOT NULL"),
        ),
        Index(
            "uq_credit_transactions_purchase_reference",
            "reference_id",
            unique=True,
            postgresql_where=text("transaction_type = 'purchase'"),
            sqlite_where=text("transaction_type = 'purchase'"),
        ),
    )

    def to_dict(self) -> dict:
        created_at = as_utc(self.created_at)
        return {
            "id": str(self.id),
            "tenant_id": str(self.tenant_id),
            "amount": self.amount,
            "balance_after": self.balance_after,
            "transaction_type": self.transaction_type,
            "action_type": self.action_type,
            "reference_id": self.reference_id,
            "reference_type": self.reference_type,
            "description": self.description,
            "details": self.details or {},
            "created_at": created_at.isoformat() if created_at else None,
        }

    def __repr__(self) -> str:
        return (
            f"<CreditTransaction(tenant_id={self.tenant_id}, type='{self.transaction_type}', "
            f"amount={self.amount})>"
        )


class CreditCost(Base, TimestampMixin):
    """Configured credit cost per action key. Zero-cost actions are free."""

    __tablename__ = "credit_costs"

    action_key = Column(String(100), primary_key=True)
    action_name = Column(String(255), nullable=False)
    credits = Column(Integer, nullable=False, default=0)
    category = Column(String(50), nullable=False)
    description = Column(Text, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)

    __table_args__ = (
        CheckConstraint("credits >= 0", name="credit_cost_non_negative"),
    )

    def __repr__(self) -> str:
        return f"<CreditCost(action_key='{self.action_key}', credits={self.credits})>"


class CreditAbuseEvent(Base):
    """Advisory signal raised when a tenant's ledger activity bursts past a threshold."""

    __tablename__ = "credit_abuse_events"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id = Column(
        Uuid,
        ForeignKey("tenants.id", ondelete="CASCADE"),
        nullable=False
    )
    rule = Column(String(50), nullable=False, comment="tenant_burst or action_burst")
    action_type = Column(String(100), nullable=True)
    observed_count = Column(Integer, nullable=False)
    threshold = Column(Integer, nullable=False)
    window_seconds = Column(Integer, nullable=False)
    acknowledged = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        Index("idx_credit_abuse_events_tenant_created", "tenant_id", "created_at"),
    )

    def to_dict(self) -> dict:
        created_at = as_utc(self.created_at)
        return {
            "id": str(self.id),
            "tenant_id": str(self.tenant_id),
            "rule": self.rule,
            "action_type": self.action_type,
            "observed_count": self.observed_count,
            "threshold": self.threshold,
            "window_seconds": self.window_seconds,
            "acknowledged": self.acknowledged,
            "created_at": created_at.isoformat() if created_at else None,
        }
