from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# SQLite only autoincrements INTEGER PRIMARY KEY columns.
_BIG_ID = BigInteger().with_variant(Integer(), "sqlite")
_JSON = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    pass


class Tenant(Base):
    __tablename__ = "tenants"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    email: Mapped[str | None] = mapped_column(String, nullable=True, unique=True)
    # One of the enumerated plan names; changes apply to every owned credential at once.
    plan: Mapped[str] = mapped_column(String, default="free", server_default=text("'free'"))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class Credential(Base):
    __tablename__ = "credentials"
    __table_args__ = (
        CheckConstraint(
            "quota_percentage IS NULL OR (quota_percentage >= 1 AND quota_percentage <= 100)",
            name="ck_credentials_quota_percentage",
        ),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(
        String, ForeignKey("tenants.id", ondelete="CASCADE"), index=True
    )
    # Salted slow hash only; never indexed or searchable by secret value.
    secret_hash: Mapped[str] = mapped_column(String)
    # Short display prefix for operators.
    key_prefix: Mapped[str] = mapped_column(String)
    name: Mapped[str | None] = mapped_column(String, nullable=True)
    # Share of the tenant plan limit (1-100); NULL behaves as 100.
    quota_percentage: Mapped[int | None] = mapped_column(
        Integer, default=100, server_default=text("100"), nullable=True
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    # Delegation state machine: unassigned -> pending -> accepted.
    assignment_status: Mapped[str] = mapped_column(
        String, default="unassigned", server_default=text("'unassigned'")
    )
    assigned_to_email: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    assigned_to_account_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    invitation_token: Mapped[str | None] = mapped_column(String, nullable=True, unique=True)
    revoked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class UsageRecord(Base):
    __tablename__ = "usage_history"

    # Immutable per-request fact; the only input to quota decisions.
    id: Mapped[int] = mapped_column(_BIG_ID, primary_key=True, autoincrement=True)
    credential_id: Mapped[str] = mapped_column(
        String, ForeignKey("credentials.id", ondelete="CASCADE")
    )
    timestamp_ms: Mapped[int] = mapped_column(BigInteger)
    model: Mapped[str] = mapped_column(String)
    model_class: Mapped[str] = mapped_column(String)
    input_tokens: Mapped[int] = mapped_column(BigInteger, default=0)
    output_tokens: Mapped[int] = mapped_column(BigInteger, default=0)
    cache_write_tokens: Mapped[int] = mapped_column(BigInteger, default=0)
    cache_read_tokens: Mapped[int] = mapped_column(BigInteger, default=0)
    total_tokens: Mapped[int] = mapped_column(BigInteger, default=0)
    cost: Mapped[float] = mapped_column(Numeric(16, 8, asdecimal=False), default=0)
    credits_used: Mapped[int] = mapped_column(BigInteger, default=0)


# Window scans read newest-first per credential.
Index(
    "ix_usage_history_credential_ts",
    UsageRecord.credential_id,
    UsageRecord.timestamp_ms.desc(),
)


class UsageAggregate(Base):
    __tablename__ = "usage_aggregate"

    # Lifetime mirror of usage_history for O(1) reporting; never consulted for admission.
    credential_id: Mapped[str] = mapped_column(
        String, ForeignKey("credentials.id", ondelete="CASCADE"), primary_key=True
    )
    input_tokens: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    output_tokens: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    cache_write_tokens: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    cache_read_tokens: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    total_tokens: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    total_cost: Mapped[float] = mapped_column(Numeric(18, 8, asdecimal=False), default=0, nullable=False)
    credits_used: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    request_count: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    last_request_at_ms: Mapped[int | None] = mapped_column(BigInteger, nullable=True)


class UpstreamCredential(Base):
    __tablename__ = "upstream_credentials"

    # One OAuth token pair per tenant; only refresh mutates it.
    tenant_id: Mapped[str] = mapped_column(
        String, ForeignKey("tenants.id", ondelete="CASCADE"), primary_key=True
    )
    access_token: Mapped[str] = mapped_column(String)
    refresh_token: Mapped[str] = mapped_column(String)
    expires_at_ms: Mapped[int] = mapped_column(BigInteger)
    updated_at_ms: Mapped[int] = mapped_column(BigInteger)


class AuditEvent(Base):
    __tablename__ = "audit_events"

    id: Mapped[int] = mapped_column(_BIG_ID, primary_key=True, autoincrement=True)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    # Null tenant_id for pre-auth failures.
    tenant_id: Mapped[str | None] = mapped_column(String, index=True, nullable=True)
    actor_type: Mapped[str] = mapped_column(String)
    actor_id: Mapped[str | None] = mapped_column(String, nullable=True)
    event_type: Mapped[str] = mapped_column(String, index=True)
    outcome: Mapped[str] = mapped_column(String)
    resource_type: Mapped[str | None] = mapped_column(String, nullable=True)
    resource_id: Mapped[str | None] = mapped_column(String, nullable=True)
    request_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    ip_address: Mapped[str | None] = mapped_column(String, nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String, nullable=True)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(_JSON, default=dict)
    error_code: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
