"""Domain models for Meridian.

Governing nodes use ``deduplicated_users`` and ``site_registrations``.
Brand nodes use ``brand_users``, ``user_sync_states`` and
``profile_requests``. Both node types share the job ledger and audit log.
"""

import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    JSON,
    BigInteger,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def utcnow() -> datetime:
    """Current UTC time as a naive datetime (the storage convention)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


# =============================================================================
# ENUMS
# =============================================================================


class ProfileRequestStatus(str):
    """Change request lifecycle values."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class SyncStatus(str):
    """Per-user sync marker values on a brand node."""

    UNSYNCED = "unsynced"
    IN_PROGRESS = "in_progress"
    SYNCED = "synced"
    FAILED = "failed"


class JobStatus(str):
    """Job ledger status values."""

    QUEUED = "queued"
    RUNNING = "running"
    RETRYING = "retrying"
    FAILED = "failed"
    DONE = "done"


# =============================================================================
# GOVERNING NODE
# =============================================================================


class DeduplicatedUser(Base):
    """One person across every brand node, keyed by email.

    ``sites_json`` holds the memberships as a list of
    ``{site_name, site_url, user_id, roles}`` with at most one entry per
    normalized site URL.
    """

    __tablename__ = "deduplicated_users"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    first_name: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    last_name: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    sites_json: Mapped[list] = mapped_column(JSON, nullable=False, default=list)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (Index("idx_dedup_created", "created_at"),)


class SiteRegistration(Base):
    """A brand node known to the governing node."""

    __tablename__ = "site_registrations"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    # Normalized with a trailing slash
    url: Mapped[str] = mapped_column(String(512), nullable=False, unique=True)
    api_key: Mapped[str] = mapped_column(String(255), nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)


# =============================================================================
# BRAND NODE
# =============================================================================


class BrandUser(Base):
    """A live user account on a brand node."""

    __tablename__ = "brand_users"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    login: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    nicename: Mapped[str] = mapped_column(String(64), nullable=False, default="")
    display_name: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    url: Mapped[str] = mapped_column(String(512), nullable=False, default="")
    roles_json: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    # Profile attributes (first_name, last_name, description, social links...)
    meta_json: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow, onupdate=utcnow
    )

    @property
    def first_name(self) -> str:
        return (self.meta_json or {}).get("first_name", "")

    @property
    def last_name(self) -> str:
        return (self.meta_json or {}).get("last_name", "")


class UserSyncState(Base):
    """Sync marker for one brand user."""

    __tablename__ = "user_sync_states"

    user_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("brand_users.id", ondelete="CASCADE"), primary_key=True
    )
    status: Mapped[str] = mapped_column(
        Enum("unsynced", "in_progress", "synced", "failed", name="sync_status_enum"),
        nullable=False,
        default="unsynced",
    )
    last_job_id: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow, onupdate=utcnow
    )


class ProfileRequest(Base):
    """A proposed profile edit awaiting a governing decision.

    ``pending_user_id`` mirrors ``user_id`` while the request is pending
    and is NULL afterwards; its unique constraint enforces a single pending
    request per user.
    """

    __tablename__ = "profile_requests"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    pending_user_id: Mapped[Optional[int]] = mapped_column(
        BigInteger, nullable=True, unique=True
    )
    status: Mapped[str] = mapped_column(
        Enum("pending", "approved", "rejected", name="profile_request_status_enum"),
        nullable=False,
        default="pending",
    )
    comment: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # field -> {"old": ..., "new": ...}
    data_json: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    metadata_json: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)

    requested_by: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    user_email: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    user_name: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    user_login: Mapped[str] = mapped_column(String(64), nullable=False, default="")

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        Index("idx_profile_requests_user", "user_id", "status"),
        Index("idx_profile_requests_created", "created_at"),
    )


# =============================================================================
# SHARED
# =============================================================================


class AuditLog(Base):
    """Append-only audit log."""

    __tablename__ = "audit_log"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    ts: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    actor: Mapped[str] = mapped_column(
        Enum("admin", "system", "remote_site", name="audit_actor_enum"), nullable=False
    )
    action_type: Mapped[str] = mapped_column(String(128), nullable=False)

    site_url: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    entity_type: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    entity_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    request_json: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    response_json: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)

    result: Mapped[str] = mapped_column(
        Enum("ok", "error", name="audit_result_enum"), nullable=False
    )
    error_detail: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    __table_args__ = (
        Index("idx_audit_ts", "ts"),
        Index("idx_audit_action", "action_type"),
    )


class Job(Base):
    """Job ledger enforcing dedupe and bounded retries for queued work."""

    __tablename__ = "jobs"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    queue_name: Mapped[str] = mapped_column(String(64), nullable=False)
    job_type: Mapped[str] = mapped_column(String(64), nullable=False)
    payload_json: Mapped[dict] = mapped_column(JSON, nullable=False)

    status: Mapped[str] = mapped_column(
        Enum("queued", "running", "retrying", "failed", "done", name="job_status_enum"),
        nullable=False,
        default="queued",
    )
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=5)
    next_run_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    dedupe_key: Mapped[Optional[str]] = mapped_column(String(256), nullable=True, unique=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (Index("idx_jobs_status", "status", "next_run_at"),)
