"""Initial schema

Revision ID: 001
Revises:
Create Date: 2026-10-18

Creates all tables for Meridian nodes:
- deduplicated_users (governing)
- site_registrations (governing)
- brand_users (brand)
- user_sync_states (brand)
- profile_requests (brand)
- audit_log
- jobs
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Deduplicated identities, one per email
    op.create_table(
        "deduplicated_users",
        sa.Column("id", sa.BigInteger, primary_key=True, autoincrement=True),
        sa.Column("email", sa.String(255), nullable=False, unique=True),
        sa.Column("first_name", sa.String(255), nullable=False, server_default=""),
        sa.Column("last_name", sa.String(255), nullable=False, server_default=""),
        sa.Column("sites_json", sa.JSON, nullable=False),
        sa.Column(
            "created_at", sa.DateTime, nullable=False, server_default=sa.func.now()
        ),
        sa.Column(
            "updated_at", sa.DateTime, nullable=False, server_default=sa.func.now()
        ),
    )
    op.create_index("idx_dedup_created", "deduplicated_users", ["created_at"])

    # Registered brand sites
    op.create_table(
        "site_registrations",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("name", sa.String(255), nullable=False, unique=True),
        sa.Column("url", sa.String(512), nullable=False, unique=True),
        sa.Column("api_key", sa.String(255), nullable=False),
        sa.Column(
            "created_at", sa.DateTime, nullable=False, server_default=sa.func.now()
        ),
    )

    # Live users of a brand site
    op.create_table(
        "brand_users",
        sa.Column("id", sa.BigInteger, primary_key=True, autoincrement=True),
        sa.Column("login", sa.String(64), nullable=False, unique=True),
        sa.Column("email", sa.String(255), nullable=False, unique=True),
        sa.Column("nicename", sa.String(64), nullable=False, server_default=""),
        sa.Column("display_name", sa.String(255), nullable=False, server_default=""),
        sa.Column("url", sa.String(512), nullable=False, server_default=""),
        sa.Column("roles_json", sa.JSON, nullable=False),
        sa.Column("meta_json", sa.JSON, nullable=False),
        sa.Column(
            "created_at", sa.DateTime, nullable=False, server_default=sa.func.now()
        ),
        sa.Column(
            "updated_at", sa.DateTime, nullable=False, server_default=sa.func.now()
        ),
    )

    # Per-user sync marker
    op.create_table(
        "user_sync_states",
        sa.Column("user_id", sa.BigInteger, primary_key=True),
        sa.Column(
            "status",
            sa.Enum("unsynced", "in_progress", "synced", "failed", name="sync_status_enum"),
            nullable=False,
            server_default="unsynced",
        ),
        sa.Column("last_job_id", sa.BigInteger, nullable=True),
        sa.Column("last_error", sa.Text, nullable=True),
        sa.Column(
            "updated_at", sa.DateTime, nullable=False, server_default=sa.func.now()
        ),
        sa.ForeignKeyConstraint(
            ["user_id"], ["brand_users.id"], name="fk_sync_state_user", ondelete="CASCADE"
        ),
    )

    # Change requests; pending_user_id is unique while a request is pending
    op.create_table(
        "profile_requests",
        sa.Column("id", sa.BigInteger, primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.BigInteger, nullable=False),
        sa.Column("pending_user_id", sa.BigInteger, nullable=True, unique=True),
        sa.Column(
            "status",
            sa.Enum("pending", "approved", "rejected", name="profile_request_status_enum"),
            nullable=False,
            server_default="pending",
        ),
        sa.Column("comment", sa.Text, nullable=True),
        sa.Column("data_json", sa.JSON, nullable=False),
        sa.Column("metadata_json", sa.JSON, nullable=False),
        sa.Column("requested_by", sa.String(255), nullable=False, server_default=""),
        sa.Column("user_email", sa.String(255), nullable=False, server_default=""),
        sa.Column("user_name", sa.String(255), nullable=False, server_default=""),
        sa.Column("user_login", sa.String(64), nullable=False, server_default=""),
        sa.Column(
            "created_at", sa.DateTime, nullable=False, server_default=sa.func.now()
        ),
        sa.Column(
            "updated_at", sa.DateTime, nullable=False, server_default=sa.func.now()
        ),
    )
    op.create_index("idx_profile_requests_user", "profile_requests", ["user_id", "status"])
    op.create_index("idx_profile_requests_created", "profile_requests", ["created_at"])

    # Audit log
    op.create_table(
        "audit_log",
        sa.Column("id", sa.BigInteger, primary_key=True, autoincrement=True),
        sa.Column("ts", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.Column(
            "actor",
            sa.Enum("admin", "system", "remote_site", name="audit_actor_enum"),
            nullable=False,
        ),
        sa.Column("action_type", sa.String(128), nullable=False),
        sa.Column("site_url", sa.String(512), nullable=True),
        sa.Column("entity_type", sa.String(64), nullable=True),
        sa.Column("entity_id", sa.String(64), nullable=True),
        sa.Column("request_json", sa.JSON, nullable=True),
        sa.Column("response_json", sa.JSON, nullable=True),
        sa.Column(
            "result", sa.Enum("ok", "error", name="audit_result_enum"), nullable=False
        ),
        sa.Column("error_detail", sa.Text, nullable=True),
    )
    op.create_index("idx_audit_ts", "audit_log", ["ts"])
    op.create_index("idx_audit_action", "audit_log", ["action_type"])

    # Job ledger
    op.create_table(
        "jobs",
        sa.Column("id", sa.BigInteger, primary_key=True, autoincrement=True),
        sa.Column("queue_name", sa.String(64), nullable=False),
        sa.Column("job_type", sa.String(64), nullable=False),
        sa.Column("payload_json", sa.JSON, nullable=False),
        sa.Column(
            "status",
            sa.Enum("queued", "running", "retrying", "failed", "done", name="job_status_enum"),
            nullable=False,
            server_default="queued",
        ),
        sa.Column("attempts", sa.Integer, nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer, nullable=False, server_default="5"),
        sa.Column("next_run_at", sa.DateTime, nullable=True),
        sa.Column("last_error", sa.Text, nullable=True),
        sa.Column("dedupe_key", sa.String(256), nullable=True, unique=True),
        sa.Column(
            "created_at", sa.DateTime, nullable=False, server_default=sa.func.now()
        ),
        sa.Column(
            "updated_at", sa.DateTime, nullable=False, server_default=sa.func.now()
        ),
    )
    op.create_index("idx_jobs_status", "jobs", ["status", "next_run_at"])


def downgrade() -> None:
    # Drop tables in reverse order of creation (respecting foreign keys)
    op.drop_table("jobs")
    op.drop_table("audit_log")
    op.drop_table("profile_requests")
    op.drop_table("user_sync_states")
    op.drop_table("brand_users")
    op.drop_table("site_registrations")
    op.drop_table("deduplicated_users")
