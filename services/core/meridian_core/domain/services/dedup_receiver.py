"""Inbound user batches on the governing node.

Batches are sanitized synchronously and applied to the identity store by
a queued job, so brand nodes get an answer without waiting for the merge.
Applying the same batch twice leaves the store unchanged.
"""

import re
import uuid
from dataclasses import dataclass
from typing import Any, Optional

from sqlalchemy.orm import Session as DBSession

from meridian_core.domain.models import SiteRegistration
from meridian_core.domain.services.identity_store import IdentityStore, SiteMembership
from meridian_core.domain.services.job_queue import JOB_DEDUPE_APPLY, JobQueue
from meridian_core.domain.site_urls import normalize_site_url
from meridian_core.observability import get_logger

logger = get_logger(__name__)

EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
TAG_PATTERN = re.compile(r"<[^>]*>")


def clean_text(value: Any) -> str:
    """Plain single-line text: tags stripped, whitespace collapsed."""
    if value is None:
        return ""
    text = TAG_PATTERN.sub("", str(value))
    return " ".join(text.split())


def is_valid_email(value: str) -> bool:
    return bool(EMAIL_PATTERN.match(value)) and len(value) <= 254


def sanitize_user_record(raw: Any) -> Optional[dict[str, Any]]:
    """Coerce one inbound record to safe values.

    Returns:
        The sanitized record, or None if it has no usable email.
    """
    if not isinstance(raw, dict):
        return None

    email = clean_text(raw.get("email"))
    if not email or not is_valid_email(email):
        return None

    try:
        user_id = abs(int(raw.get("user_id") or 0))
    except (TypeError, ValueError):
        user_id = 0

    roles = raw.get("roles")
    roles = [clean_text(role) for role in roles] if isinstance(roles, list) else []

    record = {
        "email": email,
        "user_id": user_id,
        "first_name": clean_text(raw.get("first_name")),
        "last_name": clean_text(raw.get("last_name")),
        "roles": [role for role in roles if role],
        "site_name": clean_text(raw.get("site_name")),
        "site_url": normalize_site_url(clean_text(raw.get("site_url"))),
    }

    changes = raw.get("changes")
    if isinstance(changes, dict) and isinstance(changes.get("email"), dict):
        old_email = clean_text(changes["email"].get("old"))
        if old_email and old_email != email:
            record["previous_email"] = old_email

    return record


@dataclass
class IngestResult:
    """Answer to an inbound batch."""

    action_id: Optional[str]
    processed_count: int

    @property
    def success(self) -> bool:
        return self.processed_count > 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "action_id": self.action_id,
            "users_processed": self.processed_count,
        }


class DeduplicationReceiver:
    """Validates inbound batches and merges them into the identity store."""

    def __init__(self, db: DBSession, queue: Optional[JobQueue] = None):
        self.db = db
        self.queue = queue
        self.store = IdentityStore(db)

    def ingest(
        self,
        users: Any,
        source: Optional[SiteRegistration] = None,
    ) -> IngestResult:
        """Sanitize a batch and queue it for merging.

        Records without a valid email are dropped silently. When the sending
        site is known, its registered name and URL replace whatever the
        records claim.

        Args:
            users: The ``users`` array of the request body.
            source: The authenticated sending site.

        Returns:
            The queued action id and the number of accepted records.

        Raises:
            ValueError: If ``users`` is not a list.
        """
        if not isinstance(users, list):
            raise ValueError("users must be an array")
        if self.queue is None:
            raise RuntimeError("Ingesting a batch requires a job queue")

        records = []
        for raw in users:
            record = sanitize_user_record(raw)
            if record is None:
                continue
            if source is not None:
                record["site_name"] = source.name
                record["site_url"] = source.url
            if not record["site_url"]:
                continue
            records.append(record)

        if not records:
            logger.info("Inbound batch had no usable records", received=len(users))
            return IngestResult(action_id=None, processed_count=0)

        action_id = self.queue.enqueue(JOB_DEDUPE_APPLY, {"users": records})
        logger.info(
            "Inbound batch queued",
            received=len(users),
            accepted=len(records),
            action_id=action_id,
            site_url=source.url if source else None,
        )
        return IngestResult(action_id=action_id, processed_count=len(records))

    def apply(self, records: list[dict[str, Any]]) -> int:
        """Merge sanitized records into the identity store.

        A record carrying ``previous_email`` first drops the membership held
        under the old address.

        Returns:
            Number of records applied.
        """
        applied = 0
        for record in records:
            membership = SiteMembership(
                site_name=record.get("site_name", ""),
                site_url=record["site_url"],
                user_id=record.get("user_id", 0),
                roles=record.get("roles", []),
            )
            previous = record.get("previous_email")
            if previous:
                self.store.remove_membership(previous, membership.site_url)

            self.store.upsert_membership(
                record["email"],
                record.get("first_name", ""),
                record.get("last_name", ""),
                membership,
            )
            applied += 1

        return applied
