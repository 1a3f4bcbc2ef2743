"""Audit trail for Meridian nodes.

Every administrative change, every decision made by a remote node and
every sync job that runs out of attempts leaves one row here. Rows are
never updated.
"""

from typing import Any, Optional

from sqlalchemy.orm import Session as DBSession

from meridian_core.domain.models import AuditLog, utcnow

VALID_ACTORS = frozenset({"admin", "system", "remote_site"})
VALID_RESULTS = frozenset({"ok", "error"})


def _check(field_name: str, value: str, allowed: frozenset) -> None:
    if value not in allowed:
        raise ValueError(f"{field_name} must be one of {sorted(allowed)}, got '{value}'")


class AuditService:
    def __init__(self, db: DBSession):
        self.db = db

    def create_entry(
        self,
        actor: str,
        action_type: str,
        result: str,
        site_url: Optional[str] = None,
        entity_type: Optional[str] = None,
        entity_id: Any = None,
        request_json: Optional[dict] = None,
        response_json: Optional[dict] = None,
        error_detail: Optional[str] = None,
    ) -> AuditLog:
        """Append an entry and flush it.

        ``actor`` is ``admin``, ``system`` or ``remote_site``; ``result`` is
        ``ok`` or ``error``. ``entity_id`` may be a user id or a site UUID and
        is stored as text.

        Raises:
            ValueError: On an unknown actor or result.
        """
        _check("actor", actor, VALID_ACTORS)
        _check("result", result, VALID_RESULTS)

        entry = AuditLog(
            ts=utcnow(),
            actor=actor,
            action_type=action_type,
            result=result,
            site_url=site_url,
            entity_type=entity_type,
            entity_id=None if entity_id is None else str(entity_id),
            request_json=request_json,
            response_json=response_json,
            error_detail=error_detail,
        )
        self.db.add(entry)
        self.db.flush()
        return entry

    def list_entries(self, action_type: Optional[str] = None, limit: int = 50) -> list[AuditLog]:
        """Newest entries first, optionally of one action type."""
        query = self.db.query(AuditLog)
        if action_type:
            query = query.filter_by(action_type=action_type)
        return query.order_by(AuditLog.ts.desc(), AuditLog.id.desc()).limit(limit).all()
