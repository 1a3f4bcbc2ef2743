"""Unit tests for the audit log.

Tests cover:
- Entry creation and validation
- Listing newest first, optionally by action type
"""

from datetime import timedelta

import pytest
from sqlalchemy.orm import Session as DBSession

from meridian_core.domain.models import AuditLog, utcnow


class TestAuditEntryCreation:
    """Tests for creating audit entries."""

    def test_create_audit_entry_basic(self, db_session: DBSession):
        from meridian_core.domain.services.audit import AuditService

        entry = AuditService(db_session).create_entry(
            actor="admin",
            action_type="site.register",
            result="ok",
        )

        assert entry.id is not None
        assert entry.actor == "admin"
        assert entry.ts is not None

    def test_entity_id_is_stored_as_text(self, db_session: DBSession):
        from meridian_core.domain.services.audit import AuditService

        entry = AuditService(db_session).create_entry(
            actor="remote_site",
            action_type="profile_request.approve",
            result="ok",
            site_url="https://hub.example/",
            entity_type="profile_request",
            entity_id=42,
        )

        assert entry.entity_id == "42"
        assert entry.site_url == "https://hub.example/"

    def test_error_entry(self, db_session: DBSession):
        from meridian_core.domain.services.audit import AuditService

        entry = AuditService(db_session).create_entry(
            actor="system",
            action_type="sync.failed",
            result="error",
            request_json={"user_id": 7},
            error_detail="RuntimeError: down",
        )

        assert entry.request_json == {"user_id": 7}
        assert entry.error_detail == "RuntimeError: down"

    def test_invalid_actor(self, db_session: DBSession):
        from meridian_core.domain.services.audit import AuditService

        with pytest.raises(ValueError, match="actor"):
            AuditService(db_session).create_entry(actor="user", action_type="x", result="ok")

    def test_invalid_result(self, db_session: DBSession):
        from meridian_core.domain.services.audit import AuditService

        with pytest.raises(ValueError, match="result"):
            AuditService(db_session).create_entry(actor="admin", action_type="x", result="maybe")


class TestAuditListing:
    """Tests for listing audit entries."""

    def test_newest_first(self, db_session: DBSession):
        from meridian_core.domain.services.audit import AuditService

        now = utcnow()
        for i, action in enumerate(["a", "b", "c"]):
            db_session.add(
                AuditLog(ts=now + timedelta(seconds=i), actor="admin", action_type=action, result="ok")
            )
        db_session.flush()

        entries = AuditService(db_session).list_entries()

        assert [e.action_type for e in entries] == ["c", "b", "a"]

    def test_filter_and_limit(self, db_session: DBSession):
        from meridian_core.domain.services.audit import AuditService

        service = AuditService(db_session)
        for _ in range(3):
            service.create_entry(actor="admin", action_type="site.register", result="ok")
        service.create_entry(actor="admin", action_type="site.delete", result="ok")

        entries = service.list_entries(action_type="site.register", limit=2)

        assert len(entries) == 2
        assert {e.action_type for e in entries} == {"site.register"}
