"""Unit tests for brand-side profile change requests.

Tests cover:
- Field diffs and sanitization
- Interception of edits (one pending request per user)
- Listing with status, search and cursor
- Approve and reject transitions
"""

from datetime import datetime, timedelta

import pytest
from sqlalchemy.orm import Session

from meridian_core.domain.models import ProfileRequestStatus
from meridian_core.domain.services.profile_requests import (
    PatchableField,
    ProfileRequestService,
    RequestNotPendingError,
    UnknownFieldError,
    UserNotFoundError,
    sanitize_meta,
    serialize_request,
)
from tests.factories import create_brand_user, create_profile_request


class TestPatchableField:
    def test_username_alias(self):
        assert PatchableField.parse("username") is PatchableField.NICENAME

    def test_unknown_field(self):
        with pytest.raises(UnknownFieldError):
            PatchableField.parse("password")

    def test_sanitizers(self):
        assert PatchableField.EMAIL.sanitize("not-an-email") == ""
        assert PatchableField.URL.sanitize("javascript:alert(1)") == ""
        assert PatchableField.URL.sanitize("https://ann.example") == "https://ann.example"
        assert PatchableField.DISPLAY_NAME.sanitize(" <i>Ann</i> ") == "Ann"

    def test_meta_sanitizers(self):
        assert sanitize_meta("description", "line one\n<b>line</b> two") == "line one\nline two"
        assert sanitize_meta("facebook", "ftp://nope") == ""

    def test_twitter_is_sanitized_as_url(self):
        assert sanitize_meta("twitter", "https://twitter.com/ann") == "https://twitter.com/ann"
        assert sanitize_meta("twitter", "javascript:alert(1)") == ""
        assert sanitize_meta("twitter", "@ann") == ""


class TestComputeDiff:
    """Tests for ProfileRequestService.compute_diff."""

    def test_only_changed_fields(self, db_session: Session):
        user = create_brand_user(db_session)
        service = ProfileRequestService(db_session)

        data_diff, meta_diff = service.compute_diff(
            user,
            data={"display_name": "Ann Lee", "email": "ann.lee@example.com"},
            meta={"first_name": "Ann", "last_name": "Leigh"},
        )

        assert data_diff == {"email": {"old": "ann@example.com", "new": "ann.lee@example.com"}}
        assert meta_diff == {"last_name": {"old": "Lee", "new": "Leigh"}}

    def test_ungoverned_meta_is_ignored(self, db_session: Session):
        user = create_brand_user(db_session)

        _, meta_diff = ProfileRequestService(db_session).compute_diff(
            user, meta={"show_admin_bar": "false"}
        )

        assert meta_diff == {}


class TestInterceptUpdate:
    """Tests for ProfileRequestService.intercept_update."""

    def test_creates_pending_request(self, db_session: Session):
        user = create_brand_user(db_session)
        service = ProfileRequestService(db_session)

        result = service.intercept_update(user, meta={"last_name": "Leigh"})

        assert result.created is True
        assert result.request.status == ProfileRequestStatus.PENDING
        assert result.request.metadata_json == {"last_name": {"old": "Lee", "new": "Leigh"}}
        assert result.request.requested_by == "Ann Lee (Self)"
        assert user.meta_json["last_name"] == "Lee"

    def test_admin_edit_is_labelled(self, db_session: Session):
        user = create_brand_user(db_session)

        result = ProfileRequestService(db_session).intercept_update(
            user, data={"display_name": "A. Lee"}, requested_by_self=False
        )

        assert result.request.requested_by == "Ann Lee (Brand Admin)"

    def test_first_pending_request_wins(self, db_session: Session):
        user = create_brand_user(db_session)
        service = ProfileRequestService(db_session)
        first = service.intercept_update(user, meta={"last_name": "Leigh"})

        second = service.intercept_update(user, meta={"first_name": "Anne"})

        assert second.created is False
        assert second.request.id == first.request.id
        assert second.request.metadata_json == {"last_name": {"old": "Lee", "new": "Leigh"}}

    def test_no_change_creates_nothing(self, db_session: Session):
        user = create_brand_user(db_session)

        result = ProfileRequestService(db_session).intercept_update(
            user, meta={"first_name": "Ann", "locale": "de_DE"}
        )

        assert result.request is None
        assert result.passthrough_meta == {"locale": "de_DE"}

    def test_passthrough_alongside_request(self, db_session: Session):
        user = create_brand_user(db_session)

        result = ProfileRequestService(db_session).intercept_update(
            user, meta={"last_name": "Leigh", "locale": "de_DE"}
        )

        assert result.created is True
        assert result.passthrough_meta == {"locale": "de_DE"}


class TestListRequests:
    """Tests for ProfileRequestService.list_requests."""

    def test_newest_first_with_cursor(self, db_session: Session):
        now = datetime(2026, 3, 1, 12, 0)
        for i in range(25):
            user = create_brand_user(db_session, login=f"user{i}", email=f"user{i}@example.com")
            create_profile_request(db_session, user, created_at=now - timedelta(minutes=i))
        service = ProfileRequestService(db_session)

        items, total, window = service.list_requests(cursor=0)

        assert total == 25
        assert len(items) == 20
        assert items[0].user_login == "user0"
        assert window.metadata(total, len(items))["next_cursor"] == 20

        items, total, window = service.list_requests(cursor=20)
        assert [item.user_login for item in items] == [f"user{i}" for i in range(20, 25)]
        assert window.metadata(total, len(items))["has_more"] is False

    def test_status_filter(self, db_session: Session):
        user = create_brand_user(db_session)
        other = create_brand_user(db_session, login="bob", email="bob@example.com")
        create_profile_request(db_session, user, status="approved")
        create_profile_request(db_session, other)

        items, total, _ = ProfileRequestService(db_session).list_requests(status="pending")

        assert total == 1
        assert items[0].user_login == "bob"

    def test_search(self, db_session: Session):
        user = create_brand_user(db_session)
        other = create_brand_user(db_session, login="bob", email="bob@example.com")
        create_profile_request(db_session, user, metadata={"last_name": {"old": "Lee", "new": "Leigh"}})
        create_profile_request(db_session, other)

        items, total, _ = ProfileRequestService(db_session).list_requests(search_query="Leigh")

        assert total == 1
        assert items[0].user_login == "ann"


class TestApprove:
    """Tests for ProfileRequestService.approve."""

    def test_applies_changes(self, db_session: Session):
        user = create_brand_user(db_session)
        request = create_profile_request(
            db_session,
            user,
            data={"email": {"old": "ann@example.com", "new": "ann.lee@example.com"}},
            metadata={"last_name": {"old": "Lee", "new": "Leigh"}},
        )

        approved, updated = ProfileRequestService(db_session).approve(request.id, user_id=user.id)

        assert approved.status == ProfileRequestStatus.APPROVED
        assert approved.pending_user_id is None
        assert updated.email == "ann.lee@example.com"
        assert updated.meta_json["last_name"] == "Leigh"
        assert updated.meta_json["first_name"] == "Ann"

    def test_lookup_by_email(self, db_session: Session):
        user = create_brand_user(db_session)
        request = create_profile_request(db_session, user, data={"display_name": {"old": "Ann Lee", "new": "A. Lee"}})

        _, updated = ProfileRequestService(db_session).approve(request.id, user_email="ann@example.com")

        assert updated.display_name == "A. Lee"

    def test_missing_identifiers(self, db_session: Session):
        with pytest.raises(ValueError):
            ProfileRequestService(db_session).approve(1)

    def test_unknown_user(self, db_session: Session):
        with pytest.raises(UserNotFoundError):
            ProfileRequestService(db_session).approve(1, user_id=999)

    def test_already_decided(self, db_session: Session):
        user = create_brand_user(db_session)
        request = create_profile_request(db_session, user, status="rejected")

        with pytest.raises(RequestNotPendingError):
            ProfileRequestService(db_session).approve(request.id, user_id=user.id)

    def test_request_of_another_user(self, db_session: Session):
        user = create_brand_user(db_session)
        other = create_brand_user(db_session, login="bob", email="bob@example.com")
        request = create_profile_request(db_session, other)

        with pytest.raises(RequestNotPendingError):
            ProfileRequestService(db_session).approve(request.id, user_id=user.id)

    def test_taken_email_changes_nothing(self, db_session: Session):
        user = create_brand_user(db_session)
        create_brand_user(db_session, login="bob", email="bob@example.com")
        request = create_profile_request(
            db_session,
            user,
            data={
                "display_name": {"old": "Ann Lee", "new": "A. Lee"},
                "email": {"old": "ann@example.com", "new": "bob@example.com"},
            },
        )

        with pytest.raises(ValueError):
            ProfileRequestService(db_session).approve(request.id, user_id=user.id)

        assert user.display_name == "Ann Lee"
        assert request.status == ProfileRequestStatus.PENDING

    def test_new_request_allowed_after_decision(self, db_session: Session):
        user = create_brand_user(db_session)
        service = ProfileRequestService(db_session)
        first = service.intercept_update(user, meta={"last_name": "Leigh"}).request
        service.approve(first.id, user_id=user.id)

        second = service.intercept_update(user, meta={"first_name": "Anne"})

        assert second.created is True
        assert second.request.id != first.id


class TestReject:
    """Tests for ProfileRequestService.reject."""

    def test_records_comment(self, db_session: Session):
        user = create_brand_user(db_session)
        request = create_profile_request(db_session, user, metadata={"last_name": {"old": "Lee", "new": "Leigh"}})

        rejected = ProfileRequestService(db_session).reject(request.id, "ann@example.com", " Not verified ")

        assert rejected.status == ProfileRequestStatus.REJECTED
        assert rejected.comment == "Not verified"
        assert user.meta_json["last_name"] == "Lee"

    def test_comment_required(self, db_session: Session):
        user = create_brand_user(db_session)
        request = create_profile_request(db_session, user)

        with pytest.raises(ValueError):
            ProfileRequestService(db_session).reject(request.id, "ann@example.com", "   ")

    def test_serialized_form(self, db_session: Session):
        user = create_brand_user(db_session)
        request = create_profile_request(db_session, user, created_at=datetime(2026, 3, 1, 12, 0))

        data = serialize_request(request)

        assert data["status"] == "pending"
        assert data["created_at"] == "2026-03-01T12:00:00"
        assert data["requested_at"] == data["created_at"]
        assert data["user_login"] == "ann"
