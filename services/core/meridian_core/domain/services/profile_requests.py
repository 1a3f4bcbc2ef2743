"""Profile change requests on a brand node.

Edits to governed profile fields are never written directly. They are
captured as a pending request holding ``{old, new}`` per field and wait for
a governing decision:

    pending --approve--> approved
    pending --reject (comment required)--> rejected

Both outcomes are terminal. A user has at most one pending request; edits
made while one is pending are discarded.
"""

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional

from sqlalchemy import String, cast, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session as DBSession

from meridian_core.domain.models import BrandUser, ProfileRequest, ProfileRequestStatus, utcnow
from meridian_core.domain.pagination import OffsetWindow, parse_cursor
from meridian_core.domain.services.dedup_receiver import clean_text, is_valid_email
from meridian_core.observability import get_logger

logger = get_logger(__name__)

LIST_PAGE_SIZE = 20

# Profile attributes that require approval
GOVERNED_META_KEYS = (
    "admin_color",
    "first_name",
    "last_name",
    "nickname",
    "facebook",
    "instagram",
    "linkedin",
    "myspace",
    "pinterest",
    "soundcloud",
    "tumblr",
    "wikipedia",
    "twitter",
    "youtube",
    "description",
)

URL_META_KEYS = {
    "facebook",
    "instagram",
    "linkedin",
    "myspace",
    "pinterest",
    "soundcloud",
    "tumblr",
    "twitter",
    "wikipedia",
    "youtube",
}

TEXTAREA_META_KEYS = {"description"}

URL_PATTERN = re.compile(r"^https?://\S+$", re.IGNORECASE)
TAG_PATTERN = re.compile(r"<[^>]*>")


class UnknownFieldError(ValueError):
    """Raised when a change names a field outside the patchable set."""

    pass


class UserNotFoundError(LookupError):
    """Raised when the user a request refers to does not exist."""

    pass


class RequestNotPendingError(LookupError):
    """Raised when a decision targets a request that is not pending."""

    def __init__(self, message: str = "No pending profile request found"):
        super().__init__(message)


# =============================================================================
# Patchable fields
# =============================================================================


def _apply_display_name(user: BrandUser, value: str) -> None:
    user.display_name = value


def _apply_email(user: BrandUser, value: str) -> None:
    user.email = value


def _apply_url(user: BrandUser, value: str) -> None:
    user.url = value


def _apply_nicename(user: BrandUser, value: str) -> None:
    user.nicename = value


class PatchableField(str, Enum):
    """User record fields a change request may modify."""

    DISPLAY_NAME = "display_name"
    EMAIL = "email"
    URL = "url"
    NICENAME = "user_nicename"

    @classmethod
    def parse(cls, name: str) -> "PatchableField":
        """Resolve a field name, accepting ``username`` for the nicename.

        Raises:
            UnknownFieldError: If the name is not patchable.
        """
        if name == "username":
            return cls.NICENAME
        try:
            return cls(name)
        except ValueError:
            raise UnknownFieldError(f"Field '{name}' cannot be changed by a profile request")

    def current_value(self, user: BrandUser) -> str:
        return {
            PatchableField.DISPLAY_NAME: user.display_name,
            PatchableField.EMAIL: user.email,
            PatchableField.URL: user.url,
            PatchableField.NICENAME: user.nicename,
        }[self] or ""

    def sanitize(self, value: Any) -> str:
        if self is PatchableField.EMAIL:
            return sanitize_email(value)
        if self is PatchableField.URL:
            return sanitize_url(value)
        return clean_text(value)

    def apply(self, user: BrandUser, value: str) -> None:
        _FIELD_APPLIERS[self](user, value)


_FIELD_APPLIERS: dict[PatchableField, Callable[[BrandUser, str], None]] = {
    PatchableField.DISPLAY_NAME: _apply_display_name,
    PatchableField.EMAIL: _apply_email,
    PatchableField.URL: _apply_url,
    PatchableField.NICENAME: _apply_nicename,
}


def sanitize_email(value: Any) -> str:
    email = clean_text(value)
    return email if email and is_valid_email(email) else ""


def sanitize_url(value: Any) -> str:
    url = clean_text(value)
    return url if URL_PATTERN.match(url) else ""


def sanitize_textarea(value: Any) -> str:
    """Tags stripped, line breaks kept."""
    if value is None:
        return ""
    lines = TAG_PATTERN.sub("", str(value)).splitlines()
    return "\n".join(line.rstrip() for line in lines).strip()


def sanitize_meta(key: str, value: Any) -> str:
    if key in URL_META_KEYS:
        return sanitize_url(value)
    if key in TEXTAREA_META_KEYS:
        return sanitize_textarea(value)
    return clean_text(value)


# =============================================================================
# Service
# =============================================================================


@dataclass
class InterceptResult:
    """Outcome of intercepting a profile edit.

    Attributes:
        request: The pending request now covering the user, if any
        created: True if this edit created the request
        passthrough_meta: Proposed attributes outside the governed set,
            safe to write immediately
    """

    request: Optional[ProfileRequest] = None
    created: bool = False
    passthrough_meta: dict[str, Any] = field(default_factory=dict)


class ProfileRequestService:
    """Service for brand-side change requests."""

    def __init__(self, db: DBSession):
        """Initialize the service.

        Args:
            db: SQLAlchemy database session.
        """
        self.db = db

    def get_request(self, request_id: int) -> Optional[ProfileRequest]:
        return self.db.get(ProfileRequest, request_id)

    def get_pending(self, user_id: int) -> Optional[ProfileRequest]:
        return (
            self.db.query(ProfileRequest)
            .filter(
                ProfileRequest.user_id == user_id,
                ProfileRequest.status == ProfileRequestStatus.PENDING,
            )
            .first()
        )

    def compute_diff(
        self,
        user: BrandUser,
        data: Optional[dict[str, Any]] = None,
        meta: Optional[dict[str, Any]] = None,
    ) -> tuple[dict[str, dict], dict[str, dict]]:
        """Field-level diff of a proposed edit against the stored user.

        Values are sanitized per field type before comparison.

        Raises:
            UnknownFieldError: If ``data`` names an unpatchable field.
        """
        data_diff = {}
        for name, value in (data or {}).items():
            patchable = PatchableField.parse(name)
            old = patchable.current_value(user)
            new = patchable.sanitize(value)
            if new != old:
                data_diff[patchable.value] = {"old": old, "new": new}

        meta_diff = {}
        stored = user.meta_json or {}
        for key, value in (meta or {}).items():
            if key not in GOVERNED_META_KEYS:
                continue
            old = stored.get(key, "")
            new = sanitize_meta(key, value)
            if new != old:
                meta_diff[key] = {"old": old, "new": new}

        return data_diff, meta_diff

    def intercept_update(
        self,
        user: BrandUser,
        data: Optional[dict[str, Any]] = None,
        meta: Optional[dict[str, Any]] = None,
        requested_by_self: bool = True,
    ) -> InterceptResult:
        """Capture a profile edit as a change request instead of writing it.

        Governed fields keep their stored values. If the edit changes any of
        them and the user has no pending request, a new pending request is
        created; otherwise the diff is discarded.

        Args:
            user: The user being edited.
            data: Proposed user record fields.
            meta: Proposed profile attributes.
            requested_by_self: Whether the user edits their own profile.

        Returns:
            The request covering the user and the attributes that may be
            written immediately.
        """
        passthrough = {
            key: value for key, value in (meta or {}).items() if key not in GOVERNED_META_KEYS
        }
        data_diff, meta_diff = self.compute_diff(user, data, meta)

        if not data_diff and not meta_diff:
            return InterceptResult(passthrough_meta=passthrough)

        pending = self.get_pending(user.id)
        if pending is not None:
            logger.info("Pending request exists, discarding edit", user_id=user.id, request_id=pending.id)
            return InterceptResult(request=pending, passthrough_meta=passthrough)

        suffix = "Self" if requested_by_self else "Brand Admin"
        request = ProfileRequest(
            user_id=user.id,
            pending_user_id=user.id,
            status=ProfileRequestStatus.PENDING,
            data_json=data_diff,
            metadata_json=meta_diff,
            requested_by=f"{user.display_name or user.login} ({suffix})",
            user_email=user.email,
            user_name=user.display_name or "",
            user_login=user.login,
        )
        try:
            with self.db.begin_nested():
                self.db.add(request)
        except IntegrityError:
            # Another edit won the race for the single pending slot
            return InterceptResult(request=self.get_pending(user.id), passthrough_meta=passthrough)

        logger.info("Profile request raised", user_id=user.id, request_id=request.id)
        return InterceptResult(request=request, created=True, passthrough_meta=passthrough)

    def list_requests(
        self,
        status: Optional[str] = None,
        search_query: Optional[str] = None,
        cursor: int = 0,
    ) -> tuple[list[ProfileRequest], int, OffsetWindow]:
        """List this node's requests, newest first, 20 per page.

        Args:
            status: Optional status filter.
            search_query: Substring of the request data or user identity.
            cursor: Offset of the first item.

        Returns:
            Tuple of (items, total matching count, window).
        """
        window = OffsetWindow(offset=parse_cursor(cursor), limit=LIST_PAGE_SIZE)
        query = self.db.query(ProfileRequest)

        if status:
            query = query.filter(ProfileRequest.status == status)

        search = (search_query or "").strip()
        if search:
            pattern = f"%{search}%"
            query = query.filter(
                or_(
                    cast(ProfileRequest.data_json, String).ilike(pattern),
                    cast(ProfileRequest.metadata_json, String).ilike(pattern),
                    ProfileRequest.user_email.ilike(pattern),
                    ProfileRequest.user_name.ilike(pattern),
                    ProfileRequest.user_login.ilike(pattern),
                )
            )

        total = query.count()
        items = (
            query.order_by(ProfileRequest.created_at.desc(), ProfileRequest.id.desc())
            .offset(window.offset)
            .limit(window.limit)
            .all()
        )
        return items, total, window

    def _find_user(self, user_id: Optional[int], user_email: Optional[str]) -> BrandUser:
        user = None
        if user_id:
            user = self.db.get(BrandUser, user_id)
        if user is None and user_email:
            user = self.db.query(BrandUser).filter(BrandUser.email == user_email).first()
        if user is None:
            raise UserNotFoundError("User not found")
        return user

    def _pending_for(self, request_id: int, user: BrandUser) -> ProfileRequest:
        request = (
            self.db.query(ProfileRequest)
            .filter(
                ProfileRequest.id == request_id,
                ProfileRequest.user_id == user.id,
                ProfileRequest.status == ProfileRequestStatus.PENDING,
            )
            .with_for_update()
            .first()
        )
        if request is None:
            raise RequestNotPendingError()
        return request

    def approve(
        self,
        request_id: int,
        user_id: Optional[int] = None,
        user_email: Optional[str] = None,
    ) -> tuple[ProfileRequest, BrandUser]:
        """Apply a pending request to the live user and mark it approved.

        Every change is validated before any is written.

        Args:
            request_id: The request to approve.
            user_id: Owner of the request (preferred lookup).
            user_email: Owner's email (fallback lookup).

        Returns:
            Tuple of (approved request, updated user).

        Raises:
            ValueError: If identifiers are missing or a new email is taken.
            UserNotFoundError: If the user does not exist.
            RequestNotPendingError: If the request is not pending.
            UnknownFieldError: If the request names an unpatchable field.
        """
        if not request_id or not (user_id or user_email):
            raise ValueError("user_id and request_id are required")

        user = self._find_user(user_id, user_email)
        request = self._pending_for(request_id, user)

        patches = [
            (PatchableField.parse(name), change.get("new", ""))
            for name, change in (request.data_json or {}).items()
        ]
        meta_changes = request.metadata_json or {}
        for key in meta_changes:
            if key not in GOVERNED_META_KEYS:
                raise UnknownFieldError(f"Attribute '{key}' cannot be changed by a profile request")

        for patchable, value in patches:
            if patchable is PatchableField.EMAIL:
                if not value:
                    raise ValueError("Requested email is invalid")
                taken = (
                    self.db.query(BrandUser)
                    .filter(BrandUser.email == value, BrandUser.id != user.id)
                    .first()
                )
                if taken is not None:
                    raise ValueError(f"Email '{value}' is already registered")

        for patchable, value in patches:
            patchable.apply(user, value)

        if meta_changes:
            meta = dict(user.meta_json or {})
            for key, change in meta_changes.items():
                meta[key] = change.get("new", "")
            user.meta_json = meta

        request.status = ProfileRequestStatus.APPROVED
        request.pending_user_id = None
        request.updated_at = utcnow()
        self.db.flush()

        logger.info("Profile request approved", request_id=request.id, user_id=user.id)
        return request, user

    def reject(self, request_id: int, user_email: str, comment: str) -> ProfileRequest:
        """Mark a pending request rejected with a comment.

        Raises:
            ValueError: If email, comment or request id is missing.
            UserNotFoundError: If the user does not exist.
            RequestNotPendingError: If the request is not pending.
        """
        comment = (comment or "").strip()
        if not request_id or not user_email or not comment:
            raise ValueError("user_email, rejection_comment and request_id are required")

        user = self._find_user(None, user_email)
        request = self._pending_for(request_id, user)

        request.status = ProfileRequestStatus.REJECTED
        request.comment = sanitize_textarea(comment)
        request.pending_user_id = None
        request.updated_at = utcnow()
        self.db.flush()

        logger.info("Profile request rejected", request_id=request.id, user_id=user.id)
        return request


def serialize_request(request: ProfileRequest) -> dict[str, Any]:
    """Wire form of a change request."""
    created = request.created_at.isoformat() if request.created_at else None
    return {
        "id": request.id,
        "user_id": request.user_id,
        "status": request.status,
        "comment": request.comment,
        "data": request.data_json or {},
        "metadata": request.metadata_json or {},
        "requested_by": request.requested_by,
        "user_email": request.user_email,
        "user_name": request.user_name,
        "user_login": request.user_login,
        "requested_at": created,
        "created_at": created,
        "updated_at": request.updated_at.isoformat() if request.updated_at else None,
    }
