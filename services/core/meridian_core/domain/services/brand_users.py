"""Local user accounts on a brand node."""

from typing import Any, Iterable, Iterator, Optional

from sqlalchemy.orm import Session as DBSession

from meridian_core.domain.models import BrandUser, UserSyncState
from meridian_core.domain.services.identity_store import normalize_roles

DEFAULT_ROLE = "subscriber"


def user_snapshot(user: BrandUser) -> dict[str, Any]:
    """Copy of the fields a later diff is computed against."""
    return {
        "email": user.email,
        "login": user.login,
        "nicename": user.nicename,
        "display_name": user.display_name,
        "url": user.url,
        "roles": list(user.roles_json or []),
        "meta": dict(user.meta_json or {}),
    }


class BrandUserService:
    """CRUD for brand users."""

    def __init__(self, db: DBSession):
        self.db = db

    def get_user(self, user_id: int) -> Optional[BrandUser]:
        return self.db.query(BrandUser).filter(BrandUser.id == user_id).first()

    def get_by_email(self, email: str) -> Optional[BrandUser]:
        return self.db.query(BrandUser).filter(BrandUser.email == email).first()

    def create_user(
        self,
        login: str,
        email: str,
        display_name: Optional[str] = None,
        url: str = "",
        roles: Optional[Iterable[str]] = None,
        meta: Optional[dict[str, Any]] = None,
    ) -> BrandUser:
        """Create a local user.

        Raises:
            ValueError: If login or email is empty or already taken.
        """
        login = (login or "").strip()
        email = (email or "").strip()
        if not login:
            raise ValueError("login is required")
        if not email:
            raise ValueError("email is required")
        if self.db.query(BrandUser).filter(BrandUser.login == login).first():
            raise ValueError(f"Login '{login}' is already taken")
        if self.get_by_email(email):
            raise ValueError(f"Email '{email}' is already registered")

        user = BrandUser(
            login=login,
            email=email,
            nicename=login.lower(),
            display_name=display_name or login,
            url=url or "",
            roles_json=normalize_roles(roles) or [DEFAULT_ROLE],
            meta_json=dict(meta or {}),
        )
        self.db.add(user)
        self.db.flush()
        return user

    def set_roles(self, user: BrandUser, roles: Iterable[str]) -> BrandUser:
        user.roles_json = normalize_roles(roles)
        self.db.flush()
        return user

    def delete_user(self, user: BrandUser) -> None:
        self.db.query(UserSyncState).filter(UserSyncState.user_id == user.id).delete()
        self.db.delete(user)
        self.db.flush()

    def iter_pages(self, page_size: int) -> Iterator[list[BrandUser]]:
        """Yield every user in id order, ``page_size`` at a time."""
        last_id = 0
        while True:
            page = (
                self.db.query(BrandUser)
                .filter(BrandUser.id > last_id)
                .order_by(BrandUser.id.asc())
                .limit(page_size)
                .all()
            )
            if not page:
                return
            yield page
            last_id = page[-1].id

    def count_users(self) -> int:
        return self.db.query(BrandUser).count()
