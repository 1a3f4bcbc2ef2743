"""Deduplicated identity store for the governing node.

Every person is stored once, keyed by email, with one membership per brand
site they hold an account on. Site URLs are compared after normalization,
so ``https://a.example`` and ``https://a.example/`` are the same site.
Emails are compared exactly.

Writers for the same email are serialized: in-process through a keyed
lock, across processes through ``SELECT ... FOR UPDATE`` on the identity
row. Two concurrent first inserts for one email resolve through the unique
constraint; the loser re-reads the winner's row and merges into it.
"""

import threading
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Optional

from sqlalchemy import func, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session as DBSession

from meridian_core.domain.models import DeduplicatedUser
from meridian_core.domain.site_urls import normalize_site_url
from meridian_core.observability import get_logger

logger = get_logger(__name__)

DEFAULT_PRUNE_BATCH_SIZE = 100


def normalize_roles(roles: Optional[Iterable[Any]]) -> list[str]:
    """Turn any role collection into a sorted list of unique non-empty strings."""
    if not roles or isinstance(roles, (str, bytes)):
        return []
    return sorted({str(role).strip() for role in roles if str(role).strip()})


@dataclass
class SiteMembership:
    """One identity's account on one brand site."""

    site_name: str
    site_url: str
    user_id: int = 0
    roles: list[str] = field(default_factory=list)

    def __post_init__(self):
        self.site_url = normalize_site_url(self.site_url)
        self.roles = normalize_roles(self.roles)

    def to_dict(self) -> dict[str, Any]:
        return {
            "site_name": self.site_name,
            "site_url": self.site_url,
            "user_id": self.user_id,
            "roles": list(self.roles),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SiteMembership":
        return cls(
            site_name=data.get("site_name", ""),
            site_url=data.get("site_url", ""),
            user_id=int(data.get("user_id") or 0),
            roles=data.get("roles") or [],
        )


@dataclass
class IdentityFilter:
    """Filters for listing identities.

    Attributes:
        search_text: Substring of email, first, last or full name
        role: Matches when any membership holds the role
        site: Substring of any membership's site URL or site name
    """

    search_text: Optional[str] = None
    role: Optional[str] = None
    site: Optional[str] = None


class _KeyedLock:
    """Reference-counted map of per-key locks."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: dict[str, list] = {}

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            entry = self._locks.setdefault(key, [threading.Lock(), 0])
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    self._locks.pop(key, None)


_email_locks = _KeyedLock()


class IdentityStore:
    """Read/write access to deduplicated identities."""

    def __init__(self, db: DBSession):
        """Initialize the identity store.

        Args:
            db: SQLAlchemy database session.
        """
        self.db = db

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def get(self, email: str) -> Optional[DeduplicatedUser]:
        return (
            self.db.query(DeduplicatedUser)
            .filter(DeduplicatedUser.email == email)
            .first()
        )

    def _get_for_update(self, email: str) -> Optional[DeduplicatedUser]:
        return (
            self.db.query(DeduplicatedUser)
            .filter(DeduplicatedUser.email == email)
            .with_for_update()
            .populate_existing()
            .first()
        )

    @staticmethod
    def memberships(record: DeduplicatedUser) -> list[SiteMembership]:
        return [SiteMembership.from_dict(site) for site in (record.sites_json or [])]

    @staticmethod
    def _find_site(sites: list[dict[str, Any]], site_url: str) -> int:
        target = normalize_site_url(site_url)
        for index, site in enumerate(sites):
            if normalize_site_url(site.get("site_url")) == target:
                return index
        return -1

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    def upsert_membership(
        self,
        email: str,
        first_name: str,
        last_name: str,
        membership: SiteMembership,
    ) -> DeduplicatedUser:
        """Create an identity or merge one site membership into it.

        An existing membership for the same normalized site URL is replaced
        in place (site name, user id and roles). First and last name are
        refreshed. Re-applying an unchanged membership writes nothing.

        Args:
            email: Identity key (compared exactly).
            first_name: First name reported by the brand site.
            last_name: Last name reported by the brand site.
            membership: The membership to add or replace.

        Returns:
            The stored identity.

        Raises:
            ValueError: If email or site URL is empty.
        """
        email = (email or "").strip()
        if not email:
            raise ValueError("email is required")
        if not membership.site_url:
            raise ValueError("site_url is required")

        with _email_locks.hold(email):
            record = self._get_for_update(email)
            if record is None:
                record = self._insert(email, first_name, last_name, membership)
                if record is not None:
                    return record
                # Lost the insert race; merge into the winner's row
                record = self._get_for_update(email)
                if record is None:
                    raise RuntimeError(f"Identity for {email} vanished during upsert")

            self._merge(record, first_name, last_name, membership)
            return record

    def _insert(
        self,
        email: str,
        first_name: str,
        last_name: str,
        membership: SiteMembership,
    ) -> Optional[DeduplicatedUser]:
        record = DeduplicatedUser(
            email=email,
            first_name=first_name or "",
            last_name=last_name or "",
            sites_json=[membership.to_dict()],
        )
        try:
            with self.db.begin_nested():
                self.db.add(record)
        except IntegrityError:
            logger.info("Concurrent identity insert detected, merging", email=email)
            return None
        return record

    def _merge(
        self,
        record: DeduplicatedUser,
        first_name: str,
        last_name: str,
        membership: SiteMembership,
    ) -> None:
        sites = [dict(site) for site in (record.sites_json or [])]
        index = self._find_site(sites, membership.site_url)

        if index == -1:
            sites.append(membership.to_dict())
        else:
            sites[index] = membership.to_dict()

        if sites != record.sites_json:
            record.sites_json = sites
        if (first_name or "") != record.first_name:
            record.first_name = first_name or ""
        if (last_name or "") != record.last_name:
            record.last_name = last_name or ""
        self.db.flush()

    def update_role(self, email: str, site_url: str, new_roles: Iterable[str]) -> bool:
        """Replace the role set of one membership.

        Returns:
            False if the identity or the membership does not exist.
        """
        with _email_locks.hold(email):
            record = self._get_for_update(email)
            if record is None:
                return False

            sites = [dict(site) for site in (record.sites_json or [])]
            index = self._find_site(sites, site_url)
            if index == -1:
                return False

            sites[index]["roles"] = normalize_roles(new_roles)
            if sites != record.sites_json:
                record.sites_json = sites
                self.db.flush()
            return True

    def remove_membership(self, email: str, site_url: str) -> bool:
        """Remove one membership, deleting the identity when none remain.

        Returns:
            False if the identity or the membership does not exist.
        """
        with _email_locks.hold(email):
            record = self._get_for_update(email)
            if record is None:
                return False

            sites = [dict(site) for site in (record.sites_json or [])]
            index = self._find_site(sites, site_url)
            if index == -1:
                return False

            del sites[index]
            if sites:
                record.sites_json = sites
            else:
                self.db.delete(record)
            self.db.flush()
            return True

    def prune_disconnected_sites(
        self,
        connected_urls: Iterable[str],
        batch_size: int = DEFAULT_PRUNE_BATCH_SIZE,
    ) -> dict[str, int]:
        """Drop memberships of sites that are no longer registered.

        Walks the table in id order, ``batch_size`` rows at a time.
        Identities left without memberships are deleted.

        Args:
            connected_urls: URLs of the currently registered brand sites.
            batch_size: Rows examined per batch.

        Returns:
            Counts of examined, updated and deleted identities and of
            removed memberships.
        """
        connected = {normalize_site_url(url) for url in connected_urls}
        stats = {"examined": 0, "updated": 0, "deleted": 0, "memberships_removed": 0}
        last_id = 0

        while True:
            batch = (
                self.db.query(DeduplicatedUser)
                .filter(DeduplicatedUser.id > last_id)
                .order_by(DeduplicatedUser.id.asc())
                .limit(batch_size)
                .all()
            )
            if not batch:
                break

            for record in batch:
                last_id = record.id
                stats["examined"] += 1
                sites = record.sites_json or []
                kept = [
                    dict(site)
                    for site in sites
                    if normalize_site_url(site.get("site_url")) in connected
                ]
                removed = len(sites) - len(kept)
                if removed == 0:
                    continue

                stats["memberships_removed"] += removed
                if kept:
                    record.sites_json = kept
                    stats["updated"] += 1
                else:
                    self.db.delete(record)
                    stats["deleted"] += 1

            self.db.flush()

        logger.info("Pruned disconnected site memberships", **stats)
        return stats

    # -------------------------------------------------------------------------
    # Listing
    # -------------------------------------------------------------------------

    def query(
        self,
        filters: Optional[IdentityFilter] = None,
        page: int = 1,
        page_size: int = 20,
    ) -> tuple[list[DeduplicatedUser], int]:
        """List identities, newest first.

        Search runs in SQL. Role and site filters inspect the membership
        list and run in Python.

        Args:
            filters: Optional search/role/site filters.
            page: 1-indexed page number.
            page_size: Items per page.

        Returns:
            Tuple of (items on the page, total matching count).
        """
        filters = filters or IdentityFilter()
        page = max(page, 1)
        page_size = max(page_size, 1)
        offset = (page - 1) * page_size

        query = self.db.query(DeduplicatedUser)

        search = (filters.search_text or "").strip()
        if search:
            pattern = f"%{search}%"
            full_name = DeduplicatedUser.first_name + " " + DeduplicatedUser.last_name
            query = query.filter(
                or_(
                    DeduplicatedUser.email.ilike(pattern),
                    DeduplicatedUser.first_name.ilike(pattern),
                    DeduplicatedUser.last_name.ilike(pattern),
                    full_name.ilike(pattern),
                )
            )

        if not filters.role and not filters.site:
            total = query.with_entities(func.count(DeduplicatedUser.id)).scalar() or 0
            query = query.order_by(DeduplicatedUser.created_at.desc(), DeduplicatedUser.id.desc())
            return query.offset(offset).limit(page_size).all(), total

        query = query.order_by(DeduplicatedUser.created_at.desc(), DeduplicatedUser.id.desc())
        matched = [record for record in query.all() if self._matches(record, filters)]
        return matched[offset : offset + page_size], len(matched)

    @staticmethod
    def _matches(record: DeduplicatedUser, filters: IdentityFilter) -> bool:
        sites = record.sites_json or []

        if filters.role:
            if not any(filters.role in (site.get("roles") or []) for site in sites):
                return False

        if filters.site:
            needle = filters.site.lower()
            if not any(
                needle in (site.get("site_url") or "").lower()
                or needle in (site.get("site_name") or "").lower()
                for site in sites
            ):
                return False

        return True
