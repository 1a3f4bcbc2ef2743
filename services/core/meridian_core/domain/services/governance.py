"""Governing-node operations that act on brand nodes.

Decisions on change requests and identity administration are executed on
the owning brand node first; the governing node's own state (identity
store, merged request cache) only changes after the brand node confirms.
"""

from dataclasses import dataclass, field
from typing import Any, Optional

from sqlalchemy.orm import Session as DBSession

from meridian_core.domain.models import DeduplicatedUser
from meridian_core.domain.pagination import PaginatedResult, PaginationParams
from meridian_core.domain.services.brand_users import DEFAULT_ROLE
from meridian_core.domain.services.identity_store import (
    IdentityFilter,
    IdentityStore,
    SiteMembership,
    normalize_roles,
)
from meridian_core.domain.services.request_cache import MergedListCache
from meridian_core.domain.services.sites import SiteRegistryService
from meridian_core.domain.site_urls import normalize_site_url
from meridian_core.observability import get_logger
from meridian_core.providers import BrandClientFactory, RemoteNodeError

logger = get_logger(__name__)


class SiteNotFoundError(LookupError):
    """Raised when a decision names an unregistered site."""

    pass


@dataclass
class FanOutReport:
    """Result of an operation executed on several brand nodes."""

    success_message: str
    failure_message: str
    error_log: list[dict[str, Any]] = field(default_factory=list)
    succeeded: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.error_log

    def add_error(self, site_name: str, message: str, site_url: Optional[str] = None) -> None:
        self.error_log.append({"site_name": site_name, "site_url": site_url, "message": message})

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "message": self.success_message if self.success else self.failure_message,
            "sites_succeeded": self.succeeded,
            "error_log": self.error_log,
        }


class GovernanceService:
    """Service for governing-node actions on brand nodes."""

    def __init__(
        self,
        db: DBSession,
        client_factory: BrandClientFactory,
        cache: Optional[MergedListCache] = None,
    ):
        self.db = db
        self.client_factory = client_factory
        self.cache = cache
        self.sites = SiteRegistryService(db, client_factory)
        self.store = IdentityStore(db)

    def _require_site(self, site_name: str):
        site = self.sites.get_by_name(site_name)
        if site is None:
            raise SiteNotFoundError(f"Site '{site_name}' is not registered")
        return site

    def _invalidate(self) -> None:
        if self.cache is not None:
            self.cache.invalidate()

    # -------------------------------------------------------------------------
    # Change request decisions
    # -------------------------------------------------------------------------

    async def approve_request(
        self,
        site_name: str,
        request_id: int,
        user_id: Optional[int] = None,
        user_email: Optional[str] = None,
    ) -> dict[str, Any]:
        """Ask the owning brand node to approve a request.

        Raises:
            SiteNotFoundError: If the site is not registered.
            RemoteNodeError: If the brand node fails or refuses.
        """
        site = self._require_site(site_name)
        data = await self.client_factory(site).approve_profile_request(
            request_id=request_id, user_id=user_id, user_email=user_email
        )
        if data.get("success") is not True:
            raise RemoteNodeError(
                data.get("message") or "Brand site refused the approval", site_url=site.url
            )
        self._invalidate()
        logger.info("Profile request approved remotely", site_url=site.url, request_id=request_id)
        return data

    async def reject_request(
        self,
        site_name: str,
        request_id: int,
        user_email: str,
        comment: str,
    ) -> dict[str, Any]:
        """Ask the owning brand node to reject a request.

        Raises:
            ValueError: If the comment is empty.
            SiteNotFoundError: If the site is not registered.
            RemoteNodeError: If the brand node fails or refuses.
        """
        if not (comment or "").strip():
            raise ValueError("A rejection comment is required")

        site = self._require_site(site_name)
        data = await self.client_factory(site).reject_profile_request(
            request_id=request_id, user_email=user_email, rejection_comment=comment
        )
        if data.get("success") is not True:
            raise RemoteNodeError(
                data.get("message") or "Brand site refused the rejection", site_url=site.url
            )
        self._invalidate()
        logger.info("Profile request rejected remotely", site_url=site.url, request_id=request_id)
        return data

    # -------------------------------------------------------------------------
    # Identity administration
    # -------------------------------------------------------------------------

    async def update_roles(self, email: str, assignments: list[dict[str, Any]]) -> FanOutReport:
        """Change a user's roles on several brand sites.

        Args:
            email: Identity email.
            assignments: ``[{"site_name": ..., "roles": [...]}, ...]``.
        """
        report = FanOutReport(
            success_message="User roles updated successfully.",
            failure_message="User roles could not be updated on some sites.",
        )

        for assignment in assignments:
            site_name = assignment.get("site_name", "")
            roles = normalize_roles(assignment.get("roles"))
            site = self.sites.get_by_name(site_name)
            if site is None:
                report.add_error(site_name, "Site is not registered")
                continue

            try:
                data = await self.client_factory(site).update_user_roles(email, roles)
            except RemoteNodeError as e:
                report.add_error(site_name, str(e), site.url)
                continue
            if data.get("success") is not True:
                report.add_error(site_name, data.get("message") or "Role update refused", site.url)
                continue

            self.store.update_role(email, site.url, roles)
            report.succeeded.append(site_name)

        return report

    async def add_to_sites(
        self,
        email: str,
        username: str,
        full_name: str,
        assignments: list[dict[str, Any]],
    ) -> FanOutReport:
        """Create an account for one person on several brand sites.

        Each site that confirms the account is recorded as a membership
        right away, with the user id the site assigned.

        Args:
            email: Email of the new accounts.
            username: Login to create on every site.
            full_name: Display name; split into first and last name.
            assignments: ``[{"site_name": ..., "role": ...}, ...]``.
        """
        report = FanOutReport(
            success_message="User added to sites successfully.",
            failure_message="User could not be added to some sites.",
        )
        first_name, _, last_name = full_name.strip().partition(" ")

        for assignment in assignments:
            site_name = assignment.get("site_name", "")
            role = assignment.get("role") or DEFAULT_ROLE
            site = self.sites.get_by_name(site_name)
            if site is None:
                report.add_error(site_name, "Site is not registered")
                continue

            try:
                data = await self.client_factory(site).create_user(username, email, full_name, role)
            except RemoteNodeError as e:
                report.add_error(site_name, str(e), site.url)
                continue
            created = data.get("data") or {}
            if data.get("success") is not True or not created.get("user_id"):
                report.add_error(site_name, data.get("message") or "Account creation refused", site.url)
                continue

            self.store.upsert_membership(
                email,
                first_name,
                last_name.strip(),
                SiteMembership(
                    site_name=site.name,
                    site_url=site.url,
                    user_id=int(created["user_id"]),
                    roles=[created.get("role") or role],
                ),
            )
            report.succeeded.append(site_name)

        logger.info(
            "Add to sites finished",
            succeeded=len(report.succeeded),
            errors=len(report.error_log),
        )
        return report

    async def remove_from_sites(self, email: str, site_names: list[str]) -> FanOutReport:
        """Delete a user's account on several brand sites."""
        report = FanOutReport(
            success_message="User deleted from sites successfully.",
            failure_message="User could not be deleted from some sites.",
        )

        for site_name in site_names:
            site = self.sites.get_by_name(site_name)
            if site is None:
                report.add_error(site_name, "Site is not registered")
                continue

            try:
                data = await self.client_factory(site).delete_user(email)
            except RemoteNodeError as e:
                report.add_error(site_name, str(e), site.url)
                continue
            if data.get("success") is not True:
                report.add_error(site_name, data.get("message") or "Deletion refused", site.url)
                continue

            self.store.remove_membership(email, site.url)
            report.succeeded.append(site_name)

        return report

    async def rebuild_index(self) -> FanOutReport:
        """Ask every registered brand site to re-send all of its users."""
        report = FanOutReport(
            success_message="Index rebuild requested from all sites.",
            failure_message="Index rebuild could not be requested from some sites.",
        )
        seen = set()
        for site in self.sites.list_sites():
            if site.url in seen:
                continue
            seen.add(site.url)
            try:
                data = await self.client_factory(site).resync_users()
            except RemoteNodeError as e:
                report.add_error(site.name, str(e), site.url)
                continue
            if data.get("success") is not True:
                report.add_error(site.name, data.get("message") or "Resync refused", site.url)
                continue
            report.succeeded.append(site.name)
        return report

    def list_identities(
        self,
        filters: IdentityFilter,
        page: int = 1,
        per_page: int = 20,
    ) -> dict[str, Any]:
        """Page of deduplicated users with site names taken from the registry."""
        params = PaginationParams(page=page, page_size=per_page)
        items, total = self.store.query(filters, params.page, params.page_size)
        result = PaginatedResult(items=items, total=total, page=params.page, page_size=params.page_size)
        names = {site.url: site.name for site in self.sites.list_sites()}

        return {
            "users": [self._serialize(record, names) for record in result.items],
            "total_users": result.total,
            "total_pages": result.total_pages,
            "current_page": result.page,
            "per_page": result.page_size,
            "has_more": result.has_more,
        }

    @staticmethod
    def _serialize(record: DeduplicatedUser, names: dict[str, str]) -> dict[str, Any]:
        sites = []
        for site in record.sites_json or []:
            entry = dict(site)
            url = normalize_site_url(entry.get("site_url"))
            entry["site_url"] = url
            entry["site_name"] = names.get(url, entry.get("site_name", ""))
            sites.append(entry)

        return {
            "id": record.id,
            "email": record.email,
            "first_name": record.first_name,
            "last_name": record.last_name,
            "sites": sites,
            "created_at": record.created_at.isoformat() if record.created_at else None,
            "updated_at": record.updated_at.isoformat() if record.updated_at else None,
        }
