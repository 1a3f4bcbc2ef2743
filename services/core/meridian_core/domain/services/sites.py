"""Brand site registry for the governing node.

Registrations serve two purposes: they address outbound calls to a brand
node and they authenticate inbound calls from it.
"""

import hmac
from typing import Optional

from sqlalchemy.orm import Session as DBSession

from meridian_core.domain.models import SiteRegistration
from meridian_core.domain.services.identity_store import IdentityStore
from meridian_core.domain.site_urls import normalize_site_url, same_host
from meridian_core.observability import get_logger
from meridian_core.providers import BrandClientFactory, RemoteNodeError

logger = get_logger(__name__)


def _tokens_match(presented: str, expected: str) -> bool:
    return hmac.compare_digest(presented.encode(), expected.encode())


class SiteRegistryService:
    """Service for brand site registrations."""

    def __init__(self, db: DBSession, client_factory: Optional[BrandClientFactory] = None):
        """Initialize the registry.

        Args:
            db: SQLAlchemy database session.
            client_factory: Builds brand clients; required for ``register``.
        """
        self.db = db
        self.client_factory = client_factory

    def list_sites(self) -> list[SiteRegistration]:
        return self.db.query(SiteRegistration).order_by(SiteRegistration.name.asc()).all()

    def get_site(self, site_id: str) -> Optional[SiteRegistration]:
        return self.db.get(SiteRegistration, site_id)

    def get_by_name(self, name: str) -> Optional[SiteRegistration]:
        return self.db.query(SiteRegistration).filter(SiteRegistration.name == name).first()

    def get_by_url(self, url: str) -> Optional[SiteRegistration]:
        return (
            self.db.query(SiteRegistration)
            .filter(SiteRegistration.url == normalize_site_url(url))
            .first()
        )

    async def register(self, name: str, url: str, api_key: str) -> SiteRegistration:
        """Register a brand site after checking that it accepts the key.

        Args:
            name: Display name, unique across registrations.
            url: Site URL, unique after normalization.
            api_key: The brand site's shared secret.

        Returns:
            The new registration.

        Raises:
            ValueError: If a field is empty, the name or URL is taken, or the
                health check fails.
        """
        name = (name or "").strip()
        url = normalize_site_url(url)
        api_key = (api_key or "").strip()

        if not name or not url or not api_key:
            raise ValueError("name, url and api_key are required")
        if self.get_by_name(name):
            raise ValueError(f"A site named '{name}' is already registered")
        if self.get_by_url(url):
            raise ValueError(f"Site {url} is already registered")
        if self.client_factory is None:
            raise RuntimeError("Registering a site requires a brand client factory")

        site = SiteRegistration(name=name, url=url, api_key=api_key)
        try:
            healthy = await self.client_factory(site).health_check()
        except RemoteNodeError as e:
            logger.warning("Health check failed for new site", site_url=url, error=str(e))
            raise ValueError(f"Health check failed for {url}: {e}") from e
        if not healthy:
            raise ValueError(f"Health check failed for {url}")

        self.db.add(site)
        self.db.flush()
        logger.info("Brand site registered", site_url=url, site_name=name)
        return site

    def delete(self, site_id: str) -> bool:
        """Remove a registration and prune its memberships.

        Returns:
            False if the registration does not exist.
        """
        site = self.get_site(site_id)
        if site is None:
            return False

        self.db.delete(site)
        self.db.flush()

        remaining = [s.url for s in self.list_sites()]
        IdentityStore(self.db).prune_disconnected_sites(remaining)
        logger.info("Brand site removed", site_url=site.url)
        return True

    def authenticate(
        self,
        token: Optional[str],
        origin: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Optional[SiteRegistration]:
        """Find the registration an inbound brand request comes from.

        A registration is a candidate when its host equals the ``Origin``
        host or its URL occurs in the User-Agent; the token must then equal
        the candidate's key. Keys are compared in constant time.

        Returns:
            The matching registration, or None.
        """
        if not token:
            return None

        agent = user_agent or ""
        for site in self.list_sites():
            by_origin = same_host(site.url, origin)
            by_agent = site.url in agent or site.url.rstrip("/") in agent
            if not (by_origin or by_agent):
                continue
            if _tokens_match(token, site.api_key):
                return site

        return None
