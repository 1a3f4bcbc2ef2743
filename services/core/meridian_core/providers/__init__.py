"""Node-to-node HTTP clients for Meridian.

- Base: shared request plumbing and ``RemoteNodeError``
- Brand: governing -> brand calls
- Governing: brand -> governing calls
"""

from meridian_core.providers.base import (
    ACCESS_TOKEN_HEADER,
    CLIENT_VERSION,
    NodeClient,
    NodeResponse,
    RemoteNodeError,
    build_user_agent,
)
from meridian_core.providers.brand import (
    BrandClientFactory,
    BrandSiteClient,
    make_brand_client_factory,
)
from meridian_core.providers.governing import GoverningSiteClient, make_governing_client

__all__ = [
    "ACCESS_TOKEN_HEADER",
    "BrandClientFactory",
    "CLIENT_VERSION",
    "BrandSiteClient",
    "GoverningSiteClient",
    "NodeClient",
    "NodeResponse",
    "RemoteNodeError",
    "build_user_agent",
    "make_brand_client_factory",
    "make_governing_client",
]
