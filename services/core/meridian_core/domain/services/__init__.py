"""Domain services for Meridian."""

from meridian_core.domain.services.aggregator import ProfileRequestAggregator, ProfileRequestQuery
from meridian_core.domain.services.audit import AuditService
from meridian_core.domain.services.brand_users import BrandUserService
from meridian_core.domain.services.dedup_receiver import DeduplicationReceiver
from meridian_core.domain.services.governance import GovernanceService
from meridian_core.domain.services.identity_store import IdentityStore, SiteMembership
from meridian_core.domain.services.jobs import JobService
from meridian_core.domain.services.profile_requests import ProfileRequestService
from meridian_core.domain.services.sites import SiteRegistryService
from meridian_core.domain.services.user_sync import UserSyncService

__all__ = [
    "AuditService",
    "BrandUserService",
    "DeduplicationReceiver",
    "GovernanceService",
    "IdentityStore",
    "JobService",
    "ProfileRequestAggregator",
    "ProfileRequestQuery",
    "ProfileRequestService",
    "SiteMembership",
    "SiteRegistryService",
    "UserSyncService",
]
