"""Administrator notifications."""

from typing import Optional

from sqlalchemy.orm import Session as DBSession

from meridian_core.domain.services.audit import AuditService
from meridian_core.observability import get_logger

logger = get_logger(__name__)


class AdminNotifier:
    """Escalates conditions an operator has to act on.

    Notifications are written as error logs and as audit entries, which the
    admin UI surfaces.
    """

    def __init__(self, db: DBSession):
        self.audit = AuditService(db)

    def sync_failed(
        self,
        user_id: int,
        email: str,
        attempts: int,
        error: Optional[str],
        governing_site_url: Optional[str] = None,
    ) -> None:
        logger.error(
            "User sync failed permanently",
            user_id=user_id,
            email=email,
            attempts=attempts,
            error=error,
        )
        self.audit.create_entry(
            actor="system",
            action_type="sync.failed",
            result="error",
            site_url=governing_site_url,
            entity_type="brand_user",
            entity_id=user_id,
            request_json={"email": email, "attempts": attempts},
            error_detail=error,
        )
