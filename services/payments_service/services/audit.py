"""Admin audit log. A failure here degrades to a log line."""

from typing import Any, Optional

from libs.auth.models import AuthUser
from libs.common.logging import get_logger
from services.payments_service.models import AdminAuditLog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

logger = get_logger(__name__)


async def record_admin_action(
    db: AsyncSession,
    *,
    admin: AuthUser,
    action: str,
    resource_type: str,
    resource_id: str,
    metadata: Optional[dict[str, Any]] = None,
) -> bool:
    entry = AdminAuditLog(
        admin_user_id=admin.sub,
        admin_email=admin.email,
        action=action,
        resource_type=resource_type,
        resource_id=str(resource_id),
        audit_metadata=metadata or {},
    )
    try:
        db.add(entry)
        await db.commit()
        return True
    except SQLAlchemyError:
        await db.rollback()
        logger.warning(
            "Audit log write failed",
            exc_info=True,
            extra={
                "extra_fields": {
                    "admin_email": admin.email,
                    "action": action,
                    "resource_type": resource_type,
                    "resource_id": str(resource_id),
                }
            },
        )
        return False
