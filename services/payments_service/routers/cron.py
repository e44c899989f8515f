"""Cleanup trigger for the external scheduler and for admins."""

from fastapi import APIRouter, Depends, HTTPException, Request, status
from libs.auth.dependencies import bearer_matches
from libs.common.config import get_settings
from libs.common.logging import get_logger
from libs.db.session import get_async_db
from services.payments_service.services.cleanup import run_cleanup
from sqlalchemy.ext.asyncio import AsyncSession

router = APIRouter(prefix="/cron", tags=["cron"])
logger = get_logger(__name__)


def _unauthorized() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Unauthorized",
        headers={"WWW-Authenticate": "Bearer"},
    )


@router.get("/cleanup-payments")
async def scheduled_cleanup(
    request: Request,
    db: AsyncSession = Depends(get_async_db),
):
    """
    Scheduler entry point, authorized by ``Bearer <CRON_SECRET>``.
    """
    if not bearer_matches(request, get_settings().CRON_SECRET):
        logger.warning("Rejected cleanup trigger with bad cron secret")
        raise _unauthorized()
    return await run_cleanup(db)


@router.post("/cleanup-payments")
async def manual_cleanup(
    request: Request,
    db: AsyncSession = Depends(get_async_db),
):
    """
    Manual trigger, authorized by ``Bearer <ADMIN_API_KEY>``.
    """
    if not bearer_matches(request, get_settings().ADMIN_API_KEY):
        logger.warning("Rejected manual cleanup trigger with bad admin key")
        raise _unauthorized()
    logger.info("Manual payment cleanup triggered")
    return await run_cleanup(db)
