from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException
from sqlalchemy.orm import Session

from flowpay.config import settings
from flowpay.database import get_db
from flowpay.logging_config import get_logger
from flowpay.schemas.cron import CleanupResponse, NotificationSweepResponse, SubscriptionSweepResponse
from flowpay.services.subscription_sweeper import (
    cleanup_stale_sales,
    expire_purchases,
    expire_tenants,
    send_expiry_notifications,
)

logger = get_logger("cron")

router = APIRouter(prefix="/cron")


def verify_cron_secret(
    authorization: Optional[str] = Header(default=None),
    x_cron_secret: Optional[str] = Header(default=None),
    secret: Optional[str] = None,
) -> None:
    """Accepts `Authorization: Bearer <secret>`, `X-Cron-Secret` or `?secret=`."""
    if not settings.cron_secret:
        logger.error("CRON_SECRET is not configured, refusing sweeper call")
        raise HTTPException(status_code=503, detail="Cron secret not configured")

    provided = secret or x_cron_secret
    if authorization and authorization.lower().startswith("bearer "):
        provided = authorization[7:].strip()

    if provided != settings.cron_secret:
        logger.warning("Unauthorized cron call")
        raise HTTPException(status_code=401, detail="Unauthorized")


@router.api_route(
    "/check-subscriptions",
    methods=["GET", "POST"],
    response_model=SubscriptionSweepResponse,
    dependencies=[Depends(verify_cron_secret)],
)
def check_subscriptions(db: Session = Depends(get_db)):
    """Expire purchases and tenant plans that ended."""
    purchases = expire_purchases(db)
    tenants = expire_tenants(db)
    return SubscriptionSweepResponse(
        success=True,
        purchases_expired=purchases["expired"],
        users_kicked=purchases["kicked"],
        tenants_deactivated=tenants["deactivated"],
    )


@router.api_route(
    "/notifications",
    methods=["GET", "POST"],
    response_model=NotificationSweepResponse,
    dependencies=[Depends(verify_cron_secret)],
)
def notifications(db: Session = Depends(get_db)):
    result = send_expiry_notifications(db)
    return NotificationSweepResponse(success=True, notifications_sent=result["sent"])


@router.api_route(
    "/cleanup-sales",
    methods=["GET", "POST"],
    response_model=CleanupResponse,
    dependencies=[Depends(verify_cron_secret)],
)
def cleanup_sales(db: Session = Depends(get_db)):
    result = cleanup_stale_sales(db)
    return CleanupResponse(success=True, deleted_count=result["deleted"])
