import logging

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from ..auth import get_current_user
from ..database import get_db
from ..models import User
from ..services.booking_monitoring import generate_health_report

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/monitoring", tags=["Monitoring"])


@router.get("/health")
async def booking_health(
    days: int = Query(7, ge=1, le=90),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Background task health report for recent bookings (sellers only)"""
    if current_user.role != "seller":
        logger.warning(f"⚠️ User {current_user.id} denied access to booking health report")
        raise HTTPException(status_code=403, detail="Only sellers can view the booking health report")
    return generate_health_report(db, days)
