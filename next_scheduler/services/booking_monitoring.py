"""
Booking Monitoring Service
Health metrics for post-booking background work, computed from what the
tasks wrote back onto appointments (event ids, meeting link, sent email)
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from ..domain.booking.repository import BookingRepository
from ..models import Appointment

logger = logging.getLogger(__name__)

FAILED_TASKS_IN_REPORT = 10


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _period_start(days: int, now: datetime) -> datetime:
    return (now - timedelta(days=days)).replace(hour=0, minute=0, second=0, microsecond=0)


def _rate(count: int, total: int) -> Dict[str, Any]:
    return {"count": count, "rate": round(count / total * 100, 1) if total else 0.0}


def _is_fully_processed(appointment: Appointment) -> bool:
    has_event = bool(appointment.google_event_id or appointment.buyer_google_event_id)
    return has_event and bool(appointment.confirmation_email)


def get_booking_health_metrics(db: Session, days: int = 7, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Success rates of each background task over the last N days"""
    now = now or _utcnow()
    start = _period_start(days, now)
    appointments = BookingRepository.get_appointments_since(db, start)
    total = len(appointments)

    period = {"start": start.isoformat(), "end": now.isoformat(), "days": days}
    if not total:
        return {"period": period, "totalBookings": 0, "metrics": {}}

    return {
        "period": period,
        "totalBookings": total,
        "metrics": {
            "sellerCalendarSuccess": _rate(sum(1 for a in appointments if a.google_event_id), total),
            "buyerCalendarSuccess": _rate(sum(1 for a in appointments if a.buyer_google_event_id), total),
            "meetLinkGeneration": _rate(sum(1 for a in appointments if a.meet_link), total),
            "emailNotifications": _rate(sum(1 for a in appointments if a.confirmation_email), total),
            "overallSuccess": _rate(sum(1 for a in appointments if _is_fully_processed(a)), total),
        },
    }


def find_incomplete_appointments(db: Session, days: int = 1, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
    """Appointments with no calendar event at all or no confirmation email"""
    now = now or _utcnow()
    appointments = BookingRepository.get_appointments_since(db, now - timedelta(days=days))

    incomplete = []
    for appointment in appointments:
        if _is_fully_processed(appointment):
            continue
        incomplete.append(
            {
                "appointmentId": appointment.id,
                "createdAt": appointment.created_at.isoformat() if appointment.created_at else None,
                "seller": appointment.seller.name if appointment.seller else None,
                "buyer": appointment.buyer.name if appointment.buyer else None,
                "missingTasks": {
                    "sellerCalendar": not appointment.google_event_id,
                    "buyerCalendar": not appointment.buyer_google_event_id,
                    "meetLink": not appointment.meet_link,
                    "email": not appointment.confirmation_email,
                },
            }
        )
    return incomplete


def generate_recommendations(metrics: Dict[str, Any], incomplete: List[Dict[str, Any]]) -> List[str]:
    if metrics["totalBookings"] == 0:
        return ["No bookings in the specified period"]

    rates = {name: value["rate"] for name, value in metrics["metrics"].items()}
    recommendations = []

    if rates["overallSuccess"] < 80:
        recommendations.append("⚠️ Overall success rate is below 80%. Consider investigating system issues.")
    if rates["emailNotifications"] < 90:
        recommendations.append("📧 Email delivery rate is low. Check email service configuration.")
    if rates["sellerCalendarSuccess"] < 70:
        recommendations.append(
            "📅 Seller calendar creation is failing frequently. Check Google Calendar API permissions."
        )
    if rates["buyerCalendarSuccess"] < 70:
        recommendations.append("📅 Buyer calendar creation is failing frequently. Check OAuth token refresh logic.")
    if len(incomplete) > 5:
        recommendations.append(
            f"🔄 {len(incomplete)} appointments need retry. Consider re-running their background tasks."
        )

    if not recommendations:
        recommendations.append("✅ System is running well! All metrics are within acceptable ranges.")
    return recommendations


def generate_health_report(db: Session, days: int = 7, now: Optional[datetime] = None) -> Dict[str, Any]:
    logger.info(f"📊 Generating booking system health report (last {days} days)...")
    now = now or _utcnow()
    metrics = get_booking_health_metrics(db, days, now)
    incomplete = find_incomplete_appointments(db, days, now)

    overall = metrics["metrics"].get("overallSuccess", {}).get("rate", 0.0)
    return {
        "generatedAt": now.isoformat(),
        "period": metrics["period"],
        "summary": {
            "totalBookings": metrics["totalBookings"],
            "overallSuccessRate": overall,
            "incompleteCount": len(incomplete),
        },
        "metrics": metrics["metrics"],
        "incompleteAppointments": incomplete[:FAILED_TASKS_IN_REPORT],
        "recommendations": generate_recommendations(metrics, incomplete),
    }
