"""
Confirmation email composition.

GeminiEmailComposer asks Gemini for a short personal message and renders it
into the confirmation template. fallback_confirmation_email renders the same
template with the static greeting; the email task uses it whenever AI
composition fails.
"""

import logging
from datetime import datetime
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import httpx

from ..background.context import AppointmentSnapshot, ComposedEmail
from ..background.errors import CompositionError
from ..email_service import compile_mjml_to_html
from ..email_templates import appointment_confirmation_template

logger = logging.getLogger(__name__)

GEMINI_API_URL = "https://generativelanguage.googleapis.com/v1beta/models"


def format_appointment_time(start: datetime, timezone_name: str) -> str:
    """e.g. 'Monday, March 3, 2025 at 2:30 PM (Europe/Paris)'"""
    try:
        local = start.astimezone(ZoneInfo(timezone_name))
    except (ZoneInfoNotFoundError, ValueError):
        local = start
        timezone_name = "UTC"

    hour = local.hour % 12 or 12
    formatted = (
        f"{local.strftime('%A, %B')} {local.day}, {local.year} at "
        f"{hour}:{local.minute:02d} {'AM' if local.hour < 12 else 'PM'}"
    )
    if timezone_name and timezone_name != "UTC":
        formatted += f" ({timezone_name})"
    return formatted


def confirmation_subject(appointment: AppointmentSnapshot) -> str:
    return f"Your Appointment Confirmation with {appointment.seller.name}"


def _service_label(appointment: AppointmentSnapshot) -> str:
    return appointment.seller.service_type or appointment.title or "consultation"


def render_confirmation_email(
    appointment: AppointmentSnapshot, meet_link: Optional[str], personal_message: Optional[str] = None
) -> ComposedEmail:
    mjml_content = appointment_confirmation_template(
        buyer_name=appointment.buyer.name,
        seller_name=appointment.seller.name,
        formatted_datetime=format_appointment_time(appointment.start, appointment.timezone),
        service=_service_label(appointment),
        meet_link=meet_link,
        personal_message=personal_message,
    )
    return ComposedEmail(subject=confirmation_subject(appointment), body=compile_mjml_to_html(mjml_content))


def fallback_confirmation_email(appointment: AppointmentSnapshot, meet_link: Optional[str]) -> ComposedEmail:
    """Static confirmation email; needs no external service"""
    return render_confirmation_email(appointment, meet_link)


class GeminiEmailComposer:
    def __init__(
        self,
        api_key: Optional[str],
        model: str = "gemini-1.5-flash",
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key
        self.model = model
        self.timeout = timeout
        self.transport = transport

    def _build_prompt(self, appointment: AppointmentSnapshot, meet_link: Optional[str]) -> str:
        lines = [
            "Write a short, warm appointment confirmation message from a service provider to their client.",
            "Plain text only, two or three short paragraphs, no subject line, no placeholders.",
            "Start with a greeting to the client by name and end with a friendly closing line",
            "but do not sign the message.",
            "",
            f"Provider: {appointment.seller.name}",
            f"Client: {appointment.buyer.name}",
            f"Service: {_service_label(appointment)}",
            f"When: {format_appointment_time(appointment.start, appointment.timezone)}",
        ]
        if meet_link:
            lines.append("The meeting is online; the link is shown separately, do not repeat it.")
        return "\n".join(lines)

    async def compose(self, appointment: AppointmentSnapshot, meet_link: Optional[str]) -> ComposedEmail:
        """Raises CompositionError when Gemini is unavailable or returns nothing usable"""
        if not self.api_key:
            raise CompositionError("GEMINI_API_KEY is not configured")

        payload = {
            "contents": [{"parts": [{"text": self._build_prompt(appointment, meet_link)}]}],
            "generationConfig": {"temperature": 0.7, "maxOutputTokens": 400},
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.post(
                    f"{GEMINI_API_URL}/{self.model}:generateContent",
                    params={"key": self.api_key},
                    json=payload,
                )
        except httpx.HTTPError as e:
            raise CompositionError(f"Gemini request failed: {e}") from e

        if response.status_code != 200:
            raise CompositionError(
                f"Gemini returned HTTP {response.status_code}", status_code=response.status_code
            )

        try:
            data = response.json()
            message = data["candidates"][0]["content"]["parts"][0]["text"].strip()
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise CompositionError(f"Unexpected Gemini response: {type(e).__name__}") from e

        if not message:
            raise CompositionError("Gemini returned an empty message")

        logger.info(f"✅ AI confirmation email composed for appointment {appointment.id}")
        return render_confirmation_email(appointment, meet_link, personal_message=message)
