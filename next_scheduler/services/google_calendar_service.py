"""
Google Calendar Service
Creates booking events (with Google Meet conferences) on seller and buyer calendars
"""

import logging
import uuid
from typing import Any, Dict, Optional

import httpx

from ..background.context import AppointmentSnapshot, CalendarAccount, CalendarEvent, ParticipantSnapshot
from ..background.errors import CalendarAuthError, CalendarRateLimitError, CalendarTransientError

logger = logging.getLogger(__name__)

GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_CALENDAR_API = "https://www.googleapis.com/calendar/v3"


def extract_meet_link(event: Dict[str, Any]) -> Optional[str]:
    """Meet link from an event resource: hangoutLink, else the video entry point"""
    if event.get("hangoutLink"):
        return event["hangoutLink"]

    entry_points = (event.get("conferenceData") or {}).get("entryPoints") or []
    for entry in entry_points:
        if entry.get("entryPointType") == "video" and entry.get("uri"):
            return entry["uri"]
    if entry_points and entry_points[0].get("uri"):
        return entry_points[0]["uri"]
    return None


def _raise_for_status(response: httpx.Response, action: str) -> None:
    status = response.status_code
    if status < 400:
        return

    body = response.text[:300]
    message = f"{action} failed with HTTP {status}: {body}"
    if status in (401, 403):
        raise CalendarAuthError(message, status_code=status)
    if status == 429:
        raise CalendarRateLimitError(message, status_code=status)
    if status >= 500:
        raise CalendarTransientError(message, status_code=status)
    # 400 invalid_grant means the refresh token was revoked
    if status == 400 and "invalid_grant" in body:
        raise CalendarAuthError(message, status_code=status)
    raise CalendarTransientError(message, status_code=status)


class GoogleCalendarService:
    def __init__(
        self,
        client_id: Optional[str],
        client_secret: Optional[str],
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.client_id = client_id
        self.client_secret = client_secret
        self.timeout = timeout
        self.transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self.transport)

    async def refresh_access_token(self, client: httpx.AsyncClient, refresh_token: str) -> str:
        """Exchange a refresh token for a fresh access token"""
        if not self.client_id or not self.client_secret:
            raise CalendarAuthError("Google OAuth client is not configured")

        logger.info("🔄 Refreshing Google access token...")
        try:
            response = await client.post(
                GOOGLE_TOKEN_URL,
                data={
                    "client_id": self.client_id,
                    "client_secret": self.client_secret,
                    "refresh_token": refresh_token,
                    "grant_type": "refresh_token",
                },
            )
        except httpx.TransportError as e:
            raise CalendarTransientError(f"Token refresh request failed: {e}") from e

        _raise_for_status(response, "Token refresh")
        access_token = response.json().get("access_token")
        if not access_token:
            raise CalendarAuthError("No access token in refresh response")
        return access_token

    async def _request(
        self,
        client: httpx.AsyncClient,
        account: CalendarAccount,
        method: str,
        url: str,
        action: str,
        **kwargs,
    ) -> Dict[str, Any]:
        if not account.access_token and not account.refresh_token:
            raise CalendarAuthError(f"No Google credentials for user {account.owner_id}")

        access_token = account.access_token or await self.refresh_access_token(client, account.refresh_token)
        response = await self._send(client, method, url, access_token, **kwargs)

        # Stored access tokens expire; retry once with a refreshed one
        if response.status_code == 401 and account.access_token and account.refresh_token:
            logger.info(f"🔄 Access token rejected for user {account.owner_id}, retrying with refresh token")
            access_token = await self.refresh_access_token(client, account.refresh_token)
            response = await self._send(client, method, url, access_token, **kwargs)

        _raise_for_status(response, action)
        return response.json()

    async def _send(self, client: httpx.AsyncClient, method: str, url: str, access_token: str, **kwargs):
        try:
            return await client.request(
                method, url, headers={"Authorization": f"Bearer {access_token}"}, **kwargs
            )
        except httpx.TransportError as e:
            raise CalendarTransientError(f"Google Calendar request failed: {e}") from e

    async def create_event(
        self,
        account: CalendarAccount,
        appointment: AppointmentSnapshot,
        attendee: ParticipantSnapshot,
        request_conference: bool = False,
    ) -> CalendarEvent:
        """Create the booking event on the account's calendar, inviting the other party"""
        event_data: Dict[str, Any] = {
            "summary": appointment.title,
            "description": f"Meeting with {attendee.name}\n\nBooking ID: {appointment.id}",
            "start": {"dateTime": appointment.start.isoformat(), "timeZone": appointment.timezone},
            "end": {"dateTime": appointment.end.isoformat(), "timeZone": appointment.timezone},
        }
        if attendee.email:
            event_data["attendees"] = [{"email": attendee.email}]
        if request_conference:
            event_data["conferenceData"] = self._conference_request(appointment)

        async with self._client() as client:
            event = await self._request(
                client,
                account,
                "POST",
                f"{GOOGLE_CALENDAR_API}/calendars/{account.calendar_id}/events",
                action="Event creation",
                params={"conferenceDataVersion": 1, "sendUpdates": "all"},
                json=event_data,
            )

        event_id = event.get("id")
        if not event_id:
            raise CalendarTransientError("Event creation response has no event id")

        logger.info(f"✅ Google Calendar event created: {event_id}")
        return CalendarEvent(event_id=event_id, meet_link=extract_meet_link(event))

    async def add_conference(
        self, account: CalendarAccount, event_id: str, appointment: AppointmentSnapshot
    ) -> Optional[str]:
        """Attach a Meet conference to an existing event and return its link"""
        async with self._client() as client:
            event = await self._request(
                client,
                account,
                "PATCH",
                f"{GOOGLE_CALENDAR_API}/calendars/{account.calendar_id}/events/{event_id}",
                action="Conference creation",
                params={"conferenceDataVersion": 1},
                json={"conferenceData": self._conference_request(appointment)},
            )

        meet_link = extract_meet_link(event)
        if meet_link:
            logger.info(f"✅ Meet link added to event {event_id}")
        return meet_link

    @staticmethod
    def _conference_request(appointment: AppointmentSnapshot) -> Dict[str, Any]:
        return {
            "createRequest": {
                "requestId": f"meet-{appointment.id}-{uuid.uuid4().hex[:8]}",
                "conferenceSolutionKey": {"type": "hangoutsMeet"},
            }
        }
