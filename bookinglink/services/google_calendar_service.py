"""
Google Calendar Service
Handles token refresh, free/busy queries, and event creation and deletion
"""
import logging
from datetime import datetime, timedelta
from typing import Any, Optional
from urllib.parse import quote

import httpx
from cryptography.fernet import InvalidToken
from sqlalchemy.orm import Session

from .. import config
from ..domain.scheduling.time_calculator import ensure_utc, parse_datetime, to_naive_utc, utcnow
from ..models_google_calendar import GoogleCalendarConnection
from ..security_utils import decrypt_token, encrypt_token
from ..shared.parsing import pick_dict, pick_number, pick_string
from .integration_errors import CALENDAR, IntegrationError, IntegrationFailure

logger = logging.getLogger(__name__)

TOKEN_REFRESH_SKEW = timedelta(minutes=5)


def _isoformat_z(dt: datetime) -> str:
    return ensure_utc(dt).strftime("%Y-%m-%dT%H:%M:%SZ")


class GoogleCalendarService:
    """Service for interacting with the Google Calendar API"""

    BASE_URL = "https://www.googleapis.com/calendar/v3"
    TOKEN_URL = "https://oauth2.googleapis.com/token"  # noqa: S105 - OAuth endpoint URL

    def __init__(
        self,
        http_client: Optional[httpx.AsyncClient] = None,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        timeout: float = config.CALENDAR_TIMEOUT_SECONDS,
        token_timeout: float = config.TOKEN_TIMEOUT_SECONDS,
    ):
        self.http_client = http_client
        self.client_id = client_id or config.GOOGLE_CLIENT_ID
        self.client_secret = client_secret or config.GOOGLE_CLIENT_SECRET
        self.timeout = timeout
        self.token_timeout = token_timeout

    async def _send(self, method: str, url: str, timeout: float, **kwargs) -> httpx.Response:
        try:
            if self.http_client is not None:
                return await self.http_client.request(method, url, timeout=timeout, **kwargs)
            async with httpx.AsyncClient(timeout=timeout) as client:
                return await client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            raise IntegrationFailure.timeout(
                CALENDAR, f"Google Calendar request timed out after {timeout:.0f}s"
            ) from e
        except httpx.HTTPError as e:
            raise IntegrationFailure(
                IntegrationError(system=CALENDAR, message=f"Google Calendar request failed: {type(e).__name__}")
            ) from e

    @staticmethod
    def _json_body(response: httpx.Response, message: str) -> dict[str, Any]:
        try:
            return pick_dict(response.json())
        except ValueError as e:
            logger.error(f"❌ {message}: response was not JSON")
            raise IntegrationFailure.from_response(CALENDAR, message, response.status_code, response.text) from e

    # ========================================================================
    # TOKENS
    # ========================================================================

    async def get_valid_access_token(
        self,
        connection: GoogleCalendarConnection,
        db: Session,
        now: Optional[datetime] = None,
    ) -> str:
        """
        Get a valid access token, refreshing it when it expires within 5 minutes.
        The refreshed token, its expiry and any rotated refresh token are
        persisted back to the connection row.
        Raises IntegrationFailure when no usable token can be obtained.
        """
        now = to_naive_utc(now or utcnow())

        if connection.token_expires_at and connection.token_expires_at > now + TOKEN_REFRESH_SKEW:
            try:
                return decrypt_token(connection.access_token)
            except InvalidToken as e:
                raise IntegrationFailure(
                    IntegrationError(system=CALENDAR, message="Stored Google access token could not be decrypted")
                ) from e

        logger.info(f"🔄 Google Calendar token expired for user {connection.user_id}, refreshing...")

        if not connection.refresh_token:
            raise IntegrationFailure(
                IntegrationError(system=CALENDAR, message="Token expired and no refresh token available")
            )
        if not self.client_id or not self.client_secret:
            raise IntegrationFailure(IntegrationError(system=CALENDAR, message="Google OAuth not configured"))

        try:
            refresh_token = decrypt_token(connection.refresh_token)
        except InvalidToken as e:
            raise IntegrationFailure(
                IntegrationError(system=CALENDAR, message="Stored Google refresh token could not be decrypted")
            ) from e

        response = await self._send(
            "POST",
            self.TOKEN_URL,
            self.token_timeout,
            data={
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "refresh_token": refresh_token,
                "grant_type": "refresh_token",
            },
        )

        if response.status_code != 200:
            logger.error(f"❌ Token refresh failed: HTTP {response.status_code}")
            raise IntegrationFailure.from_response(
                CALENDAR, "Failed to refresh Google token", response.status_code, response.text
            )

        tokens = self._json_body(response, "Unreadable Google token refresh response")
        new_access_token = pick_string(tokens.get("access_token"))
        if not new_access_token:
            logger.error("❌ No access token in refresh response")
            raise IntegrationFailure(
                IntegrationError(system=CALENDAR, message="No access token in refresh response", status=200)
            )
        expires_in = pick_number(tokens.get("expires_in")) or 3600

        connection.access_token = encrypt_token(new_access_token)
        connection.token_expires_at = now + timedelta(seconds=expires_in)
        rotated = pick_string(tokens.get("refresh_token"))
        if rotated:
            connection.refresh_token = encrypt_token(rotated)
        db.commit()

        logger.info("✅ Google Calendar token refreshed successfully")
        return new_access_token

    # ========================================================================
    # FREE/BUSY
    # ========================================================================

    async def free_busy(
        self,
        access_token: str,
        calendar_ids: list[str],
        time_min: datetime,
        time_max: datetime,
    ) -> dict[str, list[tuple[datetime, datetime]]]:
        """Query busy ranges per calendar id; unparsable entries are skipped"""
        response = await self._send(
            "POST",
            f"{self.BASE_URL}/freeBusy",
            self.timeout,
            headers={"Authorization": f"Bearer {access_token}"},
            json={
                "timeMin": _isoformat_z(time_min),
                "timeMax": _isoformat_z(time_max),
                "items": [{"id": calendar_id} for calendar_id in calendar_ids],
            },
        )
        if response.status_code != 200:
            raise IntegrationFailure.from_response(
                CALENDAR, "Google free/busy query failed", response.status_code, response.text
            )

        body = self._json_body(response, "Unreadable Google free/busy response")
        calendars = pick_dict(body.get("calendars"))
        result: dict[str, list[tuple[datetime, datetime]]] = {}
        for calendar_id, info in calendars.items():
            info = pick_dict(info)
            if info.get("errors"):
                logger.warning(f"⚠️ Free/busy errors for calendar {calendar_id}: {info['errors']}")
            ranges = []
            for busy in info.get("busy") or []:
                busy = pick_dict(busy)
                start, end = pick_string(busy.get("start")), pick_string(busy.get("end"))
                if not start or not end:
                    continue
                try:
                    ranges.append((parse_datetime(start), parse_datetime(end)))
                except ValueError:
                    logger.warning(f"⚠️ Skipping unparsable busy range {start} - {end}")
            result[calendar_id] = ranges
        return result

    # ========================================================================
    # EVENTS
    # ========================================================================

    async def create_event(
        self,
        access_token: str,
        calendar_id: str,
        event_body: dict[str, Any],
        send_updates: bool = True,
    ) -> dict[str, Optional[str]]:
        """Create an event; returns {"id", "htmlLink"}"""
        response = await self._send(
            "POST",
            f"{self.BASE_URL}/calendars/{quote(calendar_id, safe='')}/events",
            self.timeout,
            headers={"Authorization": f"Bearer {access_token}"},
            params={"sendUpdates": "all" if send_updates else "none"},
            json=event_body,
        )

        if response.status_code not in (200, 201):
            logger.error(f"❌ Failed to create calendar event: HTTP {response.status_code}")
            raise IntegrationFailure.from_response(
                CALENDAR, "Google Calendar event creation failed", response.status_code, response.text
            )

        event = self._json_body(response, "Unreadable Google Calendar event response")
        event_id = pick_string(event.get("id"))
        if not event_id:
            raise IntegrationFailure.from_response(
                CALENDAR, "Google Calendar response had no event id", response.status_code, response.text
            )

        logger.info(f"✅ Google Calendar event created: {event_id}")
        return {"id": event_id, "htmlLink": pick_string(event.get("htmlLink"))}

    async def delete_event(self, access_token: str, calendar_id: str, event_id: str) -> None:
        """Delete an event; an already-gone event (404/410) counts as deleted"""
        response = await self._send(
            "DELETE",
            f"{self.BASE_URL}/calendars/{quote(calendar_id, safe='')}/events/{quote(event_id, safe='')}",
            self.timeout,
            headers={"Authorization": f"Bearer {access_token}"},
            params={"sendUpdates": "all"},
        )

        if response.status_code in (404, 410):
            logger.info(f"ℹ️ Google Calendar event {event_id} already gone")
            return
        if response.status_code not in (200, 204):
            raise IntegrationFailure.from_response(
                CALENDAR, "Google Calendar event deletion failed", response.status_code, response.text
            )
        logger.info(f"✅ Google Calendar event deleted: {event_id}")
