"""
CRM Service
Client for the practice-management CRM's JSON:API endpoints.

Responses are parsed defensively: ids may arrive as numbers or numeric
strings, fields may sit under ``attributes`` or at the top level, and
relationships may be singular or plural.
"""
import logging
from dataclasses import dataclass
from typing import Any, Optional

import httpx

from .. import config
from ..shared.parsing import excerpt, normalize_date_only, pick_dict, pick_number, pick_string
from .integration_errors import CRM, IntegrationError, IntegrationFailure

logger = logging.getLogger(__name__)

USERS_PER_PAGE = 100
USERS_MAX_PAGES = 10
CANCELLED_PREFIX = "Cancelled - "


@dataclass
class CrmResponse:
    """Outcome of one CRM call; transport failures carry status None"""

    method: str
    path: str
    status: Optional[int]
    body: Any = None
    text: str = ""
    timed_out: bool = False
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status is not None and 200 <= self.status < 300

    @property
    def note(self) -> Optional[str]:
        if self.timed_out:
            return "timeout"
        if self.error:
            return self.error
        if not self.ok:
            return excerpt(self.text)
        return None

    def to_failure(self, message: str) -> IntegrationFailure:
        if self.timed_out:
            return IntegrationFailure.timeout(CRM, f"{message} (timed out)")
        return IntegrationFailure(
            IntegrationError(
                system=CRM,
                message=message if not self.error else f"{message}: {self.error}",
                status=self.status,
                response_excerpt=excerpt(self.text),
            )
        )


@dataclass
class CrmUser:
    id: str
    email: Optional[str] = None
    name: Optional[str] = None
    timezone: Optional[str] = None


# ============================================================================
# RESPONSE PARSING
# ============================================================================


def _resource(body: Any) -> dict:
    """Unwrap a single resource from {data: ...}, {event: ...} or a bare object"""
    body = pick_dict(body)
    for key in ("data", "event"):
        if isinstance(body.get(key), dict):
            return body[key]
    return body


def _resource_list(body: Any, *keys: str) -> list[dict]:
    if isinstance(body, list):
        return [item for item in body if isinstance(item, dict)]
    body = pick_dict(body)
    for key in ("data", *keys):
        if isinstance(body.get(key), list):
            return [item for item in body[key] if isinstance(item, dict)]
    return []


def _fields(raw: dict) -> dict:
    attrs = raw.get("attributes")
    return {**raw, **attrs} if isinstance(attrs, dict) else raw


def extract_resource_id(body: Any) -> Optional[str]:
    return pick_string(_resource(body).get("id"))


def _relationship_id(relationships: dict, key: str) -> Optional[str]:
    data = pick_dict(relationships.get(key)).get("data")
    if isinstance(data, list):
        data = data[0] if data else None
    return pick_string(pick_dict(data).get("id"))


def normalize_event(body: Any) -> Optional[dict[str, Any]]:
    """Flatten a CRM event read-back into the fields the writer verifies"""
    raw = _resource(body)
    if not raw:
        return None

    attrs = pick_dict(raw.get("attributes")) or raw
    rel = pick_dict(raw.get("relationships"))

    eventable = pick_dict(pick_dict(rel.get("eventable")).get("data"))
    eventable_type = (pick_string(eventable.get("type")) or "").lower()
    eventable_id = pick_string(eventable.get("id"))

    contact_id = (
        pick_string(attrs.get("contact_id"))
        or _relationship_id(rel, "contact")
        or (eventable_id if "contact" in eventable_type else None)
    )
    matter_id = (
        pick_string(attrs.get("matter_id"))
        or _relationship_id(rel, "matter")
        or (eventable_id if "matter" in eventable_type else None)
    )

    return {
        "id": pick_string(raw.get("id")),
        "name": pick_string(attrs.get("name")),
        "user_id": pick_string(attrs.get("user_id"))
        or _relationship_id(rel, "user")
        or _relationship_id(rel, "users"),
        "contact_id": contact_id,
        "matter_id": matter_id,
        "event_type_id": _relationship_id(rel, "event_type") or pick_string(attrs.get("event_type_id")),
        "location_id": _relationship_id(rel, "location") or pick_string(attrs.get("location_id")),
        "start_date": normalize_date_only(attrs.get("start_date")),
        "start_time": pick_string(attrs.get("start_time")),
        "end_date": normalize_date_only(attrs.get("end_date")),
        "end_time": pick_string(attrs.get("end_time")),
        "starts_at": pick_string(attrs.get("starts_at")),
        "ends_at": pick_string(attrs.get("ends_at")),
        "all_day": attrs.get("all_day"),
    }


def parse_user(raw: dict) -> Optional[CrmUser]:
    fields = _fields(raw)
    user_id = pick_string(fields.get("id"))
    if not user_id:
        return None
    name = pick_string(fields.get("name"))
    if not name:
        parts = [pick_string(fields.get("first_name")), pick_string(fields.get("last_name"))]
        name = " ".join(p for p in parts if p) or None
    return CrmUser(
        id=user_id,
        email=pick_string(fields.get("email")),
        name=name,
        timezone=pick_string(fields.get("time_zone"))
        or pick_string(fields.get("timezone"))
        or pick_string(fields.get("timeZone")),
    )


def split_name(full_name: Optional[str]) -> tuple[str, str]:
    parts = (full_name or "").split()
    first = parts[0] if parts else "Test"
    last = " ".join(parts[1:]) or "Booking"
    return first, last


class CrmService:
    """Service for interacting with the CRM API"""

    def __init__(
        self,
        access_token: str,
        http_client: Optional[httpx.AsyncClient] = None,
        base_url: Optional[str] = None,
        timeout: float = config.CRM_TIMEOUT_SECONDS,
    ):
        self.access_token = access_token
        self.http_client = http_client
        self.base_url = (base_url or config.CRM_BASE_URL).rstrip("/")
        self.timeout = timeout

    async def request(
        self,
        method: str,
        path: str,
        json: Optional[dict] = None,
        params: Optional[dict] = None,
    ) -> CrmResponse:
        """Send one request; transport failures become a status-less CrmResponse"""
        url = f"{self.base_url}{path}"
        headers = {
            "Authorization": f"Bearer {self.access_token}",
            "Accept": "application/json",
        }
        try:
            if self.http_client is not None:
                response = await self.http_client.request(
                    method, url, json=json, params=params, headers=headers, timeout=self.timeout
                )
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.request(method, url, json=json, params=params, headers=headers)
        except httpx.TimeoutException:
            logger.warning(f"⚠️ CRM {method} {path} timed out after {self.timeout:.0f}s")
            return CrmResponse(method, path, None, timed_out=True)
        except httpx.HTTPError as e:
            logger.warning(f"⚠️ CRM {method} {path} failed: {type(e).__name__}")
            return CrmResponse(method, path, None, error=type(e).__name__)

        try:
            body = response.json() if response.content else None
        except ValueError:
            body = None
        if not 200 <= response.status_code < 300:
            logger.warning(f"⚠️ CRM {method} {path} returned HTTP {response.status_code}")
        return CrmResponse(method, path, response.status_code, body=body, text=response.text)

    # ========================================================================
    # USERS
    # ========================================================================

    async def list_users(self) -> list[CrmUser]:
        """All CRM users, following pagination up to 10 pages of 100"""
        users: list[CrmUser] = []
        for page in range(1, USERS_MAX_PAGES + 1):
            resp = await self.request("GET", "/v1/users", params={"page": page, "per_page": USERS_PER_PAGE})
            if not resp.ok:
                raise resp.to_failure("Failed to list CRM users")
            items = _resource_list(resp.body, "users")
            users.extend(u for u in (parse_user(item) for item in items) if u)
            if len(items) < USERS_PER_PAGE:
                break
        return users

    async def get_me(self) -> Optional[CrmUser]:
        resp = await self.request("GET", "/v1/users/me")
        if not resp.ok:
            raise resp.to_failure("Failed to load current CRM user")
        return parse_user(_resource(resp.body))

    async def resolve_owner(self, host_email: Optional[str]) -> Optional[CrmUser]:
        """CRM user matching the host's email, else the first user"""
        users = await self.list_users()
        if not users:
            logger.warning("⚠️ CRM returned no users, appointment will have no owner")
            return None
        if host_email:
            wanted = host_email.strip().lower()
            for user in users:
                if user.email and user.email.strip().lower() == wanted:
                    return user
            logger.info(f"ℹ️ No CRM user for {host_email}, falling back to first user")
        return users[0]

    # ========================================================================
    # CONTACTS & MATTERS
    # ========================================================================

    async def find_contact_by_email(self, email: str) -> Optional[str]:
        resp = await self.request("GET", "/v1/contacts", params={"search": email, "per_page": 10})
        if not resp.ok:
            raise resp.to_failure("Failed to search CRM contacts")
        wanted = email.strip().lower()
        for item in _resource_list(resp.body, "contacts"):
            fields = _fields(item)
            candidate = pick_string(fields.get("email")) or pick_string(fields.get("email_address"))
            if candidate and candidate.lower() == wanted:
                return pick_string(fields.get("id"))
        return None

    async def find_or_create_contact(
        self, email: str, full_name: Optional[str], phone: Optional[str] = None
    ) -> str:
        """Exact email match first; create only when none exists"""
        existing = await self.find_contact_by_email(email)
        if existing:
            logger.info(f"✅ Found existing CRM contact {existing}")
            return existing

        first_name, last_name = split_name(full_name)
        payload: dict[str, Any] = {"first_name": first_name, "last_name": last_name, "email": email}
        if phone:
            payload["phone"] = phone
        resp = await self.request("POST", "/v1/contacts", json=payload)
        contact_id = extract_resource_id(resp.body) if resp.ok else None
        if not contact_id:
            raise resp.to_failure("Failed to create CRM contact")
        logger.info(f"✅ Created CRM contact {contact_id}")
        return contact_id

    async def find_or_create_matter(self, contact_id: str, client_name: Optional[str]) -> str:
        resp = await self.request(
            "GET", "/v1/matters", params={"contact_id": contact_id, "per_page": 5}
        )
        if not resp.ok:
            raise resp.to_failure("Failed to search CRM matters")
        for item in _resource_list(resp.body, "matters"):
            matter_id = pick_string(item.get("id"))
            if matter_id:
                logger.info(f"✅ Found existing CRM matter {matter_id}")
                return matter_id

        numeric_contact_id = pick_number(contact_id)
        payload = {
            "name": f"Booking - {client_name or 'Client'}",
            "contact_id": numeric_contact_id if numeric_contact_id is not None else contact_id,
        }
        resp = await self.request("POST", "/v1/matters", json=payload)
        matter_id = extract_resource_id(resp.body) if resp.ok else None
        if not matter_id:
            raise resp.to_failure("Failed to create CRM matter")
        logger.info(f"✅ Created CRM matter {matter_id}")
        return matter_id

    # ========================================================================
    # EVENTS
    # ========================================================================

    async def create_event(self, payload: dict[str, Any]) -> CrmResponse:
        return await self.request("POST", "/v1/events", json=payload)

    async def get_event(self, event_id: str) -> CrmResponse:
        return await self.request("GET", f"/v1/events/{event_id}")

    async def update_event(self, event_id: str, payload: dict[str, Any], method: str = "PATCH") -> CrmResponse:
        return await self.request(method, f"/v1/events/{event_id}", json=payload)

    async def delete_event(self, event_id: str) -> CrmResponse:
        return await self.request("DELETE", f"/v1/events/{event_id}")

    async def cancel_event(self, event_id: str, name: Optional[str]) -> None:
        """Mark an appointment cancelled; falls back to renaming only"""
        base_name = name or "Appointment"
        cancelled_name = base_name if base_name.startswith(CANCELLED_PREFIX) else f"{CANCELLED_PREFIX}{base_name}"

        resp = await self.update_event(event_id, {"status": "cancelled", "name": cancelled_name})
        if resp.ok:
            logger.info(f"✅ CRM appointment {event_id} marked cancelled")
            return

        logger.warning(f"⚠️ CRM status cancel rejected for {event_id}, retrying with name only")
        fallback = await self.update_event(event_id, {"name": cancelled_name})
        if not fallback.ok:
            raise fallback.to_failure("Failed to cancel CRM appointment")
        logger.info(f"✅ CRM appointment {event_id} renamed as cancelled")
