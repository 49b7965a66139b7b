"""
External appointment writer.

The CRM's create endpoint often answers 2xx while dropping fields (owner,
contact, start/end). Every write is therefore re-read and, while required
fields are missing, repaired with a fixed sequence of increasingly forceful
actions:

    DRAFT --create--> CREATED --verify--> PERSISTED
                         |  ^
                  repair |  | verify
                         v  |
            PATCH, PUT, PATCH (HH:mm), recreate {event}, recreate {data}
                         |
                         +--> REPAIRED | INCOMPLETE | FAILED

Only writes are recorded as attempts. A record that stays incomplete keeps its
id so it can be followed up by hand.
"""

import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from ...services.crm_service import CrmResponse, CrmService, extract_resource_id, normalize_event
from ...shared.parsing import pick_number
from .progress import LEVEL_INFO, LEVEL_SUCCESS, LEVEL_WARN, ProgressLogSink
from .time_calculator import to_local_iso_with_offset, to_local_parts

logger = logging.getLogger(__name__)

FORMAT_HMS = "HH:mm:ss"
FORMAT_HM = "HH:mm"

REQUIRED_TIME_FIELDS = ("start_date", "start_time", "end_date", "end_time")


class WriterState(str, Enum):
    DRAFT = "draft"
    CREATED = "created"
    PERSISTED = "persisted"
    REPAIRED = "repaired"
    INCOMPLETE = "incomplete"
    FAILED = "failed"


TERMINAL_STATES = {WriterState.PERSISTED, WriterState.REPAIRED, WriterState.INCOMPLETE, WriterState.FAILED}

# Allowed transitions; CREATED -> CREATED is one repair-and-reverify round
TRANSITIONS: dict[WriterState, set[WriterState]] = {
    WriterState.DRAFT: {WriterState.CREATED, WriterState.FAILED},
    WriterState.CREATED: {
        WriterState.CREATED,
        WriterState.PERSISTED,
        WriterState.REPAIRED,
        WriterState.INCOMPLETE,
        WriterState.FAILED,
    },
}


@dataclass(frozen=True)
class RepairAction:
    step: str
    method: str  # PATCH, PUT, RECREATE
    time_format: str
    envelope: Optional[str] = None

    @property
    def is_recreate(self) -> bool:
        return self.method == "RECREATE"


REPAIR_PLAN: tuple[RepairAction, ...] = (
    RepairAction("patch", "PATCH", FORMAT_HMS),
    RepairAction("put", "PUT", FORMAT_HMS),
    RepairAction("patch_hhmm", "PATCH", FORMAT_HM),
    RepairAction("recreate_event", "RECREATE", FORMAT_HMS, envelope="event"),
    RepairAction("recreate_data", "RECREATE", FORMAT_HMS, envelope="data"),
)


@dataclass
class AppointmentRequest:
    name: str
    description: str
    start: datetime
    end: datetime
    timezone: str
    user_id: Optional[str] = None
    contact_id: Optional[str] = None
    matter_id: Optional[str] = None
    event_type_id: Optional[str] = None
    location_id: Optional[str] = None
    requires_location: bool = False


@dataclass
class AppointmentAttempt:
    step: str
    http_status: Optional[int]
    ok: bool
    note: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {"step": self.step, "httpStatus": self.http_status, "ok": self.ok, "note": self.note}


@dataclass
class AppointmentWriteResult:
    state: WriterState
    created_id: Optional[str]
    persisted: bool
    used_time_format: str
    timezone_used: str
    computed: dict[str, str]
    readback: Optional[dict[str, Any]]
    missing_fields: list[str]
    attempts: list[AppointmentAttempt] = field(default_factory=list)
    error: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "createdId": self.created_id,
            "persisted": self.persisted,
            "usedTimeFormat": self.used_time_format,
            "timezoneUsed": self.timezone_used,
            "computed": self.computed,
            "readback": self.readback,
            "missingFields": self.missing_fields,
            "attempts": [a.to_dict() for a in self.attempts],
            "error": self.error,
        }


def build_payload(request: AppointmentRequest, time_format: str = FORMAT_HMS) -> dict[str, Any]:
    """Canonical flat payload; ids always sent as integers"""
    start = to_local_parts(request.start, request.timezone)
    end = to_local_parts(request.end, request.timezone)
    use_seconds = time_format == FORMAT_HMS

    payload: dict[str, Any] = {
        "name": request.name,
        "description": request.description,
        "start_date": start.date,
        "start_time": start.time_hms if use_seconds else start.time_hm,
        "end_date": end.date,
        "end_time": end.time_hms if use_seconds else end.time_hm,
        "starts_at": to_local_iso_with_offset(request.start, request.timezone),
        "ends_at": to_local_iso_with_offset(request.end, request.timezone),
        "all_day": False,
    }
    for key in ("user_id", "contact_id", "matter_id", "event_type_id", "location_id"):
        number = pick_number(getattr(request, key))
        if number is not None:
            payload[key] = number

    contact_id = pick_number(request.contact_id)
    if contact_id is not None:
        payload["eventable_type"] = "Contact"
        payload["eventable_id"] = contact_id
    return payload


def compute_missing_fields(readback: Optional[dict[str, Any]], request: AppointmentRequest) -> list[str]:
    """Required fields absent from (or contradicting) the CRM read-back"""
    if readback is None:
        return ["readback_unavailable"]

    missing: list[str] = []

    expected_user = pick_number(request.user_id)
    got_user = pick_number(readback.get("user_id"))
    if got_user is None or (expected_user is not None and got_user != expected_user):
        missing.append("user_id")

    for name in REQUIRED_TIME_FIELDS:
        if not readback.get(name):
            missing.append(name)

    for name in ("event_type_id", "contact_id"):
        expected = pick_number(getattr(request, name))
        if expected is not None and pick_number(readback.get(name)) != expected:
            missing.append(name)

    expected_location = pick_number(request.location_id)
    got_location = pick_number(readback.get("location_id"))
    if expected_location is not None:
        if got_location != expected_location:
            missing.append("location_id")
    elif request.requires_location and got_location is None:
        missing.append("location_id")

    return missing


class ExternalAppointmentWriter:
    """Create-verify-repair state machine for one CRM appointment"""

    def __init__(self, crm: CrmService, sink: Optional[ProgressLogSink] = None):
        self.crm = crm
        self.sink = sink

    def _log(self, step: str, level: str, message: str, details: Optional[dict] = None) -> None:
        if self.sink is not None:
            self.sink.log(step, level, message, details)

    async def write(
        self, request: AppointmentRequest, existing_id: Optional[str] = None
    ) -> AppointmentWriteResult:
        """Run the machine to a terminal state; resumes at verify when existing_id is given"""
        run = _WriterRun(self, request, existing_id)
        return await run.execute()


class _WriterRun:
    def __init__(self, writer: ExternalAppointmentWriter, request: AppointmentRequest, existing_id: Optional[str]):
        self.writer = writer
        self.crm = writer.crm
        self.request = request
        self.state = WriterState.CREATED if existing_id else WriterState.DRAFT
        self.created_id: Optional[str] = existing_id
        self.readback: Optional[dict[str, Any]] = None
        self.missing: list[str] = []
        self.attempts: list[AppointmentAttempt] = []
        self.used_time_format = FORMAT_HMS
        self.plan = list(REPAIR_PLAN)
        self.repairs_applied = 0
        self.recreate_abandoned = False

    # ------------------------------------------------------------------
    # machinery
    # ------------------------------------------------------------------

    def _transition(self, new_state: WriterState) -> None:
        if new_state not in TRANSITIONS.get(self.state, set()):
            raise RuntimeError(f"Illegal writer transition {self.state.value} -> {new_state.value}")
        self.state = new_state

    def _record(self, step: str, response: CrmResponse) -> AppointmentAttempt:
        attempt = AppointmentAttempt(step, response.status, response.ok, response.note)
        self.attempts.append(attempt)
        return attempt

    async def _call(self, progress_step: str, description: str, coro) -> CrmResponse:
        """Emit a progress entry before and after one network call"""
        self.writer._log(progress_step, LEVEL_INFO, f"{description}...", {"recordId": self.created_id})
        response: CrmResponse = await coro
        level = LEVEL_SUCCESS if response.ok else LEVEL_WARN
        outcome = "ok" if response.ok else ("timed out" if response.timed_out else "failed")
        self.writer._log(
            f"{progress_step}_result",
            level,
            f"{description} {outcome}",
            {"status": response.status, "note": response.note, "recordId": self.created_id},
        )
        return response

    async def execute(self) -> AppointmentWriteResult:
        handlers = {
            WriterState.DRAFT: self._create,
            WriterState.CREATED: self._verify_and_repair,
        }
        while self.state not in TERMINAL_STATES:
            self._transition(await handlers[self.state]())
        return self._result()

    # ------------------------------------------------------------------
    # states
    # ------------------------------------------------------------------

    async def _create(self) -> WriterState:
        payload = build_payload(self.request, FORMAT_HMS)
        response = await self._call("crm_create", "Creating CRM appointment", self.crm.create_event(payload))
        self._record("create", response)

        created_id = extract_resource_id(response.body) if response.ok else None
        if not created_id:
            logger.error(f"❌ CRM appointment create failed (HTTP {response.status})")
            return WriterState.FAILED

        self.created_id = created_id
        logger.info(f"✅ CRM appointment created: {created_id}")
        return WriterState.CREATED

    async def _verify_and_repair(self) -> WriterState:
        if self.created_id is not None:
            await self._verify()
            if not self.missing:
                return WriterState.REPAIRED if self.repairs_applied else WriterState.PERSISTED

        action = self._next_action()
        if action is None:
            return WriterState.INCOMPLETE if self.created_id else WriterState.FAILED

        await self._apply(action)
        return WriterState.CREATED

    async def _verify(self) -> None:
        response = await self._call(
            "crm_verify", f"Reading back CRM appointment {self.created_id}", self.crm.get_event(self.created_id)
        )
        self.readback = normalize_event(response.body) if response.ok else None
        self.missing = compute_missing_fields(self.readback, self.request)
        if self.missing:
            self.writer._log(
                "crm_verify_missing",
                LEVEL_WARN,
                f"CRM appointment {self.created_id} is missing {', '.join(self.missing)}",
                {"missingFields": self.missing},
            )

    def _next_action(self) -> Optional[RepairAction]:
        while self.plan:
            action = self.plan.pop(0)
            if action.is_recreate and self.recreate_abandoned:
                continue
            if not action.is_recreate and self.created_id is None:
                continue
            return action
        return None

    async def _apply(self, action: RepairAction) -> None:
        self.repairs_applied += 1
        payload = build_payload(self.request, action.time_format)

        if not action.is_recreate:
            response = await self._call(
                f"crm_repair_{action.step}",
                f"Repairing CRM appointment with {action.method} ({action.time_format})",
                self.crm.update_event(self.created_id, payload, method=action.method),
            )
            if self._record(action.step, response).ok:
                self.used_time_format = action.time_format
            return

        if self.created_id is not None:
            response = await self._call(
                "crm_recreate_delete",
                f"Deleting incomplete CRM appointment {self.created_id}",
                self.crm.delete_event(self.created_id),
            )
            if not self._record("delete", response).ok:
                # never create a duplicate next to a record we could not remove
                self.recreate_abandoned = True
                logger.warning(f"⚠️ Could not delete CRM appointment {self.created_id}, abandoning recreate")
                return
            self.created_id = None
            self.readback = None

        response = await self._call(
            f"crm_{action.step}",
            f"Recreating CRM appointment with {{{action.envelope}: ...}} envelope",
            self.crm.create_event({action.envelope: payload}),
        )
        self._record(action.step, response)
        created_id = extract_resource_id(response.body) if response.ok else None
        if created_id:
            self.created_id = created_id
            self.used_time_format = action.time_format
            logger.info(f"🔄 CRM appointment recreated as {created_id}")

    # ------------------------------------------------------------------
    # result
    # ------------------------------------------------------------------

    def _result(self) -> AppointmentWriteResult:
        persisted = self.state in (WriterState.PERSISTED, WriterState.REPAIRED)
        error = None
        if self.state == WriterState.FAILED:
            error = "CRM appointment could not be created"
        elif self.state == WriterState.INCOMPLETE:
            error = f"CRM appointment created but did not persist required fields: {', '.join(self.missing)}"

        start = to_local_parts(self.request.start, self.request.timezone)
        end = to_local_parts(self.request.end, self.request.timezone)
        computed = {
            **{f"start_{k}": v for k, v in asdict(start).items()},
            **{f"end_{k}": v for k, v in asdict(end).items()},
            "starts_at": to_local_iso_with_offset(self.request.start, self.request.timezone),
            "ends_at": to_local_iso_with_offset(self.request.end, self.request.timezone),
        }

        return AppointmentWriteResult(
            state=self.state,
            created_id=self.created_id,
            persisted=persisted,
            used_time_format=self.used_time_format,
            timezone_used=self.request.timezone,
            computed=computed,
            readback=self.readback,
            missing_fields=[] if persisted else (self.missing or (["create_failed"] if not self.created_id else [])),
            attempts=self.attempts,
            error=error,
        )
