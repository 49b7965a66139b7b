"""
Integration error values shared by the calendar and CRM clients.

Failures talking to an external system never abort a booking. They are
carried as IntegrationError values and surfaced in the response warnings.
"""

from dataclasses import asdict, dataclass
from typing import Any, Optional

from ..shared.parsing import excerpt

CALENDAR = "calendar"
CRM = "crm"

KIND_ERROR = "error"
KIND_TIMEOUT = "timeout"


@dataclass
class IntegrationError:
    system: str  # calendar, crm
    message: str
    status: Optional[int] = None
    response_excerpt: Optional[str] = None
    kind: str = KIND_ERROR  # error, timeout

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        return {
            "system": data["system"],
            "status": data["status"],
            "message": data["message"],
            "responseExcerpt": data["response_excerpt"],
            "kind": data["kind"],
        }


class IntegrationFailure(Exception):
    """Raised by API clients; wraps the IntegrationError to surface"""

    def __init__(self, error: IntegrationError):
        super().__init__(error.message)
        self.error = error

    @classmethod
    def from_response(cls, system: str, message: str, status: int, body: Optional[str]):
        return cls(
            IntegrationError(
                system=system,
                message=message,
                status=status,
                response_excerpt=excerpt(body),
            )
        )

    @classmethod
    def timeout(cls, system: str, message: str):
        return cls(IntegrationError(system=system, message=message, kind=KIND_TIMEOUT))
