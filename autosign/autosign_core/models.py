"""
Value types shared by the engine and the two rollcall solvers.
"""

import json
import math
from dataclasses import dataclass
from enum import Enum

from .constants import ANSWERED_STATUSES


class RollCallKind(Enum):
    RADAR = "radar"
    NUMBER = "number"
    OTHER = "other"


@dataclass(frozen=True)
class RollCall:
    """Snapshot of one rollcall as seen in a single poll."""
    id: str
    kind: RollCallKind
    status_tag: str = ""
    title: str = ""
    course_title: str = ""
    created_by: str = ""
    department: str = ""

    @property
    def answered(self) -> bool:
        return self.status_tag in ANSWERED_STATUSES

    @classmethod
    def from_json(cls, item: dict) -> "RollCall":
        if item.get("is_radar"):
            kind = RollCallKind.RADAR
        elif item.get("is_number"):
            kind = RollCallKind.NUMBER
        else:
            kind = RollCallKind.OTHER

        # Either field may carry the answered marker depending on API version.
        status = item.get("status") or ""
        status_name = item.get("status_name") or ""
        status_tag = status if status in ANSWERED_STATUSES else (status_name or status)

        return cls(
            id=str(item["rollcall_id"]),
            kind=kind,
            status_tag=status_tag,
            title=item.get("title") or "",
            course_title=item.get("course_title") or "",
            created_by=item.get("created_by_name") or "",
            department=item.get("department_name") or "",
        )

    def describe(self) -> str:
        return f"#{self.id}: {self.title} @ {self.course_title} by {self.created_by} ({self.department})"


def parse_rollcalls(text):
    """
    Parse the body of GET /api/radar/rollcalls.
    Raises ValueError when the body is not the expected JSON document.
    """
    data = json.loads(text)
    if not isinstance(data, dict):
        raise ValueError(f"expected an object, got {type(data).__name__}")
    items = data.get("rollcalls") or []
    if not isinstance(items, list):
        raise ValueError("'rollcalls' is not a list")
    try:
        return [RollCall.from_json(item) for item in items]
    except (KeyError, TypeError, AttributeError) as e:
        raise ValueError(f"malformed rollcall entry: {e!r}") from e


@dataclass(frozen=True)
class LocationSample:
    point_id: str
    longitude: float
    latitude: float
    reported_distance_m: float

    @property
    def valid(self) -> bool:
        d = self.reported_distance_m
        return d is not None and math.isfinite(d) and d > 0


def extract_distance(body):
    """First finite, positive distance in a radar answer body, else None."""
    if not isinstance(body, dict):
        return None
    candidates = [body.get("distance")]
    for key in ("data", "result"):
        nested = body.get(key)
        if isinstance(nested, dict):
            candidates.append(nested.get("distance"))
    for candidate in candidates:
        if candidate is None or isinstance(candidate, bool):
            continue
        try:
            value = float(candidate)
        except (TypeError, ValueError):
            continue
        if math.isfinite(value) and value > 0:
            return value
    return None


# ─── Transport outcomes ─────────────────────────────────────────

class OutcomeKind(Enum):
    OK = "ok"                          # Request succeeded / answer accepted
    REJECTED = "rejected"              # Server answered, but said no
    AUTH_EXPIRED = "auth_expired"      # 401/403 or bounced to the login page
    TRANSPORT_ERROR = "transport_error"


@dataclass(frozen=True)
class Outcome:
    kind: OutcomeKind
    body: object = None
    detail: str = ""
    status_code: int = None

    @property
    def ok(self) -> bool:
        return self.kind is OutcomeKind.OK

    @property
    def auth_expired(self) -> bool:
        return self.kind is OutcomeKind.AUTH_EXPIRED
