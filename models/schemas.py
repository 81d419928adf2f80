"""
Core data models for the timer drip scheduler.
These are the value types shared by the API, the enqueue path, the promoter
and the workers.
"""
from __future__ import annotations

import math
import re
from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, Field

from models.errors import InvalidIdentifier, InvalidRange, MissingField

DEFAULT_WORKFLOW = "noworkflow"
PARTITION_SEPARATOR = ":"
ALTERNATE_PAYLOAD_KEY = "humanizer_drip"

# One year; keeps run_at well inside what datetime can represent
MAX_DELAY_SECONDS = 365 * 24 * 3600

_TIMEFRAME_RE = re.compile(r"(\d+(?:\.\d+)?)\s*to\s*(\d+(?:\.\d+)?)", re.IGNORECASE)

_LOCK_ID_MASK = 0x7FFFFFFFFFFFFFFF


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ──────────────────────────────────────────────────────────────
#  Partition keys
# ──────────────────────────────────────────────────────────────

def partition_key(location_id: str, workflow_id: str = "") -> str:
    """
    Ordering domain for a location + workflow pair.

    Location ids may not contain the separator, so the first ":" always
    ends the location and distinct pairs never share a key. Workflow ids
    are free-form.
    """
    if PARTITION_SEPARATOR in location_id:
        raise InvalidIdentifier(f"location_id {location_id!r} must not contain {PARTITION_SEPARATOR!r}")
    return f"{location_id}{PARTITION_SEPARATOR}{workflow_id or DEFAULT_WORKFLOW}"


def lock_id(key: str) -> int:
    """
    Fixed-width integer for backends that lock on numbers (pg advisory locks).
    Polynomial base-31 hash masked to 63 bits so it fits a signed bigint.
    Only the lock uses this; rows and streams keep the raw key.
    """
    h = 0
    for ch in key:
        h = (h * 31 + ord(ch)) & _LOCK_ID_MASK
    return h


# ──────────────────────────────────────────────────────────────
#  Inbound request
# ──────────────────────────────────────────────────────────────

def parse_timeframe(timeframe: str) -> tuple[float, float]:
    """Parse "60 to 300" into (60.0, 300.0)."""
    match = _TIMEFRAME_RE.search(timeframe or "")
    if not match:
        raise InvalidRange('TimeFrame malformed, use "60 to 300"')
    return float(match.group(1)), float(match.group(2))


def _section(body: dict[str, Any], name: str) -> dict[str, Any]:
    """Nested object of a webhook body; absent is empty, any other shape is rejected."""
    value = body.get(name)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise MissingField(f"{name} must be an object, got {type(value).__name__}")
    return value


def normalize_payload(body: dict[str, Any]) -> dict[str, Any]:
    """
    Map the alternate ``{"extras": {...}, "meta": {"key": "humanizer_drip"}}``
    webhook shape onto the native one. Anything else passes through.
    """
    meta = body.get("meta")
    if isinstance(meta, dict) and meta.get("key") == ALTERNATE_PAYLOAD_KEY:
        extras = _section(body, "extras")
        return {
            "contact_id": extras.get("contactId"),
            "location": {"id": extras.get("locationId")},
            "workflow": {"id": extras.get("workflowId")},
            "customData": {"TimeFrame": extras.get("TimeFrame")},
        }
    return body


class TimerRequest(BaseModel):
    """A validated request to schedule one timer."""
    entity_id: str
    location_id: str
    workflow_id: str = DEFAULT_WORKFLOW
    min_delay: float
    max_delay: float

    @property
    def partition_key(self) -> str:
        return partition_key(self.location_id, self.workflow_id)

    @classmethod
    def from_payload(cls, body: dict[str, Any]) -> TimerRequest:
        """Build from a raw webhook body; raises MissingField / InvalidRange."""
        if body is None:
            body = {}
        if not isinstance(body, dict):
            raise MissingField("Request body must be a JSON object")
        body = normalize_payload(body)
        entity_id = body.get("contact_id")
        location_id = _section(body, "location").get("id")
        workflow_id = _section(body, "workflow").get("id") or DEFAULT_WORKFLOW
        timeframe = _section(body, "customData").get("TimeFrame")

        if not entity_id or not location_id or not timeframe:
            raise MissingField("Missing data (contact_id, location.id or customData.TimeFrame)")

        min_delay, max_delay = parse_timeframe(str(timeframe))
        return cls(
            entity_id=str(entity_id),
            location_id=str(location_id),
            workflow_id=str(workflow_id),
            min_delay=min_delay,
            max_delay=max_delay,
        )


def delay_bounds(min_delay: float, max_delay: float) -> tuple[int, int]:
    """Whole-second bounds of a delay range; raises InvalidRange."""
    if min_delay is None or max_delay is None:
        raise InvalidRange("Delay range requires both bounds")
    if not (math.isfinite(min_delay) and math.isfinite(max_delay)):
        raise InvalidRange(f"Delays must be finite numbers (got {min_delay} to {max_delay})")
    if min_delay < 0 or max_delay < 0:
        raise InvalidRange(f"Delays must be non-negative (got {min_delay} to {max_delay})")
    if min_delay > max_delay:
        raise InvalidRange(f"min_delay {min_delay} is greater than max_delay {max_delay}")
    if max_delay > MAX_DELAY_SECONDS:
        raise InvalidRange(f"max_delay {max_delay} exceeds the {MAX_DELAY_SECONDS}s limit")
    low, high = math.ceil(min_delay), math.floor(max_delay)
    if low > high:
        raise InvalidRange(f"Range {min_delay} to {max_delay} holds no whole second")
    return low, high


class EnqueueResult(BaseModel):
    work_item_id: int
    partition_key: str
    delay_seconds: int
    run_at: datetime


# ──────────────────────────────────────────────────────────────
#  Staging records
# ──────────────────────────────────────────────────────────────

class WorkItem(BaseModel):
    """A staged timer, waiting for its run_at. Immutable once inserted."""
    id: Optional[int] = None
    entity_id: str
    location_id: str
    workflow_id: str = DEFAULT_WORKFLOW
    partition_key: str
    field_id: str
    delay_seconds: int
    run_at: datetime
    created_at: datetime = Field(default_factory=utcnow)


class FieldIdCacheEntry(BaseModel):
    partition_key: str
    location_id: str
    field_id: str
    cached_at: datetime = Field(default_factory=utcnow)
