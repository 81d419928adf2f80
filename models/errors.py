"""
Error taxonomy shared by the enqueue path, the promoter and the workers.

Every error surfaced to an inbound caller carries a stable ``code`` and the
HTTP status the API maps it to:

  InvalidRange            400  bad delay range, never retried
  MissingField            400  required identifier absent or malformed body
  InvalidIdentifier       400  location id holds the partition separator
  DownstreamFieldNotFound 502  directory has no timer field, enqueue rolled back
  InternalError           500  store / lock / broker failure
"""
from __future__ import annotations

from typing import Optional


class TimerDripError(Exception):
    """Base class for errors with a structured code."""

    code = "InternalError"
    http_status = 500

    def __init__(self, message: str = ""):
        super().__init__(message or self.code)
        self.message = message or self.code

    def to_dict(self) -> dict[str, str]:
        return {"code": self.code, "message": self.message}


class InvalidRange(TimerDripError):
    code = "InvalidRange"
    http_status = 400


class MissingField(TimerDripError):
    code = "MissingField"
    http_status = 400


class InvalidIdentifier(TimerDripError):
    code = "InvalidIdentifier"
    http_status = 400


class DownstreamFieldNotFound(TimerDripError):
    code = "DownstreamFieldNotFound"
    http_status = 502


class InternalError(TimerDripError):
    code = "InternalError"
    http_status = 500


class DownstreamUpdateError(Exception):
    """Raised when the downstream field update returns a non-2xx response."""

    def __init__(self, status_code: Optional[int], body: str = ""):
        super().__init__(f"Downstream update failed ({status_code}): {body}")
        self.status_code = status_code
        self.body = body
