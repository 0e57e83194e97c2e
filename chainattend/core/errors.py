import enum
import logging
from datetime import datetime, timezone
from typing import Any, Optional

from fastapi import Request, status
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class ErrorCategory(str, enum.Enum):
    NOT_FOUND = "NOT_FOUND"
    EXPIRED = "EXPIRED"      # expired or already used: re-scan a fresh token
    PROTOCOL = "PROTOCOL"    # client broke the hop protocol, never retried
    POLICY = "POLICY"        # anti-cheat refusal with a specific remedy
    CAPACITY = "CAPACITY"
    STATE = "STATE"
    AUTH = "AUTH"
    INTERNAL = "INTERNAL"


class ErrorCode(str, enum.Enum):
    # not-found
    NOT_FOUND = "NOT_FOUND"
    TOKEN_NOT_FOUND = "TOKEN_NOT_FOUND"
    # expired / used
    TOKEN_EXPIRED = "TOKEN_EXPIRED"
    TOKEN_USED = "TOKEN_USED"
    VERSION_CONFLICT = "VERSION_CONFLICT"
    # protocol violations
    INVALID_TOKEN = "INVALID_TOKEN"
    NO_PENDING_CHALLENGE = "NO_PENDING_CHALLENGE"
    CHALLENGE_EXPIRED = "CHALLENGE_EXPIRED"
    INVALID_CHALLENGE = "INVALID_CHALLENGE"
    NOT_HOLDER = "NOT_HOLDER"
    SELF_SCAN = "SELF_SCAN"
    INVALID_REQUEST = "INVALID_REQUEST"
    # policy
    RATE_LIMITED = "RATE_LIMITED"
    LOCATION_VIOLATION = "LOCATION_VIOLATION"
    # capacity
    NO_STUDENTS = "NO_STUDENTS"
    INSUFFICIENT_STUDENTS = "INSUFFICIENT_STUDENTS"
    # state
    SESSION_ENDED = "SESSION_ENDED"
    INVALID_STATE = "INVALID_STATE"
    # auth
    UNAUTHORIZED = "UNAUTHORIZED"
    FORBIDDEN = "FORBIDDEN"
    INTERNAL_ERROR = "INTERNAL_ERROR"


_CATEGORIES = {
    ErrorCode.NOT_FOUND: ErrorCategory.NOT_FOUND,
    ErrorCode.TOKEN_NOT_FOUND: ErrorCategory.NOT_FOUND,
    ErrorCode.TOKEN_EXPIRED: ErrorCategory.EXPIRED,
    ErrorCode.TOKEN_USED: ErrorCategory.EXPIRED,
    ErrorCode.VERSION_CONFLICT: ErrorCategory.EXPIRED,
    ErrorCode.INVALID_TOKEN: ErrorCategory.PROTOCOL,
    ErrorCode.NO_PENDING_CHALLENGE: ErrorCategory.PROTOCOL,
    ErrorCode.CHALLENGE_EXPIRED: ErrorCategory.PROTOCOL,
    ErrorCode.INVALID_CHALLENGE: ErrorCategory.PROTOCOL,
    ErrorCode.NOT_HOLDER: ErrorCategory.PROTOCOL,
    ErrorCode.SELF_SCAN: ErrorCategory.PROTOCOL,
    ErrorCode.INVALID_REQUEST: ErrorCategory.PROTOCOL,
    ErrorCode.RATE_LIMITED: ErrorCategory.POLICY,
    ErrorCode.LOCATION_VIOLATION: ErrorCategory.POLICY,
    ErrorCode.NO_STUDENTS: ErrorCategory.CAPACITY,
    ErrorCode.INSUFFICIENT_STUDENTS: ErrorCategory.CAPACITY,
    ErrorCode.SESSION_ENDED: ErrorCategory.STATE,
    ErrorCode.INVALID_STATE: ErrorCategory.STATE,
    ErrorCode.UNAUTHORIZED: ErrorCategory.AUTH,
    ErrorCode.FORBIDDEN: ErrorCategory.AUTH,
    ErrorCode.INTERNAL_ERROR: ErrorCategory.INTERNAL,
}

_CATEGORY_STATUS = {
    ErrorCategory.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorCategory.EXPIRED: status.HTTP_409_CONFLICT,
    ErrorCategory.PROTOCOL: status.HTTP_400_BAD_REQUEST,
    ErrorCategory.CAPACITY: 422,
    ErrorCategory.STATE: status.HTTP_409_CONFLICT,
    ErrorCategory.INTERNAL: status.HTTP_500_INTERNAL_SERVER_ERROR,
}

_CODE_STATUS = {
    ErrorCode.RATE_LIMITED: status.HTTP_429_TOO_MANY_REQUESTS,
    ErrorCode.LOCATION_VIOLATION: status.HTTP_403_FORBIDDEN,
    ErrorCode.UNAUTHORIZED: status.HTTP_401_UNAUTHORIZED,
    ErrorCode.FORBIDDEN: status.HTTP_403_FORBIDDEN,
}


class ChainAttendError(Exception):
    """A failure surfaced to the caller with a stable code."""

    def __init__(self, code: ErrorCode, message: Optional[str] = None, details: Any = None):
        self.code = code
        self.message = message or code.value.replace("_", " ").capitalize()
        self.details = details
        super().__init__(f"{code.value}: {self.message}")

    @property
    def category(self) -> ErrorCategory:
        return _CATEGORIES[self.code]

    @property
    def status_code(self) -> int:
        return _CODE_STATUS.get(self.code) or _CATEGORY_STATUS[self.category]


class VersionConflict(ChainAttendError):
    """A conditional write lost against a concurrent writer."""

    def __init__(self, message: str = "Row was modified concurrently; re-read and retry"):
        super().__init__(ErrorCode.VERSION_CONFLICT, message)


def error_body(code: str, message: str, category: str, details: Any = None) -> dict:
    body = {
        "code": code,
        "message": message,
        "category": category,
        "timestamp": int(datetime.now(timezone.utc).timestamp() * 1000),
    }
    if details is not None:
        body["details"] = details
    return {"error": body}


async def chainattend_error_handler(request: Request, exc: ChainAttendError):
    return JSONResponse(
        status_code=exc.status_code,
        content=error_body(exc.code.value, exc.message, exc.category.value, exc.details),
    )


async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=error_body(
            ErrorCode.INTERNAL_ERROR.value,
            "An internal error occurred",
            ErrorCategory.INTERNAL.value,
            details=str(exc),
        ),
    )
