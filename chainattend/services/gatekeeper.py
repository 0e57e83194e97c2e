"""
Anti-cheat gate in front of every scan: rate limiting, location checks and
the scan audit log.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Awaitable, Callable, Optional, Sequence, TypeVar

from fastapi import Request
from limits import RateLimitItemPerSecond
from limits.storage import storage_from_string
from limits.strategies import MovingWindowRateLimiter
from sqlalchemy.ext.asyncio import AsyncSession

from chainattend.config import settings
from chainattend.core.errors import ChainAttendError, ErrorCode
from chainattend.models.enums import ScanFlow
from chainattend.models.scan_log import ScanLog
from chainattend.models.types import utcnow
from chainattend.utils.geo import haversine_distance

logger = logging.getLogger(__name__)

T = TypeVar("T")

SUCCESS = "SUCCESS"


def get_client_ip(request: Request) -> Optional[str]:
    """
    Client IP from the proxy headers.
    X-Real-IP first, then the first X-Forwarded-For hop, then the socket peer.
    """
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()

    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()

    return request.client.host if request.client else None


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    reason: Optional[str] = None


class ScanRateLimiter:
    """Per-device and per-IP scan counts over a moving window.

    Counters live in a ``limits`` storage: ``memory://`` keeps them in this
    process, ``redis://`` shares them between instances.
    """

    def __init__(self, device_limit: int, ip_limit: int, window_seconds: int, storage_uri: str = "memory://"):
        self.storage = storage_from_string(storage_uri)
        self.strategy = MovingWindowRateLimiter(self.storage)
        self.device_limit = RateLimitItemPerSecond(device_limit, window_seconds)
        self.ip_limit = RateLimitItemPerSecond(ip_limit, window_seconds)

    def check(self, device_fingerprint: Optional[str], ip: Optional[str]) -> RateLimitResult:
        if device_fingerprint and not self.strategy.test(self.device_limit, "scan-device", device_fingerprint):
            return RateLimitResult(False, "DEVICE_LIMIT")
        if ip and not self.strategy.test(self.ip_limit, "scan-ip", ip):
            return RateLimitResult(False, "IP_LIMIT")

        # Count only admitted scans
        if device_fingerprint:
            self.strategy.hit(self.device_limit, "scan-device", device_fingerprint)
        if ip:
            self.strategy.hit(self.ip_limit, "scan-ip", ip)
        return RateLimitResult(True)

    def reset(self) -> None:
        self.storage.reset()


rate_limiter = ScanRateLimiter(
    settings.RATE_LIMIT_DEVICE,
    settings.RATE_LIMIT_IP,
    settings.RATE_LIMIT_WINDOW_SECONDS,
    settings.RATE_LIMIT_STORAGE_URI,
)


@dataclass(frozen=True)
class LocationResult:
    valid: bool
    reason: Optional[str] = None
    warning: Optional[str] = None
    distance_meters: Optional[float] = None


def validate_location(session, gps=None, bssid: Optional[str] = None, wifi_allowlist: Sequence[str] = ()) -> LocationResult:
    """Check a scan's position against the session geofence and the Wi-Fi allowlist.

    Outside the fence is a hard block only when the session enforces it,
    otherwise it comes back as a warning for the teacher to review.
    """
    warnings = []
    distance = None

    if session.has_geofence:
        if gps is None:
            if session.require_location:
                return LocationResult(False, "LOCATION_REQUIRED", "Location permission is required for this session")
            warnings.append("Location not provided")
        else:
            distance = haversine_distance(session.latitude, session.longitude, gps.latitude, gps.longitude)
            if distance > session.radius_meters:
                message = f"{round(distance)}m from classroom (limit {round(session.radius_meters)}m)"
                if session.enforce_geofence:
                    return LocationResult(False, "GEOFENCE_VIOLATION", message, distance)
                warnings.append(message)

    if wifi_allowlist:
        if not bssid or bssid.strip().lower() not in wifi_allowlist:
            if session.enforce_geofence:
                return LocationResult(False, "WIFI_VIOLATION", "Not connected to the classroom network", distance)
            warnings.append("Wi-Fi network not recognised")

    return LocationResult(True, warning="; ".join(warnings) or None, distance_meters=distance)


async def log_scan(
    db: AsyncSession,
    *,
    session_id: Optional[str],
    flow: ScanFlow,
    result: str,
    token_id: Optional[str] = None,
    holder_id: Optional[str] = None,
    scanner_id: Optional[str] = None,
    metadata=None,
    ip: Optional[str] = None,
    error: Optional[str] = None,
    warning: Optional[str] = None,
    now: Optional[datetime] = None,
) -> None:
    """Append one audit row. Never raises: a lost log line must not fail the scan."""
    gps = getattr(metadata, "gps", None)
    try:
        db.add(ScanLog(
            session_id=session_id,
            flow=flow,
            token_id=token_id,
            holder_id=holder_id,
            scanner_id=scanner_id,
            device_fingerprint=getattr(metadata, "device_fingerprint", None),
            ip=ip,
            bssid=getattr(metadata, "bssid", None),
            latitude=gps.latitude if gps else None,
            longitude=gps.longitude if gps else None,
            user_agent=getattr(metadata, "user_agent", None),
            result=result,
            error=error,
            warning=warning,
            scanned_at=now or utcnow(),
        ))
        await db.commit()
    except Exception:
        await db.rollback()
        logger.exception("Failed to write scan log for %s %s", flow.value, result)


async def admit_scan(
    db: AsyncSession,
    *,
    session,
    flow: ScanFlow,
    scanner_id: str,
    metadata,
    ip: Optional[str],
    token_id: Optional[str] = None,
    limiter: Optional[ScanRateLimiter] = None,
    now: Optional[datetime] = None,
) -> LocationResult:
    """Rate limit, then location. A refusal is logged and raised."""
    limiter = limiter or rate_limiter
    now = now or utcnow()
    session_id = session.id

    limit = limiter.check(getattr(metadata, "device_fingerprint", None), ip)
    if not limit.allowed:
        logger.warning("Scan by %s rate limited (%s)", scanner_id, limit.reason)
        await log_scan(
            db, session_id=session_id, flow=flow, result=ErrorCode.RATE_LIMITED.value,
            token_id=token_id, scanner_id=scanner_id, metadata=metadata, ip=ip, error=limit.reason, now=now,
        )
        raise ChainAttendError(
            ErrorCode.RATE_LIMITED,
            "Too many scans; wait a moment and try again",
            details={"reason": limit.reason},
        )

    location = validate_location(
        session,
        getattr(metadata, "gps", None),
        getattr(metadata, "bssid", None),
        settings.wifi_allowlist,
    )
    if not location.valid:
        logger.warning("Scan by %s refused: %s", scanner_id, location.reason)
        await log_scan(
            db, session_id=session_id, flow=flow, result=ErrorCode.LOCATION_VIOLATION.value,
            token_id=token_id, scanner_id=scanner_id, metadata=metadata, ip=ip,
            error=location.reason, warning=location.warning, now=now,
        )
        raise ChainAttendError(
            ErrorCode.LOCATION_VIOLATION,
            location.warning or "Location check failed",
            details={"reason": location.reason, "distanceMeters": location.distance_meters},
        )
    return location


async def run_audited(
    db: AsyncSession,
    operation: Callable[[], Awaitable[T]],
    *,
    session_id: str,
    flow: ScanFlow,
    scanner_id: str,
    metadata,
    ip: Optional[str],
    token_id: Optional[str] = None,
    warning: Optional[str] = None,
    holder_of: Callable[[T], Optional[str]] = lambda result: None,
) -> T:
    """Run a scan operation and log its outcome, success or failure."""
    fields = dict(session_id=session_id, flow=flow, token_id=token_id, scanner_id=scanner_id, metadata=metadata, ip=ip, warning=warning)
    try:
        result = await operation()
    except ChainAttendError as e:
        await log_scan(db, result=e.code.value, error=e.message, **fields)
        raise
    except Exception as e:
        await db.rollback()
        await log_scan(db, result=ErrorCode.INTERNAL_ERROR.value, error=str(e), **fields)
        raise
    await log_scan(db, result=SUCCESS, holder_id=holder_of(result), **fields)
    return result
