import logging
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional, Tuple

from sqlalchemy import select, update, delete
from sqlalchemy.ext.asyncio import AsyncSession

from chainattend.config import settings
from chainattend.core.errors import ChainAttendError, ErrorCode, VersionConflict
from chainattend.core.versioned import swap_row
from chainattend.models.attendance import AttendanceRecord
from chainattend.models.chain import Chain, ChainHistory
from chainattend.models.enums import (
    SessionStatus, ChainState, TokenType, TokenStatus, EntryStatus, EntryMethod,
)
from chainattend.models.session import ClassSession
from chainattend.models.snapshot import AttendanceSnapshot
from chainattend.models.token import Token
from chainattend.models.types import as_utc, utcnow
from chainattend.services import attendance, token_store
from chainattend.services.notifier import Notifier, attendance_payload, session_topic
from chainattend.utils.ids import new_session_id

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WindowScanResult:
    student_id: str
    token_type: TokenType
    changed: bool


async def get_session(db: AsyncSession, session_id: str) -> Optional[ClassSession]:
    result = await db.execute(
        select(ClassSession)
        .where(ClassSession.id == session_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def load_session(db: AsyncSession, session_id: str) -> ClassSession:
    session = await get_session(db, session_id)
    if session is None:
        raise ChainAttendError(ErrorCode.NOT_FOUND, f"Session {session_id} not found")
    return session


def require_active(session: ClassSession) -> None:
    if session.status is SessionStatus.ENDED:
        raise ChainAttendError(ErrorCode.SESSION_ENDED, "Session has ended")


def require_owner(session: ClassSession, teacher_id: str) -> None:
    if session.teacher_id != teacher_id:
        raise ChainAttendError(ErrorCode.FORBIDDEN, "Not your session")


async def create_session(
    db: AsyncSession,
    *,
    teacher_id: str,
    start_at: datetime,
    end_at: datetime,
    class_id: Optional[str] = None,
    late_cutoff_minutes: Optional[int] = None,
    exit_window_minutes: Optional[int] = None,
    latitude: Optional[float] = None,
    longitude: Optional[float] = None,
    radius_meters: Optional[float] = None,
    enforce_geofence: bool = False,
    require_location: bool = False,
    now: Optional[datetime] = None,
) -> ClassSession:
    start_at = as_utc(start_at)
    end_at = as_utc(end_at)
    if end_at <= start_at:
        raise ChainAttendError(ErrorCode.INVALID_REQUEST, "end_at must be after start_at")
    if (latitude is None) != (longitude is None):
        raise ChainAttendError(ErrorCode.INVALID_REQUEST, "latitude and longitude go together")

    session = ClassSession(
        id=new_session_id(),
        teacher_id=teacher_id,
        class_id=class_id,
        start_at=start_at,
        end_at=end_at,
        late_cutoff_minutes=settings.DEFAULT_LATE_CUTOFF_MINUTES if late_cutoff_minutes is None else late_cutoff_minutes,
        exit_window_minutes=settings.DEFAULT_EXIT_WINDOW_MINUTES if exit_window_minutes is None else exit_window_minutes,
        status=SessionStatus.ACTIVE,
        late_entry_active=False,
        early_leave_active=False,
        latitude=latitude,
        longitude=longitude,
        radius_meters=radius_meters,
        enforce_geofence=enforce_geofence,
        require_location=require_location,
        version=1,
        created_at=now or utcnow(),
    )
    db.add(session)
    await db.commit()
    logger.info("Session %s created by %s", session.id, teacher_id)
    return session


async def join_session(db: AsyncSession, session_id: str, student_id: str, now: Optional[datetime] = None) -> AttendanceRecord:
    """Enrol a student (idempotent); joining marks them online."""
    now = now or utcnow()
    session = await load_session(db, session_id)
    require_active(session)

    record = await attendance.get_record(db, session_id, student_id)
    if record is None:
        record = AttendanceRecord(
            session_id=session_id,
            student_id=student_id,
            exit_verified=False,
            joined_at=now,
        )
        db.add(record)
    record.is_online = True
    record.last_seen_at = now
    await db.commit()
    return record


async def set_online(db: AsyncSession, session_id: str, student_id: str, is_online: bool = True, now: Optional[datetime] = None) -> AttendanceRecord:
    now = now or utcnow()
    session = await load_session(db, session_id)
    require_active(session)
    record = await attendance.get_record(db, session_id, student_id)
    if record is None:
        raise ChainAttendError(ErrorCode.NOT_FOUND, "Student is not enrolled in this session")
    record.is_online = is_online
    record.last_seen_at = now
    await db.commit()
    return record


def _window(token_type: TokenType) -> Tuple[str, str, int]:
    """(flag column, pointer column, token ttl) for a standalone window."""
    if token_type is TokenType.LATE_ENTRY:
        return "late_entry_active", "current_late_token_id", settings.LATE_ROTATION_SECONDS
    if token_type is TokenType.EARLY_LEAVE:
        return "early_leave_active", "current_early_token_id", settings.EARLY_LEAVE_ROTATION_SECONDS
    raise ChainAttendError(ErrorCode.INVALID_REQUEST, f"{token_type.value} is not a window type")


async def _expire_token(db: AsyncSession, session_id: str, token_id: str) -> None:
    await db.execute(
        update(Token)
        .where(Token.session_id == session_id)
        .where(Token.token_id == token_id)
        .where(Token.status == TokenStatus.ACTIVE)
        .values(status=TokenStatus.EXPIRED, version=Token.version + 1)
        .execution_options(synchronize_session=False)
    )


async def start_window(db: AsyncSession, session_id: str, token_type: TokenType, now: Optional[datetime] = None) -> Token:
    """Open (or restart) a late-entry / early-leave window with a fresh QR token."""
    now = now or utcnow()
    flag, pointer, ttl = _window(token_type)
    session = await load_session(db, session_id)
    require_active(session)

    previous = getattr(session, pointer)
    try:
        if previous:
            await _expire_token(db, session_id, previous)
        token = await token_store.create_token(
            db, session_id=session_id, token_type=token_type, ttl_seconds=ttl, single_use=False, now=now,
        )
        await swap_row(db, session, {flag: True, pointer: token.token_id})
        await db.commit()
    except VersionConflict:
        await db.rollback()
        raise
    logger.info("%s window opened for session %s", token_type.value, session_id)
    return token


async def stop_window(db: AsyncSession, session_id: str, token_type: TokenType) -> None:
    flag, pointer, _ = _window(token_type)
    session = await load_session(db, session_id)
    require_active(session)

    previous = getattr(session, pointer)
    try:
        if previous:
            await _expire_token(db, session_id, previous)
        await swap_row(db, session, {flag: False, pointer: None})
        await db.commit()
    except VersionConflict:
        await db.rollback()
        raise
    logger.info("%s window closed for session %s", token_type.value, session_id)


async def current_window_token(db: AsyncSession, session_id: str, token_type: TokenType) -> Token:
    flag, pointer, _ = _window(token_type)
    session = await load_session(db, session_id)
    if not getattr(session, flag) or not getattr(session, pointer):
        raise ChainAttendError(ErrorCode.INVALID_STATE, f"{token_type.value} window is not open")
    token = await token_store.get_token(db, session_id, getattr(session, pointer))
    if token is None:
        raise ChainAttendError(ErrorCode.TOKEN_NOT_FOUND, "Window token not found")
    return token


async def scan_window_token(
    db: AsyncSession,
    *,
    session_id: str,
    token_id: str,
    token_type: TokenType,
    student_id: str,
    notifier: Notifier,
    now: Optional[datetime] = None,
) -> WindowScanResult:
    now = now or utcnow()
    flag, pointer, _ = _window(token_type)
    session = await load_session(db, session_id)
    require_active(session)
    if not getattr(session, flag):
        raise ChainAttendError(ErrorCode.INVALID_STATE, f"{token_type.value} window is not open")

    token = await token_store.get_token(db, session_id, token_id)
    if token is None:
        raise ChainAttendError(ErrorCode.TOKEN_NOT_FOUND, "Token not found")
    if token.type is not token_type:
        raise ChainAttendError(ErrorCode.INVALID_TOKEN, f"Not a {token_type.value} token")
    if token.status is TokenStatus.USED:
        raise ChainAttendError(ErrorCode.TOKEN_USED, "Token already used")
    if token.status is not TokenStatus.ACTIVE or token.is_expired(now) or token.token_id != getattr(session, pointer):
        raise ChainAttendError(ErrorCode.TOKEN_EXPIRED, "QR code expired; scan the one currently shown")

    if await attendance.get_record(db, session_id, student_id) is None:
        raise ChainAttendError(ErrorCode.NOT_FOUND, "Student is not enrolled in this session")

    try:
        if token.single_use:
            await swap_row(db, token, {"status": TokenStatus.USED}, where=[Token.status == TokenStatus.ACTIVE])
        if token_type is TokenType.LATE_ENTRY:
            changed = await attendance.mark_entry(db, session_id, student_id, EntryStatus.LATE_ENTRY, EntryMethod.LATE_QR, now)
            fields = {"entryStatus": EntryStatus.LATE_ENTRY.value}
        else:
            changed = await attendance.mark_early_leave(db, session_id, student_id, now)
            fields = {"earlyLeaveAt": now.isoformat()}
        await db.commit()
    except VersionConflict:
        await db.rollback()
        raise ChainAttendError(ErrorCode.TOKEN_USED, "Token already used")

    if changed:
        logger.info("%s recorded for %s in session %s", token_type.value, student_id, session_id)
        await notifier.publish(session_topic(session_id), attendance_payload(student_id, **fields))
    return WindowScanResult(student_id=student_id, token_type=token_type, changed=changed)


async def end_session(db: AsyncSession, session_id: str, notifier: Notifier, now: Optional[datetime] = None) -> List[AttendanceRecord]:
    """End the session: close windows, expire tokens, complete chains, stamp final status.

    Ending an already-ended session just returns its records.
    """
    now = now or utcnow()
    session = await load_session(db, session_id)
    if session.status is SessionStatus.ENDED:
        return await attendance.list_records(db, session_id)

    try:
        await swap_row(db, session, {
            "status": SessionStatus.ENDED,
            "ended_at": now,
            "late_entry_active": False,
            "current_late_token_id": None,
            "early_leave_active": False,
            "current_early_token_id": None,
        }, where=[ClassSession.status == SessionStatus.ACTIVE])
        await db.execute(
            update(Token)
            .where(Token.session_id == session_id)
            .where(Token.status == TokenStatus.ACTIVE)
            .values(status=TokenStatus.EXPIRED, version=Token.version + 1)
            .execution_options(synchronize_session=False)
        )
        await db.execute(
            update(Chain)
            .where(Chain.session_id == session_id)
            .where(Chain.state != ChainState.COMPLETED)
            .values(state=ChainState.COMPLETED, completed_at=now, version=Chain.version + 1)
            .execution_options(synchronize_session=False)
        )
        records = await attendance.finalize(db, session_id)
        await db.commit()
    except VersionConflict:
        await db.rollback()
        raise

    logger.info("Session %s ended with %d attendance records", session_id, len(records))
    await notifier.publish(session_topic(session_id), {"type": "session", "status": SessionStatus.ENDED.value})
    return records


async def delete_session(db: AsyncSession, session_id: str) -> None:
    """Remove a session with its attendance, chains, snapshots, tokens and history. Scan logs stay."""
    await load_session(db, session_id)
    for model in (Token, ChainHistory, Chain, AttendanceSnapshot, AttendanceRecord):
        await db.execute(
            delete(model).where(model.session_id == session_id).execution_options(synchronize_session=False)
        )
    await db.execute(delete(ClassSession).where(ClassSession.id == session_id).execution_options(synchronize_session=False))
    await db.commit()
    logger.info("Session %s deleted", session_id)


# Teacher marks

async def _load_for_mark(db: AsyncSession, session_id: str, student_id: str) -> ClassSession:
    session = await load_session(db, session_id)
    require_active(session)
    if await attendance.get_record(db, session_id, student_id) is None:
        raise ChainAttendError(ErrorCode.NOT_FOUND, "Student is not enrolled in this session")
    return session


async def mark_entry_manually(db: AsyncSession, session_id: str, student_id: str, notifier: Notifier, now: Optional[datetime] = None) -> AttendanceRecord:
    """Teacher marks a student's entry, PRESENT or LATE by the cutoff. An entry already recorded is kept."""
    now = now or utcnow()
    session = await _load_for_mark(db, session_id, student_id)
    status = attendance.entry_status_at(attendance.late_cutoff(session), now)
    changed = await attendance.mark_entry(db, session_id, student_id, status, EntryMethod.MANUAL, now)
    await db.commit()
    if changed:
        logger.info("Entry for %s in session %s marked %s by the teacher", student_id, session_id, status.value)
        await notifier.publish(session_topic(session_id), attendance_payload(
            student_id, entryStatus=status.value, entryMethod=EntryMethod.MANUAL.value,
        ))
    return await attendance.get_record(db, session_id, student_id)


async def mark_exit_manually(db: AsyncSession, session_id: str, student_id: str, notifier: Notifier, now: Optional[datetime] = None) -> AttendanceRecord:
    now = now or utcnow()
    await _load_for_mark(db, session_id, student_id)
    changed = await attendance.mark_exit_verified(db, session_id, student_id, now)
    await db.commit()
    if changed:
        logger.info("Exit for %s in session %s verified by the teacher", student_id, session_id)
        await notifier.publish(session_topic(session_id), attendance_payload(student_id, exitVerified=True))
    return await attendance.get_record(db, session_id, student_id)
