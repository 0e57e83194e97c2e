import logging
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy import select, update, exists
from sqlalchemy.ext.asyncio import AsyncSession

from chainattend.models.attendance import AttendanceRecord
from chainattend.models.chain import Chain
from chainattend.models.enums import ChainPhase, EntryStatus, EntryMethod, FinalStatus
from chainattend.services.notifier import Notifier, attendance_payload, session_topic

logger = logging.getLogger(__name__)


def late_cutoff(session) -> datetime:
    return session.start_at + timedelta(minutes=session.late_cutoff_minutes)


def entry_status_at(cutoff: datetime, now: datetime) -> EntryStatus:
    return EntryStatus.PRESENT_ENTRY if now <= cutoff else EntryStatus.LATE_ENTRY


def exit_window_opens(session) -> datetime:
    return session.end_at - timedelta(minutes=session.exit_window_minutes)


async def get_record(db: AsyncSession, session_id: str, student_id: str) -> Optional[AttendanceRecord]:
    result = await db.execute(
        select(AttendanceRecord)
        .where(AttendanceRecord.session_id == session_id)
        .where(AttendanceRecord.student_id == student_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def list_records(db: AsyncSession, session_id: str) -> List[AttendanceRecord]:
    result = await db.execute(
        select(AttendanceRecord)
        .where(AttendanceRecord.session_id == session_id)
        .order_by(AttendanceRecord.student_id)
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


# Milestone writes: conditional on the milestone still being unset, so a
# replayed or concurrent write is a no-op. Each returns True if it changed
# the row. None of them commit.

async def _set_once(db: AsyncSession, session_id: str, student_id: str, unset_clause, values: dict) -> bool:
    result = await db.execute(
        update(AttendanceRecord)
        .where(AttendanceRecord.session_id == session_id)
        .where(AttendanceRecord.student_id == student_id)
        .where(unset_clause)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def mark_entry(db: AsyncSession, session_id: str, student_id: str, status: EntryStatus, method: EntryMethod, now: datetime) -> bool:
    return await _set_once(
        db, session_id, student_id,
        AttendanceRecord.entry_status.is_(None),
        {"entry_status": status, "entry_at": now, "entry_method": method},
    )


async def mark_exit_verified(db: AsyncSession, session_id: str, student_id: str, now: datetime) -> bool:
    return await _set_once(
        db, session_id, student_id,
        AttendanceRecord.exit_verified.is_(False),
        {"exit_verified": True, "exit_verified_at": now},
    )


async def mark_early_leave(db: AsyncSession, session_id: str, student_id: str, now: datetime) -> bool:
    return await _set_once(
        db, session_id, student_id,
        AttendanceRecord.early_leave_at.is_(None),
        {"early_leave_at": now},
    )


async def record_milestone(
    db: AsyncSession,
    *,
    session_id: str,
    phase: ChainPhase,
    student_id: str,
    cutoff: datetime,
    now: datetime,
    notifier: Notifier,
) -> bool:
    """Credit ``student_id`` for the chain phase they just handed on.

    Best-effort: commits on its own and logs instead of raising, so a hop
    that already committed is never reported as failed.
    """
    if phase is ChainPhase.SNAPSHOT:
        return False

    try:
        if phase is ChainPhase.ENTRY:
            status = entry_status_at(cutoff, now)
            changed = await mark_entry(db, session_id, student_id, status, EntryMethod.CHAIN, now)
            fields = {"entryStatus": status.value}
        else:
            changed = await mark_exit_verified(db, session_id, student_id, now)
            fields = {"exitVerified": True}
        await db.commit()
    except Exception:
        await db.rollback()
        logger.exception("Could not record %s milestone for %s in session %s", phase.value, student_id, session_id)
        return False

    if changed:
        logger.info("%s milestone recorded for %s in session %s", phase.value, student_id, session_id)
        await notifier.publish(session_topic(session_id), attendance_payload(student_id, **fields))
    return changed


def is_eligible(record: AttendanceRecord, phase: ChainPhase) -> bool:
    if not record.is_online:
        return False
    if phase is ChainPhase.ENTRY:
        return record.entry_status is None
    if phase is ChainPhase.EXIT:
        return record.entry_status is not None and record.early_leave_at is None and not record.exit_verified
    return record.early_leave_at is None


async def eligible_students(db: AsyncSession, session_id: str, phase: ChainPhase) -> List[str]:
    return [r.student_id for r in await list_records(db, session_id) if is_eligible(r, phase)]


def compute_final_status(record: AttendanceRecord, exit_required: bool) -> FinalStatus:
    if record.early_leave_at is not None:
        return FinalStatus.EARLY_LEAVE
    if record.entry_status is None:
        return FinalStatus.ABSENT
    if exit_required and not record.exit_verified:
        return FinalStatus.EARLY_LEAVE
    return FinalStatus.LATE if record.entry_status is EntryStatus.LATE_ENTRY else FinalStatus.PRESENT


async def session_ran_exit_chain(db: AsyncSession, session_id: str) -> bool:
    result = await db.execute(
        select(exists().where(Chain.session_id == session_id).where(Chain.phase == ChainPhase.EXIT))
    )
    return bool(result.scalar())


async def finalize(db: AsyncSession, session_id: str) -> List[AttendanceRecord]:
    """Stamp every record with its final status. Does not commit."""
    exit_required = await session_ran_exit_chain(db, session_id)
    records = await list_records(db, session_id)
    for record in records:
        record.final_status = compute_final_status(record, exit_required)
    await db.flush()
    return records
