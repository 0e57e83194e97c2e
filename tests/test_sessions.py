from datetime import timedelta

import pytest
from sqlalchemy import select

from chainattend.core.errors import ChainAttendError, ErrorCode
from chainattend.models.attendance import AttendanceRecord
from chainattend.models.chain import Chain, ChainHistory
from chainattend.models.enums import (
    ChainPhase, ChainState, EntryMethod, EntryStatus, FinalStatus, ScanFlow, SessionStatus, TokenStatus, TokenType,
)
from chainattend.models.scan_log import ScanLog
from chainattend.models.token import Token
from chainattend.services import attendance, chain_engine, sessions, token_store
from chainattend.services.gatekeeper import log_scan
from tests.conftest import bearer


async def test_create_session_validates_times(db, now):
    with pytest.raises(ChainAttendError) as exc:
        await sessions.create_session(db, teacher_id="t", start_at=now, end_at=now, now=now)
    assert exc.value.code is ErrorCode.INVALID_REQUEST


async def test_create_session_defaults(db, class_session):
    assert class_session.status is SessionStatus.ACTIVE
    assert class_session.late_cutoff_minutes == 15
    assert class_session.exit_window_minutes == 10
    assert class_session.version == 1


async def test_join_is_idempotent(db, class_session, now):
    first = await sessions.join_session(db, class_session.id, "alice", now=now)
    await sessions.set_online(db, class_session.id, "alice", False, now=now)
    again = await sessions.join_session(db, class_session.id, "alice", now=now + timedelta(minutes=1))

    assert again.is_online is True
    assert again.joined_at == first.joined_at
    assert len(await attendance.list_records(db, class_session.id)) == 1


async def test_set_online_requires_enrolment(db, class_session, now):
    with pytest.raises(ChainAttendError) as exc:
        await sessions.set_online(db, class_session.id, "ghost", True, now=now)
    assert exc.value.code is ErrorCode.NOT_FOUND


async def test_milestones_are_written_once(db, class_session, enrol, now):
    await enrol("alice")
    assert await attendance.mark_entry(db, class_session.id, "alice", EntryStatus.PRESENT_ENTRY, EntryMethod.CHAIN, now)
    assert not await attendance.mark_entry(
        db, class_session.id, "alice", EntryStatus.LATE_ENTRY, EntryMethod.LATE_QR, now + timedelta(minutes=30),
    )
    await db.commit()

    record = await attendance.get_record(db, class_session.id, "alice")
    assert record.entry_status is EntryStatus.PRESENT_ENTRY
    assert record.entry_method is EntryMethod.CHAIN


async def test_late_entry_window(db, class_session, enrol, notifier, now):
    await enrol("alice")
    token = await sessions.start_window(db, class_session.id, TokenType.LATE_ENTRY, now=now)
    token_id = token.token_id

    result = await sessions.scan_window_token(
        db, session_id=class_session.id, token_id=token_id, token_type=TokenType.LATE_ENTRY,
        student_id="alice", notifier=notifier, now=now + timedelta(seconds=5),
    )
    assert result.changed is True
    record = await attendance.get_record(db, class_session.id, "alice")
    assert record.entry_status is EntryStatus.LATE_ENTRY
    assert record.entry_method is EntryMethod.LATE_QR

    # a re-scan succeeds without changing anything
    again = await sessions.scan_window_token(
        db, session_id=class_session.id, token_id=token_id, token_type=TokenType.LATE_ENTRY,
        student_id="alice", notifier=notifier, now=now + timedelta(seconds=6),
    )
    assert again.changed is False
    assert len(notifier.of_type("attendance")) == 1


async def test_window_scan_errors(db, class_session, enrol, notifier, now):
    await enrol("alice")
    with pytest.raises(ChainAttendError) as exc:
        await sessions.scan_window_token(
            db, session_id=class_session.id, token_id="nope", token_type=TokenType.EARLY_LEAVE,
            student_id="alice", notifier=notifier, now=now,
        )
    assert exc.value.code is ErrorCode.INVALID_STATE

    first = await sessions.start_window(db, class_session.id, TokenType.EARLY_LEAVE, now=now)
    first_id = first.token_id
    await sessions.start_window(db, class_session.id, TokenType.EARLY_LEAVE, now=now + timedelta(seconds=1))

    # a restarted window retires the old QR
    with pytest.raises(ChainAttendError) as exc:
        await sessions.scan_window_token(
            db, session_id=class_session.id, token_id=first_id, token_type=TokenType.EARLY_LEAVE,
            student_id="alice", notifier=notifier, now=now + timedelta(seconds=2),
        )
    assert exc.value.code is ErrorCode.TOKEN_EXPIRED

    current = await sessions.current_window_token(db, class_session.id, TokenType.EARLY_LEAVE)
    with pytest.raises(ChainAttendError) as exc:
        await sessions.scan_window_token(
            db, session_id=class_session.id, token_id=current.token_id, token_type=TokenType.EARLY_LEAVE,
            student_id="ghost", notifier=notifier, now=now + timedelta(seconds=2),
        )
    assert exc.value.code is ErrorCode.NOT_FOUND

    with pytest.raises(ChainAttendError) as exc:
        await sessions.scan_window_token(
            db, session_id=class_session.id, token_id=current.token_id, token_type=TokenType.EARLY_LEAVE,
            student_id="alice", notifier=notifier, now=now + timedelta(seconds=70),
        )
    assert exc.value.code is ErrorCode.TOKEN_EXPIRED


async def test_stop_window(db, class_session, now):
    token = await sessions.start_window(db, class_session.id, TokenType.LATE_ENTRY, now=now)
    token_id = token.token_id
    await sessions.stop_window(db, class_session.id, TokenType.LATE_ENTRY)

    session = await sessions.load_session(db, class_session.id)
    assert session.late_entry_active is False
    assert session.current_late_token_id is None
    assert (await token_store.get_token(db, class_session.id, token_id)).status is TokenStatus.EXPIRED

    with pytest.raises(ChainAttendError) as exc:
        await sessions.current_window_token(db, class_session.id, TokenType.LATE_ENTRY)
    assert exc.value.code is ErrorCode.INVALID_STATE


async def test_chain_type_is_not_a_window(db, class_session, now):
    with pytest.raises(ChainAttendError) as exc:
        await sessions.start_window(db, class_session.id, TokenType.CHAIN, now=now)
    assert exc.value.code is ErrorCode.INVALID_REQUEST


def test_final_status_rules():
    def record(**fields):
        base = dict(entry_status=None, exit_verified=False, early_leave_at=None)
        base.update(fields)
        return AttendanceRecord(**base)

    assert attendance.compute_final_status(record(), False) is FinalStatus.ABSENT
    assert attendance.compute_final_status(record(entry_status=EntryStatus.PRESENT_ENTRY), False) is FinalStatus.PRESENT
    assert attendance.compute_final_status(record(entry_status=EntryStatus.LATE_ENTRY), False) is FinalStatus.LATE
    assert attendance.compute_final_status(record(entry_status=EntryStatus.PRESENT_ENTRY), True) is FinalStatus.EARLY_LEAVE
    assert attendance.compute_final_status(
        record(entry_status=EntryStatus.LATE_ENTRY, exit_verified=True), True
    ) is FinalStatus.LATE
    assert attendance.compute_final_status(
        record(entry_status=EntryStatus.PRESENT_ENTRY, early_leave_at=object()), False
    ) is FinalStatus.EARLY_LEAVE


async def test_end_session(db, class_session, enrol, notifier, now, first_eligible, hop):
    await enrol("alice", "bob", "carol")
    chain = (await chain_engine.seed_chains(db, class_session.id, ChainPhase.ENTRY, 1, notifier, now=now))[0]
    chain_id = chain.chain_id
    await hop(class_session.id, chain_id, "bob", now + timedelta(seconds=2))
    await sessions.start_window(db, class_session.id, TokenType.LATE_ENTRY, now=now)

    records = await sessions.end_session(db, class_session.id, notifier, now=now + timedelta(hours=1))
    statuses = {r.student_id: r.final_status for r in records}
    assert statuses == {"alice": FinalStatus.PRESENT, "bob": FinalStatus.ABSENT, "carol": FinalStatus.ABSENT}

    session = await sessions.load_session(db, class_session.id)
    assert session.status is SessionStatus.ENDED
    assert session.late_entry_active is False
    assert (await chain_engine.get_chain(db, class_session.id, chain_id)).state is ChainState.COMPLETED
    assert await token_store.list_tokens(db, Token.session_id == class_session.id, Token.status == TokenStatus.ACTIVE) == []

    with pytest.raises(ChainAttendError) as exc:
        await sessions.join_session(db, class_session.id, "dave", now=now)
    assert exc.value.code is ErrorCode.SESSION_ENDED

    # ending twice is harmless
    assert len(await sessions.end_session(db, class_session.id, notifier)) == 3


async def test_delete_session_cascades_but_keeps_scan_logs(db, class_session, enrol, notifier, now):
    await enrol("alice", "bob")
    await chain_engine.seed_chains(db, class_session.id, ChainPhase.ENTRY, 1, notifier, now=now)
    await log_scan(db, session_id=class_session.id, flow=ScanFlow.CHALLENGE, result="SUCCESS", scanner_id="bob")

    await sessions.delete_session(db, class_session.id)

    assert await sessions.get_session(db, class_session.id) is None
    for model in (AttendanceRecord, Chain, ChainHistory, Token):
        rows = (await db.execute(select(model).where(model.session_id == class_session.id))).scalars().all()
        assert rows == []
    assert len((await db.execute(select(ScanLog))).scalars().all()) == 1

    with pytest.raises(ChainAttendError) as exc:
        await sessions.delete_session(db, class_session.id)
    assert exc.value.code is ErrorCode.NOT_FOUND


async def test_manual_entry_uses_the_late_cutoff(db, class_session, enrol, notifier, now):
    await enrol("alice", "bob")

    on_time = await sessions.mark_entry_manually(db, class_session.id, "alice", notifier, now=now + timedelta(minutes=5))
    late = await sessions.mark_entry_manually(db, class_session.id, "bob", notifier, now=now + timedelta(minutes=20))

    assert on_time.entry_status is EntryStatus.PRESENT_ENTRY
    assert on_time.entry_method is EntryMethod.MANUAL
    assert late.entry_status is EntryStatus.LATE_ENTRY
    assert [p["entryMethod"] for p in notifier.of_type("attendance")] == ["MANUAL", "MANUAL"]


async def test_manual_entry_keeps_an_earlier_entry(db, class_session, enrol, notifier, now):
    await enrol("alice")
    await attendance.mark_entry(db, class_session.id, "alice", EntryStatus.PRESENT_ENTRY, EntryMethod.CHAIN, now)
    await db.commit()

    record = await sessions.mark_entry_manually(db, class_session.id, "alice", notifier, now=now + timedelta(minutes=30))

    assert record.entry_method is EntryMethod.CHAIN
    assert notifier.of_type("attendance") == []


async def test_manual_exit_is_recorded(db, class_session, enrol, notifier, now):
    await enrol("alice")
    await sessions.mark_entry_manually(db, class_session.id, "alice", notifier, now=now)
    record = await sessions.mark_exit_manually(db, class_session.id, "alice", notifier, now=now + timedelta(minutes=55))

    assert record.exit_verified is True
    assert record.exit_verified_at == now + timedelta(minutes=55)

    records = await sessions.end_session(db, class_session.id, notifier, now=now + timedelta(hours=1))
    assert records[0].final_status is FinalStatus.PRESENT


async def test_manual_marks_need_an_enrolled_student(db, class_session, notifier, now):
    for mark in (sessions.mark_entry_manually, sessions.mark_exit_manually):
        with pytest.raises(ChainAttendError) as exc:
            await mark(db, class_session.id, "ghost", notifier, now=now)
        assert exc.value.code is ErrorCode.NOT_FOUND


async def test_manual_marks_over_http(client, class_session, enrol):
    await enrol("alice")
    teacher = bearer("teacher-1", "TEACHER")

    entry = await client.post(f"/sessions/{class_session.id}/attendance/alice/entry", headers=teacher)
    assert entry.status_code == 200, entry.text
    assert entry.json()["entry_method"] == "MANUAL"

    exit_ = await client.post(f"/sessions/{class_session.id}/attendance/alice/exit", headers=teacher)
    assert exit_.json()["exit_verified"] is True

    student = await client.post(f"/sessions/{class_session.id}/attendance/alice/exit", headers=bearer("alice"))
    assert student.status_code == 403
