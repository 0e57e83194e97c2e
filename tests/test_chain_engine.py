from datetime import timedelta

import pytest

from chainattend.core.errors import ChainAttendError, ErrorCode
from chainattend.models.enums import ChainPhase, ChainState, EntryStatus, TokenStatus, TEACHER_ORIGIN
from chainattend.models.token import Token
from chainattend.services import attendance, chain_engine, challenge, sessions, token_store


async def history_matches_seq(db, session_id, chain_id):
    chain = await chain_engine.get_chain(db, session_id, chain_id)
    history = await chain_engine.get_chain_history(db, session_id, chain_id)
    return [row.sequence for row in history] == list(range(chain.last_seq + 1))


async def test_seed_creates_chain_token_and_history(db, class_session, enrol, notifier, now, first_eligible):
    await enrol("alice", "bob")
    chains = await chain_engine.seed_chains(db, class_session.id, ChainPhase.ENTRY, 1, notifier, now=now)

    assert len(chains) == 1
    chain = chains[0]
    assert chain.state is ChainState.ACTIVE
    assert chain.last_holder == "alice"
    assert chain.last_seq == 0
    assert chain.seed_index == 0

    token = await token_store.live_chain_token(db, class_session.id, chain.chain_id, now)
    assert token.holder_id == "alice"
    assert token.seq == 0
    assert token.single_use is True

    history = await chain_engine.get_chain_history(db, class_session.id, chain.chain_id)
    assert [(h.sequence, h.from_holder, h.to_holder) for h in history] == [(0, TEACHER_ORIGIN, "alice")]
    assert len(notifier.of_type("chain")) == 1


async def test_seed_samples_distinct_students(db, class_session, enrol, notifier, now):
    await enrol("alice", "bob", "carol")
    chains = await chain_engine.seed_chains(db, class_session.id, ChainPhase.ENTRY, 3, notifier, now=now)
    assert sorted(c.last_holder for c in chains) == ["alice", "bob", "carol"]


async def test_seed_insufficient_students(db, class_session, enrol, notifier, now):
    await enrol("alice", "bob")
    with pytest.raises(ChainAttendError) as exc:
        await chain_engine.seed_chains(db, class_session.id, ChainPhase.ENTRY, 5, notifier, now=now)
    assert exc.value.code is ErrorCode.INSUFFICIENT_STUDENTS
    assert "requested 5, available 2" in exc.value.message
    assert await chain_engine.list_chains(db, class_session.id) == []


async def test_seed_with_nobody_eligible(db, class_session, enrol, notifier, now):
    with pytest.raises(ChainAttendError) as exc:
        await chain_engine.seed_chains(db, class_session.id, ChainPhase.ENTRY, 1, notifier, now=now)
    assert exc.value.code is ErrorCode.NO_STUDENTS

    await enrol("alice")
    with pytest.raises(ChainAttendError) as exc:
        await chain_engine.seed_chains(db, class_session.id, ChainPhase.EXIT, 1, notifier, now=now + timedelta(minutes=55))
    assert exc.value.code is ErrorCode.NO_STUDENTS


async def test_seed_rejects_zero_count(db, class_session, enrol, notifier, now):
    await enrol("alice")
    with pytest.raises(ChainAttendError) as exc:
        await chain_engine.seed_chains(db, class_session.id, ChainPhase.ENTRY, 0, notifier, now=now)
    assert exc.value.code is ErrorCode.INVALID_REQUEST


async def test_exit_chains_wait_for_the_exit_window(db, class_session, enrol, notifier, now, first_eligible, hop):
    await enrol("alice", "bob")
    entry = (await chain_engine.seed_chains(db, class_session.id, ChainPhase.ENTRY, 1, notifier, now=now))[0]
    await hop(class_session.id, entry.chain_id, "bob", now + timedelta(seconds=1))

    # one-hour session with the default ten-minute exit window
    with pytest.raises(ChainAttendError) as exc:
        await chain_engine.seed_chains(db, class_session.id, ChainPhase.EXIT, 1, notifier, now=now + timedelta(minutes=49))
    assert exc.value.code is ErrorCode.INVALID_STATE

    opened = await chain_engine.seed_chains(
        db, class_session.id, ChainPhase.EXIT, 1, notifier, now=now + timedelta(minutes=50),
    )
    assert opened[0].last_holder == "alice"


async def test_snapshot_phase_is_not_seeded_directly(db, class_session, enrol, notifier, now):
    await enrol("alice")
    with pytest.raises(ChainAttendError) as exc:
        await chain_engine.seed_chains(db, class_session.id, ChainPhase.SNAPSHOT, 1, notifier, now=now)
    assert exc.value.code is ErrorCode.INVALID_REQUEST


async def test_offline_students_are_not_eligible(db, class_session, enrol, notifier, now):
    await enrol("alice", "bob")
    await sessions.set_online(db, class_session.id, "bob", False, now=now)
    with pytest.raises(ChainAttendError) as exc:
        await chain_engine.seed_chains(db, class_session.id, ChainPhase.ENTRY, 2, notifier, now=now)
    assert "requested 2, available 1" in exc.value.message


async def test_hop_scenario(db, class_session, enrol, notifier, now, first_eligible, hop):
    await enrol("alice", "bob")
    chain = (await chain_engine.seed_chains(db, class_session.id, ChainPhase.ENTRY, 1, notifier, now=now))[0]

    result = await hop(class_session.id, chain.chain_id, "bob", now + timedelta(seconds=5))

    assert result.previous_holder == "alice"
    assert result.new_holder == "bob"
    assert result.seq == 1

    chain = await chain_engine.get_chain(db, class_session.id, chain.chain_id)
    assert chain.last_holder == "bob"
    assert chain.last_seq == 1

    record = await attendance.get_record(db, class_session.id, "alice")
    assert record.entry_status is EntryStatus.PRESENT_ENTRY

    history = await chain_engine.get_chain_history(db, class_session.id, chain.chain_id)
    assert [(h.sequence, h.from_holder, h.to_holder) for h in history] == [
        (0, TEACHER_ORIGIN, "alice"),
        (1, "alice", "bob"),
    ]

    live = await token_store.live_chain_token(db, class_session.id, chain.chain_id, now + timedelta(seconds=5))
    assert live.token_id == result.token_id
    assert live.holder_id == "bob" and live.seq == 1
    assert result.etag == live.etag

    assert notifier.of_type("attendance")[0]["studentId"] == "alice"


async def test_hop_after_cutoff_marks_late(db, class_session, enrol, notifier, now, first_eligible, hop):
    later = now + timedelta(minutes=20)
    await enrol("alice", "bob")
    chain = (await chain_engine.seed_chains(db, class_session.id, ChainPhase.ENTRY, 1, notifier, now=later))[0]
    await hop(class_session.id, chain.chain_id, "bob", later)

    record = await attendance.get_record(db, class_session.id, "alice")
    assert record.entry_status is EntryStatus.LATE_ENTRY


async def test_history_tracks_seq_over_many_hops(db, class_session, enrol, notifier, now, first_eligible, hop):
    await enrol("alice", "bob", "carol", "dave")
    chain = (await chain_engine.seed_chains(db, class_session.id, ChainPhase.ENTRY, 1, notifier, now=now))[0]

    at = now
    for scanner in ("bob", "carol", "dave", "alice"):
        at += timedelta(seconds=3)
        await hop(class_session.id, chain.chain_id, scanner, at)
        assert await history_matches_seq(db, class_session.id, chain.chain_id)

    chain = await chain_engine.get_chain(db, class_session.id, chain.chain_id)
    assert chain.last_seq == 4
    active = await token_store.list_tokens(db, Token.chain_id == chain.chain_id, Token.status == TokenStatus.ACTIVE)
    assert len(active) == 1


async def test_second_submit_of_same_token_fails(db, class_session, enrol, notifier, now, first_eligible):
    await enrol("alice", "bob")
    chain = (await chain_engine.seed_chains(db, class_session.id, ChainPhase.ENTRY, 1, notifier, now=now))[0]
    token = await token_store.live_chain_token(db, class_session.id, chain.chain_id, now)
    token_id = token.token_id
    issued = await challenge.request_challenge(
        db, session_id=class_session.id, chain_id=chain.chain_id, token_id=token_id, scanner_id="bob", now=now,
    )

    submit = dict(
        session_id=class_session.id, token_id=token_id, etag="1", challenge_code=issued.code,
        requester_id="alice", notifier=notifier, now=now,
    )
    await chain_engine.process_chain_scan(db, **submit)
    with pytest.raises(ChainAttendError) as exc:
        await chain_engine.process_chain_scan(db, **submit)
    assert exc.value.code in (ErrorCode.TOKEN_USED, ErrorCode.VERSION_CONFLICT)

    chain = await chain_engine.get_chain(db, class_session.id, chain.chain_id)
    assert chain.last_seq == 1
    assert await history_matches_seq(db, class_session.id, chain.chain_id)


async def test_stale_etag_is_a_conflict(db, class_session, enrol, notifier, now, first_eligible):
    await enrol("alice", "bob")
    session_id = class_session.id
    chain = (await chain_engine.seed_chains(db, session_id, ChainPhase.ENTRY, 1, notifier, now=now))[0]
    chain_id = chain.chain_id
    token = await token_store.live_chain_token(db, session_id, chain_id, now)
    token_id = token.token_id
    issued = await challenge.request_challenge(
        db, session_id=session_id, chain_id=chain_id, token_id=token_id, scanner_id="bob", now=now,
    )

    with pytest.raises(ChainAttendError) as exc:
        await chain_engine.process_chain_scan(
            db, session_id=session_id, token_id=token_id, etag="7", challenge_code=issued.code,
            requester_id="alice", notifier=notifier, now=now,
        )
    assert exc.value.code is ErrorCode.VERSION_CONFLICT

    # nothing leaked from the aborted hop
    chain = await chain_engine.get_chain(db, session_id, chain_id)
    assert chain.last_seq == 0
    assert len(await token_store.list_tokens(db, Token.chain_id == chain_id)) == 1
    assert (await attendance.get_record(db, session_id, "alice")).entry_status is None


async def test_expired_token_cannot_be_consumed(db, class_session, enrol, notifier, now, first_eligible):
    await enrol("alice", "bob")
    chain = (await chain_engine.seed_chains(db, class_session.id, ChainPhase.ENTRY, 1, notifier, now=now))[0]
    token = await token_store.live_chain_token(db, class_session.id, chain.chain_id, now)
    token_id = token.token_id
    issued = await challenge.request_challenge(
        db, session_id=class_session.id, chain_id=chain.chain_id, token_id=token_id, scanner_id="bob",
        now=now + timedelta(seconds=15),
    )

    with pytest.raises(ChainAttendError) as exc:
        await chain_engine.process_chain_scan(
            db, session_id=class_session.id, token_id=token_id, etag="1", challenge_code=issued.code,
            requester_id="alice", notifier=notifier, now=now + timedelta(seconds=20),
        )
    assert exc.value.code is ErrorCode.TOKEN_EXPIRED


async def test_wrong_code_does_not_hop(db, class_session, enrol, notifier, now, first_eligible):
    await enrol("alice", "bob")
    chain = (await chain_engine.seed_chains(db, class_session.id, ChainPhase.ENTRY, 1, notifier, now=now))[0]
    token = await token_store.live_chain_token(db, class_session.id, chain.chain_id, now)
    token_id = token.token_id
    issued = await challenge.request_challenge(
        db, session_id=class_session.id, chain_id=chain.chain_id, token_id=token_id, scanner_id="bob", now=now,
    )
    wrong = "000000" if issued.code != "000000" else "999999"

    with pytest.raises(ChainAttendError) as exc:
        await chain_engine.process_chain_scan(
            db, session_id=class_session.id, token_id=token_id, etag="1", challenge_code=wrong,
            requester_id="alice", notifier=notifier, now=now,
        )
    assert exc.value.code is ErrorCode.INVALID_CHALLENGE
    assert (await token_store.get_token(db, class_session.id, token_id)).status is TokenStatus.ACTIVE


async def test_close_exit_chain_credits_holder(db, class_session, enrol, notifier, now, first_eligible, hop):
    await enrol("alice", "bob", "carol")
    entry = (await chain_engine.seed_chains(db, class_session.id, ChainPhase.ENTRY, 1, notifier, now=now))[0]
    at = now
    for scanner in ("bob", "carol", "alice"):
        at += timedelta(seconds=2)
        await hop(class_session.id, entry.chain_id, scanner, at)
    await chain_engine.close_chain(db, session_id=class_session.id, chain_id=entry.chain_id, notifier=notifier, now=at)

    # everyone has entered now; run an exit chain that ends with carol
    at += timedelta(minutes=50)
    exit_chain = (await chain_engine.seed_chains(db, class_session.id, ChainPhase.EXIT, 1, notifier, now=at))[0]
    assert exit_chain.last_holder == "alice"
    await hop(class_session.id, exit_chain.chain_id, "carol", at)
    leftover = await token_store.live_chain_token(db, class_session.id, exit_chain.chain_id, at)
    leftover_id = leftover.token_id

    result = await chain_engine.close_chain(
        db, session_id=class_session.id, chain_id=exit_chain.chain_id, notifier=notifier, now=at,
    )
    assert result.final_holder == "carol"
    assert result.already_closed is False

    assert (await attendance.get_record(db, class_session.id, "carol")).exit_verified is True
    assert (await chain_engine.get_chain(db, class_session.id, exit_chain.chain_id)).state is ChainState.COMPLETED

    with pytest.raises(ChainAttendError) as exc:
        await chain_engine.process_chain_scan(
            db, session_id=class_session.id, token_id=leftover_id, etag="1", challenge_code="123456",
            requester_id="carol", notifier=notifier, now=at,
        )
    assert exc.value.code is ErrorCode.TOKEN_NOT_FOUND

    again = await chain_engine.close_chain(
        db, session_id=class_session.id, chain_id=exit_chain.chain_id, notifier=notifier, now=at,
    )
    assert again.already_closed is True
    assert again.final_holder == "carol"


async def test_set_chain_holder(db, class_session, enrol, notifier, now, first_eligible):
    await enrol("alice", "bob", "carol")
    chain = (await chain_engine.seed_chains(db, class_session.id, ChainPhase.ENTRY, 1, notifier, now=now))[0]
    old = await token_store.live_chain_token(db, class_session.id, chain.chain_id, now)
    old_id = old.token_id

    result = await chain_engine.set_chain_holder(
        db, session_id=class_session.id, chain_id=chain.chain_id, student_id="carol", notifier=notifier, now=now,
    )
    assert result.seq == 1
    assert result.previous_holder == "alice"

    assert (await token_store.get_token(db, class_session.id, old_id)).status is TokenStatus.USED
    live = await token_store.live_chain_token(db, class_session.id, chain.chain_id, now)
    assert live.holder_id == "carol" and live.seq == 1
    assert await history_matches_seq(db, class_session.id, chain.chain_id)
    assert (await attendance.get_record(db, class_session.id, "alice")).entry_status is EntryStatus.PRESENT_ENTRY

    with pytest.raises(ChainAttendError) as exc:
        await chain_engine.set_chain_holder(
            db, session_id=class_session.id, chain_id=chain.chain_id, student_id="mallory", notifier=notifier, now=now,
        )
    assert exc.value.code is ErrorCode.NOT_FOUND


async def test_reseed_uses_next_index(db, class_session, enrol, notifier, now):
    await enrol("alice", "bob", "carol")
    first = await chain_engine.seed_chains(db, class_session.id, ChainPhase.ENTRY, 1, notifier, now=now)
    extra = await chain_engine.reseed_chains(db, class_session.id, ChainPhase.ENTRY, 1, notifier, now=now)

    assert first[0].seed_index == 0
    assert extra[0].seed_index == 1
    chains = await chain_engine.list_chains(db, class_session.id, ChainPhase.ENTRY)
    assert len(chains) == 2
    assert all(c.state is ChainState.ACTIVE for c in chains)


async def test_detect_stalled_chains(db, class_session, enrol, notifier, now, first_eligible):
    await enrol("alice", "bob")
    chain = (await chain_engine.seed_chains(db, class_session.id, ChainPhase.ENTRY, 1, notifier, now=now))[0]

    assert await chain_engine.detect_stalled_chains(db, class_session.id, notifier, now=now + timedelta(seconds=30)) == []
    stalled = await chain_engine.detect_stalled_chains(db, class_session.id, notifier, now=now + timedelta(seconds=91))
    assert stalled == [chain.chain_id]
    assert notifier.of_type("stall")[0]["chainIds"] == [chain.chain_id]
    assert (await chain_engine.get_chain(db, class_session.id, chain.chain_id)).state is ChainState.STALLED


async def test_hop_revives_stalled_chain(db, class_session, enrol, notifier, now, first_eligible, hop):
    await enrol("alice", "bob")
    chain = (await chain_engine.seed_chains(db, class_session.id, ChainPhase.ENTRY, 1, notifier, now=now))[0]

    stalled = await chain_engine.detect_stalled_chains(
        db, class_session.id, notifier, now=now + timedelta(seconds=5), threshold_seconds=3,
    )
    assert stalled == [chain.chain_id]

    # the token is still live, so the chain keeps accepting hops
    await hop(class_session.id, chain.chain_id, "bob", now + timedelta(seconds=6))
    chain = await chain_engine.get_chain(db, class_session.id, chain.chain_id)
    assert chain.state is ChainState.ACTIVE
    assert chain.last_seq == 1


async def test_hop_is_refused_after_session_end(db, class_session, enrol, notifier, now, first_eligible):
    await enrol("alice", "bob")
    chain = (await chain_engine.seed_chains(db, class_session.id, ChainPhase.ENTRY, 1, notifier, now=now))[0]
    token = await token_store.live_chain_token(db, class_session.id, chain.chain_id, now)
    token_id = token.token_id
    await sessions.end_session(db, class_session.id, notifier, now=now)

    with pytest.raises(ChainAttendError) as exc:
        await chain_engine.process_chain_scan(
            db, session_id=class_session.id, token_id=token_id, etag="1", challenge_code="123456",
            requester_id="alice", notifier=notifier, now=now,
        )
    assert exc.value.code is ErrorCode.SESSION_ENDED
