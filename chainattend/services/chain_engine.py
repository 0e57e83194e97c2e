"""
Chain relay: seeding, the hop, teacher overrides, closing and stall detection.

A chain is a single live token passed from student to student. Every hop
consumes the holder's token and issues the next one with ``seq + 1`` in one
transaction guarded by compare-and-swap on both the token and the chain, so
concurrent scans of the same token produce exactly one winner.
"""

import logging
import random
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy import select, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from chainattend.config import settings
from chainattend.core.errors import ChainAttendError, ErrorCode, VersionConflict
from chainattend.core.versioned import Versioned, compare_and_swap, parse_etag, swap_row
from chainattend.models.chain import Chain, ChainHistory
from chainattend.models.enums import ChainPhase, ChainState, TokenType, TokenStatus, TEACHER_ORIGIN
from chainattend.models.token import Token
from chainattend.models.types import utcnow
from chainattend.services import attendance, token_store
from chainattend.services.challenge import validate_challenge
from chainattend.services.notifier import Notifier, chain_payload, session_topic, stall_payload
from chainattend.services.sessions import load_session, require_active
from chainattend.utils.ids import new_chain_id

logger = logging.getLogger(__name__)

_rng = random.SystemRandom()


@dataclass(frozen=True)
class HopResult:
    chain_id: str
    phase: ChainPhase
    previous_holder: str
    new_holder: str
    seq: int
    token_id: str
    etag: str


@dataclass(frozen=True)
class OverrideResult:
    chain_id: str
    previous_holder: Optional[str]
    new_holder: str
    seq: int
    token_id: str


@dataclass(frozen=True)
class CloseResult:
    chain_id: str
    final_holder: Optional[str]
    already_closed: bool


async def get_chain(db: AsyncSession, session_id: str, chain_id: str) -> Optional[Chain]:
    result = await db.execute(
        select(Chain)
        .where(Chain.session_id == session_id)
        .where(Chain.chain_id == chain_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def load_chain(db: AsyncSession, session_id: str, chain_id: str) -> Chain:
    chain = await get_chain(db, session_id, chain_id)
    if chain is None:
        raise ChainAttendError(ErrorCode.NOT_FOUND, f"Chain {chain_id} not found")
    return chain


async def list_chains(db: AsyncSession, session_id: str, phase: Optional[ChainPhase] = None) -> List[Chain]:
    stmt = select(Chain).where(Chain.session_id == session_id)
    if phase is not None:
        stmt = stmt.where(Chain.phase == phase)
    result = await db.execute(
        stmt.order_by(Chain.seed_index, Chain.created_at).execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


async def get_chain_history(db: AsyncSession, session_id: str, chain_id: str) -> List[ChainHistory]:
    result = await db.execute(
        select(ChainHistory)
        .where(ChainHistory.session_id == session_id)
        .where(ChainHistory.chain_id == chain_id)
        .order_by(ChainHistory.sequence)
    )
    return list(result.scalars().all())


async def current_token_for(db: AsyncSession, session_id: str, student_id: str, now: Optional[datetime] = None) -> List[Token]:
    """Live chain tokens the student currently holds (one per chain)."""
    now = now or utcnow()
    return await token_store.list_tokens(
        db,
        Token.session_id == session_id,
        Token.holder_id == student_id,
        Token.type == TokenType.CHAIN,
        Token.status == TokenStatus.ACTIVE,
        Token.expires_at > now,
    )


# Seeding

def _check_seed(session, phase: ChainPhase, count: int, now: datetime) -> None:
    require_active(session)
    if count < 1:
        raise ChainAttendError(ErrorCode.INVALID_REQUEST, "count must be at least 1")
    if phase is ChainPhase.SNAPSHOT:
        raise ChainAttendError(ErrorCode.INVALID_REQUEST, "SNAPSHOT chains are started by taking a snapshot")
    if phase is ChainPhase.EXIT:
        opens = attendance.exit_window_opens(session)
        if now < opens:
            raise ChainAttendError(
                ErrorCode.INVALID_STATE,
                f"Exit chains open {session.exit_window_minutes} minutes before the end ({opens.isoformat()})",
            )


async def start_chains(
    db: AsyncSession,
    session_id: str,
    phase: ChainPhase,
    holders: List[str],
    seed_index: int,
    now: datetime,
    snapshot_id: Optional[str] = None,
) -> List[Chain]:
    """Add one chain per holder, each with its seq 0 history row and first token. Does not commit."""
    chains = []
    for student_id in holders:
        chain = Chain(
            session_id=session_id,
            chain_id=new_chain_id(),
            phase=phase,
            seed_index=seed_index,
            state=ChainState.ACTIVE,
            last_holder=student_id,
            last_seq=0,
            last_at=now,
            version=1,
            created_at=now,
            snapshot_id=snapshot_id,
        )
        db.add(chain)
        db.add(ChainHistory(
            chain_id=chain.chain_id,
            sequence=0,
            session_id=session_id,
            from_holder=TEACHER_ORIGIN,
            to_holder=student_id,
            scanned_at=now,
            phase=phase,
        ))
        await token_store.create_token(
            db,
            session_id=session_id,
            token_type=TokenType.CHAIN,
            chain_id=chain.chain_id,
            holder_id=student_id,
            seq=0,
            ttl_seconds=settings.CHAIN_TOKEN_TTL_SECONDS,
            now=now,
        )
        chains.append(chain)
    return chains


def pick_holders(eligible: List[str], count: int) -> List[str]:
    return _rng.sample(sorted(eligible), count)


async def _seed(
    db: AsyncSession,
    session_id: str,
    phase: ChainPhase,
    count: int,
    seed_index: int,
    now: datetime,
    notifier: Notifier,
) -> List[Chain]:
    eligible = await attendance.eligible_students(db, session_id, phase)
    if not eligible:
        raise ChainAttendError(
            ErrorCode.NO_STUDENTS,
            f"No eligible students for {phase.value}: requested {count}, available 0",
            details={"requested": count, "available": 0},
        )
    if len(eligible) < count:
        raise ChainAttendError(
            ErrorCode.INSUFFICIENT_STUDENTS,
            f"Not enough eligible students for {phase.value}: requested {count}, available {len(eligible)}",
            details={"requested": count, "available": len(eligible)},
        )

    chains = await start_chains(db, session_id, phase, pick_holders(eligible, count), seed_index, now)
    await db.commit()

    logger.info("Seeded %d %s chain(s) in session %s (index %d)", len(chains), phase.value, session_id, seed_index)
    topic = session_topic(session_id)
    for chain in chains:
        await notifier.publish(topic, chain_payload(chain))
    return chains


async def seed_chains(
    db: AsyncSession,
    session_id: str,
    phase: ChainPhase,
    count: int,
    notifier: Notifier,
    now: Optional[datetime] = None,
) -> List[Chain]:
    now = now or utcnow()
    session = await load_session(db, session_id)
    _check_seed(session, phase, count, now)
    return await _seed(db, session_id, phase, count, 0, now, notifier)


async def reseed_chains(
    db: AsyncSession,
    session_id: str,
    phase: ChainPhase,
    count: int,
    notifier: Notifier,
    now: Optional[datetime] = None,
) -> List[Chain]:
    """Start extra chains next to the existing ones, under a new seed index."""
    now = now or utcnow()
    session = await load_session(db, session_id)
    _check_seed(session, phase, count, now)
    result = await db.execute(
        select(func.coalesce(func.max(Chain.seed_index), 0))
        .where(Chain.session_id == session_id)
        .where(Chain.phase == phase)
    )
    return await _seed(db, session_id, phase, count, result.scalar_one() + 1, now, notifier)


# The hop

async def process_chain_scan(
    db: AsyncSession,
    *,
    session_id: str,
    token_id: str,
    etag: str,
    challenge_code: str,
    requester_id: str,
    notifier: Notifier,
    now: Optional[datetime] = None,
) -> HopResult:
    """Hand the chain from the requesting holder to the scanner who challenged them."""
    now = now or utcnow()
    expected = parse_etag(etag)
    session = await load_session(db, session_id)
    require_active(session)
    cutoff = attendance.late_cutoff(session)

    token = await token_store.get_token(db, session_id, token_id)
    if token is None:
        raise ChainAttendError(ErrorCode.TOKEN_NOT_FOUND, "Token not found")
    if token.status is TokenStatus.USED:
        raise ChainAttendError(ErrorCode.TOKEN_USED, "Token already used")
    if token.status is not TokenStatus.ACTIVE or token.is_expired(now):
        raise ChainAttendError(ErrorCode.TOKEN_EXPIRED, "Token expired")
    if token.type is not TokenType.CHAIN or not token.chain_id:
        raise ChainAttendError(ErrorCode.INVALID_TOKEN, "Not a chain token")

    chain = await get_chain(db, session_id, token.chain_id)
    if chain is None or chain.state is ChainState.COMPLETED:
        raise ChainAttendError(ErrorCode.INVALID_TOKEN, "Chain is closed")
    if token.seq != chain.last_seq or token.holder_id != chain.last_holder:
        raise ChainAttendError(ErrorCode.INVALID_TOKEN, "Token is not the chain's current token")

    new_holder = validate_challenge(token, challenge_code, requester_id, now)
    if new_holder == token.holder_id:
        raise ChainAttendError(ErrorCode.SELF_SCAN, "Cannot pass the chain to yourself")

    previous_holder = token.holder_id
    chain_id = chain.chain_id
    phase = chain.phase
    new_seq = chain.last_seq + 1

    try:
        await Versioned(token, expected).swap(
            db, {"status": TokenStatus.USED},
            where=[Token.status == TokenStatus.ACTIVE, Token.expires_at > now],
        )
        new_token = await token_store.create_token(
            db,
            session_id=session_id,
            token_type=TokenType.CHAIN,
            chain_id=chain_id,
            holder_id=new_holder,
            seq=new_seq,
            ttl_seconds=settings.CHAIN_TOKEN_TTL_SECONDS,
            now=now,
        )
        await swap_row(
            db, chain,
            {"last_holder": new_holder, "last_seq": new_seq, "last_at": now, "state": ChainState.ACTIVE},
            where=[Chain.state != ChainState.COMPLETED],
        )
        db.add(ChainHistory(
            chain_id=chain_id,
            sequence=new_seq,
            session_id=session_id,
            from_holder=previous_holder,
            to_holder=new_holder,
            scanned_at=now,
            phase=phase,
        ))
        await db.commit()
    except VersionConflict:
        await db.rollback()
        logger.info("Hop on chain %s lost a race at seq %d", chain_id, new_seq)
        raise
    except IntegrityError:
        await db.rollback()
        logger.info("Hop on chain %s found seq %d already recorded", chain_id, new_seq)
        raise VersionConflict(f"Sequence {new_seq} of chain {chain_id} already recorded")

    result = HopResult(
        chain_id=chain_id,
        phase=phase,
        previous_holder=previous_holder,
        new_holder=new_holder,
        seq=new_seq,
        token_id=new_token.token_id,
        etag=new_token.etag,
    )
    payload = chain_payload(chain)
    logger.info("Chain %s hop %d: %s -> %s", chain_id, new_seq, previous_holder, new_holder)

    await attendance.record_milestone(
        db,
        session_id=session_id,
        phase=phase,
        student_id=previous_holder,
        cutoff=cutoff,
        now=now,
        notifier=notifier,
    )
    await notifier.publish(session_topic(session_id), payload)
    return result


# Teacher controls

async def set_chain_holder(
    db: AsyncSession,
    *,
    session_id: str,
    chain_id: str,
    student_id: str,
    notifier: Notifier,
    now: Optional[datetime] = None,
) -> OverrideResult:
    """Move a chain to ``student_id`` without a scan, e.g. when the holder's phone died."""
    now = now or utcnow()
    session = await load_session(db, session_id)
    require_active(session)
    cutoff = attendance.late_cutoff(session)

    chain = await load_chain(db, session_id, chain_id)
    if chain.state is ChainState.COMPLETED:
        raise ChainAttendError(ErrorCode.INVALID_STATE, "Chain is already completed")
    if await attendance.get_record(db, session_id, student_id) is None:
        raise ChainAttendError(ErrorCode.NOT_FOUND, "Student is not enrolled in this session")
    if chain.last_holder == student_id:
        raise ChainAttendError(ErrorCode.INVALID_REQUEST, "Student already holds this chain")

    previous_holder = chain.last_holder
    phase = chain.phase
    new_seq = chain.last_seq + 1
    live = await token_store.list_tokens(
        db,
        Token.session_id == session_id,
        Token.chain_id == chain_id,
        Token.status == TokenStatus.ACTIVE,
    )

    try:
        for token in live:
            await swap_row(db, token, {"status": TokenStatus.USED}, where=[Token.status == TokenStatus.ACTIVE])
        new_token = await token_store.create_token(
            db,
            session_id=session_id,
            token_type=TokenType.CHAIN,
            chain_id=chain_id,
            holder_id=student_id,
            seq=new_seq,
            ttl_seconds=settings.CHAIN_TOKEN_TTL_SECONDS,
            now=now,
        )
        await swap_row(
            db, chain,
            {"last_holder": student_id, "last_seq": new_seq, "last_at": now, "state": ChainState.ACTIVE},
            where=[Chain.state != ChainState.COMPLETED],
        )
        db.add(ChainHistory(
            chain_id=chain_id,
            sequence=new_seq,
            session_id=session_id,
            from_holder=previous_holder or TEACHER_ORIGIN,
            to_holder=student_id,
            scanned_at=now,
            phase=phase,
        ))
        await db.commit()
    except VersionConflict:
        await db.rollback()
        raise
    except IntegrityError:
        await db.rollback()
        raise VersionConflict(f"Sequence {new_seq} of chain {chain_id} already recorded")

    result = OverrideResult(
        chain_id=chain_id,
        previous_holder=previous_holder,
        new_holder=student_id,
        seq=new_seq,
        token_id=new_token.token_id,
    )
    payload = chain_payload(chain)
    logger.info("Chain %s reassigned %s -> %s at seq %d", chain_id, previous_holder, student_id, new_seq)

    if previous_holder:
        await attendance.record_milestone(
            db, session_id=session_id, phase=phase, student_id=previous_holder,
            cutoff=cutoff, now=now, notifier=notifier,
        )
    await notifier.publish(session_topic(session_id), payload)
    return result


async def close_chain(
    db: AsyncSession,
    *,
    session_id: str,
    chain_id: str,
    notifier: Notifier,
    now: Optional[datetime] = None,
) -> CloseResult:
    """Complete a chain, crediting its final holder and removing its tokens.

    Closing an already completed chain changes nothing.
    """
    now = now or utcnow()
    session = await load_session(db, session_id)
    cutoff = attendance.late_cutoff(session)
    chain = await load_chain(db, session_id, chain_id)
    if chain.state is ChainState.COMPLETED:
        return CloseResult(chain_id=chain_id, final_holder=chain.last_holder, already_closed=True)

    final_holder = chain.last_holder
    phase = chain.phase
    version = chain.version
    last_seq = chain.last_seq
    if final_holder:
        await attendance.record_milestone(
            db, session_id=session_id, phase=phase, student_id=final_holder,
            cutoff=cutoff, now=now, notifier=notifier,
        )

    try:
        await compare_and_swap(
            db, Chain, {"session_id": session_id, "chain_id": chain_id}, version,
            {"state": ChainState.COMPLETED, "completed_at": now},
            where=[Chain.state != ChainState.COMPLETED],
        )
        removed = await token_store.delete_chain_tokens(db, session_id, chain_id)
        await db.commit()
    except VersionConflict:
        await db.rollback()
        raise

    logger.info("Chain %s closed with holder %s (%d token(s) removed)", chain_id, final_holder, removed)
    await notifier.publish(session_topic(session_id), {
        "type": "chain",
        "chainId": chain_id,
        "phase": phase.value,
        "lastHolder": final_holder,
        "lastSeq": last_seq,
        "state": ChainState.COMPLETED.value,
    })
    return CloseResult(chain_id=chain_id, final_holder=final_holder, already_closed=False)


async def detect_stalled_chains(
    db: AsyncSession,
    session_id: str,
    notifier: Notifier,
    now: Optional[datetime] = None,
    phase: Optional[ChainPhase] = None,
    threshold_seconds: Optional[int] = None,
) -> List[str]:
    """Flag ACTIVE chains with no hop inside the threshold as STALLED."""
    now = now or utcnow()
    threshold = settings.STALL_THRESHOLD_SECONDS if threshold_seconds is None else threshold_seconds
    cutoff = now - timedelta(seconds=threshold)

    stmt = (
        select(Chain.chain_id, Chain.version)
        .where(Chain.session_id == session_id)
        .where(Chain.state == ChainState.ACTIVE)
        .where(Chain.last_at < cutoff)
    )
    if phase is not None:
        stmt = stmt.where(Chain.phase == phase)
    candidates = (await db.execute(stmt)).all()

    stalled = []
    for chain_id, version in candidates:
        try:
            await compare_and_swap(
                db, Chain, {"session_id": session_id, "chain_id": chain_id}, version,
                {"state": ChainState.STALLED},
                where=[Chain.state == ChainState.ACTIVE],
            )
            await db.commit()
        except VersionConflict:
            await db.rollback()
            logger.debug("Chain %s moved before it could be marked stalled", chain_id)
            continue
        stalled.append(chain_id)

    if stalled:
        logger.info("%d chain(s) stalled in session %s", len(stalled), session_id)
        await notifier.publish(session_topic(session_id), stall_payload(stalled))
    return stalled
