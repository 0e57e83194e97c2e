"""
Keep-alive rotation for chain and window tokens.

``plan_rotation`` is a pure function of the clock and a snapshot of the
store; it decides which writes a tick needs. ``apply_rotation`` performs
each write in its own transaction, conditional on the exact versions in the
snapshot, so a write that lost a race against a hop or a teacher action is
simply dropped and reconsidered on the next tick.
"""

import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List, Optional, Tuple, Union

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from chainattend.config import settings
from chainattend.core.errors import VersionConflict
from chainattend.core.versioned import compare_and_swap
from chainattend.models.chain import Chain
from chainattend.models.enums import SessionStatus, ChainState, TokenType, TokenStatus
from chainattend.models.session import ClassSession
from chainattend.models.token import Token
from chainattend.models.types import utcnow
from chainattend.services import token_store
from chainattend.services.notifier import Notifier, get_notifier, session_topic, stall_payload, token_payload

logger = logging.getLogger(__name__)


# Snapshot

@dataclass(frozen=True)
class SessionSnapshot:
    session_id: str
    version: int
    late_entry_active: bool = False
    current_late_token_id: Optional[str] = None
    early_leave_active: bool = False
    current_early_token_id: Optional[str] = None


@dataclass(frozen=True)
class ChainSnapshot:
    session_id: str
    chain_id: str
    version: int
    state: ChainState
    last_holder: Optional[str]
    last_seq: int
    last_at: datetime


@dataclass(frozen=True)
class TokenSnapshot:
    session_id: str
    token_id: str
    version: int
    type: TokenType
    expires_at: datetime
    chain_id: Optional[str] = None
    holder_id: Optional[str] = None
    seq: int = 0
    challenge_expires_at: Optional[datetime] = None

    def has_live_challenge(self, now: datetime) -> bool:
        return self.challenge_expires_at is not None and self.challenge_expires_at > now


@dataclass(frozen=True)
class RotationSnapshot:
    sessions: Tuple[SessionSnapshot, ...] = ()
    chains: Tuple[ChainSnapshot, ...] = ()
    tokens: Tuple[TokenSnapshot, ...] = ()


@dataclass(frozen=True)
class RotationPolicy:
    chain_ttl_seconds: int = 20
    late_ttl_seconds: int = 60
    early_ttl_seconds: int = 60
    safety_margin_seconds: int = 5
    stall_threshold_seconds: int = 90

    @classmethod
    def from_settings(cls, s=settings) -> "RotationPolicy":
        return cls(
            chain_ttl_seconds=s.CHAIN_TOKEN_TTL_SECONDS,
            late_ttl_seconds=s.LATE_ROTATION_SECONDS,
            early_ttl_seconds=s.EARLY_LEAVE_ROTATION_SECONDS,
            safety_margin_seconds=s.ROTATION_SAFETY_MARGIN_SECONDS,
            stall_threshold_seconds=s.STALL_THRESHOLD_SECONDS,
        )

    def ttl_for(self, token_type: TokenType) -> int:
        if token_type is TokenType.LATE_ENTRY:
            return self.late_ttl_seconds
        if token_type is TokenType.EARLY_LEAVE:
            return self.early_ttl_seconds
        return self.chain_ttl_seconds


# Writes

@dataclass(frozen=True)
class ReissueChainToken:
    """Same holder, same seq, fresh expiry. Never touches history."""
    session_id: str
    chain_id: str
    holder_id: str
    seq: int
    old_token_id: Optional[str] = None
    old_version: Optional[int] = None
    chain_version: Optional[int] = None


@dataclass(frozen=True)
class WindowRotation:
    token_type: TokenType
    old_token_id: Optional[str] = None
    old_version: Optional[int] = None


@dataclass(frozen=True)
class RotateStandaloneToken:
    """New window token(s) for one session; the pointer swap is guarded by the session version."""
    session_id: str
    session_version: int
    rotations: Tuple[WindowRotation, ...]


@dataclass(frozen=True)
class ExpireToken:
    session_id: str
    token_id: str
    version: int


@dataclass(frozen=True)
class MarkChainStalled:
    session_id: str
    chain_id: str
    chain_version: int


RotationWrite = Union[ReissueChainToken, RotateStandaloneToken, ExpireToken, MarkChainStalled]

_WINDOWS = (
    (TokenType.LATE_ENTRY, "late_entry_active", "current_late_token_id"),
    (TokenType.EARLY_LEAVE, "early_leave_active", "current_early_token_id"),
)
_WINDOW_COLUMNS = {token_type: (flag, pointer) for token_type, flag, pointer in _WINDOWS}


@dataclass
class RotationReport:
    created: int = 0
    expired: int = 0
    stalled: int = 0
    discarded: int = 0
    failed: int = 0
    errors: List[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.created or self.expired or self.stalled)


def plan_rotation(now: datetime, snapshot: RotationSnapshot, policy: RotationPolicy) -> List[RotationWrite]:
    margin = timedelta(seconds=policy.safety_margin_seconds)
    stall_cutoff = now - timedelta(seconds=policy.stall_threshold_seconds)
    active_sessions = {s.session_id for s in snapshot.sessions}

    by_chain = defaultdict(list)
    by_id = {}
    for token in snapshot.tokens:
        by_id[(token.session_id, token.token_id)] = token
        if token.type is TokenType.CHAIN and token.chain_id:
            by_chain[(token.session_id, token.chain_id)].append(token)

    handled = set()
    reissues: List[RotationWrite] = []
    stalls: List[RotationWrite] = []

    for chain in snapshot.chains:
        if chain.session_id not in active_sessions or chain.state is ChainState.COMPLETED or not chain.last_holder:
            continue
        current = [
            t for t in by_chain[(chain.session_id, chain.chain_id)]
            if t.holder_id == chain.last_holder and t.seq == chain.last_seq
        ]
        live = max(current, key=lambda t: t.expires_at) if current else None

        if live is None:
            reissues.append(ReissueChainToken(
                session_id=chain.session_id,
                chain_id=chain.chain_id,
                holder_id=chain.last_holder,
                seq=chain.last_seq,
                chain_version=chain.version,
            ))
            # the reissue bumps the chain version; stall check waits a tick
            continue

        if live.expires_at <= now + margin:
            # a scanner is mid-challenge on this token: leave it until it really expires
            if not (live.expires_at > now and live.has_live_challenge(now)):
                reissues.append(ReissueChainToken(
                    session_id=chain.session_id,
                    chain_id=chain.chain_id,
                    holder_id=chain.last_holder,
                    seq=chain.last_seq,
                    old_token_id=live.token_id,
                    old_version=live.version,
                ))
                handled.add((live.session_id, live.token_id))

        if chain.state is ChainState.ACTIVE and chain.last_at < stall_cutoff:
            stalls.append(MarkChainStalled(
                session_id=chain.session_id,
                chain_id=chain.chain_id,
                chain_version=chain.version,
            ))

    windows: List[RotationWrite] = []
    for session in snapshot.sessions:
        rotations = []
        for token_type, flag, pointer in _WINDOWS:
            if not getattr(session, flag):
                continue
            token_id = getattr(session, pointer)
            token = by_id.get((session.session_id, token_id)) if token_id else None
            if token is not None and token.expires_at > now:
                continue
            if token is not None:
                handled.add((token.session_id, token.token_id))
                rotations.append(WindowRotation(token_type, token.token_id, token.version))
            else:
                rotations.append(WindowRotation(token_type))
        if rotations:
            windows.append(RotateStandaloneToken(
                session_id=session.session_id,
                session_version=session.version,
                rotations=tuple(rotations),
            ))

    sweep: List[RotationWrite] = [
        ExpireToken(session_id=t.session_id, token_id=t.token_id, version=t.version)
        for t in snapshot.tokens
        if t.expires_at <= now and (t.session_id, t.token_id) not in handled
    ]
    return reissues + windows + sweep + stalls


# Execution

async def load_snapshot(db: AsyncSession) -> RotationSnapshot:
    sessions = (
        await db.execute(select(ClassSession).where(ClassSession.status == SessionStatus.ACTIVE))
    ).scalars().all()
    session_ids = [s.id for s in sessions]

    chains = []
    if session_ids:
        chains = (
            await db.execute(
                select(Chain)
                .where(Chain.session_id.in_(session_ids))
                .where(Chain.state != ChainState.COMPLETED)
            )
        ).scalars().all()
    # every ACTIVE token, ended sessions included, so the sweep sees stragglers
    tokens = (await db.execute(select(Token).where(Token.status == TokenStatus.ACTIVE))).scalars().all()

    snapshot = RotationSnapshot(
        sessions=tuple(
            SessionSnapshot(
                session_id=s.id,
                version=s.version,
                late_entry_active=s.late_entry_active,
                current_late_token_id=s.current_late_token_id,
                early_leave_active=s.early_leave_active,
                current_early_token_id=s.current_early_token_id,
            )
            for s in sessions
        ),
        chains=tuple(
            ChainSnapshot(
                session_id=c.session_id,
                chain_id=c.chain_id,
                version=c.version,
                state=c.state,
                last_holder=c.last_holder,
                last_seq=c.last_seq,
                last_at=c.last_at,
            )
            for c in chains
        ),
        tokens=tuple(
            TokenSnapshot(
                session_id=t.session_id,
                token_id=t.token_id,
                version=t.version,
                type=t.type,
                expires_at=t.expires_at,
                chain_id=t.chain_id,
                holder_id=t.holder_id,
                seq=t.seq,
                challenge_expires_at=t.challenge_expires_at if t.challenge_scanner_id else None,
            )
            for t in tokens
        ),
    )
    return snapshot


async def _expire(db: AsyncSession, session_id: str, token_id: str, version: int) -> None:
    await compare_and_swap(
        db, Token, {"session_id": session_id, "token_id": token_id}, version,
        {"status": TokenStatus.EXPIRED},
        where=[Token.status == TokenStatus.ACTIVE],
    )


async def _apply_one(db: AsyncSession, write: RotationWrite, now: datetime, policy: RotationPolicy, report: RotationReport) -> Optional[dict]:
    """Commit one write; returns the notification it calls for, if any."""
    created = expired = stalled = 0
    payload = None

    if isinstance(write, ReissueChainToken):
        if write.old_token_id:
            await _expire(db, write.session_id, write.old_token_id, write.old_version)
            expired += 1
        else:
            # no token to race on: the chain version guards against double issue
            await compare_and_swap(
                db, Chain, {"session_id": write.session_id, "chain_id": write.chain_id}, write.chain_version,
                {"last_holder": write.holder_id},
                where=[Chain.state != ChainState.COMPLETED, Chain.last_seq == write.seq],
            )
        token = await token_store.create_token(
            db,
            session_id=write.session_id,
            token_type=TokenType.CHAIN,
            chain_id=write.chain_id,
            holder_id=write.holder_id,
            seq=write.seq,
            ttl_seconds=policy.chain_ttl_seconds,
            now=now,
        )
        created += 1
        payload = token_payload(write.chain_id, write.holder_id, write.seq, token.expires_at)

    elif isinstance(write, RotateStandaloneToken):
        changes = {}
        guards = [ClassSession.status == SessionStatus.ACTIVE]
        for rotation in write.rotations:
            flag, pointer = _WINDOW_COLUMNS[rotation.token_type]
            if rotation.old_token_id:
                await _expire(db, write.session_id, rotation.old_token_id, rotation.old_version)
                expired += 1
            token = await token_store.create_token(
                db,
                session_id=write.session_id,
                token_type=rotation.token_type,
                ttl_seconds=policy.ttl_for(rotation.token_type),
                single_use=False,
                now=now,
            )
            created += 1
            changes[pointer] = token.token_id
            guards.append(getattr(ClassSession, flag).is_(True))
        await compare_and_swap(db, ClassSession, {"id": write.session_id}, write.session_version, changes, where=guards)

    elif isinstance(write, ExpireToken):
        await _expire(db, write.session_id, write.token_id, write.version)
        expired += 1

    elif isinstance(write, MarkChainStalled):
        await compare_and_swap(
            db, Chain, {"session_id": write.session_id, "chain_id": write.chain_id}, write.chain_version,
            {"state": ChainState.STALLED},
            where=[Chain.state == ChainState.ACTIVE],
        )
        stalled += 1
        payload = stall_payload([write.chain_id])

    else:
        raise TypeError(f"Unknown rotation write {write!r}")

    await db.commit()
    report.created += created
    report.expired += expired
    report.stalled += stalled
    return payload


async def apply_rotation(
    db: AsyncSession,
    writes: List[RotationWrite],
    now: datetime,
    policy: Optional[RotationPolicy] = None,
    notifier: Optional[Notifier] = None,
) -> RotationReport:
    policy = policy or RotationPolicy.from_settings()
    report = RotationReport()
    for write in writes:
        try:
            payload = await _apply_one(db, write, now, policy, report)
        except VersionConflict:
            await db.rollback()
            report.discarded += 1
            logger.debug("Rotation write discarded, lost race: %s", write)
            continue
        except Exception as e:
            await db.rollback()
            report.failed += 1
            report.errors.append(f"{type(write).__name__}: {e}")
            logger.exception("Rotation write failed: %s", write)
            continue
        if payload is not None and notifier is not None:
            await notifier.publish(session_topic(write.session_id), payload)
    return report


async def rotate(
    db: AsyncSession,
    now: Optional[datetime] = None,
    policy: Optional[RotationPolicy] = None,
    notifier: Optional[Notifier] = None,
) -> RotationReport:
    now = now or utcnow()
    policy = policy or RotationPolicy.from_settings()
    snapshot = await load_snapshot(db)
    writes = plan_rotation(now, snapshot, policy)
    report = await apply_rotation(db, writes, now, policy, notifier)
    if report.changed or report.failed:
        logger.info(
            "Rotation: %d created, %d expired, %d stalled, %d discarded, %d failed",
            report.created, report.expired, report.stalled, report.discarded, report.failed,
        )
    return report


async def run_rotation_loop(session_factory, interval: Optional[float] = None, notifier: Optional[Notifier] = None) -> None:
    """Tick forever; cancel the task to stop."""
    interval = settings.ROTATION_INTERVAL_SECONDS if interval is None else interval
    notifier = notifier or get_notifier()
    logger.info("Rotation loop started (every %ss)", interval)
    while True:
        try:
            async with session_factory() as db:
                await rotate(db, notifier=notifier)
        except Exception:
            logger.exception("Rotation tick failed")
        await asyncio.sleep(interval)
