from sqlalchemy import Column, Integer, String, Enum, Index
from chainattend.database import Base
from chainattend.models.enums import ChainPhase, ChainState
from chainattend.models.types import UTCDateTime, utcnow


class Chain(Base):
    __tablename__ = "chains"

    session_id = Column(String(64), primary_key=True)
    chain_id = Column(String(64), primary_key=True)
    phase = Column(Enum(ChainPhase, native_enum=False, length=16), nullable=False)
    seed_index = Column(Integer, nullable=False, default=0)
    state = Column(Enum(ChainState, native_enum=False, length=16), nullable=False, default=ChainState.ACTIVE)
    last_holder = Column(String, nullable=True)
    last_seq = Column(Integer, nullable=False, default=0)
    last_at = Column(UTCDateTime, nullable=False)
    version = Column(Integer, nullable=False, default=1)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
    completed_at = Column(UTCDateTime, nullable=True)
    snapshot_id = Column(String(64), nullable=True, index=True)  # SNAPSHOT chains only

    def __repr__(self):
        return f"<Chain(id={self.chain_id}, phase={self.phase}, seq={self.last_seq}, state={self.state})>"


class ChainHistory(Base):
    """Append-only hop log. The (chain_id, sequence) key rules out duplicate sequences."""

    __tablename__ = "chain_history"

    chain_id = Column(String(64), primary_key=True)
    sequence = Column(Integer, primary_key=True, autoincrement=False)
    session_id = Column(String(64), nullable=False)
    from_holder = Column(String, nullable=False)
    to_holder = Column(String, nullable=False)
    scanned_at = Column(UTCDateTime, nullable=False)
    phase = Column(Enum(ChainPhase, native_enum=False, length=16), nullable=False)

    __table_args__ = (Index("ix_chain_history_session", "session_id"),)
