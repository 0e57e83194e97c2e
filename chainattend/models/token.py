from sqlalchemy import Column, Integer, String, Boolean, Enum, Index
from chainattend.database import Base
from chainattend.models.enums import TokenType, TokenStatus
from chainattend.models.types import UTCDateTime, utcnow


class Token(Base):
    __tablename__ = "tokens"

    session_id = Column(String(64), primary_key=True)
    token_id = Column(String(64), primary_key=True)
    type = Column(Enum(TokenType, native_enum=False, length=16), nullable=False)
    chain_id = Column(String(64), nullable=True)   # None for LATE_ENTRY / EARLY_LEAVE
    holder_id = Column(String, nullable=True)      # None for LATE_ENTRY / EARLY_LEAVE
    seq = Column(Integer, nullable=False, default=0)
    expires_at = Column(UTCDateTime, nullable=False)
    status = Column(Enum(TokenStatus, native_enum=False, length=16), nullable=False, default=TokenStatus.ACTIVE)
    single_use = Column(Boolean, nullable=False, default=True)
    version = Column(Integer, nullable=False, default=1)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)

    # Pending challenge: only the hash of the code is kept
    challenge_scanner_id = Column(String, nullable=True)
    challenge_code_hash = Column(String, nullable=True)
    challenge_expires_at = Column(UTCDateTime, nullable=True)

    __table_args__ = (
        Index("ix_tokens_chain", "session_id", "chain_id"),
        Index("ix_tokens_status_exp", "status", "expires_at"),
    )

    @property
    def etag(self) -> str:
        return str(self.version)

    def is_expired(self, now) -> bool:
        return self.expires_at <= now

    def __repr__(self):
        return f"<Token(id={self.token_id[:8]}, type={self.type}, holder={self.holder_id}, seq={self.seq}, status={self.status})>"
