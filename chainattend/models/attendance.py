from sqlalchemy import Column, String, Boolean, Enum
from chainattend.database import Base
from chainattend.models.enums import EntryStatus, EntryMethod, FinalStatus
from chainattend.models.types import UTCDateTime, utcnow


class AttendanceRecord(Base):
    __tablename__ = "attendance"

    session_id = Column(String(64), primary_key=True)
    student_id = Column(String, primary_key=True)

    # Milestones: each is written at most once
    entry_status = Column(Enum(EntryStatus, native_enum=False, length=16), nullable=True)
    entry_at = Column(UTCDateTime, nullable=True)
    entry_method = Column(Enum(EntryMethod, native_enum=False, length=16), nullable=True)
    exit_verified = Column(Boolean, nullable=False, default=False)
    exit_verified_at = Column(UTCDateTime, nullable=True)
    early_leave_at = Column(UTCDateTime, nullable=True)

    # Liveness
    is_online = Column(Boolean, nullable=False, default=False)
    last_seen_at = Column(UTCDateTime, nullable=True)
    joined_at = Column(UTCDateTime, nullable=False, default=utcnow)

    # Only populated once the session ends
    final_status = Column(Enum(FinalStatus, native_enum=False, length=16), nullable=True)

    def __repr__(self):
        return f"<AttendanceRecord(session={self.session_id}, student={self.student_id}, entry={self.entry_status})>"
