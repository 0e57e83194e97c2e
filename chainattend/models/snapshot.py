from sqlalchemy import Column, Integer, String, UniqueConstraint
from chainattend.database import Base
from chainattend.models.types import UTCDateTime


class AttendanceSnapshot(Base):
    """A presence check taken mid-session: SNAPSHOT chains started at one moment."""

    __tablename__ = "attendance_snapshots"

    session_id = Column(String(64), primary_key=True)
    snapshot_id = Column(String(64), primary_key=True)
    snapshot_index = Column(Integer, nullable=False)  # 1, 2, ... per session
    captured_at = Column(UTCDateTime, nullable=False)
    online_students = Column(Integer, nullable=False)
    chains_created = Column(Integer, nullable=False)
    notes = Column(String, nullable=True)

    __table_args__ = (UniqueConstraint("session_id", "snapshot_index", name="uq_snapshot_index"),)

    def __repr__(self):
        return f"<AttendanceSnapshot(session={self.session_id}, index={self.snapshot_index}, chains={self.chains_created})>"
