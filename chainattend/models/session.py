from sqlalchemy import Column, Integer, String, Boolean, Float, Enum
from chainattend.database import Base
from chainattend.models.enums import SessionStatus
from chainattend.models.types import UTCDateTime, utcnow


class ClassSession(Base):
    __tablename__ = "sessions"

    id = Column(String(64), primary_key=True)
    teacher_id = Column(String, nullable=False, index=True)
    class_id = Column(String, nullable=True)
    start_at = Column(UTCDateTime, nullable=False)
    end_at = Column(UTCDateTime, nullable=False)
    late_cutoff_minutes = Column(Integer, nullable=False, default=15)
    exit_window_minutes = Column(Integer, nullable=False, default=10)
    status = Column(Enum(SessionStatus, native_enum=False, length=16), nullable=False, default=SessionStatus.ACTIVE)

    # Standalone QR windows: flag + pointer to the token currently on display
    late_entry_active = Column(Boolean, nullable=False, default=False)
    current_late_token_id = Column(String, nullable=True)
    early_leave_active = Column(Boolean, nullable=False, default=False)
    current_early_token_id = Column(String, nullable=True)

    # Optional geofence
    latitude = Column(Float, nullable=True)
    longitude = Column(Float, nullable=True)
    radius_meters = Column(Float, nullable=True)
    enforce_geofence = Column(Boolean, nullable=False, default=False)
    require_location = Column(Boolean, nullable=False, default=False)

    version = Column(Integer, nullable=False, default=1)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
    ended_at = Column(UTCDateTime, nullable=True)

    @property
    def has_geofence(self) -> bool:
        return self.latitude is not None and self.longitude is not None and bool(self.radius_meters)

    def __repr__(self):
        return f"<ClassSession(id={self.id}, status={self.status})>"
