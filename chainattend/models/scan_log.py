from sqlalchemy import Column, Integer, String, Float, Text, Enum
from chainattend.database import Base
from chainattend.models.enums import ScanFlow
from chainattend.models.types import UTCDateTime, utcnow


class ScanLog(Base):
    __tablename__ = "scan_logs"

    id = Column(Integer, primary_key=True, index=True)
    session_id = Column(String(64), nullable=True, index=True)
    flow = Column(Enum(ScanFlow, native_enum=False, length=20), nullable=False)
    token_id = Column(String, nullable=True)
    holder_id = Column(String, nullable=True)
    scanner_id = Column(String, nullable=True)
    device_fingerprint = Column(String, nullable=True)
    ip = Column(String, nullable=True)
    bssid = Column(String, nullable=True)
    latitude = Column(Float, nullable=True)
    longitude = Column(Float, nullable=True)
    user_agent = Column(String, nullable=True)
    result = Column(String, nullable=False)  # "SUCCESS" or an error code
    error = Column(Text, nullable=True)
    warning = Column(String, nullable=True)
    scanned_at = Column(UTCDateTime, nullable=False, default=utcnow)
