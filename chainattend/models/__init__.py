# Importing this package registers every table on Base

from chainattend.database import Base
from chainattend.models.session import ClassSession
from chainattend.models.attendance import AttendanceRecord
from chainattend.models.chain import Chain, ChainHistory
from chainattend.models.token import Token
from chainattend.models.scan_log import ScanLog
from chainattend.models.snapshot import AttendanceSnapshot

__all__ = ["Base", "ClassSession", "AttendanceRecord", "Chain", "ChainHistory", "Token", "ScanLog", "AttendanceSnapshot"]
