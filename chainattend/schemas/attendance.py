from pydantic import BaseModel
from datetime import datetime
from typing import Optional

from chainattend.models.enums import EntryStatus, EntryMethod, FinalStatus


class OnlineUpdate(BaseModel):
    is_online: bool = True


class AttendanceResponse(BaseModel):
    session_id: str
    student_id: str
    entry_status: Optional[EntryStatus]
    entry_at: Optional[datetime]
    entry_method: Optional[EntryMethod]
    exit_verified: bool
    exit_verified_at: Optional[datetime]
    early_leave_at: Optional[datetime]
    is_online: bool
    last_seen_at: Optional[datetime]
    joined_at: datetime
    final_status: Optional[FinalStatus]  # set when the session ends

    model_config = {"from_attributes": True}
