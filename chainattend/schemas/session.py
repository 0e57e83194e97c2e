from pydantic import BaseModel, Field
from datetime import datetime
from typing import Optional

from chainattend.models.enums import SessionStatus


class SessionCreate(BaseModel):
    start_at: datetime
    end_at: datetime
    class_id: Optional[str] = None
    late_cutoff_minutes: Optional[int] = Field(None, ge=0)
    exit_window_minutes: Optional[int] = Field(None, ge=0)
    # Geofence (optional)
    latitude: Optional[float] = Field(None, ge=-90, le=90)
    longitude: Optional[float] = Field(None, ge=-180, le=180)
    radius_meters: Optional[float] = Field(None, gt=0)
    enforce_geofence: bool = False
    require_location: bool = False


class SessionResponse(BaseModel):
    id: str
    teacher_id: str
    class_id: Optional[str]
    start_at: datetime
    end_at: datetime
    late_cutoff_minutes: int
    exit_window_minutes: int
    status: SessionStatus
    late_entry_active: bool
    early_leave_active: bool
    latitude: Optional[float]
    longitude: Optional[float]
    radius_meters: Optional[float]
    enforce_geofence: bool
    require_location: bool
    created_at: datetime
    ended_at: Optional[datetime]

    model_config = {"from_attributes": True}
