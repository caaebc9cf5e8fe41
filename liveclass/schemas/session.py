from datetime import datetime
from typing import Optional, List

from pydantic import BaseModel, model_validator

from liveclass.services.session_status import as_utc


class SessionCreate(BaseModel):
    course_id: int
    title: str
    description: str = ""
    start_time: datetime
    end_time: datetime

    @model_validator(mode="after")
    def check_schedule(self):
        if as_utc(self.end_time) <= as_utc(self.start_time):
            raise ValueError("End time must be after start time")
        return self


class SessionUpdate(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None


class SessionResponse(BaseModel):
    id: int
    course_id: int
    title: str
    description: str
    start_time: datetime
    end_time: datetime
    is_active: bool
    is_completed: bool
    meeting_id: Optional[str] = None
    video_link: Optional[str] = None
    video_provider: str
    recording_url: Optional[str] = None
    activated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class SessionDetailResponse(SessionResponse):
    course_title: Optional[str] = None
    is_instructor: bool = False


class SessionListResponse(BaseModel):
    count: int
    sessions: List[SessionResponse]


class RoomAssignment(BaseModel):
    session_id: int
    meeting_id: str
    video_link: str
    video_provider: str = "jitsi"
    # 저장 실패 등으로 임시 방을 만들어 준 경우 True
    is_fallback: bool = False
    message: Optional[str] = None


class SessionEndRequest(BaseModel):
    is_completed: bool = False
    recording_url: Optional[str] = None


class SessionCompleteRequest(BaseModel):
    recording_url: Optional[str] = None


class SessionStatusResponse(BaseModel):
    session_id: int
    is_active: bool
    is_completed: bool
    activated_at: Optional[datetime] = None
    timing_status: str
    can_join: bool
    message: Optional[str] = None
