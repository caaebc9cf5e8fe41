from datetime import datetime
from typing import Literal, Optional, List

from pydantic import BaseModel

AttendanceStatus = Literal["present", "absent", "late", "excused"]


class AttendanceRecord(BaseModel):
    id: int
    session_id: int
    student_id: int
    status: str
    notes: str = ""
    join_time: Optional[datetime] = None
    leave_time: Optional[datetime] = None
    duration_minutes: int

    class Config:
        from_attributes = True


class AttendanceStats(BaseModel):
    unique_students: int
    average_duration_minutes: int
    max_duration_minutes: int
    total_joins: int


class SessionAttendanceResponse(BaseModel):
    records: List[AttendanceRecord]
    stats: AttendanceStats


class LeaveResponse(BaseModel):
    record: Optional[AttendanceRecord] = None
    message: str


# --- 강의자 출석 기록 ---
class AttendanceEntry(BaseModel):
    student_id: int
    status: AttendanceStatus
    notes: Optional[str] = None


class AttendanceMark(AttendanceEntry):
    session_id: int


class BulkAttendanceMark(BaseModel):
    session_id: int
    records: List[AttendanceEntry]


class BulkAttendanceResponse(BaseModel):
    matched: int
    upserted: int
    message: str = "Bulk attendance marked successfully"


class AttendanceUpdate(BaseModel):
    status: Optional[AttendanceStatus] = None
    notes: Optional[str] = None
    join_time: Optional[datetime] = None
    leave_time: Optional[datetime] = None


# --- 학생별 / 강의별 조회 ---
class StudentAttendanceRecord(AttendanceRecord):
    session_title: Optional[str] = None
    session_start_time: Optional[datetime] = None
    session_end_time: Optional[datetime] = None


class StudentAttendanceResponse(BaseModel):
    count: int
    records: List[StudentAttendanceRecord]


class StudentAttendanceStats(BaseModel):
    student_id: int
    name: str
    present: int = 0
    absent: int = 0
    late: int = 0
    excused: int = 0
    total: int = 0
    percentage: int = 0


class CourseAttendanceStatsResponse(BaseModel):
    total_sessions: int
    total_students: int
    students: List[StudentAttendanceStats]
