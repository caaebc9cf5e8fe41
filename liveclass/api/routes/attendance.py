from fastapi import APIRouter, Depends, Body
from sqlalchemy.orm import Session
from liveclass.dependencies.db import get_db
from liveclass.dependencies.auth import get_current_user, get_current_instructor
from liveclass.models.attendance import Attendance
from liveclass.models.user import User
from liveclass.schemas.attendance import (
    AttendanceRecord, AttendanceStats, SessionAttendanceResponse, LeaveResponse,
    AttendanceMark, BulkAttendanceMark, BulkAttendanceResponse, AttendanceUpdate,
    StudentAttendanceRecord, StudentAttendanceResponse, CourseAttendanceStatsResponse,
)
from liveclass.services.attendance_tracker import (
    get_session_attendance_stats, update_attendance_on_leave,
    mark_attendance, mark_bulk_attendance, update_attendance,
    get_student_course_attendance, get_course_attendance_stats,
)
from liveclass.services.session_service import get_session_or_404, ensure_course_owner, ensure_session_access

router = APIRouter(
    dependencies=[Depends(get_current_user)]
)


@router.post("", response_model=AttendanceRecord, status_code=201, summary="학생 출석 기록 (강의자)")
def mark(
    mark_in: AttendanceMark = Body(...),
    db: Session = Depends(get_db),
    instructor: User = Depends(get_current_instructor),
):
    """
    강의자가 본인 강의 세션에 학생 한 명의 출석 상태(present/absent/late/excused)를 기록합니다.
    - 이미 기록이 있으면 상태와 메모를 덮어씁니다.
    - 수강중이 아닌 학생이면 400 반환
    """
    return mark_attendance(db, instructor, mark_in)


@router.post("/bulk", response_model=BulkAttendanceResponse, summary="여러 학생 출석 일괄 기록 (강의자)")
def mark_bulk(
    bulk_in: BulkAttendanceMark = Body(...),
    db: Session = Depends(get_db),
    instructor: User = Depends(get_current_instructor),
):
    result = mark_bulk_attendance(db, instructor, bulk_in)
    return BulkAttendanceResponse(**result)


@router.get("/session/{session_id}", response_model=SessionAttendanceResponse, summary="세션 출석 현황 (강의자)")
def get_session_attendance(
    session_id: int,
    db: Session = Depends(get_db),
    instructor: User = Depends(get_current_instructor),
):
    session = get_session_or_404(db, session_id)
    ensure_course_owner(session, instructor, "Not authorized to view attendance for this session")
    records = (
        db.query(Attendance)
        .filter(Attendance.session_id == session_id)
        .order_by(Attendance.join_time)
        .all()
    )
    return SessionAttendanceResponse(
        records=[AttendanceRecord.model_validate(r) for r in records],
        stats=AttendanceStats(**get_session_attendance_stats(db, session_id)),
    )


@router.post("/session/{session_id}/leave", response_model=LeaveResponse, summary="세션 퇴장 기록 (학생)")
def leave_session(session_id: int, db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    """
    학생이 라이브 세션에서 나갈 때 열린 출석 기록의 퇴장 시각과 참여 시간(분)을 기록합니다.
    """
    session = get_session_or_404(db, session_id)
    ensure_session_access(db, session, user)
    record = update_attendance_on_leave(db, session_id, user.id)
    if not record:
        return LeaveResponse(message="No open attendance record")
    return LeaveResponse(record=AttendanceRecord.model_validate(record), message="Attendance updated")


@router.get(
    "/student/{student_id}/course/{course_id}",
    response_model=StudentAttendanceResponse,
    summary="학생별 강의 출석 기록",
)
def get_student_attendance(
    student_id: int,
    course_id: int,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    """
    강의자는 본인 강의 수강생의 기록을, 학생은 본인 기록만 조회할 수 있습니다.
    """
    rows = get_student_course_attendance(db, user, student_id, course_id)
    records = []
    for attendance, session in rows:
        record = StudentAttendanceRecord.model_validate(attendance)
        record.session_title = session.title
        record.session_start_time = session.start_time
        record.session_end_time = session.end_time
        records.append(record)
    return StudentAttendanceResponse(count=len(records), records=records)


@router.get("/stats/course/{course_id}", response_model=CourseAttendanceStatsResponse, summary="강의 출석 통계 (강의자)")
def get_course_stats(
    course_id: int,
    db: Session = Depends(get_db),
    instructor: User = Depends(get_current_instructor),
):
    return CourseAttendanceStatsResponse(**get_course_attendance_stats(db, instructor, course_id))


@router.put("/{attendance_id}", response_model=AttendanceRecord, summary="출석 기록 수정 (강의자)")
def update(
    attendance_id: int,
    update_in: AttendanceUpdate = Body(...),
    db: Session = Depends(get_db),
    instructor: User = Depends(get_current_instructor),
):
    """
    상태, 메모, 입장/퇴장 시각을 고칩니다. 입장과 퇴장 시각이 모두 있으면 참여 시간(분)을 다시 계산합니다.
    """
    return update_attendance(db, instructor, attendance_id, update_in)
