import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from liveclass.core.exceptions import AttendanceNotFound, Forbidden, InvalidAttendance, SessionNotFound
from liveclass.models.attendance import ATTENDANCE_STATUSES, Attendance
from liveclass.models.class_session import ClassSession
from liveclass.models.course import Course
from liveclass.models.enrollment import Enrollment
from liveclass.models.user import User
from liveclass.schemas.attendance import AttendanceMark, AttendanceUpdate, BulkAttendanceMark
from liveclass.services.session_service import ensure_course_owner, get_session_or_404, is_enrolled
from liveclass.services.session_status import as_utc, utcnow

logger = logging.getLogger(__name__)


def _duration_minutes(join_time: datetime, leave_time: datetime) -> int:
    return round((as_utc(leave_time) - as_utc(join_time)).total_seconds() / 60)


def _open_record(db: Session, session_id: int, student_id: int) -> Optional[Attendance]:
    return (
        db.query(Attendance)
        .filter(
            Attendance.session_id == session_id,
            Attendance.student_id == student_id,
            Attendance.join_time.isnot(None),
            Attendance.leave_time.is_(None),
        )
        .order_by(Attendance.join_time.desc())
        .first()
    )


def record_attendance_on_join(db: Session, session_id: int, student_id: int, now: datetime = None) -> Attendance:
    """
    학생 입장 시 출석 기록 생성. 열린 기록(leave_time 없음)이 있으면 그대로 돌려준다.
    commit 은 호출하는 쪽에서 한다.
    """
    existing = _open_record(db, session_id, student_id)
    if existing:
        logger.info(f"Student {student_id} already has an open attendance record for session {session_id}")
        return existing

    attendance = Attendance(
        session_id=session_id,
        student_id=student_id,
        status="present",
        join_time=now or utcnow(),
    )
    db.add(attendance)
    return attendance


def update_attendance_on_leave(db: Session, session_id: int, student_id: int, now: datetime = None) -> Optional[Attendance]:
    record = _open_record(db, session_id, student_id)
    if not record:
        logger.info(f"No open attendance record found for student {student_id} in session {session_id}")
        return None

    record.leave_time = now or utcnow()
    record.duration_minutes = _duration_minutes(record.join_time, record.leave_time)
    db.commit()
    db.refresh(record)
    return record


def close_all_attendance_records(db: Session, session_id: int, now: datetime = None) -> int:
    """세션 종료 시 열린 출석 기록을 모두 닫는다. commit 은 호출하는 쪽에서 한다."""
    now = now or utcnow()
    open_records = db.query(Attendance).filter(
        Attendance.session_id == session_id,
        Attendance.join_time.isnot(None),
        Attendance.leave_time.is_(None),
    ).all()
    for record in open_records:
        record.leave_time = now
        record.duration_minutes = _duration_minutes(record.join_time, now)
    return len(open_records)


def get_session_attendance_stats(db: Session, session_id: int) -> dict:
    per_student = (
        db.query(
            Attendance.student_id,
            func.sum(Attendance.duration_minutes).label("total_duration"),
            func.count(Attendance.id).label("join_count"),
        )
        .filter(Attendance.session_id == session_id, Attendance.join_time.isnot(None))
        .group_by(Attendance.student_id)
        .all()
    )
    if not per_student:
        return {
            "unique_students": 0,
            "average_duration_minutes": 0,
            "max_duration_minutes": 0,
            "total_joins": 0,
        }

    durations = [row.total_duration or 0 for row in per_student]
    return {
        "unique_students": len(per_student),
        "average_duration_minutes": round(sum(durations) / len(durations)),
        "max_duration_minutes": max(durations),
        "total_joins": sum(row.join_count for row in per_student),
    }


# --- 강의자가 직접 기록/수정하는 출석 ---

def _latest_record(db: Session, session_id: int, student_id: int) -> Optional[Attendance]:
    return (
        db.query(Attendance)
        .filter(Attendance.session_id == session_id, Attendance.student_id == student_id)
        .order_by(Attendance.id.desc())
        .first()
    )


def _apply_mark(record: Attendance, status: str, notes: Optional[str], now: datetime) -> None:
    record.status = status
    if notes is not None:
        record.notes = notes
    # 출석으로 바꾸는데 입장 시각이 없으면 지금으로 채운다
    if status == "present" and record.join_time is None:
        record.join_time = now


def _owned_session(db: Session, session_id: int, user: User) -> ClassSession:
    session = get_session_or_404(db, session_id)
    ensure_course_owner(session, user, "Not authorized to mark attendance for this session")
    return session


def mark_attendance(db: Session, user: User, mark_in: AttendanceMark, now: datetime = None) -> Attendance:
    """
    강의자가 학생 한 명의 출석 상태를 기록한다.
    같은 세션에 기록이 있으면 가장 최근 기록을 고치고, 없으면 새로 만든다.
    """
    session = _owned_session(db, mark_in.session_id, user)
    if not is_enrolled(db, session.course_id, mark_in.student_id):
        raise InvalidAttendance("Student is not enrolled in this course")

    now = now or utcnow()
    record = _latest_record(db, session.id, mark_in.student_id)
    if record is None:
        record = Attendance(session_id=session.id, student_id=mark_in.student_id, notes="")
        db.add(record)
    _apply_mark(record, mark_in.status, mark_in.notes, now)
    db.commit()
    db.refresh(record)
    logger.info(f"Marked student {mark_in.student_id} as {mark_in.status} for session {session.id}")
    return record


def mark_bulk_attendance(db: Session, user: User, bulk_in: BulkAttendanceMark, now: datetime = None) -> dict:
    session = _owned_session(db, bulk_in.session_id, user)
    enrolled = {
        row[0]
        for row in db.query(Enrollment.student_id).filter(
            Enrollment.course_id == session.course_id,
            Enrollment.status == "active",
        ).all()
    }
    # 한 명이라도 수강생이 아니면 아무것도 기록하지 않는다
    for entry in bulk_in.records:
        if entry.student_id not in enrolled:
            raise InvalidAttendance(f"Student {entry.student_id} is not enrolled in this course")

    now = now or utcnow()
    matched = upserted = 0
    for entry in bulk_in.records:
        record = _latest_record(db, session.id, entry.student_id)
        if record is None:
            record = Attendance(session_id=session.id, student_id=entry.student_id, notes="")
            db.add(record)
            db.flush()
            upserted += 1
        else:
            matched += 1
        _apply_mark(record, entry.status, entry.notes or "", now)
    db.commit()
    logger.info(f"Bulk attendance for session {session.id}: {matched} updated, {upserted} created")
    return {"matched": matched, "upserted": upserted}


def update_attendance(db: Session, user: User, attendance_id: int, update_in: AttendanceUpdate) -> Attendance:
    record = db.query(Attendance).filter(Attendance.id == attendance_id).first()
    if not record:
        raise AttendanceNotFound()
    session = db.query(ClassSession).filter(ClassSession.id == record.session_id).first()
    if not session:
        raise SessionNotFound("Associated session not found")
    ensure_course_owner(session, user, "Not authorized to update this attendance record")

    changes = update_in.model_dump(exclude_unset=True, exclude_none=True)
    for key in ("join_time", "leave_time"):
        if key in changes:
            changes[key] = as_utc(changes[key])
    join_time = changes.get("join_time", record.join_time)
    leave_time = changes.get("leave_time", record.leave_time)
    if join_time is not None and leave_time is not None and as_utc(leave_time) < as_utc(join_time):
        raise InvalidAttendance("Leave time must be after join time")

    for field, value in changes.items():
        setattr(record, field, value)
    if record.join_time is not None and record.leave_time is not None:
        record.duration_minutes = _duration_minutes(record.join_time, record.leave_time)

    db.commit()
    db.refresh(record)
    return record


# --- 학생별 / 강의별 조회 ---

def _get_course_or_404(db: Session, course_id: int) -> Course:
    course = db.query(Course).filter(Course.id == course_id).first()
    if not course:
        raise SessionNotFound("Course not found")
    return course


def get_student_course_attendance(db: Session, user: User, student_id: int, course_id: int) -> list[tuple[Attendance, ClassSession]]:
    """
    한 학생의 강의 전체 출석 기록 (세션 시작 순).
    강의자는 본인 강의만, 학생은 본인 기록만 볼 수 있다.
    """
    course = _get_course_or_404(db, course_id)
    if user.is_instructor:
        if course.instructor_id != user.id:
            raise Forbidden("Not authorized to view attendance for this course")
    elif user.id != student_id:
        raise Forbidden("Not authorized to view another student's attendance")
    if not is_enrolled(db, course_id, student_id):
        raise InvalidAttendance("Student is not enrolled in this course")

    return (
        db.query(Attendance, ClassSession)
        .join(ClassSession, ClassSession.id == Attendance.session_id)
        .filter(ClassSession.course_id == course_id, Attendance.student_id == student_id)
        .order_by(ClassSession.start_time, Attendance.id)
        .all()
    )


def get_course_attendance_stats(db: Session, user: User, course_id: int) -> dict:
    course = _get_course_or_404(db, course_id)
    if not user.is_instructor or course.instructor_id != user.id:
        raise Forbidden("Not authorized to view attendance stats for this course")

    total_sessions = db.query(func.count(ClassSession.id)).filter(ClassSession.course_id == course_id).scalar()
    students = (
        db.query(User)
        .join(Enrollment, Enrollment.student_id == User.id)
        .filter(Enrollment.course_id == course_id, Enrollment.status == "active")
        .order_by(User.name)
        .all()
    )
    # 재입장으로 기록이 여러 개여도 세션 단위로 센다
    rows = (
        db.query(
            Attendance.student_id,
            Attendance.status,
            func.count(func.distinct(Attendance.session_id)),
        )
        .join(ClassSession, ClassSession.id == Attendance.session_id)
        .filter(ClassSession.course_id == course_id)
        .group_by(Attendance.student_id, Attendance.status)
        .all()
    )
    counts: dict = {}
    for student_id, status, count in rows:
        counts.setdefault(student_id, {})[status] = count

    per_student = []
    for student in students:
        by_status = {status: counts.get(student.id, {}).get(status, 0) for status in ATTENDANCE_STATUSES}
        total = sum(by_status.values())
        attended = by_status["present"] + by_status["late"]
        per_student.append({
            "student_id": student.id,
            "name": student.name,
            **by_status,
            "total": total,
            "percentage": round(attended / total * 100) if total else 0,
        })

    return {
        "total_sessions": total_sessions,
        "total_students": len(students),
        "students": per_student,
    }
