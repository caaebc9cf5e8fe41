import logging
from datetime import datetime, timedelta

from sqlalchemy.orm import Session

from liveclass.core.exceptions import Forbidden, SessionNotFound, SessionInUse, InvalidSchedule
from liveclass.models.attendance import Attendance
from liveclass.models.class_session import ClassSession
from liveclass.models.course import Course
from liveclass.models.enrollment import Enrollment
from liveclass.models.user import User
from liveclass.schemas.session import SessionCreate, SessionUpdate, SessionDetailResponse
from liveclass.services.room_identity import generate_room_name, build_video_link
from liveclass.services.session_status import as_utc, utcnow

logger = logging.getLogger(__name__)

UPCOMING_LIMIT = 10
PAST_LIMIT = 20


def get_session_or_404(db: Session, session_id: int) -> ClassSession:
    session = db.query(ClassSession).filter(ClassSession.id == session_id).first()
    if not session:
        raise SessionNotFound()
    return session


def is_course_owner(session: ClassSession, user: User) -> bool:
    return user.is_instructor and session.course.instructor_id == user.id


def is_enrolled(db: Session, course_id: int, student_id: int) -> bool:
    return db.query(Enrollment).filter(
        Enrollment.course_id == course_id,
        Enrollment.student_id == student_id,
        Enrollment.status == "active",
    ).first() is not None


def ensure_course_owner(session: ClassSession, user: User, detail: str) -> None:
    if not is_course_owner(session, user):
        raise Forbidden(detail)


def ensure_session_access(db: Session, session: ClassSession, user: User) -> None:
    """본인 강의의 강의자이거나 수강중인 학생만 세션에 접근할 수 있다."""
    if is_course_owner(session, user):
        return
    if not user.is_instructor and is_enrolled(db, session.course_id, user.id):
        return
    if user.is_instructor:
        raise Forbidden("Not authorized to access this session")
    raise Forbidden("You are not enrolled in this course")


def assign_room(session: ClassSession, seed: str) -> None:
    room_name = generate_room_name(seed)
    session.meeting_id = room_name
    session.video_link = build_video_link(room_name)


def course_seed(course: Course) -> str:
    return (course.title or "").replace(" ", "")[:10]


def _visible_course_ids(db: Session, user: User) -> list[int]:
    if user.is_instructor:
        rows = db.query(Course.id).filter(Course.instructor_id == user.id).all()
    else:
        rows = db.query(Enrollment.course_id).filter(
            Enrollment.student_id == user.id,
            Enrollment.status == "active",
        ).all()
    return [row[0] for row in rows]


def create_session(db: Session, user: User, session_in: SessionCreate) -> ClassSession:
    course = db.query(Course).filter(Course.id == session_in.course_id).first()
    if not course:
        raise SessionNotFound("Course not found")
    if not user.is_instructor or course.instructor_id != user.id:
        raise Forbidden("Not authorized to create sessions for this course")

    session = ClassSession(
        course_id=course.id,
        title=session_in.title,
        description=session_in.description,
        start_time=as_utc(session_in.start_time),
        end_time=as_utc(session_in.end_time),
    )
    assign_room(session, course_seed(course))
    db.add(session)
    db.commit()
    db.refresh(session)
    logger.info(f"Created session {session.id} for course {course.id} with room {session.meeting_id}")
    return session


def get_session_detail(db: Session, user: User, session_id: int) -> SessionDetailResponse:
    session = get_session_or_404(db, session_id)
    ensure_session_access(db, session, user)
    detail = SessionDetailResponse.model_validate(session)
    detail.course_title = session.course.title
    detail.is_instructor = is_course_owner(session, user)
    return detail


def get_sessions_by_course(db: Session, user: User, course_id: int) -> list[ClassSession]:
    course = db.query(Course).filter(Course.id == course_id).first()
    if not course:
        raise SessionNotFound("Course not found")
    if user.is_instructor and course.instructor_id != user.id:
        raise Forbidden("Not authorized to access sessions for this course")
    if not user.is_instructor and not is_enrolled(db, course_id, user.id):
        raise Forbidden("Not enrolled in this course")
    return db.query(ClassSession).filter(ClassSession.course_id == course_id).order_by(ClassSession.start_time).all()


def get_my_sessions(db: Session, user: User) -> list[ClassSession]:
    course_ids = _visible_course_ids(db, user)
    return (
        db.query(ClassSession)
        .filter(ClassSession.course_id.in_(course_ids))
        .order_by(ClassSession.start_time.desc())
        .all()
    )


def get_upcoming_sessions(db: Session, user: User, now: datetime = None) -> list[ClassSession]:
    now = now or utcnow()
    course_ids = _visible_course_ids(db, user)
    return (
        db.query(ClassSession)
        .filter(
            ClassSession.course_id.in_(course_ids),
            ClassSession.start_time > now,
            ClassSession.is_completed.is_(False),
        )
        .order_by(ClassSession.start_time)
        .limit(UPCOMING_LIMIT)
        .all()
    )


def get_past_sessions(db: Session, user: User, now: datetime = None) -> list[ClassSession]:
    now = now or utcnow()
    course_ids = _visible_course_ids(db, user)
    return (
        db.query(ClassSession)
        .filter(ClassSession.course_id.in_(course_ids), ClassSession.end_time < now)
        .order_by(ClassSession.start_time.desc())
        .limit(PAST_LIMIT)
        .all()
    )


def update_session(db: Session, user: User, session_id: int, session_in: SessionUpdate) -> ClassSession:
    session = get_session_or_404(db, session_id)
    ensure_course_owner(session, user, "Not authorized to update this session")

    changes = session_in.model_dump(exclude_unset=True, exclude_none=True)
    for key in ("start_time", "end_time"):
        if key in changes:
            changes[key] = as_utc(changes[key])
    start_time = changes.get("start_time", session.start_time)
    end_time = changes.get("end_time", session.end_time)
    if start_time is None or end_time is None:
        raise InvalidSchedule("Start time and end time are required")
    if as_utc(start_time) >= as_utc(end_time):
        # 종료 시각이 시작보다 앞서면 시작 + 1시간으로 맞춘다
        end_time = as_utc(start_time) + timedelta(hours=1)
        changes["end_time"] = end_time
        logger.info(f"Adjusted end_time to be 1 hour after start_time: {end_time}")

    title_changed = "title" in changes and changes["title"] != session.title
    for field, value in changes.items():
        setattr(session, field, value)

    # 진행중인 방은 그대로 유지하고, 시작 전인 세션만 새 방을 만든다
    if title_changed and not session.is_active:
        assign_room(session, course_seed(session.course))
        logger.info(f"Created new room for updated session {session.id}: {session.meeting_id}")

    db.commit()
    db.refresh(session)
    return session


def delete_session(db: Session, user: User, session_id: int) -> None:
    session = get_session_or_404(db, session_id)
    ensure_course_owner(session, user, "Not authorized to delete this session")
    referenced = db.query(Attendance).filter(Attendance.session_id == session_id).first()
    if referenced:
        raise SessionInUse("Session has attendance records and cannot be deleted")
    db.delete(session)
    db.commit()
