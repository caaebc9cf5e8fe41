"""
라이브 세션 상태 관리 (Scheduled -> Active -> Completed)

- start: 강의자 전용. 방이 없으면 만들고 is_active = True
- join: 입장 가능 시간이면 저장된 방을 돌려준다. 학생은 출석 기록 생성
- end: 강의자 전용. is_active = False (+ 필요하면 is_completed = True), 열린 출석 기록 마감
- complete: end(is_completed=True) 와 같고 녹화 URL 을 저장. 이미 완료된 세션이면 아무것도 하지 않음

start/join 에서 DB 저장이 실패하면 에러를 올리지 않고 임시(fallback) 방을 만들어 돌려준다.
원래 에러는 로그로 남긴다. end/complete 실패는 PersistenceUnavailable 로 그대로 알린다.
"""
import enum
import logging
from datetime import datetime

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from liveclass.core.exceptions import Forbidden, NotJoinable, PersistenceUnavailable
from liveclass.models.class_session import ClassSession
from liveclass.models.user import User
from liveclass.schemas.session import RoomAssignment, SessionStatusResponse
from liveclass.services.attendance_tracker import record_attendance_on_join, close_all_attendance_records
from liveclass.services.room_identity import fallback_room_name, build_video_link
from liveclass.services.session_service import (
    get_session_or_404, ensure_course_owner, ensure_session_access, assign_room, course_seed,
)
from liveclass.services.session_status import (
    evaluate, not_joinable_reason, time_until_joinable, utcnow,
)

logger = logging.getLogger(__name__)

# 동시 수정(StaleDataError) 시 다시 시도하는 횟수
MAX_WRITE_ATTEMPTS = 2


class SessionState(str, enum.Enum):
    SCHEDULED = "scheduled"
    ACTIVE = "active"
    COMPLETED = "completed"


def state_of(session: ClassSession) -> SessionState:
    if session.is_completed:
        return SessionState.COMPLETED
    if session.is_active:
        return SessionState.ACTIVE
    return SessionState.SCHEDULED


def _assignment(session: ClassSession, message: str = None) -> RoomAssignment:
    return RoomAssignment(
        session_id=session.id,
        meeting_id=session.meeting_id,
        video_link=session.video_link or build_video_link(session.meeting_id),
        video_provider=session.video_provider,
        message=message,
    )


def _fallback_assignment(session_id: int, operation: str, error: Exception) -> RoomAssignment:
    room_name = fallback_room_name()
    logger.error(
        f"{operation} for session {session_id} failed to persist, using fallback room {room_name}",
        exc_info=error,
    )
    return RoomAssignment(
        session_id=session_id,
        meeting_id=room_name,
        video_link=build_video_link(room_name),
        is_fallback=True,
        message="Using fallback video room due to server issues",
    )


def _ensure_joinable(session: ClassSession, now: datetime, role: str) -> None:
    status = evaluate(session, now, role)
    if not status.can_join:
        remaining = time_until_joinable(session, now, role)
        raise NotJoinable(
            not_joinable_reason(session, now, role),
            remaining_seconds=int(remaining.total_seconds()) if remaining else None,
        )


def _reload(db: Session, session_id: int) -> ClassSession:
    db.rollback()
    return get_session_or_404(db, session_id)


def start_session(db: Session, session_id: int, user: User, now: datetime = None) -> RoomAssignment:
    now = now or utcnow()
    if not user.is_instructor:
        raise Forbidden("Only instructors can start sessions")

    try:
        session = get_session_or_404(db, session_id)
        ensure_course_owner(session, user, "Not authorized to start this session")
    except SQLAlchemyError as e:
        db.rollback()
        return _fallback_assignment(session_id, "start", e)

    last_error = None
    for attempt in range(1, MAX_WRITE_ATTEMPTS + 1):
        _ensure_joinable(session, now, user.role)
        if session.is_active and session.meeting_id:
            return _assignment(session, "Session is already active")
        try:
            if not session.meeting_id:
                assign_room(session, course_seed(session.course))
            session.is_active = True
            session.activated_at = now
            db.commit()
            db.refresh(session)
            logger.info(f"Session {session.id} started in room {session.meeting_id}")
            return _assignment(session, "Session started successfully")
        except StaleDataError as e:
            logger.warning(f"Session {session_id} was modified concurrently (attempt {attempt})")
            try:
                session = _reload(db, session_id)
            except SQLAlchemyError as reload_error:
                db.rollback()
                return _fallback_assignment(session_id, "start", reload_error)
            last_error = e
        except SQLAlchemyError as e:
            db.rollback()
            return _fallback_assignment(session_id, "start", e)

    return _fallback_assignment(session_id, "start", last_error)


def join_session(db: Session, session_id: int, user: User, now: datetime = None) -> RoomAssignment:
    now = now or utcnow()
    try:
        session = get_session_or_404(db, session_id)
        ensure_session_access(db, session, user)
    except SQLAlchemyError as e:
        db.rollback()
        return _fallback_assignment(session_id, "join", e)

    last_error = None
    for attempt in range(1, MAX_WRITE_ATTEMPTS + 1):
        _ensure_joinable(session, now, user.role)
        try:
            # 아직 방이 없으면 여기서 만들어 저장해 두어야 강의자가 나중에 같은 방으로 들어온다
            if not session.meeting_id:
                assign_room(session, course_seed(session.course))
            if not user.is_instructor:
                record_attendance_on_join(db, session.id, user.id, now)
            db.commit()
            db.refresh(session)
            return _assignment(session)
        except StaleDataError as e:
            logger.warning(f"Session {session_id} was modified concurrently while joining (attempt {attempt})")
            try:
                session = _reload(db, session_id)
            except SQLAlchemyError as reload_error:
                db.rollback()
                return _fallback_assignment(session_id, "join", reload_error)
            last_error = e
        except SQLAlchemyError as e:
            db.rollback()
            return _fallback_assignment(session_id, "join", e)

    return _fallback_assignment(session_id, "join", last_error)


def end_session(
    db: Session,
    session_id: int,
    user: User,
    is_completed: bool = False,
    recording_url: str = None,
    now: datetime = None,
) -> ClassSession:
    now = now or utcnow()
    if not user.is_instructor:
        raise Forbidden("Only instructors can end sessions")

    try:
        session = get_session_or_404(db, session_id)
        ensure_course_owner(session, user, "Not authorized to end this session")
        session.is_active = False
        if is_completed:
            session.is_completed = True
        if recording_url:
            session.recording_url = recording_url
        closed = close_all_attendance_records(db, session.id, now)
        db.commit()
        db.refresh(session)
    except SQLAlchemyError as e:
        db.rollback()
        logger.exception(f"Failed to end session {session_id}")
        raise PersistenceUnavailable("Failed to end session. Please try again.") from e

    logger.info(f"Session {session.id} ended (completed={session.is_completed}), closed {closed} attendance records")
    return session


def complete_session(db: Session, session_id: int, user: User, recording_url: str = None) -> ClassSession:
    if not user.is_instructor:
        raise Forbidden("Only instructors can complete sessions")

    try:
        session = get_session_or_404(db, session_id)
        # course 관계를 지연 로딩하므로 DB 오류 처리 범위 안에서 확인한다
        ensure_course_owner(session, user, "Not authorized to update this session")
        already_completed = session.is_completed
    except SQLAlchemyError as e:
        db.rollback()
        raise PersistenceUnavailable("Failed to complete session. Please try again.") from e

    if already_completed:
        logger.info(f"Session {session_id} is already completed")
        return session
    return end_session(db, session_id, user, is_completed=True, recording_url=recording_url)


def get_session_status(db: Session, session_id: int, user: User, now: datetime = None) -> SessionStatusResponse:
    now = now or utcnow()
    session = get_session_or_404(db, session_id)
    ensure_session_access(db, session, user)
    status = evaluate(session, now, user.role)
    return SessionStatusResponse(
        session_id=session.id,
        is_active=session.is_active,
        is_completed=session.is_completed,
        activated_at=session.activated_at,
        timing_status=status.timing_status,
        can_join=status.can_join,
        message=None if status.can_join else not_joinable_reason(session, now, user.role),
    )
