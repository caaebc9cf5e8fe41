from typing import Optional
from fastapi import APIRouter, Depends, Body
from sqlalchemy.orm import Session
from liveclass.dependencies.db import get_db
from liveclass.dependencies.auth import get_current_user, get_current_instructor
from liveclass.models.user import User
from liveclass.schemas.session import (
    SessionCreate, SessionUpdate, SessionResponse, SessionDetailResponse, SessionListResponse,
    RoomAssignment, SessionEndRequest, SessionCompleteRequest, SessionStatusResponse,
)
from liveclass.services.session_service import (
    create_session, get_session_detail, get_sessions_by_course, get_my_sessions,
    get_upcoming_sessions, get_past_sessions, update_session, delete_session,
)
from liveclass.services.session_lifecycle import (
    start_session, join_session, end_session, complete_session, get_session_status,
)

router = APIRouter(
    dependencies=[Depends(get_current_user)]
)


def _session_list(sessions) -> SessionListResponse:
    return SessionListResponse(
        count=len(sessions),
        sessions=[SessionResponse.model_validate(s) for s in sessions],
    )


@router.post("", response_model=SessionResponse, summary="세션 생성")
def create(
    session_in: SessionCreate = Body(...),
    db: Session = Depends(get_db),
    instructor: User = Depends(get_current_instructor),
):
    """
    강의자가 본인 강의에 수업 세션을 만듭니다.
    - 화상회의 방 이름(meeting_id)과 링크가 같이 만들어집니다.
    - 본인 강의가 아니면 403 반환
    """
    return create_session(db, instructor, session_in)


@router.get("", response_model=SessionListResponse, summary="내 세션 목록")
def list_my_sessions(db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    return _session_list(get_my_sessions(db, user))


@router.get("/upcoming", response_model=SessionListResponse, summary="예정된 세션 목록")
def list_upcoming_sessions(db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    return _session_list(get_upcoming_sessions(db, user))


@router.get("/past", response_model=SessionListResponse, summary="지난 세션 목록")
def list_past_sessions(db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    return _session_list(get_past_sessions(db, user))


@router.get("/course/{course_id}", response_model=SessionListResponse, summary="강의별 세션 목록")
def list_course_sessions(course_id: int, db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    return _session_list(get_sessions_by_course(db, user, course_id))


@router.get("/{session_id}", response_model=SessionDetailResponse, summary="세션 상세 조회")
def get_session(session_id: int, db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    return get_session_detail(db, user, session_id)


@router.put("/{session_id}", response_model=SessionResponse, summary="세션 수정")
def update(
    session_id: int,
    session_in: SessionUpdate = Body(...),
    db: Session = Depends(get_db),
    instructor: User = Depends(get_current_instructor),
):
    """
    제목이 바뀌었고 세션이 진행중이 아니면 새 화상회의 방을 만듭니다.
    종료 시각이 시작 시각보다 빠르면 시작 + 1시간으로 보정합니다.
    """
    return update_session(db, instructor, session_id, session_in)


@router.delete("/{session_id}", summary="세션 삭제")
def delete(session_id: int, db: Session = Depends(get_db), instructor: User = Depends(get_current_instructor)):
    delete_session(db, instructor, session_id)
    return {"message": "Session deleted successfully"}


@router.post("/{session_id}/start", response_model=RoomAssignment, summary="라이브 세션 시작 (강의자)")
def start(session_id: int, db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    """
    - 강의자가 아니면 403
    - 입장 가능 시간(시작 15분 전 ~ 종료)이 아니면 409 + 남은 시간
    - 저장에 실패해도 임시 방(is_fallback=true)을 돌려줍니다.
    """
    return start_session(db, session_id, user)


@router.post("/{session_id}/join", response_model=RoomAssignment, summary="라이브 세션 입장")
def join(session_id: int, db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    """
    학생은 시작 5분 전부터 입장할 수 있고, 입장 시 출석이 기록됩니다.
    """
    return join_session(db, session_id, user)


@router.post("/{session_id}/end", response_model=SessionResponse, summary="라이브 세션 종료 (강의자)")
def end(
    session_id: int,
    req: Optional[SessionEndRequest] = Body(None),
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    req = req or SessionEndRequest()
    return end_session(db, session_id, user, is_completed=req.is_completed, recording_url=req.recording_url)


@router.put("/{session_id}/complete", response_model=SessionResponse, summary="세션 완료 처리")
def complete(
    session_id: int,
    req: Optional[SessionCompleteRequest] = Body(None),
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    """이미 완료된 세션이면 그대로 성공을 돌려줍니다."""
    req = req or SessionCompleteRequest()
    return complete_session(db, session_id, user, recording_url=req.recording_url)


@router.get("/{session_id}/status", response_model=SessionStatusResponse, summary="세션 상태 조회")
def status(session_id: int, db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    return get_session_status(db, session_id, user)
