import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from liveclass.core.config import settings
from liveclass.models.user import INSTRUCTOR

UPCOMING = "upcoming"
ACTIVE = "active"
ENDED = "ended"


@dataclass(frozen=True)
class SessionStatus:
    timing_status: str
    can_join: bool


def as_utc(value: datetime) -> datetime:
    # SQLite 는 tzinfo 를 버리므로 naive datetime 은 UTC 로 간주
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def join_buffer(role: str) -> timedelta:
    if role == INSTRUCTOR:
        return timedelta(minutes=settings.INSTRUCTOR_JOIN_BUFFER_MINUTES)
    return timedelta(minutes=settings.STUDENT_JOIN_BUFFER_MINUTES)


def join_opens_at(session, role: str) -> datetime:
    return as_utc(session.start_time) - join_buffer(role)


def timing_status_of(session, now: datetime) -> str:
    now = as_utc(now)
    if now < as_utc(session.start_time):
        return UPCOMING
    if now <= as_utc(session.end_time):
        return ACTIVE
    return ENDED


def evaluate(session, now: datetime, role: str) -> SessionStatus:
    """
    세션의 시간 상태와 역할별 입장 가능 여부를 계산한다. 부수효과 없음.

    - 강의자: 시작 15분 전부터 종료 시각까지 입장 가능
    - 학생: 시작 5분 전부터 종료 시각까지 입장 가능
    - 완료(is_completed)된 세션은 시간과 관계없이 입장 불가
    """
    now = as_utc(now)
    timing_status = timing_status_of(session, now)
    if session.is_completed:
        return SessionStatus(timing_status=timing_status, can_join=False)
    can_join = join_opens_at(session, role) <= now <= as_utc(session.end_time)
    return SessionStatus(timing_status=timing_status, can_join=can_join)


def time_until_joinable(session, now: datetime, role: str) -> Optional[timedelta]:
    """입장 가능 시각까지 남은 시간. 이미 열렸거나 다시 열릴 일이 없으면 None."""
    if session.is_completed:
        return None
    remaining = join_opens_at(session, role) - as_utc(now)
    if remaining <= timedelta(0):
        return None
    return remaining


def format_remaining(delta: timedelta) -> str:
    total_minutes = max(1, math.ceil(delta.total_seconds() / 60))
    hours, minutes = divmod(total_minutes, 60)
    if hours == 0:
        return f"{minutes} minute{'s' if minutes != 1 else ''}"
    hour_text = f"{hours} hour{'s' if hours > 1 else ''}"
    if minutes == 0:
        return hour_text
    return f"{hour_text} {minutes} minute{'s' if minutes != 1 else ''}"


def not_joinable_reason(session, now: datetime, role: str) -> str:
    if session.is_completed:
        return "This session has already been completed."
    remaining = time_until_joinable(session, now, role)
    if remaining is not None:
        return f"This session opens for joining in {format_remaining(remaining)}."
    return "This session has already ended."
