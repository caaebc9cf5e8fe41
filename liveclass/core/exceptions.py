from typing import Optional


class LiveClassError(Exception):
    """라이브 수업 도메인 에러의 공통 부모 클래스. status_code 와 error 코드를 함께 가진다."""

    status_code = 500
    error = "internal_error"

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail

    def to_dict(self) -> dict:
        return {"detail": self.detail, "error": self.error}


class Forbidden(LiveClassError):
    status_code = 403
    error = "forbidden"


class SessionNotFound(LiveClassError):
    status_code = 404
    error = "session_not_found"

    def __init__(self, detail: str = "Session not found"):
        super().__init__(detail)


class NotJoinable(LiveClassError):
    status_code = 409
    error = "not_joinable"

    def __init__(self, detail: str, remaining_seconds: Optional[int] = None):
        super().__init__(detail)
        self.remaining_seconds = remaining_seconds

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["remaining_seconds"] = self.remaining_seconds
        return data


class InvalidSchedule(LiveClassError):
    status_code = 400
    error = "invalid_schedule"


class SessionInUse(LiveClassError):
    status_code = 409
    error = "session_in_use"


class InvalidAttendance(LiveClassError):
    status_code = 400
    error = "invalid_attendance"


class AttendanceNotFound(LiveClassError):
    status_code = 404
    error = "attendance_not_found"

    def __init__(self, detail: str = "Attendance record not found"):
        super().__init__(detail)


class PersistenceUnavailable(LiveClassError):
    """세션 상태 저장 실패. end/complete 에서는 재시도 가능한 에러로 사용자에게 노출된다."""

    status_code = 503
    error = "persistence_unavailable"


class ProviderTransientFailure(LiveClassError):
    status_code = 502
    error = "provider_failure"

    def __init__(self, detail: str = "Could not initialize video conference"):
        super().__init__(detail)


# HTTP 상태 코드 -> 에러 클래스 (클라이언트에서 응답을 다시 예외로 바꿀 때 사용)
ERRORS_BY_STATUS = {
    403: Forbidden,
    404: SessionNotFound,
    409: NotJoinable,
}

# 응답 body 의 error 코드 -> 에러 클래스 (같은 상태 코드를 쓰는 에러를 구분할 때)
ERRORS_BY_CODE = {
    cls.error: cls
    for cls in (
        Forbidden,
        SessionNotFound,
        NotJoinable,
        InvalidSchedule,
        SessionInUse,
        InvalidAttendance,
        AttendanceNotFound,
        PersistenceUnavailable,
        ProviderTransientFailure,
    )
}
