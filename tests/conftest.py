from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from liveclass.db.base import Base
from liveclass.dependencies.db import get_db
from liveclass.main import app
from liveclass.models.class_session import ClassSession
from liveclass.models.course import Course
from liveclass.models.enrollment import Enrollment
from liveclass.models.user import User, INSTRUCTOR, STUDENT
from liveclass.services.token_service import create_access_token


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def engine(tmp_path):
    # 테스트마다 새 SQLite 파일을 쓴다 (동시 수정 테스트에서 세션 두 개가 같은 DB 를 본다)
    engine = create_engine(f"sqlite:///{tmp_path / 'liveclass_test.db'}", connect_args={"check_same_thread": False})
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    db = session_factory()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def client(session_factory):
    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    yield TestClient(app)
    app.dependency_overrides.clear()


def _add(db, obj):
    db.add(obj)
    db.commit()
    db.refresh(obj)
    return obj


@pytest.fixture
def instructor(db):
    return _add(db, User(name="테스트강사", email="instructor@example.com", role=INSTRUCTOR))


@pytest.fixture
def other_instructor(db):
    return _add(db, User(name="다른강사", email="other@example.com", role=INSTRUCTOR))


@pytest.fixture
def student(db):
    return _add(db, User(name="테스트학생", email="student@example.com", role=STUDENT))


@pytest.fixture
def outsider(db):
    return _add(db, User(name="미수강학생", email="outsider@example.com", role=STUDENT))


@pytest.fixture
def course(db, instructor):
    return _add(db, Course(instructor_id=instructor.id, title="Data Structures", code="CS201"))


@pytest.fixture
def enrollment(db, course, student):
    return _add(db, Enrollment(course_id=course.id, student_id=student.id, status="active"))


@pytest.fixture
def start_time():
    return datetime.now(timezone.utc).replace(microsecond=0) + timedelta(hours=1)


@pytest.fixture
def make_session(db, course, start_time):
    """방(meeting_id) 없이 세션을 만든다. start 를 주지 않으면 start_time 을 쓴다."""

    def _make(start=None, duration=timedelta(hours=1), **fields):
        start = start or start_time
        fields.setdefault("title", "1주차 라이브")
        return _add(db, ClassSession(course_id=course.id, start_time=start, end_time=start + duration, **fields))

    return _make


@pytest.fixture
def auth_headers():
    def _headers(user):
        token = create_access_token({"sub": str(user.id)})
        return {"Authorization": f"Bearer {token}"}

    return _headers


class FakeTimer:
    def __init__(self, when, callback):
        self.when = when
        self.callback = callback
        self.cancelled = False
        self.done = False

    def cancel(self):
        self.cancelled = True


class FakeScheduler:
    """call_later 만 흉내내는 가짜 시계. advance() 로 시간을 흘려보낸다."""

    def __init__(self):
        self.now = 0.0
        self.timers = []

    def call_later(self, delay, callback):
        timer = FakeTimer(self.now + delay, callback)
        self.timers.append(timer)
        return timer

    def advance(self, seconds):
        target = self.now + seconds
        while True:
            due = [t for t in self.timers if not t.cancelled and not t.done and t.when <= target]
            if not due:
                break
            timer = min(due, key=lambda t: t.when)
            self.now = timer.when
            timer.done = True
            timer.callback()
        self.now = target


@pytest.fixture
def scheduler():
    return FakeScheduler()
