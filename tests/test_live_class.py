import asyncio
import logging
from datetime import datetime, timezone

import httpx
import pytest

from liveclass.client.api import SessionApiClient
from liveclass.client.conference import Participant
from liveclass.client.live_class import IllegalTransition, LiveClassController, LiveClassPhase
from liveclass.core.exceptions import Forbidden, NotJoinable, PersistenceUnavailable
from liveclass.models.user import INSTRUCTOR, STUDENT
from liveclass.services.room_identity import is_safe_room_name

MINUTE = 60
SESSION_ID = 7
ROOM = {
    "session_id": SESSION_ID,
    "meeting_id": "datastruct_abc_1",
    "video_link": "https://meet.jit.si/datastruct_abc_1",
    "video_provider": "jitsi",
    "is_fallback": False,
    "message": "Session started successfully",
}
SESSION = {"id": SESSION_ID, "is_active": False, "is_completed": False}


class FakeServer:
    """경로별로 응답을 정해 두는 가짜 세션 API."""

    def __init__(self):
        self.calls = []
        self.routes = {
            ("POST", f"/api/v1/sessions/{SESSION_ID}/start"): httpx.Response(200, json=ROOM),
            ("POST", f"/api/v1/sessions/{SESSION_ID}/join"): httpx.Response(200, json={**ROOM, "message": None}),
            ("POST", f"/api/v1/sessions/{SESSION_ID}/end"): httpx.Response(200, json=SESSION),
            ("PUT", f"/api/v1/sessions/{SESSION_ID}/complete"): httpx.Response(200, json={**SESSION, "is_completed": True}),
        }

    def handler(self, request):
        key = (request.method, request.url.path)
        self.calls.append(key)
        response = self.routes.get(key)
        if isinstance(response, httpx.RequestError):
            response.request = request
            raise response
        if response is None:
            return httpx.Response(404, json={"detail": "Session not found", "error": "session_not_found"})
        return response

    def set(self, method, action, response):
        self.routes[(method, f"/api/v1/sessions/{SESSION_ID}/{action}")] = response

    def called(self, method, action):
        return self.calls.count((method, f"/api/v1/sessions/{SESSION_ID}/{action}"))


class StubConference:
    def __init__(self):
        self.on_participants = None
        self.on_left = None
        self.disposed = 0

    async def dispose(self):
        self.disposed += 1


@pytest.fixture
def server():
    return FakeServer()


@pytest.fixture
def make_controller(server, scheduler):
    def _make(role=INSTRUCTOR):
        http = httpx.AsyncClient(transport=httpx.MockTransport(server.handler), base_url="http://testserver")
        api = SessionApiClient("t0ken", client=http)
        return LiveClassController(api, role, scheduler=scheduler, inactivity_timeout=30 * MINUTE)

    return _make


def participants(*names):
    now = datetime.now(timezone.utc)
    return [Participant(id=name, display_name=name, role="participant", joined_at=now) for name in names]


async def settle(predicate):
    for _ in range(100):
        if predicate():
            return
        await asyncio.sleep(0.01)


@pytest.mark.anyio
async def test_instructor_start_and_end(make_controller, server):
    controller = make_controller()
    assert controller.phase == LiveClassPhase.IDLE

    session = await controller.start(SESSION_ID)
    assert controller.phase == LiveClassPhase.LIVE
    assert session.meeting_id == "datastruct_abc_1"
    assert session.is_fallback is False
    assert controller.monitor.active

    await controller.end()
    assert controller.phase == LiveClassPhase.ENDED
    assert controller.monitor is None
    assert server.called("POST", "end") == 1
    assert controller.completed is False


@pytest.mark.anyio
@pytest.mark.parametrize("failure", [
    httpx.Response(503, json={"detail": "db down", "error": "persistence_unavailable"}),
    httpx.ConnectError("connection refused"),
])
async def test_start_falls_back_when_api_unavailable(make_controller, server, failure):
    server.set("POST", "start", failure)
    controller = make_controller()

    session = await controller.start(SESSION_ID)
    assert controller.phase == LiveClassPhase.LIVE
    assert session.is_fallback is True
    assert session.session_id == SESSION_ID
    assert session.meeting_id.startswith("videoroom_")
    assert is_safe_room_name(session.meeting_id)
    assert session.video_link.endswith(session.meeting_id)
    assert controller.fallback_count == 1


@pytest.mark.anyio
async def test_not_joinable_is_reported(make_controller, server):
    server.set("POST", "join", httpx.Response(409, json={
        "detail": "This session opens for joining in 5 minutes.",
        "error": "not_joinable",
        "remaining_seconds": 300,
    }))
    controller = make_controller(STUDENT)

    with pytest.raises(NotJoinable) as exc_info:
        await controller.join(SESSION_ID)
    assert exc_info.value.remaining_seconds == 300
    assert controller.phase == LiveClassPhase.IDLE
    assert controller.error == "This session opens for joining in 5 minutes."
    assert controller.fallback_count == 0


@pytest.mark.anyio
async def test_forbidden_is_reported(make_controller, server):
    server.set("POST", "start", httpx.Response(403, json={"detail": "Only instructors can start sessions", "error": "forbidden"}))
    controller = make_controller(STUDENT)
    with pytest.raises(Forbidden):
        await controller.start(SESSION_ID)
    assert controller.phase == LiveClassPhase.IDLE


@pytest.mark.anyio
async def test_student_join_has_no_inactivity_monitor(make_controller):
    controller = make_controller(STUDENT)
    session = await controller.join(SESSION_ID)
    assert session.meeting_id == "datastruct_abc_1"
    assert controller.monitor is None

    await controller.leave()
    assert controller.phase == LiveClassPhase.ENDED


@pytest.mark.anyio
async def test_end_failure_keeps_session_live(make_controller, server):
    controller = make_controller()
    await controller.start(SESSION_ID)
    server.set("POST", "end", httpx.Response(503, json={"detail": "Failed to end session. Please try again."}))

    with pytest.raises(PersistenceUnavailable):
        await controller.end()
    assert controller.phase == LiveClassPhase.LIVE
    assert controller.error == "Failed to end session. Please try again."
    assert controller.monitor.active


@pytest.mark.anyio
async def test_illegal_transitions(make_controller):
    controller = make_controller()
    with pytest.raises(IllegalTransition):
        await controller.end()

    await controller.start(SESSION_ID)
    with pytest.raises(IllegalTransition):
        await controller.join(SESSION_ID)

    await controller.end()
    with pytest.raises(IllegalTransition):
        await controller.end()


@pytest.mark.anyio
async def test_restart_allowed_until_completed(make_controller):
    controller = make_controller()
    await controller.start(SESSION_ID)
    await controller.end()

    await controller.start(SESSION_ID)
    assert controller.phase == LiveClassPhase.LIVE

    await controller.complete(recording_url="https://videos.example.com/3")
    assert controller.completed is True
    assert controller.phase == LiveClassPhase.ENDED
    with pytest.raises(IllegalTransition):
        await controller.start(SESSION_ID)
    with pytest.raises(IllegalTransition):
        await controller.join(SESSION_ID)


@pytest.mark.anyio
async def test_host_alone_is_ended_automatically(make_controller, server, scheduler):
    controller = make_controller()
    await controller.start(SESSION_ID)
    controller.update_participants(participants("host"))

    scheduler.advance(30 * MINUTE)
    await settle(lambda: controller.phase == LiveClassPhase.ENDED)

    assert controller.phase == LiveClassPhase.ENDED
    assert server.called("POST", "end") == 1

    scheduler.advance(60 * MINUTE)
    await asyncio.sleep(0.02)
    assert server.called("POST", "end") == 1


@pytest.mark.anyio
async def test_roster_updates_keep_session_alive(make_controller, server, scheduler):
    controller = make_controller()
    await controller.start(SESSION_ID)

    scheduler.advance(29 * MINUTE)
    controller.update_participants(participants("host", "student"))
    scheduler.advance(1 * MINUTE)
    scheduler.advance(30 * MINUTE)
    await asyncio.sleep(0.02)

    assert controller.phase == LiveClassPhase.LIVE
    assert server.called("POST", "end") == 0


@pytest.mark.anyio
async def test_attached_conference_is_released_on_end(make_controller):
    controller = make_controller()
    conference = StubConference()

    with pytest.raises(IllegalTransition):
        controller.attach_conference(conference)

    await controller.start(SESSION_ID)
    controller.attach_conference(conference)
    conference.on_participants(participants("host", "student"))
    assert len(controller.participants) == 2

    with pytest.raises(IllegalTransition):
        controller.attach_conference(StubConference())

    await controller.end()
    assert conference.disposed == 1
    assert controller.conference is None
    assert controller.participants == []


@pytest.mark.anyio
async def test_poll_status_notices_completion(make_controller, server):
    server.set("GET", "status", httpx.Response(200, json={
        "session_id": SESSION_ID, "is_active": False, "is_completed": True,
        "timing_status": "active", "can_join": False, "message": "This session has already been completed.",
    }))
    controller = make_controller(STUDENT)
    await controller.join(SESSION_ID)

    status = await controller.poll_status()
    assert status["can_join"] is False
    assert controller.phase == LiveClassPhase.ENDED
    assert controller.completed is True


@pytest.mark.anyio
async def test_close_stops_everything(make_controller):
    controller = make_controller()
    conference = StubConference()
    await controller.start(SESSION_ID)
    controller.attach_conference(conference)
    controller.start_status_polling()

    await controller.close()
    await controller.close()
    assert controller.monitor is None
    assert conference.disposed == 1


@pytest.mark.anyio
async def test_failed_auto_end_rearms_monitor(make_controller, server, scheduler):
    controller = make_controller()
    await controller.start(SESSION_ID)
    server.set("POST", "end", httpx.Response(503, json={"detail": "Failed to end session. Please try again."}))
    controller.update_participants(participants("host"))

    scheduler.advance(30 * MINUTE)
    await settle(lambda: server.called("POST", "end") == 1 and controller.monitor.active)
    assert controller.phase == LiveClassPhase.LIVE
    assert controller.monitor.active

    # 저장소가 복구되면 다음 만료 때 다시 종료를 시도한다
    server.set("POST", "end", httpx.Response(200, json=SESSION))
    controller.update_participants(participants("host"))
    scheduler.advance(30 * MINUTE)
    await settle(lambda: controller.phase == LiveClassPhase.ENDED)
    assert controller.phase == LiveClassPhase.ENDED
    assert server.called("POST", "end") == 2


@pytest.mark.anyio
async def test_rejected_auto_end_is_logged(make_controller, server, scheduler, caplog):
    controller = make_controller()
    await controller.start(SESSION_ID)
    server.set("POST", "end", httpx.Response(403, json={"detail": "Not authorized to update this session", "error": "forbidden"}))
    monitor = controller.monitor

    with caplog.at_level(logging.ERROR, logger="liveclass.client.live_class"):
        scheduler.advance(30 * MINUTE)
        await settle(lambda: "was rejected" in caplog.text)
        await asyncio.sleep(0.01)

    assert "was rejected" in caplog.text
    assert server.called("POST", "end") == 1
    assert controller.phase == LiveClassPhase.LIVE
    assert monitor._task is None


@pytest.mark.anyio
async def test_instructor_join_arms_monitor(make_controller, server, scheduler):
    controller = make_controller()
    await controller.join(SESSION_ID)
    assert controller.monitor.active

    controller.update_participants(participants("host"))
    scheduler.advance(30 * MINUTE)
    await settle(lambda: controller.phase == LiveClassPhase.ENDED)
    assert controller.phase == LiveClassPhase.ENDED
    assert server.called("POST", "end") == 1


@pytest.mark.anyio
async def test_conference_left_leaves_session(make_controller, server):
    controller = make_controller(STUDENT)
    conference = StubConference()
    await controller.join(SESSION_ID)
    controller.attach_conference(conference)

    conference.on_left({"roomName": ROOM["meeting_id"]})
    await settle(lambda: controller.phase == LiveClassPhase.ENDED)
    assert controller.phase == LiveClassPhase.ENDED
    assert conference.disposed == 1
    assert server.called("POST", "end") == 0
