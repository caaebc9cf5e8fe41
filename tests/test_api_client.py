from datetime import datetime, timedelta, timezone

import httpx
import pytest

from liveclass.client.api import SessionApiClient
from liveclass.core.exceptions import (
    Forbidden,
    LiveClassError,
    NotJoinable,
    PersistenceUnavailable,
    SessionInUse,
    SessionNotFound,
)
from liveclass.main import app
from liveclass.services.token_service import create_access_token


def token_for(user):
    return create_access_token({"sub": str(user.id)})


@pytest.fixture
def asgi_client(client):
    # client fixture 가 get_db override 를 걸어 둔다
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://testserver")


def mock_client(handler):
    return httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="http://testserver")


@pytest.mark.anyio
async def test_lifecycle_over_http(asgi_client, instructor, make_session):
    session = make_session(start=datetime.now(timezone.utc) + timedelta(minutes=5))
    async with SessionApiClient(token_for(instructor), client=asgi_client) as api:
        room = await api.start_session(session.id)
        assert room["session_id"] == session.id
        assert room["is_fallback"] is False

        status = await api.get_session_status(session.id)
        assert status["is_active"] is True
        assert status["can_join"] is True

        ended = await api.end_session(session.id)
        assert ended["is_active"] is False

        completed = await api.complete_session(session.id, recording_url="https://videos.example.com/2")
        assert completed["is_completed"] is True

        detail = await api.get_session(session.id)
        assert detail["recording_url"] == "https://videos.example.com/2"
    await asgi_client.aclose()


@pytest.mark.anyio
async def test_error_statuses_map_to_exceptions(asgi_client, instructor, student, make_session):
    session = make_session(start=datetime.now(timezone.utc) + timedelta(hours=2))

    async with SessionApiClient(token_for(instructor), client=asgi_client) as api:
        with pytest.raises(NotJoinable) as exc_info:
            await api.start_session(session.id)
        assert exc_info.value.remaining_seconds > 0

        with pytest.raises(SessionNotFound):
            await api.get_session(9999)

    async with SessionApiClient(token_for(student), client=asgi_client) as api:
        with pytest.raises(Forbidden):
            await api.join_session(session.id)
    await asgi_client.aclose()


@pytest.mark.anyio
async def test_server_errors_are_persistence_unavailable():
    def handler(request):
        assert request.headers["Authorization"] == "Bearer t0ken"
        return httpx.Response(503, json={"detail": "Failed to end session. Please try again.", "error": "persistence_unavailable"})

    async with mock_client(handler) as http:
        api = SessionApiClient("t0ken", client=http)
        with pytest.raises(PersistenceUnavailable) as exc_info:
            await api.end_session(1, is_completed=True)
        assert exc_info.value.detail == "Failed to end session. Please try again."


@pytest.mark.anyio
async def test_transport_errors_are_persistence_unavailable():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    async with mock_client(handler) as http:
        api = SessionApiClient("t0ken", client=http)
        with pytest.raises(PersistenceUnavailable):
            await api.start_session(1)


@pytest.mark.anyio
async def test_unmapped_status_keeps_code():
    def handler(request):
        return httpx.Response(400, text="bad request")

    async with mock_client(handler) as http:
        api = SessionApiClient("t0ken", client=http)
        with pytest.raises(LiveClassError) as exc_info:
            await api.get_session_status(1)
        assert exc_info.value.status_code == 400
        assert exc_info.value.detail == "bad request"


@pytest.mark.anyio
async def test_error_code_takes_precedence_over_status():
    def handler(request):
        return httpx.Response(409, json={"detail": "Session has attendance records and cannot be deleted", "error": "session_in_use"})

    async with mock_client(handler) as http:
        api = SessionApiClient("t0ken", client=http)
        with pytest.raises(SessionInUse) as exc_info:
            await api.get_session(1)
        assert exc_info.value.detail == "Session has attendance records and cannot be deleted"


@pytest.mark.anyio
@pytest.mark.parametrize("body", [["not", "an", "object"], "plain string", {"detail": "gone", "error": ["x"]}])
async def test_non_object_error_body_falls_back_to_status(body):
    def handler(request):
        return httpx.Response(404, json=body)

    async with mock_client(handler) as http:
        api = SessionApiClient("t0ken", client=http)
        with pytest.raises(SessionNotFound):
            await api.get_session(1)
