from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import httpx

from liveclass.core.config import settings
from liveclass.core.exceptions import ERRORS_BY_CODE, ERRORS_BY_STATUS, LiveClassError, NotJoinable, PersistenceUnavailable

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 10.0


class SessionApiClient:
    """Async client for the session REST API. HTTP failures come back as LiveClassError subclasses."""

    def __init__(
        self,
        token: str,
        base_url: str = settings.API_BASE_URL,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(base_url=base_url, timeout=DEFAULT_TIMEOUT)
        self._headers = {"Authorization": f"Bearer {token}"}

    async def __aenter__(self) -> "SessionApiClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _request(self, method: str, path: str, json: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        try:
            response = await self._client.request(method, f"/api/v1/sessions{path}", json=json, headers=self._headers)
        except httpx.HTTPError as exc:
            raise PersistenceUnavailable(f"Session API unreachable: {exc}") from exc

        if response.is_success:
            return response.json()

        try:
            body = response.json()
        except ValueError:
            body = None
        if not isinstance(body, dict):
            body = {}
        detail = body.get("detail") or response.text or response.reason_phrase
        # 서버가 보낸 error 코드가 상태 코드보다 우선한다 (409 는 not_joinable, session_in_use 두 가지)
        code = body.get("error")
        error_cls = ERRORS_BY_CODE.get(code) if isinstance(code, str) else None
        if error_cls is None and response.status_code >= 500:
            raise PersistenceUnavailable(str(detail))
        if error_cls is None:
            error_cls = ERRORS_BY_STATUS.get(response.status_code)
        if error_cls is NotJoinable:
            raise NotJoinable(str(detail), remaining_seconds=body.get("remaining_seconds"))
        if error_cls is not None:
            raise error_cls(str(detail))
        error = LiveClassError(str(detail))
        error.status_code = response.status_code
        raise error

    async def get_session(self, session_id: int) -> Dict[str, Any]:
        return await self._request("GET", f"/{session_id}")

    async def start_session(self, session_id: int) -> Dict[str, Any]:
        return await self._request("POST", f"/{session_id}/start")

    async def join_session(self, session_id: int) -> Dict[str, Any]:
        return await self._request("POST", f"/{session_id}/join")

    async def end_session(self, session_id: int, is_completed: bool = False, recording_url: Optional[str] = None) -> Dict[str, Any]:
        return await self._request(
            "POST", f"/{session_id}/end",
            json={"is_completed": is_completed, "recording_url": recording_url},
        )

    async def complete_session(self, session_id: int, recording_url: Optional[str] = None) -> Dict[str, Any]:
        return await self._request("PUT", f"/{session_id}/complete", json={"recording_url": recording_url})

    async def get_session_status(self, session_id: int) -> Dict[str, Any]:
        return await self._request("GET", f"/{session_id}/status")
