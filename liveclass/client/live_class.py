from __future__ import annotations

import asyncio
import enum
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from liveclass.client.api import SessionApiClient
from liveclass.client.conference import ConferenceAdapter, Participant
from liveclass.client.inactivity import InactivityMonitor, Scheduler
from liveclass.core.config import settings
from liveclass.core.exceptions import LiveClassError, PersistenceUnavailable
from liveclass.models.user import INSTRUCTOR
from liveclass.services.room_identity import build_video_link, fallback_room_name

logger = logging.getLogger(__name__)


class LiveClassPhase(str, enum.Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    LIVE = "live"
    ENDED = "ended"


class IllegalTransition(RuntimeError):
    pass


@dataclass(frozen=True, slots=True)
class ActiveSession:
    session_id: int
    meeting_id: str
    video_link: str
    video_provider: str = "jitsi"
    is_fallback: bool = False

    @classmethod
    def from_response(cls, data: Dict[str, Any]) -> "ActiveSession":
        return cls(
            session_id=data["session_id"],
            meeting_id=data["meeting_id"],
            video_link=data["video_link"],
            video_provider=data.get("video_provider") or "jitsi",
            is_fallback=bool(data.get("is_fallback", False)),
        )


class LiveClassController:
    """
    Client-side state for one user's live class view.

    Phases move IDLE -> CONNECTING -> LIVE -> ENDED. A session that was ended
    without completion may be started or joined again; once completed, it may not.
    """

    def __init__(
        self,
        api: SessionApiClient,
        role: str,
        *,
        scheduler: Optional[Scheduler] = None,
        inactivity_timeout: float = settings.INACTIVITY_TIMEOUT_MINUTES * 60,
        status_interval: float = settings.STATUS_POLL_INTERVAL_SECONDS,
    ) -> None:
        self.api = api
        self.role = role
        self.phase = LiveClassPhase.IDLE
        self.session: Optional[ActiveSession] = None
        self.session_id: Optional[int] = None
        self.completed = False
        self.participants: List[Participant] = []
        self.error: Optional[str] = None
        self.fallback_count = 0
        self.last_status: Optional[Dict[str, Any]] = None
        self.conference: Optional[ConferenceAdapter] = None
        self.monitor: Optional[InactivityMonitor] = None
        self._scheduler = scheduler
        self._inactivity_timeout = inactivity_timeout
        self._status_interval = status_interval
        self._status_task: Optional[asyncio.Task] = None
        self._leave_task: Optional[asyncio.Task] = None

    @property
    def is_instructor(self) -> bool:
        return self.role == INSTRUCTOR

    @property
    def is_live(self) -> bool:
        return self.phase == LiveClassPhase.LIVE

    def _require(self, action: str, *phases: LiveClassPhase) -> None:
        if self.phase not in phases:
            raise IllegalTransition(f"Cannot {action} while {self.phase.value}")

    def _require_open(self, action: str, session_id: int) -> None:
        self._require(action, LiveClassPhase.IDLE, LiveClassPhase.ENDED)
        if self.completed and self.session_id == session_id:
            raise IllegalTransition(f"Cannot {action} a completed session")

    def _fallback_session(self, session_id: int, operation: str, error: Exception) -> ActiveSession:
        room_name = fallback_room_name()
        self.fallback_count += 1
        logger.warning(
            f"{operation} for session {session_id} failed, using fallback room {room_name}",
            exc_info=error,
        )
        return ActiveSession(
            session_id=session_id,
            meeting_id=room_name,
            video_link=build_video_link(room_name),
            is_fallback=True,
        )

    async def _enter(self, session_id: int, operation: str, call: Callable[[int], Any]) -> ActiveSession:
        self._require_open(operation, session_id)
        if self.session_id != session_id:
            self.completed = False
        previous = self.phase
        self.phase = LiveClassPhase.CONNECTING
        self.session_id = session_id
        self.error = None
        try:
            session = ActiveSession.from_response(await call(session_id))
        except PersistenceUnavailable as exc:
            session = self._fallback_session(session_id, operation, exc)
        except Exception as exc:
            self.phase = previous
            self.error = getattr(exc, "detail", str(exc))
            raise
        self.session = session
        self.phase = LiveClassPhase.LIVE
        return session

    async def start(self, session_id: int) -> ActiveSession:
        session = await self._enter(session_id, "start", self.api.start_session)
        if self.is_instructor:
            self._arm_monitor()
        return session

    async def join(self, session_id: int) -> ActiveSession:
        session = await self._enter(session_id, "join", self.api.join_session)
        if self.is_instructor:
            self._arm_monitor()
        return session

    def _arm_monitor(self) -> None:
        if self.monitor is not None:
            self.monitor.cancel()
        self.monitor = InactivityMonitor(
            on_timeout=self._on_inactive,
            roster_size=lambda: len(self.participants),
            timeout=self._inactivity_timeout,
            scheduler=self._scheduler,
        )
        self.monitor.start()

    async def _on_inactive(self) -> None:
        if not self.is_live:
            return
        try:
            await self.end()
        except PersistenceUnavailable:
            logger.warning(f"Auto-ending inactive session {self.session_id} failed; retrying later", exc_info=True)
            if self.is_live and self.monitor is not None:
                self.monitor.start()
        except LiveClassError:
            logger.exception(f"Auto-ending inactive session {self.session_id} was rejected")

    def _stop_monitor(self) -> None:
        if self.monitor is not None:
            self.monitor.cancel()
            self.monitor = None

    async def _release_conference(self) -> None:
        conference, self.conference = self.conference, None
        if conference is not None:
            await conference.dispose()

    async def _finish(self) -> None:
        self._stop_monitor()
        await self._release_conference()
        self.participants = []
        self.phase = LiveClassPhase.ENDED

    async def end(self, is_completed: bool = False, recording_url: Optional[str] = None) -> None:
        """End the live session on the server; on failure the view stays live and the error is raised."""
        self._require("end", LiveClassPhase.LIVE)
        try:
            await self.api.end_session(self.session_id, is_completed=is_completed, recording_url=recording_url)
        except PersistenceUnavailable as exc:
            self.error = exc.detail
            raise
        if is_completed:
            self.completed = True
        await self._finish()

    async def complete(self, recording_url: Optional[str] = None) -> None:
        self._require("complete", LiveClassPhase.LIVE, LiveClassPhase.ENDED)
        try:
            await self.api.complete_session(self.session_id, recording_url=recording_url)
        except PersistenceUnavailable as exc:
            self.error = exc.detail
            raise
        self.completed = True
        await self._finish()

    async def leave(self) -> None:
        """Leave the conference without ending the session for everyone else."""
        self._require("leave", LiveClassPhase.LIVE, LiveClassPhase.CONNECTING)
        await self._finish()

    def update_participants(self, participants: List[Participant]) -> None:
        self.participants = list(participants)
        if self.monitor is not None:
            self.monitor.reset()

    def attach_conference(self, adapter: ConferenceAdapter) -> None:
        self._require("attach a conference", LiveClassPhase.LIVE)
        if self.conference is not None and self.conference is not adapter:
            raise IllegalTransition("A conference is already attached to this session")
        adapter.on_participants = self.update_participants
        adapter.on_left = self._on_conference_left
        self.conference = adapter

    def _on_conference_left(self, data: Optional[Dict[str, Any]] = None) -> None:
        # 회의 화면에서 나가면 세션은 끝내지 않고 이 사용자만 퇴장 처리한다
        if self._leave_task is None or self._leave_task.done():
            self._leave_task = asyncio.get_running_loop().create_task(self._leave_if_open())

    async def _leave_if_open(self) -> None:
        if self.phase in (LiveClassPhase.LIVE, LiveClassPhase.CONNECTING):
            logger.info(f"Conference left; leaving session {self.session_id}")
            await self.leave()

    async def poll_status(self) -> Dict[str, Any]:
        status = await self.api.get_session_status(self.session_id)
        self.last_status = status
        if status.get("is_completed"):
            self.completed = True
            if self.is_live:
                logger.info(f"Session {self.session_id} was completed elsewhere")
                await self._finish()
        return status

    async def _poll_forever(self) -> None:
        while True:
            await asyncio.sleep(self._status_interval)
            try:
                await self.poll_status()
            except PersistenceUnavailable:
                logger.warning(f"Status poll for session {self.session_id} failed", exc_info=True)

    def start_status_polling(self) -> None:
        if self.session_id is None:
            raise IllegalTransition("No session to poll")
        if self._status_task is None:
            self._status_task = asyncio.get_running_loop().create_task(self._poll_forever())

    async def close(self) -> None:
        """Tear down timers, polling and the conference; safe to call more than once."""
        self._stop_monitor()
        tasks = [self._status_task, self._leave_task]
        self._status_task = self._leave_task = None
        for task in tasks:
            if task is None:
                continue
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        await self._release_conference()
