from __future__ import annotations

import asyncio
import enum
import logging
import weakref
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Sequence, Tuple
from urllib.parse import quote

from liveclass.core.config import settings
from liveclass.core.exceptions import ProviderTransientFailure
from liveclass.models.user import INSTRUCTOR
from liveclass.services.room_identity import fallback_room_name, sanitize_room_name

logger = logging.getLogger(__name__)

MODERATOR = "moderator"
PARTICIPANT = "participant"

IFRAME_ALLOW = "camera; microphone; fullscreen; display-capture; autoplay; clipboard-write"
# Same unreserved set as encodeURIComponent
URI_COMPONENT_SAFE = "-_.!~*'()"

# Error text that means the provider put the room behind lobby/auth gating.
ACCESS_FAILURE_SIGNATURES = (
    "membersOnly",
    "conference.connectionError",
    "authentication required",
)
# Messages the provider renders on its own error surface instead of emitting an error event.
PAGE_FAILURE_SIGNATURES = (
    "Waiting for an authenticated user",
    "Wait for moderator",
)

BASE_TOOLBAR = (
    "microphone", "camera", "closedcaptions", "desktop", "fullscreen",
    "fodeviceselection", "hangup", "profile", "chat", "settings", "raisehand",
    "videoquality", "filmstrip", "feedback", "stats", "shortcuts", "tileview",
    "select-background", "download", "help",
)
INSTRUCTOR_TOOLBAR = ("recording", "livestreaming", "sharedvideo", "mute-everyone", "security", "invite")

ROSTER_EVENTS = ("participantJoined", "participantLeft", "participantRoleChanged", "participantsChanged")


def matches_signature(text: str, signatures: Sequence[str]) -> bool:
    lowered = (text or "").lower()
    return any(signature.lower() in lowered for signature in signatures)


@dataclass(frozen=True, slots=True)
class ConferenceConfig:
    role: str
    start_with_audio_muted: bool
    start_with_video_muted: bool
    toolbar_buttons: Tuple[str, ...]
    toolbar_always_visible: bool
    initial_toolbar_timeout_ms: int
    recording_enabled: bool
    invite_enabled: bool
    breakout_rooms_enabled: bool
    profile_enabled: bool
    local_display_name: str
    prejoin_page_enabled: bool = False
    lobby_enabled: bool = False
    wait_for_owner: bool = False
    authentication_enabled: bool = False
    p2p_enabled: bool = False
    session_termination_seconds: int = settings.INACTIVITY_TIMEOUT_MINUTES * 60

    @property
    def is_moderator(self) -> bool:
        return self.role == MODERATOR

    def config_overwrite(self) -> Dict[str, Any]:
        return {
            "prejoinPageEnabled": self.prejoin_page_enabled,
            "disableDeepLinking": True,
            "startWithAudioMuted": self.start_with_audio_muted,
            "startWithVideoMuted": self.start_with_video_muted,
            "startAudioOnly": False,
            "disableInviteFunctions": not self.invite_enabled,
            "requireDisplayName": False,
            "enableInsecureRoomNameWarning": False,
            "enableWelcomePage": False,
            "waitForOwner": self.wait_for_owner,
            "enableAuthTokenCreation": False,
            "authenticationEnabled": self.authentication_enabled,
            "tokenAuthUrl": None,
            "lobby": {"autoKnock": False, "enableLobby": self.lobby_enabled},
            "membersOnly": False,
            "enableLobbyChat": False,
            "hideLobbyButton": True,
            "disableProfile": not self.profile_enabled,
            "p2p": {"enabled": self.p2p_enabled},
            "enableUserRolesBasedOnToken": False,
            "breakoutRooms": {
                "enabled": self.breakout_rooms_enabled,
                "hideAddRoomButton": not self.breakout_rooms_enabled,
            },
            "recording": {
                "enabled": self.recording_enabled,
                "recordingSharingEnabled": self.recording_enabled,
            },
            "disableThirdPartyRequests": True,
            "sessionTerminationTime": self.session_termination_seconds,
        }

    def interface_config_overwrite(self) -> Dict[str, Any]:
        return {
            "TOOLBAR_BUTTONS": list(self.toolbar_buttons),
            "SHOW_JITSI_WATERMARK": False,
            "DISABLE_JOIN_LEAVE_NOTIFICATIONS": False,
            "TOOLBAR_ALWAYS_VISIBLE": self.toolbar_always_visible,
            "INITIAL_TOOLBAR_TIMEOUT": self.initial_toolbar_timeout_ms,
            "DEFAULT_REMOTE_DISPLAY_NAME": "Participant",
            "DEFAULT_LOCAL_DISPLAY_NAME": self.local_display_name,
        }


def build_conference_config(role: str) -> ConferenceConfig:
    """Embed configuration for a user role; instructors moderate, everyone else joins muted."""
    if role == INSTRUCTOR:
        return ConferenceConfig(
            role=MODERATOR,
            start_with_audio_muted=False,
            start_with_video_muted=False,
            toolbar_buttons=BASE_TOOLBAR + INSTRUCTOR_TOOLBAR,
            toolbar_always_visible=True,
            initial_toolbar_timeout_ms=20000,
            recording_enabled=True,
            invite_enabled=True,
            breakout_rooms_enabled=True,
            profile_enabled=True,
            local_display_name="Instructor",
        )
    return ConferenceConfig(
        role=PARTICIPANT,
        start_with_audio_muted=True,
        start_with_video_muted=True,
        toolbar_buttons=BASE_TOOLBAR,
        toolbar_always_visible=False,
        initial_toolbar_timeout_ms=5000,
        recording_enabled=False,
        invite_enabled=False,
        breakout_rooms_enabled=False,
        profile_enabled=False,
        local_display_name="You",
    )


def build_fallback_iframe_url(domain: str, room_name: str, role: str, display_name: str) -> str:
    """URL for a bare iframe; every gating feature is turned off through the fragment."""
    fragment = (
        "config.prejoinPageEnabled=false"
        "&config.startWithAudioMuted=false"
        "&config.startWithVideoMuted=false"
        "&config.disableDeepLinking=true"
        "&config.p2p.enabled=false"
        "&config.enableLobby=false"
        "&config.membersOnly=false"
        "&config.waitForOwner=false"
        "&config.authenticationEnabled=false"
        "&config.enableWelcomePage=false"
        f"&userInfo.role={role}"
        f"&userInfo.displayName={quote(display_name or 'User', safe=URI_COMPONENT_SAFE)}"
    )
    return f"https://{domain}/{room_name}#{fragment}"


@dataclass(frozen=True, slots=True)
class Participant:
    id: str
    display_name: str
    role: str
    joined_at: datetime

    @property
    def is_moderator(self) -> bool:
        return self.role == MODERATOR


@dataclass(slots=True)
class EmbedOptions:
    domain: str
    room_name: str
    parent_node: Any
    user_info: Dict[str, str]
    config_overwrite: Dict[str, Any]
    interface_config_overwrite: Dict[str, Any]
    width: str = "100%"
    height: str = "100%"


class ConferenceHandle(Protocol):
    def add_event_listeners(self, listeners: Dict[str, Callable[..., None]]) -> None: ...
    def get_participants_info(self) -> List[Dict[str, Any]]: ...
    def execute_command(self, name: str, *args: Any) -> None: ...
    def dispose(self) -> None: ...


class ConferenceProvider(Protocol):
    domain: str

    async def ensure_loaded(self) -> None: ...
    def create(self, options: EmbedOptions) -> ConferenceHandle: ...


class FrameHost(Protocol):
    def mount_iframe(self, url: str, allow: str) -> None: ...
    def clear(self) -> None: ...


class FailureDetector(Protocol):
    def matches(self, text: str) -> bool: ...


class TextPatternFailureDetector:
    """Heuristic: looks for known provider error text on the rendered error surface."""

    def __init__(self, patterns: Sequence[str] = ACCESS_FAILURE_SIGNATURES + PAGE_FAILURE_SIGNATURES) -> None:
        self.patterns = tuple(patterns)

    def matches(self, text: str) -> bool:
        return matches_signature(text, self.patterns)


class NullFailureDetector:
    def matches(self, text: str) -> bool:
        return False


class AdapterMode(str, enum.Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    EMBEDDED = "embedded"
    IFRAME = "iframe"
    FAILED = "failed"
    DISPOSED = "disposed"


class ConferenceAdapter:
    """
    Binds one room to the provider embed for one session view.

    The adapter owns its FrameHost exclusively until disposed; a second adapter
    on the same host is refused. When the structured embed cannot be brought up
    (construction errors, members-only/auth gating, detector hits) it drops to a
    plain iframe on a fresh room, which has no event callbacks.
    """

    # id(host) -> adapter currently bound to it
    _claimed_hosts: "weakref.WeakValueDictionary[int, ConferenceAdapter]" = weakref.WeakValueDictionary()

    def __init__(
        self,
        provider: ConferenceProvider,
        host: FrameHost,
        room_name: str,
        *,
        role: str,
        display_name: str = "User",
        email: str = "",
        on_participants: Optional[Callable[[List[Participant]], None]] = None,
        on_joined: Optional[Callable[[Dict[str, Any]], None]] = None,
        on_left: Optional[Callable[[Optional[Dict[str, Any]]], None]] = None,
        failure_detector: Optional[FailureDetector] = None,
        max_attempts: int = settings.CONFERENCE_MAX_ATTEMPTS,
        retry_backoff: float = settings.CONFERENCE_RETRY_BACKOFF_SECONDS,
        roster_interval: float = settings.ROSTER_POLL_INTERVAL_SECONDS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.provider = provider
        self.host = host
        self.requested_room = room_name
        self.role = role
        self.display_name = display_name
        self.email = email
        self.config = build_conference_config(role)
        self.on_participants = on_participants
        self.on_joined = on_joined
        self.on_left = on_left
        self.failure_detector = failure_detector or NullFailureDetector()
        self.max_attempts = max_attempts
        self.retry_backoff = retry_backoff
        self.roster_interval = roster_interval
        self._sleep = sleep

        self.mode = AdapterMode.IDLE
        self.room_name: Optional[str] = None
        self.iframe_url: Optional[str] = None
        self.error: Optional[str] = None
        self.participants: List[Participant] = []
        self._handle: Optional[ConferenceHandle] = None
        self._roster_task: Optional[asyncio.Task] = None
        self._first_seen: Dict[str, datetime] = {}

    async def __aenter__(self) -> "ConferenceAdapter":
        try:
            await self.start()
        except BaseException:
            await self.dispose()
            raise
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.dispose()

    @property
    def is_embedded(self) -> bool:
        return self.mode == AdapterMode.EMBEDDED

    def _claim_host(self) -> None:
        owner = ConferenceAdapter._claimed_hosts.get(id(self.host))
        if owner is not None and owner is not self:
            raise RuntimeError("Frame host is already bound to another conference adapter")
        ConferenceAdapter._claimed_hosts[id(self.host)] = self

    def _release_host(self) -> None:
        if ConferenceAdapter._claimed_hosts.get(id(self.host)) is self:
            del ConferenceAdapter._claimed_hosts[id(self.host)]

    async def start(self) -> None:
        if self.mode == AdapterMode.DISPOSED:
            raise RuntimeError("Conference adapter has been disposed")
        if self.mode in (AdapterMode.EMBEDDED, AdapterMode.IFRAME):
            return
        if self.mode == AdapterMode.IDLE:
            self._claim_host()
        self.mode = AdapterMode.CONNECTING
        self.error = None

        self.room_name = sanitize_room_name(self.requested_room)
        if self.room_name != self.requested_room:
            logger.info(f"Using sanitized room name {self.room_name} for {self.requested_room}")

        if not await self._load_script():
            self.fallback_to_iframe("provider script unavailable")
            return

        handle = await self._create_embed()
        if handle is None:
            return

        self._handle = handle
        handle.add_event_listeners(self._listeners())
        self.mode = AdapterMode.EMBEDDED
        self._roster_task = asyncio.get_running_loop().create_task(self._poll_roster())
        logger.info(f"Conference embed ready in room {self.room_name} as {self.config.role}")

    async def _load_script(self) -> bool:
        for attempt in (1, 2):
            try:
                await self.provider.ensure_loaded()
                return True
            except Exception:
                logger.warning(f"Failed to load conference script (attempt {attempt})", exc_info=True)
        return False

    def _embed_options(self) -> EmbedOptions:
        return EmbedOptions(
            domain=self.provider.domain,
            room_name=self.room_name,
            parent_node=self.host,
            user_info={"displayName": self.display_name, "email": self.email, "role": self.config.role},
            config_overwrite=self.config.config_overwrite(),
            interface_config_overwrite=self.config.interface_config_overwrite(),
        )

    async def _create_embed(self) -> Optional[ConferenceHandle]:
        options = self._embed_options()
        for attempt in range(1, self.max_attempts + 1):
            try:
                return self.provider.create(options)
            except Exception as exc:
                logger.warning(f"Creating conference embed failed (attempt {attempt}/{self.max_attempts}): {exc}")
                if matches_signature(str(exc), ACCESS_FAILURE_SIGNATURES):
                    self.fallback_to_iframe(f"access gating: {exc}")
                    return None
                if attempt < self.max_attempts:
                    await self._sleep(self.retry_backoff)
        self.fallback_to_iframe("embed construction retries exhausted")
        return None

    def fallback_to_iframe(self, reason: str) -> None:
        """Drop the structured embed and mount a plain iframe on a fresh neutral room."""
        if self.mode in (AdapterMode.IFRAME, AdapterMode.DISPOSED):
            return
        logger.warning(f"Falling back to direct iframe: {reason}")
        self._stop_roster_task()
        self._dispose_handle()
        self.participants = []

        room_name = fallback_room_name()
        url = build_fallback_iframe_url(self.provider.domain, room_name, self.config.role, self.display_name)
        try:
            self.host.clear()
            self.host.mount_iframe(url, IFRAME_ALLOW)
        except Exception as exc:
            logger.exception("Mounting fallback iframe failed")
            self.mode = AdapterMode.FAILED
            failure = ProviderTransientFailure()
            self.error = failure.detail
            raise failure from exc
        self.room_name = room_name
        self.iframe_url = url
        self.mode = AdapterMode.IFRAME

    def observe_error_text(self, text: str) -> bool:
        """Feed text seen on the provider's error surface; returns True if it caused a fallback."""
        if self.mode != AdapterMode.EMBEDDED or not self.failure_detector.matches(text):
            return False
        self.fallback_to_iframe(f"detected provider failure text: {text[:80]}")
        return True

    def _listeners(self) -> Dict[str, Callable[..., None]]:
        listeners: Dict[str, Callable[..., None]] = {
            "videoConferenceJoined": self._on_conference_joined,
            "videoConferenceLeft": self._on_conference_left,
            "readyToClose": self._on_conference_left,
            "conferenceFailed": self._on_conference_failed,
            "errorOccurred": self._on_error,
        }
        for event in ROSTER_EVENTS:
            listeners[event] = self._on_roster_event
        return listeners

    def _on_conference_joined(self, data: Optional[Dict[str, Any]] = None) -> None:
        logger.info(f"Joined conference {self.room_name}")
        if self.config.is_moderator and self._handle is not None:
            try:
                self._handle.execute_command("setLocalParticipantProperty", {"property": "role", "value": MODERATOR})
            except Exception:
                logger.warning("Could not assert moderator role", exc_info=True)
        if self.on_joined:
            self.on_joined(data or {})
        self.refresh_roster()

    def _on_conference_left(self, data: Optional[Dict[str, Any]] = None) -> None:
        logger.info(f"Left conference {self.room_name}")
        if self.on_left:
            self.on_left(data)

    def _on_roster_event(self, data: Optional[Dict[str, Any]] = None) -> None:
        self.refresh_roster()

    def _fallback_from_event(self, reason: str) -> None:
        # provider 이벤트 디스패처 안에서는 예외를 던지지 않는다. mode/error 로 화면에 알린다
        try:
            self.fallback_to_iframe(reason)
        except ProviderTransientFailure:
            logger.error(f"Iframe fallback after provider event failed: {reason}")

    def _on_conference_failed(self, data: Optional[Dict[str, Any]] = None) -> None:
        error = (data or {}).get("error", "")
        logger.error(f"Conference failed: {error}")
        if matches_signature(str(error), ACCESS_FAILURE_SIGNATURES):
            self._fallback_from_event(f"conference failed: {error}")

    def _on_error(self, data: Optional[Dict[str, Any]] = None) -> None:
        error = (data or {}).get("error") or {}
        name = error.get("name", "") if isinstance(error, dict) else str(error)
        if matches_signature(name, ACCESS_FAILURE_SIGNATURES):
            self._fallback_from_event(f"provider error: {name}")
            return
        # Other provider errors are reported but do not tear down a working meeting.
        logger.error(f"Video conference error: {name or 'Unknown error'}")

    def refresh_roster(self) -> List[Participant]:
        if self._handle is None:
            return self.participants
        try:
            raw = self._handle.get_participants_info()
        except Exception:
            logger.warning("Error getting participants", exc_info=True)
            return self.participants
        if isinstance(raw, dict):
            raw = list(raw.values())
        if not isinstance(raw, list):
            logger.warning(f"Invalid participants data: {raw!r}")
            return self.participants

        now = datetime.now(timezone.utc)
        participants = []
        for entry in raw:
            participant_id = str(entry.get("participantId") or entry.get("id") or "")
            if not participant_id:
                continue
            joined_at = self._first_seen.setdefault(participant_id, now)
            participants.append(Participant(
                id=participant_id,
                display_name=entry.get("displayName") or entry.get("formattedDisplayName") or "Participant",
                role=entry.get("role") or PARTICIPANT,
                joined_at=joined_at,
            ))
        current_ids = {p.id for p in participants}
        self._first_seen = {k: v for k, v in self._first_seen.items() if k in current_ids}
        self.participants = participants
        if self.on_participants:
            self.on_participants(list(participants))
        return participants

    async def _poll_roster(self) -> None:
        while True:
            await asyncio.sleep(self.roster_interval)
            self.refresh_roster()

    def _stop_roster_task(self) -> None:
        if self._roster_task is not None:
            self._roster_task.cancel()
            self._roster_task = None

    def _dispose_handle(self) -> None:
        handle, self._handle = self._handle, None
        if handle is None:
            return
        try:
            handle.dispose()
        except Exception:
            logger.warning("Error disposing conference embed", exc_info=True)

    def _teardown(self) -> None:
        self._stop_roster_task()
        self._dispose_handle()
        try:
            self.host.clear()
        except Exception:
            logger.warning("Error clearing conference container", exc_info=True)
        self.participants = []
        self._first_seen = {}

    async def retry(self) -> None:
        """Manual retry after a failure: tear everything down and start again."""
        if self.mode == AdapterMode.DISPOSED:
            raise RuntimeError("Conference adapter has been disposed")
        self._teardown()
        self.mode = AdapterMode.CONNECTING
        self.iframe_url = None
        await self.start()

    async def dispose(self) -> None:
        if self.mode == AdapterMode.DISPOSED:
            return
        task = self._roster_task
        self._teardown()
        if task is not None:
            try:
                await task
            except asyncio.CancelledError:
                pass
        if self.mode != AdapterMode.IDLE:
            self._release_host()
        self.mode = AdapterMode.DISPOSED
