"""
화상회의 방 이름(meeting_id) 생성기.

방 이름 형식: ``{prefix}_{timestamp36}_{random36}``

- URL 에 그대로 쓸 수 있도록 영문/숫자/밑줄/하이픈만 사용
- 마이크로초 타임스탬프 + 5바이트 난수(둘 다 36진수)로 충돌 가능성을 낮춤
- Jitsi 에서 로비/인증 화면을 띄우는 것으로 알려진 문자열(lobby, class_, emergency ...)
  이 들어가면 부분 치환하지 않고 중립 prefix 로 처음부터 다시 만든다
"""
import re
import secrets
import time
from typing import Callable

from liveclass.core.config import settings

DISALLOWED_MARKERS = ("lobby", "class_", "emergency", "membersonly")
NEUTRAL_PREFIXES = ("room", "videoroom")
PREFIX_MAX_LENGTH = 10
RANDOM_BYTES = 5

_SAFE_ROOM_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")
_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9_-]")
_BASE36_DIGITS = "0123456789abcdefghijklmnopqrstuvwxyz"


def to_base36(value: int) -> str:
    if value < 0:
        raise ValueError("base36 encoding requires a non-negative integer")
    if value == 0:
        return "0"
    digits = []
    while value:
        value, remainder = divmod(value, 36)
        digits.append(_BASE36_DIGITS[remainder])
    return "".join(reversed(digits))


def _prefix_from_seed(seed: str) -> str:
    cleaned = re.sub(r"[^a-z0-9]", "", (seed or "").lower())
    return cleaned[:PREFIX_MAX_LENGTH]


def has_disallowed_marker(name: str) -> bool:
    lowered = name.lower()
    return any(marker in lowered for marker in DISALLOWED_MARKERS)


def is_safe_room_name(name: str) -> bool:
    return bool(name) and bool(_SAFE_ROOM_PATTERN.match(name)) and not has_disallowed_marker(name)


def _candidate(prefix: str, clock: Callable[[], int], random_bytes: Callable[[int], bytes]) -> str:
    timestamp = to_base36(clock() // 1000)
    randomness = to_base36(int.from_bytes(random_bytes(RANDOM_BYTES), "big"))
    return f"{prefix}_{timestamp}_{randomness}"


def generate_room_name(
    seed: str = "",
    *,
    clock: Callable[[], int] = time.time_ns,
    random_bytes: Callable[[int], bytes] = secrets.token_bytes,
) -> str:
    """seed(강의명 앞부분, 세션 id 등)로부터 안전한 방 이름을 만든다."""
    prefix = _prefix_from_seed(seed) or NEUTRAL_PREFIXES[0]
    candidate = _candidate(prefix, clock, random_bytes)
    attempt = 0
    while has_disallowed_marker(candidate):
        neutral = NEUTRAL_PREFIXES[attempt % len(NEUTRAL_PREFIXES)]
        candidate = _candidate(neutral, clock, random_bytes)
        attempt += 1
    return candidate


def fallback_room_name(
    *,
    clock: Callable[[], int] = time.time_ns,
    random_bytes: Callable[[int], bytes] = secrets.token_bytes,
) -> str:
    return generate_room_name(NEUTRAL_PREFIXES[1], clock=clock, random_bytes=random_bytes)


def sanitize_room_name(name: str) -> str:
    """
    외부에서 받은 방 이름을 임베드에 넘기기 전에 정리한다.
    금지 문자열이 남아 있으면 새 중립 방 이름을 돌려준다.
    """
    sanitized = _UNSAFE_CHARS.sub("_", (name or "").strip())
    if not sanitized.strip("_") or has_disallowed_marker(sanitized):
        return generate_room_name(NEUTRAL_PREFIXES[0])
    return sanitized


def build_video_link(room_name: str, domain: str = None) -> str:
    return f"https://{domain or settings.JITSI_DOMAIN}/{room_name}"


def room_from_video_link(video_link: str) -> str:
    return video_link.rstrip("/").rsplit("/", 1)[-1].split("#", 1)[0]
