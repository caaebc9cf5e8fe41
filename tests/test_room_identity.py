import re

import pytest

from liveclass.services.room_identity import (
    DISALLOWED_MARKERS,
    build_video_link,
    fallback_room_name,
    generate_room_name,
    has_disallowed_marker,
    is_safe_room_name,
    room_from_video_link,
    sanitize_room_name,
    to_base36,
)

ROOM_PATTERN = re.compile(r"^[a-z0-9]+_[0-9a-z]+_[0-9a-z]+$")


def test_to_base36():
    assert to_base36(0) == "0"
    assert to_base36(35) == "z"
    assert to_base36(36) == "10"
    assert to_base36(1295) == "zz"
    with pytest.raises(ValueError):
        to_base36(-1)


def test_generated_names_never_carry_disallowed_markers():
    seeds = ["", "DataStruct", "lobby", "Class 101", "Emergency", "class_room", "로비 수업"]
    for i in range(10000):
        name = generate_room_name(seeds[i % len(seeds)])
        assert is_safe_room_name(name), name
        for marker in DISALLOWED_MARKERS:
            assert not name.lower().startswith(marker)
            assert marker not in name.lower()


def test_seed_becomes_prefix():
    name = generate_room_name("Data Structures!")
    assert name.startswith("datastruct_")
    assert ROOM_PATTERN.match(name)


def test_empty_seed_uses_neutral_prefix():
    assert generate_room_name("").startswith("room_")
    assert generate_room_name("!!!").startswith("room_")


def test_disallowed_seed_regenerates_with_neutral_prefix():
    assert generate_room_name("lobby").startswith(("room_", "videoroom_"))
    assert generate_room_name("class").startswith(("room_", "videoroom_"))


def test_random_part_containing_marker_is_regenerated():
    # 첫 번째 난수가 'lobby' 를 만들면 다시 뽑아야 한다
    lobby = int("lobby", 36).to_bytes(5, "big")
    values = iter([lobby, b"\x00\x00\x00\x00\x01"])
    name = generate_room_name("math", clock=lambda: 36 ** 3 * 1000, random_bytes=lambda n: next(values))
    assert name == "room_1000_1"


def test_fallback_room_name_is_neutral():
    name = fallback_room_name(clock=lambda: 0, random_bytes=lambda n: b"\x00" * n)
    assert name == "videoroom_0_0"


def test_sanitize_room_name():
    assert sanitize_room_name("math_abc_123") == "math_abc_123"
    assert sanitize_room_name("math room#1") == "math_room_1"
    assert sanitize_room_name("").startswith("room_")
    assert sanitize_room_name("///").startswith("room_")
    replaced = sanitize_room_name("LobbyRoom_1")
    assert replaced.startswith("room_")
    assert not has_disallowed_marker(replaced)


def test_video_link_round_trip_keeps_room_name():
    link = build_video_link("math_abc_123", domain="meet.example.org")
    assert link == "https://meet.example.org/math_abc_123"
    assert room_from_video_link(link + "#config.prejoinPageEnabled=false") == "math_abc_123"
