from __future__ import annotations

import pytest

from slotengine.duration import resolve_duration


@pytest.mark.parametrize(
    "base, modifier, interval, expected",
    [
        (45, 0, 30, 45),
        (45, None, 30, 45),
        (45, 15, 30, 60),
        (45, 10, 30, 60),
        (45, -15, 30, 30),
        (45, -15, 60, 60),
        (44.5, 0, 60, 45),
        (30, -30, 30, 0),
        (30, -40, 30, 0),
    ],
)
def test_resolve_duration(base, modifier, interval, expected) -> None:
    assert resolve_duration(base, modifier, interval) == expected


def test_resolve_duration_never_under_allocates() -> None:
    for modifier in range(-20, 40, 5):
        minutes = resolve_duration(45, modifier, 30)
        assert minutes >= max(45 + modifier, 0)
