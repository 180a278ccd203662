from __future__ import annotations

import pytest

from framecheck_engine.eval.color import BLACK, WHITE, PixelColor, matches, parse_color
from framecheck_engine.harness.protocol import RGBColor


def test_distance_properties() -> None:
    color = PixelColor(12, 200, 90)
    other = PixelColor(40, 180, 95)
    assert color.distance(color) == 0
    assert color.distance(other) == other.distance(color)
    assert BLACK.distance(WHITE) == 255


def test_distance_is_max_not_sum() -> None:
    base = PixelColor(100, 100, 100)
    assert base.distance(PixelColor(130, 100, 100)) == 30
    assert base.distance(PixelColor(130, 120, 90)) == 30


def test_distance_ignores_alpha() -> None:
    assert PixelColor(10, 20, 30, 255).distance(PixelColor(10, 20, 30, 0)) == 0


def test_matches_with_tolerance() -> None:
    color = PixelColor(50, 60, 70)
    assert matches(color, color, tolerance=0)
    assert matches(color, PixelColor(55, 60, 70), tolerance=5)
    assert not matches(color, PixelColor(56, 60, 70), tolerance=5)
    assert not matches(color, PixelColor(50, 60, 76), tolerance=5)


def test_unit_conversions() -> None:
    assert PixelColor.from_unit(1.0, 0.0, 0.5) == PixelColor(255, 0, 128)
    assert PixelColor.from_unit(2.0, -1.0, 0.0, 0.0) == PixelColor(255, 0, 0, 0)
    assert PixelColor.from_rgb(RGBColor(0.0, 1.0, 0.0)) == PixelColor(0, 255, 0)


def test_packed_key_round_trips() -> None:
    color = PixelColor(1, 2, 3, 4)
    assert color.packed == 0x01020304
    assert PixelColor.from_packed(color.packed) == color


def test_parse_color() -> None:
    assert parse_color("#ff8000") == PixelColor(255, 128, 0)
    assert parse_color("#ff800080") == PixelColor(255, 128, 0, 128)
    assert parse_color("10, 20, 30") == PixelColor(10, 20, 30)
    with pytest.raises(ValueError):
        parse_color("#abc")
    with pytest.raises(ValueError):
        parse_color("300,0,0")
