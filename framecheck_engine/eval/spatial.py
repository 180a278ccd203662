"""Edge, distance and gap measurements along pixel scan lines.

These only use `ImageAnalyzer.sample_color` and the analyzer's size
properties. Results are in points and accurate to one pixel.
"""

from __future__ import annotations

from typing import Iterator

from .color import PixelColor, matches
from .geometry import Direction, Point, ScanAxis
from .image_analyzer import ImageAnalyzer, point_to_pixel


def _sample(analyzer: ImageAnalyzer, px: int, py: int) -> PixelColor:
    scale = analyzer.scale_factor
    return analyzer.sample_color(Point(px / scale, py / scale))


def _scan_line(analyzer: ImageAnalyzer, axis: ScanAxis, at: float, start: int = 0) -> Iterator[tuple[int, PixelColor]]:
    fixed = point_to_pixel(at, analyzer.scale_factor)
    if axis is ScanAxis.VERTICAL:
        for py in range(start, analyzer.pixel_height):
            yield py, _sample(analyzer, fixed, py)
    else:
        for px in range(start, analyzer.pixel_width):
            yield px, _sample(analyzer, px, fixed)


def _first_occurrence(analyzer: ImageAnalyzer, color: PixelColor, axis: ScanAxis, at: float, tolerance: int) -> int | None:
    for position, sampled in _scan_line(analyzer, axis, at):
        if matches(sampled, color, tolerance):
            return position
    return None


def measure_edge(
    analyzer: ImageAnalyzer,
    start: Point,
    direction: Direction,
    target_color: PixelColor,
    tolerance: int = 5,
) -> float | None:
    """Distance from `start` to the first pixel matching `target_color`, or None."""
    scale = analyzer.scale_factor
    start_x = px = point_to_pixel(start.x, scale)
    start_y = py = point_to_pixel(start.y, scale)
    dx, dy = direction.step
    while 0 <= px < analyzer.pixel_width and 0 <= py < analyzer.pixel_height:
        if matches(_sample(analyzer, px, py), target_color, tolerance):
            return max(abs(px - start_x), abs(py - start_y)) / scale
        px += dx
        py += dy
    return None


def measure_distance(
    analyzer: ImageAnalyzer,
    color_a: PixelColor,
    color_b: PixelColor,
    axis: ScanAxis,
    at: float,
    tolerance: int = 5,
) -> float | None:
    """Span between the first occurrences of two colors on one scan line.

    `at` is the perpendicular coordinate of the scan line in points.
    """
    pos_a = _first_occurrence(analyzer, color_a, axis, at, tolerance)
    pos_b = _first_occurrence(analyzer, color_b, axis, at, tolerance)
    if pos_a is None or pos_b is None:
        return None
    return abs(pos_b - pos_a) / analyzer.scale_factor


def measure_gap(
    analyzer: ImageAnalyzer,
    from_color: PixelColor,
    to_color: PixelColor,
    axis: ScanAxis,
    at: float,
    tolerance: int = 5,
) -> float | None:
    """Trailing edge of the first `from_color` run to the leading edge of `to_color`."""
    run_end = None
    in_run = False
    for position, sampled in _scan_line(analyzer, axis, at):
        if matches(sampled, from_color, tolerance):
            in_run = True
        elif in_run:
            run_end = position
            break
    if run_end is None:
        return None
    for position, sampled in _scan_line(analyzer, axis, at, start=run_end):
        if matches(sampled, to_color, tolerance):
            return (position - run_end) / analyzer.scale_factor
    return None
