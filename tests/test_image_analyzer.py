from __future__ import annotations

from pathlib import Path

import numpy as np
import pytest
from PIL import Image, ImageDraw

from framecheck_engine.eval.color import TRANSPARENT, PixelColor
from framecheck_engine.eval.geometry import Direction, Point, Rect
from framecheck_engine.eval.image_analyzer import ImageAnalyzer


RED = PixelColor(255, 0, 0)
BLUE = PixelColor(0, 0, 255)
WHITE = PixelColor(255, 255, 255)
GREEN = PixelColor(0, 200, 0)


def _split_image(width: int, height: int, split_x: int) -> Image.Image:
    image = Image.new("RGB", (width, height), (0, 0, 255))
    ImageDraw.Draw(image).rectangle([0, 0, split_x - 1, height - 1], fill=(255, 0, 0))
    return image


def _canvas_with_box(size: tuple[int, int], box: tuple[int, int, int, int], fill=(0, 200, 0)) -> Image.Image:
    image = Image.new("RGB", size, (255, 255, 255))
    left, top, width, height = box
    ImageDraw.Draw(image).rectangle([left, top, left + width - 1, top + height - 1], fill=fill)
    return image


def test_point_and_pixel_sizes() -> None:
    analyzer = ImageAnalyzer(Image.new("RGB", (200, 100)), scale_factor=2.0)
    assert (analyzer.pixel_width, analyzer.pixel_height) == (200, 100)
    assert (analyzer.point_width, analyzer.point_height) == (100.0, 50.0)


def test_rejects_non_positive_scale() -> None:
    with pytest.raises(ValueError):
        ImageAnalyzer(Image.new("RGB", (2, 2)), scale_factor=0)


def test_sample_color_and_out_of_bounds() -> None:
    analyzer = ImageAnalyzer(_split_image(200, 100, 120), scale_factor=2.0)
    assert analyzer.sample_color(Point(10, 10)) == RED
    assert analyzer.sample_color(Point(90, 10)) == BLUE
    assert analyzer.sample_color(Point(-1, 10)) == TRANSPARENT
    assert analyzer.sample_color(Point(100, 10)) == TRANSPARENT
    assert analyzer.matches_color(PixelColor(250, 5, 0), Point(10, 10), tolerance=5)
    assert not analyzer.matches_color(PixelColor(250, 5, 0), Point(10, 10), tolerance=4)


def test_pixel_data_is_copied_and_read_only() -> None:
    image = Image.new("RGB", (4, 4), (255, 0, 0))
    analyzer = ImageAnalyzer(image, scale_factor=1.0)
    image.putpixel((0, 0), (0, 255, 0))
    assert analyzer.sample_color(Point(0, 0)) == RED
    assert not analyzer.pixels.flags.writeable


def test_accepts_numpy_arrays() -> None:
    rgb = np.zeros((3, 5, 3), dtype=np.uint8)
    rgb[..., 1] = 77
    analyzer = ImageAnalyzer(rgb, scale_factor=1.0)
    assert analyzer.sample_color(Point(4, 2)) == PixelColor(0, 77, 0, 255)
    with pytest.raises(ValueError):
        ImageAnalyzer(np.zeros((3, 5, 2), dtype=np.uint8))


def test_find_color_boundary_on_vertical_split() -> None:
    analyzer = ImageAnalyzer(_split_image(200, 100, 120), scale_factor=2.0)
    assert analyzer.find_color_boundary(Point(10, 25), Direction.RIGHT, RED, tolerance=0) == Point(60.0, 25.0)
    assert analyzer.find_color_boundary(Point(90, 25), Direction.LEFT, BLUE, tolerance=0) == Point(59.5, 25.0)


def test_find_color_boundary_reaches_edge() -> None:
    analyzer = ImageAnalyzer(_split_image(200, 100, 120), scale_factor=2.0)
    assert analyzer.find_color_boundary(Point(10, 25), Direction.DOWN, RED, tolerance=0) is None
    assert analyzer.find_color_boundary(Point(10, 25), Direction.UP, RED, tolerance=0) is None
    assert analyzer.find_color_boundary(Point(500, 25), Direction.LEFT, RED) is None


def test_average_color() -> None:
    analyzer = ImageAnalyzer(_split_image(4, 2, 2), scale_factor=1.0)
    assert analyzer.average_color(Rect(0, 0, 4, 2)) == PixelColor(127, 0, 127, 255)
    assert analyzer.average_color(Rect(0, 0, 2, 2)) == RED
    assert analyzer.average_color(Rect(-10, -10, 100, 100)) == PixelColor(127, 0, 127, 255)
    assert analyzer.average_color(Rect(50, 50, 2, 2)) == TRANSPARENT


def test_average_color_of_degenerate_rect_samples_one_pixel() -> None:
    analyzer = ImageAnalyzer(_split_image(4, 2, 2), scale_factor=1.0)
    assert analyzer.average_color(Rect(3, 1, 0, 0)) == BLUE


def test_dominant_color() -> None:
    image = _canvas_with_box((10, 10), (0, 0, 3, 3))
    analyzer = ImageAnalyzer(image, scale_factor=1.0)
    assert analyzer.dominant_color(Rect(0, 0, 10, 10)) == WHITE
    assert analyzer.dominant_color(Rect(0, 0, 3, 3)) == GREEN


def test_content_bounds_on_centered_box() -> None:
    image = _canvas_with_box((400, 300), (100, 60, 120, 80))
    analyzer = ImageAnalyzer(image, scale_factor=2.0)
    bounds = analyzer.content_bounds(WHITE, tolerance=5)
    assert bounds.x == pytest.approx(50, abs=1)
    assert bounds.y == pytest.approx(30, abs=1)
    assert bounds.width == pytest.approx(60, abs=1)
    assert bounds.height == pytest.approx(40, abs=1)


def test_content_bounds_of_blank_canvas_is_zero() -> None:
    analyzer = ImageAnalyzer(Image.new("RGB", (40, 30), (255, 255, 255)), scale_factor=2.0)
    assert analyzer.content_bounds(WHITE) == Rect.zero()


def test_content_bounds_within_region() -> None:
    image = _canvas_with_box((200, 100), (20, 20, 10, 10))
    ImageDraw.Draw(image).rectangle([150, 40, 169, 59], fill=(0, 0, 0))
    analyzer = ImageAnalyzer(image, scale_factor=1.0)
    bounds = analyzer.content_bounds(WHITE, within=Rect(100, 0, 100, 100))
    assert bounds == Rect(150, 40, 20, 20)
    whole = analyzer.content_bounds(WHITE)
    assert whole == Rect(20, 20, 150, 40)


def test_find_region() -> None:
    image = _canvas_with_box((120, 80), (20, 10, 40, 20))
    analyzer = ImageAnalyzer(image, scale_factor=2.0)
    assert analyzer.find_region(GREEN, tolerance=5) == Rect(10, 5, 20, 10)
    assert analyzer.find_region(PixelColor(255, 0, 255), tolerance=5) is None


def test_from_path(tmp_path: Path) -> None:
    path = tmp_path / "frame.png"
    _split_image(20, 10, 5).save(path)
    analyzer = ImageAnalyzer.from_path(path, scale_factor=1.0)
    assert analyzer.sample_color(Point(0, 0)) == RED
    assert analyzer.sample_color(Point(19, 9)) == BLUE
