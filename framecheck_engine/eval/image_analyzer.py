"""Read-only pixel analysis of a single captured frame.

Every point and rect argument is in point space; the analyzer converts to
pixels with its scale factor, rounding half up. Pixel data is copied once into
a read-only RGBA array at construction, so an analyzer never touches the source
image again and can be shared between threads.
"""

from __future__ import annotations

import math
from pathlib import Path

import numpy as np
from PIL import Image

from .color import TRANSPARENT, PixelColor, matches
from .geometry import Direction, Point, Rect


def point_to_pixel(value: float, scale: float) -> int:
    return int(math.floor(value * scale + 0.5))


def _as_rgba(array: np.ndarray) -> np.ndarray:
    if array.ndim == 2:
        gray = np.asarray(array, dtype=np.uint8)
        alpha = np.full(gray.shape, 255, dtype=np.uint8)
        return np.dstack([gray, gray, gray, alpha])
    if array.ndim == 3 and array.shape[2] == 3:
        rgb = np.asarray(array, dtype=np.uint8)
        alpha = np.full(rgb.shape[:2], 255, dtype=np.uint8)
        return np.dstack([rgb, alpha])
    if array.ndim == 3 and array.shape[2] == 4:
        return np.array(array, dtype=np.uint8)
    raise ValueError(f"unsupported pixel array shape: {array.shape}")


def _distance(pixels: np.ndarray, color: PixelColor) -> np.ndarray:
    target = np.array([color.red, color.green, color.blue], dtype=np.int16)
    return np.abs(pixels[..., :3].astype(np.int16) - target).max(axis=-1)


class ImageAnalyzer:
    def __init__(self, image: Image.Image | np.ndarray, scale_factor: float = 2.0) -> None:
        if scale_factor <= 0:
            raise ValueError("scale_factor must be positive")
        if isinstance(image, Image.Image):
            pixels = np.array(image.convert("RGBA"), dtype=np.uint8)
        else:
            pixels = _as_rgba(np.asarray(image))
        pixels.setflags(write=False)
        self._pixels = pixels
        self.scale_factor = float(scale_factor)

    @classmethod
    def from_path(cls, path: Path | str, scale_factor: float = 2.0) -> "ImageAnalyzer":
        with Image.open(path) as image:
            return cls(image, scale_factor)

    @property
    def pixels(self) -> np.ndarray:
        return self._pixels

    @property
    def pixel_width(self) -> int:
        return int(self._pixels.shape[1])

    @property
    def pixel_height(self) -> int:
        return int(self._pixels.shape[0])

    @property
    def point_width(self) -> float:
        return self.pixel_width / self.scale_factor

    @property
    def point_height(self) -> float:
        return self.pixel_height / self.scale_factor

    # Sampling

    def sample_color(self, at: Point) -> PixelColor:
        """Color of the pixel nearest `at`; transparent black outside the image."""
        return self._pixel(point_to_pixel(at.x, self.scale_factor), point_to_pixel(at.y, self.scale_factor))

    def average_color(self, rect: Rect) -> PixelColor:
        """Per-channel mean over the rect, truncated to integers.

        The rect is half-open in pixel space and always covers at least one
        pixel; a rect entirely outside the image yields transparent black.
        """
        box = self._pixel_box(rect)
        if box is None:
            return TRANSPARENT
        x0, y0, x1, y1 = box
        region = self._pixels[y0:y1, x0:x1].reshape(-1, 4).astype(np.int64)
        means = region.sum(axis=0) // region.shape[0]
        return PixelColor(*(int(value) for value in means))

    def dominant_color(self, rect: Rect) -> PixelColor:
        """Most frequent exact RGBA value in the rect; ties go to the lowest packed key."""
        box = self._pixel_box(rect)
        if box is None:
            return TRANSPARENT
        x0, y0, x1, y1 = box
        region = self._pixels[y0:y1, x0:x1].reshape(-1, 4).astype(np.uint32)
        keys = (region[:, 0] << 24) | (region[:, 1] << 16) | (region[:, 2] << 8) | region[:, 3]
        values, counts = np.unique(keys, return_counts=True)
        return PixelColor.from_packed(int(values[int(np.argmax(counts))]))

    def matches_color(self, expected: PixelColor, at: Point, tolerance: int = 0) -> bool:
        return matches(self.sample_color(at), expected, tolerance)

    # Boundaries and regions

    def find_color_boundary(
        self,
        start: Point,
        direction: Direction,
        source_color: PixelColor,
        tolerance: int = 5,
    ) -> Point | None:
        """Walk from `start` while pixels match `source_color`.

        Returns the first non-matching pixel as a point, or None when the walk
        reaches the image edge without leaving the color.
        """
        px = point_to_pixel(start.x, self.scale_factor)
        py = point_to_pixel(start.y, self.scale_factor)
        if not self._in_bounds(px, py):
            return None
        xs, ys = self._ray(px, py, direction)
        line = self._pixels[ys, xs]
        mismatched = np.flatnonzero(_distance(line, source_color) > tolerance)
        if mismatched.size == 0:
            return None
        idx = int(mismatched[0])
        return Point(int(xs[idx]) / self.scale_factor, int(ys[idx]) / self.scale_factor)

    def content_bounds(self, background: PixelColor, tolerance: int = 5, within: Rect | None = None) -> Rect:
        """Tight bounds of everything that is not `background`.

        Rows are scanned inward from the top and bottom edges, then columns
        from the left and right edges restricted to the rows found. Returns
        `Rect.zero()` when nothing but background is present.
        """
        if within is None:
            box: tuple[int, int, int, int] | None = (0, 0, self.pixel_width, self.pixel_height)
        else:
            box = self._pixel_box(within)
        if box is None:
            return Rect.zero()
        x0, y0, x1, y1 = box
        region = self._pixels[y0:y1, x0:x1]
        height, width = region.shape[:2]

        def row_has_content(row: int) -> bool:
            return bool((_distance(region[row], background) > tolerance).any())

        top = next((row for row in range(height) if row_has_content(row)), height)
        bottom = next((row for row in range(height - 1, -1, -1) if row_has_content(row)), -1)
        if top > bottom:
            return Rect.zero()

        band = region[top : bottom + 1]

        def column_has_content(col: int) -> bool:
            return bool((_distance(band[:, col], background) > tolerance).any())

        left = next((col for col in range(width) if column_has_content(col)), width)
        right = next((col for col in range(width - 1, -1, -1) if column_has_content(col)), -1)
        if left > right:
            return Rect.zero()

        scale = self.scale_factor
        return Rect(
            (x0 + left) / scale,
            (y0 + top) / scale,
            (right - left + 1) / scale,
            (bottom - top + 1) / scale,
        )

    def find_region(self, color: PixelColor, tolerance: int = 5) -> Rect | None:
        """Grow a rectangle from the first matching pixel (row-major order).

        Each side moves outward while the whole new edge row or column still
        matches `color`.
        """
        mask = _distance(self._pixels, color) <= tolerance
        hits = np.flatnonzero(mask)
        if hits.size == 0:
            return None
        width = self.pixel_width
        height = self.pixel_height
        seed_y, seed_x = divmod(int(hits[0]), width)
        x0 = x1 = seed_x
        y0 = y1 = seed_y
        grew = True
        while grew:
            grew = False
            if x0 > 0 and mask[y0 : y1 + 1, x0 - 1].all():
                x0 -= 1
                grew = True
            if x1 < width - 1 and mask[y0 : y1 + 1, x1 + 1].all():
                x1 += 1
                grew = True
            if y0 > 0 and mask[y0 - 1, x0 : x1 + 1].all():
                y0 -= 1
                grew = True
            if y1 < height - 1 and mask[y1 + 1, x0 : x1 + 1].all():
                y1 += 1
                grew = True
        scale = self.scale_factor
        return Rect(x0 / scale, y0 / scale, (x1 - x0 + 1) / scale, (y1 - y0 + 1) / scale)

    # Pixel helpers

    def _in_bounds(self, px: int, py: int) -> bool:
        return 0 <= px < self.pixel_width and 0 <= py < self.pixel_height

    def _pixel(self, px: int, py: int) -> PixelColor:
        if not self._in_bounds(px, py):
            return TRANSPARENT
        red, green, blue, alpha = (int(value) for value in self._pixels[py, px])
        return PixelColor(red, green, blue, alpha)

    def _pixel_box(self, rect: Rect) -> tuple[int, int, int, int] | None:
        scale = self.scale_factor
        x0 = point_to_pixel(rect.min_x, scale)
        y0 = point_to_pixel(rect.min_y, scale)
        x1 = max(point_to_pixel(rect.max_x, scale), x0 + 1)
        y1 = max(point_to_pixel(rect.max_y, scale), y0 + 1)
        x0, y0 = max(0, x0), max(0, y0)
        x1, y1 = min(self.pixel_width, x1), min(self.pixel_height, y1)
        if x0 >= x1 or y0 >= y1:
            return None
        return x0, y0, x1, y1

    def _ray(self, px: int, py: int, direction: Direction) -> tuple[np.ndarray, np.ndarray]:
        dx, dy = direction.step
        if dx > 0:
            xs = np.arange(px, self.pixel_width)
        elif dx < 0:
            xs = np.arange(px, -1, -1)
        else:
            xs = None
        if dy > 0:
            ys = np.arange(py, self.pixel_height)
        elif dy < 0:
            ys = np.arange(py, -1, -1)
        else:
            ys = None
        if xs is None:
            xs = np.full(ys.shape, px)
        if ys is None:
            ys = np.full(xs.shape, py)
        return xs, ys
