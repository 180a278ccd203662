"""8-bit RGBA colors and tolerance matching."""

from __future__ import annotations

from dataclasses import dataclass

from ..harness.protocol import RGBColor


def _channel(value: float) -> int:
    return int(round(min(1.0, max(0.0, float(value))) * 255.0))


@dataclass(frozen=True)
class PixelColor:
    red: int
    green: int
    blue: int
    alpha: int = 255

    def distance(self, other: "PixelColor") -> int:
        """Largest per-channel difference over RGB.

        Alpha is ignored: anti-aliased edges blend alpha without the color
        itself being wrong.
        """
        return max(
            abs(self.red - other.red),
            abs(self.green - other.green),
            abs(self.blue - other.blue),
        )

    @classmethod
    def from_unit(cls, red: float, green: float, blue: float, alpha: float = 1.0) -> "PixelColor":
        return cls(_channel(red), _channel(green), _channel(blue), _channel(alpha))

    @classmethod
    def from_rgb(cls, color: RGBColor) -> "PixelColor":
        return cls.from_unit(color.red, color.green, color.blue)

    @classmethod
    def from_packed(cls, key: int) -> "PixelColor":
        key = int(key)
        return cls((key >> 24) & 0xFF, (key >> 16) & 0xFF, (key >> 8) & 0xFF, key & 0xFF)

    @property
    def packed(self) -> int:
        return (self.red << 24) | (self.green << 16) | (self.blue << 8) | self.alpha

    @property
    def brightness(self) -> int:
        return self.red + self.green + self.blue


TRANSPARENT = PixelColor(0, 0, 0, 0)
BLACK = PixelColor(0, 0, 0)
WHITE = PixelColor(255, 255, 255)


def matches(actual: PixelColor, expected: PixelColor, tolerance: int = 0) -> bool:
    return actual.distance(expected) <= tolerance


def parse_color(raw: str) -> PixelColor:
    """Parse `#rrggbb`, `#rrggbbaa` or `r,g,b[,a]` into a color."""
    text = raw.strip()
    if text.startswith("#"):
        digits = text[1:]
        if len(digits) not in {6, 8}:
            raise ValueError(f"invalid hex color: {raw}")
        values = [int(digits[idx : idx + 2], 16) for idx in range(0, len(digits), 2)]
    else:
        values = [int(part.strip()) for part in text.split(",")]
        if len(values) not in {3, 4}:
            raise ValueError(f"invalid color: {raw}")
    if any(value < 0 or value > 255 for value in values):
        raise ValueError(f"color channel out of range: {raw}")
    return PixelColor(*values)
