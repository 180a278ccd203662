"""Animation timing measured from a captured frame sequence.

Each measurement reduces every frame to one number (brightness, transition
progress, a content-box dimension) and runs a closed-form heuristic over the
resulting series. The series functions are public so recorded series can be
analysed without images.

"No signal" is a result, not an error: a stationary pulse, a transition with
no detectable change or a spring that never moves all come back as degenerate
records (zero duration, `is_stationary=True`, damping 1.0).
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Iterable, Sequence

from PIL import Image

from ..harness.protocol import FrameCaptureResult
from .color import PixelColor
from .geometry import Point, Rect
from .image_analyzer import ImageAnalyzer


MIN_FRAMES = 3
STATIONARY_THRESHOLD = 10.0
PEAK_HYSTERESIS = 0.15
TRANSITION_START = 0.1
TRANSITION_END = 0.9
CURVE_THRESHOLD = 0.15
MIN_TRAVEL = 0.001
SETTLE_FRACTION = 0.05
SPRING_TOLERANCE = 10
STAGGER_THRESHOLD = 20


class AnimatableProperty(str, Enum):
    OPACITY = "opacity"
    SCALE_X = "scale_x"
    SCALE_Y = "scale_y"
    POSITION_Y = "position_y"


class AnimationCurve(str, Enum):
    EASE_IN = "ease_in"
    EASE_OUT = "ease_out"
    EASE_IN_OUT = "ease_in_out"
    LINEAR = "linear"
    SPRING = "spring"


@dataclass(frozen=True)
class PulseAnalysis:
    cycles_per_minute: float
    is_stationary: bool
    min_brightness: float
    max_brightness: float

    @property
    def amplitude(self) -> float:
        return self.max_brightness - self.min_brightness


@dataclass(frozen=True)
class TransitionAnalysis:
    duration: float
    curve: AnimationCurve
    start_frame: int = 0
    end_frame: int = 0

    @property
    def is_degenerate(self) -> bool:
        return self.duration <= 0


@dataclass(frozen=True)
class SpringAnalysis:
    response: float
    damping_fraction: float
    settle_time: float

    @property
    def is_degenerate(self) -> bool:
        return self.response == 0 and self.settle_time == 0


_STILL_SPRING = SpringAnalysis(response=0.0, damping_fraction=1.0, settle_time=0.0)


# Series heuristics


def count_peaks(series: Sequence[float], hysteresis: float) -> int:
    """Count local maxima, ignoring reversals smaller than `hysteresis`.

    A peak is only counted once the series has fallen more than `hysteresis`
    below the running maximum, and the direction only flips back to rising
    after the series climbs more than `hysteresis` above the running minimum.
    """
    if len(series) < MIN_FRAMES:
        return 0
    peaks = 0
    extreme = series[0]
    rising = series[1] > series[0]
    for value in series[1:]:
        if rising:
            if value < extreme - hysteresis:
                peaks += 1
                extreme = value
                rising = False
            elif value > extreme:
                extreme = value
        else:
            if value > extreme + hysteresis:
                extreme = value
                rising = True
            elif value < extreme:
                extreme = value
    return peaks


def analyze_pulse_series(
    series: Sequence[float],
    fps: float,
    stationary_threshold: float = STATIONARY_THRESHOLD,
) -> PulseAnalysis:
    if not series:
        return PulseAnalysis(0.0, True, 0.0, 0.0)
    low = float(min(series))
    high = float(max(series))
    amplitude = high - low
    if len(series) < MIN_FRAMES or amplitude < stationary_threshold:
        return PulseAnalysis(0.0, True, low, high)
    peaks = count_peaks(series, amplitude * PEAK_HYSTERESIS)
    total_seconds = len(series) / float(fps)
    cpm = (peaks / total_seconds) * 60.0 if total_seconds > 0 else 0.0
    return PulseAnalysis(cpm, False, low, high)


def _infer_curve(progress: Sequence[float], start_frame: int, end_frame: int) -> AnimationCurve:
    if end_frame <= start_frame + 2:
        return AnimationCurve.LINEAR
    midpoint = progress[(start_frame + end_frame) // 2]
    if midpoint > 0.5 + CURVE_THRESHOLD:
        return AnimationCurve.EASE_OUT
    if midpoint < 0.5 - CURVE_THRESHOLD:
        return AnimationCurve.EASE_IN
    return AnimationCurve.EASE_IN_OUT


def analyze_progress_series(progress: Sequence[float], fps: float) -> TransitionAnalysis:
    """Measure the 10%-90% crossing of a 0..1 progress series.

    The curve is classified by the progress value at the temporal midpoint of
    that window: well above 0.5 means a fast start (ease-out), well below means
    a slow start (ease-in).
    """
    values = [min(1.0, max(0.0, float(value))) for value in progress]
    if len(values) < MIN_FRAMES or max(values) - min(values) <= MIN_TRAVEL:
        return TransitionAnalysis(0.0, AnimationCurve.LINEAR)
    start_frame = next((idx for idx, value in enumerate(values) if value >= TRANSITION_START), None)
    end_frame = next((idx for idx, value in enumerate(values) if value >= TRANSITION_END), None)
    # a transition that never crosses both thresholds carries no timing signal
    if start_frame is None or end_frame is None:
        return TransitionAnalysis(0.0, AnimationCurve.LINEAR)
    if end_frame <= start_frame:
        return TransitionAnalysis(0.0, AnimationCurve.LINEAR, start_frame, start_frame)
    duration = (end_frame - start_frame) / float(fps)
    return TransitionAnalysis(duration, _infer_curve(values, start_frame, end_frame), start_frame, end_frame)


def analyze_spring_series(values: Sequence[float], fps: float) -> SpringAnalysis:
    """Estimate response, damping and settle time of a spring-like series.

    The target is the mean of the final tenth of the series. Damping comes from
    the largest overshoot past the target via the log-decrement relation
    `-ln(r) / sqrt(pi^2 + ln(r)^2)`; no overshoot means damping 1.0.
    """
    if len(values) < MIN_FRAMES:
        return _STILL_SPRING
    tail = max(1, len(values) // 10)
    target = sum(values[-tail:]) / tail
    first = float(values[0])
    travel = abs(target - first)
    if travel <= MIN_TRAVEL:
        return _STILL_SPRING

    direction = 1.0 if target > first else -1.0
    peak_frame = 0
    max_overshoot = 0.0
    for idx, value in enumerate(values):
        overshoot = (value - target) * direction
        if overshoot > max_overshoot:
            max_overshoot = overshoot
            peak_frame = idx

    ratio = max_overshoot / travel
    if ratio > 0:
        log_ratio = math.log(ratio)
        damping = -log_ratio / math.sqrt(math.pi**2 + log_ratio**2)
        damping = min(1.0, max(0.0, damping))
    else:
        damping = 1.0

    threshold = max(travel * SETTLE_FRACTION, MIN_TRAVEL)
    settle_frame = 0
    for idx in range(len(values) - 1, -1, -1):
        if abs(values[idx] - target) > threshold:
            settle_frame = idx + 1
            break

    return SpringAnalysis(
        response=peak_frame / float(fps),
        damping_fraction=damping,
        settle_time=settle_frame / float(fps),
    )


# Frame sequences


class FrameAnalyzer:
    """An ordered, immutable frame sequence at one frame rate and scale factor."""

    def __init__(self, frames: Iterable[ImageAnalyzer | Image.Image], fps: float, scale_factor: float = 2.0) -> None:
        if fps <= 0:
            raise ValueError("fps must be positive")
        analyzers: list[ImageAnalyzer] = []
        for frame in frames:
            if isinstance(frame, ImageAnalyzer):
                if not math.isclose(frame.scale_factor, scale_factor):
                    raise ValueError(
                        f"frame scale factor {frame.scale_factor} does not match sequence scale factor {scale_factor}"
                    )
                analyzers.append(frame)
            else:
                analyzers.append(ImageAnalyzer(frame, scale_factor))
        if not analyzers:
            raise ValueError("frame sequence is empty")
        self._frames = tuple(analyzers)
        self.fps = float(fps)
        self.scale_factor = float(scale_factor)

    @classmethod
    def from_paths(cls, paths: Iterable[Path | str], fps: float, scale_factor: float = 2.0) -> "FrameAnalyzer":
        return cls([ImageAnalyzer.from_path(path, scale_factor) for path in paths], fps, scale_factor)

    @classmethod
    def from_capture(cls, result: FrameCaptureResult, scale_factor: float = 2.0) -> "FrameAnalyzer":
        return cls.from_paths(result.frame_paths, result.fps, scale_factor)

    @property
    def frames(self) -> tuple[ImageAnalyzer, ...]:
        return self._frames

    @property
    def frame_duration(self) -> float:
        return 1.0 / self.fps

    def __len__(self) -> int:
        return len(self._frames)

    def brightness_series(self, region: Rect) -> list[float]:
        """Sum of the RGB channel averages in `region`, per frame."""
        series = []
        for frame in self._frames:
            color = frame.average_color(region)
            series.append(float(color.red + color.green + color.blue))
        return series

    def progress_series(self, region: Rect, start_color: PixelColor, end_color: PixelColor) -> list[float]:
        series = []
        for frame in self._frames:
            color = frame.average_color(region)
            to_start = color.distance(start_color)
            to_end = color.distance(end_color)
            total = to_start + to_end
            series.append(to_start / total if total > 0 else 0.0)
        return series

    def property_series(self, region: Rect, prop: AnimatableProperty) -> list[float]:
        """Per-frame value of `prop` inside `region`.

        Opacity is mean brightness as a 0..1 fraction. The other properties
        measure the content box inside `region`, using the color at the
        region's origin as background.
        """
        values = []
        for frame in self._frames:
            if prop is AnimatableProperty.OPACITY:
                color = frame.average_color(region)
                values.append((color.red + color.green + color.blue) / (3.0 * 255.0))
                continue
            background = frame.sample_color(Point(region.x, region.y))
            bounds = frame.content_bounds(background, tolerance=SPRING_TOLERANCE, within=region)
            if prop is AnimatableProperty.SCALE_X:
                values.append(bounds.width)
            elif prop is AnimatableProperty.SCALE_Y:
                values.append(bounds.height)
            else:
                values.append(bounds.mid_y)
        return values

    def measure_pulse(self, region: Rect, stationary_threshold: float = STATIONARY_THRESHOLD) -> PulseAnalysis:
        """Oscillation rate of the brightness in `region`.

        An amplitude below `stationary_threshold` reports a stationary region,
        which is how reduced-motion compliance is asserted.
        """
        return analyze_pulse_series(self.brightness_series(region), self.fps, stationary_threshold)

    measure_orb_pulse = measure_pulse

    def measure_transition_duration(
        self,
        region: Rect,
        start_color: PixelColor,
        end_color: PixelColor,
    ) -> TransitionAnalysis:
        return analyze_progress_series(self.progress_series(region, start_color, end_color), self.fps)

    def measure_spring_curve(self, region: Rect, prop: AnimatableProperty) -> SpringAnalysis:
        return analyze_spring_series(self.property_series(region, prop), self.fps)

    def measure_stagger_delays(
        self,
        regions: Sequence[Rect],
        background: PixelColor,
        threshold: int = STAGGER_THRESHOLD,
    ) -> list[float]:
        """Seconds each region appears after the earliest one.

        A region appears on the first frame whose average color is more than
        `threshold` away from `background`; a region that never appears is
        assigned the last frame.
        """
        if not regions:
            return []
        if len(self._frames) < MIN_FRAMES:
            return [0.0] * len(regions)
        last = len(self._frames) - 1
        appearances = []
        for region in regions:
            frame_index = next(
                (
                    idx
                    for idx, frame in enumerate(self._frames)
                    if frame.average_color(region).distance(background) > threshold
                ),
                last,
            )
            appearances.append(frame_index)
        earliest = min(appearances)
        return [(frame_index - earliest) / self.fps for frame_index in appearances]
