"""
Fade ramps as pure functions of elapsed time.

A ramp is polled: the caller asks for the volume at a given time from
whatever clock or timer it already runs.
"""

import math
from dataclasses import dataclass

import numpy as np

CURVES = ("linear", "equal_power")


def fade_volume(
    elapsed: float,
    duration: float,
    start: float,
    end: float,
    curve: str = "linear",
) -> float:
    """
    Volume of a fade after *elapsed* seconds.

    Args:
        elapsed: Seconds since the fade started (negative clamps to start).
        duration: Fade length in seconds; <= 0 jumps straight to *end*.
        start: Volume at the beginning of the fade.
        end: Volume once the fade completes.
        curve: ``"linear"`` or ``"equal_power"`` (sine/cosine law).

    Returns:
        Volume clamped to [0, 1].
    """
    if curve not in CURVES:
        raise ValueError(f"Unknown fade curve: {curve!r}")
    if duration <= 0.0:
        progress = 1.0
    else:
        progress = float(np.clip(elapsed / duration, 0.0, 1.0))

    if curve == "equal_power":
        if end >= start:
            shaped = math.sin(progress * math.pi / 2.0)
        else:
            shaped = 1.0 - math.cos(progress * math.pi / 2.0)
    else:
        shaped = progress

    return float(np.clip(start + (end - start) * shaped, 0.0, 1.0))


@dataclass(frozen=True)
class FadeRamp:
    """A scheduled fade starting at ``start_time`` on the caller's clock."""

    start_time: float
    duration: float
    start: float
    end: float
    curve: str = "linear"

    def volume_at(self, now: float) -> float:
        return fade_volume(now - self.start_time, self.duration, self.start, self.end, self.curve)

    def done(self, now: float) -> bool:
        return now - self.start_time >= self.duration

    @classmethod
    def fade_in(cls, start_time: float, duration: float, target: float = 1.0, curve: str = "linear") -> "FadeRamp":
        return cls(start_time, duration, 0.0, target, curve)

    @classmethod
    def fade_out(cls, start_time: float, duration: float, current: float = 1.0, curve: str = "linear") -> "FadeRamp":
        return cls(start_time, duration, current, 0.0, curve)
