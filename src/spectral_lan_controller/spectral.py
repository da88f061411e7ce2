"""Spectral mixing math: resultant curves, normalization and PWM conversion.

Everything here is pure. Slider values live in [0, 1] and are keyed by source
name; PWM values are integers in [0, 255].
"""

from __future__ import annotations

import math
from typing import AbstractSet, Dict, List, Mapping, Optional, Sequence, Tuple

from .models import GraphPoint, LightSource, SpectralProfile

PWM_MAX = 255


def clamp(value: float, minimum: float = 0.0, maximum: float = 1.0) -> float:
    return max(minimum, min(maximum, value))


def compute_resultant_curve(
    profile: SpectralProfile, slider_values: Mapping[str, float]
) -> List[Tuple[float, float]]:
    """Sum each source's weighted contribution at every sample point."""

    curve: List[Tuple[float, float]] = []
    for point in profile.spectrum:
        raw = 0.0
        for source in profile.sources:
            base = point.intensities.get(source.name, 0.0)
            raw += base * slider_values.get(source.name, 0.0) * source.intensity_factor
        curve.append((point.wavelength, raw))
    return curve


def normalize(curve: Sequence[Tuple[float, float]]) -> List[GraphPoint]:
    """Scale a raw curve so its peak is 1.0; a non-positive peak yields all zeros."""

    peak = max((raw for _, raw in curve), default=0.0)
    if peak <= 0:
        return [GraphPoint(wavelength=wavelength, intensity=0.0) for wavelength, _ in curve]
    return [
        GraphPoint(wavelength=wavelength, intensity=clamp(raw / peak))
        for wavelength, raw in curve
    ]


def compute_graph(profile: SpectralProfile, slider_values: Mapping[str, float]) -> List[GraphPoint]:
    return normalize(compute_resultant_curve(profile, slider_values))


def to_pwm(slider_value: float) -> int:
    """Convert a slider value to a duty cycle, rounding half up."""

    return int(math.floor(clamp(slider_value) * PWM_MAX + 0.5))


def scale_by_master(
    base_values: Mapping[str, float],
    master_value: float,
    frozen: AbstractSet[str],
    current: Optional[Mapping[str, float]] = None,
) -> Dict[str, float]:
    """Apply the master multiplier to every unfrozen source.

    Frozen sources keep the value they currently hold, which is the captured
    base value unless they were frozen after a master move.
    """

    result: Dict[str, float] = dict(current if current is not None else base_values)
    for name, base in base_values.items():
        if name in frozen:
            result.setdefault(name, base)
            continue
        result[name] = clamp(base * master_value)
    return result


def active_sources(profile: SpectralProfile) -> List[LightSource]:
    """Sources that contribute at startup; zero-power sources are hidden."""

    return [source for source in profile.sources if source.initial_power > 0]


def initial_slider_values(profile: SpectralProfile) -> Dict[str, float]:
    """Initial power is a percentage; sliders are fractions."""

    return {source.name: clamp(source.initial_power / 100.0) for source in active_sources(profile)}


def slider_value(
    slider_values: Mapping[str, float], profile: SpectralProfile, source_name: str
) -> float:
    """Current value for a source, falling back to its initial power."""

    if source_name in slider_values:
        return slider_values[source_name]
    source = profile.source(source_name)
    if source is None:
        return 0.0
    return clamp(source.initial_power / 100.0)
