"""Visual curves for the breathing orb.

compute() maps (phase, elapsed-in-phase) to the orb's scale, glow and text
opacity. Everything here is a pure function of progress in [0, 1]; the only
state is the selected exhale easing.

Ranges:
    scale        [1.0, 1.7]
    glow         [0.6, 1.0]
    text_opacity [0.0, 1.0]
"""

from dataclasses import dataclass
from typing import Callable, Dict, Tuple

from respira.config import Phase, PhaseConfig

SCALE_MIN = 1.0
SCALE_MAX = 1.7
SCALE_RANGE = SCALE_MAX - SCALE_MIN

GLOW_MIN = 0.6
GLOW_MAX = 1.0

TEXT_FADE_FRACTION = 0.15

PHASE_LABELS = {
    Phase.INHALE: "Inhale",
    Phase.EXHALE: "Now exhale slowly...",
    Phase.PAUSE: "",
}


def ease_in_quad(progress: float) -> float:
    """Fast start, gentle arrival: 1 - (1 - p)^2."""
    return 1.0 - (1.0 - progress) ** 2


def blended_exhale(progress: float) -> float:
    """Mostly linear contraction with a slight ease-out tail."""
    return 0.7 * progress + 0.3 * (1.0 - (1.0 - progress) ** 1.2)


def ease_out_exhale(progress: float) -> float:
    """Very slow ease-out: most of the contraction happens early."""
    return progress ** 0.3


EXHALE_CURVES: Dict[str, Callable[[float], float]] = {
    "blended": blended_exhale,
    "ease_out": ease_out_exhale,
}


@dataclass(frozen=True)
class VisualParams:
    scale: float
    glow: float
    text_opacity: float

    @property
    def inner_glow_opacity(self) -> float:
        return self.glow * 0.8

    @property
    def core_opacity(self) -> float:
        return self.glow

    @property
    def core_scale(self) -> float:
        return 0.8 + self.glow * 0.4

    @property
    def halo_radii(self) -> Tuple[float, float, float]:
        """Blur radii (px) of the three outer glow rings."""
        return (60 * self.glow, 120 * self.glow, 200 * self.glow)


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def progress_of(phase: Phase, elapsed_ms: float, phases: PhaseConfig) -> float:
    # Durations are validated > 0 by PhaseConfig
    return _clamp(elapsed_ms / phases.duration(phase), 0.0, 1.0)


def orb_scale(phase: Phase, progress: float, exhale_easing: str = "blended") -> float:
    if phase is Phase.INHALE:
        return SCALE_MIN + SCALE_RANGE * ease_in_quad(progress)
    if phase is Phase.EXHALE:
        curve = EXHALE_CURVES[exhale_easing]
        return _clamp(SCALE_MAX - SCALE_RANGE * curve(progress), SCALE_MIN, SCALE_MAX)
    return SCALE_MIN


def glow_intensity(phase: Phase, progress: float) -> float:
    if phase is Phase.INHALE:
        return GLOW_MIN + (GLOW_MAX - GLOW_MIN) * progress
    if phase is Phase.EXHALE:
        return GLOW_MAX - (GLOW_MAX - GLOW_MIN) * progress
    return GLOW_MIN


def text_opacity(phase: Phase, progress: float, fade_out: bool = True) -> float:
    """Fade in over the first 15%, optionally fade out over the last 15%.

    Pause carries no text, so its opacity is 0. Pass fade_out=False when the
    label has to persist into the following phase.
    """
    if phase is Phase.PAUSE:
        return 0.0
    if progress < TEXT_FADE_FRACTION:
        return progress / TEXT_FADE_FRACTION
    if fade_out and progress > 1.0 - TEXT_FADE_FRACTION:
        return _clamp((1.0 - progress) / TEXT_FADE_FRACTION, 0.0, 1.0)
    return 1.0


def compute(phase: Phase, elapsed_ms: float, phases: PhaseConfig,
            exhale_easing: str = "blended", text_fade_out: bool = True) -> VisualParams:
    """Visual parameters for one tick."""
    progress = progress_of(phase, elapsed_ms, phases)
    return VisualParams(
        scale=orb_scale(phase, progress, exhale_easing),
        glow=glow_intensity(phase, progress),
        text_opacity=text_opacity(phase, progress, text_fade_out),
    )


def phase_label(phase: Phase) -> str:
    return PHASE_LABELS[phase]


class CurveEngine:
    """compute() bound to one session's duration table and curve options."""

    def __init__(self, phases: PhaseConfig, exhale_easing: str = "blended",
                 text_fade_out: bool = True):
        if exhale_easing not in EXHALE_CURVES:
            raise ValueError(
                f"Unknown exhale easing '{exhale_easing}' "
                f"(expected one of: {', '.join(EXHALE_CURVES)})"
            )
        self.phases = phases
        self.exhale_easing = exhale_easing
        self.text_fade_out = text_fade_out

    def compute(self, phase: Phase, elapsed_ms: float) -> VisualParams:
        return compute(phase, elapsed_ms, self.phases,
                       exhale_easing=self.exhale_easing,
                       text_fade_out=self.text_fade_out)
