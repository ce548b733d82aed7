#!/usr/bin/env python3
"""
Configuration - Phase tables, session settings and YAML loading

Everything tunable about a breathing session lives here: the phase set
(inhale/exhale, optionally pause), per-phase durations, the cycle count, the
curve variants and the audio asset paths. Nothing downstream hardcodes these.

CONFIG FILE (YAML):
    phase_set: three_phase          # or two_phase
    durations_ms:
      inhale: 4000
      exhale: 6000
      pause: 1000                   # required for three_phase only
    total_cycles: 4
    tick_ms: 100
    carry_remainder: false
    curves:
      exhale_easing: blended        # or ease_out
      text_fade_out: true
    audio:
      enabled_on_start: false
      primary_path: sounds/ambient.wav
      candidate_paths: [sounds/ambient.ogg]
      load_timeout_ms: 5000
      sample_rate: 44100
      tone: {frequency_hz: 220.0, peak_gain: 0.08, sustain_gain: 0.015,
             attack_s: 0.1, decay_s: 0.5}
    renderer:
      osc_host: 127.0.0.1
      osc_port: 9100
      control_port: 9101

VALIDATION:
All structural problems raise ConfigError before any clock or audio object
is constructed. Durations must be strictly positive, so curve progress never
divides by zero.
"""

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import yaml

from respira import osc


DEFAULT_CONFIG_PATH = Path(__file__).parent / "presets" / "breathing.yaml"

# 4-6 breathing method
DEFAULT_DURATIONS_MS = {'inhale': 4000, 'exhale': 6000, 'pause': 1000}
DEFAULT_TOTAL_CYCLES = 4
DEFAULT_TICK_MS = 100
DEFAULT_LOAD_TIMEOUT_MS = 5000


class ConfigError(ValueError):
    """Invalid session configuration. Fatal at construction time."""


class Phase(Enum):
    INHALE = 'inhale'
    EXHALE = 'exhale'
    PAUSE = 'pause'


class PhaseSet(Enum):
    """Which phases make up one breathing cycle."""

    TWO_PHASE = 'two_phase'
    THREE_PHASE = 'three_phase'

    @property
    def phases(self) -> Tuple[Phase, ...]:
        if self is PhaseSet.TWO_PHASE:
            return (Phase.INHALE, Phase.EXHALE)
        return (Phase.INHALE, Phase.EXHALE, Phase.PAUSE)


EXHALE_EASINGS = ('blended', 'ease_out')


@dataclass(frozen=True)
class PhaseConfig:
    """Duration table for the configured phase set.

    Attributes:
        durations_ms: Phase -> duration in milliseconds, strictly positive
        phase_set: TWO_PHASE or THREE_PHASE
    """

    durations_ms: Dict[Phase, int]
    phase_set: PhaseSet = PhaseSet.THREE_PHASE

    def __post_init__(self):
        if not self.durations_ms:
            raise ConfigError("Phase duration table is empty")

        for phase in self.phase_set.phases:
            if phase not in self.durations_ms:
                raise ConfigError(
                    f"Missing duration for phase '{phase.value}' "
                    f"(required by {self.phase_set.value})"
                )
            value = self.durations_ms[phase]
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise ConfigError(
                    f"Duration for '{phase.value}' must be a number, got {value!r}"
                )
            if value <= 0:
                raise ConfigError(
                    f"Duration for '{phase.value}' must be > 0 ms, got {value}"
                )

        # Drop phases outside the set so cycle_ms and iteration stay honest
        trimmed = {p: self.durations_ms[p] for p in self.phase_set.phases}
        object.__setattr__(self, 'durations_ms', trimmed)

    @property
    def phases(self) -> Tuple[Phase, ...]:
        return self.phase_set.phases

    def duration(self, phase: Phase) -> int:
        return self.durations_ms[phase]

    @property
    def cycle_ms(self) -> int:
        """Length of one full traversal of the phase set."""
        return sum(self.durations_ms.values())

    @classmethod
    def from_mapping(cls, durations: Dict[str, Any],
                     phase_set: PhaseSet = PhaseSet.THREE_PHASE) -> 'PhaseConfig':
        """Build from a {'inhale': ms, ...} mapping with string keys."""
        if not isinstance(durations, dict) or not durations:
            raise ConfigError("'durations_ms' must be a non-empty mapping")

        table = {}
        for name, value in durations.items():
            try:
                phase = Phase(str(name).lower())
            except ValueError:
                raise ConfigError(
                    f"Unknown phase '{name}' in durations_ms "
                    f"(expected one of: {', '.join(p.value for p in Phase)})"
                )
            table[phase] = value
        return cls(durations_ms=table, phase_set=phase_set)


@dataclass(frozen=True)
class ToneConfig:
    """Fallback sine tone and its gain envelope."""

    frequency_hz: float = 220.0
    peak_gain: float = 0.08
    sustain_gain: float = 0.015
    attack_s: float = 0.1
    decay_s: float = 0.5

    def __post_init__(self):
        for name in ('frequency_hz', 'peak_gain', 'sustain_gain', 'attack_s', 'decay_s'):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise ConfigError(f"audio.tone.{name} must be a number, got {value!r}")
            if value <= 0:
                raise ConfigError(f"audio.tone.{name} must be > 0, got {value}")
        if self.sustain_gain > self.peak_gain:
            raise ConfigError(
                f"audio.tone.sustain_gain ({self.sustain_gain}) must not exceed "
                f"peak_gain ({self.peak_gain})"
            )
        if self.attack_s >= self.decay_s:
            raise ConfigError(
                f"audio.tone.attack_s ({self.attack_s}) must be shorter than "
                f"decay_s ({self.decay_s})"
            )


@dataclass(frozen=True)
class AudioConfig:
    enabled_on_start: bool = False
    primary_path: Optional[str] = None
    candidate_paths: Tuple[str, ...] = ()
    load_timeout_ms: int = DEFAULT_LOAD_TIMEOUT_MS
    sample_rate: int = 44100
    device: Optional[str] = None
    tone: ToneConfig = field(default_factory=ToneConfig)

    def __post_init__(self):
        _require_flag('audio.enabled_on_start', self.enabled_on_start)
        _require_positive_int('audio.load_timeout_ms', self.load_timeout_ms)
        _require_positive_int('audio.sample_rate', self.sample_rate)


@dataclass(frozen=True)
class RendererConfig:
    osc_host: str = "127.0.0.1"
    osc_port: int = osc.PORT_FRAMES
    control_port: int = osc.PORT_CONTROL

    def __post_init__(self):
        try:
            osc.validate_port(self.osc_port)
            osc.validate_port(self.control_port)
        except ValueError as e:
            raise ConfigError(f"renderer: {e}")
        if self.osc_port == self.control_port:
            raise ConfigError(
                f"renderer.osc_port and renderer.control_port cannot be the same ({self.osc_port})"
            )


@dataclass(frozen=True)
class SessionConfig:
    """Complete, validated configuration for one breathing session."""

    phases: PhaseConfig
    total_cycles: int = DEFAULT_TOTAL_CYCLES
    tick_ms: int = DEFAULT_TICK_MS
    carry_remainder: bool = False
    exhale_easing: str = 'blended'
    text_fade_out: bool = True
    audio: AudioConfig = field(default_factory=AudioConfig)
    renderer: RendererConfig = field(default_factory=RendererConfig)

    def __post_init__(self):
        _require_positive_int('total_cycles', self.total_cycles)
        _require_positive_int('tick_ms', self.tick_ms)
        _require_flag('carry_remainder', self.carry_remainder)
        _require_flag('curves.text_fade_out', self.text_fade_out)
        if self.exhale_easing not in EXHALE_EASINGS:
            raise ConfigError(
                f"Unknown exhale easing '{self.exhale_easing}' "
                f"(expected one of: {', '.join(EXHALE_EASINGS)})"
            )

    @classmethod
    def default(cls) -> 'SessionConfig':
        return cls(phases=PhaseConfig.from_mapping(DEFAULT_DURATIONS_MS))

    @classmethod
    def from_dict(cls, config: Optional[Dict[str, Any]]) -> 'SessionConfig':
        """Validate a parsed config dict and build a SessionConfig.

        Missing keys take the 4-6 defaults.

        Raises:
            ConfigError: If any section is malformed
        """
        if config is None:
            config = {}
        if not isinstance(config, dict):
            raise ConfigError(f"Config must be a mapping, got {type(config).__name__}")

        try:
            phase_set = PhaseSet(config.get('phase_set', PhaseSet.THREE_PHASE.value))
        except ValueError:
            raise ConfigError(
                f"Unknown phase_set '{config.get('phase_set')}' "
                f"(expected one of: {', '.join(s.value for s in PhaseSet)})"
            )

        durations = config.get('durations_ms', DEFAULT_DURATIONS_MS)
        phases = PhaseConfig.from_mapping(durations, phase_set)

        curves = _section(config, 'curves')
        audio = _section(config, 'audio')
        tone = _section(audio, 'tone', prefix='audio.')
        renderer = _section(config, 'renderer')

        candidates = audio.get('candidate_paths') or []
        if not isinstance(candidates, (list, tuple)):
            raise ConfigError("audio.candidate_paths must be a list of paths")

        try:
            tone_config = ToneConfig(**tone)
            audio_config = AudioConfig(
                enabled_on_start=audio.get('enabled_on_start', False),
                primary_path=audio.get('primary_path'),
                candidate_paths=tuple(str(p) for p in candidates),
                load_timeout_ms=audio.get('load_timeout_ms', DEFAULT_LOAD_TIMEOUT_MS),
                sample_rate=audio.get('sample_rate', 44100),
                device=audio.get('device'),
                tone=tone_config,
            )
            renderer_config = RendererConfig(**renderer)
        except TypeError as e:
            # Unknown keyword in a section
            raise ConfigError(f"Invalid config key: {e}")

        return cls(
            phases=phases,
            total_cycles=config.get('total_cycles', DEFAULT_TOTAL_CYCLES),
            tick_ms=config.get('tick_ms', DEFAULT_TICK_MS),
            carry_remainder=config.get('carry_remainder', False),
            exhale_easing=curves.get('exhale_easing', 'blended'),
            text_fade_out=curves.get('text_fade_out', True),
            audio=audio_config,
            renderer=renderer_config,
        )


def _require_positive_int(name: str, value: Any) -> None:
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        raise ConfigError(f"{name} must be an integer >= 1, got {value!r}")


def _require_flag(name: str, value: Any) -> None:
    if not isinstance(value, bool):
        raise ConfigError(f"{name} must be true or false, got {value!r}")


def _section(config: Dict[str, Any], key: str, prefix: str = '') -> Dict[str, Any]:
    section = config.get(key) or {}
    if not isinstance(section, dict):
        raise ConfigError(f"'{prefix}{key}' must be a mapping")
    return section


def load_config(config_path=DEFAULT_CONFIG_PATH) -> SessionConfig:
    """Load and validate a YAML session configuration.

    Args:
        config_path: Path to breathing.yaml

    Returns:
        Validated SessionConfig

    Raises:
        FileNotFoundError: If config file doesn't exist
        ConfigError: If config validation fails
    """
    path = Path(config_path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with open(path, 'r') as f:
        try:
            config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigError(f"Failed to parse {config_path}: {e}")

    return SessionConfig.from_dict(config)


def describe_method(phases: PhaseConfig) -> Tuple[str, str]:
    """Header text for the configured rhythm.

    Returns:
        (title, subtitle), e.g. ("4-6 Breathing Method", "4s inhale • 6s exhale")
    """
    inhale_s = _format_seconds(phases.duration(Phase.INHALE))
    exhale_s = _format_seconds(phases.duration(Phase.EXHALE))
    title = f"{inhale_s}-{exhale_s} Breathing Method"
    subtitle = f"{inhale_s}s inhale • {exhale_s}s exhale"
    return title, subtitle


def _format_seconds(ms) -> str:
    seconds = ms / 1000.0
    if seconds == int(seconds):
        return str(int(seconds))
    return f"{seconds:g}"
