#!/usr/bin/env python3
"""
Breathing Session - Lifecycle glue between clock, curves, audio and renderers

    tick source ──> PhaseClock.tick(tick_ms) ──> CurveEngine.compute() ──> Frame ──> renderers
                                                                  │
    renderer toggle ──> toggle_audio() ──> AudioManager ──────────┘ (audio_state in every frame)

mount() resets the clock to (INHALE, 1, 0), starts audio loading in the
background and starts the tick source. teardown() stops the tick source,
tears audio down and closes renderers; it may be called from any state,
any number of times. A torn-down session cannot be mounted again.

The clock is advanced by the fixed tick_ms on every tick regardless of how
late the tick fires, and only the tick callback mutates it.
"""

import threading
from typing import Iterable, Optional

from respira import osc
from respira.audio import PLAYABLE, AudioManager
from respira.clock import CycleState, PhaseClock, ThreadedTicker
from respira.config import SessionConfig
from respira.curves import CurveEngine, phase_label
from respira.log import get_logger
from respira.renderer import Frame, Renderer

logger = get_logger(__name__)


class BreathingSession:
    """One guided breathing exercise from mount to teardown.

    Attributes:
        config (SessionConfig): Validated configuration
        clock (PhaseClock): Sole owner of the CycleState
        curves (CurveEngine): Visual parameter computation
        audio (AudioManager): Audio lifecycle, independent of the clock
        ticker: Tick source with start(callback)/stop()
        renderers (list): Frame consumers
        stats (osc.MessageStatistics): Session counters
    """

    def __init__(self, config: SessionConfig, renderers: Iterable[Renderer] = (),
                 audio: Optional[AudioManager] = None, ticker=None):
        self.config = config
        self.clock = PhaseClock(config.phases, config.total_cycles,
                                carry_remainder=config.carry_remainder)
        self.curves = CurveEngine(config.phases,
                                  exhale_easing=config.exhale_easing,
                                  text_fade_out=config.text_fade_out)
        self.audio = audio or AudioManager(
            tone=config.audio.tone,
            sample_rate=config.audio.sample_rate,
            cycle_ms=config.phases.cycle_ms,
        )
        self.ticker = ticker or ThreadedTicker(config.tick_ms)
        self.renderers = list(renderers)
        self.stats = osc.MessageStatistics()

        self.mounted = False
        self.torn_down = False
        self.last_frame: Optional[Frame] = None
        self.tick_lock = threading.Lock()  # Single writer per tick

    def __enter__(self):
        self.mount()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.teardown()
        return False

    def mount(self, with_audio: bool = True) -> None:
        """Start the exercise: reset the clock, begin audio loading, start ticking.

        Raises:
            RuntimeError: If the session was already torn down
        """
        if self.torn_down:
            raise RuntimeError("Session already torn down; create a new BreathingSession")
        if self.mounted:
            logger.warning("Session already mounted")
            return

        self.clock.reset()
        self.mounted = True

        if with_audio:
            audio_config = self.config.audio
            self.audio.initialize(
                audio_config.primary_path,
                audio_config.candidate_paths,
                timeout_ms=audio_config.load_timeout_ms,
                enable_when_ready=audio_config.enabled_on_start,
            )

        with self.tick_lock:
            self._render(self.clock.state)
        self.ticker.start(self.tick)

        phases = self.config.phases
        durations = ", ".join(f"{p.value} {phases.duration(p)}ms" for p in phases.phases)
        logger.info(f"Session mounted: {durations}, {self.config.total_cycles} cycles")

    def tick(self) -> Optional[Frame]:
        """Advance the clock one fixed step and render the result."""
        with self.tick_lock:
            if not self.mounted:
                return None

            previous = self.clock.state
            state = self.clock.tick(self.config.tick_ms)
            self.stats.increment('ticks')

            if state.phase is not previous.phase:
                logger.debug(f"{previous.phase.value} → {state.phase.value} (cycle {state.cycle_index})")
                self.audio.sync(state.phase)
            if state.cycle_index != previous.cycle_index:
                self.stats.increment('cycles_started')

            return self._render(state)

    def build_frame(self, state: CycleState) -> Frame:
        visual = self.curves.compute(state.phase, state.elapsed_ms)
        return Frame(
            phase=state.phase,
            scale=visual.scale,
            glow=visual.glow,
            text_opacity=visual.text_opacity,
            phase_label=phase_label(state.phase),
            cycle_index=state.cycle_index,
            total_cycles=self.config.total_cycles,
            audio_state=self.audio.state,
        )

    def _render(self, state: CycleState) -> Frame:
        frame = self.build_frame(state)
        self.last_frame = frame

        for renderer in self.renderers:
            try:
                renderer.render(frame)
            except Exception as e:
                self.stats.increment('render_errors')
                logger.warning(f"Render error in {renderer.__class__.__name__}: {e}")

        self.stats.increment('frames_rendered')
        return frame

    def toggle_audio(self) -> bool:
        """User toggle from the renderer. Ignored until audio is playable.

        Returns:
            The resulting enabled flag
        """
        self.stats.increment('toggles')
        if self.audio.status not in PLAYABLE:
            self.stats.increment('toggles_ignored')
        return self.audio.toggle()

    def teardown(self) -> None:
        """Stop ticking, release audio and close renderers. Safe from any state."""
        self.ticker.stop()

        with self.tick_lock:
            was_mounted = self.mounted
            self.mounted = False
            self.torn_down = True

        self.audio.teardown()

        for renderer in self.renderers:
            try:
                renderer.close()
            except Exception as e:
                logger.warning(f"Failed to close {renderer.__class__.__name__}: {e}")
        self.renderers = []

        if was_mounted:
            logger.info("Session torn down")
