#!/usr/bin/env python3
"""
Phase Clock - Fixed-tick breathing state machine and tick sources

PhaseClock owns the single CycleState of a session and is its only writer.
Each tick advances elapsed time by a fixed step; crossing the current phase's
duration moves to the next phase with elapsed reset to 0.

TRANSITIONS:
    two_phase:    INHALE → EXHALE → INHALE (cycle+1, wraps to 1 after the last)
    three_phase:  INHALE → EXHALE → PAUSE → INHALE (cycle+1)
                  final cycle: EXHALE → INHALE directly, cycle reset to 1

The loop is seamless and infinite; cycle_index always stays in
[1, total_cycles].

TICK SOURCES:
    - ThreadedTicker: daemon thread firing every period_ms with adaptive sleep
    - ManualTicker: fires only when advance() is called (tests, replays)

Both expose start(callback) / stop(), so the session never registers timers
itself and tests can drive time without wall-clock waits.
"""

import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional, Tuple

from respira.config import ConfigError, Phase, PhaseConfig, PhaseSet
from respira.log import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class CycleState:
    """Snapshot of the breathing state machine.

    Invariants: 0 <= elapsed_ms < duration(phase), 1 <= cycle_index <= total_cycles
    """

    phase: Phase
    cycle_index: int
    elapsed_ms: float


class PhaseClock:
    """Deterministic phase/cycle state machine advanced by tick(delta_ms).

    Attributes:
        phases (PhaseConfig): Duration table and phase set
        total_cycles (int): Cycles per loop before cycle_index wraps to 1
        carry_remainder (bool): Carry overshoot past a boundary into the next
            phase instead of discarding it (default False)
    """

    def __init__(self, phases: PhaseConfig, total_cycles: int, carry_remainder: bool = False):
        if not isinstance(phases, PhaseConfig):
            raise ConfigError(f"phases must be a PhaseConfig, got {type(phases).__name__}")
        if isinstance(total_cycles, bool) or not isinstance(total_cycles, int) or total_cycles < 1:
            raise ConfigError(f"total_cycles must be int >= 1, got {total_cycles!r}")

        self.phases = phases
        self.total_cycles = total_cycles
        self.carry_remainder = carry_remainder
        self._state = self.initial_state()

    @staticmethod
    def initial_state() -> CycleState:
        return CycleState(phase=Phase.INHALE, cycle_index=1, elapsed_ms=0)

    @property
    def state(self) -> CycleState:
        return self._state

    def reset(self) -> CycleState:
        """Restart the loop at (INHALE, 1, 0)."""
        self._state = self.initial_state()
        return self._state

    def next_phase(self, phase: Phase, cycle_index: int) -> Tuple[Phase, int]:
        """Transition table: (phase, cycle) the machine moves to after `phase` completes."""
        if phase is Phase.INHALE:
            return Phase.EXHALE, cycle_index

        if phase is Phase.EXHALE:
            if self.phases.phase_set is PhaseSet.TWO_PHASE:
                return Phase.INHALE, self._wrap(cycle_index + 1)
            if cycle_index < self.total_cycles:
                return Phase.PAUSE, cycle_index
            # Final cycle skips the pause and restarts the loop
            return Phase.INHALE, 1

        return Phase.INHALE, self._wrap(cycle_index + 1)

    def _wrap(self, cycle_index: int) -> int:
        return 1 if cycle_index > self.total_cycles else cycle_index

    def tick(self, delta_ms: float) -> CycleState:
        """Advance the machine by delta_ms and return the new state.

        A transition fires when elapsed + delta_ms >= duration(phase). With
        carry_remainder off, the overshoot is discarded and the new phase
        starts at 0. Negative deltas are treated as 0.
        """
        delta_ms = max(0, delta_ms)
        state = self._state
        elapsed = state.elapsed_ms + delta_ms
        duration = self.phases.duration(state.phase)

        if elapsed < duration:
            self._state = CycleState(state.phase, state.cycle_index, elapsed)
            return self._state

        phase, cycle_index = self.next_phase(state.phase, state.cycle_index)

        if not self.carry_remainder:
            self._state = CycleState(phase, cycle_index, 0)
            return self._state

        remainder = elapsed - duration
        while remainder >= self.phases.duration(phase):
            remainder -= self.phases.duration(phase)
            phase, cycle_index = self.next_phase(phase, cycle_index)
        self._state = CycleState(phase, cycle_index, remainder)
        return self._state


class ManualTicker:
    """Tick source that only fires when advance() is called."""

    def __init__(self, period_ms: int = 100):
        self.period_ms = period_ms
        self._callback = None

    @property
    def running(self) -> bool:
        return self._callback is not None

    def start(self, callback: Callable[[], None]) -> None:
        self._callback = callback

    def advance(self, count: int = 1) -> None:
        """Fire `count` ticks synchronously. No-op once stopped."""
        for _ in range(count):
            if self._callback is None:
                return
            self._callback()

    def stop(self) -> None:
        self._callback = None


class ThreadedTicker:
    """Tick source running on a daemon thread at a fixed period.

    Maintains the target period via adaptive sleep. Exceptions raised by the
    callback are logged and the loop keeps running.
    """

    def __init__(self, period_ms: int = 100, name: str = "respira-tick"):
        self.period_ms = period_ms
        self.name = name
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self, callback: Callable[[], None]) -> None:
        if self.running:
            raise RuntimeError("Ticker already running")
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._loop, args=(callback,), name=self.name, daemon=True
        )
        self._thread.start()
        logger.debug(f"Tick thread started ({self.period_ms}ms period)")

    def _loop(self, callback: Callable[[], None]) -> None:
        interval = self.period_ms / 1000.0

        while not self._stop_event.is_set():
            started = time.monotonic()

            try:
                callback()
            except Exception as e:
                logger.warning(f"Tick error: {e}")

            elapsed = time.monotonic() - started
            self._stop_event.wait(max(0.0, interval - elapsed))

    def stop(self, timeout: float = 2.0) -> None:
        """Stop the loop and wait for the thread to exit. Safe to call twice."""
        self._stop_event.set()
        thread = self._thread
        if thread is None:
            return
        if thread is not threading.current_thread():
            thread.join(timeout=timeout)
            if thread.is_alive():
                logger.warning("Tick thread did not terminate cleanly")
        self._thread = None
