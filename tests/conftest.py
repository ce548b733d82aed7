"""Pytest fixtures shared across respira tests.

sounddevice is replaced with a MagicMock before any respira module imports
it, so the suite runs without PortAudio or an audio device.

Provides:
- FakeTimer / fake_timers: threading.Timer stand-in fired by hand
- FakeStream / streams: sounddevice.OutputStream stand-in recording start/stop/close
- FakePlayer / players: LoopPlayer stand-in recording calls
- sync_spawn: runs loader jobs inline on the calling thread
- two_phase / three_phase: PhaseConfig fixtures for the 4-6 rhythm
"""

import sys
from unittest.mock import MagicMock

import numpy as np
import pytest

mock_sd = MagicMock()
sys.modules["sounddevice"] = mock_sd

from respira.config import PhaseConfig, PhaseSet  # noqa: E402


class FakeTimer:
    """threading.Timer stand-in. Never fires on its own; call fire()."""

    def __init__(self, interval, function, args=None, kwargs=None):
        self.interval = interval
        self.function = function
        self.args = args or ()
        self.kwargs = kwargs or {}
        self.daemon = False
        self.started = False
        self.cancelled = False

    def start(self):
        self.started = True

    def cancel(self):
        self.cancelled = True

    def fire(self):
        if not self.cancelled:
            self.function(*self.args, **self.kwargs)


class FakeStream:
    """sounddevice.OutputStream stand-in."""

    def __init__(self, **kwargs):
        self.kwargs = kwargs
        self.callback = kwargs.get('callback')
        self.active = False
        self.closed = False
        self.start_calls = 0

    def start(self):
        self.active = True
        self.start_calls += 1

    def stop(self):
        self.active = False

    def close(self):
        self.closed = True


class FakePlayer:
    """LoopPlayer stand-in recording the calls AudioManager makes."""

    def __init__(self, data, sample_rate, device=None):
        self.data = data
        self.sample_rate = sample_rate
        self.device = device
        self.playing = False
        self.closed = False
        self.play_calls = 0
        self.rewind_calls = 0

    def play(self):
        self.playing = True
        self.play_calls += 1

    def pause(self):
        self.playing = False

    def rewind(self):
        self.rewind_calls += 1

    def close(self):
        self.playing = False
        self.closed = True


@pytest.fixture
def fake_timers():
    """Factory creating FakeTimers; the created timers are kept in .created."""
    created = []

    def factory(interval, function, args=None, kwargs=None):
        timer = FakeTimer(interval, function, args, kwargs)
        created.append(timer)
        return timer

    factory.created = created
    return factory


@pytest.fixture
def players():
    """Player factory recording every FakePlayer it builds in .created."""
    created = []

    def factory(data, sample_rate, device=None):
        player = FakePlayer(data, sample_rate, device)
        created.append(player)
        return player

    factory.created = created
    return factory


@pytest.fixture
def sync_spawn():
    def spawn(target, *args):
        target(*args)
    return spawn


@pytest.fixture
def stereo_buffer():
    """One second of quiet stereo noise at 8 kHz."""
    rng = np.random.default_rng(0)
    return (rng.standard_normal((8000, 2)) * 0.01).astype(np.float32)


@pytest.fixture
def two_phase():
    return PhaseConfig.from_mapping({'inhale': 4000, 'exhale': 6000}, PhaseSet.TWO_PHASE)


@pytest.fixture
def three_phase():
    return PhaseConfig.from_mapping({'inhale': 4000, 'exhale': 6000, 'pause': 1000},
                                    PhaseSet.THREE_PHASE)


@pytest.fixture
def streams():
    """OutputStream factory recording every FakeStream it opens in .created."""
    created = []

    def factory(**kwargs):
        stream = FakeStream(**kwargs)
        created.append(stream)
        return stream

    factory.created = created
    return factory
