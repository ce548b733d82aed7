"""
Tests for AudioManager, LoopPlayer and the fallback tone

Loading is driven synchronously (sync_spawn) and the load timeout is fired by
hand (fake_timers), so no test waits on a real thread or audio device.
"""

import threading

import numpy as np
import pytest
import soundfile as sf

from respira.audio import (
    PLAYABLE,
    AssetLoadError,
    AudioManager,
    AudioStatus,
    LoopPlayer,
    TimeoutExceeded,
    load_asset,
    synthesize_tone,
    to_stereo,
    tone_envelope,
)
from respira.config import Phase, ToneConfig


def make_manager(players, fake_timers, spawn, loader, **kwargs):
    return AudioManager(
        sample_rate=8000,
        cycle_ms=1000,
        loader=loader,
        player_factory=players,
        timer_factory=fake_timers,
        spawn=spawn,
        **kwargs,
    )


def failing_loader(path):
    raise AssetLoadError(path, "file not found")


class DeferredSpawn:
    """Collects loader jobs so a test can run them after other events."""

    def __init__(self):
        self.jobs = []

    def __call__(self, target, *args):
        self.jobs.append((target, args))

    def run_all(self):
        jobs, self.jobs = self.jobs, []
        for target, args in jobs:
            target(*args)


class BlockingPlayer:
    """Player whose play() blocks until released, like a slow device open."""

    def __init__(self, data, sample_rate, device=None):
        self.entered = threading.Event()
        self.release = threading.Event()
        self.playing = False

    def play(self):
        self.entered.set()
        self.release.wait(timeout=5.0)
        self.playing = True

    def pause(self):
        self.playing = False

    def rewind(self):
        pass

    def close(self):
        self.release.set()


class RecordingThread:
    """Stand-in for a loader thread handle."""

    def __init__(self):
        self.join_timeouts = []

    def is_alive(self):
        return True

    def join(self, timeout=None):
        self.join_timeouts.append(timeout)


class TestLoading:
    """Candidate queue, timeout and fallback."""

    def test_primary_loads(self, players, fake_timers, sync_spawn, stereo_buffer):
        """Test a readable primary path reaches READY and cancels the timer."""
        audio = make_manager(players, fake_timers, sync_spawn, lambda p: (stereo_buffer, 8000))

        audio.initialize("ambient.wav")

        assert audio.status is AudioStatus.READY
        assert audio.state.loaded
        assert not audio.state.using_fallback
        assert not audio.has_pending_timer
        assert fake_timers.created[0].cancelled
        assert len(players.created) == 1

    def test_candidates_tried_in_order(self, players, fake_timers, sync_spawn, stereo_buffer):
        """Test the first readable candidate wins after earlier failures."""
        tried = []

        def loader(path):
            tried.append(path)
            if path != "b.ogg":
                raise AssetLoadError(path, "unreadable")
            return stereo_buffer, 8000

        audio = make_manager(players, fake_timers, sync_spawn, loader)
        audio.initialize("a.wav", ["b.ogg", "c.flac"])

        assert tried == ["a.wav", "b.ogg"]
        assert audio.status is AudioStatus.READY

    def test_duplicate_candidates_tried_once(self, players, fake_timers, sync_spawn):
        """Test duplicate paths in the queue are only loaded once."""
        tried = []

        def loader(path):
            tried.append(path)
            raise AssetLoadError(path, "unreadable")

        audio = make_manager(players, fake_timers, sync_spawn, loader)
        audio.initialize("a.wav", ["a.wav", "b.ogg", "b.ogg"])

        assert tried == ["a.wav", "b.ogg"]

    def test_all_candidates_fail_uses_fallback(self, players, fake_timers, sync_spawn):
        """Test an exhausted queue synthesizes the tone and becomes FALLBACK_READY."""
        audio = make_manager(players, fake_timers, sync_spawn, failing_loader)

        audio.initialize("a.wav", ["b.ogg"])

        assert audio.status is AudioStatus.FALLBACK_READY
        assert audio.state.using_fallback
        assert isinstance(audio.state.last_error, AssetLoadError)
        assert not audio.has_pending_timer
        assert players.created[0].data.shape[1] == 2

    def test_unexpected_loader_error_is_wrapped(self, players, fake_timers, sync_spawn):
        """Test a non-AssetLoadError from the loader still degrades to the tone."""
        def loader(path):
            raise RuntimeError("decoder crashed")

        audio = make_manager(players, fake_timers, sync_spawn, loader)
        audio.initialize("a.wav")

        assert audio.status is AudioStatus.FALLBACK_READY
        assert isinstance(audio.state.last_error, AssetLoadError)
        assert "decoder crashed" in str(audio.state.last_error)

    def test_no_paths_goes_straight_to_fallback(self, players, fake_timers, sync_spawn):
        """Test initialize(None) skips loading and starts no timer."""
        audio = make_manager(players, fake_timers, sync_spawn, failing_loader)

        audio.initialize(None)

        assert audio.status is AudioStatus.FALLBACK_READY
        assert fake_timers.created == []

    def test_timeout_forces_fallback(self, players, fake_timers, stereo_buffer):
        """Test the timer firing while loading forces FALLBACK_READY."""
        spawn = DeferredSpawn()
        audio = make_manager(players, fake_timers, spawn, lambda p: (stereo_buffer, 8000))
        audio.initialize("slow.wav", timeout_ms=5000)

        assert audio.status is AudioStatus.LOADING
        assert fake_timers.created[0].interval == pytest.approx(5.0)

        fake_timers.created[0].fire()

        assert audio.status is AudioStatus.FALLBACK_READY
        assert isinstance(audio.state.last_error, TimeoutExceeded)
        assert not audio.has_pending_timer

    def test_late_load_after_timeout_ignored(self, players, fake_timers, stereo_buffer):
        """Test a load finishing after the timeout never replaces the tone."""
        spawn = DeferredSpawn()
        audio = make_manager(players, fake_timers, spawn, lambda p: (stereo_buffer, 8000))
        audio.initialize("slow.wav")
        fake_timers.created[0].fire()

        spawn.run_all()

        assert audio.status is AudioStatus.FALLBACK_READY
        assert len(players.created) == 1

    def test_late_load_after_teardown_ignored(self, players, fake_timers, stereo_buffer):
        """Test a load finishing after teardown creates no player."""
        spawn = DeferredSpawn()
        audio = make_manager(players, fake_timers, spawn, lambda p: (stereo_buffer, 8000))
        audio.initialize("slow.wav")
        audio.teardown()

        spawn.run_all()

        assert audio.status is AudioStatus.TORN_DOWN
        assert players.created == []

    def test_fallback_synthesis_failure_stays_failed(self, fake_timers, sync_spawn):
        """Test the manager stays FAILED and silent if no player can be built."""
        def broken_player(data, sample_rate, device=None):
            raise RuntimeError("no output device")

        audio = make_manager(broken_player, fake_timers, sync_spawn, failing_loader)
        audio.initialize("a.wav")

        assert audio.status is AudioStatus.FAILED
        assert audio.toggle() is False
        assert audio.status not in PLAYABLE

    def test_initialize_twice_ignored(self, players, fake_timers, sync_spawn, stereo_buffer):
        """Test a second initialize() doesn't restart loading."""
        audio = make_manager(players, fake_timers, sync_spawn, lambda p: (stereo_buffer, 8000))
        audio.initialize("a.wav")
        audio.initialize("b.wav")

        assert len(players.created) == 1
        assert len(fake_timers.created) == 1

    def test_wait_settled(self, players, fake_timers, sync_spawn):
        """Test wait_settled returns True once loading is over."""
        audio = make_manager(players, fake_timers, sync_spawn, failing_loader)
        audio.initialize("a.wav")

        assert audio.wait_settled(timeout=0.1)


class TestToggle:
    """Enable/disable semantics."""

    def test_double_toggle_restores(self, players, fake_timers, sync_spawn, stereo_buffer):
        """Test two toggles return enabled to its original value."""
        audio = make_manager(players, fake_timers, sync_spawn, lambda p: (stereo_buffer, 8000))
        audio.initialize("a.wav")
        original = audio.enabled

        audio.toggle()
        audio.toggle()

        assert audio.enabled == original

    def test_toggle_plays_and_pauses_asset(self, players, fake_timers, sync_spawn, stereo_buffer):
        """Test enabling plays the loop and disabling pauses it."""
        audio = make_manager(players, fake_timers, sync_spawn, lambda p: (stereo_buffer, 8000))
        audio.initialize("a.wav")
        player = players.created[0]

        assert audio.toggle() is True
        assert player.playing

        assert audio.toggle() is False
        assert not player.playing

    def test_toggle_plays_fallback(self, players, fake_timers, sync_spawn):
        """Test toggling after every candidate failed plays the tone."""
        audio = make_manager(players, fake_timers, sync_spawn, failing_loader)
        audio.initialize("a.wav", ["b.ogg"])

        assert audio.toggle() is True
        assert players.created[0].playing
        assert audio.state.enabled and audio.state.using_fallback

    def test_toggle_ignored_while_loading(self, players, fake_timers, stereo_buffer):
        """Test toggle() is a no-op in LOADING."""
        audio = make_manager(players, fake_timers, DeferredSpawn(), lambda p: (stereo_buffer, 8000))
        audio.initialize("a.wav")

        assert audio.toggle() is False
        assert audio.status is AudioStatus.LOADING

    def test_toggle_ignored_before_initialize(self, players, fake_timers, sync_spawn):
        """Test toggle() is a no-op in UNINITIALIZED."""
        audio = make_manager(players, fake_timers, sync_spawn, failing_loader)

        assert audio.toggle() is False

    def test_enable_when_ready(self, players, fake_timers, sync_spawn, stereo_buffer):
        """Test enable_when_ready starts playback as soon as the asset loads."""
        audio = make_manager(players, fake_timers, sync_spawn, lambda p: (stereo_buffer, 8000))

        audio.initialize("a.wav", enable_when_ready=True)

        assert audio.enabled
        assert players.created[0].play_calls == 1

    def test_play_failure_keeps_disabled(self, fake_timers, sync_spawn, stereo_buffer):
        """Test a failing play() leaves enabled False and records the error."""
        class BrokenPlayer:
            def __init__(self, data, sample_rate, device=None):
                pass

            def play(self):
                raise RuntimeError("device busy")

            def close(self):
                pass

        audio = make_manager(BrokenPlayer, fake_timers, sync_spawn, lambda p: (stereo_buffer, 8000))
        audio.initialize("a.wav")

        assert audio.toggle() is False
        assert "device busy" in str(audio.state.last_error)

    def test_state_readable_during_slow_play(self, fake_timers, sync_spawn):
        """Test state, status and sync() don't wait on a play() still in progress."""
        built = []

        def factory(data, sample_rate, device=None):
            built.append(BlockingPlayer(data, sample_rate, device))
            return built[-1]

        audio = make_manager(factory, fake_timers, sync_spawn, failing_loader)
        audio.initialize("a.wav")
        player = built[0]

        toggler = threading.Thread(target=audio.toggle)
        toggler.start()
        assert player.entered.wait(timeout=2.0)

        reader_done = threading.Event()

        def read_state():
            audio.state
            audio.status
            audio.sync(Phase.INHALE)
            reader_done.set()

        reader = threading.Thread(target=read_state)
        reader.start()
        try:
            assert reader_done.wait(timeout=1.0)
            assert not audio.state.enabled
        finally:
            player.release.set()
            toggler.join(timeout=2.0)
            reader.join(timeout=2.0)

        assert audio.enabled
        assert audio.state.enabled

    def test_toggle_during_slow_play_applies_last(self, fake_timers, sync_spawn):
        """Test a toggle made while play() is blocked wins once it returns."""
        built = []

        def factory(data, sample_rate, device=None):
            built.append(BlockingPlayer(data, sample_rate, device))
            return built[-1]

        audio = make_manager(factory, fake_timers, sync_spawn, failing_loader)
        audio.initialize("a.wav")
        player = built[0]

        first = threading.Thread(target=audio.toggle)
        first.start()
        assert player.entered.wait(timeout=2.0)

        second = threading.Thread(target=audio.toggle)
        second.start()
        second.join(timeout=0.2)

        player.release.set()
        first.join(timeout=2.0)
        second.join(timeout=2.0)

        assert not audio.enabled
        assert not player.playing

    def test_sync_restrikes_fallback_on_inhale(self, players, fake_timers, sync_spawn):
        """Test sync(INHALE) rewinds the enabled fallback tone only."""
        audio = make_manager(players, fake_timers, sync_spawn, failing_loader)
        audio.initialize("a.wav")
        player = players.created[0]

        audio.sync(Phase.INHALE)
        assert player.rewind_calls == 0

        audio.toggle()
        audio.sync(Phase.EXHALE)
        audio.sync(Phase.INHALE)
        assert player.rewind_calls == 1

    def test_sync_leaves_asset_loop_alone(self, players, fake_timers, sync_spawn, stereo_buffer):
        """Test the asset loop is never rewound by phase changes."""
        audio = make_manager(players, fake_timers, sync_spawn, lambda p: (stereo_buffer, 8000))
        audio.initialize("a.wav")
        audio.toggle()

        audio.sync(Phase.INHALE)

        assert players.created[0].rewind_calls == 0


class TestTeardown:
    """Release of every audio resource."""

    def test_teardown_uninitialized(self, players, fake_timers, sync_spawn):
        """Test teardown before initialize is safe."""
        audio = make_manager(players, fake_timers, sync_spawn, failing_loader)

        audio.teardown()

        assert audio.status is AudioStatus.TORN_DOWN

    def test_teardown_while_loading_cancels_timer(self, players, fake_timers):
        """Test teardown in LOADING cancels the pending timeout."""
        audio = make_manager(players, fake_timers, DeferredSpawn(), failing_loader)
        audio.initialize("a.wav")

        audio.teardown()

        assert fake_timers.created[0].cancelled
        assert not audio.has_pending_timer

    def test_timeout_after_teardown_ignored(self, players, fake_timers):
        """Test a timer firing after teardown doesn't synthesize anything."""
        audio = make_manager(players, fake_timers, DeferredSpawn(), failing_loader)
        audio.initialize("a.wav")
        timer = fake_timers.created[0]
        audio.teardown()

        timer.function(*timer.args)

        assert audio.status is AudioStatus.TORN_DOWN
        assert players.created == []

    def test_teardown_joins_loader_threads(self, players, fake_timers):
        """Test teardown waits briefly for a loader still in flight."""
        handle = RecordingThread()
        audio = make_manager(players, fake_timers, lambda target, *args: handle,
                             failing_loader)
        audio.initialize("a.wav")

        audio.teardown()

        assert handle.join_timeouts == [AudioManager.LOADER_JOIN_TIMEOUT_S]

    def test_teardown_while_playing(self, players, fake_timers, sync_spawn, stereo_buffer):
        """Test teardown stops and closes the active player."""
        audio = make_manager(players, fake_timers, sync_spawn, lambda p: (stereo_buffer, 8000))
        audio.initialize("a.wav")
        audio.toggle()

        audio.teardown()

        assert players.created[0].closed
        assert not audio.enabled

    def test_teardown_fallback(self, players, fake_timers, sync_spawn):
        """Test teardown from FALLBACK_READY closes the tone player."""
        audio = make_manager(players, fake_timers, sync_spawn, failing_loader)
        audio.initialize("a.wav")

        audio.teardown()

        assert players.created[0].closed

    def test_teardown_twice(self, players, fake_timers, sync_spawn):
        """Test teardown is idempotent."""
        audio = make_manager(players, fake_timers, sync_spawn, failing_loader)
        audio.initialize("a.wav")

        audio.teardown()
        audio.teardown()

        assert audio.status is AudioStatus.TORN_DOWN

    def test_toggle_after_teardown_ignored(self, players, fake_timers, sync_spawn):
        """Test toggle() is a no-op once torn down."""
        audio = make_manager(players, fake_timers, sync_spawn, failing_loader)
        audio.initialize("a.wav")
        audio.teardown()

        assert audio.toggle() is False


class TestFallbackTone:
    """Synthesized sine tone."""

    def test_buffer_length_matches_cycle(self):
        """Test the tone buffer lasts one breathing cycle."""
        buffer = synthesize_tone(ToneConfig(), 8000, 10000)

        assert buffer.shape == (80000, 2)
        assert buffer.dtype == np.float32

    def test_buffer_never_shorter_than_decay(self):
        """Test a very short cycle still fits the whole envelope."""
        buffer = synthesize_tone(ToneConfig(), 8000, 100)

        assert len(buffer) == 4000

    def test_envelope_shape(self):
        """Test linear attack to peak, decay to sustain by decay_s, then hold."""
        tone = ToneConfig()
        sr = 1000
        env = tone_envelope(tone, sr, 2000)

        assert env[0] == pytest.approx(0.0)
        assert env[50] == pytest.approx(tone.peak_gain * 0.5)
        assert env[100] == pytest.approx(tone.peak_gain)
        assert env[500] == pytest.approx(tone.sustain_gain)
        assert env[1500] == pytest.approx(tone.sustain_gain)
        assert env[-1] == pytest.approx(0.0)
        assert env.max() <= tone.peak_gain + 1e-9

    def test_envelope_decay_is_exponential(self):
        """Test the decay midpoint is the geometric mean of peak and sustain."""
        tone = ToneConfig()
        env = tone_envelope(tone, 1000, 1000)

        assert env[300] == pytest.approx(np.sqrt(tone.peak_gain * tone.sustain_gain))

    def test_tone_is_quiet(self):
        """Test the tone never exceeds peak gain on either channel."""
        buffer = synthesize_tone(ToneConfig(), 8000, 2000)

        assert np.abs(buffer).max() <= ToneConfig().peak_gain


class TestLoopPlayer:
    """Looped output stream."""

    def test_callback_wraps_around(self, streams):
        """Test the callback loops the buffer seamlessly."""
        data = np.arange(10, dtype=np.float32).repeat(2).reshape(10, 2)
        player = LoopPlayer(data, 8000, stream_factory=streams)
        out = np.zeros((25, 2), dtype=np.float32)

        player._callback(out, 25, None, None)

        assert list(out[:, 0]) == [float(i % 10) for i in range(25)]
        assert player.position == 5

    def test_play_opens_stream_once(self, streams):
        """Test play() opens the stream lazily and reuses it on resume."""
        player = LoopPlayer(np.zeros((100, 2), dtype=np.float32), 8000, stream_factory=streams)
        player.play()
        player.pause()
        player.play()

        assert len(streams.created) == 1
        stream = streams.created[0]
        assert stream.start_calls == 2
        assert stream.kwargs['channels'] == 2
        assert stream.kwargs['samplerate'] == 8000
        assert stream.callback == player._callback

    def test_play_rewinds(self, streams):
        """Test every enable restarts from position 0."""
        player = LoopPlayer(np.zeros((100, 2), dtype=np.float32), 8000, stream_factory=streams)
        player.position = 42

        player.play()

        assert player.position == 0

    def test_close_releases_stream(self, streams):
        """Test close() stops and closes the stream, and is idempotent."""
        player = LoopPlayer(np.zeros((100, 2), dtype=np.float32), 8000, stream_factory=streams)
        player.play()

        player.close()
        player.close()

        stream = streams.created[0]
        assert stream.closed and not stream.active
        assert not player.is_open

class TestAssetLoading:
    """Decoding files with soundfile."""

    def test_load_mono_wav(self, tmp_path):
        """Test a mono WAV is decoded to a centered stereo buffer."""
        path = tmp_path / "mono.wav"
        sf.write(str(path), np.full(800, 0.5, dtype=np.float32), 8000)

        data, sample_rate = load_asset(path)

        assert sample_rate == 8000
        assert data.shape == (800, 2)
        assert data[0, 0] == pytest.approx(0.5 * np.cos(np.pi / 4), abs=1e-3)
        assert data[0, 0] == pytest.approx(data[0, 1])

    def test_load_stereo_flac(self, tmp_path, stereo_buffer):
        """Test a stereo FLAC keeps both channels."""
        path = tmp_path / "stereo.flac"
        sf.write(str(path), stereo_buffer, 8000)

        data, sample_rate = load_asset(path)

        assert data.shape == stereo_buffer.shape

    def test_missing_file(self, tmp_path):
        """Test a missing file raises AssetLoadError."""
        with pytest.raises(AssetLoadError, match="file not found"):
            load_asset(tmp_path / "nope.wav")

    def test_corrupt_file(self, tmp_path):
        """Test a non-audio file raises AssetLoadError."""
        path = tmp_path / "junk.wav"
        path.write_bytes(b"definitely not audio")

        with pytest.raises(AssetLoadError):
            load_asset(path)

    def test_to_stereo_multichannel(self):
        """Test more than two channels keep the first two."""
        data = np.ones((10, 4), dtype=np.float32)

        assert to_stereo(data).shape == (10, 2)

    def test_to_stereo_empty(self):
        """Test empty input is rejected."""
        with pytest.raises(ValueError):
            to_stereo(np.zeros(0, dtype=np.float32))
