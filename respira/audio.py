#!/usr/bin/env python3
"""
Audio Manager - Ambient audio with graceful degradation

Owns every audio resource of a session: the decoded asset (or synthesized
fallback tone), the looped output stream, the load timeout timer and the
background loader thread. Nothing here can stall or break the visual rhythm:
loading runs off the tick thread, and every failure downgrades to the fallback
tone (or silence) instead of propagating.

LIFECYCLE:
    UNINITIALIZED --initialize()--> LOADING
    LOADING --load ok--> READY
    LOADING --all candidates failed / timeout--> FAILED --tone synthesized--> FALLBACK_READY
    any --teardown()--> TORN_DOWN

    READY | FALLBACK_READY: toggle() flips enabled; elsewhere toggle() is a no-op.

CANDIDATE QUEUE:
    The primary path followed by the candidate paths (duplicates removed) form an
    ordered queue. Each load error pops the next path; an empty queue is the
    exhausted state and triggers fallback synthesis. The timeout runs across
    the whole queue and is cancelled as soon as any path loads.

PLAYBACK:
    - Asset: continuous loop, restarted from position 0 on every enable
    - Fallback: low-volume sine with a linear 0.1s attack and exponential
      decay to a low sustain by 0.5s, one buffer per breathing cycle; sync()
      re-strikes it at the start of each inhale
    - Disable pauses the output stream; buffers stay in memory for re-enable

THREADING:
    One re-entrant lock guards all state and is never held across a device
    call. Every transition publishes an immutable AudioState, which the tick
    thread reads without locking. play()/pause() run under a separate output
    lock against the latest requested flag, so the last toggle wins.
    Loader results and timeouts carry the generation they were started under;
    once teardown or a fallback bumps the generation, late events are ignored.
    teardown() joins in-flight loader threads with a short timeout.
"""

import threading
from collections import deque
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, Iterable, Optional, Tuple

import numpy as np
import sounddevice as sd
import soundfile as sf

from respira.config import Phase, ToneConfig
from respira.log import get_logger

logger = get_logger(__name__)

# Short fade at the tail of the tone buffer so the loop point doesn't click
TONE_TAIL_FADE_S = 0.01


class AudioStatus(Enum):
    UNINITIALIZED = 'uninitialized'
    LOADING = 'loading'
    READY = 'ready'
    FAILED = 'failed'
    FALLBACK_READY = 'fallback_ready'
    TORN_DOWN = 'torn_down'


PLAYABLE = (AudioStatus.READY, AudioStatus.FALLBACK_READY)


class AssetLoadError(Exception):
    """An audio asset could not be read. Recoverable: the next candidate is tried."""

    def __init__(self, path, reason: str):
        super().__init__(f"Failed to load audio asset {path}: {reason}")
        self.path = path
        self.reason = reason


class TimeoutExceeded(Exception):
    """Asset loading did not finish in time. Recoverable: forces the fallback tone."""

    def __init__(self, timeout_ms: int):
        super().__init__(f"Audio asset load exceeded {timeout_ms}ms")
        self.timeout_ms = timeout_ms


@dataclass(frozen=True)
class AudioState:
    """Read-only snapshot handed to renderers."""

    status: AudioStatus = AudioStatus.UNINITIALIZED
    enabled: bool = False
    loaded: bool = False
    using_fallback: bool = False
    last_error: Optional[Exception] = None


def find_audio_device(substring):
    """Find the first output device whose name contains a substring.

    Args:
        substring (str): Case-insensitive substring (e.g. 'pulse', 'HDMI')

    Returns:
        int: Device index of first match, or None if no match found
    """
    devices = sd.query_devices()
    substring_lower = substring.lower()

    for i, device in enumerate(devices):
        if substring_lower in device['name'].lower():
            logger.info(f"Selected audio device {i}: {device['name']}")
            return i

    logger.warning(f"No audio device found matching '{substring}', using default device")
    return None


def to_stereo(data):
    """Shape decoded audio as a (frames, 2) float32 buffer.

    Mono input is centered with constant-power gains; inputs with more than
    two channels keep their first two.

    Raises:
        ValueError: If data is empty or not 1D/2D
    """
    data = np.asarray(data, dtype=np.float32)

    if data.ndim == 1:
        if len(data) == 0:
            raise ValueError("audio data is empty")
        gain = np.float32(np.cos(np.pi / 4))
        stereo = np.empty((len(data), 2), dtype=np.float32)
        stereo[:, 0] = data * gain
        stereo[:, 1] = data * gain
        return stereo

    if data.ndim == 2:
        if data.shape[0] == 0 or data.shape[1] == 0:
            raise ValueError("audio data is empty")
        if data.shape[1] == 1:
            return to_stereo(data[:, 0])
        return np.ascontiguousarray(data[:, :2])

    raise ValueError(f"unexpected audio shape {data.shape}")


def load_asset(path) -> Tuple[np.ndarray, int]:
    """Decode an audio file into a stereo float32 buffer.

    Args:
        path: Path to any format libsndfile reads (WAV, FLAC, OGG, ...)

    Returns:
        tuple: (stereo ndarray of shape (frames, 2), sample_rate)

    Raises:
        AssetLoadError: If the file is missing, unreadable or empty
    """
    filepath = Path(path)
    if not filepath.exists():
        raise AssetLoadError(path, "file not found")

    try:
        data, sample_rate = sf.read(str(filepath), dtype='float32')
    except Exception as e:
        raise AssetLoadError(path, str(e)) from e

    try:
        return to_stereo(data), int(sample_rate)
    except ValueError as e:
        raise AssetLoadError(path, str(e)) from e


def tone_envelope(tone: ToneConfig, sample_rate: int, num_samples: int) -> np.ndarray:
    """Gain envelope: linear attack to peak, exponential decay to sustain, then hold."""
    t = np.arange(num_samples, dtype=np.float64) / sample_rate
    envelope = np.full(num_samples, tone.sustain_gain, dtype=np.float64)

    attack = t < tone.attack_s
    envelope[attack] = tone.peak_gain * (t[attack] / tone.attack_s)

    decay = (t >= tone.attack_s) & (t < tone.decay_s)
    decay_progress = (t[decay] - tone.attack_s) / (tone.decay_s - tone.attack_s)
    ratio = tone.sustain_gain / tone.peak_gain
    envelope[decay] = tone.peak_gain * np.power(ratio, decay_progress)

    fade_samples = min(num_samples, int(TONE_TAIL_FADE_S * sample_rate))
    if fade_samples > 0:
        envelope[-fade_samples:] *= np.linspace(1.0, 0.0, fade_samples)

    return envelope


def synthesize_tone(tone: ToneConfig, sample_rate: int, duration_ms: float) -> np.ndarray:
    """Synthesize the fallback sine tone as a stereo buffer.

    The buffer lasts one breathing cycle (never shorter than the decay time),
    so looping it strikes the tone once per cycle.
    """
    duration_s = max(duration_ms / 1000.0, tone.decay_s)
    num_samples = int(round(duration_s * sample_rate))

    t = np.arange(num_samples, dtype=np.float64) / sample_rate
    signal = np.sin(2 * np.pi * tone.frequency_hz * t) * tone_envelope(tone, sample_rate, num_samples)
    return to_stereo(signal.astype(np.float32))


class LoopPlayer:
    """Seamless looped playback of one stereo buffer via a sounddevice OutputStream.

    The stream is opened lazily on the first play() and kept open across
    pause()/play() cycles until close().

    Attributes:
        data (np.ndarray): Stereo buffer, shape (frames, 2)
        sample_rate (int): Buffer sample rate
        position (int): Next frame to be written by the stream callback
    """

    def __init__(self, data, sample_rate, device=None, stream_factory=None):
        self.data = to_stereo(data)
        self.sample_rate = int(sample_rate)
        self.device = device
        self.position = 0
        self.lock = threading.Lock()  # Protects position (callback runs on PortAudio thread)
        self._stream = None
        self._stream_factory = stream_factory or sd.OutputStream

    @property
    def is_open(self) -> bool:
        return self._stream is not None

    def _callback(self, outdata, frames, time_info, status):
        if status:
            logger.debug(f"Output stream status: {status}")

        total = len(self.data)
        written = 0
        with self.lock:
            while written < frames:
                chunk = min(frames - written, total - self.position)
                outdata[written:written + chunk] = self.data[self.position:self.position + chunk]
                written += chunk
                self.position = (self.position + chunk) % total

    def rewind(self) -> None:
        with self.lock:
            self.position = 0

    def play(self) -> None:
        """Start (or resume) playback from position 0."""
        self.rewind()
        if self._stream is None:
            self._stream = self._stream_factory(
                samplerate=self.sample_rate,
                channels=2,
                dtype='float32',
                device=self.device,
                callback=self._callback,
            )
        self._stream.start()

    def pause(self) -> None:
        if self._stream is not None:
            self._stream.stop()

    def close(self) -> None:
        """Stop and release the output stream. Safe to call twice."""
        stream, self._stream = self._stream, None
        if stream is None:
            return
        try:
            stream.stop()
        finally:
            stream.close()


def _spawn_daemon(target: Callable, *args) -> threading.Thread:
    thread = threading.Thread(target=target, args=args, name="respira-audio-load", daemon=True)
    thread.start()
    return thread


class AudioManager:
    """Single owner of a session's audio resources.

    Args:
        tone (ToneConfig): Fallback tone parameters
        sample_rate (int): Sample rate for the synthesized tone
        cycle_ms (float): Breathing cycle length; sets the tone buffer length
        device: Output device index or None for default
        loader: path -> (stereo ndarray, sample_rate); raises AssetLoadError
        player_factory: (data, sample_rate, device) -> LoopPlayer-like object
        timer_factory: threading.Timer-compatible factory for the load timeout
        spawn: (target, *args) -> thread handle or None, runs a loader job off
            the caller's thread
    """

    LOADER_JOIN_TIMEOUT_S = 1.0

    def __init__(self, tone: Optional[ToneConfig] = None, sample_rate: int = 44100,
                 cycle_ms: float = 10000, device=None,
                 loader=load_asset, player_factory=LoopPlayer,
                 timer_factory=threading.Timer, spawn=_spawn_daemon):
        self.tone = tone or ToneConfig()
        self.sample_rate = sample_rate
        self.cycle_ms = cycle_ms
        self.device = device

        self._loader = loader
        self._player_factory = player_factory
        self._timer_factory = timer_factory
        self._spawn = spawn

        self.lock = threading.RLock()
        self._settled = threading.Condition(self.lock)
        self._output_lock = threading.Lock()  # Serializes play()/pause(); taken before self.lock

        self._status = AudioStatus.UNINITIALIZED
        self._enabled = False
        self._requested = False
        self._last_error: Optional[Exception] = None
        self._player = None
        self._timer = None
        self._queue = deque()
        self._generation = 0
        self._timeout_ms = None
        self._loaders = []
        self._state = AudioState()

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def status(self) -> AudioStatus:
        return self._state.status

    @property
    def enabled(self) -> bool:
        return self._state.enabled

    @property
    def state(self) -> AudioState:
        """Latest published snapshot. Never blocks, so the tick thread can read it."""
        return self._state

    def _publish(self) -> None:
        # Caller holds self.lock
        self._state = AudioState(
            status=self._status,
            enabled=self._enabled,
            loaded=self._status is AudioStatus.READY,
            using_fallback=self._status is AudioStatus.FALLBACK_READY,
            last_error=self._last_error,
        )

    @property
    def has_pending_timer(self) -> bool:
        with self.lock:
            return self._timer is not None

    def wait_settled(self, timeout: Optional[float] = None) -> bool:
        """Block until loading has finished one way or the other.

        Returns:
            True if the manager left LOADING within timeout
        """
        with self._settled:
            return self._settled.wait_for(lambda: self._status is not AudioStatus.LOADING, timeout)

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    def initialize(self, primary_path: Optional[str], candidate_paths: Iterable[str] = (),
                   timeout_ms: int = 5000, enable_when_ready: bool = False) -> None:
        """Begin non-blocking asset loading.

        Args:
            primary_path: First asset to try (None to go straight to the tone)
            candidate_paths: Ordered fallbacks tried after the primary fails
            timeout_ms: Deadline across all candidates before synthesizing the tone
            enable_when_ready: Start playback as soon as audio becomes playable
        """
        with self.lock:
            if self._status is not AudioStatus.UNINITIALIZED:
                logger.warning(f"initialize() ignored in state {self._status.value}")
                return

            paths = []
            for path in (primary_path, *candidate_paths):
                if path and path not in paths:
                    paths.append(path)

            self._queue = deque(paths)
            self._timeout_ms = timeout_ms
            self._requested = enable_when_ready
            self._status = AudioStatus.LOADING
            self._publish()

            if not self._queue:
                logger.info("No audio asset configured, using fallback tone")
                self._fall_back()
                path = None
            else:
                logger.info(f"Loading audio asset ({len(self._queue)} candidate path(s), "
                            f"timeout {timeout_ms}ms)")
                generation = self._generation
                self._timer = self._timer_factory(timeout_ms / 1000.0, self._on_timeout,
                                                  args=(generation,))
                self._timer.daemon = True
                self._timer.start()
                path = self._queue.popleft()

        if path is None:
            self._apply_output()
        else:
            self._load(path, generation)

    def _load(self, path, generation: int) -> None:
        logger.debug(f"Trying audio asset: {path}")
        thread = self._spawn(self._load_worker, path, generation)
        if thread is not None:
            with self.lock:
                self._loaders = [t for t in self._loaders if t.is_alive()]
                self._loaders.append(thread)

    def _load_worker(self, path, generation: int) -> None:
        try:
            data, sample_rate = self._loader(path)
        except AssetLoadError as e:
            self._on_load_error(e, generation)
        except Exception as e:
            self._on_load_error(AssetLoadError(path, str(e)), generation)
        else:
            self._on_load_success(path, data, sample_rate, generation)

    def _is_current(self, generation: int) -> bool:
        return generation == self._generation and self._status is AudioStatus.LOADING

    def _on_load_success(self, path, data, sample_rate, generation: int) -> None:
        with self.lock:
            if not self._is_current(generation):
                logger.debug(f"Discarding late load result for {path}")
                return

            self._cancel_timer()
            try:
                self._player = self._player_factory(data, sample_rate, self.device)
            except Exception as e:
                logger.warning(f"Audio asset {path} unusable ({e}), falling back to tone")
                self._last_error = AssetLoadError(path, str(e))
                self._fall_back()
            else:
                self._queue.clear()
                self._status = AudioStatus.READY
                self._publish()
                logger.info(f"Audio asset ready: {path} ({len(data) / sample_rate:.1f}s @ {sample_rate}Hz)")
                self._settled.notify_all()

        self._apply_output()

    def _on_load_error(self, error: AssetLoadError, generation: int) -> None:
        with self.lock:
            if not self._is_current(generation):
                return

            self._last_error = error
            self._publish()
            logger.warning(str(error))

            if self._queue:
                path = self._queue.popleft()
            else:
                logger.warning("All audio asset candidates failed")
                self._fall_back()
                path = None

        if path is None:
            self._apply_output()
        else:
            self._load(path, generation)

    def _on_timeout(self, generation: int) -> None:
        with self.lock:
            if not self._is_current(generation):
                return

            self._timer = None
            self._last_error = TimeoutExceeded(self._timeout_ms)
            logger.warning(str(self._last_error))
            self._fall_back()

        self._apply_output()

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _fall_back(self) -> None:
        """LOADING -> FAILED -> FALLBACK_READY (or FAILED if synthesis fails)."""
        # Any loader still in flight now belongs to a stale generation
        self._generation += 1
        self._cancel_timer()
        self._queue.clear()
        self._status = AudioStatus.FAILED

        try:
            buffer = synthesize_tone(self.tone, self.sample_rate, self.cycle_ms)
            self._player = self._player_factory(buffer, self.sample_rate, self.device)
        except Exception as e:
            logger.error(f"Fallback tone unavailable, audio stays silent: {e}")
            self._last_error = e
            self._publish()
            self._settled.notify_all()
            return

        self._status = AudioStatus.FALLBACK_READY
        self._publish()
        logger.info(f"Fallback tone ready ({self.tone.frequency_hz:.0f}Hz)")
        self._settled.notify_all()

    # ------------------------------------------------------------------
    # Control
    # ------------------------------------------------------------------

    def set_enabled(self, enabled: bool) -> bool:
        """Enable or disable playback. No-op unless READY or FALLBACK_READY.

        Returns:
            The resulting enabled flag
        """
        with self.lock:
            if self._status not in PLAYABLE:
                logger.debug(f"Audio toggle ignored ({self._status.value})")
                return self._enabled
            self._requested = enabled

        self._apply_output()
        return self.enabled

    def toggle(self) -> bool:
        """Flip enabled. Overlapping toggles apply in call order."""
        with self.lock:
            if self._status not in PLAYABLE:
                logger.debug(f"Audio toggle ignored ({self._status.value})")
                return self._enabled
            self._requested = not self._requested

        self._apply_output()
        return self.enabled

    def _apply_output(self) -> None:
        """Bring the output stream in line with the latest request.

        Device calls run outside self.lock so state readers never wait on
        PortAudio; a request made meanwhile is applied on the next call.
        """
        with self._output_lock:
            with self.lock:
                if self._status not in PLAYABLE or self._requested == self._enabled:
                    return
                player, wanted = self._player, self._requested
                source = "fallback tone" if self._status is AudioStatus.FALLBACK_READY else "asset loop"

            error = None
            try:
                if wanted:
                    player.play()
                else:
                    player.pause()
            except Exception as e:
                error = e

            with self.lock:
                if error is not None:
                    action = "start" if wanted else "pause"
                    logger.warning(f"Failed to {action} audio playback: {error}")
                    self._last_error = error
                    if wanted:
                        self._requested = self._enabled
                        self._publish()
                        return

                self._enabled = wanted
                self._publish()
                logger.info(f"Audio enabled ({source})" if wanted else "Audio disabled")

    def sync(self, phase: Phase) -> None:
        """Re-strike the fallback tone at the start of each inhale."""
        state = self._state
        if phase is Phase.INHALE and state.enabled and state.using_fallback:
            player = self._player
            if player is not None:
                player.rewind()

    def teardown(self) -> None:
        """Stop playback and release every audio resource. Safe from any state."""
        with self._output_lock, self.lock:
            if self._status is AudioStatus.TORN_DOWN:
                return

            self._generation += 1
            self._cancel_timer()
            self._queue.clear()
            self._requested = False

            player, self._player = self._player, None
            if player is not None:
                try:
                    player.close()
                except Exception as e:
                    logger.warning(f"Failed to close audio output: {e}")

            self._enabled = False
            self._status = AudioStatus.TORN_DOWN
            self._publish()
            self._settled.notify_all()
            loaders, self._loaders = self._loaders, []

        for thread in loaders:
            if thread is not threading.current_thread():
                thread.join(timeout=self.LOADER_JOIN_TIMEOUT_S)
        logger.info("Audio torn down")
