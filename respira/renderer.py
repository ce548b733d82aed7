#!/usr/bin/env python3
"""
Renderers - The drawing side of the session boundary

A renderer receives one Frame per tick and draws it; it never feeds back into
the clock. The only thing flowing the other way is the user's audio toggle,
which arrives through ToggleListener (OSC) or a direct session.toggle_audio()
call.

RENDERERS:
- ConsoleRenderer: single-line terminal orb, redrawn in place
- OscRenderer: /breath/frame messages for an external drawing process

OUTPUT OSC MESSAGE:
    Address: /breath/frame
    Arguments: [scale, glow, text_opacity, phase_label, cycle_index,
                total_cycles, audio_enabled, audio_fallback]
    - scale: float 1.0-1.7
    - glow: float 0.6-1.0
    - text_opacity: float 0.0-1.0
    - phase_label: str ("Inhale", "Now exhale slowly...", "")
    - cycle_index / total_cycles: int
    - audio_enabled / audio_fallback: int 0 or 1

INPUT OSC MESSAGE:
    Address: /audio/toggle   (no arguments)
"""

import sys
import threading
from dataclasses import dataclass
from typing import Callable, List, Optional

from pythonosc import dispatcher

from respira import osc
from respira.audio import AudioState
from respira.config import Phase
from respira.curves import VisualParams, SCALE_MAX
from respira.log import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class Frame:
    """Everything a renderer needs for one tick."""

    phase: Phase
    scale: float
    glow: float
    text_opacity: float
    phase_label: str
    cycle_index: int
    total_cycles: int
    audio_state: AudioState

    @property
    def visual(self) -> VisualParams:
        return VisualParams(self.scale, self.glow, self.text_opacity)

    @property
    def cycle_indicator(self) -> List[bool]:
        """One entry per cycle; True for cycles reached so far."""
        return [i + 1 <= self.cycle_index for i in range(self.total_cycles)]


class Renderer:
    """Base class for frame consumers.

    render() runs on the tick thread and should return quickly. Exceptions it
    raises are logged by the session and never stop the clock.
    """

    def render(self, frame: Frame) -> None:
        pass

    def close(self) -> None:
        pass


class ConsoleRenderer(Renderer):
    """Draws the orb as a bar on one terminal line.

    Example line:
        (((((((((((((((          ))  Inhale                ●●○○  ♪
    """

    BAR_WIDTH = 36
    LABEL_WIDTH = 22
    # Below this opacity the label is drawn as blank space
    LABEL_THRESHOLD = 0.3

    def __init__(self, stream=None, title: Optional[str] = None, subtitle: Optional[str] = None):
        self.stream = stream or sys.stdout
        self.title = title
        self.subtitle = subtitle
        self._header_written = False
        self._drawn = False

    def format_line(self, frame: Frame) -> str:
        filled = int(round(self.BAR_WIDTH * frame.scale / SCALE_MAX))
        bar = "(" * filled + " " * (self.BAR_WIDTH - filled)

        label = frame.phase_label if frame.text_opacity >= self.LABEL_THRESHOLD else ""
        dots = "".join("●" if reached else "○" for reached in frame.cycle_indicator)

        if frame.audio_state.enabled:
            audio = "~" if frame.audio_state.using_fallback else "♪"
        else:
            audio = " "

        return f"{bar}))  {label:<{self.LABEL_WIDTH}}{dots}  {audio}"

    def render(self, frame: Frame) -> None:
        if not self._header_written and self.title:
            self.stream.write(f"{self.title}\n")
            if self.subtitle:
                self.stream.write(f"{self.subtitle}\n")
            self._header_written = True

        self.stream.write("\r" + self.format_line(frame))
        self.stream.flush()
        self._drawn = True

    def close(self) -> None:
        if self._drawn:
            self._drawn = False
            self.stream.write("\n")
            self.stream.flush()


class OscRenderer(Renderer):
    """Forwards frames to an external renderer as /breath/frame messages."""

    def __init__(self, host: str = "127.0.0.1", port: int = osc.PORT_FRAMES, client=None):
        osc.validate_port(port)
        self.host = host
        self.port = port
        self.client = client or osc.FrameUDPClient(host, port)

    @staticmethod
    def encode(frame: Frame) -> list:
        return [
            float(frame.scale),
            float(frame.glow),
            float(frame.text_opacity),
            frame.phase_label,
            int(frame.cycle_index),
            int(frame.total_cycles),
            int(frame.audio_state.enabled),
            int(frame.audio_state.using_fallback),
        ]

    def render(self, frame: Frame) -> None:
        self.client.send_message(osc.ADDRESS_FRAME, self.encode(frame))

    def close(self) -> None:
        close = getattr(self.client, 'close', None)
        if close is not None:
            close()


class ToggleListener:
    """OSC server forwarding /audio/toggle to a callback.

    Runs serve_forever() on a daemon thread; stop() shuts the server down and
    releases the port.
    """

    def __init__(self, callback: Callable[[], None], port: int = osc.PORT_CONTROL,
                 host: str = "0.0.0.0", server_factory=osc.ReusePortThreadingOSCUDPServer):
        osc.validate_port(port)
        self.callback = callback
        self.host = host
        self.port = port
        self._server_factory = server_factory
        self.server = None
        self._thread: Optional[threading.Thread] = None

    def handle_toggle_message(self, address: str, *args) -> None:
        logger.debug(f"Received {address} {list(args)}")
        self.callback()

    def start(self) -> None:
        disp = dispatcher.Dispatcher()
        disp.map(osc.ADDRESS_TOGGLE, self.handle_toggle_message)
        self.server = self._server_factory((self.host, self.port), disp)

        self._thread = threading.Thread(target=self.server.serve_forever,
                                        name="respira-control", daemon=True)
        self._thread.start()
        logger.info(f"Listening for {osc.ADDRESS_TOGGLE} on port {self.port}")

    def stop(self) -> None:
        server, self.server = self.server, None
        if server is None:
            return
        server.shutdown()
        server.server_close()
        if self._thread is not None:
            self._thread.join(timeout=2.0)
            if self._thread.is_alive():
                logger.warning("Control server thread did not terminate cleanly")
            self._thread = None
