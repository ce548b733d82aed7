#!/usr/bin/env python3
"""
OSC plumbing for the renderer boundary, plus session counters.

WIRE CONTRACT:
    session  --/breath/frame  (UDP 9100)-->  renderer    one message per tick
    renderer --/audio/toggle  (UDP 9101)-->  session     no arguments

The frame payload layout is owned by respira.renderer.OscRenderer.encode().
"""

import socket
import threading
from collections import Counter

from pythonosc import osc_server
from pythonosc import udp_client


PORT_FRAMES = 9100
PORT_CONTROL = 9101

ADDRESS_FRAME = "/breath/frame"
ADDRESS_TOGGLE = "/audio/toggle"

PORT_MIN = 1
PORT_MAX = 65535


def validate_port(port: int) -> None:
    """Raise ValueError unless port is an int in 1-65535.

    >>> validate_port(9101)
    """
    if isinstance(port, bool) or not isinstance(port, int):
        raise ValueError(f"Port must be an integer, got {port!r}")
    if not PORT_MIN <= port <= PORT_MAX:
        raise ValueError(f"Port must be in range {PORT_MIN}-{PORT_MAX}, got {port}")


class ReusePortThreadingOSCUDPServer(osc_server.ThreadingOSCUDPServer):
    """Control-port server that tolerates a second listener on the same port.

    A monitoring tool can then sniff /audio/toggle alongside the session.
    Platforms without SO_REUSEPORT bind normally.
    """

    def server_bind(self):
        reuse_port = getattr(socket, 'SO_REUSEPORT', None)
        if reuse_port is not None:
            self.socket.setsockopt(socket.SOL_SOCKET, reuse_port, 1)
        super().server_bind()


class FrameUDPClient(udp_client.SimpleUDPClient):
    """Frame sender. Broadcast addresses (e.g. 255.255.255.255) are allowed,
    so one session can drive several renderers on a LAN."""

    def __init__(self, address: str, port: int):
        validate_port(port)
        super().__init__(address, port)
        self._sock.setsockopt(socket.SOL_SOCKET, socket.SO_BROADCAST, 1)

    def close(self):
        sock = getattr(self, '_sock', None)
        if sock is not None:
            sock.close()
            self._sock = None


class MessageStatistics:
    """Named counters safe to bump from the tick, loader and OSC threads.

    Counters a session keeps: ticks, frames_rendered, render_errors,
    cycles_started, toggles, toggles_ignored.
    """

    def __init__(self):
        self._counts = Counter()
        self._lock = threading.Lock()

    def increment(self, counter_name: str, amount: int = 1) -> None:
        with self._lock:
            self._counts[counter_name] += amount

    def get(self, counter_name: str) -> int:
        with self._lock:
            return self._counts[counter_name]

    def snapshot(self) -> dict:
        with self._lock:
            return dict(self._counts)

    def format(self, title: str = "STATISTICS") -> str:
        rule = "=" * 60
        rows = [f"{name.replace('_', ' ').title()}: {value}"
                for name, value in sorted(self.snapshot().items())]
        return "\n".join([rule, title, rule, *rows, rule])

    def print_stats(self, title: str = "STATISTICS") -> None:
        print("\n" + self.format(title))
