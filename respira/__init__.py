"""
Respira - Guided breathing exercise with a pulsing orb and ambient audio.

Modules:
    config: Phase tables, session settings, YAML loading
    clock: Phase/cycle state machine and tick sources
    curves: Orb scale, glow and text opacity curves
    audio: Ambient audio loading, fallback tone, looped playback
    renderer: Frame payload, console and OSC renderers, toggle listener
    session: Lifecycle glue (mount, tick, toggle, teardown)
    osc, log: Shared networking and logging helpers
"""

__version__ = "0.1.0"

# Submodules aren't imported here: clock and curves stay usable without
# loading sounddevice/PortAudio.
