#!/usr/bin/env python3
"""
Command-line entry point for a guided breathing session.

Usage:
    python -m respira
    python -m respira --config my_breathing.yaml --audio
    python -m respira --osc --no-console
    python -m respira --cycles 6 --device pulse

Runs until Ctrl+C, then tears the session down and prints statistics.
"""

import argparse
import os
import sys
import threading
from dataclasses import replace

from respira.audio import AudioManager, find_audio_device
from respira.config import DEFAULT_CONFIG_PATH, ConfigError, describe_method, load_config
from respira.log import get_logger, set_level
from respira.renderer import ConsoleRenderer, OscRenderer, ToggleListener
from respira.session import BreathingSession

logger = get_logger("respira")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Guided 4-6 breathing exercise")
    parser.add_argument(
        "--config",
        type=str,
        default=str(DEFAULT_CONFIG_PATH),
        help="Path to YAML config file (default: bundled breathing.yaml)",
    )
    parser.add_argument(
        "--cycles",
        type=int,
        default=None,
        help="Override total_cycles from the config",
    )
    audio_group = parser.add_mutually_exclusive_group()
    audio_group.add_argument(
        "--audio",
        action="store_true",
        help="Enable ambient audio as soon as it is ready",
    )
    audio_group.add_argument(
        "--no-audio",
        action="store_true",
        help="Skip audio loading entirely",
    )
    parser.add_argument(
        "--device",
        type=str,
        default=None,
        help="Audio device substring to match (e.g., 'pulse', 'HDMI')",
    )
    parser.add_argument(
        "--osc",
        action="store_true",
        help="Send /breath/frame to renderer.osc_host:osc_port and listen for /audio/toggle",
    )
    parser.add_argument(
        "--no-console",
        action="store_true",
        help="Disable the terminal renderer",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default=os.getenv("RESPIRA_LOG_LEVEL", "WARNING"),
        help="Logging verbosity (default: WARNING, keeps the console orb readable)",
    )
    return parser


def main(argv=None):
    args = build_parser().parse_args(argv)

    set_level(args.log_level)

    try:
        config = load_config(args.config)
    except (FileNotFoundError, ConfigError) as e:
        logger.error(f"{e}")
        sys.exit(1)

    overrides = {}
    if args.cycles is not None:
        overrides["total_cycles"] = args.cycles
    if args.audio:
        overrides["audio"] = replace(config.audio, enabled_on_start=True)
    if overrides:
        try:
            config = replace(config, **overrides)
        except ConfigError as e:
            logger.error(f"{e}")
            sys.exit(1)

    device = config.audio.device
    if args.device:
        device = args.device
    device_index = find_audio_device(device) if device else None

    audio = AudioManager(
        tone=config.audio.tone,
        sample_rate=config.audio.sample_rate,
        cycle_ms=config.phases.cycle_ms,
        device=device_index,
    )

    renderers = []
    if not args.no_console:
        title, subtitle = describe_method(config.phases)
        renderers.append(ConsoleRenderer(title=title, subtitle=subtitle))
    if args.osc:
        renderers.append(OscRenderer(config.renderer.osc_host, config.renderer.osc_port))

    session = BreathingSession(config, renderers=renderers, audio=audio)

    listener = None
    if args.osc:
        listener = ToggleListener(session.toggle_audio, port=config.renderer.control_port)
        try:
            listener.start()
        except OSError as e:
            logger.error(f"Control port {config.renderer.control_port} unavailable: {e}")
            sys.exit(1)

    stop = threading.Event()
    try:
        session.mount(with_audio=not args.no_audio)
        stop.wait()
    except KeyboardInterrupt:
        logger.info("Shutting down...")
    finally:
        if listener is not None:
            listener.stop()
        session.teardown()
        session.stats.print_stats("BREATHING SESSION STATISTICS")


if __name__ == "__main__":
    main()
