#!/usr/bin/env python3
"""
Entry point for running respira as a module.

Usage:
    python -m respira [--config PATH] [--audio] [--osc] ...
"""

from respira.cli import main

main()
