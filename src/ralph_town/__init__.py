"""
ralph-town — package root

File: src/ralph_town/__init__.py
Last updated: 2026-10-19

Purpose
- Package root for the Ralph Loop orchestration engine: drive a code-generating agent
  against acceptance criteria until each one is proven by its backpressure command.

What should be included in this file
- Version export and a deliberately small public surface.

Functional requirements
- Must not have side effects at import time (no config loading, no logging init).
"""

from __future__ import annotations

__version__ = "0.4.0"

__all__ = ["__version__"]
