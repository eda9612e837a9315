"""
Codex Meter
===========
Local usage and cost meter for the Codex CLI.
"""

__version__ = "0.1.0"
