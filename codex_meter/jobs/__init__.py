"""
Background Jobs
================
Rebuild, drift verification and scheduled checks.
"""

from codex_meter.jobs.rebuild import RebuildController, RebuildInProgress, RebuildNotConfirmed
from codex_meter.jobs.scheduler import JobScheduler

__all__ = ["JobScheduler", "RebuildController", "RebuildInProgress", "RebuildNotConfirmed"]
