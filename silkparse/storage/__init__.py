"""Durable job records and per-job result files."""

from .jobs import JobStore, JOB_STATES, TERMINAL_STATES
from .results import ResultStore

__all__ = ["JobStore", "ResultStore", "JOB_STATES", "TERMINAL_STATES"]
