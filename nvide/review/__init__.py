"""Diff review: scratch staging, the review state machine and its outcome."""
from .engine import DiffReviewEngine, DiffSession, OneShot
from .outcome import Accepted, Outcome, Rejected
from .scratch import ScratchWorkspace

__all__ = [
    "Accepted",
    "DiffReviewEngine",
    "DiffSession",
    "OneShot",
    "Outcome",
    "Rejected",
    "ScratchWorkspace",
]
