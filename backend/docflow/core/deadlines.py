"""
Stage deadlines for outbound calls.

The queue manager opens a deadline around every timed stage attempt;
delegates ask remaining_budget() for their HTTP timeout so an unresponsive
AI service fails inside the stage and the stage can still run its fallback
and persist the result.
"""

from __future__ import annotations

import time
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Iterator

# share of the remaining stage time kept back for work after the call returns
_RESERVE_FRACTION = 0.1
_MIN_BUDGET = 0.01

_stage_deadline: ContextVar[float | None] = ContextVar("docflow_stage_deadline", default=None)


@contextmanager
def stage_deadline(seconds: float | None) -> Iterator[None]:
    """Bound outbound calls made in this context to `seconds` from now. None = unbounded."""
    if not seconds:
        yield
        return
    token = _stage_deadline.set(time.monotonic() + seconds)
    try:
        yield
    finally:
        _stage_deadline.reset(token)


def remaining_budget(timeout: float) -> float:
    """The smaller of `timeout` and what is left of the current stage, less the reserve."""
    deadline = _stage_deadline.get()
    if deadline is None:
        return timeout
    remaining = deadline - time.monotonic()
    return max(min(timeout, remaining * (1 - _RESERVE_FRACTION)), _MIN_BUDGET)
