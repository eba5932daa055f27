"""
Progress Aggregator — completion percentage and derived parent status.

Every work title gets an equal share of 100 regardless of price or child
count:

    no children    finished → full share, in_progress → half, pending → 0
    k children     share × (done + 0.5 × in_progress) / k
                   where "done" = finished OR manually overridden

The functions here are pure. The step tree store calls
``apply_derived_status`` explicitly after each child mutation; nothing
re-derives on read.
"""

from __future__ import annotations

import math
from typing import Iterable

from bluecrew.core.entities import StepStatus, WorkDescription, WorkItem

_STATUS_WEIGHT = {
    StepStatus.PENDING: 0.0,
    StepStatus.IN_PROGRESS: 0.5,
    StepStatus.FINISHED: 1.0,
}


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def work_item_fraction(item: WorkItem) -> float:
    """Completion of a single work title in [0, 1]."""
    if not item.children:
        return _STATUS_WEIGHT.get(StepStatus(item.status), 0.0)
    done = sum(1 for c in item.children if c.is_done)
    in_progress = sum(
        1 for c in item.children
        if c.status == StepStatus.IN_PROGRESS and not c.manual_override
    )
    return (done + 0.5 * in_progress) / len(item.children)


def calculate_progress(items: Iterable[WorkItem]) -> int:
    """Return the 0–100 completion percentage of a work breakdown.

    Zero work titles → 0.
    """
    items = list(items)
    if not items:
        return 0
    share = 100 / len(items)
    total = sum(work_item_fraction(item) * share for item in items)
    return max(0, min(100, _round_half_up(total)))


def derive_parent_status(children: Iterable[WorkDescription]) -> StepStatus | None:
    """Status a work title must have given its children.

    Returns None for an empty child list: a childless work title keeps its
    own, authoritative status.
    """
    children = list(children)
    if not children:
        return None
    if all(c.is_done for c in children):
        return StepStatus.FINISHED
    if any(c.is_started for c in children):
        return StepStatus.IN_PROGRESS
    return StepStatus.PENDING


def apply_derived_status(item: WorkItem) -> bool:
    """Write the derived status onto ``item``; return True if anything changed.

    When the derived status is FINISHED the work title's manual_override flag
    is also set, so it stays finished if it is re-evaluated before children
    exist again. Running this twice in a row changes nothing the second time.
    """
    derived = derive_parent_status(item.children)
    if derived is None:
        return False
    changed = False
    if item.status != derived:
        item.status = derived
        changed = True
    if derived == StepStatus.FINISHED and not item.manual_override:
        item.manual_override = True
        changed = True
    return changed


def all_steps_finished(items: Iterable[WorkItem]) -> bool:
    """True iff there is work and every title and description is finished.

    A breakdown with no work titles is never "all finished".
    """
    items = list(items)
    if not items:
        return False
    for item in items:
        if item.status != StepStatus.FINISHED:
            return False
        if item.children and not all(c.is_done for c in item.children):
            return False
    return True
