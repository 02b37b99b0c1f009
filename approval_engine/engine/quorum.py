"""Quorum - Stage completion rules

One vocabulary for every stage:

    serial             complete when no voting task is pending (any order)
    parallel, all/None complete when no voting task is pending
    parallel, any      complete on the first approval
    parallel, majority complete when approved >= floor(total / 2) + 1
    parallel, count    complete when approved >= value
    parallel, percent  complete when approved >= ceil(value / 100 * total)

A single rejection vetoes the stage regardless of mode. Delegated,
reassigned and canceled tasks are not part of the total.
"""
import math
from typing import Iterable, Optional
from pydantic import BaseModel, ConfigDict

from ..domain.enums import QuorumType, StageMode, TaskStatus, VOTING_TASK_STATUSES
from ..domain.models import ApprovalTask, QuorumRule


class StageTally(BaseModel):
    """Vote counts of one stage"""
    model_config = ConfigDict(frozen=True)

    total: int
    approved: int
    rejected: int
    pending: int


class StageVerdict(BaseModel):
    """Whether a stage is finished and how"""
    model_config = ConfigDict(frozen=True)

    complete: bool
    rejected: bool
    tally: StageTally

    @property
    def outcome(self) -> Optional[str]:
        if self.rejected:
            return "rejected"
        if self.complete:
            return "approved"
        return None


def tally_tasks(tasks: Iterable[ApprovalTask]) -> StageTally:
    """Count the decision-bearing tasks of a stage"""
    total = approved = rejected = pending = 0
    for task in tasks:
        if task.status not in VOTING_TASK_STATUSES:
            continue
        total += 1
        if task.status == TaskStatus.APPROVED:
            approved += 1
        elif task.status == TaskStatus.REJECTED:
            rejected += 1
        else:
            pending += 1
    return StageTally(total=total, approved=approved, rejected=rejected, pending=pending)


def required_approvals(quorum: Optional[QuorumRule], total: int) -> int:
    """Approvals needed for a parallel stage; ``total`` when unanimous"""
    if quorum is None or quorum.type == QuorumType.ALL:
        return total
    if quorum.type == QuorumType.ANY:
        return min(1, total)
    if quorum.type == QuorumType.MAJORITY:
        return total // 2 + 1
    if quorum.type == QuorumType.COUNT:
        return int(quorum.value or 0)
    if quorum.type == QuorumType.PERCENTAGE:
        return math.ceil((quorum.value or 0) / 100 * total)
    return total


def evaluate_stage(
    mode: StageMode,
    quorum: Optional[QuorumRule],
    tasks: Iterable[ApprovalTask]
) -> StageVerdict:
    """Decide whether a stage is complete given its tasks"""
    tally = tally_tasks(tasks)

    if tally.rejected > 0:
        return StageVerdict(complete=True, rejected=True, tally=tally)

    if mode == StageMode.SERIAL or quorum is None or quorum.type == QuorumType.ALL:
        complete = tally.total > 0 and tally.pending == 0
    else:
        needed = required_approvals(quorum, tally.total)
        # A threshold above the head count can never be reached by votes;
        # the stage then closes once nobody is left to vote.
        if needed > tally.total:
            complete = tally.total > 0 and tally.pending == 0
        else:
            complete = tally.approved >= max(needed, 1)

    return StageVerdict(complete=complete, rejected=False, tally=tally)
