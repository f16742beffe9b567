import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional

from .errors import AlreadyCompletedError, NotFoundError, ValidationError
from .ledger import RewardLedger, parse_reward
from .models import GoalReward, TaskReward

logger = logging.getLogger(__name__)


@dataclass
class CompletionResult:
    task: Dict[str, Any]
    goal: Dict[str, Any]
    events: List[Dict[str, Any]]
    goal_completed: bool = False
    unlocked: List[str] = field(default_factory=list)


@dataclass
class AddTaskResult:
    task: Dict[str, Any]
    goal: Dict[str, Any]
    events: List[Dict[str, Any]]
    reopened: bool = False


def compute_progress(completed: int, total: int) -> int:
    # Round half up in integers: 1/3 -> 33, 2/3 -> 67.
    if total <= 0:
        return 0
    return (200 * completed + total) // (2 * total)


def find_task(goal: Dict[str, Any], task_id: str) -> Optional[Dict[str, Any]]:
    return next((t for t in goal.get("tasks", []) if t.get("id") == task_id), None)


def recompute_progress(goal: Dict[str, Any]) -> int:
    tasks = goal.get("tasks", [])
    goal["progress"] = compute_progress(sum(1 for t in tasks if t.get("is_completed")), len(tasks))
    return goal["progress"]


class GoalProgressEngine:
    """Goal state machine: OPEN -> COMPLETED (rewards granted) -> OPEN (rewards reclaimed).

    Works on plain goal/member/family documents and returns the reward events
    it applied so the caller can persist them.
    """

    def __init__(self, ledger: Optional[RewardLedger] = None, clock: Optional[Callable[[], datetime]] = None):
        self.ledger = ledger or RewardLedger()
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def _now(self) -> str:
        return self._clock().isoformat()

    def completes_goal(self, goal: Dict[str, Any], task_id: str) -> bool:
        """True when completing ``task_id`` would bring ``goal`` to 100%."""
        if goal.get("is_completed"):
            return False
        pending = [t for t in goal.get("tasks", []) if not t.get("is_completed")]
        return len(pending) == 1 and pending[0].get("id") == task_id

    def complete_task(
        self,
        goal: Dict[str, Any],
        task_id: str,
        members: Iterable[Dict[str, Any]],
        family: Optional[Dict[str, Any]] = None,
        achievement: Optional[Dict[str, Any]] = None,
    ) -> CompletionResult:
        members = list(members)
        task = find_task(goal, task_id)
        if task is None:
            raise NotFoundError("Task not found")
        if task.get("is_completed"):
            raise AlreadyCompletedError()
        if not members:
            raise ValidationError("Goal has no members to reward")

        now = self._now()
        task["is_completed"] = True
        task["completed_at"] = now
        events = self.ledger.apply_task_reward(members, goal, task, family)

        goal_completed = False
        unlocked: List[str] = []
        if recompute_progress(goal) == 100 and not goal.get("is_completed"):
            goal_events = self._complete_goal(goal, members, family, achievement, now)
            unlocked = [e["target_id"] for e in goal_events if e.get("achievement")]
            events.extend(goal_events)
            goal_completed = True

        return CompletionResult(task=task, goal=goal, events=events, goal_completed=goal_completed, unlocked=unlocked)

    def add_task(
        self,
        goal: Dict[str, Any],
        task: Dict[str, Any],
        members: Iterable[Dict[str, Any]],
        family: Optional[Dict[str, Any]] = None,
    ) -> AddTaskResult:
        if not task.get("id"):
            raise ValidationError("Task id is required")
        if find_task(goal, task["id"]) is not None:
            raise ValidationError("Task already exists in goal")
        task["rewards"] = parse_reward(task.get("rewards"), TaskReward).model_dump()
        task.setdefault("is_completed", False)
        task.setdefault("completed_at", None)

        events: List[Dict[str, Any]] = []
        reopened = False
        if goal.get("is_completed"):
            rewarded = set(goal.get("rewarded_members") or [])
            for member in members:
                if member["id"] in rewarded:
                    events.extend(self.ledger.reclaim_goal_reward(member, goal, family))
                    rewarded.discard(member["id"])
            if rewarded:
                logger.warning("Goal %s reopened; could not reclaim from missing member(s) %s",
                               goal["id"], sorted(rewarded))
            goal["is_completed"] = False
            goal["completed_at"] = None
            goal["rewarded_members"] = []
            reopened = True
            logger.info("Goal %s reopened by new task %s", goal["id"], task["id"])

        goal.setdefault("tasks", []).append(task)
        recompute_progress(goal)
        return AddTaskResult(task=task, goal=goal, events=events, reopened=reopened)

    def _complete_goal(
        self,
        goal: Dict[str, Any],
        members: List[Dict[str, Any]],
        family: Optional[Dict[str, Any]],
        achievement: Optional[Dict[str, Any]],
        now: str,
    ) -> List[Dict[str, Any]]:
        goal["is_completed"] = True
        goal["completed_at"] = now
        goal["completion_count"] = goal.get("completion_count", 0) + 1
        goal["rewarded_members"] = [m["id"] for m in members]
        events = self.ledger.apply_goal_reward(members, goal, family, achievement)
        logger.info("Goal %s completed (cycle %s), rewarded %s member(s)",
                    goal["id"], goal["completion_count"], len(members))
        return events

    def completes_after_removal(self, goal: Dict[str, Any], task_id: str) -> bool:
        """True when deleting open task ``task_id`` leaves only completed tasks behind."""
        if goal.get("is_completed"):
            return False
        task = find_task(goal, task_id)
        if task is None or task.get("is_completed"):
            return False
        rest = [t for t in goal.get("tasks", []) if t.get("id") != task_id]
        return bool(rest) and all(t.get("is_completed") for t in rest)

    def remove_task(
        self,
        goal: Dict[str, Any],
        task_id: str,
        members: Iterable[Dict[str, Any]],
        family: Optional[Dict[str, Any]] = None,
        achievement: Optional[Dict[str, Any]] = None,
    ) -> CompletionResult:
        """Delete a task; rewards already paid for it stay with the members.

        Removing the last open task of a goal whose other tasks are done
        completes the goal and grants its reward. Removing the only task of an
        open goal leaves it empty at 0%; a completed goal must keep one task.
        """
        members = list(members)
        task = find_task(goal, task_id)
        if task is None:
            raise NotFoundError("Task not found")
        if goal.get("is_completed") and len(goal.get("tasks", [])) == 1:
            raise ValidationError("Cannot remove the only task of a completed goal")
        completes = self.completes_after_removal(goal, task_id)
        if completes and not members:
            raise ValidationError("Goal has no members to reward")

        goal["tasks"] = [t for t in goal.get("tasks", []) if t.get("id") != task_id]
        recompute_progress(goal)

        events: List[Dict[str, Any]] = []
        unlocked: List[str] = []
        if completes:
            events = self._complete_goal(goal, members, family, achievement, self._now())
            unlocked = [e["target_id"] for e in events if e.get("achievement")]
        return CompletionResult(task=task, goal=goal, events=events, goal_completed=completes, unlocked=unlocked)

    def update_task(self, goal: Dict[str, Any], task_id: str, changes: Dict[str, Any]) -> Dict[str, Any]:
        task = find_task(goal, task_id)
        if task is None:
            raise NotFoundError("Task not found")
        if changes.get("rewards") is not None:
            if task.get("is_completed"):
                raise ValidationError("Rewards of a completed task cannot be changed")
            task["rewards"] = parse_reward(changes["rewards"], TaskReward).model_dump()
        for key in ("title", "description"):
            if changes.get(key):
                task[key] = changes[key]
        recompute_progress(goal)
        return task

    def update_goal(self, goal: Dict[str, Any], changes: Dict[str, Any]) -> Dict[str, Any]:
        if changes.get("rewards") is not None:
            if goal.get("is_completed"):
                # Reclaiming on reopen must take back exactly what was granted.
                raise ValidationError("Rewards of a completed goal cannot be changed")
            merged = {**(goal.get("rewards") or {}), **changes["rewards"]}
            goal["rewards"] = parse_reward(merged, GoalReward).model_dump()
        for key in ("title", "description", "due_date"):
            if changes.get(key):
                goal[key] = changes[key]
        return goal
