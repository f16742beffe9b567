"""Star/coin/task-count bookkeeping for members and their family.

Every delta is expressed as a reward event: a small document naming the
target (``users`` or ``families`` collection and id) and the amounts. Events
have deterministic ids derived from the goal, task and completion cycle, and
each target remembers the ids it absorbed in ``applied_events``. Applying an
event is therefore idempotent, both here on in-memory documents and in
``Store.apply_event`` against the database.

Balances are never clamped: a reclaim can push a member below zero so that
inconsistent data stays visible.
"""
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from pydantic import ValidationError as PydanticValidationError

from .db import apply_update
from .errors import ValidationError
from .models import PERIODS, GoalReward, TaskReward

APPLIED_EVENTS_WINDOW = 500

Event = Dict[str, Any]


def parse_reward(raw: Optional[Dict[str, Any]], model=TaskReward):
    """Validate a stored or submitted reward dict into ``model``."""
    try:
        return model.model_validate(raw or {})
    except PydanticValidationError as e:
        raise ValidationError(f"Invalid rewards: {e.errors()[0].get('msg', 'bad value')}")


def new_event(
    event_id: str,
    kind: str,
    collection: str,
    target_id: str,
    *,
    stars: int = 0,
    coins: int = 0,
    tasks: int = 0,
    counters: bool = False,
    achievement: Optional[Dict[str, Any]] = None,
) -> Event:
    return {
        "id": event_id,
        "kind": kind,
        "collection": collection,
        "target_id": target_id,
        "stars": stars,
        "coins": coins,
        "tasks": tasks,
        "counters": counters,
        "achievement": achievement,
        "created_at": datetime.now(timezone.utc).isoformat(),
    }


def event_update(event: Event) -> Dict[str, Any]:
    """MongoDB update document for ``event`` (without the idempotency guard)."""
    stars, tasks = event["stars"], event["tasks"]
    if event["collection"] == "families":
        inc = {"total_stars": stars, "task_count": tasks}
        if event["counters"]:
            for period in PERIODS:
                inc[f"stars.{period}"] = stars
                inc[f"task_counts.{period}"] = tasks
        return {"$inc": inc}

    update: Dict[str, Any] = {"$inc": {"stars": stars, "coins": event["coins"], "tasks_completed": tasks}}
    achievement = event.get("achievement")
    if achievement:
        update["$set"] = {
            f"achievements.{achievement['achievement_id']}": {
                "achievement_id": achievement["achievement_id"],
                "title": achievement.get("title"),
                "unlocked_at": event["created_at"],
            }
        }
    return update


def apply_event(doc: Dict[str, Any], event: Event) -> bool:
    """Apply ``event`` to an in-memory target document; False if already absorbed."""
    if doc.get("id") != event["target_id"]:
        raise ValueError(f"Event {event['id']} targets {event['target_id']}, not {doc.get('id')}")
    applied = doc.setdefault("applied_events", [])
    if event["id"] in applied:
        return False
    apply_update(doc, event_update(event))
    applied.append(event["id"])
    del applied[:-APPLIED_EVENTS_WINDOW]
    return True


def has_achievement(member: Dict[str, Any], achievement_id: str) -> bool:
    return achievement_id in (member.get("achievements") or {})


class RewardLedger:
    """Builds reward events and applies them to member and family documents."""

    def _emit(self, events: List[Event], doc: Optional[Dict[str, Any]], event: Event) -> None:
        if doc is not None:
            apply_event(doc, event)
        events.append(event)

    def apply_task_reward(
        self,
        members: Iterable[Dict[str, Any]],
        goal: Dict[str, Any],
        task: Dict[str, Any],
        family: Optional[Dict[str, Any]] = None,
    ) -> List[Event]:
        members = list(members)
        reward = parse_reward(task.get("rewards"), TaskReward)
        base = f"{goal['id']}:{task['id']}:task"

        events: List[Event] = []
        for member in members:
            self._emit(events, member, new_event(
                f"{base}:{member['id']}", "task_reward", "users", member["id"],
                stars=reward.stars, coins=reward.coins, tasks=1,
            ))
        if family is not None:
            # One completed task for the family, stars credited per rewarded member.
            self._emit(events, family, new_event(
                f"{base}:family", "task_reward", "families", family["id"],
                stars=reward.stars * len(members), tasks=1, counters=True,
            ))
        return events

    def apply_goal_reward(
        self,
        members: Iterable[Dict[str, Any]],
        goal: Dict[str, Any],
        family: Optional[Dict[str, Any]] = None,
        achievement: Optional[Dict[str, Any]] = None,
    ) -> List[Event]:
        """Grant the full goal reward to every member (family goals are not split)."""
        members = list(members)
        reward = parse_reward(goal.get("rewards"), GoalReward)
        cycle = goal.get("completion_count", 0)
        base = f"{goal['id']}:goal:{cycle}"

        if achievement is None and reward.achievement_id:
            achievement = {"achievement_id": reward.achievement_id, "title": reward.achievement_title}

        events: List[Event] = []
        for member in members:
            unlock = None
            if achievement and not has_achievement(member, achievement["achievement_id"]):
                unlock = achievement
            self._emit(events, member, new_event(
                f"{base}:{member['id']}", "goal_reward", "users", member["id"],
                stars=reward.stars, coins=reward.coins, achievement=unlock,
            ))
        if family is not None:
            self._emit(events, family, new_event(
                f"{base}:family", "goal_reward", "families", family["id"],
                stars=reward.stars * len(members), counters=True,
            ))
        return events

    def reclaim_goal_reward(
        self,
        member: Dict[str, Any],
        goal: Dict[str, Any],
        family: Optional[Dict[str, Any]] = None,
    ) -> List[Event]:
        """Take back one member's goal reward; period counters are left alone."""
        reward = parse_reward(goal.get("rewards"), GoalReward)
        cycle = goal.get("completion_count", 0)
        base = f"{goal['id']}:reclaim:{cycle}"

        events: List[Event] = []
        self._emit(events, member, new_event(
            f"{base}:{member['id']}", "goal_reclaim", "users", member["id"],
            stars=-reward.stars, coins=-reward.coins,
        ))
        if family is not None:
            self._emit(events, family, new_event(
                f"{base}:family:{member['id']}", "goal_reclaim", "families", family["id"],
                stars=-reward.stars,
            ))
        return events
