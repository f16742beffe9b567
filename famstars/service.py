import uuid
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from .errors import ConflictError, NotFoundError, UnauthorizedError, ValidationError
from .goals import AddTaskResult, CompletionResult, GoalProgressEngine, find_task
from .leaderboard import member_score
from .ledger import Event
from .models import (
    PERIODS,
    AddMemberRequest,
    FamilyCreate,
    FamilyUpdate,
    GoalCreate,
    GoalReward,
    GoalUpdate,
    TaskCreate,
    TaskReward,
    TaskUpdate,
)
from .periods import period_end, period_start
from .ranking import assign_ranks
from .store import Store

logger = logging.getLogger(__name__)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class GoalContext:
    owner_collection: str
    owner: Dict[str, Any]
    goal: Dict[str, Any]
    index: int
    family: Optional[Dict[str, Any]]
    members: List[Dict[str, Any]]


class RewardService:
    """Loads documents, runs the goal engine and persists the outcome in a safe order."""

    def __init__(self, store: Store, engine: Optional[GoalProgressEngine] = None):
        self.store = store
        self.engine = engine or GoalProgressEngine()

    # ============== AUTHORIZATION ==============

    @staticmethod
    def ensure_can_manage(actor: Dict[str, Any], target: Dict[str, Any]) -> None:
        if actor["id"] == target["id"]:
            return
        same_family = actor.get("family_id") and actor.get("family_id") == target.get("family_id")
        if actor.get("role") == "parent" and same_family:
            return
        raise UnauthorizedError("Not allowed to act for this user")

    async def _resolve_target(self, actor: Dict[str, Any], user_id: Optional[str]) -> Dict[str, Any]:
        if not user_id or user_id == actor["id"]:
            user = await self.store.find_user_by_id(actor["id"])
        else:
            user = await self.store.find_user_by_id(user_id)
        if not user:
            raise NotFoundError("User not found")
        self.ensure_can_manage(actor, user)
        return user

    # ============== FAMILIES ==============

    async def create_family(self, actor: Dict[str, Any], payload: FamilyCreate) -> Dict[str, Any]:
        if actor.get("family_id"):
            raise ValidationError("User already belongs to a family")
        family = {
            "id": str(uuid.uuid4()),
            "name": payload.name,
            "avatar_url": payload.avatar_url,
            "total_stars": 0,
            "task_count": 0,
            "stars": {p: 0 for p in PERIODS},
            "task_counts": {p: 0 for p in PERIODS},
            "goals": [],
            "pending_events": [],
            "applied_events": [],
            "created_at": _now_iso(),
        }
        await self.store.insert_family(family)
        await self.store.set_user_family(actor["id"], family["id"], role="parent")
        await self.recalculate_family_member_ranks(family["id"])
        logger.info("Family %s created by %s", family["id"], actor["id"])
        return family

    async def get_family(self, actor: Dict[str, Any], family_id: str) -> Tuple[Dict[str, Any], List[Dict[str, Any]]]:
        if actor.get("family_id") != family_id:
            raise UnauthorizedError("Not a member of this family")
        family = await self.store.find_family_by_id(family_id)
        if not family:
            raise NotFoundError("Family not found")
        members = await self.store.find_users_by_family_id(family_id)
        return family, members

    async def add_family_member(self, actor: Dict[str, Any], family_id: str, payload: AddMemberRequest) -> Dict[str, int]:
        if actor.get("family_id") != family_id or actor.get("role") != "parent":
            raise UnauthorizedError("Only parents of this family can add members")
        if not await self.store.find_family_by_id(family_id):
            raise NotFoundError("Family not found")
        user = await self.store.find_user_by_id(payload.user_id)
        if not user:
            raise NotFoundError("User not found")
        if user.get("family_id"):
            raise ValidationError("User already belongs to a family")
        await self.store.set_user_family(user["id"], family_id)
        return await self.recalculate_family_member_ranks(family_id)

    async def update_family(self, actor: Dict[str, Any], family_id: str, payload: FamilyUpdate) -> Dict[str, Any]:
        self._require_family_parent(actor, family_id)
        family = await self.store.find_family_by_id(family_id)
        if not family:
            raise NotFoundError("Family not found")

        fields = {k: v for k, v in payload.model_dump(exclude_unset=True).items() if v is not None}
        if "name" in fields:
            existing = await self.store.find_family_by_name(fields["name"])
            if existing and existing["id"] != family_id:
                raise ValidationError("Family name already exists")
        if fields:
            await self.store.save_family(family_id, fields)
            family.update(fields)
        return family

    async def delete_family(self, actor: Dict[str, Any], family_id: str) -> int:
        """Delete a family; members stay as standalone users. Returns how many were detached."""
        self._require_family_parent(actor, family_id)
        family = await self.store.find_family_by_id(family_id)
        if not family:
            raise NotFoundError("Family not found")

        # Owed member rewards from interrupted family-goal writes land first.
        if family.get("pending_events"):
            await self._replay_pending("families", family)
        detached = await self.store.detach_family_members(family_id)
        await self.store.delete_family(family_id)
        logger.info("Family %s deleted by %s, %s member(s) detached", family_id, actor["id"], detached)
        return detached

    async def family_summary(self, actor: Dict[str, Any], family_id: str) -> Dict[str, Any]:
        family, members = await self.get_family(actor, family_id)
        return {
            "id": family["id"],
            "name": family["name"],
            "number_of_members": len(members),
            "stars": family.get("total_stars", 0),
        }

    @staticmethod
    def _require_family_parent(actor: Dict[str, Any], family_id: str) -> None:
        if actor.get("family_id") != family_id or actor.get("role") != "parent":
            raise UnauthorizedError("Only parents of this family can change it")

    async def recalculate_family_member_ranks(self, family_id: str) -> Dict[str, int]:
        members = await self.store.find_users_by_family_id(family_id)
        ranks: Dict[str, int] = {}
        for rank, member in assign_ranks(members, member_score):
            ranks[member["id"]] = rank
            if member.get("rank_in_family") != rank:
                await self.store.set_member_rank(member["id"], rank)
        return ranks

    # ============== GOALS ==============

    @staticmethod
    def _require_parent(actor: Dict[str, Any]) -> None:
        if actor.get("role") != "parent":
            raise UnauthorizedError("Only parents can change or delete goals and tasks")

    async def _achievement_ref(self, achievement_id: str) -> Dict[str, Any]:
        found = await self.store.find_achievement_by_id(achievement_id)
        if not found:
            raise NotFoundError("Achievement not found")
        return {"achievement_id": achievement_id, "title": found["title"]}

    async def create_goal(self, actor: Dict[str, Any], payload: GoalCreate) -> Dict[str, Any]:
        rewards = payload.rewards or GoalReward()
        if rewards.achievement_id:
            rewards.achievement_title = (await self._achievement_ref(rewards.achievement_id))["title"]

        goal = {
            "id": str(uuid.uuid4()),
            "title": payload.title,
            "description": payload.description,
            "type": payload.type,
            "owner_id": None,
            "tasks": [],
            "is_completed": False,
            "progress": 0,
            "rewards": rewards.model_dump(),
            "due_date": payload.due_date,
            "completed_at": None,
            "completion_count": 0,
            "rewarded_members": [],
            "created_at": _now_iso(),
        }

        if payload.type == "personal":
            target = await self._resolve_target(actor, payload.user_id)
            goal["owner_id"] = target["id"]
            await self.store.push_goal("users", target["id"], goal)
        else:
            if not actor.get("family_id"):
                raise ValidationError("User does not belong to a family")
            if actor.get("role") != "parent":
                raise UnauthorizedError("Only parents can create family goals")
            goal["owner_id"] = actor["family_id"]
            if not await self.store.push_goal("families", actor["family_id"], goal):
                raise NotFoundError("Family not found")
        return goal

    async def _load_context(self, user: Dict[str, Any], goal_id: str) -> GoalContext:
        family = None
        if user.get("family_id"):
            family = await self.store.find_family_by_id(user["family_id"])
            if family is None:
                logger.warning("User %s references missing family %s", user["id"], user["family_id"])

        for index, goal in enumerate(user.get("goals", [])):
            if goal.get("id") == goal_id:
                return GoalContext("users", user, goal, index, family, [user])

        if family is not None:
            for index, goal in enumerate(family.get("goals", [])):
                if goal.get("id") == goal_id:
                    members = await self.store.find_users_by_family_id(family["id"])
                    return GoalContext("families", family, goal, index, family, members)

        raise NotFoundError("Goal not found")

    async def _persist(self, ctx: GoalContext, events: List[Event]) -> None:
        # 1. goal entry + every reward event queued on the owner in one write
        # 2. guarded deltas  3. drop them from the owner  4. re-rank
        owner_id = ctx.owner["id"]
        saved = await self.store.save_goal(ctx.owner_collection, owner_id, ctx.index, ctx.goal, events)
        if not saved:
            raise ConflictError("Goal was changed by another request, retry")

        for event in events:
            await self.store.apply_event(event)
        await self.store.clear_pending_events(ctx.owner_collection, owner_id, [e["id"] for e in events])

        if ctx.family is not None:
            await self.recalculate_family_member_ranks(ctx.family["id"])

    async def get_goal(self, actor: Dict[str, Any], goal_id: str, user_id: Optional[str] = None) -> Dict[str, Any]:
        user = await self._resolve_target(actor, user_id)
        ctx = await self._load_context(user, goal_id)
        return ctx.goal

    async def list_goals(self, actor: Dict[str, Any], user_id: Optional[str] = None) -> List[Dict[str, Any]]:
        user = await self._resolve_target(actor, user_id)
        goals = list(user.get("goals", []))
        if user.get("family_id"):
            family = await self.store.find_family_by_id(user["family_id"])
            if family:
                goals.extend(family.get("goals", []))
        return goals

    async def update_goal(self, actor: Dict[str, Any], goal_id: str, payload: GoalUpdate) -> Dict[str, Any]:
        self._require_parent(actor)
        user = await self._resolve_target(actor, payload.user_id)
        ctx = await self._load_context(user, goal_id)

        changes = payload.model_dump(exclude_unset=True, exclude={"user_id"})
        rewards = changes.get("rewards")
        if rewards and rewards.get("achievement_id"):
            rewards["achievement_title"] = (await self._achievement_ref(rewards["achievement_id"]))["title"]
        elif rewards and "achievement_id" in rewards:
            rewards["achievement_title"] = None
        self.engine.update_goal(ctx.goal, changes)
        await self._persist(ctx, [])
        return ctx.goal

    async def delete_goal(self, actor: Dict[str, Any], goal_id: str, user_id: Optional[str] = None) -> Dict[str, Any]:
        """Remove a goal; rewards already granted for it are kept."""
        self._require_parent(actor)
        user = await self._resolve_target(actor, user_id)
        ctx = await self._load_context(user, goal_id)
        await self.store.remove_goal(ctx.owner_collection, ctx.owner["id"], goal_id)
        logger.info("Goal %s deleted by %s", goal_id, actor["id"])
        return ctx.goal

    async def add_task(self, actor: Dict[str, Any], goal_id: str, payload: TaskCreate) -> AddTaskResult:
        user = await self._resolve_target(actor, payload.user_id)
        ctx = await self._load_context(user, goal_id)
        if ctx.owner_collection == "families" and actor.get("role") != "parent":
            raise UnauthorizedError("Only parents can add tasks to family goals")

        task = {
            "id": str(uuid.uuid4()),
            "title": payload.title,
            "description": payload.description,
            "rewards": (payload.rewards or TaskReward()).model_dump(),
            "is_completed": False,
            "completed_at": None,
            "created_at": _now_iso(),
        }
        result = self.engine.add_task(ctx.goal, task, ctx.members, ctx.family)
        await self._persist(ctx, result.events)
        return result

    async def get_task(
        self,
        actor: Dict[str, Any],
        goal_id: str,
        task_id: str,
        user_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        goal = await self.get_goal(actor, goal_id, user_id)
        task = find_task(goal, task_id)
        if task is None:
            raise NotFoundError("Task not found")
        return task

    async def update_task(self, actor: Dict[str, Any], goal_id: str, task_id: str, payload: TaskUpdate) -> Dict[str, Any]:
        user = await self._resolve_target(actor, payload.user_id)
        ctx = await self._load_context(user, goal_id)
        if ctx.owner_collection == "families":
            self._require_parent(actor)

        changes = payload.model_dump(exclude_unset=True, exclude={"user_id"})
        task = self.engine.update_task(ctx.goal, task_id, changes)
        await self._persist(ctx, [])
        return task

    async def remove_task(
        self,
        actor: Dict[str, Any],
        goal_id: str,
        task_id: str,
        user_id: Optional[str] = None,
    ) -> CompletionResult:
        self._require_parent(actor)
        user = await self._resolve_target(actor, user_id)
        ctx = await self._load_context(user, goal_id)

        achievement = None
        achievement_id = (ctx.goal.get("rewards") or {}).get("achievement_id")
        if achievement_id and self.engine.completes_after_removal(ctx.goal, task_id):
            achievement = await self._achievement_ref(achievement_id)

        result = self.engine.remove_task(ctx.goal, task_id, ctx.members, ctx.family, achievement)
        await self._persist(ctx, result.events)
        logger.info("Task %s removed from goal %s (progress %s%%)", task_id, goal_id, ctx.goal["progress"])
        return result

    async def complete_task(
        self,
        actor: Dict[str, Any],
        goal_id: str,
        task_id: str,
        user_id: Optional[str] = None,
    ) -> Tuple[CompletionResult, Dict[str, Any]]:
        user = await self._resolve_target(actor, user_id)
        ctx = await self._load_context(user, goal_id)

        achievement = None
        achievement_id = (ctx.goal.get("rewards") or {}).get("achievement_id")
        if achievement_id and self.engine.completes_goal(ctx.goal, task_id):
            achievement = await self._achievement_ref(achievement_id)

        result = self.engine.complete_task(ctx.goal, task_id, ctx.members, ctx.family, achievement)
        await self._persist(ctx, result.events)
        logger.info("Task %s of goal %s completed for %s (progress %s%%)",
                    task_id, goal_id, user["id"], ctx.goal["progress"])

        refreshed = await self.store.find_user_by_id(user["id"])
        return result, refreshed or user

    # ============== RECONCILIATION ==============

    async def _replay_pending(self, collection: str, doc: Dict[str, Any]) -> Tuple[int, int]:
        events = doc.get("pending_events") or []
        replayed = 0
        for event in events:
            if await self.store.apply_event(event):
                replayed += 1
        await self.store.clear_pending_events(collection, doc["id"], [e["id"] for e in events])
        return len(events), replayed

    async def reconcile_pending_events(self) -> Dict[str, Any]:
        """Replay reward deltas left behind by interrupted requests."""
        checked = 0
        replayed = 0
        families = set()
        for collection in ("users", "families"):
            for doc in await self.store.find_with_pending_events(collection):
                seen, applied = await self._replay_pending(collection, doc)
                checked += seen
                replayed += applied
                family_id = doc.get("family_id") if collection == "users" else doc["id"]
                if family_id:
                    families.add(family_id)

        for family_id in families:
            if await self.store.find_family_by_id(family_id):
                await self.recalculate_family_member_ranks(family_id)
        if checked:
            logger.info("Reconciliation: %s pending event(s), %s replayed", checked, replayed)
        return {"checked": checked, "replayed": replayed, "families": sorted(families)}

    # ============== STATS ==============

    @staticmethod
    def _window_counts(goals: List[Dict[str, Any]], start: datetime, end: datetime) -> Dict[str, int]:
        def in_window(doc: Dict[str, Any]) -> bool:
            created = doc.get("created_at")
            if not created:
                return False
            return start <= datetime.fromisoformat(created) < end

        in_goals = [g for g in goals if in_window(g)]
        tasks = [t for g in goals for t in g.get("tasks", []) if in_window(t)]
        return {
            "total_tasks": len(tasks),
            "completed_tasks": sum(1 for t in tasks if t.get("is_completed")),
            "total_goals": len(in_goals),
            "completed_goals": sum(1 for g in in_goals if g.get("is_completed")),
        }

    async def monthly_stats(
        self,
        actor: Dict[str, Any],
        user_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        user = await self._resolve_target(actor, user_id)
        now = now or datetime.now(timezone.utc)
        start = period_start("monthly", now)
        end = period_end("monthly", now)
        return {
            "month_start": start.isoformat(),
            "month_end": end.isoformat(),
            **self._window_counts(user.get("goals", []), start, end),
        }

    async def family_progress_stats(
        self,
        actor: Dict[str, Any],
        family_id: str,
        period: str = "monthly",
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """Family-goal activity inside the current ``period`` window plus achievement coverage."""
        if period not in PERIODS:
            raise ValidationError(f"Unknown period: {period}")
        family, members = await self.get_family(actor, family_id)
        now = now or datetime.now(timezone.utc)
        start = period_start(period, now)
        end = period_end(period, now)

        unlocked = set()
        for member in members:
            unlocked.update((member.get("achievements") or {}).keys())
        return {
            "period": period,
            "period_start": start.isoformat(),
            "period_end": end.isoformat(),
            **self._window_counts(family.get("goals", []), start, end),
            "total_achievements": len(await self.store.find_achievements()),
            "unlocked_achievements": len(unlocked),
        }
