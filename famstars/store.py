from datetime import datetime
from typing import Any, Dict, List, Optional

from pymongo import ASCENDING

from .ledger import APPLIED_EVENTS_WINDOW, Event, event_update
from .models import PERIODS

_NO_ID = {"_id": 0}
_PUBLIC_USER = {"_id": 0, "password": 0}


class Store:
    """Single-document reads and writes over the ``users``/``families``/``achievements`` collections.

    Nothing here spans two documents; callers order the writes.
    """

    def __init__(self, db: Any):
        self.db = db

    async def ensure_indexes(self) -> None:
        await self.db.users.create_index([("id", ASCENDING)], unique=True)
        await self.db.users.create_index([("email", ASCENDING)], unique=True)
        await self.db.users.create_index([("family_id", ASCENDING)])
        await self.db.families.create_index([("id", ASCENDING)], unique=True)
        await self.db.achievements.create_index([("id", ASCENDING)], unique=True)

    def _collection(self, name: str):
        if name not in ("users", "families"):
            raise ValueError(f"Unknown collection: {name}")
        return self.db[name]

    # ---- users ----

    async def find_user_by_id(self, user_id: str) -> Optional[Dict[str, Any]]:
        return await self.db.users.find_one({"id": user_id}, _NO_ID)

    async def find_user_by_email(self, email: str) -> Optional[Dict[str, Any]]:
        return await self.db.users.find_one({"email": email}, _NO_ID)

    async def find_users_by_family_id(self, family_id: str) -> List[Dict[str, Any]]:
        return await self.db.users.find({"family_id": family_id}, _PUBLIC_USER).to_list(None)

    async def insert_user(self, user: Dict[str, Any]) -> None:
        await self.db.users.insert_one(user)

    async def save_user(self, user_id: str, fields: Dict[str, Any]) -> bool:
        result = await self.db.users.update_one({"id": user_id}, {"$set": fields})
        return result.matched_count == 1

    async def set_user_family(self, user_id: str, family_id: Optional[str], role: Optional[str] = None) -> None:
        fields: Dict[str, Any] = {"family_id": family_id}
        if role:
            fields["role"] = role
        await self.save_user(user_id, fields)

    async def set_member_rank(self, user_id: str, rank: int) -> None:
        await self.save_user(user_id, {"rank_in_family": rank})

    async def detach_family_members(self, family_id: str) -> int:
        result = await self.db.users.update_many(
            {"family_id": family_id}, {"$set": {"family_id": None, "rank_in_family": 1}}
        )
        return result.matched_count

    # ---- families ----

    async def find_family_by_id(self, family_id: str) -> Optional[Dict[str, Any]]:
        return await self.db.families.find_one({"id": family_id}, _NO_ID)

    async def find_families(self) -> List[Dict[str, Any]]:
        # One pass over every family so a leaderboard ranks a single snapshot.
        return await self.db.families.find({}, _NO_ID).to_list(None)

    async def insert_family(self, family: Dict[str, Any]) -> None:
        await self.db.families.insert_one(family)

    async def find_family_by_name(self, name: str) -> Optional[Dict[str, Any]]:
        return await self.db.families.find_one({"name": name}, _NO_ID)

    async def save_family(self, family_id: str, fields: Dict[str, Any]) -> bool:
        result = await self.db.families.update_one({"id": family_id}, {"$set": fields})
        return result.matched_count == 1

    async def delete_family(self, family_id: str) -> bool:
        result = await self.db.families.delete_one({"id": family_id})
        return result.deleted_count == 1

    async def reset_period_counters(self, period: str) -> int:
        if period not in PERIODS:
            raise ValueError(f"Unknown period: {period}")
        result = await self.db.families.update_many(
            {}, {"$set": {f"stars.{period}": 0, f"task_counts.{period}": 0}}
        )
        return result.matched_count

    # ---- goals & reward events ----

    async def push_goal(self, collection: str, owner_id: str, goal: Dict[str, Any]) -> bool:
        result = await self._collection(collection).update_one({"id": owner_id}, {"$push": {"goals": goal}})
        return result.matched_count == 1

    async def save_goal(
        self,
        collection: str,
        owner_id: str,
        index: int,
        goal: Dict[str, Any],
        pending: Optional[List[Event]] = None,
    ) -> bool:
        """Overwrite one goal entry in place, queueing ``pending`` events in the same write.

        Only matches while ``goals.<index>`` still holds this goal, so a concurrent
        insert or delete that shifted the array makes the write a no-op.
        """
        update: Dict[str, Any] = {"$set": {f"goals.{index}": goal}}
        if pending:
            update["$push"] = {"pending_events": {"$each": list(pending)}}
        result = await self._collection(collection).update_one(
            {"id": owner_id, f"goals.{index}.id": goal["id"]}, update
        )
        return result.matched_count == 1

    async def remove_goal(self, collection: str, owner_id: str, goal_id: str) -> None:
        await self._collection(collection).update_one({"id": owner_id}, {"$pull": {"goals": {"id": goal_id}}})

    async def apply_event(self, event: Event) -> bool:
        """Apply ``event`` to its target unless the target already absorbed it."""
        update = event_update(event)
        update["$push"] = {"applied_events": {"$each": [event["id"]], "$slice": -APPLIED_EVENTS_WINDOW}}
        result = await self._collection(event["collection"]).update_one(
            {"id": event["target_id"], "applied_events": {"$ne": event["id"]}},
            update,
        )
        return result.matched_count == 1

    async def clear_pending_events(self, collection: str, owner_id: str, event_ids: List[str]) -> None:
        if not event_ids:
            return
        await self._collection(collection).update_one(
            {"id": owner_id},
            {"$pull": {"pending_events": {"id": {"$in": list(event_ids)}}}},
        )

    async def find_with_pending_events(self, collection: str) -> List[Dict[str, Any]]:
        docs = await self._collection(collection).find(
            {"pending_events": {"$exists": True, "$ne": []}}, _PUBLIC_USER
        ).to_list(None)
        return [d for d in docs if d.get("pending_events")]

    # ---- achievements ----

    async def find_achievement_by_id(self, achievement_id: str) -> Optional[Dict[str, Any]]:
        return await self.db.achievements.find_one({"id": achievement_id}, _NO_ID)

    async def find_achievements(self) -> List[Dict[str, Any]]:
        return await self.db.achievements.find({}, _NO_ID).sort("created_at", ASCENDING).to_list(None)

    async def insert_achievement(self, achievement: Dict[str, Any]) -> None:
        await self.db.achievements.insert_one(achievement)

    # ---- meta ----

    async def get_reset_state(self) -> Dict[str, Any]:
        state = await self.db.meta.find_one({"id": "period_resets"}, _NO_ID)
        return state or {"id": "period_resets"}

    async def record_reset(self, period: str, when: datetime) -> None:
        result = await self.db.meta.update_one(
            {"id": "period_resets"}, {"$set": {period: when.isoformat()}}
        )
        if result.matched_count == 0:
            await self.db.meta.insert_one({"id": "period_resets", period: when.isoformat()})
