from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from .errors import NotFoundError, ValidationError
from .models import (
    ALL_TIME,
    PERIODS,
    LeaderboardEntry,
    LeaderboardOverviewResponse,
    LeaderboardResponse,
)
from .ranking import assign_ranks
from .store import Store

SCOPES = ("families", "members")


def family_score(period: str) -> Callable[[Dict[str, Any]], Tuple[int, int]]:
    if period == ALL_TIME:
        return lambda f: (f.get("total_stars", 0), f.get("task_count", 0))
    return lambda f: ((f.get("stars") or {}).get(period, 0), (f.get("task_counts") or {}).get(period, 0))


def member_score(member: Dict[str, Any]) -> Tuple[int, int]:
    return member.get("stars", 0), member.get("tasks_completed", 0)


def _entries(docs: List[Dict[str, Any]], score: Callable[[Dict[str, Any]], Tuple[int, int]]) -> List[LeaderboardEntry]:
    entries = []
    for rank, doc in assign_ranks(docs, score):
        stars, tasks = score(doc)
        entries.append(
            LeaderboardEntry(
                rank=rank,
                id=doc["id"],
                name=doc.get("name") or "Unknown",
                stars=stars,
                tasks=tasks,
                avatar_url=doc.get("avatar_url"),
            )
        )
    return entries


class LeaderboardAggregator:
    """Ranks families (per period) or one family's members from a single read."""

    def __init__(self, store: Store):
        self.store = store

    @staticmethod
    def _check(period: str, n: int, scope: str) -> None:
        if scope not in SCOPES:
            raise ValidationError(f"Unknown scope: {scope}")
        if period != ALL_TIME and period not in PERIODS:
            raise ValidationError(f"Unknown period: {period}")
        if scope == "members" and period != ALL_TIME:
            raise ValidationError("Member leaderboards only support the all_time period")
        if n < 1:
            raise ValidationError("Leaderboard size must be at least 1")

    @staticmethod
    def _build(
        period: str,
        scope: str,
        n: int,
        docs: List[Dict[str, Any]],
        score: Callable[[Dict[str, Any]], Tuple[int, int]],
        entity_id: Optional[str],
        generated_at: str,
    ) -> LeaderboardResponse:
        ranked = _entries(docs, score)
        me = next((e for e in ranked if e.id == entity_id), None) if entity_id else None
        return LeaderboardResponse(
            period=period,
            scope=scope,
            generated_at=generated_at,
            limit=n,
            entries=ranked[:n],
            me=me,
        )

    async def top_n(
        self,
        period: str,
        n: int,
        scope: str = "families",
        entity_id: Optional[str] = None,
        family_id: Optional[str] = None,
    ) -> LeaderboardResponse:
        self._check(period, n, scope)
        generated_at = datetime.now(timezone.utc).isoformat()

        if scope == "families":
            docs = await self.store.find_families()
            return self._build(period, scope, n, docs, family_score(period), entity_id, generated_at)

        if not family_id:
            raise ValidationError("family_id is required for member leaderboards")
        if not await self.store.find_family_by_id(family_id):
            raise NotFoundError("Family not found")
        members = await self.store.find_users_by_family_id(family_id)
        return self._build(period, scope, n, members, member_score, entity_id, generated_at)

    async def overview(self, n: int, family_id: Optional[str] = None) -> LeaderboardOverviewResponse:
        """Family leaderboards for every period, all ranked from the same read."""
        for period in PERIODS:
            self._check(period, n, "families")
        generated_at = datetime.now(timezone.utc).isoformat()
        docs = await self.store.find_families()
        periods = {
            period: self._build(period, "families", n, docs, family_score(period), family_id, generated_at)
            for period in PERIODS
        }
        return LeaderboardOverviewResponse(generated_at=generated_at, periods=periods)
