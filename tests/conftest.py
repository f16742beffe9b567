import uuid
from datetime import datetime, timezone

import pytest

from famstars.db import InMemoryDB
from famstars.models import PERIODS
from famstars.service import RewardService
from famstars.store import Store


def make_user(name="Alex", role="parent", family_id=None, **extra):
    doc = {
        "id": str(uuid.uuid4()),
        "email": f"{name.lower()}-{uuid.uuid4().hex[:6]}@example.com",
        "name": name,
        "password": "hashed",
        "role": role,
        "family_id": family_id,
        "stars": 0,
        "coins": 0,
        "tasks_completed": 0,
        "rank_in_family": 1,
        "achievements": {},
        "goals": [],
        "pending_events": [],
        "applied_events": [],
        "created_at": datetime.now(timezone.utc).isoformat(),
    }
    doc.update(extra)
    return doc


def make_family(name="Smiths", **extra):
    doc = {
        "id": str(uuid.uuid4()),
        "name": name,
        "avatar_url": None,
        "total_stars": 0,
        "task_count": 0,
        "stars": {p: 0 for p in PERIODS},
        "task_counts": {p: 0 for p in PERIODS},
        "goals": [],
        "pending_events": [],
        "applied_events": [],
        "created_at": datetime.now(timezone.utc).isoformat(),
    }
    doc.update(extra)
    return doc


def make_goal(goal_id="g1", tasks=None, **extra):
    goal = {
        "id": goal_id,
        "title": "Clean the house",
        "description": "",
        "type": "personal",
        "owner_id": None,
        "tasks": tasks or [],
        "is_completed": False,
        "progress": 0,
        "rewards": {"stars": 10, "coins": 5, "achievement_id": None, "achievement_title": None},
        "completed_at": None,
        "completion_count": 0,
        "rewarded_members": [],
        "created_at": datetime.now(timezone.utc).isoformat(),
    }
    goal.update(extra)
    return goal


def make_task(task_id, stars=2, coins=1):
    return {
        "id": task_id,
        "title": f"Task {task_id}",
        "description": "",
        "rewards": {"stars": stars, "coins": coins},
        "is_completed": False,
        "completed_at": None,
        "created_at": datetime.now(timezone.utc).isoformat(),
    }


@pytest.fixture()
def db():
    return InMemoryDB()


@pytest.fixture()
def store(db):
    return Store(db)


@pytest.fixture()
def service(store):
    return RewardService(store)
