from contextlib import asynccontextmanager

from fastapi import FastAPI, APIRouter, HTTPException, Depends, Request, status
from fastapi.responses import JSONResponse
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from starlette.middleware.cors import CORSMiddleware
import logging
import uuid
from datetime import datetime, timezone, timedelta
from typing import Any, Dict, List, Optional

import bcrypt
import jwt

from . import config
from .db import connect_database
from .errors import FamStarsError, ValidationError
from .leaderboard import LeaderboardAggregator
from .models import (
    ALL_TIME,
    PERIODS,
    AchievementCreate,
    AchievementResponse,
    AddMemberRequest,
    AddTaskResponse,
    CompleteTaskRequest,
    CompleteTaskResponse,
    FamilyCreate,
    FamilyResponse,
    FamilySummaryResponse,
    FamilyUpdate,
    GoalCreate,
    GoalResponse,
    GoalUpdate,
    LeaderboardCountdownResponse,
    LeaderboardOverviewResponse,
    LeaderboardResponse,
    MonthlyStatsResponse,
    Period,
    ProgressStatsResponse,
    ReconcileResponse,
    RemoveTaskResponse,
    ResetResponse,
    TaskCreate,
    TaskResponse,
    TaskUpdate,
    TokenResponse,
    UnlockedAchievementResponse,
    UserCreate,
    UserLogin,
    UserResponse,
    user_response,
)
from .periods import is_period, period_end
from .scheduler import PeriodResetScheduler
from .service import RewardService
from .store import Store

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Handles are initialized on startup.
client = None
store: Optional[Store] = None
service: Optional[RewardService] = None
leaderboards: Optional[LeaderboardAggregator] = None
reset_scheduler: Optional[PeriodResetScheduler] = None

@asynccontextmanager
async def lifespan(app: FastAPI):
    global client, store, service, leaderboards, reset_scheduler

    if config.IS_PROD and config.JWT_SECRET_SOURCE == "default":
        raise RuntimeError("JWT_SECRET must be set in production (refusing to start with default secret).")
    if config.JWT_SECRET_SOURCE == "default":
        logger.warning("JWT_SECRET not set; using insecure default. Set JWT_SECRET for persistent logins and security.")

    client, db = await connect_database()
    store = Store(db)
    await store.ensure_indexes()
    service = RewardService(store)
    leaderboards = LeaderboardAggregator(store)

    if config.SCHEDULER_ENABLED and reset_scheduler is None:
        reset_scheduler = PeriodResetScheduler(store, reconcile=service.reconcile_pending_events)
        await reset_scheduler.catch_up()
        reset_scheduler.start()

    yield

    if reset_scheduler is not None:
        reset_scheduler.shutdown()
        reset_scheduler = None
    if client is not None:
        client.close()


# Create the main app without a prefix
app = FastAPI(title="FamStars API", lifespan=lifespan)

# Create a router with the /api prefix
api_router = APIRouter(prefix="/api")

security = HTTPBearer()


@app.exception_handler(FamStarsError)
async def famstars_error_handler(request: Request, exc: FamStarsError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


# ============== AUTH HELPERS ==============

def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode('utf-8'), bcrypt.gensalt()).decode('utf-8')


def verify_password(password: str, hashed: str) -> bool:
    return bcrypt.checkpw(password.encode('utf-8'), hashed.encode('utf-8'))


def create_access_token(user_id: str, email: str) -> str:
    payload = {
        "user_id": user_id,
        "email": email,
        "exp": datetime.now(timezone.utc) + timedelta(hours=config.JWT_EXPIRATION_HOURS)
    }
    return jwt.encode(payload, config.JWT_SECRET, algorithm=config.JWT_ALGORITHM)


async def get_current_user(credentials: HTTPAuthorizationCredentials = Depends(security)):
    try:
        payload = jwt.decode(credentials.credentials, config.JWT_SECRET, algorithms=[config.JWT_ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token has expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid token")

    user_id = payload.get("user_id")
    if user_id is None:
        raise HTTPException(status_code=401, detail="Invalid token")

    user = await store.db.users.find_one({"id": user_id}, {"_id": 0, "password": 0})
    if user is None:
        raise HTTPException(status_code=401, detail="User not found")
    return user


def _require_internal_token(credentials: HTTPAuthorizationCredentials = Depends(security)) -> None:
    expected = config.INTERNAL_TOKEN
    if not expected:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Internal token not configured")
    if credentials.credentials != expected:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Forbidden")


def goal_response(goal: Dict[str, Any]) -> GoalResponse:
    return GoalResponse(**{k: v for k, v in goal.items() if k in GoalResponse.model_fields})


def task_response(task: Dict[str, Any]) -> TaskResponse:
    return TaskResponse(**{k: v for k, v in task.items() if k in TaskResponse.model_fields})


def _unlocked_for(events: List[Dict[str, Any]], user_id: str) -> List[str]:
    return [e["achievement"]["achievement_id"] for e in events
            if e.get("achievement") and e["target_id"] == user_id]


# ============== AUTH ROUTES ==============

@api_router.post("/auth/register", response_model=TokenResponse)
async def register(user_data: UserCreate):
    existing_user = await store.find_user_by_email(user_data.email)
    if existing_user:
        raise HTTPException(status_code=400, detail="Email already registered")

    user_doc = {
        "id": str(uuid.uuid4()),
        "email": user_data.email,
        "name": user_data.name,
        "password": hash_password(user_data.password),
        "role": user_data.role,
        "family_id": None,
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
    await store.insert_user(user_doc)

    token = create_access_token(user_doc["id"], user_data.email)
    return TokenResponse(access_token=token, user=user_response(user_doc))


@api_router.post("/auth/login", response_model=TokenResponse)
async def login(login_data: UserLogin):
    user = await store.find_user_by_email(login_data.email)
    if not user or not verify_password(login_data.password, user["password"]):
        raise HTTPException(status_code=401, detail="Invalid email or password")

    token = create_access_token(user["id"], user["email"])
    return TokenResponse(access_token=token, user=user_response(user))


@api_router.get("/auth/me", response_model=UserResponse)
async def get_me(current_user: dict = Depends(get_current_user)):
    return user_response(current_user)


# ============== FAMILY ROUTES ==============

@api_router.post("/families", response_model=FamilyResponse)
async def create_family(payload: FamilyCreate, current_user: dict = Depends(get_current_user)):
    family = await service.create_family(current_user, payload)
    members = await store.find_users_by_family_id(family["id"])
    return FamilyResponse(**family, members=[user_response(m) for m in members])


@api_router.get("/families/{family_id}", response_model=FamilyResponse)
async def get_family(family_id: str, current_user: dict = Depends(get_current_user)):
    family, members = await service.get_family(current_user, family_id)
    return FamilyResponse(**family, members=[user_response(m) for m in members])


@api_router.post("/families/{family_id}/members")
async def add_family_member(family_id: str, payload: AddMemberRequest, current_user: dict = Depends(get_current_user)):
    ranks = await service.add_family_member(current_user, family_id, payload)
    return {"message": "Member added successfully", "ranks": ranks}


@api_router.patch("/families/{family_id}", response_model=FamilyResponse)
async def update_family(family_id: str, payload: FamilyUpdate, current_user: dict = Depends(get_current_user)):
    family = await service.update_family(current_user, family_id, payload)
    members = await store.find_users_by_family_id(family_id)
    return FamilyResponse(**family, members=[user_response(m) for m in members])


@api_router.delete("/families/{family_id}")
async def delete_family(family_id: str, current_user: dict = Depends(get_current_user)):
    detached = await service.delete_family(current_user, family_id)
    return {"message": "Family deleted successfully", "detached_members": detached}


@api_router.get("/families/{family_id}/summary", response_model=FamilySummaryResponse)
async def get_family_summary(family_id: str, current_user: dict = Depends(get_current_user)):
    return await service.family_summary(current_user, family_id)


@api_router.get("/families/{family_id}/stats", response_model=ProgressStatsResponse)
async def get_family_stats(family_id: str, period: Period = "monthly", current_user: dict = Depends(get_current_user)):
    return await service.family_progress_stats(current_user, family_id, period)


@api_router.get("/families/{family_id}/leaderboard", response_model=LeaderboardResponse)
async def get_family_leaderboard(family_id: str, limit: int = 10, current_user: dict = Depends(get_current_user)):
    if current_user.get("family_id") != family_id:
        raise HTTPException(status_code=403, detail="Not a member of this family")
    limit = max(1, min(100, limit))
    return await leaderboards.top_n(ALL_TIME, limit, scope="members", entity_id=current_user["id"], family_id=family_id)


# ============== ACHIEVEMENT ROUTES ==============

@api_router.post("/achievements", response_model=AchievementResponse)
async def create_achievement(payload: AchievementCreate, _: None = Depends(_require_internal_token)):
    doc = {
        "id": str(uuid.uuid4()),
        **payload.model_dump(),
        "created_at": datetime.now(timezone.utc).isoformat(),
    }
    await store.insert_achievement(doc)
    return AchievementResponse(**doc)


@api_router.get("/achievements", response_model=List[AchievementResponse])
async def list_achievements(current_user: dict = Depends(get_current_user)):
    return await store.find_achievements()


@api_router.get("/achievements/unlocked", response_model=List[UnlockedAchievementResponse])
async def list_unlocked_achievements(current_user: dict = Depends(get_current_user)):
    return list((current_user.get("achievements") or {}).values())


@api_router.get("/achievements/locked", response_model=List[AchievementResponse])
async def list_locked_achievements(current_user: dict = Depends(get_current_user)):
    unlocked = current_user.get("achievements") or {}
    return [a for a in await store.find_achievements() if a["id"] not in unlocked]


# ============== GOAL ROUTES ==============

@api_router.post("/goals", response_model=GoalResponse, status_code=201)
async def create_goal(payload: GoalCreate, current_user: dict = Depends(get_current_user)):
    goal = await service.create_goal(current_user, payload)
    return goal_response(goal)


@api_router.get("/goals", response_model=List[GoalResponse])
async def list_goals(user_id: Optional[str] = None, current_user: dict = Depends(get_current_user)):
    return [goal_response(g) for g in await service.list_goals(current_user, user_id)]


@api_router.get("/goals/{goal_id}", response_model=GoalResponse)
async def get_goal(goal_id: str, user_id: Optional[str] = None, current_user: dict = Depends(get_current_user)):
    return goal_response(await service.get_goal(current_user, goal_id, user_id))


@api_router.patch("/goals/{goal_id}", response_model=GoalResponse)
async def update_goal(goal_id: str, payload: GoalUpdate, current_user: dict = Depends(get_current_user)):
    return goal_response(await service.update_goal(current_user, goal_id, payload))


@api_router.delete("/goals/{goal_id}")
async def delete_goal(goal_id: str, user_id: Optional[str] = None, current_user: dict = Depends(get_current_user)):
    await service.delete_goal(current_user, goal_id, user_id)
    return {"message": "Goal deleted successfully"}


@api_router.post("/goals/{goal_id}/tasks", response_model=AddTaskResponse, status_code=201)
async def add_task(goal_id: str, payload: TaskCreate, current_user: dict = Depends(get_current_user)):
    result = await service.add_task(current_user, goal_id, payload)
    return AddTaskResponse(task=task_response(result.task), goal=goal_response(result.goal), reopened=result.reopened)


@api_router.get("/goals/{goal_id}/tasks/{task_id}", response_model=TaskResponse)
async def get_task(goal_id: str, task_id: str, user_id: Optional[str] = None, current_user: dict = Depends(get_current_user)):
    return task_response(await service.get_task(current_user, goal_id, task_id, user_id))


@api_router.patch("/goals/{goal_id}/tasks/{task_id}", response_model=TaskResponse)
async def update_task(goal_id: str, task_id: str, payload: TaskUpdate, current_user: dict = Depends(get_current_user)):
    return task_response(await service.update_task(current_user, goal_id, task_id, payload))


@api_router.delete("/goals/{goal_id}/tasks/{task_id}", response_model=RemoveTaskResponse)
async def delete_task(goal_id: str, task_id: str, user_id: Optional[str] = None, current_user: dict = Depends(get_current_user)):
    result = await service.remove_task(current_user, goal_id, task_id, user_id)
    return RemoveTaskResponse(
        task=task_response(result.task),
        goal=goal_response(result.goal),
        goal_completed=result.goal_completed,
        unlocked_achievements=_unlocked_for(result.events, user_id or current_user["id"]),
    )


@api_router.post("/goals/{goal_id}/tasks/{task_id}/complete", response_model=CompleteTaskResponse)
async def complete_task(
    goal_id: str,
    task_id: str,
    payload: Optional[CompleteTaskRequest] = None,
    current_user: dict = Depends(get_current_user),
):
    user_id = payload.user_id if payload else None
    result, user = await service.complete_task(current_user, goal_id, task_id, user_id)
    return CompleteTaskResponse(
        task=task_response(result.task),
        goal=goal_response(result.goal),
        goal_completed=result.goal_completed,
        unlocked_achievements=_unlocked_for(result.events, user["id"]),
        user=user_response(user),
    )


# ============== STATS ROUTES ==============

@api_router.get("/stats/monthly", response_model=MonthlyStatsResponse)
async def get_monthly_stats(user_id: Optional[str] = None, current_user: dict = Depends(get_current_user)):
    return await service.monthly_stats(current_user, user_id)


# ============== LEADERBOARD ROUTES ==============

@api_router.get("/leaderboard/families", response_model=LeaderboardResponse)
async def get_family_rankings(
    period: Period = "weekly",
    limit: int = 10,
    family_id: Optional[str] = None,
    current_user: dict = Depends(get_current_user),
):
    limit = max(1, min(100, limit))
    return await leaderboards.top_n(period, limit, scope="families", entity_id=family_id or current_user.get("family_id"))


@api_router.get("/leaderboard/overview", response_model=LeaderboardOverviewResponse)
async def get_leaderboard_overview(limit: int = 10, current_user: dict = Depends(get_current_user)):
    limit = max(1, min(100, limit))
    return await leaderboards.overview(limit, family_id=current_user.get("family_id"))


@api_router.get("/leaderboard/countdown", response_model=LeaderboardCountdownResponse)
async def get_leaderboard_countdown(current_user: dict = Depends(get_current_user)):
    tz = config.get_leaderboard_tz()
    now = datetime.now(tz)
    ends = {period: period_end(period, now, tz) for period in PERIODS}

    def remaining_seconds(target: datetime) -> int:
        seconds = int((target - now).total_seconds())
        return max(0, seconds)

    return LeaderboardCountdownResponse(
        timezone=config.LEADERBOARD_TZ or "UTC",
        now=now.isoformat(),
        day_end=ends["daily"].isoformat(),
        week_end=ends["weekly"].isoformat(),
        month_end=ends["monthly"].isoformat(),
        year_end=ends["yearly"].isoformat(),
        day_remaining_seconds=remaining_seconds(ends["daily"]),
        week_remaining_seconds=remaining_seconds(ends["weekly"]),
        month_remaining_seconds=remaining_seconds(ends["monthly"]),
        year_remaining_seconds=remaining_seconds(ends["yearly"]),
    )


# ============== INTERNAL ROUTES ==============

@api_router.post("/internal/reset/{period}", response_model=ResetResponse)
async def reset_period(period: str, _: None = Depends(_require_internal_token)):
    # Internal-only endpoint. Do not expose INTERNAL_TOKEN to clients.
    if not is_period(period):
        raise ValidationError(f"Unknown period: {period}")
    ok = await _get_scheduler().reset_period(period)
    return ResetResponse(period=period, ok=ok)


@api_router.post("/internal/reconcile", response_model=ReconcileResponse)
async def reconcile(_: None = Depends(_require_internal_token)):
    return await service.reconcile_pending_events()


# ============== BASIC ROUTES ==============

@api_router.get("/")
async def root():
    return {"message": "FamStars API"}


@api_router.get("/health")
async def health_check():
    return {"status": "healthy"}


# Include the router in the main app
app.include_router(api_router)

cors_origins = [o.strip() for o in config.CORS_ORIGINS.split(',') if o.strip()]
if not cors_origins:
    cors_origins = ['*']
cors_allow_all = len(cors_origins) == 1 and cors_origins[0] == '*'

app.add_middleware(
    CORSMiddleware,
    # Avoid using '*' with credentials. In production, set CORS_ORIGINS to your frontend URL(s).
    allow_credentials=not cors_allow_all,
    allow_origins=cors_origins,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _get_scheduler() -> PeriodResetScheduler:
    # Resets stay available through the internal API when cron jobs are disabled.
    if reset_scheduler is not None:
        return reset_scheduler
    return PeriodResetScheduler(store)
