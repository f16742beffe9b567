from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, EmailStr

PERIODS = ("daily", "weekly", "monthly", "yearly")
ALL_TIME = "all_time"

GoalType = Literal["personal", "family"]
Role = Literal["parent", "child"]
Period = Literal["daily", "weekly", "monthly", "yearly", "all_time"]


# ============== REWARDS ==============

class TaskReward(BaseModel):
    stars: int = Field(2, ge=0)
    coins: int = Field(1, ge=0)


class GoalReward(BaseModel):
    stars: int = Field(10, ge=0)
    coins: int = Field(5, ge=0)
    achievement_id: Optional[str] = None
    achievement_title: Optional[str] = None


# ============== AUTH MODELS ==============

class UserCreate(BaseModel):
    email: EmailStr
    password: str
    name: str
    role: Role = "parent"


class UserLogin(BaseModel):
    email: EmailStr
    password: str


class UserResponse(BaseModel):
    id: str
    email: str
    name: str
    role: str
    family_id: Optional[str] = None
    stars: int = 0
    coins: int = 0
    tasks_completed: int = 0
    rank_in_family: int = 1
    created_at: str


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user: UserResponse


# ============== FAMILY MODELS ==============

class FamilyCreate(BaseModel):
    name: str
    avatar_url: Optional[str] = None


class FamilyUpdate(BaseModel):
    name: Optional[str] = None
    avatar_url: Optional[str] = None


class AddMemberRequest(BaseModel):
    user_id: str


class PeriodCounters(BaseModel):
    daily: int = 0
    weekly: int = 0
    monthly: int = 0
    yearly: int = 0


class FamilyResponse(BaseModel):
    id: str
    name: str
    avatar_url: Optional[str] = None
    total_stars: int = 0
    task_count: int = 0
    stars: PeriodCounters
    task_counts: PeriodCounters
    members: List[UserResponse] = []
    created_at: str


# ============== ACHIEVEMENT MODELS ==============

class AchievementCreate(BaseModel):
    title: str
    description: str
    stars_reward: int = Field(0, ge=0)
    coins_reward: int = Field(0, ge=0)


class AchievementResponse(BaseModel):
    id: str
    title: str
    description: str
    stars_reward: int = 0
    coins_reward: int = 0
    created_at: str


class UnlockedAchievementResponse(BaseModel):
    achievement_id: str
    title: Optional[str] = None
    unlocked_at: str


# ============== GOAL MODELS ==============

class GoalCreate(BaseModel):
    title: str
    description: str
    type: GoalType = "personal"
    user_id: Optional[str] = None
    due_date: Optional[str] = None
    rewards: Optional[GoalReward] = None


class TaskCreate(BaseModel):
    title: str
    description: str
    user_id: Optional[str] = None
    rewards: Optional[TaskReward] = None


class GoalRewardUpdate(BaseModel):
    stars: Optional[int] = Field(None, ge=0)
    coins: Optional[int] = Field(None, ge=0)
    achievement_id: Optional[str] = None


class GoalUpdate(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    due_date: Optional[str] = None
    user_id: Optional[str] = None
    rewards: Optional[GoalRewardUpdate] = None


class TaskUpdate(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    user_id: Optional[str] = None
    rewards: Optional[TaskReward] = None


class CompleteTaskRequest(BaseModel):
    user_id: Optional[str] = None


class TaskResponse(BaseModel):
    id: str
    title: str
    description: str
    rewards: TaskReward
    is_completed: bool = False
    completed_at: Optional[str] = None
    created_at: str


class GoalResponse(BaseModel):
    id: str
    title: str
    description: str
    type: GoalType
    owner_id: str
    tasks: List[TaskResponse] = []
    is_completed: bool = False
    progress: int = 0
    rewards: GoalReward
    due_date: Optional[str] = None
    completed_at: Optional[str] = None
    created_at: str


class CompleteTaskResponse(BaseModel):
    task: TaskResponse
    goal: GoalResponse
    goal_completed: bool
    unlocked_achievements: List[str] = []
    user: UserResponse


class RemoveTaskResponse(BaseModel):
    task: TaskResponse
    goal: GoalResponse
    goal_completed: bool
    unlocked_achievements: List[str] = []


class AddTaskResponse(BaseModel):
    task: TaskResponse
    goal: GoalResponse
    reopened: bool


class FamilySummaryResponse(BaseModel):
    id: str
    name: str
    number_of_members: int
    stars: int


class ProgressStatsResponse(BaseModel):
    period: str
    period_start: str
    period_end: str
    total_tasks: int
    completed_tasks: int
    total_goals: int
    completed_goals: int
    total_achievements: int
    unlocked_achievements: int


class MonthlyStatsResponse(BaseModel):
    month_start: str
    month_end: str
    total_tasks: int
    completed_tasks: int
    total_goals: int
    completed_goals: int


# ============== LEADERBOARD MODELS ==============

class LeaderboardEntry(BaseModel):
    rank: int
    id: str
    name: str
    stars: int
    tasks: int
    avatar_url: Optional[str] = None


class LeaderboardResponse(BaseModel):
    period: Period
    scope: Literal["families", "members"]
    generated_at: str
    limit: int
    entries: List[LeaderboardEntry]
    me: Optional[LeaderboardEntry] = None


class LeaderboardOverviewResponse(BaseModel):
    generated_at: str
    periods: Dict[str, LeaderboardResponse]


class LeaderboardCountdownResponse(BaseModel):
    timezone: str
    now: str
    day_end: str
    week_end: str
    month_end: str
    year_end: str
    day_remaining_seconds: int
    week_remaining_seconds: int
    month_remaining_seconds: int
    year_remaining_seconds: int


class ResetResponse(BaseModel):
    period: str
    ok: bool


class ReconcileResponse(BaseModel):
    checked: int
    replayed: int
    families: List[str] = []


def user_response(doc: Dict[str, Any]) -> UserResponse:
    return UserResponse(
        id=doc["id"],
        email=doc["email"],
        name=doc["name"],
        role=doc.get("role", "parent"),
        family_id=doc.get("family_id"),
        stars=doc.get("stars", 0),
        coins=doc.get("coins", 0),
        tasks_completed=doc.get("tasks_completed", 0),
        rank_in_family=doc.get("rank_in_family", 1),
        created_at=doc["created_at"],
    )
