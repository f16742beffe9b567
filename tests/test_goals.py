import pytest

from famstars.errors import AlreadyCompletedError, NotFoundError, ValidationError
from famstars.goals import GoalProgressEngine, compute_progress

from .conftest import make_family, make_goal, make_task, make_user


@pytest.mark.parametrize("completed,total,expected", [
    (0, 0, 0),
    (0, 3, 0),
    (1, 3, 33),
    (2, 3, 67),
    (3, 3, 100),
    (1, 2, 50),
    (1, 8, 13),
])
def test_compute_progress(completed, total, expected):
    assert compute_progress(completed, total) == expected


class TestCompleteTask:

    def setup_method(self):
        self.engine = GoalProgressEngine()

    def test_three_task_goal(self):
        user = make_user()
        goal = make_goal(tasks=[make_task("t1"), make_task("t2"), make_task("t3")])

        first = self.engine.complete_task(goal, "t1", [user])
        assert goal["progress"] == 33
        assert first.goal_completed is False

        self.engine.complete_task(goal, "t2", [user])
        assert goal["progress"] == 67

        last = self.engine.complete_task(goal, "t3", [user])
        assert last.goal_completed is True
        assert goal["progress"] == 100
        assert goal["is_completed"] is True
        assert goal["completion_count"] == 1
        assert goal["rewarded_members"] == [user["id"]]
        assert (user["stars"], user["coins"], user["tasks_completed"]) == (16, 8, 3)

    def test_already_completed_task_changes_nothing(self):
        user = make_user()
        goal = make_goal(tasks=[make_task("t1"), make_task("t2")])
        self.engine.complete_task(goal, "t1", [user])
        with pytest.raises(AlreadyCompletedError):
            self.engine.complete_task(goal, "t1", [user])
        assert user["stars"] == 2
        assert goal["progress"] == 50

    def test_unknown_task(self):
        with pytest.raises(NotFoundError):
            self.engine.complete_task(make_goal(tasks=[make_task("t1")]), "nope", [make_user()])

    def test_requires_members(self):
        with pytest.raises(ValidationError):
            self.engine.complete_task(make_goal(tasks=[make_task("t1")]), "t1", [])

    def test_goal_reward_is_granted_once(self):
        user = make_user()
        goal = make_goal(tasks=[make_task("t1")])
        result = self.engine.complete_task(goal, "t1", [user])
        assert [e["kind"] for e in result.events] == ["task_reward", "goal_reward"]
        assert user["stars"] == 12
        assert self.engine.completes_goal(goal, "t1") is False

    def test_family_goal_rewards_every_member(self):
        family = make_family()
        members = [make_user(name=n, family_id=family["id"]) for n in ("Mum", "Kid")]
        goal = make_goal(type="family", tasks=[make_task("t1")])
        self.engine.complete_task(goal, "t1", members, family)

        assert [m["stars"] for m in members] == [12, 12]
        assert family["total_stars"] == 24
        assert family["task_count"] == 1
        assert family["stars"]["monthly"] == 24

    def test_achievement_unlock(self):
        user = make_user()
        goal = make_goal(tasks=[make_task("t1")])
        achievement = {"achievement_id": "ach1", "title": "Finisher"}
        result = self.engine.complete_task(goal, "t1", [user], achievement=achievement)
        assert result.unlocked == [user["id"]]
        assert "ach1" in user["achievements"]


class TestAddTask:

    def setup_method(self):
        self.engine = GoalProgressEngine()

    def test_add_task_to_open_goal(self):
        goal = make_goal(tasks=[make_task("t1")])
        result = self.engine.add_task(goal, make_task("t2"), [make_user()])
        assert result.reopened is False
        assert result.events == []
        assert goal["progress"] == 0
        assert len(goal["tasks"]) == 2

    def test_duplicate_task_id(self):
        goal = make_goal(tasks=[make_task("t1")])
        with pytest.raises(ValidationError):
            self.engine.add_task(goal, make_task("t1"), [make_user()])

    def test_missing_task_id(self):
        task = make_task("t1")
        task["id"] = ""
        with pytest.raises(ValidationError):
            self.engine.add_task(make_goal(), task, [make_user()])

    def test_reopen_reclaims_and_recompletes(self):
        family = make_family()
        user = make_user(family_id=family["id"])
        goal = make_goal(tasks=[make_task("t1")])
        self.engine.complete_task(goal, "t1", [user], family)
        assert user["stars"] == 12
        assert family["stars"]["daily"] == 12

        result = self.engine.add_task(goal, make_task("t2"), [user], family)
        assert result.reopened is True
        assert goal["is_completed"] is False
        assert goal["progress"] == 50
        assert goal["rewarded_members"] == []
        assert (user["stars"], user["coins"]) == (2, 1)
        assert family["total_stars"] == 2
        assert family["stars"]["daily"] == 12

        again = self.engine.complete_task(goal, "t2", [user], family)
        assert again.goal_completed is True
        assert goal["completion_count"] == 2
        assert (user["stars"], user["coins"], user["tasks_completed"]) == (14, 7, 2)

    def test_reopen_only_reclaims_rewarded_members(self):
        family = make_family()
        early = make_user(name="Early", family_id=family["id"])
        goal = make_goal(type="family", tasks=[make_task("t1")])
        self.engine.complete_task(goal, "t1", [early], family)

        late = make_user(name="Late", family_id=family["id"])
        self.engine.add_task(goal, make_task("t2"), [early, late], family)
        assert early["stars"] == 2
        assert late["stars"] == 0

    def test_second_add_does_not_reclaim_again(self):
        user = make_user()
        goal = make_goal(tasks=[make_task("t1")])
        self.engine.complete_task(goal, "t1", [user])
        self.engine.add_task(goal, make_task("t2"), [user])
        result = self.engine.add_task(goal, make_task("t3"), [user])

        assert result.reopened is False
        assert result.events == []
        assert user["stars"] == 2
        assert goal["progress"] == 33


class TestRemoveTask:

    def setup_method(self):
        self.engine = GoalProgressEngine()

    def test_remove_open_task(self):
        user = make_user()
        goal = make_goal(tasks=[make_task("t1"), make_task("t2"), make_task("t3")])
        self.engine.complete_task(goal, "t1", [user])

        result = self.engine.remove_task(goal, "t2", [user])
        assert result.goal_completed is False
        assert result.events == []
        assert goal["progress"] == 50
        assert [t["id"] for t in goal["tasks"]] == ["t1", "t3"]

    def test_removing_last_open_task_completes_goal(self):
        family = make_family()
        user = make_user(family_id=family["id"])
        goal = make_goal(tasks=[make_task("t1"), make_task("t2")])
        self.engine.complete_task(goal, "t1", [user], family)
        assert self.engine.completes_after_removal(goal, "t2") is True

        result = self.engine.remove_task(goal, "t2", [user], family)
        assert result.goal_completed is True
        assert goal["progress"] == 100
        assert goal["completion_count"] == 1
        assert goal["rewarded_members"] == [user["id"]]
        assert (user["stars"], user["coins"], user["tasks_completed"]) == (12, 6, 1)
        assert family["total_stars"] == 12

    def test_removing_only_open_task_leaves_empty_goal(self):
        goal = make_goal(tasks=[make_task("t1")])
        assert self.engine.completes_after_removal(goal, "t1") is False
        result = self.engine.remove_task(goal, "t1", [make_user()])
        assert result.goal_completed is False
        assert goal["tasks"] == []
        assert goal["progress"] == 0

    def test_completed_goal_keeps_one_task(self):
        user = make_user()
        goal = make_goal(tasks=[make_task("t1")])
        self.engine.complete_task(goal, "t1", [user])
        with pytest.raises(ValidationError):
            self.engine.remove_task(goal, "t1", [user])
        assert user["stars"] == 12

    def test_unknown_task(self):
        with pytest.raises(NotFoundError):
            self.engine.remove_task(make_goal(), "nope", [make_user()])

    def test_completion_by_removal_needs_members(self):
        goal = make_goal(tasks=[make_task("t1"), make_task("t2")])
        goal["tasks"][0]["is_completed"] = True
        with pytest.raises(ValidationError):
            self.engine.remove_task(goal, "t2", [])
        assert len(goal["tasks"]) == 2


class TestUpdates:

    def setup_method(self):
        self.engine = GoalProgressEngine()

    def test_update_task_fields(self):
        goal = make_goal(tasks=[make_task("t1")])
        task = self.engine.update_task(goal, "t1", {"title": "Dishes", "description": "", "rewards": {"stars": 7}})
        assert task["title"] == "Dishes"
        assert task["description"] == ""
        assert task["rewards"] == {"stars": 7, "coins": 1}

    def test_invalid_task_reward(self):
        goal = make_goal(tasks=[make_task("t1")])
        with pytest.raises(ValidationError):
            self.engine.update_task(goal, "t1", {"rewards": {"stars": -1}})

    def test_update_goal_merges_rewards(self):
        goal = make_goal()
        self.engine.update_goal(goal, {"title": "New", "rewards": {"coins": 9}})
        assert goal["title"] == "New"
        assert (goal["rewards"]["stars"], goal["rewards"]["coins"]) == (10, 9)

    def test_completed_goal_rewards_locked(self):
        user = make_user()
        goal = make_goal(tasks=[make_task("t1")])
        self.engine.complete_task(goal, "t1", [user])
        with pytest.raises(ValidationError):
            self.engine.update_goal(goal, {"rewards": {"stars": 1}})
        self.engine.update_goal(goal, {"title": "Renamed"})
        assert goal["title"] == "Renamed"
