import json

from famstars.db import FileBackedDB, InMemoryDB, apply_update


async def test_find_one_projection_hides_fields():
    db = InMemoryDB()
    await db.users.insert_one({"id": "u1", "email": "a@b.c", "password": "secret"})
    doc = await db.users.find_one({"id": "u1"}, {"_id": 0, "password": 0})
    assert doc == {"id": "u1", "email": "a@b.c"}


async def test_returned_documents_are_copies():
    db = InMemoryDB()
    await db.users.insert_one({"id": "u1", "goals": []})
    doc = await db.users.find_one({"id": "u1"})
    doc["goals"].append("x")
    assert (await db.users.find_one({"id": "u1"}))["goals"] == []


async def test_ne_guard_on_array_membership():
    db = InMemoryDB()
    await db.users.insert_one({"id": "u1", "stars": 0, "applied_events": ["e1"]})
    update = {"$inc": {"stars": 5}, "$push": {"applied_events": {"$each": ["e2"], "$slice": -2}}}

    skipped = await db.users.update_one({"id": "u1", "applied_events": {"$ne": "e1"}}, update)
    applied = await db.users.update_one({"id": "u1", "applied_events": {"$ne": "e2"}}, update)

    assert skipped.matched_count == 0
    assert applied.matched_count == 1
    doc = await db.users.find_one({"id": "u1"})
    assert doc["stars"] == 5
    assert doc["applied_events"] == ["e1", "e2"]


async def test_pull_by_sub_filter():
    db = InMemoryDB()
    await db.families.insert_one({"id": "f1", "pending_events": [{"id": "a"}, {"id": "b"}, {"id": "c"}]})
    await db.families.update_one({"id": "f1"}, {"$pull": {"pending_events": {"id": {"$in": ["a", "c"]}}}})
    assert (await db.families.find_one({"id": "f1"}))["pending_events"] == [{"id": "b"}]


async def test_exists_and_ne_empty_list():
    db = InMemoryDB()
    await db.users.insert_one({"id": "u1", "pending_events": []})
    await db.users.insert_one({"id": "u2", "pending_events": [{"id": "x"}]})
    await db.users.insert_one({"id": "u3"})
    docs = await db.users.find({"pending_events": {"$exists": True, "$ne": []}}).to_list(None)
    assert [d["id"] for d in docs] == ["u2"]


async def test_update_many_counts_matches():
    db = InMemoryDB()
    for i in range(3):
        await db.families.insert_one({"id": f"f{i}", "stars": {"daily": i + 1}})
    result = await db.families.update_many({}, {"$set": {"stars.daily": 0}})
    assert result.matched_count == 3
    docs = await db.families.find({}).to_list(None)
    assert all(d["stars"]["daily"] == 0 for d in docs)


def test_apply_update_dotted_inc_creates_path():
    doc = {"id": "f1"}
    apply_update(doc, {"$inc": {"stars.weekly": 3, "total_stars": 3}})
    assert doc == {"id": "f1", "stars": {"weekly": 3}, "total_stars": 3}


async def test_file_backed_db_persists(tmp_path):
    path = tmp_path / "db.json"
    db = FileBackedDB(path)
    await db.users.insert_one({"id": "u1", "name": "Alex"})
    await db.users.update_one({"id": "u1"}, {"$set": {"name": "Sam"}})

    assert json.loads(path.read_text())["users"] == [{"id": "u1", "name": "Sam"}]
    reopened = FileBackedDB(path)
    assert (await reopened.users.find_one({"id": "u1"}))["name"] == "Sam"


async def test_list_index_paths():
    db = InMemoryDB()
    await db.users.insert_one({"id": "u1", "goals": [{"id": "g1", "title": "a"}, {"id": "g2", "title": "b"}]})

    hit = await db.users.update_one({"id": "u1", "goals.1.id": "g2"}, {"$set": {"goals.1": {"id": "g2", "title": "B"}}})
    miss = await db.users.update_one({"id": "u1", "goals.2.id": "g2"}, {"$set": {"goals.2.title": "x"}})

    assert (hit.matched_count, miss.matched_count) == (1, 0)
    doc = await db.users.find_one({"id": "u1"})
    assert [g["title"] for g in doc["goals"]] == ["a", "B"]


async def test_sorted_find():
    db = InMemoryDB()
    for stamp in ("2024-03", "2024-01", "2024-02"):
        await db.achievements.insert_one({"id": stamp, "created_at": stamp})
    docs = await db.achievements.find({}).sort("created_at", 1).to_list(None)
    assert [d["id"] for d in docs] == ["2024-01", "2024-02", "2024-03"]
    docs = await db.achievements.find({}).sort("created_at", -1).to_list(2)
    assert [d["id"] for d in docs] == ["2024-03", "2024-02"]


async def test_delete_one():
    db = InMemoryDB()
    await db.families.insert_one({"id": "f1"})
    await db.families.insert_one({"id": "f2"})
    assert (await db.families.delete_one({"id": "f1"})).deleted_count == 1
    assert (await db.families.delete_one({"id": "f1"})).deleted_count == 0
    assert [d["id"] for d in await db.families.find({}).to_list(None)] == ["f2"]
