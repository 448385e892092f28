import asyncio
import inspect
from datetime import date, timedelta

import httpx
import pytest
from fastapi.testclient import TestClient
from sqlmodel import Session, delete

from app import app, get_data, get_sheets_client, get_store, sync_from_sheets
from db import create_db_and_tables, engine, get_session
from kv import KVStore, StoreError
from models import KVEntry
from sheets import SheetsClient
from sync import InvalidSyncMode, run_sync

MEDITATION_CSV = """隊伍,姓名,總計,12/1,12/2,12/3
Team A,Alice,999,30,,15
Team A,Bob,0,0,20,0
Team B,Carol,5,"10",abc,5
,NoTeam,1,1,1,1
"""

PRACTICE_CSV = """點數,,,10,0,20
隊伍,姓名,總計,12/1,12/2,12/3
Team A,Alice,,1,1,1
Team B,Carol,,0,2,1
"""

CLASS_CSV = """隊伍,姓名,級別,總計,12/1,12/2,12/3
Team A,Alice,初級,3,1,1,1
Team B,Dave,中級,1,,1,
"""

FORM_CSV = """時間戳記,姓名,日期,分鐘,時段,心得,分享
2025/12/02 下午 8:15:00,Alice,2025/12/02,20,晚上,"Calm, focused",是
2025/12/01 上午 7:00:00,Bob,2025/12/01,15,早上,,否
2025/12/03 上午 6:00:00,Carol,2025/12/03,0,早上,,是
bad timestamp,Dave,2025/12/01,10,早上,,是
"""

SHEET_NAMES = {"meditation": "med", "practice": "prac", "class": "cls", "form": "form"}


@pytest.fixture(scope="function")
def sheets():
    """CSV text served per sheet name; a missing entry answers 500."""
    return {"med": MEDITATION_CSV, "prac": PRACTICE_CSV, "cls": CLASS_CSV, "form": FORM_CSV}


@pytest.fixture(scope="function")
def sheets_client(sheets):
    def handler(request):
        text = sheets.get(request.url.params["sheet"])
        if text is None:
            return httpx.Response(500, text="backend error")
        return httpx.Response(200, text=text)

    return SheetsClient(sheet_names=SHEET_NAMES, transport=httpx.MockTransport(handler))


@pytest.fixture(scope="function")
def test_session():
    """Create a test database session."""
    create_db_and_tables()
    with Session(engine) as session:
        session.exec(delete(KVEntry))
        session.commit()
        yield session
        # Clean up all test data after test
        session.exec(delete(KVEntry))
        session.commit()


@pytest.fixture(scope="function")
def client(test_session, sheets_client):
    """Create a test client with dependency overrides."""

    def get_test_session():
        yield test_session

    app.dependency_overrides[get_session] = get_test_session
    app.dependency_overrides[get_sheets_client] = lambda: sheets_client
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def submit(client, **overrides):
    payload = {
        "name": "Alice",
        "date": "2025-12-01",
        "duration": 20,
        "timeOfDay": "早上",
        "thoughts": "",
        "shareConsent": "是",
        "team": "Team A",
    }
    payload.update(overrides)
    return client.post("/meditation/submit", json=payload)


def test_root(client):
    response = client.get("/")
    assert response.status_code == 200
    assert response.json()["message"] == "Activity Leaderboard API"


def test_sync_merge_stats(client):
    """Test a merge sync from all four sheets."""
    response = client.post("/admin/sync", json={"mode": "merge"})
    assert response.status_code == 200
    data = response.json()

    assert data["success"] is True
    assert data["mode"] == "merge"
    assert data["stats"] == {
        "meditation": 3,
        "practice": 2,
        "class": 2,
        "submissions": 3,
        "activities": 12,
        "recentActivity": 3,
    }
    assert data["sources"] == {"meditation": "ok", "practice": "ok", "class": "ok", "form": "ok"}
    assert data["verified"] == 3


def test_sync_without_body_defaults_to_merge(client):
    response = client.post("/admin/sync")
    assert response.status_code == 200
    assert response.json()["mode"] == "merge"


def test_sync_is_idempotent(client):
    first = client.post("/admin/sync", json={"mode": "merge"}).json()
    board_before = client.get("/leaderboard").json()

    second = client.post("/admin/sync", json={"mode": "merge"}).json()
    board_after = client.get("/leaderboard").json()

    assert second["stats"] == first["stats"]
    assert [(m["name"], m["total"]) for m in board_after["members"]] == [
        (m["name"], m["total"]) for m in board_before["members"]
    ]


def test_sync_invalid_mode(client):
    response = client.post("/admin/sync", json={"mode": "replace"})
    assert response.status_code == 422


def test_run_sync_rejects_mode_before_fetching(test_session):
    class ExplodingClient:
        async def fetch(self):
            raise AssertionError("fetch should not be called")

    with pytest.raises(InvalidSyncMode):
        asyncio.run(run_sync(KVStore(test_session), "bogus", ExplodingClient()))


def test_merge_keeps_data_when_source_unreachable(client, sheets):
    client.post("/admin/sync", json={"mode": "merge"})
    del sheets["med"]

    response = client.post("/admin/sync", json={"mode": "merge"})
    assert response.status_code == 200
    data = response.json()
    assert data["sources"]["meditation"] == "unreachable"
    assert data["stats"]["meditation"] == 3

    board = client.get("/leaderboard").json()
    alice = next(m for m in board["members"] if m["name"] == "Alice")
    assert alice["meditationTotal"] == 45


def test_merge_keeps_admin_activity(client):
    client.post(
        "/admin/activities",
        json={"type": "practice", "team": "Team B", "member": "Erin", "date": "12/2", "value": 10},
    )
    client.post("/admin/sync", json={"mode": "merge"})

    data = client.get("/admin/activities", params={"source": "admin"}).json()
    assert data["count"] == 1
    assert data["totalSheets"] == 12


def test_overwrite_removes_manual_state(client):
    client.post("/admin/members", json={"name": "Zed", "team": "Team Z"})
    client.post(
        "/admin/activities",
        json={"type": "meditation", "team": "Team Z", "member": "Zed", "date": "12/1", "value": 30},
    )

    response = client.post("/admin/sync", json={"mode": "overwrite"})
    assert response.status_code == 200
    assert response.json()["mode"] == "overwrite"

    assert client.get("/admin/members").json()["count"] == 0
    names = [m["name"] for m in client.get("/leaderboard").json()["members"]]
    assert "Zed" not in names
    assert client.get("/admin/cache").json()["lastSyncMode"] == "overwrite"


def test_sync_storage_failure(client, test_session):
    class BrokenStore(KVStore):
        def set_permanent(self, key, value):
            raise StoreError(key, "disk full")

    app.dependency_overrides[get_store] = lambda: BrokenStore(test_session)

    response = client.post("/admin/sync", json={"mode": "merge"})
    assert response.status_code == 500
    detail = response.json()["detail"]
    assert detail["error"] == "Sync failed"
    assert detail["stage"] == "storage"


def test_leaderboard_totals(client):
    client.post("/admin/sync", json={"mode": "merge"})

    response = client.get("/leaderboard")
    assert response.status_code == 200
    data = response.json()

    totals = [(m["name"], m["total"]) for m in data["members"]]
    assert totals == [("Alice", 225), ("Dave", 50), ("Carol", 35), ("Bob", 20)]

    alice = data["members"][0]
    assert alice["classTotal"] == 150
    assert alice["classCount"] == 3
    assert alice["practiceTotal"] == 30

    assert data["totalMinutes"] == 80
    assert data["totalSessions"] == 5
    assert data["teams"][0] == {
        "team": "Team A",
        "members": 2,
        "meditationTotal": 65,
        "practiceTotal": 30,
        "classTotal": 150,
        "total": 245,
    }


def test_data_refreshes_then_serves_cache(client):
    first = client.get("/data")
    assert first.status_code == 200
    data = first.json()
    assert data["cached"] is False
    assert len(data["meditation"]["members"]) == 3
    assert data["class"]["members"][0]["points"] == 150
    assert [s["name"] for s in data["recentActivity"]] == ["Alice", "Bob", "Dave"]
    assert {m["name"] for m in data["allMembers"]} == {"Alice", "Bob", "Carol", "Dave"}

    second = client.get("/data").json()
    assert second["cached"] is True
    assert second["syncedAt"] == data["syncedAt"]


def test_cache_status_and_invalidate(client):
    assert client.get("/admin/cache").json() == {
        "hasCachedData": False,
        "lastSyncedAt": None,
        "cacheAgeSeconds": None,
        "lastSyncMode": None,
    }

    client.post("/admin/sync")
    status = client.get("/admin/cache").json()
    assert status["hasCachedData"] is True
    assert status["lastSyncMode"] == "merge"

    response = client.post("/admin/invalidate")
    assert response.status_code == 200
    assert client.get("/admin/cache").json()["hasCachedData"] is False
    assert client.get("/data").json()["cached"] is False


def test_submit_accumulates_minutes(client):
    """Test that two submissions on the same day add up."""
    first = submit(client, duration=20)
    assert first.status_code == 200
    assert first.json()["record"]["total"] == 20

    second = submit(client, duration=40, thoughts="steady")
    assert second.status_code == 200
    assert second.json()["record"]["total"] == 60

    data = client.get("/data").json()
    alice = next(m for m in data["meditation"]["members"] if m["name"] == "Alice")
    assert alice["total"] == sum(alice["daily"].values())

    board = client.get("/leaderboard").json()
    alice_board = next(m for m in board["members"] if m["name"] == "Alice")
    assert alice_board["meditationTotal"] == 45 + 60
    assert board["reflections"][0]["thoughts"] == "steady"


def test_submit_resolves_team_from_synced_table(client):
    client.post("/admin/sync")

    response = submit(client, team=None, duration=10)
    assert response.status_code == 200
    record = response.json()["record"]
    assert record["team"] == "Team A"
    assert record["total"] == 55


def test_submit_uses_sheet_date_labels(client):
    client.post("/admin/sync")

    submit(client, date="2025-12-01", duration=10)

    meditation = client.get("/data").json()["meditation"]
    assert meditation["dates"] == ["12/1", "12/2", "12/3"]
    alice = next(m for m in meditation["members"] if m["name"] == "Alice")
    assert alice["daily"]["12/1"] == 40


def test_sync_routes_run_in_threadpool():
    assert not inspect.iscoroutinefunction(sync_from_sheets)
    assert not inspect.iscoroutinefunction(get_data)


def test_submit_recorded_as_direct_submission(client):
    submit(client, name="Newcomer", team="Team C", duration=15)

    data = client.get("/data").json()
    direct = [s for s in data["recentActivity"] if s["source"] == "direct"]
    assert len(direct) == 1
    assert direct[0]["name"] == "Newcomer"
    assert direct[0]["minutes"] == 15


@pytest.mark.parametrize(
    "overrides",
    [
        {"duration": 0},
        {"duration": 481},
        {"date": "2025/12/01"},
        {"date": (date.today() + timedelta(days=2)).isoformat()},
        {"name": "  "},
        {"shareConsent": ""},
        {"timeOfDay": ""},
    ],
)
def test_submit_validation(client, overrides):
    response = submit(client, **overrides)
    assert response.status_code == 422


def test_activity_crud(client):
    response = client.post(
        "/admin/activities",
        json={"type": "class", "team": "Team A", "member": "Eve", "date": "2025/12/04"},
    )
    assert response.status_code == 201
    activity = response.json()["activity"]
    assert activity["value"] == 1
    assert activity["source"] == "admin"

    board = client.get("/leaderboard").json()
    eve = next(m for m in board["members"] if m["name"] == "Eve")
    assert eve["classTotal"] == 50

    listed = client.get("/admin/activities", params={"member": "Eve"}).json()
    assert listed["count"] == 1
    assert listed["totalManual"] == 1

    response = client.delete(f"/admin/activities/{activity['id']}")
    assert response.status_code == 200
    assert response.json()["deleted"]["id"] == activity["id"]

    response = client.delete(f"/admin/activities/{activity['id']}")
    assert response.status_code == 404


@pytest.mark.parametrize(
    "payload",
    [
        {"type": "yoga", "team": "Team A", "member": "Eve", "date": "12/1"},
        {"type": "meditation", "team": "Team A", "member": "Eve", "date": "12/1", "value": -5},
        {"type": "meditation", "team": " ", "member": "Eve", "date": "12/1"},
    ],
)
def test_activity_validation(client, payload):
    response = client.post("/admin/activities", json=payload)
    assert response.status_code == 422


def test_activities_sorted_by_date_desc(client):
    for day in ("2025/12/01", "2025/12/03", "2025/12/02"):
        client.post(
            "/admin/activities",
            json={"type": "meditation", "team": "Team A", "member": "Eve", "date": day, "value": 5},
        )

    dates = [a["date"] for a in client.get("/admin/activities").json()["activities"]]
    assert dates == ["2025/12/03", "2025/12/02", "2025/12/01"]


def test_member_crud(client):
    response = client.post("/admin/members", json={"name": "Frank", "team": "Team B"})
    assert response.status_code == 201
    member = response.json()["member"]

    duplicate = client.post("/admin/members", json={"name": "Frank", "team": "Team B"})
    assert duplicate.status_code == 409

    response = client.put("/admin/members", json={"id": member["id"], "practiceTotal": 40})
    assert response.status_code == 200
    assert response.json()["member"]["practiceTotal"] == 40
    assert response.json()["member"]["name"] == "Frank"

    board = client.get("/leaderboard").json()
    frank = next(m for m in board["members"] if m["name"] == "Frank")
    assert frank["total"] == 40

    assert client.get("/admin/members", params={"team": "Team B"}).json()["count"] == 1
    assert client.get("/admin/members", params={"team": "Team A"}).json()["count"] == 0

    assert client.delete(f"/admin/members/{member['id']}").status_code == 200
    assert client.delete(f"/admin/members/{member['id']}").status_code == 404
    assert client.put("/admin/members", json={"id": member["id"]}).status_code == 404


def test_manual_member_adopts_teamless_activity(client):
    client.post(
        "/admin/activities",
        json={"type": "meditation", "team": "Unknown", "member": "Gina", "date": "12/1", "value": 25},
    )
    client.post("/admin/members", json={"name": "Gina", "team": "Team C"})

    board = client.get("/leaderboard").json()
    gina = [m for m in board["members"] if m["name"] == "Gina"]
    assert len(gina) == 1
    assert gina[0]["team"] == "Team C"
    assert gina[0]["meditationTotal"] == 25


def test_teams_defaults_and_create(client):
    data = client.get("/admin/teams").json()
    assert data["count"] == 4
    assert len(data["colors"]) == 8

    response = client.post("/admin/teams", json={"name": "New Team", "shortName": "New"})
    assert response.status_code == 201
    team = response.json()["team"]
    assert team["color"] == data["colors"][4]

    duplicate = client.post("/admin/teams", json={"name": "Other", "shortName": "New"})
    assert duplicate.status_code == 400

    assert client.get("/admin/teams").json()["count"] == 5


def test_team_rename_carries_to_members(client):
    team = client.post("/admin/teams", json={"name": "Old Name", "shortName": "Old"}).json()["team"]
    client.post("/admin/members", json={"name": "Hank", "team": "Old Name"})

    response = client.put(f"/admin/teams/{team['id']}", json={"name": "New Name"})
    assert response.status_code == 200
    assert response.json()["team"]["shortName"] == "Old"

    members = client.get("/admin/members").json()["members"]
    assert members[0]["team"] == "New Name"

    assert client.put("/admin/teams/missing", json={"name": "x"}).status_code == 404


def test_team_delete_blocked_by_members(client):
    teams = client.get("/admin/teams").json()["teams"]
    submit(client, team=teams[0]["name"])

    response = client.delete(f"/admin/teams/{teams[0]['id']}")
    assert response.status_code == 400
    assert response.json()["detail"]["members"] == 1

    response = client.delete(f"/admin/teams/{teams[1]['id']}")
    assert response.status_code == 200
    assert client.get("/admin/teams").json()["count"] == 3

    assert client.delete("/admin/teams/missing").status_code == 404


@pytest.mark.parametrize(
    "sheet, text",
    [
        ("prac", "點數,,,10\n隊伍,姓名,總計,12/1\n明緯家中隊,Pat,,1\n"),
        ("cls", "隊伍,姓名,級別,總計,12/1\n明緯家中隊,Cal,初級,1,1\n"),
    ],
)
def test_team_delete_blocked_by_practice_or_class_members(client, sheets, sheet, text):
    """Test that members outside the meditation table also keep their team."""
    sheets[sheet] = text
    client.post("/admin/sync", json={"mode": "overwrite"})

    team = next(t for t in client.get("/admin/teams").json()["teams"] if t["name"] == "明緯家中隊")
    response = client.delete(f"/admin/teams/{team['id']}")

    assert response.status_code == 400
    assert response.json()["detail"]["members"] == 1
    assert client.get("/admin/teams").json()["count"] == 4


def test_settings(client):
    assert client.get("/admin/settings").json()["maintenanceMode"] is False

    response = client.post("/admin/settings", json={"maintenanceMode": True, "announcement": "Hi"})
    assert response.status_code == 200

    settings = client.get("/admin/settings").json()
    assert settings["maintenanceMode"] is True
    assert settings["announcement"] == "Hi"
    assert settings["maintenanceMessage"]
