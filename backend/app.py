import asyncio
import logging
import os
import uuid
from contextlib import asynccontextmanager
from datetime import UTC, datetime

from fastapi import Depends, FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from sqlmodel import Session

from aggregator import (
    aggregate,
    build_member_listing,
    meditation_summary,
    recent_activity,
    team_rollups,
)
from db import create_db_and_tables, get_session, purge_expired_entries
from kv import (
    ACTIVITIES_KEY,
    MEMBERS_KEY,
    META_KEY,
    SETTINGS_KEY,
    SYNCED_MEMBERS_KEY,
    TEAMS_KEY,
    ConflictError,
    KVStore,
)
from records import (
    ACTIVITY_TYPES,
    ActivityEvent,
    AppSettings,
    ManualMember,
    Team,
    dump_records,
    load_record,
    load_records,
    utcnow,
)
from schemas import (
    ActivityCreate,
    CacheStatusResponse,
    MeditationSubmit,
    MemberCreate,
    MemberUpdate,
    SettingsUpdate,
    SubmitResponse,
    SyncRequest,
    SyncResponse,
    TeamCreate,
    TeamUpdate,
)
from sheets import SheetsClient
from sync import (
    SyncFailed,
    apply_direct_submission,
    read_activities,
    read_manual_members,
    read_meta,
    read_submissions,
    read_tables,
    run_sync,
)

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# How old sync metadata may get before the read path refreshes from the sheets
CACHE_MAX_AGE_SECONDS = int(os.getenv("CACHE_MAX_AGE_SECONDS", "300"))

RECENT_LIMIT = 50
ACTIVITY_LIST_LIMIT = 100

DEFAULT_TEAMS = [
    {"id": "t1", "name": "晨絜家中隊", "shortName": "晨絜", "color": "#8b5cf6"},
    {"id": "t2", "name": "明緯家中隊", "shortName": "明緯", "color": "#10b981"},
    {"id": "t3", "name": "敬涵家中隊", "shortName": "敬涵", "color": "#f59e0b"},
    {"id": "t4", "name": "宗翰家中隊", "shortName": "宗翰", "color": "#ef4444"},
]

TEAM_COLORS = [
    "#8b5cf6",  # Purple
    "#10b981",  # Green
    "#f59e0b",  # Amber
    "#ef4444",  # Red
    "#3b82f6",  # Blue
    "#ec4899",  # Pink
    "#06b6d4",  # Cyan
    "#84cc16",  # Lime
]


def generate_id(prefix: str = "") -> str:
    return prefix + uuid.uuid4().hex[:10]


def get_store(session: Session = Depends(get_session)) -> KVStore:
    return KVStore(session)


def get_sheets_client() -> SheetsClient:
    return SheetsClient()


def cache_age_seconds(synced_at: datetime | None) -> int | None:
    if synced_at is None:
        return None
    return int((datetime.now(UTC) - synced_at).total_seconds())


def get_teams(store: KVStore) -> list[dict]:
    """Get all teams, writing the defaults on first read."""
    teams = store.get(TEAMS_KEY)
    if not teams:
        teams = [dict(t) for t in DEFAULT_TEAMS]
        store.set_permanent(TEAMS_KEY, teams)
        logger.info("Initialized default teams")
    return teams


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize database on startup."""
    create_db_and_tables()
    purge_expired_entries()
    logger.info("Database initialized")
    yield


# Create FastAPI app
app = FastAPI(title="Activity Leaderboard API", version="1.0.0", lifespan=lifespan)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.post("/admin/sync", response_model=SyncResponse)
def sync_from_sheets(
    request: SyncRequest | None = None,
    store: KVStore = Depends(get_store),
    client: SheetsClient = Depends(get_sheets_client),
):
    """Pull the sheets and merge them into (or overwrite) the stored data."""
    mode = request.mode if request else "merge"
    try:
        summary = asyncio.run(run_sync(store, mode, client))
        return summary.as_dict()
    except SyncFailed as e:
        logger.error(f"Sync error: {str(e)}")
        raise HTTPException(
            status_code=500,
            detail={"error": "Sync failed", "stage": e.stage, "details": e.message},
        ) from e


@app.get("/data")
def get_data(
    store: KVStore = Depends(get_store),
    client: SheetsClient = Depends(get_sheets_client),
):
    """Per-type tables and recent submissions, refreshed from the sheets when stale."""
    try:
        meta = read_meta(store)
        age = cache_age_seconds(meta.synced_at if meta else None)
        cached = age is not None and age < CACHE_MAX_AGE_SECONDS

        if not cached:
            try:
                asyncio.run(run_sync(store, "merge", client))
                age = 0
            except SyncFailed as e:
                logger.warning(f"Refresh failed, serving stored data: {str(e)}")
            meta = read_meta(store)

        meditation, practice, class_table = read_tables(store)
        submissions = read_submissions(store)
        listing = build_member_listing(
            store.get(SYNCED_MEMBERS_KEY, []),
            aggregate(read_activities(store)),
            read_manual_members(store),
        )

        return {
            "meditation": meditation.dump(),
            "practice": practice.dump(),
            "class": class_table.dump(),
            "recentActivity": dump_records(submissions[:RECENT_LIMIT]),
            "syncedAt": meta.synced_at.isoformat() if meta else None,
            "cached": cached,
            "cacheAgeSeconds": age,
            "allMembers": [{"name": m.name, "team": m.team} for m in listing],
        }
    except Exception as e:
        logger.error(f"Data API error: {str(e)}")
        raise HTTPException(status_code=500, detail="Failed to fetch data") from e


@app.get("/leaderboard")
def get_leaderboard(store: KVStore = Depends(get_store)):
    """Live per-member scores from the unified activity log, plus team rollups."""
    try:
        events = read_activities(store)
        synced = store.get(SYNCED_MEMBERS_KEY, [])
        manual = read_manual_members(store)

        team_lookup = {m["name"]: m["team"] for m in synced if m.get("name") and m.get("team")}
        team_lookup.update({m.name: m.team for m in manual})

        listing = build_member_listing(synced, aggregate(events, team_lookup), manual)
        total_minutes, total_sessions = meditation_summary(events)

        return {
            "members": [m.as_dict() for m in listing],
            "teams": team_rollups(listing),
            "totalMinutes": total_minutes,
            "totalSessions": total_sessions,
            "reflections": recent_activity(events, limit=RECENT_LIMIT),
        }
    except Exception as e:
        logger.error(f"Leaderboard error: {str(e)}")
        raise HTTPException(status_code=500, detail="Failed to build leaderboard") from e


@app.get("/admin/cache", response_model=CacheStatusResponse)
def get_cache_status(store: KVStore = Depends(get_store)):
    """Report whether synced data is cached and how old it is."""
    meta = read_meta(store)
    if meta is None:
        return CacheStatusResponse(has_cached_data=False)
    return CacheStatusResponse(
        has_cached_data=True,
        last_synced_at=meta.synced_at.isoformat(),
        cache_age_seconds=cache_age_seconds(meta.synced_at),
        last_sync_mode=meta.last_sync_mode,
    )


@app.post("/admin/invalidate")
def invalidate_cache(store: KVStore = Depends(get_store)):
    """Drop the sync metadata so the next read refreshes from the sheets."""
    try:
        store.delete(META_KEY)
        return {
            "success": True,
            "message": "Cache invalidated. Next request will fetch fresh data from Google Sheets.",
            "invalidatedAt": utcnow().isoformat(),
        }
    except Exception as e:
        logger.error(f"Cache invalidation error: {str(e)}")
        raise HTTPException(status_code=500, detail="Failed to invalidate cache") from e


@app.get("/admin/activities")
def list_activities(
    type: str = Query(None, description="Activity type filter"),
    team: str = Query(None, description="Team name filter"),
    member: str = Query(None, description="Member name filter"),
    date: str = Query(None, description="Activity date filter"),
    source: str = Query(None, description="Source filter (admin, sheets, form)"),
    store: KVStore = Depends(get_store),
):
    """List the unified activity log, newest date first."""
    activities = read_activities(store)
    filtered = activities

    if type and type in ACTIVITY_TYPES:
        filtered = [a for a in filtered if a.type == type]
    if team:
        filtered = [a for a in filtered if a.team == team]
    if member:
        filtered = [a for a in filtered if a.member == member]
    if date:
        filtered = [a for a in filtered if a.date == date]
    if source:
        filtered = [a for a in filtered if a.source == source]

    # Two stable sorts: type ascending, then date descending
    filtered = sorted(filtered, key=lambda a: a.type)
    filtered = sorted(filtered, key=lambda a: a.date, reverse=True)

    return {
        "count": len(filtered[:ACTIVITY_LIST_LIMIT]),
        "totalSheets": sum(1 for a in activities if a.source == "sheets"),
        "totalManual": sum(1 for a in activities if a.source != "sheets"),
        "activities": dump_records(filtered[:ACTIVITY_LIST_LIMIT]),
    }


@app.post("/admin/activities", status_code=201)
def add_activity(request: ActivityCreate, store: KVStore = Depends(get_store)):
    """Add an admin-entered activity to the unified log."""
    activity = ActivityEvent(
        id=generate_id("a_"),
        type=request.type,
        team=request.team,
        member=request.member,
        date=request.date,
        value=request.value,
        notes=request.notes,
        source="admin",
    )
    try:
        store.update(
            ACTIVITIES_KEY,
            lambda activities: activities + [activity.dump()],
        )
        logger.info(f"Added {activity.type} activity {activity.id} for {activity.member}")
        return {
            "success": True,
            "activity": activity.dump(),
            "message": "Activity added successfully",
        }
    except ConflictError as e:
        raise HTTPException(status_code=409, detail=str(e)) from e
    except Exception as e:
        logger.error(f"Add activity error: {str(e)}")
        raise HTTPException(status_code=500, detail="Failed to add activity") from e


@app.delete("/admin/activities/{activity_id}")
def delete_activity(activity_id: str, store: KVStore = Depends(get_store)):
    """Delete one activity by id."""
    deleted = {}

    def remove(activities):
        remaining = [a for a in activities if a.get("id") != activity_id]
        if len(remaining) == len(activities):
            raise HTTPException(status_code=404, detail="Activity not found")
        deleted.update(next(a for a in activities if a.get("id") == activity_id))
        return remaining

    try:
        store.update(ACTIVITIES_KEY, remove)
        logger.info(f"Deleted activity {activity_id}")
        return {"success": True, "deleted": deleted, "message": "Activity deleted successfully"}
    except HTTPException:
        raise
    except ConflictError as e:
        raise HTTPException(status_code=409, detail=str(e)) from e
    except Exception as e:
        logger.error(f"Delete activity error: {str(e)}")
        raise HTTPException(status_code=500, detail="Failed to delete activity") from e


@app.get("/admin/members")
def list_members(
    team: str = Query(None, description="Team name filter"),
    store: KVStore = Depends(get_store),
):
    """Get manually added members."""
    members = read_manual_members(store)
    if team:
        members = [m for m in members if m.team == team]
    return {"count": len(members), "members": dump_records(members)}


@app.post("/admin/members", status_code=201)
def add_member(request: MemberCreate, store: KVStore = Depends(get_store)):
    """Add a member by hand."""
    member = ManualMember(
        id=generate_id("m_"),
        name=request.name,
        team=request.team,
        meditation_total=request.meditation_total,
        practice_total=request.practice_total,
        class_total=request.class_total,
    )

    def append(members):
        if any(m.get("name") == member.name and m.get("team") == member.team for m in members):
            raise HTTPException(status_code=409, detail="Member already exists in this team")
        return members + [member.dump()]

    try:
        store.update(MEMBERS_KEY, append)
        logger.info(f"Added member {member.name} ({member.team})")
        return {"success": True, "member": member.dump(), "message": "Member added successfully"}
    except HTTPException:
        raise
    except ConflictError as e:
        raise HTTPException(status_code=409, detail=str(e)) from e
    except Exception as e:
        logger.error(f"Add member error: {str(e)}")
        raise HTTPException(status_code=500, detail="Failed to add member") from e


@app.put("/admin/members")
def update_member(request: MemberUpdate, store: KVStore = Depends(get_store)):
    """Update a manual member's name, team or score overrides."""
    updated = {}

    def apply(members):
        for index, raw in enumerate(members):
            if raw.get("id") != request.id:
                continue
            member = ManualMember.model_validate(raw)
            changes = request.model_dump(exclude={"id"}, exclude_none=True)
            member = member.model_copy(update={**changes, "updated_at": utcnow()})
            members[index] = member.dump()
            updated.update(members[index])
            return members
        raise HTTPException(status_code=404, detail="Member not found")

    try:
        store.update(MEMBERS_KEY, apply)
        return {"success": True, "member": updated, "message": "Member updated successfully"}
    except HTTPException:
        raise
    except ConflictError as e:
        raise HTTPException(status_code=409, detail=str(e)) from e
    except Exception as e:
        logger.error(f"Update member error: {str(e)}")
        raise HTTPException(status_code=500, detail="Failed to update member") from e


@app.delete("/admin/members/{member_id}")
def delete_member(member_id: str, store: KVStore = Depends(get_store)):
    """Delete a manual member by id."""
    deleted = {}

    def remove(members):
        remaining = [m for m in members if m.get("id") != member_id]
        if len(remaining) == len(members):
            raise HTTPException(status_code=404, detail="Member not found")
        deleted.update(next(m for m in members if m.get("id") == member_id))
        return remaining

    try:
        store.update(MEMBERS_KEY, remove)
        logger.info(f"Deleted member {member_id}")
        return {"success": True, "deleted": deleted, "message": "Member deleted successfully"}
    except HTTPException:
        raise
    except ConflictError as e:
        raise HTTPException(status_code=409, detail=str(e)) from e
    except Exception as e:
        logger.error(f"Delete member error: {str(e)}")
        raise HTTPException(status_code=500, detail="Failed to delete member") from e


@app.get("/admin/teams")
def list_teams(store: KVStore = Depends(get_store)):
    """List all teams and the preset colors."""
    try:
        teams = get_teams(store)
        return {"count": len(teams), "teams": teams, "colors": TEAM_COLORS}
    except Exception as e:
        logger.error(f"Get teams error: {str(e)}")
        raise HTTPException(status_code=500, detail="Failed to get teams") from e


@app.post("/admin/teams", status_code=201)
def add_team(request: TeamCreate, store: KVStore = Depends(get_store)):
    """Create a team; name and shortName must both be unused."""
    get_teams(store)
    created = {}

    def append(teams):
        if any(t["name"] == request.name or t["shortName"] == request.short_name for t in teams):
            raise HTTPException(status_code=400, detail="Team name or shortName already exists")
        team = Team(
            id=generate_id("t_"),
            name=request.name,
            short_name=request.short_name,
            color=request.color or TEAM_COLORS[len(teams) % len(TEAM_COLORS)],
        )
        created.update(team.dump())
        return teams + [team.dump()]

    try:
        store.update(TEAMS_KEY, append)
        logger.info(f"Created team {request.name}")
        return {"success": True, "team": created, "message": "Team created successfully"}
    except HTTPException:
        raise
    except ConflictError as e:
        raise HTTPException(status_code=409, detail=str(e)) from e
    except Exception as e:
        logger.error(f"Add team error: {str(e)}")
        raise HTTPException(status_code=500, detail="Failed to add team") from e


@app.put("/admin/teams/{team_id}")
def update_team(team_id: str, request: TeamUpdate, store: KVStore = Depends(get_store)):
    """Update a team; a rename is carried over to manual members."""
    get_teams(store)
    result = {}

    def apply(teams):
        index = next((i for i, t in enumerate(teams) if t["id"] == team_id), None)
        if index is None:
            raise HTTPException(status_code=404, detail="Team not found")
        for other in teams:
            if other["id"] == team_id:
                continue
            if other["name"] == request.name or other["shortName"] == request.short_name:
                raise HTTPException(status_code=400, detail="Team name or shortName already exists")

        old = teams[index]
        teams[index] = {
            **old,
            "name": request.name or old["name"],
            "shortName": request.short_name or old["shortName"],
            "color": request.color or old["color"],
        }
        result["old_name"] = old["name"]
        result["team"] = teams[index]
        return teams

    try:
        store.update(TEAMS_KEY, apply)
        old_name, new_name = result["old_name"], result["team"]["name"]
        if old_name != new_name:
            store.update(
                MEMBERS_KEY,
                lambda members: [
                    {**m, "team": new_name} if m.get("team") == old_name else m for m in members
                ],
            )
            logger.info(f"Renamed team {old_name} -> {new_name}")
        return {"success": True, "team": result["team"], "message": "Team updated successfully"}
    except HTTPException:
        raise
    except ConflictError as e:
        raise HTTPException(status_code=409, detail=str(e)) from e
    except Exception as e:
        logger.error(f"Update team error: {str(e)}")
        raise HTTPException(status_code=500, detail="Failed to update team") from e


@app.delete("/admin/teams/{team_id}")
def delete_team(team_id: str, store: KVStore = Depends(get_store)):
    """Delete a team that no member of any activity table belongs to."""
    try:
        teams = get_teams(store)
        team = next((t for t in teams if t["id"] == team_id), None)
        if team is None:
            raise HTTPException(status_code=404, detail="Team not found")

        member_count = len(
            {m.name for table in read_tables(store) for m in table.members if m.team == team["name"]}
        )
        if member_count:
            raise HTTPException(
                status_code=400,
                detail={
                    "error": "Cannot delete team with members",
                    "message": "Please reassign or remove all members from this team first.",
                    "members": member_count,
                },
            )

        store.update(TEAMS_KEY, lambda current: [t for t in current if t["id"] != team_id])
        logger.info(f"Deleted team {team['name']}")
        return {"success": True, "deleted": team, "message": "Team deleted successfully"}
    except HTTPException:
        raise
    except ConflictError as e:
        raise HTTPException(status_code=409, detail=str(e)) from e
    except Exception as e:
        logger.error(f"Delete team error: {str(e)}")
        raise HTTPException(status_code=500, detail="Failed to delete team") from e


@app.get("/admin/settings")
def get_settings(store: KVStore = Depends(get_store)):
    """Public maintenance status."""
    settings = load_record(AppSettings, store.get(SETTINGS_KEY)) or AppSettings()
    return settings.dump()


@app.post("/admin/settings")
def update_settings(request: SettingsUpdate, store: KVStore = Depends(get_store)):
    """Update maintenance mode, message or announcement."""
    try:
        current = load_record(AppSettings, store.get(SETTINGS_KEY)) or AppSettings()
        updated = current.model_copy(update=request.model_dump(exclude_none=True))
        store.set_permanent(SETTINGS_KEY, updated.dump())
        logger.info(f"Settings updated: maintenanceMode={updated.maintenance_mode}")
        return {"success": True, "settings": updated.dump()}
    except Exception as e:
        logger.error(f"Update settings error: {str(e)}")
        raise HTTPException(status_code=500, detail="Failed to update settings") from e


@app.post("/meditation/submit", response_model=SubmitResponse)
def submit_meditation(request: MeditationSubmit, store: KVStore = Depends(get_store)):
    """Record a meditation session submitted by a member."""
    try:
        member, _, _ = apply_direct_submission(
            store,
            name=request.name,
            date=request.date,
            minutes=request.duration,
            time_of_day=request.time_of_day,
            thoughts=request.thoughts,
            share_consent=request.share_consent,
            timestamp=request.timestamp,
            team=request.team,
        )
        return SubmitResponse(
            success=True,
            message="Meditation record submitted successfully",
            record={
                "name": member.name,
                "team": member.team,
                "date": request.date,
                "duration": request.duration,
                "timeOfDay": request.time_of_day,
                "total": member.total,
            },
        )
    except ConflictError as e:
        raise HTTPException(status_code=409, detail=str(e)) from e
    except Exception as e:
        logger.error(f"Error processing meditation submission: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e)) from e


@app.get("/")
def root():
    """Root endpoint."""
    return {"message": "Activity Leaderboard API", "docs": "/docs"}
