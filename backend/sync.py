"""Sync runs and direct writes against the key-value store.

A sync fetches the four sheets, reconciles them with stored state (merge) or
replaces stored state (overwrite), writes everything back and re-reads one
table to confirm the write landed.
"""
import logging
import uuid
from dataclasses import dataclass, field
from datetime import date as date_type
from datetime import datetime
from typing import Any

from kv import (
    ACTIVITIES_KEY,
    CACHE_TTL_SECONDS,
    CLASS_KEY,
    MEDITATION_KEY,
    MEMBERS_KEY,
    META_KEY,
    PRACTICE_KEY,
    SUBMISSIONS_KEY,
    SYNCED_MEMBERS_KEY,
    KVStore,
    StoreError,
)
from merge import (
    baseline_members,
    merge_activities,
    merge_baseline,
    merge_submissions,
    merge_tables,
    table_events,
)
from records import (
    SYNC_MODES,
    UNKNOWN_TEAM,
    ActivityEvent,
    ClassTable,
    ManualMember,
    MemberRecord,
    SheetTable,
    Submission,
    SyncMeta,
    dump_records,
    load_record,
    load_records,
    utcnow,
)
from sheets import SheetsClient, SheetSnapshot

logger = logging.getLogger(__name__)

RECENT_PREVIEW = 50


class InvalidSyncMode(ValueError):
    def __init__(self, mode):
        super().__init__(f'Invalid mode {mode!r}. Use "merge" or "overwrite".')
        self.mode = mode


class SyncFailed(Exception):
    """A sync could not complete; ``stage`` says whether sources or storage broke."""

    def __init__(self, stage: str, message: str):
        super().__init__(f"Sync failed during {stage}: {message}")
        self.stage = stage
        self.message = message


@dataclass
class StoredState:
    meditation: SheetTable = field(default_factory=SheetTable)
    practice: SheetTable = field(default_factory=SheetTable)
    class_table: ClassTable = field(default_factory=ClassTable)
    activities: list[ActivityEvent] = field(default_factory=list)
    submissions: list[Submission] = field(default_factory=list)
    synced_members: list[dict] = field(default_factory=list)


@dataclass
class SyncPlan:
    writes: dict[str, Any]
    deletes: list[str]
    stats: dict[str, int]


@dataclass
class SyncSummary:
    mode: str
    synced_at: datetime
    stats: dict[str, int]
    sources: dict[str, str]
    verified: int

    def as_dict(self) -> dict:
        return {
            "success": True,
            "mode": self.mode,
            "syncedAt": self.synced_at.isoformat(),
            "stats": self.stats,
            "sources": self.sources,
            "verified": self.verified,
        }


def read_tables(store: KVStore) -> tuple[SheetTable, SheetTable, ClassTable]:
    return (
        load_record(SheetTable, store.get(MEDITATION_KEY)) or SheetTable(),
        load_record(SheetTable, store.get(PRACTICE_KEY)) or SheetTable(),
        load_record(ClassTable, store.get(CLASS_KEY)) or ClassTable(),
    )


def read_activities(store: KVStore) -> list[ActivityEvent]:
    return load_records(ActivityEvent, store.get(ACTIVITIES_KEY, []))


def read_submissions(store: KVStore) -> list[Submission]:
    return load_records(Submission, store.get(SUBMISSIONS_KEY, []))


def read_manual_members(store: KVStore) -> list[ManualMember]:
    return load_records(ManualMember, store.get(MEMBERS_KEY, []))


def read_meta(store: KVStore) -> SyncMeta | None:
    return load_record(SyncMeta, store.get(META_KEY))


def read_state(store: KVStore) -> StoredState:
    meditation, practice, class_table = read_tables(store)
    return StoredState(
        meditation=meditation,
        practice=practice,
        class_table=class_table,
        activities=read_activities(store),
        submissions=read_submissions(store),
        synced_members=store.get(SYNCED_MEMBERS_KEY, []),
    )


def plan_sync(mode: str, snapshot: SheetSnapshot, existing: StoredState) -> SyncPlan:
    """Work out every key to write (and delete) for one sync run."""
    fresh_events = (
        table_events(snapshot.meditation, "meditation", snapshot.fetched_at)
        + table_events(snapshot.practice, "practice", snapshot.fetched_at)
        + table_events(snapshot.class_table, "class", snapshot.fetched_at)
    )
    fresh_baseline = baseline_members(snapshot.meditation, snapshot.practice, snapshot.class_table)

    if mode == "overwrite":
        meditation = snapshot.meditation
        practice = snapshot.practice
        class_table = snapshot.class_table
        activities = merge_activities([], fresh_events)
        submissions = merge_submissions([], snapshot.submissions)
        synced = fresh_baseline
        deletes = [MEMBERS_KEY]
    else:
        meditation = merge_tables(existing.meditation, snapshot.meditation)
        practice = merge_tables(existing.practice, snapshot.practice)
        class_table = merge_tables(existing.class_table, snapshot.class_table)
        activities = merge_activities(existing.activities, fresh_events)
        submissions = merge_submissions(existing.submissions, snapshot.submissions)
        synced = merge_baseline(existing.synced_members, fresh_baseline)
        deletes = []

    writes = {
        MEDITATION_KEY: meditation.dump(),
        PRACTICE_KEY: practice.dump(),
        CLASS_KEY: class_table.dump(),
        ACTIVITIES_KEY: dump_records(activities),
        SUBMISSIONS_KEY: dump_records(submissions),
        SYNCED_MEMBERS_KEY: synced,
    }
    stats = {
        "meditation": len(meditation.members),
        "practice": len(practice.members),
        "class": len(class_table.members),
        "submissions": len(submissions),
        "activities": len(activities),
        "recentActivity": min(len(submissions), RECENT_PREVIEW),
    }
    return SyncPlan(writes=writes, deletes=deletes, stats=stats)


async def run_sync(store: KVStore, mode: str, client: SheetsClient) -> SyncSummary:
    """Fetch the sheets and reconcile them with the store.

    Raises:
        InvalidSyncMode: ``mode`` is not merge/overwrite (checked before any I/O).
        SyncFailed: the sources or the store broke badly enough to abort.
    """
    if mode not in SYNC_MODES:
        raise InvalidSyncMode(mode)

    logger.info(f"Starting sync from Google Sheets (mode: {mode})")
    try:
        snapshot = await client.fetch()
    except Exception as e:
        logger.error(f"Sheet fetch crashed: {str(e)}")
        raise SyncFailed("sources", str(e)) from e

    existing = read_state(store) if mode == "merge" else StoredState()
    plan = plan_sync(mode, snapshot, existing)
    meta = SyncMeta(
        synced_at=snapshot.fetched_at,
        recent_activity=load_records(Submission, plan.writes[SUBMISSIONS_KEY][:RECENT_PREVIEW]),
        last_sync_mode=mode,
        sources=snapshot.sources,
    )

    try:
        for key, value in plan.writes.items():
            store.set_permanent(key, value)
        for key in plan.deletes:
            store.delete(key)
        store.set(META_KEY, meta.dump(), ttl_seconds=CACHE_TTL_SECONDS)
    except StoreError as e:
        logger.error(f"Sync write failed: {str(e)}")
        raise SyncFailed("storage", str(e)) from e

    written = store.get(MEDITATION_KEY) or {}
    verified = len(written.get("members", []))
    if verified != plan.stats["meditation"]:
        logger.warning(
            f"Post-write check: expected {plan.stats['meditation']} meditation members, "
            f"read back {verified}"
        )

    logger.info(f"Sync complete (mode: {mode}): {plan.stats}")
    return SyncSummary(
        mode=mode,
        synced_at=snapshot.fetched_at,
        stats=plan.stats,
        sources=snapshot.sources,
        verified=verified,
    )


def sheet_date_label(value: str) -> str:
    """``YYYY-MM-DD`` -> the ``M/D`` header label the sheets use."""
    day = date_type.fromisoformat(value)
    return f"{day.month}/{day.day}"


def _resolve_team(store: KVStore, name: str, table: SheetTable) -> str:
    for member in table.members:
        if member.name == name:
            return member.team
    for member in store.get(SYNCED_MEMBERS_KEY, []):
        if member.get("name") == name and member.get("team"):
            return member["team"]
    for member in read_manual_members(store):
        if member.name == name:
            return member.team
    return UNKNOWN_TEAM


def apply_direct_submission(
    store: KVStore,
    name: str,
    date: str,
    minutes: float,
    time_of_day: str = "",
    thoughts: str = "",
    share_consent: str | bool = "",
    timestamp: str | None = None,
    team: str | None = None,
) -> tuple[MemberRecord, ActivityEvent, Submission]:
    """Record a meditation session submitted through the API.

    Minutes accumulate into the member's meditation-table day, and the session
    is appended to the unified log and the submission log.
    """
    now = utcnow()
    label = sheet_date_label(date)
    meditation, _, _ = read_tables(store)
    team = team or _resolve_team(store, name, meditation)
    updated: dict[str, MemberRecord] = {}

    def add_minutes(raw):
        table = load_record(SheetTable, raw) or SheetTable()
        members = []
        found = False
        for member in table.members:
            if not found and member.name == name and member.team == team:
                member = member.with_added(label, minutes)
                found = True
            members.append(member)
        if not found:
            members.append(MemberRecord(team=team, name=name, daily={label: minutes}))
        dates = table.dates if label in table.dates else table.dates + [label]
        table = SheetTable(dates=dates, members=members)
        updated["member"] = next(m for m in members if m.name == name and m.team == team)
        return table.dump()

    store.update(MEDITATION_KEY, add_minutes, default_factory=dict)

    event = ActivityEvent(
        id=f"sub_{uuid.uuid4().hex[:12]}",
        type="meditation",
        team=team,
        member=name,
        date=label,
        value=minutes,
        thoughts=thoughts or None,
        time_of_day=time_of_day or None,
        source="form",
        created_at=now,
    )
    store.update(
        ACTIVITIES_KEY,
        lambda raw: dump_records(merge_activities(load_records(ActivityEvent, raw), [event])),
    )

    submission = Submission(
        id=event.id,
        name=name,
        date=date,
        minutes=minutes,
        time_of_day=time_of_day,
        thoughts=thoughts,
        share_consent=share_consent,
        timestamp=timestamp or now.isoformat(),
        source="direct",
        submitted_at=now.isoformat(),
    )
    store.update(
        SUBMISSIONS_KEY,
        lambda raw: dump_records(
            merge_submissions(load_records(Submission, raw), [submission])
        ),
    )

    logger.info(f"Recorded {minutes} minutes for {name} ({team}) on {label}")
    return updated["member"], event, submission
