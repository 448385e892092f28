"""Reconciling freshly parsed sheet data with what is already stored.

All functions here are pure: they take records and return new records, the
store is never touched.
"""
from datetime import datetime

from records import ActivityEvent, Submission, UNKNOWN_TEAM
from sheets import parse_timestamp

SUBMISSION_WINDOW = 500

_ID_PREFIX = {"meditation": "med", "practice": "prac", "class": "class"}


def merge_tables(existing, fresh):
    """Overlay ``fresh`` members on ``existing`` keyed by (team, name).

    Fresh records replace existing ones whole; members only in ``existing``
    are kept. Works for both SheetTable and ClassTable.
    """
    if existing is None or not existing.members:
        return fresh

    by_key = {m.key: m for m in existing.members}
    for member in fresh.members:
        by_key[member.key] = member

    dates = list(fresh.dates)
    dates += [d for d in existing.dates if d not in dates]
    return type(fresh)(dates=dates, members=list(by_key.values()))


def merge_submissions(
    existing: list[Submission],
    fresh: list[Submission],
    limit: int | None = SUBMISSION_WINDOW,
) -> list[Submission]:
    """Dedupe on (name, timestamp), later-applied wins, newest first, capped at ``limit``."""
    by_key = {}
    for submission in list(existing) + list(fresh):
        by_key[submission.key] = submission

    merged = sorted(
        by_key.values(),
        key=lambda s: parse_timestamp(s.effective_timestamp),
        reverse=True,
    )
    if limit is not None:
        merged = merged[:limit]
    return merged


def merge_activities(existing: list[ActivityEvent], fresh: list[ActivityEvent]) -> list[ActivityEvent]:
    """Dedupe on id, fresh wins, newest ``createdAt`` first. Never truncated."""
    by_id = {}
    for event in list(existing) + list(fresh):
        by_id[event.id] = event
    return sorted(by_id.values(), key=lambda e: e.created_at, reverse=True)


def merge_baseline(existing: list[dict], fresh: list[dict]) -> list[dict]:
    by_key = {(m["team"], m["name"]): m for m in existing}
    for member in fresh:
        by_key[(member["team"], member["name"])] = member
    return list(by_key.values())


def baseline_members(*tables) -> list[dict]:
    """Identity scaffold (team, name) of every member across the given tables."""
    seen = {}
    for table in tables:
        for member in table.members:
            seen.setdefault(member.key, {"team": member.team or UNKNOWN_TEAM, "name": member.name})
    return list(seen.values())


def table_events(table, activity_type: str, created_at: datetime) -> list[ActivityEvent]:
    """Expand a per-type table into sheet-sourced unified-log events.

    Ids are derived from (type, team, name, date) so re-syncing the same
    sheet replaces events instead of duplicating them.
    """
    prefix = _ID_PREFIX[activity_type]
    events = []
    for member in table.members:
        for date, value in member.daily.items():
            if value <= 0:
                continue
            events.append(
                ActivityEvent(
                    id=f"sheets_{prefix}_{member.team}_{member.name}_{date}",
                    type=activity_type,
                    team=member.team,
                    member=member.name,
                    date=date,
                    value=value,
                    source="sheets",
                    created_at=created_at,
                )
            )
    return events
