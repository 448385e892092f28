"""Per-member totals derived from the unified activity log.

The per-type sheet tables are never read here; scores come from the log
alone so admin entries, direct submissions and synced sheet rows count the
same way.
"""
import re
from collections.abc import Iterable
from dataclasses import dataclass, replace
from datetime import UTC, datetime

from records import UNKNOWN_TEAM, ActivityEvent, ManualMember
from scoring import class_count_from_log, points_for

MemberKey = tuple[str, str]


@dataclass
class MemberTotals:
    team: str
    name: str
    meditation_total: float = 0
    practice_total: float = 0
    class_total: float = 0
    class_count: float = 0
    sessions: int = 0
    id: str | None = None

    @property
    def total(self) -> float:
        return self.meditation_total + self.practice_total + self.class_total

    def add(self, activity_type: str, value: float) -> None:
        points = points_for(activity_type, value)
        if activity_type == "meditation":
            self.meditation_total += points
            self.sessions += 1
        elif activity_type == "practice":
            self.practice_total += points
        elif activity_type == "class":
            self.class_total += points
            self.class_count += class_count_from_log(value)

    def absorb(self, other: "MemberTotals") -> None:
        self.meditation_total += other.meditation_total
        self.practice_total += other.practice_total
        self.class_total += other.class_total
        self.class_count += other.class_count
        self.sessions += other.sessions

    def as_dict(self) -> dict:
        return {
            "id": self.id,
            "team": self.team,
            "name": self.name,
            "meditationTotal": self.meditation_total,
            "practiceTotal": self.practice_total,
            "classTotal": self.class_total,
            "classCount": self.class_count,
            "sessions": self.sessions,
            "total": self.total,
        }


def aggregate(
    events: Iterable[ActivityEvent],
    team_lookup: dict[str, str] | None = None,
) -> dict[MemberKey, MemberTotals]:
    """Single pass over the log, bucketing scores by (team, name).

    A name first seen without a team sits under ``UNKNOWN_TEAM`` until an event
    with a real team shows up, at which point the bucket moves there. Later
    team-less events for that name join the real-team bucket.
    """
    team_lookup = team_lookup or {}
    buckets: dict[MemberKey, MemberTotals] = {}
    real_team_for: dict[str, str] = {}

    for event in events:
        name = (event.member or "").strip()
        if not name:
            continue

        team = event.team or team_lookup.get(name) or UNKNOWN_TEAM
        if team == UNKNOWN_TEAM:
            team = real_team_for.get(name, UNKNOWN_TEAM)
        else:
            real_team_for.setdefault(name, team)
            orphan = buckets.pop((UNKNOWN_TEAM, name), None)
            if orphan is not None:
                orphan.team = team
                if (team, name) in buckets:
                    buckets[(team, name)].absorb(orphan)
                else:
                    buckets[(team, name)] = orphan

        bucket = buckets.get((team, name))
        if bucket is None:
            bucket = buckets[(team, name)] = MemberTotals(team=team, name=name)
        bucket.add(event.type, event.value)

    return buckets


def team_rollups(totals: Iterable[MemberTotals]) -> list[dict]:
    teams: dict[str, dict] = {}
    for member in totals:
        rollup = teams.setdefault(
            member.team,
            {
                "team": member.team,
                "members": 0,
                "meditationTotal": 0,
                "practiceTotal": 0,
                "classTotal": 0,
                "total": 0,
            },
        )
        rollup["members"] += 1
        rollup["meditationTotal"] += member.meditation_total
        rollup["practiceTotal"] += member.practice_total
        rollup["classTotal"] += member.class_total
        rollup["total"] += member.total
    return sorted(teams.values(), key=lambda t: t["total"], reverse=True)


def meditation_summary(events: Iterable[ActivityEvent]) -> tuple[float, int]:
    """Total meditation minutes and session count across the log."""
    minutes = 0.0
    sessions = 0
    for event in events:
        if event.type == "meditation":
            minutes += max(event.value, 0)
            sessions += 1
    return minutes, sessions


# Member listing: baseline -> computed -> manual, each stage returns a new map


def apply_baseline(listing: dict[MemberKey, MemberTotals], synced: Iterable[dict]) -> dict[MemberKey, MemberTotals]:
    """Add every synced sheet member with zero scores."""
    result = {k: replace(v) for k, v in listing.items()}
    for member in synced:
        name = member.get("name")
        if not name:
            continue
        team = member.get("team") or UNKNOWN_TEAM
        result.setdefault((team, name), MemberTotals(team=team, name=name))
    return result


def apply_computed(
    listing: dict[MemberKey, MemberTotals],
    totals: dict[MemberKey, MemberTotals],
) -> dict[MemberKey, MemberTotals]:
    """Put live scores on top; members only seen in the log are added."""
    result = {k: replace(v) for k, v in listing.items()}
    for key, computed in totals.items():
        previous = result.get(key)
        scored = replace(computed)
        if previous is not None and previous.id and not scored.id:
            scored.id = previous.id
        result[key] = scored
    return result


def apply_manual(
    listing: dict[MemberKey, MemberTotals],
    manual: Iterable[ManualMember],
) -> dict[MemberKey, MemberTotals]:
    """Admin-entered members win on name/team; their scores apply only when given."""
    result = {k: replace(v) for k, v in listing.items()}
    for member in manual:
        key = (member.team, member.name)
        entry = result.pop(key, None)
        if entry is None:
            # Names outrank teams: adopt a team-less entry for the same name
            entry = result.pop((UNKNOWN_TEAM, member.name), None)
        if entry is None:
            entry = MemberTotals(team=member.team, name=member.name)

        entry.team = member.team
        entry.name = member.name
        entry.id = member.id
        if member.meditation_total is not None:
            entry.meditation_total = max(member.meditation_total, 0)
        if member.practice_total is not None:
            entry.practice_total = max(member.practice_total, 0)
        if member.class_total is not None:
            entry.class_total = max(member.class_total, 0)
        result[key] = entry
    return result


def build_member_listing(
    synced: Iterable[dict],
    totals: dict[MemberKey, MemberTotals],
    manual: Iterable[ManualMember],
) -> list[MemberTotals]:
    listing = apply_baseline({}, synced)
    listing = apply_computed(listing, totals)
    listing = apply_manual(listing, manual)
    return sorted(listing.values(), key=lambda m: (-m.total, m.name))


def activity_date_key(date_str: str) -> float:
    """Sortable value for ``YYYY/MM/DD``, ``YYYY-MM-DD`` or ``M/D`` (current year)."""
    if not date_str:
        return 0.0
    try:
        parts = [int(p) for p in re.split(r"[/-]", date_str.strip())]
        if len(parts) == 3:
            year, month, day = parts
        elif len(parts) == 2:
            year = datetime.now(UTC).year
            month, day = parts
        else:
            return 0.0
        return datetime(year, month, day, tzinfo=UTC).timestamp()
    except ValueError:
        return 0.0


def recent_activity(events: Iterable[ActivityEvent], limit: int = 50) -> list[dict]:
    """Meditation entries that carry reflections, newest activity date first."""
    shared = [e for e in events if e.type == "meditation" and (e.thoughts or e.time_of_day)]
    shared.sort(key=lambda e: (activity_date_key(e.date), e.created_at), reverse=True)
    return [
        {
            "id": e.id,
            "name": e.member,
            "team": e.team,
            "minutes": e.value,
            "date": e.date,
            "thoughts": e.thoughts,
            "timeOfDay": e.time_of_day,
            "timestamp": e.created_at.isoformat(),
        }
        for e in shared[:limit]
    ]
