"""Typed records shared by the parser, merge engine and aggregator.

Everything is stored and served as camelCase JSON; ``dump()`` gives the
storage form and ``model_validate`` accepts it back.
"""
import logging
from datetime import UTC, datetime
from typing import Literal, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator
from pydantic.alias_generators import to_camel

from scoring import class_points_from_attendance

logger = logging.getLogger(__name__)

ActivityType = Literal["meditation", "practice", "class"]
ActivitySource = Literal["admin", "sheets", "form"]
SubmissionSource = Literal["form", "direct"]
SyncMode = Literal["merge", "overwrite"]

ACTIVITY_TYPES = ("meditation", "practice", "class")
SYNC_MODES = ("merge", "overwrite")

# Sentinel team for events that arrive without one
UNKNOWN_TEAM = "Unknown"


def utcnow() -> datetime:
    return datetime.now(UTC)


class Record(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def dump(self) -> dict:
        return self.model_dump(by_alias=True, mode="json")


class MemberRecord(Record):
    """One member's row of a meditation or practice table."""

    team: str
    name: str
    total: float = 0
    daily: dict[str, float] = Field(default_factory=dict)

    @model_validator(mode="after")
    def recompute_total(self):
        # total is a cache of the daily map, never edited on its own
        self.total = sum(self.daily.values())
        return self

    @property
    def key(self) -> tuple[str, str]:
        return (self.team, self.name)

    def with_added(self, date: str, amount: float) -> "MemberRecord":
        daily = dict(self.daily)
        daily[date] = daily.get(date, 0) + amount
        return MemberRecord(team=self.team, name=self.name, daily=daily)


class ClassMemberRecord(Record):
    """One member's row of the class table; ``total`` is the attendance count."""

    team: str
    name: str
    tier: str = ""
    total: float = 0
    points: float = 0
    daily: dict[str, float] = Field(default_factory=dict)

    @model_validator(mode="after")
    def derive_points(self):
        self.points = class_points_from_attendance(self.total)
        return self

    @property
    def key(self) -> tuple[str, str]:
        return (self.team, self.name)


class SheetTable(Record):
    dates: list[str] = Field(default_factory=list)
    members: list[MemberRecord] = Field(default_factory=list)


class ClassTable(Record):
    dates: list[str] = Field(default_factory=list)
    members: list[ClassMemberRecord] = Field(default_factory=list)


class ActivityEvent(Record):
    """An entry of the unified activity log."""

    id: str
    type: ActivityType
    team: str = ""
    member: str
    date: str
    value: float = Field(ge=0)
    notes: str | None = None
    thoughts: str | None = None
    time_of_day: str | None = None
    source: ActivitySource
    created_at: datetime = Field(default_factory=utcnow)


class Submission(Record):
    """A raw meditation submission, from the form sheet or the submit endpoint."""

    id: str
    name: str
    date: str
    minutes: float
    time_of_day: str = ""
    thoughts: str = ""
    share_consent: str | bool = ""
    timestamp: str = ""
    source: SubmissionSource = "form"
    submitted_at: str | None = None

    @property
    def effective_timestamp(self) -> str:
        return self.timestamp or self.submitted_at or ""

    @property
    def key(self) -> tuple[str, str]:
        return (self.name, self.effective_timestamp)


class Team(Record):
    id: str
    name: str
    short_name: str
    color: str


class ManualMember(Record):
    """Admin-entered member metadata; scores are optional overrides."""

    id: str
    name: str
    team: str
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime | None = None
    meditation_total: float | None = None
    practice_total: float | None = None
    class_total: float | None = None


class SyncMeta(Record):
    synced_at: datetime
    recent_activity: list[Submission] = Field(default_factory=list)
    last_sync_mode: SyncMode
    sources: dict[str, str] = Field(default_factory=dict)


class AppSettings(Record):
    maintenance_mode: bool = False
    maintenance_message: str = "網站維護中，請稍後再試。\nSite under maintenance, please try again later."
    announcement: str = ""


RecordT = TypeVar("RecordT", bound=Record)


def load_records(model: type[RecordT], values) -> list[RecordT]:
    """Validate a stored list, dropping entries that no longer fit the model."""
    records = []
    for value in values or []:
        try:
            records.append(model.model_validate(value))
        except ValidationError as e:
            logger.warning(f"Skipping invalid {model.__name__} record: {e.error_count()} error(s)")
    return records


def load_record(model: type[RecordT], value) -> RecordT | None:
    if value is None:
        return None
    try:
        return model.model_validate(value)
    except ValidationError as e:
        logger.warning(f"Ignoring invalid stored {model.__name__}: {e.error_count()} error(s)")
        return None


def dump_records(records) -> list[dict]:
    return [r.dump() for r in records]
