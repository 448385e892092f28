import re
from datetime import date as date_type

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from records import ACTIVITY_TYPES, SYNC_MODES

DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
MAX_DURATION_MINUTES = 480


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


def _required(v: str | None, label: str) -> str:
    if v is None or not str(v).strip():
        raise ValueError(f"{label} is required")
    return str(v).strip()


class SyncRequest(CamelModel):
    mode: str = "merge"

    @field_validator("mode")
    @classmethod
    def validate_mode(cls, v):
        if v not in SYNC_MODES:
            raise ValueError(
                'Invalid mode. Use "merge" (add new data, preserve existing entries) '
                'or "overwrite" (replace all stored data with sheet data)'
            )
        return v


class SyncStats(CamelModel):
    meditation: int
    practice: int
    class_: int
    submissions: int
    activities: int
    recent_activity: int

    model_config = ConfigDict(
        alias_generator=lambda f: "class" if f == "class_" else to_camel(f),
        populate_by_name=True,
    )


class SyncResponse(CamelModel):
    success: bool
    mode: str
    synced_at: str
    stats: SyncStats
    sources: dict[str, str]
    verified: int


class CacheStatusResponse(CamelModel):
    has_cached_data: bool
    last_synced_at: str | None = None
    cache_age_seconds: int | None = None
    last_sync_mode: str | None = None


class ActivityCreate(CamelModel):
    type: str
    team: str
    member: str
    date: str
    value: float | None = Field(default=None, validate_default=True)
    notes: str | None = None

    @field_validator("type")
    @classmethod
    def validate_type(cls, v):
        if v not in ACTIVITY_TYPES:
            raise ValueError(f"Type must be one of: {', '.join(ACTIVITY_TYPES)}")
        return v

    @field_validator("team")
    @classmethod
    def validate_team(cls, v):
        return _required(v, "Team")

    @field_validator("member")
    @classmethod
    def validate_member(cls, v):
        return _required(v, "Member name")

    @field_validator("date")
    @classmethod
    def validate_date(cls, v):
        return _required(v, "Date")

    @field_validator("value")
    @classmethod
    def validate_value(cls, v):
        # Attendance-style entries default to a single session
        if v is None:
            return 1
        if v < 0:
            raise ValueError("Value cannot be negative")
        return v


class MemberCreate(CamelModel):
    name: str
    team: str
    meditation_total: float | None = None
    practice_total: float | None = None
    class_total: float | None = None

    @field_validator("name")
    @classmethod
    def validate_name(cls, v):
        return _required(v, "Member name")

    @field_validator("team")
    @classmethod
    def validate_team(cls, v):
        return _required(v, "Team")


class MemberUpdate(CamelModel):
    id: str
    name: str | None = None
    team: str | None = None
    meditation_total: float | None = None
    practice_total: float | None = None
    class_total: float | None = None

    @field_validator("id")
    @classmethod
    def validate_id(cls, v):
        return _required(v, "Member ID")


class TeamCreate(CamelModel):
    name: str
    short_name: str
    color: str | None = None

    @field_validator("name", "short_name")
    @classmethod
    def validate_names(cls, v):
        return _required(v, "Name and shortName")


class TeamUpdate(CamelModel):
    name: str | None = None
    short_name: str | None = None
    color: str | None = None


class SettingsUpdate(CamelModel):
    maintenance_mode: bool | None = None
    maintenance_message: str | None = None
    announcement: str | None = None


class MeditationSubmit(CamelModel):
    name: str
    date: str  # YYYY-MM-DD format
    duration: float
    time_of_day: str
    thoughts: str = ""
    share_consent: str | bool
    timestamp: str | None = None
    team: str | None = None

    @field_validator("name")
    @classmethod
    def validate_name(cls, v):
        return _required(v, "name")

    @field_validator("time_of_day")
    @classmethod
    def validate_time_of_day(cls, v):
        return _required(v, "timeOfDay")

    @field_validator("share_consent")
    @classmethod
    def validate_share_consent(cls, v):
        if not v:
            raise ValueError("shareConsent is required")
        return v

    @field_validator("duration")
    @classmethod
    def validate_duration(cls, v):
        if v < 1 or v > MAX_DURATION_MINUTES:
            raise ValueError(f"Duration must be between 1 and {MAX_DURATION_MINUTES} minutes")
        return v

    @field_validator("date")
    @classmethod
    def validate_date(cls, v):
        if not DATE_RE.match(v or ""):
            raise ValueError("Invalid date format. Expected YYYY-MM-DD")
        try:
            submitted = date_type.fromisoformat(v)
        except ValueError as e:
            raise ValueError("Invalid date format. Expected YYYY-MM-DD") from e
        if submitted > date_type.today():
            raise ValueError("Date cannot be in the future")
        return v


class SubmitResponse(CamelModel):
    success: bool
    message: str
    record: dict
