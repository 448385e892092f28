from datetime import datetime
from typing import Any

from sqlalchemy import JSON, Column
from sqlmodel import Field, SQLModel


class KVEntry(SQLModel, table=True):
    key: str = Field(primary_key=True)  # e.g. "data:meditation", "activities:all"
    value: Any = Field(default=None, sa_column=Column(JSON))
    revision: int = Field(default=1)  # Bumped on every write, used for compare-and-set
    expires_at: datetime | None = Field(default=None, index=True)  # UTC, None = permanent
    updated_at: datetime | None = Field(default=None)
