"""Key-value persistence gateway.

Every piece of leaderboard state lives under a string key in the ``kventry``
table. Reads degrade to a default on failure, writes raise ``StoreError``.
Each write bumps a per-key revision so read-modify-write callers can use
``compare_and_set`` / ``update`` instead of blind last-writer-wins.
"""
import copy
import logging
import os
from datetime import UTC, datetime, timedelta
from typing import Any, Callable

from sqlalchemy import update as sa_update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Session

from models import KVEntry

logger = logging.getLogger(__name__)

# TTL for short-lived cache entries such as sync metadata (5 minutes)
CACHE_TTL_SECONDS = int(os.getenv("CACHE_TTL_SECONDS", "300"))

MAX_CAS_ATTEMPTS = 3

# Keys
MEDITATION_KEY = "data:meditation"
PRACTICE_KEY = "data:practice"
CLASS_KEY = "data:class"
META_KEY = "data:meta"
TEAMS_KEY = "data:teams"
ACTIVITIES_KEY = "activities:all"
SUBMISSIONS_KEY = "submissions:all"
MEMBERS_KEY = "members:all"
SYNCED_MEMBERS_KEY = "members:synced"
SETTINGS_KEY = "settings:app"

TABLE_KEYS = {
    "meditation": MEDITATION_KEY,
    "practice": PRACTICE_KEY,
    "class": CLASS_KEY,
}


class StoreError(Exception):
    """A write to the key-value store failed."""

    def __init__(self, key: str, message: str):
        super().__init__(f"Store write failed for key {key}: {message}")
        self.key = key


class ConflictError(StoreError):
    """A compare-and-set update kept losing to concurrent writers."""

    def __init__(self, key: str):
        super().__init__(key, f"revision changed {MAX_CAS_ATTEMPTS} times in a row")


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _as_utc(value: datetime) -> datetime:
    # SQLite hands datetimes back without tzinfo on some SQLModel releases
    return value if value.tzinfo is not None else value.replace(tzinfo=UTC)


def _expiry(ttl_seconds: int | None) -> datetime | None:
    if ttl_seconds is None:
        return None
    return _utcnow() + timedelta(seconds=ttl_seconds)


def _is_expired(entry: KVEntry) -> bool:
    return entry.expires_at is not None and _as_utc(entry.expires_at) <= _utcnow()


class KVStore:
    """get/set/delete over the ``KVEntry`` table, bound to one session."""

    def __init__(self, session: Session):
        self.session = session

    def get(self, key: str, default: Any = None) -> Any:
        """Return the stored value, or ``default`` if missing, expired or unreadable."""
        value, _ = self.get_with_revision(key)
        if value is None:
            return default
        return value

    def get_with_revision(self, key: str) -> tuple[Any, int]:
        """Return ``(value, revision)``; a missing key has revision 0."""
        try:
            entry = self.session.get(KVEntry, key)
        except SQLAlchemyError as e:
            self.session.rollback()
            logger.error(f"KV get error for key {key}: {e}")
            return None, 0

        if entry is None:
            return None, 0
        if _is_expired(entry):
            self._purge(entry)
            return None, 0
        return copy.deepcopy(entry.value), entry.revision

    def set(self, key: str, value: Any, ttl_seconds: int | None = CACHE_TTL_SECONDS) -> None:
        """Write ``value`` under ``key``, expiring after ``ttl_seconds`` (None = never)."""
        now = _utcnow()
        try:
            entry = self.session.get(KVEntry, key)
            if entry is None:
                entry = KVEntry(key=key, revision=0)
            entry.value = value
            entry.revision += 1
            entry.expires_at = _expiry(ttl_seconds)
            entry.updated_at = now
            self.session.add(entry)
            self.session.commit()
        except SQLAlchemyError as e:
            self.session.rollback()
            logger.error(f"KV set error for key {key}: {e}")
            raise StoreError(key, str(e)) from e

    def set_permanent(self, key: str, value: Any) -> None:
        """Write a durable record with no expiry."""
        self.set(key, value, ttl_seconds=None)

    def delete(self, key: str) -> None:
        try:
            entry = self.session.get(KVEntry, key)
            if entry is not None:
                self.session.delete(entry)
                self.session.commit()
        except SQLAlchemyError as e:
            self.session.rollback()
            logger.error(f"KV delete error for key {key}: {e}")
            raise StoreError(key, str(e)) from e

    def compare_and_set(
        self,
        key: str,
        value: Any,
        expected_revision: int,
        ttl_seconds: int | None = None,
    ) -> bool:
        """Write only if the key is still at ``expected_revision``.

        Returns False when another writer got there first.
        """
        now = _utcnow()
        try:
            if expected_revision == 0:
                existing = self.session.get(KVEntry, key)
                if existing is not None:
                    if not _is_expired(existing):
                        return False
                    self.session.delete(existing)
                    self.session.flush()
                self.session.add(
                    KVEntry(
                        key=key,
                        value=value,
                        revision=1,
                        expires_at=_expiry(ttl_seconds),
                        updated_at=now,
                    )
                )
                self.session.commit()
                return True

            result = self.session.execute(
                sa_update(KVEntry)
                .where(KVEntry.key == key)
                .where(KVEntry.revision == expected_revision)
                .values(
                    value=value,
                    revision=expected_revision + 1,
                    expires_at=_expiry(ttl_seconds),
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            self.session.commit()
            return result.rowcount == 1
        except IntegrityError:
            # Someone inserted the key between our read and our insert
            self.session.rollback()
            return False
        except SQLAlchemyError as e:
            self.session.rollback()
            logger.error(f"KV compare-and-set error for key {key}: {e}")
            raise StoreError(key, str(e)) from e

    def update(
        self,
        key: str,
        fn: Callable[[Any], Any],
        default_factory: Callable[[], Any] = list,
        ttl_seconds: int | None = None,
    ) -> Any:
        """Optimistic read-modify-write: apply ``fn`` to the current value and store it.

        Retries when the revision moved underneath us and raises
        ``ConflictError`` after ``MAX_CAS_ATTEMPTS`` lost races.
        """
        for attempt in range(1, MAX_CAS_ATTEMPTS + 1):
            current, revision = self.get_with_revision(key)
            if current is None:
                current = default_factory()
            new_value = fn(current)
            if self.compare_and_set(key, new_value, revision, ttl_seconds=ttl_seconds):
                return new_value
            logger.warning(f"Revision conflict on {key} (attempt {attempt}/{MAX_CAS_ATTEMPTS})")
        raise ConflictError(key)

    def _purge(self, entry: KVEntry) -> None:
        try:
            self.session.delete(entry)
            self.session.commit()
        except SQLAlchemyError as e:
            self.session.rollback()
            logger.warning(f"Could not purge expired key {entry.key}: {e}")
