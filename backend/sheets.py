"""Spreadsheet CSV exports -> typed tables.

The published sheets are loose: ragged rows, header rows that double as
configuration, numbers with units attached. Parsing never raises for a bad
row; it drops it. A source that cannot be fetched degrades to an empty table.
"""
import asyncio
import hashlib
import logging
import os
import re
from dataclasses import dataclass, field
from datetime import UTC, datetime
from urllib.parse import quote

import httpx

from records import (
    ClassMemberRecord,
    ClassTable,
    MemberRecord,
    SheetTable,
    Submission,
)

logger = logging.getLogger(__name__)

SHEET_ID = os.getenv("SHEET_ID", "1b2kQ_9Ry0Eu-BoZ-EcSxZxkbjIzBAAjjPGQZU9v9f_s")
SHEET_NAMES = {
    "meditation": os.getenv("SHEET_MEDITATION", "禪定登記"),
    "practice": os.getenv("SHEET_PRACTICE", "共修登記"),
    "class": os.getenv("SHEET_CLASS", "會館課登記"),
    "form": os.getenv("SHEET_FORM_RESPONSES", "表單回應 1"),
}
SHEETS_TIMEOUT_SECONDS = float(os.getenv("SHEETS_TIMEOUT_SECONDS", "10"))

SOURCE_OK = "ok"
SOURCE_EMPTY = "empty"
SOURCE_UNREACHABLE = "unreachable"

# Minimum columns per schema; shorter rows are skipped
MIN_COLUMNS = {"meditation": 3, "practice": 3, "class": 4, "form": 4}

_MORNING_MARKERS = ("AM", "上午", "早上", "凌晨")
_AFTERNOON_MARKERS = ("PM", "下午", "晚上", "中午")
_LEADING_NUMBER = re.compile(r"^[+-]?(\d+(\.\d*)?|\.\d+)")


def split_line(line: str) -> list[str]:
    """Split one CSV line on commas, honouring double-quoted fields."""
    values = []
    current = []
    in_quotes = False
    for char in line:
        if char == '"':
            in_quotes = not in_quotes
        elif char == "," and not in_quotes:
            values.append("".join(current).strip())
            current = []
        else:
            current.append(char)
    values.append("".join(current).strip())
    return values


def split_rows(text: str) -> list[list[str]]:
    if not text:
        return []
    return [split_line(line.rstrip("\r")) for line in text.split("\n")]


def to_number(cell: str) -> float:
    """Read the leading number of a cell ("12.5min" -> 12.5); anything else is 0."""
    match = _LEADING_NUMBER.match((cell or "").strip())
    if not match:
        return 0.0
    return float(match.group(0))


def _identity(row: list[str]) -> tuple[str, str] | None:
    team, name = row[0], row[1]
    if not team or not name:
        return None
    return team, name


def parse_meditation(text: str) -> SheetTable:
    """Rows are ``[team, name, total, ...minutes]``; total is recomputed."""
    rows = split_rows(text)
    if not rows:
        return SheetTable()

    labels = rows[0][3:]
    members = []
    for row in rows[1:]:
        if len(row) < MIN_COLUMNS["meditation"]:
            continue
        identity = _identity(row)
        if identity is None:
            continue

        daily = {}
        for label, cell in zip(labels, row[3:]):
            minutes = to_number(cell)
            if label and minutes > 0:
                daily[label] = minutes
        members.append(MemberRecord(team=identity[0], name=identity[1], daily=daily))

    return SheetTable(dates=[d for d in labels if d], members=members)


def parse_practice(text: str) -> SheetTable:
    """Row 0 holds points per session, row 1 the dates, members start at row 2."""
    rows = split_rows(text)
    if len(rows) < 2:
        return SheetTable()

    points_per_session = [to_number(cell) for cell in rows[0][3:]]
    labels = rows[1][3:]
    members = []
    for row in rows[2:]:
        if len(row) < MIN_COLUMNS["practice"]:
            continue
        identity = _identity(row)
        if identity is None:
            continue

        daily = {}
        for index, (label, cell) in enumerate(zip(labels, row[3:])):
            session_points = points_per_session[index] if index < len(points_per_session) else 0
            if label and to_number(cell) > 0 and session_points > 0:
                daily[label] = session_points
        members.append(MemberRecord(team=identity[0], name=identity[1], daily=daily))

    return SheetTable(dates=[d for d in labels if d], members=members)


def parse_class(text: str) -> ClassTable:
    """Rows are ``[team, name, tier, total, ...attendance]``."""
    rows = split_rows(text)
    if not rows:
        return ClassTable()

    labels = rows[0][4:]
    members = []
    for row in rows[1:]:
        if len(row) < MIN_COLUMNS["class"]:
            continue
        identity = _identity(row)
        if identity is None:
            continue

        daily = {}
        for label, cell in zip(labels, row[4:]):
            attended = to_number(cell)
            if label and attended > 0:
                daily[label] = attended
        members.append(
            ClassMemberRecord(
                team=identity[0],
                name=identity[1],
                tier=row[2],
                total=to_number(row[3]),
                daily=daily,
            )
        )

    return ClassTable(dates=[d for d in labels if d], members=members)


def parse_timestamp(ts: str) -> float:
    """Seconds since the epoch for a form timestamp, 0 when unparseable.

    Accepts ISO-8601 and sheet exports such as ``2025/12/20 3:45:12 PM`` or
    ``2025/12/20 下午 3:45:12``. Naive times are read as UTC.
    """
    if not ts or not ts.strip():
        return 0.0
    ts = ts.strip()

    try:
        parsed = datetime.fromisoformat(ts.replace("Z", "+00:00"))
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=UTC)
        return parsed.timestamp()
    except ValueError:
        pass

    try:
        tokens = ts.split()
        date_parts = [int(p) for p in re.split(r"[/-]", tokens[0])]
        if len(date_parts) != 3:
            return 0.0
        if date_parts[0] > 31:
            year, month, day = date_parts
        else:
            month, day, year = date_parts

        period = None
        time_part = ""
        for token in tokens[1:]:
            upper = token.upper()
            for marker in _MORNING_MARKERS + _AFTERNOON_MARKERS:
                if upper.startswith(marker):
                    period = "am" if marker in _MORNING_MARKERS else "pm"
                    upper = upper[len(marker):]
                    break
            if ":" in upper:
                time_part = upper

        clock = [int(p) for p in time_part.split(":")] if time_part else []
        hour, minute, second = (clock + [0, 0, 0])[:3]
        if period == "pm" and hour < 12:
            hour += 12
        if period == "am" and hour == 12:
            hour = 0
        return datetime(year, month, day, hour, minute, second, tzinfo=UTC).timestamp()
    except (ValueError, IndexError):
        return 0.0


def submission_id(name: str, timestamp: str) -> str:
    digest = hashlib.sha1(f"{name}|{timestamp}".encode("utf-8")).hexdigest()
    return f"form_{digest[:12]}"


def parse_form(text: str) -> list[Submission]:
    """Rows are ``[timestamp, name, date, minutes, timeOfDay, thoughts, shareConsent]``.

    Returned newest first.
    """
    rows = split_rows(text)
    submissions = []
    for row in rows[1:]:
        if len(row) < MIN_COLUMNS["form"]:
            continue
        timestamp, name, date = row[0], row[1], row[2]
        minutes = to_number(row[3])
        if not name or not date or minutes <= 0:
            continue

        extra = row[4:7] + [""] * (7 - len(row))
        submissions.append(
            Submission(
                id=submission_id(name, timestamp),
                name=name,
                date=date,
                minutes=minutes,
                time_of_day=extra[0],
                thoughts=extra[1],
                share_consent=extra[2],
                timestamp=timestamp,
                source="form",
            )
        )

    submissions.sort(key=lambda s: parse_timestamp(s.timestamp), reverse=True)
    return submissions


def parse_sheet(text: str, schema: str):
    """Parse ``text`` with the named schema (meditation, practice, class or form)."""
    parsers = {
        "meditation": parse_meditation,
        "practice": parse_practice,
        "class": parse_class,
        "form": parse_form,
    }
    if schema not in parsers:
        raise ValueError(f"Unknown sheet schema: {schema}")
    return parsers[schema](text)


@dataclass
class SheetSnapshot:
    """Everything one round of fetches produced, already parsed."""

    meditation: SheetTable = field(default_factory=SheetTable)
    practice: SheetTable = field(default_factory=SheetTable)
    class_table: ClassTable = field(default_factory=ClassTable)
    submissions: list[Submission] = field(default_factory=list)
    sources: dict[str, str] = field(default_factory=dict)
    fetched_at: datetime = field(default_factory=lambda: datetime.now(UTC))


class SheetsClient:
    """Fetches the four published sheets concurrently."""

    def __init__(
        self,
        sheet_id: str = SHEET_ID,
        sheet_names: dict[str, str] | None = None,
        timeout: float = SHEETS_TIMEOUT_SECONDS,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.sheet_id = sheet_id
        self.sheet_names = sheet_names or dict(SHEET_NAMES)
        self.timeout = timeout
        self.transport = transport

    def sheet_url(self, sheet_name: str) -> str:
        return (
            f"https://docs.google.com/spreadsheets/d/{self.sheet_id}"
            f"/gviz/tq?tqx=out:csv&sheet={quote(sheet_name)}"
        )

    async def _fetch_text(self, client: httpx.AsyncClient, source: str) -> tuple[str, str]:
        sheet_name = self.sheet_names[source]
        try:
            response = await client.get(self.sheet_url(sheet_name))
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning(f"Fetch failed for {source} sheet '{sheet_name}': {e}")
            return "", SOURCE_UNREACHABLE

        text = response.text
        return text, SOURCE_OK if text.strip() else SOURCE_EMPTY

    async def fetch(self) -> SheetSnapshot:
        sources = ["meditation", "practice", "class", "form"]
        async with httpx.AsyncClient(
            timeout=self.timeout, transport=self.transport, follow_redirects=True
        ) as client:
            results = await asyncio.gather(*(self._fetch_text(client, s) for s in sources))

        texts = {source: text for source, (text, _) in zip(sources, results)}
        statuses = {source: status for source, (_, status) in zip(sources, results)}
        logger.info(f"Fetched sheets: {statuses}")

        return SheetSnapshot(
            meditation=parse_meditation(texts["meditation"]),
            practice=parse_practice(texts["practice"]),
            class_table=parse_class(texts["class"]),
            submissions=parse_form(texts["form"]),
            sources=statuses,
        )
