"""Tests for sheet CSV parsing."""
from datetime import UTC, datetime

import pytest

from sheets import (
    parse_class,
    parse_form,
    parse_meditation,
    parse_practice,
    parse_sheet,
    parse_timestamp,
    split_line,
    submission_id,
    to_number,
)

MEDITATION_CSV = """隊伍,姓名,總計,12/1,12/2,12/3
Team A,Alice,999,30,,15
Team A,Bob,0,0,20,0
Team B,Carol,5,"10",abc,5
,NoTeam,1,1,1,1
Team B,,1,1,1,1
short,row
"""

PRACTICE_CSV = """點數,,,10,0,20
隊伍,姓名,總計,12/1,12/2,12/3
Team A,Alice,,1,1,1
Team B,Carol,,0,2,1
"""

CLASS_CSV = """隊伍,姓名,級別,總計,12/1,12/2,12/3
Team A,Alice,初級,3,1,1,1
Team B,Dave,中級,1,,1,
Team B,Erin,中級
"""

FORM_CSV = """時間戳記,姓名,日期,分鐘,時段,心得,分享
2025/12/01 上午 7:00:00,Bob,2025/12/01,15,早上,,否
2025/12/02 下午 8:15:00,Alice,2025/12/02,20,晚上,"Calm, focused",是
2025/12/03 9:30:00 AM,Carol,2025/12/03,0,早上,,是
not a timestamp,Dave,2025/12/01,10
2025/12/03 9:30:00 AM,,2025/12/03,10,早上,,是
"""


class TestSplitLine:
    def test_quoted_delimiter_is_literal(self):
        assert split_line('"a,b",c') == ["a,b", "c"]

    def test_fields_are_trimmed(self):
        assert split_line(" a , b ,c ") == ["a", "b", "c"]

    def test_trailing_empty_field(self):
        assert split_line("a,b,") == ["a", "b", ""]


class TestToNumber:
    def test_plain_number(self):
        assert to_number("30") == 30

    def test_number_with_unit(self):
        assert to_number("12.5min") == 12.5

    def test_blank_and_text_are_zero(self):
        assert to_number("") == 0
        assert to_number("abc") == 0


class TestMeditation:
    def test_parses_members_and_recomputes_total(self):
        table = parse_meditation(MEDITATION_CSV)

        assert table.dates == ["12/1", "12/2", "12/3"]
        by_name = {m.name: m for m in table.members}
        assert set(by_name) == {"Alice", "Bob", "Carol"}

        alice = by_name["Alice"]
        assert alice.daily == {"12/1": 30, "12/3": 15}
        assert alice.total == 45  # sheet's 999 is ignored

    def test_only_positive_days_are_kept(self):
        table = parse_meditation(MEDITATION_CSV)
        bob = next(m for m in table.members if m.name == "Bob")
        assert bob.daily == {"12/2": 20}

    def test_total_always_matches_daily(self):
        for member in parse_meditation(MEDITATION_CSV).members:
            assert member.total == sum(member.daily.values())

    def test_empty_text(self):
        table = parse_meditation("")
        assert table.dates == []
        assert table.members == []


class TestPractice:
    def test_daily_value_is_points_per_session(self):
        table = parse_practice(PRACTICE_CSV)
        alice = next(m for m in table.members if m.name == "Alice")
        # 12/2 has zero points configured, so attendance there earns nothing
        assert alice.daily == {"12/1": 10, "12/3": 20}
        assert alice.total == 30

    def test_dates_come_from_second_row(self):
        assert parse_practice(PRACTICE_CSV).dates == ["12/1", "12/2", "12/3"]

    def test_attendance_required(self):
        carol = next(m for m in parse_practice(PRACTICE_CSV).members if m.name == "Carol")
        assert carol.daily == {"12/3": 20}

    def test_single_header_row_is_empty(self):
        assert parse_practice("點數,,,10\n").members == []


class TestClass:
    def test_points_are_fifty_per_attendance(self):
        table = parse_class(CLASS_CSV)
        alice = next(m for m in table.members if m.name == "Alice")
        assert alice.total == 3
        assert alice.points == 150
        assert alice.tier == "初級"

    def test_daily_attendance(self):
        dave = next(m for m in parse_class(CLASS_CSV).members if m.name == "Dave")
        assert dave.daily == {"12/2": 1}
        assert dave.points == 50

    def test_short_rows_skipped(self):
        names = [m.name for m in parse_class(CLASS_CSV).members]
        assert "Erin" not in names


class TestForm:
    def test_drops_invalid_rows(self):
        names = [s.name for s in parse_form(FORM_CSV)]
        assert "Carol" not in names  # zero minutes
        assert "" not in names
        assert len(names) == 3

    def test_sorted_newest_first_with_unparseable_last(self):
        names = [s.name for s in parse_form(FORM_CSV)]
        assert names == ["Alice", "Bob", "Dave"]

    def test_fields_and_stable_id(self):
        alice = parse_form(FORM_CSV)[0]
        assert alice.minutes == 20
        assert alice.thoughts == "Calm, focused"
        assert alice.time_of_day == "晚上"
        assert alice.share_consent == "是"
        assert alice.source == "form"
        assert alice.id == submission_id("Alice", "2025/12/02 下午 8:15:00")

    def test_missing_optional_columns(self):
        dave = parse_form(FORM_CSV)[-1]
        assert dave.time_of_day == ""
        assert dave.thoughts == ""

    def test_empty_text(self):
        assert parse_form("") == []


class TestParseTimestamp:
    def test_localized_afternoon_marker(self):
        expected = datetime(2025, 12, 2, 20, 15, tzinfo=UTC).timestamp()
        assert parse_timestamp("2025/12/02 下午 8:15:00") == expected

    def test_latin_marker_after_time(self):
        expected = datetime(2025, 12, 2, 0, 5, tzinfo=UTC).timestamp()
        assert parse_timestamp("2025/12/02 12:05:00 AM") == expected

    def test_noon_pm_stays_twelve(self):
        expected = datetime(2025, 12, 2, 12, 30, tzinfo=UTC).timestamp()
        assert parse_timestamp("2025/12/02 12:30:00 PM") == expected

    def test_iso_timestamp(self):
        expected = datetime(2025, 12, 2, 8, 0, tzinfo=UTC).timestamp()
        assert parse_timestamp("2025-12-02T08:00:00Z") == expected

    def test_garbage_is_zero(self):
        assert parse_timestamp("not a timestamp") == 0
        assert parse_timestamp("") == 0


def test_parse_sheet_dispatches():
    assert parse_sheet(CLASS_CSV, "class").members[0].points == 150
    assert len(parse_sheet(FORM_CSV, "form")) == 3


def test_parse_sheet_rejects_unknown_schema():
    with pytest.raises(ValueError):
        parse_sheet("", "attendance")
