"""繰り返しルールのユニットテスト

2026-03-02 は月曜日。America/New_York は 2026-03-08 に夏時間へ切り替わる。
"""

from dataclasses import replace
from datetime import date, datetime, time, timezone
from zoneinfo import ZoneInfo

import pytest

from halloo.domain.models import TaskFrequency, Weekday
from halloo.domain.recurrence import (
    advance_after_completion,
    ensure_aware,
    is_scheduled_on,
    next_occurrence,
    upcoming,
)

NY = ZoneInfo("America/New_York")


@pytest.fixture
def ny_task(make_task):
    """毎日 09:00 (New York) のタスク"""
    return make_task(
        time_zone="America/New_York",
        next_scheduled_date=datetime(2026, 3, 2, 9, 0, tzinfo=NY),
    )


def test_ensure_aware_treats_naive_as_utc():
    naive = datetime(2026, 3, 2, 9, 0)
    assert ensure_aware(naive) == datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


class TestNextOccurrence:
    def test_daily_next_day(self, ny_task):
        after = datetime(2026, 3, 2, 9, 0, tzinfo=NY)
        assert next_occurrence(ny_task, after) == datetime(2026, 3, 3, 9, 0, tzinfo=NY)

    def test_daily_same_day_before_time(self, ny_task):
        after = datetime(2026, 3, 2, 8, 0, tzinfo=NY)
        assert next_occurrence(ny_task, after) == datetime(2026, 3, 2, 9, 0, tzinfo=NY)

    def test_strictly_after(self, make_task):
        """ちょうど送信時刻の場合は次の日"""
        task = make_task()
        after = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)
        assert next_occurrence(task, after) == datetime(
            2026, 3, 3, 9, 0, tzinfo=timezone.utc
        )

    def test_weekdays_skip_weekend(self, ny_task):
        task = replace(ny_task, frequency=TaskFrequency.WEEKDAYS)
        friday = datetime(2026, 3, 6, 10, 0, tzinfo=NY)
        assert next_occurrence(task, friday) == datetime(2026, 3, 9, 9, 0, tzinfo=NY)

    def test_weekly_uses_start_date_weekday(self, ny_task):
        task = replace(
            ny_task, frequency=TaskFrequency.WEEKLY, start_date=date(2026, 3, 4)
        )
        after = datetime(2026, 3, 4, 10, 0, tzinfo=NY)
        assert next_occurrence(task, after) == datetime(2026, 3, 11, 9, 0, tzinfo=NY)

    def test_custom_days(self, ny_task):
        task = replace(
            ny_task,
            frequency=TaskFrequency.CUSTOM,
            custom_days=(Weekday.MONDAY, Weekday.THURSDAY),
        )
        monday = datetime(2026, 3, 2, 10, 0, tzinfo=NY)
        assert next_occurrence(task, monday) == datetime(2026, 3, 5, 9, 0, tzinfo=NY)

    def test_once_before_and_after(self, ny_task):
        task = replace(ny_task, frequency=TaskFrequency.ONCE, start_date=date(2026, 3, 2))
        before = datetime(2026, 3, 2, 8, 0, tzinfo=NY)
        after = datetime(2026, 3, 2, 10, 0, tzinfo=NY)
        assert next_occurrence(task, before) == datetime(2026, 3, 2, 9, 0, tzinfo=NY)
        assert next_occurrence(task, after) is None

    def test_end_date_stops_recurrence(self, ny_task):
        task = replace(ny_task, end_date=date(2026, 3, 3))
        after = datetime(2026, 3, 3, 10, 0, tzinfo=NY)
        assert next_occurrence(task, after) is None

    def test_future_start_date(self, ny_task):
        task = replace(ny_task, start_date=date(2026, 3, 10))
        after = datetime(2026, 3, 2, 10, 0, tzinfo=NY)
        assert next_occurrence(task, after) == datetime(2026, 3, 10, 9, 0, tzinfo=NY)

    def test_custom_without_days_has_no_occurrence(self, ny_task):
        task = replace(ny_task, frequency=TaskFrequency.CUSTOM, custom_days=())
        assert next_occurrence(task, datetime(2026, 3, 2, tzinfo=NY)) is None

    def test_local_time_kept_across_dst(self, ny_task):
        """夏時間の切り替え後もローカル 09:00 のまま（UTC では 1 時間ずれる）"""
        before_switch = next_occurrence(ny_task, datetime(2026, 3, 6, 10, 0, tzinfo=NY))
        after_switch = next_occurrence(ny_task, datetime(2026, 3, 7, 10, 0, tzinfo=NY))
        assert before_switch.astimezone(timezone.utc).hour == 14
        assert after_switch.astimezone(timezone.utc).hour == 13


class TestIsScheduledOn:
    def test_weekdays(self, make_task):
        task = make_task(frequency=TaskFrequency.WEEKDAYS)
        assert is_scheduled_on(task, date(2026, 3, 6))
        assert not is_scheduled_on(task, date(2026, 3, 7))

    def test_outside_range(self, make_task):
        task = make_task(start_date=date(2026, 3, 3), end_date=date(2026, 3, 5))
        assert not is_scheduled_on(task, date(2026, 3, 2))
        assert is_scheduled_on(task, date(2026, 3, 4))
        assert not is_scheduled_on(task, date(2026, 3, 6))


class TestAdvanceAfterCompletion:
    def test_moves_past_now(self, make_task):
        task = make_task()
        now = datetime(2026, 3, 2, 9, 5, tzinfo=timezone.utc)
        assert advance_after_completion(task, now) == datetime(
            2026, 3, 3, 9, 0, tzinfo=timezone.utc
        )

    def test_keeps_already_advanced_date(self, make_task):
        """期限切れ処理で先に進んでいる場合はそのまま"""
        tomorrow = datetime(2026, 3, 3, 9, 0, tzinfo=timezone.utc)
        task = make_task(next_scheduled_date=tomorrow)
        now = datetime(2026, 3, 2, 9, 30, tzinfo=timezone.utc)
        assert advance_after_completion(task, now) == tomorrow

    def test_once_has_no_next(self, make_task):
        task = make_task(frequency=TaskFrequency.ONCE, start_date=date(2026, 3, 2))
        now = datetime(2026, 3, 2, 9, 5, tzinfo=timezone.utc)
        assert advance_after_completion(task, now) is None


def test_upcoming_lists_next_occurrences(make_task):
    task = make_task(scheduled_time=time(20, 30))
    result = upcoming(task, datetime(2026, 3, 2, 21, 0, tzinfo=timezone.utc), 3)
    assert [d.day for d in result] == [3, 4, 5]
    assert all(d.hour == 20 and d.minute == 30 for d in result)


def test_upcoming_stops_when_exhausted(make_task):
    task = make_task(frequency=TaskFrequency.ONCE, start_date=date(2026, 3, 3))
    result = upcoming(task, datetime(2026, 3, 2, tzinfo=timezone.utc), 3)
    assert len(result) == 1
