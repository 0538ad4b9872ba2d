"""繰り返しルール - タスクの次回送信日時の計算

時刻は全てタスクの time_zone（IANA 名）のローカル時刻で解釈する。
戻り値は tz-aware な datetime。
"""

from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
from zoneinfo import ZoneInfo

from halloo.domain.models import Task, TaskFrequency, TaskStatus, Weekday

# 2週間先まで探して見つからなければ次回なし
_LOOKAHEAD_DAYS = 14


def ensure_aware(dt: datetime) -> datetime:
    """naive な datetime は UTC とみなす"""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def _zone(task: Task) -> ZoneInfo:
    return ZoneInfo(task.time_zone)


def _anchor_date(task: Task) -> date:
    """ONCE / WEEKLY の基準日（start_date が無ければ現在の next_scheduled_date）"""
    if task.start_date is not None:
        return task.start_date
    return ensure_aware(task.next_scheduled_date).astimezone(_zone(task)).date()


def is_scheduled_on(task: Task, day: date) -> bool:
    """指定日（ローカル日付）が送信日かどうか"""
    if task.start_date is not None and day < task.start_date:
        return False
    if task.end_date is not None and day > task.end_date:
        return False

    freq = task.frequency
    if freq is TaskFrequency.ONCE:
        return day == _anchor_date(task)
    if freq is TaskFrequency.DAILY:
        return True
    if freq is TaskFrequency.WEEKDAYS:
        return day.weekday() < 5
    if freq is TaskFrequency.WEEKLY:
        return day.weekday() == _anchor_date(task).weekday()
    # CUSTOM
    return Weekday.from_date(day) in task.custom_days


def occurrence_on(task: Task, day: date) -> datetime:
    """指定日の送信日時"""
    return datetime.combine(day, task.scheduled_time, tzinfo=_zone(task))


def next_occurrence(task: Task, after: datetime) -> datetime | None:
    """
    after より厳密に後の最初の送信日時を返す。

    Returns:
        次回送信日時。ONCE で送信済み、end_date 超過、該当曜日なしの場合は None
    """
    after = ensure_aware(after)
    day = after.astimezone(_zone(task)).date()
    if task.start_date is not None and day < task.start_date:
        day = task.start_date

    for _ in range(_LOOKAHEAD_DAYS + 1):
        if task.end_date is not None and day > task.end_date:
            return None
        if is_scheduled_on(task, day):
            candidate = occurrence_on(task, day)
            if candidate > after:
                return candidate
        day += timedelta(days=1)
    return None


def advance_after_completion(task: Task, now: datetime) -> datetime | None:
    """
    完了（またはタイムアウト）処理後の next_scheduled_date を決める。

    既に未来に進んでいる場合はそのまま（期限切れで先送り済みの遅延返信など）。
    """
    now = ensure_aware(now)
    current = ensure_aware(task.next_scheduled_date)
    if current > now:
        return current
    return next_occurrence(task, now)


def closed_status(task: Task) -> TaskStatus:
    """次回予定が無くなったタスクの状態（単発は archived、期間終了は expired）"""
    if task.frequency is TaskFrequency.ONCE:
        return TaskStatus.ARCHIVED
    return TaskStatus.EXPIRED


def upcoming(task: Task, after: datetime, count: int) -> list[datetime]:
    """after 以降の送信予定を最大 count 件返す"""
    result: list[datetime] = []
    cursor = ensure_aware(after)
    while len(result) < count:
        nxt = next_occurrence(task, cursor)
        if nxt is None:
            break
        result.append(nxt)
        cursor = nxt
    return result
