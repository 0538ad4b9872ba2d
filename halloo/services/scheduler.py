"""ReminderScheduler - 期限が来たタスクのリマインダー送信と期限切れ処理

tick() 1回で、送信予定時刻を過ぎた active タスクを1件ずつ処理する:

1. 今回の予定分をまだ送っていない → リマインダー SMS を送信（失敗時は再試行）
2. 送信済みで返信待ちのまま deadline_minutes 経過 → 期限切れとして次回へ進める
3. 次回予定が無い → 単発は archived、期間終了は expired

1件の失敗は他のタスクの処理を止めない。送信に失敗したタスクは
next_scheduled_date を変えないので、次の tick で再度対象になる。

タスクへの書き込みは読み取り時点から変わっていない場合のみ行う（update_task）。
送信中や期限切れ判定中に返信の反映が割り込んでも、その完了を上書きしない。

送信は OutboundMessenger 経由（送信枠・送信ログ）。送信枠の超過と受信者の STOP
（Twilio 21610）は再試行しない。
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import replace
from datetime import datetime, timezone

from halloo.domain.errors import QuotaExceeded, SendFailed, StoreWriteFailed
from halloo.domain.models import (
    ElderlyProfile,
    OutboundMessageType,
    SchedulerReport,
    Task,
)
from halloo.domain.ports import EntityStore, SMSSender
from halloo.domain.recurrence import advance_after_completion, closed_status, ensure_aware
from halloo.services.outbound import OutboundMessenger
from halloo.services.retry import update_task

logger = logging.getLogger(__name__)

REMINDER_TEMPLATE = (
    "Hi {name}, time for: {title}. Reply DONE when finished or send a photo."
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def render_reminder(profile: ElderlyProfile, task: Task) -> str:
    return REMINDER_TEMPLATE.format(name=profile.name, title=task.title)


class ReminderScheduler:
    """
    リマインダー送信ループ。

    Cloud Scheduler からの /worker/dispatch-reminders 呼び出しでは tick() を1回、
    CLI では run_forever() で一定間隔ごとに tick() を呼ぶ。
    """

    def __init__(
        self,
        store: EntityStore,
        sender: SMSSender,
        max_send_attempts: int = 3,
        retry_backoff_seconds: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = _utcnow,
        monotonic: Callable[[], float] = time.monotonic,
        messenger: OutboundMessenger | None = None,
    ) -> None:
        """
        Args:
            store: エンティティストア
            sender: SMS 送信
            max_send_attempts: 1タスクあたりの送信試行回数
            retry_backoff_seconds: 再試行の待ち時間（試行回数に比例）
            sleep: 待機関数（テストで差し替える）
            clock: 現在時刻
            monotonic: tick の時間予算計測用
            messenger: 送信経路（省略時は store / sender / clock から作る）
        """
        if max_send_attempts < 1:
            raise ValueError("max_send_attempts must be >= 1")
        self._store = store
        self._max_attempts = max_send_attempts
        self._backoff = retry_backoff_seconds
        self._sleep = sleep
        self._clock = clock
        self._monotonic = monotonic
        self._messenger = messenger or OutboundMessenger(store, sender, clock=clock)

    def tick(
        self, now: datetime | None = None, time_budget_seconds: float | None = None
    ) -> SchedulerReport:
        """
        期限が来たタスクを1巡処理する。

        Args:
            now: 基準時刻（省略時は clock()）
            time_budget_seconds: この時間を超えたら残りは次の tick に回す

        Returns:
            SchedulerReport: タスク ID の振り分け結果
        """
        now = ensure_aware(now or self._clock())
        report = SchedulerReport()
        started = self._monotonic()

        due = self._store.list_due_tasks(now)
        logger.info("Scheduler tick: due=%d, now=%s", len(due), now.isoformat())

        profiles: dict[tuple[str, str], ElderlyProfile | None] = {}
        for index, task in enumerate(due):
            if (
                time_budget_seconds is not None
                and self._monotonic() - started >= time_budget_seconds
            ):
                remaining = [t.id for t in due[index:]]
                logger.warning(
                    "Scheduler time budget exhausted: deferred=%d", len(remaining)
                )
                report.skipped.extend(remaining)
                break

            key = (task.user_id, task.profile_id)
            if key not in profiles:
                profiles[key] = self._store.get_profile(task.user_id, task.profile_id)
            try:
                self._process(task, profiles[key], now, report)
            except StoreWriteFailed:
                logger.exception("Scheduler write failed: task_id=%s", task.id)
                report.skipped.append(task.id)
            if report.opted_out and report.opted_out[-1] == task.id:
                # 同じ受信者の残りのタスクには送らない
                profiles[key] = None

        logger.info(
            "Scheduler tick done: dispatched=%d, send_failures=%d, overdue=%d, "
            "closed=%d, skipped=%d, quota_exceeded=%d, opted_out=%d",
            len(report.dispatched),
            len(report.send_failures),
            len(report.overdue),
            len(report.closed),
            len(report.skipped),
            len(report.quota_exceeded),
            len(report.opted_out),
        )
        return report

    def run_forever(
        self, interval_seconds: float, stop_event: threading.Event | None = None
    ) -> None:
        """stop_event がセットされるまで interval_seconds ごとに tick() する"""
        stop_event = stop_event or threading.Event()
        logger.info("Scheduler loop started: interval=%ss", interval_seconds)
        while not stop_event.is_set():
            try:
                self.tick(time_budget_seconds=interval_seconds)
            except Exception:
                logger.exception("Scheduler tick failed")
            stop_event.wait(interval_seconds)
        logger.info("Scheduler loop stopped")

    # ── 1タスク分 ──────────────────────────────────────────────────────────

    def _process(
        self,
        task: Task,
        profile: ElderlyProfile | None,
        now: datetime,
        report: SchedulerReport,
    ) -> None:
        if profile is None or not profile.is_confirmed:
            logger.debug("Skip task, profile not confirmed: task_id=%s", task.id)
            report.skipped.append(task.id)
            return
        if profile.sms_opted_out:
            logger.debug("Skip task, recipient opted out: task_id=%s", task.id)
            report.skipped.append(task.id)
            return

        if not self._dispatched_for_current(task):
            self._dispatch(task, profile, now, report)
            return

        if task.is_awaiting_response:
            deadline = task.response_deadline
            if deadline is not None and now < ensure_aware(deadline):
                report.skipped.append(task.id)
                return
            self._advance(task, now, report, overdue=True)
            return

        # 完了済みだが next_scheduled_date が進んでいない
        self._advance(task, now, report, overdue=False)

    @staticmethod
    def _dispatched_for_current(task: Task) -> bool:
        if task.last_reminder_sent_at is None:
            return False
        return ensure_aware(task.last_reminder_sent_at) >= ensure_aware(
            task.next_scheduled_date
        )

    def _dispatch(
        self,
        task: Task,
        profile: ElderlyProfile,
        now: datetime,
        report: SchedulerReport,
    ) -> None:
        body = render_reminder(profile, task)
        for attempt in range(1, self._max_attempts + 1):
            try:
                sid = self._messenger.send(
                    profile, body, OutboundMessageType.TASK_REMINDER, task=task, now=now
                )
            except QuotaExceeded:
                report.quota_exceeded.append(task.id)
                return
            except SendFailed as e:
                logger.warning(
                    "Reminder send failed: task_id=%s, attempt=%d/%d, code=%s, error=%s",
                    task.id,
                    attempt,
                    self._max_attempts,
                    e.code,
                    e,
                )
                if e.is_opt_out:
                    report.opted_out.append(task.id)
                    return
                if e.is_permanent:
                    break
                if attempt < self._max_attempts:
                    self._sleep(self._backoff * attempt)
                continue

            written = update_task(
                self._store,
                task,
                lambda current: replace(
                    current,
                    last_reminder_sent_at=now,
                    last_reminder_sid=sid,
                    is_overdue=False,
                ),
            )
            if written is None:
                logger.warning("Reminder sent but task is gone: task_id=%s", task.id)
            logger.info(
                "Reminder sent: task_id=%s, sid=%s",
                task.id,
                sid,
                extra={"extra_fields": {"task_id": task.id, "profile_id": task.profile_id}},
            )
            report.dispatched.append(task.id)
            return

        logger.error("Reminder send gave up: task_id=%s", task.id)
        report.send_failures.append(task.id)

    def _advance(
        self, task: Task, now: datetime, report: SchedulerReport, overdue: bool
    ) -> None:
        def advance(current: Task) -> Task | None:
            # 返信が反映済み、または停止されていれば何もしない
            if current.completion_count != task.completion_count or not current.is_active:
                return None
            next_date = advance_after_completion(current, now)
            updated = replace(
                current,
                is_overdue=overdue or current.is_overdue,
                missed_count=current.missed_count + (1 if overdue else 0),
            )
            if next_date is None:
                return replace(updated, status=closed_status(current))
            return replace(updated, next_scheduled_date=next_date)

        written = update_task(self._store, task, advance)
        if written is None:
            report.skipped.append(task.id)
            return

        if not written.is_active:
            logger.info(
                "Task closed: task_id=%s, status=%s", task.id, written.status.value
            )
            report.closed.append(task.id)
        elif overdue:
            logger.info(
                "Task overdue: task_id=%s, next=%s",
                task.id,
                ensure_aware(written.next_scheduled_date).isoformat(),
            )
        if overdue:
            report.overdue.append(task.id)
