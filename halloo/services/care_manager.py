"""CareManager - 介護者側のプロファイル・タスク管理

プロファイル作成時に確認 SMS を送り、受信者の "YES" 返信で
Reconciler が confirmed に変える。タスクは confirmed のプロファイルにだけ
リマインダーが送られる（未確認でも作成はできる）。
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import replace
from datetime import date, datetime, time, timezone

from halloo.domain.errors import ProfileNotFound, SendFailed, TaskNotFound
from halloo.domain.ids import derive_profile_id, derive_task_id
from halloo.domain.models import (
    ElderlyProfile,
    OutboundMessageType,
    ProfileStatus,
    Task,
    TaskFrequency,
    TaskStatus,
    Weekday,
)
from halloo.domain.ports import BlobStorage, EntityStore, SMSSender
from halloo.domain.recurrence import next_occurrence
from halloo.services.dedup_ledger import DedupLedger, profile_key
from halloo.services.outbound import OutboundMessenger
from halloo.services.retry import update_task

logger = logging.getLogger(__name__)

CONFIRMATION_TEMPLATE = (
    "Hi {name}! {caregiver} added you to Halloo care reminders. "
    "Reply YES to confirm."
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CareManager:
    def __init__(
        self,
        store: EntityStore,
        sender: SMSSender,
        default_deadline_minutes: int = 10,
        clock: Callable[[], datetime] = _utcnow,
        photo_storage: BlobStorage | None = None,
        ledger: DedupLedger | None = None,
        messenger: OutboundMessenger | None = None,
    ) -> None:
        self._store = store
        self._messenger = messenger or OutboundMessenger(store, sender, clock=clock)
        self._photos = photo_storage
        self._ledger = ledger
        self._default_deadline = default_deadline_minutes
        self._clock = clock

    # ── profiles ────────────────────────────────────────────────────────────

    def create_profile(
        self,
        user_id: str,
        name: str,
        phone_number: str,
        relationship: str = "",
        time_zone: str = "UTC",
        photo_url: str | None = None,
        caregiver_name: str = "Your caregiver",
    ) -> ElderlyProfile:
        """
        確認待ちプロファイルを作成し、確認 SMS を送信する。

        同じ電話番号で作り直した場合は同じドキュメントの上書きになる（ID = 電話番号）。
        既に confirmed のプロファイルは状態を維持し、確認 SMS も送らない。

        Raises:
            InvalidPhoneNumber: 電話番号を E.164 に正規化できない
            SendFailed: 確認 SMS の送信失敗（プロファイルは pending のまま残る）
            QuotaExceeded: 送信枠を使い切っている（プロファイルは pending のまま残る）
        """
        profile_id = derive_profile_id(phone_number)
        existing = self._store.get_profile(user_id, profile_id)

        if existing is not None and existing.is_confirmed:
            updated = replace(
                existing,
                name=name,
                relationship=relationship,
                time_zone=time_zone,
                photo_url=photo_url or existing.photo_url,
            )
            self._store.upsert_profile(updated)
            logger.info("Updated confirmed profile: user_id=%s, profile_id=%s", user_id, profile_id)
            return updated

        profile = ElderlyProfile(
            id=profile_id,
            user_id=user_id,
            name=name,
            phone_number=profile_id,
            relationship=relationship,
            status=ProfileStatus.PENDING_CONFIRMATION,
            time_zone=time_zone,
            photo_url=photo_url,
            created_at=existing.created_at if existing else self._clock(),
        )
        self._store.upsert_profile(profile)
        self._forget_confirmation(user_id, profile_id)
        if existing is None:
            self._store.adjust_user_counters(user_id, profiles=1)
        logger.info("Created profile: user_id=%s, profile_id=%s", user_id, profile_id)

        self._send_confirmation(profile, caregiver_name)
        return profile

    def resend_confirmation(
        self, user_id: str, profile_id: str, caregiver_name: str = "Your caregiver"
    ) -> ElderlyProfile:
        profile = self._require_profile(user_id, profile_id)
        if profile.is_confirmed:
            logger.info("Profile already confirmed, not resending: profile_id=%s", profile_id)
            return profile
        self._send_confirmation(profile, caregiver_name)
        return profile

    def delete_profile(self, user_id: str, profile_id: str) -> None:
        """プロファイルと配下のタスク・メッセージ・ギャラリーイベントを削除する"""
        self._require_profile(user_id, profile_id)
        if self._photos is not None:
            for message in self._store.list_messages(user_id):
                if message.profile_id == profile_id and message.photo_storage_path:
                    self._photos.delete(message.photo_storage_path)
        deleted_tasks = self._store.delete_profile(user_id, profile_id)
        self._forget_confirmation(user_id, profile_id)
        self._store.adjust_user_counters(user_id, profiles=-1, tasks=-deleted_tasks)
        logger.info(
            "Deleted profile: user_id=%s, profile_id=%s, tasks=%d",
            user_id,
            profile_id,
            deleted_tasks,
        )

    def list_profiles(self, user_id: str) -> list[ElderlyProfile]:
        return self._store.list_profiles(user_id)

    # ── tasks ───────────────────────────────────────────────────────────────

    def create_task(
        self,
        user_id: str,
        profile_id: str,
        title: str,
        scheduled_time: time,
        frequency: TaskFrequency = TaskFrequency.DAILY,
        description: str = "",
        custom_days: tuple[Weekday, ...] = (),
        start_date: date | None = None,
        end_date: date | None = None,
        deadline_minutes: int | None = None,
        requires_photo: bool = False,
    ) -> Task:
        """
        タスクを作成する。初回の next_scheduled_date は現在時刻より後の最初の予定。

        Raises:
            ProfileNotFound: プロファイルが存在しない
            ValueError: 予定が1件も無い（custom で曜日未指定、終了日が過去など）
        """
        profile = self._require_profile(user_id, profile_id)
        if frequency is TaskFrequency.CUSTOM and not custom_days:
            raise ValueError("custom frequency requires at least one day")

        now = self._clock()
        draft = Task(
            id=derive_task_id(),
            user_id=user_id,
            profile_id=profile_id,
            title=title,
            scheduled_time=scheduled_time,
            next_scheduled_date=now,
            frequency=frequency,
            description=description,
            custom_days=tuple(custom_days),
            start_date=start_date,
            end_date=end_date,
            time_zone=profile.time_zone,
            deadline_minutes=deadline_minutes or self._default_deadline,
            requires_photo=requires_photo,
            created_at=now,
        )
        if frequency is TaskFrequency.ONCE and start_date is None:
            # 単発で日付指定なし → 次にその時刻が来る日
            first = next_occurrence(replace(draft, frequency=TaskFrequency.DAILY), now)
        else:
            first = next_occurrence(draft, now)
        if first is None:
            raise ValueError("task has no upcoming occurrence")

        if frequency is TaskFrequency.ONCE and start_date is None:
            task = replace(draft, next_scheduled_date=first, start_date=first.date())
        else:
            task = replace(draft, next_scheduled_date=first)
        self._store.upsert_task(task)
        self._store.adjust_user_counters(user_id, tasks=1)
        logger.info(
            "Created task: user_id=%s, profile_id=%s, task_id=%s, next=%s",
            user_id,
            profile_id,
            task.id,
            first.isoformat(),
        )
        return task

    def list_tasks(self, user_id: str, profile_id: str) -> list[Task]:
        self._require_profile(user_id, profile_id)
        return self._store.list_tasks(user_id, profile_id)

    def pause_task(self, user_id: str, profile_id: str, task_id: str) -> Task:
        return self._set_status(user_id, profile_id, task_id, TaskStatus.PAUSED)

    def resume_task(self, user_id: str, profile_id: str, task_id: str) -> Task:
        """再開時は停止中に過ぎた予定を飛ばして次回予定を計算し直す"""
        task = self._require_task(user_id, profile_id, task_id)
        now = self._clock()

        def resume(current: Task) -> Task:
            next_date = next_occurrence(current, now)
            if next_date is None:
                raise ValueError("task has no upcoming occurrence")
            return replace(current, status=TaskStatus.ACTIVE, next_scheduled_date=next_date)

        resumed = update_task(self._store, task, resume)
        if resumed is None:
            raise TaskNotFound(task_id)
        logger.info(
            "Task resumed: task_id=%s, next=%s",
            task_id,
            resumed.next_scheduled_date.isoformat(),
        )
        return resumed

    def archive_task(self, user_id: str, profile_id: str, task_id: str) -> Task:
        return self._set_status(user_id, profile_id, task_id, TaskStatus.ARCHIVED)

    # ── helpers ─────────────────────────────────────────────────────────────

    def _forget_confirmation(self, user_id: str, profile_id: str) -> None:
        # 同じ番号で作り直したプロファイルは再度確認を受け付ける
        if self._ledger is not None:
            self._ledger.release(profile_key(user_id, profile_id))

    def _send_confirmation(self, profile: ElderlyProfile, caregiver_name: str) -> None:
        body = CONFIRMATION_TEMPLATE.format(name=profile.name, caregiver=caregiver_name)
        try:
            sid = self._messenger.send(profile, body, OutboundMessageType.CONFIRMATION)
        except SendFailed:
            logger.error(
                "Confirmation SMS failed: user_id=%s, profile_id=%s",
                profile.user_id,
                profile.id,
            )
            raise
        logger.info("Confirmation SMS sent: profile_id=%s, sid=%s", profile.id, sid)

    def _set_status(
        self, user_id: str, profile_id: str, task_id: str, status: TaskStatus
    ) -> Task:
        task = self._require_task(user_id, profile_id, task_id)
        updated = update_task(
            self._store, task, lambda current: replace(current, status=status)
        )
        if updated is None:
            raise TaskNotFound(task_id)
        logger.info("Task status changed: task_id=%s, status=%s", task_id, status.value)
        return updated

    def _require_profile(self, user_id: str, profile_id: str) -> ElderlyProfile:
        profile = self._store.get_profile(user_id, profile_id)
        if profile is None:
            raise ProfileNotFound(profile_id)
        return profile

    def _require_task(self, user_id: str, profile_id: str, task_id: str) -> Task:
        task = self._store.get_task(user_id, profile_id, task_id)
        if task is None:
            raise TaskNotFound(task_id)
        return task
