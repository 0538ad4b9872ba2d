"""CareManager のユニットテスト"""

from dataclasses import replace
from datetime import date, datetime, time, timedelta, timezone

import pytest

from halloo.adapters.memory_store import InMemoryEntityStore
from halloo.adapters.outbox_sms import OutboxSMSSender
from halloo.domain.errors import (
    InvalidPhoneNumber,
    ProfileNotFound,
    QuotaExceeded,
    SendFailed,
    TaskNotFound,
)
from halloo.domain.models import (
    GalleryEventType,
    GalleryHistoryEvent,
    OutboundMessageType,
    ProfileCreatedData,
    ProfileStatus,
    SMSResponse,
    TaskFrequency,
    TaskStatus,
    Weekday,
)
from halloo.services.care_manager import CareManager
from halloo.services.dedup_ledger import profile_key

NOW = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)
UID = "caregiver-uid-1"
PHONE = "+15551234567"


class _CompletingStore(InMemoryEntityStore):
    """最初のタスク書き込みの直前に、返信による完了を1回反映する"""

    def __init__(self) -> None:
        super().__init__()
        self._pending = True

    def apply_transition(self, write):
        if self._pending and write.task is not None:
            self._pending = False
            t = write.task
            current = self.get_task(t.user_id, t.profile_id, t.id)
            self.upsert_task(
                replace(current, completion_count=current.completion_count + 1)
            )
        return super().apply_transition(write)


@pytest.fixture
def manager(store, outbox, clock, ledger, mock_blob_storage) -> CareManager:
    return CareManager(
        store, outbox, clock=clock, photo_storage=mock_blob_storage, ledger=ledger
    )


# ========== プロファイル ==========


class TestCreateProfile:
    def test_creates_pending_and_sends_confirmation(self, store, manager, outbox):
        profile = manager.create_profile(
            UID, "Mom", "(555) 123-4567", relationship="Mother", caregiver_name="Alice"
        )

        assert profile.id == PHONE
        assert profile.status is ProfileStatus.PENDING_CONFIRMATION
        assert store.get_profile(UID, PHONE) == profile
        [sent] = outbox.sent
        assert sent.to == PHONE
        assert sent.body == (
            "Hi Mom! Alice added you to Halloo care reminders. Reply YES to confirm."
        )
        assert store.get_user(UID).profile_count == 1

    def test_recreate_same_phone_upserts(self, store, manager, outbox):
        """同じ番号で作り直しても1件のまま（カウンタも増えない）"""
        manager.create_profile(UID, "Mom", "555-123-4567")
        manager.create_profile(UID, "Mother", "+15551234567")

        assert [p.name for p in store.list_profiles(UID)] == ["Mother"]
        assert store.get_user(UID).profile_count == 1
        assert len(outbox.sent) == 2

    def test_confirmed_profile_not_reset(self, store, manager, outbox, confirmed_profile):
        store.upsert_profile(confirmed_profile)

        profile = manager.create_profile(UID, "Mama", PHONE)

        assert profile.status is ProfileStatus.CONFIRMED
        assert profile.name == "Mama"
        assert outbox.sent == []

    def test_recreate_releases_confirmation_key(self, manager, ledger):
        ledger.mark_seen(profile_key(UID, PHONE))

        manager.create_profile(UID, "Mom", PHONE)

        assert not ledger.seen(profile_key(UID, PHONE))

    def test_invalid_phone(self, manager):
        with pytest.raises(InvalidPhoneNumber):
            manager.create_profile(UID, "Mom", "123")

    def test_send_failure_keeps_pending_profile(self, store, mock_sender, clock):
        mock_sender.send_sms.side_effect = SendFailed("invalid number", code=21211)
        manager = CareManager(store, mock_sender, clock=clock)

        with pytest.raises(SendFailed):
            manager.create_profile(UID, "Mom", PHONE)

        assert store.get_profile(UID, PHONE).is_pending


    def test_confirmation_counts_against_quota(self, store, manager):
        manager.create_profile(UID, "Mom", PHONE)

        assert store.get_user(UID).sms_quota_used == 1
        [log] = store.list_sms_logs(UID)
        assert log.message_type is OutboundMessageType.CONFIRMATION
        assert log.task_id is None

    def test_quota_exceeded_keeps_pending_profile(self, store, manager, outbox):
        store.reset_sms_quota(UID, NOW + timedelta(days=5))
        store.increment_sms_usage(UID, 50)

        with pytest.raises(QuotaExceeded):
            manager.create_profile(UID, "Mom", PHONE)

        assert store.get_profile(UID, PHONE).is_pending
        assert outbox.sent == []


class TestResendConfirmation:
    def test_resend_for_pending(self, store, manager, outbox, pending_profile):
        store.upsert_profile(pending_profile)

        manager.resend_confirmation(UID, PHONE)

        assert len(outbox.sent) == 1

    def test_no_resend_when_confirmed(self, store, manager, outbox, confirmed_profile):
        store.upsert_profile(confirmed_profile)

        manager.resend_confirmation(UID, PHONE)

        assert outbox.sent == []

    def test_missing_profile(self, manager):
        with pytest.raises(ProfileNotFound):
            manager.resend_confirmation(UID, PHONE)


class TestDeleteProfile:
    def test_cascades(self, store, manager, confirmed_profile, make_task, mock_blob_storage, ledger):
        store.upsert_profile(confirmed_profile)
        store.adjust_user_counters(UID, profiles=1, tasks=2)
        store.upsert_task(make_task(id="t1"))
        store.upsert_task(make_task(id="t2"))
        store.create_message(
            SMSResponse(
                id="SM" + "1" * 32,
                user_id=UID,
                profile_id=PHONE,
                text_response="",
                received_at=NOW,
                photo_storage_path=f"gallery/{UID}/SM{'1' * 32}.jpg",
            )
        )
        store.create_gallery_event(
            GalleryHistoryEvent(
                id="event-1",
                user_id=UID,
                profile_id=PHONE,
                event_type=GalleryEventType.PROFILE_CREATED,
                payload=ProfileCreatedData(profile_name="Mom"),
                created_at=NOW,
            )
        )
        ledger.mark_seen(profile_key(UID, PHONE))

        manager.delete_profile(UID, PHONE)

        assert store.get_profile(UID, PHONE) is None
        assert store.list_tasks(UID) == []
        assert store.list_messages(UID) == []
        assert store.list_gallery_events(UID) == []
        mock_blob_storage.delete.assert_called_once_with(f"gallery/{UID}/SM{'1' * 32}.jpg")
        user = store.get_user(UID)
        assert user.profile_count == 0
        assert user.task_count == 0
        assert not ledger.seen(profile_key(UID, PHONE))

    def test_missing_profile(self, manager):
        with pytest.raises(ProfileNotFound):
            manager.delete_profile(UID, PHONE)


# ========== タスク ==========


class TestCreateTask:
    @pytest.fixture(autouse=True)
    def _seed(self, store, confirmed_profile):
        store.upsert_profile(confirmed_profile)

    def test_daily_first_occurrence_after_now(self, store, manager):
        task = manager.create_task(UID, PHONE, "Take pills", time(8, 0))

        assert task.next_scheduled_date == datetime(2026, 3, 3, 8, 0, tzinfo=timezone.utc)
        assert task.deadline_minutes == 10
        assert task.status is TaskStatus.ACTIVE
        assert store.get_task(UID, PHONE, task.id) == task
        assert store.get_user(UID).task_count == 1

    def test_later_today(self, manager):
        task = manager.create_task(UID, PHONE, "Walk", time(17, 30))
        assert task.next_scheduled_date == datetime(2026, 3, 2, 17, 30, tzinfo=timezone.utc)

    def test_uses_profile_time_zone(self, store, manager, confirmed_profile):
        store.upsert_profile(replace(confirmed_profile, time_zone="America/New_York"))

        task = manager.create_task(UID, PHONE, "Walk", time(9, 0))

        assert task.time_zone == "America/New_York"
        # 09:00 UTC = 04:00 EST なので当日 09:00 EST (14:00 UTC)
        assert task.next_scheduled_date.astimezone(timezone.utc) == datetime(
            2026, 3, 2, 14, 0, tzinfo=timezone.utc
        )

    def test_once_without_date(self, manager):
        task = manager.create_task(
            UID, PHONE, "Doctor", time(8, 0), frequency=TaskFrequency.ONCE
        )
        assert task.start_date == date(2026, 3, 3)
        assert task.next_scheduled_date == datetime(2026, 3, 3, 8, 0, tzinfo=timezone.utc)

    def test_custom_days(self, manager):
        task = manager.create_task(
            UID,
            PHONE,
            "Yoga",
            time(10, 0),
            frequency=TaskFrequency.CUSTOM,
            custom_days=(Weekday.WEDNESDAY,),
        )
        assert task.next_scheduled_date.date() == date(2026, 3, 4)

    def test_custom_without_days_rejected(self, manager):
        with pytest.raises(ValueError):
            manager.create_task(
                UID, PHONE, "Yoga", time(10, 0), frequency=TaskFrequency.CUSTOM
            )

    def test_past_end_date_rejected(self, manager):
        with pytest.raises(ValueError):
            manager.create_task(
                UID, PHONE, "Pills", time(8, 0), end_date=date(2026, 3, 1)
            )

    def test_missing_profile(self, manager):
        with pytest.raises(ProfileNotFound):
            manager.create_task(UID, "+15559999999", "Pills", time(8, 0))


class TestTaskStatus:
    @pytest.fixture(autouse=True)
    def _seed(self, store, confirmed_profile, make_task):
        store.upsert_profile(confirmed_profile)
        store.upsert_task(make_task(next_scheduled_date=NOW - timedelta(days=3)))

    def test_pause(self, store, manager):
        assert manager.pause_task(UID, PHONE, "task-1").status is TaskStatus.PAUSED
        assert store.get_task(UID, PHONE, "task-1").status is TaskStatus.PAUSED

    def test_resume_skips_missed_occurrences(self, manager):
        manager.pause_task(UID, PHONE, "task-1")

        task = manager.resume_task(UID, PHONE, "task-1")

        assert task.status is TaskStatus.ACTIVE
        assert task.next_scheduled_date == NOW + timedelta(days=1)

    def test_pause_keeps_concurrent_completion(self, confirmed_profile, make_task, clock):
        """読み取り後に返信の完了が反映されても、停止で上書きしない"""
        store = _CompletingStore()
        store.upsert_profile(confirmed_profile)
        store.upsert_task(make_task(next_scheduled_date=NOW - timedelta(days=3)))
        manager = CareManager(store, OutboxSMSSender(), clock=clock)

        paused = manager.pause_task(UID, PHONE, "task-1")

        assert paused.status is TaskStatus.PAUSED
        assert paused.completion_count == 1
        assert store.get_task(UID, PHONE, "task-1") == paused

    def test_resume_without_upcoming_rejected(self, store, manager):
        store.upsert_task(
            replace(
                store.get_task(UID, PHONE, "task-1"),
                status=TaskStatus.PAUSED,
                end_date=date(2026, 2, 1),
            )
        )

        with pytest.raises(ValueError):
            manager.resume_task(UID, PHONE, "task-1")

        assert store.get_task(UID, PHONE, "task-1").status is TaskStatus.PAUSED

    def test_archive(self, manager):
        assert manager.archive_task(UID, PHONE, "task-1").status is TaskStatus.ARCHIVED

    def test_missing_task(self, manager):
        with pytest.raises(TaskNotFound):
            manager.pause_task(UID, PHONE, "nope")

    def test_list_tasks(self, manager):
        assert [t.id for t in manager.list_tasks(UID, PHONE)] == ["task-1"]
