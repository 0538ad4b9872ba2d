"""SyncCoordinator / EventBus / Projection のユニットテスト"""

import threading
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

from halloo.domain.errors import StoreWriteFailed
from halloo.domain.models import ProfileStatus, SMSResponse
from halloo.services.reconciler import Reconciler
from halloo.services.sync_coordinator import (
    EventBus,
    ProfileUpdated,
    Projection,
    SMSResponseReceived,
    SyncCoordinator,
    TaskUpdated,
    bind_reconciler,
)

NOW = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)
UID = "caregiver-uid-1"
PHONE = "+15551234567"


class _FlakyStore:
    """apply_transition を指定回数だけ失敗させるラッパー"""

    def __init__(self, inner, failures: int) -> None:
        self._inner = inner
        self.failures = failures

    def apply_transition(self, write):
        if self.failures > 0:
            self.failures -= 1
            raise StoreWriteFailed("deadline exceeded")
        return self._inner.apply_transition(write)

    def __getattr__(self, name):
        return getattr(self._inner, name)


def _raw(text: str) -> SMSResponse:
    """外部（Cloud Function 等）が保存した未処理メッセージ"""
    return SMSResponse(
        id="SM" + "c" * 32,
        user_id=UID,
        profile_id=PHONE,
        text_response=text,
        received_at=NOW + timedelta(minutes=1),
    )


# ========== EventBus ==========


class TestEventBus:
    def test_delivers_in_publish_order(self, make_task):
        bus = EventBus()
        received = []
        bus.subscribe(TaskUpdated, lambda e: received.append(e.task.completion_count))

        for i in range(50):
            bus.publish(TaskUpdated(make_task(completion_count=i)))

        assert received == list(range(50))

    def test_typed_and_wildcard_subscribers(self, make_task, make_profile):
        bus = EventBus()
        typed, wildcard = [], []
        bus.subscribe(ProfileUpdated, typed.append)
        bus.subscribe(None, wildcard.append)

        assert bus.publish(ProfileUpdated(make_profile())) == 2
        assert bus.publish(TaskUpdated(make_task())) == 1

        assert len(typed) == 1
        assert len(wildcard) == 2

    def test_failing_subscriber_does_not_block_others(self, make_profile):
        bus = EventBus()
        received = []

        def broken(event):
            raise RuntimeError("boom")

        bus.subscribe(ProfileUpdated, broken)
        bus.subscribe(ProfileUpdated, received.append)

        bus.publish(ProfileUpdated(make_profile()))

        assert len(received) == 1

    def test_unsubscribe(self, make_profile):
        bus = EventBus()
        received = []
        unsubscribe = bus.subscribe(ProfileUpdated, received.append)

        unsubscribe()
        bus.publish(ProfileUpdated(make_profile()))

        assert received == []

    def test_same_type_serialized_across_threads(self, make_task):
        """同じ型のイベントは同時に2つのハンドラ呼び出しにならない"""
        bus = EventBus()
        active = []
        overlaps = []
        guard = threading.Lock()

        def handler(event):
            with guard:
                active.append(1)
                if len(active) > 1:
                    overlaps.append(1)
            with guard:
                active.pop()

        bus.subscribe(TaskUpdated, handler)
        threads = [
            threading.Thread(target=bus.publish, args=(TaskUpdated(make_task()),))
            for _ in range(20)
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert overlaps == []


# ========== SyncCoordinator ==========


class TestSyncCoordinator:
    def test_start_delivers_snapshot(self, store, confirmed_profile, reminded_task):
        store.upsert_profile(confirmed_profile)
        store.upsert_task(reminded_task)
        bus = EventBus()
        projection = Projection(bus)
        coordinator = SyncCoordinator(store, bus)

        coordinator.start(UID)

        assert coordinator.is_running
        assert set(projection.profiles) == {PHONE}
        assert [t.id for t in projection.tasks_for(PHONE)] == ["task-1"]

    def test_live_changes_forwarded(self, store, pending_profile):
        bus = EventBus()
        projection = Projection(bus)
        coordinator = SyncCoordinator(store, bus)
        coordinator.start(UID)

        store.upsert_profile(pending_profile)
        store.upsert_profile(replace(pending_profile, status=ProfileStatus.CONFIRMED))

        assert projection.profiles[PHONE].status is ProfileStatus.CONFIRMED

    def test_restart_redelivers_without_duplicates(self, store, confirmed_profile):
        """再購読で全件が再配信されても Projection の件数は変わらない"""
        store.upsert_profile(confirmed_profile)
        bus = EventBus()
        projection = Projection(bus)
        received = []
        bus.subscribe(ProfileUpdated, received.append)
        coordinator = SyncCoordinator(store, bus)

        coordinator.start(UID)
        coordinator.restart()

        assert len(received) == 2
        assert len(projection.profiles) == 1

    def test_stop_ends_delivery(self, store, pending_profile):
        bus = EventBus()
        received = []
        bus.subscribe(None, received.append)
        coordinator = SyncCoordinator(store, bus)
        coordinator.start(UID)

        coordinator.stop()
        store.upsert_profile(pending_profile)

        assert not coordinator.is_running
        assert received == []

    def test_restart_before_start_raises(self, store):
        with pytest.raises(RuntimeError):
            SyncCoordinator(store, EventBus()).restart()

    def test_removed_profile_leaves_projection(self, store, confirmed_profile):
        store.upsert_profile(confirmed_profile)
        bus = EventBus()
        projection = Projection(bus)
        SyncCoordinator(store, bus).start(UID)

        store.delete_profile(UID, PHONE)

        assert projection.profiles == {}


# ========== Reconciler 連携 ==========


class TestBindReconciler:
    def test_external_message_confirms_profile(self, store, reconciler, pending_profile):
        """外部が保存した "YES" を購読経由で照合し、ギャラリーに1件届く"""
        store.upsert_profile(pending_profile)
        bus = EventBus()
        projection = Projection(bus)
        bind_reconciler(bus, reconciler)
        coordinator = SyncCoordinator(store, bus)
        coordinator.start(UID)

        store.create_message(
            SMSResponse(
                id="SM" + "c" * 32,
                user_id=UID,
                profile_id=PHONE,
                text_response="YES",
                received_at=NOW + timedelta(minutes=1),
            )
        )

        assert store.get_profile(UID, PHONE).is_confirmed
        assert len(projection.gallery_events) == 1

        # 再購読しても追加のイベントは出ない
        coordinator.restart()
        assert len(store.list_gallery_events(UID)) == 1

    def test_cold_start_over_confirmed_history(self, store, reconciler, make_profile):
        """確認済み20件と過去の確認メッセージを起動時に全件受けてもイベント0件"""
        for i in range(20):
            phone = f"+1555000{i:04d}"
            store.upsert_profile(
                make_profile(id=phone, phone_number=phone, status=ProfileStatus.CONFIRMED)
            )
            store.create_message(
                SMSResponse(
                    id=f"SM{i:032x}",
                    user_id=UID,
                    profile_id=phone,
                    text_response="yes",
                    received_at=NOW - timedelta(days=1),
                )
            )
        bus = EventBus()
        projection = Projection(bus)
        bind_reconciler(bus, reconciler)

        SyncCoordinator(store, bus).start(UID)

        assert len(projection.messages) == 20
        assert projection.gallery_events == {}
        assert store.list_gallery_events(UID) == []

    def test_removed_message_ignored(self):
        bus = EventBus()
        fake_reconciler = MagicMock()
        bind_reconciler(bus, fake_reconciler)

        bus.publish(
            SMSResponseReceived(
                SMSResponse(
                    id="SM" + "d" * 32,
                    user_id=UID,
                    profile_id=PHONE,
                    text_response="yes",
                    received_at=NOW,
                ),
                removed=True,
            )
        )

        fake_reconciler.replay.assert_not_called()

    def test_write_failure_retried(self, store, ledger, clock, pending_profile):
        """一時的な書き込み失敗はバックオフ付きで再試行し、確認が反映される"""
        store.upsert_profile(pending_profile)
        bus = EventBus()
        sleep = MagicMock()
        bind_reconciler(
            bus, Reconciler(_FlakyStore(store, failures=1), ledger, clock=clock), sleep=sleep
        )
        SyncCoordinator(store, bus).start(UID)

        store.create_message(_raw("YES"))

        assert store.get_profile(UID, PHONE).is_confirmed
        assert len(store.list_gallery_events(UID)) == 1
        sleep.assert_called_once_with(0.5)

    def test_gives_up_after_retries(self, store, ledger, clock, pending_profile):
        """再試行しても失敗したメッセージは未処理のまま残り、再購読で適用される"""
        store.upsert_profile(pending_profile)
        bus = EventBus()
        flaky = _FlakyStore(store, failures=3)
        sleep = MagicMock()
        bind_reconciler(bus, Reconciler(flaky, ledger, clock=clock), sleep=sleep)
        coordinator = SyncCoordinator(store, bus)
        coordinator.start(UID)

        store.create_message(_raw("YES"))

        assert store.get_profile(UID, PHONE).is_pending
        assert [c.args[0] for c in sleep.call_args_list] == [0.5, 1.0]

        coordinator.restart()
        assert store.get_profile(UID, PHONE).is_confirmed
