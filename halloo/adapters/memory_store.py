"""InMemoryEntityStore - ローカル実行・テスト用の EntityStore

Firestore と同じ振る舞いをメモリ上で再現する:
- create-only の書き込みは既存ドキュメントがあれば DuplicateWrite
- apply_transition は前提条件の確認と全書き込みをロック内で一括して行う
- observe_* は購読時に現在の全件を、その後は変更分をコールバックに渡す

変更通知はロック内で FIFO キューに積み、ロックを解放してから1スレッドが
順に配信する（コールバック内からの書き込みを許すため）。配信中に他の書き込みが
あればキューに積むだけで戻り、配信中のスレッドが続けて届ける。
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, replace
from datetime import datetime

from halloo.domain.errors import DuplicateWrite, StaleWrite
from halloo.domain.models import (
    Change,
    ElderlyProfile,
    GalleryHistoryEvent,
    OutboundSMSLog,
    SMSResponse,
    Task,
    TaskStatus,
    TransitionWrite,
    User,
)
from halloo.domain.ports import ChangeCallback, EntityStore, Subscription
from halloo.domain.recurrence import ensure_aware

logger = logging.getLogger(__name__)

_PROFILES = "profiles"
_TASKS = "tasks"
_MESSAGES = "messages"
_GALLERY = "gallery"


@dataclass
class _Observer:
    kind: str
    user_id: str
    callback: ChangeCallback
    active: bool = True


class _ObserverSubscription(Subscription):
    def __init__(self, store: InMemoryEntityStore, observer: _Observer) -> None:
        self._store = store
        self._observer = observer

    def unsubscribe(self) -> None:
        self._store._remove_observer(self._observer)


class InMemoryEntityStore(EntityStore):
    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._users: dict[str, User] = {}
        self._profiles: dict[tuple[str, str], ElderlyProfile] = {}
        self._tasks: dict[tuple[str, str, str], Task] = {}
        self._messages: dict[tuple[str, str, str], SMSResponse] = {}
        self._gallery: dict[tuple[str, str], GalleryHistoryEvent] = {}
        self._sms_logs: list[OutboundSMSLog] = []
        self._observers: list[_Observer] = []
        # 配信待ちの通知（_lock で保護）
        self._queue: deque[tuple[_Observer, list[Change]]] = deque()
        self._draining = False

    # ── users ───────────────────────────────────────────────────────────────

    def get_user(self, user_id: str) -> User | None:
        with self._lock:
            return self._users.get(user_id)

    def upsert_user(self, user: User) -> None:
        with self._lock:
            self._users[user.id] = user

    def adjust_user_counters(
        self, user_id: str, profiles: int = 0, tasks: int = 0
    ) -> None:
        with self._lock:
            user = self._users.get(user_id) or User(id=user_id)
            self._users[user_id] = replace(
                user,
                profile_count=user.profile_count + profiles,
                task_count=user.task_count + tasks,
            )

    def reset_sms_quota(self, user_id: str, period_end: datetime) -> None:
        with self._lock:
            user = self._users.get(user_id) or User(id=user_id)
            self._users[user_id] = replace(
                user, sms_quota_used=0, sms_quota_period_end=period_end
            )

    def increment_sms_usage(self, user_id: str, count: int = 1) -> None:
        with self._lock:
            user = self._users.get(user_id) or User(id=user_id)
            self._users[user_id] = replace(
                user, sms_quota_used=user.sms_quota_used + count
            )

    def create_sms_log(self, log: OutboundSMSLog) -> None:
        with self._lock:
            self._sms_logs.append(log)

    def list_sms_logs(self, user_id: str) -> list[OutboundSMSLog]:
        with self._lock:
            return [log for log in self._sms_logs if log.user_id == user_id]

    # ── profiles ────────────────────────────────────────────────────────────

    def get_profile(self, user_id: str, profile_id: str) -> ElderlyProfile | None:
        with self._lock:
            return self._profiles.get((user_id, profile_id))

    def find_profiles_by_phone(self, phone_number: str) -> list[ElderlyProfile]:
        with self._lock:
            return [p for p in self._profiles.values() if p.phone_number == phone_number]

    def list_profiles(self, user_id: str) -> list[ElderlyProfile]:
        with self._lock:
            return [p for (uid, _), p in self._profiles.items() if uid == user_id]

    def upsert_profile(self, profile: ElderlyProfile) -> None:
        with self._write():
            self._profiles[(profile.user_id, profile.id)] = profile
            self._publish(_PROFILES, profile.user_id, [Change(profile)])

    def delete_profile(self, user_id: str, profile_id: str) -> int:
        with self._write():
            changes: dict[str, list[Change]] = {
                _PROFILES: [],
                _TASKS: [],
                _MESSAGES: [],
                _GALLERY: [],
            }
            for key in [k for k in self._tasks if k[:2] == (user_id, profile_id)]:
                changes[_TASKS].append(Change(self._tasks.pop(key), removed=True))
            for key in [k for k in self._messages if k[:2] == (user_id, profile_id)]:
                changes[_MESSAGES].append(Change(self._messages.pop(key), removed=True))
            for key in [
                k
                for k, e in self._gallery.items()
                if k[0] == user_id and e.profile_id == profile_id
            ]:
                changes[_GALLERY].append(Change(self._gallery.pop(key), removed=True))
            profile = self._profiles.pop((user_id, profile_id), None)
            if profile is not None:
                changes[_PROFILES].append(Change(profile, removed=True))
            for kind, kind_changes in changes.items():
                self._publish(kind, user_id, kind_changes)
        return len(changes[_TASKS])

    def observe_profiles(self, user_id: str, callback: ChangeCallback) -> Subscription:
        return self._add_observer(_PROFILES, user_id, callback)

    # ── tasks ───────────────────────────────────────────────────────────────

    def get_task(self, user_id: str, profile_id: str, task_id: str) -> Task | None:
        with self._lock:
            return self._tasks.get((user_id, profile_id, task_id))

    def list_tasks(self, user_id: str, profile_id: str | None = None) -> list[Task]:
        with self._lock:
            return [
                t
                for (uid, pid, _), t in self._tasks.items()
                if uid == user_id and (profile_id is None or pid == profile_id)
            ]

    def list_due_tasks(self, now: datetime) -> list[Task]:
        now = ensure_aware(now)
        with self._lock:
            due = [
                t
                for t in self._tasks.values()
                if t.status is TaskStatus.ACTIVE
                and ensure_aware(t.next_scheduled_date) <= now
            ]
        return sorted(due, key=lambda t: ensure_aware(t.next_scheduled_date))

    def upsert_task(self, task: Task) -> None:
        with self._write():
            self._tasks[(task.user_id, task.profile_id, task.id)] = task
            self._publish(_TASKS, task.user_id, [Change(task)])

    def observe_tasks(self, user_id: str, callback: ChangeCallback) -> Subscription:
        return self._add_observer(_TASKS, user_id, callback)

    # ── messages ────────────────────────────────────────────────────────────

    def create_message(self, message: SMSResponse) -> None:
        key = (message.user_id, message.profile_id, message.id)
        with self._write():
            if key in self._messages:
                raise DuplicateWrite(_message_path(message))
            self._messages[key] = message
            self._publish(_MESSAGES, message.user_id, [Change(message)])

    def get_message(
        self, user_id: str, profile_id: str, message_id: str
    ) -> SMSResponse | None:
        with self._lock:
            return self._messages.get((user_id, profile_id, message_id))

    def list_messages(self, user_id: str) -> list[SMSResponse]:
        with self._lock:
            return [m for (uid, _, _), m in self._messages.items() if uid == user_id]

    def observe_messages(self, user_id: str, callback: ChangeCallback) -> Subscription:
        return self._add_observer(_MESSAGES, user_id, callback)

    # ── gallery ─────────────────────────────────────────────────────────────

    def create_gallery_event(self, event: GalleryHistoryEvent) -> None:
        with self._write():
            if (event.user_id, event.id) in self._gallery:
                raise DuplicateWrite(_gallery_path(event))
            self._gallery[(event.user_id, event.id)] = event
            self._publish(_GALLERY, event.user_id, [Change(event)])

    def list_gallery_events(self, user_id: str) -> list[GalleryHistoryEvent]:
        with self._lock:
            events = [e for (uid, _), e in self._gallery.items() if uid == user_id]
        return sorted(events, key=lambda e: e.created_at, reverse=True)

    def list_gallery_events_before(
        self, cutoff: datetime, limit: int = 500
    ) -> list[GalleryHistoryEvent]:
        cutoff = ensure_aware(cutoff)
        with self._lock:
            old = [
                e
                for e in self._gallery.values()
                if ensure_aware(e.created_at) < cutoff
            ]
        return sorted(old, key=lambda e: ensure_aware(e.created_at))[:limit]

    def delete_gallery_event(self, user_id: str, event_id: str) -> None:
        with self._write():
            event = self._gallery.pop((user_id, event_id), None)
            if event is not None:
                self._publish(_GALLERY, user_id, [Change(event, removed=True)])

    def observe_gallery_events(
        self, user_id: str, callback: ChangeCallback
    ) -> Subscription:
        return self._add_observer(_GALLERY, user_id, callback)

    # ── transitions ─────────────────────────────────────────────────────────

    def apply_transition(self, write: TransitionWrite) -> None:
        with self._write():
            self._check_preconditions(write)

            if write.message is not None:
                m = write.message
                self._messages[(m.user_id, m.profile_id, m.id)] = m
                self._publish(_MESSAGES, m.user_id, [Change(m)])
            if write.profile is not None:
                p = write.profile
                self._profiles[(p.user_id, p.id)] = p
                self._publish(_PROFILES, p.user_id, [Change(p)])
            if write.task is not None:
                t = write.task
                self._tasks[(t.user_id, t.profile_id, t.id)] = t
                self._publish(_TASKS, t.user_id, [Change(t)])
            if write.gallery_event is not None:
                g = write.gallery_event
                self._gallery[(g.user_id, g.id)] = g
                self._publish(_GALLERY, g.user_id, [Change(g)])

    def _check_preconditions(self, write: TransitionWrite) -> None:
        m = write.message
        if m is not None and (m.user_id, m.profile_id, m.id) in self._messages:
            raise DuplicateWrite(_message_path(m))

        g = write.gallery_event
        if g is not None and (g.user_id, g.id) in self._gallery:
            raise DuplicateWrite(_gallery_path(g))

        p = write.profile
        if p is not None and write.expected_profile_status is not None:
            current = self._profiles.get((p.user_id, p.id))
            if current is None or current.status is not write.expected_profile_status:
                raise DuplicateWrite(f"users/{p.user_id}/profiles/{p.id} (status)")

        t = write.task
        if t is None:
            return
        current_task = self._tasks.get((t.user_id, t.profile_id, t.id))
        if write.expected_completion_count is not None and (
            current_task is None
            or current_task.completion_count != write.expected_completion_count
        ):
            raise DuplicateWrite(f"{_task_path(t)} (completionCount)")
        if write.expected_task is not None and current_task != write.expected_task:
            raise StaleWrite(_task_path(t))

    # ── observers ───────────────────────────────────────────────────────────

    def _add_observer(
        self, kind: str, user_id: str, callback: ChangeCallback
    ) -> Subscription:
        observer = _Observer(kind, user_id, callback)
        with self._write():
            self._observers.append(observer)
            snapshot = [Change(e) for e in self._snapshot(kind, user_id)]
            if snapshot:
                self._queue.append((observer, snapshot))
        return _ObserverSubscription(self, observer)

    def _remove_observer(self, observer: _Observer) -> None:
        with self._lock:
            observer.active = False
            if observer in self._observers:
                self._observers.remove(observer)

    def _snapshot(self, kind: str, user_id: str) -> list:
        if kind == _PROFILES:
            return [p for (uid, _), p in self._profiles.items() if uid == user_id]
        if kind == _TASKS:
            return [t for (uid, _, _), t in self._tasks.items() if uid == user_id]
        if kind == _MESSAGES:
            return [m for (uid, _, _), m in self._messages.items() if uid == user_id]
        return [e for (uid, _), e in self._gallery.items() if uid == user_id]

    @contextmanager
    def _write(self) -> Iterator[None]:
        """ロック内で変更し、ロック解放後にキューの通知を配信する"""
        with self._lock:
            yield
            if self._draining or not self._queue:
                return
            self._draining = True
        self._drain()

    def _publish(self, kind: str, user_id: str, changes: list[Change]) -> None:
        if not changes:
            return
        for o in self._observers:
            if o.kind == kind and o.user_id == user_id:
                self._queue.append((o, changes))

    def _drain(self) -> None:
        try:
            while True:
                with self._lock:
                    if not self._queue:
                        self._draining = False
                        return
                    observer, changes = self._queue.popleft()
                if not observer.active:
                    continue
                try:
                    observer.callback(changes)
                except Exception:
                    logger.exception("Observer callback failed: kind=%s", observer.kind)
        except BaseException:
            with self._lock:
                self._draining = False
            raise


def _message_path(m: SMSResponse) -> str:
    return f"users/{m.user_id}/profiles/{m.profile_id}/messages/{m.id}"


def _task_path(t: Task) -> str:
    return f"users/{t.user_id}/profiles/{t.profile_id}/habits/{t.id}"


def _gallery_path(g: GalleryHistoryEvent) -> str:
    return f"users/{g.user_id}/galleryEvents/{g.id}"


def seeded(
    profiles: list[ElderlyProfile] = (),
    tasks: list[Task] = (),
    messages: list[SMSResponse] = (),
    events: list[GalleryHistoryEvent] = (),
) -> InMemoryEntityStore:
    """初期データ入りのストアを作る（LOCAL_MODE の起動とテスト用）"""
    store = InMemoryEntityStore()
    for p in profiles:
        store.upsert_profile(p)
    for t in tasks:
        store.upsert_task(t)
    for m in messages:
        store.create_message(m)
    for e in events:
        store.create_gallery_event(e)
    return store
