"""SyncCoordinator - ストアの変更をアプリ内のイベントバスに中継する

EntityStore.observe_* の変更通知を型付きイベントに変換して EventBus に流す。
ここでは重複排除も業務ロジックも行わない。再購読のたびに全件が再配信されるので、
購読側（Reconciler.replay、Projection）は重複に耐える必要がある。
"""

from __future__ import annotations

import logging
import threading
from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass

from halloo.domain.errors import StoreWriteFailed
from halloo.domain.models import (
    Change,
    ElderlyProfile,
    GalleryHistoryEvent,
    SMSResponse,
    Task,
)
from halloo.domain.ports import EntityStore, Subscription
from halloo.services.retry import WRITE_ATTEMPTS, WRITE_BACKOFF_SECONDS, retry_store_write

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProfileUpdated:
    profile: ElderlyProfile
    removed: bool = False


@dataclass(frozen=True)
class TaskUpdated:
    task: Task
    removed: bool = False


@dataclass(frozen=True)
class SMSResponseReceived:
    message: SMSResponse
    removed: bool = False


@dataclass(frozen=True)
class GalleryEventUpdated:
    event: GalleryHistoryEvent
    removed: bool = False


SyncEvent = ProfileUpdated | TaskUpdated | SMSResponseReceived | GalleryEventUpdated
Handler = Callable[[SyncEvent], None]


class EventBus:
    """
    型ごとに順序を保証するイベントバス。

    同じ型のイベントは型ごとのロックで直列に配信される（発行順のまま届く）。
    event_type=None で購読すると全ての型を受け取る。
    購読者の例外はログに残して握りつぶし、他の購読者への配信は続ける。
    """

    def __init__(self) -> None:
        self._handlers: dict[type | None, list[Handler]] = defaultdict(list)
        self._type_locks: dict[type, threading.RLock] = defaultdict(threading.RLock)
        self._registry_lock = threading.Lock()

    def subscribe(
        self, event_type: type | None, handler: Handler
    ) -> Callable[[], None]:
        """購読を登録し、解除用の関数を返す"""
        with self._registry_lock:
            self._handlers[event_type].append(handler)

        def unsubscribe() -> None:
            with self._registry_lock:
                if handler in self._handlers[event_type]:
                    self._handlers[event_type].remove(handler)

        return unsubscribe

    def publish(self, event: SyncEvent) -> int:
        """イベントを配信し、呼び出した購読者の数を返す"""
        event_type = type(event)
        with self._registry_lock:
            handlers = list(self._handlers[event_type]) + list(self._handlers[None])
            lock = self._type_locks[event_type]

        with lock:
            for handler in handlers:
                try:
                    handler(event)
                except Exception:
                    logger.exception(
                        "Event subscriber failed: event=%s, handler=%r",
                        event_type.__name__,
                        handler,
                    )
        return len(handlers)


def _to_event(change: Change) -> SyncEvent:
    entity = change.entity
    if isinstance(entity, ElderlyProfile):
        return ProfileUpdated(entity, change.removed)
    if isinstance(entity, Task):
        return TaskUpdated(entity, change.removed)
    if isinstance(entity, SMSResponse):
        return SMSResponseReceived(entity, change.removed)
    if isinstance(entity, GalleryHistoryEvent):
        return GalleryEventUpdated(entity, change.removed)
    raise TypeError(f"Unsupported entity: {type(entity).__name__}")


class SyncCoordinator:
    """1ユーザー分の observe_* 購読を束ねる"""

    def __init__(self, store: EntityStore, bus: EventBus) -> None:
        self._store = store
        self._bus = bus
        self._subscriptions: list[Subscription] = []
        self._user_id: str | None = None
        self._lock = threading.Lock()

    @property
    def is_running(self) -> bool:
        return bool(self._subscriptions)

    def start(self, user_id: str) -> None:
        """4種類のストリームを購読する。既に購読中なら先に解除する"""
        with self._lock:
            self._unsubscribe_all()
            self._user_id = user_id
            self._subscriptions = [
                self._store.observe_profiles(user_id, self._forward),
                self._store.observe_tasks(user_id, self._forward),
                self._store.observe_messages(user_id, self._forward),
                self._store.observe_gallery_events(user_id, self._forward),
            ]
        logger.info("Sync started: user_id=%s", user_id)

    def stop(self) -> None:
        with self._lock:
            self._unsubscribe_all()
        logger.info("Sync stopped: user_id=%s", self._user_id)

    def restart(self) -> None:
        """再購読する（現在の全件が再配信される）"""
        if self._user_id is None:
            raise RuntimeError("SyncCoordinator.restart() called before start()")
        self.start(self._user_id)

    def _unsubscribe_all(self) -> None:
        for subscription in self._subscriptions:
            try:
                subscription.unsubscribe()
            except Exception:
                logger.exception("Failed to unsubscribe listener")
        self._subscriptions = []

    def _forward(self, changes: list[Change]) -> None:
        for change in changes:
            self._bus.publish(_to_event(change))


class Projection:
    """
    バスのイベントだけから組み立てる読み取り用ビュー。

    ID をキーにした辞書なので、同じイベントが何度届いても結果は同じ。
    タスクがプロファイルより先に届くような順序の入れ替わりも許容する。
    """

    def __init__(self, bus: EventBus) -> None:
        self.profiles: dict[str, ElderlyProfile] = {}
        self.tasks: dict[str, Task] = {}
        self.messages: dict[str, SMSResponse] = {}
        self.gallery_events: dict[str, GalleryHistoryEvent] = {}
        self._lock = threading.Lock()
        self._unsubscribe = bus.subscribe(None, self._apply)

    def close(self) -> None:
        self._unsubscribe()

    def tasks_for(self, profile_id: str) -> list[Task]:
        with self._lock:
            return [t for t in self.tasks.values() if t.profile_id == profile_id]

    def _apply(self, event: SyncEvent) -> None:
        with self._lock:
            if isinstance(event, ProfileUpdated):
                _put(self.profiles, event.profile.id, event.profile, event.removed)
            elif isinstance(event, TaskUpdated):
                _put(self.tasks, event.task.id, event.task, event.removed)
            elif isinstance(event, SMSResponseReceived):
                key = f"{event.message.profile_id}/{event.message.id}"
                _put(self.messages, key, event.message, event.removed)
            elif isinstance(event, GalleryEventUpdated):
                _put(self.gallery_events, event.event.id, event.event, event.removed)


def _put(target: dict, key: str, value: object, removed: bool) -> None:
    if removed:
        target.pop(key, None)
    else:
        target[key] = value


def bind_reconciler(
    bus: EventBus,
    reconciler,
    attempts: int = WRITE_ATTEMPTS,
    backoff_seconds: float = WRITE_BACKOFF_SECONDS,
    sleep: Callable[[float], None] | None = None,
) -> Callable[[], None]:
    """
    SMSResponseReceived を Reconciler.replay に流す。解除用の関数を返す。

    書き込み失敗（StoreWriteFailed）は Webhook と同じくバックオフ付きで再試行する。
    再試行しても失敗したメッセージは未処理のまま残り、次の再購読で再配信される。
    """

    def on_message(event: SyncEvent) -> None:
        if not isinstance(event, SMSResponseReceived) or event.removed:
            return
        try:
            retry_store_write(
                reconciler.replay,
                event.message,
                attempts=attempts,
                backoff_seconds=backoff_seconds,
                sleep=sleep,
            )
        except StoreWriteFailed:
            logger.error(
                "Replay gave up after retries: user_id=%s, message_id=%s",
                event.message.user_id,
                event.message.id,
            )
            raise

    return bus.subscribe(SMSResponseReceived, on_message)
