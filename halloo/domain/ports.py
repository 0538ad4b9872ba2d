"""Ports - 外部サービスのインターフェース定義（ABC）

実装クラス（Adapter）はこれらの ABC を継承し、全ての抽象メソッドを実装する。
実装漏れはインスタンス化時に TypeError で検出される。

EntityStore の observe_* は、購読（再購読）のたびに現在の結果セット全体を
配信し、その後は変更分を配信する。受け取り側は重複通知に耐える必要がある。
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Callable
from datetime import datetime

from halloo.domain.models import (
    Change,
    ElderlyProfile,
    GalleryHistoryEvent,
    OutboundSMSLog,
    SMSResponse,
    Task,
    TransitionWrite,
    User,
)

ChangeCallback = Callable[[list[Change]], None]


class Subscription(ABC):
    """observe_* の購読ハンドル"""

    @abstractmethod
    def unsubscribe(self) -> None:
        """購読を解除する"""
        pass


class EntityStore(ABC):
    """永続化ストア（Firestore 等）"""

    # ── users ───────────────────────────────────────────────────────────────

    @abstractmethod
    def get_user(self, user_id: str) -> User | None:
        pass

    @abstractmethod
    def upsert_user(self, user: User) -> None:
        pass

    @abstractmethod
    def adjust_user_counters(
        self, user_id: str, profiles: int = 0, tasks: int = 0
    ) -> None:
        """profile_count / task_count を加減算。ユーザードキュメントが無くても失敗しない"""
        pass

    @abstractmethod
    def reset_sms_quota(self, user_id: str, period_end: datetime) -> None:
        """sms_quota_used を 0 に戻し、新しい期間の終了日時を設定する"""
        pass

    @abstractmethod
    def increment_sms_usage(self, user_id: str, count: int = 1) -> None:
        """sms_quota_used を加算。ユーザードキュメントが無くても失敗しない"""
        pass

    @abstractmethod
    def create_sms_log(self, log: OutboundSMSLog) -> None:
        """送信ログを追加する（users/{uid}/smsLogs）"""
        pass

    @abstractmethod
    def list_sms_logs(self, user_id: str) -> list[OutboundSMSLog]:
        pass

    # ── profiles ────────────────────────────────────────────────────────────

    @abstractmethod
    def get_profile(self, user_id: str, profile_id: str) -> ElderlyProfile | None:
        pass

    @abstractmethod
    def find_profiles_by_phone(self, phone_number: str) -> list[ElderlyProfile]:
        """E.164 番号に一致するプロファイルを全ユーザー横断で取得"""
        pass

    @abstractmethod
    def list_profiles(self, user_id: str) -> list[ElderlyProfile]:
        pass

    @abstractmethod
    def upsert_profile(self, profile: ElderlyProfile) -> None:
        pass

    @abstractmethod
    def delete_profile(self, user_id: str, profile_id: str) -> int:
        """プロファイルと配下の habits/messages/ギャラリーイベントを削除。削除したタスク数を返す"""
        pass

    @abstractmethod
    def observe_profiles(self, user_id: str, callback: ChangeCallback) -> Subscription:
        pass

    # ── tasks ───────────────────────────────────────────────────────────────

    @abstractmethod
    def get_task(self, user_id: str, profile_id: str, task_id: str) -> Task | None:
        pass

    @abstractmethod
    def list_tasks(self, user_id: str, profile_id: str | None = None) -> list[Task]:
        pass

    @abstractmethod
    def list_due_tasks(self, now: datetime) -> list[Task]:
        """status == active かつ next_scheduled_date <= now のタスク（全ユーザー）"""
        pass

    @abstractmethod
    def upsert_task(self, task: Task) -> None:
        pass

    @abstractmethod
    def observe_tasks(self, user_id: str, callback: ChangeCallback) -> Subscription:
        pass

    # ── messages ────────────────────────────────────────────────────────────

    @abstractmethod
    def create_message(self, message: SMSResponse) -> None:
        """create-only。既に存在する場合は DuplicateWrite"""
        pass

    @abstractmethod
    def get_message(
        self, user_id: str, profile_id: str, message_id: str
    ) -> SMSResponse | None:
        pass

    @abstractmethod
    def list_messages(self, user_id: str) -> list[SMSResponse]:
        pass

    @abstractmethod
    def observe_messages(self, user_id: str, callback: ChangeCallback) -> Subscription:
        pass

    # ── gallery ─────────────────────────────────────────────────────────────

    @abstractmethod
    def create_gallery_event(self, event: GalleryHistoryEvent) -> None:
        """create-only。既に存在する場合は DuplicateWrite"""
        pass

    @abstractmethod
    def list_gallery_events(self, user_id: str) -> list[GalleryHistoryEvent]:
        pass

    @abstractmethod
    def list_gallery_events_before(
        self, cutoff: datetime, limit: int = 500
    ) -> list[GalleryHistoryEvent]:
        """全ユーザー横断で created_at < cutoff のイベントを古い順に最大 limit 件"""
        pass

    @abstractmethod
    def delete_gallery_event(self, user_id: str, event_id: str) -> None:
        """存在しない場合は何もしない"""
        pass

    @abstractmethod
    def observe_gallery_events(
        self, user_id: str, callback: ChangeCallback
    ) -> Subscription:
        pass

    # ── transitions ─────────────────────────────────────────────────────────

    @abstractmethod
    def apply_transition(self, write: TransitionWrite) -> None:
        """
        状態遷移を原子的に書き込む（全部成功か、全部失敗か）。

        Raises:
            DuplicateWrite: message または gallery_event が既に存在する、
                または expected_profile_status / expected_completion_count を満たさない
            StaleWrite: expected_task と現在のタスクが一致しない
            StoreWriteFailed: その他の書き込み失敗
        """
        pass


class SMSSender(ABC):
    """SMS 送信（Twilio 等）"""

    @abstractmethod
    def send_sms(self, to: str, body: str) -> str:
        """
        SMS を送信し、プロバイダのメッセージ ID を返す。

        Raises:
            SendFailed: 送信に失敗した場合
        """
        pass


class MediaFetcher(ABC):
    """MMS 添付メディアの取得"""

    @abstractmethod
    def fetch(self, media_url: str) -> tuple[bytes, str]:
        """(content, content_type) を返す"""
        pass


class BlobStorage(ABC):
    """バイナリファイルのアップロード（GCS 等）"""

    @abstractmethod
    def upload(self, blob_path: str, content: bytes, content_type: str) -> str:
        """ファイルをアップロード。ストレージパス（blob_path）を返す"""
        pass

    @abstractmethod
    def delete(self, blob_path: str) -> None:
        """ファイルを削除"""
        pass

    @abstractmethod
    def copy(self, source_path: str, dest_path: str) -> str:
        """ファイルを複製。複製先のパスを返す"""
        pass
