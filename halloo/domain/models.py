"""ドメインモデル - 外部依存なしのデータ構造

エンティティは全て frozen dataclass。状態遷移は dataclasses.replace で
新しいインスタンスを作って表現する（共有配列のインプレース変更はしない）。
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from enum import Enum


class ProfileStatus(Enum):
    """プロファイルの確認状態"""

    PENDING_CONFIRMATION = "pendingConfirmation"
    CONFIRMED = "confirmed"
    INACTIVE = "inactive"


class TaskStatus(Enum):
    """タスク（習慣）の状態"""

    ACTIVE = "active"
    PAUSED = "paused"
    ARCHIVED = "archived"
    EXPIRED = "expired"


class TaskFrequency(Enum):
    """リマインダーの繰り返し"""

    ONCE = "once"
    DAILY = "daily"
    WEEKDAYS = "weekdays"
    WEEKLY = "weekly"
    CUSTOM = "custom"


class Weekday(Enum):
    """曜日（index は datetime.weekday() と同じ 月=0）"""

    MONDAY = "monday"
    TUESDAY = "tuesday"
    WEDNESDAY = "wednesday"
    THURSDAY = "thursday"
    FRIDAY = "friday"
    SATURDAY = "saturday"
    SUNDAY = "sunday"

    @property
    def index(self) -> int:
        return list(Weekday).index(self)

    @classmethod
    def from_date(cls, d: date) -> Weekday:
        return list(cls)[d.weekday()]


class ResponseType(Enum):
    """返信の種類"""

    TEXT = "text"
    PHOTO = "photo"
    BOTH = "both"


class Sentiment(Enum):
    """返信テキストの判定結果"""

    POSITIVE = "positive"
    NEGATIVE = "negative"
    NEUTRAL = "neutral"


class GalleryEventType(Enum):
    """ギャラリー履歴イベントの種類"""

    PROFILE_CREATED = "profileCreated"
    TASK_RESPONSE = "taskResponse"


class MessageDirection(Enum):
    """メッセージの向き"""

    INBOUND = "inbound"
    OUTBOUND = "outbound"


class OutboundMessageType(Enum):
    """送信 SMS の種類（smsLogs の messageType）"""

    CONFIRMATION = "confirmation"
    TASK_REMINDER = "taskReminder"


@dataclass(frozen=True)
class User:
    """介護者ユーザー（ID は Firebase Auth UID）"""

    id: str
    email: str = ""
    full_name: str = ""
    subscription_status: str = "trial"  # "trial" | "active" | "expired" | "cancelled"
    profile_count: int = 0  # 非正規化カウンタ
    task_count: int = 0  # 非正規化カウンタ
    sms_quota_limit: int = 50  # 期間あたりの送信上限
    sms_quota_used: int = 0
    sms_quota_period_end: datetime | None = None  # None は未開始


@dataclass(frozen=True)
class ElderlyProfile:
    """見守り対象者のプロファイル（ID は E.164 電話番号）"""

    id: str  # 例: "+15551234567"
    user_id: str
    name: str
    phone_number: str  # E.164
    relationship: str = ""  # 例: "Mother"
    status: ProfileStatus = ProfileStatus.PENDING_CONFIRMATION
    time_zone: str = "UTC"  # IANA 名: "America/New_York"
    photo_url: str | None = None
    created_at: datetime | None = None
    confirmed_at: datetime | None = None
    sms_opted_out: bool = False  # STOP 返信または Twilio 21610
    opted_out_at: datetime | None = None

    @property
    def is_confirmed(self) -> bool:
        return self.status is ProfileStatus.CONFIRMED

    @property
    def is_pending(self) -> bool:
        return self.status is ProfileStatus.PENDING_CONFIRMATION


@dataclass(frozen=True)
class Task:
    """リマインダー定義（習慣）。プロファイルに所属する"""

    id: str  # UUID
    user_id: str
    profile_id: str
    title: str  # 例: "Take blood pressure pill"
    scheduled_time: time  # 送信時刻（time_zone のローカル時刻）
    next_scheduled_date: datetime  # 次回送信予定（tz-aware）
    frequency: TaskFrequency = TaskFrequency.DAILY
    description: str = ""
    custom_days: tuple[Weekday, ...] = ()
    start_date: date | None = None
    end_date: date | None = None
    time_zone: str = "UTC"
    deadline_minutes: int = 10
    requires_photo: bool = False
    status: TaskStatus = TaskStatus.ACTIVE
    completion_count: int = 0
    last_completed_at: datetime | None = None
    last_reminder_sent_at: datetime | None = None
    last_reminder_sid: str | None = None
    is_overdue: bool = False
    missed_count: int = 0
    created_at: datetime | None = None

    @property
    def is_active(self) -> bool:
        return self.status is TaskStatus.ACTIVE

    @property
    def is_awaiting_response(self) -> bool:
        """リマインダー送信済みで、その後まだ完了していない"""
        if self.last_reminder_sent_at is None:
            return False
        if self.last_completed_at is None:
            return True
        return self.last_completed_at < self.last_reminder_sent_at

    @property
    def response_deadline(self) -> datetime | None:
        if self.last_reminder_sent_at is None:
            return None
        return self.last_reminder_sent_at + timedelta(minutes=self.deadline_minutes)


@dataclass(frozen=True)
class SMSResponse:
    """SMS 1通分の記録（作成後は不変）。送信分は direction=OUTBOUND で残す"""

    id: str  # Twilio MessageSid or UUID
    user_id: str
    profile_id: str
    text_response: str
    received_at: datetime
    task_id: str | None = None  # 確認返信の場合は None
    photo_url: str | None = None
    photo_storage_path: str | None = None
    response_type: ResponseType = ResponseType.TEXT
    is_completed: bool = False
    is_confirmation_response: bool = False
    is_positive_confirmation: bool = False
    response_score: float | None = None  # 0.0 - 1.0
    processing_notes: str | None = None
    direction: MessageDirection = MessageDirection.INBOUND

    @property
    def has_photo(self) -> bool:
        return bool(self.photo_url or self.photo_storage_path)


@dataclass(frozen=True)
class OutboundSMSLog:
    """送信 SMS の監査ログ（users/{uid}/smsLogs）。失敗も残す"""

    id: str
    user_id: str
    profile_id: str
    to: str
    body: str
    message_type: OutboundMessageType
    sent_at: datetime
    status: str = "sent"  # "sent" | "failed"
    provider_sid: str | None = None
    task_id: str | None = None
    scheduled_for: datetime | None = None
    error: str | None = None


@dataclass(frozen=True)
class ProfileCreatedData:
    """profileCreated イベントのペイロード"""

    profile_name: str
    relationship: str = ""
    photo_url: str | None = None


@dataclass(frozen=True)
class TaskResponseData:
    """taskResponse イベントのペイロード"""

    task_id: str | None
    task_title: str | None = None
    text_response: str | None = None
    photo_url: str | None = None
    response_type: ResponseType = ResponseType.TEXT


@dataclass(frozen=True)
class GalleryHistoryEvent:
    """ギャラリー表示用の派生レコード"""

    id: str
    user_id: str
    profile_id: str
    event_type: GalleryEventType
    payload: ProfileCreatedData | TaskResponseData
    created_at: datetime


@dataclass(frozen=True)
class InboundSMS:
    """Webhook で受け取った SMS/MMS"""

    from_phone: str
    body: str = ""
    message_sid: str | None = None
    media_urls: tuple[str, ...] = ()
    media_content_types: tuple[str, ...] = ()
    received_at: datetime | None = None
    to_phone: str | None = None

    @property
    def has_photo(self) -> bool:
        return any(
            ct.startswith("image/") for ct in self.media_content_types
        ) or (bool(self.media_urls) and not self.media_content_types)

    @property
    def photo_url(self) -> str | None:
        return self.media_urls[0] if self.media_urls else None


@dataclass(frozen=True)
class Classification:
    """返信テキストの分類結果"""

    sentiment: Sentiment
    confidence: float

    @property
    def is_positive(self) -> bool:
        return self.sentiment is Sentiment.POSITIVE

    @property
    def is_negative(self) -> bool:
        return self.sentiment is Sentiment.NEGATIVE


@dataclass(frozen=True)
class TransitionWrite:
    """
    1回の状態遷移で原子的に書き込む内容。

    expected_* は書き込み時点の前提条件。プロファイル状態・完了回数が
    満たされない場合は既に別経路で適用済みとみなし DuplicateWrite になる。
    expected_task は読み取った時点のタスク全体で、一致しなければ StaleWrite
    （読み直して再試行する）。完了回数の確認が先に行われる。
    """

    message: SMSResponse | None = None  # 保存済みメッセージの再処理では None
    profile: ElderlyProfile | None = None
    expected_profile_status: ProfileStatus | None = None
    task: Task | None = None
    expected_completion_count: int | None = None
    expected_task: Task | None = None
    gallery_event: GalleryHistoryEvent | None = None


@dataclass(frozen=True)
class Change:
    """ストアの変更通知1件"""

    entity: ElderlyProfile | Task | SMSResponse | GalleryHistoryEvent
    removed: bool = False


@dataclass
class SchedulerReport:
    """スケジューラ1回分の実行結果"""

    dispatched: list[str] = field(default_factory=list)
    send_failures: list[str] = field(default_factory=list)
    overdue: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    closed: list[str] = field(default_factory=list)
    quota_exceeded: list[str] = field(default_factory=list)
    opted_out: list[str] = field(default_factory=list)


@dataclass
class RetentionReport:
    """ギャラリー保持期間の整理1回分の結果"""

    photos_archived: int = 0
    events_deleted: int = 0
    errors: int = 0
