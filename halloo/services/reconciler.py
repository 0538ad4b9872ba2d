"""Reconciler - 受信 SMS を状態遷移に変換する

受信メッセージ1通 × 照合したプロファイル1件ごとに、次のどれか1つを適用する。

- PROFILE_CONFIRMATION: 確認待ちプロファイルへの肯定返信
    → confirmed に変更、profileCreated ギャラリーイベントを1回だけ発行
- CONFIRMATION_REPLAY: 確認済みプロファイルへの確認形の返信（再配信含む）
    → 何も書き込まない
- TASK_COMPLETION: 返信待ちタスクへの肯定返信（または写真付きの中立返信）
    → 完了回数 +1、次回予定を進め、taskResponse ギャラリーイベントを発行
- OPT_OUT: 返信全体が STOP 系キーワード
    → プロファイルを inactive・sms_opted_out に変更（以後リマインダーを送らない）
- UNATTRIBUTED: 上記に当てはまらない、または否定返信
    → 監査用にメッセージだけ保存

重複排除は3段構え:
1. DedupLedger.claim() によるプロセス内の原子的な確保
2. ギャラリーイベント ID を発生元キーから決定的に導出（create-only）
3. apply_transition の前提条件（プロファイル状態・完了回数）

タスクの書き込みは読み取り時点のタスクを前提条件にする。リマインダー送信の記録などが
先に書かれていた場合（StaleWrite）は読み直して完了を重ね直す。

Reconciler 自身は再試行しない。StoreWriteFailed は確保を解放して再送出し、
呼び出し側（Webhook）がバックオフ付きで再試行する。
"""

from __future__ import annotations

import logging
import mimetypes
import threading
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum

from halloo.domain.errors import (
    DuplicateWrite,
    InvalidPhoneNumber,
    MalformedInboundEvent,
    StaleWrite,
    StoreWriteFailed,
)
from halloo.domain.ids import derive_gallery_event_id, derive_message_id, derive_profile_id
from halloo.domain.models import (
    Classification,
    ElderlyProfile,
    GalleryEventType,
    GalleryHistoryEvent,
    InboundSMS,
    ProfileCreatedData,
    ProfileStatus,
    ResponseType,
    SMSResponse,
    Task,
    TaskResponseData,
    TaskStatus,
    TransitionWrite,
)
from halloo.domain.ports import BlobStorage, EntityStore, MediaFetcher
from halloo.domain.recurrence import advance_after_completion, closed_status, ensure_aware
from halloo.services.classifier import classify, is_opt_out
from halloo.services.dedup_ledger import DedupLedger, message_key, profile_key

logger = logging.getLogger(__name__)

# 完了の書き込みが StaleWrite になった場合の読み直し回数
_STALE_ATTEMPTS = 3


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Transition(Enum):
    PROFILE_CONFIRMATION = "profile_confirmation"
    CONFIRMATION_REPLAY = "confirmation_replay"
    TASK_COMPLETION = "task_completion"
    OPT_OUT = "opt_out"
    UNATTRIBUTED = "unattributed"


class ReconcileOutcome(Enum):
    APPLIED = "applied"
    DUPLICATE_SUPPRESSED = "duplicate_suppressed"
    RECORDED = "recorded"
    PROFILE_NOT_FOUND = "profile_not_found"


@dataclass(frozen=True)
class ReconcileResult:
    """1プロファイル分の判定結果"""

    transition: Transition
    outcome: ReconcileOutcome
    user_id: str | None
    profile_id: str
    message_id: str
    task_id: str | None = None
    gallery_event_id: str | None = None
    note: str = ""


@dataclass
class ReconcileReport:
    """受信メッセージ1通分の判定結果"""

    message_id: str
    classification: Classification
    results: list[ReconcileResult] = field(default_factory=list)

    @property
    def gallery_events_created(self) -> int:
        return sum(
            1
            for r in self.results
            if r.outcome is ReconcileOutcome.APPLIED and r.gallery_event_id
        )


@dataclass(frozen=True)
class _Incoming:
    """Webhook 経由・保存済みメッセージ経由の両方を同じ形で扱うための入力"""

    message_id: str
    text: str
    received_at: datetime
    classification: Classification
    photo_url: str | None = None
    photo_storage_path: str | None = None
    already_stored: bool = False

    @property
    def has_photo(self) -> bool:
        return bool(self.photo_url or self.photo_storage_path)

    @property
    def response_type(self) -> ResponseType:
        if self.has_photo and self.text.strip():
            return ResponseType.BOTH
        if self.has_photo:
            return ResponseType.PHOTO
        return ResponseType.TEXT


class PhotoArchiver:
    """
    MMS の写真を取得して BlobStorage に保存する。

    同じメッセージの保存結果は直近 _RECENT_LIMIT 件まで覚えておき、
    書き込み失敗後の再試行で取得・保存をやり直さない。
    """

    _RECENT_LIMIT = 256

    def __init__(self, fetcher: MediaFetcher, storage: BlobStorage) -> None:
        self._fetcher = fetcher
        self._storage = storage
        self._recent: OrderedDict[tuple[str, str], str] = OrderedDict()
        self._lock = threading.Lock()

    def archive(self, user_id: str, message_id: str, media_url: str) -> str | None:
        """
        写真を gallery/{user_id}/{message_id}{ext} に保存する。

        Returns:
            保存先パス。失敗した場合は None（メディア URL のまま処理を続ける）
        """
        key = (user_id, message_id)
        with self._lock:
            if key in self._recent:
                return self._recent[key]
        try:
            content, content_type = self._fetcher.fetch(media_url)
            ext = mimetypes.guess_extension(content_type) or ""
            path = f"gallery/{user_id}/{message_id}{ext}"
            stored = self._storage.upload(path, content, content_type)
        except Exception:
            logger.exception(
                "Photo archive failed (non-critical): user_id=%s, message_id=%s",
                user_id,
                message_id,
            )
            return None
        with self._lock:
            self._recent[key] = stored
            while len(self._recent) > self._RECENT_LIMIT:
                self._recent.popitem(last=False)
        return stored


class Reconciler:
    """
    受信 SMS と現在のエンティティ状態から状態遷移を1回だけ適用する。
    """

    def __init__(
        self,
        store: EntityStore,
        ledger: DedupLedger,
        clock: Callable[[], datetime] = _utcnow,
        photo_archiver: PhotoArchiver | None = None,
    ) -> None:
        """
        Args:
            store: エンティティストア
            ledger: 重複排除用の処理済みキー集合
            clock: 現在時刻（テストで差し替える）
            photo_archiver: 写真の保存先（省略時はメディア URL のみ記録）
        """
        self._store = store
        self._ledger = ledger
        self._clock = clock
        self._photo_archiver = photo_archiver

    # ── エントリーポイント ──────────────────────────────────────────────────

    def reconcile(self, event: InboundSMS) -> ReconcileReport:
        """
        Webhook で受信した SMS を処理する。

        Raises:
            MalformedInboundEvent: 送信元電話番号が無い、または解決できない
            StoreWriteFailed: 書き込み失敗（呼び出し側で再試行）
        """
        if not event.from_phone or not event.from_phone.strip():
            raise MalformedInboundEvent("Inbound SMS has no sender phone number")
        try:
            phone = derive_profile_id(event.from_phone)
        except InvalidPhoneNumber as e:
            raise MalformedInboundEvent(
                f"Unresolvable sender phone number: {event.from_phone!r}"
            ) from e

        message_id = derive_message_id(event.message_sid)
        received_at = ensure_aware(event.received_at or self._clock())
        classification = classify(event.body)
        report = ReconcileReport(message_id=message_id, classification=classification)

        profiles = self._store.find_profiles_by_phone(phone)
        if not profiles:
            logger.warning(
                "No profile for inbound SMS: phone=%s, message_id=%s", phone, message_id
            )
            report.results.append(
                ReconcileResult(
                    transition=Transition.UNATTRIBUTED,
                    outcome=ReconcileOutcome.PROFILE_NOT_FOUND,
                    user_id=None,
                    profile_id=phone,
                    message_id=message_id,
                    note="ProfileNotFound",
                )
            )
            return report

        for profile in profiles:
            incoming = _Incoming(
                message_id=message_id,
                text=event.body or "",
                received_at=received_at,
                classification=classification,
                photo_url=event.photo_url if event.has_photo else None,
            )
            if incoming.photo_url and self._photo_archiver is not None:
                path = self._archive_photo(profile, message_id, incoming.photo_url)
                incoming = replace(incoming, photo_storage_path=path)
            report.results.append(self._evaluate(profile, incoming))

        for result in report.results:
            self._log_result(result)
        return report

    def _archive_photo(
        self, profile: ElderlyProfile, message_id: str, media_url: str
    ) -> str | None:
        # 処理済みのメッセージ（Twilio の再送など）は取得も保存もし直さない
        if self._ledger.seen(message_key(profile.user_id, message_id)):
            return None
        stored = self._store.get_message(profile.user_id, profile.id, message_id)
        if stored is not None:
            return stored.photo_storage_path
        return self._photo_archiver.archive(profile.user_id, message_id, media_url)

    def replay(self, message: SMSResponse) -> ReconcileResult:
        """
        保存済みメッセージ（リスナーの再配信を含む）を処理する。

        このサービスが書き込んだメッセージ（processing_notes あり）は処理済みとみなす。
        外部（Cloud Function 等）が保存した未処理メッセージのみ状態遷移を適用する。
        """
        classification = classify(message.text_response)
        if message.processing_notes:
            return ReconcileResult(
                transition=(
                    Transition.CONFIRMATION_REPLAY
                    if message.is_confirmation_response
                    else Transition.UNATTRIBUTED
                ),
                outcome=ReconcileOutcome.DUPLICATE_SUPPRESSED,
                user_id=message.user_id,
                profile_id=message.profile_id,
                message_id=message.id,
                task_id=message.task_id,
                note="already reconciled",
            )

        profile = self._store.get_profile(message.user_id, message.profile_id)
        if profile is None:
            logger.warning(
                "Replay skipped, profile not found: user_id=%s, profile_id=%s",
                message.user_id,
                message.profile_id,
            )
            return ReconcileResult(
                transition=Transition.UNATTRIBUTED,
                outcome=ReconcileOutcome.PROFILE_NOT_FOUND,
                user_id=message.user_id,
                profile_id=message.profile_id,
                message_id=message.id,
                note="ProfileNotFound",
            )

        incoming = _Incoming(
            message_id=message.id,
            text=message.text_response,
            received_at=ensure_aware(message.received_at),
            classification=classification,
            photo_url=message.photo_url,
            photo_storage_path=message.photo_storage_path,
            already_stored=True,
        )
        result = self._evaluate(profile, incoming)
        self._log_result(result)
        return result

    # ── 遷移の判定 ──────────────────────────────────────────────────────────

    def _evaluate(self, profile: ElderlyProfile, incoming: _Incoming) -> ReconcileResult:
        classification = incoming.classification

        if is_opt_out(incoming.text):
            return self._opt_out(profile, incoming)

        if profile.status is ProfileStatus.PENDING_CONFIRMATION:
            if classification.is_positive:
                return self._confirm_profile(profile, incoming)
            return self._record(profile, incoming, note="confirmation not positive")

        if profile.status is ProfileStatus.CONFIRMED:
            task = self._find_awaiting_task(profile, incoming)
            if task is not None and self._is_completion_evidence(incoming):
                return self._complete_task(profile, task, incoming)
            if task is None and classification.is_positive:
                return self._confirmation_replay(profile, incoming)
            return self._record(profile, incoming, task=task)

        return self._record(profile, incoming, note="profile inactive")

    @staticmethod
    def _is_completion_evidence(incoming: _Incoming) -> bool:
        if incoming.classification.is_positive:
            return True
        return incoming.has_photo and not incoming.classification.is_negative

    def _find_awaiting_task(
        self, profile: ElderlyProfile, incoming: _Incoming
    ) -> Task | None:
        """返信待ちのタスクのうち、最後にリマインダーを送ったものを返す"""
        candidates = [
            t
            for t in self._store.list_tasks(profile.user_id, profile.id)
            if t.status is TaskStatus.ACTIVE
            and t.is_awaiting_response
            and ensure_aware(t.last_reminder_sent_at) <= incoming.received_at
        ]
        if not candidates:
            return None
        return max(candidates, key=lambda t: ensure_aware(t.last_reminder_sent_at))

    # ── 各遷移 ─────────────────────────────────────────────────────────────

    def _confirm_profile(
        self, profile: ElderlyProfile, incoming: _Incoming
    ) -> ReconcileResult:
        key = profile_key(profile.user_id, profile.id)
        if not self._ledger.claim(key):
            return self._suppressed(
                Transition.CONFIRMATION_REPLAY, profile, incoming, note="ledger"
            )

        confirmed = replace(
            profile,
            status=ProfileStatus.CONFIRMED,
            confirmed_at=incoming.received_at,
        )
        event = GalleryHistoryEvent(
            id=derive_gallery_event_id(key),
            user_id=profile.user_id,
            profile_id=profile.id,
            event_type=GalleryEventType.PROFILE_CREATED,
            payload=ProfileCreatedData(
                profile_name=profile.name,
                relationship=profile.relationship,
                photo_url=profile.photo_url,
            ),
            created_at=incoming.received_at,
        )
        message = self._build_message(
            profile,
            incoming,
            Transition.PROFILE_CONFIRMATION,
            is_completed=True,
            is_confirmation=True,
            is_positive_confirmation=True,
        )
        write = TransitionWrite(
            message=None if incoming.already_stored else message,
            profile=confirmed,
            expected_profile_status=ProfileStatus.PENDING_CONFIRMATION,
            gallery_event=event,
        )
        return self._apply(
            Transition.PROFILE_CONFIRMATION, profile, incoming, write, [key]
        )

    def _confirmation_replay(
        self, profile: ElderlyProfile, incoming: _Incoming
    ) -> ReconcileResult:
        # 既に確認済み。書き込みもギャラリーイベントも行わない
        self._ledger.mark_seen(profile_key(profile.user_id, profile.id))
        return self._suppressed(
            Transition.CONFIRMATION_REPLAY, profile, incoming, note="already confirmed"
        )

    def _complete_task(
        self, profile: ElderlyProfile, task: Task, incoming: _Incoming
    ) -> ReconcileResult:
        key = message_key(profile.user_id, incoming.message_id)
        if not self._ledger.claim(key):
            return self._suppressed(
                Transition.TASK_COMPLETION, profile, incoming, task=task, note="ledger"
            )
        occurrence = (
            f"occurrence:{task.user_id}/{task.id}@"
            f"{ensure_aware(task.last_reminder_sent_at).isoformat()}"
        )
        if not self._ledger.claim(occurrence):
            self._ledger.release(key)
            return self._record(
                profile, incoming, task=task, note="occurrence already completed"
            )

        claimed = [key, occurrence]
        expected_count = task.completion_count
        for attempt in range(1, _STALE_ATTEMPTS + 1):
            write = self._completion_write(profile, task, incoming, key)
            try:
                return self._apply(
                    Transition.TASK_COMPLETION, profile, incoming, write, claimed, task
                )
            except StaleWrite:
                # リマインダー送信の記録などが先に書かれた。読み直して完了だけ重ねる
                current = self._store.get_task(task.user_id, task.profile_id, task.id)
                if current is None or current.completion_count != expected_count:
                    return self._suppressed(
                        Transition.TASK_COMPLETION,
                        profile,
                        incoming,
                        task=task,
                        note="task changed",
                    )
                logger.info(
                    "Task changed before completion was written: task_id=%s, attempt=%d/%d",
                    task.id,
                    attempt,
                    _STALE_ATTEMPTS,
                )
                task = current

        for k in claimed:
            self._ledger.release(k)
        raise StoreWriteFailed(f"Task kept changing during completion: {task.id}")

    def _completion_write(
        self, profile: ElderlyProfile, task: Task, incoming: _Incoming, key: str
    ) -> TransitionWrite:
        now = self._clock()
        next_date = advance_after_completion(task, now)
        completed = replace(
            task,
            completion_count=task.completion_count + 1,
            last_completed_at=incoming.received_at,
            is_overdue=False,
            next_scheduled_date=next_date or task.next_scheduled_date,
            status=task.status if next_date is not None else closed_status(task),
        )
        message = self._build_message(
            profile, incoming, Transition.TASK_COMPLETION, task=task, is_completed=True
        )
        event = GalleryHistoryEvent(
            id=derive_gallery_event_id(key),
            user_id=profile.user_id,
            profile_id=profile.id,
            event_type=GalleryEventType.TASK_RESPONSE,
            payload=TaskResponseData(
                task_id=task.id,
                task_title=task.title,
                text_response=incoming.text or None,
                photo_url=incoming.photo_storage_path or incoming.photo_url,
                response_type=incoming.response_type,
            ),
            created_at=incoming.received_at,
        )
        return TransitionWrite(
            message=None if incoming.already_stored else message,
            task=completed,
            expected_completion_count=task.completion_count,
            expected_task=task,
            gallery_event=event,
        )

    def _opt_out(self, profile: ElderlyProfile, incoming: _Incoming) -> ReconcileResult:
        if profile.sms_opted_out:
            return self._record(profile, incoming, note="already opted out")
        opted_out = replace(
            profile,
            status=ProfileStatus.INACTIVE,
            sms_opted_out=True,
            opted_out_at=incoming.received_at,
        )
        message = self._build_message(profile, incoming, Transition.OPT_OUT)
        write = TransitionWrite(
            message=None if incoming.already_stored else message,
            profile=opted_out,
            expected_profile_status=profile.status,
        )
        return self._apply(Transition.OPT_OUT, profile, incoming, write, [])

    def _record(
        self,
        profile: ElderlyProfile,
        incoming: _Incoming,
        task: Task | None = None,
        note: str = "",
    ) -> ReconcileResult:
        if incoming.already_stored:
            return ReconcileResult(
                transition=Transition.UNATTRIBUTED,
                outcome=ReconcileOutcome.RECORDED,
                user_id=profile.user_id,
                profile_id=profile.id,
                message_id=incoming.message_id,
                task_id=task.id if task else None,
                note=note or "already stored",
            )
        message = self._build_message(
            profile,
            incoming,
            Transition.UNATTRIBUTED,
            task=task,
            is_completed=False,
            is_confirmation=profile.is_pending,
        )
        try:
            self._store.create_message(message)
        except DuplicateWrite:
            return self._suppressed(
                Transition.UNATTRIBUTED, profile, incoming, task=task, note="message exists"
            )
        return ReconcileResult(
            transition=Transition.UNATTRIBUTED,
            outcome=ReconcileOutcome.RECORDED,
            user_id=profile.user_id,
            profile_id=profile.id,
            message_id=incoming.message_id,
            task_id=task.id if task else None,
            note=note,
        )

    # ── 共通処理 ───────────────────────────────────────────────────────────

    def _apply(
        self,
        transition: Transition,
        profile: ElderlyProfile,
        incoming: _Incoming,
        write: TransitionWrite,
        claimed: list[str],
        task: Task | None = None,
    ) -> ReconcileResult:
        try:
            self._store.apply_transition(write)
        except DuplicateWrite as e:
            # 別プロセス/過去の処理で適用済み。確保は残す
            return self._suppressed(transition, profile, incoming, task=task, note=str(e))
        except StoreWriteFailed:
            for key in claimed:
                self._ledger.release(key)
            logger.error(
                "Transition write failed: transition=%s, profile_id=%s, message_id=%s",
                transition.value,
                profile.id,
                incoming.message_id,
            )
            raise
        return ReconcileResult(
            transition=transition,
            outcome=ReconcileOutcome.APPLIED,
            user_id=profile.user_id,
            profile_id=profile.id,
            message_id=incoming.message_id,
            task_id=task.id if task else None,
            gallery_event_id=write.gallery_event.id if write.gallery_event else None,
        )

    @staticmethod
    def _suppressed(
        transition: Transition,
        profile: ElderlyProfile,
        incoming: _Incoming,
        task: Task | None = None,
        note: str = "",
    ) -> ReconcileResult:
        return ReconcileResult(
            transition=transition,
            outcome=ReconcileOutcome.DUPLICATE_SUPPRESSED,
            user_id=profile.user_id,
            profile_id=profile.id,
            message_id=incoming.message_id,
            task_id=task.id if task else None,
            note=note,
        )

    @staticmethod
    def _build_message(
        profile: ElderlyProfile,
        incoming: _Incoming,
        transition: Transition,
        task: Task | None = None,
        is_completed: bool = False,
        is_confirmation: bool = False,
        is_positive_confirmation: bool = False,
    ) -> SMSResponse:
        return SMSResponse(
            id=incoming.message_id,
            user_id=profile.user_id,
            profile_id=profile.id,
            text_response=incoming.text,
            received_at=incoming.received_at,
            task_id=task.id if task else None,
            photo_url=incoming.photo_url,
            photo_storage_path=incoming.photo_storage_path,
            response_type=incoming.response_type,
            is_completed=is_completed,
            is_confirmation_response=is_confirmation,
            is_positive_confirmation=is_positive_confirmation,
            response_score=incoming.classification.confidence,
            processing_notes=transition.value,
        )

    @staticmethod
    def _log_result(result: ReconcileResult) -> None:
        logger.info(
            "Reconciled: transition=%s, outcome=%s, profile_id=%s, message_id=%s",
            result.transition.value,
            result.outcome.value,
            result.profile_id,
            result.message_id,
            extra={
                "extra_fields": {
                    "profile_id": result.profile_id,
                    "task_id": result.task_id,
                    "message_id": result.message_id,
                    "outcome": result.outcome.value,
                }
            },
        )
