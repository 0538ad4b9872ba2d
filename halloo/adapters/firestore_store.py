"""Firestore EntityStore Adapter

Firestore コレクション構造（iOS アプリと共有するためフィールド名は camelCase）:
  users/{uid}                                         ← 介護者ユーザー
  users/{uid}/profiles/{profileId}                    ← 見守り対象者（ID = E.164）
  users/{uid}/profiles/{profileId}/habits/{taskId}    ← タスク
  users/{uid}/profiles/{profileId}/messages/{msgId}   ← 受信 SMS（ID = MessageSid）
  users/{uid}/profiles/{profileId}/messages/{msgId}   ← 送信 SMS の控え（direction=outbound）
  users/{uid}/smsLogs/{logId}                         ← 送信 SMS の監査ログ
  users/{uid}/galleryEvents/{eventId}                 ← ギャラリー履歴

habits / messages / galleryEvents はコレクショングループクエリで横断検索するため、
各ドキュメントに userId / profileId を持たせている。
"""

from __future__ import annotations

import logging
from datetime import date, datetime, time
from typing import Any

from google.api_core import exceptions as gcp_exceptions
from google.cloud import firestore

from halloo.domain.errors import DuplicateWrite, StaleWrite, StoreWriteFailed
from halloo.domain.models import (
    Change,
    ElderlyProfile,
    GalleryEventType,
    GalleryHistoryEvent,
    MessageDirection,
    OutboundMessageType,
    OutboundSMSLog,
    ProfileCreatedData,
    ProfileStatus,
    ResponseType,
    SMSResponse,
    Task,
    TaskFrequency,
    TaskResponseData,
    TaskStatus,
    TransitionWrite,
    User,
    Weekday,
)
from halloo.domain.ports import ChangeCallback, EntityStore, Subscription

logger = logging.getLogger(__name__)

_USERS = "users"
_PROFILES = "profiles"
_HABITS = "habits"
_MESSAGES = "messages"
_GALLERY = "galleryEvents"
_SMS_LOGS = "smsLogs"


class _WatchSubscription(Subscription):
    def __init__(self, watch: Any) -> None:
        self._watch = watch

    def unsubscribe(self) -> None:
        self._watch.unsubscribe()


class FirestoreEntityStore(EntityStore):
    """
    Firestore を使った EntityStore 実装。

    状態遷移の書き込み（apply_transition）はトランザクション内で
    前提条件を確認してから一括コミットする。
    """

    def __init__(self, db: firestore.Client) -> None:
        """
        Args:
            db: 初期化済みの Firestore クライアント
        """
        self._db = db

    # ── references ──────────────────────────────────────────────────────────

    def _user_ref(self, user_id: str):
        return self._db.collection(_USERS).document(user_id)

    def _profile_ref(self, user_id: str, profile_id: str):
        return self._user_ref(user_id).collection(_PROFILES).document(profile_id)

    def _habit_ref(self, user_id: str, profile_id: str, task_id: str):
        return (
            self._profile_ref(user_id, profile_id).collection(_HABITS).document(task_id)
        )

    def _message_ref(self, user_id: str, profile_id: str, message_id: str):
        return (
            self._profile_ref(user_id, profile_id)
            .collection(_MESSAGES)
            .document(message_id)
        )

    def _gallery_ref(self, user_id: str, event_id: str):
        return self._user_ref(user_id).collection(_GALLERY).document(event_id)

    # ── users ───────────────────────────────────────────────────────────────

    def get_user(self, user_id: str) -> User | None:
        snap = self._user_ref(user_id).get()
        if not snap.exists:
            return None
        return self._dict_to_user(user_id, snap.to_dict() or {})

    def upsert_user(self, user: User) -> None:
        self._user_ref(user.id).set(self._user_to_dict(user), merge=True)
        logger.info("Upserted user: uid=%s", user.id)

    def adjust_user_counters(
        self, user_id: str, profiles: int = 0, tasks: int = 0
    ) -> None:
        update: dict[str, Any] = {"updatedAt": firestore.SERVER_TIMESTAMP}
        if profiles:
            update["profileCount"] = firestore.Increment(profiles)
        if tasks:
            update["taskCount"] = firestore.Increment(tasks)
        self._user_ref(user_id).set(update, merge=True)

    def reset_sms_quota(self, user_id: str, period_end: datetime) -> None:
        self._set_user_fields(
            user_id, {"smsQuotaUsed": 0, "smsQuotaPeriodEnd": period_end}
        )
        logger.info("SMS quota reset: uid=%s, period_end=%s", user_id, period_end)

    def increment_sms_usage(self, user_id: str, count: int = 1) -> None:
        self._set_user_fields(user_id, {"smsQuotaUsed": firestore.Increment(count)})

    def _set_user_fields(self, user_id: str, fields: dict[str, Any]) -> None:
        ref = self._user_ref(user_id)
        try:
            ref.set({**fields, "updatedAt": firestore.SERVER_TIMESTAMP}, merge=True)
        except gcp_exceptions.GoogleAPICallError as e:
            logger.error("Failed to update user: path=%s, error=%s", ref.path, e)
            raise StoreWriteFailed(str(e)) from e

    def create_sms_log(self, log: OutboundSMSLog) -> None:
        ref = self._user_ref(log.user_id).collection(_SMS_LOGS).document(log.id)
        try:
            ref.set(self._sms_log_to_dict(log))
        except gcp_exceptions.GoogleAPICallError as e:
            logger.error("Failed to write SMS log: path=%s, error=%s", ref.path, e)
            raise StoreWriteFailed(str(e)) from e

    def list_sms_logs(self, user_id: str) -> list[OutboundSMSLog]:
        snaps = (
            self._user_ref(user_id)
            .collection(_SMS_LOGS)
            .order_by("sentAt", direction=firestore.Query.DESCENDING)
            .stream()
        )
        return [
            self._dict_to_sms_log(snap.id, user_id, snap.to_dict() or {})
            for snap in snaps
        ]

    # ── profiles ────────────────────────────────────────────────────────────

    def get_profile(self, user_id: str, profile_id: str) -> ElderlyProfile | None:
        snap = self._profile_ref(user_id, profile_id).get()
        if not snap.exists:
            return None
        return self._dict_to_profile(profile_id, user_id, snap.to_dict() or {})

    def find_profiles_by_phone(self, phone_number: str) -> list[ElderlyProfile]:
        snaps = (
            self._db.collection_group(_PROFILES)
            .where("phoneNumber", "==", phone_number)
            .stream()
        )
        return [self._snap_to_profile(snap) for snap in snaps]

    def list_profiles(self, user_id: str) -> list[ElderlyProfile]:
        snaps = self._user_ref(user_id).collection(_PROFILES).stream()
        return [
            self._dict_to_profile(snap.id, user_id, snap.to_dict() or {})
            for snap in snaps
        ]

    def upsert_profile(self, profile: ElderlyProfile) -> None:
        self._profile_ref(profile.user_id, profile.id).set(
            self._profile_to_dict(profile)
        )
        logger.info(
            "Upserted profile: uid=%s, profile_id=%s, status=%s",
            profile.user_id,
            profile.id,
            profile.status.value,
        )

    def delete_profile(self, user_id: str, profile_id: str) -> int:
        """プロファイルと habits/messages サブコレクション、ギャラリーイベントを削除"""
        profile_ref = self._profile_ref(user_id, profile_id)
        deleted_tasks = 0
        for snap in profile_ref.collection(_HABITS).stream():
            snap.reference.delete()
            deleted_tasks += 1
        for snap in profile_ref.collection(_MESSAGES).stream():
            snap.reference.delete()
        gallery = (
            self._user_ref(user_id)
            .collection(_GALLERY)
            .where("profileId", "==", profile_id)
            .stream()
        )
        for snap in gallery:
            snap.reference.delete()
        profile_ref.delete()
        logger.info(
            "Deleted profile: uid=%s, profile_id=%s, tasks=%d",
            user_id,
            profile_id,
            deleted_tasks,
        )
        return deleted_tasks

    def observe_profiles(self, user_id: str, callback: ChangeCallback) -> Subscription:
        query = self._user_ref(user_id).collection(_PROFILES)
        return self._watch(query, self._snap_to_profile, callback)

    # ── tasks ───────────────────────────────────────────────────────────────

    def get_task(self, user_id: str, profile_id: str, task_id: str) -> Task | None:
        snap = self._habit_ref(user_id, profile_id, task_id).get()
        if not snap.exists:
            return None
        return self._dict_to_task(task_id, snap.to_dict() or {})

    def list_tasks(self, user_id: str, profile_id: str | None = None) -> list[Task]:
        if profile_id is not None:
            snaps = self._profile_ref(user_id, profile_id).collection(_HABITS).stream()
        else:
            snaps = (
                self._db.collection_group(_HABITS)
                .where("userId", "==", user_id)
                .stream()
            )
        return [self._dict_to_task(snap.id, snap.to_dict() or {}) for snap in snaps]

    def list_due_tasks(self, now: datetime) -> list[Task]:
        # status + nextScheduledDate の複合インデックスが必要
        snaps = (
            self._db.collection_group(_HABITS)
            .where("status", "==", TaskStatus.ACTIVE.value)
            .where("nextScheduledDate", "<=", now)
            .stream()
        )
        return [self._dict_to_task(snap.id, snap.to_dict() or {}) for snap in snaps]

    def upsert_task(self, task: Task) -> None:
        try:
            self._habit_ref(task.user_id, task.profile_id, task.id).set(
                self._task_to_dict(task)
            )
        except gcp_exceptions.GoogleAPICallError as e:
            logger.error("Failed to write task: task_id=%s, error=%s", task.id, e)
            raise StoreWriteFailed(str(e)) from e

    def observe_tasks(self, user_id: str, callback: ChangeCallback) -> Subscription:
        query = self._db.collection_group(_HABITS).where("userId", "==", user_id)
        return self._watch(
            query, lambda snap: self._dict_to_task(snap.id, snap.to_dict() or {}), callback
        )

    # ── messages ────────────────────────────────────────────────────────────

    def create_message(self, message: SMSResponse) -> None:
        ref = self._message_ref(message.user_id, message.profile_id, message.id)
        try:
            ref.create(self._message_to_dict(message))
        except gcp_exceptions.AlreadyExists as e:
            raise DuplicateWrite(ref.path) from e
        except gcp_exceptions.GoogleAPICallError as e:
            logger.error("Failed to create message: path=%s, error=%s", ref.path, e)
            raise StoreWriteFailed(str(e)) from e
        logger.info(
            "Created message: uid=%s, profile_id=%s, message_id=%s",
            message.user_id,
            message.profile_id,
            message.id,
        )

    def get_message(
        self, user_id: str, profile_id: str, message_id: str
    ) -> SMSResponse | None:
        snap = self._message_ref(user_id, profile_id, message_id).get()
        if not snap.exists:
            return None
        return self._dict_to_message(message_id, snap.to_dict() or {})

    def list_messages(self, user_id: str) -> list[SMSResponse]:
        snaps = (
            self._db.collection_group(_MESSAGES).where("userId", "==", user_id).stream()
        )
        return [self._dict_to_message(snap.id, snap.to_dict() or {}) for snap in snaps]

    def observe_messages(self, user_id: str, callback: ChangeCallback) -> Subscription:
        query = self._db.collection_group(_MESSAGES).where("userId", "==", user_id)
        return self._watch(
            query,
            lambda snap: self._dict_to_message(snap.id, snap.to_dict() or {}),
            callback,
        )

    # ── gallery ─────────────────────────────────────────────────────────────

    def create_gallery_event(self, event: GalleryHistoryEvent) -> None:
        ref = self._gallery_ref(event.user_id, event.id)
        try:
            ref.create(self._gallery_to_dict(event))
        except gcp_exceptions.AlreadyExists as e:
            raise DuplicateWrite(ref.path) from e
        except gcp_exceptions.GoogleAPICallError as e:
            logger.error("Failed to create gallery event: path=%s, error=%s", ref.path, e)
            raise StoreWriteFailed(str(e)) from e

    def list_gallery_events(self, user_id: str) -> list[GalleryHistoryEvent]:
        snaps = (
            self._user_ref(user_id)
            .collection(_GALLERY)
            .order_by("createdAt", direction=firestore.Query.DESCENDING)
            .stream()
        )
        return [self._dict_to_gallery(snap.id, snap.to_dict() or {}) for snap in snaps]

    def list_gallery_events_before(
        self, cutoff: datetime, limit: int = 500
    ) -> list[GalleryHistoryEvent]:
        snaps = (
            self._db.collection_group(_GALLERY)
            .where("createdAt", "<", cutoff)
            .order_by("createdAt")
            .limit(limit)
            .stream()
        )
        return [self._dict_to_gallery(snap.id, snap.to_dict() or {}) for snap in snaps]

    def delete_gallery_event(self, user_id: str, event_id: str) -> None:
        ref = self._gallery_ref(user_id, event_id)
        try:
            ref.delete()
        except gcp_exceptions.GoogleAPICallError as e:
            logger.error("Failed to delete gallery event: path=%s, error=%s", ref.path, e)
            raise StoreWriteFailed(str(e)) from e
        logger.info("Deleted gallery event: uid=%s, event_id=%s", user_id, event_id)

    def observe_gallery_events(
        self, user_id: str, callback: ChangeCallback
    ) -> Subscription:
        query = self._user_ref(user_id).collection(_GALLERY)
        return self._watch(
            query,
            lambda snap: self._dict_to_gallery(snap.id, snap.to_dict() or {}),
            callback,
        )

    # ── transitions ─────────────────────────────────────────────────────────

    def apply_transition(self, write: TransitionWrite) -> None:
        transaction = self._db.transaction()
        try:
            _commit_transition(transaction, self, write)
        except (DuplicateWrite, StaleWrite):
            raise
        except gcp_exceptions.AlreadyExists as e:
            raise DuplicateWrite(str(e)) from e
        except gcp_exceptions.GoogleAPICallError as e:
            logger.error("Transition commit failed: %s", e)
            raise StoreWriteFailed(str(e)) from e

    # ── listeners ───────────────────────────────────────────────────────────

    @staticmethod
    def _watch(query, convert, callback: ChangeCallback) -> Subscription:
        """
        on_snapshot を Change のリストに変換して callback に渡す。

        初回（および再購読時）は全ドキュメントが ADDED として届く。
        """

        def on_snapshot(docs, changes, read_time) -> None:
            batch: list[Change] = []
            for change in changes:
                try:
                    entity = convert(change.document)
                except (KeyError, ValueError):
                    logger.exception(
                        "Skipping unreadable document: %s", change.document.reference.path
                    )
                    continue
                batch.append(Change(entity, removed=change.type.name == "REMOVED"))
            if batch:
                callback(batch)

        return _WatchSubscription(query.on_snapshot(on_snapshot))

    # ── serialization ───────────────────────────────────────────────────────

    @staticmethod
    def _user_to_dict(user: User) -> dict:
        return {
            "id": user.id,
            "email": user.email,
            "fullName": user.full_name,
            "subscriptionStatus": user.subscription_status,
            "profileCount": user.profile_count,
            "taskCount": user.task_count,
            "smsQuotaLimit": user.sms_quota_limit,
            "smsQuotaUsed": user.sms_quota_used,
            "smsQuotaPeriodEnd": user.sms_quota_period_end,
            "updatedAt": firestore.SERVER_TIMESTAMP,
        }

    @staticmethod
    def _dict_to_user(user_id: str, data: dict) -> User:
        return User(
            id=user_id,
            email=data.get("email", ""),
            full_name=data.get("fullName", ""),
            subscription_status=data.get("subscriptionStatus", "trial"),
            profile_count=data.get("profileCount", 0),
            task_count=data.get("taskCount", 0),
            sms_quota_limit=data.get("smsQuotaLimit", 50),
            sms_quota_used=data.get("smsQuotaUsed", 0),
            sms_quota_period_end=data.get("smsQuotaPeriodEnd"),
        )

    @staticmethod
    def _profile_to_dict(profile: ElderlyProfile) -> dict:
        return {
            "id": profile.id,
            "userId": profile.user_id,
            "name": profile.name,
            "phoneNumber": profile.phone_number,
            "relationship": profile.relationship,
            "status": profile.status.value,
            "timeZone": profile.time_zone,
            "photoURL": profile.photo_url,
            "createdAt": profile.created_at or firestore.SERVER_TIMESTAMP,
            "confirmedAt": profile.confirmed_at,
            "smsOptedOut": profile.sms_opted_out,
            "optOutDate": profile.opted_out_at,
        }

    @staticmethod
    def _dict_to_profile(profile_id: str, user_id: str, data: dict) -> ElderlyProfile:
        return ElderlyProfile(
            id=profile_id,
            user_id=data.get("userId", user_id),
            name=data.get("name", ""),
            phone_number=data.get("phoneNumber", profile_id),
            relationship=data.get("relationship", ""),
            status=ProfileStatus(data.get("status", "pendingConfirmation")),
            time_zone=data.get("timeZone", "UTC"),
            photo_url=data.get("photoURL"),
            created_at=data.get("createdAt"),
            confirmed_at=data.get("confirmedAt"),
            sms_opted_out=data.get("smsOptedOut", False),
            opted_out_at=data.get("optOutDate"),
        )

    def _snap_to_profile(self, snap) -> ElderlyProfile:
        # users/{uid}/profiles/{pid} の親から uid を取る
        user_id = snap.reference.parent.parent.id
        return self._dict_to_profile(snap.id, user_id, snap.to_dict() or {})

    @staticmethod
    def _task_to_dict(task: Task) -> dict:
        return {
            "id": task.id,
            "userId": task.user_id,
            "profileId": task.profile_id,
            "title": task.title,
            "description": task.description,
            "frequency": task.frequency.value,
            "scheduledTime": task.scheduled_time.strftime("%H:%M"),
            "customDays": [d.value for d in task.custom_days],
            "startDate": task.start_date.isoformat() if task.start_date else None,
            "endDate": task.end_date.isoformat() if task.end_date else None,
            "timeZone": task.time_zone,
            "deadlineMinutes": task.deadline_minutes,
            "requiresPhoto": task.requires_photo,
            "status": task.status.value,
            "nextScheduledDate": task.next_scheduled_date,
            "completionCount": task.completion_count,
            "lastCompletedAt": task.last_completed_at,
            "lastReminderSentAt": task.last_reminder_sent_at,
            "lastReminderSid": task.last_reminder_sid,
            "isOverdue": task.is_overdue,
            "missedCount": task.missed_count,
            "createdAt": task.created_at or firestore.SERVER_TIMESTAMP,
        }

    @staticmethod
    def _dict_to_task(task_id: str, data: dict) -> Task:
        start = data.get("startDate")
        end = data.get("endDate")
        return Task(
            id=task_id,
            user_id=data["userId"],
            profile_id=data["profileId"],
            title=data.get("title", ""),
            description=data.get("description", ""),
            frequency=TaskFrequency(data.get("frequency", "daily")),
            scheduled_time=time.fromisoformat(data.get("scheduledTime", "09:00")),
            custom_days=tuple(Weekday(d) for d in data.get("customDays", [])),
            start_date=date.fromisoformat(start) if start else None,
            end_date=date.fromisoformat(end) if end else None,
            time_zone=data.get("timeZone", "UTC"),
            deadline_minutes=data.get("deadlineMinutes", 10),
            requires_photo=data.get("requiresPhoto", False),
            status=TaskStatus(data.get("status", "active")),
            next_scheduled_date=data["nextScheduledDate"],
            completion_count=data.get("completionCount", 0),
            last_completed_at=data.get("lastCompletedAt"),
            last_reminder_sent_at=data.get("lastReminderSentAt"),
            last_reminder_sid=data.get("lastReminderSid"),
            is_overdue=data.get("isOverdue", False),
            missed_count=data.get("missedCount", 0),
            created_at=data.get("createdAt"),
        )

    @staticmethod
    def _message_to_dict(message: SMSResponse) -> dict:
        return {
            "id": message.id,
            "userId": message.user_id,
            "profileId": message.profile_id,
            "taskId": message.task_id,
            "textResponse": message.text_response,
            "photoURL": message.photo_url,
            "photoStoragePath": message.photo_storage_path,
            "responseType": message.response_type.value,
            "isCompleted": message.is_completed,
            "isConfirmationResponse": message.is_confirmation_response,
            "isPositiveConfirmation": message.is_positive_confirmation,
            "responseScore": message.response_score,
            "receivedAt": message.received_at,
            "processingNotes": message.processing_notes,
            "direction": message.direction.value,
        }

    @staticmethod
    def _dict_to_message(message_id: str, data: dict) -> SMSResponse:
        return SMSResponse(
            id=message_id,
            user_id=data["userId"],
            profile_id=data["profileId"],
            task_id=data.get("taskId"),
            text_response=data.get("textResponse", ""),
            photo_url=data.get("photoURL"),
            photo_storage_path=data.get("photoStoragePath"),
            response_type=ResponseType(data.get("responseType", "text")),
            is_completed=data.get("isCompleted", False),
            is_confirmation_response=data.get("isConfirmationResponse", False),
            is_positive_confirmation=data.get("isPositiveConfirmation", False),
            response_score=data.get("responseScore"),
            received_at=data["receivedAt"],
            processing_notes=data.get("processingNotes"),
            direction=MessageDirection(data.get("direction", "inbound")),
        )

    @staticmethod
    def _sms_log_to_dict(log: OutboundSMSLog) -> dict:
        return {
            "to": log.to,
            "message": log.body,
            "profileId": log.profile_id,
            "messageType": log.message_type.value,
            "twilioSid": log.provider_sid,
            "status": log.status,
            "sentAt": log.sent_at,
            "direction": MessageDirection.OUTBOUND.value,
            "habitId": log.task_id,
            "nextScheduledDate": log.scheduled_for,
            "errorMessage": log.error,
        }

    @staticmethod
    def _dict_to_sms_log(log_id: str, user_id: str, data: dict) -> OutboundSMSLog:
        return OutboundSMSLog(
            id=log_id,
            user_id=user_id,
            profile_id=data.get("profileId", ""),
            to=data.get("to", ""),
            body=data.get("message", ""),
            message_type=OutboundMessageType(data.get("messageType", "taskReminder")),
            sent_at=data["sentAt"],
            status=data.get("status", "sent"),
            provider_sid=data.get("twilioSid"),
            task_id=data.get("habitId"),
            scheduled_for=data.get("nextScheduledDate"),
            error=data.get("errorMessage"),
        )

    @staticmethod
    def _gallery_to_dict(event: GalleryHistoryEvent) -> dict:
        payload = event.payload
        if isinstance(payload, ProfileCreatedData):
            event_data = {
                "profileName": payload.profile_name,
                "relationship": payload.relationship,
                "photoURL": payload.photo_url,
            }
        else:
            event_data = {
                "taskId": payload.task_id,
                "taskTitle": payload.task_title,
                "textResponse": payload.text_response,
                "photoURL": payload.photo_url,
                "responseType": payload.response_type.value,
            }
        return {
            "id": event.id,
            "userId": event.user_id,
            "profileId": event.profile_id,
            "eventType": event.event_type.value,
            "eventData": event_data,
            "createdAt": event.created_at,
        }

    @staticmethod
    def _dict_to_gallery(event_id: str, data: dict) -> GalleryHistoryEvent:
        event_type = GalleryEventType(data["eventType"])
        raw = data.get("eventData", {})
        if event_type is GalleryEventType.PROFILE_CREATED:
            payload: ProfileCreatedData | TaskResponseData = ProfileCreatedData(
                profile_name=raw.get("profileName", ""),
                relationship=raw.get("relationship", ""),
                photo_url=raw.get("photoURL"),
            )
        else:
            payload = TaskResponseData(
                task_id=raw.get("taskId"),
                task_title=raw.get("taskTitle"),
                text_response=raw.get("textResponse"),
                photo_url=raw.get("photoURL"),
                response_type=ResponseType(raw.get("responseType", "text")),
            )
        return GalleryHistoryEvent(
            id=event_id,
            user_id=data["userId"],
            profile_id=data["profileId"],
            event_type=event_type,
            payload=payload,
            created_at=data["createdAt"],
        )


@firestore.transactional
def _commit_transition(
    transaction, store: FirestoreEntityStore, write: TransitionWrite
) -> None:
    """前提条件を読み取りで確認し、全ての書き込みを1トランザクションで行う"""
    message_ref = profile_ref = task_ref = gallery_ref = None

    # 読み取り（トランザクションでは書き込みより前に行う必要がある）
    if write.message is not None:
        m = write.message
        message_ref = store._message_ref(m.user_id, m.profile_id, m.id)
        if message_ref.get(transaction=transaction).exists:
            raise DuplicateWrite(message_ref.path)

    if write.gallery_event is not None:
        g = write.gallery_event
        gallery_ref = store._gallery_ref(g.user_id, g.id)
        if gallery_ref.get(transaction=transaction).exists:
            raise DuplicateWrite(gallery_ref.path)

    if write.profile is not None:
        p = write.profile
        profile_ref = store._profile_ref(p.user_id, p.id)
        if write.expected_profile_status is not None:
            snap = profile_ref.get(transaction=transaction)
            current = (snap.to_dict() or {}).get("status") if snap.exists else None
            if current != write.expected_profile_status.value:
                raise DuplicateWrite(f"{profile_ref.path} (status={current})")

    if write.task is not None:
        t = write.task
        task_ref = store._habit_ref(t.user_id, t.profile_id, t.id)
        if write.expected_completion_count is not None or write.expected_task is not None:
            snap = task_ref.get(transaction=transaction)
            data = (snap.to_dict() or {}) if snap.exists else None
            if write.expected_completion_count is not None:
                count = data.get("completionCount", 0) if data is not None else None
                if count != write.expected_completion_count:
                    raise DuplicateWrite(f"{task_ref.path} (completionCount={count})")
            if write.expected_task is not None:
                current = store._dict_to_task(t.id, data) if data is not None else None
                if current != write.expected_task:
                    raise StaleWrite(task_ref.path)

    # 書き込み
    if message_ref is not None:
        transaction.create(message_ref, store._message_to_dict(write.message))
    if profile_ref is not None:
        transaction.set(profile_ref, store._profile_to_dict(write.profile))
    if task_ref is not None:
        transaction.set(task_ref, store._task_to_dict(write.task))
    if gallery_ref is not None:
        transaction.create(gallery_ref, store._gallery_to_dict(write.gallery_event))
