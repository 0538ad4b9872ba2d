"""OutboundMessenger - 送信 SMS の共通経路

確認 SMS・リマインダーのどちらもここを通して送る:

1. 介護者アカウントの送信枠を確認（期間が終わっていれば 0 に戻して新しい期間へ）
2. SMSSender で送信
3. 使用数を +1、smsLogs に監査ログ、プロファイルの messages に控えを残す

受信者が STOP 済み（Twilio 21610）で拒否された場合は、プロファイルを
inactive・sms_opted_out にしてから SendFailed を再送出する。
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from dataclasses import replace
from datetime import datetime, timedelta, timezone

from halloo.domain.errors import (
    DuplicateWrite,
    QuotaExceeded,
    SendFailed,
    StoreWriteFailed,
)
from halloo.domain.models import (
    ElderlyProfile,
    MessageDirection,
    OutboundMessageType,
    OutboundSMSLog,
    ProfileStatus,
    SMSResponse,
    Task,
    TransitionWrite,
    User,
)
from halloo.domain.ports import EntityStore, SMSSender
from halloo.domain.recurrence import ensure_aware

logger = logging.getLogger(__name__)

QUOTA_PERIOD = timedelta(days=30)

# 送信控えの processing_notes（Reconciler.replay が処理済みとして扱う）
OUTBOUND_NOTE = "outbound"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OutboundMessenger:
    def __init__(
        self,
        store: EntityStore,
        sender: SMSSender,
        clock: Callable[[], datetime] = _utcnow,
        quota_period: timedelta = QUOTA_PERIOD,
    ) -> None:
        self._store = store
        self._sender = sender
        self._clock = clock
        self._quota_period = quota_period

    def send(
        self,
        profile: ElderlyProfile,
        body: str,
        message_type: OutboundMessageType,
        task: Task | None = None,
        now: datetime | None = None,
    ) -> str:
        """
        送信枠を確認して SMS を送り、プロバイダのメッセージ ID を返す。

        Raises:
            QuotaExceeded: 送信枠を使い切っている（送信しない）
            SendFailed: 送信失敗（失敗ログは残す）
        """
        now = ensure_aware(now or self._clock())
        self.check_quota(profile.user_id, now)

        try:
            sid = self._sender.send_sms(profile.phone_number, body)
        except SendFailed as e:
            try:
                self._write_log(
                    profile, body, message_type, task, now, status="failed", error=str(e)
                )
            except StoreWriteFailed:
                logger.exception("Failed to write SMS failure log: profile_id=%s", profile.id)
            if e.is_opt_out:
                self.mark_opted_out(profile, now)
            raise

        self._record_sent(profile, body, message_type, task, now, sid)
        return sid

    def check_quota(self, user_id: str, now: datetime) -> User:
        """
        送信枠を確認する。期間が終わっていれば使用数を 0 に戻す。

        Raises:
            QuotaExceeded: 使用数が上限に達している
        """
        user = self._store.get_user(user_id) or User(id=user_id)
        period_end = user.sms_quota_period_end
        if period_end is None or now >= ensure_aware(period_end):
            period_end = now + self._quota_period
            self._store.reset_sms_quota(user_id, period_end)
            user = replace(user, sms_quota_used=0, sms_quota_period_end=period_end)
            logger.info(
                "SMS quota period started: user_id=%s, until=%s",
                user_id,
                period_end.isoformat(),
            )
        if user.sms_quota_used >= user.sms_quota_limit:
            logger.warning(
                "SMS quota exceeded: user_id=%s, used=%d, limit=%d",
                user_id,
                user.sms_quota_used,
                user.sms_quota_limit,
            )
            raise QuotaExceeded(user_id, user.sms_quota_used, user.sms_quota_limit)
        return user

    def mark_opted_out(self, profile: ElderlyProfile, now: datetime) -> None:
        """受信者の配信停止を記録する（以後リマインダーを送らない）"""
        current = self._store.get_profile(profile.user_id, profile.id)
        if current is None or current.sms_opted_out:
            return
        opted_out = replace(
            current,
            status=ProfileStatus.INACTIVE,
            sms_opted_out=True,
            opted_out_at=now,
        )
        try:
            self._store.apply_transition(
                TransitionWrite(profile=opted_out, expected_profile_status=current.status)
            )
        except DuplicateWrite:
            # 同時に状態が変わった。次の送信で再度拒否されれば記録される
            logger.info("Profile changed before opt-out was recorded: profile_id=%s", profile.id)
            return
        logger.warning(
            "Recipient opted out: user_id=%s, profile_id=%s", profile.user_id, profile.id
        )

    # ── 送信後の記録 ───────────────────────────────────────────────────────

    def _record_sent(
        self,
        profile: ElderlyProfile,
        body: str,
        message_type: OutboundMessageType,
        task: Task | None,
        now: datetime,
        sid: str,
    ) -> None:
        # 送信は成功している。ここでの書き込み失敗で再送させない
        try:
            self._store.increment_sms_usage(profile.user_id)
            self._write_log(profile, body, message_type, task, now, status="sent", sid=sid)
            self._store.create_message(
                SMSResponse(
                    id=sid,
                    user_id=profile.user_id,
                    profile_id=profile.id,
                    text_response=body,
                    received_at=now,
                    task_id=task.id if task else None,
                    processing_notes=OUTBOUND_NOTE,
                    direction=MessageDirection.OUTBOUND,
                )
            )
        except DuplicateWrite:
            logger.debug("Outbound message already recorded: sid=%s", sid)
        except StoreWriteFailed:
            logger.exception(
                "Failed to record sent SMS: user_id=%s, profile_id=%s, sid=%s",
                profile.user_id,
                profile.id,
                sid,
            )

    def _write_log(
        self,
        profile: ElderlyProfile,
        body: str,
        message_type: OutboundMessageType,
        task: Task | None,
        now: datetime,
        status: str,
        sid: str | None = None,
        error: str | None = None,
    ) -> None:
        log = OutboundSMSLog(
            id=sid or str(uuid.uuid4()),
            user_id=profile.user_id,
            profile_id=profile.id,
            to=profile.phone_number,
            body=body,
            message_type=message_type,
            sent_at=now,
            status=status,
            provider_sid=sid,
            task_id=task.id if task else None,
            scheduled_for=task.next_scheduled_date if task else None,
            error=error,
        )
        self._store.create_sms_log(log)
