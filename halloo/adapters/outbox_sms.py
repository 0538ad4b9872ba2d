"""OutboxSMSSender - 送信せずに記録だけする SMSSender（LOCAL_MODE 用）"""

from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import dataclass

from halloo.domain.ports import SMSSender

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OutboxMessage:
    sid: str
    to: str
    body: str


class OutboxSMSSender(SMSSender):
    """送信内容をメモリに溜める。SID は Twilio と同じ形式（SM + 32桁16進）"""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.sent: list[OutboxMessage] = []

    def send_sms(self, to: str, body: str) -> str:
        sid = "SM" + uuid.uuid4().hex
        with self._lock:
            self.sent.append(OutboxMessage(sid=sid, to=to, body=body))
        logger.info("LOCAL_MODE: SMS to=%s sid=%s body=%r", to, sid, body)
        return sid
