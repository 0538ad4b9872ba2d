"""Twilio Adapter

- TwilioSMSSender: SMSSender の Twilio 実装（リマインダー・確認 SMS の送信）
- TwilioMediaFetcher: MMS 添付（MediaUrl0）のダウンロード
- verify_twilio_signature: Webhook の X-Twilio-Signature 検証
"""

from __future__ import annotations

import logging

import requests
from twilio.base.exceptions import TwilioRestException
from twilio.request_validator import RequestValidator
from twilio.rest import Client

from halloo.domain.errors import SendFailed
from halloo.domain.ports import MediaFetcher, SMSSender

logger = logging.getLogger(__name__)


class TwilioSMSSender(SMSSender):
    """Twilio Programmable Messaging で SMS を送信する"""

    def __init__(
        self,
        account_sid: str,
        auth_token: str,
        from_number: str,
        client: Client | None = None,
    ) -> None:
        """
        Args:
            account_sid: Twilio Account SID
            auth_token: Twilio Auth Token
            from_number: 送信元番号（E.164）
            client: 初期化済みの Twilio クライアント（テスト用）
        """
        self._client = client or Client(account_sid, auth_token)
        self._from = from_number

    def send_sms(self, to: str, body: str) -> str:
        try:
            message = self._client.messages.create(body=body, from_=self._from, to=to)
        except TwilioRestException as e:
            error = SendFailed(f"Twilio send failed: {e.msg}", code=e.code)
            if error.is_permanent:
                logger.error("Twilio rejected recipient: to=%s, code=%s", to, e.code)
            else:
                logger.warning("Twilio send failed: to=%s, code=%s, msg=%s", to, e.code, e.msg)
            raise error from e
        logger.info("SMS sent: to=%s, sid=%s", to, message.sid)
        return message.sid


class TwilioMediaFetcher(MediaFetcher):
    """Twilio のメディア URL を Basic 認証付きでダウンロードする"""

    def __init__(self, account_sid: str, auth_token: str, timeout: float = 15.0) -> None:
        self._auth = (account_sid, auth_token)
        self._timeout = timeout

    def fetch(self, media_url: str) -> tuple[bytes, str]:
        response = requests.get(media_url, auth=self._auth, timeout=self._timeout)
        response.raise_for_status()
        content_type = response.headers.get("Content-Type", "application/octet-stream")
        logger.info(
            "Fetched media: url=%s, size=%d bytes, type=%s",
            media_url,
            len(response.content),
            content_type,
        )
        return response.content, content_type


def verify_twilio_signature(
    auth_token: str, url: str, params: dict[str, str], signature: str
) -> bool:
    """
    X-Twilio-Signature を検証する。

    Args:
        auth_token: Twilio Auth Token
        url: Twilio が呼び出した公開 URL（プロキシ越しの場合は WEBHOOK_PUBLIC_URL）
        params: フォームパラメータ
        signature: X-Twilio-Signature ヘッダの値
    """
    if not signature:
        return False
    return RequestValidator(auth_token).validate(url, params, signature)
