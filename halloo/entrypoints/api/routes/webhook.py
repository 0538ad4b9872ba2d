"""Twilio 受信 Webhook

POST /sms-webhook  (application/x-www-form-urlencoded)
  From, To, Body, MessageSid, NumMedia, MediaUrl{N}, MediaContentType{N}

応答は常に空の TwiML。受信者（高齢者）にエラー内容を返信することはない。
  - 署名不正            → 403
  - 送信元番号を解決不可 → 400
  - 書き込み失敗が続く   → 503（Twilio 側で再送される）
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import Response
from twilio.twiml.messaging_response import MessagingResponse

from halloo.adapters.twilio_sms import verify_twilio_signature
from halloo.config import AppConfig
from halloo.domain.errors import MalformedInboundEvent, StoreWriteFailed
from halloo.domain.models import InboundSMS
from halloo.entrypoints.api.deps import get_config, get_reconciler
from halloo.services.reconciler import ReconcileReport, Reconciler
from halloo.services.retry import WRITE_ATTEMPTS, WRITE_BACKOFF_SECONDS, retry_store_write

logger = logging.getLogger(__name__)
router = APIRouter(tags=["sms"])


def parse_inbound(params: dict[str, str]) -> InboundSMS:
    """Twilio のフォームパラメータを InboundSMS に変換する"""
    try:
        num_media = int(params.get("NumMedia", "0") or "0")
    except ValueError:
        num_media = 0
    media_urls = tuple(
        params[f"MediaUrl{i}"] for i in range(num_media) if params.get(f"MediaUrl{i}")
    )
    content_types = tuple(
        params.get(f"MediaContentType{i}", "") for i in range(len(media_urls))
    )
    return InboundSMS(
        from_phone=params.get("From", ""),
        body=params.get("Body", ""),
        message_sid=params.get("MessageSid") or params.get("SmsSid") or None,
        media_urls=media_urls,
        media_content_types=content_types,
        received_at=datetime.now(timezone.utc),
        to_phone=params.get("To") or None,
    )


def reconcile_with_retry(
    reconciler: Reconciler,
    event: InboundSMS,
    attempts: int = WRITE_ATTEMPTS,
    backoff_seconds: float = WRITE_BACKOFF_SECONDS,
    sleep=None,
) -> ReconcileReport:
    """StoreWriteFailed のみバックオフ付きで再試行する"""
    return retry_store_write(
        reconciler.reconcile,
        event,
        attempts=attempts,
        backoff_seconds=backoff_seconds,
        sleep=sleep,
    )


def _empty_twiml() -> Response:
    return Response(content=str(MessagingResponse()), media_type="application/xml")


@router.post("/sms-webhook")
async def sms_webhook(
    request: Request,
    config: AppConfig = Depends(get_config),
    reconciler: Reconciler = Depends(get_reconciler),
) -> Response:
    """Twilio からの受信 SMS/MMS を処理する"""
    form = await request.form()
    params = {key: str(value) for key, value in form.items()}

    if not config.local_mode:
        url = config.webhook_public_url or str(request.url)
        signature = request.headers.get("X-Twilio-Signature", "")
        if not verify_twilio_signature(config.twilio_auth_token, url, params, signature):
            logger.warning("Rejected webhook with invalid Twilio signature")
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN, detail="Invalid signature"
            )

    event = parse_inbound(params)
    try:
        report = await run_in_threadpool(reconcile_with_retry, reconciler, event)
    except MalformedInboundEvent as e:
        logger.warning("Malformed inbound SMS: %s", e)
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail=str(e)
        ) from e
    except StoreWriteFailed as e:
        logger.error("Inbound SMS not stored after retries: sid=%s", event.message_sid)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Temporarily unavailable",
        ) from e

    logger.info(
        "Inbound SMS handled: message_id=%s, sentiment=%s, results=%d, gallery_events=%d",
        report.message_id,
        report.classification.sentiment.value,
        len(report.results),
        report.gallery_events_created,
    )
    return _empty_twiml()
