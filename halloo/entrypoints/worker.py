"""Cloud Scheduler ワーカー エントリーポイント

POST /worker/dispatch-reminders
  Cloud Scheduler から1分ごとに呼ばれ、期限が来たリマインダーを送信する。
  レスポンスは SchedulerReport の件数とタスク ID。

POST /worker/cleanup-gallery
  1日1回呼ばれ、保持期間を過ぎたギャラリー履歴を整理する（写真は退避）。
  ?days_old=N で保持日数を一時的に上書きできる（手動実行用）。
"""

from __future__ import annotations

import logging
from dataclasses import asdict

from fastapi import APIRouter, Depends, Query
from fastapi.concurrency import run_in_threadpool

from halloo.config import AppConfig
from halloo.entrypoints.api.deps import get_config, get_retention, get_scheduler
from halloo.entrypoints.api.worker_auth import verify_worker_token
from halloo.services.gallery_retention import GalleryRetention
from halloo.services.scheduler import ReminderScheduler

logger = logging.getLogger(__name__)

router = APIRouter(dependencies=[Depends(verify_worker_token)], tags=["worker"])


@router.post("/dispatch-reminders")
async def dispatch_reminders(
    scheduler: ReminderScheduler = Depends(get_scheduler),
    config: AppConfig = Depends(get_config),
) -> dict:
    """期限が来たタスクを1巡処理する"""
    report = await run_in_threadpool(
        scheduler.tick, None, float(config.scheduler_interval_seconds)
    )
    result = asdict(report)
    logger.info(
        "dispatch-reminders: dispatched=%d, send_failures=%d, overdue=%d",
        len(report.dispatched),
        len(report.send_failures),
        len(report.overdue),
    )
    return {"counts": {k: len(v) for k, v in result.items()}, **result}


@router.post("/cleanup-gallery")
async def cleanup_gallery(
    days_old: int | None = Query(default=None, ge=1),
    retention: GalleryRetention = Depends(get_retention),
) -> dict:
    """保持期間を過ぎたギャラリー履歴を1バッチ整理する"""
    report = await run_in_threadpool(retention.sweep, None, days_old)
    logger.info(
        "cleanup-gallery: photos_archived=%d, events_deleted=%d, errors=%d",
        report.photos_archived,
        report.events_deleted,
        report.errors,
    )
    return asdict(report)
