"""GalleryRetention - ギャラリー履歴の保持期間整理

保持期間（既定 90 日）を過ぎた galleryEvents を古い順に1バッチ処理する:

1. 写真付きの taskResponse は写真を
   gallery-archive/{uid}/{profile_id}/{YYYY}/{MM}/{event_id}{ext} へ複製（無期限保存）
2. イベントを削除（テキストは残さない）

1件の失敗で止めず、errors に数えて次へ進む。
"""

from __future__ import annotations

import logging
import posixpath
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

from halloo.domain.models import (
    GalleryEventType,
    GalleryHistoryEvent,
    RetentionReport,
    TaskResponseData,
)
from halloo.domain.ports import BlobStorage, EntityStore
from halloo.domain.recurrence import ensure_aware

logger = logging.getLogger(__name__)

RETENTION_DAYS = 90
BATCH_LIMIT = 500

_STORED_PREFIX = "gallery/"
_ARCHIVE_PREFIX = "gallery-archive"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def archive_path(event: GalleryHistoryEvent, source_path: str) -> str:
    """退避先のパス（拡張子は元の写真に合わせる。無ければ .jpg）"""
    created = ensure_aware(event.created_at)
    ext = posixpath.splitext(source_path)[1] or ".jpg"
    return (
        f"{_ARCHIVE_PREFIX}/{event.user_id}/{event.profile_id}/"
        f"{created.year:04d}/{created.month:02d}/{event.id}{ext}"
    )


def _stored_photo(event: GalleryHistoryEvent) -> str | None:
    if event.event_type is not GalleryEventType.TASK_RESPONSE:
        return None
    payload = event.payload
    if not isinstance(payload, TaskResponseData) or not payload.photo_url:
        return None
    # Twilio の URL のまま（保存していない写真）は退避できない
    if not payload.photo_url.startswith(_STORED_PREFIX):
        return None
    return payload.photo_url


class GalleryRetention:
    def __init__(
        self,
        store: EntityStore,
        storage: BlobStorage | None = None,
        clock: Callable[[], datetime] = _utcnow,
        retention_days: int = RETENTION_DAYS,
        batch_limit: int = BATCH_LIMIT,
    ) -> None:
        self._store = store
        self._storage = storage
        self._clock = clock
        self._retention = timedelta(days=retention_days)
        self._batch_limit = batch_limit

    def sweep(
        self, now: datetime | None = None, retention_days: int | None = None
    ) -> RetentionReport:
        """
        保持期間を過ぎたイベントを1バッチ処理する。

        Args:
            now: 基準時刻（省略時は clock）
            retention_days: 保持日数の一時的な上書き（手動実行用）
        """
        now = ensure_aware(now or self._clock())
        retention = (
            timedelta(days=retention_days)
            if retention_days is not None
            else self._retention
        )
        cutoff = now - retention
        events = self._store.list_gallery_events_before(cutoff, limit=self._batch_limit)
        logger.info(
            "Gallery cleanup started: cutoff=%s, found=%d",
            cutoff.isoformat(),
            len(events),
        )

        archived = deleted = errors = 0
        for event in events:
            try:
                if self._archive(event):
                    archived += 1
                self._store.delete_gallery_event(event.user_id, event.id)
                deleted += 1
            except Exception:
                errors += 1
                logger.exception(
                    "Failed to clean up gallery event: user_id=%s, event_id=%s",
                    event.user_id,
                    event.id,
                )

        report = RetentionReport(
            photos_archived=archived, events_deleted=deleted, errors=errors
        )
        logger.info(
            "Gallery cleanup complete: photos_archived=%d, events_deleted=%d, errors=%d",
            report.photos_archived,
            report.events_deleted,
            report.errors,
        )
        return report

    def _archive(self, event: GalleryHistoryEvent) -> bool:
        source = _stored_photo(event)
        if source is None:
            return False
        if self._storage is None:
            logger.warning(
                "Photo storage disabled, photo not archived: event_id=%s, path=%s",
                event.id,
                source,
            )
            return False
        self._storage.copy(source, archive_path(event, source))
        return True
