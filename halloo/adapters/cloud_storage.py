"""Cloud Storage Adapter

BlobStorage ABC の Google Cloud Storage 実装。
MMS で受信した写真をギャラリー用に保存する。
"""

from __future__ import annotations

import logging

from google.api_core import exceptions as gcp_exceptions
from google.cloud import storage

from halloo.domain.ports import BlobStorage

logger = logging.getLogger(__name__)


class GCSBlobStorage(BlobStorage):
    """
    Google Cloud Storage を使った BlobStorage 実装。

    パス規約:
      gallery/{uid}/{message_id}{ext}                            ← 受信写真
      gallery-archive/{uid}/{profile_id}/{YYYY}/{MM}/{event_id}{ext} ← 保持期間切れの退避先
    """

    def __init__(self, bucket_name: str, client: storage.Client | None = None) -> None:
        """
        Args:
            bucket_name: GCS バケット名
            client: 初期化済みの GCS クライアント（省略時は ADC で自動初期化）
        """
        self._client = client or storage.Client()
        self._bucket = self._client.bucket(bucket_name)
        self._bucket_name = bucket_name

    def upload(self, blob_path: str, content: bytes, content_type: str) -> str:
        blob = self._bucket.blob(blob_path)
        blob.upload_from_string(content, content_type=content_type)
        logger.info(
            "Uploaded photo: bucket=%s, path=%s, size=%d bytes",
            self._bucket_name,
            blob_path,
            len(content),
        )
        return blob_path

    def delete(self, blob_path: str) -> None:
        """存在しない場合は警告ログのみ"""
        try:
            self._bucket.blob(blob_path).delete()
            logger.info("Deleted photo: bucket=%s, path=%s", self._bucket_name, blob_path)
        except gcp_exceptions.NotFound:
            logger.warning(
                "Photo not found on delete: bucket=%s, path=%s",
                self._bucket_name,
                blob_path,
            )

    def copy(self, source_path: str, dest_path: str) -> str:
        source = self._bucket.blob(source_path)
        self._bucket.copy_blob(source, self._bucket, dest_path)
        logger.info(
            "Copied photo: bucket=%s, from=%s, to=%s",
            self._bucket_name,
            source_path,
            dest_path,
        )
        return dest_path
