"""OutboxSMSSender / GCSBlobStorage のユニットテスト"""

import re
from unittest.mock import MagicMock

from google.api_core import exceptions as gcp_exceptions

from halloo.adapters.cloud_storage import GCSBlobStorage
from halloo.adapters.outbox_sms import OutboxSMSSender


def test_outbox_records_messages():
    outbox = OutboxSMSSender()

    sid = outbox.send_sms("+15551234567", "Hi Mom")

    assert re.fullmatch(r"SM[0-9a-f]{32}", sid)
    [message] = outbox.sent
    assert (message.sid, message.to, message.body) == (sid, "+15551234567", "Hi Mom")


def test_outbox_sids_unique():
    outbox = OutboxSMSSender()
    sids = {outbox.send_sms("+15551234567", "x") for _ in range(50)}
    assert len(sids) == 50


class TestGCSBlobStorage:
    def _storage(self):
        client = MagicMock()
        return GCSBlobStorage("halloo-photos", client=client), client.bucket.return_value

    def test_upload(self):
        storage, bucket = self._storage()

        path = storage.upload("gallery/uid/SM1.jpg", b"jpeg", "image/jpeg")

        assert path == "gallery/uid/SM1.jpg"
        bucket.blob.assert_called_once_with("gallery/uid/SM1.jpg")
        bucket.blob.return_value.upload_from_string.assert_called_once_with(
            b"jpeg", content_type="image/jpeg"
        )

    def test_delete(self):
        storage, bucket = self._storage()

        storage.delete("gallery/uid/SM1.jpg")

        bucket.blob.return_value.delete.assert_called_once()

    def test_delete_missing_is_not_an_error(self):
        storage, bucket = self._storage()
        bucket.blob.return_value.delete.side_effect = gcp_exceptions.NotFound("gone")

        storage.delete("gallery/uid/SM1.jpg")

    def test_copy(self):
        storage, bucket = self._storage()

        path = storage.copy("gallery/uid/SM1.jpg", "gallery-archive/uid/p/2026/03/e.jpg")

        assert path == "gallery-archive/uid/p/2026/03/e.jpg"
        bucket.blob.assert_called_once_with("gallery/uid/SM1.jpg")
        bucket.copy_blob.assert_called_once_with(
            bucket.blob.return_value, bucket, "gallery-archive/uid/p/2026/03/e.jpg"
        )
