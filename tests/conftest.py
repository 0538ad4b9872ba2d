"""共通テストフィクスチャ

全テストから利用可能なモックオブジェクトとサンプルデータを提供。

モックの作成:
- MagicMock(spec=ABC) でABCのメソッドシグネチャを保持
- ストアは InMemoryEntityStore を実物として使う（Firestore と同じ前提条件チェック）
"""

from datetime import datetime, time, timedelta, timezone
from unittest.mock import MagicMock

import pytest

from halloo.adapters.memory_store import InMemoryEntityStore
from halloo.adapters.outbox_sms import OutboxSMSSender
from halloo.domain.models import (
    ElderlyProfile,
    ProfileStatus,
    Task,
    TaskFrequency,
)
from halloo.domain.ports import BlobStorage, MediaFetcher, SMSSender
from halloo.services.dedup_ledger import DedupLedger
from halloo.services.reconciler import Reconciler

# 2026-03-02 は月曜日
NOW = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)
UID = "caregiver-uid-1"
PHONE = "+15551234567"


class FixedClock:
    """テスト用の時計。advance() で進める"""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


# ========== 時刻・ID ==========


@pytest.fixture
def now() -> datetime:
    return NOW


@pytest.fixture
def uid() -> str:
    return UID


@pytest.fixture
def phone() -> str:
    return PHONE


@pytest.fixture
def clock() -> FixedClock:
    """2026-03-02 09:00 UTC から始まる時計"""
    return FixedClock(NOW)


# ========== サンプルデータ ==========


@pytest.fixture
def make_profile():
    """ElderlyProfile のファクトリ（キーワード引数で上書き）"""

    def _make(**overrides) -> ElderlyProfile:
        values = {
            "id": PHONE,
            "user_id": UID,
            "name": "Mom",
            "phone_number": PHONE,
            "relationship": "Mother",
            "status": ProfileStatus.PENDING_CONFIRMATION,
            "time_zone": "UTC",
            "created_at": NOW - timedelta(days=1),
        }
        values.update(overrides)
        return ElderlyProfile(**values)

    return _make


@pytest.fixture
def make_task():
    """Task のファクトリ（毎日 09:00 UTC、次回 = NOW）"""

    def _make(**overrides) -> Task:
        values = {
            "id": "task-1",
            "user_id": UID,
            "profile_id": PHONE,
            "title": "Take pills",
            "scheduled_time": time(9, 0),
            "next_scheduled_date": NOW,
            "frequency": TaskFrequency.DAILY,
            "time_zone": "UTC",
            "deadline_minutes": 10,
        }
        values.update(overrides)
        return Task(**values)

    return _make


@pytest.fixture
def pending_profile(make_profile) -> ElderlyProfile:
    """サンプルプロファイル: 確認待ち"""
    return make_profile()


@pytest.fixture
def confirmed_profile(make_profile) -> ElderlyProfile:
    """サンプルプロファイル: 確認済み"""
    return make_profile(
        status=ProfileStatus.CONFIRMED, confirmed_at=NOW - timedelta(hours=12)
    )


@pytest.fixture
def reminded_task(make_task) -> Task:
    """サンプルタスク: 09:00 にリマインダー送信済みで返信待ち"""
    return make_task(last_reminder_sent_at=NOW, last_reminder_sid="SM" + "0" * 32)


# ========== サービス ==========


@pytest.fixture
def store() -> InMemoryEntityStore:
    return InMemoryEntityStore()


@pytest.fixture
def ledger() -> DedupLedger:
    return DedupLedger()


@pytest.fixture
def reconciler(store, ledger, clock) -> Reconciler:
    return Reconciler(store, ledger, clock=clock)


@pytest.fixture
def outbox() -> OutboxSMSSender:
    return OutboxSMSSender()


# ========== モックオブジェクト ==========


@pytest.fixture
def mock_sender() -> MagicMock:
    """モック SMSSender"""
    mock = MagicMock(spec=SMSSender)
    mock.send_sms.return_value = "SM" + "a" * 32
    return mock


@pytest.fixture
def mock_media_fetcher() -> MagicMock:
    """モック MediaFetcher"""
    mock = MagicMock(spec=MediaFetcher)
    mock.fetch.return_value = (b"\xff\xd8\xff", "image/jpeg")
    return mock


@pytest.fixture
def mock_blob_storage() -> MagicMock:
    """モック BlobStorage（upload は渡されたパスをそのまま返す）"""
    mock = MagicMock(spec=BlobStorage)
    mock.upload.side_effect = lambda path, content, content_type: path
    return mock
