"""Factory - 依存性注入の組み立て

全 Adapter と Service を組み立てて Components にまとめる。
LOCAL_MODE ではインメモリストアと OutboxSMSSender を使い、外部サービスに接続しない。
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from halloo.adapters.memory_store import InMemoryEntityStore
from halloo.adapters.outbox_sms import OutboxSMSSender
from halloo.config import AppConfig
from halloo.domain.ports import BlobStorage, EntityStore, SMSSender
from halloo.services.care_manager import CareManager
from halloo.services.dedup_ledger import DedupLedger, message_key, profile_key
from halloo.services.gallery_retention import GalleryRetention
from halloo.services.outbound import OutboundMessenger
from halloo.services.reconciler import PhotoArchiver, Reconciler
from halloo.services.scheduler import ReminderScheduler
from halloo.services.sync_coordinator import EventBus

logger = logging.getLogger(__name__)


@dataclass
class Components:
    """プロセス内で共有するサービス一式"""

    config: AppConfig
    store: EntityStore
    sender: SMSSender
    ledger: DedupLedger
    messenger: OutboundMessenger
    reconciler: Reconciler
    care_manager: CareManager
    scheduler: ReminderScheduler
    retention: GalleryRetention
    bus: EventBus


def _build_store(config: AppConfig) -> EntityStore:
    if config.local_mode:
        logger.info("LOCAL_MODE: using in-memory entity store")
        return InMemoryEntityStore()

    from google.cloud import firestore

    from halloo.adapters.firestore_store import FirestoreEntityStore

    return FirestoreEntityStore(firestore.Client(project=config.project_id))


def _build_sender(config: AppConfig) -> SMSSender:
    if config.local_mode and not config.twilio_account_sid:
        logger.info("LOCAL_MODE: SMS is written to the outbox only")
        return OutboxSMSSender()

    from halloo.adapters.twilio_sms import TwilioSMSSender

    return TwilioSMSSender(
        account_sid=config.twilio_account_sid,
        auth_token=config.twilio_auth_token,
        from_number=config.twilio_phone_number,
    )


def _build_photo_storage(config: AppConfig) -> BlobStorage | None:
    if not config.photo_archive_enabled:
        return None

    from halloo.adapters.cloud_storage import GCSBlobStorage

    return GCSBlobStorage(config.photo_bucket_name)


def _build_photo_archiver(
    config: AppConfig, storage: BlobStorage | None
) -> PhotoArchiver | None:
    if storage is None:
        return None

    from halloo.adapters.twilio_sms import TwilioMediaFetcher

    return PhotoArchiver(
        fetcher=TwilioMediaFetcher(config.twilio_account_sid, config.twilio_auth_token),
        storage=storage,
    )


def create_components(
    config: AppConfig | None = None,
    store: EntityStore | None = None,
    sender: SMSSender | None = None,
) -> Components:
    """
    サービス一式を生成（全依存を組み立て）。

    Args:
        config: アプリケーション設定（None の場合は環境変数から読み込み）
        store: ストアの差し替え（テスト用）
        sender: SMS 送信の差し替え（テスト用）

    Raises:
        ValueError: 必須設定が不足している場合
    """
    if config is None:
        config = AppConfig.from_env()

    logger.info(
        "Creating components: project_id=%s, local_mode=%s",
        config.project_id,
        config.local_mode,
    )

    store = store or _build_store(config)
    sender = sender or _build_sender(config)
    photo_storage = _build_photo_storage(config)
    archiver = _build_photo_archiver(config, photo_storage)
    ledger = DedupLedger()
    messenger = OutboundMessenger(store, sender)
    return Components(
        config=config,
        store=store,
        sender=sender,
        ledger=ledger,
        messenger=messenger,
        reconciler=Reconciler(store, ledger, photo_archiver=archiver),
        care_manager=CareManager(
            store,
            sender,
            default_deadline_minutes=config.response_deadline_minutes,
            photo_storage=photo_storage,
            ledger=ledger,
            messenger=messenger,
        ),
        scheduler=ReminderScheduler(
            store,
            sender,
            max_send_attempts=config.max_send_attempts,
            messenger=messenger,
        ),
        retention=GalleryRetention(
            store,
            photo_storage,
            retention_days=config.gallery_retention_days,
        ),
        bus=EventBus(),
    )


def prime_ledger(components: Components, user_ids: list[str]) -> int:
    """
    永続化状態から DedupLedger を復元する。

    confirmed のプロファイルと、このサービスが処理済みのメッセージを登録する。
    """
    keys: list[str] = []
    for user_id in user_ids:
        for profile in components.store.list_profiles(user_id):
            if profile.is_confirmed:
                keys.append(profile_key(user_id, profile.id))
        for message in components.store.list_messages(user_id):
            if message.is_completed and message.task_id:
                keys.append(message_key(user_id, message.id))
    return components.ledger.prime(keys)
