"""FastAPI 依存性注入

Firebase Auth JWT 検証とサービス一式（Components）の初期化を担当する。
各ルートは Depends() でこのモジュールの関数を呼び出して認証 uid と
サービスインスタンスを受け取る。
"""

from __future__ import annotations

import logging
import os
import threading
from dataclasses import dataclass

import firebase_admin
import firebase_admin.auth as fb_auth
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from firebase_admin import credentials as fb_creds

from halloo.config import AppConfig
from halloo.entrypoints.factory import Components, create_components
from halloo.services.care_manager import CareManager
from halloo.services.gallery_retention import GalleryRetention
from halloo.services.reconciler import Reconciler
from halloo.services.scheduler import ReminderScheduler

logger = logging.getLogger(__name__)

# ── Firebase Admin 初期化（プロセス内で1回のみ） ────────────────────────────────

_firebase_app: firebase_admin.App | None = None


def _get_firebase_app() -> firebase_admin.App:
    global _firebase_app
    if _firebase_app is None:
        try:
            _firebase_app = firebase_admin.get_app()
        except ValueError:
            cred = fb_creds.ApplicationDefault()
            project_id = os.environ.get("PROJECT_ID")
            _firebase_app = firebase_admin.initialize_app(
                cred,
                options={"projectId": project_id} if project_id else {},
            )
            logger.info("Firebase Admin initialized (deps) project=%s", project_id)
    return _firebase_app


# ── 認証 ────────────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class AuthInfo:
    """Firebase Auth JWT から取得した認証情報"""

    uid: str
    email: str
    display_name: str


_bearer = HTTPBearer()


async def get_auth_info(
    creds: HTTPAuthorizationCredentials = Depends(_bearer),
) -> AuthInfo:
    """
    Authorization: Bearer <id_token> ヘッダーを検証して AuthInfo を返す。

    Raises:
        HTTPException(401): トークンが無効な場合
    """
    _get_firebase_app()
    try:
        decoded = fb_auth.verify_id_token(creds.credentials)
    except Exception as e:
        logger.warning("Invalid Firebase ID token: %s", e)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired Firebase ID token",
        ) from e

    return AuthInfo(
        uid=decoded["uid"],
        email=decoded.get("email", ""),
        display_name=decoded.get("name", ""),
    )


async def get_current_uid(
    auth_info: AuthInfo = Depends(get_auth_info),
) -> str:
    return auth_info.uid


# ── サービス一式（シングルトン） ───────────────────────────────────────────────

_components: Components | None = None
_components_lock = threading.Lock()


def get_components() -> Components:
    global _components
    if _components is None:
        with _components_lock:
            if _components is None:
                _components = create_components()
                logger.info("Components initialized")
    return _components


def get_config(components: Components = Depends(get_components)) -> AppConfig:
    return components.config


def get_reconciler(components: Components = Depends(get_components)) -> Reconciler:
    return components.reconciler


def get_care_manager(components: Components = Depends(get_components)) -> CareManager:
    return components.care_manager


def get_scheduler(
    components: Components = Depends(get_components),
) -> ReminderScheduler:
    return components.scheduler


def get_retention(
    components: Components = Depends(get_components),
) -> GalleryRetention:
    return components.retention
