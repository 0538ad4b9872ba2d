"""Worker エンドポイント用 OIDC トークン検証

Cloud Scheduler が付与する Google OIDC トークンを検証し、
想定外の呼び出し元からのリクエストを 401 で拒否する。

検証方針:
- email claim が WORKER_SERVICE_ACCOUNT_EMAIL と一致することで呼び出し元を確認
- WORKER_AUDIENCE が設定されていれば audience も検証する
- WORKER_SERVICE_ACCOUNT_EMAIL 未設定時は fail-closed（401 を返す）
- LOCAL_MODE=true 時は検証をスキップ
"""

from __future__ import annotations

import logging
import os

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from google.auth.transport import requests as google_requests
from google.oauth2 import id_token

logger = logging.getLogger(__name__)

# Bearer ヘッダーがない場合も 403 ではなく 401 を返す
_bearer_scheme = HTTPBearer(auto_error=False)


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=detail)


def verify_worker_token(
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer_scheme),
) -> None:
    """/worker/* ルーター用の Depends 関数。失敗時は 401"""
    if os.environ.get("LOCAL_MODE"):
        return

    expected_email = os.environ.get("WORKER_SERVICE_ACCOUNT_EMAIL")
    if not expected_email:
        logger.error("WORKER_SERVICE_ACCOUNT_EMAIL is not set; denying worker request")
        raise _unauthorized("Worker authentication is not configured")

    if credentials is None:
        raise _unauthorized("Missing Authorization header")

    try:
        id_info = id_token.verify_oauth2_token(
            credentials.credentials,
            google_requests.Request(),
            audience=os.environ.get("WORKER_AUDIENCE") or None,
        )
    except Exception as exc:
        logger.warning("OIDC token verification failed: %s", exc)
        raise _unauthorized("Invalid OIDC token") from exc

    actual_email = id_info.get("email", "")
    if actual_email != expected_email:
        logger.warning(
            "OIDC email mismatch: expected=%s, got=%s", expected_email, actual_email
        )
        raise _unauthorized("Unauthorized service account")
