"""FastAPI アプリケーション

Halloo バックエンド API。
Cloud Run Service として動作し、介護者 API は Firebase Auth で認証する。

エンドポイント一覧:
  POST   /sms-webhook                               ← Twilio 署名で検証
  GET    /api/profiles
  POST   /api/profiles
  DELETE /api/profiles/{id}
  POST   /api/profiles/{id}/resend-confirmation
  GET    /api/profiles/{id}/tasks
  POST   /api/profiles/{id}/tasks
  PATCH  /api/tasks/{profile_id}/{task_id}
  GET    /api/gallery
  POST   /worker/dispatch-reminders                 ← OIDC で検証
  POST   /worker/cleanup-gallery                    ← OIDC で検証
  GET    /health
"""

from __future__ import annotations

import logging
import os
from collections.abc import Callable

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.responses import Response

from halloo.entrypoints import worker
from halloo.entrypoints.api.routes import gallery, profiles, tasks, webhook
from halloo.logging_config import setup_logging

# ── ロギング初期化 ───────────────────────────────────────────────────────────
setup_logging()
logger = logging.getLogger(__name__)

# ── FastAPI アプリ ───────────────────────────────────────────────────────────
app = FastAPI(
    title="Halloo API",
    description="Halloo 見守りリマインダーのバックエンド API",
    version="1.0.0",
)

# ── グローバル例外ミドルウェア ──────────────────────────────────────────────────
# CORSMiddleware より先に登録して内側に置く（500 レスポンスにも CORS ヘッダーが付く）
#
# スタック: ServerErrorMiddleware → CORSMiddleware → このMW → ExceptionMiddleware → Routes


@app.middleware("http")
async def _catch_unhandled_exceptions(
    request: Request, call_next: Callable[[Request], Response]
) -> Response:
    try:
        return await call_next(request)
    except Exception as exc:
        logger.error(
            "Unhandled exception: %s %s - %s",
            request.method,
            request.url.path,
            exc,
            exc_info=True,
        )
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal server error"},
        )


# ── CORS（介護者アプリからのリクエストを許可） ─────────────────────────────────
_extra_origins = [
    o.strip() for o in os.environ.get("CORS_ORIGINS", "").split(",") if o.strip()
]
app.add_middleware(
    CORSMiddleware,
    allow_origins=_extra_origins if _extra_origins else ["http://localhost:3000"],
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type"],
)

# ── ルーター登録 ─────────────────────────────────────────────────────────────
_PREFIX = "/api"

app.include_router(profiles.router, prefix=_PREFIX)
app.include_router(tasks.router, prefix=_PREFIX)
app.include_router(gallery.router, prefix=_PREFIX)

# Twilio Webhook（Firebase Auth なし。Twilio 署名で保護）
app.include_router(webhook.router)

# Cloud Scheduler ワーカールート（OIDC トークン検証で保護）
app.include_router(worker.router, prefix="/worker")


@app.get("/health")
async def health() -> dict:
    """ヘルスチェックエンドポイント（Cloud Run の起動確認用）"""
    return {"status": "ok"}


logger.info("Halloo API started")
