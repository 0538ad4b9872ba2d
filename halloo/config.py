"""設定管理 - 環境変数の型安全な読み込み"""

import os
from dataclasses import dataclass

from dotenv import load_dotenv


def _env_flag(name: str) -> bool:
    return os.getenv(name, "").lower() in ("1", "true", "yes")


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None


@dataclass(frozen=True)
class AppConfig:
    """アプリケーション設定"""

    project_id: str
    twilio_account_sid: str
    twilio_auth_token: str
    twilio_phone_number: str
    photo_bucket_name: str = ""
    webhook_public_url: str = ""
    response_deadline_minutes: int = 10
    max_send_attempts: int = 3
    scheduler_interval_seconds: int = 60
    gallery_retention_days: int = 90
    local_mode: bool = False

    @property
    def photo_archive_enabled(self) -> bool:
        return bool(self.photo_bucket_name)

    @classmethod
    def from_env(cls) -> "AppConfig":
        """
        環境変数から設定を読み込む。

        LOCAL_MODE=true の場合は Twilio / PROJECT_ID が無くても起動できる
        （インメモリストアと送信ログのみのローカル実行）。
        """
        load_dotenv()

        local_mode = _env_flag("LOCAL_MODE")

        project_id = os.getenv("PROJECT_ID", "")
        if not project_id and not local_mode:
            raise ValueError("PROJECT_ID is not set in environment")

        twilio_account_sid = os.getenv("TWILIO_ACCOUNT_SID", "")
        twilio_auth_token = os.getenv("TWILIO_AUTH_TOKEN", "")
        twilio_phone_number = os.getenv("TWILIO_PHONE_NUMBER", "")
        if not local_mode:
            if not twilio_account_sid:
                raise ValueError("TWILIO_ACCOUNT_SID is not set in environment")
            if not twilio_auth_token:
                raise ValueError("TWILIO_AUTH_TOKEN is not set in environment")
            if not twilio_phone_number:
                raise ValueError("TWILIO_PHONE_NUMBER is not set in environment")

        max_send_attempts = _env_int("MAX_SEND_ATTEMPTS", 3)
        if max_send_attempts < 1:
            raise ValueError("MAX_SEND_ATTEMPTS must be >= 1")

        gallery_retention_days = _env_int("GALLERY_RETENTION_DAYS", 90)
        if gallery_retention_days < 1:
            raise ValueError("GALLERY_RETENTION_DAYS must be >= 1")

        return cls(
            project_id=project_id,
            twilio_account_sid=twilio_account_sid,
            twilio_auth_token=twilio_auth_token,
            twilio_phone_number=twilio_phone_number,
            photo_bucket_name=os.getenv("PHOTO_BUCKET_NAME", ""),
            webhook_public_url=os.getenv("WEBHOOK_PUBLIC_URL", ""),
            response_deadline_minutes=_env_int("RESPONSE_DEADLINE_MINUTES", 10),
            max_send_attempts=max_send_attempts,
            scheduler_interval_seconds=_env_int("SCHEDULER_INTERVAL_SECONDS", 60),
            gallery_retention_days=gallery_retention_days,
            local_mode=local_mode,
        )
