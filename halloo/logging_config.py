"""ロギング設定モジュール

Cloud Run / Cloud Logging 環境ではJSON形式、ローカルではテキスト形式でログを出力する。

使い方:
    from halloo.logging_config import setup_logging
    setup_logging()

構造化フィールドは extra={"extra_fields": {...}} で渡す:
    logger.info("Reconciled", extra={"extra_fields": {"profile_id": pid, "outcome": "applied"}})

環境変数:
    LOG_LEVEL: ログレベル (DEBUG, INFO, WARNING, ERROR, CRITICAL) デフォルト: INFO
    K_SERVICE / CLOUD_RUN_JOB: Cloud Run 環境判定（自動設定される）
"""

import json
import logging
import os

# JSON に出力する構造化フィールド（値が None のものは省く）
CONTEXT_FIELDS = ("user_id", "profile_id", "task_id", "message_id", "outcome")


class CloudLoggingFormatter(logging.Formatter):
    """Cloud Logging互換のJSONフォーマッタ

    JSON形式で `severity` フィールドを含めることで
    Cloud Logging 上のログレベルが正しくマッピングされる。
    """

    LEVEL_TO_SEVERITY = {
        "DEBUG": "DEBUG",
        "INFO": "INFO",
        "WARNING": "WARNING",
        "ERROR": "ERROR",
        "CRITICAL": "CRITICAL",
    }

    def format(self, record: logging.LogRecord) -> str:
        log_entry: dict = {
            "severity": self.LEVEL_TO_SEVERITY.get(record.levelname, "DEFAULT"),
            "message": record.getMessage(),
            "logger": record.name,
            "timestamp": self.formatTime(record, "%Y-%m-%dT%H:%M:%S"),
        }
        if record.exc_info and record.exc_info[0]:
            log_entry["exception"] = self.formatException(record.exc_info)
        extra_fields = getattr(record, "extra_fields", None) or {}
        for key in CONTEXT_FIELDS:
            if extra_fields.get(key) is not None:
                log_entry[key] = extra_fields[key]
        for key, value in extra_fields.items():
            if key not in log_entry and value is not None:
                log_entry[key] = value
        return json.dumps(log_entry, ensure_ascii=False, default=str)


def setup_logging() -> None:
    """ログ設定を初期化する

    Cloud Run 環境（K_SERVICE または CLOUD_RUN_JOB 環境変数が存在する場合）では
    Cloud Logging 互換の JSON フォーマットを使用し、ローカルではテキスト形式を使用する。
    """
    log_level = os.getenv("LOG_LEVEL", "INFO").upper()
    is_cloud = bool(os.getenv("K_SERVICE") or os.getenv("CLOUD_RUN_JOB"))

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, log_level, logging.INFO))

    handler = logging.StreamHandler()
    if is_cloud:
        handler.setFormatter(CloudLoggingFormatter())
    else:
        handler.setFormatter(
            logging.Formatter(
                "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )
        )

    root_logger.handlers.clear()
    root_logger.addHandler(handler)

    # Twilio SDK はリクエストごとに INFO を出すので抑える
    logging.getLogger("twilio.http_client").setLevel(logging.WARNING)
