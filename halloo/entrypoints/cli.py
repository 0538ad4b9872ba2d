#!/usr/bin/env python3
"""CLI Entrypoint - コマンドラインから実行

使い方:
    python -m halloo.entrypoints.cli tick               # リマインダー送信を1回
    python -m halloo.entrypoints.cli scheduler          # 一定間隔で送信し続ける
    python -m halloo.entrypoints.cli listen UID [UID..] # 受信メッセージの変更を購読して照合
    python -m halloo.entrypoints.cli cleanup-gallery    # 保持期間を過ぎたギャラリー履歴を整理

環境変数:
    LOG_LEVEL: ログレベル (DEBUG, INFO, WARNING, ERROR) デフォルト: INFO
    SCHEDULER_INTERVAL_SECONDS: scheduler の実行間隔 デフォルト: 60
    GALLERY_RETENTION_DAYS: cleanup-gallery の保持日数 デフォルト: 90
    K_SERVICE / CLOUD_RUN_JOB: Cloud Run 環境では自動設定されJSON形式ログに切替
"""

import argparse
import logging
import signal
import sys
import threading

from halloo.entrypoints.factory import Components, create_components, prime_ledger
from halloo.logging_config import setup_logging
from halloo.services.sync_coordinator import SyncCoordinator, bind_reconciler

logger = logging.getLogger(__name__)


def _install_stop_handler(stop_event: threading.Event) -> None:
    def _stop(signum, frame):
        logger.info("Received signal %s, stopping", signum)
        stop_event.set()

    signal.signal(signal.SIGTERM, _stop)
    signal.signal(signal.SIGINT, _stop)


def run_tick(components: Components) -> int:
    report = components.scheduler.tick()
    logger.info(
        "Tick complete: dispatched=%d, send_failures=%d, overdue=%d, closed=%d",
        len(report.dispatched),
        len(report.send_failures),
        len(report.overdue),
        len(report.closed),
    )
    return 1 if report.send_failures else 0


def run_scheduler(components: Components) -> int:
    stop_event = threading.Event()
    _install_stop_handler(stop_event)
    components.scheduler.run_forever(
        components.config.scheduler_interval_seconds, stop_event=stop_event
    )
    return 0


def run_cleanup(components: Components) -> int:
    report = components.retention.sweep()
    return 1 if report.errors else 0


def run_listener(components: Components, user_ids: list[str]) -> int:
    """
    外部（Cloud Function 等）が保存した受信メッセージを購読して照合する。

    起動時は全件が再配信されるが、Reconciler.replay は処理済みのものを抑止する。
    """
    primed = prime_ledger(components, user_ids)
    logger.info("Ledger primed with %d key(s)", primed)

    unbind = bind_reconciler(components.bus, components.reconciler)
    coordinators = []
    for user_id in user_ids:
        coordinator = SyncCoordinator(components.store, components.bus)
        coordinator.start(user_id)
        coordinators.append(coordinator)

    stop_event = threading.Event()
    _install_stop_handler(stop_event)
    stop_event.wait()

    for coordinator in coordinators:
        coordinator.stop()
    unbind()
    return 0


def main():
    """メインエントリーポイント"""
    parser = argparse.ArgumentParser(description="Halloo reminder backend")
    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("tick", help="Dispatch due reminders once")
    sub.add_parser("scheduler", help="Dispatch reminders on an interval")
    listen = sub.add_parser("listen", help="Reconcile stored inbound messages")
    listen.add_argument("user_ids", nargs="+", help="Caregiver UIDs to observe")
    sub.add_parser("cleanup-gallery", help="Archive and delete expired gallery events")
    args = parser.parse_args()

    setup_logging()
    logger.info("Halloo CLI - %s", args.command)

    try:
        components = create_components()
        if args.command == "tick":
            code = run_tick(components)
        elif args.command == "scheduler":
            code = run_scheduler(components)
        elif args.command == "cleanup-gallery":
            code = run_cleanup(components)
        else:
            code = run_listener(components, args.user_ids)
        sys.exit(code)

    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        sys.exit(130)

    except Exception:
        logger.exception("Fatal error")
        sys.exit(1)


if __name__ == "__main__":
    main()
