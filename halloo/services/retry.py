"""ストア書き込みの再試行

- retry_store_write: StoreWriteFailed をバックオフ付きで再試行する（Webhook・リスナー共通）
- update_task: タスクを読み直しながら条件付きで書き換える（並行する完了の反映を消さない）
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import TypeVar

from halloo.domain.errors import StaleWrite, StoreWriteFailed
from halloo.domain.models import Task, TransitionWrite
from halloo.domain.ports import EntityStore

logger = logging.getLogger(__name__)

T = TypeVar("T")

WRITE_ATTEMPTS = 3
WRITE_BACKOFF_SECONDS = 0.5


def retry_store_write(
    fn: Callable[..., T],
    *args,
    attempts: int = WRITE_ATTEMPTS,
    backoff_seconds: float = WRITE_BACKOFF_SECONDS,
    sleep: Callable[[float], None] | None = None,
) -> T:
    """
    fn(*args) を呼び、StoreWriteFailed のみ指数バックオフで再試行する。

    Raises:
        StoreWriteFailed: attempts 回とも失敗した場合（最後の例外）
    """
    sleep = sleep or time.sleep
    attempt = 1
    while True:
        try:
            return fn(*args)
        except StoreWriteFailed:
            if attempt >= attempts:
                raise
            logger.warning(
                "Store write failed, retrying: fn=%s, attempt=%d/%d",
                getattr(fn, "__name__", fn),
                attempt,
                attempts,
            )
            sleep(backoff_seconds * 2 ** (attempt - 1))
            attempt += 1


def update_task(
    store: EntityStore,
    task: Task,
    mutate: Callable[[Task], Task | None],
    attempts: int = WRITE_ATTEMPTS,
) -> Task | None:
    """
    最新のタスクに mutate を適用し、読み取り時点から変わっていなければ書き込む。

    変わっていた場合（StaleWrite）は読み直して mutate からやり直す。

    Args:
        task: 対象タスク（ID のみ使う）
        mutate: 最新のタスクを受け取り、書き込む内容を返す。None なら書き込まない

    Returns:
        書き込んだタスク。タスクが消えていた、または mutate が None を返した場合は None

    Raises:
        StoreWriteFailed: attempts 回とも競合した場合
    """
    for attempt in range(1, attempts + 1):
        current = store.get_task(task.user_id, task.profile_id, task.id)
        if current is None:
            return None
        updated = mutate(current)
        if updated is None:
            return None
        try:
            store.apply_transition(TransitionWrite(task=updated, expected_task=current))
        except StaleWrite:
            logger.info(
                "Task changed during update, re-reading: task_id=%s, attempt=%d/%d",
                task.id,
                attempt,
                attempts,
            )
            continue
        return updated
    raise StoreWriteFailed(f"Task kept changing during update: {task.id}")
