"""DedupLedger - 過去イベントの再配信に対する重複排除

リアルタイムリスナーは再購読のたびに現在のスナップショット全体を再配信する。
Reconciler はそれに対して再入可能でなければならず、このクラスがその判定を担う。

- メモリ上の集合は高速パス。正は永続化状態（confirmed_at の有無、
  メッセージドキュメントの存在）で、起動時に prime() で再構築できる
- claim() は「未処理なら処理済みにする」をロック内で一括して行う
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterable

logger = logging.getLogger(__name__)


def profile_key(user_id: str, profile_id: str) -> str:
    """プロファイル確認（ギャラリーイベント発行）用のキー"""
    return f"profile:{user_id}/{profile_id}"


def message_key(user_id: str, message_id: str) -> str:
    """タスク完了（1メッセージ1回）用のキー"""
    return f"message:{user_id}/{message_id}"


class DedupLedger:
    """プロセス内の処理済みキー集合（スレッドセーフ）"""

    def __init__(self) -> None:
        self._keys: set[str] = set()
        self._lock = threading.Lock()

    def seen(self, key: str) -> bool:
        with self._lock:
            return key in self._keys

    def mark_seen(self, key: str) -> None:
        with self._lock:
            self._keys.add(key)

    def claim(self, key: str) -> bool:
        """
        キーを原子的に確保する。

        Returns:
            True: 今回初めて確保した（処理してよい）
            False: 既に確保済み（重複として抑止する）
        """
        with self._lock:
            if key in self._keys:
                return False
            self._keys.add(key)
            return True

    def release(self, key: str) -> None:
        """書き込み失敗時に確保を取り消す（再試行で処理できるように）"""
        with self._lock:
            self._keys.discard(key)

    def prime(self, keys: Iterable[str]) -> int:
        """永続化状態から復元したキーをまとめて登録。追加件数を返す"""
        with self._lock:
            before = len(self._keys)
            self._keys.update(keys)
            added = len(self._keys) - before
        logger.info("Dedup ledger primed: added=%d, total=%d", added, len(self))
        return added

    def __len__(self) -> int:
        with self._lock:
            return len(self._keys)
