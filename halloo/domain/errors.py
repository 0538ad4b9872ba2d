"""ドメイン固有の例外クラス"""

# Twilio: 受信者が STOP 済み
OPT_OUT_ERROR_CODE = 21610

# 受信者が STOP 済み / 番号不正など、再試行しても成功しないエラーコード
PERMANENT_SEND_ERROR_CODES = frozenset({21211, 21408, OPT_OUT_ERROR_CODE, 21614})


class HallooError(Exception):
    """Halloo の基底例外"""

    pass


class InvalidPhoneNumber(HallooError):
    """E.164 に正規化できない電話番号"""

    def __init__(self, raw: str, normalized: str = "") -> None:
        super().__init__(f"Invalid phone number: {raw!r} (normalized={normalized!r})")
        self.raw = raw
        self.normalized = normalized


class MalformedInboundEvent(HallooError):
    """Webhook ペイロードから送信元電話番号を解決できない"""

    pass


class ProfileNotFound(HallooError):
    """照合対象のプロファイルが存在しない（ログのみ、致命的ではない）"""

    pass


class TaskNotFound(HallooError):
    """照合対象のタスクが存在しない（ログのみ、致命的ではない）"""

    pass


class StoreWriteFailed(HallooError):
    """ストア書き込みの一時的な失敗（呼び出し側がバックオフ付きで再試行する）"""

    pass


class DuplicateWrite(HallooError):
    """create-only ドキュメントが既に存在する"""

    def __init__(self, path: str) -> None:
        super().__init__(f"Document already exists: {path}")
        self.path = path


class SendFailed(HallooError):
    """SMS 送信失敗（Twilio 等）"""

    def __init__(self, message: str, code: int | None = None) -> None:
        super().__init__(message)
        self.code = code

    @property
    def is_permanent(self) -> bool:
        """再試行しても成功しない（受信拒否・番号不正など）"""
        return self.code in PERMANENT_SEND_ERROR_CODES

    @property
    def is_opt_out(self) -> bool:
        """受信者が STOP 済み"""
        return self.code == OPT_OUT_ERROR_CODE


class StaleWrite(HallooError):
    """条件付き書き込みの前提（読み取り時点のドキュメント）が変わっていた"""

    def __init__(self, path: str) -> None:
        super().__init__(f"Document changed since read: {path}")
        self.path = path


class QuotaExceeded(HallooError):
    """介護者アカウントの SMS 送信枠を使い切った"""

    def __init__(self, user_id: str, used: int, limit: int) -> None:
        super().__init__(f"SMS quota exceeded: user_id={user_id}, used={used}/{limit}")
        self.user_id = user_id
        self.used = used
        self.limit = limit
