"""ID 生成戦略

- User: Firebase Auth UID をそのまま使う（生成しない）
- ElderlyProfile: E.164 正規化した電話番号（同じ番号 = 同じ ID = upsert）
- Task: UUID（同じプロファイル・同じ時刻のタスクが複数あり得る）
- SMSResponse: Twilio MessageSid、無ければ UUID（SID で重複排除できる）
- GalleryHistoryEvent: 論理的な発生元キーからの UUID5（再送しても同じドキュメント）

全て純粋関数。同じ入力には同じ結果を返す（UUID 生成系を除く）。
"""

from __future__ import annotations

import logging
import re
import uuid

from halloo.domain.errors import InvalidPhoneNumber

logger = logging.getLogger(__name__)

_NON_DIGITS = re.compile(r"\D")
_TWILIO_SID = re.compile(r"^(SM|MM)[0-9a-fA-F]{32}$")
_E164 = re.compile(r"^\+[1-9]\d{1,14}$")

# ギャラリーイベント ID 用の固定名前空間
_GALLERY_NAMESPACE = uuid.UUID("6f1c2a9e-5b7d-4e0a-9a43-2d8e1f4c7b15")


def normalize_e164(phone_number: str) -> str:
    """
    電話番号を E.164 形式に正規化する（国番号省略時は +1 を補う）。

    例:
        "555-123-4567"      → "+15551234567"
        "+1 (555) 123-4567" → "+15551234567"
        "15551234567"       → "+15551234567"

    正規化できない形式はそのまま "+" を付けて返す。妥当性は
    derive_profile_id 側で検証する。
    """
    raw = phone_number.strip()
    digits = _NON_DIGITS.sub("", raw)
    cleaned = "+" + digits if raw.startswith("+") else digits

    if cleaned.startswith("+1") and len(cleaned) == 12:
        return cleaned
    if cleaned.startswith("+") and len(cleaned) == 11:
        return "+1" + cleaned[1:]
    if len(cleaned) == 11 and cleaned.startswith("1"):
        return "+" + cleaned
    if len(cleaned) == 10:
        return "+1" + cleaned

    logger.debug("Could not normalize phone number to E.164: %r", phone_number)
    return cleaned if cleaned.startswith("+") else "+" + cleaned


def derive_profile_id(phone_number: str) -> str:
    """
    電話番号からプロファイル ID を導出する。

    Raises:
        InvalidPhoneNumber: 正規化後に 11 文字未満、または "+" で始まらない場合
    """
    normalized = normalize_e164(phone_number)
    if len(normalized) < 11 or not normalized.startswith("+"):
        raise InvalidPhoneNumber(phone_number, normalized)
    return normalized


def derive_user_id(auth_uid: str) -> str:
    """Firebase Auth UID のパススルー。空文字は受け付けない"""
    if not auth_uid:
        raise ValueError("Firebase UID cannot be empty")
    return auth_uid


def derive_task_id() -> str:
    return str(uuid.uuid4())


def derive_message_id(provider_id: str | None = None) -> str:
    """Twilio MessageSid があればそれを、無ければ UUID を返す"""
    if provider_id:
        return provider_id
    return str(uuid.uuid4())


def derive_gallery_event_id(source_key: str) -> str:
    """発生元キー（例: "profile:uid/+15551234567"）から決定的な ID を作る"""
    return str(uuid.uuid5(_GALLERY_NAMESPACE, source_key))


def is_valid_profile_id(profile_id: str) -> bool:
    return bool(_E164.match(profile_id)) and 11 <= len(profile_id) <= 15


def is_valid_message_id(message_id: str) -> bool:
    if message_id.startswith(("SM", "MM")):
        return bool(_TWILIO_SID.match(message_id))
    try:
        uuid.UUID(message_id)
    except ValueError:
        return False
    return True
