"""ResponseClassifier - 受信 SMS 本文の肯定/否定判定

判定方法:
- 小文字化・前後空白除去・英数字と空白以外を除去
- 肯定/否定キーワードの部分一致（"nope" が "no" に一致するような緩い判定は意図的）
- 1文字キーワード（"y" / "n"）は返信全体が一致した場合のみ
- 両方に一致した場合は否定を優先する（誤った「完了」の方が害が大きいため）

STOP 系キーワード（配信停止）は部分一致ではなく、返信全体の完全一致で判定する。
"""

from __future__ import annotations

import re

from halloo.domain.models import Classification, Sentiment

POSITIVE_KEYWORDS: frozenset[str] = frozenset(
    {
        "yes",
        "yeah",
        "yep",
        "yup",
        "done",
        "complete",
        "finished",
        "ok",
        "okay",
        "took",
        "taken",
        "check",
        "confirm",
        "sure",
        "y",
    }
)

NEGATIVE_KEYWORDS: frozenset[str] = frozenset(
    {
        "no",
        "nope",
        "not",
        "cant",
        "cannot",
        "didnt",
        "dont",
        "wont",
        "stop",
        "skip",
        "forgot",
        "missed",
        "n",
    }
)

# 携帯キャリア標準の配信停止キーワード（大文字小文字・前後空白は無視）
OPT_OUT_KEYWORDS: frozenset[str] = frozenset(
    {"STOP", "STOPALL", "UNSUBSCRIBE", "CANCEL", "END", "QUIT"}
)

POSITIVE_CONFIDENCE = 0.8
NEGATIVE_CONFIDENCE = 0.2
NEUTRAL_CONFIDENCE = 0.5

_STRIP = re.compile(r"[^a-z0-9\s]")
_SPACES = re.compile(r"\s+")


def normalize(raw_text: str) -> str:
    """判定用に本文を正規化する"""
    text = _STRIP.sub("", raw_text.lower())
    return _SPACES.sub(" ", text).strip()


def _matches(text: str, keywords: frozenset[str]) -> bool:
    for keyword in keywords:
        if len(keyword) == 1:
            if text == keyword:
                return True
        elif keyword in text:
            return True
    return False


def classify(raw_text: str) -> Classification:
    """
    返信本文を Positive / Negative / Neutral に分類する。

    Returns:
        Classification: Positive=0.8, Negative=0.2, Neutral=0.5
    """
    text = normalize(raw_text or "")
    if not text:
        return Classification(Sentiment.NEUTRAL, NEUTRAL_CONFIDENCE)

    is_negative = _matches(text, NEGATIVE_KEYWORDS)
    if is_negative:
        return Classification(Sentiment.NEGATIVE, NEGATIVE_CONFIDENCE)
    if _matches(text, POSITIVE_KEYWORDS):
        return Classification(Sentiment.POSITIVE, POSITIVE_CONFIDENCE)
    return Classification(Sentiment.NEUTRAL, NEUTRAL_CONFIDENCE)


def is_opt_out(raw_text: str) -> bool:
    """返信全体が配信停止キーワードかどうか（"please stop" は該当しない）"""
    return (raw_text or "").strip().upper() in OPT_OUT_KEYWORDS
