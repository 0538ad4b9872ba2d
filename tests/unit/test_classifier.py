"""ResponseClassifier のユニットテスト"""

import pytest

from halloo.domain.models import Sentiment
from halloo.services.classifier import classify, is_opt_out, normalize


class TestNormalize:
    def test_lowercase_and_strip_punctuation(self):
        assert normalize("  YES!!  ") == "yes"

    def test_collapse_whitespace(self):
        assert normalize("I   took\nit") == "i took it"


class TestClassify:
    @pytest.mark.parametrize(
        "text", ["YES", "yes!!", "Done ✅", "ok", "I took it", "Y", "sure thing"]
    )
    def test_positive(self, text):
        result = classify(text)
        assert result.sentiment is Sentiment.POSITIVE
        assert result.confidence == 0.8

    @pytest.mark.parametrize("text", ["no", "Nope", "N", "I forgot", "can't today"])
    def test_negative(self, text):
        result = classify(text)
        assert result.sentiment is Sentiment.NEGATIVE
        assert result.confidence == 0.2

    @pytest.mark.parametrize("text", ["", "   ", "Thanks", "maybe later", "🙂"])
    def test_neutral(self, text):
        result = classify(text)
        assert result.sentiment is Sentiment.NEUTRAL
        assert result.confidence == 0.5

    def test_negative_wins_over_positive(self):
        """肯定と否定の両方を含む場合は否定"""
        assert classify("yes but I forgot").sentiment is Sentiment.NEGATIVE

    def test_single_letter_needs_whole_reply(self):
        """'y' / 'n' は単独の返信の場合のみキーワード扱い"""
        assert classify("hey").sentiment is Sentiment.NEUTRAL

    def test_none_is_neutral(self):
        assert classify(None).sentiment is Sentiment.NEUTRAL


class TestOptOut:
    @pytest.mark.parametrize(
        "text", ["STOP", "stop", " Stop\n", "STOPALL", "unsubscribe", "CANCEL", "end", "QUIT"]
    )
    def test_keyword(self, text):
        assert is_opt_out(text)

    @pytest.mark.parametrize(
        "text", ["STOP!", "please stop", "don't stop", "the end", "", None]
    )
    def test_not_whole_reply(self, text):
        """キーワードは返信全体で一致した場合のみ"""
        assert not is_opt_out(text)
