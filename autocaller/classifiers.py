"""
テキスト分類モジュール (Text Classifier Module)

会話の終了判定・意図判定・不確実性判定・通話結果判定に使用する
キーワードベースの分類器を提供します。

いずれもベストエフォートの近似であり、判定結果を保証するものではありません。
同じ classify(text) -> label インターフェースを持つ別の分類器
(モデルベースなど) に差し替えることができます。
"""

import re
from typing import Optional, Protocol, Sequence, Tuple


class TextClassifier(Protocol):
    """分類器インターフェース"""

    def classify(self, text: str) -> str:
        ...


class PhraseClassifier:
    """
    フレーズテーブルによる分類器

    (ラベル, フレーズ一覧) の順序付きテーブルを先頭から照合し、
    最初に一致したラベルを返します。一致しない場合は default を返します。
    """

    def __init__(
        self,
        table: Sequence[Tuple[str, Sequence[str]]],
        default: str,
        word_boundary: bool = False
    ):
        """
        Args:
            table: (ラベル, フレーズ一覧) のタプルのシーケンス
            default: 一致しない場合のラベル
            word_boundary: True の場合は単語境界で照合
        """
        self.default = default
        self._rules = []
        for label, phrases in table:
            patterns = []
            for phrase in phrases:
                escaped = re.escape(phrase.lower())
                if word_boundary:
                    escaped = rf"\b{escaped}\b"
                patterns.append(re.compile(escaped))
            self._rules.append((label, patterns))

    def match(self, text: str) -> Optional[str]:
        """一致したラベルを返す (一致しない場合はNone)"""
        lowered = (text or "").lower()
        for label, patterns in self._rules:
            if any(pattern.search(lowered) for pattern in patterns):
                return label
        return None

    def classify(self, text: str) -> str:
        label = self.match(text)
        return label if label is not None else self.default


FAREWELL_PHRASES = (
    "goodbye",
    "bye",
    "have a great day",
    "have a good day",
    "have a nice day",
    "thank you for your time",
    "take care",
)

UNCERTAINTY_PHRASES = (
    "i don't have that information",
    "let me check",
    "i'm not sure",
    "i need to verify",
    "i don't know",
    "i'll need to check",
)

QUESTION_PHRASES = (
    "what time",
    "when do",
    "how much",
    "what is the price",
    "price",
    "cost",
    "do you have",
    "availab",
    "can you tell me",
    "i need to know",
    "what about",
    "how long",
)

POSITIVE_OUTCOME_PHRASES = (
    "booked",
    "scheduled",
    "confirmed",
    "reserved",
    "all set",
    "that works",
    "sounds good",
    "see you",
)

NEGATIVE_OUTCOME_PHRASES = (
    "not available",
    "unavailable",
    "fully booked",
    "closed",
    "not interested",
    "no thanks",
    "no thank you",
    "wrong number",
    "can't help",
    "cannot help",
)


def farewell_classifier() -> PhraseClassifier:
    """終了フレーズ分類器 (farewell / none)"""
    return PhraseClassifier(
        [("farewell", FAREWELL_PHRASES)], default="none", word_boundary=True
    )


def intent_classifier() -> PhraseClassifier:
    """
    意図分類器

    reschedule は schedule より先に照合します。
    """
    return PhraseClassifier(
        [
            ("reschedule", ("reschedule",)),
            ("schedule", ("schedule", "book", "appointment")),
            ("information", ("information", "know", "tell me")),
            ("confirm", ("confirm",)),
            ("cancel", ("cancel",)),
        ],
        default="general",
    )


def uncertainty_classifier() -> PhraseClassifier:
    """不確実性分類器 (uncertain / certain)"""
    return PhraseClassifier([("uncertain", UNCERTAINTY_PHRASES)], default="certain")


def question_classifier() -> PhraseClassifier:
    """質問分類器 (question / statement)"""
    return PhraseClassifier([("question", QUESTION_PHRASES)], default="statement")


class TranscriptOutcomeClassifier:
    """
    トランスクリプトの結果分類器

    肯定・否定の確認フレーズを単語境界で照合し、
    positive / negative / mixed / neutral を返します。
    """

    def __init__(
        self,
        positive_phrases: Sequence[str] = POSITIVE_OUTCOME_PHRASES,
        negative_phrases: Sequence[str] = NEGATIVE_OUTCOME_PHRASES
    ):
        self._positive = PhraseClassifier(
            [("positive", positive_phrases)], default="", word_boundary=True
        )
        self._negative = PhraseClassifier(
            [("negative", negative_phrases)], default="", word_boundary=True
        )

    def classify(self, text: str) -> str:
        positive = self._positive.match(text) is not None
        negative = self._negative.match(text) is not None
        if positive and negative:
            return "mixed"
        if positive:
            return "positive"
        if negative:
            return "negative"
        return "neutral"


class SentimentClassifier:
    """感情分類器 (positive / neutral / negative)"""

    def __init__(self, outcome_classifier: Optional[TranscriptOutcomeClassifier] = None):
        self._outcome = outcome_classifier or TranscriptOutcomeClassifier()

    def classify(self, text: str) -> str:
        label = self._outcome.classify(text)
        if label in ("positive", "negative"):
            return label
        return "neutral"
