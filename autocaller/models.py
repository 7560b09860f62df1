"""
データモデルモジュール (Data Models Module)

通話レコード、会話ターン、保留中の質問、エラーログのデータモデルと
トランスクリプトの直列化を定義します。
"""

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional


def utc_now() -> datetime:
    """タイムゾーン付きの現在時刻 (UTC) を返す"""
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class CallStatus:
    """通話ステータス定数"""
    PREPARING = "preparing"
    DIALING = "dialing"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    FAILED = "failed"


ALL_STATUSES = (
    CallStatus.PREPARING,
    CallStatus.DIALING,
    CallStatus.IN_PROGRESS,
    CallStatus.COMPLETED,
    CallStatus.FAILED,
)

TERMINAL_STATUSES = frozenset({CallStatus.COMPLETED, CallStatus.FAILED})

SPEAKER_AI = "ai"
SPEAKER_HUMAN = "human"


@dataclass
class CallResult:
    """
    通話結果データモデル

    終端ステータスへの遷移時に一度だけ設定されます。

    Attributes:
        success: 通話目的が達成されたと推定されるか
        message: 利用者向けの結果メッセージ
        details: 補足説明
        transcript: 終了時点のトランスクリプト
        ai_summary: 言語モデルによる要約 (オプション)
        sentiment: positive / neutral / negative
        objectives_achieved: 達成された目的のリスト
    """
    success: bool
    message: str
    details: Optional[str] = None
    transcript: Optional[str] = None
    ai_summary: Optional[str] = None
    sentiment: Optional[str] = None
    objectives_achieved: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'CallResult':
        return cls(
            success=bool(data.get("success")),
            message=data.get("message", ""),
            details=data.get("details"),
            transcript=data.get("transcript"),
            ai_summary=data.get("ai_summary"),
            sentiment=data.get("sentiment"),
            objectives_achieved=list(data.get("objectives_achieved") or []),
        )


@dataclass
class ConversationTurn:
    """
    会話ターン (1発話) データモデル

    Attributes:
        speaker: 話者 (ai または human)
        text: 発話内容
        timestamp: 発話日時
        confidence: 音声認識の信頼度 (0.0〜1.0、オプション)
    """
    speaker: str
    text: str
    timestamp: Optional[datetime] = None
    confidence: Optional[float] = None


@dataclass
class CallRecord:
    """
    通話レコードデータモデル

    通話の集約ルートです。ステータスと結果は状態機械のみが更新します。

    Attributes:
        id: 主キー (UUID)
        recipient_name: 通話相手の名前
        phone_number: 発信先電話番号
        call_goal: 通話目的 (例: "Book appointment")
        additional_context: 追加コンテキスト
        status: 通話ステータス (CallStatus)
        created_at: 作成日時
        result: 通話結果 (終端ステータスの場合のみ)
        completed_at: 終了日時 (終端ステータスの場合のみ)
        duration: 通話時間（秒）
        transcript: "Assistant: ..." / "Person: ..." 形式のトランスクリプト
        provider_call_id: Vonage通話UUID
        answered_at: 応答日時
        revision: 楽観的ロック用のリビジョン番号
    """
    id: str
    recipient_name: str
    phone_number: str
    call_goal: str
    additional_context: str
    status: str
    created_at: datetime
    result: Optional[CallResult] = None
    completed_at: Optional[datetime] = None
    duration: Optional[float] = None
    transcript: str = ""
    provider_call_id: Optional[str] = None
    answered_at: Optional[datetime] = None
    revision: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def turns(self) -> List[ConversationTurn]:
        """永続化されたトランスクリプトから会話ターンを復元"""
        return parse_transcript(self.transcript)

    def to_dict(self) -> Dict[str, Any]:
        """HTTP API と通知で使用する JSON 形式に変換"""
        return {
            "id": self.id,
            "recipient_name": self.recipient_name,
            "phone_number": self.phone_number,
            "call_goal": self.call_goal,
            "additional_context": self.additional_context,
            "status": self.status,
            "result": self.result.to_dict() if self.result else None,
            "created_at": _iso(self.created_at),
            "completed_at": _iso(self.completed_at),
            "duration": self.duration,
            "transcript": self.transcript,
            "provider_call_id": self.provider_call_id,
            "answered_at": _iso(self.answered_at),
            "revision": self.revision,
        }


@dataclass
class PendingQuestion:
    """
    保留中の質問データモデル

    会話エンジンが回答できない質問をオペレーターに問い合わせるために作成されます。
    オペレーターの回答は次のターンで一度だけ会話エンジンに渡されます。

    Attributes:
        id: 主キー (UUID)
        call_id: 通話レコードID
        question: 相手の発話
        context: 質問時点の会話コンテキスト
        timestamp: 作成日時
        answered: 回答済みか
        answer: オペレーターの回答
        delivered: 回答が会話ターンに注入済みか
    """
    id: str
    call_id: str
    question: str
    context: str
    timestamp: datetime
    answered: bool = False
    answer: Optional[str] = None
    delivered: bool = False

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["timestamp"] = _iso(self.timestamp)
        return data


@dataclass
class ErrorLogEntry:
    """
    エラーログエントリ

    ErrorReporter のリングバッファに保持される診断用レコードです。
    """
    timestamp: datetime
    type: str
    message: str
    details: Optional[Dict[str, Any]] = None
    recovered: bool = False
    recovery_action: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["timestamp"] = _iso(self.timestamp)
        return data


# トランスクリプトの話者ラベル
_SPEAKER_LABELS = {
    SPEAKER_AI: "Assistant",
    SPEAKER_HUMAN: "Person",
}

_LABEL_TO_SPEAKER = {
    "assistant": SPEAKER_AI,
    "ai": SPEAKER_AI,
    "person": SPEAKER_HUMAN,
    "human": SPEAKER_HUMAN,
}


def format_transcript(turns: List[ConversationTurn]) -> str:
    """
    会話ターンをトランスクリプト文字列に変換

    1ターン1行の "Assistant: ..." / "Person: ..." 形式です。
    テキスト内の改行は空白にまとめます。

    Args:
        turns: 発生順の会話ターン

    Returns:
        トランスクリプト文字列
    """
    lines = []
    for turn in turns:
        label = _SPEAKER_LABELS.get(turn.speaker)
        if label is None:
            raise ValueError(f"Unknown speaker: {turn.speaker}")
        text = " ".join(turn.text.split())
        lines.append(f"{label}: {text}")
    return "\n".join(lines)


def parse_transcript(text: Optional[str]) -> List[ConversationTurn]:
    """
    トランスクリプト文字列を会話ターンに変換

    既知の話者ラベルを持たない行は無視します。

    Args:
        text: トランスクリプト文字列

    Returns:
        会話ターンのリスト
    """
    turns: List[ConversationTurn] = []
    if not text:
        return turns

    for line in text.splitlines():
        label, sep, body = line.partition(":")
        if not sep:
            continue
        speaker = _LABEL_TO_SPEAKER.get(label.strip().lower())
        if speaker is None:
            continue
        turns.append(ConversationTurn(speaker=speaker, text=body.strip()))
    return turns


def append_to_transcript(transcript: str, turns: List[ConversationTurn]) -> str:
    """既存のトランスクリプトにターンを追記"""
    addition = format_transcript(turns)
    if not addition:
        return transcript or ""
    if not transcript:
        return addition
    return f"{transcript}\n{addition}"
