"""
NCCO Builder モジュール (NCCO Builder Module)

Vonage Voice APIの通話フローを制御するNCCO (Nexmo Call Control Object) を構築します。
各ターンで「発話 → 音声入力の収集」を指示します。
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, TYPE_CHECKING
from urllib.parse import urlencode

if TYPE_CHECKING:
    from autocaller.config import Config


ERROR_TEXT = (
    "I apologize, but there seems to be a technical issue. Please try calling back later."
)


@dataclass
class TalkAction:
    """
    Talk NCCOアクション

    Vonage の音声合成でテキストを読み上げるアクションです。

    Attributes:
        text: 読み上げるテキスト (必須)
        language: 音声の言語コード (デフォルト: en-US)
        style: 音声スタイル番号 (デフォルト: 0)
        bargeIn: 相手の発話で中断可能かどうか (デフォルト: False)
    """
    text: str
    language: str = "en-US"
    style: int = 0
    bargeIn: bool = False

    def to_dict(self) -> Dict[str, Any]:
        """
        NCCOアクションを辞書形式に変換

        Returns:
            Dict[str, Any]: NCCOアクションの辞書表現
        """
        return {
            "action": "talk",
            "text": self.text,
            "language": self.language,
            "style": self.style,
            "bargeIn": self.bargeIn
        }


@dataclass
class StreamAction:
    """
    Stream NCCOアクション

    合成済みの音声ファイルを再生するアクションです。

    Attributes:
        streamUrl: 音声ファイルURLのリスト (必須)
        bargeIn: 相手の発話で中断可能かどうか (デフォルト: False)
    """
    streamUrl: List[str]
    bargeIn: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "action": "stream",
            "streamUrl": self.streamUrl,
            "bargeIn": self.bargeIn
        }


@dataclass
class InputAction:
    """
    Input NCCOアクション

    相手の発話を音声認識で収集し、結果を eventUrl に送信するアクションです。

    Attributes:
        eventUrl: 認識結果を受け取るWebhook URLリスト (必須)
        language: 認識言語 (デフォルト: en-US)
        endOnSilence: 無音で認識を終了するまでの秒数 (デフォルト: 2)
        startTimeout: 発話開始を待つ秒数 (デフォルト: 10)
    """
    eventUrl: List[str]
    language: str = "en-US"
    endOnSilence: float = 2
    startTimeout: int = 10

    def to_dict(self) -> Dict[str, Any]:
        return {
            "action": "input",
            "type": ["speech"],
            "eventUrl": self.eventUrl,
            "eventMethod": "POST",
            "speech": {
                "language": self.language,
                "endOnSilence": self.endOnSilence,
                "startTimeout": self.startTimeout
            }
        }


class NCCOBuilder:
    """
    NCCOを構築するビルダークラス

    合成音声のURLがある場合は stream アクション、ない場合は talk アクションで
    発話し、会話を続ける場合は input アクションを続けます。

    Attributes:
        config: アプリケーション設定オブジェクト
    """

    def __init__(self, config: 'Config'):
        """
        NCCOBuilderを初期化

        Args:
            config: アプリケーション設定オブジェクト
        """
        self.config = config

    def build_turn_ncco(
        self,
        text: str,
        call_id: str,
        clip_url: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        """
        会話ターン用NCCOを構築

        発話アクションの後に音声入力を収集する input アクションを含めます。

        Args:
            text: 発話テキスト
            call_id: 通話レコードID (入力コールバックURLに含める)
            clip_url: 合成音声のURL (オプション)

        Returns:
            NCCOアクションのリスト（発話 + Input）
        """
        return [
            self._build_speak_action(text, clip_url),
            self._build_input_action(call_id),
        ]

    def build_closing_ncco(
        self,
        text: str,
        clip_url: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        """
        終了用NCCOを構築

        発話のみを含み、入力を収集しないため発話後に通話が終了します。
        """
        return [self._build_speak_action(text, clip_url)]

    def build_error_ncco(self) -> List[Dict[str, Any]]:
        """エラー時のNCCOを構築"""
        return [self._build_talk_action(ERROR_TEXT)]

    def _build_speak_action(self, text: str, clip_url: Optional[str]) -> Dict[str, Any]:
        if clip_url:
            return StreamAction(streamUrl=[clip_url]).to_dict()
        return self._build_talk_action(text)

    def _build_talk_action(self, text: str) -> Dict[str, Any]:
        talk = TalkAction(
            text=text,
            language=self.config.voice_language,
            style=self.config.voice_style,
            bargeIn=False
        )
        return talk.to_dict()

    def _build_input_action(self, call_id: str) -> Dict[str, Any]:
        separator = "&" if "?" in self.config.input_url else "?"
        event_url = f"{self.config.input_url}{separator}{urlencode({'call_id': call_id})}"
        action = InputAction(
            eventUrl=[event_url],
            language=self.config.voice_language,
            endOnSilence=self.config.speech_end_on_silence,
            startTimeout=self.config.speech_start_timeout
        )
        return action.to_dict()
