"""
音声合成モジュール (Voice Synthesis Module)

ElevenLabs の text-to-speech API を使用して応答テキストを音声に変換します。
プロバイダーが利用できない場合は Vonage の talk 音声によるフォールバックを返します。
"""

import math
import re
from dataclasses import dataclass
from typing import Optional

import requests

from .errors import ErrorReporter, ErrorType, SpeechSynthesisError
from .logging_config import get_logger

logger = get_logger(__name__)


ELEVENLABS_API_BASE = "https://api.elevenlabs.io/v1"

# 発話速度 (1分あたりの単語数)
WORDS_PER_MINUTE = 150

_ABBREVIATIONS = (
    (re.compile(r"\bDr\."), "Doctor"),
    (re.compile(r"\bMrs\."), "Missus"),
    (re.compile(r"\bMr\."), "Mister"),
    (re.compile(r"\bMs\."), "Miz"),
)

_MARKDOWN_EMPHASIS = re.compile(r"(\*\*|__|\*|_|`|~~)(.+?)\1")
_MARKDOWN_HEADING = re.compile(r"^\s*#+\s*", re.MULTILINE)


@dataclass
class VoiceResponse:
    """
    音声合成結果

    Attributes:
        success: 合成に成功したか
        audio: 音声データ (フォールバック時はNone)
        duration: 推定再生時間（秒）
        error: エラーメッセージ
        used_fallback: フォールバックを使用したか
    """
    success: bool
    audio: Optional[bytes] = None
    duration: int = 0
    error: Optional[str] = None
    used_fallback: bool = False


def normalize_text(text: str) -> str:
    """
    音声合成用にテキストを正規化

    Markdown の強調記号を除去し、敬称の略語を展開し、空白をまとめます。
    """
    normalized = _MARKDOWN_HEADING.sub("", text or "")
    normalized = _MARKDOWN_EMPHASIS.sub(r"\2", normalized)
    for pattern, replacement in _ABBREVIATIONS:
        normalized = pattern.sub(replacement, normalized)
    return " ".join(normalized.split())


def estimate_duration(text: str) -> int:
    """発話時間を推定 (150語/分、切り上げ、最低1秒)"""
    words = len(text.split())
    return max(1, math.ceil(words / WORDS_PER_MINUTE * 60))


def fallback_synthesis(text: str, error: Optional[str] = None) -> VoiceResponse:
    """
    ローカルフォールバック

    音声データを持たない成功レスポンスを返します。
    NCCO では stream の代わりに talk アクションが使用されます。
    """
    normalized = normalize_text(text)
    return VoiceResponse(
        success=True,
        audio=None,
        duration=estimate_duration(normalized),
        error=error,
        used_fallback=True,
    )


def _is_retryable(error: BaseException) -> bool:
    if isinstance(error, SpeechSynthesisError):
        return error.status_code == 429 or (error.status_code or 0) >= 500
    return isinstance(error, (requests.ConnectionError, requests.Timeout))


class VoiceSynthesizer:
    """
    ElevenLabs 音声合成クライアント

    レート制限 (429) と一時的な障害はリトライし、
    リトライ後も失敗した場合はフォールバックを返します。
    """

    def __init__(
        self,
        api_key: Optional[str],
        voice_id: Optional[str],
        reporter: ErrorReporter,
        model_id: str = "eleven_turbo_v2",
        style: int = 0,
        timeout: float = 10.0,
        session: Optional[requests.Session] = None
    ):
        """
        VoiceSynthesizerを初期化

        Args:
            api_key: ElevenLabs APIキー
            voice_id: ElevenLabs ボイスID
            reporter: エラーレポーター
            model_id: 音声合成モデルID
            style: ボイススタイル
            timeout: リクエストタイムアウト（秒）
            session: HTTPセッション (テスト用)
        """
        self.api_key = api_key
        self.voice_id = voice_id
        self.reporter = reporter
        self.model_id = model_id
        self.style = style
        self.timeout = timeout
        self.session = session or requests.Session()

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key and self.voice_id)

    def synthesize(self, text: str) -> VoiceResponse:
        """
        テキストを音声に変換

        Args:
            text: 読み上げるテキスト

        Returns:
            VoiceResponse
        """
        normalized = normalize_text(text)
        if not normalized:
            return VoiceResponse(success=False, error="Text is empty")

        if not self.is_configured:
            return fallback_synthesis(normalized)

        try:
            audio = self.reporter.retry_with_backoff(
                lambda: self._request_speech(normalized),
                error_type=ErrorType.VOICE,
                operation_name="elevenlabs_text_to_speech",
                should_retry=_is_retryable,
            )
        except (SpeechSynthesisError, requests.RequestException) as e:
            self.reporter.log_error(
                ErrorType.VOICE,
                "Voice synthesis failed, default voice used",
                details={"error": str(e)},
                recovered=True,
                recovery_action="fallback_voice",
            )
            return fallback_synthesis(normalized, error=str(e))

        logger.debug(
            "speech_synthesized",
            characters=len(normalized),
            audio_bytes=len(audio),
        )
        return VoiceResponse(
            success=True,
            audio=audio,
            duration=estimate_duration(normalized),
        )

    def _request_speech(self, text: str) -> bytes:
        response = self.session.post(
            f"{ELEVENLABS_API_BASE}/text-to-speech/{self.voice_id}",
            headers={
                "xi-api-key": self.api_key,
                "Content-Type": "application/json",
                "Accept": "audio/mpeg",
            },
            json={
                "text": text,
                "model_id": self.model_id,
                "voice_settings": {
                    "stability": 0.5,
                    "similarity_boost": 0.75,
                    "style": self.style,
                    "use_speaker_boost": True,
                },
            },
            timeout=self.timeout,
        )

        if response.status_code != 200:
            raise SpeechSynthesisError(
                f"ElevenLabs API error: {response.status_code} {response.text[:200]}",
                status_code=response.status_code,
            )
        if not response.content:
            raise SpeechSynthesisError("ElevenLabs API returned no audio")
        return response.content
