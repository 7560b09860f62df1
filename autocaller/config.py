"""
設定管理モジュール (Configuration Management Module)

環境変数からアプリケーション設定を読み込み、検証を行います。
"""

from dataclasses import dataclass, field
from typing import Optional
import os


class ConfigurationError(Exception):
    """設定エラー例外クラス"""
    pass


def _env_bool(name: str, default: str) -> bool:
    return os.environ.get(name, default).lower() in ("true", "1", "yes")


@dataclass
class Config:
    """
    アプリケーション設定

    環境変数から設定を読み込み、必須設定のバリデーションを行います。
    """
    # Vonage 認証情報 (必須)
    vonage_application_id: str
    vonage_private_key_path: str
    vonage_from_number: str

    # Webhook URL設定
    webhook_base_url: str
    answer_url: str
    event_url: str
    input_url: str
    audio_base_url: str

    # ロギング設定
    log_level: str

    # 言語モデル設定
    openai_api_key: Optional[str] = None
    ai_model: str = "gpt-4o"
    ai_temperature: float = 0.7
    ai_max_tokens: int = 150
    enable_ai_summary: bool = True

    # 音声合成設定
    elevenlabs_api_key: Optional[str] = None
    elevenlabs_voice_id: Optional[str] = None
    elevenlabs_model_id: str = "eleven_turbo_v2"
    voice_language: str = "en-US"
    voice_style: int = 0

    # 保存先
    database_path: str = "calls.db"
    audio_clip_dir: str = "audio_clips"

    # 通話制御
    dial_timeout_seconds: int = 120
    max_human_turns: int = 10
    ringing_timer: int = 60
    speech_end_on_silence: float = 2.0
    speech_start_timeout: int = 10
    min_call_duration: int = 15
    confirmed_call_duration: int = 20
    request_timeout: float = 10.0

    # デフォルト値の定数
    DEFAULT_AI_MODEL: str = field(default="gpt-4o", init=False, repr=False)
    DEFAULT_VOICE_LANGUAGE: str = field(default="en-US", init=False, repr=False)
    DEFAULT_DIAL_TIMEOUT_SECONDS: int = field(default=120, init=False, repr=False)
    DEFAULT_MAX_HUMAN_TURNS: int = field(default=10, init=False, repr=False)
    DEFAULT_LOG_LEVEL: str = field(default="INFO", init=False, repr=False)

    @classmethod
    def from_env(cls) -> 'Config':
        """
        環境変数から設定を読み込む

        必須の環境変数:
            - VONAGE_APPLICATION_ID: Vonage アプリケーション ID
            - VONAGE_PRIVATE_KEY_PATH: Vonage 秘密鍵ファイルパス
            - VONAGE_FROM_NUMBER: 発信者番号 (E.164)
            - WEBHOOK_BASE_URL: Webhook のベース URL

        オプションの環境変数:
            - OPENAI_API_KEY / AI_MODEL / AI_TEMPERATURE / AI_MAX_TOKENS
            - ENABLE_AI_SUMMARY: 通話終了時に要約を生成するか (デフォルト: true)
            - ELEVENLABS_API_KEY / ELEVENLABS_VOICE_ID / ELEVENLABS_MODEL_ID
            - VOICE_LANGUAGE: 音声言語 (デフォルト: en-US)
            - DATABASE_PATH: SQLite ファイルパス (デフォルト: calls.db)
            - DIAL_TIMEOUT_SECONDS: 接続待ちタイムアウト（秒） (デフォルト: 120)
            - MAX_HUMAN_TURNS: 相手の発話回数の上限 (デフォルト: 10)
            - LOG_LEVEL: ログレベル (デフォルト: INFO)

        Returns:
            Config: 設定オブジェクト

        Raises:
            ConfigurationError: 必須設定が欠落している、または数値が不正な場合
        """
        webhook_base_url = os.environ.get("WEBHOOK_BASE_URL", "")

        # ベースURLからWebhook URLを自動生成（個別指定がない場合）
        answer_url = os.environ.get("ANSWER_URL", "")
        event_url = os.environ.get("EVENT_URL", "")
        input_url = os.environ.get("INPUT_URL", "")
        audio_base_url = os.environ.get("AUDIO_BASE_URL", "")
        if webhook_base_url:
            base = webhook_base_url.rstrip("/")
            answer_url = answer_url or f"{base}/webhooks/answer"
            event_url = event_url or f"{base}/webhooks/event"
            input_url = input_url or f"{base}/webhooks/input"
            audio_base_url = audio_base_url or f"{base}/audio"

        try:
            config = cls(
                vonage_application_id=os.environ.get("VONAGE_APPLICATION_ID", ""),
                vonage_private_key_path=os.environ.get("VONAGE_PRIVATE_KEY_PATH", ""),
                vonage_from_number=os.environ.get("VONAGE_FROM_NUMBER", ""),
                webhook_base_url=webhook_base_url,
                answer_url=answer_url,
                event_url=event_url,
                input_url=input_url,
                audio_base_url=audio_base_url,
                log_level=os.environ.get("LOG_LEVEL", "INFO"),
                openai_api_key=os.environ.get("OPENAI_API_KEY") or None,
                ai_model=os.environ.get("AI_MODEL", "gpt-4o"),
                ai_temperature=float(os.environ.get("AI_TEMPERATURE", "0.7")),
                ai_max_tokens=int(os.environ.get("AI_MAX_TOKENS", "150")),
                enable_ai_summary=_env_bool("ENABLE_AI_SUMMARY", "true"),
                elevenlabs_api_key=os.environ.get("ELEVENLABS_API_KEY") or None,
                elevenlabs_voice_id=os.environ.get("ELEVENLABS_VOICE_ID") or None,
                elevenlabs_model_id=os.environ.get("ELEVENLABS_MODEL_ID", "eleven_turbo_v2"),
                voice_language=os.environ.get("VOICE_LANGUAGE", "en-US"),
                voice_style=int(os.environ.get("VOICE_STYLE", "0")),
                database_path=os.environ.get("DATABASE_PATH", "calls.db"),
                audio_clip_dir=os.environ.get("AUDIO_CLIP_DIR", "audio_clips"),
                dial_timeout_seconds=int(os.environ.get("DIAL_TIMEOUT_SECONDS", "120")),
                max_human_turns=int(os.environ.get("MAX_HUMAN_TURNS", "10")),
                ringing_timer=int(os.environ.get("RINGING_TIMER", "60")),
                speech_end_on_silence=float(os.environ.get("SPEECH_END_ON_SILENCE", "2")),
                speech_start_timeout=int(os.environ.get("SPEECH_START_TIMEOUT", "10")),
                min_call_duration=int(os.environ.get("MIN_CALL_DURATION", "15")),
                confirmed_call_duration=int(os.environ.get("CONFIRMED_CALL_DURATION", "20")),
                request_timeout=float(os.environ.get("REQUEST_TIMEOUT", "10")),
            )
        except ValueError as e:
            raise ConfigurationError(f"数値設定の形式が不正です: {e}") from e

        # バリデーション実行
        config.validate()

        return config

    @property
    def voice_synthesis_enabled(self) -> bool:
        """ElevenLabs の認証情報が揃っているか"""
        return bool(self.elevenlabs_api_key and self.elevenlabs_voice_id)

    def validate(self) -> None:
        """
        設定の妥当性を検証

        必須設定が欠落している場合、明確なエラーメッセージで
        ConfigurationError を発生させます。

        Raises:
            ConfigurationError: 必須設定が欠落または無効な場合
        """
        missing_fields = []

        if not self.vonage_application_id:
            missing_fields.append("VONAGE_APPLICATION_ID")
        if not self.vonage_private_key_path:
            missing_fields.append("VONAGE_PRIVATE_KEY_PATH")
        if not self.vonage_from_number:
            missing_fields.append("VONAGE_FROM_NUMBER")
        if not self.webhook_base_url:
            missing_fields.append("WEBHOOK_BASE_URL")

        if missing_fields:
            error_message = (
                f"必須の設定が欠落しています。以下の環境変数を設定してください: "
                f"{', '.join(missing_fields)}"
            )
            raise ConfigurationError(error_message)

        # 数値設定の妥当性検証
        positive_fields = {
            "DIAL_TIMEOUT_SECONDS": self.dial_timeout_seconds,
            "MAX_HUMAN_TURNS": self.max_human_turns,
            "RINGING_TIMER": self.ringing_timer,
            "SPEECH_START_TIMEOUT": self.speech_start_timeout,
            "AI_MAX_TOKENS": self.ai_max_tokens,
            "REQUEST_TIMEOUT": self.request_timeout,
        }
        for name, value in positive_fields.items():
            if value <= 0:
                raise ConfigurationError(f"{name} は正の数である必要があります: {value}")

        if self.speech_end_on_silence <= 0:
            raise ConfigurationError(
                f"SPEECH_END_ON_SILENCE は正の数である必要があります: {self.speech_end_on_silence}"
            )

        if self.min_call_duration < 0 or self.confirmed_call_duration < 0:
            raise ConfigurationError(
                "MIN_CALL_DURATION と CONFIRMED_CALL_DURATION は0以上である必要があります"
            )

        if not 0.0 <= self.ai_temperature <= 2.0:
            raise ConfigurationError(
                f"AI_TEMPERATURE は 0.0 から 2.0 の範囲である必要があります: {self.ai_temperature}"
            )

        if self.voice_style < 0:
            raise ConfigurationError(
                f"VOICE_STYLE は0以上の整数である必要があります: {self.voice_style}"
            )

        # ログレベルの検証
        valid_log_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if self.log_level.upper() not in valid_log_levels:
            raise ConfigurationError(
                f"LOG_LEVEL は {valid_log_levels} のいずれかである必要があります: {self.log_level}"
            )
