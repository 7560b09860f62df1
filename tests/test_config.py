"""
Config クラスのユニットテスト
"""

import os
import pytest
from unittest import mock

from autocaller.config import Config, ConfigurationError


class TestConfigFromEnv:
    """Config.from_env() メソッドのテスト"""

    @pytest.fixture
    def valid_env_vars(self):
        """有効な環境変数のセット"""
        return {
            "VONAGE_APPLICATION_ID": "test_app_id",
            "VONAGE_PRIVATE_KEY_PATH": "/path/to/private.key",
            "VONAGE_FROM_NUMBER": "+15550001111",
            "WEBHOOK_BASE_URL": "https://example.com",
        }

    def test_from_env_with_valid_required_vars(self, valid_env_vars):
        """正常系: 必須環境変数が設定されている場合、Configが正しく作成される"""
        with mock.patch.dict(os.environ, valid_env_vars, clear=True):
            config = Config.from_env()

            assert config.vonage_application_id == "test_app_id"
            assert config.vonage_private_key_path == "/path/to/private.key"
            assert config.vonage_from_number == "+15550001111"
            assert config.webhook_base_url == "https://example.com"

    def test_from_env_generates_webhook_urls(self, valid_env_vars):
        """正常系: WEBHOOK_BASE_URLからWebhook URLが自動生成される"""
        env_vars = {**valid_env_vars, "WEBHOOK_BASE_URL": "https://example.com/"}
        with mock.patch.dict(os.environ, env_vars, clear=True):
            config = Config.from_env()

            assert config.answer_url == "https://example.com/webhooks/answer"
            assert config.event_url == "https://example.com/webhooks/event"
            assert config.input_url == "https://example.com/webhooks/input"
            assert config.audio_base_url == "https://example.com/audio"

    def test_from_env_uses_defaults(self, valid_env_vars):
        """正常系: オプション設定が未設定の場合、デフォルト値が使用される"""
        with mock.patch.dict(os.environ, valid_env_vars, clear=True):
            config = Config.from_env()

            assert config.openai_api_key is None
            assert config.ai_model == "gpt-4o"
            assert config.ai_temperature == 0.7
            assert config.ai_max_tokens == 150
            assert config.enable_ai_summary is True
            assert config.voice_language == "en-US"
            assert config.dial_timeout_seconds == 120
            assert config.max_human_turns == 10
            assert config.min_call_duration == 15
            assert config.confirmed_call_duration == 20
            assert config.log_level == "INFO"
            assert config.voice_synthesis_enabled is False

    def test_from_env_uses_custom_values(self, valid_env_vars):
        """正常系: オプション設定がカスタマイズされている場合、その値が使用される"""
        env_vars = {
            **valid_env_vars,
            "OPENAI_API_KEY": "sk-test",
            "AI_TEMPERATURE": "0.2",
            "ENABLE_AI_SUMMARY": "false",
            "ELEVENLABS_API_KEY": "el-key",
            "ELEVENLABS_VOICE_ID": "voice-1",
            "DIAL_TIMEOUT_SECONDS": "90",
            "MAX_HUMAN_TURNS": "6",
            "LOG_LEVEL": "DEBUG",
        }
        with mock.patch.dict(os.environ, env_vars, clear=True):
            config = Config.from_env()

            assert config.openai_api_key == "sk-test"
            assert config.ai_temperature == 0.2
            assert config.enable_ai_summary is False
            assert config.voice_synthesis_enabled is True
            assert config.dial_timeout_seconds == 90
            assert config.max_human_turns == 6
            assert config.log_level == "DEBUG"


class TestConfigValidation:
    """Config.validate() メソッドのテスト"""

    @pytest.mark.parametrize("missing", [
        "VONAGE_APPLICATION_ID",
        "VONAGE_PRIVATE_KEY_PATH",
        "VONAGE_FROM_NUMBER",
        "WEBHOOK_BASE_URL",
    ])
    def test_missing_required_var_raises(self, missing):
        """異常系: 必須環境変数が欠落している場合、ConfigurationErrorが発生する"""
        env_vars = {
            "VONAGE_APPLICATION_ID": "test_app_id",
            "VONAGE_PRIVATE_KEY_PATH": "/path/to/private.key",
            "VONAGE_FROM_NUMBER": "+15550001111",
            "WEBHOOK_BASE_URL": "https://example.com",
        }
        del env_vars[missing]
        with mock.patch.dict(os.environ, env_vars, clear=True):
            with pytest.raises(ConfigurationError) as exc_info:
                Config.from_env()

            assert missing in str(exc_info.value)

    def test_all_missing_vars_are_listed(self):
        """異常系: 欠落しているすべての必須環境変数がメッセージに含まれる"""
        with mock.patch.dict(os.environ, {}, clear=True):
            with pytest.raises(ConfigurationError) as exc_info:
                Config.from_env()

            message = str(exc_info.value)
            assert "VONAGE_APPLICATION_ID" in message
            assert "WEBHOOK_BASE_URL" in message

    def test_non_numeric_value_raises(self):
        """異常系: 数値設定が不正な場合、ConfigurationErrorが発生する"""
        env_vars = {
            "VONAGE_APPLICATION_ID": "test_app_id",
            "VONAGE_PRIVATE_KEY_PATH": "/path/to/private.key",
            "VONAGE_FROM_NUMBER": "+15550001111",
            "WEBHOOK_BASE_URL": "https://example.com",
            "DIAL_TIMEOUT_SECONDS": "soon",
        }
        with mock.patch.dict(os.environ, env_vars, clear=True):
            with pytest.raises(ConfigurationError):
                Config.from_env()

    def test_non_positive_timeout_raises(self, test_config):
        """異常系: タイムアウトが0以下の場合、ConfigurationErrorが発生する"""
        test_config.dial_timeout_seconds = 0

        with pytest.raises(ConfigurationError) as exc_info:
            test_config.validate()

        assert "DIAL_TIMEOUT_SECONDS" in str(exc_info.value)

    def test_temperature_out_of_range_raises(self, test_config):
        """異常系: AI_TEMPERATURE が範囲外の場合、ConfigurationErrorが発生する"""
        test_config.ai_temperature = 3.5

        with pytest.raises(ConfigurationError):
            test_config.validate()

    def test_invalid_log_level_raises(self, test_config):
        """異常系: 不正なLOG_LEVELの場合、ConfigurationErrorが発生する"""
        test_config.log_level = "VERBOSE"

        with pytest.raises(ConfigurationError) as exc_info:
            test_config.validate()

        assert "LOG_LEVEL" in str(exc_info.value)

    def test_valid_config_passes(self, test_config):
        """正常系: 有効な設定は例外を発生させない"""
        test_config.validate()
