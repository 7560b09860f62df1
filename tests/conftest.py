"""
共通テストフィクスチャ (Shared Test Fixtures)
"""

from datetime import datetime, timedelta, timezone

import pytest

from autocaller.config import Config
from autocaller.errors import ErrorReporter
from autocaller.storage import SQLiteStorage


class FakeClock:
    """テスト用の手動で進める時計"""

    def __init__(self, start: datetime = datetime(2026, 3, 2, 9, 0, 0, tzinfo=timezone.utc)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


@pytest.fixture
def clock():
    """テスト用の時計"""
    return FakeClock()


@pytest.fixture
def reporter(clock):
    """待機しないエラーレポーター"""
    sleeps = []
    reporter = ErrorReporter(sleep=sleeps.append, clock=clock)
    reporter.sleeps = sleeps
    return reporter


@pytest.fixture
def storage(tmp_path):
    """テスト用のSQLiteStorageインスタンス"""
    return SQLiteStorage(str(tmp_path / "test.db"))


@pytest.fixture
def test_config(tmp_path):
    """テスト用の設定を作成"""
    return Config(
        vonage_application_id="test_app_id",
        vonage_private_key_path="/path/to/private.key",
        vonage_from_number="+15550001111",
        webhook_base_url="https://example.com",
        answer_url="https://example.com/webhooks/answer",
        event_url="https://example.com/webhooks/event",
        input_url="https://example.com/webhooks/input",
        audio_base_url="https://example.com/audio",
        log_level="DEBUG",
        database_path=str(tmp_path / "calls.db"),
        audio_clip_dir=str(tmp_path / "clips"),
    )
