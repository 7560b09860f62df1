"""
データモデルとトランスクリプト直列化のテスト
"""

from datetime import datetime, timezone

import pytest

from autocaller.models import (
    SPEAKER_AI,
    SPEAKER_HUMAN,
    CallRecord,
    CallResult,
    CallStatus,
    ConversationTurn,
    append_to_transcript,
    format_transcript,
    parse_transcript,
)


class TestTranscriptFormat:
    """format_transcript / parse_transcript のテスト"""

    def test_format_uses_speaker_labels(self):
        """話者ラベル付きの1ターン1行で出力されることを確認"""
        turns = [
            ConversationTurn(speaker=SPEAKER_AI, text="Hello, this is an assistant."),
            ConversationTurn(speaker=SPEAKER_HUMAN, text="Hi there."),
        ]

        assert format_transcript(turns) == (
            "Assistant: Hello, this is an assistant.\nPerson: Hi there."
        )

    def test_round_trip_preserves_speaker_and_text(self):
        """整形して再解析すると (話者, テキスト) の列が一致することを確認"""
        turns = [
            ConversationTurn(speaker=SPEAKER_AI, text="Good morning, I'd like to book an appointment."),
            ConversationTurn(speaker=SPEAKER_HUMAN, text="Sure: what day works for you?"),
            ConversationTurn(speaker=SPEAKER_AI, text="Tuesday at 3 PM, if possible."),
            ConversationTurn(speaker=SPEAKER_HUMAN, text="You're scheduled for Tuesday."),
        ]

        parsed = parse_transcript(format_transcript(turns))

        assert [(t.speaker, t.text) for t in parsed] == [(t.speaker, t.text) for t in turns]

    def test_newlines_inside_text_are_collapsed(self):
        """テキスト内の改行が空白にまとめられることを確認"""
        turns = [ConversationTurn(speaker=SPEAKER_HUMAN, text="first line\nsecond line")]

        parsed = parse_transcript(format_transcript(turns))

        assert len(parsed) == 1
        assert parsed[0].text == "first line second line"

    def test_parse_ignores_unlabeled_lines(self):
        """話者ラベルのない行が無視されることを確認"""
        text = "Assistant: Hello\nstatic noise\nOperator: ignored\nPerson: Hi"

        parsed = parse_transcript(text)

        assert [(t.speaker, t.text) for t in parsed] == [
            (SPEAKER_AI, "Hello"),
            (SPEAKER_HUMAN, "Hi"),
        ]

    def test_parse_empty_transcript(self):
        """空のトランスクリプトは空リストになることを確認"""
        assert parse_transcript("") == []
        assert parse_transcript(None) == []

    def test_format_rejects_unknown_speaker(self):
        """未知の話者は ValueError になることを確認"""
        with pytest.raises(ValueError):
            format_transcript([ConversationTurn(speaker="robot", text="beep")])

    def test_append_to_transcript(self):
        """既存のトランスクリプトに追記されることを確認"""
        result = append_to_transcript(
            "Assistant: Hello",
            [ConversationTurn(speaker=SPEAKER_HUMAN, text="Hi")],
        )

        assert result == "Assistant: Hello\nPerson: Hi"
        assert append_to_transcript("", [ConversationTurn(speaker=SPEAKER_AI, text="Hey")]) == "Assistant: Hey"


class TestCallRecord:
    """CallRecord のテスト"""

    def test_to_dict_serializes_result_and_dates(self):
        """to_dict が結果と日時を JSON 互換に変換することを確認"""
        created = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)
        record = CallRecord(
            id="call-1",
            recipient_name="Dr. Smith's Office",
            phone_number="+15551234567",
            call_goal="Book appointment",
            additional_context="",
            status=CallStatus.COMPLETED,
            created_at=created,
            completed_at=created,
            result=CallResult(success=True, message="Call completed successfully"),
            duration=40.0,
        )

        data = record.to_dict()

        assert data["status"] == "completed"
        assert data["created_at"] == "2026-03-02T09:00:00+00:00"
        assert data["result"]["success"] is True
        assert data["result"]["objectives_achieved"] == []
        assert record.is_terminal is True

    def test_call_result_from_dict(self):
        """CallResult.from_dict が辞書から復元することを確認"""
        result = CallResult.from_dict({
            "success": False,
            "message": "recipient line was busy",
            "sentiment": "neutral",
        })

        assert result.success is False
        assert result.message == "recipient line was busy"
        assert result.objectives_achieved == []
