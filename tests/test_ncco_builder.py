"""
NCCOBuilderのユニットテスト

NCCOBuilderクラスの各メソッドの動作を検証します。
"""

import pytest

from autocaller.ncco_builder import ERROR_TEXT, InputAction, NCCOBuilder, StreamAction, TalkAction


@pytest.fixture
def ncco_builder(test_config):
    """テスト用のNCCOBuilderインスタンスを作成"""
    return NCCOBuilder(test_config)


class TestNCCOActions:
    """NCCOアクションの辞書変換テスト"""

    def test_talk_action_to_dict(self):
        """TalkActionが正しく辞書に変換されることを確認"""
        talk = TalkAction(text="Hello", language="en-GB", style=2)

        assert talk.to_dict() == {
            "action": "talk",
            "text": "Hello",
            "language": "en-GB",
            "style": 2,
            "bargeIn": False,
        }

    def test_stream_action_to_dict(self):
        """StreamActionが正しく辞書に変換されることを確認"""
        stream = StreamAction(streamUrl=["https://example.com/audio/abc"])

        assert stream.to_dict() == {
            "action": "stream",
            "streamUrl": ["https://example.com/audio/abc"],
            "bargeIn": False,
        }

    def test_input_action_to_dict(self):
        """InputActionが音声入力の設定を含むことを確認"""
        action = InputAction(eventUrl=["https://example.com/webhooks/input"])

        assert action.to_dict() == {
            "action": "input",
            "type": ["speech"],
            "eventUrl": ["https://example.com/webhooks/input"],
            "eventMethod": "POST",
            "speech": {"language": "en-US", "endOnSilence": 2, "startTimeout": 10},
        }


class TestBuildTurnNCCO:
    """build_turn_ncco メソッドのテスト"""

    def test_talk_then_input(self, ncco_builder):
        """合成音声がない場合は talk と input を返す"""
        ncco = ncco_builder.build_turn_ncco("How can I help?", "call-1")

        assert [action["action"] for action in ncco] == ["talk", "input"]
        assert ncco[0]["text"] == "How can I help?"
        assert ncco[0]["language"] == "en-US"
        assert ncco[1]["eventUrl"] == ["https://example.com/webhooks/input?call_id=call-1"]
        assert ncco[1]["speech"]["endOnSilence"] == 2.0
        assert ncco[1]["speech"]["startTimeout"] == 10

    def test_stream_then_input(self, ncco_builder):
        """合成音声がある場合は stream と input を返す"""
        ncco = ncco_builder.build_turn_ncco(
            "How can I help?", "call-1", clip_url="https://example.com/audio/abc"
        )

        assert [action["action"] for action in ncco] == ["stream", "input"]
        assert ncco[0]["streamUrl"] == ["https://example.com/audio/abc"]

    def test_input_url_with_existing_query(self, ncco_builder, test_config):
        """入力URLに既にクエリがある場合は & で連結する"""
        test_config.input_url = "https://example.com/webhooks/input?tenant=a"

        ncco = ncco_builder.build_turn_ncco("Hi", "call-1")

        assert ncco[1]["eventUrl"] == ["https://example.com/webhooks/input?tenant=a&call_id=call-1"]


class TestClosingAndErrorNCCO:
    """build_closing_ncco / build_error_ncco のテスト"""

    def test_closing_has_no_input(self, ncco_builder):
        """終了用NCCOは入力を収集しない"""
        ncco = ncco_builder.build_closing_ncco("Goodbye!")

        assert ncco == [ncco_builder._build_talk_action("Goodbye!")]

    def test_closing_with_clip(self, ncco_builder):
        """終了用NCCOも合成音声を再生できる"""
        ncco = ncco_builder.build_closing_ncco("Goodbye!", clip_url="https://example.com/audio/abc")

        assert ncco[0]["action"] == "stream"
        assert len(ncco) == 1

    def test_error_ncco(self, ncco_builder):
        """エラー時のNCCOを確認"""
        ncco = ncco_builder.build_error_ncco()

        assert len(ncco) == 1
        assert ncco[0]["action"] == "talk"
        assert ncco[0]["text"] == ERROR_TEXT
