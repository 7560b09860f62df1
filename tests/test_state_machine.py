"""
通話状態機械のユニットテスト

遷移の正当性、イベントの冪等性、結果判定を検証します。
"""

from unittest.mock import Mock, patch

import pytest

from autocaller.events import EventKind, EventNormalizer, NormalizedEvent
from autocaller.models import SPEAKER_AI, SPEAKER_HUMAN, CallStatus, ConversationTurn
from autocaller.notifier import CallUpdateNotifier
from autocaller.state_machine import (
    MESSAGE_BUSY,
    MESSAGE_MACHINE,
    MESSAGE_SUCCESS,
    MESSAGE_UNCONFIRMED,
    CallNotFoundError,
    CallStateMachine,
    ConcurrentUpdateError,
    OutcomePolicy,
    failure_message,
    run_in_background,
    transition_path,
)
from autocaller.storage import SQLiteStorage


@pytest.fixture
def notifier():
    return CallUpdateNotifier()


@pytest.fixture
def machine(storage, notifier, clock):
    return CallStateMachine(storage, notifier=notifier, clock=clock)


@pytest.fixture
def published(notifier):
    """配信された通話レコードを記録する"""
    records = []
    original = notifier.publish

    def capture(record):
        records.append(record)
        original(record)

    notifier.publish = capture
    return records


def new_call(machine, goal="Book appointment"):
    return machine.create_call("Dr. Smith's Office", "+15551234567", goal, "")


def event(payload):
    return EventNormalizer().normalize(payload)


def conversation():
    return [
        ConversationTurn(speaker=SPEAKER_AI, text="Hello, I'd like to book an appointment."),
        ConversationTurn(speaker=SPEAKER_HUMAN, text="Sure, does Tuesday at 3 PM work?"),
        ConversationTurn(speaker=SPEAKER_AI, text="Tuesday at 3 PM works well."),
        ConversationTurn(speaker=SPEAKER_HUMAN, text="Great, you're scheduled for Tuesday."),
    ]


class TestTransitionPath:
    """transition_path のテスト"""

    @pytest.mark.parametrize("current,target,expected", [
        (CallStatus.PREPARING, CallStatus.DIALING, [CallStatus.DIALING]),
        (CallStatus.PREPARING, CallStatus.IN_PROGRESS, [CallStatus.DIALING, CallStatus.IN_PROGRESS]),
        (CallStatus.DIALING, CallStatus.COMPLETED, [CallStatus.IN_PROGRESS, CallStatus.COMPLETED]),
        (CallStatus.IN_PROGRESS, CallStatus.FAILED, [CallStatus.FAILED]),
        (CallStatus.IN_PROGRESS, CallStatus.DIALING, []),
        (CallStatus.DIALING, CallStatus.DIALING, []),
        (CallStatus.COMPLETED, CallStatus.FAILED, []),
        (CallStatus.FAILED, CallStatus.IN_PROGRESS, []),
    ])
    def test_paths(self, current, target, expected):
        """正規の遷移のみをたどることを確認"""
        assert transition_path(current, target) == expected

    def test_failure_message(self):
        """切断理由から失敗メッセージが決まることを確認"""
        assert failure_message("user_busy") == MESSAGE_BUSY
        assert failure_message("something_odd") == "call could not be connected"
        assert failure_message(None) == "call could not be connected"


class TestOutcomePolicy:
    """OutcomePolicy.evaluate のテスト"""

    def test_short_call_fails(self):
        """最小時間未満の通話は失敗"""
        result = OutcomePolicy().evaluate(
            "Book appointment", 10, "normal_clearing", "Person: You're scheduled."
        )

        assert result.success is False
        assert result.message == MESSAGE_UNCONFIRMED

    def test_negative_cause_fails(self):
        """否定的な切断理由は失敗"""
        result = OutcomePolicy().evaluate(
            "Book appointment", 60, "user_busy", "Person: You're scheduled."
        )

        assert result.success is False

    def test_positive_transcript_succeeds(self):
        """確認フレーズがあり確認用の閾値を超えれば成功"""
        result = OutcomePolicy().evaluate(
            "Book appointment", 40, "normal_clearing", "Person: You're scheduled for Tuesday."
        )

        assert result.success is True
        assert result.message == MESSAGE_SUCCESS
        assert result.sentiment == "positive"
        assert result.objectives_achieved == ["Book appointment"]

    def test_positive_transcript_too_short_fails(self):
        """確認フレーズがあっても確認用の閾値以下なら失敗"""
        result = OutcomePolicy().evaluate(
            "Book appointment", 18, "normal_clearing", "Person: You're scheduled."
        )

        assert result.success is False

    def test_mixed_transcript_fails(self):
        """否定的なフレーズも含む場合は失敗"""
        result = OutcomePolicy().evaluate(
            "Book appointment", 60, "normal_clearing",
            "Person: Monday is unavailable, but Tuesday is confirmed.",
        )

        assert result.success is False
        assert result.sentiment == "neutral"

    @pytest.mark.parametrize("goal,duration,expected", [
        ("Get information", 25, True),
        ("Book appointment", 40, False),
        ("Book appointment", 45, True),
        ("Request quote", 30, True),
        ("Request quote", 29, False),
    ])
    def test_goal_threshold_without_transcript(self, goal, duration, expected):
        """トランスクリプトがない場合は目的ごとの時間閾値で判定"""
        result = OutcomePolicy().evaluate(goal, duration, "normal_clearing", "")

        assert result.success is expected


class TestCallStateMachine:
    """CallStateMachine のテスト"""

    def test_create_call(self, machine, published):
        """preparing ステータスで作成され通知されることを確認"""
        record = new_call(machine)

        assert record.status == CallStatus.PREPARING
        assert record.result is None
        assert [r.status for r in published] == [CallStatus.PREPARING]

    def test_get_missing_call(self, machine):
        """存在しない通話は CallNotFoundError"""
        with pytest.raises(CallNotFoundError):
            machine.get("missing")

    def test_book_appointment_completes_successfully(self, machine, clock):
        """予約の会話が確認で終わると成功として完了する"""
        record = new_call(machine)
        machine.mark_dialing(record.id, "uuid-1")
        machine.apply_event(record.id, event({"status": "ringing", "uuid": "uuid-1"}))
        machine.apply_event(record.id, event({"status": "answered", "uuid": "uuid-1"}))
        machine.append_turns(record.id, conversation())
        clock.advance(42)

        final = machine.apply_event(
            record.id, event({"status": "completed", "uuid": "uuid-1", "duration": "40"})
        )

        assert final.status == CallStatus.COMPLETED
        assert final.duration == 40.0
        assert final.result.success is True
        assert final.result.message == MESSAGE_SUCCESS
        assert "scheduled for Tuesday" in final.result.transcript
        assert final.completed_at == clock.now
        assert final.answered_at is not None
        assert final.provider_call_id == "uuid-1"

    def test_busy_fails_with_message(self, machine):
        """話し中の場合は失敗となりメッセージが設定される"""
        record = new_call(machine, goal="Make reservation")
        machine.mark_dialing(record.id, "uuid-2")

        final = machine.apply_event(record.id, event({"status": "busy", "uuid": "uuid-2"}))

        assert final.status == CallStatus.FAILED
        assert final.result.success is False
        assert final.result.message == "recipient line was busy"
        assert final.completed_at is not None

    def test_duplicate_events_are_idempotent(self, machine):
        """同じイベントを再適用してもレコードは変わらない"""
        record = new_call(machine)
        machine.mark_dialing(record.id, "uuid-1")
        machine.apply_event(record.id, event({"status": "answered"}))
        completed = event({"status": "completed", "duration": "30"})

        first = machine.apply_event(record.id, completed)
        second = machine.apply_event(record.id, completed)

        assert second.revision == first.revision
        assert second.result == first.result

    def test_late_events_do_not_change_terminal_record(self, machine, published):
        """終端ステータスの後に届いたイベントは無視される"""
        record = new_call(machine)
        machine.mark_dialing(record.id)
        failed = machine.apply_event(record.id, event({"status": "busy"}))
        published.clear()

        for payload in ({"status": "answered"}, {"status": "completed"}, {"status": "ringing"}):
            machine.apply_event(record.id, event(payload))

        final = machine.get(record.id)
        assert final.status == CallStatus.FAILED
        assert final.revision == failed.revision
        assert published == []

    def test_out_of_order_ringing_after_answer(self, machine):
        """応答後に届いた ringing は状態を戻さない"""
        record = new_call(machine)
        machine.mark_dialing(record.id)
        machine.apply_event(record.id, event({"status": "answered"}))

        final = machine.apply_event(record.id, event({"status": "ringing"}))

        assert final.status == CallStatus.IN_PROGRESS

    def test_answer_before_dialing_walks_through_dialing(self, machine):
        """dialing を飛ばした応答でも正規の遷移をたどる"""
        record = new_call(machine)

        final = machine.mark_answered(record.id, "uuid-3")

        assert final.status == CallStatus.IN_PROGRESS
        assert final.answered_at is not None
        assert final.provider_call_id == "uuid-3"

    def test_provider_id_is_not_overwritten(self, machine):
        """Vonage通話UUIDは一度設定されたら上書きされない"""
        record = new_call(machine)
        machine.mark_dialing(record.id, "uuid-1")

        final = machine.mark_answered(record.id, "uuid-other")

        assert final.provider_call_id == "uuid-1"

    def test_abnormal_hangup_during_call(self, machine):
        """通話中の異常切断は失敗になる"""
        record = new_call(machine)
        machine.mark_answered(record.id)

        final = machine.apply_event(
            record.id, event({"status": "completed", "detail": "media_timeout"})
        )

        assert final.status == CallStatus.FAILED
        assert final.result.message == "call ended unexpectedly (media_timeout)"

    def test_hangup_while_dialing_completes_through_in_progress(self, machine):
        """dialing 中の正常切断は in-progress を経由して完了する"""
        record = new_call(machine)
        machine.mark_dialing(record.id)

        final = machine.apply_event(record.id, event({"status": "completed", "duration": "0"}))

        assert final.status == CallStatus.COMPLETED
        assert final.result.success is False
        assert final.answered_at is not None

    @pytest.mark.parametrize("detail, message", [
        ("unavailable", "recipient did not answer"),
        ("remote_busy", "recipient line was busy"),
        ("declined", "call was rejected by the recipient"),
        ("cancelled", "call was canceled before it connected"),
    ])
    def test_negative_hangup_while_dialing_fails(self, machine, clock, detail, message):
        """応答前に否定的な理由で終了した通話は failed になる"""
        record = new_call(machine)
        machine.mark_dialing(record.id, "uuid-1")
        clock.advance(30)

        final = machine.apply_event(
            record.id, event({"status": "completed", "uuid": "uuid-1", "detail": detail})
        )

        assert final.status == CallStatus.FAILED
        assert final.answered_at is None
        assert final.result.success is False
        assert final.result.message == message

    def test_negative_hangup_after_answer_completes(self, machine):
        """応答後の切断は理由が否定的でも completed として判定される"""
        record = new_call(machine)
        machine.mark_answered(record.id)

        final = machine.apply_event(
            record.id, event({"status": "completed", "detail": "remote_busy", "duration": "40"})
        )

        assert final.status == CallStatus.COMPLETED
        assert final.result.success is False

    def test_machine_detection_fails(self, machine):
        """留守番電話の検出は失敗になる"""
        record = new_call(machine)
        machine.mark_answered(record.id)

        final = machine.apply_event(record.id, event({"status": "machine"}))

        assert final.status == CallStatus.FAILED
        assert final.result.message == MESSAGE_MACHINE

    def test_unknown_event_returns_record(self, machine):
        """未知のイベントは何も変更しない"""
        record = new_call(machine)

        final = machine.apply_event(record.id, NormalizedEvent(kind=EventKind.UNKNOWN))

        assert final.revision == record.revision

    def test_duration_defaults_to_elapsed_time(self, machine, clock):
        """Vonage の通話時間がない場合は経過時間を使用する"""
        record = new_call(machine)
        machine.mark_answered(record.id)
        clock.advance(33)

        final = machine.complete(record.id)

        assert final.duration == 33.0

    def test_fail_respects_from_statuses(self, machine):
        """from_statuses に含まれないステータスでは遷移しない"""
        record = new_call(machine)
        machine.mark_answered(record.id)

        final = machine.fail(record.id, "timeout", from_statuses=(CallStatus.PREPARING,))

        assert final.status == CallStatus.IN_PROGRESS
        assert final.result is None

    def test_result_only_on_terminal_records(self, machine):
        """終端ステータスでないレコードには結果がない"""
        record = new_call(machine)

        for step in (machine.mark_dialing, machine.mark_answered):
            current = step(record.id)
            assert current.result is None
            assert current.completed_at is None

        final = machine.complete(record.id, duration=20)
        assert final.result is not None
        assert final.completed_at is not None

    def test_append_turns(self, machine):
        """会話ターンがトランスクリプトに追記される"""
        record = new_call(machine)
        machine.mark_answered(record.id)

        machine.append_turns(record.id, conversation()[:2])
        final = machine.append_turns(record.id, conversation()[2:])

        assert [t.text for t in final.turns()] == [t.text for t in conversation()]

    def test_append_turns_if_empty(self, machine):
        """if_empty の場合は既存のトランスクリプトがあれば追記しない"""
        record = new_call(machine)
        machine.mark_answered(record.id)
        machine.append_turns(record.id, conversation()[:1], if_empty=True)

        final = machine.append_turns(record.id, conversation()[:1], if_empty=True)

        assert len(final.turns()) == 1

    def test_append_turns_to_terminal_record_is_ignored(self, machine):
        """終端ステータスのレコードには追記しない"""
        record = new_call(machine)
        machine.mark_dialing(record.id)
        failed = machine.apply_event(record.id, event({"status": "busy"}))

        final = machine.append_turns(record.id, conversation())

        assert final.transcript == ""
        assert final.revision == failed.revision

    def test_summary_is_generated_once(self, storage, clock):
        """完了時に要約が一度だけ生成され結果に追記される"""
        summarizer = Mock()
        summarizer.summarize.return_value = "Appointment booked for Tuesday."
        tasks = []
        machine = CallStateMachine(
            storage, summarizer=summarizer, clock=clock, background_runner=tasks.append
        )
        record = new_call(machine)
        machine.mark_answered(record.id)
        machine.append_turns(record.id, conversation())

        completed = machine.complete(record.id, duration=40)
        machine.complete(record.id, duration=40)

        assert completed.status == CallStatus.COMPLETED
        assert completed.result.ai_summary is None
        summarizer.summarize.assert_not_called()
        assert len(tasks) == 1

        tasks[0]()

        final = machine.get(record.id)
        assert final.result.ai_summary == "Appointment booked for Tuesday."
        assert final.result.success is True
        assert final.completed_at == completed.completed_at
        summarizer.summarize.assert_called_once()

    def test_summary_failure_keeps_result(self, storage, clock):
        """要約の生成に失敗しても完了済みの結果は変わらない"""
        summarizer = Mock()
        summarizer.summarize.side_effect = RuntimeError("model exploded")
        tasks = []
        machine = CallStateMachine(
            storage, summarizer=summarizer, clock=clock, background_runner=tasks.append
        )
        record = new_call(machine)
        machine.mark_answered(record.id)
        machine.append_turns(record.id, conversation())
        completed = machine.complete(record.id, duration=40)

        tasks[0]()

        assert machine.get(record.id) == completed

    def test_no_summary_without_transcript(self, storage, clock):
        """会話がない通話では要約を予約しない"""
        summarizer = Mock()
        tasks = []
        machine = CallStateMachine(
            storage, summarizer=summarizer, clock=clock, background_runner=tasks.append
        )
        record = new_call(machine)
        machine.mark_answered(record.id)

        machine.complete(record.id, duration=40)

        assert tasks == []

    def test_default_runner_uses_daemon_thread(self):
        """デフォルトの実行関数はデーモンスレッドを起動する"""
        with patch("autocaller.state_machine.threading.Thread") as thread_class:
            task = Mock()
            run_in_background(task)

        thread_class.assert_called_once_with(target=task, daemon=True)
        thread_class.return_value.start.assert_called_once()

    def test_conflicting_write_is_retried(self, tmp_path, clock):
        """リビジョン競合時は読み直して再試行する"""
        storage = SQLiteStorage(str(tmp_path / "conflict.db"))
        machine = CallStateMachine(storage, clock=clock)
        record = new_call(machine)
        original = storage.update_call
        calls = []

        def racing_update(call_id, fields, expected_revision):
            calls.append(expected_revision)
            if len(calls) == 1:
                # 別の書き込みが先に完了した状態を作る
                original(call_id, {"provider_call_id": "uuid-race"}, expected_revision)
            return original(call_id, fields, expected_revision)

        storage.update_call = racing_update

        final = machine.mark_dialing(record.id)

        assert final.status == CallStatus.DIALING
        assert final.provider_call_id == "uuid-race"
        assert calls == [0, 1]

    def test_persistent_conflict_raises(self, storage, clock):
        """競合が解消しない場合は ConcurrentUpdateError"""
        machine = CallStateMachine(storage, clock=clock, max_conflict_retries=3)
        record = new_call(machine)
        storage.update_call = Mock(return_value=False)

        with pytest.raises(ConcurrentUpdateError):
            machine.mark_dialing(record.id)

        assert storage.update_call.call_count == 3
