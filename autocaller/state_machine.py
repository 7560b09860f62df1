"""
通話状態機械モジュール (Call State Machine Module)

通話ステータスの遷移を管理し、通話レコードの唯一の書き込み経路となります。

遷移:
    preparing -> dialing -> in-progress -> completed
    preparing / dialing / in-progress -> failed

終端ステータス (completed, failed) のレコードは変更されません。
重複・順序逆転したイベントはエラーにせず何もしません。
"""

import threading
import uuid
from dataclasses import replace
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

from .classifiers import SentimentClassifier, TranscriptOutcomeClassifier
from .conversation import CallSummarizer
from .events import (
    ABNORMAL_HANGUP_CAUSES,
    NEGATIVE_HANGUP_CAUSES,
    NORMAL_HANGUP_CAUSE,
    EventKind,
    NormalizedEvent,
)
from .logging_config import get_logger
from .models import (
    TERMINAL_STATUSES,
    CallRecord,
    CallResult,
    CallStatus,
    ConversationTurn,
    append_to_transcript,
    parse_transcript,
    utc_now,
)
from .notifier import CallUpdateNotifier
from .storage import Storage, StorageError

logger = get_logger(__name__)


class CallNotFoundError(Exception):
    """通話レコードが存在しない"""
    pass


class ConcurrentUpdateError(StorageError):
    """リビジョン競合が解消しなかった"""
    pass


LEGAL_TRANSITIONS = {
    CallStatus.PREPARING: (CallStatus.DIALING, CallStatus.FAILED),
    CallStatus.DIALING: (CallStatus.IN_PROGRESS, CallStatus.FAILED),
    CallStatus.IN_PROGRESS: (CallStatus.COMPLETED, CallStatus.FAILED),
    CallStatus.COMPLETED: (),
    CallStatus.FAILED: (),
}

_FORWARD_ORDER = (
    CallStatus.PREPARING,
    CallStatus.DIALING,
    CallStatus.IN_PROGRESS,
    CallStatus.COMPLETED,
)

_NOT_CONNECTED_STATUSES = frozenset({CallStatus.PREPARING, CallStatus.DIALING})

# 利用者向けの失敗メッセージ
MESSAGE_BUSY = "recipient line was busy"
MESSAGE_NO_ANSWER = "recipient did not answer"
MESSAGE_REJECTED = "call was rejected by the recipient"
MESSAGE_CANCELED = "call was canceled before it connected"
MESSAGE_NOT_CONNECTED = "call could not be connected"
MESSAGE_MACHINE = "answering machine detected"
MESSAGE_TIMEOUT = "call did not connect in time"
MESSAGE_GATEWAY_UNREACHABLE = "could not reach telephony service"
MESSAGE_SUCCESS = "Call completed successfully"
MESSAGE_UNCONFIRMED = "Call completed but objective may not have been achieved"

_CAUSE_MESSAGES = {
    "user_busy": MESSAGE_BUSY,
    "no_answer": MESSAGE_NO_ANSWER,
    "no_user_response": MESSAGE_NO_ANSWER,
    "call_rejected": MESSAGE_REJECTED,
    "originator_cancel": MESSAGE_CANCELED,
    "machine_detected": MESSAGE_MACHINE,
    "timeout": MESSAGE_TIMEOUT,
}


def failure_message(cause: Optional[str]) -> str:
    """切断理由から利用者向けの失敗メッセージを返す"""
    return _CAUSE_MESSAGES.get(cause or "", MESSAGE_NOT_CONNECTED)


def transition_path(current: str, target: str) -> List[str]:
    """
    current から target までに通過するステータスの列を返す

    状態を飛ばす前進イベント (preparing 中の answered など) は
    正規の遷移を順にたどります。遷移が不要・不正な場合は空リストを返します。
    """
    if current in TERMINAL_STATUSES or current == target:
        return []
    if target == CallStatus.FAILED:
        return [CallStatus.FAILED]
    if current not in _FORWARD_ORDER or target not in _FORWARD_ORDER:
        return []

    start = _FORWARD_ORDER.index(current)
    end = _FORWARD_ORDER.index(target)
    if end <= start:
        return []
    return list(_FORWARD_ORDER[start + 1:end + 1])


class OutcomePolicy:
    """
    通話結果の判定方針

    以下の順序で success を判定します。
      (a) 通話時間が最小値未満なら失敗
      (b) 切断理由が否定的なら失敗
      (c) トランスクリプトがある場合、肯定的な確認フレーズがあり否定的なフレーズがなく、
          通話時間が確認用の閾値を超えていれば成功
      (d) トランスクリプトがない場合、通話目的ごとの時間閾値で判定

    キーワードと通話時間による近似であり、短い成功通話や長い失敗通話を
    誤判定することがあります。
    """

    DEFAULT_GOAL_THRESHOLDS = (
        ("information", 20),
        ("appointment", 45),
        ("reservation", 45),
        ("consultation", 45),
    )

    def __init__(
        self,
        min_duration: float = 15,
        confirmed_duration: float = 20,
        default_threshold: float = 30,
        goal_thresholds: Sequence = DEFAULT_GOAL_THRESHOLDS,
        outcome_classifier: Optional[TranscriptOutcomeClassifier] = None,
        sentiment_classifier: Optional[SentimentClassifier] = None
    ):
        self.min_duration = min_duration
        self.confirmed_duration = confirmed_duration
        self.default_threshold = default_threshold
        self.goal_thresholds = tuple(goal_thresholds)
        self.outcome_classifier = outcome_classifier or TranscriptOutcomeClassifier()
        self.sentiment_classifier = sentiment_classifier or SentimentClassifier(
            self.outcome_classifier
        )

    def goal_threshold(self, call_goal: str) -> float:
        goal = (call_goal or "").lower()
        for keyword, threshold in self.goal_thresholds:
            if keyword in goal:
                return threshold
        return self.default_threshold

    def evaluate(
        self,
        call_goal: str,
        duration: float,
        hangup_cause: Optional[str],
        transcript: Optional[str],
        ai_summary: Optional[str] = None
    ) -> CallResult:
        """
        完了した通話の結果を判定

        Args:
            call_goal: 通話目的
            duration: 通話時間（秒）
            hangup_cause: 切断理由
            transcript: トランスクリプト
            ai_summary: 言語モデルによる要約

        Returns:
            CallResult
        """
        transcript = (transcript or "").strip()
        cause = hangup_cause or NORMAL_HANGUP_CAUSE

        if duration < self.min_duration:
            success = False
            details = f"Call lasted only {duration:.0f} seconds"
        elif cause in NEGATIVE_HANGUP_CAUSES:
            success = False
            details = f"Call ended with cause {cause}"
        elif transcript:
            outcome = self.outcome_classifier.classify(transcript)
            success = outcome == "positive" and duration > self.confirmed_duration
            if success:
                details = "Confirmation found in the conversation"
            elif outcome == "positive":
                details = f"Call lasted only {duration:.0f} seconds"
            else:
                details = "No confirmation found in the conversation"
        else:
            threshold = self.goal_threshold(call_goal)
            success = duration >= threshold
            details = (
                f"No transcript available; call lasted {duration:.0f} seconds "
                f"(goal threshold {threshold:.0f} seconds)"
            )

        sentiment = (
            self.sentiment_classifier.classify(transcript) if transcript else "neutral"
        )

        return CallResult(
            success=success,
            message=MESSAGE_SUCCESS if success else MESSAGE_UNCONFIRMED,
            details=details,
            transcript=transcript or None,
            ai_summary=ai_summary,
            sentiment=sentiment,
            objectives_achieved=[call_goal] if success else [],
        )


Mutation = Callable[[CallRecord], Optional[Dict[str, Any]]]


def run_in_background(task: Callable[[], None]) -> None:
    """task をデーモンスレッドで実行"""
    thread = threading.Thread(target=task, daemon=True)
    thread.start()


class CallStateMachine:
    """
    通話状態機械

    すべての書き込みはリビジョン番号による compare-and-swap で行い、
    競合した場合は読み直して再試行します。書き込み後は通知を配信します。
    """

    def __init__(
        self,
        storage: Storage,
        notifier: Optional[CallUpdateNotifier] = None,
        outcome_policy: Optional[OutcomePolicy] = None,
        summarizer: Optional[CallSummarizer] = None,
        clock: Callable[[], datetime] = utc_now,
        max_conflict_retries: int = 5,
        background_runner: Optional[Callable[[Callable[[], None]], None]] = None
    ):
        """
        CallStateMachineを初期化

        Args:
            storage: 通話レコードのストレージ
            notifier: 更新通知 (オプション)
            outcome_policy: 結果判定方針
            summarizer: 通話要約 (オプション)
            clock: 現在時刻を返す関数
            max_conflict_retries: リビジョン競合時の最大試行回数
            background_runner: 要約生成を実行する関数 (デフォルトはデーモンスレッド)
        """
        self.storage = storage
        self.notifier = notifier
        self.outcome_policy = outcome_policy or OutcomePolicy()
        self.summarizer = summarizer
        self.clock = clock
        self.max_conflict_retries = max_conflict_retries
        self.background_runner = background_runner or run_in_background

    def get(self, call_id: str) -> CallRecord:
        record = self.storage.get_call(call_id)
        if record is None:
            raise CallNotFoundError(call_id)
        return record

    def create_call(
        self,
        recipient_name: str,
        phone_number: str,
        call_goal: str,
        additional_context: str = ""
    ) -> CallRecord:
        """
        preparing ステータスの通話レコードを作成

        Returns:
            作成した通話レコード
        """
        record = CallRecord(
            id=str(uuid.uuid4()),
            recipient_name=recipient_name,
            phone_number=phone_number,
            call_goal=call_goal,
            additional_context=additional_context or "",
            status=CallStatus.PREPARING,
            created_at=self.clock(),
        )
        self.storage.insert_call(record)
        logger.info("call_created", call_id=record.id, call_goal=call_goal)
        self._publish(record)
        return record

    def mark_dialing(self, call_id: str, provider_call_id: Optional[str] = None) -> CallRecord:
        """発信要求の送信成功時に dialing へ遷移"""
        return self._transition(call_id, CallStatus.DIALING, provider_call_id=provider_call_id)

    def mark_answered(self, call_id: str, provider_call_id: Optional[str] = None) -> CallRecord:
        """応答時に in-progress へ遷移"""
        return self._transition(call_id, CallStatus.IN_PROGRESS, provider_call_id=provider_call_id)

    def complete(
        self,
        call_id: str,
        duration: Optional[float] = None,
        hangup_cause: Optional[str] = None
    ) -> CallRecord:
        """
        通話を completed へ遷移し、結果を判定

        要約は終端ステータスを書き込んだ後に background_runner で生成し、
        result.ai_summary だけを追記します。Webhook の応答は要約を待ちません。

        Args:
            call_id: 通話レコードID
            duration: Vonage が報告した通話時間（秒）
            hangup_cause: 切断理由

        Returns:
            更新後の通話レコード
        """
        written = {"completed": False}

        def mutate(current: CallRecord) -> Optional[Dict[str, Any]]:
            written["completed"] = False
            path = transition_path(current.status, CallStatus.COMPLETED)
            if not path:
                return None
            now = self.clock()
            elapsed = self._duration(current, now, duration)
            result = self.outcome_policy.evaluate(
                current.call_goal, elapsed, hangup_cause, current.transcript
            )
            fields = self._terminal_fields(current, CallStatus.COMPLETED, result, now, elapsed)
            self._log_path(current, path, hangup_cause=hangup_cause)
            written["completed"] = True
            return fields

        record = self._update(call_id, mutate)
        if written["completed"] and self.summarizer is not None and record.turns():
            self.background_runner(lambda: self._attach_summary(call_id))
        return record

    def _attach_summary(self, call_id: str) -> None:
        try:
            record = self.get(call_id)
            summary = self.summarizer.summarize(record.turns(), record.call_goal)
            if not summary:
                return

            def mutate(current: CallRecord) -> Optional[Dict[str, Any]]:
                if current.result is None or current.result.ai_summary:
                    return None
                return {"result": replace(current.result, ai_summary=summary)}

            self._update(call_id, mutate)
            logger.info("call_summary_attached", call_id=call_id)
        except Exception as e:
            logger.error(
                "call_summary_failed",
                call_id=call_id,
                error=str(e),
                exc_info=True
            )

    def fail(
        self,
        call_id: str,
        message: str,
        details: Optional[str] = None,
        duration: Optional[float] = None,
        hangup_cause: Optional[str] = None,
        from_statuses: Optional[Iterable[str]] = None
    ) -> CallRecord:
        """
        通話を failed へ遷移

        Args:
            call_id: 通話レコードID
            message: 利用者向けの失敗メッセージ
            details: 補足説明
            duration: Vonage が報告した通話時間（秒）
            hangup_cause: 切断理由
            from_statuses: 指定した場合、現在のステータスがこれらのいずれかの時のみ遷移

        Returns:
            更新後の通話レコード
        """
        allowed = frozenset(from_statuses) if from_statuses is not None else None

        def mutate(current: CallRecord) -> Optional[Dict[str, Any]]:
            if allowed is not None and current.status not in allowed:
                return None
            path = transition_path(current.status, CallStatus.FAILED)
            if not path:
                return None
            now = self.clock()
            elapsed = self._duration(current, now, duration)
            transcript = current.transcript.strip()
            result = CallResult(
                success=False,
                message=message,
                details=details,
                transcript=transcript or None,
                sentiment=(
                    self.outcome_policy.sentiment_classifier.classify(transcript)
                    if transcript else "neutral"
                ),
            )
            fields = self._terminal_fields(current, CallStatus.FAILED, result, now, elapsed)
            self._log_path(current, path, hangup_cause=hangup_cause, message=message)
            return fields

        return self._update(call_id, mutate)

    def apply_event(self, call_id: str, event: NormalizedEvent) -> CallRecord:
        """
        正規化されたイベントを通話レコードに適用

        同じイベントを何度適用しても結果は変わりません。

        Args:
            call_id: 通話レコードID
            event: 正規化されたイベント

        Returns:
            更新後の通話レコード
        """
        if event.kind == EventKind.STATUS and event.target_status:
            return self._transition(
                call_id, event.target_status, provider_call_id=event.provider_call_id
            )

        if event.kind == EventKind.HANGUP:
            cause = event.hangup_cause or NORMAL_HANGUP_CAUSE
            record = self.get(call_id)
            if cause in NEGATIVE_HANGUP_CAUSES and record.status in _NOT_CONNECTED_STATUSES:
                # 応答前に否定的な理由で終了した通話は completed にしない
                record = self.fail(
                    call_id, failure_message(cause), details=f"Hangup cause: {cause}",
                    duration=event.duration, hangup_cause=cause,
                    from_statuses=_NOT_CONNECTED_STATUSES,
                )
                if record.is_terminal:
                    return record
            if cause in ABNORMAL_HANGUP_CAUSES:
                if record.status == CallStatus.IN_PROGRESS:
                    message = f"call ended unexpectedly ({cause})"
                else:
                    message = failure_message(cause)
                return self.fail(
                    call_id, message, details=f"Hangup cause: {cause}",
                    duration=event.duration, hangup_cause=cause,
                )
            return self.complete(call_id, duration=event.duration, hangup_cause=cause)

        if event.kind == EventKind.NEGATIVE:
            return self.fail(
                call_id,
                failure_message(event.hangup_cause),
                details=f"Provider status: {event.raw_status}",
                duration=event.duration,
                hangup_cause=event.hangup_cause,
            )

        if event.kind == EventKind.MACHINE_DETECTED:
            return self.fail(
                call_id,
                MESSAGE_MACHINE,
                details="Voicemail or answering machine answered the call",
                hangup_cause="machine_detected",
            )

        return self.get(call_id)

    def append_turns(
        self,
        call_id: str,
        turns: List[ConversationTurn],
        if_empty: bool = False
    ) -> CallRecord:
        """
        トランスクリプトに会話ターンを追記

        終端ステータスのレコードには追記しません。

        Args:
            call_id: 通話レコードID
            turns: 追記する会話ターン
            if_empty: True の場合、トランスクリプトが空の時のみ追記

        Returns:
            更新後の通話レコード
        """
        if not turns:
            return self.get(call_id)

        def mutate(current: CallRecord) -> Optional[Dict[str, Any]]:
            if current.is_terminal:
                logger.warning("transcript_append_ignored", call_id=call_id, status=current.status)
                return None
            if if_empty and parse_transcript(current.transcript):
                return None
            return {"transcript": append_to_transcript(current.transcript, turns)}

        return self._update(call_id, mutate)

    def _transition(
        self,
        call_id: str,
        target: str,
        provider_call_id: Optional[str] = None
    ) -> CallRecord:
        def mutate(current: CallRecord) -> Optional[Dict[str, Any]]:
            fields: Dict[str, Any] = {}
            if provider_call_id and not current.provider_call_id and not current.is_terminal:
                fields["provider_call_id"] = provider_call_id

            path = transition_path(current.status, target)
            if path:
                fields["status"] = path[-1]
                if CallStatus.IN_PROGRESS in path and current.answered_at is None:
                    fields["answered_at"] = self.clock()
                self._log_path(current, path)
            return fields or None

        return self._update(call_id, mutate)

    def _update(self, call_id: str, mutate: Mutation) -> CallRecord:
        for attempt in range(1, self.max_conflict_retries + 1):
            record = self.get(call_id)
            fields = mutate(record)
            if not fields:
                return record

            if self.storage.update_call(call_id, fields, record.revision):
                updated = self.get(call_id)
                self._publish(updated)
                return updated

            logger.debug(
                "call_update_conflict",
                call_id=call_id,
                revision=record.revision,
                attempt=attempt,
            )

        raise ConcurrentUpdateError(
            f"Call {call_id} could not be updated after {self.max_conflict_retries} attempts"
        )

    def _duration(
        self,
        record: CallRecord,
        now: datetime,
        provider_duration: Optional[float]
    ) -> float:
        if provider_duration is not None:
            return max(0.0, float(provider_duration))
        return max(0.0, (now - record.created_at).total_seconds())

    @staticmethod
    def _terminal_fields(
        record: CallRecord,
        status: str,
        result: CallResult,
        now: datetime,
        duration: float
    ) -> Dict[str, Any]:
        fields: Dict[str, Any] = {
            "status": status,
            "result": result,
            "completed_at": now,
            "duration": duration,
        }
        if status == CallStatus.COMPLETED and record.answered_at is None:
            fields["answered_at"] = now
        return fields

    def _log_path(self, record: CallRecord, path: List[str], **extra: Any) -> None:
        previous = record.status
        for status in path:
            logger.info(
                "call_status_transition",
                call_id=record.id,
                from_status=previous,
                to_status=status,
                **extra,
            )
            previous = status

    def _publish(self, record: CallRecord) -> None:
        if self.notifier is not None:
            self.notifier.publish(record)
