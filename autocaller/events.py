"""
通話イベント正規化モジュール (Call Event Normalizer Module)

Vonage Voice API の Webhook ペイロードを内部のイベント表現に変換します。
未知のステータスはエラーにせず、unknown として扱います。
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

from .logging_config import get_logger
from .models import CallStatus

logger = get_logger(__name__)


class EventKind:
    """正規化後のイベント種別"""
    STATUS = "status"
    MACHINE_DETECTED = "machine_detected"
    HANGUP = "hangup"
    NEGATIVE = "negative"
    NO_CHANGE = "no_change"
    UNKNOWN = "unknown"


NORMAL_HANGUP_CAUSE = "normal_clearing"

# 通話中に発生した場合に異常終了とみなす切断理由
ABNORMAL_HANGUP_CAUSES = frozenset({
    "call_failed",
    "failed",
    "network_error",
    "media_timeout",
    "destination_out_of_order",
    "normal_temporary_failure",
    "recovery_on_timer_expire",
    "unallocated_number",
    "invalid_number",
    "restricted",
})

# 通話目的を達成していないとみなす切断理由
NEGATIVE_HANGUP_CAUSES = ABNORMAL_HANGUP_CAUSES | frozenset({
    "user_busy",
    "call_rejected",
    "no_answer",
    "no_user_response",
    "originator_cancel",
    "machine_detected",
    "timeout",
})

# 接続前に終了した Vonage ステータスと切断理由の対応
_NEGATIVE_STATUS_CAUSES = {
    "busy": "user_busy",
    "cancelled": "originator_cancel",
    "failed": "call_failed",
    "rejected": "call_rejected",
    "timeout": "no_answer",
    "unanswered": "no_answer",
}

_PROGRESS_STATUSES = {
    "started": CallStatus.DIALING,
    "ringing": CallStatus.DIALING,
    "answered": CallStatus.IN_PROGRESS,
}

# Vonage の detail 値のうち切断理由として扱うもの
_DETAIL_CAUSES = {
    "ok": NORMAL_HANGUP_CAUSE,
    "remote_busy": "user_busy",
    "declined": "call_rejected",
    "unavailable": "no_answer",
    "cancelled": "originator_cancel",
}


@dataclass
class NormalizedEvent:
    """
    正規化されたイベント

    Attributes:
        kind: イベント種別 (EventKind)
        provider_call_id: Vonage通話UUID
        target_status: 遷移先ステータス (STATUS の場合)
        hangup_cause: 切断理由
        duration: 通話時間（秒）
        speech_text: 認識された発話
        confidence: 認識の信頼度
        machine_result: 留守番電話検出結果 (machine / human)
        raw_status: 元の Vonage ステータス
    """
    kind: str
    provider_call_id: Optional[str] = None
    target_status: Optional[str] = None
    hangup_cause: Optional[str] = None
    duration: Optional[float] = None
    speech_text: Optional[str] = None
    confidence: Optional[float] = None
    machine_result: Optional[str] = None
    raw_status: Optional[str] = None


def _parse_number(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if number >= 0 else None


def _hangup_cause(payload: Dict[str, Any], default: str) -> str:
    for key in ("hangup_cause", "detail", "reason"):
        value = payload.get(key)
        if isinstance(value, str) and value.strip():
            cause = value.strip().lower()
            return _DETAIL_CAUSES.get(cause, cause)
    return default


class EventNormalizer:
    """
    Vonage イベント正規化

    ステータス語彙に対する全域関数として実装されています。
    """

    def normalize(self, payload: Dict[str, Any]) -> NormalizedEvent:
        """
        Vonage イベントペイロードを正規化

        Args:
            payload: Webhook の JSON ペイロード

        Returns:
            NormalizedEvent
        """
        payload = payload or {}
        raw_status = str(payload.get("status") or "").strip().lower()
        provider_call_id = payload.get("uuid")
        duration = _parse_number(payload.get("duration"))

        if raw_status in _PROGRESS_STATUSES:
            return NormalizedEvent(
                kind=EventKind.STATUS,
                provider_call_id=provider_call_id,
                target_status=_PROGRESS_STATUSES[raw_status],
                raw_status=raw_status,
            )

        if raw_status == "machine":
            return NormalizedEvent(
                kind=EventKind.MACHINE_DETECTED,
                provider_call_id=provider_call_id,
                target_status=CallStatus.FAILED,
                hangup_cause="machine_detected",
                machine_result="machine",
                raw_status=raw_status,
            )

        if raw_status == "human":
            return NormalizedEvent(
                kind=EventKind.NO_CHANGE,
                provider_call_id=provider_call_id,
                machine_result="human",
                raw_status=raw_status,
            )

        if raw_status == "completed":
            return NormalizedEvent(
                kind=EventKind.HANGUP,
                provider_call_id=provider_call_id,
                hangup_cause=_hangup_cause(payload, NORMAL_HANGUP_CAUSE),
                duration=duration,
                raw_status=raw_status,
            )

        if raw_status in _NEGATIVE_STATUS_CAUSES:
            default_cause = _NEGATIVE_STATUS_CAUSES[raw_status]
            cause = default_cause
            if raw_status == "failed":
                cause = _hangup_cause(payload, default_cause)
            return NormalizedEvent(
                kind=EventKind.NEGATIVE,
                provider_call_id=provider_call_id,
                target_status=CallStatus.FAILED,
                hangup_cause=cause,
                duration=duration,
                raw_status=raw_status,
            )

        logger.info(
            "webhook_event_ignored",
            status=raw_status or None,
            provider_call_id=provider_call_id,
        )
        return NormalizedEvent(
            kind=EventKind.UNKNOWN,
            provider_call_id=provider_call_id,
            raw_status=raw_status or None,
        )


def normalize_speech(payload: Dict[str, Any]) -> Tuple[str, Optional[float]]:
    """
    input アクションのコールバックから認識結果を取り出す

    信頼度が最も高い結果を採用します。信頼度が文字列の場合も受け付けます。

    Args:
        payload: Webhook の JSON ペイロード

    Returns:
        (認識テキスト, 信頼度) のタプル。結果がない場合は ("", None)
    """
    speech = (payload or {}).get("speech") or {}
    results = speech.get("results") if isinstance(speech, dict) else None
    if not isinstance(results, list):
        return "", None

    best_text = ""
    best_confidence: Optional[float] = None
    for result in results:
        if not isinstance(result, dict):
            continue
        text = str(result.get("text") or "").strip()
        if not text:
            continue
        confidence = _parse_number(result.get("confidence"))
        if confidence is not None:
            confidence = min(confidence, 1.0)
        if not best_text or (confidence or 0.0) > (best_confidence or 0.0):
            best_text = text
            best_confidence = confidence

    return best_text, best_confidence


def provider_status_to_call_status(status: Optional[str]) -> Optional[str]:
    """
    Vonage ステータスを内部ステータスに変換

    照合用の保守的な対応です。判定できない場合はNoneを返します。
    """
    raw = (status or "").strip().lower()
    if raw in _PROGRESS_STATUSES:
        return _PROGRESS_STATUSES[raw]
    if raw in ("machine", "human"):
        return CallStatus.IN_PROGRESS
    if raw == "completed":
        return CallStatus.COMPLETED
    if raw in _NEGATIVE_STATUS_CAUSES:
        return CallStatus.FAILED
    return None
