"""
エラー処理・リトライモジュール (Error Handling and Retry Module)

外部サービス呼び出しのエラー分類、指数バックオフによるリトライ、
直近のエラーから算出するヘルス状態を提供します。
"""

import threading
import time
from collections import deque
from datetime import datetime, timedelta
from typing import Any, Callable, Deque, Dict, List, Optional, Sequence, TypeVar

import requests

from .logging_config import get_logger
from .models import ErrorLogEntry, utc_now

logger = get_logger(__name__)

T = TypeVar("T")


class ErrorType:
    """エラー分類"""
    NETWORK = "network"
    API = "api"
    VOICE = "voice"
    AI = "ai"
    TIMEOUT = "timeout"
    UNKNOWN = "unknown"


class ExternalServiceError(Exception):
    """
    外部サービスエラー

    Attributes:
        message: エラーメッセージ
        error_type: エラー分類 (ErrorType)
        status_code: HTTPステータスコード (オプション)
        details: 追加の詳細情報 (オプション)
    """

    default_type = ErrorType.UNKNOWN

    def __init__(
        self,
        message: str,
        error_type: Optional[str] = None,
        status_code: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message)
        self.message = message
        self.error_type = error_type or self.default_type
        self.status_code = status_code
        self.details = details or {}
        self.recovery_hint: Optional[str] = None


class VonageAPIError(ExternalServiceError):
    """Vonage API エラー"""
    default_type = ErrorType.API


class LanguageModelError(ExternalServiceError):
    """言語モデル呼び出しエラー"""
    default_type = ErrorType.AI


class SpeechSynthesisError(ExternalServiceError):
    """音声合成エラー"""
    default_type = ErrorType.VOICE


# API エラーの種類ごとの復旧ヒント
RECOVERY_HINTS = {
    "rate_limit": "Rate limit reached. Wait before sending more requests.",
    "auth": "Authentication failed. Check the API credentials.",
    "quota": "Quota exceeded. Check the account billing and plan limits.",
}

# 健全性判定の対象ウィンドウと閾値
HEALTH_WINDOW = timedelta(minutes=5)
HEALTH_ERROR_THRESHOLD = 3


def _status_code_of(error: BaseException) -> Optional[int]:
    status = getattr(error, "status_code", None)
    if status is None:
        response = getattr(error, "response", None)
        status = getattr(response, "status_code", None)
    return status if isinstance(status, int) else None


def api_error_signature(error: BaseException) -> Optional[str]:
    """
    API エラーのシグネチャを判定

    Args:
        error: 発生した例外

    Returns:
        "rate_limit", "auth", "quota" のいずれか。該当しない場合はNone
    """
    status = _status_code_of(error)
    text = str(error).lower()

    if status == 429 or "rate limit" in text or "too many requests" in text:
        return "rate_limit"
    if status == 401 or "unauthorized" in text or "authentication" in text:
        return "auth"
    if "quota" in text or "billing" in text:
        return "quota"
    return None


class ErrorReporter:
    """
    エラーレポーター

    エラーログのリングバッファを保持し、リトライ方針とヘルス判定を提供します。
    各コンポーネントにインスタンスとして注入して使用します。
    """

    def __init__(
        self,
        max_entries: int = 100,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = utc_now
    ):
        """
        ErrorReporterを初期化

        Args:
            max_entries: リングバッファに保持するエントリ数
            sleep: リトライ待機に使用する関数
            clock: 現在時刻を返す関数
        """
        self._entries: Deque[ErrorLogEntry] = deque(maxlen=max_entries)
        self._lock = threading.Lock()
        self._sleep = sleep
        self._clock = clock

    def log_error(
        self,
        error_type: str,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        recovered: bool = False,
        recovery_action: Optional[str] = None
    ) -> ErrorLogEntry:
        """
        エラーを記録

        Args:
            error_type: エラー分類
            message: エラーメッセージ
            details: 詳細情報
            recovered: 復旧済みか
            recovery_action: 実施した復旧アクション

        Returns:
            記録したエントリ
        """
        entry = ErrorLogEntry(
            timestamp=self._clock(),
            type=error_type,
            message=message,
            details=details,
            recovered=recovered,
            recovery_action=recovery_action,
        )
        with self._lock:
            self._entries.append(entry)

        log = logger.info if recovered else logger.warning
        log(
            "error_logged",
            error_type=error_type,
            message=message,
            recovered=recovered,
            recovery_action=recovery_action,
            details=details,
        )
        return entry

    def classify_exception(self, error: BaseException) -> str:
        """例外をエラー分類に変換"""
        if isinstance(error, (requests.Timeout, TimeoutError)):
            return ErrorType.TIMEOUT
        if isinstance(error, (requests.ConnectionError, ConnectionError)):
            return ErrorType.NETWORK
        if isinstance(error, ExternalServiceError):
            return error.error_type
        if isinstance(error, requests.RequestException):
            return ErrorType.API
        return ErrorType.UNKNOWN

    def retry_with_backoff(
        self,
        operation: Callable[[], T],
        error_type: Optional[str] = None,
        operation_name: str = "operation",
        max_attempts: int = 3,
        delays: Sequence[float] = (1, 2, 4),
        should_retry: Optional[Callable[[BaseException], bool]] = None
    ) -> T:
        """
        指数バックオフでオペレーションをリトライ

        失敗ごとに未復旧のエントリを記録して待機し、最大 max_attempts 回まで
        実行します。最後の失敗は "failed after N attempts" を記録して再送出します。
        リトライ後に成功した場合は復旧済みのエントリを1件記録します。

        Args:
            operation: 実行するオペレーション
            error_type: 記録時のエラー分類 (省略時は例外から判定)
            operation_name: ログ用のオペレーション名
            max_attempts: 最大試行回数
            delays: 各試行後の待機秒数
            should_retry: False を返した例外はリトライせず即座に再送出

        Returns:
            オペレーションの戻り値

        Raises:
            Exception: 最後の試行で発生した例外
        """
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

        last_type = error_type or ErrorType.UNKNOWN
        for attempt in range(1, max_attempts + 1):
            try:
                result = operation()
            except Exception as e:
                last_type = error_type or self.classify_exception(e)
                details = {
                    "operation": operation_name,
                    "attempt": attempt,
                    "error": str(e),
                }
                retryable = should_retry is None or should_retry(e)
                if attempt >= max_attempts or not retryable:
                    self.log_error(
                        last_type,
                        f"{operation_name} failed after {attempt} attempts: {e}",
                        details=details,
                    )
                    raise

                delay = delays[min(attempt - 1, len(delays) - 1)] if delays else 0
                self.log_error(
                    last_type,
                    f"{operation_name} failed, retrying in {delay}s: {e}",
                    details=details,
                )
                self._sleep(delay)
                continue

            if attempt > 1:
                self.log_error(
                    last_type,
                    f"{operation_name} succeeded after {attempt - 1} retries",
                    details={"operation": operation_name, "attempts": attempt},
                    recovered=True,
                    recovery_action="retry",
                )
            return result

        # range が空になることはない
        raise RuntimeError("unreachable")

    def handle_api_error(
        self,
        operation: Callable[[], T],
        api_name: str,
        fallback: Optional[Callable[[], T]] = None,
        **retry_options: Any
    ) -> T:
        """
        API 呼び出しをリトライし、失敗時は復旧ヒントを付与

        レート制限・認証・クォータのシグネチャを判定してヒントを記録します。
        試行回数は変更しません。認証・クォータ以外の失敗でフォールバックが
        指定されている場合はフォールバックの結果を返します。

        Args:
            operation: 実行する API 呼び出し
            api_name: ログ用の API 名
            fallback: 失敗時のフォールバック (オプション)
            **retry_options: retry_with_backoff に渡す追加オプション

        Returns:
            API 呼び出しまたはフォールバックの戻り値

        Raises:
            Exception: フォールバックがない場合、または認証・クォータエラーの場合
        """
        retry_options.setdefault("error_type", ErrorType.API)
        try:
            return self.retry_with_backoff(
                operation, operation_name=api_name, **retry_options
            )
        except Exception as e:
            signature = api_error_signature(e)
            if signature is not None:
                hint = RECOVERY_HINTS[signature]
                if isinstance(e, ExternalServiceError):
                    e.recovery_hint = hint
                logger.warning(
                    "api_error_recovery_hint",
                    api_name=api_name,
                    signature=signature,
                    hint=hint,
                )

            if fallback is None or signature in ("auth", "quota"):
                raise

            result = fallback()
            self.log_error(
                retry_options["error_type"],
                f"{api_name} failed, fallback used",
                details={"error": str(e)},
                recovered=True,
                recovery_action="fallback",
            )
            return result

    def is_system_healthy(self) -> bool:
        """
        システムの健全性を判定

        直近5分間の未復旧 network / api エラーが3件を超える場合は False を返します。
        呼び出しを遮断するものではなく、状態の報告のみを行います。
        """
        cutoff = self._clock() - HEALTH_WINDOW
        with self._lock:
            recent_failures = [
                entry for entry in self._entries
                if not entry.recovered
                and entry.type in (ErrorType.NETWORK, ErrorType.API)
                and entry.timestamp >= cutoff
            ]
        return len(recent_failures) <= HEALTH_ERROR_THRESHOLD

    def get_entries(self) -> List[ErrorLogEntry]:
        with self._lock:
            return list(self._entries)

    def get_error_summary(self, recent: int = 10) -> Dict[str, Any]:
        """
        エラーの集計を取得

        Returns:
            total, by_type, recovered, unrecovered, recent を含む辞書
        """
        entries = self.get_entries()
        by_type: Dict[str, int] = {}
        for entry in entries:
            by_type[entry.type] = by_type.get(entry.type, 0) + 1
        recovered = sum(1 for entry in entries if entry.recovered)

        return {
            "total": len(entries),
            "by_type": by_type,
            "recovered": recovered,
            "unrecovered": len(entries) - recovered,
            "recent": [entry.to_dict() for entry in (entries[-recent:] if recent > 0 else [])],
        }

    def user_friendly_message(self, entry: ErrorLogEntry) -> str:
        """オペレーター向けのエラーメッセージを生成"""
        messages = {
            ErrorType.NETWORK: "Could not connect to an external service. Check the network connection.",
            ErrorType.API: "An external service returned an error.",
            ErrorType.VOICE: "Voice synthesis is unavailable. The default voice was used.",
            ErrorType.AI: "AI service unavailable. A fallback response was used.",
            ErrorType.TIMEOUT: "The operation took too long to complete.",
        }
        message = messages.get(entry.type, "An unexpected error occurred.")

        if entry.type == ErrorType.API:
            signature = api_error_signature(Exception(entry.message))
            if signature is not None:
                message = f"{message} {RECOVERY_HINTS[signature]}"

        if entry.recovered:
            message = f"{message} The system recovered automatically."
        return message

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
