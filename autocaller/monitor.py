"""
タイムアウト・照合モニターモジュール (Timeout and Reconciliation Monitor Module)

接続待ちのまま停止した通話を failed に遷移させ、
ローカルの通話レコードと Vonage の通話一覧の差異を報告します。
"""

import threading
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from .errors import ErrorReporter
from .events import provider_status_to_call_status
from .logging_config import get_logger
from .models import CallRecord, CallStatus, utc_now
from .state_machine import MESSAGE_TIMEOUT, CallStateMachine
from .storage import Storage
from .telephony import VonageClient

logger = get_logger(__name__)


PENDING_STATUSES = (CallStatus.PREPARING, CallStatus.DIALING)


class TimeoutMonitor:
    """
    接続タイムアウトの監視

    通話作成時に一度だけの遅延チェックを予約し (eager)、
    通話レコードの読み取り時にも再チェックします (lazy)。
    予約したチェックが実行されなかった場合も読み取り時に回復します。
    """

    def __init__(
        self,
        storage: Storage,
        state_machine: CallStateMachine,
        timeout_seconds: float = 120,
        clock: Callable[[], datetime] = utc_now,
        timer_factory: Callable[..., threading.Timer] = threading.Timer
    ):
        """
        TimeoutMonitorを初期化

        Args:
            storage: 通話レコードのストレージ
            state_machine: 通話状態機械
            timeout_seconds: 接続待ちの上限（秒）
            clock: 現在時刻を返す関数
            timer_factory: 遅延チェック用タイマーの生成関数
        """
        self.storage = storage
        self.state_machine = state_machine
        self.timeout_seconds = timeout_seconds
        self.clock = clock
        self.timer_factory = timer_factory
        self._timers: Dict[str, threading.Timer] = {}
        self._lock = threading.Lock()

    def is_expired(self, record: CallRecord) -> bool:
        if record.status not in PENDING_STATUSES:
            return False
        elapsed = (self.clock() - record.created_at).total_seconds()
        return elapsed > self.timeout_seconds

    def check(self, call_id: str) -> Optional[CallRecord]:
        """
        通話のタイムアウトを確認

        Args:
            call_id: 通話レコードID

        Returns:
            確認後の通話レコード、見つからない場合はNone
        """
        record = self.storage.get_call(call_id)
        if record is None or not self.is_expired(record):
            return record

        logger.warning(
            "call_dial_timeout",
            call_id=call_id,
            status=record.status,
            timeout_seconds=self.timeout_seconds,
        )
        return self.state_machine.fail(
            call_id,
            MESSAGE_TIMEOUT,
            details=f"Call was not answered within {self.timeout_seconds:.0f} seconds",
            hangup_cause="timeout",
            from_statuses=PENDING_STATUSES,
        )

    def schedule(self, call_id: str) -> None:
        """タイムアウト経過後に一度だけ実行されるチェックを予約"""
        timer = self.timer_factory(
            self.timeout_seconds + 1, self._run_scheduled, args=(call_id,)
        )
        timer.daemon = True
        with self._lock:
            self._timers[call_id] = timer
        timer.start()

    def _run_scheduled(self, call_id: str) -> None:
        with self._lock:
            self._timers.pop(call_id, None)
        try:
            self.check(call_id)
        except Exception:
            logger.exception("scheduled_timeout_check_failed", call_id=call_id)

    def sweep(self) -> List[CallRecord]:
        """
        接続待ちの全通話をチェック

        Returns:
            タイムアウトで failed になった通話レコードのリスト
        """
        expired = []
        for record in self.storage.list_calls(statuses=PENDING_STATUSES):
            if not self.is_expired(record):
                continue
            checked = self.check(record.id)
            if checked is not None and checked.status == CallStatus.FAILED:
                expired.append(checked)
        return expired

    def pending_timers(self) -> int:
        with self._lock:
            return len(self._timers)

    def shutdown(self) -> None:
        """予約済みのチェックをすべて取り消す"""
        with self._lock:
            timers = list(self._timers.values())
            self._timers.clear()
        for timer in timers:
            timer.cancel()


@dataclass
class ReconciliationReport:
    """
    照合レポート

    Attributes:
        since: 照合対象の開始日時
        checked_at: 照合日時
        matched: Vonage 側にも存在した通話の数
        unmatched_local: Vonage 側に見つからなかったローカル通話のID
        unmatched_provider: ローカルに存在しない Vonage 通話のUUID
        discrepancies: ステータスが一致しない通話の詳細
    """
    since: datetime
    checked_at: datetime
    matched: int = 0
    unmatched_local: List[str] = field(default_factory=list)
    unmatched_provider: List[str] = field(default_factory=list)
    discrepancies: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["since"] = self.since.isoformat()
        data["checked_at"] = self.checked_at.isoformat()
        return data


class Reconciler:
    """
    ローカル通話レコードと Vonage の通話一覧の照合

    差異の報告のみを行い、レコードは変更しません。
    """

    def __init__(
        self,
        storage: Storage,
        client: VonageClient,
        reporter: ErrorReporter,
        clock: Callable[[], datetime] = utc_now
    ):
        self.storage = storage
        self.client = client
        self.reporter = reporter
        self.clock = clock

    def reconcile(self, since: Optional[datetime] = None) -> ReconciliationReport:
        """
        照合を実行

        Args:
            since: この日時以降の通話を照合 (デフォルト: 24時間前)

        Returns:
            ReconciliationReport
        """
        now = self.clock()
        since = since or now - timedelta(hours=24)

        provider_calls = self.reporter.handle_api_error(
            lambda: self.client.list_calls(since),
            "vonage_list_calls",
        )
        provider_by_id = {
            call["uuid"]: call for call in provider_calls if call.get("uuid")
        }

        report = ReconciliationReport(since=since, checked_at=now)
        local_provider_ids = set()

        for record in self.storage.list_calls(since=since):
            if not record.provider_call_id:
                continue
            local_provider_ids.add(record.provider_call_id)

            provider_call = provider_by_id.get(record.provider_call_id)
            if provider_call is None:
                report.unmatched_local.append(record.id)
                continue

            report.matched += 1
            provider_status = provider_call.get("status")
            expected = provider_status_to_call_status(provider_status)
            if expected is not None and expected != record.status:
                report.discrepancies.append({
                    "call_id": record.id,
                    "provider_call_id": record.provider_call_id,
                    "local_status": record.status,
                    "provider_status": provider_status,
                    "expected_status": expected,
                })

        report.unmatched_provider = [
            provider_id for provider_id in provider_by_id
            if provider_id not in local_provider_ids
        ]

        logger.info(
            "reconciliation_completed",
            matched=report.matched,
            unmatched_local=len(report.unmatched_local),
            unmatched_provider=len(report.unmatched_provider),
            discrepancies=len(report.discrepancies),
        )
        return report
