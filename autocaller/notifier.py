"""
通話更新通知モジュール (Call Update Notifier Module)

通話レコードの変更を購読者に配信します。
購読者のコールバックで発生した例外はログに記録し、配信を継続します。
"""

import threading
import uuid
from typing import Callable, Dict

from .logging_config import get_logger
from .models import CallRecord

logger = get_logger(__name__)

Callback = Callable[[CallRecord], None]


class Subscription:
    """購読ハンドル"""

    def __init__(self, notifier: 'CallUpdateNotifier', call_id: str, token: str):
        self.notifier = notifier
        self.call_id = call_id
        self.token = token

    def unsubscribe(self) -> None:
        """購読を解除 (何度呼び出しても安全)"""
        self.notifier._remove(self.call_id, self.token)


class CallUpdateNotifier:
    """通話ごとの購読者に通話レコードの更新を配信する"""

    def __init__(self):
        self._subscribers: Dict[str, Dict[str, Callback]] = {}
        self._lock = threading.Lock()

    def subscribe(self, call_id: str, callback: Callback) -> Subscription:
        token = uuid.uuid4().hex
        with self._lock:
            self._subscribers.setdefault(call_id, {})[token] = callback
        return Subscription(self, call_id, token)

    def publish(self, record: CallRecord) -> None:
        """
        通話レコードの更新を配信

        Args:
            record: 更新後の通話レコード
        """
        with self._lock:
            callbacks = list(self._subscribers.get(record.id, {}).values())

        for callback in callbacks:
            try:
                callback(record)
            except Exception:
                logger.exception("subscriber_callback_failed", call_id=record.id)

    def subscriber_count(self, call_id: str) -> int:
        with self._lock:
            return len(self._subscribers.get(call_id, {}))

    def _remove(self, call_id: str, token: str) -> None:
        with self._lock:
            callbacks = self._subscribers.get(call_id)
            if not callbacks:
                return
            callbacks.pop(token, None)
            if not callbacks:
                del self._subscribers[call_id]
