"""
Vonage Voice API クライアントモジュール (Telephony Client Module)

アプリケーション JWT で認証し、発信・切断・通話一覧の取得を行います。
"""

import time
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

import jwt
import requests

from .errors import VonageAPIError
from .logging_config import get_logger

logger = get_logger(__name__)


VONAGE_API_BASE = "https://api.nexmo.com"

# JWT の有効期間（秒）
TOKEN_TTL_SECONDS = 900


def digits_only(number: str) -> str:
    """電話番号から数字以外を除去 (Vonage は + を含まない E.164 を要求する)"""
    return "".join(ch for ch in (number or "") if ch.isdigit())


class VonageClient:
    """
    Vonage Voice API クライアント

    すべてのリクエストに明示的なタイムアウトを設定します。
    2xx 以外のレスポンスは VonageAPIError を送出します。
    """

    def __init__(
        self,
        application_id: str,
        private_key_path: str,
        from_number: str,
        timeout: float = 10.0,
        ringing_timer: int = 60,
        token_provider: Optional[Callable[[], str]] = None,
        session: Optional[requests.Session] = None,
        api_base: str = VONAGE_API_BASE
    ):
        """
        VonageClientを初期化

        Args:
            application_id: Vonage アプリケーション ID
            private_key_path: アプリケーション秘密鍵ファイルのパス
            from_number: 発信者番号
            timeout: リクエストタイムアウト（秒）
            ringing_timer: 呼び出しを続ける最大秒数
            token_provider: JWT を返す関数 (テスト用)
            session: HTTPセッション (テスト用)
            api_base: API のベース URL
        """
        self.application_id = application_id
        self.private_key_path = private_key_path
        self.from_number = digits_only(from_number)
        self.timeout = timeout
        self.ringing_timer = ringing_timer
        self.session = session or requests.Session()
        self.api_base = api_base.rstrip("/")
        self._token_provider = token_provider or self._generate_jwt
        self._private_key: Optional[str] = None

    def _generate_jwt(self) -> str:
        if self._private_key is None:
            try:
                with open(self.private_key_path, "r") as f:
                    self._private_key = f.read()
            except OSError as e:
                raise VonageAPIError(
                    f"Could not read Vonage private key: {e}",
                    details={"private_key_path": self.private_key_path},
                ) from e

        now = int(time.time())
        claims = {
            "application_id": self.application_id,
            "iat": now,
            "exp": now + TOKEN_TTL_SECONDS,
            "jti": str(uuid.uuid4()),
        }
        return jwt.encode(claims, self._private_key, algorithm="RS256")

    def _request(self, method: str, path: str, **kwargs: Any) -> Dict[str, Any]:
        headers = {
            "Authorization": f"Bearer {self._token_provider()}",
            "Content-Type": "application/json",
        }
        response = self.session.request(
            method,
            f"{self.api_base}{path}",
            headers=headers,
            timeout=self.timeout,
            **kwargs
        )

        if not 200 <= response.status_code < 300:
            raise VonageAPIError(
                f"Vonage API error: {response.status_code} {response.text[:200]}",
                status_code=response.status_code,
                details={"method": method, "path": path},
            )

        if not response.content:
            return {}
        return response.json()

    def create_call(self, to_number: str, answer_url: str, event_url: str) -> str:
        """
        発信

        Args:
            to_number: 発信先電話番号
            answer_url: 応答時に NCCO を取得する URL
            event_url: 通話イベントを受け取る URL

        Returns:
            Vonage通話UUID

        Raises:
            VonageAPIError: API がエラーを返した場合
            requests.RequestException: 通信に失敗した場合
        """
        body = {
            "to": [{"type": "phone", "number": digits_only(to_number)}],
            "from": {"type": "phone", "number": self.from_number},
            "answer_url": [answer_url],
            "answer_method": "GET",
            "event_url": [event_url],
            "event_method": "POST",
            "ringing_timer": self.ringing_timer,
            "machine_detection": "continue",
        }
        data = self._request("POST", "/v1/calls", json=body)

        provider_call_id = data.get("uuid")
        if not provider_call_id:
            raise VonageAPIError(
                "Vonage API response did not include a call uuid",
                details={"response": data},
            )

        logger.info(
            "vonage_call_created",
            provider_call_id=provider_call_id,
            status=data.get("status"),
        )
        return provider_call_id

    def hangup(self, provider_call_id: str) -> None:
        """通話を切断"""
        self._request("PUT", f"/v1/calls/{provider_call_id}", json={"action": "hangup"})
        logger.info("vonage_call_hangup_sent", provider_call_id=provider_call_id)

    def list_calls(self, date_start: datetime, page_size: int = 100) -> List[Dict[str, Any]]:
        """
        通話一覧を取得

        Args:
            date_start: この日時以降に開始した通話を取得
            page_size: 取得件数

        Returns:
            Vonage の通話オブジェクトのリスト
        """
        if date_start.tzinfo is None:
            date_start = date_start.replace(tzinfo=timezone.utc)
        params = {
            "date_start": date_start.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
            "page_size": page_size,
            "order": "desc",
        }
        data = self._request("GET", "/v1/calls", params=params)
        return data.get("_embedded", {}).get("calls", [])
