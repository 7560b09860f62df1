"""
Flask アプリケーションモジュール (Flask Application Module)

自動発信システムの Flask アプリケーションを提供します。
通話 API、Vonage Webhook エンドポイント、ライブ更新 (SSE) を設定します。

Webhook の処理中に発生したエラーはログに記録して 2xx で応答します。
未応答の Webhook は Vonage により再送され、通話が停止する原因になるためです。
"""

import json
import queue
import traceback
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

import requests
from flask import Flask, Response, jsonify, request, send_file, stream_with_context

from .audio_store import AudioClipStore
from .config import Config
from .conversation import (
    CLOSING_TEXT,
    CallSummarizer,
    ConversationEngine,
    LanguageModel,
    OpenAIChatModel,
    opening_line,
)
from .errors import ErrorReporter, ErrorType, ExternalServiceError, VonageAPIError
from .events import EventKind, EventNormalizer, normalize_speech
from .logging_config import configure_structlog, get_logger
from .models import (
    SPEAKER_AI,
    SPEAKER_HUMAN,
    CallRecord,
    CallStatus,
    ConversationTurn,
    PendingQuestion,
    format_transcript,
    utc_now,
)
from .monitor import Reconciler, TimeoutMonitor
from .ncco_builder import NCCOBuilder
from .notifier import CallUpdateNotifier
from .state_machine import (
    MESSAGE_GATEWAY_UNREACHABLE,
    CallStateMachine,
    OutcomePolicy,
)
from .storage import SQLiteStorage, Storage
from .telephony import VonageClient, digits_only
from .voice import VoiceSynthesizer

REPROMPT_TEXT = "I didn't catch that. Could you please repeat?"

# SSE のキープアライブ間隔（秒）
STREAM_KEEPALIVE_SECONDS = 15

# /health に含める直近のエラー件数
HEALTH_RECENT_ERRORS = 5

# 保留中の質問に保存する直近の会話行数
QUESTION_CONTEXT_LINES = 6


class RequestValidationError(Exception):
    """
    リクエスト検証エラー

    不正な API リクエストまたは Webhook リクエストを検出した場合に発生します。

    Attributes:
        message: エラーメッセージ
        error_type: エラーの種類
    """

    def __init__(self, message: str, error_type: str = "validation_error"):
        super().__init__(message)
        self.message = message
        self.error_type = error_type


def validate_json_request(data: Any, required_fields: Optional[list] = None) -> Tuple[bool, Optional[str]]:
    """
    JSON リクエストを検証

    Args:
        data: 検証するデータ
        required_fields: 必須フィールドのリスト（オプション）

    Returns:
        (検証結果, エラーメッセージ) のタプル
    """
    if data is None:
        return False, "Invalid JSON: request body is empty or malformed"

    if not isinstance(data, dict):
        return False, "Invalid JSON: request body must be a JSON object"

    if required_fields:
        missing_fields = [
            field for field in required_fields
            if field not in data or data[field] is None or str(data[field]).strip() == ""
        ]
        if missing_fields:
            return False, f"Missing required fields: {', '.join(missing_fields)}"

    return True, None


def create_error_response(
    error_type: str,
    message: str,
    status_code: int,
    details: Optional[Dict[str, Any]] = None
) -> Tuple[Response, int]:
    """
    エラーレスポンスを作成

    Args:
        error_type: エラーの種類
        message: エラーメッセージ
        status_code: HTTP ステータスコード
        details: 追加の詳細情報（オプション）

    Returns:
        (JSON レスポンス, ステータスコード) のタプル
    """
    response_body = {
        "error": error_type,
        "message": message,
        "status_code": status_code
    }
    if details:
        response_body["details"] = details

    return jsonify(response_body), status_code


def _parse_json_body(logger) -> Dict[str, Any]:
    """リクエストボディを JSON オブジェクトとして取得 (空の場合は空の辞書)"""
    try:
        data = request.get_json(force=True, silent=False)
    except Exception as json_error:
        logger.error(
            "invalid_json_error",
            error_type="invalid_json",
            error_message=str(json_error),
            path=request.path,
            content_type=request.content_type
        )
        raise RequestValidationError(
            message="Invalid JSON: request body is malformed",
            error_type="invalid_json"
        )

    if data is None:
        data = {}

    is_valid, error_message = validate_json_request(data)
    if not is_valid:
        raise RequestValidationError(message=error_message, error_type="invalid_json")
    return data


def _is_transient(error: BaseException) -> bool:
    """再試行で回復し得るエラーか"""
    if isinstance(error, VonageAPIError) and error.status_code is not None:
        return error.status_code == 429 or error.status_code >= 500
    return True


class WebhookHandler:
    """
    通話 API と Vonage Webhook を処理するハンドラー

    通話ごとの状態はプロセス内に保持せず、毎回永続化された通話レコードと
    トランスクリプトから再構築します。

    Attributes:
        config: アプリケーション設定
        storage: ストレージレイヤー
        state_machine: 通話状態機械
        engine: 会話エンジン
        synthesizer: 音声合成
        audio_store: 音声クリップ保存
        ncco_builder: NCCO を構築するビルダー
        telephony: Vonage クライアント
        monitor: タイムアウトモニター
        reporter: エラーレポーター
    """

    def __init__(
        self,
        config: Config,
        storage: Storage,
        state_machine: CallStateMachine,
        engine: ConversationEngine,
        synthesizer: VoiceSynthesizer,
        audio_store: AudioClipStore,
        ncco_builder: NCCOBuilder,
        telephony: VonageClient,
        monitor: TimeoutMonitor,
        reporter: ErrorReporter,
        normalizer: Optional[EventNormalizer] = None,
        clock: Callable[[], datetime] = utc_now
    ):
        self.config = config
        self.storage = storage
        self.state_machine = state_machine
        self.engine = engine
        self.synthesizer = synthesizer
        self.audio_store = audio_store
        self.ncco_builder = ncco_builder
        self.telephony = telephony
        self.monitor = monitor
        self.reporter = reporter
        self.normalizer = normalizer or EventNormalizer()
        self.clock = clock
        self.logger = get_logger(__name__)

    # ------------------------------------------------------------------
    # 通話 API
    # ------------------------------------------------------------------

    def start_call(self, data: Dict[str, Any]) -> CallRecord:
        """
        通話を開始

        通話レコードを作成してタイムアウトチェックを予約し、Vonage に発信を要求します。
        発信要求がリトライ後も失敗した場合は通話を failed にします。

        Args:
            data: リクエストデータ
                - recipient_name: 通話相手の名前
                - phone_number: 発信先電話番号
                - call_goal: 通話目的
                - additional_context: 追加コンテキスト (オプション)

        Returns:
            通話レコード

        Raises:
            RequestValidationError: 入力が不正な場合
        """
        is_valid, error_message = validate_json_request(
            data, ["recipient_name", "phone_number", "call_goal"]
        )
        if not is_valid:
            raise RequestValidationError(message=error_message, error_type="missing_fields")

        phone_number = str(data["phone_number"]).strip()
        if not 7 <= len(digits_only(phone_number)) <= 15:
            raise RequestValidationError(
                message="phone_number must contain between 7 and 15 digits",
                error_type="invalid_phone_number"
            )

        record = self.state_machine.create_call(
            recipient_name=str(data["recipient_name"]).strip(),
            phone_number=phone_number,
            call_goal=str(data["call_goal"]).strip(),
            additional_context=str(data.get("additional_context") or "").strip(),
        )
        self.monitor.schedule(record.id)

        answer_url = self._with_call_id(self.config.answer_url, record.id)
        event_url = self._with_call_id(self.config.event_url, record.id)

        try:
            provider_call_id = self.reporter.retry_with_backoff(
                lambda: self.telephony.create_call(phone_number, answer_url, event_url),
                operation_name="vonage_create_call",
                should_retry=_is_transient,
            )
        except (ExternalServiceError, requests.RequestException) as e:
            self.logger.error(
                "call_initiation_failed",
                call_id=record.id,
                error_type=type(e).__name__,
                error_message=str(e)
            )
            return self.state_machine.fail(
                record.id,
                MESSAGE_GATEWAY_UNREACHABLE,
                details=str(e),
                from_statuses=(CallStatus.PREPARING,),
            )

        return self.state_machine.mark_dialing(record.id, provider_call_id)

    def get_call(self, call_id: str) -> Optional[CallRecord]:
        """通話レコードを取得 (読み取り時にタイムアウトを再チェック)"""
        return self.monitor.check(call_id)

    def list_questions(self, call_id: str) -> List[PendingQuestion]:
        return self.storage.list_questions(call_id)

    def answer_question(
        self,
        call_id: str,
        question_id: str,
        answer: str
    ) -> Optional[PendingQuestion]:
        """
        保留中の質問にオペレーターの回答を設定

        回答は次の会話ターンで一度だけ会話エンジンに渡されます。

        Returns:
            更新後の質問、見つからない・注入済みの場合はNone
        """
        question = self.storage.get_question(question_id)
        if question is None or question.call_id != call_id:
            return None

        answered = self.storage.answer_question(question_id, answer)
        if answered is not None:
            self.logger.info("operator_answer_received", call_id=call_id, question_id=question_id)
        return answered

    # ------------------------------------------------------------------
    # Vonage Webhook
    # ------------------------------------------------------------------

    def resolve_call_id(
        self,
        call_id: Optional[str],
        provider_call_id: Optional[str]
    ) -> Optional[str]:
        """クエリパラメータの call_id、なければ Vonage通話UUID から通話レコードIDを特定"""
        if call_id and self.storage.get_call(call_id) is not None:
            return call_id
        if provider_call_id:
            record = self.storage.get_call_by_provider_id(provider_call_id)
            if record is not None:
                return record.id
        return None

    def handle_answer(self, params: Dict[str, Any]) -> List[Dict[str, Any]]:
        """
        応答 Webhook を処理

        通話を in-progress にし、冒頭の挨拶を読み上げて音声入力を待つ NCCO を返します。
        冒頭の挨拶はトランスクリプトが空の場合のみ記録し、
        再送された場合は記録済みの発話を繰り返します。

        Args:
            params: Vonage から送信されるパラメータ
                - call_id: 通話レコードID
                - uuid: Vonage通話UUID

        Returns:
            NCCO アクションのリスト
        """
        provider_call_id = params.get("uuid") or None
        call_id = self.resolve_call_id(params.get("call_id"), provider_call_id)
        if call_id is None:
            self.logger.warning("answer_webhook_unmatched", params=params)
            return self.ncco_builder.build_error_ncco()

        record = self.state_machine.mark_answered(call_id, provider_call_id)
        if record.is_terminal:
            self.logger.warning("answer_for_terminal_call", call_id=call_id, status=record.status)
            return self.ncco_builder.build_closing_ncco(CLOSING_TEXT)

        greeting = opening_line(record.call_goal, record.recipient_name, record.additional_context)
        record = self.state_machine.append_turns(
            call_id,
            [ConversationTurn(speaker=SPEAKER_AI, text=greeting, timestamp=self.clock())],
            if_empty=True,
        )

        text = greeting
        for turn in reversed(record.turns()):
            if turn.speaker == SPEAKER_AI:
                text = turn.text
                break

        self.logger.info("call_answered", call_id=call_id, provider_call_id=provider_call_id)
        return self._speak(call_id, text)

    def handle_input(self, call_id: Optional[str], data: Dict[str, Any]) -> List[Dict[str, Any]]:
        """
        音声入力 Webhook を処理

        認識結果を会話エンジンに渡し、次の発話の NCCO を返します。

        Args:
            call_id: 通話レコードID (クエリパラメータ)
            data: Vonage の input コールバック

        Returns:
            NCCO アクションのリスト
        """
        call_id = self.resolve_call_id(call_id, data.get("uuid"))
        if call_id is None:
            self.logger.warning("input_webhook_unmatched", provider_call_id=data.get("uuid"))
            return self.ncco_builder.build_error_ncco()

        record = self.monitor.check(call_id)
        if record is None:
            return self.ncco_builder.build_error_ncco()
        if record.is_terminal:
            return self.ncco_builder.build_closing_ncco(CLOSING_TEXT)

        speech_text, confidence = normalize_speech(data)
        if not speech_text:
            self.logger.info("speech_not_recognized", call_id=call_id)
            return self._speak(call_id, REPROMPT_TEXT)

        history = record.turns()
        answered_questions = self.storage.list_questions(call_id, answered=True, delivered=False)
        operator_answer = "\n".join(
            question.answer for question in answered_questions if question.answer
        ) or None

        response = self.engine.respond(
            history,
            record.call_goal,
            record.recipient_name,
            record.additional_context,
            speech_text,
            operator_answer=operator_answer,
        )

        now = self.clock()
        human_turn = ConversationTurn(
            speaker=SPEAKER_HUMAN, text=speech_text, timestamp=now, confidence=confidence
        )
        ai_turn = ConversationTurn(speaker=SPEAKER_AI, text=response.text, timestamp=now)
        self.state_machine.append_turns(call_id, [human_turn, ai_turn])

        if answered_questions:
            self.storage.mark_questions_delivered(question.id for question in answered_questions)

        if response.needs_assistance:
            self._raise_question(call_id, response.assistance_question or speech_text, history, human_turn)

        self.logger.info(
            "conversation_turn_processed",
            call_id=call_id,
            intent=response.intent,
            should_continue=response.should_continue,
            needs_assistance=response.needs_assistance,
            used_fallback=response.used_fallback
        )

        if not response.should_continue:
            ncco = self._speak(call_id, response.text, closing=True)
            self.state_machine.complete(call_id)
            return ncco

        return self._speak(call_id, response.text)

    def handle_event(self, data: Dict[str, Any], call_id: Optional[str] = None) -> Optional[CallRecord]:
        """
        通話イベント Webhook を処理

        留守番電話が検出された場合は Vonage に切断を指示してから通話を failed にします。

        Args:
            data: イベントデータ
            call_id: 通話レコードID (クエリパラメータ)

        Returns:
            更新後の通話レコード、対応する通話がない場合はNone
        """
        event = self.normalizer.normalize(data)
        if event.kind == EventKind.UNKNOWN:
            return None

        resolved = self.resolve_call_id(call_id, event.provider_call_id)
        if resolved is None:
            self.logger.warning(
                "event_webhook_unmatched",
                provider_call_id=event.provider_call_id,
                status=event.raw_status
            )
            return None

        if event.kind == EventKind.MACHINE_DETECTED:
            self._hangup_machine(resolved, event.provider_call_id)

        return self.state_machine.apply_event(resolved, event)

    def _hangup_machine(self, call_id: str, provider_call_id: Optional[str]) -> None:
        record = self.state_machine.get(call_id)
        target = provider_call_id or record.provider_call_id
        if record.is_terminal or not target:
            return

        try:
            self.telephony.hangup(target)
        except (ExternalServiceError, requests.RequestException) as e:
            self.reporter.log_error(
                self.reporter.classify_exception(e),
                f"Hangup after machine detection failed: {e}",
                details={"call_id": call_id, "provider_call_id": target},
            )

    def _raise_question(
        self,
        call_id: str,
        question_text: str,
        history: List[ConversationTurn],
        human_turn: ConversationTurn
    ) -> PendingQuestion:
        context_turns = list(history[-(QUESTION_CONTEXT_LINES - 1):]) + [human_turn]
        question = PendingQuestion(
            id=str(uuid.uuid4()),
            call_id=call_id,
            question=question_text,
            context=format_transcript(context_turns),
            timestamp=self.clock(),
        )
        self.storage.save_question(question)
        self.logger.info("assistance_requested", call_id=call_id, question_id=question.id)
        return question

    def _speak(self, call_id: str, text: str, closing: bool = False) -> List[Dict[str, Any]]:
        """テキストを合成音声または talk アクションで読み上げる NCCO を構築"""
        clip_url = None
        voice = self.synthesizer.synthesize(text)
        if voice.success and voice.audio:
            try:
                clip_id = self.audio_store.save(voice.audio)
                clip_url = self.audio_store.url_for(clip_id, self.config.audio_base_url)
            except OSError as e:
                self.reporter.log_error(
                    ErrorType.VOICE,
                    f"Audio clip could not be saved: {e}",
                    recovered=True,
                    recovery_action="fallback_voice",
                )

        if closing:
            return self.ncco_builder.build_closing_ncco(text, clip_url)
        return self.ncco_builder.build_turn_ncco(text, call_id, clip_url)

    @staticmethod
    def _with_call_id(url: str, call_id: str) -> str:
        separator = "&" if "?" in url else "?"
        return f"{url}{separator}call_id={call_id}"


def _parse_since(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        since = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        raise RequestValidationError(
            message="since must be an ISO 8601 timestamp",
            error_type="invalid_parameter"
        )
    if since.tzinfo is None:
        since = since.replace(tzinfo=timezone.utc)
    return since


def create_app(
    config: Optional[Config] = None,
    telephony: Optional[VonageClient] = None,
    language_model: Optional[LanguageModel] = None,
    synthesizer: Optional[VoiceSynthesizer] = None,
    clock: Callable[[], datetime] = utc_now,
    sleep: Optional[Callable[[float], None]] = None,
    timer_factory: Optional[Callable[..., Any]] = None,
    background_runner: Optional[Callable[[Callable[[], None]], None]] = None
) -> Flask:
    """
    Flask アプリケーションを作成

    Args:
        config: アプリケーション設定（None の場合は環境変数から読み込み）
        telephony: Vonage クライアント (テスト時に注入)
        language_model: 言語モデル (テスト時に注入)
        synthesizer: 音声合成 (テスト時に注入)
        clock: 現在時刻を返す関数
        sleep: リトライ待機に使用する関数
        timer_factory: タイムアウトチェック用タイマーの生成関数
        background_runner: 通話要約の生成を実行する関数

    Returns:
        設定済みの Flask アプリケーション
    """
    # Flask アプリケーションインスタンスを作成
    app = Flask(__name__)

    # 設定を読み込み（テスト時は外部から注入可能）
    if config is None:
        config = Config.from_env()

    app.config["AUTOCALLER_CONFIG"] = config

    # 構造化ロギングを設定
    configure_structlog(config.log_level)

    logger = get_logger(__name__)
    logger.info(
        "application_initialized",
        log_level=config.log_level,
        webhook_base_url=config.webhook_base_url
    )

    reporter_options: Dict[str, Any] = {"clock": clock}
    if sleep is not None:
        reporter_options["sleep"] = sleep
    reporter = ErrorReporter(**reporter_options)
    app.config["ERROR_REPORTER"] = reporter

    # ストレージレイヤーを初期化
    storage = SQLiteStorage(config.database_path)
    app.config["STORAGE"] = storage

    notifier = CallUpdateNotifier()
    app.config["NOTIFIER"] = notifier

    # 言語モデルを初期化（API キーがある場合のみ）
    if language_model is None and config.openai_api_key:
        language_model = OpenAIChatModel(
            api_key=config.openai_api_key,
            model=config.ai_model,
            temperature=config.ai_temperature,
            max_tokens=config.ai_max_tokens,
            timeout=config.request_timeout
        )
    if language_model is None:
        logger.warning(
            "language_model_disabled",
            reason="Missing OPENAI_API_KEY; fallback responses will be used"
        )

    summarizer = None
    if config.enable_ai_summary and language_model is not None:
        summarizer = CallSummarizer(language_model, reporter)

    outcome_policy = OutcomePolicy(
        min_duration=config.min_call_duration,
        confirmed_duration=config.confirmed_call_duration
    )
    state_machine = CallStateMachine(
        storage,
        notifier=notifier,
        outcome_policy=outcome_policy,
        summarizer=summarizer,
        clock=clock,
        background_runner=background_runner
    )
    app.config["STATE_MACHINE"] = state_machine

    engine = ConversationEngine(
        language_model,
        reporter,
        max_human_turns=config.max_human_turns
    )

    if synthesizer is None:
        synthesizer = VoiceSynthesizer(
            api_key=config.elevenlabs_api_key,
            voice_id=config.elevenlabs_voice_id,
            reporter=reporter,
            model_id=config.elevenlabs_model_id,
            style=config.voice_style,
            timeout=config.request_timeout
        )
        if not config.voice_synthesis_enabled:
            logger.info("voice_synthesis_disabled", reason="Vonage talk voice will be used")

    if telephony is None:
        telephony = VonageClient(
            application_id=config.vonage_application_id,
            private_key_path=config.vonage_private_key_path,
            from_number=config.vonage_from_number,
            timeout=config.request_timeout,
            ringing_timer=config.ringing_timer
        )

    monitor_options: Dict[str, Any] = {"clock": clock}
    if timer_factory is not None:
        monitor_options["timer_factory"] = timer_factory
    monitor = TimeoutMonitor(
        storage,
        state_machine,
        timeout_seconds=config.dial_timeout_seconds,
        **monitor_options
    )
    app.config["TIMEOUT_MONITOR"] = monitor

    reconciler = Reconciler(storage, telephony, reporter, clock=clock)

    audio_store = AudioClipStore(config.audio_clip_dir)

    webhook_handler = WebhookHandler(
        config=config,
        storage=storage,
        state_machine=state_machine,
        engine=engine,
        synthesizer=synthesizer,
        audio_store=audio_store,
        ncco_builder=NCCOBuilder(config),
        telephony=telephony,
        monitor=monitor,
        reporter=reporter,
        clock=clock
    )
    app.config["WEBHOOK_HANDLER"] = webhook_handler

    # 前回のプロセスで接続待ちのまま残った通話を処理
    expired = monitor.sweep()
    if expired:
        logger.info("stale_calls_expired", count=len(expired))

    # ==========================================================================
    # エラーハンドラー (Error Handlers)
    # ==========================================================================

    @app.errorhandler(400)
    def handle_bad_request(error):
        """400 Bad Request エラーハンドラー"""
        logger.error(
            "bad_request_error",
            error_type="bad_request",
            error_message=str(error),
            path=request.path,
            method=request.method,
            content_type=request.content_type
        )
        return create_error_response(
            error_type="bad_request",
            message=str(error.description) if hasattr(error, 'description') else "Bad Request",
            status_code=400
        )

    @app.errorhandler(404)
    def handle_not_found(error):
        """404 Not Found エラーハンドラー"""
        logger.info(
            "not_found_error",
            path=request.path,
            method=request.method
        )
        return create_error_response(
            error_type="not_found",
            message="Resource not found",
            status_code=404
        )

    @app.errorhandler(405)
    def handle_method_not_allowed(error):
        """
        405 Method Not Allowed エラーハンドラー

        許可されていない HTTP メソッドを処理します。
        """
        logger.warning(
            "method_not_allowed_error",
            error_type="method_not_allowed",
            error_message=str(error),
            path=request.path,
            method=request.method
        )
        return create_error_response(
            error_type="method_not_allowed",
            message=str(error.description) if hasattr(error, 'description') else "Method Not Allowed",
            status_code=405
        )

    @app.errorhandler(RequestValidationError)
    def handle_request_validation_error(error):
        """
        RequestValidationError エラーハンドラー

        リクエスト検証エラーを 400 として返します。
        """
        logger.warning(
            "request_validation_error",
            error_type=error.error_type,
            error_message=error.message,
            path=request.path,
            method=request.method,
            content_type=request.content_type
        )
        return create_error_response(
            error_type=error.error_type,
            message=error.message,
            status_code=400
        )

    @app.errorhandler(Exception)
    def handle_generic_exception(error):
        """
        汎用例外ハンドラー

        予期しない例外を処理し、スタックトレースをログ出力します。
        """
        logger.error(
            "unhandled_exception",
            error_type=type(error).__name__,
            error_message=str(error),
            path=request.path,
            method=request.method,
            stack_trace=traceback.format_exc(),
            exc_info=True
        )
        return create_error_response(
            error_type="internal_error",
            message="An unexpected error occurred",
            status_code=500
        )

    # ==========================================================================
    # エンドポイント (Endpoints)
    # ==========================================================================

    @app.route("/health", methods=["GET"])
    def health_check():
        """
        ヘルスチェックエンドポイント

        プロセスが稼働していれば 200 を返し、直近の外部サービスエラーから
        算出した健全性を含めます。
        """
        healthy = reporter.is_system_healthy()
        summary = reporter.get_error_summary(recent=0)
        recent_entries = reporter.get_entries()[-HEALTH_RECENT_ERRORS:]
        return jsonify({
            "status": "healthy" if healthy else "degraded",
            "system_healthy": healthy,
            "errors": {
                "total": summary["total"],
                "unrecovered": summary["unrecovered"],
                "by_type": summary["by_type"],
                "recent": [
                    {
                        "timestamp": entry.timestamp.isoformat(),
                        "type": entry.type,
                        "message": reporter.user_friendly_message(entry),
                    }
                    for entry in reversed(recent_entries)
                ],
            },
        }), 200

    @app.route("/calls", methods=["POST"])
    def create_call():
        """
        通話作成エンドポイント

        Request Body (JSON):
            - recipient_name, phone_number, call_goal (必須)
            - additional_context (オプション)

        Returns:
            201 と通話レコード
        """
        data = _parse_json_body(logger)
        record = webhook_handler.start_call(data)
        logger.info("call_requested", call_id=record.id, status=record.status)
        return jsonify(record.to_dict()), 201

    @app.route("/calls/<call_id>", methods=["GET"])
    def get_call(call_id):
        record = webhook_handler.get_call(call_id)
        if record is None:
            return create_error_response("not_found", f"Call {call_id} not found", 404)
        return jsonify(record.to_dict()), 200

    @app.route("/calls/<call_id>/stream", methods=["GET"])
    def stream_call(call_id):
        """
        ライブ更新エンドポイント (Server-Sent Events)

        最初に現在の通話レコードを送信し、以降は更新のたびに送信します。
        通話が終端ステータスになると送信を終了します。
        """
        updates: "queue.Queue[CallRecord]" = queue.Queue()
        subscription = notifier.subscribe(call_id, updates.put)

        record = webhook_handler.get_call(call_id)
        if record is None:
            subscription.unsubscribe()
            return create_error_response("not_found", f"Call {call_id} not found", 404)

        def generate():
            try:
                current = record
                yield f"data: {json.dumps(current.to_dict())}\n\n"
                while not current.is_terminal:
                    try:
                        current = updates.get(timeout=STREAM_KEEPALIVE_SECONDS)
                    except queue.Empty:
                        # 更新がない間もタイムアウトを再チェックする
                        checked = webhook_handler.get_call(call_id)
                        if checked is None:
                            return
                        if checked.revision == current.revision:
                            yield ": keep-alive\n\n"
                            continue
                        current = checked
                    yield f"data: {json.dumps(current.to_dict())}\n\n"
            finally:
                subscription.unsubscribe()

        return Response(
            stream_with_context(generate()),
            mimetype="text/event-stream",
            headers={"Cache-Control": "no-cache"}
        )

    @app.route("/calls/<call_id>/questions", methods=["GET"])
    def list_questions(call_id):
        if storage.get_call(call_id) is None:
            return create_error_response("not_found", f"Call {call_id} not found", 404)
        questions = webhook_handler.list_questions(call_id)
        return jsonify([question.to_dict() for question in questions]), 200

    @app.route("/calls/<call_id>/questions/<question_id>/answer", methods=["POST"])
    def answer_question(call_id, question_id):
        data = _parse_json_body(logger)
        is_valid, error_message = validate_json_request(data, ["answer"])
        if not is_valid:
            raise RequestValidationError(message=error_message, error_type="missing_fields")

        question = webhook_handler.answer_question(call_id, question_id, str(data["answer"]).strip())
        if question is None:
            return create_error_response(
                "not_found",
                f"Question {question_id} not found or already delivered",
                404
            )
        return jsonify(question.to_dict()), 200

    @app.route("/webhooks/answer", methods=["GET"])
    def answer_webhook():
        """
        Answer Webhook エンドポイント

        Query Parameters:
            - call_id: 通話レコードID
            - uuid: Vonage通話UUID

        Returns:
            JSON レスポンス: NCCO アクションのリスト
        """
        params = {
            "call_id": request.args.get("call_id", ""),
            "uuid": request.args.get("uuid", ""),
        }
        try:
            ncco = webhook_handler.handle_answer(params)
        except Exception as e:
            logger.error(
                "answer_webhook_error",
                error_type=type(e).__name__,
                error_message=str(e),
                params=params,
                exc_info=True
            )
            ncco = webhook_handler.ncco_builder.build_error_ncco()

        return jsonify(ncco), 200

    @app.route("/webhooks/event", methods=["GET", "POST"])
    def event_webhook():
        """
        Event Webhook エンドポイント

        不正な JSON の場合のみ 400 を返し、それ以外は処理結果にかかわらず 200 を返します。
        """
        if request.method == "GET":
            data = dict(request.args)
        else:
            data = _parse_json_body(logger)

        call_id = request.args.get("call_id")
        try:
            record = webhook_handler.handle_event(data, call_id)
            logger.info(
                "event_webhook_processed",
                call_id=record.id if record else None,
                provider_call_id=data.get("uuid", ""),
                status=data.get("status", "")
            )
        except Exception as e:
            logger.error(
                "event_webhook_error",
                error_type=type(e).__name__,
                error_message=str(e),
                provider_call_id=data.get("uuid", ""),
                status=data.get("status", ""),
                exc_info=True
            )

        return jsonify({"status": "ok"}), 200

    @app.route("/webhooks/input", methods=["POST"])
    def input_webhook():
        """
        Input Webhook エンドポイント

        音声認識結果を受け取り、次の発話の NCCO を返します。
        """
        data = _parse_json_body(logger)
        call_id = request.args.get("call_id")
        try:
            ncco = webhook_handler.handle_input(call_id, data)
        except Exception as e:
            logger.error(
                "input_webhook_error",
                error_type=type(e).__name__,
                error_message=str(e),
                call_id=call_id,
                exc_info=True
            )
            ncco = webhook_handler.ncco_builder.build_error_ncco()

        return jsonify(ncco), 200

    @app.route("/audio/<clip_id>", methods=["GET"])
    def get_audio(clip_id):
        path = audio_store.path_for(clip_id)
        if path is None:
            return create_error_response("not_found", "Audio clip not found", 404)
        return send_file(path, mimetype="audio/mpeg")

    @app.route("/diagnostics/reconciliation", methods=["GET"])
    def reconciliation():
        """
        照合エンドポイント

        Query Parameters:
            - since: 照合開始日時 (ISO 8601、オプション)
        """
        since = _parse_since(request.args.get("since"))
        try:
            report = reconciler.reconcile(since)
        except (ExternalServiceError, requests.RequestException) as e:
            logger.error(
                "reconciliation_failed",
                error_type=type(e).__name__,
                error_message=str(e)
            )
            return create_error_response(
                "upstream_error",
                "Could not fetch the call list from the telephony service",
                502
            )
        return jsonify(report.to_dict()), 200

    logger.info(
        "application_ready",
        endpoints=[
            "/health", "/calls", "/webhooks/answer", "/webhooks/event",
            "/webhooks/input", "/audio", "/diagnostics/reconciliation"
        ]
    )

    return app
