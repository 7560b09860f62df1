"""
会話エンジンモジュール (Conversation Engine Module)

会話履歴と通話目的から次の発話を生成し、通話継続の判定、意図の判定、
オペレーターへの問い合わせが必要かどうかの判定を行います。

会話状態はすべて永続化されたトランスクリプトから再構築されるため、
このモジュールはプロセス内に通話ごとの状態を保持しません。
"""

from dataclasses import dataclass
from typing import List, Optional, Protocol, Sequence

import openai
from openai import OpenAI

from .classifiers import (
    PhraseClassifier,
    farewell_classifier,
    intent_classifier,
    question_classifier,
    uncertainty_classifier,
)
from .errors import ErrorReporter, ErrorType, LanguageModelError
from .logging_config import get_logger
from .models import SPEAKER_AI, SPEAKER_HUMAN, ConversationTurn, format_transcript

logger = get_logger(__name__)


CLOSING_TEXT = "Thank you for your time. Have a great day!"
CLARIFICATION_TEXT = "I apologize, I'm having a technical issue. Could you please repeat that?"

OPENING_BASE = "Hello, this is an AI assistant calling on behalf of my client."

# 通話目的ごとの冒頭文と、追加コンテキストがない場合の問いかけ
OPENING_TEMPLATES = {
    "book appointment": (
        "I'd like to schedule an appointment.",
        "Is this a good time to discuss availability?",
    ),
    "make reservation": (
        "I'd like to make a reservation.",
        "Can you help me with this?",
    ),
    "get information": (
        "I'm calling to get some information.",
        "Do you have a moment to help?",
    ),
    "follow up inquiry": (
        "I'm following up on a previous inquiry.",
        "Can we discuss this briefly?",
    ),
    "schedule consultation": (
        "I'd like to schedule a consultation.",
        "What times work best for you?",
    ),
    "request quote": (
        "I'm calling to request a quote for services.",
        "Can you help me with pricing information?",
    ),
}


class LanguageModel(Protocol):
    """言語モデルインターフェース"""

    def generate(self, system_prompt: str, user_prompt: str) -> str:
        ...


class OpenAIChatModel:
    """
    OpenAI Chat Completions による言語モデル

    リトライは ErrorReporter のリトライ方針で行うため、SDK のリトライは無効にします。
    """

    def __init__(
        self,
        api_key: str,
        model: str = "gpt-4o",
        temperature: float = 0.7,
        max_tokens: int = 150,
        timeout: float = 10.0,
        client: Optional[OpenAI] = None
    ):
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.client = client or OpenAI(api_key=api_key, timeout=timeout, max_retries=0)

    def generate(self, system_prompt: str, user_prompt: str) -> str:
        """
        応答テキストを生成

        Raises:
            LanguageModelError: API 呼び出しに失敗した場合、または応答が空の場合
        """
        try:
            completion = self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": user_prompt},
                ],
                temperature=self.temperature,
                max_tokens=self.max_tokens,
            )
        except openai.APITimeoutError as e:
            raise LanguageModelError(
                f"OpenAI API timeout: {e}", error_type=ErrorType.TIMEOUT
            ) from e
        except openai.APIConnectionError as e:
            raise LanguageModelError(
                f"OpenAI API connection error: {e}", error_type=ErrorType.NETWORK
            ) from e
        except openai.OpenAIError as e:
            raise LanguageModelError(
                f"OpenAI API error: {e}",
                status_code=getattr(e, "status_code", None),
            ) from e

        content = completion.choices[0].message.content if completion.choices else None
        text = (content or "").strip()
        if not text:
            raise LanguageModelError("Language model returned an empty response")
        return text


@dataclass
class TurnResponse:
    """
    会話ターンの応答

    Attributes:
        text: 次に読み上げるテキスト
        should_continue: 会話を継続するか
        intent: 相手の発話の意図ラベル
        needs_assistance: オペレーターへの問い合わせが必要か
        assistance_question: 問い合わせる質問
        used_fallback: 言語モデルの代わりに定型文を使用したか
    """
    text: str
    should_continue: bool
    intent: str
    needs_assistance: bool = False
    assistance_question: Optional[str] = None
    used_fallback: bool = False


def opening_line(call_goal: str, recipient_name: str, additional_context: str) -> str:
    """
    通話目的に応じた冒頭の挨拶を生成

    Args:
        call_goal: 通話目的
        recipient_name: 通話相手の名前
        additional_context: 追加コンテキスト

    Returns:
        冒頭の発話テキスト
    """
    context = (additional_context or "").strip()
    template = OPENING_TEMPLATES.get((call_goal or "").strip().lower())
    if template is None:
        tail = context or "I have a request to discuss with you. Do you have a moment?"
        return f"{OPENING_BASE} {tail}"

    intro, default_question = template
    return f"{OPENING_BASE} {intro} {context or default_question}"


def build_system_prompt(
    call_goal: str,
    recipient_name: str,
    additional_context: str,
    history: Sequence[ConversationTurn],
    operator_answer: Optional[str] = None
) -> str:
    """会話履歴と通話パラメータから指示コンテキストを組み立てる"""
    transcript = format_transcript(list(history)) or "(no conversation yet)"
    prompt = (
        "You are a professional AI assistant making a phone call in English.\n"
        f"CALL OBJECTIVE: {call_goal}\n"
        f"RECIPIENT: {recipient_name}\n"
        f"CONTEXT: {additional_context or 'No additional context'}\n"
        "\n"
        "INSTRUCTIONS:\n"
        "- Be polite, professional, and natural\n"
        "- Keep responses concise (1-2 sentences max)\n"
        "- Be specific about the call objective\n"
        "- Ask clear questions when needed\n"
        "- Thank the person for their time\n"
        "- If the conversation objective is achieved or the person wants to end the call, "
        "politely conclude and say goodbye\n"
        "- If you do not know an answer, say \"let me check\" instead of guessing\n"
        "\n"
        f"CONVERSATION HISTORY:\n{transcript}\n"
    )
    if operator_answer:
        prompt += (
            "\n"
            "ANSWER FROM YOUR CLIENT (authoritative, use it to answer the person's "
            f"earlier question):\n{operator_answer}\n"
        )
    prompt += "\nRespond naturally to what the person just said. Keep it brief and conversational."
    return prompt


class ConversationEngine:
    """
    会話ターンエンジン

    言語モデルの呼び出しが失敗しても例外を送出せず、
    聞き返しの定型文を返します。
    """

    def __init__(
        self,
        model: Optional[LanguageModel],
        reporter: ErrorReporter,
        max_human_turns: int = 10,
        max_attempts: int = 2,
        retry_delays: Sequence[float] = (1,),
        farewell: Optional[PhraseClassifier] = None,
        intent: Optional[PhraseClassifier] = None,
        uncertainty: Optional[PhraseClassifier] = None,
        question: Optional[PhraseClassifier] = None
    ):
        """
        ConversationEngineを初期化

        Args:
            model: 言語モデル (未設定の場合は常に定型文を返す)
            reporter: エラーレポーター
            max_human_turns: 相手の発話回数の上限
            max_attempts: 言語モデル呼び出しの最大試行回数
            retry_delays: リトライ間隔（秒）
            farewell / intent / uncertainty / question: 差し替え可能な分類器
        """
        self.model = model
        self.reporter = reporter
        self.max_human_turns = max_human_turns
        self.max_attempts = max_attempts
        self.retry_delays = tuple(retry_delays)
        self.farewell = farewell or farewell_classifier()
        self.intent = intent or intent_classifier()
        self.uncertainty = uncertainty or uncertainty_classifier()
        self.question = question or question_classifier()

    def respond(
        self,
        history: Sequence[ConversationTurn],
        call_goal: str,
        recipient_name: str,
        additional_context: str,
        latest_input: str,
        operator_answer: Optional[str] = None
    ) -> TurnResponse:
        """
        次の発話を生成

        Args:
            history: 発生順の会話ターン (latest_input は含まない)
            call_goal: 通話目的
            recipient_name: 通話相手の名前
            additional_context: 追加コンテキスト
            latest_input: 相手の最新の発話
            operator_answer: オペレーターの回答 (優先入力)

        Returns:
            TurnResponse
        """
        latest_input = (latest_input or "").strip()
        intent = self.intent.classify(latest_input)

        # 発話回数の上限に達した場合は言語モデルを呼ばずに終了する
        human_turns = sum(1 for turn in history if turn.speaker == SPEAKER_HUMAN)
        if latest_input:
            human_turns += 1
        if human_turns >= self.max_human_turns:
            logger.info(
                "conversation_turn_limit_reached",
                human_turns=human_turns,
                max_human_turns=self.max_human_turns,
            )
            return TurnResponse(text=CLOSING_TEXT, should_continue=False, intent=intent)

        system_prompt = build_system_prompt(
            call_goal, recipient_name, additional_context, history, operator_answer
        )

        try:
            text = self._generate(system_prompt, latest_input)
        except Exception as e:
            self.reporter.log_error(
                ErrorType.AI,
                "Language model unavailable, clarification response used",
                details={"error": str(e)},
                recovered=True,
                recovery_action="fallback_response",
            )
            return TurnResponse(
                text=CLARIFICATION_TEXT,
                should_continue=True,
                intent=intent,
                used_fallback=True,
            )

        should_continue = self.farewell.classify(text) != "farewell"
        needs_assistance = self._needs_assistance(text, history, latest_input)

        return TurnResponse(
            text=text,
            should_continue=should_continue,
            intent=intent,
            needs_assistance=needs_assistance,
            assistance_question=latest_input if needs_assistance else None,
        )

    def _generate(self, system_prompt: str, user_prompt: str) -> str:
        if self.model is None:
            raise LanguageModelError("Language model is not configured")

        return self.reporter.handle_api_error(
            lambda: self.model.generate(system_prompt, user_prompt),
            "language_model",
            error_type=ErrorType.AI,
            max_attempts=self.max_attempts,
            delays=self.retry_delays,
        )

    def _needs_assistance(
        self,
        text: str,
        history: Sequence[ConversationTurn],
        latest_input: str
    ) -> bool:
        if self.uncertainty.classify(text) == "uncertain":
            return True

        if self.question.classify(latest_input) != "question":
            return False

        last_ai_text = _last_text(history, SPEAKER_AI)
        return last_ai_text is not None and self.uncertainty.classify(last_ai_text) == "uncertain"


def _last_text(history: Sequence[ConversationTurn], speaker: str) -> Optional[str]:
    for turn in reversed(history):
        if turn.speaker == speaker:
            return turn.text
    return None


class CallSummarizer:
    """
    通話要約生成

    言語モデルで通話の要約を作成します。失敗した場合はNoneを返します。
    """

    SYSTEM_PROMPT = (
        "You summarize phone calls made by an AI assistant on behalf of a client. "
        "Write 2-3 sentences stating whether the call objective was achieved "
        "and any commitments, dates, or prices mentioned."
    )

    def __init__(self, model: Optional[LanguageModel], reporter: ErrorReporter):
        self.model = model
        self.reporter = reporter

    def summarize(self, turns: List[ConversationTurn], call_goal: str) -> Optional[str]:
        if self.model is None or not turns:
            return None

        user_prompt = f"CALL OBJECTIVE: {call_goal}\n\nTRANSCRIPT:\n{format_transcript(turns)}"
        try:
            return self.model.generate(self.SYSTEM_PROMPT, user_prompt)
        except Exception as e:
            self.reporter.log_error(
                ErrorType.AI,
                "Call summary could not be generated",
                details={"error": str(e)},
                recovered=True,
                recovery_action="skip_summary",
            )
            return None
