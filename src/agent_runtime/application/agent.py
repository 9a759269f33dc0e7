"""Agentic loop controller."""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING

from agent_runtime.application.models import (
    ContentBlock,
    Message,
    PermissionRequest,
    Role,
    TextBlock,
    ToolCall,
    ToolResultBlock,
    ToolUseBlock,
    UserDecision,
)
from agent_runtime.application.permission import (
    Decision,
    Layer,
    MergedSettings,
    PermissionDecision,
    PermissionEngine,
    PermissionRule,
    RuleAction,
    suggest_rule,
)
from agent_runtime.application.session import interrupted_results
from agent_runtime.application.tools import ToolOutput
from agent_runtime.infrastructure.auth import AuthError
from agent_runtime.infrastructure.logging import get_logger
from agent_runtime.infrastructure.stream import (
    ProtocolError,
    ProtocolErrorEvent,
    StreamDecoder,
    TextDelta,
    ToolCallEnd,
    ToolCallStart,
)
from agent_runtime.infrastructure.transport import TransportError

if TYPE_CHECKING:
    from agent_runtime.application.session import Session
    from agent_runtime.application.tools import ToolDispatcher
    from agent_runtime.infrastructure.auth import CredentialProvider
    from agent_runtime.infrastructure.transport import Transport

logger = get_logger(__name__)

USER_DENIAL = "Permission denied by user."

# 対話的なパーミッション確認のコールバック
DecisionProvider = Callable[[PermissionRequest], Awaitable[UserDecision]]


class LoopState(str, Enum):
    """ループの状態."""

    IDLE = "idle"
    AWAITING_RESPONSE = "awaiting_response"
    ACCUMULATING_TURN = "accumulating_turn"
    AWAITING_PERMISSION = "awaiting_permission"
    EXECUTING_TOOL = "executing_tool"
    DONE = "done"
    ABORTED = "aborted"


@dataclass
class LoopObserver:
    """進捗を表示するためのコールバック（全て任意）."""

    on_text: Callable[[str], Awaitable[None]] | None = None
    on_tool_start: Callable[[ToolCall], Awaitable[None]] | None = None
    on_tool_result: Callable[[ToolCall, ToolOutput], Awaitable[None]] | None = None


@dataclass(frozen=True)
class TurnResult:
    """1ターンの結果."""

    reply: Message | None
    rounds: int
    cancelled: bool = False

    @property
    def text(self) -> str:
        """最後のアシスタントメッセージのテキスト."""
        return self.reply.text if self.reply is not None else ""


class TurnInProgressError(Exception):
    """ターン実行中に別のターンや設定の再読み込みを要求した場合の例外."""

    def __init__(self, operation: str) -> None:
        """
        Initialize TurnInProgressError.

        Args:
            operation: 拒否された操作
        """
        super().__init__(f"Cannot {operation} while a turn is running")
        self.operation = operation


class AgentLoop:
    """
    ユーザー入力1件分のターンを実行する状態機械.

    リクエスト送信、ストリームの蓄積、ツール呼び出しごとのパーミッション判定と実行、
    結果の送り返しを、アシスタントがツールを呼ばなくなるまで繰り返す。

    Session には完成したメッセージだけを追加する。ストリームの異常・通信エラー・
    キャンセルが起きた場合、途中まで蓄積したメッセージは破棄される。
    """

    def __init__(
        self,
        session: Session,
        transport: Transport,
        dispatcher: ToolDispatcher,
        engine: PermissionEngine,
        settings: MergedSettings,
        credentials: CredentialProvider,
        decision_provider: DecisionProvider | None = None,
        permission_timeout: float = 0,
        observer: LoopObserver | None = None,
    ) -> None:
        """
        Initialize AgentLoop.

        Args:
            session: 会話セッション
            transport: モデルサービスへのトランスポート
            dispatcher: ツールディスパッチャー
            engine: パーミッションエンジン
            settings: 統合済みパーミッション設定
            credentials: 認証トークンの提供元
            decision_provider: Ask 判定時に問い合わせるコールバック（None の場合は拒否）
            permission_timeout: 問い合わせのタイムアウト秒数（0 は無制限）
            observer: 進捗通知のコールバック
        """
        self._session = session
        self._transport = transport
        self._dispatcher = dispatcher
        self._engine = engine
        self._settings = settings
        self._credentials = credentials
        self._decision_provider = decision_provider
        self._permission_timeout = permission_timeout
        self._observer = observer or LoopObserver()
        self._learned: list[PermissionRule] = []
        self._state = LoopState.IDLE
        self._task: asyncio.Task[TurnResult] | None = None
        self._cancel_requested = False

    @property
    def session(self) -> Session:
        """会話セッション."""
        return self._session

    @property
    def state(self) -> LoopState:
        """現在の状態."""
        return self._state

    @property
    def settings(self) -> MergedSettings:
        """現在の統合済み設定."""
        return self._settings

    @property
    def observer(self) -> LoopObserver:
        """進捗通知のコールバック."""
        return self._observer

    @observer.setter
    def observer(self, observer: LoopObserver) -> None:
        self._observer = observer

    @property
    def learned_rules(self) -> tuple[PermissionRule, ...]:
        """「常に許可」で追加されたセッション限りのルール."""
        return tuple(self._learned)

    @property
    def is_running(self) -> bool:
        """ターン実行中かどうか."""
        return self._task is not None

    def reload_settings(self, settings: MergedSettings) -> None:
        """
        統合済み設定を差し替える.

        Args:
            settings: 新しい設定

        Raises:
            TurnInProgressError: ターン実行中に呼ばれた場合
        """
        if self.is_running:
            raise TurnInProgressError("reload settings")
        self._settings = settings
        logger.info(
            "Permission settings replaced",
            allow_rules=len(settings.allow),
            deny_rules=len(settings.deny),
        )

    def cancel(self) -> bool:
        """
        実行中のターンをキャンセルする.

        Returns:
            キャンセル対象のターンがあった場合 True
        """
        if self._task is None or self._task.done():
            return False
        logger.info("Cancelling turn", session_id=self._session.id, state=self._state.value)
        self._cancel_requested = True
        self._task.cancel()
        return True

    async def run_turn(self, prompt: str) -> TurnResult:
        """
        ユーザー入力を送信し、ターンを最後まで実行する.

        前のターンがツール実行中にキャンセルされていた場合、未解決のツール呼び出しには
        中断を示す失敗結果を付けてから入力を送る。

        Args:
            prompt: ユーザー入力

        Returns:
            ターンの結果（cancel() で中断された場合は cancelled=True）

        Raises:
            TurnInProgressError: 別のターンが実行中の場合
            ProtocolError: 応答ストリームが不正な場合
            TransportError: 通信に失敗した場合
            AuthError: 認証に失敗した場合
        """
        if self.is_running:
            raise TurnInProgressError("start a turn")

        self._cancel_requested = False
        self._task = asyncio.create_task(self._run(prompt))
        try:
            return await self._task
        except asyncio.CancelledError:
            current = asyncio.current_task()
            # 外側のタスク自体がキャンセルされた場合はそのまま伝播する
            if not self._cancel_requested or (current is not None and current.cancelling()):
                raise
            return TurnResult(reply=None, rounds=0, cancelled=True)
        finally:
            self._task = None

    async def _run(self, prompt: str) -> TurnResult:
        blocks: list[ContentBlock] = []
        pending = self._session.pending_tool_calls()
        if pending:
            logger.info(
                "Answering interrupted tool calls",
                session_id=self._session.id,
                tool_call_ids=[c.id for c in pending],
            )
            blocks.extend(interrupted_results(pending))
        blocks.append(TextBlock(text=prompt))
        self._session.append(Message(role=Role.USER, content=tuple(blocks)))

        rounds = 0
        try:
            while True:
                rounds += 1
                reply = await self._request()
                self._session.append(reply)

                calls = reply.tool_calls
                if not calls:
                    self._state = LoopState.DONE
                    logger.info(
                        "Turn completed", session_id=self._session.id, rounds=rounds
                    )
                    return TurnResult(reply=reply, rounds=rounds)

                # 出現順に1件ずつ処理する
                results = [await self._resolve(call) for call in calls]
                self._session.append(Message(role=Role.USER, content=tuple(results)))
        except asyncio.CancelledError:
            self._state = LoopState.ABORTED
            logger.info(
                "Turn cancelled",
                session_id=self._session.id,
                message_count=len(self._session.messages),
            )
            raise
        except (ProtocolError, TransportError, AuthError) as e:
            self._state = LoopState.ABORTED
            logger.warning(
                "Turn aborted",
                session_id=self._session.id,
                error_type=type(e).__name__,
                error=str(e),
            )
            raise

    async def _request(self) -> Message:
        """リクエストを1回送信し、完成したアシスタントメッセージを返す."""
        self._state = LoopState.AWAITING_RESPONSE
        # トークンの取得はリクエストごとの前提条件
        token = self._credentials.get_valid_token()
        decoder = StreamDecoder(self._transport.send(self._session, token))

        blocks: list[ContentBlock] = []
        text: list[str] = []

        def flush_text() -> None:
            if text:
                blocks.append(TextBlock(text="".join(text)))
                text.clear()

        # 中断時もストリームを確実にクローズする
        async with contextlib.aclosing(aiter(decoder)) as events:
            async for event in events:
                match event:
                    case TextDelta(text=delta):
                        self._state = LoopState.ACCUMULATING_TURN
                        text.append(delta)
                        if self._observer.on_text is not None:
                            await self._observer.on_text(delta)
                    case ToolCallStart():
                        self._state = LoopState.ACCUMULATING_TURN
                    case ToolCallEnd(call=call):
                        flush_text()
                        blocks.append(ToolUseBlock.from_call(call))
                    case ProtocolErrorEvent(message=message):
                        raise ProtocolError(message)
        flush_text()

        return Message(role=Role.ASSISTANT, content=tuple(blocks))

    async def _resolve(self, call: ToolCall) -> ToolResultBlock:
        output = await self._authorize_and_run(call)
        if self._observer.on_tool_result is not None:
            await self._observer.on_tool_result(call, output)
        return ToolResultBlock(
            tool_use_id=call.id, content=output.content, is_error=output.is_error
        )

    async def _authorize_and_run(self, call: ToolCall) -> ToolOutput:
        if not self._dispatcher.knows(call.name):
            logger.warning("Model requested unknown tool", tool=call.name, call_id=call.id)
            return ToolOutput.failure(f"Unknown tool: {call.name}")

        decision = self._engine.evaluate(call, self._settings, self._learned)
        logger.info(
            "Permission evaluated",
            tool=call.name,
            call_id=call.id,
            decision=decision.decision.value,
            reason=decision.reason.value,
            rule=str(decision.rule) if decision.rule else None,
        )

        if decision.decision is Decision.DENY:
            return ToolOutput.failure(f"Permission denied by rule {decision.rule}.")

        if decision.decision is Decision.ASK:
            answer = await self._ask(call, decision)
            if answer is UserDecision.DENY:
                return ToolOutput.failure(USER_DENIAL)
            if answer is UserDecision.ALLOW_ALWAYS:
                self._learn(call)

        self._state = LoopState.EXECUTING_TOOL
        if self._observer.on_tool_start is not None:
            await self._observer.on_tool_start(call)
        return await self._dispatcher.dispatch(call)

    async def _ask(self, call: ToolCall, decision: PermissionDecision) -> UserDecision:
        if self._decision_provider is None:
            logger.warning("No decision provider, denying", tool=call.name, call_id=call.id)
            return UserDecision.DENY

        self._state = LoopState.AWAITING_PERMISSION
        request = PermissionRequest(
            tool_call=call,
            decision=decision,
            suggested_rule=suggest_rule(call, self._engine.project_root),
        )
        try:
            answer = await asyncio.wait_for(
                self._decision_provider(request),
                timeout=self._permission_timeout or None,
            )
        except TimeoutError:
            logger.warning(
                "Permission request timed out, denying",
                tool=call.name,
                call_id=call.id,
                timeout=self._permission_timeout,
            )
            return UserDecision.DENY

        logger.info(
            "Permission answered", tool=call.name, call_id=call.id, answer=answer.value
        )
        return answer

    def _learn(self, call: ToolCall) -> None:
        text = suggest_rule(call, self._engine.project_root)
        try:
            rule = PermissionRule.parse(text, RuleAction.ALLOW, Layer.SESSION)
        except ValueError:
            logger.warning("Could not derive rule from tool call", rule=text, tool=call.name)
            return
        if rule not in self._learned:
            self._learned.append(rule)
            logger.info("Learned session rule", rule=str(rule))
