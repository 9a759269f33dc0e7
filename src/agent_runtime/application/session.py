"""Conversation session state."""

from __future__ import annotations

import uuid
from datetime import datetime

from pydantic import BaseModel, Field

from agent_runtime.application.models import (
    Message,
    Role,
    ToolCall,
    ToolResultBlock,
)
from agent_runtime.infrastructure.config import DEFAULT_MODEL
from agent_runtime.infrastructure.logging import get_logger

logger = get_logger(__name__)

# (モデルID, 表示名)
AVAILABLE_MODELS: tuple[tuple[str, str], ...] = (
    ("claude-sonnet-4-5-20250929", "Sonnet 4.5"),
    ("claude-opus-4-6", "Opus 4.6"),
    ("claude-haiku-4-5-20251001", "Haiku 4.5"),
)


class SessionStateError(Exception):
    """履歴への追加が会話の整合性を壊す場合の例外."""

    def __init__(self, session_id: str, message: str) -> None:
        """
        Initialize SessionStateError.

        Args:
            session_id: セッションID
            message: エラーメッセージ
        """
        super().__init__(f"Invalid history update for session {session_id}: {message}")
        self.session_id = session_id


class Session(BaseModel):
    """
    会話セッション.

    履歴は追記のみ。例外は clear() による全消去で、その場合もモデル選択は保持される。
    """

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    model_id: str = DEFAULT_MODEL
    messages: list[Message] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=datetime.now)
    last_activity_at: datetime = Field(default_factory=datetime.now)

    def append(self, message: Message) -> None:
        """
        メッセージを履歴に追加する.

        直前のアシスタントメッセージに未解決の ToolUse がある場合、
        追加するユーザーメッセージはその全てに対応する ToolResult を含んでいなければならない。

        Args:
            message: 追加するメッセージ

        Raises:
            SessionStateError: ToolUse と ToolResult の対応が崩れる場合
        """
        pending = self.pending_tool_calls()
        if pending:
            if message.role is not Role.USER:
                raise SessionStateError(
                    self.id, "tool calls must be answered by a user message"
                )
            answered = [r.tool_use_id for r in message.tool_results]
            expected = [c.id for c in pending]
            if sorted(answered) != sorted(expected):
                raise SessionStateError(
                    self.id,
                    f"expected results for {expected}, got {answered}",
                )
        self.messages.append(message)
        self.last_activity_at = datetime.now()

    def pending_tool_calls(self) -> list[ToolCall]:
        """
        最後のメッセージに含まれる未解決のツール呼び出しを返す.

        Returns:
            最後のメッセージがアシスタントの場合はその ToolCall 一覧、それ以外は空リスト
        """
        if not self.messages or self.messages[-1].role is not Role.ASSISTANT:
            return []
        return self.messages[-1].tool_calls

    def clear(self) -> None:
        """履歴を全て破棄する（モデル選択は保持）."""
        logger.info(
            "Clearing session history",
            session_id=self.id,
            message_count=len(self.messages),
        )
        self.messages.clear()
        self.last_activity_at = datetime.now()

    def set_model(self, model_id: str) -> None:
        """使用するモデルを変更する."""
        logger.info(
            "Switching model", session_id=self.id, old=self.model_id, new=model_id
        )
        self.model_id = model_id


# ファイル操作のスレッドは中断後も完了まで動き続ける
INTERRUPTED_MESSAGE = (
    "Tool execution was interrupted. "
    "It may have partially completed; check its effects before retrying."
)


def interrupted_results(calls: list[ToolCall]) -> list[ToolResultBlock]:
    """中断されたツール呼び出しに対する失敗結果を作成する."""
    return [
        ToolResultBlock(
            tool_use_id=call.id,
            content=INTERRUPTED_MESSAGE,
            is_error=True,
        )
        for call in calls
    ]


def find_model(requested: str) -> tuple[str, str] | None:
    """
    モデルIDまたは表示名からモデルを検索する.

    完全一致を優先し、見つからなければIDまたは表示名（大文字小文字無視）の部分一致で探す。

    Args:
        requested: ユーザーが指定した文字列

    Returns:
        (モデルID, 表示名)。見つからない場合は None
    """
    for model_id, label in AVAILABLE_MODELS:
        if model_id == requested:
            return model_id, label
    lowered = requested.lower()
    for model_id, label in AVAILABLE_MODELS:
        if requested in model_id or lowered in label.lower():
            return model_id, label
    return None
