"""Data models for cross-layer communication."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field

if TYPE_CHECKING:
    from agent_runtime.application.permission import PermissionDecision


class Role(str, Enum):
    """メッセージの送信者."""

    USER = "user"
    ASSISTANT = "assistant"


class ToolCall(BaseModel):
    """モデルが要求したツール呼び出し."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    input: dict[str, Any] = Field(default_factory=dict)


class TextBlock(BaseModel):
    """テキストのコンテンツブロック."""

    model_config = ConfigDict(frozen=True)

    type: Literal["text"] = "text"
    text: str


class ToolUseBlock(BaseModel):
    """ツール呼び出しのコンテンツブロック."""

    model_config = ConfigDict(frozen=True)

    type: Literal["tool_use"] = "tool_use"
    id: str
    name: str
    input: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_call(cls, call: ToolCall) -> ToolUseBlock:
        """ToolCall からブロックを作成する."""
        return cls(id=call.id, name=call.name, input=call.input)

    @property
    def call(self) -> ToolCall:
        """ブロックが表すツール呼び出し."""
        return ToolCall(id=self.id, name=self.name, input=self.input)


class ToolResultBlock(BaseModel):
    """ツール実行結果のコンテンツブロック."""

    model_config = ConfigDict(frozen=True)

    type: Literal["tool_result"] = "tool_result"
    tool_use_id: str
    content: str
    is_error: bool = False


ContentBlock = Annotated[
    TextBlock | ToolUseBlock | ToolResultBlock,
    Field(discriminator="type"),
]


class Message(BaseModel):
    """会話履歴の1メッセージ."""

    model_config = ConfigDict(frozen=True)

    role: Role
    content: tuple[ContentBlock, ...] = ()

    @property
    def text(self) -> str:
        """テキストブロックを連結した文字列."""
        return "".join(b.text for b in self.content if isinstance(b, TextBlock))

    @property
    def tool_calls(self) -> list[ToolCall]:
        """メッセージに含まれるツール呼び出し（出現順）."""
        return [b.call for b in self.content if isinstance(b, ToolUseBlock)]

    @property
    def tool_results(self) -> list[ToolResultBlock]:
        """メッセージに含まれるツール実行結果."""
        return [b for b in self.content if isinstance(b, ToolResultBlock)]


class UserDecision(str, Enum):
    """対話的なパーミッション確認への回答."""

    ALLOW = "allow"
    ALLOW_ALWAYS = "allow_always"
    DENY = "deny"


@dataclass(frozen=True)
class PermissionRequest:
    """パーミッション要求（AgentLoop → 対話UI）."""

    tool_call: ToolCall
    decision: PermissionDecision
    suggested_rule: str
