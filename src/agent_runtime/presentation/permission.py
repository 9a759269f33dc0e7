"""Interactive permission prompt for the terminal."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING

from agent_runtime.application.models import (
    PermissionRequest,  # noqa: TC001
    UserDecision,
)
from agent_runtime.infrastructure.logging import get_logger

if TYPE_CHECKING:
    from collections.abc import Callable

    from agent_runtime.presentation.console import LineReader

logger = get_logger(__name__)

# 入力の表示上限
MAX_INPUT_DISPLAY = 400

_ANSWERS: dict[str, UserDecision] = {
    "y": UserDecision.ALLOW,
    "yes": UserDecision.ALLOW,
    "a": UserDecision.ALLOW_ALWAYS,
    "always": UserDecision.ALLOW_ALWAYS,
    "n": UserDecision.DENY,
    "no": UserDecision.DENY,
}


def format_permission_request(request: PermissionRequest) -> str:
    """パーミッション要求の表示テキストを作成する."""
    call = request.tool_call
    display_input = json.dumps(call.input, ensure_ascii=False, indent=2)
    if len(display_input) > MAX_INPUT_DISPLAY:
        display_input = display_input[:MAX_INPUT_DISPLAY] + "\n..."
    return (
        f"\n[Permission] {call.name} ({call.id[:12]})\n"
        f"{display_input}\n"
        f"  y: 承認 / a: 常に承認 ({request.suggested_rule}) / n: 拒否\n"
    )


def parse_answer(text: str) -> UserDecision | None:
    """回答文字列を解釈する（解釈できなければ None）."""
    return _ANSWERS.get(text.strip().lower())


class ConsolePermissionPrompt:
    """
    ターミナルでパーミッションを確認する decision provider.

    AgentLoop に decision_provider として渡す。入力が途切れた場合は拒否として扱う。
    """

    def __init__(self, reader: LineReader, write: Callable[[str], None]) -> None:
        """
        Initialize ConsolePermissionPrompt.

        Args:
            reader: 行入力の読み取り元
            write: 出力関数
        """
        self._reader = reader
        self._write = write

    async def __call__(self, request: PermissionRequest) -> UserDecision:
        """
        ユーザーに承認を求める.

        Args:
            request: パーミッション要求

        Returns:
            ユーザーの回答
        """
        self._write(format_permission_request(request))
        while True:
            self._write("> ")
            line = await self._reader.readline()
            if line is None:
                logger.info("Input closed during permission prompt, denying")
                return UserDecision.DENY
            answer = parse_answer(line)
            if answer is not None:
                return answer
            self._write("y / a / n のいずれかを入力してください。\n")
