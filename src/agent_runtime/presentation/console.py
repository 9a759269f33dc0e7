"""Terminal front end."""

from __future__ import annotations

import asyncio
import json
import sys
from typing import TYPE_CHECKING, Protocol

from agent_runtime.application.agent import LoopObserver, TurnInProgressError
from agent_runtime.infrastructure.auth import AuthError
from agent_runtime.infrastructure.logging import get_logger
from agent_runtime.infrastructure.stream import ProtocolError
from agent_runtime.infrastructure.transport import TransportError
from agent_runtime.presentation.commands import is_command

if TYPE_CHECKING:
    from collections.abc import Callable

    from agent_runtime.application.agent import AgentLoop
    from agent_runtime.application.models import ToolCall
    from agent_runtime.application.tools import ToolOutput
    from agent_runtime.presentation.commands import CommandHandler

logger = get_logger(__name__)

# ツール結果の表示上限
MAX_RESULT_DISPLAY = 300


class LineReader(Protocol):
    """1行ずつ入力を返すもの."""

    async def readline(self) -> str | None:
        """1行を返す（入力が終了した場合は None）."""
        ...


class StdinReader:
    """標準入力を非同期に読むリーダー（キャンセル可能）."""

    def __init__(self) -> None:
        """Initialize StdinReader."""
        self._reader: asyncio.StreamReader | None = None

    async def readline(self) -> str | None:
        """標準入力から1行を読む."""
        if self._reader is None:
            loop = asyncio.get_running_loop()
            reader = asyncio.StreamReader()
            await loop.connect_read_pipe(
                lambda: asyncio.StreamReaderProtocol(reader), sys.stdin
            )
            self._reader = reader
        data = await self._reader.readline()
        if not data:
            return None
        return data.decode("utf-8", errors="replace").rstrip("\r\n")


def write_stdout(text: str) -> None:
    """標準出力に書き込んでフラッシュする."""
    sys.stdout.write(text)
    sys.stdout.flush()


def describe_call(call: ToolCall) -> str:
    """ツール呼び出しの1行表示."""
    if not call.input:
        return f"{call.name}()"
    first = next(iter(call.input.values()))
    summary = first if isinstance(first, str) else json.dumps(first, ensure_ascii=False)
    if len(summary) > 80:
        summary = summary[:77] + "..."
    return f"{call.name}({summary})"


class ConsoleApp:
    """
    対話ループ.

    入力がスラッシュコマンドなら CommandHandler で処理し、それ以外は AgentLoop の
    ターンとして実行する。ターンを中断するエラーは表示して次の入力を待つ。
    """

    def __init__(
        self,
        agent: AgentLoop,
        commands: CommandHandler,
        reader: LineReader,
        write: Callable[[str], None] = write_stdout,
    ) -> None:
        """
        Initialize ConsoleApp.

        Args:
            agent: 対象の AgentLoop
            commands: コマンドハンドラー
            reader: 行入力の読み取り元
            write: 出力関数
        """
        self._agent = agent
        self._commands = commands
        self._reader = reader
        self._write = write

    def observer(self) -> LoopObserver:
        """進捗を表示する LoopObserver を作成する."""

        async def on_text(delta: str) -> None:
            self._write(delta)

        async def on_tool_start(call: ToolCall) -> None:
            self._write(f"\n* {describe_call(call)}\n")

        async def on_tool_result(call: ToolCall, output: ToolOutput) -> None:
            content = output.content
            if len(content) > MAX_RESULT_DISPLAY:
                content = content[:MAX_RESULT_DISPLAY] + "..."
            prefix = "  x " if output.is_error else "  - "
            self._write(prefix + content.replace("\n", "\n    ") + "\n")

        return LoopObserver(
            on_text=on_text, on_tool_start=on_tool_start, on_tool_result=on_tool_result
        )

    async def run(self) -> None:
        """入力が終了するか /quit が入力されるまで対話を続ける."""
        self._write("/help でコマンド一覧を表示します。\n")
        while True:
            self._write("\n> ")
            line = await self._reader.readline()
            if line is None:
                logger.info("Input closed")
                return
            line = line.strip()
            if not line:
                continue

            if is_command(line):
                result = self._commands.handle(line)
                self._write(result.output + "\n")
                if result.quit:
                    return
                continue

            await self.submit(line)

    async def submit(self, prompt: str) -> None:
        """1ターンを実行し、中断時のエラーを表示する."""
        try:
            result = await self._agent.run_turn(prompt)
        except AuthError as e:
            self._write(f"\n認証エラー: {e.message}\n再認証してから再度お試しください。\n")
            return
        except TransportError as e:
            self._write(f"\n通信エラー: {e.message}\n")
            return
        except ProtocolError as e:
            self._write(f"\n応答エラー: {e.message}\n")
            return
        except TurnInProgressError as e:
            self._write(f"\n{e}\n")
            return

        if result.cancelled:
            self._write("\n中断しました。\n")
        else:
            self._write("\n")
