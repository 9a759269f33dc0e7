"""Server-sent event stream decoder for the Messages API."""

from __future__ import annotations

import json
from collections.abc import AsyncGenerator, AsyncIterable, AsyncIterator
from dataclasses import dataclass
from typing import Any

from pydantic import ValidationError

from agent_runtime.application.models import ToolCall
from agent_runtime.infrastructure.logging import get_logger

logger = get_logger(__name__)


class ProtocolError(Exception):
    """ストリームの内容が不正な場合の例外."""

    def __init__(self, message: str) -> None:
        """
        Initialize ProtocolError.

        Args:
            message: エラーメッセージ
        """
        super().__init__(f"Protocol error: {message}")
        self.message = message


# ---------------------------------------------------------------------------
# StreamEvent
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TextDelta:
    """テキストの差分."""

    text: str


@dataclass(frozen=True)
class ToolCallStart:
    """ツール呼び出しの開始."""

    id: str
    name: str


@dataclass(frozen=True)
class ToolCallArgDelta:
    """ツール引数（部分JSON）の断片."""

    id: str
    fragment: str


@dataclass(frozen=True)
class ToolCallEnd:
    """ツール呼び出しの完了（引数はパース済み）."""

    id: str
    call: ToolCall


@dataclass(frozen=True)
class TurnEnd:
    """応答の正常終了."""

    stop_reason: str | None = None


@dataclass(frozen=True)
class ProtocolErrorEvent:
    """ストリームの異常終了."""

    message: str


StreamEvent = (
    TextDelta | ToolCallStart | ToolCallArgDelta | ToolCallEnd | TurnEnd | ProtocolErrorEvent
)


@dataclass(frozen=True)
class Frame:
    """SSE の1フレーム."""

    event: str
    data: str


def _parse_frame(block: str) -> Frame | None:
    event = "message"
    data_lines: list[str] = []
    for line in block.split("\n"):
        if not line or line.startswith(":"):
            continue
        name, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if name == "event":
            event = value
        elif name == "data":
            data_lines.append(value)
    if not data_lines and event == "message":
        # コメントのみのフレーム（keep-alive）
        return None
    return Frame(event=event, data="\n".join(data_lines))


async def iter_frames(chunks: AsyncIterable[str]) -> AsyncGenerator[Frame, None]:
    """
    テキストチャンク列を SSE フレームに分割する.

    フレームは空行で区切られる。チャンクの境界はフレームの境界と一致しなくてよい。

    Args:
        chunks: トランスポートから受け取るテキストチャンク

    Yields:
        フレーム
    """
    buffer = ""
    pending_cr = False
    async for chunk in chunks:
        if pending_cr:
            chunk = "\r" + chunk
            pending_cr = False
        # チャンク末尾の \r は次のチャンクの \n と対になる可能性がある
        if chunk.endswith("\r"):
            chunk = chunk[:-1]
            pending_cr = True
        buffer += chunk.replace("\r\n", "\n").replace("\r", "\n")
        while "\n\n" in buffer:
            block, buffer = buffer.split("\n\n", 1)
            frame = _parse_frame(block)
            if frame is not None:
                yield frame
    if pending_cr:
        buffer += "\n"
    if buffer.strip():
        frame = _parse_frame(buffer)
        if frame is not None:
            yield frame


class _DecodeError(Exception):
    pass


@dataclass
class _ToolBlock:
    id: str
    name: str
    fragments: list[str]


class StreamDecoder:
    """
    SSE のテキストチャンク列を StreamEvent 列に変換する.

    イテレーションは1回限りで、途中から再開したり最初からやり直したりはできない。
    ツール引数は content_block_stop を受け取るまでバッファし、その時点で1度だけパースする。
    ProtocolErrorEvent または TurnEnd を出力した時点で列は終わる。
    """

    def __init__(self, chunks: AsyncIterable[str]) -> None:
        """
        Initialize StreamDecoder.

        Args:
            chunks: トランスポートから受け取るテキストチャンク
        """
        self._chunks = chunks
        self._started = False
        # content block index -> 構築中のツール呼び出し
        self._tool_blocks: dict[int, _ToolBlock] = {}
        self._text_blocks: set[int] = set()
        self._seen_ids: set[str] = set()
        self._stop_reason: str | None = None

    def __aiter__(self) -> AsyncIterator[StreamEvent]:
        if self._started:
            msg = "StreamDecoder can only be iterated once"
            raise RuntimeError(msg)
        self._started = True
        return self._events()

    async def _events(self) -> AsyncIterator[StreamEvent]:
        frames = iter_frames(self._chunks)
        try:
            async for frame in frames:
                try:
                    events = self._handle(frame)
                except _DecodeError as e:
                    logger.warning("Malformed stream frame", sse_event=frame.event, error=str(e))
                    yield ProtocolErrorEvent(str(e))
                    return
                for event in events:
                    yield event
                    if isinstance(event, (TurnEnd, ProtocolErrorEvent)):
                        return
        finally:
            await frames.aclose()
            closer = getattr(self._chunks, "aclose", None)
            if closer is not None:
                await closer()

        yield ProtocolErrorEvent("stream ended before message_stop")

    def _handle(self, frame: Frame) -> list[StreamEvent]:
        handler = _HANDLERS.get(frame.event)
        if handler is None:
            # ping / message_start / 未知のイベントは読み飛ばす
            return []
        try:
            payload = json.loads(frame.data) if frame.data else {}
        except json.JSONDecodeError as e:
            msg = f"invalid JSON in {frame.event} frame"
            raise _DecodeError(msg) from e
        if not isinstance(payload, dict):
            msg = f"{frame.event} payload is not an object"
            raise _DecodeError(msg)
        return handler(self, payload)

    def _on_block_start(self, payload: dict[str, Any]) -> list[StreamEvent]:
        index = _index(payload)
        block = payload.get("content_block")
        if not isinstance(block, dict):
            msg = "content_block_start without content_block"
            raise _DecodeError(msg)
        if block.get("type") == "text":
            self._text_blocks.add(index)
            text = block.get("text") or ""
            return [TextDelta(text)] if text else []
        if block.get("type") == "tool_use":
            call_id = block.get("id")
            name = block.get("name")
            if not isinstance(call_id, str) or not call_id or not isinstance(name, str):
                msg = "tool_use block without id or name"
                raise _DecodeError(msg)
            if call_id in self._seen_ids:
                msg = f"duplicate tool call id {call_id}"
                raise _DecodeError(msg)
            self._seen_ids.add(call_id)
            self._tool_blocks[index] = _ToolBlock(id=call_id, name=name, fragments=[])
            return [ToolCallStart(id=call_id, name=name)]
        # thinking など未対応のブロックは無視する
        return []

    def _on_block_delta(self, payload: dict[str, Any]) -> list[StreamEvent]:
        index = _index(payload)
        delta = payload.get("delta")
        if not isinstance(delta, dict):
            msg = "content_block_delta without delta"
            raise _DecodeError(msg)
        delta_type = delta.get("type")
        if delta_type == "text_delta":
            if index not in self._text_blocks:
                msg = f"text_delta for unknown block {index}"
                raise _DecodeError(msg)
            text = delta.get("text")
            if not isinstance(text, str):
                msg = "text_delta without text"
                raise _DecodeError(msg)
            return [TextDelta(text)]
        if delta_type == "input_json_delta":
            block = self._tool_blocks.get(index)
            if block is None:
                msg = f"input_json_delta for unknown block {index}"
                raise _DecodeError(msg)
            fragment = delta.get("partial_json")
            if not isinstance(fragment, str):
                msg = "input_json_delta without partial_json"
                raise _DecodeError(msg)
            block.fragments.append(fragment)
            return [ToolCallArgDelta(id=block.id, fragment=fragment)]
        return []

    def _on_block_stop(self, payload: dict[str, Any]) -> list[StreamEvent]:
        index = _index(payload)
        self._text_blocks.discard(index)
        block = self._tool_blocks.pop(index, None)
        if block is None:
            return []
        text = "".join(block.fragments)
        try:
            arguments = json.loads(text) if text.strip() else {}
        except json.JSONDecodeError as e:
            msg = f"arguments for tool call {block.id} are not valid JSON"
            raise _DecodeError(msg) from e
        if not isinstance(arguments, dict):
            msg = f"arguments for tool call {block.id} are not an object"
            raise _DecodeError(msg)
        try:
            call = ToolCall(id=block.id, name=block.name, input=arguments)
        except ValidationError as e:
            raise _DecodeError(str(e)) from e
        return [ToolCallEnd(id=block.id, call=call)]

    def _on_message_delta(self, payload: dict[str, Any]) -> list[StreamEvent]:
        delta = payload.get("delta")
        if isinstance(delta, dict) and isinstance(delta.get("stop_reason"), str):
            self._stop_reason = delta["stop_reason"]
        return []

    def _on_message_stop(self, payload: dict[str, Any]) -> list[StreamEvent]:
        if self._tool_blocks:
            msg = "message_stop with unfinished tool calls"
            raise _DecodeError(msg)
        return [TurnEnd(stop_reason=self._stop_reason)]

    def _on_error(self, payload: dict[str, Any]) -> list[StreamEvent]:
        error = payload.get("error")
        message = "Unknown error"
        if isinstance(error, dict) and isinstance(error.get("message"), str):
            message = error["message"]
        return [ProtocolErrorEvent(message)]


def _index(payload: dict[str, Any]) -> int:
    index = payload.get("index")
    if not isinstance(index, int):
        msg = "frame without content block index"
        raise _DecodeError(msg)
    return index


_HANDLERS = {
    "content_block_start": StreamDecoder._on_block_start,
    "content_block_delta": StreamDecoder._on_block_delta,
    "content_block_stop": StreamDecoder._on_block_stop,
    "message_delta": StreamDecoder._on_message_delta,
    "message_stop": StreamDecoder._on_message_stop,
    "error": StreamDecoder._on_error,
}
