"""Tests for the HTTP transport and credentials."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING

import httpx
import pytest

from agent_runtime.application.models import (
    Message,
    Role,
    TextBlock,
    ToolResultBlock,
    ToolUseBlock,
)
from agent_runtime.application.session import Session
from agent_runtime.infrastructure.auth import (
    AuthError,
    Credentials,
    StaticCredentialProvider,
    TokenType,
    classify_token,
    load_credentials,
)
from agent_runtime.infrastructure.transport import (
    OAUTH_BETA_HEADER,
    HttpTransport,
    TransportError,
    serialize_messages,
)

if TYPE_CHECKING:
    from collections.abc import Callable
    from pathlib import Path

API_URL = "https://api.example.test/v1/messages"


def make_transport(
    handler: Callable[[httpx.Request], httpx.Response], **kwargs: object
) -> HttpTransport:
    """MockTransportを使うHttpTransportを作成する."""
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return HttpTransport(
        api_url=API_URL,
        api_version="2023-06-01",
        max_tokens=1024,
        client=client,
        **kwargs,  # type: ignore[arg-type]
    )


def session_with(*messages: Message) -> Session:
    """メッセージを持つSessionを作成する."""
    session = Session(model_id="claude-haiku-4-5-20251001")
    for message in messages:
        session.append(message)
    return session


class TestSerializeMessages:
    """serialize_messages関数のテスト."""

    def test_content_blocks(self) -> None:
        """コンテンツブロックがAPI形式に変換されることを確認する."""
        messages = [
            Message(role=Role.USER, content=(TextBlock(text="hi"),)),
            Message(
                role=Role.ASSISTANT,
                content=(ToolUseBlock(id="t1", name="Bash", input={"command": "ls"}),),
            ),
            Message(
                role=Role.USER,
                content=(ToolResultBlock(tool_use_id="t1", content="a.txt", is_error=False),),
            ),
        ]

        assert serialize_messages(messages) == [
            {"role": "user", "content": [{"type": "text", "text": "hi"}]},
            {
                "role": "assistant",
                "content": [
                    {"type": "tool_use", "id": "t1", "name": "Bash", "input": {"command": "ls"}}
                ],
            },
            {
                "role": "user",
                "content": [
                    {"type": "tool_result", "tool_use_id": "t1", "content": "a.txt", "is_error": False}
                ],
            },
        ]

    def test_consecutive_same_role_coalesced(self) -> None:
        """同じロールの連続するメッセージが1つにまとめられることを確認する."""
        messages = [
            Message(role=Role.USER, content=(TextBlock(text="first"),)),
            Message(role=Role.USER, content=(TextBlock(text="second"),)),
        ]

        serialized = serialize_messages(messages)

        assert serialized == [
            {
                "role": "user",
                "content": [{"type": "text", "text": "first"}, {"type": "text", "text": "second"}],
            }
        ]
        # 履歴自体は変更されない
        assert len(messages[0].content) == 1

    def test_empty_message_skipped(self) -> None:
        """内容が空のメッセージは送信されないことを確認する."""
        messages = [
            Message(role=Role.USER, content=(TextBlock(text="hi"),)),
            Message(role=Role.ASSISTANT),
            Message(role=Role.USER, content=(TextBlock(text="again"),)),
        ]

        serialized = serialize_messages(messages)

        assert len(serialized) == 1
        assert [b["text"] for b in serialized[0]["content"]] == ["hi", "again"]


class TestHttpTransport:
    """HttpTransportのテスト."""

    @pytest.mark.asyncio
    async def test_request_and_stream(self) -> None:
        """リクエストの内容と応答本文のストリーミングを確認する."""
        captured: list[httpx.Request] = []
        body = "event: message_stop\ndata: {}\n\n"

        def handler(request: httpx.Request) -> httpx.Response:
            captured.append(request)
            return httpx.Response(200, text=body)

        transport = make_transport(
            handler,
            system_prompt="You are helpful.",
            tools=[{"name": "Bash", "description": "Run", "input_schema": {"type": "object"}}],
        )
        session = session_with(Message(role=Role.USER, content=(TextBlock(text="hi"),)))

        chunks = [chunk async for chunk in transport.send(session, "sk-ant-api03-key")]

        assert "".join(chunks) == body
        request = captured[0]
        assert request.method == "POST"
        assert str(request.url) == API_URL
        assert request.headers["x-api-key"] == "sk-ant-api03-key"
        assert request.headers["anthropic-version"] == "2023-06-01"
        assert "authorization" not in request.headers
        payload = json.loads(request.content)
        assert payload["model"] == "claude-haiku-4-5-20251001"
        assert payload["max_tokens"] == 1024
        assert payload["stream"] is True
        assert payload["system"] == "You are helpful."
        assert payload["tools"][0]["name"] == "Bash"
        assert payload["messages"] == [
            {"role": "user", "content": [{"type": "text", "text": "hi"}]}
        ]

    @pytest.mark.asyncio
    async def test_oauth_headers(self) -> None:
        """OAuthアクセストークンではBearer認証とベータヘッダーが使われることを確認する."""
        captured: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            captured.append(request)
            return httpx.Response(200, text="")

        transport = make_transport(handler)

        _ = [chunk async for chunk in transport.send(session_with(), "sk-ant-oat01-token")]

        headers = captured[0].headers
        assert headers["authorization"] == "Bearer sk-ant-oat01-token"
        assert headers["anthropic-beta"] == OAUTH_BETA_HEADER
        assert "x-api-key" not in headers

    @pytest.mark.asyncio
    async def test_optional_fields_omitted(self) -> None:
        """システムプロンプトとツールがない場合はボディに含まれないことを確認する."""
        captured: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            captured.append(request)
            return httpx.Response(200, text="")

        transport = make_transport(handler)

        _ = [chunk async for chunk in transport.send(session_with(), "key")]

        payload = json.loads(captured[0].content)
        assert "system" not in payload
        assert "tools" not in payload

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [401, 403])
    async def test_auth_rejected(self, status: int) -> None:
        """401/403 でAuthErrorが発生することを確認する."""
        transport = make_transport(lambda request: httpx.Response(status, text="invalid key"))

        with pytest.raises(AuthError, match=str(status)):
            _ = [chunk async for chunk in transport.send(session_with(), "key")]

    @pytest.mark.asyncio
    async def test_http_error(self) -> None:
        """その他のHTTPエラーでステータス付きのTransportErrorが発生することを確認する."""
        transport = make_transport(
            lambda request: httpx.Response(529, json={"error": {"message": "Overloaded"}})
        )

        with pytest.raises(TransportError) as exc_info:
            _ = [chunk async for chunk in transport.send(session_with(), "key")]

        assert exc_info.value.status_code == 529
        assert "Overloaded" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_network_error(self) -> None:
        """通信エラーがTransportErrorに変換されることを確認する."""

        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        transport = make_transport(handler)

        with pytest.raises(TransportError, match="connection refused") as exc_info:
            _ = [chunk async for chunk in transport.send(session_with(), "key")]

        assert exc_info.value.status_code is None

    @pytest.mark.asyncio
    async def test_close_keeps_injected_client(self) -> None:
        """外部から渡したクライアントはクローズしないことを確認する."""
        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(200)))
        transport = HttpTransport(
            api_url=API_URL, api_version="2023-06-01", max_tokens=1, client=client
        )

        await transport.close()

        assert not client.is_closed
        await client.aclose()


class TestCredentials:
    """認証情報のテスト."""

    @pytest.mark.parametrize(
        ("token", "expected"),
        [
            ("sk-ant-oat01-abc", TokenType.OAUTH_ACCESS),
            ("sk-ant-ort01-abc", TokenType.OAUTH_REFRESH),
            ("sk-ant-api03-abc", TokenType.API_KEY),
        ],
    )
    def test_classify_token(self, token: str, expected: TokenType) -> None:
        """トークンの種類が接頭辞から判定されることを確認する."""
        assert classify_token(token) == expected

    def test_explicit_token(self, tmp_path: Path) -> None:
        """明示的に指定したトークンが優先されることを確認する."""
        path = tmp_path / "credentials.json"
        path.write_text(json.dumps({"token": "from-file"}), encoding="utf-8")
        provider = StaticCredentialProvider(token="explicit", credentials_file=path)

        assert provider.get_valid_token() == "explicit"

    def test_token_from_file(self, tmp_path: Path) -> None:
        """認証ファイルのトークンが使われることを確認する."""
        path = tmp_path / "credentials.json"
        path.write_text(
            json.dumps({"token": "sk-ant-oat01-x", "is_oauth": True}), encoding="utf-8"
        )

        assert StaticCredentialProvider(credentials_file=path).get_valid_token() == "sk-ant-oat01-x"
        credentials = load_credentials(path)
        assert credentials == Credentials(token="sk-ant-oat01-x", is_oauth=True)
        assert credentials is not None
        assert credentials.token_type == TokenType.OAUTH_ACCESS

    def test_no_token(self, tmp_path: Path) -> None:
        """トークンがない場合はAuthErrorが発生することを確認する."""
        provider = StaticCredentialProvider(credentials_file=tmp_path / "missing.json")

        with pytest.raises(AuthError, match="no API key"):
            provider.get_valid_token()

    def test_refresh_token_only(self) -> None:
        """リフレッシュトークンしかない場合はAuthErrorが発生することを確認する."""
        with pytest.raises(AuthError, match="refresh token"):
            StaticCredentialProvider(token="sk-ant-ort01-x").get_valid_token()

    def test_malformed_file(self, tmp_path: Path) -> None:
        """認証ファイルが不正な場合はAuthErrorが発生することを確認する."""
        path = tmp_path / "credentials.json"
        path.write_text("{not json", encoding="utf-8")

        with pytest.raises(AuthError, match="unreadable credentials file"):
            load_credentials(path)
