"""HTTP transport to the Messages API."""

from __future__ import annotations

from collections.abc import AsyncIterator, Sequence
from typing import TYPE_CHECKING, Any, Protocol

import httpx

from agent_runtime.infrastructure.auth import AuthError, TokenType, classify_token
from agent_runtime.infrastructure.logging import get_logger

if TYPE_CHECKING:
    from agent_runtime.application.models import Message
    from agent_runtime.application.session import Session

logger = get_logger(__name__)

OAUTH_BETA_HEADER = "oauth-2025-04-20"


class TransportError(Exception):
    """モデルサービスとの通信に失敗した場合の例外."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        """
        Initialize TransportError.

        Args:
            message: エラーメッセージ
            status_code: HTTPステータスコード（通信自体に失敗した場合は None）
        """
        super().__init__(f"Transport error: {message}")
        self.message = message
        self.status_code = status_code


class Transport(Protocol):
    """会話履歴を送信し、応答ストリームのテキストチャンクを返すもの."""

    def send(self, session: Session, token: str) -> AsyncIterator[str]:
        """履歴を送信して応答ストリームを返す."""
        ...


def serialize_messages(messages: Sequence[Message]) -> list[dict[str, Any]]:
    """
    会話履歴を Messages API の messages パラメータに変換する.

    同じロールのメッセージが連続する場合は1つにまとめる（履歴自体は変更しない）。
    内容が空のメッセージは送信しない。

    Args:
        messages: 会話履歴

    Returns:
        APIリクエスト用のメッセージ一覧
    """
    serialized: list[dict[str, Any]] = []
    for message in messages:
        if not message.content:
            continue
        data = message.model_dump(mode="json")
        if serialized and serialized[-1]["role"] == data["role"]:
            serialized[-1]["content"].extend(data["content"])
        else:
            serialized.append(data)
    return serialized


class HttpTransport:
    """httpx で Messages API にストリーミングリクエストを送る Transport."""

    def __init__(
        self,
        api_url: str,
        api_version: str,
        max_tokens: int,
        system_prompt: str | None = None,
        tools: list[dict[str, Any]] | None = None,
        client: httpx.AsyncClient | None = None,
        timeout: float = 300.0,
    ) -> None:
        """
        Initialize HttpTransport.

        Args:
            api_url: Messages APIのエンドポイント
            api_version: anthropic-version ヘッダーの値
            max_tokens: 最大出力トークン数
            system_prompt: システムプロンプト
            tools: ツール定義一覧
            client: 使用するHTTPクライアント（テスト用。省略時は内部で作成）
            timeout: リクエストのタイムアウト（秒）
        """
        self._api_url = api_url
        self._api_version = api_version
        self._max_tokens = max_tokens
        self._system_prompt = system_prompt
        self._tools = tools or []
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)

    def build_headers(self, token: str) -> dict[str, str]:
        """認証ヘッダーを含むリクエストヘッダーを作成する."""
        headers = {
            "anthropic-version": self._api_version,
            "content-type": "application/json",
        }
        if classify_token(token) is TokenType.OAUTH_ACCESS:
            headers["authorization"] = f"Bearer {token}"
            headers["anthropic-beta"] = OAUTH_BETA_HEADER
        else:
            headers["x-api-key"] = token
        return headers

    def build_body(self, session: Session) -> dict[str, Any]:
        """リクエストボディを作成する."""
        body: dict[str, Any] = {
            "model": session.model_id,
            "max_tokens": self._max_tokens,
            "stream": True,
            "messages": serialize_messages(session.messages),
        }
        if self._system_prompt:
            body["system"] = self._system_prompt
        if self._tools:
            body["tools"] = self._tools
        return body

    async def send(self, session: Session, token: str) -> AsyncIterator[str]:
        """
        履歴を送信し、応答本文をテキストチャンクとして返す.

        Args:
            session: 送信する会話セッション
            token: 有効な認証トークン

        Yields:
            SSE本文のテキストチャンク

        Raises:
            AuthError: 認証に失敗した場合（HTTP 401/403）
            TransportError: HTTPエラーまたは通信エラーの場合
        """
        logger.info(
            "Sending request",
            model=session.model_id,
            message_count=len(session.messages),
        )
        try:
            async with self._client.stream(
                "POST",
                self._api_url,
                headers=self.build_headers(token),
                json=self.build_body(session),
            ) as response:
                if response.status_code in (401, 403):
                    detail = (await response.aread()).decode("utf-8", errors="replace")
                    logger.error("Authentication rejected", status=response.status_code)
                    raise AuthError(f"HTTP {response.status_code}: {detail[:500]}")
                if response.status_code >= 400:
                    detail = (await response.aread()).decode("utf-8", errors="replace")
                    logger.error(
                        "Request failed", status=response.status_code, body=detail[:500]
                    )
                    raise TransportError(
                        f"HTTP {response.status_code}: {detail[:500]}",
                        status_code=response.status_code,
                    )
                async for chunk in response.aiter_text():
                    yield chunk
        except httpx.HTTPError as e:
            logger.exception("HTTP transport failure")
            raise TransportError(str(e) or type(e).__name__) from e

    async def close(self) -> None:
        """内部で作成したHTTPクライアントをクローズする."""
        if self._owns_client:
            await self._client.aclose()
