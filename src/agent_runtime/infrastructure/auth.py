"""Credential lookup for outgoing requests."""

from __future__ import annotations

import json
from enum import Enum
from typing import TYPE_CHECKING, Protocol

from pydantic import BaseModel, ValidationError

from agent_runtime.infrastructure.logging import get_logger

if TYPE_CHECKING:
    from pathlib import Path

logger = get_logger(__name__)


class AuthError(Exception):
    """有効な認証情報が得られない、またはサーバーに拒否された場合の例外."""

    def __init__(self, message: str) -> None:
        """
        Initialize AuthError.

        Args:
            message: エラーメッセージ
        """
        super().__init__(f"Authentication failed: {message}")
        self.message = message


class TokenType(str, Enum):
    """トークンの種類."""

    OAUTH_ACCESS = "oauth_access"
    OAUTH_REFRESH = "oauth_refresh"
    API_KEY = "api_key"


def classify_token(token: str) -> TokenType:
    """トークンの接頭辞から種類を判定する."""
    if token.startswith("sk-ant-oat"):
        return TokenType.OAUTH_ACCESS
    if token.startswith("sk-ant-ort"):
        return TokenType.OAUTH_REFRESH
    return TokenType.API_KEY


class Credentials(BaseModel):
    """保存済みの認証情報."""

    token: str
    is_oauth: bool = False

    @property
    def token_type(self) -> TokenType:
        """トークンの種類."""
        return classify_token(self.token)


class CredentialProvider(Protocol):
    """リクエスト前に有効なトークンを返すもの."""

    def get_valid_token(self) -> str:
        """有効なトークンを返す（取得できなければ AuthError）."""
        ...


class StaticCredentialProvider:
    """
    環境変数または認証ファイルのトークンをそのまま返す CredentialProvider.

    トークンの更新（OAuth リフレッシュ）は行わない。
    """

    def __init__(self, token: str | None = None, credentials_file: Path | None = None) -> None:
        """
        Initialize StaticCredentialProvider.

        Args:
            token: 明示的に指定されたトークン（優先される）
            credentials_file: 認証情報ファイルのパス
        """
        self._token = token
        self._credentials_file = credentials_file

    def get_valid_token(self) -> str:
        """
        有効なトークンを返す.

        Returns:
            APIキーまたはOAuthアクセストークン

        Raises:
            AuthError: トークンが見つからない、またはリフレッシュトークンしかない場合
        """
        token = self._token
        if not token and self._credentials_file is not None:
            credentials = load_credentials(self._credentials_file)
            token = credentials.token if credentials is not None else None
        if not token:
            raise AuthError("no API key or access token configured")
        if classify_token(token) is TokenType.OAUTH_REFRESH:
            raise AuthError("stored token is a refresh token; re-authenticate to obtain an access token")
        return token


def load_credentials(path: Path) -> Credentials | None:
    """
    認証情報ファイルを読み込む.

    Args:
        path: 認証情報ファイルのパス

    Returns:
        認証情報。ファイルが存在しない場合は None

    Raises:
        AuthError: ファイルが読めない、または形式が不正な場合
    """
    path = path.expanduser()
    if not path.exists():
        return None
    try:
        return Credentials.model_validate(json.loads(path.read_text(encoding="utf-8")))
    except (OSError, json.JSONDecodeError, ValidationError) as e:
        logger.warning("Failed to read credentials file", path=str(path), exc_info=True)
        raise AuthError(f"unreadable credentials file {path}") from e
