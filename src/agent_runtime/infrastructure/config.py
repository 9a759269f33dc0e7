"""Configuration management."""

from __future__ import annotations

from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_API_URL = "https://api.anthropic.com/v1/messages"
DEFAULT_API_VERSION = "2023-06-01"
DEFAULT_MODEL = "claude-sonnet-4-5-20250929"


class Config(BaseSettings):
    """アプリケーション設定."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # 認証設定
    anthropic_api_key: str | None = Field(
        default=None,
        description="APIキーまたはOAuthアクセストークン（未設定時は認証ファイルを参照）",
    )
    credentials_file: Path = Field(
        default=Path("~/.config/agent-runtime/credentials.json"),
        validate_default=True,
        description="認証情報ファイルのパス",
    )

    # Messages API設定
    api_url: str = Field(
        default=DEFAULT_API_URL,
        description="Messages APIのエンドポイント",
    )
    api_version: str = Field(
        default=DEFAULT_API_VERSION,
        description="anthropic-version ヘッダーの値",
    )
    model: str = Field(
        default=DEFAULT_MODEL,
        description="起動時に選択するモデルID",
    )
    max_tokens: int = Field(
        default=16384,
        gt=0,
        description="1リクエストあたりの最大出力トークン数",
    )
    request_timeout: float = Field(
        default=300.0,
        gt=0,
        description="HTTPリクエストのタイムアウト（秒）",
    )

    # プロジェクト・パーミッション設定
    project_dir: Path = Field(
        default_factory=Path.cwd,
        description="プロジェクトルート（ツールの作業ディレクトリ）",
    )
    global_settings_file: Path = Field(
        default=Path("~/.claude/settings.json"),
        validate_default=True,
        description="グローバル設定レイヤーのファイルパス",
    )
    permission_timeout: float = Field(
        default=0,
        ge=0,
        description="パーミッション確認の待機時間（秒）。0 の場合は無期限に待つ",
    )

    # ログ設定
    log_level: str = Field(
        default="INFO",
        description="ログレベル（DEBUG, INFO, WARNING, ERROR, CRITICAL）",
    )
    log_dir: str = Field(
        default="logs",
        description="ログ出力ディレクトリ",
    )
    log_backup_count: int = Field(
        default=7,
        ge=0,
        description="ログローテーションの保持日数",
    )

    @field_validator(
        "credentials_file", "project_dir", "global_settings_file", mode="before"
    )
    @classmethod
    def expand_path(cls, v: str | Path) -> Path:
        """パス設定の ~ を展開してPathに変換する."""
        return Path(v).expanduser()

    @field_validator("log_level", mode="before")
    @classmethod
    def normalize_log_level(cls, v: str) -> str:
        """ログレベルを大文字に正規化する."""
        return str(v).upper()


# グローバル設定インスタンス（シングルトン）
_config: Config | None = None


def get_config() -> Config:
    """
    グローバル設定インスタンスを取得する.

    Returns:
        設定インスタンス
    """
    global _config
    if _config is None:
        _config = Config()
    return _config
