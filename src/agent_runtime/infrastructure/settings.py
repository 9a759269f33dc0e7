"""Layered permission settings files."""

from __future__ import annotations

import json
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from agent_runtime.application.permission import (
    Layer,
    MergedSettings,
    PermissionLayer,
    PermissionRule,
    RuleAction,
    merge_layers,
    normalize_path,
)
from agent_runtime.infrastructure.logging import get_logger

logger = get_logger(__name__)


class ConfigError(Exception):
    """設定ファイルが読めない、または形式が不正な場合の例外."""

    def __init__(self, path: Path, message: str) -> None:
        """
        Initialize ConfigError.

        Args:
            path: 設定ファイルのパス
            message: エラーメッセージ
        """
        super().__init__(f"Invalid settings file {path}: {message}")
        self.path = path


class PermissionsSection(BaseModel):
    """settings.json の permissions セクション."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    allow: list[str] = Field(default_factory=list)
    deny: list[str] = Field(default_factory=list)
    additional_directories: list[str] = Field(
        default_factory=list, alias="additionalDirectories"
    )


class SettingsFile(BaseModel):
    """settings.json 全体."""

    model_config = ConfigDict(extra="ignore")

    permissions: PermissionsSection = Field(default_factory=PermissionsSection)


def settings_paths(global_file: Path, project_dir: Path) -> list[tuple[Layer, Path]]:
    """
    3つの設定レイヤーのファイルパスを返す.

    Args:
        global_file: グローバル設定ファイル（通常は ~/.claude/settings.json）
        project_dir: プロジェクトルート

    Returns:
        (レイヤー, パス) のリスト
    """
    claude_dir = project_dir / ".claude"
    return [
        (Layer.GLOBAL, global_file.expanduser()),
        (Layer.PROJECT, claude_dir / "settings.json"),
        (Layer.LOCAL, claude_dir / "settings.local.json"),
    ]


def load_layer(
    path: Path, origin: Layer, project_dir: Path
) -> tuple[PermissionLayer, list[str]]:
    """
    1つの設定ファイルを読み込む.

    書式が不正なルールはそのルールだけを読み飛ばし、警告として返す。
    ファイルが存在しない場合は空のレイヤーを返す。

    Args:
        path: 設定ファイルのパス
        origin: レイヤー種別
        project_dir: 相対パスの追加ディレクトリを解決する基準

    Returns:
        (読み込んだレイヤー, 警告メッセージのリスト)

    Raises:
        ConfigError: ファイルが読めない、JSONとして不正、またはスキーマに合わない場合
    """
    try:
        if not path.exists():
            return PermissionLayer(origin=origin), []
        raw = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        raise ConfigError(path, str(e)) from e

    try:
        settings = SettingsFile.model_validate(json.loads(raw))
    except json.JSONDecodeError as e:
        raise ConfigError(path, f"malformed JSON ({e})") from e
    except ValidationError as e:
        raise ConfigError(path, f"unexpected structure ({e.error_count()} errors)") from e

    warnings: list[str] = []

    def parse_rules(entries: list[str], action: RuleAction) -> tuple[PermissionRule, ...]:
        rules = []
        for entry in entries:
            try:
                rules.append(PermissionRule.parse(entry, action, origin))
            except ValueError as e:
                warnings.append(f"{path}: {e}")
        return tuple(rules)

    section = settings.permissions
    root = str(project_dir)
    layer = PermissionLayer(
        origin=origin,
        allow=parse_rules(section.allow, RuleAction.ALLOW),
        deny=parse_rules(section.deny, RuleAction.DENY),
        additional_directories=tuple(
            normalize_path(d, root) for d in section.additional_directories if d
        ),
    )
    return layer, warnings


def load_settings(global_file: Path, project_dir: Path) -> MergedSettings:
    """
    グローバル・プロジェクト・ローカルの3レイヤーを読み込んで統合する.

    読めないレイヤーは警告を記録して読み飛ばし、残りのレイヤーだけで統合する。

    Args:
        global_file: グローバル設定ファイルのパス
        project_dir: プロジェクトルート

    Returns:
        統合済み設定
    """
    layers: list[PermissionLayer] = []
    warnings: list[str] = []

    for origin, path in settings_paths(global_file, project_dir):
        try:
            layer, layer_warnings = load_layer(path, origin, project_dir)
        except ConfigError as e:
            logger.warning("Skipping settings layer", layer=origin.value, error=str(e))
            warnings.append(str(e))
            continue
        for message in layer_warnings:
            logger.warning("Ignoring invalid permission rule", layer=origin.value, detail=message)
        warnings.extend(layer_warnings)
        layers.append(layer)

    merged = merge_layers(layers, warnings)
    logger.info(
        "Loaded permission settings",
        allow_rules=len(merged.allow),
        deny_rules=len(merged.deny),
        additional_directories=sorted(merged.additional_directories),
        warnings=len(merged.warnings),
    )
    return merged
