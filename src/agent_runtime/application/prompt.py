"""System prompt assembly."""

from __future__ import annotations

from typing import TYPE_CHECKING

from agent_runtime.infrastructure.logging import get_logger

if TYPE_CHECKING:
    from collections.abc import Iterable
    from pathlib import Path

logger = get_logger(__name__)

PREAMBLE = (
    "You are a coding agent running on the user's workstation. "
    "Use the available tools to inspect and change the project, "
    "and explain what you did when you finish."
)


def instruction_files(project_dir: Path) -> list[Path]:
    """プロジェクト指示ファイルの候補（読み込み順）."""
    return [project_dir / "CLAUDE.md", project_dir / ".claude" / "instructions.md"]


def load_project_instructions(project_dir: Path) -> list[str]:
    """
    プロジェクト指示ファイルを読み込む.

    存在しないファイル、空のファイル、読めないファイルは読み飛ばす。

    Args:
        project_dir: プロジェクトルート

    Returns:
        空白を除去した指示テキストのリスト
    """
    instructions = []
    for path in instruction_files(project_dir):
        if not path.is_file():
            continue
        try:
            content = path.read_text(encoding="utf-8").strip()
        except (OSError, UnicodeDecodeError):
            logger.warning("Failed to read project instructions", path=str(path), exc_info=True)
            continue
        if content:
            logger.debug("Loaded project instructions", path=str(path), length=len(content))
            instructions.append(content)
    return instructions


def build_system_prompt(project_dir: Path, tool_names: Iterable[str]) -> str:
    """
    システムプロンプトを組み立てる.

    Args:
        project_dir: プロジェクトルート（作業ディレクトリ）
        tool_names: 利用可能なツール名

    Returns:
        システムプロンプト
    """
    sections = [
        PREAMBLE,
        f"Working directory: {project_dir}",
        "Available tools: " + ", ".join(tool_names),
        *load_project_instructions(project_dir),
    ]
    return "\n\n".join(sections)
