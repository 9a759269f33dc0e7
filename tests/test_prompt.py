"""Tests for system prompt assembly."""

from __future__ import annotations

from typing import TYPE_CHECKING

from agent_runtime.application.prompt import (
    PREAMBLE,
    build_system_prompt,
    load_project_instructions,
)

if TYPE_CHECKING:
    from pathlib import Path


class TestLoadProjectInstructions:
    """load_project_instructions関数のテスト."""

    def test_no_files(self, tmp_path: Path) -> None:
        """指示ファイルがない場合は空リストを返すことを確認する."""
        assert load_project_instructions(tmp_path) == []

    def test_both_files_in_order(self, tmp_path: Path) -> None:
        """CLAUDE.md と .claude/instructions.md がこの順で読み込まれることを確認する."""
        (tmp_path / ".claude").mkdir()
        (tmp_path / ".claude" / "instructions.md").write_text("second\n", encoding="utf-8")
        (tmp_path / "CLAUDE.md").write_text("  first  \n", encoding="utf-8")

        assert load_project_instructions(tmp_path) == ["first", "second"]

    def test_empty_file_skipped(self, tmp_path: Path) -> None:
        """空白のみのファイルは読み飛ばされることを確認する."""
        (tmp_path / "CLAUDE.md").write_text("\n\n", encoding="utf-8")

        assert load_project_instructions(tmp_path) == []

    def test_directory_skipped(self, tmp_path: Path) -> None:
        """同名のディレクトリは読み飛ばされることを確認する."""
        (tmp_path / "CLAUDE.md").mkdir()

        assert load_project_instructions(tmp_path) == []

    def test_undecodable_file_skipped(self, tmp_path: Path) -> None:
        """UTF-8として読めないファイルは読み飛ばされることを確認する."""
        (tmp_path / "CLAUDE.md").write_bytes(b"\xff\xfe\x00broken")

        assert load_project_instructions(tmp_path) == []


class TestBuildSystemPrompt:
    """build_system_prompt関数のテスト."""

    def test_sections(self, tmp_path: Path) -> None:
        """前文、作業ディレクトリ、ツール一覧、指示が順に並ぶことを確認する."""
        (tmp_path / "CLAUDE.md").write_text("Run tests with pytest.", encoding="utf-8")

        prompt = build_system_prompt(tmp_path, ["Bash", "Read"])

        assert prompt.split("\n\n") == [
            PREAMBLE,
            f"Working directory: {tmp_path}",
            "Available tools: Bash, Read",
            "Run tests with pytest.",
        ]

    def test_without_instructions(self, tmp_path: Path) -> None:
        """指示ファイルがない場合は3つのセクションのみになることを確認する."""
        prompt = build_system_prompt(tmp_path, ["Glob"])

        assert prompt.endswith("Available tools: Glob")
