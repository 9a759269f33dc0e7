"""Tests for slash commands."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from agent_runtime.application.agent import TurnInProgressError
from agent_runtime.application.models import Message, Role, TextBlock
from agent_runtime.application.permission import MergedSettings, PermissionRule, RuleAction
from agent_runtime.application.session import AVAILABLE_MODELS, Session
from agent_runtime.presentation.commands import (
    HELP_TEXT,
    CommandHandler,
    is_command,
)


@pytest.fixture
def session() -> Session:
    """テスト用のSessionインスタンスを作成する."""
    session = Session(model_id="claude-sonnet-4-5-20250929")
    session.append(Message(role=Role.USER, content=(TextBlock(text="hello"),)))
    return session


@pytest.fixture
def agent(session: Session) -> MagicMock:
    """AgentLoopのモックを作成する."""
    agent = MagicMock()
    agent.session = session
    agent.reload_settings = MagicMock()
    return agent


@pytest.fixture
def settings() -> MergedSettings:
    """再読み込みで返す設定を作成する."""
    return MergedSettings(
        allow=frozenset({PermissionRule.parse("Bash(npm test:*)", RuleAction.ALLOW)}),
        deny=frozenset(),
        warnings=("project: invalid rule 'Bash('",),
    )


@pytest.fixture
def handler(agent: MagicMock, settings: MergedSettings) -> CommandHandler:
    """テスト用のCommandHandlerを作成する."""
    return CommandHandler(agent, lambda: settings)


def test_is_command() -> None:
    """スラッシュで始まる入力だけがコマンドとして扱われることを確認する."""
    assert is_command("/help")
    assert not is_command("help")
    assert not is_command("path /tmp")


class TestCommandHandler:
    """CommandHandlerのテスト."""

    def test_clear(self, handler: CommandHandler, session: Session) -> None:
        """/clearで履歴が消去され、モデルは保持されることを確認する."""
        result = handler.handle("/clear")

        assert result.output == "会話履歴を消去しました。"
        assert session.messages == []
        assert session.model_id == "claude-sonnet-4-5-20250929"
        assert not result.quit

    def test_model_list(self, handler: CommandHandler) -> None:
        """/modelでモデル一覧が表示され、現在のモデルに印が付くことを確認する."""
        result = handler.handle("/model")

        lines = result.output.splitlines()
        assert lines[0] == "利用可能なモデル:"
        assert len(lines) == len(AVAILABLE_MODELS) + 1
        assert " * Sonnet 4.5 (claude-sonnet-4-5-20250929)" in lines

    def test_model_switch(self, handler: CommandHandler, session: Session) -> None:
        """/model <name>でモデルが切り替わり、履歴は保持されることを確認する."""
        result = handler.handle("/model opus")

        assert result.output == "モデルを Opus 4.6 (claude-opus-4-6) に切り替えました。"
        assert session.model_id == "claude-opus-4-6"
        assert len(session.messages) == 1

    def test_model_not_found(self, handler: CommandHandler, session: Session) -> None:
        """存在しないモデルを指定した場合はモデルが変わらないことを確認する."""
        result = handler.handle("/model gpt-4")

        assert result.output == "モデルが見つかりません: gpt-4"
        assert session.model_id == "claude-sonnet-4-5-20250929"

    def test_reload(
        self, handler: CommandHandler, agent: MagicMock, settings: MergedSettings
    ) -> None:
        """/reloadで設定が差し替えられ、警告が表示されることを確認する."""
        result = handler.handle("/reload")

        agent.reload_settings.assert_called_once_with(settings)
        assert "allow: 1, deny: 0" in result.output
        assert "警告: project: invalid rule 'Bash('" in result.output

    def test_reload_during_turn(self, handler: CommandHandler, agent: MagicMock) -> None:
        """ターン実行中の/reloadは拒否されることを確認する."""
        agent.reload_settings.side_effect = TurnInProgressError("reload settings")

        result = handler.handle("/reload")

        assert result.output == "ターン実行中は設定を再読み込みできません。"

    def test_help(self, handler: CommandHandler) -> None:
        """/helpでヘルプが表示されることを確認する."""
        assert handler.handle("/help").output == HELP_TEXT

    @pytest.mark.parametrize("command", ["/quit", "/exit", "  /quit  "])
    def test_quit(self, handler: CommandHandler, command: str) -> None:
        """/quitと/exitで終了が要求されることを確認する."""
        result = handler.handle(command)

        assert result.quit
        assert result.output == "終了します。"

    def test_unknown_command(self, handler: CommandHandler, session: Session) -> None:
        """不明なコマンドでは何も変更されないことを確認する."""
        result = handler.handle("/compact now")

        assert result.output == "不明なコマンドです: /compact（/help で一覧を表示）"
        assert len(session.messages) == 1
