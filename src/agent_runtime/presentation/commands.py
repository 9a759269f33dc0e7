"""Slash commands operating on the session."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING

from agent_runtime.application.agent import TurnInProgressError
from agent_runtime.application.session import AVAILABLE_MODELS, find_model
from agent_runtime.infrastructure.logging import get_logger

if TYPE_CHECKING:
    from agent_runtime.application.agent import AgentLoop
    from agent_runtime.application.permission import MergedSettings

logger = get_logger(__name__)

HELP_TEXT = """\
/clear          会話履歴を消去する（モデル選択は保持）
/model [name]   モデル一覧を表示する、またはモデルを切り替える
/reload         パーミッション設定を再読み込みする
/help           このヘルプを表示する
/quit           終了する"""


@dataclass(frozen=True)
class CommandResult:
    """コマンドの実行結果."""

    output: str
    quit: bool = False


def is_command(text: str) -> bool:
    """入力がスラッシュコマンドかどうかを返す."""
    return text.startswith("/")


class CommandHandler:
    """スラッシュコマンドを Session と AgentLoop への直接操作として実行する."""

    def __init__(
        self, agent: AgentLoop, load_settings: Callable[[], MergedSettings]
    ) -> None:
        """
        Initialize CommandHandler.

        Args:
            agent: 対象の AgentLoop
            load_settings: 設定ファイルを読み直して統合済み設定を返す関数
        """
        self._agent = agent
        self._load_settings = load_settings

    def handle(self, text: str) -> CommandResult:
        """
        コマンドを実行する.

        Args:
            text: ``/`` で始まる入力

        Returns:
            実行結果
        """
        name, _, argument = text.strip().partition(" ")
        argument = argument.strip()
        logger.info("Handling command", command=name, argument=argument or None)

        match name:
            case "/clear":
                return self._clear()
            case "/model":
                return self._model(argument)
            case "/reload":
                return self._reload()
            case "/help":
                return CommandResult(HELP_TEXT)
            case "/quit" | "/exit":
                return CommandResult("終了します。", quit=True)
        return CommandResult(f"不明なコマンドです: {name}（/help で一覧を表示）")

    def _clear(self) -> CommandResult:
        self._agent.session.clear()
        return CommandResult("会話履歴を消去しました。")

    def _model(self, requested: str) -> CommandResult:
        session = self._agent.session
        if not requested:
            lines = ["利用可能なモデル:"]
            for model_id, label in AVAILABLE_MODELS:
                marker = "*" if model_id == session.model_id else " "
                lines.append(f" {marker} {label} ({model_id})")
            return CommandResult("\n".join(lines))

        found = find_model(requested)
        if found is None:
            return CommandResult(f"モデルが見つかりません: {requested}")
        model_id, label = found
        session.set_model(model_id)
        return CommandResult(f"モデルを {label} ({model_id}) に切り替えました。")

    def _reload(self) -> CommandResult:
        settings = self._load_settings()
        try:
            self._agent.reload_settings(settings)
        except TurnInProgressError:
            return CommandResult("ターン実行中は設定を再読み込みできません。")
        lines = [
            f"設定を再読み込みしました（allow: {len(settings.allow)}, "
            f"deny: {len(settings.deny)}）。"
        ]
        lines.extend(f"警告: {warning}" for warning in settings.warnings)
        return CommandResult("\n".join(lines))
