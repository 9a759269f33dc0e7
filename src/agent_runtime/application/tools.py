"""Tool dispatcher contract and result model."""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from agent_runtime.infrastructure.logging import get_logger

if TYPE_CHECKING:
    from agent_runtime.application.models import ToolCall

logger = get_logger(__name__)


class ToolKind(str, Enum):
    """ツール種別（APIに公開するツール名と同一）."""

    BASH = "Bash"
    GIT = "Git"
    READ = "Read"
    WRITE = "Write"
    EDIT = "Edit"
    GLOB = "Glob"
    GREP = "Grep"
    SEARCH = "Search"
    LIST = "List"


class ToolExecutionError(Exception):
    """ツール実行に失敗した場合の例外（ディスパッチャーで失敗結果に変換される）."""

    def __init__(self, message: str) -> None:
        """
        Initialize ToolExecutionError.

        Args:
            message: モデルに返す失敗理由
        """
        super().__init__(message)
        self.message = message


# ---------------------------------------------------------------------------
# ツール入力モデル
# ---------------------------------------------------------------------------


class _ToolInput(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)


class BashInput(_ToolInput):
    """Bash の入力."""

    command: str = Field(description="The bash command to execute")
    timeout: float | None = Field(
        default=None, gt=0, description="Timeout in seconds (default 120)"
    )


GitSubcommand = Literal[
    "status",
    "diff",
    "diff_staged",
    "diff_unstaged",
    "log",
    "show",
    "blame",
    "branch",
    "add",
    "commit",
    "push",
    "reset",
    "checkout",
    "create_branch",
    "delete_branch",
    "unstage",
]


class GitInput(_ToolInput):
    """Git の入力."""

    subcommand: GitSubcommand = Field(description="The git operation to perform")
    from_rev: str | None = Field(
        default=None,
        alias="from",
        description="Start revision for diff (e.g. 'main', 'HEAD~3')",
    )
    to_rev: str | None = Field(
        default=None, alias="to", description="End revision for diff (default: HEAD)"
    )
    rev: str | None = Field(default=None, description="Revision for show (default: HEAD)")
    file_path: str | None = Field(default=None, description="File path for blame")
    start_line: int | None = Field(default=None, ge=1, description="Start line for blame")
    end_line: int | None = Field(default=None, ge=1, description="End line for blame")
    limit: int = Field(default=20, ge=1, description="Max entries for log")
    include_remote: bool = Field(
        default=False, description="Include remote branches in branch listing"
    )
    pathspec: list[str] = Field(
        default_factory=list, description="File patterns for add/unstage"
    )
    message: str | None = Field(default=None, description="Commit message")
    remote: str = Field(default="origin", description="Remote name for push")
    refspec: str | None = Field(default=None, description="Refspec for push")
    target: str | None = Field(
        default=None, description="Target commit/branch for reset or checkout"
    )
    mode: Literal["soft", "mixed", "hard"] = Field(
        default="mixed", description="Reset mode"
    )
    branch_name: str | None = Field(
        default=None, description="Branch name for create/checkout/delete"
    )
    start_point: str | None = Field(
        default=None, description="Starting point for a new branch (default: HEAD)"
    )
    force: bool = Field(default=False, description="Force push or branch deletion")


class ReadInput(_ToolInput):
    """Read の入力."""

    file_path: str = Field(description="The path to the file to read")
    offset: int | None = Field(
        default=None, ge=1, description="The line number to start reading from (1-based)"
    )
    limit: int | None = Field(default=None, ge=1, description="The number of lines to read")


class WriteInput(_ToolInput):
    """Write の入力."""

    file_path: str = Field(description="The path to the file to write")
    content: str = Field(description="The content to write")


class EditInput(_ToolInput):
    """Edit の入力."""

    file_path: str = Field(description="The path to the file to modify")
    old_string: str = Field(description="The text to replace")
    new_string: str = Field(description="The text to replace it with")
    replace_all: bool = Field(
        default=False, description="Replace all occurrences (default false)"
    )


class GlobInput(_ToolInput):
    """Glob の入力."""

    pattern: str = Field(description='Glob pattern, e.g. "**/*.py"')
    path: str | None = Field(
        default=None, description="Directory to search in (default: working directory)"
    )


class GrepInput(_ToolInput):
    """Grep の入力."""

    pattern: str = Field(description="Regular expression to search for")
    path: str | None = Field(default=None, description="File or directory to search in")
    glob: str | None = Field(default=None, description='File name filter, e.g. "*.py"')
    case_insensitive: bool = Field(default=False, description="Case-insensitive match")


class SearchInput(_ToolInput):
    """Search の入力."""

    query: str = Field(description="Search terms")
    path: str | None = Field(default=None, description="Directory to search in")
    limit: int = Field(default=10, ge=1, le=100, description="Max files to return")


class ListInput(_ToolInput):
    """List の入力."""

    path: str = Field(default=".", description="Directory to list")


# ---------------------------------------------------------------------------
# ディスパッチャー
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ToolOutput:
    """ツール実行結果."""

    content: str
    is_error: bool = False

    @classmethod
    def success(cls, content: str) -> ToolOutput:
        """成功結果を作成する."""
        return cls(content=content, is_error=False)

    @classmethod
    def failure(cls, content: str) -> ToolOutput:
        """失敗結果を作成する."""
        return cls(content=content, is_error=True)


# (検証済み入力, 作業ディレクトリ) -> 出力テキスト
ToolHandler = Callable[[Any, Path], Awaitable[str]]


@dataclass(frozen=True)
class ToolSpec:
    """登録テーブルの1エントリ."""

    kind: ToolKind
    description: str
    input_model: type[BaseModel]
    handler: ToolHandler

    def definition(self) -> dict[str, Any]:
        """Messages API の tools パラメータ形式で返す."""
        return {
            "name": self.kind.value,
            "description": self.description,
            "input_schema": self.input_model.model_json_schema(by_alias=True),
        }


def _format_validation_error(name: str, error: ValidationError) -> str:
    problems = []
    for item in error.errors():
        location = ".".join(str(part) for part in item["loc"]) or "input"
        if item["type"] == "missing":
            problems.append(f"Missing required parameter: {location}")
        else:
            problems.append(f"Invalid parameter {location}: {item['msg']}")
    return f"Invalid input for {name}: " + "; ".join(problems)


class ToolDispatcher:
    """
    ツール呼び出しを登録テーブルに従って実行する.

    どのような結果になっても例外は送出せず ToolOutput を返す。
    キャンセル（asyncio.CancelledError）だけは呼び出し元に伝播する。
    """

    def __init__(self, working_directory: Path, table: Mapping[str, ToolSpec]) -> None:
        """
        Initialize ToolDispatcher.

        Args:
            working_directory: ツールの作業ディレクトリ（プロジェクトルート）
            table: ツール名 → ToolSpec の登録テーブル
        """
        self._working_directory = working_directory
        self._table = dict(table)

    def knows(self, name: str) -> bool:
        """ツール名が登録済みかどうかを返す."""
        return name in self._table

    def tool_definitions(self) -> list[dict[str, Any]]:
        """登録済みツールの定義一覧を返す."""
        return [spec.definition() for spec in self._table.values()]

    async def dispatch(self, call: ToolCall) -> ToolOutput:
        """
        ツール呼び出しを1回だけ実行する.

        Args:
            call: 実行するツール呼び出し

        Returns:
            実行結果（失敗時は is_error=True）
        """
        spec = self._table.get(call.name)
        if spec is None:
            return ToolOutput.failure(f"Unknown tool: {call.name}")

        try:
            params = spec.input_model.model_validate(call.input)
        except ValidationError as e:
            logger.info("Rejected tool input", tool=call.name, call_id=call.id)
            return ToolOutput.failure(_format_validation_error(call.name, e))

        logger.debug("Executing tool", tool=call.name, call_id=call.id)
        try:
            content = await spec.handler(params, self._working_directory)
        except ToolExecutionError as e:
            logger.info(
                "Tool reported failure", tool=call.name, call_id=call.id, error=e.message
            )
            return ToolOutput.failure(e.message)
        except Exception as e:
            logger.exception("Tool raised unexpectedly", tool=call.name, call_id=call.id)
            return ToolOutput.failure(f"{call.name} failed: {e}")

        return ToolOutput.success(content)
