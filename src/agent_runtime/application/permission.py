"""Permission policy engine."""

from __future__ import annotations

import posixpath
from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import Enum
from pathlib import PurePosixPath
from typing import TYPE_CHECKING

from agent_runtime.application.tools import ToolKind

if TYPE_CHECKING:
    from agent_runtime.application.models import ToolCall

# 入力に関わらず常に許可するツール種別
READ_ONLY_KINDS: frozenset[ToolKind] = frozenset({
    ToolKind.LIST,
    ToolKind.GLOB,
    ToolKind.GREP,
    ToolKind.SEARCH,
})

# 参照のみの Git サブコマンド（branch は一覧表示。作成・削除は別サブコマンド）
READ_ONLY_GIT_SUBCOMMANDS: frozenset[str] = frozenset({
    "status",
    "log",
    "diff",
    "diff_staged",
    "diff_unstaged",
    "show",
    "blame",
    "branch",
})

# ワークスペース内であれば自動許可するファイル操作
FILE_KINDS: frozenset[ToolKind] = frozenset({
    ToolKind.READ,
    ToolKind.WRITE,
    ToolKind.EDIT,
})

# ルールの照合対象となる主引数
PRIMARY_ARGUMENT: dict[ToolKind, str] = {
    ToolKind.BASH: "command",
    ToolKind.GIT: "subcommand",
    ToolKind.READ: "file_path",
    ToolKind.WRITE: "file_path",
    ToolKind.EDIT: "file_path",
    ToolKind.GLOB: "pattern",
    ToolKind.GREP: "pattern",
    ToolKind.SEARCH: "query",
    ToolKind.LIST: "path",
}

# 「常に許可」で先頭語だけのルールを提案しないコマンド
DESTRUCTIVE_COMMANDS: frozenset[str] = frozenset({
    "chgrp",
    "chmod",
    "chown",
    "dd",
    "git",
    "kill",
    "killall",
    "mkfs",
    "mv",
    "pkill",
    "rm",
    "rmdir",
    "shred",
    "sudo",
    "truncate",
})

_KINDS_BY_NAME: dict[str, ToolKind] = {kind.value: kind for kind in ToolKind}


class Layer(str, Enum):
    """ルールの出所."""

    GLOBAL = "global"
    PROJECT = "project"
    LOCAL = "local"
    SESSION = "session"


class RuleAction(str, Enum):
    """ルールの種類."""

    ALLOW = "allow"
    DENY = "deny"


@dataclass(frozen=True)
class PermissionRule:
    """
    ``ToolName(pattern)`` 形式のパーミッションルール.

    pattern の形式:
    - ``*``: 任意の入力にマッチ
    - ``prefix:*``: 入力が prefix と一致するか、prefix + 空白 で始まる場合にマッチ
      （``git:*`` は ``git status`` にマッチし ``gitignore`` にはマッチしない）
    - ``prefix*``: 入力が prefix で始まる場合にマッチ（境界の補完なし）
    - それ以外: 完全一致

    origin は診断用の情報で、等価性には含めない（同じルールはどのレイヤー由来でも1つ）。
    """

    tool: ToolKind
    pattern: str
    action: RuleAction
    origin: Layer = field(default=Layer.SESSION, compare=False)

    @classmethod
    def parse(
        cls, text: str, action: RuleAction, origin: Layer = Layer.SESSION
    ) -> PermissionRule:
        """
        ルール文字列をパースする.

        Args:
            text: ``Bash(cargo:*)`` のようなルール文字列
            action: 許可ルールか拒否ルールか
            origin: ルールの出所レイヤー

        Returns:
            パースされたルール

        Raises:
            ValueError: 書式が不正、またはツール名が未知の場合
        """
        stripped = text.strip()
        open_idx = stripped.find("(")
        if open_idx <= 0 or not stripped.endswith(")"):
            msg = f"Rule must have the form ToolName(pattern): {text!r}"
            raise ValueError(msg)
        name = stripped[:open_idx]
        kind = _KINDS_BY_NAME.get(name)
        if kind is None:
            msg = f"Unknown tool name in rule: {name!r}"
            raise ValueError(msg)
        return cls(tool=kind, pattern=stripped[open_idx + 1 : -1], action=action, origin=origin)

    def __str__(self) -> str:
        return f"{self.tool.value}({self.pattern})"

    def matches(self, call: ToolCall, project_root: str) -> bool:
        """ツール呼び出しがこのルールにマッチするかを判定する."""
        if call.name != self.tool.value:
            return False
        value = primary_argument(call, project_root)
        pattern = self.pattern
        if self.tool in FILE_KINDS and pattern != "*":
            if pattern.startswith("~"):
                pattern = posixpath.expanduser(pattern)
            elif not pattern.startswith("/"):
                # 相対パスのパターンはプロジェクトルート基準で照合する
                pattern = project_root.rstrip("/") + "/" + pattern
        return pattern_matches(value, pattern)


def pattern_matches(value: str, pattern: str) -> bool:
    """
    値がパターンにマッチするかを判定する.

    マッチは常に先頭から行い、ワイルドカードで prefix より前の文字を読み飛ばすことはない。

    Args:
        value: ツール呼び出しの主引数（正規化済み文字列）
        pattern: ルールの括弧内の文字列

    Returns:
        マッチした場合 True
    """
    if pattern == "*":
        return True
    if pattern.endswith(":*"):
        prefix = pattern[:-2]
        return value == prefix or value.startswith(prefix + " ")
    if pattern.endswith("*"):
        return value.startswith(pattern[:-1])
    return value == pattern


def normalize_path(path: str, project_root: str) -> str:
    """
    パスをプロジェクトルート基準の正規化済み絶対パスに変換する.

    ファイルシステムには触れない（シンボリックリンクは解決しない）。
    """
    if path.startswith("~"):
        path = posixpath.expanduser(path)
    if not posixpath.isabs(path):
        path = posixpath.join(project_root, path)
    return posixpath.normpath(path)


def primary_argument(call: ToolCall, project_root: str) -> str:
    """
    ルール照合に使うツール呼び出しの主引数を文字列で返す.

    ファイル操作のパスは正規化済み絶対パスになる。文字列でない値は空文字列として扱う。
    """
    kind = _KINDS_BY_NAME.get(call.name)
    if kind is None:
        return ""
    raw = call.input.get(PRIMARY_ARGUMENT[kind])
    value = raw if isinstance(raw, str) else ""
    if kind in FILE_KINDS and value:
        return normalize_path(value, project_root)
    return value


@dataclass(frozen=True)
class PermissionLayer:
    """1つの設定レイヤーから読み込んだルール."""

    origin: Layer
    allow: tuple[PermissionRule, ...] = ()
    deny: tuple[PermissionRule, ...] = ()
    additional_directories: tuple[str, ...] = ()


@dataclass(frozen=True)
class MergedSettings:
    """
    全レイヤーを統合したパーミッション設定.

    各集合はレイヤーの和集合なので、統合の順序は結果に影響しない。
    ターン中は変更されず、再読み込み時に作り直される。
    """

    allow: frozenset[PermissionRule] = frozenset()
    deny: frozenset[PermissionRule] = frozenset()
    additional_directories: frozenset[str] = frozenset()
    warnings: tuple[str, ...] = field(default=(), compare=False)


def merge_layers(
    layers: Iterable[PermissionLayer], warnings: Iterable[str] = ()
) -> MergedSettings:
    """
    設定レイヤーを和集合で統合する.

    Args:
        layers: 統合するレイヤー（順序は問わない）
        warnings: 読み込み時に記録された警告

    Returns:
        統合済み設定
    """
    allow: set[PermissionRule] = set()
    deny: set[PermissionRule] = set()
    directories: set[str] = set()
    for layer in layers:
        allow.update(layer.allow)
        deny.update(layer.deny)
        directories.update(layer.additional_directories)
    return MergedSettings(
        allow=frozenset(allow),
        deny=frozenset(deny),
        additional_directories=frozenset(directories),
        warnings=tuple(warnings),
    )


class Decision(str, Enum):
    """パーミッション判定結果."""

    ALLOW = "allow"
    DENY = "deny"
    ASK = "ask"


class DecisionReason(str, Enum):
    """判定に至った評価ステップ."""

    READ_ONLY_TOOL = "read_only_tool"
    READ_ONLY_GIT = "read_only_git"
    DENY_RULE = "deny_rule"
    ALLOW_RULE = "allow_rule"
    WORKSPACE_PATH = "workspace_path"
    NO_MATCHING_RULE = "no_matching_rule"


@dataclass(frozen=True)
class PermissionDecision:
    """判定結果と、その根拠となったルール."""

    decision: Decision
    reason: DecisionReason
    rule: PermissionRule | None = None


def _first_match(
    rules: Iterable[PermissionRule], call: ToolCall, project_root: str
) -> PermissionRule | None:
    # 報告するルールを決定的にするため文字列順に評価する
    for rule in sorted(rules, key=lambda r: (str(r), r.origin.value)):
        if rule.matches(call, project_root):
            return rule
    return None


class PermissionEngine:
    """
    ツール呼び出しに対するパーミッションを判定する.

    evaluate() は純粋関数で、同じ入力には常に同じ判定を返す。
    """

    def __init__(self, project_root: str | PurePosixPath) -> None:
        """
        Initialize PermissionEngine.

        Args:
            project_root: プロジェクトルートの絶対パス
        """
        self._project_root = posixpath.normpath(str(project_root))

    @property
    def project_root(self) -> str:
        """プロジェクトルート."""
        return self._project_root

    def evaluate(
        self,
        call: ToolCall,
        settings: MergedSettings,
        learned: Iterable[PermissionRule] = (),
    ) -> PermissionDecision:
        """
        ツール呼び出しを評価する.

        評価順（最初に決まったものを採用）:
        1. 参照系ツール（List / Glob / Grep / Search）→ Allow
        2. 参照系 Git サブコマンド → Allow
        3. 拒否ルール（全レイヤー）→ Deny
        4. 許可ルール（全レイヤー + セッション中に学習したルール）→ Allow
        5. プロジェクトルートまたは追加ディレクトリ内のファイル操作 → Allow
        6. それ以外 → Ask

        Args:
            call: 評価するツール呼び出し
            settings: 統合済み設定
            learned: 「常に許可」で追加されたセッション限りのルール

        Returns:
            判定結果
        """
        kind = _KINDS_BY_NAME.get(call.name)

        if kind in READ_ONLY_KINDS:
            return PermissionDecision(Decision.ALLOW, DecisionReason.READ_ONLY_TOOL)

        subcommand = call.input.get("subcommand")
        if (
            kind is ToolKind.GIT
            and isinstance(subcommand, str)
            and subcommand in READ_ONLY_GIT_SUBCOMMANDS
        ):
            return PermissionDecision(Decision.ALLOW, DecisionReason.READ_ONLY_GIT)

        denied = _first_match(settings.deny, call, self._project_root)
        if denied is not None:
            return PermissionDecision(Decision.DENY, DecisionReason.DENY_RULE, denied)

        allowed = _first_match(
            [*settings.allow, *learned], call, self._project_root
        )
        if allowed is not None:
            return PermissionDecision(Decision.ALLOW, DecisionReason.ALLOW_RULE, allowed)

        if kind in FILE_KINDS and self._in_workspace(call, settings):
            return PermissionDecision(Decision.ALLOW, DecisionReason.WORKSPACE_PATH)

        return PermissionDecision(Decision.ASK, DecisionReason.NO_MATCHING_RULE)

    def _in_workspace(self, call: ToolCall, settings: MergedSettings) -> bool:
        target = primary_argument(call, self._project_root)
        if not target:
            return False
        target_path = PurePosixPath(target)
        roots = [self._project_root, *settings.additional_directories]
        return any(
            target_path.is_relative_to(normalize_path(root, self._project_root))
            for root in roots
        )


def suggest_rule(call: ToolCall, project_root: str) -> str:
    """
    「常に許可」を選んだときに登録するルール文字列を提案する.

    Bash はコマンドの先頭語（``Bash(cargo:*)``）、ファイル操作は対象パスの完全一致、
    Git はサブコマンドの完全一致とする。``rm`` などの破壊的なコマンドは先頭の2語
    （``Bash(rm -rf:*)``）に絞り、1語だけの場合は完全一致とする。
    """
    kind = _KINDS_BY_NAME.get(call.name)
    if kind is None:
        return f"{call.name}(*)"
    value = primary_argument(call, project_root)
    if kind is ToolKind.BASH:
        words = value.split()
        if not words:
            return "Bash()"
        if words[0] not in DESTRUCTIVE_COMMANDS:
            return f"Bash({words[0]}:*)"
        if len(words) == 1:
            return f"Bash({words[0]})"
        return f"Bash({words[0]} {words[1]}:*)"
    return f"{kind.value}({value})"
