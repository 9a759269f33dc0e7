"""Built-in tool handlers."""

from __future__ import annotations

import asyncio
import contextlib
import fnmatch
import math
import os
import re
from pathlib import Path

from agent_runtime.application.tools import (
    BashInput,
    EditInput,
    GitInput,
    GlobInput,
    GrepInput,
    ListInput,
    ReadInput,
    SearchInput,
    ToolExecutionError,
    ToolKind,
    ToolSpec,
    WriteInput,
)
from agent_runtime.infrastructure.logging import get_logger

logger = get_logger(__name__)

DEFAULT_BASH_TIMEOUT = 120.0
GIT_TIMEOUT = 60.0
MAX_GREP_MATCHES = 500
SNIPPET_LINES = 3

# ファイル探索で常に読み飛ばすディレクトリ
IGNORED_DIRS: frozenset[str] = frozenset({
    ".DS_Store",
    ".git",
    ".gradle",
    ".idea",
    ".next",
    ".nuxt",
    ".output",
    ".pytest_cache",
    ".svelte-kit",
    ".venv",
    ".vscode",
    "__pycache__",
    "build",
    "dist",
    "node_modules",
    "target",
    "venv",
})

_TERM_RE = re.compile(r"\w+")


def resolve_path(path: str, cwd: Path) -> Path:
    """作業ディレクトリ基準でパスを解決する."""
    candidate = Path(path).expanduser()
    if not candidate.is_absolute():
        candidate = cwd / candidate
    return candidate


def walk_files(base: Path) -> list[Path]:
    """IGNORED_DIRS を除いて base 配下のファイルを列挙する."""
    if base.is_file():
        return [base]
    files: list[Path] = []
    for root, dirs, names in os.walk(base):
        dirs[:] = sorted(d for d in dirs if d not in IGNORED_DIRS)
        files.extend(Path(root) / name for name in sorted(names))
    return files


def _read_text(path: Path) -> str | None:
    try:
        return path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError):
        return None


async def run_process(
    *args: str, cwd: Path, timeout: float
) -> tuple[int, str, str]:
    """
    サブプロセスを実行して終了コードと出力を返す.

    タイムアウトまたはキャンセル時はプロセスを kill してから例外を伝播する。

    Args:
        *args: 実行するコマンドと引数
        cwd: 作業ディレクトリ
        timeout: タイムアウト（秒）

    Returns:
        (終了コード, 標準出力, 標準エラー出力)

    Raises:
        ToolExecutionError: 起動に失敗した場合、またはタイムアウトした場合
    """
    try:
        process = await asyncio.create_subprocess_exec(
            *args,
            cwd=cwd,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as e:
        msg = f"Failed to execute command: {e}"
        raise ToolExecutionError(msg) from e

    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except TimeoutError as e:
        await _kill(process)
        msg = f"Command timed out after {timeout:g} seconds"
        raise ToolExecutionError(msg) from e
    except asyncio.CancelledError:
        await _kill(process)
        raise

    return (
        process.returncode if process.returncode is not None else -1,
        stdout.decode("utf-8", errors="replace"),
        stderr.decode("utf-8", errors="replace"),
    )


async def _kill(process: asyncio.subprocess.Process) -> None:
    if process.returncode is None:
        with contextlib.suppress(ProcessLookupError):
            process.kill()
        await process.wait()
    logger.info("Killed subprocess", pid=process.pid)


# ---------------------------------------------------------------------------
# Bash
# ---------------------------------------------------------------------------


async def run_bash(params: BashInput, cwd: Path) -> str:
    """bash -c でコマンドを実行する."""
    code, stdout, stderr = await run_process(
        "bash",
        "-c",
        params.command,
        cwd=cwd,
        timeout=params.timeout or DEFAULT_BASH_TIMEOUT,
    )
    content = stdout
    if stderr:
        if content:
            content += "\n"
        content += "stderr:\n" + stderr
    if not content:
        content = "(no output)"
    if code != 0:
        raise ToolExecutionError(f"Exit code {code}\n{content}")
    return content


# ---------------------------------------------------------------------------
# ファイル操作
# ---------------------------------------------------------------------------


def _read_file(params: ReadInput, cwd: Path) -> str:
    path = resolve_path(params.file_path, cwd)
    if path.is_dir():
        msg = f"{path} is a directory"
        raise ToolExecutionError(msg)
    try:
        text = path.read_text(encoding="utf-8", errors="replace")
    except OSError as e:
        msg = f"Failed to read {path}: {e}"
        raise ToolExecutionError(msg) from e

    lines = text.splitlines()
    if not lines:
        return "(empty file)"
    start = (params.offset or 1) - 1
    end = start + params.limit if params.limit else len(lines)
    selected = lines[start:end]
    if not selected:
        msg = f"Offset {params.offset} is beyond the end of {path} ({len(lines)} lines)"
        raise ToolExecutionError(msg)
    return "\n".join(
        f"{number:>6}\t{line}" for number, line in enumerate(selected, start=start + 1)
    )


async def read_file(params: ReadInput, cwd: Path) -> str:
    """行番号付きでファイルを読む."""
    return await asyncio.to_thread(_read_file, params, cwd)


def _write_file(params: WriteInput, cwd: Path) -> str:
    path = resolve_path(params.file_path, cwd)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        msg = f"Failed to create directory {path.parent}: {e}"
        raise ToolExecutionError(msg) from e
    try:
        path.write_text(params.content, encoding="utf-8")
    except OSError as e:
        msg = f"Failed to write {path}: {e}"
        raise ToolExecutionError(msg) from e
    return f"Wrote {len(params.content.encode('utf-8'))} bytes to {path}"


async def write_file(params: WriteInput, cwd: Path) -> str:
    """ファイルを作成または上書きする."""
    return await asyncio.to_thread(_write_file, params, cwd)


def _edit_file(params: EditInput, cwd: Path) -> str:
    path = resolve_path(params.file_path, cwd)
    try:
        content = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        msg = f"Failed to read {path}: {e}"
        raise ToolExecutionError(msg) from e

    if params.old_string == params.new_string:
        msg = "old_string and new_string must be different"
        raise ToolExecutionError(msg)

    count = content.count(params.old_string)
    if count == 0:
        msg = f"old_string not found in {path}"
        raise ToolExecutionError(msg)
    if count > 1 and not params.replace_all:
        msg = (
            f"old_string is not unique in {path} ({count} occurrences). "
            "Provide more context to make it unique, or use replace_all."
        )
        raise ToolExecutionError(msg)

    if params.replace_all:
        updated = content.replace(params.old_string, params.new_string)
    else:
        updated = content.replace(params.old_string, params.new_string, 1)
    try:
        path.write_text(updated, encoding="utf-8")
    except OSError as e:
        msg = f"Failed to write {path}: {e}"
        raise ToolExecutionError(msg) from e

    if params.replace_all:
        return f"Replaced {count} occurrences in {path}"
    return f"Edited {path}"


async def edit_file(params: EditInput, cwd: Path) -> str:
    """ファイル内の文字列を置換する."""
    return await asyncio.to_thread(_edit_file, params, cwd)


# ---------------------------------------------------------------------------
# 参照系
# ---------------------------------------------------------------------------


def _glob_files(params: GlobInput, cwd: Path) -> str:
    base = resolve_path(params.path, cwd) if params.path else cwd
    if not base.is_dir():
        msg = f"Not a directory: {base}"
        raise ToolExecutionError(msg)
    try:
        candidates = list(base.glob(params.pattern))
    except ValueError as e:
        msg = f"Invalid glob pattern: {e}"
        raise ToolExecutionError(msg) from e

    matched = []
    for path in candidates:
        relative = path.relative_to(base)
        if any(part in IGNORED_DIRS for part in relative.parts) or not path.is_file():
            continue
        try:
            mtime = path.stat().st_mtime
        except OSError:
            mtime = 0.0
        matched.append((mtime, str(path)))

    if not matched:
        return "No files matched the pattern."
    # 更新日時の新しい順
    matched.sort(key=lambda item: (-item[0], item[1]))
    return "\n".join(path for _, path in matched)


async def glob_files(params: GlobInput, cwd: Path) -> str:
    """グロブパターンでファイルを検索する."""
    return await asyncio.to_thread(_glob_files, params, cwd)


def _grep_files(params: GrepInput, cwd: Path) -> str:
    flags = re.IGNORECASE if params.case_insensitive else 0
    try:
        regex = re.compile(params.pattern, flags)
    except re.error as e:
        msg = f"Invalid regex: {e}"
        raise ToolExecutionError(msg) from e

    base = resolve_path(params.path, cwd) if params.path else cwd
    if not base.exists():
        msg = f"Path does not exist: {base}"
        raise ToolExecutionError(msg)

    output: list[str] = []
    for path in walk_files(base):
        if params.glob and not fnmatch.fnmatch(path.name, params.glob):
            continue
        text = _read_text(path)
        if text is None:
            continue
        for number, line in enumerate(text.splitlines(), start=1):
            if regex.search(line):
                output.append(f"{path}:{number}:{line}")
                if len(output) >= MAX_GREP_MATCHES:
                    output.append(f"(truncated at {MAX_GREP_MATCHES} matches)")
                    return "\n".join(output)

    if not output:
        return "No matches found."
    return "\n".join(output)


async def grep_files(params: GrepInput, cwd: Path) -> str:
    """正規表現でファイル内容を検索する."""
    return await asyncio.to_thread(_grep_files, params, cwd)


def _list_directory(params: ListInput, cwd: Path) -> str:
    directory = resolve_path(params.path, cwd)
    if not directory.is_dir():
        msg = f"Not a directory: {directory}"
        raise ToolExecutionError(msg)
    try:
        children = list(directory.iterdir())
    except OSError as e:
        msg = f"Failed to read directory: {e}"
        raise ToolExecutionError(msg) from e

    entries = []
    for child in children:
        if child.name.startswith("."):
            continue
        if child.is_symlink():
            suffix = "@"
        elif child.is_dir():
            suffix = "/"
        else:
            suffix = ""
        entries.append(child.name + suffix)

    if not entries:
        return "(empty directory)"
    return "\n".join(sorted(entries))


async def list_directory(params: ListInput, cwd: Path) -> str:
    """ディレクトリの内容を一覧する."""
    return await asyncio.to_thread(_list_directory, params, cwd)


def _search_files(params: SearchInput, cwd: Path) -> str:
    terms = sorted({t.lower() for t in _TERM_RE.findall(params.query)})
    if not terms:
        msg = "Search query contains no terms"
        raise ToolExecutionError(msg)

    base = resolve_path(params.path, cwd) if params.path else cwd
    documents: list[tuple[Path, list[str], dict[str, int]]] = []
    for path in walk_files(base):
        text = _read_text(path)
        if text is None:
            continue
        lowered = text.lower()
        counts = {term: lowered.count(term) for term in terms}
        if any(counts.values()):
            documents.append((path, text.splitlines(), counts))

    if not documents:
        return "No results found."

    # 語ごとの出現ファイル数で重み付けした tf スコア
    total = len(documents)
    idf = {
        term: math.log(1 + total / max(1, sum(1 for _, _, c in documents if c[term])))
        for term in terms
    }
    scored = []
    for path, lines, counts in documents:
        score = sum(
            idf[term] * counts[term] / (counts[term] + 1.2) for term in terms if counts[term]
        )
        scored.append((score, path, lines))
    scored.sort(key=lambda item: (-item[0], str(item[1])))

    output: list[str] = []
    for rank, (score, path, lines) in enumerate(scored[: params.limit], start=1):
        output.append(f"{rank}. {path} (score: {score:.4f})")
        shown = 0
        for number, line in enumerate(lines, start=1):
            if shown >= SNIPPET_LINES:
                break
            if any(term in line.lower() for term in terms):
                output.append(f"  {number:>4} | {line}")
                shown += 1
        output.append("")
    return "\n".join(output).rstrip()


async def search_files(params: SearchInput, cwd: Path) -> str:
    """検索語の出現頻度でファイルを順位付けする."""
    return await asyncio.to_thread(_search_files, params, cwd)


# ---------------------------------------------------------------------------
# Git
# ---------------------------------------------------------------------------


def _require(value: object, message: str) -> None:
    if not value:
        raise ToolExecutionError(message)


def _ref(value: str, name: str) -> str:
    # "-" で始まる値は git にオプションとして解釈される
    if value.startswith("-"):
        msg = f"'{name}' must not start with '-': {value}"
        raise ToolExecutionError(msg)
    return value


def git_arguments(params: GitInput) -> list[str]:
    """
    Git サブコマンドを git 実行ファイルの引数に変換する.

    Args:
        params: 検証済みの Git 入力

    Returns:
        ``git`` に続く引数

    Raises:
        ToolExecutionError: サブコマンドに必要なパラメータが不足している場合、
            またはリビジョンやブランチ名が "-" で始まる場合
    """
    match params.subcommand:
        case "status":
            return ["status", "--short", "--branch"]
        case "diff_staged":
            return ["diff", "--cached"]
        case "diff_unstaged":
            return ["diff"]
        case "diff":
            _require(params.from_rev, "diff requires 'from' parameter")
            from_rev = _ref(str(params.from_rev), "from")
            to_rev = _ref(params.to_rev or "HEAD", "to")
            return ["diff", f"{from_rev}..{to_rev}"]
        case "log":
            return ["log", f"-n{params.limit}", "--format=%h %ad %an%n    %s", "--date=short"]
        case "show":
            return ["show", "--stat", "--patch", _ref(params.rev or "HEAD", "rev")]
        case "blame":
            _require(params.file_path, "blame requires 'file_path' parameter")
            args = ["blame"]
            if params.start_line is not None:
                end = params.end_line if params.end_line is not None else ""
                args.append(f"-L{params.start_line},{end}")
            return [*args, "--", str(params.file_path)]
        case "branch":
            return ["branch", "-a"] if params.include_remote else ["branch"]
        case "add":
            _require(params.pathspec, "add requires 'pathspec' array")
            return ["add", "--", *params.pathspec]
        case "unstage":
            _require(params.pathspec, "unstage requires 'pathspec' array")
            return ["reset", "--quiet", "HEAD", "--", *params.pathspec]
        case "commit":
            _require(params.message, "commit requires 'message' parameter")
            return ["commit", "-m", str(params.message)]
        case "push":
            _require(params.refspec, "push requires 'refspec' parameter")
            refspec = _ref(str(params.refspec), "refspec")
            args = ["push", _ref(params.remote, "remote"), refspec]
            return [*args, "--force-with-lease"] if params.force else args
        case "reset":
            _require(params.target, "reset requires 'target' parameter")
            return ["reset", f"--{params.mode}", _ref(str(params.target), "target")]
        case "checkout":
            target = params.branch_name or params.target
            _require(target, "checkout requires 'branch_name' or 'target' parameter")
            name = "branch_name" if params.branch_name else "target"
            return ["checkout", _ref(str(target), name)]
        case "create_branch":
            _require(params.branch_name, "create_branch requires 'branch_name' parameter")
            branch = _ref(str(params.branch_name), "branch_name")
            return ["branch", branch, _ref(params.start_point or "HEAD", "start_point")]
        case "delete_branch":
            _require(params.branch_name, "delete_branch requires 'branch_name' parameter")
            branch = _ref(str(params.branch_name), "branch_name")
            return ["branch", "-D" if params.force else "-d", branch]
    msg = f"Unsupported git subcommand: {params.subcommand}"
    raise ToolExecutionError(msg)


async def run_git(params: GitInput, cwd: Path) -> str:
    """git 実行ファイルでサブコマンドを実行する."""
    code, stdout, stderr = await run_process(
        "git", *git_arguments(params), cwd=cwd, timeout=GIT_TIMEOUT
    )
    if code != 0:
        detail = stderr.strip() or stdout.strip()
        msg = f"git {params.subcommand} failed: {detail}"
        raise ToolExecutionError(msg)
    output = stdout.rstrip()
    if output:
        return output
    if params.subcommand.startswith("diff"):
        return "No changes."
    return "(no output)"


def default_tool_table() -> dict[str, ToolSpec]:
    """組み込みツールの登録テーブルを作成する."""
    specs = [
        ToolSpec(
            ToolKind.BASH,
            "Execute a bash command in the project directory and return its output.",
            BashInput,
            run_bash,
        ),
        ToolSpec(
            ToolKind.GIT,
            "Run a git operation in the project repository.",
            GitInput,
            run_git,
        ),
        ToolSpec(
            ToolKind.READ,
            "Read a file with line numbers. Use offset and limit for large files.",
            ReadInput,
            read_file,
        ),
        ToolSpec(
            ToolKind.WRITE,
            "Write content to a file, creating parent directories as needed.",
            WriteInput,
            write_file,
        ),
        ToolSpec(
            ToolKind.EDIT,
            "Replace old_string with new_string in a file. old_string must be unique "
            "unless replace_all is set.",
            EditInput,
            edit_file,
        ),
        ToolSpec(
            ToolKind.GLOB,
            "Find files matching a glob pattern, most recently modified first.",
            GlobInput,
            glob_files,
        ),
        ToolSpec(
            ToolKind.GREP,
            "Search file contents with a regular expression.",
            GrepInput,
            grep_files,
        ),
        ToolSpec(
            ToolKind.SEARCH,
            "Rank files by relevance to search terms and show matching lines.",
            SearchInput,
            search_files,
        ),
        ToolSpec(
            ToolKind.LIST,
            "List the entries of a directory.",
            ListInput,
            list_directory,
        ),
    ]
    return {spec.kind.value: spec for spec in specs}
