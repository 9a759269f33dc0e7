"""Main entry point for the agent runtime."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
import sys
from functools import partial

from agent_runtime.application.agent import AgentLoop
from agent_runtime.application.permission import PermissionEngine
from agent_runtime.application.prompt import build_system_prompt
from agent_runtime.application.session import Session
from agent_runtime.application.tools import ToolDispatcher
from agent_runtime.infrastructure.auth import StaticCredentialProvider
from agent_runtime.infrastructure.config import get_config
from agent_runtime.infrastructure.logging import configure_logging, get_logger
from agent_runtime.infrastructure.settings import load_settings
from agent_runtime.infrastructure.tools import default_tool_table
from agent_runtime.infrastructure.transport import HttpTransport
from agent_runtime.presentation.commands import CommandHandler
from agent_runtime.presentation.console import ConsoleApp, StdinReader, write_stdout
from agent_runtime.presentation.permission import ConsolePermissionPrompt


async def main() -> None:
    """アプリケーションのメインエントリポイント."""
    # 設定を読み込み（ロギング設定より前に必要）
    config = get_config()

    # 構造化ロギングを設定
    configure_logging(
        log_level=config.log_level,
        log_dir=config.log_dir,
        log_backup_count=config.log_backup_count,
    )

    logger = get_logger(__name__)

    logger.info("Starting agent runtime...", project_dir=str(config.project_dir))

    # シャットダウンイベント
    shutdown_event = asyncio.Event()
    agent: AgentLoop | None = None

    def signal_handler() -> None:
        # ターン実行中の割り込みはターンの中断のみ
        if agent is not None and agent.cancel():
            return
        if shutdown_event.is_set():
            return  # 二重呼び出しを防止
        logger.info("Received shutdown signal, shutting down gracefully...")
        shutdown_event.set()

    # シグナルハンドラーを登録（SIGINT + SIGTERM）
    # Windows では loop.add_signal_handler が未実装のため signal.signal にフォールバック
    loop = asyncio.get_running_loop()
    try:
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, signal_handler)
    except NotImplementedError:
        for sig in (signal.SIGINT, signal.SIGTERM):
            signal.signal(sig, lambda s, f: loop.call_soon_threadsafe(signal_handler))

    transport: HttpTransport | None = None
    app_task: asyncio.Task[None] | None = None
    shutdown_task: asyncio.Task[bool] | None = None

    try:
        project_dir = config.project_dir.resolve()
        reload = partial(load_settings, config.global_settings_file, project_dir)
        settings = reload()
        for warning in settings.warnings:
            write_stdout(f"警告: {warning}\n")

        # サービスを初期化
        dispatcher = ToolDispatcher(project_dir, default_tool_table())
        tool_definitions = dispatcher.tool_definitions()
        transport = HttpTransport(
            api_url=config.api_url,
            api_version=config.api_version,
            max_tokens=config.max_tokens,
            system_prompt=build_system_prompt(
                project_dir, [d["name"] for d in tool_definitions]
            ),
            tools=tool_definitions,
            timeout=config.request_timeout,
        )
        reader = StdinReader()
        agent = AgentLoop(
            session=Session(model_id=config.model),
            transport=transport,
            dispatcher=dispatcher,
            engine=PermissionEngine(project_dir.as_posix()),
            settings=settings,
            credentials=StaticCredentialProvider(
                token=config.anthropic_api_key,
                credentials_file=config.credentials_file,
            ),
            decision_provider=ConsolePermissionPrompt(reader, write_stdout),
            permission_timeout=config.permission_timeout,
        )
        app = ConsoleApp(agent, CommandHandler(agent, reload), reader)
        agent.observer = app.observer()

        logger.info("Services initialized", model=config.model)

        app_task = asyncio.create_task(app.run())
        shutdown_task = asyncio.create_task(shutdown_event.wait())

        # app_taskの完了 or シャットダウンイベントを待つ
        done, _ = await asyncio.wait(
            [app_task, shutdown_task],
            return_when=asyncio.FIRST_COMPLETED,
        )

        # app_taskが例外で終了した場合は例外を伝播
        if app_task in done:
            app_task.result()  # 例外があればここでraise

    except Exception:
        logger.exception("Fatal error occurred")
        sys.exit(1)
    finally:
        # 残タスクのキャンセル
        for task in (app_task, shutdown_task):
            if task is not None and not task.done():
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task

        if transport is not None:
            try:
                await asyncio.wait_for(transport.close(), timeout=5.0)
            except TimeoutError:
                logger.warning("Transport close timed out")
            except Exception:
                logger.exception("Error during transport cleanup")

        # シグナルハンドラーの解除
        try:
            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.remove_signal_handler(sig)
        except NotImplementedError:
            for sig in (signal.SIGINT, signal.SIGTERM):
                signal.signal(sig, signal.SIG_DFL)

        logger.info("Shutdown complete")

        # ログのフラッシュと確実なクローズ
        logging.shutdown()


def run() -> None:
    """コンソールスクリプトのエントリポイント."""
    asyncio.run(main())


if __name__ == "__main__":
    run()
