"""
CLI 命令 (cli/commands.py)

- onboard   初始化配置和工作区
- gateway   启动网关（渠道 + AgentLoop + 心跳）
- agent     直接与 Agent 对话（单条消息或交互模式）
- status    查看配置、模型与服务商密钥状态
- channels  渠道状态
- sessions  会话管理：list / patch / reset / delete / compact

技术栈：Typer（命令定义）、Rich（表格与 Markdown 输出）、prompt_toolkit（交互输入与历史记录）。

【二开提示】
    会话管理命令只是 session/manage.py 的薄封装，
    需要 HTTP 管理接口时可以直接复用同一组函数。
"""

import asyncio
import json
import os
import select
import signal
import sys
from datetime import datetime
from pathlib import Path
from typing import Any

import typer
from prompt_toolkit import PromptSession
from prompt_toolkit.formatted_text import HTML
from prompt_toolkit.history import FileHistory
from prompt_toolkit.patch_stdout import patch_stdout
from rich.console import Console
from rich.markdown import Markdown
from rich.table import Table
from rich.text import Text

from lanebot import __logo__, __version__
from lanebot.errors import SessionOperationError, StoreLockTimeout

app = typer.Typer(
    name="lanebot",
    help=f"{__logo__} lanebot - multi-channel session gateway",
    no_args_is_help=True,
)

console = Console()
EXIT_COMMANDS = {"exit", "quit", "/exit", "/quit", ":q"}

# ---------------------------------------------------------------------------
# 交互输入：prompt_toolkit 负责行编辑、粘贴和历史记录
# ---------------------------------------------------------------------------

_PROMPT_SESSION: PromptSession | None = None
_SAVED_TERM_ATTRS = None


def _flush_pending_tty_input() -> None:
    """丢弃 Agent 运行期间残留的按键输入。"""
    try:
        fd = sys.stdin.fileno()
        if not os.isatty(fd):
            return
    except (OSError, ValueError):
        return

    try:
        import termios
        termios.tcflush(fd, termios.TCIFLUSH)
        return
    except (ImportError, OSError):
        pass

    try:
        while True:
            ready, _, _ = select.select([fd], [], [], 0)
            if not ready or not os.read(fd, 4096):
                break
    except OSError:
        return


def _restore_terminal() -> None:
    if _SAVED_TERM_ATTRS is None:
        return
    try:
        import termios
        termios.tcsetattr(sys.stdin.fileno(), termios.TCSADRAIN, _SAVED_TERM_ATTRS)
    except (ImportError, OSError):
        pass


def _init_prompt_session() -> None:
    global _PROMPT_SESSION, _SAVED_TERM_ATTRS
    try:
        import termios
        _SAVED_TERM_ATTRS = termios.tcgetattr(sys.stdin.fileno())
    except (ImportError, OSError):
        pass

    from lanebot.config.loader import get_data_dir

    history_file = get_data_dir() / "history" / "cli_history"
    history_file.parent.mkdir(parents=True, exist_ok=True)
    _PROMPT_SESSION = PromptSession(
        history=FileHistory(str(history_file)),
        enable_open_in_editor=False,
        multiline=False,
    )


async def _read_interactive_input_async() -> str:
    if _PROMPT_SESSION is None:
        raise RuntimeError("Call _init_prompt_session() first")
    try:
        with patch_stdout():
            return await _PROMPT_SESSION.prompt_async(HTML("<b fg='ansiblue'>You:</b> "))
    except EOFError as exc:
        raise KeyboardInterrupt from exc


def _print_agent_response(response: str, render_markdown: bool) -> None:
    content = response or ""
    console.print()
    console.print(f"[cyan]{__logo__} lanebot[/cyan]")
    console.print(Markdown(content) if render_markdown else Text(content))
    console.print()


def version_callback(value: bool):
    if value:
        console.print(f"{__logo__} lanebot v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(None, "--version", "-v", callback=version_callback, is_eager=True),
):
    """lanebot CLI."""
    pass


def _load_config():
    from lanebot.config.loader import load_config

    return load_config()


def _make_providers(config):
    """按配置创建 ProviderPool；默认模型没有可用密钥时退出。"""
    from lanebot.providers.pool import ProviderPool

    pool = ProviderPool(config)
    if not pool.has_credentials():
        console.print("[red]Error: No API key configured.[/red]")
        console.print("Set one in ~/.lanebot/config.json under providers section")
        raise typer.Exit(1)
    return pool


def _fail(message: str) -> None:
    console.print(f"[red]Error: {message}[/red]")
    raise typer.Exit(1)


# ============================================================================
# Onboard
# ============================================================================


@app.command()
def onboard():
    """初始化 ~/.lanebot/config.json 与工作区模板。"""
    from lanebot.config.loader import get_config_path, save_config
    from lanebot.config.schema import Config
    from lanebot.utils.helpers import get_workspace_path

    config_path = get_config_path()
    if config_path.exists():
        console.print(f"[yellow]Config already exists at {config_path}[/yellow]")
        if not typer.confirm("Overwrite?"):
            raise typer.Exit()

    save_config(Config())
    console.print(f"[green]✓[/green] Created config at {config_path}")

    workspace = get_workspace_path()
    console.print(f"[green]✓[/green] Created workspace at {workspace}")
    _create_workspace_templates(workspace)

    console.print(f"\n{__logo__} lanebot is ready!")
    console.print("\nNext steps:")
    console.print("  1. Add your API key to [cyan]~/.lanebot/config.json[/cyan]")
    console.print("  2. Chat: [cyan]lanebot agent -m \"Hello!\"[/cyan]")
    console.print("  3. Enable Slack or Telegram under [cyan]channels[/cyan] and run [cyan]lanebot gateway[/cyan]")


def _create_workspace_templates(workspace: Path):
    templates = {
        "AGENTS.md": """# Agent Instructions

You are a helpful AI assistant. Be concise, accurate, and friendly.

## Guidelines

- Ask for clarification when the request is ambiguous
- Use tools to help accomplish tasks
- Reply with NO_REPLY when a message needs no answer
""",
        "USER.md": """# User

Information about the user goes here.

## Preferences

- Communication style: (casual/formal)
- Timezone: (your timezone)
""",
        "HEARTBEAT.md": """# Heartbeat

<!-- Tasks listed here are checked periodically in the main session. -->
""",
    }
    for filename, content in templates.items():
        file_path = workspace / filename
        if not file_path.exists():
            file_path.write_text(content, encoding="utf-8")
            console.print(f"  [dim]Created {filename}[/dim]")

    (workspace / "skills").mkdir(exist_ok=True)


# ============================================================================
# Gateway
# ============================================================================


@app.command()
def gateway(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """
    启动网关：渠道管理器、AgentLoop 与心跳服务。

    心跳在主会话中运行，回复投递到主会话最近一次活跃的渠道。
    """
    from loguru import logger

    from lanebot.agent.loop import AgentLoop
    from lanebot.bus.queue import MessageBus
    from lanebot.channels.manager import ChannelManager
    from lanebot.heartbeat.service import HeartbeatService
    from lanebot.session.keys import resolve_main_session_key

    if verbose:
        logger.remove()
        logger.add(sys.stderr, level="DEBUG")

    config = _load_config()
    console.print(f"{__logo__} Starting lanebot gateway...")

    bus = MessageBus()
    agent_loop = AgentLoop(bus=bus, providers=_make_providers(config), config=config)

    async def on_heartbeat(prompt: str, session_key: str, channel: str, chat_id: str) -> str:
        return await agent_loop.process_direct(prompt, session_key=session_key, channel=channel, chat_id=chat_id)

    hb_config = config.gateway.heartbeat
    heartbeat = HeartbeatService(
        workspace=config.workspace_path,
        store_path=config.store_path(),
        session_key=resolve_main_session_key(config.session, config.agent_id),
        bus=bus,
        on_heartbeat=on_heartbeat,
        is_busy=agent_loop.coordinator.is_active,
        interval_s=hb_config.interval_s,
        enabled=hb_config.enabled,
    )

    channels = ChannelManager(config, bus)
    if channels.enabled_channels:
        console.print(f"[green]✓[/green] Channels enabled: {', '.join(channels.enabled_channels)}")
    else:
        console.print("[yellow]Warning: No channels enabled[/yellow]")
    if hb_config.enabled:
        console.print(f"[green]✓[/green] Heartbeat: every {hb_config.interval_s // 60}m")

    async def run():
        try:
            await heartbeat.start()
            await asyncio.gather(agent_loop.run(), channels.start_all())
        except (KeyboardInterrupt, asyncio.CancelledError):
            console.print("\nShutting down...")
        finally:
            heartbeat.stop()
            await agent_loop.close()
            await channels.stop_all()
            for name, status in channels.get_status().items():
                if status["enabled"]:
                    logger.info(f"{name}: {status['sent']} sent, {status['failed']} failed")

    asyncio.run(run())


# ============================================================================
# Agent
# ============================================================================


@app.command()
def agent(
    message: str = typer.Option(None, "--message", "-m", help="Message to send to the agent"),
    session_key: str = typer.Option(None, "--session", "-s", help="Session key (defaults to the main session)"),
    markdown: bool = typer.Option(True, "--markdown/--no-markdown", help="Render assistant output as Markdown"),
    logs: bool = typer.Option(False, "--logs/--no-logs", help="Show lanebot runtime logs during chat"),
):
    """直接与 Agent 对话；不带 -m 时进入交互模式。"""
    from contextlib import nullcontext

    from loguru import logger

    from lanebot.agent.loop import AgentLoop
    from lanebot.bus.queue import MessageBus

    config = _load_config()
    if logs:
        logger.enable("lanebot")
    else:
        logger.disable("lanebot")

    agent_loop = AgentLoop(bus=MessageBus(), providers=_make_providers(config), config=config)

    def _thinking_ctx():
        if logs:
            return nullcontext()
        return console.status("[dim]lanebot is thinking...[/dim]", spinner="dots")

    async def ask(text: str) -> str:
        try:
            with _thinking_ctx():
                return await agent_loop.process_direct(text, session_key=session_key)
        except StoreLockTimeout as e:
            _fail(str(e))

    if message:
        async def run_once():
            try:
                _print_agent_response(await ask(message), render_markdown=markdown)
            finally:
                await agent_loop.close()

        asyncio.run(run_once())
        return

    _init_prompt_session()
    console.print(f"{__logo__} Interactive mode (type [bold]exit[/bold] or [bold]Ctrl+C[/bold] to quit)\n")

    def _exit_on_sigint(signum, frame):
        _restore_terminal()
        console.print("\nGoodbye!")
        os._exit(0)

    signal.signal(signal.SIGINT, _exit_on_sigint)

    async def run_interactive():
        try:
            while True:
                try:
                    _flush_pending_tty_input()
                    user_input = await _read_interactive_input_async()
                except KeyboardInterrupt:
                    break
                command = user_input.strip()
                if not command:
                    continue
                if command.lower() in EXIT_COMMANDS:
                    break
                _print_agent_response(await ask(user_input), render_markdown=markdown)
        finally:
            _restore_terminal()
            console.print("\nGoodbye!")
            await agent_loop.close()

    asyncio.run(run_interactive())


# ============================================================================
# Channels
# ============================================================================


channels_app = typer.Typer(help="Manage channels")
app.add_typer(channels_app, name="channels")


@channels_app.command("status")
def channels_status():
    """渠道启用状态与配置摘要。"""
    config = _load_config()

    table = Table(title="Channel Status")
    table.add_column("Channel", style="cyan")
    table.add_column("Enabled", style="green")
    table.add_column("Configuration", style="yellow")

    tg = config.channels.telegram
    table.add_row(
        "Telegram",
        "✓" if tg.enabled else "✗",
        f"token: {tg.token[:10]}..." if tg.token else "[dim]not configured[/dim]",
    )

    slack = config.channels.slack
    slack_config = (
        f"socket, groups: {slack.group_policy}"
        if slack.app_token and slack.bot_token
        else "[dim]not configured[/dim]"
    )
    table.add_row("Slack", "✓" if slack.enabled else "✗", slack_config)

    console.print(table)


# ============================================================================
# Sessions
# ============================================================================


sessions_app = typer.Typer(help="Manage sessions")
app.add_typer(sessions_app, name="sessions")


def _format_age(updated_at: int | None) -> str:
    if not updated_at:
        return "-"
    return datetime.fromtimestamp(updated_at / 1000).strftime("%Y-%m-%d %H:%M")


def _run_session_op(coro) -> dict[str, Any]:
    try:
        return asyncio.run(coro)
    except (SessionOperationError, StoreLockTimeout) as e:
        _fail(str(e))


def _parse_assignments(assignments: list[str], unset: list[str]) -> dict[str, Any]:
    patch: dict[str, Any] = {}
    for item in assignments:
        name, sep, value = item.partition("=")
        if not sep or not name.strip():
            _fail(f'Expected field=value, got "{item}"')
        patch[name.strip()] = value.strip()
    for name in unset:
        patch[name.strip()] = None
    return patch


@sessions_app.command("list")
def sessions_list(
    active: int = typer.Option(None, "--active", help="Only sessions active in the last N minutes"),
    label: str = typer.Option(None, "--label", help="Only sessions with this label"),
    limit: int = typer.Option(None, "--limit", "-n", help="Maximum number of rows"),
    include_global: bool = typer.Option(False, "--global", help="Include the global session"),
    as_json: bool = typer.Option(False, "--json", help="Print raw JSON"),
):
    """按最近活跃时间列出会话。"""
    from lanebot.session.manage import list_sessions

    config = _load_config()
    result = list_sessions(
        config,
        include_global=include_global,
        label=label,
        active_minutes=active,
        limit=limit,
    )
    if as_json:
        console.print_json(json.dumps(result, ensure_ascii=False))
        return

    table = Table(title=f"Sessions ({result['count']}) - {result['path']}")
    table.add_column("Key", style="cyan")
    table.add_column("Kind")
    table.add_column("Updated")
    table.add_column("Model", style="yellow")
    table.add_column("Tokens", justify="right")
    table.add_column("Flags", style="dim")
    for row in result["sessions"]:
        flags = [
            f"think:{row['thinkingLevel']}" if row.get("thinkingLevel") else "",
            f"send:{row['sendPolicy']}" if row.get("sendPolicy") else "",
            "aborted" if row.get("abortedLastRun") else "",
        ]
        table.add_row(
            row["key"],
            row["kind"],
            _format_age(row.get("updatedAt")),
            row.get("model") or "[dim]default[/dim]",
            str(row.get("totalTokens") or 0),
            " ".join(f for f in flags if f),
        )
    console.print(table)


@sessions_app.command("patch")
def sessions_patch(
    key: str = typer.Argument(..., help="Session key (e.g. main, agent:main:slack:channel:c1)"),
    assignments: list[str] = typer.Argument(None, help="field=value pairs, e.g. thinkingLevel=high"),
    unset: list[str] = typer.Option([], "--unset", help="Field to clear (repeatable)"),
):
    """修改会话字段（等级、模型、sendPolicy、队列参数、label）。"""
    from lanebot.session.manage import patch_session

    patch = _parse_assignments(assignments or [], unset)
    if not patch:
        _fail("Nothing to patch")
    result = _run_session_op(patch_session(_load_config(), key, patch))
    console.print(f"[green]✓[/green] Patched {result['key']}")
    console.print_json(json.dumps(result["entry"], ensure_ascii=False))


@sessions_app.command("reset")
def sessions_reset(key: str = typer.Argument(..., help="Session key")):
    """为会话分配新的 sessionId，保留用户设置。"""
    from lanebot.session.manage import reset_session

    result = _run_session_op(reset_session(_load_config(), key))
    console.print(f"[green]✓[/green] Reset {result['key']} → {result['entry'].get('sessionId')}")


@sessions_app.command("delete")
def sessions_delete(
    key: str = typer.Argument(..., help="Session key"),
    keep_transcript: bool = typer.Option(False, "--keep-transcript", help="Do not archive the transcript"),
):
    """删除会话（主会话不可删除）。"""
    from lanebot.session.manage import delete_session

    result = _run_session_op(delete_session(_load_config(), key, delete_transcript=not keep_transcript))
    if not result["deleted"]:
        console.print(f"[yellow]Session {result['key']} not found[/yellow]")
        return
    console.print(f"[green]✓[/green] Deleted {result['key']}")
    for path in result.get("archived") or []:
        console.print(f"  [dim]Archived {path}[/dim]")


@sessions_app.command("compact")
def sessions_compact(
    key: str = typer.Argument(..., help="Session key"),
    max_lines: int = typer.Option(400, "--max-lines", help="Transcript lines to keep"),
):
    """只保留 transcript 末尾 max_lines 行，原文件归档。"""
    from lanebot.session.manage import compact_session

    result = _run_session_op(compact_session(_load_config(), key, max_lines=max_lines))
    if result["compacted"]:
        console.print(f"[green]✓[/green] Compacted {result['key']}: kept {result['kept']} lines")
    else:
        console.print(f"[dim]{result['key']}: nothing to compact ({result.get('reason')})[/dim]")


# ============================================================================
# Status
# ============================================================================


@app.command()
def status():
    """配置、工作区、会话存储、默认模型与服务商密钥状态。"""
    from lanebot.config.loader import get_config_path
    from lanebot.providers.registry import PROVIDERS

    config_path = get_config_path()
    config = _load_config()
    workspace = config.workspace_path
    store_path = config.store_path()

    console.print(f"{__logo__} lanebot Status\n")
    console.print(f"Config: {config_path} {'[green]✓[/green]' if config_path.exists() else '[red]✗[/red]'}")
    console.print(f"Workspace: {workspace} {'[green]✓[/green]' if workspace.exists() else '[red]✗[/red]'}")
    console.print(f"Sessions: {store_path} {'[green]✓[/green]' if store_path.exists() else '[dim]empty[/dim]'}")
    if not config_path.exists():
        return

    console.print(f"Model: {config.agents.defaults.model}")
    if config.agents.defaults.model_fallbacks:
        console.print(f"Fallbacks: {', '.join(config.agents.defaults.model_fallbacks)}")
    console.print(f"Queue: {config.session.queue.mode} (debounce {config.session.queue.debounce_ms}ms)")

    for spec in PROVIDERS:
        p = getattr(config.providers, spec.name, None)
        if p is None:
            continue
        if spec.is_local:
            value = f"[green]✓ {p.api_base}[/green]" if p.api_base else "[dim]not set[/dim]"
        else:
            value = "[green]✓[/green]" if p.api_key else "[dim]not set[/dim]"
        console.print(f"{spec.label}: {value}")


if __name__ == "__main__":
    app()
