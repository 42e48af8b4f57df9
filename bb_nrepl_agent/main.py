"""
bb-nrepl-agent: let a language model drive a live Babashka runtime.

Commands: bbagent serve | bbagent chat | bbagent config
"""

import asyncio
import sys

import click
from rich.console import Console
from rich.panel import Panel
from rich.syntax import Syntax
from rich.table import Table

from . import __version__
from .agent import Agent
from .config import CONFIG_FIELDS, Config
from .errors import AgentError, ExecutionCancelled
from .logger import setup_logger
from .registry import SessionRegistry
from .session import IN_MEMORY, SessionStore

console = Console()
BANNER = (
    f"[bold #7FA6D9]bb-nrepl-agent[/bold #7FA6D9] "
    f"[dim]v{__version__} · Clojure REPL assistant[/dim]"
)


def _load_config(config_file, model, verbose, project_dir=".") -> Config:
    try:
        config = Config.load(project_dir, config_file=config_file)
        if model:
            config.get_preset(model)
            config.active_model = model
    except AgentError as e:
        console.print(f"[red]Error: {e}[/red]")
        sys.exit(1)
    if verbose:
        config.verbose = True
    setup_logger("bb_nrepl_agent", verbose=config.verbose, log_file=config.log_path())
    return config


@click.group(invoke_without_command=True)
@click.version_option(__version__, prog_name="bbagent")
@click.pass_context
def cli(ctx):
    """bb-nrepl-agent: Clojure REPL assistant."""
    if ctx.invoked_subcommand is None:
        ctx.invoke(chat)


@cli.command()
@click.option("--host", default=None, help="Bind address (default from config)")
@click.option("--port", "-p", type=int, default=None, help="Port (default from config)")
@click.option("--model", "-m", default=None, help="Model preset name")
@click.option("--config", "config_file", default=None, help="Config file path")
@click.option("--no-approval", is_flag=True, help="Execute code without asking")
@click.option("--verbose", "-v", is_flag=True, help="Verbose output")
def serve(host, port, model, config_file, no_approval, verbose):
    """Run the WebSocket server."""
    from .server import run_server

    config = _load_config(config_file, model, verbose)
    if no_approval:
        config.require_approval = False
    console.print(BANNER)
    console.print(f"  [dim]model:[/dim] {config.active_model}  "
                  f"[dim]approval:[/dim] {'on' if config.require_approval else 'off'}")
    run_server(config, host=host, port=port)


@cli.command()
@click.option("--model", "-m", default=None, help="Model preset name")
@click.option("--config", "config_file", default=None, help="Config file path")
@click.option("--session", "-s", "session_id", default=None, help="Resume a stored session")
@click.option("--no-approval", is_flag=True, help="Execute code without asking")
@click.option("--verbose", "-v", is_flag=True, help="Verbose output")
def chat(model=None, config_file=None, session_id=None, no_approval=False, verbose=False):
    """Start an interactive terminal session."""
    config = _load_config(config_file, model, verbose)
    if no_approval:
        config.require_approval = False
    console.print(BANNER)
    asyncio.run(_chat_loop(config, session_id))


@cli.group("config", invoke_without_command=True)
@click.option("--config", "config_file", default=None, help="Config file path")
@click.pass_context
def config_cmd(ctx, config_file):
    """Show or change configuration."""
    ctx.obj = _load_config(config_file, None, False)
    if ctx.invoked_subcommand is None:
        table = Table(show_header=False, box=None, padding=(0, 2))
        for key, value in ctx.obj.summary().items():
            table.add_row(f"[dim]{key}[/dim]", str(value))
        console.print(table)


@config_cmd.command("get")
@click.argument("key")
@click.pass_obj
def config_get(config: Config, key):
    """Print one setting."""
    if key not in CONFIG_FIELDS:
        console.print(f"[red]Unknown config key: {key}[/red]")
        sys.exit(1)
    console.print(str(config.get_config_value(key)))


@config_cmd.command("set")
@click.argument("key")
@click.argument("value")
@click.pass_obj
def config_set(config: Config, key, value):
    """Change one setting and save it."""
    ok, error = config.set_config_value(key, value)
    if not ok:
        console.print(f"[red]Error: {error}[/red]")
        sys.exit(1)
    console.print(f"  [green]{key}[/green] = {config.get_config_value(key)}")


class TerminalApproval:
    """y/n/a prompt in front of every evaluation; "a" approves the rest of the session."""

    def __init__(self):
        self.approve_all = False

    async def __call__(self, code: str) -> str:
        console.print(Panel(Syntax(code, "clojure", theme="ansi_dark", word_wrap=True),
                            title="eval_clojure", border_style="#7FA6D9"))
        if self.approve_all:
            return code
        answer = (await asyncio.to_thread(console.input, "  Run this code? [y/n/a] ")).strip().lower()
        if answer in ("a", "all"):
            self.approve_all = True
            return code
        if answer in ("y", "yes", ""):
            return code
        raise ExecutionCancelled()


async def _chat_loop(config: Config, session_id=None):
    store = SessionStore(config.db_path or IN_MEMORY)
    registry = SessionRegistry(config, store)
    handle = registry.open_session("terminal", session_id=session_id,
                                   status_callback=lambda msg: console.print(f"  [dim]{msg}[/dim]"))
    agent: Agent = handle.agent
    if config.require_approval:
        agent.approval_gate = TerminalApproval()

    console.print(f"  [dim]session:[/dim] {handle.session_id}  "
                  f"[dim]model:[/dim] {config.active_model}")
    console.print("  [dim]/quit to exit, /reset to clear this session's context[/dim]\n")

    try:
        while True:
            try:
                user_input = (await asyncio.to_thread(console.input, "[bold]> [/bold]")).strip()
            except (EOFError, KeyboardInterrupt):
                console.print("\n[dim]Goodbye![/dim]")
                break

            if not user_input:
                continue
            if user_input in ("/quit", "/exit"):
                break
            if user_input == "/reset":
                agent.reset()
                console.print("  [dim]Context cleared.[/dim]")
                continue

            try:
                result = await agent.chat(user_input)
            except AgentError as error:
                console.print(f"\n[red]  Error: {error}[/red]")
                continue

            if result.cancelled:
                console.print(f"  [yellow]{result.content}[/yellow]")
            elif result.is_html:
                console.print(Syntax(result.html, "html", theme="ansi_dark", word_wrap=True))
            elif result.content:
                console.print(result.content)
    finally:
        await registry.close()
        store.close()


if __name__ == "__main__":
    cli()
