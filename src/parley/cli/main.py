"""parley command line: chat sessions in the terminal plus provider inspection."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Optional

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.table import Table

from .. import __version__
from ..models.agent import MODEL_COLORS, AgentConfig, AgentRole, Roster, generate_short_id
from ..providers.base import KNOWN_PROVIDERS

console = Console()

CONTROL_COMMANDS = {"/pause": "pause", "/resume": "resume", "/stop": "stop"}
QUIT_COMMANDS = {"/quit", "/exit"}


def _setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), rich_tracebacks=True)],
        force=True,
    )


def parse_agent_spec(spec: str, existing: list[AgentConfig]) -> AgentConfig:
    """Build an agent from ``MODEL_REF[=ROLE]``."""
    model_ref, sep, role = spec.rpartition("=")
    if not sep:
        model_ref, role = spec, AgentRole.GENERAL.value
    try:
        agent_role = AgentRole(role.lower())
    except ValueError:
        raise click.BadParameter(
            f"unknown role '{role}' (expected one of: {', '.join(r.value for r in AgentRole)})"
        )

    prefix, colon, model_name = model_ref.partition(":")
    name = model_name if colon and prefix in KNOWN_PROVIDERS else model_ref
    return AgentConfig(
        model_id=model_ref,
        name=name,
        short_id=generate_short_id(a.short_id for a in existing),
        role=agent_role,
        color=MODEL_COLORS[len(existing) % len(MODEL_COLORS)],
    )


class ConsoleChannel:
    """Terminal stand-in for a client connection."""

    def __init__(self, console: Console):
        self.console = console

    async def receive(self) -> Optional[dict]:
        while True:
            try:
                line = await asyncio.to_thread(input)
            except EOFError:
                return None
            line = line.strip()
            if not line:
                continue
            if line in QUIT_COMMANDS:
                return None
            if line in CONTROL_COMMANDS:
                return {"type": CONTROL_COMMANDS[line]}
            return {"type": "user_message", "content": line}

    async def send(self, message: dict) -> None:
        render_event(self.console, message)


def render_event(out: Console, event: dict) -> None:
    kind = event.get("type")
    name = escape(event.get("model_name") or "")
    color = event.get("color") or "cyan"

    if kind == "ready":
        out.print("  [dim]Session ready. Type a message; /pause /resume /stop /quit[/dim]")
    elif kind == "round_start":
        out.rule(f"Round {event.get('round', 0)}", style="dim")
    elif kind == "thinking":
        out.print(f"\n  [{color}]{name}[/{color}] [dim]#{event.get('model_id')} thinking...[/dim]")
    elif kind == "chunk":
        out.print(event.get("content", ""), end="", markup=False, highlight=False)
    elif kind == "complete":
        out.print(f"\n  [dim]{event.get('tokens', 0)} tokens[/dim]")
    elif kind == "error":
        who = f"{name}: " if name else ""
        out.print(f"\n  [red]ERROR[/red] {who}{escape(event.get('error') or '')}")
    elif kind == "checkpoint":
        out.print(
            f"  [yellow]Checkpoint[/yellow] after round {event.get('round')}. "
            f"Type /resume to continue."
        )
    elif kind in ("paused", "resumed", "stopped"):
        out.print(f"  [dim]{kind}[/dim]")
    elif kind == "token_usage":
        usage = event.get("usage") or {}
        if usage:
            summary = ", ".join(f"{agent}: {tokens}" for agent, tokens in usage.items())
            out.print(f"  [dim]Token usage: {summary}[/dim]")


@click.group()
@click.version_option(__version__, prog_name="parley")
@click.option("--config", "config_path", type=click.Path(dir_okay=False), help="Config file path")
@click.option("--verbose", "-v", is_flag=True, help="Debug logging")
@click.pass_context
def cli(ctx: click.Context, config_path: str | None, verbose: bool) -> None:
    """parley - several language models, one conversation."""
    from ..core.config import get_effective_config

    _setup_logging(verbose)
    ctx.ensure_object(dict)
    ctx.obj["config"] = get_effective_config(Path(config_path) if config_path else None)


@cli.command()
@click.argument("session_id")
@click.option(
    "--agent", "-a", "agent_specs", multiple=True,
    help="MODEL_REF[=ROLE], repeatable; replaces the session roster",
)
@click.option("--rounds", type=click.IntRange(0, 999), help="Autonomy rounds after each message")
@click.pass_context
def chat(ctx: click.Context, session_id: str, agent_specs: tuple[str, ...], rounds: int | None) -> None:
    """Open an interactive chat session."""
    from ..core.session import ConversationSession
    from ..core.store import FileStore
    from ..providers.registry import build_registry

    config = ctx.obj["config"]
    store = FileStore(Path(config["storage"]["sessions_dir"]))

    try:
        roster = store.load_roster(session_id)
    except ValueError as e:
        raise click.BadParameter(str(e), param_hint="SESSION_ID")

    if agent_specs or rounds is not None:
        agents = roster.agents
        if agent_specs:
            agents = []
            for spec in agent_specs:
                agents.append(parse_agent_spec(spec, agents))
        roster = Roster(
            agents=agents,
            autonomy_rounds=rounds if rounds is not None else roster.autonomy_rounds,
        )
        store.save_roster(session_id, roster.agents, roster.autonomy_rounds)

    if not roster.agents:
        click.echo("Error: session has no agents. Add some with --agent MODEL_REF[=ROLE].", err=True)
        ctx.exit(2)
        return

    registry = build_registry(config)
    console.print(f"  [bold cyan]PARLEY[/bold cyan] v{__version__}  session [white]{session_id}[/white]")
    for agent in roster.agents:
        console.print(
            f"  [{agent.color or 'cyan'}]{escape(agent.name)}[/{agent.color or 'cyan'}] "
            f"#{agent.short_id} ({agent.role.value}) -> {agent.model_id}"
        )
    console.print(f"  Providers: [white]{', '.join(p.name for p in registry.list_all())}[/white]")

    session = ConversationSession(session_id, store, registry, config)
    asyncio.run(session.serve(ConsoleChannel(console)))


@cli.command()
@click.option("--check", is_flag=True, help="Validate configured API keys")
@click.pass_context
def providers(ctx: click.Context, check: bool) -> None:
    """Show provider configuration state."""
    from ..providers.base import create_provider
    from ..providers.registry import ProviderKeys

    config = ctx.obj["config"]
    keys = ProviderKeys(config)

    table = Table(title="Providers")
    table.add_column("Provider")
    table.add_column("Configured")
    table.add_column("Enabled")
    if check:
        table.add_column("Key check")

    for name in KNOWN_PROVIDERS:
        configured = keys.is_provider_configured(name)
        row = [name, "yes" if configured else "no", "yes" if keys.is_enabled(name) else "no"]
        if check:
            status = "-"
            if configured and name != "ollama":
                error = asyncio.run(create_provider(name, config).validate_key())
                status = "[green]ok[/green]" if error is None else f"[red]{escape(error)}[/red]"
            row.append(status)
        table.add_row(*row)

    console.print(table)


@cli.command()
@click.option("--provider", "-p", "provider_name", type=click.Choice(list(KNOWN_PROVIDERS)))
@click.pass_context
def models(ctx: click.Context, provider_name: str | None) -> None:
    """List models available from enabled providers."""
    from ..providers.registry import build_registry

    registry = build_registry(ctx.obj["config"])
    catalog = asyncio.run(registry.list_models(provider_name))
    if not catalog:
        click.echo("No models available.")
        return
    for model in catalog:
        click.echo(model.id)


@cli.command()
@click.pass_context
def sessions(ctx: click.Context) -> None:
    """List saved chat sessions."""
    from ..core.store import FileStore

    store = FileStore(Path(ctx.obj["config"]["storage"]["sessions_dir"]))
    session_ids = store.list_sessions()
    if not session_ids:
        click.echo("No saved sessions.")
        return
    for session_id in session_ids:
        roster = store.load_roster(session_id)
        names = ", ".join(agent.name for agent in roster.agents) or "-"
        click.echo(f"{session_id}  {names}")


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
