"""
CLI entry point for turnloop.
"""

import asyncio
import json
import sys
from typing import Any

import click
from rich.console import Console
from rich.live import Live
from rich.markdown import Markdown
from rich.panel import Panel
from rich.table import Table

from turnloop import __version__
from turnloop.core.observer import ConversationObserver
from turnloop.core.session import ConversationSession
from turnloop.core.tools import ToolManager
from turnloop.default_tools import DefaultToolProvider
from turnloop.models.call import CallStatus, Return
from turnloop.models.config import ConfigError, EngineConfig, ModelConfig, load_engine_config
from turnloop.models.interactions import Agent, TextInteraction, ToolCallInteraction, ToolResultInteraction

console = Console()
console_err = Console(stderr=True)

DEFAULT_MODEL = "openai/gpt-4o-mini"


# =============================================================================
# Helpers
# =============================================================================


class ConsoleObserver(ConversationObserver):
    """Prints tool activity as it happens."""

    def on_tool_call(self, call: ToolCallInteraction) -> None:
        args = json.dumps(call.arguments or {})
        if len(args) > 80:
            args = args[:77] + "..."
        console_err.print(f"[dim]> {call.name}({args})[/dim]")

    def on_tool_result(self, result: ToolResultInteraction) -> None:
        if result.has_error():
            console_err.print(f"[red]< {result.name} failed[/red]")
        else:
            console_err.print(f"[dim]< {result.name} ok[/dim]")


def _load_config(
    config_path: str | None,
    model: str | None,
    system_prompt: str | None,
    max_turns: int | None,
    tool_filter: str | None,
) -> EngineConfig:
    try:
        if config_path:
            config = load_engine_config(config_path)
        else:
            config = EngineConfig(model=ModelConfig(provider=model or DEFAULT_MODEL))
    except (FileNotFoundError, ConfigError) as e:
        console_err.print(f"[red]{e}[/red]")
        sys.exit(1)

    if model and config_path:
        config.model.provider = model
    if system_prompt:
        config.system_prompt = system_prompt
    if max_turns:
        config.session.max_turns = max_turns
    if tool_filter is not None:
        config.tool_filter = tool_filter
    return config


def _build_session(config: EngineConfig, verbose: bool = True) -> ConversationSession:
    tools = ToolManager([DefaultToolProvider()], default_timeout=config.assistant.tool_timeout)
    observer = ConsoleObserver() if verbose else None
    return ConversationSession.from_config(config, observer=observer, tool_manager=tools)


def _print_error(ret: Return) -> None:
    console_err.print(f"[red]Error:[/red] {ret.error_message}")
    for message in ret.all_messages:
        if message.message != ret.error_message:
            console_err.print(f"  [dim]{message}[/dim]")


def _final_text(ret: Return) -> str:
    last = ret.body.last_text(Agent.ASSISTANT)
    return last.content if last else ""


async def _stream_reply(session: ConversationSession) -> Return | None:
    """Stream one reply to the console, returning the final Return."""
    final: Return | None = None
    text = ""
    with Live(Markdown(""), console=console, refresh_per_second=12, transient=False) as live:
        async for ret in session.stream():
            if ret.is_error:
                final = ret
                break
            if ret.status == CallStatus.STREAMING:
                for item in ret.body.interactions:
                    if isinstance(item, TextInteraction) and item.agent == Agent.ASSISTANT:
                        text = item.content
                        live.update(Markdown(text))
            elif ret.status == CallStatus.CALLING_TOOLS:
                text = ""
            else:
                final = ret
    return final


# =============================================================================
# Root CLI Group
# =============================================================================


@click.group()
@click.version_option(version=__version__, prog_name="turnloop")
@click.option("--debug", is_flag=True, hidden=True, help="Enable debug logging")
@click.pass_context
def cli(ctx: click.Context, debug: bool):
    """
    turnloop: multi-turn conversations with tool calling.

    \b
        turnloop run "What time is it in Tokyo?"
        turnloop chat --config engine.yaml
        turnloop tools
    """
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug

    if debug:
        import logging

        logging.basicConfig(level=logging.DEBUG, format="[%(levelname)s] %(name)s: %(message)s")
        logging.getLogger("httpx").setLevel(logging.WARNING)
        logging.getLogger("httpcore").setLevel(logging.WARNING)
        logging.getLogger("LiteLLM").setLevel(logging.WARNING)


_config_option = click.option(
    "--config", "-c", "config_path", type=click.Path(), default=None, help="Engine config YAML file"
)
_model_option = click.option("--model", "-m", default=None, help=f"LiteLLM model id (default: {DEFAULT_MODEL})")
_system_option = click.option("--system", "-s", "system_prompt", default=None, help="System prompt")
_turns_option = click.option("--max-turns", type=int, default=None, help="Maximum provider calls per run")
_tools_option = click.option("--tools", "tool_filter", default=None, help="Tool filter, e.g. '*', '-*', 'echo'")


@cli.command()
@click.argument("prompt")
@_config_option
@_model_option
@_system_option
@_turns_option
@_tools_option
@click.option("--stream/--no-stream", default=False, help="Stream the reply as it is generated")
@click.option("--json", "as_json", is_flag=True, help="Output the final history as JSON")
def run(
    prompt: str,
    config_path: str | None,
    model: str | None,
    system_prompt: str | None,
    max_turns: int | None,
    tool_filter: str | None,
    stream: bool,
    as_json: bool,
):
    """
    Run a single prompt to a stable answer.

    \b
    Examples:
        turnloop run "Echo hello in upper case"
        turnloop run "Summarize this" --model anthropic/claude-3-5-haiku-20241022
        turnloop run "What time is it?" --stream
    """
    config = _load_config(config_path, model, system_prompt, max_turns, tool_filter)
    session = _build_session(config, verbose=not as_json)
    session.add_interaction(prompt)

    if stream and not as_json:
        ret = asyncio.run(_stream_reply(session))
    else:
        ret = asyncio.run(session.run_to_stable_result())

    if ret is None or ret.is_error:
        if ret is not None:
            _print_error(ret)
        sys.exit(1)

    if as_json:
        click.echo(json.dumps(_history_json(session), indent=2, default=str))
        return
    if not stream:
        console.print(Markdown(_final_text(ret)))

    metrics = session.get_combined_metrics()
    console_err.print(
        f"[dim]{metrics.input_tokens} in / {metrics.output_tokens} out tokens[/dim]"
    )


def _history_json(session: ConversationSession) -> list[dict[str, Any]]:
    output = []
    for item in session.get_history_interactions():
        entry: dict[str, Any] = {"agent": item.agent.value, "turn_id": item.turn_id}
        if isinstance(item, TextInteraction):
            entry["content"] = item.content
        elif isinstance(item, ToolCallInteraction):
            entry.update(id=item.id, name=item.name, arguments=item.arguments)
        elif isinstance(item, ToolResultInteraction):
            entry.update(id=item.id, name=item.name, result=item.result)
        output.append(entry)
    return output


@cli.command()
@_config_option
@_model_option
@_system_option
@_turns_option
@_tools_option
@click.option("--greet", is_flag=True, help="Let the assistant open the conversation")
def chat(
    config_path: str | None,
    model: str | None,
    system_prompt: str | None,
    max_turns: int | None,
    tool_filter: str | None,
    greet: bool,
):
    """
    Start an interactive, streaming chat.

    Type /quit to leave, /clear to start over.
    """
    config = _load_config(config_path, model, system_prompt, max_turns, tool_filter)
    session = _build_session(config)

    console.print(
        Panel(
            f"[bold]turnloop chat[/bold] with [cyan]{config.model.provider}[/cyan]\n"
            "[dim]/quit to exit, /clear to reset the conversation[/dim]",
            border_style="blue",
        )
    )

    if greet:
        greeting = asyncio.run(session.generate_greeting())
        if greeting is not None and greeting.body.last_text(Agent.ASSISTANT):
            console.print(Markdown(greeting.body.last_text(Agent.ASSISTANT).content))

    while True:
        try:
            line = console.input("[bold green]you>[/bold green] ").strip()
        except (EOFError, KeyboardInterrupt):
            console.print()
            break
        if not line:
            continue
        if line in ("/quit", "/exit"):
            break
        if line == "/clear":
            session = _build_session(config)
            console.print("[dim]Conversation cleared.[/dim]")
            continue

        session.add_interaction(line)
        try:
            ret = asyncio.run(_stream_reply(session))
        except KeyboardInterrupt:
            session.cancel()
            console.print("[yellow]Interrupted.[/yellow]")
            continue
        if ret is not None and ret.is_error:
            _print_error(ret)


@cli.command()
@click.option("--filter", "-f", "tool_filter", default=None, help="Tool filter, e.g. '*', '-echo'")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def tools(tool_filter: str | None, as_json: bool):
    """
    List the tools available to the model.

    \b
    Examples:
        turnloop tools
        turnloop tools --filter "-echo"
        turnloop tools --json
    """
    manager = ToolManager([DefaultToolProvider()])
    available = manager.get_tools(tool_filter)

    if as_json:
        click.echo(json.dumps([t.to_openai() for t in available], indent=2))
        return

    if not available:
        console.print("[dim]No tools match the filter.[/dim]")
        return

    table = Table(title="Tools")
    table.add_column("Tool", style="cyan")
    table.add_column("Description")
    table.add_column("Category", style="dim")
    for tool in available:
        desc = tool.description
        if len(desc) > 60:
            desc = desc[:57] + "..."
        table.add_row(tool.name, desc, tool.category)

    console.print(table)
    console.print(f"\n[dim]{len(available)} tools available[/dim]")


def main():
    cli(obj={})


if __name__ == "__main__":
    main()
