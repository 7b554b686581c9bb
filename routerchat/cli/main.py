"""
CLI entry point for routerchat — streaming chat through an LLM gateway.
"""

import asyncio
import getpass
import json
import sys

import click
from rich.console import Console
from rich.panel import Panel
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.table import Table

from routerchat import __version__
from routerchat.core.config import get_config_manager
from routerchat.core.credentials import get_credential_store
from routerchat.core.engine import ChatEngine, StreamState
from routerchat.core.errors import CredentialError, RouterChatError, UnavailableError
from routerchat.core.sink import StreamSink
from routerchat.models.chat import ChatMessage

console = Console()
console_err = Console(stderr=True)


def _build_engine() -> ChatEngine:
    return ChatEngine.from_config(get_credential_store(), get_config_manager())


def _fail(message: str) -> None:
    console_err.print(f"[red]Error:[/red] {message}")
    sys.exit(1)


class ConsoleSink(StreamSink):
    """Writes the reply to the terminal as it streams."""

    def __init__(self, out: Console):
        self.out = out
        self.error: RouterChatError | None = None
        self.cancelled = False

    def on_start(self) -> None:
        pass

    def on_token(self, token: str) -> None:
        self.out.print(token, end="", markup=False, highlight=False, soft_wrap=True)

    def on_end(self) -> None:
        self.out.print()

    def on_cancel(self) -> None:
        self.cancelled = True
        self.out.print()
        self.out.print("[grey62](cancelled)[/grey62]")

    def on_error(self, error: RouterChatError) -> None:
        self.error = error


# =============================================================================
# Root CLI Group
# =============================================================================


@click.group()
@click.version_option(version=__version__, prog_name="routerchat")
@click.option("--debug", is_flag=True, hidden=True, help="Enable debug logging")
@click.pass_context
def cli(ctx: click.Context, debug: bool):
    """
    Routerchat — chat with any model behind an OpenRouter-style gateway.

    \b
        routerchat key set            # Store your API key
        routerchat models list        # Browse available models
        routerchat models select ID   # Pick the model to chat with
        routerchat chat "Hello"       # Stream a reply
    """
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug

    if debug:
        import logging

        logging.basicConfig(level=logging.DEBUG, format="[%(levelname)s] %(name)s: %(message)s")
        logging.getLogger("httpx").setLevel(logging.WARNING)
        logging.getLogger("httpcore").setLevel(logging.WARNING)


# =============================================================================
# Chat
# =============================================================================


@cli.command()
@click.argument("message")
@click.option("--model", "-m", default=None, help="Model id (default: the selected model)")
@click.option("--system", "-s", "system_prompt", default=None, help="System prompt to send first")
@click.option("--no-stream", is_flag=True, help="Print the reply only once it is complete")
def chat(message: str, model: str | None, system_prompt: str | None, no_stream: bool):
    """
    Send MESSAGE and stream the reply. Ctrl-C stops the stream.

    \b
    Examples:
        routerchat chat "Explain SSE in one sentence"
        routerchat chat "Bonjour" -m mistralai/mistral-7b-instruct
    """
    history = [ChatMessage.system(system_prompt)] if system_prompt else None
    sink = ConsoleSink(console)

    async def _run() -> tuple[StreamState, RouterChatError | None, str | None]:
        async with _build_engine() as engine:
            if no_stream:
                try:
                    text = await engine.complete(message, history=history, model=model)
                except RouterChatError as e:
                    return StreamState.FAILED, e, None
                return StreamState.COMPLETED, None, text
            session = await engine.send(message, sink, history=history, model=model)
            return session.state, sink.error, None

    try:
        state, error, text = asyncio.run(_run())
    except KeyboardInterrupt:
        # The sink already reported a cancelled stream
        if not sink.cancelled:
            console.print()
            console.print("[grey62](cancelled)[/grey62]")
        sys.exit(130)

    if error is not None:
        if error.kind == "cancelled":
            console.print("[grey62](cancelled)[/grey62]")
            return
        _fail(str(error))
    if text is not None:
        console.print(text, markup=False, highlight=False)


# =============================================================================
# Models
# =============================================================================


@cli.group("models")
def models_group():
    """Browse and select gateway models."""
    pass


@models_group.command("list")
@click.option("--refresh", is_flag=True, help="Ignore the cached list and refetch")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.option("--filter", "-f", "name_filter", default=None, help="Only show ids containing this text")
def models_list(refresh: bool, as_json: bool, name_filter: str | None):
    """List models available through the gateway."""

    async def _run():
        async with _build_engine() as engine:
            if refresh:
                engine.directory.invalidate()
            models = await engine.directory.list_models()
            selected = await engine.directory.get_selected_model()
            return models, selected

    try:
        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            console=console_err,
            transient=True,
        ) as progress:
            progress.add_task("Fetching models...", total=None)
            models, selected = asyncio.run(_run())
    except RouterChatError as e:
        _fail(str(e))

    if name_filter:
        models = [m for m in models if name_filter.lower() in m.id.lower()]

    if as_json:
        click.echo(json.dumps([m.to_wire() for m in models], indent=2))
        return

    table = Table(show_header=True, header_style="bold", box=None, padding=(0, 2))
    table.add_column("")
    table.add_column("Model", style="cyan")
    table.add_column("Context", justify="right")
    table.add_column("Prompt $/M", justify="right")
    table.add_column("Completion $/M", justify="right")
    for m in models:
        marker = "[green]✓[/green]" if m.id == selected else ""
        model_id = m.id if m.available else f"[dim]{m.id} (unavailable)[/dim]"
        table.add_row(
            marker,
            model_id,
            f"{m.context_length:,}" if m.context_length else "-",
            f"{m.pricing.prompt_rate * 1_000_000:.2f}",
            f"{m.pricing.completion_rate * 1_000_000:.2f}",
        )
    console.print(table)
    console.print(f"[bright_black]{len(models)} models[/bright_black]")


@models_group.command("current")
def models_current():
    """Show the model chat requests will use."""

    async def _run() -> str:
        async with _build_engine() as engine:
            return await engine.directory.get_selected_model()

    click.echo(asyncio.run(_run()))


@models_group.command("select")
@click.argument("model_id")
def models_select(model_id: str):
    """Select MODEL_ID for future chats."""

    async def _run() -> None:
        async with _build_engine() as engine:
            await engine.directory.set_selected_model(model_id)

    try:
        asyncio.run(_run())
    except UnavailableError as e:
        console_err.print(f"[yellow]{e}[/yellow]")
        sys.exit(1)
    except RouterChatError as e:
        _fail(str(e))
    console.print(f"[green]✓[/green] Selected {model_id}")


# =============================================================================
# API key
# =============================================================================


@cli.group("key")
def key_group():
    """Manage the gateway API key."""
    pass


@key_group.command("set")
@click.option(
    "--value",
    "-v",
    help="Set value directly (use with caution - visible in shell history)",
)
def key_set(value: str | None):
    """Store the API key (encrypted)."""
    if not value:
        console.print(
            Panel(
                "[bold]OPENROUTER_API_KEY[/bold]\nBearer token for the chat gateway",
                title="Set API Key",
                border_style="blue",
            )
        )
        value = getpass.getpass("Enter value (or press Enter to cancel): ")
        if not value:
            console.print("[dim]Cancelled[/dim]")
            return

    try:
        get_credential_store().set_api_key(value)
    except CredentialError as e:
        _fail(str(e))
    console.print("[green]✓[/green] Saved API key")


@key_group.command("test")
@click.option("--value", "-v", default=None, help="Key to test (default: the stored key)")
def key_test(value: str | None):
    """Check the API key against the gateway."""
    token = value or get_credential_store().get_api_key()
    if not token:
        _fail("No API key configured. Run: routerchat key set")

    async def _run() -> None:
        async with _build_engine() as engine:
            await engine.directory.test_credential(token)

    try:
        asyncio.run(_run())
    except RouterChatError as e:
        _fail(str(e))
    console.print("[green]✓[/green] API key is valid")


@key_group.command("delete")
def key_delete():
    """Delete the stored API key."""
    if get_credential_store().delete_api_key():
        console.print("[green]✓[/green] Deleted API key")
    else:
        console.print("[yellow]No stored API key[/yellow]")


if __name__ == "__main__":
    cli()
