"""Multichat CLI - terminal client for side-by-side model comparison.

A rich TUI that sends each message to a primary model and any number of
comparison models, streaming every answer live.
"""

from __future__ import annotations

import argparse
import asyncio
import signal
from typing import Optional

from rich.console import Console, Group
from rich.live import Live
from rich.markdown import Markdown
from rich.panel import Panel
from rich.prompt import Prompt
from rich.style import Style
from rich.text import Text

from . import __version__
from .config import Settings, get_settings
from .content import content_text
from .errors import ChatError, TurnInFlightError, describe_error
from .logging_settings import configure_logging
from .schemas.chat import ComparisonResult, Message
from .chat.coordinator import PRIMARY_KEY, ChatCoordinator
from .chat.state import ChatStore
from .turn_logging import TurnLogWriter

ERROR_STYLE = Style(color="red", bold=True)
INFO_STYLE = Style(color="cyan")

STATUS_COLORS = {"streaming": "yellow", "complete": "green", "error": "red"}


def render_primary(message: Message, model: str, stats_line: str = "") -> Panel:
    body: Markdown | Text
    text = content_text(message.content)
    body = Markdown(text) if text else Text("...", style="dim")
    subtitle = stats_line or None
    if message.tool_calls:
        names = ", ".join(call.function.name or "?" for call in message.tool_calls)
        subtitle = f"tools: {names}" + (f" | {stats_line}" if stats_line else "")
    return Panel(body, title=model, subtitle=subtitle, border_style="green")


def render_comparison(model: str, result: ComparisonResult) -> Panel:
    color = STATUS_COLORS.get(result.status, "white")
    if result.status == "error":
        body: Markdown | Text = Text(result.error or "Request failed", style=ERROR_STYLE)
    else:
        text = content_text(result.content)
        body = Markdown(text) if text else Text("...", style="dim")
    return Panel(
        body,
        title=f"{model} [{color}]{result.status}[/{color}]",
        border_style=color,
    )


def render_turn(store: ChatStore, model: str) -> Group:
    """Render the last assistant message with its comparison results."""

    messages = store.messages
    if not messages or messages[-1].role != "assistant":
        return Group(Text("Waiting for response...", style="dim"))

    last = messages[-1]
    stats = store.token_stats
    stats_line = ""
    if stats is not None and stats.message_id in (last.id, last.client_id):
        marker = "~" if stats.is_estimate else ""
        stats_line = f"{marker}{stats.count:.0f} tokens, {stats.tokens_per_second:.1f} tok/s"

    panels: list[Panel] = [render_primary(last, model, stats_line)]
    for compare_model, result in last.comparison_results.items():
        panels.append(render_comparison(compare_model, result))
    if store.error:
        panels.append(Panel(Text(store.error, style=ERROR_STYLE), border_style="red"))
    return Group(*panels)


class MultiChatShell:
    """Interactive loop around a ``ChatCoordinator``."""

    def __init__(self, coordinator: ChatCoordinator, console: Console | None = None):
        self.coordinator = coordinator
        self.console = console or Console()
        self.running = True

    def _show_help(self) -> None:
        help_text = """
[bold]Commands:[/bold]
  /help                Show this help message
  /model               Show the primary model
  /model <id>          Set the primary model (e.g. /model openai::gpt-4o)
  /compare             Show comparison models
  /compare m1,m2       Set comparison models (/compare off to clear)
  /image <url>         Attach an image to the next message
  /new                 Start a new conversation
  /regenerate          Resend the last user message
  /retry <model>       Re-run one model for the last answer (primary or a comparison id)
  /list                List recent conversations
  /load <id>           Load a stored conversation
  /quit                Exit

[bold]Shortcuts:[/bold]
  Ctrl+C               Stop the current turn
  Ctrl+D               Exit
"""
        self.console.print(
            Panel(help_text.strip(), title="Multichat Help", border_style="blue")
        )

    def _info(self, message: str) -> None:
        self.console.print(message, style=INFO_STYLE)

    def _error(self, message: str) -> None:
        self.console.print(message, style=ERROR_STYLE)

    async def _run_with_live(self, operation) -> None:
        """Run a coordinator operation while rendering the store live."""

        store = self.coordinator.store
        loop = asyncio.get_running_loop()
        with Live(console=self.console, refresh_per_second=10) as live:
            unsubscribe = store.subscribe(
                lambda current: live.update(render_turn(current, self.coordinator.model))
            )
            try:
                loop.add_signal_handler(signal.SIGINT, self.coordinator.stop)
            except NotImplementedError:  # pragma: no cover - non-Unix loops
                pass
            try:
                await operation
            finally:
                try:
                    loop.remove_signal_handler(signal.SIGINT)
                except NotImplementedError:  # pragma: no cover - non-Unix loops
                    pass
                unsubscribe()
                store.flush()
                live.update(render_turn(store, self.coordinator.model))

    def _last_assistant(self) -> Optional[Message]:
        for message in reversed(self.coordinator.store.messages):
            if message.role == "assistant":
                return message
        return None

    async def _handle_command(self, cmd: str) -> bool:
        """Handle slash commands. Returns True if handled."""

        parts = cmd.strip().split(maxsplit=1)
        if not parts:
            return False
        command = parts[0].lower()
        argument = parts[1].strip() if len(parts) > 1 else ""
        coordinator = self.coordinator

        if command == "/help":
            self._show_help()
        elif command == "/quit":
            self.running = False
        elif command == "/model":
            if argument:
                coordinator.set_model(argument)
            self._info(f"Primary model: {coordinator.model}")
        elif command == "/compare":
            if argument.lower() == "off":
                coordinator.set_compare_models(())
            elif argument:
                coordinator.set_compare_models(argument.split(","))
            models = ", ".join(coordinator.compare_models) or "(none)"
            self._info(f"Comparison models: {models}")
        elif command == "/image":
            if not argument:
                self.console.print("[dim]Usage: /image <url>[/dim]")
            else:
                coordinator.content_builder.add_image(argument)
                self._info("Image attached to the next message")
        elif command == "/new":
            coordinator.new_chat()
            self._info("Started a new conversation")
        elif command == "/regenerate":
            await self._run_with_live(coordinator.regenerate())
        elif command == "/retry":
            last = self._last_assistant()
            if last is None:
                self._error("Nothing to retry")
            else:
                target = argument or PRIMARY_KEY
                await self._run_with_live(
                    coordinator.retry_comparison_model(last.id, target)
                )
        elif command == "/list":
            page = await coordinator.conversations.list(limit=20)
            if not page.items:
                self.console.print("[dim]No stored conversations[/dim]")
            for item in page.items:
                self.console.print(f"  {item.id}  {item.title or '(untitled)'}")
        elif command == "/load":
            if not argument:
                self.console.print("[dim]Usage: /load <conversation id>[/dim]")
            else:
                conversation = await coordinator.load_conversation(argument)
                self._info(
                    f"Loaded '{conversation.title or conversation.id}' "
                    f"({len(coordinator.store.messages)} messages)"
                )
        else:
            return False
        return True

    async def run(self) -> None:
        """Main chat loop."""

        self.console.print(
            f"[bold]Multichat {__version__}[/bold] - Type /help for commands, Ctrl+D to exit",
            style=INFO_STYLE,
        )
        self._info(f"Primary model: {self.coordinator.model}")
        self.console.print()

        while self.running:
            try:
                user_input = await asyncio.to_thread(
                    Prompt.ask, "[bold blue]You[/bold blue]", console=self.console
                )
            except EOFError:
                self.console.print("\n[dim]Goodbye![/dim]")
                break
            except KeyboardInterrupt:
                self.console.print()
                continue
            if not user_input.strip():
                continue

            try:
                if user_input.startswith("/") and await self._handle_command(user_input):
                    continue
                self.console.print()
                await self._run_with_live(self.coordinator.send(user_input))
                self.console.print()
            except TurnInFlightError:
                self._error("A turn is already running")
            except ChatError as exc:
                self._error(describe_error(exc))


def build_coordinator(settings: Settings, turns_level: int | None) -> ChatCoordinator:
    turn_logger = TurnLogWriter(
        settings.resolve_path(settings.turn_log_dir), min_level=turns_level
    )
    return ChatCoordinator(settings, turn_logger=turn_logger)


async def _amain(args: argparse.Namespace) -> None:
    settings = get_settings()
    overrides = {}
    if args.base_url:
        overrides["api_base_url"] = args.base_url
    if args.model:
        overrides["default_model"] = args.model
    if overrides:
        settings = settings.model_copy(update=overrides)

    logging_settings = configure_logging(settings)
    coordinator = build_coordinator(settings, logging_settings.turns_level)
    if args.compare:
        coordinator.set_compare_models(args.compare.split(","))
    if args.no_stream:
        coordinator.configure(stream=False, provider_stream=False)

    shell = MultiChatShell(coordinator)
    try:
        if args.conversation:
            try:
                await coordinator.load_conversation(args.conversation)
            except ChatError as exc:
                shell._error(f"Could not load conversation: {describe_error(exc)}")
        await shell.run()
    finally:
        await coordinator.aclose()


def main() -> None:
    """CLI entry point."""

    parser = argparse.ArgumentParser(
        description="Multichat - compare chat models side by side in the terminal",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  multichat                                   Chat with the default model
  multichat --compare anthropic::claude-3-5   Compare against a second model
  multichat --conversation 42                 Resume a stored conversation

Environment Variables:
  MULTICHAT_API_BASE       Backend API base URL
  MULTICHAT_DEFAULT_MODEL  Primary model
""",
    )
    parser.add_argument("--base-url", "-u", default=None, help="Backend API base URL")
    parser.add_argument("--model", "-m", default=None, help="Primary model id")
    parser.add_argument(
        "--compare",
        "-c",
        default=None,
        help="Comma separated comparison model ids",
    )
    parser.add_argument(
        "--conversation", default=None, help="Conversation id to load on startup"
    )
    parser.add_argument(
        "--no-stream",
        action="store_true",
        help="Ask the backend for non-streamed provider responses",
    )
    parser.add_argument("--version", action="version", version=__version__)
    args = parser.parse_args()

    try:
        asyncio.run(_amain(args))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
