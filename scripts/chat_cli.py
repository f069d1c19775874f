#!/usr/bin/env python3
"""Interactive chat CLI for trying the conversation engine against the Anthropic API."""

import asyncio
import signal
import sys
from pathlib import Path

from pydantic import BaseModel, Field
from rich.console import Console
from rich.live import Live
from rich.markdown import Markdown
from rich.panel import Panel
from rich.prompt import Prompt

from agentchat.clients.anthropic import get_anthropic_client
from agentchat.models.llm import Message
from agentchat.services.engine import ConversationEngine, EngineConfig, EngineError
from agentchat.services.persistence import InMemoryPersistenceSink
from agentchat.tools import ToolDefinition, ToolsRegistry
from agentchat.utils.logging import LogConfig, setup_logging


class ListFilesInput(BaseModel):
    """Input for the list_files demo tool."""

    path: str = Field(description="Directory to list")


async def list_files(params: ListFilesInput) -> list[str]:
    return sorted(entry.name for entry in Path(params.path).expanduser().iterdir())


class ChatCLI:
    """Interactive chat interface for the conversation engine."""

    def __init__(self, model_id: str):
        """Initialize chat CLI."""
        self.console = Console()
        self.sink = InMemoryPersistenceSink()
        self.registry = ToolsRegistry(
            [
                ToolDefinition(
                    name="list_files",
                    description="List the entries of a directory on the local machine.",
                    input_schema_class=ListFilesInput,
                    handler=list_files,
                )
            ]
        )
        self.live: Live | None = None
        self.engine = ConversationEngine(
            get_anthropic_client(),
            self.registry,
            EngineConfig(model_id=model_id, system_prompt="You are a helpful assistant with local file access."),
            tool_catalog=self.registry.get_tool_specs(),
            sink=self.sink,
            conversation_id=self.sink.create_conversation(),
            on_partial=self._render_partial,
            on_tool=self._show_tool,
        )

    async def start(self) -> None:
        """Start the interactive chat session."""
        self.console.print(
            Panel.fit(
                "[bold blue]Agent Chat - Interactive Session[/bold blue]\n"
                "Type your messages to chat with the agent. Ctrl-C cancels a running reply.\n"
                "Commands: /help, /clear, /quit",
                border_style="blue",
            )
        )

        while True:
            user_input = await asyncio.to_thread(Prompt.ask, "\n[bold cyan]You[/bold cyan]")

            if user_input.lower() in ["/quit", "/exit", "quit", "exit"]:
                break
            elif user_input.lower() == "/help":
                self._show_help()
                continue
            elif user_input.lower() == "/clear":
                await self.engine.clear(self.sink.create_conversation())
                self.console.print("[yellow]Conversation cleared[/yellow]")
                continue
            elif user_input.strip() == "":
                continue

            await self._send_message(user_input)

        self.console.print("\n[yellow]Goodbye![/yellow]")

    async def _send_message(self, message: str) -> None:
        """Run one submission, streaming the reply into a live panel."""
        loop = asyncio.get_running_loop()
        loop.add_signal_handler(signal.SIGINT, self.engine.cancel)
        try:
            with Live(console=self.console, refresh_per_second=12) as live:
                self.live = live
                result = await self.engine.submit(message)
            if result.cancelled:
                self.console.print("[yellow]Reply cancelled[/yellow]")
            else:
                self.console.print(f"[dim]{result.turns} turns, {result.usage.total_tokens} tokens[/dim]")
        except EngineError as e:
            self.console.print(f"[red]Error: {e}[/red]")
        finally:
            self.live = None
            loop.remove_signal_handler(signal.SIGINT)

    def _render_partial(self, message: Message) -> None:
        if self.live is None or message.role != "assistant":
            return
        self.live.update(
            Panel(
                Markdown(message.text() or "..."),
                title="[bold green]Assistant[/bold green]",
                border_style="green",
                padding=(1, 2),
            )
        )

    def _show_tool(self, name: str | None) -> None:
        if name:
            self.console.print(f"[dim]Running tool {name}...[/dim]")

    def _show_help(self) -> None:
        """Show help information."""
        help_text = """
[bold]Available Commands:[/bold]
• /help - Show this help message
• /clear - Clear the conversation and start over
• /quit or /exit - Exit the chat

[bold]Try:[/bold]
1. "What files are in /tmp?"
2. "Summarize what you found"
        """

        self.console.print(Panel(help_text.strip(), title="[cyan]Help[/cyan]", border_style="cyan"))


def main():
    """Main entry point for the chat CLI."""
    setup_logging(LogConfig(level="WARNING"))
    model_id = sys.argv[1] if len(sys.argv) > 1 else "claude-3-7-sonnet-20250219"

    chat = ChatCLI(model_id)
    try:
        asyncio.run(chat.start())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
