#!/usr/bin/env python3
"""Interactive research CLI for the DeepSearch service."""

import asyncio
import json
import os
import sys
from datetime import datetime
from typing import Any

import httpx
import websockets
from rich.console import Console
from rich.markdown import Markdown
from rich.panel import Panel
from rich.prompt import Confirm, Prompt

TURN_END_EVENTS = {"finish", "error"}


def local_timezone() -> dict[str, str]:
    """Answer for the getUserTimezone tool, computed on this machine."""
    now = datetime.now().astimezone()
    return {"timezone": os.getenv("TZ") or now.tzname() or "UTC", "localTime": now.strftime("%Y-%m-%d %H:%M:%S %Z")}


class ChatCLI:
    """Interactive chat interface over the session WebSocket."""

    def __init__(self, base_url: str = "http://localhost:8000"):
        self.base_url = base_url.rstrip("/")
        self.ws_url = self.base_url.replace("http://", "ws://").replace("https://", "wss://")
        self.session_id: str | None = None
        self.console = Console()
        self.ws: Any = None
        self.response_text = ""

    async def start(self) -> None:
        """Start the interactive chat session."""
        self.console.print(
            Panel.fit(
                "[bold blue]🔎 DeepSearch - Interactive Research[/bold blue]\n"
                "Ask a research question and watch the agent search and synthesize.\n"
                "Commands: /help, /clear, /quit",
                border_style="blue",
            )
        )

        self.session_id = await self._create_session()
        if not self.session_id:
            self.console.print("[red]❌ Cannot connect to the service. Make sure it's running.[/red]")
            return

        try:
            async with websockets.connect(f"{self.ws_url}/sessions/{self.session_id}/chat") as ws:
                self.ws = ws
                self.console.print(f"[green]✅ Connected to session {self.session_id}[/green]\n")
                await self._drain_history()
                await self._chat_loop()
        except (OSError, websockets.ConnectionClosed) as e:
            self.console.print(f"[red]❌ Connection error: {e}[/red]")
        finally:
            self.console.print("\n[yellow]👋 Goodbye![/yellow]")

    async def _create_session(self) -> str | None:
        try:
            async with httpx.AsyncClient(timeout=10.0) as client:
                health = await client.get(f"{self.base_url}/health")
                health.raise_for_status()
                response = await client.post(f"{self.base_url}/sessions")
                response.raise_for_status()
                return response.json()["session_id"]
        except httpx.HTTPError:
            return None

    async def _drain_history(self) -> None:
        event = json.loads(await self.ws.recv())
        if event.get("type") == "history" and event.get("messages"):
            self.console.print(f"[dim]Restored {len(event['messages'])} messages[/dim]")

    async def _chat_loop(self) -> None:
        while True:
            user_input = await asyncio.to_thread(Prompt.ask, "\n[bold cyan]You[/bold cyan]")

            if user_input.lower() in ["/quit", "/exit", "quit", "exit"]:
                break
            elif user_input.lower() == "/help":
                self._show_help()
                continue
            elif user_input.lower() == "/clear":
                await self._send({"type": "clear-history"})
                self.console.print("[yellow]🔄 History cleared[/yellow]")
                continue
            elif user_input.strip() == "":
                continue

            await self._send({"role": "user", "parts": [{"type": "text", "text": user_input}]})
            await self._stream_turn()

    async def _stream_turn(self) -> None:
        """Render events until the turn finishes."""
        self.response_text = ""
        while True:
            event = json.loads(await self.ws.recv())
            await self._handle_event(event)
            if event.get("type") in TURN_END_EVENTS:
                return

    async def _handle_event(self, event: dict[str, Any]) -> None:
        event_type = event.get("type")

        if event_type == "text-delta":
            self.response_text += event["delta"]
            self.console.print(event["delta"], end="", style="cyan", highlight=False)
        elif event_type == "reasoning-delta":
            self.console.print(event["delta"], end="", style="dim italic", highlight=False)
        elif event_type == "reasoning-end":
            self.console.print()
        elif event_type == "tool-call":
            self.console.print(f"\n[magenta]🔧 {event['tool_name']}[/magenta] [dim]{json.dumps(event['input'])}[/dim]")
            if event.get("client_side") and event["tool_name"] == "getUserTimezone":
                await self._send({"type": "tool-output", "tool_call_id": event["tool_call_id"], "output": local_timezone()})
        elif event_type == "tool-approval-request":
            approved = await asyncio.to_thread(
                Confirm.ask, f"[yellow]Allow {event['tool_name']} with {json.dumps(event['input'])}?[/yellow]"
            )
            await self._send({"type": "tool-approval-response", "id": event["approval_id"], "approved": approved})
        elif event_type == "tool-result":
            if event.get("error"):
                self.console.print(f"[red]✗ {event['tool_name']}: {event['error']}[/red]")
            else:
                self.console.print(f"[green]✓ {event['tool_name']}[/green]")
        elif event_type == "finish":
            self.console.print()
            if self.response_text:
                self.console.print(
                    Panel(
                        Markdown(self.response_text),
                        title="[bold green]🤖 Research Brief[/bold green]",
                        border_style="green",
                        padding=(1, 2),
                    )
                )
            if event["finish_reason"] != "stop":
                self.console.print(f"[yellow]Finished: {event['finish_reason']}[/yellow]")
        elif event_type == "error":
            self.console.print(f"\n[red]❌ {event['error_text']}[/red]")
        elif event_type == "scheduled-task":
            self.console.print(f"\n[blue]⏰ Scheduled task: {event['description']}[/blue]")

    async def _send(self, payload: dict[str, Any]) -> None:
        await self.ws.send(json.dumps(payload))

    def _show_help(self) -> None:
        """Show help information."""
        help_text = """
[bold]Available Commands:[/bold]
• /help - Show this help message
• /clear - Clear the conversation history
• /quit or /exit - Exit the chat

[bold]Example Questions:[/bold]
1. "Compare the top open source CRM platforms for small businesses"
2. "What changed in EU battery regulation this year?"
3. "What time is it for me, and which markets are open?"

[bold]Tips:[/bold]
• The agent splits your question into sub-topics and searches each one
        """

        self.console.print(Panel(help_text.strip(), title="[cyan]❓ Help[/cyan]", border_style="cyan"))


def main():
    """Main entry point for the chat CLI."""
    base_url = sys.argv[1] if len(sys.argv) > 1 else "http://localhost:8000"

    chat = ChatCLI(base_url)
    try:
        asyncio.run(chat.start())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
