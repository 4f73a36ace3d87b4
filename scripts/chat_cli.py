#!/usr/bin/env python3
"""Interactive chat CLI for testing the agent service."""

import sys
import uuid

import httpx
from rich.console import Console
from rich.markdown import Markdown
from rich.panel import Panel
from rich.prompt import Prompt

STATUS_STYLES = {
    "completed": "green",
    "cancelled": "yellow",
    "failed": "red",
}


class ChatCLI:
    """Interactive chat interface for the agent service."""

    def __init__(self, base_url: str = "http://localhost:8000"):
        """Initialize chat CLI."""
        self.base_url = base_url
        self.thread_id = self._new_thread_id()
        self.console = Console()
        self.client = httpx.Client(timeout=300.0)

    def start(self) -> None:
        """Start the interactive chat session."""
        self.console.print(
            Panel.fit(
                "[bold blue]Agent Engine - Interactive Chat[/bold blue]\n"
                "Type your messages to chat with the agent.\n"
                "Commands: /help, /history, /clear, /quit",
                border_style="blue",
            )
        )

        health = self._test_connection()
        if health is None:
            self.console.print(f"[red]Cannot connect to the service at {self.base_url}. Make sure it's running.[/red]")
            return

        self.console.print(
            f"[green]Connected to agent service ({health.get('provider')} / {health.get('model')})[/green]\n"
        )

        try:
            while True:
                user_input = Prompt.ask("\n[bold cyan]You[/bold cyan]")

                if user_input.lower() in ["/quit", "/exit", "quit", "exit"]:
                    break
                elif user_input.lower() == "/help":
                    self._show_help()
                    continue
                elif user_input.lower() == "/history":
                    self._show_history()
                    continue
                elif user_input.lower() == "/clear":
                    self._delete_thread()
                    self.thread_id = self._new_thread_id()
                    self.console.print("[yellow]Thread cleared[/yellow]")
                    continue
                elif user_input.strip() == "":
                    continue

                reply = self._send_message(user_input)
                if reply:
                    self._display_reply(reply)

        except KeyboardInterrupt:
            pass
        finally:
            self.console.print("\n[yellow]Goodbye![/yellow]")
            self.client.close()

    @staticmethod
    def _new_thread_id() -> str:
        return f"cli-{uuid.uuid4().hex[:8]}"

    def _test_connection(self) -> dict | None:
        """Test connection to the service."""
        try:
            response = self.client.get(f"{self.base_url}/health")
        except httpx.HTTPError:
            return None
        return response.json() if response.status_code == 200 else None

    def _send_message(self, message: str) -> dict | None:
        """Send a message to the agent and wait for the finalized reply."""
        try:
            with self.console.status("[dim]Thinking...[/dim]"):
                response = self.client.post(
                    f"{self.base_url}/threads/{self.thread_id}/messages", json={"content": message}
                )
        except httpx.HTTPError as e:
            self.console.print(f"[red]Connection error: {e}[/red]")
            return None

        if response.status_code != 200:
            self.console.print(f"[red]API Error: {response.status_code} - {response.text}[/red]")
            return None
        return response.json()["message"]

    def _display_reply(self, reply: dict) -> None:
        """Display an assistant reply with its tool activity."""
        status = reply.get("status", "completed")
        style = STATUS_STYLES.get(status, "white")

        for result in reply.get("tool_results") or []:
            outcome = result["result"]
            marker = "[green]ok[/green]" if outcome["success"] else f"[red]error: {outcome['error']}[/red]"
            self.console.print(f"[dim]tool {result['name']}[/dim] {marker}")

        metrics = reply.get("token_metrics") or {}
        subtitle = f"{metrics.get('total_tokens', 0)} tokens, {metrics.get('tokens_per_second', 0)} tok/s"

        self.console.print(
            Panel(
                Markdown(reply.get("content") or "(no content)"),
                title=f"[bold {style}]{reply.get('model') or 'Assistant'} ({status})[/bold {style}]",
                subtitle=f"[dim]{subtitle}[/dim]",
                border_style=style,
                padding=(1, 2),
            )
        )

        for citation in reply.get("citations") or []:
            self.console.print(f"[dim]- {citation}[/dim]")

    def _show_history(self) -> None:
        response = self.client.get(f"{self.base_url}/threads/{self.thread_id}/messages")
        if response.status_code != 200:
            self.console.print("[dim]No messages yet[/dim]")
            return

        for message in response.json()["messages"]:
            role = message["role"]
            color = "cyan" if role == "user" else "green"
            status = f"[dim]({message['status']})[/dim]"
            self.console.print(f"[bold {color}]{role}[/bold {color}] {status} {message['content']}")

    def _delete_thread(self) -> None:
        try:
            self.client.delete(f"{self.base_url}/threads/{self.thread_id}")
        except httpx.HTTPError as e:
            self.console.print(f"[red]Could not delete thread: {e}[/red]")

    def _show_help(self) -> None:
        """Show help information."""
        help_text = """
[bold]Available Commands:[/bold]
• /help - Show this help message
• /history - Show the messages in the current thread
• /clear - Delete the thread and start a new one
• /quit or /exit - Exit the chat

[bold]Tips:[/bold]
• Replies that use tools list each tool call and whether it succeeded
• A reply marked [red]failed[/red] explains what went wrong with the model provider
        """

        self.console.print(Panel(help_text.strip(), title="[cyan]Help[/cyan]", border_style="cyan"))


def main():
    """Main entry point for the chat CLI."""
    base_url = sys.argv[1] if len(sys.argv) > 1 else "http://localhost:8000"

    chat = ChatCLI(base_url)
    chat.start()


if __name__ == "__main__":
    main()
