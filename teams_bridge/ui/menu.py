from typing import Optional

from InquirerPy import inquirer
from InquirerPy.base.control import Choice
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from ..database.repository import ThreadRecord
from ..sync.events import (
    ChatResync,
    Event,
    MessageEvent,
    ReactionSync,
    ReadReceipt,
    SessionState,
    SessionStateEvent,
)


console = Console()


class MenuUI:

    @staticmethod
    def show_welcome() -> None:
        console.print()
        console.print(Panel.fit(
            "[bold cyan]Teams Bridge[/bold cyan]\n"
            "[dim]Keeps your Teams chats in sync with home[/dim]",
            border_style="cyan"
        ))
        console.print()

    @staticmethod
    async def select_action(has_accounts: bool) -> str:
        choices = []
        if has_accounts:
            choices.append(Choice(value="run", name="▶ Run bridge"))
        choices.append(Choice(value="add", name="+ Add account"))
        if has_accounts:
            choices.append(Choice(value="relogin", name="↻ Re-login account"))
            choices.append(Choice(value="threads", name="☰ Show known chats"))
            choices.append(Choice(value="remove", name="✗ Remove account"))
        choices.append(Choice(value="quit", name="← Quit"))

        return await inquirer.select(
            message="What would you like to do?",
            choices=choices,
            pointer="→",
            amark="✓",
        ).execute_async()

    @staticmethod
    async def select_account(accounts: list[str]) -> Optional[str]:
        if not accounts:
            console.print("[red]No accounts configured![/red]")
            return None

        choices = [Choice(value=account, name=account) for account in accounts]
        choices.append(Choice(value=None, name="← Cancel"))

        return await inquirer.select(
            message="Select account:",
            choices=choices,
            pointer="→",
            amark="✓",
        ).execute_async()

    @staticmethod
    async def ask_account_label(existing: list[str]) -> str:
        return await inquirer.text(
            message="Account label:",
            validate=lambda x: bool(x.strip()) and x.strip() not in existing,
            invalid_message="Label must be non-empty and unique",
        ).execute_async()

    @staticmethod
    async def ask_refresh_token() -> str:
        return await inquirer.secret(
            message="Paste the refresh token:",
            validate=lambda x: bool(x.strip()),
            invalid_message="Refresh token is required",
        ).execute_async()

    @staticmethod
    async def confirm(message: str, default: bool = False) -> bool:
        return await inquirer.confirm(message=message, default=default).execute_async()

    @staticmethod
    def show_threads(threads: list[ThreadRecord]) -> None:
        if not threads:
            MenuUI.show_info("No chats discovered yet. Run the bridge first.")
            return

        table = Table(show_header=True, box=None, padding=(0, 2))
        table.add_column("Chat", style="cyan")
        table.add_column("Type")
        table.add_column("Cursor", style="dim")
        for thread in threads:
            table.add_row(thread.name, "DM" if thread.is_one_to_one else "Group", thread.last_sequence_id or "-")

        console.print(table)
        console.print()

    @staticmethod
    def show_event(event: Event) -> None:
        if isinstance(event, MessageEvent):
            style = "green" if event.is_from_me else "blue"
            direction = "→" if event.is_from_me else "←"
            header = f"[bold {style}]{direction} {event.sender_name}[/bold {style}]"
            header += f" [dim]{event.timestamp.strftime('%H:%M')} {event.thread_id}[/dim]"
            console.print(header)
            text = event.body or " ".join(gif.url for gif in event.gifs)
            content = Text(text) if text else "[dim](empty)[/dim]"
            console.print(Panel(content, border_style=style, padding=(0, 1)))
        elif isinstance(event, ChatResync):
            console.print(f"[dim]↻ {event.name} ({event.room_type.value})[/dim]")
        elif isinstance(event, ReactionSync):
            emojis = " ".join(r.emoji for user in event.users.values() for r in user.reactions)
            console.print(f"[yellow]♥[/yellow] {event.target_message_id}: {emojis or '[dim]cleared[/dim]'}")
        elif isinstance(event, ReadReceipt):
            console.print(f"[dim]✓✓ {event.reader_id} read up to {event.read_up_to.strftime('%H:%M:%S')}[/dim]")
        elif isinstance(event, SessionStateEvent):
            if event.state == SessionState.BAD_CREDENTIALS:
                MenuUI.show_error(f"{event.account_id} needs to log in again: {event.message}")
            else:
                MenuUI.show_info(f"{event.account_id}: {event.state.value}")

    @staticmethod
    def show_error(message: str) -> None:
        console.print(f"[bold red]Error:[/bold red] {message}")

    @staticmethod
    def show_info(message: str) -> None:
        console.print(f"[cyan]ℹ[/cyan] {message}")

    @staticmethod
    def show_success(message: str) -> None:
        console.print(f"[green]✓[/green] {message}")
