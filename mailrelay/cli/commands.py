"""CLI command implementations."""

from __future__ import annotations

import logging

import click
from rich import box
from rich.console import Console
from rich.table import Table

from mailrelay.config import RelayConfig
from mailrelay.storage.db import RelayDatabase

logger = logging.getLogger(__name__)
console = Console(width=200)


def _config(ctx: click.Context) -> RelayConfig:
    return ctx.obj["config"]


def _fail(problems: list[str]) -> None:
    for problem in problems:
        console.print(f"[red]{problem}[/red]")
    raise SystemExit(1)


@click.command()
@click.pass_context
def run(ctx: click.Context) -> None:
    """Start polling Gmail for every authorized chat."""
    from mailrelay.agent.supervisor import main

    problems = _config(ctx).validate()
    if problems:
        _fail(problems)
    main(verbose=ctx.obj.get("verbose", False))


@click.command()
@click.option("--chat-id", required=True, type=int, help="Telegram chat to link.")
@click.option("--port", default=0, show_default=True, help="Local port for the OAuth redirect.")
@click.option("--no-browser", is_flag=True, help="Print the consent URL instead of opening it.")
@click.pass_context
def authorize(ctx: click.Context, chat_id: int, port: int, no_browser: bool) -> None:
    """Link a Gmail account to a Telegram chat via Google OAuth."""
    from mailrelay.gmail.auth import authorize_chat

    config = _config(ctx)
    problems = config.validate(need_telegram=False)
    if problems:
        _fail(problems)

    console.print(f"Authorizing Gmail for chat [bold]{chat_id}[/bold]...")
    try:
        credentials = authorize_chat(
            chat_id,
            config.google_client_id,
            config.google_client_secret,
            config.gmail_scopes,
            port=port,
            open_browser=not no_browser,
        )
    except Exception as exc:  # noqa: BLE001
        console.print(f"[red]Authorization failed: {exc}[/red]")
        raise SystemExit(1) from exc

    db = RelayDatabase(db_path=config.database_path)
    try:
        db.save_credentials(credentials)
    finally:
        db.close()
    console.print(
        f"[green]Linked {credentials.email_address or 'Gmail'} to chat {chat_id}.[/green] "
        "A running relay picks it up within a minute."
    )


@click.command()
@click.pass_context
def status(ctx: click.Context) -> None:
    """Show authorized chats and how many messages each is tracking."""
    db = RelayDatabase(db_path=_config(ctx).database_path)
    try:
        rows = db.all_credentials()
        if not rows:
            console.print(
                "[yellow]No chats authorized yet. "
                "Run `mailrelay authorize --chat-id <id>` to get started.[/yellow]"
            )
            return

        table = Table(box=box.ROUNDED, show_header=True, header_style="bold cyan")
        table.add_column("Chat", width=14)
        table.add_column("Gmail account", max_width=36)
        table.add_column("Tracked", width=8, justify="right")
        table.add_column("Authorized", width=20)
        for creds in rows:
            table.add_row(
                str(creds.chat_id),
                creds.email_address or "[dim]unknown[/dim]",
                str(db.count_for_user(creds.chat_id)),
                creds.updated_at,
            )
        console.print(table)
    finally:
        db.close()


@click.command()
@click.argument("message_id")
@click.option("--chat-id", required=True, type=int, help="Chat that received the message.")
@click.pass_context
def actions(ctx: click.Context, message_id: str, chat_id: int) -> None:
    """Show the action log for one message, newest first."""
    db = RelayDatabase(db_path=_config(ctx).database_path)
    try:
        records = db.get_actions(chat_id, message_id)
    finally:
        db.close()

    if not records:
        console.print(f"[yellow]No actions recorded for {message_id}.[/yellow]")
        return

    table = Table(box=box.ROUNDED, show_header=True, header_style="bold cyan")
    table.add_column("When", width=20)
    table.add_column("Action", width=10)
    table.add_column("By", width=12)
    table.add_column("Details")
    for record in records:
        style = "red" if record.action_type == "error" else "cyan"
        table.add_row(
            record.created_at,
            f"[{style}]{record.action_type}[/{style}]",
            record.user_id,
            "; ".join(record.details),
        )
    console.print(table)
