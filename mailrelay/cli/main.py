"""CLI entry point for the Gmail-to-Telegram relay."""

import logging

import click
from dotenv import load_dotenv

from mailrelay.config import RelayConfig

logger = logging.getLogger(__name__)


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging.")
@click.pass_context
def cli(ctx: click.Context, verbose: bool) -> None:
    """Gmail to Telegram relay — run the poller and manage authorized chats."""
    load_dotenv()
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,  # keep CLI output clean
        format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
    )
    ctx.ensure_object(dict)
    ctx.obj["config"] = RelayConfig.from_env()
    ctx.obj["verbose"] = verbose


# Import and register commands after cli is defined to avoid circular imports.
from mailrelay.cli.commands import actions, authorize, run, status  # noqa: E402

cli.add_command(run)
cli.add_command(authorize)
cli.add_command(status)
cli.add_command(actions)
