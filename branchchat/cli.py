"""Command-line interface for branchchat."""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from typing import TYPE_CHECKING

import click

from .exceptions import GatewaySetupError
from .models import Sender
from .protocols import WebhookReplyGateway, get_gateway
from .segmenter import CodeBlock, TableBlock, TextBlock, blocks_to_dicts, segment
from .state import ConversationStateMachine, ExchangeResult
from .store import _DEFAULT_DB_PATH, SQLiteConversationStore

if TYPE_CHECKING:
    from .models import Conversation
    from .protocols import ReplyGateway
    from .segmenter import Block

logger = logging.getLogger("branchchat")

_webhook_option = click.option(
    "--webhook",
    envvar="BRANCHCHAT_WEBHOOK_URL",
    help="Reply webhook URL (default: on-device model).",
)


def _echo_table(block: TableBlock) -> None:
    headers = block.display_headers
    rows = block.display_rows
    columns = max([len(headers), *(len(row) for row in rows)])
    widths = [0] * columns
    for row in (headers, *rows):
        for index, cell in enumerate(row):
            widths[index] = max(widths[index], len(cell))

    def fmt(row: tuple[str, ...]) -> str:
        return "  ".join(cell.ljust(widths[index]) for index, cell in enumerate(row)).rstrip()

    click.secho(fmt(headers), bold=True)
    click.echo("  ".join("-" * width for width in widths))
    for row in rows:
        click.echo(fmt(row))


def _echo_blocks(blocks: list[Block]) -> None:
    for index, block in enumerate(blocks):
        if index:
            click.echo()
        if isinstance(block, TextBlock):
            click.echo(block.body)
        elif isinstance(block, CodeBlock):
            click.secho(f"[{block.display_language}]", dim=True)
            click.echo(block.body)
        else:
            _echo_table(block)


def _echo_conversation(machine: ConversationStateMachine, conversation: Conversation) -> None:
    click.secho(conversation.title, bold=True)
    click.secho(f"{conversation.id}  {conversation.created_at}", dim=True)
    for message in conversation.messages:
        click.echo()
        if message.sender is Sender.USER:
            click.secho(f"you ({message.id}):", fg="blue")
            click.echo(message.text)
            continue
        click.secho("assistant:", fg="green")
        content = machine.content_for(message)
        if content is None:
            click.echo("...")
        else:
            _echo_blocks(content)


def _build_machine(
    ctx: click.Context, webhook: str | None, rollback: bool = True
) -> ConversationStateMachine:
    store = ctx.with_resource(SQLiteConversationStore(ctx.obj["db"]))
    gateway: ReplyGateway = WebhookReplyGateway(webhook) if webhook else get_gateway()
    logger.debug("[branchchat] Replying via %s", type(gateway).__name__)
    return ConversationStateMachine(store, gateway, rollback_failed_sends=rollback)


def _report(machine: ConversationStateMachine, result: ExchangeResult) -> None:
    if isinstance(result.error, GatewaySetupError):
        raise result.error
    if not result.ok:
        detail = f": {result.error}" if result.error is not None else ""
        raise click.ClickException(f"No reply ({result.outcome.value}){detail}")
    conversation = machine.active_conversation
    if conversation is not None:
        click.secho(f"conversation {conversation.id}", dim=True, err=True)
    _echo_blocks(segment(result.reply or ""))


@click.group()
@click.option(
    "--db",
    type=click.Path(dir_okay=False),
    default=str(_DEFAULT_DB_PATH),
    envvar="BRANCHCHAT_DB",
    show_default=True,
    help="Conversation database.",
)
@click.option("-v", "--verbose", is_flag=True, help="Log debug output to stderr.")
@click.pass_context
def cli(ctx: click.Context, db: str, verbose: bool) -> None:
    """Chat with a reply gateway and edit past turns to branch conversations."""
    if verbose:
        logging.basicConfig(level=logging.DEBUG, format="%(levelname)s %(name)s: %(message)s")
    ctx.ensure_object(dict)
    ctx.obj["db"] = db


@cli.command("segment")
@click.argument("source", type=click.File("r", encoding="utf-8"), default="-")
@click.option("--json", "as_json", is_flag=True, help="Print blocks as JSON.")
def segment_command(source, as_json: bool) -> None:
    """Split an assistant reply (file or stdin) into text, code and table blocks."""
    blocks = segment(source.read())
    if as_json:
        click.echo(json.dumps(blocks_to_dicts(blocks), ensure_ascii=False, indent=2))
    else:
        _echo_blocks(blocks)


@cli.command("list")
@click.pass_context
def list_command(ctx: click.Context) -> None:
    """List stored conversations, most recent first."""
    store = ctx.with_resource(SQLiteConversationStore(ctx.obj["db"]))
    conversations = store.get_conversations()
    if not conversations:
        click.echo("No conversations yet.")
        return
    for conversation in conversations:
        count = len(conversation.messages)
        click.echo(f"{conversation.id}  {conversation.title}  ({count} messages)")


@cli.command("show")
@click.argument("conversation_id")
@click.pass_context
def show_command(ctx: click.Context, conversation_id: str) -> None:
    """Print a conversation with assistant replies segmented."""
    store = ctx.with_resource(SQLiteConversationStore(ctx.obj["db"]))
    machine = ConversationStateMachine(store, gateway=_NoGateway())
    machine.select_conversation(conversation_id)
    conversation = machine.active_conversation
    if conversation is None:
        raise click.ClickException(f"Unknown conversation: {conversation_id}")
    _echo_conversation(machine, conversation)


@cli.command("delete")
@click.argument("conversation_id")
@click.pass_context
def delete_command(ctx: click.Context, conversation_id: str) -> None:
    """Delete one conversation."""
    store = ctx.with_resource(SQLiteConversationStore(ctx.obj["db"]))
    ConversationStateMachine(store, gateway=_NoGateway()).delete_conversation(conversation_id)
    click.echo(f"Deleted {conversation_id}")


@cli.command("delete-all")
@click.confirmation_option(prompt="Delete every stored conversation?")
@click.pass_context
def delete_all_command(ctx: click.Context) -> None:
    """Delete every conversation."""
    store = ctx.with_resource(SQLiteConversationStore(ctx.obj["db"]))
    ConversationStateMachine(store, gateway=_NoGateway()).delete_all()
    click.echo("Deleted all conversations.")


@cli.command("ask")
@click.argument("text")
@click.option("-c", "--conversation", "conversation_id", help="Continue this conversation.")
@_webhook_option
@click.option(
    "--rollback/--no-rollback",
    default=True,
    show_default=True,
    help="Undo the send when the gateway fails.",
)
@click.pass_context
def ask_command(
    ctx: click.Context, text: str, conversation_id: str | None, webhook: str | None, rollback: bool
) -> None:
    """Send TEXT and print the reply."""
    machine = _build_machine(ctx, webhook, rollback)
    if conversation_id:
        machine.select_conversation(conversation_id)
        if machine.active_conversation is None:
            raise click.ClickException(f"Unknown conversation: {conversation_id}")
    _report(machine, asyncio.run(machine.send(text)))


@cli.command("edit")
@click.argument("conversation_id")
@click.argument("message_id")
@click.argument("text")
@_webhook_option
@click.pass_context
def edit_command(
    ctx: click.Context, conversation_id: str, message_id: str, text: str, webhook: str | None
) -> None:
    """Replace a past user message with TEXT and regenerate from there."""
    machine = _build_machine(ctx, webhook)
    machine.select_conversation(conversation_id)
    if machine.active_conversation is None:
        raise click.ClickException(f"Unknown conversation: {conversation_id}")
    _report(machine, asyncio.run(machine.edit(message_id, text.strip())))


class _NoGateway:
    """Gateway for read-only commands; never called."""

    async def send_reply(self, text: str) -> str:
        raise RuntimeError("read-only command attempted to send a message")


def cli_entry() -> None:
    """Console-script entry point."""
    try:
        cli()
    except GatewaySetupError as exc:
        click.echo(str(exc), err=True)
        sys.exit(2)
