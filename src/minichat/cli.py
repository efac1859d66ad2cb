"""
MiniChat CLI - command-line interface for versioned conversations.

Send messages, edit past turns to fork new versions, and browse the
variants available at each branch point.
"""

import uuid
from contextlib import contextmanager
from typing import Iterator, Optional

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from minichat.exceptions import MiniChatError
from minichat.logging_config import setup_logging

app = typer.Typer(
    name="minichat",
    help="MiniChat - LLM chat with conversation version control",
    no_args_is_help=True,
)

console = Console()


def get_service():
    """Build the conversation service from settings."""
    from minichat.services.conversation_service import ConversationService

    return ConversationService()


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", help="Log to the console"),
) -> None:
    from minichat.config import settings

    if not verbose:
        settings.log_console_enabled = False
    try:
        setup_logging(context="cli")
    except PermissionError:
        import logging

        logging.basicConfig(level=logging.WARNING)


@contextmanager
def handle_errors() -> Iterator[None]:
    """Turn domain and validation errors into a red message and exit code 1."""
    try:
        yield
    except (MiniChatError, ValueError) as e:
        console.print(f"[bold red]Error:[/bold red] {escape(str(e))}")
        raise typer.Exit(1)


def _short(identifier: Optional[uuid.UUID]) -> str:
    return str(identifier)[:8] if identifier else "-"


@app.command("init-db")
def init_db_command() -> None:
    """
    Create the database tables.

    Uses the ORM metadata directly; run `alembic upgrade head` instead to
    manage the schema with migrations.
    """
    from minichat.config import settings
    from minichat.db.connection import check_connection, init_db

    with handle_errors():
        init_db()
    if not check_connection():
        console.print("[bold red]Error:[/bold red] Database not reachable")
        raise typer.Exit(1)
    console.print(f"[green]✓ Database ready[/green] ({settings.database_url})")


@app.command()
def chat(
    message: str = typer.Argument(..., help="Message to send"),
    conversation: Optional[uuid.UUID] = typer.Option(
        None, "--conversation", "-c", help="Conversation to continue (new if omitted)"
    ),
    version: Optional[uuid.UUID] = typer.Option(
        None, "--version", "-v", help="Version to continue (latest if omitted)"
    ),
) -> None:
    """Send a message and print the assistant's reply."""
    with get_service() as service, handle_errors():
        result = service.send_message(
            message, conversation_id=conversation, version_id=version
        )

    console.print(escape(result.reply))
    console.print()
    console.print(
        f"[dim]conversation={result.conversation_id} "
        f"version={result.version_id} context_tokens={result.context_tokens}[/dim]"
    )


@app.command()
def edit(
    message_id: uuid.UUID = typer.Argument(..., help="Message to edit"),
    content: str = typer.Argument(..., help="New content"),
    version: Optional[uuid.UUID] = typer.Option(
        None, "--version", "-v", help="Version the message is edited from"
    ),
) -> None:
    """Edit a message, forking a new version of the conversation."""
    with get_service() as service, handle_errors():
        result = service.edit_and_continue(message_id, content, version_id=version)

    if result.reply is not None:
        console.print(escape(result.reply))
        console.print()
    console.print(
        f"[green]✓ Forked version {result.version_id}[/green] "
        f"[dim]conversation={result.conversation_id}[/dim]"
    )


@app.command()
def show(
    conversation_id: uuid.UUID = typer.Argument(..., help="Conversation to show"),
    version: Optional[uuid.UUID] = typer.Option(
        None, "--version", "-v", help="Version to show (latest if omitted)"
    ),
) -> None:
    """Show the messages of one version, marking divergence points."""
    service = get_service()
    with handle_errors():
        if version is None:
            latest = service.get_latest_version(conversation_id)
            if latest is None:
                console.print("[yellow]No messages yet[/yellow]")
                raise typer.Exit(0)
            version = latest.id
        messages = service.get_version_messages(version)

    table = Table(title=f"Version {version}")
    table.add_column("#", justify="right")
    table.add_column("Role")
    table.add_column("Content")
    table.add_column("Tokens", justify="right")
    table.add_column("Variants", justify="right")
    table.add_column("Id")

    for annotated in messages:
        m = annotated.message
        marker = str(len(annotated.variants)) if annotated.is_divergence_point else ""
        table.add_row(
            str(m.position),
            m.role,
            escape(m.content),
            str(m.token_count),
            marker,
            _short(m.id),
        )
    console.print(table)


@app.command()
def variants(
    conversation_id: uuid.UUID = typer.Argument(..., help="Conversation"),
    position: int = typer.Argument(..., help="Message position"),
) -> None:
    """List the alternative contents available at a position."""
    service = get_service()
    with handle_errors():
        found = service.divergence_variants(conversation_id, position)

    if len(found) < 2:
        console.print(f"[yellow]No divergence at position {position}[/yellow]")
    for index, variant in enumerate(found, start=1):
        console.print(f"[bold]Variant {index}[/bold]: {escape(variant.content)}")
        for ref in variant.versions:
            console.print(
                f"  version={ref.version_id} [dim]{ref.timestamp.isoformat()}[/dim]"
            )


@app.command()
def context(
    version_id: uuid.UUID = typer.Argument(..., help="Version to assemble"),
    budget: Optional[int] = typer.Option(
        None, "--budget", "-b", help="Token budget (defaults to the history budget)"
    ),
) -> None:
    """Show which messages of a version fit the model context."""
    from minichat.config import settings

    token_budget = settings.history_budget if budget is None else budget
    service = get_service()
    with handle_errors():
        selected = service.select_context(version_id, token_budget)

    total = sum(m.token_count for m in selected)
    for m in selected:
        console.print(f"[cyan]{m.position:>3}[/cyan] {m.role:<9} {escape(m.content)}")
    console.print()
    console.print(
        f"[dim]{len(selected)} messages, {total} content tokens, "
        f"budget {token_budget}[/dim]"
    )


@app.command("list")
def list_conversations(
    limit: int = typer.Option(20, help="Maximum conversations to show"),
) -> None:
    """List conversations by last activity."""
    service = get_service()
    with handle_errors():
        summaries = service.list_conversations(limit=limit)

    if not summaries:
        console.print("[yellow]No conversations[/yellow]")
        return

    for summary in summaries:
        preview = summary.last_message or ""
        if len(preview) > 60:
            preview = preview[:60] + "..."
        console.print(f"[bold]{escape(summary.title) or '(untitled)'}[/bold]")
        console.print(
            f"  [dim]{summary.id}  {summary.updated_at.strftime('%Y-%m-%d %H:%M')}[/dim]"
        )
        if preview:
            console.print(f"  {escape(preview)}")


@app.command()
def rename(
    conversation_id: uuid.UUID = typer.Argument(..., help="Conversation"),
    title: str = typer.Argument(..., help="New title"),
) -> None:
    """Rename a conversation."""
    service = get_service()
    with handle_errors():
        conversation = service.rename_conversation(conversation_id, title)
    console.print(f"[green]✓ Renamed to[/green] {escape(conversation.title)}")


@app.command()
def delete(
    conversation_id: uuid.UUID = typer.Argument(..., help="Conversation"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
) -> None:
    """Delete a conversation with all its messages and versions."""
    if not yes:
        typer.confirm(f"Delete conversation {conversation_id}?", abort=True)
    service = get_service()
    with handle_errors():
        service.delete_conversation(conversation_id)
    console.print(f"[green]✓ Deleted conversation {conversation_id}[/green]")


if __name__ == "__main__":
    app()
