"""CLI for ContactSense.

Commands:
    init-db                      - Create database tables
    identify --email/--phone     - Resolve a contact and print the response
    show-cluster <contact_id>    - Show the whole cluster a contact belongs to
"""

from __future__ import annotations

import asyncio
import logging
from typing import Annotated

import typer
from pydantic import ValidationError
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from contact_sense.config import settings
from contact_sense.db import async_session_factory, engine, init_db
from contact_sense.errors import ContactSenseError
from contact_sense.models import LinkPrecedence
from contact_sense.resolution import (
    SqlAlchemyContactStore,
    SqlAlchemyUnitOfWork,
    TransactionCoordinator,
    find_cluster_root,
)
from contact_sense.schemas import IdentifyRequest

app = typer.Typer(
    name="contact-sense",
    help="ContactSense: identity reconciliation for contacts",
    no_args_is_help=True,
)
console = Console()


def run_async(coro):
    """Run an async coroutine in sync context, disposing the engine afterwards."""

    async def _run():
        try:
            return await coro
        finally:
            await engine.dispose()

    return asyncio.run(_run())


@app.callback()
def main(
    verbose: Annotated[bool, typer.Option("--verbose", "-v", help="Log resolution steps")] = False,
):
    """Configure logging for every command."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@app.command("init-db")
def init_db_command():
    """Create the contacts table if it does not exist."""
    run_async(init_db())
    console.print("[green]Database initialized.[/green]")


@app.command()
def identify(
    email: Annotated[str | None, typer.Option("--email", "-e", help="Contact email")] = None,
    phone: Annotated[str | None, typer.Option("--phone", "-p", help="Contact phone number")] = None,
):
    """Resolve a contact to its cluster, creating or merging as needed."""
    try:
        request = IdentifyRequest(email=email, phone_number=phone)
    except ValidationError as e:
        for err in e.errors():
            console.print(f"[red]Error:[/red] {err['msg']}")
        raise typer.Exit(1) from None

    async def _identify():
        await init_db()
        coordinator = TransactionCoordinator(SqlAlchemyUnitOfWork(async_session_factory))
        return await coordinator.identify(email=request.email, phone_number=request.phone_number)

    try:
        response = run_async(_identify())
    except ContactSenseError as e:
        console.print(f"[red]Error:[/red] {type(e).__name__}: {e}")
        raise typer.Exit(1) from None

    summary = response.contact
    panel_content = [
        f"[bold]Primary:[/bold] {summary.primary_contact_id}",
        f"[bold]Emails:[/bold] {', '.join(summary.emails) or '-'}",
        f"[bold]Phone numbers:[/bold] {', '.join(summary.phone_numbers) or '-'}",
        f"[bold]Secondaries:[/bold] {', '.join(map(str, summary.secondary_contact_ids)) or '-'}",
    ]
    console.print(Panel("\n".join(panel_content), title="Identity Cluster"))


@app.command("show-cluster")
def show_cluster(
    contact_id: Annotated[int, typer.Argument(help="Any contact id in the cluster")],
):
    """Show every contact in the cluster containing CONTACT_ID."""

    async def _show():
        await init_db()
        async with async_session_factory() as session, session.begin():
            store = SqlAlchemyContactStore(session)
            contact = await store.find_by_id(contact_id)
            if contact is None:
                return None
            root = await find_cluster_root(
                store, contact, max_hops=settings.resolution_max_link_hops
            )
            return await store.find_cluster_members({root.id}, for_update=False)

    try:
        members = run_async(_show())
    except ContactSenseError as e:
        console.print(f"[red]Error:[/red] {type(e).__name__}: {e}")
        raise typer.Exit(1) from None

    if members is None:
        console.print(f"[red]Error:[/red] Contact not found: {contact_id}")
        raise typer.Exit(1)

    table = Table(title=f"Cluster of contact {contact_id}")
    table.add_column("ID", justify="right", style="cyan")
    table.add_column("Precedence")
    table.add_column("Linked", justify="right")
    table.add_column("Email")
    table.add_column("Phone")
    table.add_column("Created")

    for c in members:
        style = "green" if c.link_precedence == LinkPrecedence.PRIMARY else "dim"
        table.add_row(
            str(c.id),
            f"[{style}]{c.link_precedence.value}[/{style}]",
            str(c.linked_id) if c.linked_id is not None else "-",
            c.email or "-",
            c.phone_number or "-",
            str(c.created_at),
        )

    console.print(table)


if __name__ == "__main__":
    app()
