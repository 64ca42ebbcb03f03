"""
Channels CLI

Operator commands for channel instance recovery.

Commands:
- init-db: Create the channel tables
- list-instances: List instances with their status
- list-stuck: List instances sitting in connecting/error
- reset-instance: Force an instance to disconnected or error
- flag-instance / unflag-instance: Maintain the problematic flag
- emergency-cleanup: Reset every flagged instance to error
- reclaim-stale: Move overdue connection attempts to error
- refresh-status: Reconcile an instance with the provider
- find-orphans: Find (and optionally reset) instances missing upstream
- set-status: Administrative status override
- list-conversations / set-conversation-status: Inspect and close conversations
"""

import asyncio
from typing import Optional
from uuid import UUID

import typer
from rich import print as rprint
from rich.console import Console
from rich.table import Table

from messaging_channels.errors import ChannelError
from messaging_channels.persistence.models import ChannelStatus, ConversationStatus
from messaging_channels.persistence.repo import ChannelRepository
from messaging_channels.providers.base import ProviderError

app = typer.Typer(
    name="channels-cli",
    help="Messaging Channels Engine CLI",
)

console = Console()


def get_channel_engine():
    """Build the channel engine from settings."""
    from basecore.db import get_sessionmaker
    from messaging_channels.engine import build_engine, build_event_publisher

    return build_engine(get_sessionmaker(), events=build_event_publisher())


def _parse_uuid(value: str, label: str = "instance ID") -> UUID:
    try:
        return UUID(value)
    except ValueError:
        rprint(f"[red]Invalid {label}: {value}[/red]")
        raise typer.Exit(1)


def _parse_status(value: str) -> ChannelStatus:
    try:
        return ChannelStatus(value)
    except ValueError:
        valid = ", ".join(s.value for s in ChannelStatus)
        rprint(f"[red]Unknown status: {value} (expected one of: {valid})[/red]")
        raise typer.Exit(1)


def _format_age(seconds: float) -> str:
    minutes = int(seconds // 60)
    if minutes < 60:
        return f"{minutes}m"
    return f"{minutes // 60}h{minutes % 60:02d}m"


@app.command()
def init_db():
    """
    Create the channel tables (if missing).
    """
    from basecore.db import get_engine
    from messaging_channels.persistence.models import ChannelBase

    ChannelBase.metadata.create_all(bind=get_engine())
    rprint("[green]Channel tables ready[/green]")


@app.command()
def list_instances(
    tenant_id: Optional[str] = typer.Option(None, "--tenant", help="Filter by tenant UUID"),
):
    """
    List channel instances.
    """
    tenant_uuid = _parse_uuid(tenant_id, "tenant ID") if tenant_id else None
    engine = get_channel_engine()

    with engine.lifecycle.session_factory() as db:
        instances = ChannelRepository(db).list_instances(tenant_uuid)

    if not instances:
        rprint("[yellow]No instances found[/yellow]")
        raise typer.Exit(0)

    table = Table(title="Channel Instances")
    table.add_column("ID", style="dim")
    table.add_column("Tenant", style="dim")
    table.add_column("Type")
    table.add_column("Name")
    table.add_column("Status")
    table.add_column("Flagged")
    table.add_column("Error")

    for instance in instances:
        table.add_row(
            str(instance.id),
            str(instance.tenant_id)[:8] + "...",
            instance.channel_type,
            instance.display_name,
            instance.status,
            "Yes" if instance.flagged_problematic else "No",
            instance.error_message or "-",
        )

    console.print(table)


@app.command()
def list_stuck(
    tenant_id: Optional[str] = typer.Option(None, "--tenant", help="Filter by tenant UUID"),
):
    """
    List instances in connecting or error, most recently updated first.
    """
    tenant_uuid = _parse_uuid(tenant_id, "tenant ID") if tenant_id else None
    engine = get_channel_engine()

    stuck = engine.recovery.list_stuck_instances(tenant_uuid)
    if not stuck:
        rprint("[green]No stuck instances[/green]")
        raise typer.Exit(0)

    table = Table(title="Stuck Instances")
    table.add_column("ID", style="dim")
    table.add_column("Name")
    table.add_column("Status")
    table.add_column("Stuck For")
    table.add_column("Overdue")
    table.add_column("Flag")

    for item in stuck:
        table.add_row(
            str(item.instance_id),
            item.display_name,
            item.status.value,
            _format_age(item.stuck_for.total_seconds()),
            "[red]Yes[/red]" if item.overdue else "No",
            item.flag_reason or ("Yes" if item.flagged_problematic else "-"),
        )

    console.print(table)


@app.command()
def reset_instance(
    instance_id: str = typer.Argument(..., help="Instance UUID"),
    to: str = typer.Option("disconnected", "--to", help="Target status: disconnected or error"),
    reason: Optional[str] = typer.Option(None, help="Reason recorded in the audit log"),
    actor: str = typer.Option("cli", help="Who is resetting"),
):
    """
    Force an instance into disconnected or error, bypassing the transition rules.
    """
    instance_uuid = _parse_uuid(instance_id)
    target = _parse_status(to)
    engine = get_channel_engine()

    try:
        result = engine.recovery.reset_instance(instance_uuid, target, actor=actor, reason=reason)
    except ValueError as e:
        rprint(f"[red]{e}[/red]")
        raise typer.Exit(1)
    except ChannelError as e:
        rprint(f"[red]{e.message}[/red]")
        raise typer.Exit(1)

    rprint(
        f"[green]Instance reset:[/green] {result.previous_status.value} -> {result.status.value}"
    )


@app.command()
def flag_instance(
    instance_id: str = typer.Argument(..., help="Instance UUID"),
    reason: str = typer.Argument(..., help="Why the instance is problematic"),
):
    """
    Mark an instance as known-problematic.
    """
    instance_uuid = _parse_uuid(instance_id)
    engine = get_channel_engine()

    try:
        engine.recovery.flag_instance(instance_uuid, reason, actor="cli")
    except ChannelError as e:
        rprint(f"[red]{e.message}[/red]")
        raise typer.Exit(1)

    rprint(f"[yellow]Instance flagged:[/yellow] {reason}")


@app.command()
def unflag_instance(
    instance_id: str = typer.Argument(..., help="Instance UUID"),
):
    """
    Clear the problematic flag.
    """
    instance_uuid = _parse_uuid(instance_id)
    engine = get_channel_engine()

    try:
        engine.recovery.unflag_instance(instance_uuid, actor="cli")
    except ChannelError as e:
        rprint(f"[red]{e.message}[/red]")
        raise typer.Exit(1)

    rprint("[green]Flag cleared[/green]")


@app.command()
def emergency_cleanup(
    tenant_id: Optional[str] = typer.Option(None, "--tenant", help="Limit to one tenant"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
):
    """
    Reset every flagged instance to error.
    """
    tenant_uuid = _parse_uuid(tenant_id, "tenant ID") if tenant_id else None

    if not yes:
        confirm = typer.confirm("Reset ALL flagged instances to error?")
        if not confirm:
            rprint("[yellow]Cancelled[/yellow]")
            raise typer.Exit(0)

    engine = get_channel_engine()
    results = engine.recovery.emergency_cleanup(tenant_uuid, actor="cli")

    if not results:
        rprint("[green]No flagged instances[/green]")
        raise typer.Exit(0)

    table = Table(title="Emergency Cleanup")
    table.add_column("ID", style="dim")
    table.add_column("Result")
    table.add_column("Previous")
    table.add_column("Error")

    for result in results:
        table.add_row(
            str(result.instance_id),
            "[green]reset[/green]" if result.success else "[red]failed[/red]",
            result.previous_status.value if result.previous_status else "-",
            result.error or "-",
        )

    console.print(table)

    if any(not r.success for r in results):
        raise typer.Exit(1)


@app.command()
def reclaim_stale():
    """
    Move connection attempts older than the stuck threshold to error.
    """
    engine = get_channel_engine()
    results = engine.recovery.reclaim_stale_connections()
    rprint(f"Reclaimed {sum(1 for r in results if r.success)} stale connection(s)")


@app.command()
def refresh_status(
    instance_id: str = typer.Argument(..., help="Instance UUID"),
):
    """
    Reconcile an instance's status with the provider.
    """
    instance_uuid = _parse_uuid(instance_id)
    engine = get_channel_engine()

    async def refresh() -> ChannelStatus:
        try:
            return await engine.lifecycle.refresh_status(instance_uuid)
        finally:
            await engine.registry.close()

    try:
        status = asyncio.run(refresh())
    except ChannelError as e:
        rprint(f"[red]{e.message}[/red]")
        raise typer.Exit(1)
    except ProviderError as e:
        rprint(f"[red]Provider error: {e}[/red]")
        raise typer.Exit(1)

    rprint(f"Status: [bold]{status.value}[/bold]")


@app.command()
def find_orphans(
    apply: bool = typer.Option(False, "--apply", help="Reset orphans to disconnected"),
    tenant_id: Optional[str] = typer.Option(None, "--tenant", help="Limit to one tenant"),
):
    """
    Find instances the provider no longer knows about.
    """
    tenant_uuid = _parse_uuid(tenant_id, "tenant ID") if tenant_id else None
    engine = get_channel_engine()

    async def find():
        try:
            return await engine.recovery.cleanup_orphans(dry_run=not apply, tenant_id=tenant_uuid)
        finally:
            await engine.registry.close()

    orphans = asyncio.run(find())

    if not orphans:
        rprint("[green]No orphaned instances found[/green]")
        raise typer.Exit(0)

    table = Table(title="Orphaned Instances")
    table.add_column("ID", style="dim")
    table.add_column("Provider Ref")
    table.add_column("Status")
    table.add_column("Action")

    for orphan in orphans:
        action = "-"
        if orphan.reset is not None:
            action = "reset" if orphan.reset.success else f"failed: {orphan.reset.error}"
        table.add_row(str(orphan.instance_id), orphan.provider_ref, orphan.status.value, action)

    console.print(table)

    if not apply:
        rprint("[dim]Dry run. Use --apply to reset them.[/dim]")


@app.command()
def set_status(
    instance_id: str = typer.Argument(..., help="Instance UUID"),
    status: str = typer.Argument(..., help="Target status"),
    reason: Optional[str] = typer.Option(None, help="Reason recorded in the audit log"),
    actor: str = typer.Option("cli", help="Who is changing the status"),
):
    """
    Administrative status override (the only way out of suspended/maintenance).
    """
    instance_uuid = _parse_uuid(instance_id)
    target = _parse_status(status)
    engine = get_channel_engine()

    try:
        outcome = engine.lifecycle.set_administrative_status(instance_uuid, target, actor=actor, reason=reason)
    except ChannelError as e:
        rprint(f"[red]{e.message}[/red]")
        raise typer.Exit(1)

    rprint(f"[green]Status set:[/green] {outcome.previous.value} -> {outcome.current.value}")


@app.command()
def list_conversations(
    instance_id: str = typer.Argument(..., help="Instance UUID"),
    status: Optional[str] = typer.Option(None, "--status", help="Filter by conversation status"),
):
    """
    List conversations on an instance.
    """
    instance_uuid = _parse_uuid(instance_id)
    engine = get_channel_engine()

    try:
        conversations = engine.lifecycle.list_conversations(instance_uuid, status=status)
    except ValueError as e:
        rprint(f"[red]{e}[/red]")
        raise typer.Exit(1)
    except ChannelError as e:
        rprint(f"[red]{e.message}[/red]")
        raise typer.Exit(1)

    if not conversations:
        rprint("[yellow]No conversations found[/yellow]")
        raise typer.Exit(0)

    table = Table(title="Conversations")
    table.add_column("ID", style="dim")
    table.add_column("Contact")
    table.add_column("Status")
    table.add_column("Messages")
    table.add_column("Last Message")

    for conversation in conversations:
        table.add_row(
            str(conversation.id),
            conversation.contact_name or conversation.contact_ref,
            conversation.status,
            str(conversation.message_count),
            conversation.last_message_preview or "-",
        )

    console.print(table)


@app.command()
def set_conversation_status(
    conversation_id: str = typer.Argument(..., help="Conversation UUID"),
    status: str = typer.Argument(..., help="active, resolved, escalated or archived"),
):
    """
    Change a conversation's status (resolve or archive to unblock instance deletion).
    """
    conversation_uuid = _parse_uuid(conversation_id, "conversation ID")
    try:
        target = ConversationStatus(status)
    except ValueError:
        valid = ", ".join(s.value for s in ConversationStatus)
        rprint(f"[red]Unknown conversation status: {status} (expected one of: {valid})[/red]")
        raise typer.Exit(1)

    engine = get_channel_engine()

    try:
        engine.lifecycle.update_conversation_status(conversation_uuid, target)
    except ChannelError as e:
        rprint(f"[red]{e.message}[/red]")
        raise typer.Exit(1)

    rprint(f"[green]Conversation status:[/green] {target.value}")


if __name__ == "__main__":
    app()
