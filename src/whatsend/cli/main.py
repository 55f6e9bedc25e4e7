"""
WhatSend CLI

Command-line interface for WhatSend administration.

Commands:
- init-db: Create the WhatSend tables
- status: Show a tenant's connection status
- connect / disconnect: Ask the worker to (dis)connect a tenant
- erase: Erase all data of a tenant
- redact: Erase a customer's delivery data
- enqueue: Queue a message for delivery
- history / jobs: Inspect delivery records and queued jobs
- plan / set-plan / reset-cycle: Billing administration
- cleanup: Apply retention periods
"""

from typing import Optional

import typer
from rich import print as rprint
from rich.console import Console
from rich.table import Table

app = typer.Typer(
    name="whatsend-cli",
    help="WhatSend notification service CLI",
)

console = Console()


def get_producer():
    """Get control stream producer."""
    from notifycore.redis import get_redis_client
    from whatsend.streams import ControlProducer, ensure_control_stream

    client = get_redis_client()
    ensure_control_stream(client)
    return ControlProducer(client, source="cli")


@app.command()
def init_db():
    """
    Create the WhatSend tables (skips existing ones).
    """
    from notifycore.db import init_db as _init_db
    from whatsend.persistence.models import WhatSendBase

    _init_db(WhatSendBase.metadata)
    rprint("[green]✓ Tables created[/green]")


@app.command()
def status(
    tenant_id: str = typer.Argument(..., help="Tenant ID (shop domain)"),
):
    """
    Show a tenant's WhatsApp connection status.
    """
    from whatsend.session.status import StatusProjector

    current = StatusProjector().get_status(tenant_id)

    rprint(f"\n[cyan]Tenant: {tenant_id}[/cyan]")
    rprint(f"  State: {current.connection_state}")
    rprint(f"  Connected: {'Yes' if current.whatsapp_connected else 'No'}")
    rprint(f"  Number: {current.whatsapp_number or '-'}")
    if current.pairing_code:
        rprint(f"  Pairing code: [bold]{current.pairing_code}[/bold]")
    if current.last_connected_at:
        rprint(f"  Last connected: {current.last_connected_at.strftime('%Y-%m-%d %H:%M')}")
    if current.last_error:
        rprint(f"  [red]Last error: {current.last_error}[/red]")


@app.command()
def connect(
    tenant_id: str = typer.Argument(..., help="Tenant ID (shop domain)"),
):
    """
    Ask the worker to connect a tenant.

    Poll `status` afterwards for the pairing code.
    """
    msg_id = get_producer().publish_connect(tenant_id)
    rprint(f"[green]✓ Connect requested[/green] (message {msg_id})")


@app.command()
def disconnect(
    tenant_id: str = typer.Argument(..., help="Tenant ID (shop domain)"),
    keep_credentials: bool = typer.Option(
        False, "--keep-credentials", help="Close the session but keep the device linked"
    ),
):
    """
    Ask the worker to disconnect a tenant.
    """
    msg_id = get_producer().publish_disconnect(tenant_id, wipe_credentials=not keep_credentials)
    rprint(f"[green]✓ Disconnect requested[/green] (message {msg_id})")


@app.command()
def erase(
    tenant_id: str = typer.Argument(..., help="Tenant ID (shop domain)"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
):
    """
    Erase everything stored for a tenant and unlink its device.
    """
    if not yes:
        typer.confirm(f"Erase all WhatSend data of {tenant_id}?", abort=True)

    from whatsend.service.erasure import ErasureService

    counts = ErasureService().erase_tenant_data(tenant_id)
    get_producer().publish_erase(tenant_id)

    rprint(f"[green]✓ Erased tenant {tenant_id}[/green]")
    for name, count in counts.items():
        rprint(f"  {name}: {count}")


@app.command()
def redact(
    tenant_id: str = typer.Argument(..., help="Tenant ID (shop domain)"),
    phone: Optional[str] = typer.Option(None, help="Customer phone number"),
    order_id: list[str] = typer.Option([], "--order-id", help="Order ID (repeatable)"),
):
    """
    Erase a customer's delivery records and queued jobs.
    """
    if not phone and not order_id:
        rprint("[red]Provide --phone and/or --order-id[/red]")
        raise typer.Exit(1)

    from whatsend.service.erasure import ErasureService

    counts = ErasureService().redact_customer(tenant_id, phone=phone, order_ids=order_id)
    rprint(f"[green]✓ Redacted[/green] records={counts['records']} jobs={counts['jobs']}")


@app.command()
def enqueue(
    tenant_id: str = typer.Argument(..., help="Tenant ID (shop domain)"),
    to: str = typer.Argument(..., help="Recipient phone number"),
    message: str = typer.Option("Test message from WhatSend", help="Message text"),
    media_url: Optional[str] = typer.Option(None, help="Image URL (message becomes the caption)"),
    priority: int = typer.Option(10, help="Lower is more urgent"),
):
    """
    Queue a manual message for delivery.
    """
    from whatsend.delivery.queue import DeliveryQueue

    try:
        job_id = DeliveryQueue().enqueue(
            tenant_id,
            to,
            message,
            priority=priority,
            media_url=media_url,
        )
    except ValueError as e:
        rprint(f"[red]{e}[/red]")
        raise typer.Exit(1)

    rprint(f"[green]✓ Enqueued job {job_id}[/green]")


@app.command()
def history(
    tenant_id: str = typer.Argument(..., help="Tenant ID (shop domain)"),
    status: Optional[str] = typer.Option(None, help="Filter by status (sent, failed)"),
    limit: int = typer.Option(20, help="Maximum records to show"),
):
    """
    Show delivery history of a tenant, newest first.
    """
    from whatsend.delivery.queue import DeliveryQueue

    records = DeliveryQueue().history(tenant_id, status=status, limit=limit)

    if not records:
        rprint("[yellow]No delivery records found[/yellow]")
        raise typer.Exit(0)

    table = Table(title=f"Delivery history for {tenant_id}")
    table.add_column("When", style="dim")
    table.add_column("Recipient")
    table.add_column("Category")
    table.add_column("Attempt")
    table.add_column("Status")
    table.add_column("Error")

    for record in records:
        table.add_row(
            (record["created_at"] or "-")[:16],
            record["recipient"],
            record["category"],
            str(record["attempt"]),
            record["status"],
            record["error_message"] or "-",
        )

    console.print(table)


@app.command()
def jobs(
    tenant_id: str = typer.Argument(..., help="Tenant ID (shop domain)"),
    status: Optional[str] = typer.Option(None, help="Filter by status"),
    limit: int = typer.Option(20, help="Maximum jobs to show"),
):
    """
    List queued delivery jobs of a tenant.
    """
    from whatsend.delivery.queue import DeliveryQueue

    queue = DeliveryQueue()
    found = queue.list_jobs(tenant_id, status=status, limit=limit)

    if not found:
        rprint("[yellow]No jobs found[/yellow]")
        raise typer.Exit(0)

    table = Table(title=f"Delivery jobs for {tenant_id}")
    table.add_column("ID", style="dim")
    table.add_column("Recipient")
    table.add_column("Priority")
    table.add_column("Status")
    table.add_column("Attempts")
    table.add_column("Not before")

    for job in found:
        table.add_row(
            str(job.id)[:8] + "...",
            job.recipient,
            str(job.priority),
            job.status,
            f"{job.attempt_count}/{job.max_attempts}",
            job.not_before.strftime("%Y-%m-%d %H:%M:%S") if job.not_before else "-",
        )

    console.print(table)

    counts = queue.count_by_status(tenant_id)
    rprint("[bold]Totals:[/bold] " + ", ".join(f"{name}={count}" for name, count in sorted(counts.items())))


@app.command()
def plan(
    tenant_id: str = typer.Argument(..., help="Tenant ID (shop domain)"),
):
    """
    Show a tenant's plan and usage.
    """
    from whatsend.service.billing import BillingService

    current = BillingService().get_status(tenant_id)

    rprint(f"\n[cyan]Tenant: {tenant_id}[/cyan]")
    rprint(f"  Plan: {current.plan_type}")
    rprint(f"  Sent this cycle: {current.messages_sent}")
    rprint(f"  Limit: {current.messages_limit if current.messages_limit is not None else 'unlimited'}")
    rprint(f"  Can send: {'Yes' if current.can_send_messages else 'No'}")


@app.command()
def set_plan(
    tenant_id: str = typer.Argument(..., help="Tenant ID (shop domain)"),
    plan_type: str = typer.Argument(..., help="free, starter, growth, pro or lifetime"),
    subscription_id: Optional[str] = typer.Option(None, help="App store subscription ID"),
):
    """
    Change a tenant's plan.
    """
    from whatsend.service.billing import BillingService

    try:
        updated = BillingService().set_plan(tenant_id, plan_type, subscription_id)
    except ValueError:
        rprint(f"[red]Unknown plan: {plan_type}[/red]")
        raise typer.Exit(1)

    rprint(f"[green]✓ {tenant_id} is now on {updated.plan_type}[/green]")


@app.command()
def reset_cycle(
    tenant_id: str = typer.Argument(..., help="Tenant ID (shop domain)"),
):
    """
    Start a new billing cycle for a tenant.
    """
    from whatsend.service.billing import BillingService

    BillingService().reset_cycle(tenant_id)
    rprint(f"[green]✓ Usage of {tenant_id} reset[/green]")


@app.command()
def cleanup():
    """
    Delete delivery history, connection logs and finished jobs past retention.
    """
    from notifycore.settings import get_settings
    from whatsend.service.erasure import ErasureService

    settings = get_settings()
    counts = ErasureService(
        history_days=settings.RETENTION_HISTORY_DAYS,
        connection_log_days=settings.RETENTION_CONNECTION_LOG_DAYS,
        queue_days=settings.RETENTION_QUEUE_DAYS,
    ).run_retention_cleanup()

    rprint("[green]✓ Retention cleanup done[/green]")
    for name, count in counts.items():
        rprint(f"  {name}: {count}")


if __name__ == "__main__":
    app()
