"""Command line interface for the salesflow automation core."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Optional

import typer
import yaml
from pydantic import ValidationError

from salesflow.config import configure_logging, load_config
from salesflow.contracts import WorkflowDefinition
from salesflow.exceptions import SalesflowError
from salesflow.persistence import get_repository
from salesflow.services import Services, build_services

app = typer.Typer(help="CLI for salesflow workflows and webhooks")

# Command groups
cron_app = typer.Typer(help="Periodic passes normally driven by an external cron")
workflow_app = typer.Typer(help="Commands for managing workflows and executions")
webhook_app = typer.Typer(help="Commands for inspecting webhook deliveries")

app.add_typer(cron_app, name="cron")
app.add_typer(workflow_app, name="workflow")
app.add_typer(webhook_app, name="webhook")


@app.callback()
def main(
    log_level: Optional[str] = typer.Option(None, help="Logging level, e.g. DEBUG"),
) -> None:
    """Salesflow CLI entry point."""
    configure_logging(log_level or load_config().log_level)


def _services() -> Services:
    return build_services(get_repository(), config=load_config())


def _fail(message: str) -> None:
    typer.secho(message, fg=typer.colors.RED)
    raise typer.Exit(code=1)


def _dump(data: object) -> str:
    return json.dumps(data, indent=2, default=str)


@cron_app.command("run")
def cron_run(
    skip_webhooks: bool = typer.Option(False, help="Do not process webhook retries or event cleanup"),
) -> None:
    """
    Run the scheduler and resumer passes, then webhook retries and event cleanup.

    Example:
        salesflow cron run
    """
    services = _services()
    scheduled, resumed = asyncio.run(services.run_workflow_cron())
    typer.echo(
        f"Scheduled: {scheduled.created} created, {scheduled.skipped} skipped, "
        f"{scheduled.errors} errors"
    )
    typer.echo(
        f"Resumed: {resumed.resumed} resumed, {resumed.skipped} skipped, "
        f"{resumed.timed_out} timed out"
    )
    if not skip_webhooks:
        retries = asyncio.run(services.run_webhook_cron())
        typer.echo(
            f"Webhook retries: {retries.processed} processed, "
            f"{retries.succeeded} succeeded, {retries.failed} failed"
        )
        removed = asyncio.run(services.run_retention())
        typer.echo(f"Cleanup: {removed} events removed")


@app.command("serve")
def serve(
    host: Optional[str] = typer.Option(None, help="Bind address"),
    port: Optional[int] = typer.Option(None, help="Bind port"),
) -> None:
    """Serve the HTTP API with uvicorn."""
    import uvicorn

    from salesflow.api import create_app

    config = load_config()
    uvicorn.run(
        create_app(config=config),
        host=host or config.server.host,
        port=port or config.server.port,
        log_level=config.log_level.lower(),
    )


@workflow_app.command("list")
def workflow_list(
    definitions: bool = typer.Option(False, help="List definitions instead of executions"),
    tenant: Optional[str] = typer.Option(None, help="Only this tenant"),
    limit: int = typer.Option(50, help="Maximum executions to show"),
) -> None:
    """
    List executions (newest first) or workflow definitions.

    Example:
        salesflow workflow list
        # Output: 0b6c...    3f2a...    waiting
    """
    repo = get_repository()
    if definitions:
        items = asyncio.run(repo.list_definitions(tenant_id=tenant))
        if not items:
            typer.echo("No workflows found")
            return
        for wf in items:
            state = "enabled" if wf.enabled else "disabled"
            typer.echo(f"{wf.id}\t{wf.trigger.type.value}\t{state}\t{wf.name}")
        return

    executions = asyncio.run(repo.list_executions(tenant_id=tenant, limit=limit))
    if not executions:
        typer.echo("No executions found")
        return
    for ex in executions:
        typer.echo(f"{ex.id}\t{ex.workflow_id}\t{ex.status.value}")


@workflow_app.command("show")
def workflow_show(execution_id: str) -> None:
    """
    Show an execution and its step history.

    Example:
        salesflow workflow show 0b6c...
        # Output: Execution 0b6c...: waiting (step 3)
        #         - [0] action: success
        #         - [1] condition: success
    """
    repo = get_repository()
    execution = asyncio.run(repo.get_execution(execution_id))
    if execution is None:
        typer.echo("Execution not found")
        raise typer.Exit(code=1)
    typer.echo(
        f"Execution {execution.id}: {execution.status.value} "
        f"(step {execution.current_step_index})"
    )
    typer.echo(f"Payload: {_dump(execution.context.payload)}")
    if execution.wait_until:
        typer.echo(f"Waiting until: {execution.wait_until.isoformat()}")
    if execution.last_error:
        typer.echo(f"Error: {execution.last_error}")
    for record in asyncio.run(repo.list_step_records(execution_id)):
        line = f"- [{record.step_index}] {record.step_type}: {record.outcome.value}"
        if record.error:
            line += f" ({record.error})"
        typer.echo(line)


@workflow_app.command("load")
def workflow_load(path: Path) -> None:
    """Register workflow definitions from a YAML or JSON file (one or a list)."""
    if not path.exists():
        _fail("Specified path does not exist")
    raw = yaml.safe_load(path.read_text()) or []
    items = raw if isinstance(raw, list) else [raw]
    services = _services()
    for item in items:
        try:
            definition = WorkflowDefinition.model_validate(item)
            asyncio.run(services.dispatcher.register(definition))
        except (ValidationError, SalesflowError) as exc:
            _fail(f"Invalid workflow definition: {exc}")
        typer.echo(f"Registered {definition.id}\t{definition.name}")


@workflow_app.command("trigger")
def workflow_trigger(
    workflow_id: str,
    payload: str = typer.Option("{}", help="Trigger payload as JSON"),
    tenant: Optional[str] = typer.Option(None, help="Tenant owning the workflow"),
) -> None:
    """Start a workflow now and run it until it waits or finishes."""
    try:
        data = json.loads(payload)
    except json.JSONDecodeError as exc:
        _fail(f"Payload is not valid JSON: {exc}")
    if not isinstance(data, dict):
        _fail("Payload must be a JSON object")
    services = _services()
    try:
        execution = asyncio.run(
            services.dispatcher.trigger_workflow(workflow_id, data, tenant)
        )
    except SalesflowError as exc:
        _fail(str(exc))
    typer.echo(f"{execution.id}\t{execution.status.value}")


@workflow_app.command("cancel")
def workflow_cancel(execution_id: str) -> None:
    """Cancel a running or waiting execution."""
    services = _services()
    try:
        execution = asyncio.run(services.dispatcher.cancel_execution(execution_id))
    except SalesflowError as exc:
        _fail(str(exc))
    typer.echo(f"{execution.id}\t{execution.status.value}")


@workflow_app.command("signal")
def workflow_signal(
    execution_id: str,
    data: str = typer.Option(..., help="Fields to merge into the payload, as JSON"),
    tenant: Optional[str] = typer.Option(None, help="Tenant owning the execution"),
) -> None:
    """
    Merge data into a waiting execution and resume it if its condition now holds.

    Example:
        salesflow workflow signal 0b6c... --data '{"paid": true}'
        # Output: 0b6c...    completed
    """
    try:
        fields = json.loads(data)
    except json.JSONDecodeError as exc:
        _fail(f"Data is not valid JSON: {exc}")
    if not isinstance(fields, dict):
        _fail("Data must be a JSON object")
    services = _services()

    async def _signal():
        execution = await services.dispatcher.signal_execution(execution_id, fields, tenant)
        return await services.resumer.resume_execution(execution.id) or execution

    try:
        execution = asyncio.run(_signal())
    except SalesflowError as exc:
        _fail(str(exc))
    typer.echo(f"{execution.id}\t{execution.status.value}")


@workflow_app.command("stats")
def workflow_stats(
    workflow_id: str,
    tenant: Optional[str] = typer.Option(None, help="Tenant owning the workflow"),
) -> None:
    """Show execution counters for a workflow."""
    services = _services()
    try:
        stats = asyncio.run(services.dispatcher.get_workflow_stats(workflow_id, tenant))
    except SalesflowError as exc:
        _fail(str(exc))
    typer.echo(_dump(stats.model_dump(mode="json")))


@webhook_app.command("list")
def webhook_list(tenant: Optional[str] = typer.Option(None, help="Only this tenant")) -> None:
    """List webhook subscriptions."""
    subscriptions = asyncio.run(get_repository().list_subscriptions(tenant))
    if not subscriptions:
        typer.echo("No webhooks found")
        return
    for sub in subscriptions:
        state = "active" if sub.is_active else "inactive"
        typer.echo(f"{sub.id}\t{state}\t{sub.url}\t{','.join(sub.events)}")


@webhook_app.command("logs")
def webhook_logs(
    subscription_id: str,
    limit: int = typer.Option(20, help="Number of attempts"),
    offset: int = typer.Option(0, help="Attempts to skip"),
) -> None:
    """Show delivery attempts for a subscription, newest first."""
    services = _services()
    try:
        attempts = asyncio.run(
            services.webhooks.get_webhook_delivery_logs(
                subscription_id, limit=limit, offset=offset
            )
        )
    except SalesflowError as exc:
        _fail(str(exc))
    if not attempts:
        typer.echo("No deliveries found")
        return
    for a in attempts:
        outcome = "ok" if a.success else (a.error_code or a.status.value)
        flag = " exhausted" if a.exhausted else ""
        typer.echo(
            f"{a.created_at.isoformat()}\t{a.event_id}\t#{a.attempt_number}\t"
            f"{a.http_status or '-'}\t{outcome}{flag}"
        )


@webhook_app.command("replay")
def webhook_replay(
    subscription_id: str,
    failure_id: Optional[str] = typer.Argument(None, help="Failure to replay"),
) -> None:
    """List replay candidates, or replay one failed delivery."""
    services = _services()
    try:
        if failure_id is None:
            failures = asyncio.run(services.webhooks.get_failed_deliveries(subscription_id))
            if not failures:
                typer.echo("No failed deliveries")
                return
            for f in failures:
                typer.echo(f"{f.id}\t{f.event_id}\t{f.reason}")
            return
        attempt = asyncio.run(
            services.webhooks.replay_failed_event(subscription_id, failure_id)
        )
    except SalesflowError as exc:
        _fail(str(exc))
    status = "delivered" if attempt.success else f"failed ({attempt.error_code})"
    typer.echo(f"Replay {status}: attempt #{attempt.attempt_number}")


@webhook_app.command("summary")
def webhook_summary(tenant: Optional[str] = typer.Option(None, help="Only this tenant")) -> None:
    """Show all-time delivery counts for every subscription."""
    services = _services()
    summaries = asyncio.run(services.webhooks.get_delivery_summary(tenant))
    if not summaries:
        typer.echo("No webhooks found")
        return
    for s in summaries:
        typer.echo(
            f"{s.subscription_id}\t{s.successful}/{s.total_attempts} ok\t"
            f"{s.pending_retries} retrying\t{s.failures_pending_replay} to replay\t{s.url}"
        )


@webhook_app.command("cleanup")
def webhook_cleanup(
    days: Optional[int] = typer.Option(None, min=0, help="Override the retention window"),
) -> None:
    """Delete webhook events (and their attempts) older than the retention window."""
    services = _services()
    removed = asyncio.run(services.webhooks.cleanup_old_events(days))
    typer.echo(f"Removed {removed} events")


if __name__ == "__main__":  # pragma: no cover
    app()
