"""Command line interface for running cadence workers and inspecting state."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import List, NoReturn, Optional

import typer

from .cli_utils.loading import load_capabilities, parse_pairs
from .config import CadenceConfig, load_config
from .definitions import DefinitionRegistry
from .dispatch import WorkflowDispatcher
from .errors import CadenceError, JobNotFound, ValidationError
from .jobs import get_job_store
from .jobs.models import JobPriority
from .persistence import get_state_store
from .processor import JobProcessor
from .retention import RetentionPolicy
from .transports import get_transport
from .triggers import TriggerDispatcher

app = typer.Typer(help="CLI for cadence workflows")

worker_app = typer.Typer(help="Commands for running job processors")
workflow_app = typer.Typer(help="Commands for managing workflows")
job_app = typer.Typer(help="Commands for inspecting the job queue")
event_app = typer.Typer(help="Commands for injecting events")

app.add_typer(worker_app, name="worker")
app.add_typer(workflow_app, name="workflow")
app.add_typer(job_app, name="job")
app.add_typer(event_app, name="event")


@app.callback()
def main() -> None:
    """Cadence CLI entry point."""
    config = load_config()
    logging.basicConfig(
        level=config.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _registry(config: CadenceConfig, definitions: Optional[Path]) -> DefinitionRegistry:
    registry = DefinitionRegistry()
    path = definitions or (Path(config.definitions_path) if config.definitions_path else None)
    if path is None:
        return registry
    if path.is_dir():
        registry.load_directory(path)
    else:
        registry.load(path)
    return registry


def _fail(message: str) -> NoReturn:
    typer.secho(message, fg=typer.colors.RED)
    raise typer.Exit(code=1)


DefinitionsOption = typer.Option(
    None, "--definitions", "-d", help="Definition file or directory (default: config)"
)


# ----------------------------------------------------------------------
# worker
@worker_app.command("run")
def worker_run(
    capabilities: List[str] = typer.Option(
        [], "--capabilities", "-c", help="module:attribute exposing capability handlers"
    ),
    definitions: Optional[Path] = DefinitionsOption,
    concurrency: Optional[int] = typer.Option(None, help="Number of worker tasks"),
    lifespan: Optional[float] = typer.Option(None, help="Stop after this many seconds"),
    once: bool = typer.Option(False, "--once", help="Process at most one job and exit"),
    listen: bool = typer.Option(False, "--listen", help="Also dispatch events from the transport"),
) -> None:
    """
    Run a job processor.

    Claims workflow and resume jobs from the configured job store and drives
    them with the given capabilities.

    Example:
        cadence worker run -c outreach.capabilities:resolver -d ./workflows
        cadence worker run -c outreach.capabilities:resolver --once
    """
    config = load_config()
    if concurrency is not None:
        config.processor.concurrency = concurrency
    registry = _registry(config, definitions)
    job_store = get_job_store(config=config)
    state_store = get_state_store(config=config)
    processor = JobProcessor(
        job_store,
        state_store,
        registry,
        load_capabilities(capabilities),
        config=config.processor,
    )

    if once:
        job = asyncio.run(processor.run_once())
        typer.echo(f"Processed job {job.id}" if job else "No jobs available")
        return

    async def _run() -> None:
        if not listen:
            await processor.run(lifespan=lifespan)
            return
        transport = get_transport(config=config)
        dispatcher = TriggerDispatcher(registry, job_store, state_store, config.processor)
        try:
            await asyncio.gather(
                processor.run(lifespan=lifespan),
                dispatcher.listen(transport, config.transport.topic, lifespan=lifespan),
            )
        finally:
            await transport.close()

    typer.echo(f"Starting worker {processor.worker_id}")
    asyncio.run(_run())


# ----------------------------------------------------------------------
# workflow
@workflow_app.command("submit")
def workflow_submit(
    name: str,
    inputs: List[str] = typer.Option([], "--input", "-i", help="key=value workflow input"),
    priority: JobPriority = typer.Option(JobPriority.NORMAL, help="Job priority"),
    definitions: Optional[Path] = DefinitionsOption,
) -> None:
    """
    Submit a workflow for execution.

    Example:
        cadence workflow submit re-engagement -i prospect_email=a@b.com --priority high
    """
    config = load_config()
    registry = _registry(config, definitions)
    dispatcher = WorkflowDispatcher(
        get_job_store(config=config),
        registry,
        get_state_store(config=config),
        config.status_url_template,
    )
    try:
        receipt = asyncio.run(dispatcher.submit(name, parse_pairs(inputs), priority))
    except (CadenceError, ValueError) as exc:
        _fail(str(exc))
    typer.echo(f"{receipt.job_id}\t{receipt.status_url}")


@workflow_app.command("status")
def workflow_status(job_id: str) -> None:
    """Show the combined job and instance status for a submitted workflow."""
    config = load_config()
    dispatcher = WorkflowDispatcher(
        get_job_store(config=config), DefinitionRegistry(), get_state_store(config=config)
    )
    try:
        status = asyncio.run(dispatcher.status(job_id))
    except JobNotFound as exc:
        _fail(str(exc))
    typer.echo(status.model_dump_json(indent=2))


@workflow_app.command("list")
def workflow_list(
    status: Optional[str] = typer.Option(None, help="Filter by instance status"),
    name: Optional[str] = typer.Option(None, help="Filter by workflow name"),
    limit: int = typer.Option(50, min=1, max=1000),
) -> None:
    """
    List workflow instances, newest first.

    Example:
        cadence workflow list --status suspended
        # Output: 4f0c...    re-engagement    suspended    classify
    """
    store = get_state_store(config=load_config())
    instances = asyncio.run(store.list_instances(status=status, workflow_name=name, limit=limit))
    if not instances:
        typer.echo("No workflows found")
        return
    for inst in instances:
        typer.echo(
            f"{inst.id}\t{inst.workflow_name}\t{inst.status.value}\t{inst.current_step or '-'}"
        )


@workflow_app.command("stats")
def workflow_stats(
    name: str,
    days: int = typer.Option(7, help="Look-back window in days"),
) -> None:
    """
    Count a workflow's instances by status over the last few days.

    Example:
        cadence workflow stats re-engagement --days 30
        # Output: completed    12    41.7
    """
    store = get_state_store(config=load_config())
    try:
        stats = asyncio.run(store.workflow_stats(name, days))
    except ValueError as exc:
        _fail(f"Invalid window: {exc}")
    if not stats.total:
        typer.echo(f"No runs of {name} in the last {stats.days} days")
        return
    for entry in stats.by_status:
        avg = "-" if entry.avg_duration_seconds is None else f"{entry.avg_duration_seconds:.1f}"
        typer.echo(f"{entry.status.value}\t{entry.count}\t{avg}")


@workflow_app.command("show")
def workflow_show(instance_id: str) -> None:
    """Show an instance with its recorded steps, events and failures."""
    store = get_state_store(config=load_config())
    inst = asyncio.run(store.get_instance(instance_id))
    if inst is None:
        _fail("Workflow not found")
    typer.echo(f"Workflow {inst.id} ({inst.workflow_name} v{inst.workflow_version}): {inst.status.value}")
    typer.echo(f"Flow: {inst.current_flow}  Step: {inst.current_step or '-'}")
    if inst.inputs:
        typer.echo(f"Inputs: {json.dumps(inst.inputs)}")
    for step in sorted(inst.steps, key=lambda s: s.seq):
        typer.echo(f"- {step.step_name}: {json.dumps(step.output)} ({step.recorded_at})")
    for event in inst.events:
        typer.echo(f"* event {event.event_name}: {json.dumps(event.payload)}")
    for failure in inst.failures:
        typer.echo(f"! {failure.kind} at {failure.step_name or '-'}: {failure.message}")


@workflow_app.command("cancel")
def workflow_cancel(job_id: str) -> None:
    """Cancel a pending workflow job or stop its instance at the next step."""
    config = load_config()
    dispatcher = WorkflowDispatcher(
        get_job_store(config=config), DefinitionRegistry(), get_state_store(config=config)
    )
    try:
        cancelled = asyncio.run(dispatcher.cancel(job_id))
    except JobNotFound as exc:
        _fail(str(exc))
    typer.echo("Cancellation requested" if cancelled else "Nothing to cancel")


@workflow_app.command("validate")
def workflow_validate(path: Path) -> None:
    """
    Validate definition files without running anything.

    Example:
        cadence workflow validate ./workflows
        # Output: re-engagement v1 OK
    """
    registry = DefinitionRegistry()
    if not path.exists():
        _fail("Specified path does not exist")
    try:
        loaded = registry.load_directory(path) if path.is_dir() else [registry.load(path)]
    except ValidationError as exc:
        _fail(f"Invalid definition: {exc}")
    if not loaded:
        typer.echo("No definitions found.")
        return
    for defn in loaded:
        typer.echo(f"{defn.name} v{defn.version} OK")


# ----------------------------------------------------------------------
# job
@job_app.command("list")
def job_list(
    status: Optional[str] = typer.Option(None, help="Filter by job status"),
    kind: Optional[str] = typer.Option(None, help="Filter by job kind"),
    limit: int = typer.Option(50, min=1, max=1000),
) -> None:
    """List jobs, newest first."""
    store = get_job_store(config=load_config())
    jobs = asyncio.run(store.list_jobs(status=status, kind=kind, limit=limit))
    if not jobs:
        typer.echo("No jobs found")
        return
    for job in jobs:
        typer.echo(
            f"{job.id}\t{job.kind}\t{job.status.value}\t{job.priority.value}\t{job.progress:.0f}%"
        )


@job_app.command("show")
def job_show(job_id: str) -> None:
    store = get_job_store(config=load_config())
    try:
        job = asyncio.run(store.status(job_id))
    except JobNotFound as exc:
        _fail(str(exc))
    typer.echo(job.model_dump_json(indent=2))


@job_app.command("retry")
def job_retry(job_id: str) -> None:
    """Queue a new attempt of a failed or cancelled job."""
    store = get_job_store(config=load_config())
    try:
        new_id = asyncio.run(store.retry(job_id))
    except (JobNotFound, ValueError) as exc:
        _fail(str(exc))
    typer.echo(new_id)


@job_app.command("cancel")
def job_cancel(job_id: str) -> None:
    store = get_job_store(config=load_config())
    cancelled = asyncio.run(store.cancel(job_id))
    typer.echo("Job cancelled" if cancelled else "Only pending jobs can be cancelled")


@job_app.command("stats")
def job_stats() -> None:
    store = get_job_store(config=load_config())
    stats = asyncio.run(store.stats())
    for field, value in stats.model_dump().items():
        typer.echo(f"{field}\t{value}")


# ----------------------------------------------------------------------
# event
@event_app.command("dispatch")
def event_dispatch(
    name: str,
    payload: str = typer.Option("{}", help="JSON payload"),
    correlation_key: Optional[str] = typer.Option(None, "--correlation-key", "-k"),
    definitions: Optional[Path] = DefinitionsOption,
) -> None:
    """
    Dispatch an external event to matching triggers.

    Example:
        cadence event dispatch prospect_replied --payload '{"email": "a@b.com"}' -k a@b.com
    """
    config = load_config()
    try:
        data = json.loads(payload)
    except json.JSONDecodeError as exc:
        _fail(f"Payload is not valid JSON: {exc}")
    dispatcher = TriggerDispatcher(
        _registry(config, definitions),
        get_job_store(config=config),
        get_state_store(config=config),
        config.processor,
    )
    results = asyncio.run(dispatcher.dispatch(name, data, correlation_key))
    if not results:
        typer.echo("No trigger matched")
        return
    for result in results:
        detail = result.job_id or result.instance_id or result.reason or ""
        typer.echo(f"{result.workflow}\t{result.action}\t{result.outcome}\t{detail}")


# ----------------------------------------------------------------------
# retention
@app.command("cleanup")
def cleanup(
    instance_days: Optional[int] = typer.Option(None, help="Delete terminal instances older than this"),
    job_days: Optional[int] = typer.Option(None, help="Delete terminal jobs older than this"),
    status: List[str] = typer.Option([], help="Restrict deletion to these terminal statuses"),
) -> None:
    """
    Delete terminal jobs and instances past their retention window.

    Example:
        cadence cleanup --instance-days 90 --status completed
    """
    config = load_config()
    try:
        instance_policy = RetentionPolicy(
            max_age_days=config.retention.instance_days if instance_days is None else instance_days,
            statuses=frozenset(status),
        )
        job_policy = RetentionPolicy(
            max_age_days=config.retention.job_days if job_days is None else job_days,
            statuses=frozenset(status),
        )
    except ValueError as exc:
        _fail(f"Invalid retention policy: {exc}")

    async def _purge() -> tuple[int, int]:
        instances = await get_state_store(config=config).purge(instance_policy)
        jobs = await get_job_store(config=config).purge(job_policy)
        return instances, jobs

    try:
        removed_instances, removed_jobs = asyncio.run(_purge())
    except ValueError as exc:
        _fail(str(exc))
    typer.echo(f"Removed {removed_instances} instances and {removed_jobs} jobs")


if __name__ == "__main__":
    app()
