"""Command-line interface for the scraping engine."""

from __future__ import annotations

import asyncio
import json
import sys
import time
from dataclasses import replace
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple
from uuid import uuid4

import click
import structlog
import yaml
from pydantic import ValidationError
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from techtransfer_scraper import __version__
from techtransfer_scraper.config import Config
from techtransfer_scraper.container import DependencyContainer
from techtransfer_scraper.observability import configure_logging
from techtransfer_scraper.orchestrator import ScraperOrchestrator, cpu_load_factor
from techtransfer_scraper.protocols import (
    EngineType,
    ErrorKind,
    InstitutionType,
    Job,
    PaginationConfig,
    ScrapeConfig,
)
from techtransfer_scraper.queue import AmqpBroker, InMemoryBroker, JobMessage, JobQueueConsumer
from techtransfer_scraper.recovery import DeadLetterArchive
from techtransfer_scraper.sinks import MemoryResultSink

console = Console()
logger = structlog.get_logger(__name__)

_INSTITUTION_CHOICE = click.Choice([t.value for t in InstitutionType], case_sensitive=False)


def load_config(config_path: Optional[Path], log_level: Optional[str] = None) -> Config:
    """Read the configuration and set up logging from it."""
    config = Config.from_yaml(config_path) if config_path else Config()
    if log_level:
        config = config.model_copy(
            update={"monitoring": config.monitoring.model_copy(update={"log_level": log_level})}
        )
    configure_logging(config.monitoring)
    return config


def parse_pairs(values: Sequence[str], option: str) -> Dict[str, str]:
    """``name=value`` option values to a dict."""
    pairs: Dict[str, str] = {}
    for value in values:
        name, sep, rest = value.partition("=")
        if not sep or not name.strip():
            raise click.BadParameter(f"expected name=value, got {value!r}", param_hint=option)
        pairs[name.strip()] = rest.strip()
    return pairs


async def scrape_once(config: Config, job: Job, timeout: float) -> Tuple[MemoryResultSink, InMemoryBroker, bool]:
    """
    Run one job (with its retries and deferred pages) through an in-process
    broker and wait until everything it spawned has settled.

    Returns the sink, the broker and whether it settled before ``timeout``.
    """
    broker = InMemoryBroker(config.queue)
    sink = MemoryResultSink()
    orchestrator = ScraperOrchestrator(config, broker, sink=sink, archive=None, load_probe=cpu_load_factor)
    consumer = JobQueueConsumer(
        broker,
        orchestrator,
        config.queue,
        institution_types=[job.institution_type],
        shutdown_grace=config.orchestrator.shutdown_grace_seconds,
    )

    await broker.connect()
    await orchestrator.start()
    await consumer.start()
    settled = False
    try:
        await broker.publish(job)
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            await asyncio.sleep(0.05)
            if not broker.pending() and not broker.scheduled and not broker.in_flight and not consumer.busy:
                settled = True
                break
    finally:
        await consumer.stop(grace=0)
        await broker.close()
        await orchestrator.shutdown()
    return sink, broker, settled


@click.group()
@click.version_option(version=__version__)
@click.option("--config", "-c", type=click.Path(exists=True, dir_okay=False), help="Configuration file path")
@click.option(
    "--log-level",
    default=None,
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"]),
    help="Logging level (overrides the configuration)",
)
@click.pass_context
def cli(ctx: click.Context, config: Optional[str], log_level: Optional[str]) -> None:
    """Distributed scraping engine for technology-transfer listings."""
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = Path(config) if config else None
    ctx.obj["log_level"] = log_level


@cli.command()
@click.option(
    "--institution-type",
    "-t",
    "institution_types",
    multiple=True,
    type=_INSTITUTION_CHOICE,
    help="Only consume these institution classes (repeatable); all by default",
)
@click.pass_context
def consume(ctx: click.Context, institution_types: Tuple[str, ...]) -> None:
    """Consume jobs from the broker until SIGINT or SIGTERM."""
    config = load_config(ctx.obj["config_path"], ctx.obj["log_level"])
    types = [InstitutionType(t.upper()) for t in institution_types] or list(InstitutionType)

    async def run_consumer() -> None:
        container = DependencyContainer(ctx.obj["config_path"], config=config, institution_types=types)
        async with container.lifecycle(install_signal_handlers=True):
            console.print(
                Panel.fit(
                    f"[bold blue]Consuming[/bold blue]\n"
                    f"Broker: {config.queue.url.rsplit('@', 1)[-1]}\n"
                    f"Queues: {', '.join(config.queue.for_institution(t).name for t in types)}",
                    title="TechTransfer Scraper",
                )
            )
            await container.run_consumer()
            orchestrator = await container.get_orchestrator()
            stats = orchestrator.get_stats()["jobs"]
        console.print(f"[green]Stopped.[/green] Jobs settled: {json.dumps(stats)}")

    asyncio.run(run_consumer())


@cli.command()
@click.argument("url")
@click.option("--institution-type", "-t", default=InstitutionType.US_UNIVERSITY.value, type=_INSTITUTION_CHOICE)
@click.option("--selector", "-s", "selectors", multiple=True, help="Field selector as name=css (repeatable)")
@click.option("--engine", "-e", type=click.Choice([e.value for e in EngineType]), help="Engine to use")
@click.option("--header", "-H", "headers", multiple=True, help="Request header as Name=value (repeatable)")
@click.option("--institution-id", help="Institution id used as the rate-limit key")
@click.option("--max-retries", default=3, show_default=True, type=click.IntRange(min=0))
@click.option("--no-pagination", is_flag=True, help="Fetch only the given page")
@click.option("--timeout", default=120.0, show_default=True, help="Seconds to wait for the job to settle")
@click.option("--json", "as_json", is_flag=True, help="Print results as JSON")
@click.pass_context
def scrape(
    ctx: click.Context,
    url: str,
    institution_type: str,
    selectors: Tuple[str, ...],
    engine: Optional[str],
    headers: Tuple[str, ...],
    institution_id: Optional[str],
    max_retries: int,
    no_pagination: bool,
    timeout: float,
    as_json: bool,
) -> None:
    """Run a single job in-process and print what it extracted."""
    config = load_config(ctx.obj["config_path"], ctx.obj["log_level"])
    job = Job(
        id=f"cli-{uuid4().hex[:12]}",
        url=url,
        institution_type=InstitutionType(institution_type.upper()),
        config=ScrapeConfig(
            selectors=parse_pairs(selectors, "--selector"),
            headers=parse_pairs(headers, "--header"),
            pagination=PaginationConfig(enabled=not no_pagination),
        ),
        engine_hint=EngineType(engine) if engine else None,
        retry_config=replace(config.retry.to_config(), max_retries=max_retries),
        institution_id=institution_id,
    )

    sink, broker, settled = asyncio.run(scrape_once(config, job, timeout))

    if as_json:
        payload = {
            "results": [
                {
                    "job_id": r.job_id,
                    "url": r.url,
                    "success": r.success,
                    "fields": dict(r.extracted_fields),
                    "items": [dict(i) for i in r.items],
                    "metadata": dict(r.metadata),
                    "validation_errors": [e.message for e in r.validation_result.errors],
                }
                for r in sink.results
            ],
            "errors": [e.to_dict() for e in sink.errors],
            "settled": settled,
        }
        click.echo(json.dumps(payload, indent=2, default=str))
    else:
        _print_results(sink)
        if not settled:
            console.print(f"[yellow]Timed out after {timeout:.0f}s; {broker.get_stats()}[/yellow]")

    if sink.errors or not settled:
        sys.exit(1)


def _print_results(sink: MemoryResultSink) -> None:
    for result in sink.results:
        table = Table(title=f"{result.url} ({result.job_id})")
        table.add_column("Field", style="cyan")
        table.add_column("Value", style="magenta")
        for name, value in result.extracted_fields.items():
            table.add_row(name, value if isinstance(value, str) else json.dumps(value, default=str))
        for issue in result.validation_result.errors:
            table.add_row(f"[red]{issue.field}[/red]", f"[red]{issue.message}[/red]")
        if result.deferred_pages:
            table.add_row("deferred pages", ", ".join(str(p.page_number) for p in result.deferred_pages))
        console.print(table)

    for error in sink.errors:
        console.print(
            Panel(
                f"{error.message}\n\n" + "\n".join(f"- {s}" for s in error.recovery_suggestions),
                title=f"{error.kind.value} ({error.job_id})",
                border_style="red",
            )
        )


@cli.command()
@click.argument("jobs_file", type=click.File("r"))
@click.pass_context
def submit(ctx: click.Context, jobs_file: Any) -> None:
    """Publish jobs (one JSON message per line) to the broker."""
    config = load_config(ctx.obj["config_path"], ctx.obj["log_level"])
    messages: List[JobMessage] = []
    for lineno, line in enumerate(jobs_file, start=1):
        if not line.strip():
            continue
        try:
            messages.append(JobMessage.model_validate_json(line))
        except ValidationError as e:
            console.print(f"[red]Line {lineno}: invalid job message[/red]\n{e}")
            sys.exit(1)

    async def publish_all() -> None:
        broker = AmqpBroker(config.queue)
        await broker.connect()
        try:
            for message in messages:
                await broker.publish(message.to_job())
        finally:
            await broker.close()

    asyncio.run(publish_all())
    console.print(f"[green]Published {len(messages)} job(s)[/green]")


@cli.command("validate-config")
@click.pass_context
def validate_config(ctx: click.Context) -> None:
    """Validate the configuration file and print the effective settings."""
    config_path: Optional[Path] = ctx.obj["config_path"]
    try:
        config = Config.from_yaml(config_path) if config_path else Config()
    except (ValidationError, FileNotFoundError, yaml.YAMLError) as e:
        console.print(f"[red]Configuration is invalid:[/red]\n{e}")
        sys.exit(1)

    table = Table(title=f"Configuration ({config_path or 'defaults'})")
    table.add_column("Section", style="cyan")
    table.add_column("Value", style="magenta")
    table.add_row("queue.url", config.queue.url.rsplit("@", 1)[-1])
    for institution_type in InstitutionType:
        limits = config.rate_limits.for_institution(institution_type, "")
        queue = config.queue.for_institution(institution_type)
        table.add_row(
            institution_type.value,
            f"{limits.requests_per_second} rps, burst {limits.burst_limit}, "
            f"cooldown {limits.cooldown_period}s; queue {queue.name} x{queue.concurrency}; "
            f"engine {config.engine_defaults.for_institution(institution_type).value}",
        )
    table.add_row("retry", f"max {config.retry.max_retries}, {config.retry.initial_delay}-{config.retry.max_delay}s")
    table.add_row(
        "circuit_breaker",
        f"{config.circuit_breaker.error_threshold_percentage}% over {config.circuit_breaker.rolling_window_seconds}s",
    )
    table.add_row("dead_letter_db_path", str(config.orchestrator.dead_letter_db_path))
    console.print(table)
    console.print("[green]Configuration is valid.[/green]")


@cli.group()
def dlq() -> None:
    """Inspect the local dead-letter archive."""


def _open_archive(ctx: click.Context) -> DeadLetterArchive:
    config = load_config(ctx.obj["config_path"], ctx.obj["log_level"])
    if config.orchestrator.dead_letter_db_path is None:
        console.print("[yellow]The dead-letter archive is disabled in this configuration.[/yellow]")
        sys.exit(1)
    return DeadLetterArchive(config.orchestrator.dead_letter_db_path)


@dlq.command("stats")
@click.pass_context
def dlq_stats(ctx: click.Context) -> None:
    """Failure counts by error kind and institution type."""
    archive = _open_archive(ctx)

    async def stats() -> Dict[str, Any]:
        await archive.initialize()
        try:
            return await archive.get_failure_statistics()
        finally:
            await archive.close()

    result = asyncio.run(stats())
    table = Table(title="Dead-letter archive")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", style="magenta")
    table.add_row("total_failures", str(result["total_failures"]))
    table.add_row("average_attempts", f"{result.get('average_attempts', 0):.2f}")
    for kind, count in sorted(result["failures_by_kind"].items()):
        table.add_row(f"kind.{kind}", str(count))
    for institution_type, count in sorted(result["failures_by_institution_type"].items()):
        table.add_row(f"institution.{institution_type}", str(count))
    console.print(table)


@dlq.command("list")
@click.option("--kind", type=click.Choice([k.value for k in ErrorKind]), help="Only this error kind")
@click.option("--limit", default=20, show_default=True, type=click.IntRange(min=1))
@click.option("--json", "as_json", is_flag=True, help="Print entries as JSON")
@click.pass_context
def dlq_list(ctx: click.Context, kind: Optional[str], limit: int, as_json: bool) -> None:
    """Most recent dead-lettered jobs."""
    archive = _open_archive(ctx)

    async def list_failed() -> List[Any]:
        await archive.initialize()
        try:
            return await archive.list_failed(ErrorKind(kind) if kind else None, limit)
        finally:
            await archive.close()

    failed = asyncio.run(list_failed())
    if as_json:
        click.echo(json.dumps([f.to_dict() for f in failed], indent=2, default=str))
        return

    table = Table(title=f"Dead-lettered jobs ({len(failed)})")
    table.add_column("Job", style="cyan")
    table.add_column("Kind", style="red")
    table.add_column("Attempts")
    table.add_column("Last failure")
    table.add_column("URL")
    for entry in failed:
        table.add_row(
            entry.job_id,
            entry.error_kind.value,
            str(entry.attempts),
            entry.last_failure_time.isoformat(timespec="seconds"),
            entry.url,
        )
    console.print(table)


@dlq.command("purge")
@click.option("--older-than", "days", required=True, type=click.IntRange(min=0), help="Age in days")
@click.pass_context
def dlq_purge(ctx: click.Context, days: int) -> None:
    """Delete archive entries older than the given age."""
    archive = _open_archive(ctx)

    async def purge() -> int:
        await archive.initialize()
        try:
            return await archive.purge_older_than(days)
        finally:
            await archive.close()

    console.print(f"[green]Deleted {asyncio.run(purge())} entr(ies)[/green]")


def main() -> None:
    """Main entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
