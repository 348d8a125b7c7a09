import asyncio
import logging
from datetime import datetime
from pathlib import Path
from typing import Annotated

import httpx
import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from batchrelay.api import create_orchestrator
from batchrelay.cli.callbacks import load_file_callback, provider_callback
from batchrelay.exceptions import BatchError
from batchrelay.models import BatchJob, BatchResult, BatchWaitOptions, batch_request_list_adapter
from batchrelay.utils.files import read_jsonl_file, write_jsonl_file
from batchrelay.utils.logging import setup_logging

app = typer.Typer(no_args_is_help=True)
console = Console()

ProviderOption = Annotated[
    str,
    typer.Option("-p", "--provider", help="The batch provider", callback=provider_callback),
]
OptionalProviderOption = Annotated[
    str | None,
    typer.Option(
        "-p",
        "--provider",
        help="The batch provider, defaults to the first configured one",
        callback=provider_callback,
    ),
]
JobIdArgument = Annotated[str, typer.Argument(help="The provider batch id")]
OutputOption = Annotated[
    Path | None,
    typer.Option("-o", "--output", help="Write results to this JSONL file"),
]
PollIntervalOption = Annotated[
    float,
    typer.Option(
        "--poll-interval", help="Initial poll interval in seconds", rich_help_panel="Polling"
    ),
]
MaxPollIntervalOption = Annotated[
    float,
    typer.Option(
        "--max-poll-interval", help="Poll interval cap in seconds", rich_help_panel="Polling"
    ),
]
TimeoutOption = Annotated[
    float,
    typer.Option(
        "--timeout", help="Give up and cancel after this many seconds", rich_help_panel="Polling"
    ),
]


@app.callback()
def main(
    verbose: Annotated[bool, typer.Option("-v", "--verbose", help="Enable debug logging")] = False,
):
    """Submit and track LLM batch jobs"""
    setup_logging(level=logging.DEBUG if verbose else logging.INFO)


def print_job(job: BatchJob):
    job_dict = {
        "Provider": job.provider_name,
        "Batch ID": job.provider_job_id,
        "Status": f"[green]{job.status}[/green]",
        "Requests": f"{job.completed_requests} completed, {job.failed_requests} failed, "
        f"{job.total_requests} total",
        "Submitted At": datetime.strftime(job.submitted_at, "%Y-%m-%d %H:%M:%S"),
        "Completed At": datetime.strftime(job.completed_at, "%Y-%m-%d %H:%M:%S")
        if job.completed_at
        else None,
    }
    if job.metadata:
        job_dict["Metadata"] = ", ".join(f"{key}={value}" for key, value in job.metadata.items())
    values = "\n".join([f"{key}: {value}" for key, value in job_dict.items() if value is not None])
    console.print(Panel(values, title=job.provider_job_id, expand=False, highlight=True))


def print_results(results: list[BatchResult], output: Path | None):
    if output is not None:
        write_jsonl_file(output, [result.model_dump(exclude_none=True) for result in results])
        succeeded = sum(result.success for result in results)
        console.print(
            f"Wrote {len(results)} results ({succeeded} succeeded) "
            f"to [green]{output.as_posix()}[/green]"
        )
        return
    table = Table("Correlation ID", "Success", "Content / Error", title="Results")
    for result in results:
        table.add_row(
            result.correlation_id,
            "yes" if result.success else "[red]no[/red]",
            result.content if result.success else result.error,
        )
    console.print(table)


def run(coro):
    try:
        return asyncio.run(coro)
    except (BatchError, httpx.HTTPError, ValueError) as error:
        console.print(f"[red]{type(error).__name__}[/red]: {error}")
        raise typer.Exit(1)


@app.command(name="submit")
def submit_batch(
    requests_file: Annotated[
        Path,
        typer.Argument(
            help="JSONL file with one request per line", callback=load_file_callback
        ),
    ],
    provider: OptionalProviderOption = None,
    model: Annotated[
        str | None, typer.Option("-m", "--model", help="Model for requests that set none")
    ] = None,
    wait: Annotated[
        bool, typer.Option("--wait/--no-wait", help="Wait for results after submitting")
    ] = False,
    output: OutputOption = None,
    poll_interval: PollIntervalOption = 30.0,
    max_poll_interval: MaxPollIntervalOption = 720.0,
    timeout: TimeoutOption = 3600.0,
):
    """Submit a batch of requests"""
    if output is not None and not wait:
        raise typer.BadParameter(message="--output requires --wait", param_hint="--output")
    try:
        requests = batch_request_list_adapter.validate_python(read_jsonl_file(requests_file))
        options = BatchWaitOptions(
            provider=provider,
            model=model,
            poll_interval_seconds=poll_interval,
            max_poll_interval_seconds=max_poll_interval,
            timeout_seconds=timeout,
            on_progress=print_job,
        )
    except ValueError as error:
        raise typer.BadParameter(message=str(error), param_hint="REQUESTS_FILE")
    orchestrator = create_orchestrator()
    if not wait:
        job = run(orchestrator.submit_batch(requests, options))
        print_job(job)
        return
    results = run(orchestrator.submit_and_wait(requests, options))
    print_results(results, output)


@app.command(name="status")
def get_status(provider_job_id: JobIdArgument, provider: ProviderOption):
    """Get the status of a batch"""
    job = run(create_orchestrator().get_batch_status(provider_job_id, provider))
    print_job(job)


@app.command(name="results")
def get_results(
    provider_job_id: JobIdArgument, provider: ProviderOption, output: OutputOption = None
):
    """Download the results of a finished batch"""
    results = run(create_orchestrator().get_batch_results(provider_job_id, provider))
    print_results(results, output)


@app.command(name="cancel")
def cancel_batch(provider_job_id: JobIdArgument, provider: ProviderOption):
    """Ask the provider to cancel a batch"""
    run(create_orchestrator().cancel_batch(provider_job_id, provider))
    console.print(f"Cancellation requested for batch [green]{provider_job_id}[/green]")


@app.command(name="wait")
def wait_for_batch(
    provider_job_id: JobIdArgument,
    provider: ProviderOption,
    output: OutputOption = None,
    poll_interval: PollIntervalOption = 30.0,
    max_poll_interval: MaxPollIntervalOption = 720.0,
    timeout: TimeoutOption = 3600.0,
):
    """Resume waiting on a submitted batch and collect its results"""
    options = BatchWaitOptions(
        poll_interval_seconds=poll_interval,
        max_poll_interval_seconds=max_poll_interval,
        timeout_seconds=timeout,
        on_progress=print_job,
    )
    results = run(create_orchestrator().wait_for_batch(provider_job_id, provider, options))
    print_results(results, output)
