from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Sequence

import click
from rich.console import Console
from rich.progress import Progress, SpinnerColumn, TextColumn, TimeElapsedColumn
from rich.table import Table

from .cli_errors import CLIError, ConfigError, DataError, handle_cli_errors
from .config import AppSettings
from .domain_filter import DomainFilter
from .logging_config import setup_logging
from .models import PipelineState, ProxyStatus, RunResult, SearchQuery
from .orchestrator import Orchestrator
from .parsers import load_proxy_file
from .proxy_pool import ProxyPool
from .stages import ApiCallerStage, ParserStage, ScraperStage, StageExecutors
from .storage import ProxyStore
from .testers import ProxyTester

console = Console()
config = AppSettings()

DEFAULT_STORE = "data/proxies.json"


@click.group()
@click.version_option(version="1.0.0")
@click.option("--log-file", type=click.Path(dir_okay=False), default=None)
def cli(log_file: str | None) -> None:
    """
    ScrapeStream: proxy-rotating search and scrape pipeline.
    """
    setup_logging(config.LOG_LEVEL, config.MASK_SENSITIVE_DATA, log_file=log_file)


def _load_pool(store: ProxyStore) -> ProxyPool:
    return ProxyPool(store.load(), settings=config)


def _display_result(result: RunResult) -> None:
    colour = "green" if result.final_state is PipelineState.COMPLETED else "red"
    console.print(f"\n[{colour}]Run {result.run_id}: {result.final_state.value}[/{colour}]")
    console.print(f"- {result.description}")
    if result.cause:
        console.print(f"- Cause: {result.cause}")
    stats = result.stats
    console.print(f"- Rounds: {stats.rounds}")
    console.print(f"- Pages scraped: {stats.pages_scraped}")
    console.print(f"- Blocked URLs: {stats.blocked_urls}")
    console.print(f"- Errors: {stats.errors_count}")
    console.print(f"- Duration: {stats.duration_formatted()}")


async def _run_logic_async(
    sentence: str,
    target: int,
    description: str,
    api_keys: Sequence[str],
    engine_id: str,
    store_path: str,
    links_output: str | None,
) -> RunResult:
    store = ProxyStore(Path(store_path))
    pool = _load_pool(store)
    if len(pool) == 0:
        raise ConfigError(f"No proxies in {store_path}; run 'import-proxies' first")

    executors = StageExecutors(
        api_caller=ApiCallerStage(api_keys, engine_id, settings=config),
        scraper=ScraperStage(DomainFilter()),
        parser=ParserStage(),
    )
    orchestrator = Orchestrator(pool, executors, settings=config)
    query = SearchQuery(sentence=sentence, target_link_count=target, description=description)

    run_id = orchestrator.start(query)
    try:
        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            TimeElapsedColumn(),
            console=console,
        ) as progress:
            task_id = progress.add_task("Starting", total=target)
            waiter = asyncio.ensure_future(orchestrator.wait(run_id))
            while not waiter.done():
                status = orchestrator.status(run_id)
                progress.update(
                    task_id,
                    completed=min(target, status.get("link_count", 0)),
                    description=f"{status.get('stage', 'DONE')} ({status['state']})",
                )
                await asyncio.wait({waiter}, timeout=0.25)
            result = waiter.result()
    finally:
        await orchestrator.shutdown()
        store.save(pool.records())

    if links_output:
        Path(links_output).write_text("\n".join(result.links) + "\n", encoding="utf-8")
    return result


@cli.command()
@click.argument("sentence")
@click.option("--target", type=click.IntRange(min=1), default=10, show_default=True)
@click.option("--description", default="")
@click.option("--api-key", "api_keys", multiple=True, envvar="SEARCH_API_KEYS", required=True)
@click.option("--engine-id", envvar="SEARCH_ENGINE_ID", required=True)
@click.option("--store", "store_path", default=DEFAULT_STORE, type=click.Path(dir_okay=False))
@click.option("--links-output", type=click.Path(dir_okay=False), default=None)
@click.option("--json", "as_json", is_flag=True, help="Print the run result as JSON.")
@handle_cli_errors(context="Pipeline run")
def run(
    sentence: str,
    target: int,
    description: str,
    api_keys: Sequence[str],
    engine_id: str,
    store_path: str,
    links_output: str | None,
    as_json: bool,
) -> None:
    """Search for SENTENCE and scrape until TARGET links are collected."""
    result = asyncio.run(
        _run_logic_async(
            sentence, target, description, api_keys, engine_id, store_path, links_output
        )
    )
    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2))
    else:
        _display_result(result)

    if result.final_state is not PipelineState.COMPLETED:
        raise CLIError(
            f"Run ended {result.final_state.value} with "
            f"{result.collected_link_count}/{target} links (cause: {result.cause})"
        )


@cli.command("import-proxies")
@click.argument("proxy_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--store", "store_path", default=DEFAULT_STORE, type=click.Path(dir_okay=False))
@handle_cli_errors(context="Proxy import")
def import_proxies(proxy_file: str, store_path: str) -> None:
    """Import proxies (URLs, share links or host:port lines) from PROXY_FILE."""
    parsed = load_proxy_file(proxy_file)
    if not parsed:
        raise DataError(f"No valid proxies found in {proxy_file}")

    store = ProxyStore(Path(store_path))
    pool = _load_pool(store)
    before = len(pool)
    for record in parsed:
        pool.add(record)
    imported = len(pool) - before
    store.save(pool.records())
    click.echo(f"Imported {imported} proxies ({len(parsed) - imported} already present)")


@cli.command()
@click.option("--store", "store_path", default=DEFAULT_STORE, type=click.Path(dir_okay=False))
@click.option("--json", "as_json", is_flag=True, help="Print health snapshots as JSON.")
@handle_cli_errors(context="Proxy listing")
def proxies(store_path: str, as_json: bool) -> None:
    """Show proxy health."""
    pool = _load_pool(ProxyStore(Path(store_path)))
    snapshots = pool.snapshot()
    if as_json:
        click.echo(json.dumps(snapshots, indent=2))
        return
    if not snapshots:
        click.echo("No proxies in store.")
        return

    records = {record.id: record for record in pool.records()}
    table = Table(title=f"Proxies ({len(snapshots)})")
    for column in ("Proxy", "Status", "Score", "OK", "Fail", "Avg ms", "Last used"):
        table.add_column(column)
    for snap in snapshots:
        avg = snap["avg_response_time_ms"]
        table.add_row(
            records[snap["id"]].display_name(),
            snap["status"],
            f"{pool.score(snap['id']):.3f}",
            str(snap["success_count"]),
            str(snap["failure_count"]),
            f"{avg:.0f}" if avg is not None else "-",
            snap["last_used_at"] or "-",
        )
    console.print(table)


@cli.command("test-proxies")
@click.option("--store", "store_path", default=DEFAULT_STORE, type=click.Path(dir_okay=False))
@click.option(
    "--which",
    type=click.Choice(["untested", "active", "all"]),
    default="untested",
    show_default=True,
    help="Untested proxies, proxies in rotation, or both.",
)
@click.option("--test-url", default=None, help="Endpoint every proxy must reach.")
@handle_cli_errors(context="Proxy testing")
def check_proxies(store_path: str, which: str, test_url: str | None) -> None:
    """Test proxies and record the results in the store."""
    store = ProxyStore(Path(store_path))
    pool = _load_pool(store)
    if len(pool) == 0:
        raise ConfigError(f"No proxies in {store_path}; run 'import-proxies' first")

    tester = ProxyTester(pool, settings=config, test_url=test_url)

    async def _test_all() -> list:
        results = []
        if which in ("untested", "all"):
            results += await tester.test_untested()
        if which in ("active", "all"):
            results += await tester.test_active()
        return results

    try:
        results = asyncio.run(_test_all())
    finally:
        store.save(pool.records())

    working = sum(1 for snap in results if snap["status"] == ProxyStatus.HEALTHY.value)
    click.echo(f"Tested {len(results)} proxies: {working} healthy")


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
