"""Typer CLI for the Keepa catalog harvester."""

from __future__ import annotations

import dataclasses
import json
from pathlib import Path
from typing import Annotated, Any

import httpx
import typer

from catalog_fetch.budget import TokenBudget
from catalog_fetch.harvester import build_cache, build_detail_fetcher, build_harvester
from catalog_fetch.keepa_client import (
    KeepaAuthError,
    KeepaInputError,
    build_keepa_client,
    fetch_token_status,
    get_keepa_api_key_with_source,
    validate_asin,
)
from catalog_fetch.logging_setup import setup_logging
from catalog_fetch.pipeline import ConcurrentFetchPipeline
from catalog_fetch.planner import BatchPlanner
from catalog_fetch.report import render_markdown_summary, write_harvest_artifact
from catalog_fetch.retry import RetryController, UpstreamError
from catalog_fetch.settings import HarvestSettings, load_settings, parse_categories

app = typer.Typer(help="Token-budgeted Keepa catalog harvester.")

LogLevelOption = Annotated[str, typer.Option(help="Log level: DEBUG|INFO|WARNING|ERROR.")]
LogFormatOption = Annotated[str, typer.Option(help="Log format: text|json.")]
TrustEnvOption = Annotated[
    bool,
    typer.Option(
        "--trust-env/--no-trust-env",
        help="Use proxy/SSL environment variables from the current shell.",
    ),
]


def parse_selection(value: str) -> dict[str, Any]:
    """Parse a product finder selection from inline JSON or ``@path``."""
    raw = value
    if value.startswith("@"):
        path = Path(value[1:])
        try:
            raw = path.read_text(encoding="utf-8")
        except OSError as error:
            raise KeepaInputError(f"Cannot read selection file '{path}': {error}") from error
    try:
        selection = json.loads(raw)
    except json.JSONDecodeError as error:
        raise KeepaInputError(f"Selection is not valid JSON: {error}") from error
    if not isinstance(selection, dict):
        raise KeepaInputError("Selection must be a JSON object.")
    return selection


def _load_settings_or_exit(**overrides: Any) -> HarvestSettings:
    try:
        settings = load_settings()
    except ValueError as error:
        typer.echo(f"Configuration error: {error}")
        raise typer.Exit(code=1) from error
    applied = {name: value for name, value in overrides.items() if value is not None}
    return dataclasses.replace(settings, **applied)


@app.command("harvest")
def harvest_command(
    selection: Annotated[
        str, typer.Option(help="Product finder selection as JSON, or @path to a JSON file.")
    ] = "{}",
    category: Annotated[
        list[str] | None,
        typer.Option(help="Root category id; repeat to override KEEPA_CATEGORY."),
    ] = None,
    page_size: Annotated[
        int | None, typer.Option(help="Requested product finder page size.", min=1)
    ] = None,
    concurrency: Annotated[
        int | None, typer.Option(help="Maximum concurrent detail fetches.", min=1)
    ] = None,
    no_cache: Annotated[bool, typer.Option("--no-cache", help="Bypass the Redis cache.")] = False,
    no_persist: Annotated[
        bool, typer.Option("--no-persist", help="Skip writing documents to the store.")
    ] = False,
    output_dir: Annotated[
        Path | None, typer.Option(help="Write a JSON harvest artifact to this directory.")
    ] = None,
    log_level: LogLevelOption = "INFO",
    log_format: LogFormatOption = "text",
    trust_env: TrustEnvOption = True,
) -> None:
    """Run a selection across root categories and persist the simplified products."""
    try:
        setup_logging(log_level, log_format)
        parsed_selection = parse_selection(selection)
        categories = tuple(
            parsed for value in category or () for parsed in parse_categories(value)
        )
    except ValueError as error:
        typer.echo(f"Harvest failed: {error}")
        raise typer.Exit(code=1) from error

    settings = _load_settings_or_exit(
        categories=categories or None,
        page_size=page_size,
        max_concurrency=concurrency,
    )

    try:
        with build_keepa_client(
            timeout_seconds=settings.timeout_seconds, trust_env=trust_env
        ) as client:
            with build_harvester(
                settings,
                client,
                use_cache=settings.cache_enabled and not no_cache,
                persist=not no_persist,
            ) as harvester:
                report = harvester.run(parsed_selection)
    except KeepaAuthError as error:
        typer.echo(f"Harvest failed: {error}")
        raise typer.Exit(code=1) from error

    typer.echo(render_markdown_summary(report))
    if output_dir is not None:
        typer.echo(f"Report written to {write_harvest_artifact(report, output_dir)}")

    if report.categories and all(item.error is not None for item in report.categories):
        raise typer.Exit(code=1)


@app.command("product")
def product_command(
    asin: Annotated[str, typer.Option(help="ASIN to fetch.")],
    no_cache: Annotated[bool, typer.Option("--no-cache", help="Bypass the Redis cache.")] = False,
    log_level: LogLevelOption = "WARNING",
    trust_env: TrustEnvOption = True,
) -> None:
    """Fetch one product through the cache and print the simplified record."""
    setup_logging(log_level)
    try:
        normalized_asin = validate_asin(asin)
    except KeepaInputError as error:
        raise typer.BadParameter(str(error)) from error

    settings = _load_settings_or_exit()
    controller = RetryController(
        TokenBudget(),
        max_attempts=settings.max_attempts,
        retry_backoff_seconds=settings.retry_backoff_seconds,
    )
    try:
        with build_keepa_client(
            timeout_seconds=settings.timeout_seconds, trust_env=trust_env
        ) as client:
            pipeline = ConcurrentFetchPipeline(
                fetch_detail=build_detail_fetcher(
                    client=client,
                    controller=controller,
                    domain=settings.domain,
                    detail_options=settings.detail_options,
                ),
                cache=None if no_cache else build_cache(settings),
                max_concurrency=1,
            )
            (result,) = pipeline.run([normalized_asin])
    except KeepaAuthError as error:
        typer.echo(f"Product fetch failed: {error}")
        raise typer.Exit(code=1) from error

    if not result.ok or result.payload is None:
        typer.echo(f"Product fetch failed: {result.error_type}: {result.reason}")
        raise typer.Exit(code=1)

    typer.echo(json.dumps(result.payload.to_document(), indent=2, sort_keys=True))
    typer.echo(f"source={result.source}")
    for warning in result.warnings:
        typer.echo(f"warning: {warning}")


@app.command("plan")
def plan_command(
    tokens_left: Annotated[int, typer.Option(help="Current token balance.", min=0)],
    page_size: Annotated[int, typer.Option(help="Requested page size.", min=1)] = 50,
) -> None:
    """Show how a discovery page and its detail follow-up would be sized."""
    budget = TokenBudget(tokens_left=tokens_left)
    plan = BatchPlanner(budget).plan(page_size)
    typer.echo(f"tokens_left={plan.tokens_left}")
    typer.echo(f"discovery_page_size={plan.discovery_page_size}")
    typer.echo(f"discovery_cost={plan.discovery_cost}")
    typer.echo(f"detail_batch_size={plan.detail_batch_size}")
    typer.echo(f"estimated_detail_cost={plan.estimated_detail_cost}")


@app.command("key-check")
def key_check_command(
    timeout_seconds: Annotated[
        int, typer.Option(help="Keepa API timeout in seconds for the validation call.")
    ] = 20,
    trust_env: TrustEnvOption = True,
) -> None:
    """Validate Keepa API key setup and report the current token balance."""
    try:
        _api_key, key_source = get_keepa_api_key_with_source()
    except KeepaAuthError as error:
        typer.echo(f"Keepa key check failed: {error}")
        raise typer.Exit(code=1) from error

    typer.echo(f"API key detected in {key_source}.")

    try:
        with build_keepa_client(timeout_seconds=timeout_seconds, trust_env=trust_env) as client:
            status = fetch_token_status(client=client)
    except KeepaAuthError as error:
        typer.echo(f"Keepa key check failed: {error}")
        raise typer.Exit(code=1) from error
    except UpstreamError as error:
        typer.echo(
            f"Keepa key check failed: status={error.status_code} endpoint={error.endpoint}."
        )
        raise typer.Exit(code=1) from error
    except httpx.HTTPError as error:
        typer.echo(f"Keepa key check failed: network error ({error}).")
        raise typer.Exit(code=1) from error

    typer.echo(
        f"Tokens left: {status.tokens_left}, refill rate: {status.refill_rate}/min, "
        f"refill in {status.refill_in} ms."
    )
    typer.echo("Keepa API key setup is valid.")


if __name__ == "__main__":
    app()
