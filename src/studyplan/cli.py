"""CLI for studyplan: run the scheduling agent, price tokens, migrate."""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from decimal import Decimal, InvalidOperation
from pathlib import Path

import click
import pydantic

from studyplan.calendar.store import PostgresEventStore
from studyplan.config import ConfigError, PlannerConfig, load_config
from studyplan.core.cost import adjusted_token_count, baseline_equivalent_cost, cost_ratio
from studyplan.core.logging import configure_logging
from studyplan.core.metrics import init_metrics
from studyplan.core.mode import is_agent_mode_enabled
from studyplan.core.pricing import PricingConfig, PricingError, load_pricing
from studyplan.core.telemetry import init_telemetry
from studyplan.db import DatabaseSettings, ensure_database, open_pool
from studyplan.errors import AgentRunFailed, PricingComputationError
from studyplan.migrations import run_migrations
from studyplan.models import PlanResult, SchedulingRequest
from studyplan.planner import PlanOutcome, generate_study_plan

logger = logging.getLogger(__name__)


def _load(config_path: Path | None) -> tuple[PlannerConfig, PricingConfig]:
    try:
        config = load_config(config_path)
        pricing = load_pricing(config.pricing_path)
    except (ConfigError, PricingError) as exc:
        click.echo(f"Configuration error: {exc}", err=True)
        sys.exit(1)
    log_root = Path(config.logging.log_root) if config.logging.log_root else None
    configure_logging(level=config.logging.level, fmt=config.logging.format, log_root=log_root)
    return config, pricing


_config_option = click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="Path to studyplan.toml (default: ./studyplan.toml if present)",
)


@click.group()
@click.version_option(version="0.1.0")
def cli() -> None:
    """studyplan: conflict-aware study session scheduling agent."""


@cli.command()
@click.argument("request_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@_config_option
@click.option("--tier", default=None, help="Subscription tier used to pick the model")
@click.option(
    "--auto",
    "auto_mode",
    is_flag=True,
    help="Use the agent only when the calendar is busy enough (default: always use the agent)",
)
def plan(request_file: Path, config_path: Path | None, tier: str | None, auto_mode: bool) -> None:
    """Schedule the sessions described by REQUEST_FILE (JSON).

    With --auto, the agent still runs when the request itself sets
    ``"use_agent_mode": true``.
    """
    config, pricing = _load(config_path)
    try:
        raw = json.loads(request_file.read_text())
        request = SchedulingRequest.model_validate(raw)
    except (json.JSONDecodeError, pydantic.ValidationError) as exc:
        click.echo(f"Invalid request in {request_file}:\n{exc}", err=True)
        sys.exit(1)
    use_agent_mode = not auto_mode or is_agent_mode_enabled(raw)

    init_telemetry()
    init_metrics()
    try:
        outcome = asyncio.run(_plan(config, pricing, request, tier, use_agent_mode))
    except AgentRunFailed as exc:
        click.echo(f"Agent run failed: {exc.cause}", err=True)
        _echo_result(exc.result)
        sys.exit(2)
    except (ConfigError, ValueError) as exc:
        click.echo(str(exc), err=True)
        sys.exit(1)

    click.echo(f"Mode: {outcome.mode} ({outcome.existing_event_count} existing events)")
    click.echo(f"Model: {outcome.model} ({outcome.provider})")
    _echo_result(outcome.result)


async def _plan(
    config: PlannerConfig,
    pricing: PricingConfig,
    request: SchedulingRequest,
    tier: str | None,
    use_agent_mode: bool,
) -> PlanOutcome:
    settings = DatabaseSettings.from_env(config.database.name)
    async with open_pool(
        settings,
        min_size=config.database.min_pool_size,
        max_size=config.database.max_pool_size,
    ) as pool:
        return await generate_study_plan(
            request,
            store=PostgresEventStore(pool),
            pricing=pricing,
            config=config,
            pool=pool,
            use_agent_mode=use_agent_mode,
            tier=tier,
        )


def _echo_result(result: PlanResult) -> None:
    click.echo(f"State: {result.state} (completed={result.completed})")
    click.echo(f"Reasoning steps: {result.reasoning_steps}")
    for session in result.scheduled_sessions:
        click.echo(
            f"  {session.date} {session.start_time:%H:%M}-{session.end_time:%H:%M}  {session.title}"
        )
    usage = result.token_usage
    click.echo(
        f"Tokens: {usage.prompt_tokens} prompt + {usage.completion_tokens} completion, "
        f"{usage.cost_adjusted_tokens} adjusted, cost ${result.cost_usd}"
    )


@cli.command()
@click.argument("model")
@click.argument("prompt_tokens", type=click.IntRange(min=0))
@click.argument("completion_tokens", type=click.IntRange(min=0))
@click.option("--cost", "actual_cost", default=None, help="Actual USD cost (default: from table)")
@_config_option
@click.option("--json", "as_json", is_flag=True, help="Print the result as JSON")
def price(
    model: str,
    prompt_tokens: int,
    completion_tokens: int,
    actual_cost: str | None,
    config_path: Path | None,
    as_json: bool,
) -> None:
    """Show the baseline-equivalent token count for a request."""
    _, pricing = _load(config_path)
    try:
        if actual_cost is not None:
            cost = Decimal(actual_cost)
        else:
            estimated = pricing.estimate_cost(model, prompt_tokens, completion_tokens)
            if estimated is None:
                click.echo(f"Model {model!r} is not in the pricing table; pass --cost", err=True)
                sys.exit(1)
            cost = estimated
        baseline = baseline_equivalent_cost(prompt_tokens, completion_tokens, pricing.baseline)
        ratio = cost_ratio(cost, baseline)
        adjusted = adjusted_token_count(prompt_tokens, completion_tokens, cost, pricing.baseline)
    except InvalidOperation:
        click.echo(f"Invalid --cost value: {actual_cost!r}", err=True)
        sys.exit(1)
    except PricingComputationError as exc:
        click.echo(str(exc), err=True)
        sys.exit(1)

    if as_json:
        payload = {
            "model": model,
            "baseline_model": pricing.baseline_model,
            "prompt_tokens": prompt_tokens,
            "completion_tokens": completion_tokens,
            "actual_cost_usd": str(cost),
            "baseline_equivalent_cost_usd": str(baseline),
            "cost_ratio": str(ratio),
            "adjusted_token_count": adjusted,
        }
        click.echo(json.dumps(payload, indent=2))
        return
    click.echo(f"Baseline model:   {pricing.baseline_model}")
    click.echo(f"Actual cost:      ${cost}")
    click.echo(f"Baseline cost:    ${baseline}")
    click.echo(f"Cost ratio:       {ratio}")
    click.echo(f"Adjusted tokens:  {adjusted} (raw {prompt_tokens + completion_tokens})")


@cli.command("models")
@_config_option
def models_cmd(config_path: Path | None) -> None:
    """List priced models (USD per 1M tokens)."""
    _, pricing = _load(config_path)
    click.echo(f"{'MODEL':<32} {'PROVIDER':<10} {'INPUT':>8} {'OUTPUT':>8}")
    for model_id in pricing.model_ids:
        entry = pricing.get_model_pricing(model_id)
        assert entry is not None
        marker = " *" if model_id == pricing.baseline_model else ""
        click.echo(
            f"{model_id:<32} {entry.provider or '-':<10} "
            f"{entry.input_price_per_mtok:>8} {entry.output_price_per_mtok:>8}{marker}"
        )


@cli.command()
@_config_option
def migrate(config_path: Path | None) -> None:
    """Create the database if needed and upgrade it to the latest schema."""
    config, _ = _load(config_path)
    settings = DatabaseSettings.from_env(config.database.name)
    asyncio.run(_migrate(settings))
    click.echo(f"Database {settings.name} is up to date")


async def _migrate(settings: DatabaseSettings) -> None:
    await ensure_database(settings)
    await run_migrations(settings.dsn)


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
