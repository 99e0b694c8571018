"""Click CLI: load, recompute, batch, trending, failing, compare, audit."""

from __future__ import annotations

import asyncio
import datetime as dt
import json
import logging
from pathlib import Path

import click

from chainpulse.config import get_settings


def _services():
    from chainpulse.chain.registry import load_default_registry
    from chainpulse.scoring.calculator import MetricsCalculator
    from chainpulse.scoring.normalizer import CrossChainNormalizer

    settings = get_settings()
    calculator = MetricsCalculator(settings.scoring)
    normalizer = CrossChainNormalizer(
        load_default_registry(), calculator, reference_chain_id=settings.reference_chain_id
    )
    return calculator, normalizer


def _pipeline(conn, calculator):
    from chainpulse.pipeline.pipeline import MetricsDataPipeline
    from chainpulse.storage.aggregates import DuckDBCounterSource

    settings = get_settings()
    source = DuckDBCounterSource(conn, window_days=settings.growth_window_days)
    return MetricsDataPipeline(conn, source, calculator, timeout=settings.recompute_timeout)


def _resolve_chain_id(chain: str | None) -> int | None:
    if chain is None:
        return None
    from chainpulse.chain.registry import load_default_registry

    profile = load_default_registry().resolve(chain)
    if profile is not None:
        return profile.chain_id
    if chain.isdigit():
        return int(chain)
    raise click.BadParameter(f"Unknown chain {chain!r}", param_hint="--chain")


def _print_entries(entries) -> None:
    if not entries:
        click.echo("No projects found.")
        return
    for e in entries:
        s = e.snapshot
        label = e.name or s.contract_address
        click.echo(
            f"{e.rank:>3}. {label:<44} chain={s.chain_id:<6} score={e.ranking_score:6.2f} "
            f"growth={s.growth_score:>3} health={s.health_score:>3} risk={s.risk_score:>3} "
            f"trend={e.trend_direction.value}"
        )


@click.group()
@click.version_option(version="1.0.0")
@click.option("--log-level", default=None, help="Override the configured log level")
def cli(log_level: str | None):
    """Chainpulse - business metrics and cross-chain rankings for on-chain projects."""
    level = (log_level or get_settings().log_level).upper()
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")


@cli.command("init-db")
def init_db():
    """Create the DuckDB tables."""
    from chainpulse.storage.database import get_connection

    settings = get_settings()
    conn = get_connection()
    click.echo(f"Initialized {settings.duckdb_path}")
    conn.close()


@cli.command()
@click.option("--transactions", "tx_csv", type=click.Path(exists=True, path_type=Path), default=None)
@click.option("--contracts", "contracts_csv", type=click.Path(exists=True, path_type=Path), default=None)
def load(tx_csv: Path | None, contracts_csv: Path | None):
    """Load ledger rows (transactions, contract profiles) from CSV files."""
    import pandas as pd

    from chainpulse.storage.database import get_connection, insert_contracts, insert_transactions

    conn = get_connection()
    if contracts_csv is not None:
        n = insert_contracts(conn, pd.read_csv(contracts_csv))
        click.echo(f"Loaded {n} contracts from {contracts_csv}")
    if tx_csv is not None:
        n = insert_transactions(conn, pd.read_csv(tx_csv))
        click.echo(f"Loaded {n} transactions from {tx_csv}")
    conn.close()


@cli.command()
def chains():
    """List configured chain profiles."""
    from chainpulse.chain.registry import load_default_registry

    for profile in load_default_registry().values():
        click.echo(
            f"{profile.chain_id:>6}  {profile.name:<14} {profile.native_token:<6} "
            f"usd={profile.token_usd_rate:<10} maturity={profile.maturity}"
        )


@cli.command()
@click.option("--contract", default=None, help="Recompute a single project")
@click.option("--wallet", default=None, help="Recompute a single wallet")
@click.option("--chain", default="1", help="Chain name or ID")
@click.option("--stale", is_flag=True, help="Recompute projects not refreshed within --stale-days")
@click.option("--stale-days", default=None, type=int, help="Age limit in days (default: stale_after_days setting)")
def recompute(contract: str | None, wallet: str | None, chain: str, stale: bool, stale_days: int | None):
    """Recompute realtime snapshots."""
    from chainpulse.pipeline.pipeline import EntityKey
    from chainpulse.storage.database import get_connection

    conn = get_connection()
    calculator, _ = _services()
    pipeline = _pipeline(conn, calculator)
    chain_id = _resolve_chain_id(chain)

    async def _run():
        results = []
        if contract:
            results.append(await pipeline.on_entity_changed(EntityKey.project(contract, chain_id)))
        if wallet:
            results.append(await pipeline.on_entity_changed(EntityKey.wallet(wallet, chain_id)))
        if stale or stale_days is not None:
            max_age = stale_days if stale_days is not None else get_settings().stale_after_days
            await pipeline.recalculate_stale(max_age)
        return results

    for snapshot in asyncio.run(_run()):
        if snapshot is None:
            click.echo("Recompute failed; previous snapshot kept.")
        else:
            click.echo(json.dumps(snapshot.model_dump(mode="json"), indent=2))

    status = pipeline.status()
    click.echo(f"Processed {status.realtime_processed}, failed {status.realtime_failed}, sanitized {status.sanitized}")
    conn.close()


@cli.command()
@click.option("--date", "day", default=None, help="Day to aggregate (YYYY-MM-DD), default yesterday (UTC)")
def batch(day: str | None):
    """Run the daily batch for one calendar day."""
    from chainpulse.storage.database import get_connection

    if day is None:
        target = dt.datetime.now(dt.timezone.utc).date() - dt.timedelta(days=1)
    else:
        target = dt.date.fromisoformat(day)

    conn = get_connection()
    calculator, _ = _services()
    pipeline = _pipeline(conn, calculator)
    result = asyncio.run(pipeline.run_daily_batch(target, progress=True))
    conn.close()

    if not result.success:
        click.echo(f"Batch for {target} failed: {result.error}")
        raise SystemExit(1)
    click.echo(
        f"Batch for {target}: {result.projects} projects, {result.categories} categories, "
        f"{result.sanitized} sanitized in {result.duration}s"
    )


@cli.command()
@click.option("--period", default=None, help="Window such as 7d, 30d, 90d")
@click.option("--chain", default=None, help="Restrict to one chain")
@click.option("--category", default=None)
@click.option("--limit", default=20)
def trending(period: str | None, chain: str | None, category: str | None, limit: int):
    """Show the trending leaderboard."""
    from chainpulse.scoring.trending import TrendingService
    from chainpulse.storage.database import get_connection

    conn = get_connection()
    _, normalizer = _services()
    service = TrendingService(conn, normalizer)
    try:
        entries = service.trending_projects(
            period=period, chain_id=_resolve_chain_id(chain), category=category, limit=limit
        )
    except ValueError as e:
        raise click.BadParameter(str(e), param_hint="--period") from e
    _print_entries(entries)
    conn.close()


@cli.command()
@click.option("--period", default=None)
@click.option("--chain", default=None)
@click.option("--category", default=None)
@click.option("--limit", default=10)
def failing(period: str | None, chain: str | None, category: str | None, limit: int):
    """List high-risk projects and the indicators that flagged them."""
    from chainpulse.scoring.trending import TrendingService
    from chainpulse.storage.database import get_connection

    conn = get_connection()
    _, normalizer = _services()
    service = TrendingService(conn, normalizer)
    try:
        flagged = service.failing_projects(
            period=period, chain_id=_resolve_chain_id(chain), category=category, limit=limit
        )
    except ValueError as e:
        raise click.BadParameter(str(e), param_hint="--period") from e

    if not flagged:
        click.echo("No failing projects.")
    for f in flagged:
        s = f.entry.snapshot
        click.echo(f"{s.contract_address} (chain {s.chain_id}) risk={s.risk_score}: {', '.join(f.decline_indicators)}")
    conn.close()


@cli.command()
@click.argument("contract_a")
@click.argument("contract_b")
@click.option("--chain-a", default="1")
@click.option("--chain-b", default="1")
def compare(contract_a: str, contract_b: str, chain_a: str, chain_b: str):
    """Compare two projects, normalizing across chains when they differ."""
    from chainpulse.storage.database import get_connection, get_project_metrics

    conn = get_connection()
    _, normalizer = _services()
    snapshots = []
    for address, chain in ((contract_a, chain_a), (contract_b, chain_b)):
        snapshot = get_project_metrics(conn, address, _resolve_chain_id(chain))
        if snapshot is None:
            click.echo(f"No metrics for {address} on chain {chain}. Run `chainpulse recompute` first.")
            conn.close()
            return
        snapshots.append(snapshot)

    comparison = normalizer.compare_projects(*snapshots)
    click.echo(json.dumps(comparison.model_dump(mode="json"), indent=2))
    conn.close()


@cli.command()
def audit():
    """Check the metrics tables for integrity problems."""
    from chainpulse.storage.database import get_connection

    conn = get_connection()
    calculator, _ = _services()
    issues = _pipeline(conn, calculator).audit()
    conn.close()

    total = 0
    for table, problems in issues.items():
        for problem in problems:
            click.echo(f"{table}: {problem}")
            total += 1
    click.echo("Audit passed." if total == 0 else f"{total} issue(s) found.")


if __name__ == "__main__":
    cli()
