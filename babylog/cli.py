"""Operational tool: scan and repair sleep history against the configured database.

    babylog init-db
    babylog scan
    babylog fix all            # dry run, prints what would change
    babylog fix unbounded --apply
"""

import asyncio
import json
import logging
from typing import Any, Awaitable, Callable

import click

from babylog.core.database import get_database
from babylog.core.settings import settings
from babylog.services.corrections import CORRECTION_KINDS
from babylog.services.sql_store import SqlEventStore
from babylog.services.tracker import BabyTracker

logger = logging.getLogger(__name__)


async def _with_tracker(action: Callable[[BabyTracker], Awaitable[Any]]) -> Any:
    if not settings.DATABASE_URL:
        raise click.ClickException("DATABASE_URL is not set")
    db = get_database()
    await db.connect(settings.DATABASE_URL, settings.DB_STATEMENT_TIMEOUT_MS)
    try:
        return await action(BabyTracker(SqlEventStore(db)))
    finally:
        await db.disconnect()


def _echo_json(data: Any) -> None:
    click.echo(json.dumps(data, indent=2, default=str))


@click.group()
@click.option("--log-level", default=None, help="Overrides LOG_LEVEL")
def main(log_level: str) -> None:
    """babylog maintenance commands."""
    logging.basicConfig(
        level=getattr(logging, (log_level or settings.LOG_LEVEL).upper()),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )


@main.command("init-db")
def init_db() -> None:
    """Create the events table and indexes if missing."""
    asyncio.run(_with_tracker(lambda tracker: tracker.store.create_schema()))
    click.echo("Schema ready")


@main.command()
def scan() -> None:
    """Count sleep-history issues per class without changing anything."""
    counts = asyncio.run(_with_tracker(lambda tracker: tracker.scan_issues()))
    _echo_json(counts)


@main.command()
@click.argument("kind", type=click.Choice(CORRECTION_KINDS, case_sensitive=False))
@click.option("--apply", "apply_changes", is_flag=True, default=False,
              help="Write the corrections. Without it the run is a dry run.")
def fix(kind: str, apply_changes: bool) -> None:
    """Run a correction pass (dry run unless --apply)."""
    report = asyncio.run(
        _with_tracker(lambda tracker: tracker.run_correction_pass(kind.lower(), apply=apply_changes))
    )
    _echo_json(report.to_dict())
    mode = "applied" if report.applied else "dry run, nothing written"
    click.echo(f"{len(report.corrected)} correction(s), {len(report.anomalies)} anomaly(ies) ({mode})")


if __name__ == "__main__":
    main()
