"""CLI commands for the DSAS CCA proxy.

Provides commands for serving and for one-shot maintenance:
  - serve: Run the HTTP API with background reconciliation
  - populate: Fill every uncached activity in the configured range
  - sweep: Refresh stale and errored activities (runs orphan cleanup too)
  - staff: Refresh the staff directory
  - cleanup: Delete orphaned activity photos
  - fetch: Fetch one activity through the credential state machine
  - show: Print the cached entry for one activity
  - validate-config / show-config: Inspect configuration
"""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional, TypeVar

import typer

from DsasCCA.config import AppConfig, load_config, validate_config_file
from DsasCCA.logging_utils import setup_logging
from DsasCCA.services import Services, build_services

logger = logging.getLogger(__name__)
app = typer.Typer(help="DSAS CCA caching proxy for the Engage portal")

T = TypeVar("T")

CONFIG_OPTION = typer.Option(None, "--config", "-c", help="Config file path (YAML/JSON)")


def _load(config_path: Optional[str]) -> AppConfig:
    config = load_config(path=config_path)
    setup_logging(
        level=config.logging.level,
        log_dir=Path(config.logging.log_dir) if config.logging.log_dir else None,
        max_log_size_mb=config.logging.max_log_size_mb,
    )
    return config


def _run(config: AppConfig, job: Callable[[Services], Awaitable[T]]) -> T:
    """Build services, run ``job`` once on a fresh event loop, close services."""

    async def _main() -> T:
        services = build_services(config, bootstrap=False)
        try:
            await services.cache.check_connection()
            return await job(services)
        finally:
            await services.aclose()

    return asyncio.run(_main())


def _dump(payload: Any) -> str:
    return json.dumps(payload, indent=2, ensure_ascii=False, sort_keys=True)


@app.command()
def serve(
    config_path: Optional[str] = CONFIG_OPTION,
    host: Optional[str] = typer.Option(None, "--host", help="Bind address override"),
    port: Optional[int] = typer.Option(None, "--port", help="Bind port override"),
) -> None:
    """Run the HTTP API.

    Startup verifies Redis, then populates the cache in the background and
    starts the periodic sweeps.
    """
    import uvicorn

    from DsasCCA.api import create_app

    try:
        config = _load(config_path)
    except Exception as e:
        typer.echo(f"✗ Error: {e}", err=True)
        raise typer.Exit(1)

    uvicorn.run(
        create_app(config),
        host=host or config.api.host,
        port=port or config.api.port,
        log_config=None,
    )


@app.command()
def populate(config_path: Optional[str] = CONFIG_OPTION) -> None:
    """Fetch every activity in the range that has no good cache entry yet."""
    try:
        config = _load(config_path)
        count = _run(config, lambda s: s.reconciler.populate_all())
        typer.echo(f"✓ fetched {count} activities")
    except Exception as e:
        typer.echo(f"✗ Error: {e}", err=True)
        raise typer.Exit(1)


@app.command()
def sweep(config_path: Optional[str] = CONFIG_OPTION) -> None:
    """Refresh stale, errored and empty cached activities once."""
    try:
        config = _load(config_path)
        count = _run(config, lambda s: s.reconciler.refresh_stale())
        typer.echo(f"✓ refreshed {count} activities")
    except Exception as e:
        typer.echo(f"✗ Error: {e}", err=True)
        raise typer.Exit(1)


@app.command()
def staff(
    config_path: Optional[str] = CONFIG_OPTION,
    force: bool = typer.Option(False, "--force", help="Refresh even if the directory is fresh"),
) -> None:
    """Refresh the staff directory when due (or always with --force)."""
    try:
        config = _load(config_path)
        record = _run(config, lambda s: s.reconciler.refresh_staff_if_due(force=force))
    except Exception as e:
        typer.echo(f"✗ Error: {e}", err=True)
        raise typer.Exit(1)

    if not record:
        typer.echo("✗ No staff directory available", err=True)
        raise typer.Exit(1)
    typer.echo(f"✓ {len(record) - 1} staff entries (lastCheck {record.get('lastCheck')})")


@app.command()
def cleanup(
    config_path: Optional[str] = CONFIG_OPTION,
    dry_run: bool = typer.Option(True, "--dry-run/--apply", help="Dry-run mode (default: true)"),
) -> None:
    """Delete stored photos that no cached activity references.

    Use --dry-run to preview, then --apply to delete.
    """
    try:
        config = _load(config_path)
        report = _run(config, lambda s: s.reconciler.cleanup_orphans(dry_run=dry_run))
    except Exception as e:
        typer.echo(f"✗ Error: {e}", err=True)
        raise typer.Exit(1)

    if report.skipped:
        typer.echo("Object storage unavailable; nothing to do")
        return
    typer.echo(f"Stored: {report.listed}")
    typer.echo(f"Referenced: {report.referenced}")
    typer.echo(f"Orphaned: {report.orphaned}")
    if report.dry_run:
        typer.echo("Dry run; re-run with --apply to delete")
    else:
        typer.echo(f"✓ deleted {report.deleted}, failed {report.failed}")


@app.command()
def fetch(
    activity_id: str = typer.Argument(..., help="Activity id"),
    config_path: Optional[str] = CONFIG_OPTION,
    force_login: bool = typer.Option(
        False, "--force-login", help="Discard the stored credential first"
    ),
) -> None:
    """Fetch one raw activity detail from the portal and print it."""

    async def _job(services: Services) -> Optional[dict]:
        return await services.fetcher.fetch(
            activity_id, services.username, services.password, force_login=force_login
        )

    try:
        config = _load(config_path)
        raw = _run(config, _job)
    except Exception as e:
        typer.echo(f"✗ Error: {e}", err=True)
        raise typer.Exit(1)

    if raw is None:
        typer.echo(f"No data for activity {activity_id}")
        raise typer.Exit(1)
    typer.echo(_dump(raw))


@app.command()
def show(
    activity_id: str = typer.Argument(..., help="Activity id"),
    config_path: Optional[str] = CONFIG_OPTION,
) -> None:
    """Print the cached entry for an activity and its state."""
    from DsasCCA.cache.reconcile import describe_entry

    try:
        config = _load(config_path)
        entry = _run(config, lambda s: s.cache.get_activity(activity_id))
    except Exception as e:
        typer.echo(f"✗ Error: {e}", err=True)
        raise typer.Exit(1)

    typer.echo(f"Activity {activity_id}: {describe_entry(entry)}")
    if entry:
        typer.echo(_dump(entry))


@app.command("validate-config")
def validate_config(
    config_path: str = typer.Argument(..., help="Config file path (YAML/JSON)"),
) -> None:
    """Validate a config file, including environment overlays."""
    try:
        validate_config_file(config_path)
    except Exception as e:
        typer.echo(f"✗ Invalid config: {e}", err=True)
        raise typer.Exit(1)
    typer.echo(f"✓ {config_path} is valid")


@app.command("show-config")
def show_config(config_path: Optional[str] = CONFIG_OPTION) -> None:
    """Print the effective configuration with secrets masked."""
    try:
        config = load_config(path=config_path)
    except Exception as e:
        typer.echo(f"✗ Error: {e}", err=True)
        raise typer.Exit(1)

    typer.echo(_dump(config.model_dump(mode="json")))
    typer.echo(f"Config hash: {config.config_hash()}")


if __name__ == "__main__":
    app()
