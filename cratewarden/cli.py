"""Command-line interface for CrateWarden."""

import asyncio
import json
import logging
import signal
import sys
from pathlib import Path

import click

from . import __version__
from .clients.analysis_client import GeminiTransport
from .config import Settings, load_settings, write_default_config
from .constants import CONFIG_FILE_NAME, DEFAULT_APP_DIR
from .core.cache import ScanCache
from .core.exceptions import (
    AnalysisError,
    ConfigurationError,
    ExportError,
    MissingConfigError,
    ScanTargetError,
)
from .logging_config import configure_logging
from .models import ScanResult
from .report import REPORT_FORMATS, write_report
from .scanners.orchestrator import ScanOrchestrator

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_SETUP_ERROR = 1
EXIT_TARGET_ERROR = 3


def _load(config_path: Path | None, verbose: bool = False) -> Settings:
    try:
        settings = load_settings(config_path)
    except ConfigurationError as e:
        click.echo(f"Configuration error: {e}", err=True)
        sys.exit(EXIT_SETUP_ERROR)

    level = "DEBUG" if verbose else settings.logging.level
    configure_logging(level, settings.logging.file, settings.logging.json_format)
    return settings


async def _run_scan(
    orchestrator: ScanOrchestrator, target: Path, scan_dependencies: bool
) -> ScanResult:
    """Run a scan, turning Ctrl-C into a graceful cancellation."""
    loop = asyncio.get_running_loop()
    handler_installed = False
    try:
        loop.add_signal_handler(signal.SIGINT, orchestrator.cancel, "interrupted")
        handler_installed = True
    except (NotImplementedError, RuntimeError, ValueError):
        logger.debug("SIGINT handler unavailable; Ctrl-C will abort the scan")
    try:
        return await orchestrator.scan(target, scan_dependencies=scan_dependencies)
    finally:
        if handler_installed:
            loop.remove_signal_handler(signal.SIGINT)


config_option = click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Config file (default: $CRATEWARDEN_CONFIG, ./cratewarden.toml, ~/.cratewarden/cratewarden.toml)",
)


@click.group()
@click.version_option(__version__, prog_name="cratewarden")
def main() -> None:
    """CrateWarden: supply-chain security triage for Rust crates."""


@main.command()
@click.argument("target", type=click.Path(path_type=Path))
@click.option(
    "--format",
    "fmt",
    type=click.Choice(REPORT_FORMATS),
    default="condensed",
    show_default=True,
    help="Report format",
)
@click.option(
    "--output", "-o", type=click.Path(dir_okay=False, path_type=Path), default=None,
    help="Write the report to a file instead of stdout",
)
@click.option("--skip-dependencies", is_flag=True, help="Do not analyse Cargo.lock dependencies")
@click.option("--verbose", "-v", is_flag=True, help="Debug logging")
@config_option
def scan(
    target: Path,
    fmt: str,
    output: Path | None,
    skip_dependencies: bool,
    verbose: bool,
    config_path: Path | None,
) -> None:
    """Scan a Rust crate directory (or a single .rs file).

    Exits 0 whenever the scan completes, including partial results after
    cancellation or service failures. Exits non-zero only when the
    configuration or the target is unusable.
    """
    settings = _load(config_path, verbose)
    orchestrator = ScanOrchestrator.from_settings(settings)

    try:
        result = asyncio.run(_run_scan(orchestrator, target, not skip_dependencies))
    except ScanTargetError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(EXIT_TARGET_ERROR)
    finally:
        orchestrator.cache.close()

    text = write_report(result, fmt, output)  # type: ignore[arg-type]
    if output is None:
        click.echo(text, nl=False)
    else:
        click.echo(f"Report written to {output}")
    if result.summary.cancelled:
        click.echo("Scan was cancelled; the report is partial.", err=True)


@main.command()
@click.option("--stats", "show_stats", is_flag=True, help="Show cache statistics")
@click.option("--clear", is_flag=True, help="Delete every cached analysis")
@click.option(
    "--export", "export_path", type=click.Path(dir_okay=False, path_type=Path),
    default=None, help="Export cached analyses to a JSON file",
)
@config_option
def cache(show_stats: bool, clear: bool, export_path: Path | None, config_path: Path | None) -> None:
    """Inspect and maintain the scan cache."""
    settings = _load(config_path)
    with ScanCache(settings.cache.database_path, enabled=settings.cache.enabled) as store:
        if not store.available:
            click.echo(f"Scan cache unavailable: {store.degraded_reason}", err=True)
            sys.exit(EXIT_SETUP_ERROR)

        if export_path is not None:
            try:
                count = store.export(export_path)
            except ExportError as e:
                click.echo(f"Error: {e}", err=True)
                sys.exit(EXIT_SETUP_ERROR)
            click.echo(f"Exported {count} entries to {export_path}")

        if clear:
            removed = store.clear()
            click.echo(f"Removed {removed} cached analyses")

        if show_stats or not (clear or export_path):
            stats = store.stats()
            click.echo(f"Cache database: {settings.cache.database_path}")
            click.echo(f"Total entries: {stats.total_entries}")
            click.echo(f"Entries in last {stats.window_days} days: {stats.entries_in_last_window}")
            if stats.most_frequently_hit_identities:
                click.echo("Most frequently hit:")
                for identity, hits in stats.most_frequently_hit_identities:
                    click.echo(f"  {identity}: {hits}")
            sessions = store.recent_sessions(limit=5)
            if sessions:
                click.echo("Recent scans:")
                for session in sessions:
                    click.echo(f"  {json.dumps(session)}")


@main.command()
@click.option(
    "--path", "config_file", type=click.Path(dir_okay=False, path_type=Path),
    default=DEFAULT_APP_DIR / CONFIG_FILE_NAME, show_default=True,
    help="Where to write the config file",
)
@click.option("--force", is_flag=True, help="Overwrite an existing file")
def init(config_file: Path, force: bool) -> None:
    """Write a default configuration file."""
    try:
        written = write_default_config(config_file, overwrite=force)
    except ConfigurationError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(EXIT_SETUP_ERROR)
    click.echo(f"Configuration written to {written}")
    click.echo("Set analysis_service.credential or $GEMINI_API_KEY to enable remote analysis.")


@main.command("test-connection")
@config_option
def test_connection(config_path: Path | None) -> None:
    """Send a minimal prompt to the analysis service."""
    settings = _load(config_path)
    service = settings.analysis_service

    async def probe() -> str:
        if not service.credential:
            raise MissingConfigError(
                "No credential configured (analysis_service.credential or $GEMINI_API_KEY)"
            )
        transport = GeminiTransport(
            api_key=service.credential,
            endpoint=service.endpoint,
            timeout=service.request_timeout_seconds,
            max_output_tokens=32,
        )
        return await transport.send("Reply with the single word OK.", service.model)

    try:
        reply = asyncio.run(probe())
    except (AnalysisError, MissingConfigError) as e:
        click.echo(f"Connection failed: {e}", err=True)
        sys.exit(EXIT_SETUP_ERROR)
    click.echo(f"Connected to {service.model}: {reply.strip()[:80]}")


if __name__ == "__main__":
    main()
