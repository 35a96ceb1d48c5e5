"""
Main CLI entry point for the job monitor.

Provides:
- `sync`: fold Redis correlation state into the metrics database
- `analyze`: detect performance, workload, failure and schedule anomalies
- `schedule`: run both on their configured intervals in the foreground
"""

import asyncio
import sys
from typing import Optional

import click
from loguru import logger

from job_monitor import __version__
from job_monitor.app.core.Analysis.performance_analyzer import run_performance_analysis
from job_monitor.app.core.config import get_settings
from job_monitor.app.core.exceptions import ConfigurationError
from job_monitor.app.core.Logging.log_setup import configure_logging
from job_monitor.app.core.Monitoring.notification_service import get_notification_service
from job_monitor.app.core.Sync.sync_engine import SyncOptions, run_metrics_sync
from job_monitor.cli.utils.output import (
    console, print_error, print_info, print_json, print_success, print_summary, print_table, print_warning
)


def _load_settings():
    try:
        return get_settings()
    except ConfigurationError as e:
        print_error(f"Configuration error: {e}", exit_code=1)


@click.group(context_settings={'help_option_names': ['-h', '--help']})
@click.option(
    '--log-level',
    type=click.Choice(['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'], case_sensitive=False),
    default='INFO',
    help='Logging level'
)
@click.option('--quiet', '-q', is_flag=True, help='Only log errors')
@click.version_option(version=__version__, prog_name="job-monitor")
@click.pass_context
def main(ctx, log_level, quiet):
    """
    Job monitor CLI.

    Examples:
        job-monitor sync --dry-run          # Show what would be synced
        job-monitor analyze --all           # Analyze every recent command
        job-monitor analyze -c reports:daily
        job-monitor schedule                # Run sync + analysis periodically
    """
    configure_logging("ERROR" if quiet else log_level, intercept_stdlib=False)
    ctx.ensure_object(dict)
    ctx.obj['quiet'] = quiet


@main.command()
@click.option('--force', is_flag=True, help='Run even when sync is disabled in settings')
@click.option('--dry-run', is_flag=True, help='Count what would be written without touching the database or Redis')
@click.option('--batch-size', type=click.IntRange(min=1), default=None, help='Records per chunk (defaults to settings)')
@click.option('--cleanup/--no-cleanup', default=None, help='Remove stale transient entries after syncing')
@click.option('--format', 'output_format', type=click.Choice(['table', 'simple', 'json']), default='table')
def sync(force, dry_run, batch_size, cleanup, output_format):
    """Sync command counters and finished job records into the metrics database."""
    _load_settings()
    options = SyncOptions(dry_run=dry_run, batch_size=batch_size, cleanup_enabled=cleanup, force=force)
    try:
        report = run_metrics_sync(options)
    except Exception as e:
        logger.exception("Metrics sync crashed")
        print_error(f"Metrics sync failed: {e}", exit_code=1)
        return

    if report.disabled:
        print_info("Metrics sync is disabled (JOB_MONITOR_SYNC_ENABLED=false); pass --force to run anyway.")
        return

    data = report.to_dict()
    if output_format == 'json':
        print_json(data)
    elif output_format == 'simple':
        print_table([data], title="Metrics sync", format_style="simple")
    else:
        print_summary(data, "Metrics sync (dry run)" if dry_run else "Metrics sync")

    if not report.ok:
        print_error(report.fatal_error, exit_code=1)
    if report.errors:
        print_warning(f"{report.errors} record(s) could not be synced; see log for details")
    print_success(
        f"{'Would sync' if dry_run else 'Synced'} {report.commands_synced} command run(s) and {report.jobs_synced} job(s)"
    )


@main.command()
@click.option('--command', '-c', 'command_name', default=None, help='Analyze a single command')
@click.option('--all', 'analyze_all', is_flag=True, help='Analyze every command in the retention window (default)')
@click.option('--force', is_flag=True, help='Run even when analysis is disabled in settings')
@click.option('--format', 'output_format', type=click.Choice(['table', 'simple', 'json']), default='table')
def analyze(command_name: Optional[str], analyze_all: bool, force: bool, output_format: str):
    """Detect anomalies in recent command runs and missed scheduled executions."""
    if command_name and analyze_all:
        raise click.UsageError("--command and --all are mutually exclusive")
    settings = _load_settings()
    if not settings.ANALYZE_ENABLED and not force:
        print_info("Performance analysis is disabled (JOB_MONITOR_ANALYZE_ENABLED=false); pass --force to run anyway.")
        return

    notifier = get_notification_service() if settings.NOTIFY_ENABLED else None
    if notifier is not None:
        notifier.attach()
    try:
        report = run_performance_analysis(command_name)
    except Exception as e:
        logger.exception("Performance analysis crashed")
        print_error(f"Performance analysis failed: {e}", exit_code=1)
        return
    finally:
        if notifier is not None:
            notifier.flush()
            notifier.detach()

    if output_format == 'json':
        print_json(report.to_dict())
    else:
        style = 'simple' if output_format == 'simple' else 'rich'
        for name, result in report.results.items():
            if result.reason:
                print_info(f"{name}: skipped ({result.reason}, {result.data_points} data point(s))")
        rows = [
            {
                "command": a.command_name,
                "type": a.anomaly_type.value,
                "severity": a.severity,
                "metric": a.metric_name,
                "current": a.current_value,
                "baseline": a.baseline_average,
                "change_pct": a.percentage_change,
            }
            for a in report.all_anomalies()
        ]
        if rows:
            print_table(rows, title="Anomalies", format_style=style)
        else:
            print_success("No anomalies detected")
        print_summary(report.summary, "Analysis summary")

    if report.errors:
        for name, error in report.errors.items():
            print_error(f"{name}: {error}")
        sys.exit(1)


@main.command()
def schedule():
    """Run sync and analysis on their configured intervals until interrupted."""
    from job_monitor.app.services.job_monitor_scheduler import JobMonitorScheduler

    settings = _load_settings()

    async def _run():
        scheduler = JobMonitorScheduler(settings=settings)
        await scheduler.start()
        console.print(
            f"Scheduler running (sync every {settings.SYNC_INTERVAL_MINUTES}m, "
            f"analysis every {settings.ANALYSIS_INTERVAL_MINUTES}m). Press Ctrl+C to stop."
        )
        try:
            await asyncio.Event().wait()
        finally:
            await scheduler.stop()

    try:
        asyncio.run(_run())
    except KeyboardInterrupt:
        print_info("Scheduler stopped.")


if __name__ == '__main__':
    try:
        main()
    except KeyboardInterrupt:
        print_info("\nOperation cancelled.")
        sys.exit(130)
