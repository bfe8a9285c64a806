"""
n8nctl command line interface.

Usage:
  n8nctl health [--once]
  n8nctl status
  n8nctl recover [--order systemd,pm2,docker]
  n8nctl backup [--pause] [--no-export] [--no-prune]
  n8nctl restore [ARCHIVE | --latest] [--no-start] [--yes]
  n8nctl prune [--dry-run] [--rule NAME]
  n8nctl cron show|audit|clean|install
  n8nctl diagnose [--output DIR]
  n8nctl maintenance [--mode MODE] [--dry-run]
"""

import functools
import sys
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, List, Optional, Tuple

import click
from rich.markup import escape

from n8nctl import VERSION
from n8nctl.backup import create_backup
from n8nctl.config import Config
from n8nctl.cron import (
    PROBLEMATIC_PATTERNS,
    REMOVE_PATTERNS,
    Crontab,
    CronSchedule,
    backup_crontab,
    job_log_paths,
    managed_jobs,
    read_crontab,
    render_logrotate,
    scan_system_cron,
    write_crontab,
)
from n8nctl.diagnostics import collect, gap_analysis, write_report
from n8nctl.errors import CronError, RestoreError, ToolkitError
from n8nctl.health import check_endpoints, probe, require_healthy, wait_with_config
from n8nctl.maintenance import MODES, run_maintenance
from n8nctl.restore import list_backups, parse_backup_timestamp, restore_backup
from n8nctl.retention import apply_rules, rules_by_name
from n8nctl.supervisors import Supervisor, detect_all, find_conflicts, local_port, port_listening, recover
from n8nctl.system import check_root, install_signal_handlers
from n8nctl.ui import (
    NordColors,
    console,
    display_panel,
    format_size,
    get_logger,
    print_error,
    print_header,
    print_section,
    print_step,
    print_success,
    print_warning,
    setup_logger,
    status_table,
)

DEFAULT_LOGROTATE: str = "/etc/logrotate.d/n8nctl"
DEFAULT_DIAGNOSTICS_DIR: str = "/root/diagnostics"


def handle_errors(func: Callable) -> Callable:
    """Turn toolkit errors into a red message and exit status 1."""

    @functools.wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        try:
            return func(*args, **kwargs)
        except ToolkitError as e:
            get_logger().error(str(e))
            print_error(str(e))
            sys.exit(1)

    return wrapper


def _config(ctx: click.Context) -> Config:
    return ctx.obj["config"]


# ------------------------------
# CLI Commands with Click
# ------------------------------
@click.group()
@click.version_option(version=VERSION, prog_name="n8nctl")
@click.option("--config", "config_path", type=click.Path(dir_okay=False), help="JSON config file")
@click.option("--log-file", type=click.Path(dir_okay=False), help="Override the log file path")
@click.option("--debug", is_flag=True, help="Enable debug logging")
@click.option("--no-header", is_flag=True, help="Skip the ASCII banner")
@click.pass_context
def cli(
    ctx: click.Context,
    config_path: Optional[str],
    log_file: Optional[str],
    debug: bool,
    no_header: bool,
) -> None:
    """
    n8n host maintenance toolkit - Nord Themed CLI

    Health checks, supervisor recovery, backups and cron hygiene for a
    single n8n server.
    """
    try:
        config = Config.load(config_path)
    except ToolkitError as e:
        print_error(str(e))
        sys.exit(1)
    setup_logger(log_file or config.log_file, "DEBUG" if debug else None)
    ctx.ensure_object(dict)
    ctx.obj["config"] = config
    if not no_header:
        print_header()


# ----------------------------------------------------------------
# Health and Supervisors
# ----------------------------------------------------------------
@cli.command()
@click.option("--once", is_flag=True, help="Probe every endpoint once instead of polling")
@click.option("--url", help="URL to poll (defaults to the local n8n URL)")
@click.pass_context
@handle_errors
def health(ctx: click.Context, once: bool, url: Optional[str]) -> None:
    """Wait for n8n to answer with 200, 401 or 302."""
    config = _config(ctx)
    if once:
        results = check_endpoints(config)
        rows = [
            [r.url, "ok" if r.healthy else "failed", r.status_text, f"{r.elapsed:.2f}s"]
            for r in results
        ]
        console.print(status_table("Endpoint Health", ["URL", "Status", "HTTP", "Time"], rows))
        if not results[0].healthy:
            sys.exit(1)
        return

    print_step(f"Polling {url or config.local_url} (up to {config.max_attempts} attempts)...")
    result = require_healthy(wait_with_config(config, url))
    print_success(f"n8n is healthy (HTTP {result.status_text} after {result.attempts} attempt(s))")


@cli.command()
@click.pass_context
@handle_errors
def status(ctx: click.Context) -> None:
    """Show which supervisors are running n8n."""
    config = _config(ctx)
    states = detect_all(config)
    rows = [
        [s.supervisor.value, s.status, "yes" if s.available else "no", "yes" if s.running else "no"]
        for s in states
    ]
    console.print(status_table("n8n Supervisors", ["Supervisor", "Status", "Available", "Running"], rows))

    conflicts = find_conflicts(states)
    if conflicts:
        print_warning(
            f"n8n is running under more than one supervisor: {', '.join(s.value for s in conflicts)}. "
            "Run 'n8nctl recover' to fix."
        )

    host, port = local_port(config)
    if port_listening(host, port):
        print_success(f"Port {port} is listening")
    else:
        print_warning(f"Nothing is listening on {host}:{port}")

    code = probe(config.local_url, timeout=config.request_timeout)
    if code in config.accepted_status:
        print_success(f"{config.local_url} answered HTTP {code}")
    else:
        print_error(f"{config.local_url} answered HTTP {code:03d}")


@cli.command(name="recover")
@click.option("--order", help="Comma-separated supervisor order, e.g. pm2,docker")
@click.pass_context
@handle_errors
def recover_cmd(ctx: click.Context, order: Optional[str]) -> None:
    """Stop every supervisor, then start n8n under the first one that works."""
    check_root()
    config = _config(ctx)
    supervisors = Supervisor.parse_order(order.split(",")) if order else None
    print_section("Recovering n8n")
    result = recover(config, supervisors)
    display_panel(
        f"n8n is running under {result.supervisor.value}\n"
        f"HTTP {result.health.status_text} after {result.health.attempts} attempt(s)",
        NordColors.GREEN,
        "Recovery Complete",
    )


# ----------------------------------------------------------------
# Backups
# ----------------------------------------------------------------
@cli.command()
@click.option("--pause", is_flag=True, help="Stop n8n while the database is copied")
@click.option("--no-export", is_flag=True, help="Skip the n8n CLI workflow export")
@click.option("--no-prune", is_flag=True, help="Keep every previous backup")
@click.pass_context
@handle_errors
def backup(ctx: click.Context, pause: bool, no_export: bool, no_prune: bool) -> None:
    """Create a complete n8n backup archive."""
    check_root()
    config = _config(ctx)
    print_section("Creating n8n backup")
    with console.status(f"[bold {NordColors.FROST_2}]Backing up n8n...", spinner="dots"):
        result = create_backup(
            config, pause_service=pause, export_workflows=not no_export, prune=not no_prune
        )
    for warning in result.warnings:
        print_warning(warning)
    for old in result.pruned:
        print_step(f"Removed old backup {old.path.name}")
    display_panel(
        f"{result.archive}\nSize: {format_size(result.size)}\nContents: {', '.join(result.components)}",
        NordColors.GREEN,
        "Backup Complete",
    )


@cli.command()
@click.pass_context
@handle_errors
def backups(ctx: click.Context) -> None:
    """List complete backups, newest first."""
    config = _config(ctx)
    found = list_backups(config.backup_dir)
    if not found:
        print_warning(f"No backups found in {config.backup_dir}")
        return
    rows = []
    for i, b in enumerate(found, 1):
        ts = parse_backup_timestamp(b.path.name)
        rows.append([str(i), b.path.name, ts.strftime("%Y-%m-%d %H:%M:%S") if ts else "-", format_size(b.size)])
    console.print(status_table("n8n Backups", ["#", "Name", "Date", "Size"], rows, status_column=-1))


@cli.command(name="restore")
@click.argument("archive", required=False, type=click.Path(dir_okay=False))
@click.option("--latest", is_flag=True, help="Restore the newest backup")
@click.option("--no-start", is_flag=True, help="Do not start n8n afterwards")
@click.option("--yes", is_flag=True, help="Do not ask for confirmation")
@click.pass_context
@handle_errors
def restore_cmd(
    ctx: click.Context, archive: Optional[str], latest: bool, no_start: bool, yes: bool
) -> None:
    """Restore n8n data and configuration from a backup archive."""
    check_root()
    config = _config(ctx)
    if archive and latest:
        raise RestoreError("Give either ARCHIVE or --latest, not both")
    if latest:
        found = list_backups(config.backup_dir)
        if not found:
            raise RestoreError(f"No backups found in {config.backup_dir}")
        path = found[0].path
    elif archive:
        path = Path(archive)
    else:
        raise RestoreError("Specify a backup ARCHIVE or --latest")

    if not yes and not click.confirm(f"Replace the current n8n data with {path.name}?", default=False):
        print_warning("Restore cancelled")
        return

    print_section(f"Restoring {path.name}")
    result = restore_backup(config, path, start=not no_start)
    lines = [f"Restored: {', '.join(result.restored)}"]
    if result.snapshot:
        lines.append(f"Previous data saved to {result.snapshot}")
    if result.recovery:
        lines.append(f"n8n running under {result.recovery.supervisor.value}")
    display_panel("\n".join(lines), NordColors.GREEN, "Restore Complete")


@cli.command()
@click.option("--dry-run", is_flag=True, help="Show what would be removed")
@click.option("--rule", "rule_names", multiple=True, help="Only apply the named rule (n8n, incremental, full)")
@click.pass_context
@handle_errors
def prune(ctx: click.Context, dry_run: bool, rule_names: Tuple[str, ...]) -> None:
    """Apply backup retention rules."""
    if not dry_run:
        check_root()
    try:
        rules = rules_by_name(rule_names) if rule_names else None
    except ValueError as e:
        raise click.BadParameter(str(e), param_hint="--rule")
    reports = apply_rules(rules, dry_run=dry_run)
    rows = [
        [r.rule, str(len(r.kept)), str(len(r.removed)), format_size(r.freed_bytes)]
        for r in reports
    ]
    title = "Backup Retention (dry run)" if dry_run else "Backup Retention"
    console.print(status_table(title, ["Rule", "Kept", "Removed", "Freed"], rows, status_column=-1))


# ----------------------------------------------------------------
# Cron
# ----------------------------------------------------------------
@cli.group()
def cron() -> None:
    """Inspect and clean the root crontab."""
    pass


@cron.command(name="show")
@handle_errors
def cron_show() -> None:
    """Print crontab jobs with their next run time."""
    table = Crontab.from_text(read_crontab())
    now = datetime.now()
    rows = []
    for job in table.jobs:
        try:
            nxt = CronSchedule.parse(job.schedule).next_run(now)
            when = nxt.strftime("%Y-%m-%d %H:%M") if nxt else "at boot"
        except CronError as e:
            when = f"invalid ({e})"
        rows.append([job.schedule, escape(job.command), escape(when)])
    if not rows:
        print_warning("No cron jobs installed")
        return
    console.print(status_table("Crontab", ["Schedule", "Command", "Next Run"], rows, status_column=-1))


@cron.command(name="audit")
@handle_errors
def cron_audit() -> None:
    """Count jobs and flag problematic entries."""
    table = Crontab.from_text(read_crontab())
    counts = table.audit()
    rows = [[name, str(count)] for name, count in counts.items()]
    console.print(status_table("Cron Audit", ["Category", "Jobs"], rows, status_column=-1))

    problems = table.find_matching(PROBLEMATIC_PATTERNS)
    for pattern, lines in problems.items():
        for line in lines:
            print_warning(escape(f"{line}  (matches {pattern})"))
    for path, patterns in scan_system_cron().items():
        print_warning(f"{path} matches {', '.join(patterns)}")
    if not problems:
        print_success("No problematic jobs in the root crontab")


@cron.command(name="clean")
@click.option("--dry-run", is_flag=True, help="Show the jobs that would be removed")
@click.pass_context
@handle_errors
def cron_clean(ctx: click.Context, dry_run: bool) -> None:
    """Remove broken backup and cleanup jobs."""
    if not dry_run:
        check_root()
    config = _config(ctx)
    text = read_crontab()
    table = Crontab.from_text(text)
    removed = table.remove_matching(REMOVE_PATTERNS)
    if not removed:
        print_success("Nothing to remove")
        return
    for line in removed:
        print_step(escape(f"{'Would remove' if dry_run else 'Removing'}: {line.raw}"))
    if dry_run:
        return
    backup_crontab(text, config.backup_dir)
    write_crontab(table.to_text())
    print_success(f"Removed {len(removed)} job(s)")


@cron.command(name="install")
@click.option("--dry-run", is_flag=True, help="Print the resulting crontab instead of installing it")
@click.option("--executable", help="Path of the n8nctl executable used in the jobs")
@click.option("--logrotate", "logrotate_path", default=DEFAULT_LOGROTATE, show_default=True,
              help="Where to write the logrotate stanza for job logs")
@click.pass_context
@handle_errors
def cron_install(
    ctx: click.Context, dry_run: bool, executable: Optional[str], logrotate_path: str
) -> None:
    """Install the managed maintenance jobs."""
    config = _config(ctx)
    text = read_crontab()
    table = Crontab.from_text(text)
    table.install_managed(managed_jobs(config, executable))
    new_text = table.to_text()
    logrotate = render_logrotate(job_log_paths(config))

    if dry_run:
        console.print(new_text, markup=False, highlight=False)
        console.print(logrotate, markup=False, highlight=False)
        return

    check_root()
    if new_text == text:
        print_success("Managed jobs already up to date")
    else:
        backup_crontab(text, config.backup_dir)
        write_crontab(new_text)
        print_success("Managed jobs installed")
    try:
        Path(logrotate_path).write_text(logrotate)
        print_success(f"Log rotation written to {logrotate_path}")
    except OSError as e:
        print_warning(f"Could not write {logrotate_path}: {e}")


# ----------------------------------------------------------------
# Diagnostics and Maintenance
# ----------------------------------------------------------------
@cli.command()
@click.option("--output", default=DEFAULT_DIAGNOSTICS_DIR, show_default=True,
              type=click.Path(file_okay=False), help="Directory for the report files")
@click.pass_context
@handle_errors
def diagnose(ctx: click.Context, output: str) -> None:
    """Collect host diagnostics and a gap analysis."""
    config = _config(ctx)
    with console.status(f"[bold {NordColors.FROST_2}]Collecting diagnostics...", spinner="dots"):
        report = collect(config)
    gaps = gap_analysis(report)
    json_path, text_path = write_report(report, Path(output))

    print_section("Gap Analysis")
    if not gaps:
        print_success("Nothing missing")
    for category, items in gaps.items():
        for item in items:
            print_warning(f"{category}: {item}")
    print_step(f"Reports: {json_path}, {text_path}")


@cli.command()
@click.option("--mode", type=click.Choice(MODES), default="full", show_default=True)
@click.option("--dry-run", is_flag=True, help="Report without deleting anything")
@click.pass_context
@handle_errors
def maintenance(ctx: click.Context, mode: str, dry_run: bool) -> None:
    """Run backup retention and system cleanup."""
    if not dry_run:
        check_root()
    report = run_maintenance(_config(ctx), mode, dry_run)
    rows = [[step, status] for step, status in report.steps.items()]
    console.print(status_table(f"Maintenance ({mode})", ["Step", "Status"], rows))
    for key, value in report.analysis.items():
        print_step(f"{key}: {value}")
    print_success(f"Freed {format_size(report.freed_bytes)}")
    if report.report_file:
        print_step(f"Report: {report.report_file}")


# ------------------------------
# Main Execution
# ------------------------------
def main(argv: Optional[List[str]] = None) -> None:
    install_signal_handlers()
    try:
        cli(args=argv, prog_name="n8nctl")
    except KeyboardInterrupt:
        print_warning("Operation cancelled by user")
        sys.exit(130)


if __name__ == "__main__":
    main()
