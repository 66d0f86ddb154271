"""Command-line interface for site-vault."""

import json
import sys
import time
from pathlib import Path

import click
from dotenv import load_dotenv

from site_vault.archive_builder import check_compression, select_compressor
from site_vault.config import ConfigLoader
from site_vault.exceptions import (
    BackupLockedError,
    CompressionUnavailableError,
    PartialFileMissingError,
    SiteVaultError,
    UnauthenticatedError,
)
from site_vault.logging_config import configure_logging
from site_vault.manifest import BACKUP_TYPES
from site_vault.pipeline import BackupPipeline
from site_vault.storage_backend import create_backend, validate_config


# Helper functions for colored output
def echo_success(message, quiet=False):
    """Echo success message in green."""
    if not quiet:
        click.secho(f"✅ {message}", fg="green")


def echo_error(message):
    """Echo error message in red."""
    click.secho(f"❌ {message}", fg="red", err=True)


def echo_info(message, quiet=False):
    """Echo info message in blue."""
    if not quiet:
        click.secho(message, fg="blue")


def echo_warning(message, quiet=False):
    """Echo warning message in yellow."""
    if not quiet:
        click.secho(f"⚠️  {message}", fg="yellow")


def format_duration(seconds):
    """Format duration in human-readable format."""
    if seconds < 1:
        return f"{seconds*1000:.0f}ms"
    elif seconds < 60:
        return f"{seconds:.1f}s"
    else:
        minutes = int(seconds // 60)
        secs = int(seconds % 60)
        return f"{minutes}m {secs}s"


def format_size(size_bytes):
    """Format a byte count with binary units."""
    size = float(size_bytes)
    for unit in ("B", "KB", "MB", "GB"):
        if size < 1024 or unit == "GB":
            return f"{size:.0f} {unit}" if unit == "B" else f"{size:.1f} {unit}"
        size /= 1024


def load_config(ctx):
    """Load configuration from --config or --options-file, else defaults."""
    loader = ConfigLoader()
    config_path = ctx.obj.get("CONFIG")
    options_path = ctx.obj.get("OPTIONS")

    if config_path:
        return loader.load_from_file(config_path)
    if options_path:
        try:
            options = json.loads(Path(options_path).read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            raise click.ClickException(f"Cannot read options file {options_path}: {e}")
        if not isinstance(options, dict):
            raise click.ClickException("Options file must contain a JSON object")
        return loader.load_from_options(options, work_dir=ctx.obj.get("WORK_DIR"))
    return loader.load_from_dict({})


def build_pipeline(ctx):
    """Create the pipeline, exiting with a readable error on bad configuration."""
    try:
        config = load_config(ctx)
        return BackupPipeline(config)
    except SiteVaultError as e:
        echo_error(f"Configuration error: {e}")
        sys.exit(1)


def entry_to_dict(entry):
    """JSON-ready view of a catalog entry."""
    return {
        "backup_id": entry.backup_id,
        "backup_type": entry.backup_type,
        "status": entry.status,
        "provenance": entry.provenance,
        "total_size_bytes": entry.total_size_bytes,
        "created_at": entry.created_at.isoformat() if entry.created_at else None,
        "finished_at": entry.finished_at.isoformat() if entry.finished_at else None,
        "partial": entry.partial,
        "missing_files": entry.missing_files,
        "components": [c.name for c in entry.components],
        "files": [
            {
                "filename": f.filename,
                "size_bytes": f.size_bytes,
                "component": f.component,
                "remote_key": f.remote_key,
                "missing": f.missing,
            }
            for f in entry.files
        ],
    }


@click.group()
@click.version_option(version="0.1.0")
@click.option("--quiet", "-q", is_flag=True, help="Suppress non-essential output")
@click.option("--json-logs", is_flag=True, help="Enable JSON-formatted structured logging")
@click.option(
    "--config",
    "config_path",
    envvar="SITE_VAULT_CONFIG",
    type=click.Path(exists=True, dir_okay=False),
    help="YAML configuration file (or set SITE_VAULT_CONFIG env var)",
)
@click.option(
    "--options-file",
    type=click.Path(exists=True, dir_okay=False),
    help="JSON export of the host's wpv_* option store",
)
@click.option(
    "--work-dir",
    type=click.Path(file_okay=False),
    help="Local backup directory when reading an options file",
)
@click.pass_context
def main(ctx, quiet, json_logs, config_path, options_file, work_dir):
    """Site backup tool.

    Pack a site's content tree and database dumps into size-bounded
    archives and ship them to cloud relay, S3-compatible or local storage.
    """
    # Load environment variables from .env file if it exists
    load_dotenv()

    ctx.ensure_object(dict)
    ctx.obj["QUIET"] = quiet
    ctx.obj["JSON_LOGS"] = json_logs
    ctx.obj["CONFIG"] = config_path
    ctx.obj["OPTIONS"] = options_file
    ctx.obj["WORK_DIR"] = work_dir

    if json_logs:
        configure_logging(level="INFO", json_format=True)


@main.command()
@click.option(
    "--content-dir",
    type=click.Path(exists=True, file_okay=False),
    help="Site root to back up",
)
@click.option(
    "--db-dump",
    "db_dumps",
    multiple=True,
    type=click.Path(exists=True, dir_okay=False),
    help="Database dump to include (repeatable; .sql.gz is stored as-is)",
)
@click.option("--backup-id", default=None, help="Backup identifier (default: generated)")
@click.option(
    "--type",
    "backup_type",
    type=click.Choice(BACKUP_TYPES),
    default="full",
    show_default=True,
    help="Backup type",
)
@click.option("--verbose", "-v", is_flag=True, help="Show every uploaded chunk")
@click.pass_context
def backup(ctx, content_dir, db_dumps, backup_id, backup_type, verbose):
    """Archive the site and upload it to the configured storage.

    Examples:
        # Full backup of a site with its database dump
        site-vault --config vault.yaml backup --content-dir /var/www/site \\
            --db-dump /tmp/site.sql.gz
    """
    quiet = ctx.obj.get("QUIET", False)
    if not content_dir and not db_dumps:
        echo_error("Nothing to back up: pass --content-dir and/or --db-dump")
        sys.exit(1)

    pipeline = build_pipeline(ctx)
    start_time = time.time()

    def progress(chunk, status):
        if verbose and not quiet and status != "started":
            marker = "✓" if status == "completed" else "✗"
            click.echo(f"   {marker} {chunk.relative_path} ({format_size(chunk.size_bytes)})")

    echo_info(f"\n🚀 Starting {backup_type} backup to {pipeline.backend.display_name}", quiet)

    try:
        file_set = pipeline.collect_files(content_dir, db_dumps)
        report = pipeline.run_backup(
            file_set, backup_id=backup_id, backup_type=backup_type, progress_callback=progress
        )
    except BackupLockedError as e:
        echo_error(str(e))
        sys.exit(1)
    except UnauthenticatedError as e:
        echo_error(f"Authentication error: {e}")
        sys.exit(1)
    except CompressionUnavailableError as e:
        echo_error(f"Compression error: {e}")
        sys.exit(1)
    except SiteVaultError as e:
        echo_error(f"Backup failed: {e}")
        sys.exit(1)

    duration = time.time() - start_time
    echo_success(
        f"Backup {report.backup_id} completed in {format_duration(duration)}: "
        f"{len(report.archives)} archive(s), {format_size(report.manifest.total_size_bytes)}",
        quiet,
    )
    if report.skipped:
        echo_warning(f"{len(report.skipped)} file(s) could not be read and were skipped", quiet)
    if verbose and not quiet:
        click.echo(f"   Manifest: {report.manifest_path}")
        if report.log_path:
            click.echo(f"   Log: {report.log_path}")


@main.command()
@click.option("--json", "as_json", is_flag=True, help="Print the catalog as JSON")
@click.option("--verbose", "-v", is_flag=True, help="List the archives of every backup")
@click.pass_context
def catalog(ctx, as_json, verbose):
    """List remote and local backups, newest first."""
    pipeline = build_pipeline(ctx)

    try:
        entries = pipeline.catalog()
    except UnauthenticatedError as e:
        echo_error(f"Authentication error: {e}")
        sys.exit(1)

    if as_json:
        click.echo(json.dumps([entry_to_dict(e) for e in entries], indent=2))
        return

    if not entries:
        click.echo("No backups found.")
        return

    click.echo(f"\nFound {len(entries)} backup(s):\n")
    for entry in entries:
        when = entry.sort_time.strftime("%Y-%m-%d %H:%M:%S") if entry.sort_time else "unknown"
        flag = " ⚠️  partial" if entry.partial else ""
        click.echo(
            f"  📦 {entry.backup_id}  {entry.backup_type}  {entry.status}  "
            f"{format_size(entry.total_size_bytes)}  {when}  [{entry.provenance}]{flag}"
        )
        if verbose:
            for f in entry.files:
                state = " (missing)" if f.missing else ""
                click.echo(f"      {f.filename}  {format_size(f.size_bytes)}{state}")


@main.command()
@click.argument("backup_id")
@click.option(
    "--output-path",
    required=True,
    type=click.Path(file_okay=False),
    help="Directory receiving the backup's archives",
)
@click.pass_context
def download(ctx, backup_id, output_path):
    """Fetch every archive of a backup."""
    quiet = ctx.obj.get("QUIET", False)
    pipeline = build_pipeline(ctx)

    try:
        paths = pipeline.download_backup(backup_id, output_path)
    except PartialFileMissingError as e:
        echo_warning(f"{e}", quiet)
        for key in e.missing:
            click.echo(f"   missing: {key}", err=True)
        sys.exit(1)
    except SiteVaultError as e:
        echo_error(f"Download failed: {e}")
        sys.exit(1)

    echo_success(f"Downloaded {len(paths)} archive(s) to {output_path}", quiet)


@main.command()
@click.argument("backup_id")
@click.option(
    "--target-dir",
    required=True,
    type=click.Path(file_okay=False),
    help="Directory the site files are restored into",
)
@click.option("--verbose", "-v", is_flag=True, help="List every restored archive")
@click.pass_context
def restore(ctx, backup_id, target_dir, verbose):
    """Download, verify and unpack a backup.

    Examples:
        # Restore a backup into a staging copy of the site
        site-vault --config vault.yaml restore 20250301-120000-ab12cd34 \\
            --target-dir /srv/restore
    """
    quiet = ctx.obj.get("QUIET", False)
    pipeline = build_pipeline(ctx)
    start_time = time.time()

    echo_info(f"\n📦 Restoring backup {backup_id} into {target_dir}", quiet)
    try:
        report = pipeline.restore_backup(backup_id, target_dir)
    except PartialFileMissingError as e:
        echo_error(f"Restore aborted: {e}")
        for key in e.missing:
            click.echo(f"   missing: {key}", err=True)
        sys.exit(1)
    except BackupLockedError as e:
        echo_error(str(e))
        sys.exit(1)
    except SiteVaultError as e:
        echo_error(f"Restore failed: {e}")
        sys.exit(1)

    echo_success(
        f"Restored {len(report.archives)} archive(s), {len(report.extracted)} file(s) "
        f"in {format_duration(time.time() - start_time)}",
        quiet,
    )
    if verbose and not quiet:
        for name in report.archives:
            click.echo(f"   ✓ {name}")


@main.command()
@click.argument("backup_id")
@click.option("--yes", "-y", is_flag=True, help="Do not ask for confirmation")
@click.pass_context
def delete(ctx, backup_id, yes):
    """Delete a backup from storage and the local backup directory."""
    quiet = ctx.obj.get("QUIET", False)

    if not yes:
        click.confirm(f"Delete backup {backup_id}?", abort=True)

    pipeline = build_pipeline(ctx)
    try:
        deleted = pipeline.delete_backup(backup_id)
    except SiteVaultError as e:
        echo_error(f"Delete failed: {e}")
        sys.exit(1)

    if pipeline.backend.deletes_objects:
        echo_success(f"Deleted backup {backup_id} ({deleted} remote object(s))", quiet)
    else:
        echo_success(f"Deleted local copy of backup {backup_id}", quiet)
        echo_info(f"   Remote chunks are retained by {pipeline.backend.display_name}", quiet)


@main.command(name="test-connection")
@click.pass_context
def test_connection(ctx):
    """Check that the configured storage is reachable and accepts our credentials."""
    quiet = ctx.obj.get("QUIET", False)

    try:
        config = load_config(ctx)
    except SiteVaultError as e:
        echo_error(f"Configuration error: {e}")
        sys.exit(1)

    problems = validate_config(config.storage)
    if problems:
        for problem in problems:
            echo_error(problem)
        sys.exit(1)

    try:
        message = create_backend(config.storage).test_connection()
    except SiteVaultError as e:
        echo_error(f"Connection failed: {e}")
        sys.exit(1)

    echo_success(message, quiet)


@main.command()
@click.pass_context
def compression(ctx):
    """Show which compression modes this host supports."""
    try:
        config = load_config(ctx)
    except SiteVaultError as e:
        echo_error(f"Configuration error: {e}")
        sys.exit(1)

    available = check_compression()
    for mode, ok in available.items():
        click.echo(f"  {'✓' if ok else '✗'} {mode}")

    try:
        effective = select_compressor(config.archive.compression).name
    except CompressionUnavailableError as e:
        echo_error(str(e))
        sys.exit(1)

    click.echo(f"Configured: {config.archive.compression}, effective: {effective}")


if __name__ == "__main__":
    main()
