"""
CLI interface for AI Usage Sync.

Provides command-line access to setup, sync, queries and privacy controls.
"""

import asyncio
import json
import sys
from pathlib import Path
from typing import Awaitable, Callable, List, Optional, TypeVar

import typer
from rich.console import Console
from rich.table import Table

from ai_usage_sync.auth import secret_store
from ai_usage_sync.auth.credentials import AuthMode
from ai_usage_sync.config.loader import (
    BackendType,
    SyncSettings,
    default_config_path,
    export_settings,
    load_settings,
    parse_settings,
    save_settings,
)
from ai_usage_sync.core.day_keys import add_days, to_day_key
from ai_usage_sync.core.errors import UsageSyncError
from ai_usage_sync.core.rollups import utc_now
from ai_usage_sync.query.service import QueryFilters
from ai_usage_sync.sdk.facade import OperationResult, UsageSyncFacade

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1

T = TypeVar("T")

CONFIG_OPTION = typer.Option(None, "--config", "-c", help="Path to the settings YAML file")


def _create_facade(config: Optional[str]) -> UsageSyncFacade:
    """Load settings and build the facade that persists changes back to them."""
    path = config or default_config_path()
    settings = load_settings(path)
    return UsageSyncFacade(settings, config_path=path)


def _run(config: Optional[str], operation: Callable[[UsageSyncFacade], Awaitable[T]]) -> T:
    async def runner():
        facade = _create_facade(config)
        try:
            return await operation(facade)
        finally:
            await facade.aclose()

    return asyncio.run(runner())


def _fail(message: str, remediation: Optional[str] = None) -> None:
    console.print(f"[red]Error:[/] {message}")
    if remediation:
        console.print(f"[yellow]Fix:[/] {remediation}")
    sys.exit(EXIT_CODE_FAIL)


def _check(result: OperationResult) -> None:
    """Exit with a failure code when an operation did not succeed."""
    if not result.ok:
        _fail(f"{result.error} ({result.error_kind})", result.remediation)


@app.callback(invoke_without_command=True)
def main(ctx: typer.Context):
    """AI Usage Sync CLI."""
    if ctx.invoked_subcommand is None:
        console.print("AI Usage Sync - Use --help to see available commands")


@app.command()
def init(
    backend: BackendType = typer.Option(BackendType.SQLITE, "--backend", "-b", help="Where aggregates are stored"),
    storage_account: Optional[str] = typer.Option(None, "--storage-account", help="Azure storage account name"),
    table_name: Optional[str] = typer.Option(None, "--table-name", help="Table holding daily aggregates"),
    dataset_id: Optional[str] = typer.Option(None, "--dataset-id", help="Dataset shared by your machines"),
    auth_mode: AuthMode = typer.Option(AuthMode.ENTRA_ID, "--auth-mode", help="entraId or sharedKey"),
    lookback_days: Optional[int] = typer.Option(None, "--lookback-days", help="Days of history to sync (1-365)"),
    sqlite_path: Optional[str] = typer.Option(None, "--sqlite-path", help="Database file for the sqlite backend"),
    force: bool = typer.Option(False, "--force", "-f", help="Overwrite an existing settings file"),
    config: Optional[str] = CONFIG_OPTION,
):
    """Create the settings file and, for sqlite, the local table."""
    path = Path(config or default_config_path()).expanduser()
    if path.exists() and not force:
        _fail("Settings file already exists.", "Pass --force to overwrite it.")

    raw = {
        "backend": backend.value,
        "authMode": auth_mode.value,
        "storageAccount": storage_account,
        "tableName": table_name,
        "datasetId": dataset_id,
        "lookbackDays": lookback_days,
        "sqlitePath": sqlite_path,
    }
    try:
        settings = parse_settings({k: v for k, v in raw.items() if v is not None})
        save_settings(settings, str(path))
    except UsageSyncError as e:
        _fail(str(e))

    console.print(f"[green]✓[/] Settings written ({settings.backend.value} backend, dataset {settings.dataset_id})")
    if settings.backend is BackendType.SQLITE:
        result = _run(str(path), lambda facade: facade.ensure_table())
        _check(result)
        console.print("[green]✓[/] Local table ready")
    console.print("Sharing is [bold]off[/] until you run `ai-usage-sync set-profile`.")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def status(config: Optional[str] = CONFIG_OPTION):
    """Show the current settings and last known state."""
    try:
        settings = load_settings(config)
    except FileNotFoundError:
        _fail("AI Usage Sync is not initialized.", "Run `ai-usage-sync init` first.")
    except UsageSyncError as e:
        _fail(str(e))

    _display_settings(settings)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def probe(config: Optional[str] = CONFIG_OPTION):
    """Validate credentials and table permissions."""
    try:
        result = _run(config, lambda facade: facade.probe_credentials())
    except (FileNotFoundError, UsageSyncError) as e:
        _fail(str(e))
    _check(result)
    console.print(f"[green]✓[/] Credentials valid ({result.value}); write and delete permissions confirmed")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def sync(config: Optional[str] = CONFIG_OPTION):
    """Compute daily rollups and upload them now."""
    try:
        result = _run(config, lambda facade: facade.upload_rollups())
    except (FileNotFoundError, UsageSyncError) as e:
        _fail(str(e))

    report = result.value
    if report is not None:
        _display_cycle_report(report)
    _check(result)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def query(
    start: Optional[str] = typer.Option(None, "--start", "-s", help="First day (YYYY-MM-DD), defaults to the lookback window"),
    end: Optional[str] = typer.Option(None, "--end", "-e", help="Last day (YYYY-MM-DD), defaults to today"),
    model: Optional[str] = typer.Option(None, "--model", "-m", help="Only this model"),
    workspace: Optional[str] = typer.Option(None, "--workspace", help="Only this workspace id"),
    machine: Optional[str] = typer.Option(None, "--machine", help="Only this machine id"),
    user: Optional[str] = typer.Option(None, "--user", "-u", help="Only this user id"),
    group_by: Optional[List[str]] = typer.Option(
        None, "--group-by", "-g", help="Group by day, model, workspace_id, machine_id or user_id (repeatable)"
    ),
    as_json: bool = typer.Option(False, "--json", help="Print the result as JSON"),
    config: Optional[str] = CONFIG_OPTION,
):
    """Aggregate synced usage for a date range."""

    async def operation(facade: UsageSyncFacade):
        end_day = end or to_day_key(utc_now())
        start_day = start or add_days(end_day, -(facade.settings.lookback_days - 1))
        filters = QueryFilters(
            start_date=start_day,
            end_date=end_day,
            model=model,
            workspace_id=workspace,
            machine_id=machine,
            user_id=user,
        )
        return await facade.query_aggregates(filters, tuple(group_by or ()))

    try:
        result = _run(config, operation)
    except (FileNotFoundError, UsageSyncError) as e:
        _fail(str(e))
    _check(result)

    aggregate = result.value
    if as_json:
        console.print_json(json.dumps({
            "startDate": aggregate.start_date,
            "endDate": aggregate.end_date,
            "inputTokens": aggregate.input_tokens,
            "outputTokens": aggregate.output_tokens,
            "interactions": aggregate.interactions,
            "groups": [
                {
                    "key": list(group.key),
                    "inputTokens": group.input_tokens,
                    "outputTokens": group.output_tokens,
                    "interactions": group.interactions,
                }
                for group in aggregate.groups
            ],
        }))
    else:
        _display_aggregate(aggregate)
    sys.exit(EXIT_CODE_PASS)


@app.command("set-profile")
def set_profile(
    profile: str = typer.Argument(..., help="off, soloFull, teamAnonymized, teamPseudonymous or teamIdentified"),
    consent: bool = typer.Option(False, "--consent", help="Consent now to the more disclosive profile"),
    consent_at: Optional[str] = typer.Option(None, "--consent-at", help="ISO timestamp of a consent given earlier"),
    share_names: Optional[bool] = typer.Option(
        None, "--share-names/--no-share-names", help="Include workspace and machine names (teamIdentified)",
    ),
    config: Optional[str] = CONFIG_OPTION,
):
    """Change the sharing profile (more disclosure requires consent)."""
    timestamp = consent_at or (utc_now().isoformat() if consent else None)
    try:
        result = _run(config, lambda facade: facade.set_sharing_profile(profile, timestamp, share_names))
    except (FileNotFoundError, UsageSyncError) as e:
        _fail(str(e))
    _check(result)
    names = "with names" if result.value.share_names else "without names"
    console.print(f"[green]✓[/] Sharing profile set to {result.value.sharing_profile.value} ({names})")
    sys.exit(EXIT_CODE_PASS)


@app.command("delete-user-data")
def delete_user_data(
    user_id: str = typer.Argument(..., help="User id whose rows are deleted"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip the confirmation prompt"),
    config: Optional[str] = CONFIG_OPTION,
):
    """Delete every synced row for one user in the dataset."""
    if not yes and not typer.confirm(f"Delete all synced rows for '{user_id}'?"):
        console.print("Cancelled")
        sys.exit(EXIT_CODE_FAIL)

    try:
        result = _run(config, lambda facade: facade.delete_user_data(user_id))
    except (FileNotFoundError, UsageSyncError) as e:
        _fail(str(e))

    report = result.value
    if report is not None:
        console.print(f"Matched {report.matched} rows, deleted {report.deleted}, failed {report.failed}")
        for message in report.errors[:5]:
            console.print(f"[dim]- {message}[/]")
    _check(result)
    sys.exit(EXIT_CODE_PASS)


@app.command("set-shared-key")
def set_shared_key(
    shared_key: str = typer.Option(..., prompt=True, hide_input=True, help="Storage account key"),
    config: Optional[str] = CONFIG_OPTION,
):
    """Store the storage account shared key in the OS keyring."""
    try:
        settings = load_settings(config)
        secret_store.set_shared_key(settings.storage_account or "", shared_key)
    except (FileNotFoundError, UsageSyncError) as e:
        _fail(str(e))
    console.print("[green]✓[/] Shared key stored in the OS keyring")
    sys.exit(EXIT_CODE_PASS)


@app.command("clear-shared-key")
def clear_shared_key(config: Optional[str] = CONFIG_OPTION):
    """Remove the stored shared key from the OS keyring."""
    try:
        settings = load_settings(config)
        removed = secret_store.clear_shared_key(settings.storage_account or "")
    except (FileNotFoundError, UsageSyncError) as e:
        _fail(str(e))
    console.print("[green]✓[/] Shared key removed" if removed else "No shared key was stored")
    sys.exit(EXIT_CODE_PASS)


@app.command("export-config")
def export_config(config: Optional[str] = CONFIG_OPTION):
    """Print a shareable copy of the settings (no secrets or identifiers)."""
    try:
        settings = load_settings(config)
    except (FileNotFoundError, UsageSyncError) as e:
        _fail(str(e))
    console.print_json(json.dumps(export_settings(settings)))
    sys.exit(EXIT_CODE_PASS)


def _format_tokens(count: int) -> str:
    return f"{count:,}"


def _display_settings(settings: SyncSettings):
    table = Table(title="AI Usage Sync")
    table.add_column("Setting")
    table.add_column("Value")
    table.add_row("Backend", settings.backend.value)
    table.add_row("Configured", "yes" if settings.is_configured else "no")
    table.add_row("Storage account", settings.storage_account or "-")
    table.add_row("Table", settings.table_name)
    table.add_row("Dataset", settings.dataset_id)
    table.add_row("Auth mode", settings.auth_mode.value)
    table.add_row("Sharing profile", settings.sharing_profile.value)
    table.add_row("User identity", settings.user_identity_mode.value)
    table.add_row("Lookback days", str(settings.lookback_days))
    table.add_row("Share names", "yes" if settings.share_names else "no")
    table.add_row("Consent recorded", "yes" if settings.share_consent_at else "no")
    console.print(table)


def _display_cycle_report(report):
    console.print(f"\n[bold]Sync {report.status.value}[/bold]")
    if report.reason:
        console.print(f"Reason: {report.reason}")
    if report.stats is not None:
        console.print(
            f"Files in window: {report.stats.files_in_window} "
            f"(cache hits {report.stats.cache_hits}, misses {report.stats.cache_misses})"
        )
    console.print(f"Rows computed: {report.rows_computed}, uploaded: {report.rows_uploaded}")
    for failure in report.batch_failures:
        console.print(f"[red]Batch {failure.partition_key} ({failure.row_count} rows) failed:[/] {failure.message}")


def _display_aggregate(aggregate):
    console.print(f"\n[bold]Usage {aggregate.start_date} to {aggregate.end_date}[/bold]")
    console.print("-" * 40)
    console.print(f"Input tokens: {_format_tokens(aggregate.input_tokens)}")
    console.print(f"Output tokens: {_format_tokens(aggregate.output_tokens)}")
    console.print(f"Interactions: {_format_tokens(aggregate.interactions)}")

    if not aggregate.groups:
        return
    table = Table()
    for name in aggregate.group_by:
        table.add_column(name)
    table.add_column("Total tokens", justify="right")
    table.add_column("Interactions", justify="right")
    for group in aggregate.groups:
        table.add_row(*group.key, _format_tokens(group.total_tokens), _format_tokens(group.interactions))
    console.print(table)


if __name__ == "__main__":
    app()
