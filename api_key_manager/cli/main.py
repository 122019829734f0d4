"""
CLI interface for the API Key Manager.

Inspects provider configuration from the command line. Each command starts
its own in-memory engine, so nothing here changes a running service.
"""

import logging
import sys
from typing import Optional

import typer
import yaml
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from api_key_manager.config.loader import (
    KeyManagerConfig,
    build_engine,
    default_config,
    load_config,
)
from api_key_manager.service.handlers import KeyService, mask_credential

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1

CONFIG_OPTION = typer.Option(
    None,
    "--config",
    "-c",
    help="Provider configuration YAML (defaults to environment variables)"
)


def configure_logging(verbose: bool = False) -> None:
    """Route library logging through Rich on stderr."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True
    )


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging")
):
    """API Key Manager CLI."""
    configure_logging(verbose)
    if ctx.invoked_subcommand is None:
        console.print("API Key Manager - Use --help to see available commands")


def _load(config_path: Optional[str]) -> KeyManagerConfig:
    if config_path is None:
        return default_config()
    return load_config(config_path)


def _service(config_path: Optional[str]) -> KeyService:
    return KeyService(build_engine(_load(config_path)))


@app.command()
def validate(config_path: str = typer.Argument(..., help="Provider configuration YAML")):
    """Validate a provider configuration file."""
    try:
        config = load_config(config_path)
    except (FileNotFoundError, ValueError, yaml.YAMLError) as e:
        console.print(f"[red]Invalid configuration:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    table = Table(title="Providers")
    table.add_column("Provider")
    table.add_column("Key source")
    table.add_column("Backup source")
    table.add_column("On stale")
    for name, provider in config.providers.items():
        key_source = f"env:{provider.key_env}" if provider.key_env else ("static" if provider.key else "-")
        backup = provider.backup_source()
        table.add_row(
            name,
            key_source,
            backup.describe() if backup else "-",
            provider.on_stale.value
        )
    console.print(table)
    console.print(f"[green]✓[/] {len(config.providers)} provider(s) configured")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def status(config_path: Optional[str] = CONFIG_OPTION):
    """Show which providers the configuration serves and how they rotate."""
    try:
        config = _load(config_path)
        engine = build_engine(config)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    if not engine.providers:
        console.print("[bold yellow]No providers configured[/]")
        console.print("Set <PROVIDER>_KEY environment variables or pass --config")
        sys.exit(EXIT_CODE_PASS)

    cadence = engine.rotation_schedule()
    table = Table(title="Configured Providers")
    table.add_column("Provider")
    table.add_column("Rotation")
    table.add_column("Backup source")
    for provider in engine.providers:
        backup = config.get_provider_config(provider).backup_source()
        table.add_row(provider, cadence[provider], backup.describe() if backup else "-")
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def schedule(config_path: Optional[str] = CONFIG_OPTION):
    """Show the rotation schedule of each configured provider."""
    try:
        _, payload = _service(config_path).list_providers()
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    table = Table(title="Rotation Schedule")
    table.add_column("Provider")
    table.add_column("Rotation")
    for provider, cadence in payload["rotationSchedule"].items():
        table.add_row(provider, cadence)
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def get(
    provider: str = typer.Argument(..., help="Provider identifier"),
    config_path: Optional[str] = CONFIG_OPTION,
    reveal: bool = typer.Option(False, "--reveal", help="Print the full credential")
):
    """Fetch the active credential for a provider."""
    try:
        status_code, payload = _service(config_path).get_credential(provider, client="cli")
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    if status_code != 200:
        console.print(f"[red]Error:[/] {payload['error']}")
        sys.exit(EXIT_CODE_FAIL)

    key = payload["key"] if reveal else mask_credential(payload["key"])
    console.print(f"[bold]Provider:[/bold] {provider}")
    console.print(f"Key: {key}", markup=False)
    console.print(f"Last rotation: {payload['rotation']['last']}")
    console.print(f"Next rotation: {payload['rotation']['next']}")
    sys.exit(EXIT_CODE_PASS)


@app.command("check-backup")
def check_backup(
    provider: str = typer.Argument(..., help="Provider identifier"),
    config_path: Optional[str] = CONFIG_OPTION
):
    """Check that a provider's backup credential resolves. Nothing is rotated."""
    try:
        provider_config = _load(config_path).get_provider_config(provider)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    if provider_config is None:
        console.print(f"[red]Error:[/] Provider not found: {provider}")
        sys.exit(EXIT_CODE_FAIL)

    source = provider_config.backup_source()
    if source is None:
        console.print(f"[red]✗[/] No backup configured for {provider}")
        sys.exit(EXIT_CODE_FAIL)

    value = source.fetch()
    if value is None:
        console.print(f"[red]✗[/] Backup for {provider} ({source.describe()}) does not resolve")
        sys.exit(EXIT_CODE_FAIL)

    console.print(f"[green]✓[/] Backup for {provider} resolves from {source.describe()}")
    console.print(f"Backup key: {mask_credential(value)}", markup=False)
    sys.exit(EXIT_CODE_PASS)


if __name__ == "__main__":
    app()
