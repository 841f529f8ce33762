"""Command-line interface for profile-vendor (pvendor)."""

import logging
import sys

import click
from colorama import init, Fore, Style
from rich.logging import RichHandler

from pvendor_cli.version import get_version
from pvendor_cli.config import DEFAULT_CONFIG, get_config, get_config_file, update_config
from pvendor_cli.errors import VendorError
from pvendor_cli.deps.vendor import VendoringOrchestrator
from pvendor_cli.utils.console import (
    _rich_error, _rich_info, _get_console
)
from pvendor_cli.commands.deps import deps

# Initialize colorama for the plain error path in main()
init(autoreset=True)

TITLE = f"{Fore.CYAN}{Style.BRIGHT}"
ERROR = f"{Fore.RED}{Style.BRIGHT}"
RESET = Style.RESET_ALL

INT_SETTINGS = ("jobs", "timeout")


def print_version(ctx, param, value):
    """Print version and exit."""
    if not value or ctx.resilient_parsing:
        return

    console = _get_console()
    if console:
        from rich.text import Text
        from rich.panel import Panel
        version_text = Text()
        version_text.append("Profile Vendor (pvendor)", style="bold cyan")
        version_text.append(f" version {get_version()}", style="white")
        console.print(Panel(
            version_text,
            border_style="cyan",
            padding=(0, 1)
        ))
    else:
        click.echo(f"{TITLE}Profile Vendor (pvendor){RESET} version {get_version()}")

    ctx.exit()


def _configure_logging(verbose: bool) -> None:
    """Route library diagnostics through Rich when --verbose is given."""
    if not verbose:
        return
    logging.basicConfig(
        level=logging.DEBUG,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(rich_tracebacks=True, show_path=False)],
    )
    # Keep GitPython's command tracing out of the way
    logging.getLogger("git").setLevel(logging.INFO)
    logging.getLogger("urllib3").setLevel(logging.INFO)


@click.group(help="Profile Vendor: resolve, fetch and vendor compliance profile dependencies")
@click.option('--version', is_flag=True, callback=print_version,
              expose_value=False, is_eager=True, help="Show version and exit.")
@click.option('--verbose', '-v', is_flag=True, help="Show debug logging")
@click.pass_context
def cli(ctx, verbose):
    """Main entry point for the pvendor CLI."""
    ctx.ensure_object(dict)
    ctx.obj['verbose'] = verbose
    _configure_logging(verbose)


# Register command groups
cli.add_command(deps)


@cli.command(help="Vendor a profile's dependencies into vendor/ and write inspec.lock")
@click.argument('profile', required=False, default=".")
@click.option('--overwrite', is_flag=True, help="Re-resolve and replace an existing lockfile and vendor directory")
@click.option('--vendor-cache', 'vendor_cache', type=click.Path(file_okay=False),
              help="Use this directory as the fetch cache and mirror the vendored dependencies into it")
@click.option('--jobs', '-j', type=click.IntRange(min=1), help="Maximum concurrent fetches")
@click.pass_context
def vendor(ctx, profile, overwrite, vendor_cache, jobs):
    """Vendor dependencies for PROFILE (defaults to the current directory)."""
    try:
        orchestrator = VendoringOrchestrator(profile, cache_dir=vendor_cache, jobs=jobs)
        orchestrator.run(overwrite=overwrite)
    except VendorError as e:
        _rich_error(str(e), symbol="error")
        sys.exit(1)


@cli.command(help="Configure pvendor")
@click.option('--show', is_flag=True, help="Show current configuration")
@click.option('--set', 'settings', multiple=True, metavar="KEY=VALUE",
              help="Set a configuration value (cache_dir, jobs, timeout)")
@click.pass_context
def config(ctx, show, settings):
    """Configure pvendor settings."""
    if settings:
        updates = {}
        for setting in settings:
            key, sep, value = setting.partition("=")
            key = key.strip()
            if not sep or key not in DEFAULT_CONFIG:
                _rich_error(
                    f"Invalid setting '{setting}'. Use KEY=VALUE with KEY one of: {', '.join(DEFAULT_CONFIG)}",
                    symbol="error",
                )
                sys.exit(1)
            if key in INT_SETTINGS:
                try:
                    parsed = int(value)
                except ValueError:
                    parsed = 0
                if parsed < 1:
                    _rich_error(f"'{key}' must be a positive integer, got '{value}'", symbol="error")
                    sys.exit(1)
                updates[key] = parsed
            else:
                updates[key] = value.strip()
        update_config(updates)
        for key, value in updates.items():
            _rich_info(f"Set {key} = {value}", symbol="check")

    if show:
        from rich.table import Table
        console = _get_console()
        current = get_config()
        config_table = Table(title="Current pvendor Configuration", show_header=True, header_style="bold cyan")
        config_table.add_column("Setting", style="bold yellow", min_width=12)
        config_table.add_column("Value", style="cyan")
        for key in sorted(current):
            config_table.add_row(key, str(current[key]))
        config_table.add_row("config file", get_config_file())
        config_table.add_row("version", get_version())
        console.print(config_table)
    elif not settings:
        _rich_info("Use --show to display configuration", symbol="info")


def main():
    """Main entry point for the CLI."""
    try:
        cli(obj={})
    except VendorError as e:
        click.echo(f"{ERROR}Error: {e}{RESET}", err=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
