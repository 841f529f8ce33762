"""Console utility functions for formatting and output."""

import click
from typing import Any, Optional

from colorama import Fore, Style, init
from rich.console import Console
from rich.table import Table
from rich.tree import Tree

init(autoreset=True)


# Status symbols for consistent iconography
STATUS_SYMBOLS = {
    'success': '✨',
    'info': '💡',
    'warning': '⚠️',
    'error': '❌',
    'check': '✅',
    'list': '📋',
    'fetch': '📦',
}


def _get_console() -> Optional[Console]:
    """Get Rich console instance."""
    try:
        return Console()
    except (OSError, ValueError):
        return None


def _rich_echo(message: str, color: str = "white", style: str = None, bold: bool = False, symbol: str = None):
    """Echo message with Rich formatting or colorama fallback."""
    if style is not None:
        color = style

    if symbol and symbol in STATUS_SYMBOLS:
        message = f"{STATUS_SYMBOLS[symbol]} {message}"

    console = _get_console()
    if console:
        style_str = f"bold {color}" if bold else color
        # Paths and URLs must never be wrapped or read as markup
        console.print(message, style=style_str, soft_wrap=True, markup=False, highlight=False)
        return

    color_map = {
        'red': Fore.RED,
        'green': Fore.GREEN,
        'yellow': Fore.YELLOW,
        'blue': Fore.BLUE,
        'cyan': Fore.CYAN,
        'white': Fore.WHITE,
        'muted': Fore.WHITE,
    }
    color_code = color_map.get(color, Fore.WHITE)
    style_code = Style.BRIGHT if bold else ""
    click.echo(f"{color_code}{style_code}{message}{Style.RESET_ALL}")


def _rich_success(message: str, symbol: str = None):
    """Display success message with green color and bold styling."""
    _rich_echo(message, color="green", symbol=symbol, bold=True)


def _rich_error(message: str, symbol: str = None):
    """Display error message with red color."""
    _rich_echo(message, color="red", symbol=symbol)


def _rich_warning(message: str, symbol: str = None):
    """Display warning message with yellow color."""
    _rich_echo(message, color="yellow", symbol=symbol)


def _rich_info(message: str, symbol: str = None):
    """Display info message with blue color."""
    _rich_echo(message, color="blue", symbol=symbol)


def _create_deps_table(rows: list, title: str = "Vendored Dependencies") -> Table:
    """Create a Rich table listing vendored dependencies.

    Args:
        rows: Sequence of (name, kind, source, resolved ref) tuples
        title: Table title
    """
    table = Table(title=f"{STATUS_SYMBOLS['list']} {title}", show_header=True, header_style="bold cyan")
    table.add_column("Name", style="bold white")
    table.add_column("Kind", style="cyan")
    table.add_column("Source", style="white", overflow="fold")
    table.add_column("Resolved", style="dim")

    for row in rows:
        table.add_row(*(str(cell) if cell is not None else "-" for cell in row))
    return table


def _print_renderable(renderable: Any) -> None:
    """Print a Rich renderable (table, tree) or its plain string form."""
    console = _get_console()
    if console:
        console.print(renderable)
    else:
        click.echo(str(renderable))


def _create_tree(label: str) -> Tree:
    """Create a Rich tree rooted at ``label``."""
    return Tree(label, guide_style="dim")
