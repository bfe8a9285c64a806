"""
Nord-themed console output and logger setup.

Every command prints through the shared ``console`` so that colours can be
disabled in one place (``DISABLE_COLORS=true``) and so that the rich log
handler and progress displays never fight over the terminal.
"""

import logging
import os
import shutil
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Union

import pyfiglet
from rich import box
from rich.align import Align
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table
from rich.text import Text
from rich.theme import Theme

from n8nctl import APP_NAME, VERSION

DISABLE_COLORS: bool = os.environ.get("DISABLE_COLORS", "false").lower() == "true"
LOG_FORMAT: str = "[%(asctime)s] [%(levelname)s] %(message)s"
LOG_DATE_FORMAT: str = "%Y-%m-%d %H:%M:%S"
LOGGER_NAME: str = "n8nctl"


# ----------------------------------------------------------------
# Nord-Themed Colors and Theme Setup
# ----------------------------------------------------------------
class NordColors:
    """Nord color palette definitions for consistent UI styling."""

    POLAR_NIGHT_1: str = "#2E3440"
    POLAR_NIGHT_3: str = "#434C5E"
    POLAR_NIGHT_4: str = "#4C566A"
    SNOW_STORM_1: str = "#D8DEE9"
    SNOW_STORM_2: str = "#E5E9F0"
    FROST_1: str = "#8FBCBB"
    FROST_2: str = "#88C0D0"
    FROST_3: str = "#81A1C1"
    FROST_4: str = "#5E81AC"
    RED: str = "#BF616A"
    ORANGE: str = "#D08770"
    YELLOW: str = "#EBCB8B"
    GREEN: str = "#A3BE8C"
    PURPLE: str = "#B48EAD"

    @classmethod
    def get_frost_gradient(cls, steps: int = 4) -> List[str]:
        """Returns a gradient using the frost color palette."""
        frosts = [cls.FROST_1, cls.FROST_2, cls.FROST_3, cls.FROST_4]
        return frosts[:steps]


nord_theme = Theme(
    {
        "banner": f"bold {NordColors.FROST_2}",
        "header": f"bold {NordColors.FROST_2}",
        "info": NordColors.GREEN,
        "warning": NordColors.YELLOW,
        "error": NordColors.RED,
        "debug": NordColors.POLAR_NIGHT_3,
        "success": NordColors.GREEN,
    }
)

console = Console(theme=nord_theme, no_color=DISABLE_COLORS)

# Status word -> theme style, shared by every status table.
STATUS_STYLES: Dict[str, str] = {
    "pending": "debug",
    "skipped": "debug",
    "in_progress": "warning",
    "warning": "warning",
    "success": "success",
    "ok": "success",
    "online": "success",
    "active": "success",
    "failed": "error",
    "missing": "error",
    "inactive": "error",
}


# ----------------------------------------------------------------
# UI Helper Functions
# ----------------------------------------------------------------
def create_header(title: str = APP_NAME) -> Panel:
    """
    Generate an ASCII art header with gradient styling using Pyfiglet.
    The banner is built line-by-line into a Rich Text object to avoid stray markup tokens.
    """
    term_width, _ = shutil.get_terminal_size((80, 24))
    fonts: List[str] = ["slant", "small", "mini"]
    if term_width < 60:
        fonts = fonts[1:]

    ascii_art = ""
    for font in fonts:
        try:
            fig = pyfiglet.Figlet(font=font, width=min(term_width - 10, 120))
            ascii_art = fig.renderText(title)
            if ascii_art.strip():
                break
        except pyfiglet.FigletError:
            continue

    ascii_lines = [line for line in ascii_art.splitlines() if line.strip()] or [title]
    colors = NordColors.get_frost_gradient(len(ascii_lines))
    combined_text = Text()
    for i, line in enumerate(ascii_lines):
        combined_text.append(Text(line, style=f"bold {colors[i % len(colors)]}"))
        if i < len(ascii_lines) - 1:
            combined_text.append("\n")

    return Panel(
        Align.center(combined_text),
        border_style=NordColors.FROST_1,
        padding=(1, 2),
        title=Text(f"{APP_NAME} v{VERSION}", style=f"bold {NordColors.SNOW_STORM_2}"),
        title_align="right",
        subtitle=Text("n8n Host Maintenance", style=f"bold {NordColors.SNOW_STORM_1}"),
        subtitle_align="center",
        box=box.ROUNDED,
    )


def print_header(title: str = APP_NAME) -> None:
    console.print(create_header(title))


def print_message(
    text: str, style: str = NordColors.FROST_2, prefix: str = "•"
) -> None:
    """Print a styled message with a prefix."""
    console.print(f"[{style}]{prefix} {text}[/{style}]")


def print_success(message: str) -> None:
    print_message(message, NordColors.GREEN, "✓")


def print_warning(message: str) -> None:
    print_message(message, NordColors.YELLOW, "⚠")


def print_error(message: str) -> None:
    print_message(message, NordColors.RED, "✗")


def print_step(message: str) -> None:
    print_message(message, NordColors.FROST_2, "→")


def print_section(title: str) -> None:
    """Print a section header."""
    console.print()
    console.print(f"[bold {NordColors.FROST_3}]{title}[/]")
    console.print(f"[{NordColors.FROST_3}]{'─' * len(title)}[/]")


def display_panel(
    message: str, style: str = NordColors.FROST_2, title: Optional[str] = None
) -> None:
    """Display a styled panel with a message."""
    panel = Panel(
        Text(message, style=style),
        border_style=style,
        padding=(1, 2),
        title=f"[bold {style}]{title}[/]" if title else None,
        box=box.ROUNDED,
    )
    console.print(panel)


def status_markup(status: str) -> str:
    style = STATUS_STYLES.get(status.lower(), "info")
    return f"[{style}]{status.upper()}[/{style}]"


def status_table(
    title: str, columns: Sequence[str], rows: Sequence[Sequence[str]], status_column: int = 1
) -> Table:
    """Build a rounded status table; the status column is colour-coded."""
    table = Table(title=title, style="banner", box=box.ROUNDED)
    for column in columns:
        table.add_column(column, style="header" if column == columns[0] else "info")
    for row in rows:
        cells = list(row)
        if 0 <= status_column < len(cells):
            cells[status_column] = status_markup(cells[status_column])
        table.add_row(*cells)
    return table


def format_size(num_bytes: float) -> str:
    """Convert a byte count into a human-readable string."""
    for unit in ["B", "KB", "MB", "GB", "TB"]:
        if abs(num_bytes) < 1024:
            return f"{num_bytes:.1f} {unit}"
        num_bytes /= 1024
    return f"{num_bytes:.1f} PB"


# ----------------------------------------------------------------
# Logger Setup
# ----------------------------------------------------------------
def setup_logger(
    log_file: Optional[Union[str, Path]] = None, level: Optional[str] = None
) -> logging.Logger:
    """Set up the n8nctl logger with a rich console handler and a file handler."""
    level_name = (level or os.environ.get("LOG_LEVEL", "INFO")).upper()
    console_level = getattr(logging, level_name, logging.INFO)

    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(logging.DEBUG)
    logger.propagate = False

    for h in logger.handlers[:]:
        logger.removeHandler(h)
        h.close()

    console_handler = RichHandler(console=console, rich_tracebacks=True, show_path=False)
    console_handler.setLevel(console_level)
    logger.addHandler(console_handler)

    if log_file is None:
        return logger

    log_path = Path(log_file)
    try:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_path)
    except OSError as e:
        logger.warning(f"Could not open log file {log_path}: {e}; logging to console only.")
        return logger

    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(logging.Formatter(LOG_FORMAT, LOG_DATE_FORMAT))
    logger.addHandler(file_handler)

    try:
        os.chmod(str(log_path), 0o600)
    except OSError as e:
        logger.warning(f"Could not set permissions on log file {log_path}: {e}")

    return logger


def get_logger() -> logging.Logger:
    return logging.getLogger(LOGGER_NAME)
