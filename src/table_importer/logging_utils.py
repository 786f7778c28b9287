# src/table_importer/logging_utils.py

import time
from datetime import datetime
from rich.console import Console
from rich.text import Text
from typing import Optional

# stdout is kept free for machine-readable output (see `table-importer tick`)
console = Console(stderr=True)


class ImportLogger:
    """dbt-style console logger for import ticks."""

    def __init__(self, table_name: str):
        self.table_name = table_name
        self.start_time = None

    def _get_timestamp(self) -> str:
        return datetime.now().strftime("%H:%M:%S")

    def _line(self, label: Optional[str], label_style: str, message: str, message_style: str = "") -> Text:
        text = Text()
        text.append(f"{self._get_timestamp()} ", style="dim")
        if label:
            text.append(f"{label} ", style=label_style)
        text.append(message, style=message_style)
        return text

    def start_tick(self, retries: int = 0, offset: Optional[int] = None):
        self.start_time = time.time()
        text = self._line("START", "bold cyan", f"tick {self.table_name}", "bold")
        if offset is not None:
            text.append(f" offset={offset}", style="dim")
        if retries:
            text.append(f" retry={retries}", style="yellow")
        console.print(text)

    def info(self, message: str, prefix: str = ""):
        console.print(self._line(prefix or None, "cyan", message))

    def warning(self, message: str):
        console.print(self._line("WARN", "bold yellow", message, "yellow"))

    def error(self, message: str, exc_info: bool = False):
        console.print(self._line("ERROR", "bold red", message, "red"))
        if exc_info:
            console.print_exception(show_locals=False)

    def batch_progress(self, fetched: int, delivered: int, committed: int, remaining: int):
        text = self._line("Batch", "cyan", f"fetched {fetched}, delivered {delivered}, committed {committed} ", "white")
        text.append(f"(remaining: {remaining})", style="dim")
        console.print(text)

    def complete_tick(self, state: str, message: str, delay: Optional[float] = None):
        elapsed = time.time() - self.start_time if self.start_time else 0.0
        style = {"scheduled": "bold green", "retrying": "bold yellow", "stopped": "bold blue"}.get(state, "bold")

        text = self._line("DONE", style, f"{self.table_name} -> {state} ", "bold")
        text.append(f"[in {elapsed:.2f}s]", style="dim")
        console.print(text)

        summary = self._line(None, "", "      → ", "dim")
        summary.append(message, style="white")
        if delay is not None:
            summary.append(" (next run now)" if delay == 0 else f" (next run in {delay:g}s)", style="dim")
        console.print(summary)


def print_header(table_name: str):
    console.print()
    console.print(f"🚀 [bold cyan]Table Importer[/bold cyan] [dim]{table_name}[/dim]", justify="left")
    console.print()
