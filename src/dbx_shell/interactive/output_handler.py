import json
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from rich import box
from rich.console import Console
from rich.markup import escape
from rich.pretty import Pretty
from rich.syntax import Syntax
from rich.table import Table

from ..config import ShellSettings
from ..utils import safe_serialize
from .commands import TitledResult
from .session import SessionState

# A single, shared console instance for all rich output in the REPL
console = Console()

NO_RESULTS = "No results"


class IOutputHandler(ABC):
    """
    An abstract interface for presenting command results. The executor only
    hands results over; how they look is decided here.
    """

    @abstractmethod
    async def handle_result(self, result: Any, state: SessionState):
        """
        Processes and displays the final result of a command.

        Args:
            result: The raw value returned by the command handler.
            state: The session, consulted for the pretty-output toggle.
        """
        pass

    @abstractmethod
    async def handle_error(self, message: str, usage: bool = False):
        pass


class RichConsoleHandler(IOutputHandler):
    """
    Renders results to the terminal with rich: tables for row/document sets,
    syntax-highlighted JSON for structured values, and plain lines for
    confirmation messages.
    """

    def __init__(self, settings: Optional[ShellSettings] = None):
        self.settings = settings or ShellSettings()

    async def handle_result(self, result: Any, state: SessionState):
        if result is None:
            return

        # Simple confirmation messages
        if isinstance(result, str):
            console.print(escape(result), highlight=False)
            return

        if isinstance(result, TitledResult):
            # Counts and other scalars share the title line
            if result.title and not isinstance(result.data, (dict, list, tuple, type(None))):
                value = safe_serialize(result.data, shell_style=True)
                console.print(f"[bold]{escape(result.title)}[/bold] {escape(str(value))}")
                return
            if result.title:
                console.print(f"[bold]{escape(result.title)}[/bold]", highlight=False)
            self.render(result.data, state.pretty, result.output_mode)
            if result.footer:
                console.print(f"[dim]{escape(result.footer)}[/dim]", highlight=False)
            return

        self.render(result, state.pretty)

    async def handle_error(self, message: str, usage: bool = False):
        if usage:
            console.print(f"[bold yellow]⚠️  Usage:[/bold yellow] {escape(message)}")
        else:
            console.print(f"[bold red]❌ Error:[/bold red] {escape(message)}")

    def render(self, data: Any, pretty: bool, output_mode: Optional[str] = None):
        """Renders one value; `output_mode="table"` forces tabular output."""
        if data is None:
            return

        if isinstance(data, dict) and set(data) == {"error"}:
            console.print(f"[bold red]❌ Error:[/bold red] {escape(str(data['error']))}")
            return

        if isinstance(data, (list, tuple)) and not data:
            console.print(NO_RESULTS)
            return

        is_list_of_dicts = isinstance(data, (list, tuple)) and all(
            isinstance(i, dict) for i in data
        )

        if is_list_of_dicts and (output_mode == "table" or (not pretty and output_mode is None)):
            console.print(self.build_table(list(data)))
            return

        if isinstance(data, (list, tuple)) and not pretty and not any(
            isinstance(i, (dict, list, tuple)) for i in data
        ):
            for item in safe_serialize(list(data), shell_style=True):
                console.print(f" - {escape(str(item))}", highlight=False)
            return

        if isinstance(data, (dict, list, tuple)):
            self.print_json(data)
            return

        console.print(Pretty(safe_serialize(data, shell_style=True)))

    def print_json(self, data: Any):
        try:
            formatted_json = json.dumps(safe_serialize(data), indent=2, default=str)
        except (TypeError, ValueError):
            console.print(Pretty(data))
            return
        console.print(Syntax(formatted_json, "json", theme="monokai", word_wrap=True))

    def build_table(self, rows: List[Dict[str, Any]], title: Optional[str] = None) -> Table:
        headers: List[str] = []
        for row in rows:
            for key in map(str, row):
                if key not in headers:
                    headers.append(key)

        table = Table(
            title=f"[bold]{escape(title)}[/bold]" if title else None,
            box=box.ROUNDED,
            caption=f"{len(rows)} row(s)",
        )
        for header in headers:
            table.add_column(
                escape(str(header)),
                style="cyan",
                overflow="fold",
                max_width=self.settings.max_column_width,
            )
        for row in safe_serialize(rows, shell_style=True):
            table.add_row(*(self._cell(row.get(h)) for h in headers))
        return table

    @staticmethod
    def _cell(value: Any) -> str:
        if value is None:
            return ""
        if isinstance(value, (dict, list)):
            return escape(json.dumps(value, default=str))
        return escape(str(value))
