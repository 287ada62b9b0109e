import asyncio
import re
from abc import ABC
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from rich import box
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from .session import SessionState

console = Console()

_DOT_COMMAND = re.compile(r"^\.(?P<name>\S*)(?:\s+(?P<args>.*))?$", re.DOTALL)


class UsageError(ValueError):
    """Raised by a handler when its arguments do not match the usage string."""


@dataclass
class TitledResult:
    """A result plus the framing the output handler prints around it."""

    data: Any
    title: Optional[str] = None
    footer: Optional[str] = None
    output_mode: Optional[str] = None


@dataclass(frozen=True)
class DotCommandSpec:
    name: str
    usage: str
    description: str
    handler: str
    aliases: Tuple[str, ...] = ()


class Command(ABC):
    """Abstract base class for one parsed line of REPL input."""

    async def execute(self, state: SessionState, command_set: "CommandSet") -> Any:
        raise NotImplementedError


class DotCommand(Command):
    """Represents a built-in convenience command like `.count users {a: 1}`."""

    def __init__(self, name: str, arg_text: str = ""):
        self.name = name
        self.arg_text = arg_text

    async def execute(self, state: SessionState, command_set: "CommandSet") -> Any:
        spec = command_set.lookup(self.name)
        if spec is None:
            raise ValueError(
                f"Unknown command '.{self.name}'. Type .help for the list of commands."
            )
        return await command_set.run(spec, state, self.arg_text)


class ExpressionCommand(Command):
    """Represents a raw driver-native line: a Mongo expression or a SQL statement."""

    def __init__(self, text: str):
        self.text = text

    async def execute(self, state: SessionState, command_set: "CommandSet") -> Any:
        return await command_set.evaluate(state, self.text)


def parse_line(text: str) -> Optional[Command]:
    """Classifies a line of input. Returns None for blank input."""
    stripped = text.strip()
    if not stripped:
        return None
    match = _DOT_COMMAND.match(stripped)
    if match:
        return DotCommand(match.group("name"), (match.group("args") or "").strip())
    return ExpressionCommand(stripped)


SHARED_SPECS = [
    DotCommandSpec(".pretty", ".pretty", "Toggle pretty JSON output", "cmd_pretty"),
    DotCommandSpec(".table", ".table", "Show the last result as a table", "cmd_table"),
    DotCommandSpec(".clear", ".clear", "Clear the console screen", "cmd_clear"),
    DotCommandSpec(".help", ".help", "Show available commands", "cmd_help"),
    DotCommandSpec(
        ".exit", ".exit / .quit", "Exit the shell", "cmd_exit", aliases=(".quit",)
    ),
]


class CommandSet:
    """
    The dot-commands available in one kind of shell, plus the evaluator for
    raw lines. Subclasses add backend-specific specs and handlers; handlers
    receive the session state and the raw argument text.
    """

    title = "Database Shell"
    specs: List[DotCommandSpec] = []
    examples: List[str] = []

    def __init__(self, backend):
        self.backend = backend
        self._index: Dict[str, DotCommandSpec] = {}
        for spec in self.all_specs():
            self._index[spec.name] = spec
            for alias in spec.aliases:
                self._index[alias] = spec

    def all_specs(self) -> List[DotCommandSpec]:
        return list(self.specs) + SHARED_SPECS

    def command_names(self) -> List[str]:
        return sorted(self._index)

    def lookup(self, name: str) -> Optional[DotCommandSpec]:
        return self._index.get(f".{name.lstrip('.')}")

    async def run(self, spec: DotCommandSpec, state: SessionState, arg_text: str) -> Any:
        handler = getattr(self, spec.handler)
        if asyncio.iscoroutinefunction(handler):
            return await handler(state, arg_text)
        return handler(state, arg_text)

    async def evaluate(self, state: SessionState, text: str) -> Any:
        raise NotImplementedError

    async def refresh_aliases(self, state: SessionState):
        state.set_aliases(await self.backend.list_names())

    # --- Shared commands ---

    def cmd_pretty(self, state: SessionState, arg_text: str) -> str:
        state.pretty = not state.pretty
        return f"📦 Pretty output: {'ON' if state.pretty else 'OFF'}"

    def cmd_table(self, state: SessionState, arg_text: str) -> Any:
        if state.last_result is None or state.last_result == []:
            raise UsageError(".table No Results")
        return TitledResult(state.last_result, output_mode="table")

    def cmd_clear(self, state: SessionState, arg_text: str) -> None:
        console.clear()

    def cmd_exit(self, state: SessionState, arg_text: str) -> None:
        state.is_running = False

    def cmd_help(self, state: SessionState, arg_text: str) -> None:
        console.print()
        console.print(
            Panel(f"[bold yellow]{self.title}[/bold yellow]", expand=False, border_style="yellow")
        )
        commands_table = Table(
            title="[bold cyan]🛠  Available commands[/bold cyan]",
            box=box.MINIMAL,
            padding=(0, 1),
        )
        commands_table.add_column("Command", style="yellow", no_wrap=True)
        commands_table.add_column("Description")
        for spec in self.all_specs():
            commands_table.add_row(escape(spec.usage), escape(spec.description))
        console.print(commands_table)
        for example in self.examples:
            console.print(f"  📌 {escape(example)}", highlight=False)
        console.print()
