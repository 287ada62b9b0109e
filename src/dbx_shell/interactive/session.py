import re
from typing import Any, Dict, Iterable, Optional

_ALIAS_UNSAFE = re.compile(r"[-\s]")


def normalize_alias(name: str) -> str:
    """`my-logs 2024` -> `my_logs_2024`. Case is preserved."""
    return _ALIAS_UNSAFE.sub("_", name)


class SessionState:
    """
    Holds the state of one interactive shell session.

    The object is created once when the REPL starts and is passed explicitly
    to every command handler. It is discarded when the process exits.
    """

    def __init__(self, backend_kind: str, database_name: str = "", pretty: bool = False):
        # "mongo" or "postgres"; selects the dot-command set and prompt.
        self.backend_kind = backend_kind

        # Name of the currently selected database.
        self.database_name = database_name

        # The `$` value: result of the last data-producing command.
        self.last_result: Any = None

        # Pretty output renders results as structured JSON instead of tables.
        self.pretty: bool = pretty

        # Maps a normalised alias (e.g. "audit_log") to the real collection
        # or table name (e.g. "audit-log") in the current database.
        self.aliases: Dict[str, str] = {}

        # A flag to control the main loop of the REPL.
        self.is_running: bool = True

    @property
    def prompt(self) -> str:
        return f"{self.database_name} > "

    def set_aliases(self, names: Iterable[str]):
        self.aliases = {}
        for name in names:
            self.aliases[normalize_alias(name)] = name

    def resolve_alias(self, name: str) -> Optional[str]:
        return self.aliases.get(name)

    def resolve_name(self, name: str) -> str:
        """Returns the real collection/table for an alias, or `name` unchanged."""
        return self.aliases.get(name, name)
