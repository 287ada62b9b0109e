from typing import Optional

import structlog
from prompt_toolkit.completion import WordCompleter
from prompt_toolkit.shortcuts import PromptSession
from rich.console import Console
from sqlalchemy.engine import URL

from ..backends.postgres import DEFAULT_PORT, build_postgres_url, to_sqlalchemy_url

# Use a single, shared console for all rich output.
console = Console()
logger = structlog.get_logger(__name__)

POSTGRES_MENU = {"1": "Enter full connection URI", "2": "Enter individual values"}


class ConnectionManager:
    """Collects connection details from the user before a shell starts."""

    def __init__(self, prompt_session: Optional[PromptSession] = None):
        self.prompt_session = prompt_session or PromptSession()

    async def _ask(self, message: str, **kwargs) -> str:
        return (await self.prompt_session.prompt_async(message, **kwargs)).strip()

    async def prompt_mongo_uri(self) -> str:
        uri = await self._ask("Enter MongoDB connection URI: ")
        if not uri:
            raise ValueError("A MongoDB connection URI is required.")
        return uri

    async def prompt_postgres_url(self) -> URL:
        """
        Offers the two ways of describing a PostgreSQL server: a full URI, or
        guided prompts for each part with the password masked.
        """
        console.print("[bold green]--- Connect to PostgreSQL ---[/bold green]")
        for key, label in POSTGRES_MENU.items():
            console.print(f"  [cyan]{key}[/cyan]. {label}")

        choice = await self._ask(
            "Choose option (1 or 2): ",
            completer=WordCompleter(list(POSTGRES_MENU)),
            default="1",
        )
        logger.debug("connection.postgres.mode", choice=choice)

        if choice == "1":
            uri = await self._ask("Enter PostgreSQL connection URI: ")
            if not uri:
                raise ValueError("A PostgreSQL connection URI is required.")
            return to_sqlalchemy_url(uri)
        if choice != "2":
            raise ValueError(f"Invalid option '{choice}'. Choose 1 or 2.")

        user = await self._ask("User: ")
        password = await self._ask("Password: ", is_password=True)
        host = await self._ask("Host (localhost): ", default="localhost")
        port = await self._ask(f"Port ({DEFAULT_PORT}): ", default=str(DEFAULT_PORT))
        database = await self._ask("Database: ")
        if port and not port.isdigit():
            raise ValueError(f"Port must be a number, got '{port}'.")
        return build_postgres_url(user, password, host, port, database)
