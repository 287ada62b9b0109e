import asyncio
import functools
import logging
import sys
from typing import Optional

import structlog
import typer
from rich.console import Console
from rich.markup import escape
from rich.traceback import Traceback

from dbx_shell.backends.mongo import MongoBackend
from dbx_shell.backends.postgres import PostgresBackend, to_sqlalchemy_url
from dbx_shell.config import ShellSettings, load_settings
from dbx_shell.interactive.main import run_repl
from dbx_shell.interactive.mongo_commands import MongoCommandSet
from dbx_shell.interactive.postgres_commands import PostgresCommandSet
from dbx_shell.management.connection_manager import ConnectionManager
from dbx_shell.management.export_manager import ExportManager
from dbx_shell.state import APP_STATE


def setup_logging(verbose: bool):
    """
    Configures structlog for the entire application.
    - Default level: INFO
    - Verbose level: DEBUG
    - All logs are routed to stderr so they never mix with result output.
    """
    log_level = logging.DEBUG if verbose else logging.INFO

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.dev.ConsoleRenderer(),
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
    root_logger.addHandler(logging.StreamHandler(sys.stderr))
    root_logger.setLevel(log_level)


def handle_exceptions(func):
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        console = Console(stderr=True)
        try:
            return func(*args, **kwargs)
        except typer.Exit:
            raise
        except Exception as e:
            console.print(f"[bold red]Error:[/bold red] {e}")
            if APP_STATE.verbose_mode:
                console.print(
                    Traceback.from_exception(type(e), e, e.__traceback__, show_locals=True)
                )
            raise typer.Exit(code=1)

    return wrapper


app = typer.Typer(
    name="dbx",
    help="Interactive shells for MongoDB and PostgreSQL.",
    no_args_is_help=True,
    rich_markup_mode="markdown",
)


@app.callback()
def main_callback(
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Enable verbose DEBUG logging for detailed tracebacks.",
    ),
):
    APP_STATE.verbose_mode = verbose
    setup_logging(verbose)


async def _connect_and_run(backend, command_set, settings: ShellSettings):
    try:
        await backend.connect()
    except ConnectionError as e:
        Console(stderr=True).print(f"[bold red]❌ Connection failed:[/bold red] {escape(str(e))}")
        raise typer.Exit(code=1)
    await run_repl(backend, command_set, settings)


async def _mongo_session(uri: Optional[str], settings: ShellSettings):
    uri = uri or await ConnectionManager().prompt_mongo_uri()
    backend = MongoBackend(uri, settings)
    command_set = MongoCommandSet(backend, ExportManager())
    await _connect_and_run(backend, command_set, settings)


async def _postgres_session(uri: Optional[str], settings: ShellSettings):
    url = to_sqlalchemy_url(uri) if uri else await ConnectionManager().prompt_postgres_url()
    backend = PostgresBackend(url, settings)
    command_set = PostgresCommandSet(backend, ExportManager(), settings)
    await _connect_and_run(backend, command_set, settings)


@app.command()
@handle_exceptions
def mongo(
    uri: Optional[str] = typer.Option(
        None, "--uri", "-u", help="MongoDB connection URI. Prompted for when omitted."
    ),
):
    """
    Starts an interactive MongoDB shell.
    """
    settings = load_settings()
    asyncio.run(_mongo_session(uri, settings))


@app.command()
@handle_exceptions
def pg(
    uri: Optional[str] = typer.Option(
        None, "--uri", "-u", help="PostgreSQL connection URI. Prompted for when omitted."
    ),
):
    """
    Starts an interactive PostgreSQL shell.
    """
    settings = load_settings()
    asyncio.run(_postgres_session(uri, settings))


if __name__ == "__main__":
    app()
