import structlog
from prompt_toolkit import PromptSession
from prompt_toolkit.filters import Condition
from prompt_toolkit.history import FileHistory
from prompt_toolkit.key_binding import KeyBindings

from ..backends.base import BaseBackend
from ..config import ShellSettings
from .commands import CommandSet
from .completer import DbxCompleter
from .executor import CommandExecutor, console
from .output_handler import RichConsoleHandler
from .session import SessionState

logger = structlog.get_logger(__name__)


async def run_repl(backend: BaseBackend, command_set: CommandSet, settings: ShellSettings):
    """
    The Read-Eval-Print-Loop of a connected shell. Returns when the user
    exits; the backend is closed on the way out.
    """
    history_file = settings.history_file(backend.kind)
    history_file.parent.mkdir(parents=True, exist_ok=True)

    state = SessionState(
        backend.kind, database_name=backend.database_name, pretty=settings.pretty_by_default
    )
    completer = DbxCompleter(state, command_set)
    executor = CommandExecutor(state, command_set, RichConsoleHandler(settings))
    bindings = KeyBindings()
    prompt_session = PromptSession(
        history=FileHistory(str(history_file)),
        completer=completer,
        complete_while_typing=True,
    )

    @bindings.add(
        "enter",
        filter=Condition(lambda: prompt_session.default_buffer.complete_state is not None),
    )
    def _(event):
        """Applies the current completion instead of submitting."""
        event.current_buffer.complete_state.current_completion.apply_completion(
            event.current_buffer
        )

    prompt_session.key_bindings = bindings

    try:
        await command_set.refresh_aliases(state)
    except Exception as e:
        logger.warning("repl.aliases.failed", error=str(e))

    console.print(
        f"[bold green]✅ Connected to {backend.kind}[/bold green] "
        f"(database: [cyan]{state.database_name or '-'}[/cyan]). Type .help for commands."
    )
    logger.info("repl.started", backend=backend.kind, database=state.database_name)

    try:
        while state.is_running:
            try:
                command_text = await prompt_session.prompt_async(state.prompt)
                await executor.execute(command_text)
            except KeyboardInterrupt:
                print()
                continue
            except EOFError:
                print()
                state.is_running = False
    finally:
        await backend.close()
        logger.info("repl.stopped", backend=backend.kind)

    console.print("👋 Bye!")
