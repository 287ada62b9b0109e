from typing import Any, Optional

import structlog
from rich.console import Console

from ..state import APP_STATE
from .commands import CommandSet, TitledResult, UsageError, parse_line
from .output_handler import IOutputHandler, RichConsoleHandler
from .session import SessionState

console = Console()
logger = structlog.get_logger(__name__)


class CommandExecutor:
    """
    Runs one line of REPL input: classifies it, dispatches it to exactly one
    handler, records `$` and hands the result to the output handler. Failures
    of a single command are reported here and never end the session.
    """

    def __init__(
        self,
        state: SessionState,
        command_set: CommandSet,
        output_handler: Optional[IOutputHandler] = None,
    ):
        self.state = state
        self.command_set = command_set
        self.output_handler = output_handler or RichConsoleHandler()

    def _remember(self, result: Any):
        """Stores data-producing results as `$`. Messages leave `$` untouched."""
        if result is None or isinstance(result, str):
            return
        if isinstance(result, TitledResult):
            if result.output_mode == "table" and result.data is self.state.last_result:
                return
            self.state.last_result = result.data
            return
        self.state.last_result = result

    async def execute(self, command_text: str) -> Any:
        command = parse_line(command_text)
        if command is None:
            return None

        log = logger.bind(command=type(command).__name__, backend=self.state.backend_kind)
        try:
            log.debug("executor.execute.begin")
            result = await command.execute(self.state, self.command_set)
            self._remember(result)
            await self.output_handler.handle_result(result, self.state)
            return result
        except UsageError as e:
            await self.output_handler.handle_error(str(e), usage=True)
        except Exception as e:
            original_exc = getattr(e, "orig_exc", e)
            log.error(
                "executor.execute.failed",
                error=str(original_exc),
                exc_info=APP_STATE.verbose_mode,
            )
            await self.output_handler.handle_error(
                f"{type(original_exc).__name__}: {original_exc}"
            )
        return None
