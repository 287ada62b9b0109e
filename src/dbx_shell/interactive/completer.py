from prompt_toolkit.completion import Completer, Completion
from prompt_toolkit.document import Document

from ..backends.mongo import COLLECTION_METHODS, DATABASE_METHODS
from .commands import CommandSet
from .session import SessionState


class DbxCompleter(Completer):
    """
    Suggests dot-commands, collection/table aliases and, in the Mongo shell,
    the supported methods after `alias.` or `db.`.
    """

    def __init__(self, state: SessionState, command_set: CommandSet):
        self.state = state
        self.command_set = command_set

    def get_completions(self, document: Document, complete_event):
        text_before_cursor = document.text_before_cursor

        # Only the first word on the line is completed.
        if " " in text_before_cursor:
            return

        if text_before_cursor.startswith("."):
            for name in self.command_set.command_names():
                if name.startswith(text_before_cursor):
                    yield Completion(name, start_position=-len(text_before_cursor))
            return

        if "." in text_before_cursor:
            if self.state.backend_kind != "mongo":
                return
            target, _, prefix = text_before_cursor.partition(".")
            if target == "db":
                methods = DATABASE_METHODS
            elif target in self.state.aliases:
                methods = COLLECTION_METHODS
            else:
                return
            for method in methods:
                if method.startswith(prefix):
                    yield Completion(
                        f"{method}(", start_position=-len(prefix), display=method
                    )
            return

        for alias, real_name in self.state.aliases.items():
            if alias.startswith(text_before_cursor):
                yield Completion(
                    alias,
                    start_position=-len(text_before_cursor),
                    display_meta=real_name if real_name != alias else self.state.backend_kind,
                )
