from typing import Any, Dict, List, Optional

import structlog
from prompt_toolkit.shortcuts import PromptSession

from ..backends.postgres import (
    PostgresBackend,
    QueryResult,
    coerce_param,
    count_placeholders,
)
from ..config import ShellSettings
from ..management.export_manager import DEFAULT_EXPORT_FILE, ExportManager
from .commands import CommandSet, DotCommandSpec, TitledResult, UsageError
from .literals import unquote
from .session import SessionState

logger = structlog.get_logger(__name__)


class PostgresCommandSet(CommandSet):
    """Dot-commands of the PostgreSQL shell. Any other line is sent as SQL."""

    title = "PostgreSQL Shell"
    specs = [
        DotCommandSpec(".tables", ".tables", "List tables in public schema", "cmd_tables"),
        DotCommandSpec(".databases", ".databases", "List all databases", "cmd_databases"),
        DotCommandSpec(".use", ".use <dbname>", "Switch to another database", "cmd_use"),
        DotCommandSpec(".describe", ".describe <table>", "Show table structure", "cmd_describe"),
        DotCommandSpec(".query", ".query <sql>", "Run SQL and show query time", "cmd_query"),
        DotCommandSpec(
            ".queryp",
            ".queryp <sql with $1, $2...>",
            "Run a parameterized query, prompting for values",
            "cmd_queryp",
        ),
        DotCommandSpec(".count", ".count <table>", "Count rows in a table", "cmd_count"),
        DotCommandSpec(".indexes", ".indexes <table>", "List indexes of a table", "cmd_indexes"),
        DotCommandSpec(
            ".export", ".export [filename]", "Export last result (default export.csv)", "cmd_export"
        ),
        DotCommandSpec(".stats", ".stats [table]", "Table sizes and scan statistics", "cmd_stats"),
        DotCommandSpec(".top", ".top", "Active sessions, longest running first", "cmd_top"),
    ]
    examples = [
        "Table aliases: typing a table name alone previews its first rows",
        "Query ex: .query SELECT * FROM users WHERE active = true",
        "Parameterized ex: .queryp SELECT * FROM users WHERE id = $1 AND status = $2",
        "Export ex: .export active_users.csv",
        "Each line runs as a prepared statement in its own transaction: "
        "send one statement per line (no BEGIN; ...; COMMIT;)",
    ]

    def __init__(
        self,
        backend: PostgresBackend,
        export_manager: Optional[ExportManager] = None,
        settings: Optional[ShellSettings] = None,
    ):
        super().__init__(backend)
        self.export_manager = export_manager or ExportManager()
        self.settings = settings or ShellSettings()
        self._prompt_session: Optional[PromptSession] = None

    async def ask(self, message: str) -> str:
        """Prompts the user for one value while the REPL is suspended."""
        if self._prompt_session is None:
            self._prompt_session = PromptSession()
        return await self._prompt_session.prompt_async(message)

    def _present(self, result: QueryResult) -> Any:
        timing = (
            f"⏱️  Query Time: {result.elapsed_ms:.3f}ms" if self.settings.show_query_time else None
        )
        if result.returns_rows:
            return TitledResult(result.rows, footer=timing)
        message = f"✅ Query OK, {result.rowcount} row(s) affected"
        return f"{message} ({result.elapsed_ms:.3f}ms)" if timing else message

    async def evaluate(self, state: SessionState, text: str) -> Any:
        candidate = text.strip().rstrip(";").strip()
        table = state.resolve_alias(candidate)
        if table is not None:
            logger.debug("postgres.alias.preview", table=table)
            result = await self.backend.preview(table, self.settings.default_find_limit)
            return self._present(result)
        return self._present(await self.backend.execute(text))

    async def cmd_tables(self, state: SessionState, arg_text: str) -> TitledResult:
        names = await self.backend.list_names()
        state.set_aliases(names)
        return TitledResult(names, title="📁 Tables:")

    async def cmd_databases(self, state: SessionState, arg_text: str) -> TitledResult:
        return TitledResult(await self.backend.list_databases(), title="📚 Databases:")

    async def cmd_use(self, state: SessionState, arg_text: str) -> str:
        name = unquote(arg_text)
        if not name:
            raise UsageError(".use <dbname>")
        await self.backend.use(name)
        state.database_name = self.backend.database_name
        await self.refresh_aliases(state)
        return f"🔁 Switched to database: {name}"

    async def cmd_describe(self, state: SessionState, arg_text: str) -> Any:
        table = unquote(arg_text)
        if not table:
            raise UsageError(".describe <table>")
        columns = await self.backend.describe(state.resolve_name(table))
        if not columns:
            return f"⚠️  Table '{table}' not found."
        return TitledResult(columns, output_mode="table")

    async def cmd_query(self, state: SessionState, arg_text: str) -> Any:
        if not arg_text.strip():
            raise UsageError(".query <sql>")
        return self._present(await self.backend.execute(arg_text))

    async def cmd_queryp(self, state: SessionState, arg_text: str) -> Any:
        sql = arg_text.strip()
        if not sql:
            raise UsageError(".queryp <sql with $1, $2...>")

        total = count_placeholders(sql)
        if total == 0:
            return self._present(await self.backend.execute(sql))

        raw_values: List[str] = []
        for index in range(1, total + 1):
            raw_values.append(await self.ask(f"Enter value for ${index}: "))

        types = await self.backend.parameter_types(sql)
        values = [
            coerce_param(raw, types[i] if i < len(types) else None)
            for i, raw in enumerate(raw_values)
        ]
        logger.debug("postgres.queryp.bound", placeholders=total, types=types)
        return self._present(await self.backend.execute(sql, values))

    async def cmd_count(self, state: SessionState, arg_text: str) -> TitledResult:
        table = unquote(arg_text)
        if not table:
            raise UsageError(".count <table>")
        count = await self.backend.count(state.resolve_name(table))
        return TitledResult(count, title=f'📊 Count for "{table}":')

    async def cmd_indexes(self, state: SessionState, arg_text: str) -> TitledResult:
        table = unquote(arg_text)
        if not table:
            raise UsageError(".indexes <table>")
        return TitledResult(
            await self.backend.indexes(state.resolve_name(table)), output_mode="table"
        )

    def cmd_export(self, state: SessionState, arg_text: str) -> str:
        filename = unquote(arg_text) or DEFAULT_EXPORT_FILE
        records: Optional[List[Dict[str, Any]]] = self.export_manager.records_from(
            state.last_result
        )
        if records is None:
            return "⚠️  No result to export"
        path, fmt = self.export_manager.export(records, filename)
        return f"✅ Exported {len(records)} rows to {fmt}: {path}"

    async def cmd_stats(self, state: SessionState, arg_text: str) -> TitledResult:
        table = unquote(arg_text)
        rows = await self.backend.stats(state.resolve_name(table) if table else None)
        return TitledResult(rows, output_mode="table")

    async def cmd_top(self, state: SessionState, arg_text: str) -> TitledResult:
        rows = await self.backend.top()
        return TitledResult(
            rows, title=f'⏱️  Active sessions on "{state.database_name}":', output_mode="table"
        )
