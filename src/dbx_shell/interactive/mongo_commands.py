from typing import Any, Dict, List, Optional

from ..backends.mongo import MongoBackend
from ..management.export_manager import DEFAULT_EXPORT_FILE, ExportManager
from .commands import CommandSet, DotCommandSpec, TitledResult, UsageError
from .literals import parse_expression, parse_literal, split_args, unquote
from .session import SessionState

EXPORT_EXTENSIONS = (".csv", ".json")
DB_STATS_KEYS = (
    "db",
    "collections",
    "views",
    "objects",
    "avgObjSize",
    "dataSize",
    "storageSize",
    "indexes",
    "indexSize",
)
COLLECTION_STATS_KEYS = (
    "ns",
    "count",
    "size",
    "avgObjSize",
    "storageSize",
    "nindexes",
    "totalIndexSize",
    "indexSizes",
)


def _pick(stats: Dict[str, Any], keys) -> Dict[str, Any]:
    return {k: stats[k] for k in keys if k in stats}


class MongoCommandSet(CommandSet):
    """Dot-commands of the MongoDB shell."""

    title = "MongoDB Shell"
    specs = [
        DotCommandSpec(".use", ".use <dbname>", "Switch database", "cmd_use"),
        DotCommandSpec(".databases", ".databases", "List all DBs", "cmd_databases"),
        DotCommandSpec(
            ".collections", ".collections", "List collections in current DB", "cmd_collections"
        ),
        DotCommandSpec(
            ".export",
            ".export <collection> [query] [projection] [filename]",
            "Export query results",
            "cmd_export",
        ),
        DotCommandSpec(".count", ".count <collection> [query]", "Get document count", "cmd_count"),
        DotCommandSpec(
            ".distinct",
            ".distinct <collection> <field> [query]",
            "Get distinct values for a field",
            "cmd_distinct",
        ),
        DotCommandSpec(
            ".aggregate",
            ".aggregate <collection> <pipelineJSON>",
            "Run an aggregation pipeline",
            "cmd_aggregate",
        ),
        DotCommandSpec(
            ".indexes", ".indexes <collectionName>", "List indexes of a collection", "cmd_indexes"
        ),
        DotCommandSpec(
            ".findOne",
            ".findOne <collectionName> <optionalJSONFilter>",
            "Find one doc",
            "cmd_find_one",
        ),
        DotCommandSpec(
            ".stats", ".stats [collection]", "Database or collection statistics", "cmd_stats"
        ),
        DotCommandSpec(".top", ".top", "Per-collection usage for the current DB", "cmd_top"),
    ]
    examples = [
        "Aliases like: journey.find() or logs.findOne() also work",
        'Export ex: .export journey {"status":"active"} {} active_data.csv',
        'Export ex: .export journey {"status":"active"} {"status":1} active_data.csv',
        'Count ex: .count journey {"status":"active"}',
        'Distinct ex: .distinct journey "status"',
        'Distinct ex: .distinct journey "status" {"status":"active"}',
        'Aggregate ex: .aggregate journey [{$match: {"status": "active"}}, '
        '{$group: {_id: "$status", count: {$sum: 1}}}]',
    ]

    def __init__(
        self,
        backend: MongoBackend,
        export_manager: Optional[ExportManager] = None,
    ):
        super().__init__(backend)
        self.export_manager = export_manager or ExportManager()

    async def evaluate(self, state: SessionState, text: str) -> Any:
        return await self.backend.evaluate(parse_expression(text), state)

    @staticmethod
    def _query(parts: List[str], label: str = "query") -> Dict[str, Any]:
        if not parts:
            return {}
        return parse_literal(" ".join(parts), {}, label, expected=dict)

    async def cmd_use(self, state: SessionState, arg_text: str) -> str:
        name = unquote(arg_text)
        if not name:
            raise UsageError(".use <dbname>")
        await self.backend.use(name)
        state.database_name = name
        await self.refresh_aliases(state)
        return f"✅ Switched to DB: {name}"

    async def cmd_databases(self, state: SessionState, arg_text: str) -> TitledResult:
        return TitledResult(await self.backend.list_databases(), title="📚 Databases:")

    async def cmd_collections(self, state: SessionState, arg_text: str) -> TitledResult:
        names = await self.backend.list_names()
        state.set_aliases(names)
        return TitledResult(names, title=f'📁 Collections in "{state.database_name}":')

    async def cmd_export(self, state: SessionState, arg_text: str) -> str:
        args = [unquote(a) for a in split_args(arg_text)]
        if not args:
            records = self.export_manager.records_from(state.last_result)
            if records is None:
                return "⚠️  No result to export"
            path, fmt = self.export_manager.export(records, DEFAULT_EXPORT_FILE)
            return f"✅ Exported {len(records)} docs to {fmt}: {path}"

        collection, raw_filter, raw_projection, filename = (args + [None] * 4)[:4]
        if not filename:
            if raw_filter and raw_filter.endswith(EXPORT_EXTENSIONS):
                filename = raw_filter
            elif raw_projection and raw_projection.endswith(EXPORT_EXTENSIONS):
                filename = raw_projection
            else:
                filename = f"{collection}.json"

        filter_doc: Dict[str, Any] = {}
        projection: Dict[str, Any] = {}
        if raw_filter and raw_filter.startswith("{"):
            filter_doc = parse_literal(raw_filter, {}, "filter - exporting all", expected=dict)
        if raw_projection and raw_projection.startswith("{"):
            projection = parse_literal(
                raw_projection, {}, "projection - exporting full documents", expected=dict
            )

        docs = await self.backend.find(state.resolve_name(collection), filter_doc, projection)
        path, fmt = self.export_manager.export(docs, filename)
        return f"✅ Exported {len(docs)} docs to {fmt}: {path}"

    async def cmd_count(self, state: SessionState, arg_text: str) -> TitledResult:
        args = split_args(arg_text)
        if not args:
            raise UsageError(".count <collection> [<queryJSON>]")
        collection = unquote(args[0])
        count = await self.backend.count(state.resolve_name(collection), self._query(args[1:]))
        return TitledResult(count, title=f'📊 Count for "{collection}":')

    async def cmd_distinct(self, state: SessionState, arg_text: str) -> TitledResult:
        args = split_args(arg_text)
        if len(args) < 2:
            raise UsageError(".distinct <collection> <field> [<query>]")
        collection, field = unquote(args[0]), unquote(args[1])
        values = await self.backend.distinct(
            state.resolve_name(collection), field, self._query(args[2:])
        )
        return TitledResult(values, title=f'🔎 Distinct values for "{field}" ({len(values)}):')

    async def cmd_aggregate(self, state: SessionState, arg_text: str) -> TitledResult:
        args = split_args(arg_text)
        if len(args) < 2:
            raise UsageError(".aggregate <collection> <pipelineJSON>")
        collection = unquote(args[0])
        pipeline = parse_literal(" ".join(args[1:]), [], "pipeline", expected=list)
        documents = await self.backend.aggregate(state.resolve_name(collection), pipeline)
        return TitledResult(documents)

    async def cmd_indexes(self, state: SessionState, arg_text: str) -> TitledResult:
        collection = unquote(arg_text)
        if not collection:
            raise UsageError(".indexes <collectionName>")
        indexes = await self.backend.indexes(state.resolve_name(collection))
        return TitledResult(indexes, output_mode="table")

    async def cmd_find_one(self, state: SessionState, arg_text: str) -> Any:
        args = split_args(arg_text)
        if not args:
            raise UsageError(".findOne <collectionName> <optionalJSONFilter>")
        collection = unquote(args[0])
        document = await self.backend.find_one(
            state.resolve_name(collection), self._query(args[1:], "filter")
        )
        if document is None:
            return "No document found"
        return TitledResult(document)

    async def cmd_stats(self, state: SessionState, arg_text: str) -> TitledResult:
        collection = unquote(arg_text)
        if collection:
            stats = await self.backend.collection_stats(state.resolve_name(collection))
            return TitledResult(
                _pick(stats, COLLECTION_STATS_KEYS), title=f'📈 Stats for "{collection}":'
            )
        stats = await self.backend.db_stats()
        return TitledResult(_pick(stats, DB_STATS_KEYS), title=f'📈 Stats for "{state.database_name}":')

    async def cmd_top(self, state: SessionState, arg_text: str) -> TitledResult:
        rows = await self.backend.top()
        return TitledResult(
            rows, title=f'⏱️  Collection usage in "{state.database_name}":', output_mode="table"
        )
