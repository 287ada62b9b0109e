from typing import Any, Callable, Dict, List, Optional, Tuple
from urllib.parse import parse_qs, urlsplit

import structlog
from pymongo import AsyncMongoClient

from ..config import ShellSettings
from ..interactive.literals import MongoExpression, Step
from ..interactive.session import SessionState
from ..state import APP_STATE
from .base import BaseBackend

logger = structlog.get_logger(__name__)

DEFAULT_DATABASE = "test"

# Methods the expression interpreter will call on a collection. Anything else
# is rejected before it reaches the driver.
COLLECTION_METHODS = (
    "find",
    "findOne",
    "countDocuments",
    "count",
    "estimatedDocumentCount",
    "distinct",
    "aggregate",
    "insertOne",
    "insertMany",
    "updateOne",
    "updateMany",
    "replaceOne",
    "deleteOne",
    "deleteMany",
    "getIndexes",
    "indexes",
    "createIndex",
    "dropIndex",
    "drop",
    "stats",
)
DATABASE_METHODS = ("getCollection", "getName", "getCollectionNames", "listCollections", "stats")
CURSOR_METHODS = ("limit", "skip", "sort", "toArray", "pretty", "count")


def build_client_options(uri: str) -> Dict[str, Any]:
    """
    Derives extra MongoClient options from the URI query string. When both a
    client certificate and a CA file are given, TLS is switched on with those
    files and certificate validation is relaxed.
    """
    params = parse_qs(urlsplit(uri).query)
    cert_file = params.get("tlsCertificateKeyFile")
    ca_file = params.get("tlsCAFile")
    if not (cert_file and ca_file):
        return {}
    return {
        "tls": True,
        "tlsCertificateKeyFile": cert_file[0],
        "tlsCAFile": ca_file[0],
        "tlsAllowInvalidCertificates": True,
    }


def _sort_spec(spec: Any) -> List[Tuple[str, int]]:
    if isinstance(spec, dict):
        return [(str(k), int(v)) for k, v in spec.items()]
    if isinstance(spec, str):
        return [(spec, 1)]
    raise ValueError("sort() expects an object such as {field: 1} or {field: -1}")


def _arg(args: List[Any], index: int, default: Any = None) -> Any:
    return args[index] if len(args) > index else default


def _write_result(result) -> Dict[str, Any]:
    summary: Dict[str, Any] = {"acknowledged": result.acknowledged}
    for attr, key in (
        ("inserted_id", "insertedId"),
        ("inserted_ids", "insertedIds"),
        ("matched_count", "matchedCount"),
        ("modified_count", "modifiedCount"),
        ("upserted_id", "upsertedId"),
        ("deleted_count", "deletedCount"),
    ):
        if hasattr(result, attr):
            summary[key] = getattr(result, attr)
    return summary


class MongoBackend(BaseBackend):
    """Wraps an AsyncMongoClient and the currently selected database."""

    kind = "mongo"

    def __init__(
        self,
        uri: str,
        settings: Optional[ShellSettings] = None,
        client_factory: Callable[..., Any] = AsyncMongoClient,
    ):
        self.uri = uri
        self.settings = settings or ShellSettings()
        self.client_factory = client_factory
        self.client = None
        self.db = None

    async def connect(self) -> None:
        options = build_client_options(self.uri)
        log = logger.bind(tls=bool(options))
        log.info("mongo.connect.begin")
        try:
            self.client = self.client_factory(self.uri, **options)
            await self.client.admin.command("ping")
            self.db = self.client.get_default_database(default=DEFAULT_DATABASE)
        except Exception as e:
            log.error("mongo.connect.failed", error=str(e), exc_info=APP_STATE.verbose_mode)
            await self.close()
            raise ConnectionError(str(e)) from e
        log.info("mongo.connect.success", database=self.db.name)

    async def close(self) -> None:
        if self.client is not None:
            await self.client.close()
            self.client = None
            self.db = None
            logger.info("mongo.client.closed")

    @property
    def database_name(self) -> str:
        return self.db.name if self.db is not None else ""

    async def use(self, database_name: str) -> None:
        self.db = self.client.get_database(database_name)
        logger.debug("mongo.use", database=database_name)

    async def list_databases(self) -> List[str]:
        return await self.client.list_database_names()

    async def list_names(self) -> List[str]:
        return sorted(await self.db.list_collection_names())

    # --- Driver operations used by the dot-commands ---

    async def find(
        self,
        collection: str,
        filter_doc: Optional[Dict] = None,
        projection: Optional[Dict] = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        cursor = self.db[collection].find(filter_doc or {}, projection or None)
        if limit:
            cursor = cursor.limit(limit)
        return await cursor.to_list(length=None)

    async def find_one(
        self, collection: str, filter_doc: Optional[Dict] = None, projection: Optional[Dict] = None
    ) -> Optional[Dict[str, Any]]:
        return await self.db[collection].find_one(filter_doc or {}, projection or None)

    async def count(self, collection: str, query: Optional[Dict] = None) -> int:
        return await self.db[collection].count_documents(query or {})

    async def distinct(self, collection: str, field: str, query: Optional[Dict] = None) -> List[Any]:
        return await self.db[collection].distinct(field, query or {})

    async def aggregate(self, collection: str, pipeline: List[Dict]) -> List[Dict[str, Any]]:
        cursor = await self.db[collection].aggregate(pipeline)
        return await cursor.to_list(length=None)

    async def indexes(self, collection: str) -> List[Dict[str, Any]]:
        cursor = await self.db[collection].list_indexes()
        return [dict(index) for index in await cursor.to_list(length=None)]

    async def db_stats(self) -> Dict[str, Any]:
        return await self.db.command("dbStats")

    async def collection_stats(self, collection: str) -> Dict[str, Any]:
        return await self.db.command("collStats", collection)

    async def top(self) -> List[Dict[str, Any]]:
        """Per-collection usage counters for the active database, busiest first."""
        result = await self.client.admin.command("top")
        prefix = f"{self.database_name}."
        rows = []
        for namespace, counters in result.get("totals", {}).items():
            if not namespace.startswith(prefix) or not isinstance(counters, dict):
                continue
            total = counters.get("total", {})
            rows.append(
                {
                    "collection": namespace[len(prefix):],
                    "total_ms": round(total.get("time", 0) / 1000, 3),
                    "total_count": total.get("count", 0),
                    "reads": counters.get("readLock", {}).get("count", 0),
                    "writes": counters.get("writeLock", {}).get("count", 0),
                }
            )
        return sorted(rows, key=lambda r: r["total_ms"], reverse=True)

    # --- Sandboxed expression interpreter ---

    async def evaluate(self, expression: MongoExpression, state: SessionState) -> Any:
        """
        Interprets a parsed shell expression against the active database.
        Only the whitelisted database, collection and cursor methods can run.
        """
        log = logger.bind(target=expression.target, steps=[s.name for s in expression.steps])
        log.debug("mongo.evaluate.begin")
        steps = list(expression.steps)

        if expression.target == "$":
            if steps:
                raise ValueError("'$' holds the last result and has no methods.")
            return state.last_result

        if expression.target == "db":
            if not steps:
                return {"database": self.database_name}
            first = steps.pop(0)
            if first.is_call:
                return await self._call_database(first, steps)
            collection = first.name
        elif expression.target in state.aliases:
            collection = state.aliases[expression.target]
        else:
            raise ValueError(
                f"'{expression.target}' is not defined. Use db.<collection> "
                "or run .collections to load collection aliases."
            )

        if not steps:
            return {"collection": collection, "database": self.database_name}
        return await self._call_collection(collection, steps.pop(0), steps)

    async def _call_database(self, step: Step, rest: List[Step]) -> Any:
        if step.name not in DATABASE_METHODS:
            raise ValueError(f"db.{step.name}() is not a supported method.")
        if step.name == "getCollection":
            name = _arg(step.args, 0)
            if not isinstance(name, str):
                raise ValueError("db.getCollection() expects a collection name.")
            if not rest:
                return {"collection": name, "database": self.database_name}
            return await self._call_collection(name, rest.pop(0), rest)

        if rest:
            raise ValueError(f"Cannot chain methods after db.{step.name}().")
        if step.name == "getName":
            return self.database_name
        if step.name in ("getCollectionNames", "listCollections"):
            return await self.list_names()
        return await self.db_stats()

    async def _call_collection(self, name: str, step: Step, rest: List[Step]) -> Any:
        if not step.is_call or step.name not in COLLECTION_METHODS:
            raise ValueError(f"{name}.{step.name} is not a supported method.")
        collection = self.db[name]
        args = step.args
        logger.debug("mongo.collection.call", collection=name, method=step.name)

        if step.name == "find":
            return await self._run_find(collection, args, rest)
        if step.name == "aggregate":
            return await self._run_aggregate(collection, args, rest)
        if rest:
            raise ValueError(f"Cannot chain methods after {name}.{step.name}().")

        if step.name == "findOne":
            return await collection.find_one(_arg(args, 0, {}), _arg(args, 1) or None)
        if step.name in ("countDocuments", "count"):
            return await collection.count_documents(_arg(args, 0, {}))
        if step.name == "estimatedDocumentCount":
            return await collection.estimated_document_count()
        if step.name == "distinct":
            field = _arg(args, 0)
            if not isinstance(field, str):
                raise ValueError("distinct() expects a field name.")
            return await collection.distinct(field, _arg(args, 1, {}))
        if step.name == "insertOne":
            return _write_result(await collection.insert_one(_arg(args, 0, {})))
        if step.name == "insertMany":
            documents = _arg(args, 0, [])
            if not isinstance(documents, list):
                raise ValueError("insertMany() requires an array of documents.")
            return _write_result(await collection.insert_many(documents))
        if step.name in ("updateOne", "updateMany", "replaceOne"):
            if len(args) < 2:
                raise ValueError(f"{step.name}() requires a filter and an update document.")
            options = _arg(args, 2, {}) or {}
            method = {
                "updateOne": collection.update_one,
                "updateMany": collection.update_many,
                "replaceOne": collection.replace_one,
            }[step.name]
            return _write_result(
                await method(args[0], args[1], upsert=bool(options.get("upsert", False)))
            )
        if step.name == "deleteOne":
            return _write_result(await collection.delete_one(_arg(args, 0, {})))
        if step.name == "deleteMany":
            return _write_result(await collection.delete_many(_arg(args, 0, {})))
        if step.name in ("getIndexes", "indexes"):
            return await self.indexes(name)
        if step.name == "createIndex":
            keys = _arg(args, 0)
            if not isinstance(keys, dict) or not keys:
                raise ValueError("createIndex() expects a key specification such as {field: 1}.")
            options = _arg(args, 1, {}) or {}
            return await collection.create_index(list(keys.items()), **options)
        if step.name == "dropIndex":
            index = _arg(args, 0)
            if isinstance(index, dict):
                index = list(index.items())
            await collection.drop_index(index)
            return {"ok": 1}
        if step.name == "drop":
            await collection.drop()
            return True
        return await self.collection_stats(name)

    async def _run_find(self, collection, args: List[Any], rest: List[Step]) -> Any:
        filter_doc = _arg(args, 0, {}) or {}
        projection = _arg(args, 1)
        # The shell accepts both find(q, {a: 1}) and find(q, {projection: {a: 1}}).
        if isinstance(projection, dict) and isinstance(projection.get("projection"), dict):
            projection = projection["projection"]

        cursor = collection.find(filter_doc, projection or None)
        has_limit = False
        for step in rest:
            if not step.is_call or step.name not in CURSOR_METHODS:
                raise ValueError(f"Cursor method '{step.name}' is not supported.")
            if step.name == "count":
                return await collection.count_documents(filter_doc)
            if step.name == "limit":
                cursor = cursor.limit(int(_arg(step.args, 0, 0)))
                has_limit = True
            elif step.name == "skip":
                cursor = cursor.skip(int(_arg(step.args, 0, 0)))
            elif step.name == "sort":
                cursor = cursor.sort(_sort_spec(_arg(step.args, 0, {})))

        if not has_limit:
            cursor = cursor.limit(self.settings.default_find_limit)
        return await cursor.to_list(length=None)

    async def _run_aggregate(self, collection, args: List[Any], rest: List[Step]) -> Any:
        pipeline = _arg(args, 0, [])
        if not isinstance(pipeline, list):
            raise ValueError("aggregate() expects a pipeline array.")
        for step in rest:
            if not step.is_call or step.name not in ("toArray", "pretty"):
                raise ValueError(f"Cursor method '{step.name}' is not supported after aggregate().")
        cursor = await collection.aggregate(pipeline)
        return await cursor.to_list(length=None)
