import datetime
import decimal
import re
import time
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence
from urllib.parse import quote, unquote, urlsplit, urlunsplit

import structlog
from sqlalchemy import text
from sqlalchemy.dialects import postgresql
from sqlalchemy.engine import URL, make_url
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from ..config import ShellSettings
from ..state import APP_STATE
from .base import BaseBackend

logger = structlog.get_logger(__name__)

DRIVER_NAME = "postgresql+asyncpg"
DEFAULT_PORT = 5432
_PLACEHOLDER = re.compile(r"\$(\d+)")
_PREPARER = postgresql.dialect().identifier_preparer

LIST_TABLES_SQL = """
    SELECT table_name
    FROM information_schema.tables
    WHERE table_schema = 'public'
    ORDER BY table_name
"""

LIST_DATABASES_SQL = """
    SELECT datname
    FROM pg_database
    WHERE NOT datistemplate
    ORDER BY datname
"""

DESCRIBE_SQL = """
    SELECT column_name, data_type, is_nullable, column_default
    FROM information_schema.columns
    WHERE table_name = :table_name
    ORDER BY ordinal_position
"""

INDEXES_SQL = """
    SELECT indexname, indexdef
    FROM pg_indexes
    WHERE tablename = :table_name
    ORDER BY indexname
"""

STATS_SQL = """
    SELECT relname AS table_name,
           n_live_tup AS live_rows,
           n_dead_tup AS dead_rows,
           seq_scan,
           idx_scan,
           pg_size_pretty(pg_total_relation_size(relid)) AS total_size,
           last_vacuum,
           last_autovacuum,
           last_analyze
    FROM pg_stat_user_tables
    {where}
    ORDER BY pg_total_relation_size(relid) DESC
"""

TOP_SQL = """
    SELECT pid,
           usename,
           datname,
           state,
           now() - query_start AS duration,
           wait_event_type,
           left(query, 200) AS query
    FROM pg_stat_activity
    WHERE state IS NOT NULL
      AND state <> 'idle'
      AND pid <> pg_backend_pid()
    ORDER BY duration DESC NULLS LAST
"""


@dataclass
class QueryResult:
    rows: Optional[List[Dict[str, Any]]]
    rowcount: int
    elapsed_ms: float

    @property
    def returns_rows(self) -> bool:
        return self.rows is not None


def encode_postgres_uri(uri: str) -> str:
    """
    Percent-encodes the password of a connection URI when it was typed raw
    (e.g. `p@ss#1`). Already-encoded passwords are left alone.
    """
    try:
        parts = urlsplit(uri)
        password = parts.password
    except ValueError:
        logger.warning("postgres.uri.unparseable")
        return uri
    if not password or unquote(password) != password:
        return uri

    userinfo, _, hostinfo = parts.netloc.rpartition("@")
    username = userinfo.split(":", 1)[0]
    netloc = f"{username}:{quote(password, safe='')}@{hostinfo}"
    return urlunsplit((parts.scheme, netloc, parts.path, parts.query, parts.fragment))


def to_sqlalchemy_url(uri: str) -> URL:
    """
    Turns a libpq-style URI (`postgres://...`) into an asyncpg SQLAlchemy URL.
    `sslmode=` is mapped onto the `ssl=` parameter asyncpg understands.
    """
    url = make_url(encode_postgres_uri(uri.strip()))
    url = url.set(drivername=DRIVER_NAME)
    if "sslmode" in url.query:
        query = dict(url.query)
        query["ssl"] = query.pop("sslmode")
        url = url.set(query=query)
    return url


def build_postgres_url(
    user: str, password: str, host: str, port: Optional[str], database: str
) -> URL:
    return URL.create(
        DRIVER_NAME,
        username=user or None,
        password=password or None,
        host=host or "localhost",
        port=int(port) if port else DEFAULT_PORT,
        database=database or None,
    )


def quote_identifier(name: str) -> str:
    """Quotes a (possibly schema-qualified) table name where PostgreSQL needs it."""
    return ".".join(_PREPARER.quote(part) for part in name.strip().split("."))


def count_placeholders(sql: str) -> int:
    """Highest `$n` placeholder index in the statement, or 0 when there is none."""
    return max((int(m) for m in _PLACEHOLDER.findall(sql)), default=0)


def coerce_param(value: str, type_name: Optional[str]) -> Any:
    """Converts a typed-in parameter value to the Python type asyncpg expects."""
    if value.strip().lower() == "null":
        return None
    if type_name in ("int2", "int4", "int8", "oid"):
        return int(value)
    if type_name in ("float4", "float8"):
        return float(value)
    if type_name == "numeric":
        return decimal.Decimal(value)
    if type_name == "bool":
        return value.strip().lower() in ("t", "true", "1", "y", "yes", "on")
    if type_name == "date":
        return datetime.date.fromisoformat(value.strip())
    if type_name in ("timestamp", "timestamptz"):
        return datetime.datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    if type_name == "uuid":
        return uuid.UUID(value.strip())
    return value


class PostgresBackend(BaseBackend):
    """
    A PostgreSQL backend on top of SQLAlchemy's asyncio engine. One engine is
    active at a time; switching databases replaces it.
    """

    kind = "postgres"

    def __init__(
        self,
        url: URL,
        settings: Optional[ShellSettings] = None,
        engine_factory: Callable[..., AsyncEngine] = create_async_engine,
    ):
        self.url = url
        self.settings = settings or ShellSettings()
        self.engine_factory = engine_factory
        self.engine: Optional[AsyncEngine] = None

    async def _open_engine(self, url: URL) -> AsyncEngine:
        """Creates an engine and proves it works with `SELECT 1`."""
        engine = self.engine_factory(url)
        try:
            async with engine.connect() as conn:
                result = await conn.execute(text("SELECT 1"))
                if result.scalar_one() != 1:
                    raise ConnectionError("Test query 'SELECT 1' did not return 1.")
        except Exception:
            await engine.dispose()
            raise
        return engine

    async def connect(self) -> None:
        log = logger.bind(host=self.url.host, database=self.url.database)
        log.info("postgres.connect.begin")
        try:
            self.engine = await self._open_engine(self.url)
        except Exception as e:
            log.error("postgres.connect.failed", error=str(e), exc_info=APP_STATE.verbose_mode)
            raise ConnectionError(str(e)) from e
        log.info("postgres.connect.success")

    async def close(self) -> None:
        if self.engine is not None:
            await self.engine.dispose()
            self.engine = None
            logger.info("postgres.engine.disposed")

    @property
    def database_name(self) -> str:
        return self.url.database or ""

    async def use(self, database_name: str) -> None:
        new_url = self.url.set(database=database_name)
        new_engine = await self._open_engine(new_url)
        await self.close()
        self.engine, self.url = new_engine, new_url
        logger.info("postgres.use", database=database_name)

    async def _run(self, statement, params) -> QueryResult:
        log = logger.bind(database=self.database_name)
        started = time.perf_counter()
        async with self.engine.begin() as conn:
            if isinstance(statement, str):
                if params:
                    result = await conn.exec_driver_sql(statement, tuple(params))
                else:
                    result = await conn.exec_driver_sql(statement)
            else:
                result = await conn.execute(statement, params or {})
            if result.returns_rows:
                rows = [dict(row) for row in result.mappings().all()]
                rowcount = len(rows)
            else:
                rows = None
                rowcount = result.rowcount
        elapsed_ms = (time.perf_counter() - started) * 1000
        log.debug("postgres.execute.success", rowcount=rowcount, elapsed_ms=round(elapsed_ms, 2))
        return QueryResult(rows=rows, rowcount=rowcount, elapsed_ms=elapsed_ms)

    async def execute(self, sql: str, args: Sequence[Any] = ()) -> QueryResult:
        """
        Sends user SQL to the server as typed, in its own transaction.
        `args` fill the `$1..$n` placeholders positionally.
        """
        logger.debug("postgres.execute.begin", args=len(args))
        return await self._run(sql, args)

    async def parameter_types(self, sql: str) -> List[str]:
        """Asks the server which types the `$n` parameters of `sql` have."""
        async with self.engine.connect() as conn:
            raw = await conn.get_raw_connection()
            statement = await raw.driver_connection.prepare(sql)
            return [param.name for param in statement.get_parameters()]

    async def fetch(self, sql: str, params: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        """Runs one of the shell's own catalog queries, binding `:name` parameters."""
        return (await self._run(text(sql), params)).rows or []

    async def list_databases(self) -> List[str]:
        return [row["datname"] for row in await self.fetch(LIST_DATABASES_SQL)]

    async def list_names(self) -> List[str]:
        return [row["table_name"] for row in await self.fetch(LIST_TABLES_SQL)]

    async def describe(self, table: str) -> List[Dict[str, Any]]:
        return await self.fetch(DESCRIBE_SQL, {"table_name": table})

    async def count(self, table: str) -> int:
        result = await self.execute(f"SELECT COUNT(*) AS count FROM {quote_identifier(table)}")
        return int(result.rows[0]["count"])

    async def indexes(self, table: str) -> List[Dict[str, Any]]:
        return await self.fetch(INDEXES_SQL, {"table_name": table})

    async def stats(self, table: Optional[str] = None) -> List[Dict[str, Any]]:
        if table:
            return await self.fetch(
                STATS_SQL.format(where="WHERE relname = :table_name"), {"table_name": table}
            )
        return await self.fetch(STATS_SQL.format(where=""))

    async def top(self) -> List[Dict[str, Any]]:
        return await self.fetch(TOP_SQL)

    async def preview(self, table: str, limit: int) -> QueryResult:
        return await self.execute(f"SELECT * FROM {quote_identifier(table)} LIMIT {int(limit)}")
