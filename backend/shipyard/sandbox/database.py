"""Per-session preview databases.

Each sandbox owns one database on the preview Postgres server. It is created
lazily on first sandbox creation and dropped only when the sandbox is
destroyed. The introspection helpers back the database viewer in the preview UI.
"""

import re
from collections.abc import Callable
from collections.abc import Generator
from contextlib import contextmanager
from typing import Any

from sqlalchemy import create_engine
from sqlalchemy import Engine
from sqlalchemy import text
from sqlalchemy.engine import Connection
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.pool import NullPool

from shipyard.configs.app_configs import SANDBOX_POSTGRES_CONTAINER_HOST
from shipyard.configs.app_configs import SANDBOX_POSTGRES_HOST
from shipyard.configs.app_configs import SANDBOX_POSTGRES_PASSWORD
from shipyard.configs.app_configs import SANDBOX_POSTGRES_PORT
from shipyard.configs.app_configs import SANDBOX_POSTGRES_USER
from shipyard.sandbox.models import ColumnSchema
from shipyard.sandbox.models import DatabaseInfo
from shipyard.sandbox.models import DatabaseSchema
from shipyard.sandbox.models import QueryResult
from shipyard.sandbox.models import TableData
from shipyard.sandbox.models import TableSchema
from shipyard.sandbox.naming import preview_database_name
from shipyard.utils.logger import setup_logger

logger = setup_logger()

ADMIN_DATABASE = "postgres"

_TABLE_NAME_RE = re.compile(r"^[a-zA-Z0-9_-]+$")
_SELECT_RE = re.compile(r"^\s*(select|with)\b", re.IGNORECASE)


class DatabaseProvisioningError(Exception):
    """Raised when a preview database cannot be created."""


class InvalidQueryError(ValueError):
    """Raised for table names or ad-hoc queries that are not allowed."""


def validate_table_name(table_name: str) -> str:
    if not _TABLE_NAME_RE.match(table_name):
        raise InvalidQueryError(f"Invalid table name: {table_name}")
    return table_name


def validate_read_only_query(query: str) -> str:
    """Allow a single SELECT (or WITH ... SELECT) statement."""
    stripped = query.strip().rstrip(";").strip()
    if not _SELECT_RE.match(stripped):
        raise InvalidQueryError("Only SELECT queries are allowed")
    if ";" in stripped:
        raise InvalidQueryError("Only a single statement is allowed")
    return stripped


class DatabaseProvisioner:
    """Creates, drops and inspects the preview database of each session."""

    def __init__(
        self,
        host: str = SANDBOX_POSTGRES_HOST,
        port: int = SANDBOX_POSTGRES_PORT,
        user: str = SANDBOX_POSTGRES_USER,
        password: str = SANDBOX_POSTGRES_PASSWORD,
        container_host: str = SANDBOX_POSTGRES_CONTAINER_HOST,
        engine_factory: Callable[..., Engine] = create_engine,
    ) -> None:
        self._host = host
        self._port = port
        self._user = user
        self._password = password
        self._container_host = container_host
        self._engine_factory = engine_factory

    def _url(self, database: str, host: str | None = None, driver: str = "") -> str:
        scheme = f"postgresql+{driver}" if driver else "postgresql"
        return (
            f"{scheme}://{self._user}:{self._password}"
            f"@{host or self._host}:{self._port}/{database}"
        )

    def database_url(self, session_id: str) -> str:
        """Connection URL handed to the sandbox container."""
        return self._url(
            preview_database_name(session_id), host=self._container_host
        )

    @contextmanager
    def _connect(
        self, database: str, autocommit: bool = False
    ) -> Generator[Connection, None, None]:
        kwargs: dict[str, Any] = {"poolclass": NullPool}
        if autocommit:
            # CREATE/DROP DATABASE cannot run inside a transaction
            kwargs["isolation_level"] = "AUTOCOMMIT"
        engine = self._engine_factory(self._url(database, driver="psycopg2"), **kwargs)
        try:
            with engine.connect() as connection:
                yield connection
        finally:
            engine.dispose()

    def create_database(self, session_id: str) -> str:
        """Create the session's database if missing and return its URL.

        Idempotent: an existing database is reused as is.

        Raises:
            DatabaseProvisioningError: If the database server rejects the request
        """
        db_name = preview_database_name(session_id)

        try:
            with self._connect(ADMIN_DATABASE, autocommit=True) as connection:
                exists = connection.execute(
                    text("SELECT 1 FROM pg_database WHERE datname = :name"),
                    {"name": db_name},
                ).scalar()

                if exists:
                    logger.info(f"Database {db_name} already exists, reusing")
                else:
                    quoted = connection.dialect.identifier_preparer.quote_identifier(
                        db_name
                    )
                    connection.execute(text(f"CREATE DATABASE {quoted}"))
                    logger.info(f"Created preview database {db_name}")
        except SQLAlchemyError as e:
            raise DatabaseProvisioningError(
                f"Failed to create database {db_name}: {e}"
            ) from e

        return self.database_url(session_id)

    def drop_database(self, session_id: str) -> None:
        """Drop the session's database. Never raises.

        Open connections are terminated first, otherwise the drop fails while
        the sandbox app still holds a pool.
        """
        db_name = preview_database_name(session_id)

        try:
            with self._connect(ADMIN_DATABASE, autocommit=True) as connection:
                connection.execute(
                    text(
                        "SELECT pg_terminate_backend(pid) FROM pg_stat_activity "
                        "WHERE datname = :name AND pid <> pg_backend_pid()"
                    ),
                    {"name": db_name},
                )
                quoted = connection.dialect.identifier_preparer.quote_identifier(
                    db_name
                )
                connection.execute(text(f"DROP DATABASE IF EXISTS {quoted}"))
                logger.info(f"Dropped preview database {db_name}")
        except Exception as e:
            logger.error(
                f"Failed to drop database {db_name}, manual cleanup required: {e}"
            )

    def get_database_info(self, session_id: str) -> DatabaseInfo:
        db_name = preview_database_name(session_id)
        database_path = f"postgres://{self._host}:{self._port}/{db_name}"

        try:
            with self._connect(db_name) as connection:
                tables_count = connection.execute(
                    text(
                        "SELECT COUNT(*) FROM information_schema.tables "
                        "WHERE table_schema = 'public'"
                    )
                ).scalar_one()
                database_size = connection.execute(
                    text("SELECT pg_size_pretty(pg_database_size(:name))"),
                    {"name": db_name},
                ).scalar_one()
        except SQLAlchemyError as e:
            logger.warning(f"Error getting database info for {db_name}: {e}")
            return DatabaseInfo(
                connected=False,
                database_path=database_path,
                tables_count=0,
                database_size="0 KB",
            )

        return DatabaseInfo(
            connected=True,
            database_path=database_path,
            tables_count=int(tables_count),
            database_size=str(database_size),
        )

    def get_database_schema(self, session_id: str) -> DatabaseSchema:
        db_name = preview_database_name(session_id)
        tables: list[TableSchema] = []

        with self._connect(db_name) as connection:
            preparer = connection.dialect.identifier_preparer
            table_names = (
                connection.execute(
                    text(
                        "SELECT table_name FROM information_schema.tables "
                        "WHERE table_schema = 'public' ORDER BY table_name"
                    )
                )
                .scalars()
                .all()
            )

            for table_name in table_names:
                columns = connection.execute(
                    text(
                        "SELECT column_name, data_type, is_nullable "
                        "FROM information_schema.columns "
                        "WHERE table_schema = 'public' AND table_name = :table "
                        "ORDER BY ordinal_position"
                    ),
                    {"table": table_name},
                ).all()
                primary_keys = set(
                    connection.execute(
                        text(
                            "SELECT kcu.column_name "
                            "FROM information_schema.table_constraints tc "
                            "JOIN information_schema.key_column_usage kcu "
                            "ON tc.constraint_name = kcu.constraint_name "
                            "WHERE tc.table_name = :table "
                            "AND tc.constraint_type = 'PRIMARY KEY'"
                        ),
                        {"table": table_name},
                    )
                    .scalars()
                    .all()
                )
                foreign_keys = {
                    row.column_name: f"{row.foreign_table}.{row.foreign_column}"
                    for row in connection.execute(
                        text(
                            "SELECT kcu.column_name, "
                            "ccu.table_name AS foreign_table, "
                            "ccu.column_name AS foreign_column "
                            "FROM information_schema.table_constraints tc "
                            "JOIN information_schema.key_column_usage kcu "
                            "ON tc.constraint_name = kcu.constraint_name "
                            "JOIN information_schema.constraint_column_usage ccu "
                            "ON ccu.constraint_name = tc.constraint_name "
                            "WHERE tc.constraint_type = 'FOREIGN KEY' "
                            "AND tc.table_name = :table"
                        ),
                        {"table": table_name},
                    ).all()
                }
                quoted_table = preparer.quote_identifier(table_name)
                row_count = connection.execute(
                    text(f"SELECT COUNT(*) FROM {quoted_table}")
                ).scalar_one()

                tables.append(
                    TableSchema(
                        name=table_name,
                        columns=[
                            ColumnSchema(
                                name=column.column_name,
                                type=column.data_type,
                                nullable=column.is_nullable == "YES",
                                primary_key=column.column_name in primary_keys,
                                foreign_key=foreign_keys.get(column.column_name),
                            )
                            for column in columns
                        ],
                        row_count=int(row_count),
                    )
                )

        return DatabaseSchema(tables=tables)

    def get_table_data(
        self,
        session_id: str,
        table_name: str,
        limit: int = 100,
        offset: int = 0,
    ) -> TableData:
        """Page through a table of the session's database.

        Raises:
            InvalidQueryError: If the table name is invalid or the table is missing
        """
        table_name = validate_table_name(table_name)
        db_name = preview_database_name(session_id)

        with self._connect(db_name) as connection:
            exists = connection.execute(
                text(
                    "SELECT 1 FROM information_schema.tables "
                    "WHERE table_schema = 'public' AND table_name = :table"
                ),
                {"table": table_name},
            ).scalar()
            if not exists:
                raise InvalidQueryError(f"Table '{table_name}' does not exist")

            quoted = connection.dialect.identifier_preparer.quote_identifier(table_name)
            total_rows = connection.execute(
                text(f"SELECT COUNT(*) FROM {quoted}")
            ).scalar_one()
            rows = connection.execute(
                text(f"SELECT * FROM {quoted} LIMIT :limit OFFSET :offset"),
                {"limit": limit, "offset": offset},
            ).mappings()
            data = [dict(row) for row in rows]

        return TableData(
            table_name=table_name,
            total_rows=int(total_rows),
            returned_rows=len(data),
            limit=limit,
            offset=offset,
            data=data,
        )

    def execute_query(self, session_id: str, query: str) -> QueryResult:
        """Run a read-only query against the session's database.

        Raises:
            InvalidQueryError: If the query is not a single SELECT
        """
        statement = validate_read_only_query(query)
        db_name = preview_database_name(session_id)

        with self._connect(db_name) as connection:
            connection.execute(text("SET TRANSACTION READ ONLY"))
            result = connection.execute(text(statement))
            columns = list(result.keys())
            data = [dict(row) for row in result.mappings()]
            connection.rollback()

        return QueryResult(columns=columns, rows=len(data), data=data, query=query)
