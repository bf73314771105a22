import logging
from typing import Any

from cassandra import (
    DriverException,
    OperationTimedOut,
    RequestExecutionException,
    RequestValidationException,
)
from cassandra.cluster import EXEC_PROFILE_DEFAULT, NoHostAvailable, PreparedStatement, Session
from cassandra.query import BatchStatement, BatchType

from conversation_data_layer.cass_util import aexecute
from conversation_data_layer.errors import StorageBackendFailure
from conversation_data_layer.item_store import (
    PK,
    SK,
    IndexKey,
    Item,
    ItemStore,
    prefix_upper_bound,
)
from conversation_data_layer.util import pack, unpack

CASSANDRA_ERRORS = (
    DriverException,
    OperationTimedOut,
    RequestExecutionException,
    RequestValidationException,
    NoHostAvailable,
)


def _encode_attributes(item: dict[str, Any]) -> dict[str, bytes]:
    return {k: pack(v) for k, v in item.items() if k not in (PK, SK)}


def _row_to_item(row: Any) -> Item:
    item: Item = {PK: row.pk, SK: row.sk}
    for key, value in (row.attributes or {}).items():
        item[key] = unpack(value)
    return item


class CassandraItemStore(ItemStore):
    """Item store on a Cassandra keyspace.

    Items live in one table partitioned by ``pk`` and clustered by ``sk``;
    their attributes are a ``map<text, blob>`` of MessagePack values, so that
    merging attributes is a single collection update. The secondary index is
    a second table, ``<table>_by_user_thread``, written alongside every
    indexed item. A native secondary index on ``sk`` serves
    find_by_sort_key.
    """

    def __init__(
        self,
        session: Session,
        *,
        keyspace: str | None = None,
        table: str = "items",
        default_consistency_level: int | None = None,
        log: logging.Logger | None = None,
    ):
        """Initialize the store.

        Args:
            session: A connected Cassandra `Session`. Authentication, load
                balancing and execution profiles are the caller's concern; the
                store does not mutate the session.
            keyspace: Keyspace qualifying the tables. Defaults to
                `session.keyspace`, which must then be set.
            table: Name of the item table.
            default_consistency_level: Consistency level for every statement.
                Defaults to that of the session's default execution profile.
            log: Optional logger. Defaults to this module's logger.
        """
        super().__init__(log if log is not None else logging.getLogger(__name__))
        self.session: Session = session
        self.cluster = session.cluster

        ep = session.cluster.profile_manager.profiles[EXEC_PROFILE_DEFAULT]
        self.default_consistency_level = (
            default_consistency_level
            if default_consistency_level is not None
            else ep.consistency_level
        )

        self.keyspace = keyspace if keyspace is not None else session.keyspace
        if not self.keyspace:
            raise ValueError(
                "CassandraItemStore requires a keyspace. Provide one explicitly or "
                "use a session already bound to a keyspace."
            )

        self.table = table
        self._table_items = f"{self.keyspace}.{table}"
        self._table_index = f"{self.keyspace}.{table}_by_user_thread"
        self._prepared_statements: dict[str, PreparedStatement] = {}

    def setup(self, replication_factor: int = 3) -> None:
        """Create the keyspace, tables and index if they do not exist."""
        statements = [
            f"""
            CREATE KEYSPACE IF NOT EXISTS {self.keyspace}
            WITH replication = {{'class': 'SimpleStrategy', 'replication_factor': {replication_factor}}}
            """,
            f"""
            CREATE TABLE IF NOT EXISTS {self._table_items} (
                pk text,
                sk text,
                attributes map<text, blob>,
                PRIMARY KEY ((pk), sk)
            ) WITH CLUSTERING ORDER BY (sk ASC)
            """,
            f"""
            CREATE INDEX IF NOT EXISTS {self.table}_sk_idx
            ON {self._table_items} (sk)
            """,
            f"""
            CREATE TABLE IF NOT EXISTS {self._table_index} (
                user_thread_pk text,
                user_thread_sk text,
                pk text,
                sk text,
                attributes map<text, blob>,
                PRIMARY KEY ((user_thread_pk), user_thread_sk, pk)
            ) WITH CLUSTERING ORDER BY (user_thread_sk DESC, pk DESC)
            """,
        ]
        for statement in statements:
            self.session.execute(statement)

    def _get_prepared_statement(self, query: str) -> PreparedStatement:
        """Return a prepared statement for the given query, preparing it lazily."""
        statement = self._prepared_statements.get(query)
        if statement is None:
            statement = self.session.prepare(query.replace("%s", "?"))
            if self.default_consistency_level is not None:
                statement.consistency_level = self.default_consistency_level
            self._prepared_statements[query] = statement
        return statement

    async def _fetch_all(self, query: str, parameters: tuple[Any, ...]) -> list[Any]:
        """Execute a prepared statement and collect every page of rows."""
        try:
            statement = self._get_prepared_statement(query).bind(parameters)
            rs = await aexecute(self.session, statement, None)
            return [row async for row in rs]
        except CASSANDRA_ERRORS as exc:
            raise StorageBackendFailure(f"Cassandra query failed: {query.strip()}") from exc

    async def _execute(self, query: str, parameters: tuple[Any, ...]) -> None:
        await self._fetch_all(query, parameters)

    async def _execute_batch(
        self, statements: list[tuple[str, tuple[Any, ...]]]
    ) -> None:
        # Every statement targets the same partition, so an unlogged batch
        # applies them together without the batchlog overhead
        batch = BatchStatement(batch_type=BatchType.UNLOGGED)
        if self.default_consistency_level is not None:
            batch.consistency_level = self.default_consistency_level
        try:
            for query, parameters in statements:
                batch.add(self._get_prepared_statement(query), parameters)
            await aexecute(self.session, batch)
        except CASSANDRA_ERRORS as exc:
            raise StorageBackendFailure("Cassandra batch failed") from exc

    async def _read(self, pk: str, sk: str) -> Item | None:
        rows = await self._fetch_all(
            f"SELECT pk, sk, attributes FROM {self._table_items} WHERE pk = %s AND sk = %s",
            (pk, sk),
        )
        return _row_to_item(rows[0]) if rows else None

    async def _write(self, item: Item) -> None:
        await self._execute(
            f"INSERT INTO {self._table_items} (pk, sk, attributes) VALUES (%s, %s, %s)",
            (item[PK], item[SK], _encode_attributes(item)),
        )

    async def _merge(
        self, pk: str, sk: str, set_attributes: dict[str, Any], remove: list[str]
    ) -> None:
        # The INSERT of the key columns alone creates the row marker without
        # touching existing attributes
        statements: list[tuple[str, tuple[Any, ...]]] = [
            (
                f"INSERT INTO {self._table_items} (pk, sk) VALUES (%s, %s)",
                (pk, sk),
            )
        ]
        if set_attributes:
            statements.append(
                (
                    f"UPDATE {self._table_items} SET attributes = attributes + %s "
                    "WHERE pk = %s AND sk = %s",
                    (_encode_attributes(set_attributes), pk, sk),
                )
            )
        if remove:
            statements.append(
                (
                    f"UPDATE {self._table_items} SET attributes = attributes - %s "
                    "WHERE pk = %s AND sk = %s",
                    (set(remove), pk, sk),
                )
            )
        await self._execute_batch(statements)

    async def _delete(self, pk: str, sk: str) -> None:
        await self._execute(
            f"DELETE FROM {self._table_items} WHERE pk = %s AND sk = %s", (pk, sk)
        )

    async def _write_index_entry(self, index_pk: str, index_sk: str, item: Item) -> None:
        await self._execute(
            f"""
            INSERT INTO {self._table_index}
            (user_thread_pk, user_thread_sk, pk, sk, attributes)
            VALUES (%s, %s, %s, %s, %s)
            """,
            (index_pk, index_sk, item[PK], item[SK], _encode_attributes(item)),
        )

    async def _delete_index_entry(self, index_pk: str, index_sk: str, pk: str) -> None:
        await self._execute(
            f"""
            DELETE FROM {self._table_index}
            WHERE user_thread_pk = %s AND user_thread_sk = %s AND pk = %s
            """,
            (index_pk, index_sk, pk),
        )

    async def query(self, pk: str, sk_prefix: str | None = None) -> list[Item]:
        if sk_prefix:
            rows = await self._fetch_all(
                f"""
                SELECT pk, sk, attributes FROM {self._table_items}
                WHERE pk = %s AND sk >= %s AND sk < %s
                """,
                (pk, sk_prefix, prefix_upper_bound(sk_prefix)),
            )
        else:
            rows = await self._fetch_all(
                f"SELECT pk, sk, attributes FROM {self._table_items} WHERE pk = %s",
                (pk,),
            )
        return [_row_to_item(row) for row in rows]

    async def query_index(
        self,
        index_pk: str,
        *,
        limit: int,
        exclusive_start_key: IndexKey | None = None,
    ) -> tuple[list[Item], IndexKey | None]:
        if limit <= 0:
            raise ValueError("limit must be positive")

        # Fetch one extra row to learn whether another page exists
        if exclusive_start_key is None:
            rows = await self._fetch_all(
                f"""
                SELECT user_thread_sk, pk, sk, attributes FROM {self._table_index}
                WHERE user_thread_pk = %s
                LIMIT %s
                """,
                (index_pk, limit + 1),
            )
        else:
            start_sk, start_pk = exclusive_start_key
            rows = await self._fetch_all(
                f"""
                SELECT user_thread_sk, pk, sk, attributes FROM {self._table_index}
                WHERE user_thread_pk = %s AND (user_thread_sk, pk) < (%s, %s)
                LIMIT %s
                """,
                (index_pk, start_sk, start_pk, limit + 1),
            )

        page = rows[:limit]
        last_key: IndexKey | None = None
        if len(rows) > limit:
            last_key = (page[-1].user_thread_sk, page[-1].pk)
        return [_row_to_item(row) for row in page], last_key

    async def find_by_sort_key(self, sk: str) -> list[str]:
        rows = await self._fetch_all(
            f"SELECT pk FROM {self._table_items} WHERE sk = %s", (sk,)
        )
        return [row.pk for row in rows]

    async def close(self) -> None:
        """Shut down the session and cluster."""
        if not self.session.is_shutdown:
            self.session.shutdown()
        if self.cluster and not self.cluster.is_shutdown:
            self.cluster.shutdown()
