import json
import logging
from typing import Annotated, ClassVar, Literal

from cassandra.cluster import Cluster
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

from conversation_data_layer.base import DEFAULT_THREADS_PER_PAGE, BaseDataLayer
from conversation_data_layer.cassandra_store import CassandraItemStore
from conversation_data_layer.item_store import ItemStore, MemoryItemStore
from conversation_data_layer.single_table import SingleTableDataLayer
from conversation_data_layer.sql import SQLAlchemyDataLayer
from conversation_data_layer.storage_clients.base import StorageConfig
from conversation_data_layer.storage_clients.local import LocalFileStorageClient

logger = logging.getLogger(__name__)


class DataLayerSettings(BaseSettings):
    """Deployment settings, read from ``DATA_LAYER_*`` environment variables."""

    model_config: ClassVar[SettingsConfigDict] = SettingsConfigDict(
        env_prefix="DATA_LAYER_",
        env_file=None,
        case_sensitive=False,
        extra="ignore",
    )

    backend: Literal["sql", "cassandra", "memory"] = "sql"

    # Relational backend
    database_url: str = "sqlite+aiosqlite:///data_layer.db"

    # Single-table backend on Cassandra
    cassandra_contact_points: Annotated[list[str], NoDecode] = Field(
        default_factory=lambda: ["127.0.0.1"]
    )
    cassandra_keyspace: str = "conversations"
    cassandra_replication_factor: int = 1
    table_name: str = "items"

    # Element payloads; no storage client when storage_endpoint is unset
    storage_endpoint: str | None = None
    storage_bucket: str = "elements"
    storage_public_url: str | None = None
    # Passed through to StorageConfig for remote object stores; the local
    # filesystem client ignores them
    storage_credentials: dict[str, str] = Field(default_factory=dict)

    threads_per_page: int = DEFAULT_THREADS_PER_PAGE

    @field_validator("threads_per_page")
    @classmethod
    def _validate_threads_per_page(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("threads_per_page must be positive")
        return v

    @field_validator("cassandra_contact_points", mode="before")
    @classmethod
    def _split_contact_points(cls, v: object) -> object:
        # Accept "host1,host2" as well as a JSON list
        if isinstance(v, str):
            if v.lstrip().startswith("["):
                return json.loads(v)
            return [host.strip() for host in v.split(",") if host.strip()]
        return v

    @property
    def storage_config(self) -> StorageConfig | None:
        if not self.storage_endpoint:
            return None
        return StorageConfig(
            endpoint=self.storage_endpoint,
            bucket=self.storage_bucket,
            credentials=dict(self.storage_credentials),
        )


async def build_data_layer(settings: DataLayerSettings | None = None) -> BaseDataLayer:
    """Construct the configured backend and its storage client.

    The schema is created when missing. Call once at startup and register the
    result with ``selector.set_data_layer`` or pass it around explicitly.
    """
    if settings is None:
        settings = DataLayerSettings()

    storage_client = None
    storage_config = settings.storage_config
    if storage_config is not None:
        storage_client = LocalFileStorageClient.from_config(
            storage_config, public_url=settings.storage_public_url
        )

    if settings.backend == "sql":
        sql_layer = SQLAlchemyDataLayer(
            settings.database_url,
            storage_client,
            threads_per_page=settings.threads_per_page,
        )
        await sql_layer.setup()
        logger.info("Using the SQL data layer", extra={"backend": settings.backend})
        return sql_layer

    store: ItemStore
    if settings.backend == "memory":
        store = MemoryItemStore()
    else:
        cluster = Cluster(contact_points=settings.cassandra_contact_points)
        session = cluster.connect()
        cassandra_store = CassandraItemStore(
            session,
            keyspace=settings.cassandra_keyspace,
            table=settings.table_name,
        )
        cassandra_store.setup(replication_factor=settings.cassandra_replication_factor)
        store = cassandra_store

    logger.info("Using the single-table data layer", extra={"backend": settings.backend})
    return SingleTableDataLayer(
        store,
        storage_client,
        threads_per_page=settings.threads_per_page,
    )
