"""Pytest configuration for the conversation data layer tests."""

import os
import uuid

import pytest
import pytest_asyncio

from conversation_data_layer.item_store import MemoryItemStore
from conversation_data_layer.single_table import SingleTableDataLayer
from conversation_data_layer.sql import SQLAlchemyDataLayer
from conversation_data_layer.storage_clients.local import LocalFileStorageClient


@pytest.fixture
def storage_client(tmp_path):
    return LocalFileStorageClient(tmp_path / "blobs", "elements")


async def make_data_layer(backend, tmp_path, storage_client=None, **kwargs):
    if backend == "sql":
        data_layer = SQLAlchemyDataLayer(
            f"sqlite+aiosqlite:///{tmp_path / f'{uuid.uuid4()}.db'}",
            storage_client,
            **kwargs,
        )
        await data_layer.setup()
        return data_layer
    return SingleTableDataLayer(MemoryItemStore(), storage_client, **kwargs)


@pytest_asyncio.fixture
async def sql_data_layer(tmp_path, storage_client):
    data_layer = await make_data_layer("sql", tmp_path, storage_client)
    try:
        yield data_layer
    finally:
        await data_layer.close()


@pytest_asyncio.fixture
async def single_table_data_layer(tmp_path, storage_client):
    data_layer = await make_data_layer("single_table", tmp_path, storage_client)
    try:
        yield data_layer
    finally:
        await data_layer.close()


@pytest_asyncio.fixture(params=["sql", "single_table"])
async def data_layer(request, tmp_path, storage_client):
    """Each contract test runs once per backend."""
    data_layer = await make_data_layer(request.param, tmp_path, storage_client)
    try:
        yield data_layer
    finally:
        await data_layer.close()


@pytest.fixture
def cassandra_session():
    """Provide a Cassandra session, or skip when no cluster is configured."""
    host = os.environ.get("CASSANDRA_HOST")
    if not host:
        pytest.skip("CASSANDRA_HOST is not set")

    from cassandra.cluster import Cluster, NoHostAvailable

    cluster = Cluster(contact_points=[host])
    try:
        session = cluster.connect()
    except NoHostAvailable:
        cluster.shutdown()
        pytest.skip(f"Cassandra is not reachable at {host}")
    try:
        yield session
    finally:
        session.shutdown()
        cluster.shutdown()


@pytest.fixture
def test_user_identifier():
    return f"user-{uuid.uuid4()}"


@pytest.fixture
def test_thread_id():
    return str(uuid.uuid4())
