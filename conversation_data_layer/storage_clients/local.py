import logging
import os
from pathlib import Path

import aiofiles
import aiofiles.os

from conversation_data_layer.errors import StorageBackendFailure
from conversation_data_layer.storage_clients.base import (
    BaseStorageClient,
    StorageConfig,
    StoredObject,
)


class LocalFileStorageClient(BaseStorageClient):
    """Storage client that keeps objects on a local or mounted filesystem.

    Objects live at ``<root>/<bucket>/<object_key>``. URLs are ``file://``
    URIs unless ``public_url`` is given, in which case they are
    ``<public_url>/<bucket>/<object_key>`` (e.g. when the directory is served
    by a static file server).
    """

    def __init__(
        self,
        root: str | os.PathLike[str],
        bucket: str = "elements",
        *,
        public_url: str | None = None,
        log: logging.Logger | None = None,
    ):
        self.bucket = bucket
        self.bucket_path = (Path(root) / bucket).resolve()
        self.public_url = public_url.rstrip("/") if public_url else None
        self.log = log if log is not None else logging.getLogger(__name__)

    @classmethod
    def from_config(
        cls, config: StorageConfig, public_url: str | None = None
    ) -> "LocalFileStorageClient":
        """Build a client from a StorageConfig.

        Credentials are only meaningful to remote object stores; the local
        filesystem needs none, so any that are configured are ignored.
        """
        client = cls(config.endpoint, config.bucket, public_url=public_url)
        if config.credentials:
            client.log.warning(
                "Storage credentials are ignored by the local file storage client",
                extra={"credential_keys": sorted(config.credentials)},
            )
        return client

    def _object_path(self, object_key: str) -> Path:
        path = (self.bucket_path / object_key).resolve()
        if not path.is_relative_to(self.bucket_path) or path == self.bucket_path:
            raise ValueError(f"Object key escapes the bucket: {object_key!r}")
        return path

    async def upload_file(
        self,
        object_key: str,
        data: bytes | str,
        mime: str = "application/octet-stream",
        overwrite: bool = True,
        content_disposition: str | None = None,
    ) -> StoredObject:
        path = self._object_path(object_key)
        if isinstance(data, str):
            data = data.encode("utf-8")

        try:
            if not overwrite and await aiofiles.os.path.exists(path):
                raise StorageBackendFailure(f"Object already exists: {object_key}")
            await aiofiles.os.makedirs(path.parent, exist_ok=True)
            async with aiofiles.open(path, "wb") as f:
                await f.write(data)
        except OSError as exc:
            raise StorageBackendFailure(f"Failed to write {object_key}") from exc

        self.log.debug(
            "Stored object",
            extra={"object_key": object_key, "mime": mime, "size": len(data)},
        )
        return StoredObject(object_key=object_key, url=await self.get_read_url(object_key))

    async def get_read_url(self, object_key: str) -> str:
        path = self._object_path(object_key)
        if self.public_url:
            return f"{self.public_url}/{self.bucket}/{object_key}"
        return path.as_uri()

    async def delete_file(self, object_key: str) -> bool:
        path = self._object_path(object_key)
        try:
            await aiofiles.os.remove(path)
        except FileNotFoundError:
            return False
        except OSError as exc:
            raise StorageBackendFailure(f"Failed to delete {object_key}") from exc
        return True

    async def read_file(self, object_key: str) -> bytes:
        try:
            async with aiofiles.open(self._object_path(object_key), "rb") as f:
                return await f.read()
        except OSError as exc:
            raise StorageBackendFailure(f"Failed to read {object_key}") from exc
