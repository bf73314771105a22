from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any


@dataclass
class StorageConfig:
    """Location and account options recognized by storage clients."""

    endpoint: str
    bucket: str
    credentials: dict[str, Any] = field(default_factory=dict)


@dataclass
class StoredObject:
    """Descriptor returned after an upload."""

    object_key: str
    url: str


class BaseStorageClient(ABC):
    """Opaque object store: put bytes under a key, get a URL back."""

    @abstractmethod
    async def upload_file(
        self,
        object_key: str,
        data: bytes | str,
        mime: str = "application/octet-stream",
        overwrite: bool = True,
        content_disposition: str | None = None,
    ) -> StoredObject: ...

    @abstractmethod
    async def get_read_url(self, object_key: str) -> str: ...

    @abstractmethod
    async def delete_file(self, object_key: str) -> bool:
        """Delete an object. Returns False when it did not exist."""
        ...

    async def put(self, object_key: str, data: bytes | str) -> StoredObject:
        return await self.upload_file(object_key=object_key, data=data)

    async def close(self) -> None:
        pass
