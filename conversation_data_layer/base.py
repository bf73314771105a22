import dataclasses
import enum
import logging
from abc import ABC, abstractmethod

import aiofiles

from conversation_data_layer.errors import StorageBackendFailure
from conversation_data_layer.storage_clients.base import BaseStorageClient
from conversation_data_layer.types import (
    Element,
    Feedback,
    PaginatedResponse,
    Pagination,
    Step,
    Thread,
    ThreadFilter,
    User,
)

# Maximum number of threads to retrieve per page
DEFAULT_THREADS_PER_PAGE = 200


class Capability(enum.StrEnum):
    """Optional behaviours a backend may or may not provide."""

    # list_threads honours ThreadFilter.feedback
    FEEDBACK_FILTER = "feedback_filter"
    # list_threads honours ThreadFilter.search
    SEARCH = "search"
    # delete_thread removes dependents atomically
    ATOMIC_CASCADE = "atomic_cascade"


def element_object_key(element: Element) -> str:
    return f"threads/{element.thread_id}/files/{element.id}"


class BaseDataLayer(ABC):
    """Operations every persistence backend implements.

    Lookups return ``None`` (or ``False`` for deletes) when nothing matches;
    they never raise for a missing entity.
    """

    capabilities: frozenset[Capability] = frozenset()

    def __init__(
        self,
        storage_client: BaseStorageClient | None = None,
        *,
        threads_per_page: int = DEFAULT_THREADS_PER_PAGE,
        log: logging.Logger | None = None,
    ):
        self.storage_client = storage_client
        self.threads_per_page = threads_per_page
        self.log = log if log is not None else logging.getLogger(__name__)

    def supports(self, capability: Capability) -> bool:
        return capability in self.capabilities

    # Users

    @abstractmethod
    async def get_user(self, identifier: str) -> User | None: ...

    @abstractmethod
    async def create_user(self, user: User) -> User: ...

    @abstractmethod
    async def delete_user(self, identifier: str) -> bool: ...

    # Threads

    @abstractmethod
    async def upsert_thread(self, thread: Thread) -> Thread: ...

    @abstractmethod
    async def get_thread(self, thread_id: str) -> Thread | None: ...

    @abstractmethod
    async def get_thread_author(self, thread_id: str) -> str | None: ...

    @abstractmethod
    async def delete_thread(self, thread_id: str) -> bool: ...

    @abstractmethod
    async def list_threads(
        self, pagination: Pagination, filters: ThreadFilter
    ) -> PaginatedResponse[Thread]: ...

    # Steps

    @abstractmethod
    async def upsert_step(self, step: Step) -> Step: ...

    @abstractmethod
    async def delete_step(self, step_id: str, thread_id: str | None = None) -> bool: ...

    # Elements

    @abstractmethod
    async def upsert_element(
        self, element: Element, content: bytes | str | None = None
    ) -> Element: ...

    @abstractmethod
    async def get_element(self, thread_id: str, element_id: str) -> Element | None: ...

    @abstractmethod
    async def delete_element(
        self, element_id: str, thread_id: str | None = None
    ) -> bool: ...

    # Feedback

    @abstractmethod
    async def upsert_feedback(self, feedback: Feedback) -> Feedback | None: ...

    @abstractmethod
    async def delete_feedback(self, feedback_id: str) -> bool: ...

    # Lifecycle

    async def build_debug_url(self) -> str:
        return ""

    async def close(self) -> None:
        if self.storage_client:
            await self.storage_client.close()

    # Helpers shared by the backends

    def _page_size(self, pagination: Pagination) -> int:
        if pagination.first is not None and pagination.first <= 0:
            raise ValueError("pagination.first must be positive")
        return min(pagination.first or self.threads_per_page, self.threads_per_page)

    async def _upload_element_content(
        self, element: Element, content: bytes | str | None
    ) -> Element:
        """Write the element's payload to the storage client, if any.

        Returns a copy of the element with ``object_key`` set when a payload
        was uploaded. The read URL is not persisted, it is resolved from the
        storage client whenever the element is read.
        """
        element = dataclasses.replace(element)
        if content is None and element.path:
            try:
                async with aiofiles.open(element.path, "rb") as f:
                    content = await f.read()
            except OSError as exc:
                raise StorageBackendFailure(
                    f"Failed to read element file {element.path}"
                ) from exc

        if content is None:
            return element

        if self.storage_client is None:
            self.log.warning(
                "Data Layer: No storage client configured. File will not be uploaded.",
                extra={"element_id": element.id, "thread_id": element.thread_id},
            )
            return element

        stored = await self.storage_client.upload_file(
            object_key=element_object_key(element),
            data=content,
            mime=element.mime or "application/octet-stream",
            overwrite=True,
            content_disposition=f'attachment; filename="{element.name}"',
        )
        element.object_key = stored.object_key
        return element

    async def _resolve_element_url(self, element: Element) -> Element:
        if self.storage_client is not None and not element.url and element.object_key:
            element.url = await self.storage_client.get_read_url(element.object_key)
        return element

    async def _delete_element_storage(self, object_key: str | None) -> None:
        """Best-effort removal of an element payload after its row is gone."""
        if self.storage_client is None or not object_key:
            return
        try:
            await self.storage_client.delete_file(object_key)
        except Exception:
            self.log.exception(
                "Error deleting element payload", extra={"object_key": object_key}
            )
