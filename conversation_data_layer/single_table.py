import asyncio
import logging
import re
from collections.abc import AsyncIterator, Sequence
from typing import Any

from conversation_data_layer.base import (
    DEFAULT_THREADS_PER_PAGE,
    BaseDataLayer,
    Capability,
)
from conversation_data_layer.errors import (
    ReferentialViolation,
    StorageBackendFailure,
    UnsupportedOperation,
)
from conversation_data_layer.item_store import (
    INDEX_PK,
    INDEX_SK,
    PK,
    SK,
    IndexKey,
    Item,
    ItemStore,
)
from conversation_data_layer.storage_clients.base import BaseStorageClient
from conversation_data_layer.types import (
    Element,
    Feedback,
    PageInfo,
    PaginatedResponse,
    Pagination,
    Step,
    Thread,
    ThreadFilter,
    User,
    sort_key,
)
from conversation_data_layer.util import (
    afilter,
    atake,
    decode_cursor,
    encode_cursor,
    select_exc,
    utc_now_isoformat,
)

CURSOR_BACKEND = "single_table"

USER_SK = "USER"
THREAD_SK = "THREAD"
STEP_PREFIX = "STEP#"
ELEMENT_PREFIX = "ELEMENT#"
THREAD_PREFIX = "THREAD#"

FEEDBACK_ID_REGEX = re.compile(r"^THREAD#(?P<thread_id>.+?)::STEP#(?P<step_id>.+)$")


def user_pk(identifier: str) -> str:
    return f"USER#{identifier}"


def thread_pk(thread_id: str) -> str:
    return f"{THREAD_PREFIX}{thread_id}"


def step_sk(step_id: str) -> str:
    return f"{STEP_PREFIX}{step_id}"


def element_sk(element_id: str) -> str:
    return f"{ELEMENT_PREFIX}{element_id}"


def user_thread_sk(created_at: str) -> str:
    return f"TS#{created_at}"


def feedback_id(thread_id: str, step_id: str) -> str:
    return f"THREAD#{thread_id}::STEP#{step_id}"


def _compact(data: dict[str, Any]) -> dict[str, Any]:
    """Drop attributes that were not provided."""
    return {k: v for k, v in data.items() if v is not None}


class SingleTableDataLayer(BaseDataLayer):
    """Data layer on a single key-value table.

    A thread and everything it contains share one partition, ``THREAD#<id>``,
    so a thread is read back with a single partition query. Thread headers
    carry ``UserThreadPK``/``UserThreadSK`` so that the secondary index lists
    a user's threads newest first. Feedback is not a separate item, it is
    embedded in the item of the step it rates.

    There are no cross-item transactions. Cascading deletes remove the
    children of a thread one by one and the thread header last, so a failed
    delete can be retried until it completes.

    In this layout the id of a user is its identifier.
    """

    capabilities = frozenset({Capability.SEARCH})

    def __init__(
        self,
        store: ItemStore,
        storage_client: BaseStorageClient | None = None,
        *,
        threads_per_page: int = DEFAULT_THREADS_PER_PAGE,
        log: logging.Logger | None = None,
    ):
        super().__init__(
            storage_client,
            threads_per_page=threads_per_page,
            log=log if log is not None else logging.getLogger(__name__),
        )
        self.store = store

    async def _find_item(self, sk: str, thread_id: str | None = None) -> Item | None:
        """Find a thread child by sort key.

        With a thread id only that partition is consulted, otherwise the
        owning partition is looked up by sort key.
        """
        if thread_id is not None:
            return await self.store.get_item(thread_pk(thread_id), sk)

        for pk in await self.store.find_by_sort_key(sk):
            if not pk.startswith(THREAD_PREFIX):
                continue
            item = await self.store.get_item(pk, sk)
            if item is not None:
                return item
        return None

    async def _check_child_owner(self, sk: str, thread_id: str) -> None:
        """Refuse to create a step or element whose id lives in another thread."""
        pk = thread_pk(thread_id)
        for owner in await self.store.find_by_sort_key(sk):
            if owner != pk and owner.startswith(THREAD_PREFIX):
                raise ReferentialViolation(
                    f"{sk} belongs to thread {owner.removeprefix(THREAD_PREFIX)}, "
                    f"not {thread_id}"
                )

    async def _delete_child(self, item: Item) -> None:
        deleted = await self.store.delete_item(item[PK], item[SK])
        if deleted and item[SK].startswith(ELEMENT_PREFIX):
            await self._delete_element_storage(item.get("objectKey"))

    async def _delete_children(self, items: Sequence[Item], message: str) -> None:
        """Delete items concurrently, reporting every failure at once."""
        results = await asyncio.gather(
            *(self._delete_child(item) for item in items), return_exceptions=True
        )
        for item, result in zip(items, results):
            if isinstance(result, BaseException):
                self.log.error(
                    "Error deleting item",
                    extra={"pk": item[PK], "sk": item[SK]},
                    exc_info=result,
                )
        exceptions = select_exc(results)
        if exceptions:
            raise StorageBackendFailure(message) from ExceptionGroup(
                message, list(exceptions)
            )

    # User methods

    async def get_user(self, identifier: str) -> User | None:
        item = await self.store.get_item(user_pk(identifier), USER_SK)
        return User.from_dict(item) if item else None

    async def create_user(self, user: User) -> User:
        pk = user_pk(user.identifier)
        existing = await self.store.get_item(pk, USER_SK)
        created_at = (
            existing["createdAt"]
            if existing
            else user.created_at or utc_now_isoformat()
        )
        item = await self.store.update_item(
            pk,
            USER_SK,
            {
                "id": user.identifier,
                "identifier": user.identifier,
                "metadata": user.metadata or {},
                "createdAt": created_at,
            },
        )
        return User.from_dict(item)

    async def delete_user(self, identifier: str) -> bool:
        """Delete a user and every thread it owns."""
        pk = user_pk(identifier)
        if await self.store.get_item(pk, USER_SK) is None:
            return False

        owned = self._iter_user_threads(pk, None, self.threads_per_page)
        thread_ids = [item["id"] async for item in owned]
        results = await asyncio.gather(
            *(self.delete_thread(thread_id) for thread_id in thread_ids),
            return_exceptions=True,
        )
        for thread_id, result in zip(thread_ids, results):
            if isinstance(result, BaseException):
                self.log.error(
                    "Error deleting thread during user deletion",
                    extra={"thread_id": thread_id, "user_id": identifier},
                    exc_info=result,
                )
        exceptions = select_exc(results)
        if exceptions:
            message = f"Failed to delete some threads of user {identifier}"
            raise StorageBackendFailure(message) from ExceptionGroup(
                message, list(exceptions)
            )

        await self.store.delete_item(pk, USER_SK)
        return True

    # Thread methods

    async def upsert_thread(self, thread: Thread) -> Thread:
        pk = thread_pk(thread.id)
        existing = await self.store.get_item(pk, THREAD_SK) or {}

        attributes: dict[str, Any] = {"id": thread.id}

        owner = existing.get("userId")
        if thread.user_id and not owner:
            user = await self.store.get_item(user_pk(thread.user_id), USER_SK)
            if user is None:
                raise ReferentialViolation(f"User with id {thread.user_id} does not exist")
            owner = thread.user_id
            attributes["userId"] = owner
            attributes["userIdentifier"] = user["identifier"]

        metadata_provided_name = None
        if thread.metadata:
            merged = {**(existing.get("metadata") or {}), **thread.metadata}
            attributes["metadata"] = merged
            metadata_provided_name = merged.get("name")

        name = thread.name if thread.name is not None else metadata_provided_name
        if name is not None:
            attributes["name"] = name

        if thread.tags is not None:
            attributes["tags"] = thread.tags

        created_at = existing.get("createdAt") or thread.created_at or utc_now_isoformat()
        attributes["createdAt"] = created_at

        if owner:
            attributes[INDEX_PK] = user_pk(owner)
            attributes[INDEX_SK] = user_thread_sk(created_at)

        item = await self.store.update_item(pk, THREAD_SK, attributes)
        return Thread.from_dict(item)

    async def get_thread(self, thread_id: str) -> Thread | None:
        header: Item | None = None
        steps: list[Step] = []
        elements: list[Element] = []
        for item in await self.store.query(thread_pk(thread_id)):
            sk = item[SK]
            if sk == THREAD_SK:
                header = item
            elif sk.startswith(STEP_PREFIX):
                steps.append(Step.from_dict(item))
            elif sk.startswith(ELEMENT_PREFIX):
                elements.append(Element.from_dict(item))

        if header is None:
            return None

        thread = Thread.from_dict(header)
        thread.steps = sorted(steps, key=sort_key)
        thread.elements = [
            await self._resolve_element_url(element)
            for element in sorted(elements, key=sort_key)
        ]
        return thread

    async def get_thread_author(self, thread_id: str) -> str | None:
        item = await self.store.get_item(thread_pk(thread_id), THREAD_SK)
        if item is None:
            return None
        return item.get("userIdentifier")

    async def delete_thread(self, thread_id: str) -> bool:
        """Delete a thread with its steps, elements and feedback.

        Children are deleted first and the header last. If any child fails
        to delete the header is kept, so calling delete_thread again resumes
        the cleanup.
        """
        items = await self.store.query(thread_pk(thread_id))
        header = next((item for item in items if item[SK] == THREAD_SK), None)
        children = [item for item in items if item[SK] != THREAD_SK]

        if children:
            await self._delete_children(
                children, f"Failed to delete some items of thread {thread_id}"
            )

        if header is None:
            return False
        return await self.store.delete_item(header[PK], header[SK])

    async def _iter_user_threads(
        self, index_pk: str, start_key: IndexKey | None, fetch_size: int
    ) -> AsyncIterator[Item]:
        while True:
            items, start_key = await self.store.query_index(
                index_pk, limit=fetch_size, exclusive_start_key=start_key
            )
            for item in items:
                yield item
            if start_key is None:
                return

    async def list_threads(
        self, pagination: Pagination, filters: ThreadFilter
    ) -> PaginatedResponse[Thread]:
        if not filters.user_id:
            raise ValueError("user_id is required")
        if filters.feedback is not None:
            raise UnsupportedOperation(
                "Filtering threads by feedback is not supported by the "
                "single-table backend"
            )

        page_size = self._page_size(pagination)

        start_key: IndexKey | None = None
        if pagination.cursor:
            position = decode_cursor(CURSOR_BACKEND, pagination.cursor)
            start_key = (position["sk"], position["pk"])

        # Searching discards rows client side, so read ahead further
        fetch_size = page_size + 1
        if filters.search:
            fetch_size *= 2

        items = self._iter_user_threads(user_pk(filters.user_id), start_key, fetch_size)
        if filters.search:
            search = filters.search.lower()
            items = afilter(lambda item: search in (item.get("name") or "").lower(), items)

        # One extra item tells us whether there is a next page
        selected = await atake(page_size + 1, items)
        has_next_page = len(selected) > page_size
        selected = selected[:page_size]

        end_cursor = None
        if has_next_page:
            last = selected[-1]
            end_cursor = encode_cursor(
                CURSOR_BACKEND, {"sk": last[INDEX_SK], "pk": last[PK]}
            )

        return PaginatedResponse(
            page_info=PageInfo(
                has_next_page=has_next_page,
                start_cursor=pagination.cursor,
                end_cursor=end_cursor,
            ),
            data=[Thread.from_dict(item) for item in selected],
        )

    # Step methods

    async def upsert_step(self, step: Step) -> Step:
        pk = thread_pk(step.thread_id)
        sk = step_sk(step.id)
        header, existing = await asyncio.gather(
            self.store.get_item(pk, THREAD_SK), self.store.get_item(pk, sk)
        )
        if header is None:
            raise ReferentialViolation(
                f"Cannot add step {step.id} to unknown thread {step.thread_id}"
            )
        if existing is None:
            await self._check_child_owner(sk, step.thread_id)

        attributes = _compact(step.to_dict())
        # Feedback is only written through upsert_feedback
        attributes.pop("feedback", None)
        if existing and existing.get("createdAt"):
            attributes.pop("createdAt", None)
        else:
            attributes["createdAt"] = step.created_at or utc_now_isoformat()

        item = await self.store.update_item(pk, sk, attributes)
        return Step.from_dict(item)

    async def delete_step(self, step_id: str, thread_id: str | None = None) -> bool:
        """Delete a step, its feedback and the elements attached to it."""
        item = await self._find_item(step_sk(step_id), thread_id)
        if item is None:
            self.log.debug(
                "Step not found, nothing to delete",
                extra={"step_id": step_id, "thread_id": thread_id},
            )
            return False

        attached = [
            element
            for element in await self.store.query(item[PK], ELEMENT_PREFIX)
            if element.get("forId") == step_id
        ]
        if attached:
            await self._delete_children(
                attached, f"Failed to delete some elements of step {step_id}"
            )
        return await self.store.delete_item(item[PK], item[SK])

    # Element methods

    async def upsert_element(
        self, element: Element, content: bytes | str | None = None
    ) -> Element:
        pk = thread_pk(element.thread_id)
        if await self.store.get_item(pk, THREAD_SK) is None:
            raise ReferentialViolation(
                f"Cannot add element {element.id} to unknown thread {element.thread_id}"
            )

        sk = element_sk(element.id)
        existing = await self.store.get_item(pk, sk)
        if existing is None:
            await self._check_child_owner(sk, element.thread_id)

        element = await self._upload_element_content(element, content)
        attributes = _compact(element.to_dict())
        if existing and existing.get("createdAt"):
            attributes.pop("createdAt", None)
        else:
            attributes["createdAt"] = element.created_at or utc_now_isoformat()

        item = await self.store.update_item(pk, sk, attributes)
        return await self._resolve_element_url(Element.from_dict(item))

    async def get_element(self, thread_id: str, element_id: str) -> Element | None:
        item = await self.store.get_item(thread_pk(thread_id), element_sk(element_id))
        if item is None:
            return None
        return await self._resolve_element_url(Element.from_dict(item))

    async def delete_element(
        self, element_id: str, thread_id: str | None = None
    ) -> bool:
        item = await self._find_item(element_sk(element_id), thread_id)
        if item is None:
            return False
        if not await self.store.delete_item(item[PK], item[SK]):
            return False
        await self._delete_element_storage(item.get("objectKey"))
        return True

    # Feedback methods

    async def upsert_feedback(self, feedback: Feedback) -> Feedback | None:
        """Embed feedback in its step, replacing any feedback already there.

        The feedback id is derived from the step's location; a caller
        supplied id is not kept. Returns None when the step does not exist.
        """
        sk = step_sk(feedback.for_id)
        step_item = await self._find_item(sk, feedback.thread_id)
        if step_item is None and feedback.thread_id is not None:
            step_item = await self._find_item(sk)
        if step_item is None:
            self.log.debug(
                "Step not found, feedback not stored",
                extra={"step_id": feedback.for_id},
            )
            return None

        thread_id = step_item["threadId"]
        stored = Feedback(
            id=feedback_id(thread_id, feedback.for_id),
            for_id=feedback.for_id,
            thread_id=thread_id,
            value=feedback.value,
            comment=feedback.comment,
        )
        await self.store.update_item(
            step_item[PK], step_item[SK], {"feedback": _compact(stored.to_dict())}
        )
        return stored

    async def delete_feedback(self, feedback_id: str) -> bool:
        match = FEEDBACK_ID_REGEX.match(feedback_id)
        if match is None:
            return False

        pk = thread_pk(match.group("thread_id"))
        sk = step_sk(match.group("step_id"))
        item = await self.store.get_item(pk, sk)
        if item is None or not item.get("feedback"):
            return False

        await self.store.update_item(pk, sk, {}, remove_attributes=["feedback"])
        return True

    async def close(self) -> None:
        await super().close()
        await self.store.close()
