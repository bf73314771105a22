import copy
import logging
from abc import ABC, abstractmethod
from collections.abc import Collection, Mapping
from typing import Any

# Primary key attributes
PK = "PK"
SK = "SK"

# Secondary index attributes
INDEX_PK = "UserThreadPK"
INDEX_SK = "UserThreadSK"

type Item = dict[str, Any]
# Position within the secondary index partition: (UserThreadSK, PK)
type IndexKey = tuple[str, str]


def prefix_upper_bound(prefix: str) -> str:
    """Smallest string greater than every string starting with prefix."""
    return prefix[:-1] + chr(ord(prefix[-1]) + 1)


def _index_key(item: Mapping[str, Any] | None) -> tuple[str, str] | None:
    if item is None:
        return None
    index_pk = item.get(INDEX_PK)
    index_sk = item.get(INDEX_SK)
    if index_pk is None or index_sk is None:
        return None
    return (index_pk, index_sk)


class ItemStore(ABC):
    """Schema-less item table with a composite (PK, SK) key.

    Items carrying both ``UserThreadPK`` and ``UserThreadSK`` are projected
    into a secondary index partitioned by ``UserThreadPK`` and ordered by
    ``(UserThreadSK, PK)`` descending. The store keeps the index in step with
    every write; there is no transaction spanning an item and its index
    entry.
    """

    def __init__(self, log: logging.Logger | None = None):
        self.log = log if log is not None else logging.getLogger(__name__)

    async def get_item(self, pk: str, sk: str) -> Item | None:
        return await self._read(pk, sk)

    async def put_item(self, item: Item) -> None:
        """Write an item, replacing every attribute of an existing one."""
        old = await self._read(item[PK], item[SK])
        await self._write(item)
        await self._sync_index(old, item)

    async def update_item(
        self,
        pk: str,
        sk: str,
        set_attributes: Mapping[str, Any],
        remove_attributes: Collection[str] = (),
    ) -> Item:
        """Merge attributes into an item, creating it when missing.

        Returns the item as stored after the update.
        """
        old = await self._read(pk, sk)
        await self._merge(
            pk,
            sk,
            {k: v for k, v in set_attributes.items() if k not in (PK, SK)},
            [k for k in remove_attributes if k not in (PK, SK)],
        )
        new = await self._read(pk, sk)
        await self._sync_index(old, new)
        return new if new is not None else {PK: pk, SK: sk}

    async def delete_item(self, pk: str, sk: str) -> bool:
        """Delete an item. Returns False when there was nothing to delete."""
        old = await self._read(pk, sk)
        if old is None:
            return False
        await self._sync_index(old, None)
        await self._delete(pk, sk)
        return True

    async def _sync_index(self, old: Item | None, new: Item | None) -> None:
        old_key = _index_key(old)
        new_key = _index_key(new)
        if old is not None and old_key is not None and old_key != new_key:
            await self._delete_index_entry(old_key[0], old_key[1], old[PK])
        if new is not None and new_key is not None:
            await self._write_index_entry(new_key[0], new_key[1], new)

    @abstractmethod
    async def _read(self, pk: str, sk: str) -> Item | None: ...

    @abstractmethod
    async def _write(self, item: Item) -> None: ...

    @abstractmethod
    async def _merge(
        self, pk: str, sk: str, set_attributes: dict[str, Any], remove: list[str]
    ) -> None: ...

    @abstractmethod
    async def _delete(self, pk: str, sk: str) -> None: ...

    @abstractmethod
    async def _write_index_entry(self, index_pk: str, index_sk: str, item: Item) -> None: ...

    @abstractmethod
    async def _delete_index_entry(self, index_pk: str, index_sk: str, pk: str) -> None: ...

    @abstractmethod
    async def query(self, pk: str, sk_prefix: str | None = None) -> list[Item]:
        """All items of a partition in ascending SK order."""
        ...

    @abstractmethod
    async def query_index(
        self,
        index_pk: str,
        *,
        limit: int,
        exclusive_start_key: IndexKey | None = None,
    ) -> tuple[list[Item], IndexKey | None]:
        """One page of the secondary index, newest first.

        Returns the items and the key to resume after, or None when the
        partition is exhausted.
        """
        ...

    @abstractmethod
    async def find_by_sort_key(self, sk: str) -> list[str]:
        """Partition keys of every item with the given sort key."""
        ...

    async def close(self) -> None:
        pass


class MemoryItemStore(ItemStore):
    """Process-local item store, for tests and local development."""

    def __init__(self, log: logging.Logger | None = None):
        super().__init__(log)
        self._partitions: dict[str, dict[str, Item]] = {}
        self._index: dict[str, dict[IndexKey, Item]] = {}

    async def _read(self, pk: str, sk: str) -> Item | None:
        item = self._partitions.get(pk, {}).get(sk)
        return copy.deepcopy(item) if item is not None else None

    async def _write(self, item: Item) -> None:
        self._partitions.setdefault(item[PK], {})[item[SK]] = copy.deepcopy(item)

    async def _merge(
        self, pk: str, sk: str, set_attributes: dict[str, Any], remove: list[str]
    ) -> None:
        item = self._partitions.setdefault(pk, {}).setdefault(sk, {PK: pk, SK: sk})
        item.update(copy.deepcopy(set_attributes))
        for key in remove:
            item.pop(key, None)

    async def _delete(self, pk: str, sk: str) -> None:
        partition = self._partitions.get(pk)
        if partition is None:
            return
        partition.pop(sk, None)
        if not partition:
            del self._partitions[pk]

    async def _write_index_entry(self, index_pk: str, index_sk: str, item: Item) -> None:
        self._index.setdefault(index_pk, {})[(index_sk, item[PK])] = copy.deepcopy(item)

    async def _delete_index_entry(self, index_pk: str, index_sk: str, pk: str) -> None:
        entries = self._index.get(index_pk)
        if entries is None:
            return
        entries.pop((index_sk, pk), None)
        if not entries:
            del self._index[index_pk]

    async def query(self, pk: str, sk_prefix: str | None = None) -> list[Item]:
        partition = self._partitions.get(pk, {})
        return [
            copy.deepcopy(partition[sk])
            for sk in sorted(partition)
            if sk_prefix is None or sk.startswith(sk_prefix)
        ]

    async def query_index(
        self,
        index_pk: str,
        *,
        limit: int,
        exclusive_start_key: IndexKey | None = None,
    ) -> tuple[list[Item], IndexKey | None]:
        if limit <= 0:
            raise ValueError("limit must be positive")
        entries = self._index.get(index_pk, {})
        keys = sorted(entries, reverse=True)
        if exclusive_start_key is not None:
            start = tuple(exclusive_start_key)
            keys = [key for key in keys if key < start]

        page = keys[:limit]
        last_key = page[-1] if len(keys) > limit else None
        return [copy.deepcopy(entries[key]) for key in page], last_key

    async def find_by_sort_key(self, sk: str) -> list[str]:
        return [pk for pk, partition in self._partitions.items() if sk in partition]
