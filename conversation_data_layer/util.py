import uuid
from collections.abc import AsyncIterable, AsyncIterator, Callable, Sequence
from datetime import UTC, datetime
from typing import Any, cast

import base62  # type: ignore[import-untyped]
import msgpack
import uuid_utils
import uuid_utils.compat


def select_exc(items: Sequence) -> Sequence[Exception]:
    return [item for item in items if isinstance(item, Exception)]


def pack(value: Any) -> bytes:
    """Serialize a value to MessagePack bytes."""
    return cast(bytes, msgpack.packb(value, use_bin_type=True))


def unpack(data: bytes | None) -> Any:
    """Deserialize MessagePack bytes; empty input yields None."""
    if data is None or data == b"":
        return None
    return msgpack.unpackb(data, raw=False)


def uuid7(*, time_ms: int | None = None, datetime: datetime | None = None) -> uuid.UUID:
    # Do not allow both time_ms and datetime to be provided
    if time_ms is not None and datetime is not None:
        raise ValueError("Provide only one of time_ms or datetime")

    if time_ms is None and datetime is not None:
        time_ms = int(datetime.timestamp() * 1000)

    if time_ms is not None:
        # uuid_utils.uuid7 expects seconds plus nanoseconds
        timestamp_s = time_ms // 1000
        nanos = (time_ms % 1000) * 1_000_000
        return uuid_utils.compat.uuid7(timestamp=timestamp_s, nanos=nanos)

    return uuid_utils.compat.uuid7()


def new_id() -> str:
    """Generate a time-ordered identifier for a new entity."""
    return str(uuid7())


def uuid7_to_datetime(u: uuid.UUID | str) -> datetime:
    """Convert a UUIDv7 to a timezone-aware UTC datetime."""
    if isinstance(u, str):
        u = uuid.UUID(u)
    converted = uuid_utils.UUID(int=u.int)
    if converted.version != 7:
        raise ValueError("UUID is not version 7")
    return datetime.fromtimestamp(converted.timestamp / 1000, tz=UTC)


def add_timezone_if_missing(dt: datetime) -> datetime:
    """Add UTC timezone to naive datetime objects."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


def isoformat_to_datetime(iso_str: str) -> datetime:
    """Parse ISO formatted datetime string into timezone-aware UTC datetime."""
    normalized = iso_str.replace("Z", "+00:00")
    return add_timezone_if_missing(datetime.fromisoformat(normalized))


def datetime_to_isoformat(dt: datetime) -> str:
    """Render a datetime as a fixed-width UTC ISO string.

    Microseconds are always included so that the strings sort in
    chronological order.
    """
    return add_timezone_if_missing(dt).isoformat(timespec="microseconds")


def normalize_timestamp(value: str | datetime | None) -> str | None:
    if value is None:
        return None
    if isinstance(value, str):
        value = isoformat_to_datetime(value)
    return datetime_to_isoformat(value)


def utc_now_isoformat() -> str:
    return datetime_to_isoformat(datetime.now(tz=UTC))


def encode_cursor(backend: str, position: dict[str, Any]) -> str:
    """Encode a backend-tagged pagination position as an opaque token."""
    return cast(str, base62.encodebytes(pack({"b": backend, "p": position})))


def decode_cursor(backend: str, cursor: str) -> dict[str, Any]:
    """Decode a token produced by encode_cursor for the same backend."""
    try:
        decoded = unpack(base62.decodebytes(cursor))
    except Exception as exc:
        raise ValueError(f"Invalid cursor: {cursor!r}") from exc

    if not isinstance(decoded, dict) or not isinstance(decoded.get("p"), dict):
        raise ValueError(f"Invalid cursor: {cursor!r}")
    if decoded.get("b") != backend:
        raise ValueError(
            f"Cursor was issued by the {decoded.get('b')!r} backend, "
            f"not {backend!r}"
        )
    return cast(dict[str, Any], decoded["p"])


async def afilter[T](
    predicate: Callable[[T], bool],
    async_iterable: AsyncIterable[T],
) -> AsyncIterator[T]:
    async for item in async_iterable:
        if predicate(item):
            yield item


async def atake[T](count: int, async_iterable: AsyncIterable[T]) -> list[T]:
    items: list[T] = []
    if count <= 0:
        return items
    async for item in async_iterable:
        items.append(item)
        if len(items) >= count:
            break
    return items
