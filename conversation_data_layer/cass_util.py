import asyncio
from typing import Any, Generic, Protocol, TypeVar

from cassandra.cluster import ResultSet

# Generic type for row (namedtuple by default, but configurable via row_factory)
RowT = TypeVar("RowT")


class AsyncResultSet(Protocol, Generic[RowT]):
    """Protocol for async iteration over Cassandra query results.

    Supports both automatic async iteration and manual pagination via
    current_rows and paging_state properties.
    """

    def __aiter__(self) -> "AsyncResultSet[RowT]": ...

    async def __anext__(self) -> RowT: ...

    def one(self) -> RowT | None:
        """First row of the current page, or None."""
        ...

    @property
    def has_more_pages(self) -> bool: ...

    @property
    def current_rows(self) -> list[RowT]: ...

    @property
    def paging_state(self) -> Any: ...


async def _execute_to_result_set(
    session: Any, query: Any, params: Any = None, **kwargs: Any
) -> ResultSet:
    """Run execute_async and await the outcome without blocking the loop.

    The driver invokes callbacks from its own event thread with the raw rows
    produced by the row factory, so the rows are wrapped in a ResultSet the
    same way ResponseFuture.result() would, then handed back to the asyncio
    loop thread-safely.
    """
    future = session.execute_async(query, params, **kwargs)

    loop = asyncio.get_running_loop()
    async_future = loop.create_future()

    def handle_result(result):
        if not async_future.cancelled():
            result_set = ResultSet(future, result)
            loop.call_soon_threadsafe(
                lambda: async_future.done() or async_future.set_result(result_set)
            )

    def handle_error(exc):
        if not async_future.cancelled():
            loop.call_soon_threadsafe(
                lambda: async_future.done() or async_future.set_exception(exc)
            )

    future.add_callback(handle_result)
    future.add_errback(handle_error)

    return await async_future


class AsyncResultSetWrapper(Generic[RowT]):
    """Async iterator over a cassandra-driver ResultSet.

    Rows of the current page are served synchronously. When a page is
    exhausted the next one is requested with the saved paging_state through
    execute_async, so paging never blocks the event loop.

    Usage:
        async for row in await aexecute(session, query, params):
            process(row)
    """

    def __init__(
        self,
        session: Any,
        query: Any,
        params: Any,
        initial_result_set: ResultSet,
        **execute_kwargs: Any,
    ):
        self._session = session
        self._query = query
        self._params = params
        # paging_state is managed here, never forwarded from the first call
        self._execute_kwargs = {
            k: v for k, v in execute_kwargs.items() if k != "paging_state"
        }
        self._current_result_set = initial_result_set
        self._current_page_iter: Any = None

    def __aiter__(self) -> "AsyncResultSetWrapper[RowT]":
        self._current_page_iter = iter(self._current_result_set.current_rows)
        return self

    async def __anext__(self) -> RowT:
        while True:
            try:
                return next(self._current_page_iter)  # type: ignore[no-any-return]
            except StopIteration:
                if not self._current_result_set.has_more_pages:
                    raise StopAsyncIteration

            self._current_result_set = await _execute_to_result_set(
                self._session,
                self._query,
                self._params,
                paging_state=self._current_result_set.paging_state,
                **self._execute_kwargs,
            )
            self._current_page_iter = iter(self._current_result_set.current_rows)

    def one(self) -> RowT | None:
        """Return a single row from the current page of results."""
        return self._current_result_set.one()  # type: ignore[no-any-return]

    @property
    def column_names(self) -> list[str]:
        return self._current_result_set.column_names or []

    @property
    def has_more_pages(self) -> bool:
        return self._current_result_set.has_more_pages  # type: ignore[no-any-return]

    @property
    def current_rows(self) -> list[Any]:
        return self._current_result_set.current_rows  # type: ignore[no-any-return]

    @property
    def paging_state(self) -> Any:
        """Opaque token to resume paging later, or None after the last page."""
        return self._current_result_set.paging_state


async def aexecute(session: Any, query, params=None, **kwargs) -> AsyncResultSet[Any]:
    """Execute a query and return an async iterator over results.

    Args:
        session: Cassandra session with an execute_async() method
        query: Query string or Statement
        params: Query parameters (optional)
        **kwargs: Passed to execute_async() and reused for subsequent page
            fetches (e.g. execution_profile, timeout, custom_payload)
    """
    result_set = await _execute_to_result_set(session, query, params, **kwargs)
    return AsyncResultSetWrapper(session, query, params, result_set, **kwargs)
