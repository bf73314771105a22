"""Property-based equivalence tests between the SQL and single-table data layers."""

import asyncio
import copy
import dataclasses
import uuid
from datetime import datetime, timezone

import pytest
from hypothesis import HealthCheck, given, settings
from hypothesis import strategies as st
from hypothesis.strategies import composite

from conversation_data_layer.item_store import MemoryItemStore
from conversation_data_layer.single_table import SingleTableDataLayer
from conversation_data_layer.sql import SQLAlchemyDataLayer
from conversation_data_layer.types import (
    Element,
    Feedback,
    Pagination,
    Step,
    Thread,
    ThreadFilter,
    User,
)

ALPHABET = "abcdefghijklmnopqrstuvwxyz"
SIMPLE_TEXT = st.text(alphabet=ALPHABET, min_size=1, max_size=8)
OPTIONAL_TEXT = st.text(alphabet=ALPHABET, min_size=0, max_size=12)
METADATA_VALUE = st.one_of(
    OPTIONAL_TEXT,
    st.integers(min_value=-3, max_value=3),
    st.booleans(),
)
METADATA_DICT = st.dictionaries(
    keys=st.text(alphabet=ALPHABET, min_size=1, max_size=5),
    values=METADATA_VALUE,
    max_size=3,
)
ISO_DATETIME = st.datetimes(
    min_value=datetime(2020, 1, 1),
    max_value=datetime(2030, 12, 31),
).map(
    lambda dt: dt.replace(microsecond=0, tzinfo=timezone.utc)
    .isoformat()
    .replace("+00:00", "Z")
)
# A handful of timestamps so that ties in ordering actually occur
FEW_DATETIMES = st.sampled_from(
    [
        "2025-01-01T00:00:00Z",
        "2025-01-01T00:00:01Z",
        "2025-06-30T12:00:00Z",
    ]
)


@composite
def operation_sequences(draw):
    length = draw(st.integers(min_value=1, max_value=6))
    steps: list[str] = []
    sequence: list[dict[str, object]] = []

    for _ in range(length):
        available_ops = ["update_thread", "create_step"]
        if steps:
            available_ops += ["update_step", "feedback", "delete_step"]

        op_type = draw(st.sampled_from(available_ops))

        if op_type == "update_thread":
            op: dict[str, object] = {"type": "update_thread"}
            if draw(st.booleans()):
                op["name"] = draw(SIMPLE_TEXT)
            if draw(st.booleans()):
                op["metadata"] = draw(METADATA_DICT)
            if draw(st.booleans()):
                op["tags"] = draw(st.lists(SIMPLE_TEXT, max_size=3))
            sequence.append(op)
        elif op_type == "create_step":
            step_id = str(draw(st.uuids()))
            op = {
                "type": "create_step",
                "step_id": step_id,
                "name": draw(SIMPLE_TEXT),
                "output": draw(OPTIONAL_TEXT),
                "step_type": draw(
                    st.sampled_from(["assistant_message", "user_message"])
                ),
                "created_at": draw(ISO_DATETIME),
            }
            if draw(st.booleans()):
                op["metadata"] = draw(METADATA_DICT)
            sequence.append(op)
            if step_id not in steps:
                steps.append(step_id)
        elif op_type == "update_step":
            op = {"type": "update_step", "step_id": draw(st.sampled_from(steps))}
            if draw(st.booleans()):
                op["name"] = draw(SIMPLE_TEXT)
            if draw(st.booleans()):
                op["output"] = draw(OPTIONAL_TEXT)
            if draw(st.booleans()):
                op["metadata"] = draw(METADATA_DICT)
            sequence.append(op)
        elif op_type == "feedback":
            sequence.append(
                {
                    "type": "feedback",
                    "step_id": draw(st.sampled_from(steps)),
                    "value": draw(st.sampled_from([-1, 0, 1])),
                    "comment": draw(st.one_of(st.none(), SIMPLE_TEXT)),
                }
            )
        else:  # delete_step
            step_id = draw(st.sampled_from(steps))
            sequence.append({"type": "delete_step", "step_id": step_id})
            steps.remove(step_id)

    return sequence


@composite
def thread_listings(draw):
    count = draw(st.integers(min_value=0, max_value=8))
    threads = [
        {
            "id": str(draw(st.uuids())),
            "name": draw(st.one_of(st.none(), SIMPLE_TEXT)),
            "created_at": draw(FEW_DATETIMES),
        }
        for _ in range(count)
    ]
    return {
        "threads": threads,
        "page_size": draw(st.integers(min_value=1, max_value=4)),
        "search": draw(st.one_of(st.none(), st.sampled_from(list("aeiou")))),
    }


async def _open_layers(tmp_path):
    sql_layer = SQLAlchemyDataLayer(
        f"sqlite+aiosqlite:///{tmp_path / f'equiv_{uuid.uuid4().hex}.sqlite'}"
    )
    await sql_layer.setup()
    return sql_layer, SingleTableDataLayer(MemoryItemStore())


def _normalize_thread(thread: Thread | None) -> dict | None:
    """Comparable view of a thread, blind to backend specific identifiers."""
    if thread is None:
        return None

    steps = []
    for step in thread.steps:
        feedback = None
        if step.feedback is not None:
            feedback = (step.feedback.value, step.feedback.comment)
        steps.append(
            (
                step.id,
                step.name,
                step.type,
                step.metadata,
                step.output or "",
                step.created_at,
                feedback,
            )
        )

    return {
        "name": thread.name,
        "user_identifier": thread.user_identifier,
        "metadata": thread.metadata,
        "tags": thread.tags,
        "steps": steps,
    }


def _apply_step_update(step: Step, operation: dict) -> Step:
    return Step(
        id=step.id,
        thread_id=step.thread_id,
        name=operation.get("name"),
        output=operation.get("output"),
        metadata=copy.deepcopy(operation.get("metadata")),
    )


async def _run_equivalence_sequence(operation_sequence, tmp_path) -> None:
    layers = await _open_layers(tmp_path)
    try:
        user_identifier = f"user-{uuid.uuid4()}"
        thread_id = str(uuid.uuid4())
        for layer in layers:
            user = await layer.create_user(User(identifier=user_identifier))
            await layer.upsert_thread(
                Thread(
                    id=thread_id,
                    name="Seed Thread",
                    user_id=user.id,
                    metadata={"initial": True},
                )
            )

        for operation in operation_sequence:
            op_type = operation["type"]
            for layer in layers:
                if op_type == "update_thread":
                    await layer.upsert_thread(
                        Thread(
                            id=thread_id,
                            name=operation.get("name"),
                            metadata=copy.deepcopy(operation.get("metadata")),
                            tags=copy.deepcopy(operation.get("tags")),
                        )
                    )
                elif op_type == "create_step":
                    await layer.upsert_step(
                        Step(
                            id=operation["step_id"],
                            thread_id=thread_id,
                            name=operation["name"],
                            type=operation["step_type"],
                            output=operation["output"],
                            metadata=copy.deepcopy(operation.get("metadata")),
                            created_at=operation["created_at"],
                        )
                    )
                elif op_type == "update_step":
                    await layer.upsert_step(
                        _apply_step_update(
                            Step(id=operation["step_id"], thread_id=thread_id),
                            operation,
                        )
                    )
                elif op_type == "feedback":
                    stored = await layer.upsert_feedback(
                        Feedback(
                            for_id=operation["step_id"],
                            value=operation["value"],
                            comment=operation["comment"],
                        )
                    )
                    assert stored is not None
                else:
                    assert await layer.delete_step(operation["step_id"]) is True

            sql_thread, single_table_thread = [
                await layer.get_thread(thread_id) for layer in layers
            ]
            left = _normalize_thread(sql_thread)
            right = _normalize_thread(single_table_thread)
            assert left == right, f"Thread mismatch:\nSQL={left}\nSingleTable={right}"
    finally:
        for layer in layers:
            await layer.close()


async def _list_all(layer, user_id, page_size, search) -> list[str]:
    ids: list[str] = []
    cursor = None
    while True:
        page = await layer.list_threads(
            Pagination(first=page_size, cursor=cursor),
            ThreadFilter(user_id=user_id, search=search),
        )
        assert len(page.data) <= page_size
        ids.extend(thread.id for thread in page.data)
        if not page.page_info.has_next_page:
            return ids
        cursor = page.page_info.end_cursor


async def _run_listing(listing, tmp_path) -> None:
    layers = await _open_layers(tmp_path)
    try:
        results = []
        for layer in layers:
            user = await layer.create_user(User(identifier="lister"))
            for thread in listing["threads"]:
                await layer.upsert_thread(
                    Thread(
                        id=thread["id"],
                        name=thread["name"],
                        user_id=user.id,
                        created_at=thread["created_at"],
                    )
                )
            results.append(
                await _list_all(layer, user.id, listing["page_size"], listing["search"])
            )

        sql_ids, single_table_ids = results
        assert sql_ids == single_table_ids
        if listing["search"] is None:
            assert sorted(sql_ids) == sorted({t["id"] for t in listing["threads"]})
    finally:
        for layer in layers:
            await layer.close()


@settings(
    max_examples=15,
    deadline=None,
    suppress_health_check=[HealthCheck.too_slow, HealthCheck.function_scoped_fixture],
)
@given(operation_sequence=operation_sequences())
def test_sql_and_single_table_equivalence(operation_sequence, tmp_path):
    """Property test: both backends end up with the same thread contents."""
    asyncio.run(_run_equivalence_sequence(operation_sequence, tmp_path))


@settings(
    max_examples=15,
    deadline=None,
    suppress_health_check=[HealthCheck.too_slow, HealthCheck.function_scoped_fixture],
)
@given(listing=thread_listings())
def test_list_threads_order_equivalence(listing, tmp_path):
    """Property test: both backends page through threads in the same order."""
    asyncio.run(_run_listing(listing, tmp_path))


def _nested_thread() -> Thread:
    """A thread with every kind of child, as a caller would build it."""
    return Thread(
        id="t1",
        name="Nested",
        user_identifier="round-trip",
        tags=["a", "b"],
        metadata={"k": 1},
        created_at="2025-03-01T10:00:00Z",
        steps=[
            Step(
                id="s1",
                thread_id="t1",
                name="question",
                type="user_message",
                input="hi",
                output="hello",
                created_at="2025-03-01T10:00:01Z",
                generation={"model": "m", "tokens": 3},
                show_input="json",
                indent=0,
                tags=["x"],
                metadata={"nested": {"deep": [1, 2]}},
            ),
            Step(
                id="s2",
                thread_id="t1",
                parent_id="s1",
                type="tool",
                is_error=True,
                streaming=False,
                created_at="2025-03-01T10:00:02Z",
                feedback=Feedback(for_id="s2", thread_id="t1", value=0, comment="meh"),
            ),
        ],
        elements=[
            Element(
                id="e1",
                thread_id="t1",
                for_id="s1",
                type="image",
                name="chart.png",
                url="https://example.com/chart.png",
                display="side",
                size="large",
                mime="image/png",
                props={"alt": "chart"},
                created_at="2025-03-01T10:00:03Z",
            )
        ],
    )


async def _store_nested_thread(layer, expected: Thread) -> None:
    user = await layer.create_user(User(identifier=expected.user_identifier))
    await layer.upsert_thread(
        dataclasses.replace(
            copy.deepcopy(expected), user_id=user.id, steps=[], elements=[]
        )
    )
    for step in expected.steps:
        await layer.upsert_step(dataclasses.replace(copy.deepcopy(step), feedback=None))
    for element in expected.elements:
        await layer.upsert_element(copy.deepcopy(element))
    for step in expected.steps:
        if step.feedback is not None:
            await layer.upsert_feedback(copy.deepcopy(step.feedback))


@pytest.mark.asyncio
async def test_nested_thread_round_trip(tmp_path):
    sql_layer, single_table_layer = await _open_layers(tmp_path)
    try:
        loaded = []
        for layer in (sql_layer, single_table_layer):
            expected = _nested_thread()
            await _store_nested_thread(layer, expected)

            thread = await layer.get_thread("t1")
            # Ids of users and feedback are assigned by the backend
            assert thread.user_id is not None
            thread.user_id = None
            for step in thread.steps:
                if step.feedback is not None:
                    assert step.feedback.id is not None
                    step.feedback = dataclasses.replace(step.feedback, id=None)

            assert thread.steps == expected.steps
            assert thread.elements == expected.elements
            assert thread == expected
            loaded.append(thread)

        sql_thread, single_table_thread = loaded
        assert sql_thread == single_table_thread
    finally:
        await sql_layer.close()
        await single_table_layer.close()
