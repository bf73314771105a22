import re
from dataclasses import dataclass, field, fields
from typing import Any, ClassVar, Literal, Self, get_args

from conversation_data_layer.util import normalize_timestamp

StepType = Literal[
    "run",
    "tool",
    "llm",
    "embedding",
    "retrieval",
    "rerank",
    "undefined",
    "user_message",
    "assistant_message",
    "system_message",
]
ElementType = Literal[
    "image",
    "text",
    "pdf",
    "tasklist",
    "audio",
    "video",
    "file",
    "plotly",
    "dataframe",
    "custom",
]
ElementDisplay = Literal["inline", "side", "page"]
ElementSize = Literal["small", "medium", "large"]
FeedbackValue = Literal[-1, 0, 1]

STEP_TYPES: frozenset[str] = frozenset(get_args(StepType))
ELEMENT_TYPES: frozenset[str] = frozenset(get_args(ElementType))
ELEMENT_DISPLAYS: frozenset[str] = frozenset(get_args(ElementDisplay))
ELEMENT_SIZES: frozenset[str] = frozenset(get_args(ElementSize))
FEEDBACK_VALUES: frozenset[int] = frozenset(get_args(FeedbackValue))

_CAMEL_BOUNDARY = re.compile(r"_([a-z])")


def _camel(name: str) -> str:
    return _CAMEL_BOUNDARY.sub(lambda m: m.group(1).upper(), name)


class _Record:
    """Dict conversion shared by the entity dataclasses.

    Keys are camelCase on the way out. On the way in both camelCase and
    snake_case are recognized and anything else is ignored.
    """

    # Attributes handled by the subclass rather than copied verbatim
    _nested: ClassVar[frozenset[str]] = frozenset()
    # Attributes that are never serialized
    _transient: ClassVar[frozenset[str]] = frozenset()

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {}
        for f in fields(self):  # type: ignore[arg-type]
            if f.name in self._nested or f.name in self._transient:
                continue
            data[_camel(f.name)] = getattr(self, f.name)
        return data

    @classmethod
    def _kwargs_from_dict(cls, data: dict[str, Any]) -> dict[str, Any]:
        kwargs: dict[str, Any] = {}
        for f in fields(cls):  # type: ignore[arg-type]
            if f.name in cls._nested:
                continue
            for key in (_camel(f.name), f.name):
                if key in data:
                    kwargs[f.name] = data[key]
                    break
        return kwargs

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Self:
        return cls(**cls._kwargs_from_dict(data))


@dataclass
class User(_Record):
    identifier: str
    metadata: dict[str, Any] = field(default_factory=dict)
    id: str | None = None
    created_at: str | None = None

    def __post_init__(self):
        self.created_at = normalize_timestamp(self.created_at)
        if self.metadata is None:
            self.metadata = {}


@dataclass
class Feedback(_Record):
    for_id: str
    value: int
    id: str | None = None
    thread_id: str | None = None
    comment: str | None = None

    def __post_init__(self):
        if self.value not in FEEDBACK_VALUES:
            raise ValueError(
                f"Feedback value must be one of {sorted(FEEDBACK_VALUES)}, "
                f"got {self.value!r}"
            )


@dataclass
class Step(_Record):
    """One message or action within a thread.

    Every optional field defaults to ``None`` which means "not provided": an
    upsert leaves the stored value untouched for such fields.
    """

    _nested = frozenset({"feedback"})

    id: str
    thread_id: str
    name: str | None = None
    type: StepType | None = None
    parent_id: str | None = None
    streaming: bool | None = None
    wait_for_answer: bool | None = None
    is_error: bool | None = None
    input: str | None = None
    output: str | None = None
    created_at: str | None = None
    start: str | None = None
    end: str | None = None
    generation: dict[str, Any] | None = None
    show_input: bool | str | None = None
    language: str | None = None
    indent: int | None = None
    tags: list[str] | None = None
    metadata: dict[str, Any] | None = None
    feedback: Feedback | None = None

    def __post_init__(self):
        if self.type is not None and self.type not in STEP_TYPES:
            raise ValueError(f"Unknown step type: {self.type!r}")
        self.created_at = normalize_timestamp(self.created_at)
        self.start = normalize_timestamp(self.start)
        self.end = normalize_timestamp(self.end)

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["feedback"] = self.feedback.to_dict() if self.feedback else None
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Self:
        kwargs = cls._kwargs_from_dict(data)
        if data.get("feedback"):
            kwargs["feedback"] = Feedback.from_dict(data["feedback"])
        return cls(**kwargs)


@dataclass
class Element(_Record):
    _transient = frozenset({"path"})

    id: str
    thread_id: str
    type: ElementType = "file"
    name: str = ""
    url: str | None = None
    object_key: str | None = None
    display: ElementDisplay = "inline"
    size: ElementSize | None = None
    page: int | None = None
    language: str | None = None
    mime: str | None = None
    for_id: str | None = None
    props: dict[str, Any] | None = None
    created_at: str | None = None
    # Local file whose bytes are uploaded on upsert; never persisted
    path: str | None = field(default=None, compare=False)

    def __post_init__(self):
        if self.type not in ELEMENT_TYPES:
            raise ValueError(f"Unknown element type: {self.type!r}")
        if self.display not in ELEMENT_DISPLAYS:
            raise ValueError(f"Unknown element display: {self.display!r}")
        if self.size is not None and self.size not in ELEMENT_SIZES:
            raise ValueError(f"Unknown element size: {self.size!r}")
        self.created_at = normalize_timestamp(self.created_at)


@dataclass
class Thread(_Record):
    _nested = frozenset({"steps", "elements"})

    id: str
    name: str | None = None
    user_id: str | None = None
    user_identifier: str | None = None
    tags: list[str] | None = None
    metadata: dict[str, Any] | None = None
    created_at: str | None = None
    steps: list[Step] = field(default_factory=list)
    elements: list[Element] = field(default_factory=list)

    def __post_init__(self):
        self.created_at = normalize_timestamp(self.created_at)

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["steps"] = [step.to_dict() for step in self.steps]
        data["elements"] = [element.to_dict() for element in self.elements]
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Self:
        kwargs = cls._kwargs_from_dict(data)
        kwargs["steps"] = [Step.from_dict(s) for s in data.get("steps") or []]
        kwargs["elements"] = [
            Element.from_dict(e) for e in data.get("elements") or []
        ]
        return cls(**kwargs)


@dataclass
class Pagination:
    first: int | None = None
    cursor: str | None = None


@dataclass
class ThreadFilter:
    user_id: str | None = None
    feedback: int | None = None
    search: str | None = None


@dataclass
class PageInfo:
    has_next_page: bool
    start_cursor: str | None = None
    end_cursor: str | None = None


@dataclass
class PaginatedResponse[T]:
    page_info: PageInfo
    data: list[T]


def sort_key(entity: Step | Element) -> tuple[str, str]:
    """Ordering of steps and elements within a thread."""
    return (entity.created_at or "", entity.id)
