"""
Response Formatter
==================
Turns a workflow result into display-ready content and an incremental chunk
stream for the transport layer.

Shapes:
  markdown  the workflow's summary text as-is
  json      the result's structured data, pretty-printed
  chart     tabular {title, columns, rows} as JSON, ready for a chart widget

Streaming:
  ChunkStream yields {"type": "chunk", "index": n, "content": ...} events of
  ``chunk_size`` words each, then one {"type": "complete"} event. Each word
  keeps its trailing whitespace (and the first chunk keeps any leading
  whitespace), so joining the chunk contents gives back the exact input.
  Iterating the stream again starts over from the first chunk.
"""
import asyncio
import json
import re
from dataclasses import dataclass
from typing import Any, AsyncIterator, Iterator, Literal, Optional

from pydantic import BaseModel, Field

ResponseShape = Literal["markdown", "json", "chart"]
RESPONSE_SHAPES: tuple[str, ...] = ("markdown", "json", "chart")

DEFAULT_CHUNK_SIZE = 5

_WORD = re.compile(r"\S+\s*")


class TableData(BaseModel):
    title: str = ""
    columns: list[str] = Field(default_factory=list)
    rows: list[list[Any]] = Field(default_factory=list)


class WorkflowResult(BaseModel):
    """What a workflow hands to the formatter."""

    kind: Literal["refund", "retrieval", "ticket", "message"] = "message"
    summary: str = ""
    data: Any = None
    table: Optional[TableData] = None


class StreamEvent(BaseModel):
    type: Literal["chunk", "complete"]
    index: Optional[int] = None
    content: Optional[str] = None

    def to_dict(self) -> dict:
        return self.model_dump(exclude_none=True)


def iter_word_groups(content: str, chunk_size: int = DEFAULT_CHUNK_SIZE) -> Iterator[str]:
    if chunk_size < 1:
        raise ValueError("chunk_size must be at least 1")
    lead = len(content) - len(content.lstrip())
    pending = content[:lead]
    group: list[str] = []
    for match in _WORD.finditer(content, lead):
        group.append(match.group(0))
        if len(group) == chunk_size:
            yield pending + "".join(group)
            pending, group = "", []
    if group or pending:
        yield pending + "".join(group)


class ChunkStream:
    """Lazy, finite, restartable sequence of StreamEvents over one string."""

    def __init__(self, content: str, chunk_size: int = DEFAULT_CHUNK_SIZE):
        if chunk_size < 1:
            raise ValueError("chunk_size must be at least 1")
        self.content = content
        self.chunk_size = chunk_size

    def __iter__(self) -> Iterator[StreamEvent]:
        for index, text in enumerate(iter_word_groups(self.content, self.chunk_size)):
            yield StreamEvent(type="chunk", index=index, content=text)
        yield StreamEvent(type="complete")

    async def __aiter__(self) -> AsyncIterator[StreamEvent]:
        for event in self:
            yield event
            await asyncio.sleep(0)

    def chunks(self) -> list[str]:
        return list(iter_word_groups(self.content, self.chunk_size))

    def events(self) -> list[dict]:
        return [event.to_dict() for event in self]


@dataclass
class FormattedResponse:
    rendered_content: str
    chunks: ChunkStream


def _as_result(result: Any) -> WorkflowResult:
    if isinstance(result, WorkflowResult):
        return result
    if isinstance(result, str):
        return WorkflowResult(summary=result)
    if isinstance(result, BaseModel):
        return WorkflowResult(data=result.model_dump(mode="json"))
    return WorkflowResult(data=result)


def _table_from_rows(title: str, data: Any) -> Optional[TableData]:
    if not isinstance(data, list) or not data or not all(isinstance(r, dict) for r in data):
        return None
    columns: list[str] = []
    for row in data:
        for key in row:
            if key not in columns:
                columns.append(key)
    return TableData(
        title=title,
        columns=columns,
        rows=[[row.get(col) for col in columns] for row in data],
    )


class ResponseFormatter:
    def __init__(self, chunk_size: int = DEFAULT_CHUNK_SIZE):
        self.chunk_size = chunk_size

    def render_markdown(self, result: WorkflowResult) -> str:
        if result.summary:
            return result.summary
        if result.data is None:
            return ""
        return "```json\n" + json.dumps(result.data, indent=2, default=str) + "\n```"

    def render_json(self, result: WorkflowResult) -> str:
        if result.data is None and result.table is None:
            try:
                parsed = json.loads(result.summary)
            except (json.JSONDecodeError, TypeError):
                parsed = {"response": result.summary}
            return json.dumps(parsed, indent=2, default=str)
        payload: dict[str, Any] = {"kind": result.kind, "summary": result.summary}
        if result.data is not None:
            payload["data"] = result.data
        if result.table is not None:
            payload["table"] = result.table.model_dump()
        return json.dumps(payload, indent=2, default=str)

    def render_chart(self, result: WorkflowResult) -> str:
        title = result.kind.capitalize()
        table = result.table or _table_from_rows(title, result.data)
        if table is None:
            table = TableData(title=title, columns=["response"], rows=[[result.summary]])
        return json.dumps(table.model_dump(), indent=2, default=str)

    def format(self, result: Any, shape: ResponseShape = "markdown") -> FormattedResponse:
        workflow_result = _as_result(result)
        if shape == "json":
            rendered = self.render_json(workflow_result)
        elif shape == "chart":
            rendered = self.render_chart(workflow_result)
        elif shape == "markdown":
            rendered = self.render_markdown(workflow_result)
        else:
            raise ValueError(f"unsupported response shape: {shape!r}")
        return FormattedResponse(rendered_content=rendered, chunks=self.chunk(rendered))

    def chunk(self, content: str, chunk_size: Optional[int] = None) -> ChunkStream:
        return ChunkStream(content, self.chunk_size if chunk_size is None else chunk_size)
