"""
Cell: the unit of notebook content, in four variants.

Code cells carry outputs, an execution counter and an execution state.
Markdown, raw and heading cells carry only their text.
"""

from enum import Enum
from typing import Any, Literal, Optional, Union
from uuid import uuid4

from pydantic import BaseModel, Field, PrivateAttr

from notebook_remote.errors import InvalidState


class CellType(str, Enum):
    """Type of notebook cell."""
    CODE = "code"
    MARKDOWN = "markdown"
    RAW = "raw"
    HEADING = "heading"


class ExecutionState(str, Enum):
    """Lifecycle of one run of a code cell."""
    IDLE = "idle"
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    ERRORED = "errored"


_TRANSITIONS = {
    ExecutionState.IDLE: {ExecutionState.QUEUED},
    ExecutionState.QUEUED: {ExecutionState.RUNNING, ExecutionState.COMPLETED, ExecutionState.ERRORED},
    ExecutionState.RUNNING: {ExecutionState.COMPLETED, ExecutionState.ERRORED},
    ExecutionState.COMPLETED: set(),
    ExecutionState.ERRORED: set(),
}


class OutputType(str, Enum):
    """Kind of output record."""
    STREAM = "stream"
    EXECUTE_RESULT = "execute_result"
    DISPLAY_DATA = "display_data"
    ERROR = "error"


# nbformat 3 names for output types and mime keys.
_WIRE_OUTPUT_TYPES = {
    OutputType.STREAM: "stream",
    OutputType.EXECUTE_RESULT: "pyout",
    OutputType.DISPLAY_DATA: "display_data",
    OutputType.ERROR: "pyerr",
}
_OUTPUT_TYPE_ALIASES = {
    "stream": OutputType.STREAM,
    "pyout": OutputType.EXECUTE_RESULT,
    "execute_result": OutputType.EXECUTE_RESULT,
    "display_data": OutputType.DISPLAY_DATA,
    "pyerr": OutputType.ERROR,
    "error": OutputType.ERROR,
}
_MIME_TO_WIRE = {
    "text/plain": "text",
    "text/html": "html",
    "text/markdown": "markdown",
    "text/latex": "latex",
    "image/png": "png",
    "image/jpeg": "jpeg",
    "image/svg+xml": "svg",
    "application/json": "json",
    "application/javascript": "javascript",
}
_WIRE_TO_MIME = {v: k for k, v in _MIME_TO_WIRE.items()}
# Keys of a v3 rich output record that are not mime data.
_RESERVED_OUTPUT_KEYS = frozenset({"output_type", "metadata", "prompt_number", "execution_count"})


class Output(BaseModel):
    """A single output record of a code cell."""
    output_type: OutputType
    name: Optional[str] = None  # stream name: stdout | stderr
    text: Optional[str] = None
    data: dict[str, Any] = Field(default_factory=dict)
    metadata: dict[str, Any] = Field(default_factory=dict)
    execution_count: Optional[int] = None
    ename: Optional[str] = None
    evalue: Optional[str] = None
    traceback: list[str] = Field(default_factory=list)

    @classmethod
    def stream(cls, text: str, name: str = "stdout") -> "Output":
        return cls(output_type=OutputType.STREAM, name=name, text=text)

    @classmethod
    def error(cls, ename: str, evalue: str, traceback: Optional[list[str]] = None) -> "Output":
        return cls(
            output_type=OutputType.ERROR,
            ename=ename,
            evalue=evalue,
            traceback=list(traceback or []),
        )

    @classmethod
    def from_message(cls, msg_type: str, content: dict[str, Any]) -> "Output":
        """
        Build an output from a kernel message.

        Args:
            msg_type: One of stream, execute_result, display_data, error
            content: Message content

        Returns:
            The output record

        Raises:
            InvalidState: ``msg_type`` is not an output message
        """
        if msg_type not in _OUTPUT_TYPE_ALIASES:
            raise InvalidState(f"Unknown output message type: {msg_type!r}")
        output_type = _OUTPUT_TYPE_ALIASES[msg_type]
        if output_type == OutputType.STREAM:
            return cls.stream(content.get("text", ""), content.get("name", "stdout"))
        if output_type == OutputType.ERROR:
            return cls.error(
                content.get("ename", "Error"),
                content.get("evalue", ""),
                content.get("traceback", []),
            )
        return cls(
            output_type=output_type,
            data=dict(content.get("data", {})),
            metadata=dict(content.get("metadata", {})),
            execution_count=content.get("execution_count"),
        )

    @property
    def is_error(self) -> bool:
        return self.output_type == OutputType.ERROR

    def to_wire(self) -> dict[str, Any]:
        """Serialize to an nbformat 3 output record."""
        record: dict[str, Any] = {"output_type": _WIRE_OUTPUT_TYPES[self.output_type]}
        if self.output_type == OutputType.STREAM:
            record["stream"] = self.name or "stdout"
            record["text"] = self.text or ""
        elif self.output_type == OutputType.ERROR:
            record["ename"] = self.ename or "Error"
            record["evalue"] = self.evalue or ""
            record["traceback"] = list(self.traceback)
        else:
            for mime, value in self.data.items():
                record[_MIME_TO_WIRE.get(mime, mime)] = value
            record["metadata"] = dict(self.metadata)
            if self.output_type == OutputType.EXECUTE_RESULT:
                record["prompt_number"] = self.execution_count
        return record

    @classmethod
    def from_wire(cls, record: dict[str, Any]) -> "Output":
        """Parse an nbformat 3 (or 4) output record."""
        kind = record.get("output_type", "")
        if kind not in _OUTPUT_TYPE_ALIASES:
            raise InvalidState(f"Unknown output type: {kind!r}")
        output_type = _OUTPUT_TYPE_ALIASES[kind]
        if output_type == OutputType.STREAM:
            text = record.get("text", "")
            if isinstance(text, list):
                text = "".join(text)
            return cls.stream(text, record.get("stream") or record.get("name") or "stdout")
        if output_type == OutputType.ERROR:
            return cls.error(record.get("ename", "Error"), record.get("evalue", ""), record.get("traceback", []))

        if "data" in record:
            data = dict(record["data"])
        else:
            data = {
                _WIRE_TO_MIME.get(key, key): value
                for key, value in record.items()
                if key not in _RESERVED_OUTPUT_KEYS
            }
        return cls(
            output_type=output_type,
            data=data,
            metadata=dict(record.get("metadata", {})),
            execution_count=record.get("prompt_number", record.get("execution_count")),
        )


def _new_cell_id() -> str:
    return f"cell_{uuid4().hex[:12]}"


class Cell(BaseModel):
    """
    Base for all cell variants.

    The back-reference to the owning notebook is private and is only used for
    neighbor lookup and dirty tracking; it is set by the notebook on insert.
    """
    id: str = Field(default_factory=_new_cell_id)
    cell_type: CellType
    input: str = ""
    metadata: dict[str, Any] = Field(default_factory=dict)

    _notebook: Any = PrivateAttr(default=None)

    @property
    def notebook(self):
        """The notebook currently holding this cell, or None."""
        return self._notebook

    @property
    def is_code(self) -> bool:
        return False

    def bind(self, notebook):
        """Attach to ``notebook``. A cell held by another notebook must be unbound first."""
        if self._notebook is not None and self._notebook is not notebook:
            raise InvalidState(f"Cell {self.id} already belongs to another notebook")
        self._notebook = notebook

    def unbind(self):
        self._notebook = None

    def set_input(self, text: str):
        """Replace the input text and mark the owning notebook dirty."""
        if text == self.input:
            return
        self.input = text
        if self._notebook is not None:
            self._notebook.mark_dirty()

    def to_wire(self) -> dict[str, Any]:
        return {
            "cell_type": self.cell_type.value,
            "source": self.input,
            "metadata": dict(self.metadata),
        }


class CodeCell(Cell):
    """An executable cell."""
    cell_type: Literal[CellType.CODE] = CellType.CODE
    outputs: list[Output] = Field(default_factory=list)
    execution_count: Optional[int] = None
    collapsed: bool = False
    language: str = "python"

    _state: ExecutionState = PrivateAttr(default=ExecutionState.IDLE)
    _session: Any = PrivateAttr(default=None)
    _active_run: Any = PrivateAttr(default=None)

    @property
    def is_code(self) -> bool:
        return True

    @property
    def state(self) -> ExecutionState:
        return self._state

    @property
    def session(self):
        """Kernel session this cell executes on, or None when unbound."""
        return self._session

    def bind_session(self, session):
        self._session = session

    def transition(self, state: ExecutionState):
        """
        Move to ``state``. Any state may return to IDLE; other moves must
        follow IDLE -> QUEUED -> RUNNING -> COMPLETED | ERRORED.
        """
        if state != ExecutionState.IDLE and state not in _TRANSITIONS[self._state]:
            raise InvalidState(f"Cannot move cell {self.id} from {self._state.value} to {state.value}")
        self._state = state

    def set_input(self, text: str):
        changed = text != self.input
        super().set_input(text)
        if changed:
            self._state = ExecutionState.IDLE
            self._active_run = None

    def append_output(self, output: Output):
        self.outputs.append(output)

    def clear_outputs(self):
        self.outputs = []

    @property
    def has_error(self) -> bool:
        return any(o.is_error for o in self.outputs)

    def to_wire(self, include_outputs: bool = True) -> dict[str, Any]:
        record = {
            "cell_type": CellType.CODE.value,
            "input": self.input,
            "language": self.language,
            "collapsed": self.collapsed,
            "prompt_number": self.execution_count,
            "metadata": dict(self.metadata),
        }
        record["outputs"] = [o.to_wire() for o in self.outputs] if include_outputs else []
        return record


class MarkdownCell(Cell):
    cell_type: Literal[CellType.MARKDOWN] = CellType.MARKDOWN


class RawCell(Cell):
    cell_type: Literal[CellType.RAW] = CellType.RAW


class HeadingCell(Cell):
    cell_type: Literal[CellType.HEADING] = CellType.HEADING
    level: int = Field(default=1, ge=1, le=6)

    def to_wire(self) -> dict[str, Any]:
        record = super().to_wire()
        record["level"] = self.level
        return record


AnyCell = Union[CodeCell, MarkdownCell, RawCell, HeadingCell]

_CELL_CLASSES: dict[CellType, type] = {
    CellType.CODE: CodeCell,
    CellType.MARKDOWN: MarkdownCell,
    CellType.RAW: RawCell,
    CellType.HEADING: HeadingCell,
}


def make_cell(cell_type: Union[CellType, str], input: str = "", level: Optional[int] = None, **kwargs) -> Cell:
    """Create a cell of the given type."""
    cell_type = CellType(cell_type)
    cls = _CELL_CLASSES[cell_type]
    if cell_type == CellType.HEADING:
        kwargs["level"] = level or 1
    return cls(input=input, **kwargs)


def convert_cell(cell: Cell, new_type: Union[CellType, str], level: Optional[int] = None) -> Cell:
    """
    Produce a new cell of ``new_type`` carrying over ``cell``'s input.

    Outputs, counter and collapsed flag survive only a code-to-code
    conversion. A heading keeps its level unless ``level`` is given.
    """
    new_type = CellType(new_type)
    kwargs: dict[str, Any] = {"metadata": dict(cell.metadata)}
    if new_type == CellType.CODE and isinstance(cell, CodeCell):
        kwargs.update(
            outputs=[o.model_copy() for o in cell.outputs],
            execution_count=cell.execution_count,
            collapsed=cell.collapsed,
            language=cell.language,
        )
    if new_type == CellType.HEADING and level is None and isinstance(cell, HeadingCell):
        level = cell.level
    return make_cell(new_type, input=cell.input, level=level, **kwargs)


def cell_from_wire(record: dict[str, Any]) -> Cell:
    """Build a cell from a wire-format record."""
    try:
        cell_type = CellType(record.get("cell_type", "code"))
    except ValueError:
        raise InvalidState(f"Unknown cell type: {record.get('cell_type')!r}")

    text = record.get("input", record.get("source", ""))
    if isinstance(text, list):
        text = "".join(text)
    metadata = dict(record.get("metadata", {}))

    if cell_type == CellType.CODE:
        return CodeCell(
            input=text,
            outputs=[Output.from_wire(o) for o in record.get("outputs", [])],
            execution_count=record.get("prompt_number", record.get("execution_count")),
            collapsed=bool(record.get("collapsed", False)),
            language=record.get("language", "python"),
            metadata=metadata,
        )
    return make_cell(cell_type, input=text, level=record.get("level"), metadata=metadata)
