"""
Notebook: the document model and the process-wide registry of open notebooks.
"""

import logging
from enum import Enum
from typing import Any, Callable, Iterator, Optional, Union

from pydantic import BaseModel, Field, PrivateAttr

from notebook_remote.cell import (
    AnyCell,
    Cell,
    CellType,
    CodeCell,
    cell_from_wire,
    convert_cell,
    make_cell,
)
from notebook_remote.config import DiscardPolicy, should_discard
from notebook_remote.errors import InvalidState, NoSuchNeighbor
from notebook_remote.events import EventBus

logger = logging.getLogger(__name__)

NBFORMAT = 3
NBFORMAT_MINOR = 0


class Direction(str, Enum):
    """Direction of a neighbor relative to a cell."""
    UP = "up"
    DOWN = "down"


def empty_document(name: str = "Untitled") -> dict[str, Any]:
    """Wire-format document with no cells."""
    return {
        "metadata": {"name": name},
        "nbformat": NBFORMAT,
        "nbformat_minor": NBFORMAT_MINOR,
        "worksheets": [{"cells": [], "metadata": {}}],
    }


class Notebook(BaseModel):
    """
    A live notebook backed by a remote store and a kernel session.

    A notebook contains:
    - Cells in document order
    - Metadata (name, arbitrary key/value)
    - A dirty flag and a revision counter
    - An event bus and at most one kernel session
    """

    model_config = {"arbitrary_types_allowed": True}

    server: str
    notebook_id: str
    cells: list[AnyCell] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)
    nbformat: int = NBFORMAT
    nbformat_minor: int = NBFORMAT_MINOR

    _bus: EventBus = PrivateAttr(default_factory=EventBus)
    _session: Any = PrivateAttr(default=None)
    _registry: Any = PrivateAttr(default=None)
    _dirty: bool = PrivateAttr(default=False)
    _revision: int = PrivateAttr(default=0)
    _loaded: bool = PrivateAttr(default=False)
    _closed: bool = PrivateAttr(default=False)
    _deleted: list[tuple[int, Cell]] = PrivateAttr(default_factory=list)

    def model_post_init(self, __context: Any):
        if "name" not in self.metadata:
            self.metadata["name"] = self.notebook_id
        for cell in self.cells:
            cell.bind(self)
        self._bus.on("set_dirty", lambda _ctx, value: self.set_dirty(bool(value)))
        self._bus.on("set_next_input", self._on_set_next_input)

    # ------------------------------------------------------------------ #
    # Identity and state
    # ------------------------------------------------------------------ #

    @property
    def key(self) -> tuple[str, str]:
        return (self.server, self.notebook_id)

    @property
    def name(self) -> str:
        return self.metadata.get("name", self.notebook_id)

    @property
    def title(self) -> str:
        return f"{self.name} [{self.server}]"

    @property
    def bus(self) -> EventBus:
        return self._bus

    @property
    def session(self):
        return self._session

    @property
    def dirty(self) -> bool:
        return self._dirty

    @property
    def revision(self) -> int:
        return self._revision

    @property
    def loaded(self) -> bool:
        return self._loaded

    @property
    def closed(self) -> bool:
        return self._closed

    def mark_dirty(self):
        """Record an in-memory change."""
        self._revision += 1
        self._set_dirty_flag(True)

    def mark_clean(self, revision: Optional[int] = None) -> bool:
        """
        Clear the dirty flag.

        Args:
            revision: Revision the persisted copy was taken at. If the
                notebook changed since, it stays dirty.

        Returns:
            True if the flag was cleared
        """
        if revision is not None and revision != self._revision:
            logger.info("%s changed during save (rev %d -> %d), staying dirty",
                        self.title, revision, self._revision)
            return False
        self._set_dirty_flag(False)
        return True

    def set_dirty(self, value: bool):
        if value:
            self.mark_dirty()
        else:
            self.mark_clean()

    def _set_dirty_flag(self, value: bool):
        changed = value != self._dirty
        self._dirty = value
        if changed:
            self._bus.trigger("dirty_changed", {"notebook": self, "dirty": value})

    def attach_session(self, session):
        """Bind ``session`` as the active kernel session for every code cell."""
        if self._session is not None and self._session is not session:
            raise InvalidState(f"{self.title} already has a kernel session")
        self._session = session
        for cell in self.code_cells():
            cell.bind_session(session)

    # ------------------------------------------------------------------ #
    # Lookup
    # ------------------------------------------------------------------ #

    def all_cells(self) -> list[Cell]:
        return list(self.cells)

    def code_cells(self) -> list[CodeCell]:
        return [c for c in self.cells if isinstance(c, CodeCell)]

    def cell_at(self, index: int) -> Cell:
        """Get a cell by position."""
        if index < 0 or index >= len(self.cells):
            raise IndexError(f"Cell index {index} out of range (0-{len(self.cells) - 1})")
        return self.cells[index]

    def index_of(self, cell: Cell) -> int:
        for i, candidate in enumerate(self.cells):
            if candidate is cell:
                return i
        raise InvalidState(f"Cell {cell.id} is not in {self.title}")

    def find_cell(self, cell_id: str) -> Optional[Cell]:
        return next((c for c in self.cells if c.id == cell_id), None)

    def next_cell(self, cell: Cell) -> Optional[Cell]:
        index = self.index_of(cell) + 1
        return self.cells[index] if index < len(self.cells) else None

    def prev_cell(self, cell: Cell) -> Optional[Cell]:
        index = self.index_of(cell) - 1
        return self.cells[index] if index >= 0 else None

    def neighbor(self, cell: Cell, direction: Union[Direction, str]) -> Optional[Cell]:
        if Direction(direction) == Direction.UP:
            return self.prev_cell(cell)
        return self.next_cell(cell)

    def next_input_cell(self, cell: Cell, cell_type: Optional[CellType] = None) -> Optional[Cell]:
        """Next cell after ``cell``, optionally the next one of ``cell_type``."""
        return next(self._walk(cell, 1, cell_type), None)

    def prev_input_cell(self, cell: Cell, cell_type: Optional[CellType] = None) -> Optional[Cell]:
        """Previous cell before ``cell``, optionally the previous one of ``cell_type``."""
        return next(self._walk(cell, -1, cell_type), None)

    def _walk(self, cell: Cell, step: int, cell_type: Optional[CellType]) -> Iterator[Cell]:
        index = self.index_of(cell) + step
        while 0 <= index < len(self.cells):
            candidate = self.cells[index]
            if cell_type is None or candidate.cell_type == cell_type:
                yield candidate
            index += step

    def __len__(self) -> int:
        return len(self.cells)

    # ------------------------------------------------------------------ #
    # Structural edits
    # ------------------------------------------------------------------ #

    def _coerce(self, cell_or_type: Union[Cell, CellType, str]) -> Cell:
        if isinstance(cell_or_type, Cell):
            if cell_or_type.notebook is not None:
                raise InvalidState(f"Cell {cell_or_type.id} must be removed from its notebook first")
            return cell_or_type
        return make_cell(cell_or_type)

    def _adopt(self, index: int, cell: Cell) -> Cell:
        cell.bind(self)
        if isinstance(cell, CodeCell) and self._session is not None:
            cell.bind_session(self._session)
        self.cells.insert(index, cell)
        self.mark_dirty()
        return cell

    def insert_below(self, cell_or_type: Union[Cell, CellType, str], base: Optional[Cell] = None) -> Cell:
        """
        Insert a cell directly after ``base``.

        Args:
            cell_or_type: A detached cell, or the type of a new empty one
            base: Anchor cell; may be omitted only when the notebook is empty

        Returns:
            The inserted cell
        """
        if not self.cells:
            index = 0
        elif base is not None:
            index = self.index_of(base) + 1
        else:
            raise InvalidState("insert_below needs an anchor cell in a non-empty notebook")
        return self._adopt(index, self._coerce(cell_or_type))

    def insert_above(self, cell_or_type: Union[Cell, CellType, str], base: Optional[Cell] = None) -> Cell:
        """Insert a cell directly before ``base``; first position when fewer than two cells exist."""
        if len(self.cells) < 2:
            index = 0
        elif base is not None:
            index = self.index_of(base)
        else:
            raise InvalidState("insert_above needs an anchor cell")
        return self._adopt(index, self._coerce(cell_or_type))

    def add_cell(self, cell_or_type: Union[Cell, CellType, str] = CellType.CODE, input: str = "") -> Cell:
        """Append a cell at the end of the document."""
        cell = self._coerce(cell_or_type)
        if input:
            cell.input = input
        return self._adopt(len(self.cells), cell)

    def delete(self, cell: Cell) -> Cell:
        """Remove ``cell``; the most recent deletion can be restored with undelete()."""
        index = self.index_of(cell)
        self.cells.pop(index)
        cell.unbind()
        self._deleted.append((index, cell))
        self.mark_dirty()
        return cell

    def undelete(self) -> Optional[Cell]:
        """
        Restore the most recently deleted cell at its old position.

        Deleted cells that have since been inserted again are dropped from
        the stash and skipped.
        """
        while self._deleted:
            index, cell = self._deleted.pop()
            if cell.notebook is not None:
                logger.debug("Cell %s was reinserted, not restoring it", cell.id)
                continue
            return self._adopt(min(index, len(self.cells)), cell)
        return None

    def move(self, cell: Cell, direction: Union[Direction, str]) -> Cell:
        """Swap ``cell`` with its neighbor in ``direction``."""
        direction = Direction(direction)
        other = self.neighbor(cell, direction)
        if other is None:
            raise NoSuchNeighbor(direction.value)
        index = self.index_of(cell)
        target = index - 1 if direction == Direction.UP else index + 1
        self.cells.pop(index)
        self.cells.insert(target, cell)
        self.mark_dirty()
        return cell

    def split(self, cell: Cell, position: int, trim: bool = True) -> Cell:
        """
        Split ``cell`` at ``position`` into itself and a new cell below.

        With ``trim``, one newline is dropped on each side of the boundary.

        Returns:
            The new cell holding the text at and after ``position``
        """
        self.index_of(cell)
        if position < 0 or position > len(cell.input):
            raise InvalidState(f"Split position {position} outside cell of length {len(cell.input)}")
        head, tail = cell.input[:position], cell.input[position:]
        if trim:
            head = head[:-1] if head.endswith("\n") else head
            tail = tail[1:] if tail.startswith("\n") else tail

        new_cell = make_cell(cell.cell_type, input=tail, level=getattr(cell, "level", None))
        self.insert_below(new_cell, base=cell)
        cell.set_input(head)
        return new_cell

    def merge(self, cell: Cell, direction: Union[Direction, str] = Direction.UP) -> Cell:
        """
        Join the neighbor in ``direction`` into ``cell``; the neighbor is deleted.

        Texts are joined with a single newline in document order.
        """
        direction = Direction(direction)
        other = self.neighbor(cell, direction)
        if other is None:
            raise NoSuchNeighbor(direction.value)
        if direction == Direction.UP:
            text = f"{other.input}\n{cell.input}"
        else:
            text = f"{cell.input}\n{other.input}"
        self.delete(other)
        cell.set_input(text)
        return cell

    def convert_type(self, cell: Cell, new_type: Union[CellType, str], level: Optional[int] = None) -> Cell:
        """Replace ``cell`` with a cell of ``new_type`` at the same position."""
        index = self.index_of(cell)
        new_cell = convert_cell(cell, new_type, level)
        self.cells.pop(index)
        cell.unbind()
        return self._adopt(index, new_cell)

    def _on_set_next_input(self, _context, payload: dict[str, Any]):
        base = payload.get("cell")
        if base is not None and base.notebook is not self:
            base = None
        if base is None and self.cells:
            base = self.cells[-1]
        self.insert_below(make_cell(CellType.CODE, input=payload.get("text", "")), base=base)

    # ------------------------------------------------------------------ #
    # Wire format
    # ------------------------------------------------------------------ #

    def to_wire_format(self, discard_outputs: Optional[DiscardPolicy] = None) -> dict[str, Any]:
        """
        Convert to the persisted document.

        Args:
            discard_outputs: never / always / predicate over this notebook

        Returns:
            Document dict with a single worksheet
        """
        include_outputs = not should_discard(discard_outputs, self)
        records = []
        for cell in self.cells:
            if isinstance(cell, CodeCell):
                records.append(cell.to_wire(include_outputs=include_outputs))
            else:
                records.append(cell.to_wire())
        return {
            "metadata": dict(self.metadata),
            "nbformat": self.nbformat,
            "nbformat_minor": self.nbformat_minor,
            "worksheets": [{"cells": records, "metadata": {}}],
        }

    def from_wire_format(self, document: dict[str, Any]):
        """Replace the whole cell sequence with the document's first worksheet."""
        worksheets = document.get("worksheets") or [{}]
        new_cells = [cell_from_wire(r) for r in worksheets[0].get("cells", [])]

        for cell in self.cells:
            cell.unbind()
        self.cells = []
        for cell in new_cells:
            cell.bind(self)
            if isinstance(cell, CodeCell) and self._session is not None:
                cell.bind_session(self._session)
            self.cells.append(cell)

        self.metadata = dict(document.get("metadata", {}))
        self.metadata.setdefault("name", self.notebook_id)
        self.nbformat = document.get("nbformat", NBFORMAT)
        self.nbformat_minor = document.get("nbformat_minor", NBFORMAT_MINOR)
        self._deleted.clear()
        self._loaded = True
        self.mark_clean()

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #

    def close(self, confirm: Optional[Callable[["Notebook"], bool]] = None) -> bool:
        """
        Tear down the notebook: kill the kernel, unregister, drop the bus.

        Args:
            confirm: Asked before killing a running kernel; returning False
                keeps the notebook open

        Returns:
            True if the notebook was closed
        """
        if self._closed:
            return True
        session = self._session
        if session is not None and session.started:
            if confirm is not None and not confirm(self):
                return False
            session.kill()
        if self._registry is not None:
            self._registry.unregister(self)
        self._bus.clear()
        self._closed = True
        logger.info("Closed %s", self.title)
        return True


class NotebookRegistry:
    """Maps (server, notebook_id) to the live Notebook for that remote notebook."""

    def __init__(self):
        self._entries: dict[tuple[str, str], Notebook] = {}

    def lookup(self, server: str, notebook_id: str) -> Optional[Notebook]:
        return self._entries.get((server, notebook_id))

    def register(self, notebook: Notebook):
        existing = self._entries.get(notebook.key)
        if existing is not None and existing is not notebook:
            raise InvalidState(f"{notebook.title} is already open")
        self._entries[notebook.key] = notebook
        notebook._registry = self

    def unregister(self, notebook: Notebook):
        if self._entries.get(notebook.key) is notebook:
            del self._entries[notebook.key]
        if notebook._registry is self:
            notebook._registry = None

    def __contains__(self, key: tuple[str, str]) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)


registry = NotebookRegistry()
