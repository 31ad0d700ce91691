"""
ExecutionCoordinator: drives code cells through their execution state machine.
"""

import logging
from dataclasses import dataclass
from typing import Any, Optional

from notebook_remote.cell import Cell, CodeCell, ExecutionState, Output
from notebook_remote.errors import InvalidState, KernelNotReady, TransportFailure
from notebook_remote.kernel import KernelReply, KernelSession, PendingRequest, RequestCallbacks
from notebook_remote.notebook import Notebook

logger = logging.getLogger(__name__)


@dataclass(eq=False)
class _Run:
    """One requested execution of a cell."""
    cell: CodeCell
    msg_id: Optional[str] = None
    saw_error: bool = False

    @property
    def active(self) -> bool:
        return self.cell._active_run is self


class ExecutionCoordinator:
    """
    Runs the cells of one notebook on its kernel session.

    Outputs and counters from every run are applied in the order replies
    arrive. Only the most recent run of a cell drives its state.
    """

    def __init__(self, notebook: Notebook):
        self.notebook = notebook

    def _session_for(self, cell: CodeCell) -> KernelSession:
        session = cell.session or self.notebook.session
        if session is None:
            raise KernelNotReady(f"{self.notebook.title} has no kernel session")
        return session

    def execute(self, cell: Cell) -> str:
        """
        Request execution of ``cell``.

        Returns:
            Message id of the execute request

        Raises:
            KernelNotReady: the session cannot accept requests; the cell stays idle
        """
        if not isinstance(cell, CodeCell):
            raise InvalidState(f"Cannot execute {cell.cell_type.value} cell")
        if cell.notebook is not self.notebook:
            raise InvalidState(f"Cell {cell.id} is not in {self.notebook.title}")

        session = self._session_for(cell)
        if not session.is_ready():
            message = f"Kernel is not ready ({session.status}); cell {cell.id} not executed"
            logger.warning(message)
            self.notebook.bus.trigger("kernel_warning", {"session": session, "message": message})
            raise KernelNotReady(message)

        previous = (cell.state, list(cell.outputs), cell._active_run)
        run = _Run(cell)
        cell.transition(ExecutionState.IDLE)
        cell.clear_outputs()
        cell._active_run = run
        cell.transition(ExecutionState.QUEUED)
        try:
            run.msg_id = session.execute(cell, cell.input, self._callbacks(run))
        except (KernelNotReady, TransportFailure):
            state, outputs, active = previous
            cell.outputs = outputs
            cell._active_run = active
            cell._state = state
            raise
        logger.debug("Queued cell %s as %s", cell.id, run.msg_id)
        return run.msg_id

    def execute_all(self, notebook: Optional[Notebook] = None) -> list[str]:
        """Issue one execute per code cell in document order without waiting for replies."""
        notebook = notebook or self.notebook
        cells = notebook.code_cells()
        if cells and not self._session_for(cells[0]).is_ready():
            raise KernelNotReady(f"Kernel for {notebook.title} is not ready")
        return [self.execute(cell) for cell in cells]

    def _callbacks(self, run: _Run) -> RequestCallbacks:
        return RequestCallbacks(
            on_reply=lambda reply: self._on_reply(run, reply),
            on_output=lambda reply: self._on_output(run, reply),
            on_status=lambda reply: self._on_status(run, reply),
            on_abandoned=lambda pending, reason: self._on_abandoned(run, pending, reason),
        )

    def _on_status(self, run: _Run, reply: KernelReply):
        started = reply.msg_type == "execute_input" or reply.content.get("execution_state") == "busy"
        if started and run.active and run.cell.state == ExecutionState.QUEUED:
            run.cell.transition(ExecutionState.RUNNING)

    def _on_output(self, run: _Run, reply: KernelReply):
        output = Output.from_message(reply.msg_type, reply.content)
        if output.is_error:
            run.saw_error = True
        run.cell.append_output(output)

    def _on_reply(self, run: _Run, reply: KernelReply):
        cell = run.cell
        content = reply.content
        status = content.get("status", "ok")

        # Some kernels bundle outputs into the reply instead of publishing them.
        for bundled in content.get("outputs", []):
            try:
                self._on_output(run, KernelReply(reply.msg_id, bundled.get("output_type", "stream"), bundled))
            except InvalidState as e:
                logger.debug("Skipping bundled output of %s: %s", reply.msg_id, e)

        if content.get("execution_count") is not None:
            cell.execution_count = content["execution_count"]

        if status == "ok":
            final = ExecutionState.COMPLETED
        else:
            final = ExecutionState.ERRORED
            if not run.saw_error:
                if status == "abort":
                    output = Output.error("ExecutionAborted", "Execution was aborted by the kernel")
                else:
                    output = Output.error(
                        content.get("ename", "Error"),
                        content.get("evalue", ""),
                        content.get("traceback", []),
                    )
                cell.append_output(output)
                run.saw_error = True

        if run.active:
            cell.transition(final)

        for payload in content.get("payload", []):
            if payload.get("source") == "set_next_input":
                self.notebook.bus.trigger("set_next_input", {"cell": cell, "text": payload.get("text", "")})

        self.notebook.mark_dirty()
        self.notebook.bus.trigger("execution_finished", {
            "cell": cell,
            "msg_id": reply.msg_id,
            "status": status,
            "execution_count": cell.execution_count,
        })

    def _on_abandoned(self, run: _Run, pending: PendingRequest, reason: str):
        logger.info("Execution %s of cell %s abandoned (%s)", pending.msg_id, run.cell.id, reason)
        if run.active:
            run.cell.transition(ExecutionState.IDLE)
            run.cell._active_run = None

    def clear_output(self, cell: CodeCell):
        cell.clear_outputs()
        self.notebook.mark_dirty()

    def clear_all_output(self):
        for cell in self.notebook.code_cells():
            cell.clear_outputs()
        self.notebook.mark_dirty()

    def toggle_output(self, cell: CodeCell, collapsed: Optional[bool] = None) -> bool:
        """Flip (or set) the collapsed flag of ``cell``'s output area."""
        cell.collapsed = (not cell.collapsed) if collapsed is None else collapsed
        self.notebook.mark_dirty()
        return cell.collapsed

    def complete(self, cell: CodeCell, cursor_offset: int, callbacks: RequestCallbacks) -> str:
        """Ask the kernel for completions of ``cell``'s input at ``cursor_offset``."""
        return self._session_for(cell).complete(cell.input, cursor_offset, callbacks)

    def inspect(self, cell: CodeCell, symbol: str, callbacks: RequestCallbacks) -> str:
        return self._session_for(cell).inspect(symbol, callbacks)
