"""
Tests for InProcessTransport running cells on a real IPython shell.
"""

import pytest

from notebook_remote import (
    ExecutionCoordinator,
    ExecutionState,
    InProcessTransport,
    KernelNotReady,
    KernelSession,
    Notebook,
    OutputType,
    RequestCallbacks,
    TransportFailure,
)

from conftest import SERVER


class TestInProcessTransport:
    """Replies from the in-process kernel."""

    def setup_method(self):
        """Start a session on the shared IPython shell."""
        self.transport = InProcessTransport()
        self.session = KernelSession(self.transport)
        self.session.start("kernel-test")
        self.session.restart()
        self.messages = []

    def _callbacks(self):
        return RequestCallbacks(
            on_reply=self.messages.append,
            on_output=self.messages.append,
            on_status=self.messages.append,
        )

    def _types(self):
        return [m.msg_type for m in self.messages]

    def test_ready_after_start(self):
        assert self.session.is_ready()
        assert self.session.status == "idle"

    def test_execute_simple_code(self):
        self.session.execute(None, "x = 42", self._callbacks())
        reply = self.messages[-1]
        assert reply.msg_type == "execute_reply"
        assert reply.status == "ok"
        assert reply.content["execution_count"] == 1
        assert self.transport.get_variable("x") == 42

    def test_message_order(self):
        """Status and input come first, the reply last."""
        self.session.execute(None, 'print("hello")', self._callbacks())
        types = self._types()
        assert types[0] == "status"
        assert types[1] == "execute_input"
        assert types[-1] == "execute_reply"
        stream = next(m for m in self.messages if m.msg_type == "stream")
        assert "hello" in stream.content["text"]
        assert stream.content["name"] == "stdout"

    def test_session_back_to_idle(self):
        self.session.execute(None, "1")
        assert self.session.status == "idle"
        assert self.session.pending_count == 0

    def test_execute_result(self):
        self.session.execute(None, "2 + 2", self._callbacks())
        result = next(m for m in self.messages if m.msg_type == "execute_result")
        assert result.content["data"]["text/plain"] == "4"
        assert result.content["execution_count"] == 1

    def test_error(self):
        self.session.execute(None, "1 / 0", self._callbacks())
        error = next(m for m in self.messages if m.msg_type == "error")
        assert error.content["ename"] == "ZeroDivisionError"
        assert error.content["traceback"]
        reply = self.messages[-1]
        assert reply.status == "error"
        assert reply.content["ename"] == "ZeroDivisionError"

    def test_syntax_error(self):
        self.session.execute(None, "def broken(:", self._callbacks())
        reply = self.messages[-1]
        assert reply.status == "error"
        assert reply.content["ename"] == "SyntaxError"

    def test_namespace_persists(self):
        self.session.execute(None, "import math")
        self.session.execute(None, "root = math.sqrt(16)")
        assert self.transport.get_variable("root") == 4.0

    def test_execution_count_increments(self):
        self.session.execute(None, "a = 1")
        self.session.execute(None, "b = 2", self._callbacks())
        assert self.messages[-1].content["execution_count"] == 2

    def test_set_next_input_payload(self):
        self.session.execute(None, "get_ipython().set_next_input('y = 2')", self._callbacks())
        payload = self.messages[-1].content["payload"]
        assert payload == [{"source": "set_next_input", "text": "y = 2", "replace": False}]

    def test_complete(self):
        self.session.execute(None, "unusual_variable_name = 1")
        self.session.complete("unusual_var", 11, self._callbacks())
        reply = self.messages[-1]
        assert reply.msg_type == "complete_reply"
        assert any("unusual_variable_name" in m for m in reply.content["matches"])
        assert reply.content["cursor_end"] == 11

    def test_inspect(self):
        self.session.inspect("len", self._callbacks())
        reply = self.messages[-1]
        assert reply.msg_type == "inspect_reply"
        assert reply.content["found"] is True
        assert "text/plain" in reply.content["data"]

    def test_inspect_unknown_name(self):
        self.session.inspect("no_such_name_anywhere", self._callbacks())
        reply = self.messages[-1]
        assert reply.content["found"] is False

    def test_unsupported_request(self):
        self.session._issue("history_request", {}, self._callbacks())
        reply = self.messages[-1]
        assert reply.msg_type == "history_reply"
        assert reply.status == "error"

    def test_restart_resets_namespace(self):
        self.session.execute(None, "x = 42")
        self.session.restart()
        assert self.session.is_ready()
        assert self.transport.get_variable("x") is None
        self.session.execute(None, "y = 1", self._callbacks())
        assert self.messages[-1].content["execution_count"] == 1

    def test_kill(self):
        self.session.kill()
        assert self.session.status == "dead"
        with pytest.raises(KernelNotReady):
            self.session.execute(None, "1")

    def test_send_after_shutdown(self):
        self.transport.shutdown()
        with pytest.raises(TransportFailure):
            self.session.execute(None, "1")
        assert self.session.pending_count == 0


class TestCellExecutionEndToEnd:
    """Running notebook cells through the coordinator on IPython."""

    def setup_method(self):
        self.nb = Notebook(server=SERVER, notebook_id="e2e")
        session = KernelSession(InProcessTransport(), bus=self.nb.bus)
        self.nb.attach_session(session)
        session.start("e2e")
        session.restart()
        self.coordinator = ExecutionCoordinator(self.nb)

    def test_print_cell(self):
        cell = self.nb.add_cell("code", input="print(1)")
        self.coordinator.execute(cell)
        assert cell.state == ExecutionState.COMPLETED
        assert cell.execution_count == 1
        assert cell.outputs[0].output_type == OutputType.STREAM
        assert cell.outputs[0].text == "1\n"
        assert self.nb.dirty

    def test_error_cell(self):
        cell = self.nb.add_cell("code", input="raise ValueError('bad')")
        self.coordinator.execute(cell)
        assert cell.state == ExecutionState.ERRORED
        errors = [o for o in cell.outputs if o.is_error]
        assert len(errors) == 1
        assert errors[0].ename == "ValueError"
        assert errors[0].evalue == "bad"

    def test_execute_all(self):
        self.nb.add_cell("code", input="total = 0")
        self.nb.add_cell("markdown", input="# step")
        self.nb.add_cell("code", input="total += 5")
        last = self.nb.add_cell("code", input="total")
        self.coordinator.execute_all()
        assert all(c.state == ExecutionState.COMPLETED for c in self.nb.code_cells())
        result = next(o for o in last.outputs if o.output_type == OutputType.EXECUTE_RESULT)
        assert result.data["text/plain"] == "5"

    def test_set_next_input_inserts_cell(self):
        cell = self.nb.add_cell("code", input="get_ipython().set_next_input('z = 3')")
        self.coordinator.execute(cell)
        assert [c.input for c in self.nb.cells][-1] == "z = 3"
