"""Tests for KernelSession request/reply correlation."""

import pytest

from notebook_remote import (
    AlreadyStarted,
    KernelNotReady,
    KernelSession,
    RequestCallbacks,
    Settings,
    TransportFailure,
)

from conftest import FakeTransport, Recorder


class TestSessionLifecycle:
    def test_start_makes_session_ready(self):
        transport = FakeTransport()
        session = KernelSession(transport)
        assert not session.is_ready()
        session.start("nb-1")
        assert session.is_ready()
        assert session.notebook_id == "nb-1"

    def test_start_twice(self):
        session = KernelSession(FakeTransport())
        session.start("nb-1")
        with pytest.raises(AlreadyStarted):
            session.start("nb-1")

    def test_not_ready_until_transport_reports_idle(self):
        transport = FakeTransport(ready=False)
        session = KernelSession(transport)
        session.start("nb-1")
        assert session.started
        assert not session.is_ready()
        transport.on_status("idle")
        assert session.is_ready()

    def test_status_events(self):
        session = KernelSession(FakeTransport())
        recorder = Recorder(session.bus, "kernel_status")
        session.start("nb-1")
        assert [p["status"] for _, p in recorder.events] == ["starting", "idle"]

    def test_failed_connect_can_be_retried(self):
        class Unreachable(FakeTransport):
            def connect(self, on_status):
                raise TransportFailure("no route")

        session = KernelSession(Unreachable())
        with pytest.raises(TransportFailure):
            session.start("nb-1")
        assert not session.started
        assert session.status == "disconnected"


class TestNotReady:
    def test_requests_are_rejected_not_queued(self):
        transport = FakeTransport(ready=False)
        session = KernelSession(transport)
        recorder = Recorder(session.bus, "kernel_warning")
        with pytest.raises(KernelNotReady):
            session.execute(None, "1 + 1")
        with pytest.raises(KernelNotReady):
            session.complete("pri", 3)
        assert transport.requests == []
        assert session.pending_count == 0
        assert recorder.count("kernel_warning") == 2

    def test_interrupt_requires_ready(self):
        with pytest.raises(KernelNotReady):
            KernelSession(FakeTransport()).interrupt()


class TestCorrelation:
    def setup_method(self):
        self.transport = FakeTransport()
        self.session = KernelSession(self.transport)
        self.session.start("nb")
        self.seen = []

    def _callbacks(self, tag):
        return RequestCallbacks(
            on_reply=lambda r: self.seen.append((tag, "reply", r.msg_type)),
            on_output=lambda r: self.seen.append((tag, "output", r.msg_type)),
            on_status=lambda r: self.seen.append((tag, "status", r.msg_type)),
        )

    def test_each_request_gets_a_fresh_id(self):
        ids = {self.session.execute(None, "x") for _ in range(5)}
        assert len(ids) == 5
        assert self.session.pending_count == 5

    def test_request_content(self):
        msg_id = self.session.complete("imp", 3)
        request = self.transport.last
        assert request.msg_id == msg_id
        assert request.msg_type == "complete_request"
        assert request.content == {"code": "imp", "cursor_pos": 3}

    def test_out_of_order_replies(self):
        """A later request may be answered first; each reply reaches its own callbacks."""
        first = self.session.complete("pri", 3, self._callbacks("complete"))
        second = self.session.execute(None, "1", self._callbacks("execute"))
        self.transport.reply(second, "execute_reply", status="ok", execution_count=1)
        self.transport.reply(first, "complete_reply", status="ok", matches=["print"])
        assert self.seen == [("execute", "reply", "execute_reply"), ("complete", "reply", "complete_reply")]
        assert self.session.pending_count == 0

    def test_routing_by_message_type(self):
        msg_id = self.session.execute(None, "print(1)", self._callbacks("x"))
        self.transport.reply(msg_id, "status", execution_state="busy")
        self.transport.reply(msg_id, "execute_input", code="print(1)")
        self.transport.reply(msg_id, "stream", name="stdout", text="1\n")
        assert self.session.has_pending(msg_id)
        self.transport.reply(msg_id, "execute_reply", status="ok")
        assert not self.session.has_pending(msg_id)
        assert [kind for _, kind, _ in self.seen] == ["status", "status", "output", "reply"]

    def test_terminal_reply_removes_before_callback(self):
        observed = []
        msg_id = self.session.inspect("len", RequestCallbacks(
            on_reply=lambda r: observed.append(self.session.has_pending(r.msg_id))
        ))
        self.transport.reply(msg_id, "inspect_reply", status="ok", found=True)
        assert observed == [False]

    def test_duplicate_reply_is_dropped(self):
        msg_id = self.session.execute(None, "x", self._callbacks("x"))
        self.transport.reply(msg_id, "execute_reply", status="ok")
        self.transport.reply(msg_id, "execute_reply", status="ok")
        self.transport.reply(msg_id, "stream", text="late")
        assert self.seen == [("x", "reply", "execute_reply")]

    def test_status_override(self):
        errors = []
        callbacks = self._callbacks("x")
        callbacks.status_overrides["error"] = lambda r: errors.append(r.content["ename"])
        msg_id = self.session.execute(None, "1/0", callbacks)
        self.transport.reply(msg_id, "execute_reply", status="error", ename="ZeroDivisionError")
        assert errors == ["ZeroDivisionError"]
        assert self.seen == []

    def test_status_messages_update_kernel_status(self):
        msg_id = self.session.execute(None, "x")
        self.transport.reply(msg_id, "status", execution_state="busy")
        assert self.session.status == "busy"
        assert self.session.is_ready()
        self.transport.reply(msg_id, "status", execution_state="idle")
        assert self.session.status == "idle"

    def test_send_failure_leaves_no_pending(self):
        self.transport.fail_send = True
        with pytest.raises(TransportFailure):
            self.session.execute(None, "x")
        assert self.session.pending_count == 0


class TestControl:
    def setup_method(self):
        self.transport = FakeTransport()
        self.session = KernelSession(self.transport)
        self.session.start("nb")
        self.abandoned = []
        self.replies = []

    def _issue(self):
        return self.session.execute(None, "x", RequestCallbacks(
            on_reply=lambda r: self.replies.append(r.msg_id),
            on_abandoned=lambda p, reason: self.abandoned.append((p.msg_id, reason)),
        ))

    def test_interrupt(self):
        self.session.interrupt()
        assert self.transport.interrupts == 1

    def test_restart_abandons_pending_and_ignores_late_replies(self):
        a, b = self._issue(), self._issue()
        self.session.restart()
        assert sorted(self.abandoned) == sorted([(a, "restart"), (b, "restart")])
        assert self.session.pending_count == 0
        assert self.session.status == "restarting"
        assert not self.session.is_ready()

        self.transport.reply(a, "execute_reply", status="ok")
        assert self.replies == []
        assert self.transport.restarts == 1

    def test_ready_again_after_restart(self):
        self.session.restart()
        self.transport.on_status("idle")
        assert self.session.is_ready()
        self._issue()
        assert self.abandoned == []

    def test_kill(self):
        msg_id = self._issue()
        self.session.kill()
        assert self.abandoned == [(msg_id, "kill")]
        assert self.transport.shutdowns == 1
        assert not self.session.started
        assert self.session.status == "dead"
        with pytest.raises(KernelNotReady):
            self._issue()

    def test_kill_when_not_started_is_noop(self):
        session = KernelSession(FakeTransport())
        session.kill()
        assert session.status == "disconnected"

    def test_restart_when_not_started(self):
        with pytest.raises(KernelNotReady):
            KernelSession(FakeTransport()).restart()


class TestTimeout:
    def test_no_timeout_by_default(self):
        session = KernelSession(FakeTransport())
        session.start("nb")
        session.execute(None, "x")
        assert session.expire_pending(now=10**9) == []
        assert session.pending_count == 1

    def test_expire_old_requests(self):
        transport = FakeTransport()
        session = KernelSession(transport, settings=Settings(request_timeout=5))
        session.start("nb")
        abandoned = []
        callbacks = RequestCallbacks(on_abandoned=lambda p, reason: abandoned.append(reason))
        old = session.execute(None, "x", callbacks)
        session._pending[old].issued_at -= 10
        fresh = session.execute(None, "y", callbacks)

        assert session.expire_pending() == [old]
        assert abandoned == ["timeout"]
        assert session.has_pending(fresh)
        transport.reply(old, "execute_reply", status="ok")
        assert session.has_pending(fresh)
