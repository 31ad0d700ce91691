"""Tests for the EventBus."""

import pytest

from notebook_remote.events import EventBus


class TestEventBus:
    """Test subscription and synchronous delivery."""

    def setup_method(self):
        self.bus = EventBus()
        self.calls = []

    def test_trigger_passes_context_and_payload(self):
        """Handlers receive the registration context and the payload."""
        self.bus.on("saved", lambda ctx, payload: self.calls.append((ctx, payload)), "status-bar")
        count = self.bus.trigger("saved", {"ok": True})
        assert count == 1
        assert self.calls == [("status-bar", {"ok": True})]

    def test_handlers_run_in_registration_order(self):
        for name in ["first", "second", "third"]:
            self.bus.on("saving", lambda ctx, payload: self.calls.append(ctx), name)
        self.bus.trigger("saving")
        assert self.calls == ["first", "second", "third"]

    def test_topics_match_by_equality_only(self):
        """A handler on 'save' does not see 'saved'."""
        self.bus.on("save", lambda ctx, payload: self.calls.append(payload))
        assert self.bus.trigger("saved", 1) == 0
        assert self.calls == []

    def test_trigger_without_handlers(self):
        assert self.bus.trigger("nothing") == 0

    def test_off_removes_one_handler(self):
        def keep(ctx, payload):
            self.calls.append("keep")

        def drop(ctx, payload):
            self.calls.append("drop")

        self.bus.on("t", keep)
        self.bus.on("t", drop)
        self.bus.off("t", drop)
        self.bus.trigger("t")
        assert self.calls == ["keep"]

    def test_off_without_handler_removes_topic(self):
        self.bus.on("t", lambda ctx, payload: self.calls.append(1))
        self.bus.off("t")
        assert not self.bus.has_handlers("t")

    def test_handler_may_subscribe_during_trigger(self):
        """A handler added while triggering runs on the next trigger only."""
        def late(ctx, payload):
            self.calls.append("late")

        def first(ctx, payload):
            self.calls.append("first")
            self.bus.on("t", late)

        self.bus.on("t", first)
        self.bus.trigger("t")
        assert self.calls == ["first"]
        self.bus.trigger("t")
        assert self.calls == ["first", "first", "late"]

    def test_clear_drops_everything(self):
        self.bus.on("a", lambda ctx, payload: None)
        self.bus.on("b", lambda ctx, payload: None)
        self.bus.clear()
        assert not self.bus.has_handlers("a")
        assert not self.bus.has_handlers("b")

    def test_handler_errors_propagate(self):
        def broken(ctx, payload):
            raise RuntimeError("boom")

        self.bus.on("t", broken)
        with pytest.raises(RuntimeError):
            self.bus.trigger("t")
