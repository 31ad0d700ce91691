"""Pytest fixtures shared across all test modules."""

from typing import Any, Callable, Optional

import pytest

from notebook_remote import (
    DocumentStore,
    KernelReply,
    KernelSession,
    KernelTransport,
    Notebook,
    NotebookRegistry,
    Settings,
    TransportFailure,
)

SERVER = "http://nb.test"


class FakeTransport(KernelTransport):
    """Kernel transport whose replies are delivered by the test."""

    def __init__(self, ready: bool = True):
        self.ready = ready
        self.requests = []
        self.on_status: Optional[Callable[[str], None]] = None
        self.interrupts = 0
        self.restarts = 0
        self.shutdowns = 0
        self.fail_send = False
        self._deliver: dict[str, Callable[[KernelReply], None]] = {}

    def connect(self, on_status):
        self.on_status = on_status
        if self.ready:
            on_status("idle")

    def send(self, request, deliver):
        if self.fail_send:
            raise TransportFailure("channel closed")
        self.requests.append(request)
        self._deliver[request.msg_id] = deliver

    def reply(self, msg_id: str, msg_type: str, **content: Any):
        self._deliver[msg_id](KernelReply(msg_id, msg_type, content))

    def run(self, msg_id: str, text: str, count: int):
        """Deliver a complete successful execution printing ``text``."""
        self.reply(msg_id, "status", execution_state="busy")
        self.reply(msg_id, "execute_input", code="", execution_count=count)
        self.reply(msg_id, "stream", name="stdout", text=text)
        self.reply(msg_id, "execute_reply", status="ok", execution_count=count)
        self.reply(msg_id, "status", execution_state="idle")

    def interrupt(self):
        self.interrupts += 1

    def restart(self):
        self.restarts += 1

    def shutdown(self):
        self.shutdowns += 1

    @property
    def last(self):
        return self.requests[-1]


class FakeStore(DocumentStore):
    """Document store answering from memory with scripted save statuses."""

    def __init__(self, documents: Optional[dict] = None, statuses: Optional[list[int]] = None):
        self.documents = dict(documents or {})
        self.statuses = list(statuses or [])
        self.gets: list[str] = []
        self.puts: list[tuple[str, dict]] = []
        self.fail_gets = False
        self.fail_puts = False
        self.deferred = False
        self.pending_fetches: list[tuple] = []

    def fetch(self, url, on_success, on_failure):
        self.gets.append(url)
        if self.deferred:
            self.pending_fetches.append((url, on_success, on_failure))
            return
        if self.fail_gets or url not in self.documents:
            on_failure(TransportFailure("unreachable", url))
            return
        on_success(self.documents[url])

    def replace(self, url, document, on_response, on_failure):
        self.puts.append((url, document))
        if self.fail_puts:
            on_failure(TransportFailure("connection reset", url))
            return
        self.documents[url] = document
        on_response(self.statuses.pop(0) if self.statuses else 204)


class Recorder:
    """Collects event payloads by topic."""

    def __init__(self, bus, *topics: str):
        self.events: list[tuple[str, Any]] = []
        for topic in topics:
            bus.on(topic, self._record, topic)

    def _record(self, topic, payload):
        self.events.append((topic, payload))

    def topics(self) -> list[str]:
        return [topic for topic, _ in self.events]

    def count(self, topic: str) -> int:
        return self.topics().count(topic)


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def notebook(transport):
    """An empty notebook with a started session on a fake transport."""
    nb = Notebook(server=SERVER, notebook_id="demo")
    session = KernelSession(transport, bus=nb.bus)
    nb.attach_session(session)
    session.start(nb.notebook_id)
    return nb


@pytest.fixture
def store():
    return FakeStore()


@pytest.fixture
def local_registry():
    return NotebookRegistry()


@pytest.fixture
def settings():
    return Settings()
