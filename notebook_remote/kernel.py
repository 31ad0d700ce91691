"""
Kernel sessions: request/reply correlation over an asynchronous transport.
"""

import logging
import time
import traceback
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Optional
from uuid import uuid4

from IPython.core.interactiveshell import InteractiveShell
from IPython.utils.capture import capture_output

from notebook_remote.config import Settings
from notebook_remote.errors import AlreadyStarted, KernelNotReady, TransportFailure
from notebook_remote.events import EventBus

logger = logging.getLogger(__name__)

READY_STATES = frozenset({"idle", "busy"})
STATUS_MESSAGES = frozenset({"status", "execute_input"})
OUTPUT_MESSAGES = frozenset({"stream", "execute_result", "display_data", "error"})


@dataclass
class KernelRequest:
    """An outgoing kernel call."""
    msg_id: str
    msg_type: str
    content: dict[str, Any] = field(default_factory=dict)


@dataclass
class KernelReply:
    """A message from the kernel, tagged with the id of the request it answers."""
    msg_id: str
    msg_type: str
    content: dict[str, Any] = field(default_factory=dict)

    @property
    def status(self) -> Optional[str]:
        return self.content.get("status")

    @property
    def is_terminal(self) -> bool:
        return self.msg_type.endswith("_reply")


ReplyCallback = Callable[[KernelReply], None]


@dataclass
class RequestCallbacks:
    """
    Continuations for one request.

    ``on_reply`` receives the terminal ``*_reply`` message unless
    ``status_overrides`` has an entry for its status. ``on_output`` receives
    stream/result/display/error messages, ``on_status`` receives status and
    execute_input messages. ``on_abandoned`` is called once if the request is
    dropped by restart, kill or timeout.
    """
    on_reply: Optional[ReplyCallback] = None
    on_output: Optional[ReplyCallback] = None
    on_status: Optional[ReplyCallback] = None
    on_abandoned: Optional[Callable[["PendingRequest", str], None]] = None
    status_overrides: dict[str, ReplyCallback] = field(default_factory=dict)


@dataclass
class PendingRequest:
    """Correlates an issued request with its eventual reply."""
    msg_id: str
    msg_type: str
    callbacks: RequestCallbacks
    cell: Any = None
    issued_at: float = field(default_factory=time.monotonic)


class KernelTransport(ABC):
    """Opaque channel to one kernel process."""

    @abstractmethod
    def connect(self, on_status: Callable[[str], None]):
        """Start or attach to the kernel; report kernel states to ``on_status``."""

    @abstractmethod
    def send(self, request: KernelRequest, deliver: ReplyCallback):
        """Send ``request``; zero or more replies go to ``deliver``."""

    @abstractmethod
    def interrupt(self):
        """Interrupt the running execution."""

    @abstractmethod
    def restart(self):
        """Restart the kernel process."""

    @abstractmethod
    def shutdown(self):
        """Stop the kernel process."""


class KernelSession:
    """
    Client-side handle of one kernel.

    Every request gets a fresh message id and a PendingRequest. Replies are
    matched by id only, so they may arrive in any order. Terminal replies
    remove the PendingRequest before its callback runs; replies for unknown
    ids are dropped.
    """

    def __init__(self, transport: KernelTransport, bus: Optional[EventBus] = None,
                 settings: Optional[Settings] = None):
        self.transport = transport
        self.bus = bus or EventBus()
        self.settings = settings or Settings()
        self.notebook_id: Optional[str] = None
        self.status = "disconnected"
        self._started = False
        self._pending: dict[str, PendingRequest] = {}

    @property
    def started(self) -> bool:
        return self._started

    def is_ready(self) -> bool:
        return self._started and self.status in READY_STATES

    def start(self, notebook_id: str):
        """Connect the kernel for ``notebook_id``."""
        if self._started:
            raise AlreadyStarted(f"Kernel for {self.notebook_id} is already started")
        self._started = True
        self.notebook_id = notebook_id
        self._set_status("starting")
        try:
            self.transport.connect(self._set_status)
        except TransportFailure:
            self._started = False
            self._set_status("disconnected")
            raise
        logger.info("Kernel session started for %s", notebook_id)

    def _set_status(self, status: str):
        if status == self.status:
            return
        self.status = status
        self.bus.trigger("kernel_status", {"session": self, "status": status})

    # ------------------------------------------------------------------ #
    # Requests
    # ------------------------------------------------------------------ #

    def _issue(self, msg_type: str, content: dict[str, Any], callbacks: Optional[RequestCallbacks],
               cell: Any = None) -> str:
        if not self.is_ready():
            message = f"Kernel is not ready ({self.status}); {msg_type} dropped"
            logger.warning(message)
            self.bus.trigger("kernel_warning", {"session": self, "message": message})
            raise KernelNotReady(message)

        msg_id = uuid4().hex
        self._pending[msg_id] = PendingRequest(
            msg_id=msg_id,
            msg_type=msg_type,
            callbacks=callbacks or RequestCallbacks(),
            cell=cell,
        )
        try:
            self.transport.send(KernelRequest(msg_id, msg_type, content), self._handle_reply)
        except TransportFailure:
            self._pending.pop(msg_id, None)
            raise
        return msg_id

    def execute(self, cell: Any, code: str, callbacks: Optional[RequestCallbacks] = None,
                silent: bool = False) -> str:
        """Request execution of ``code`` on behalf of ``cell``; returns the message id."""
        content = {"code": code, "silent": silent, "store_history": not silent}
        return self._issue("execute_request", content, callbacks, cell=cell)

    def complete(self, text: str, cursor_offset: int, callbacks: Optional[RequestCallbacks] = None) -> str:
        return self._issue("complete_request", {"code": text, "cursor_pos": cursor_offset}, callbacks)

    def inspect(self, symbol: str, callbacks: Optional[RequestCallbacks] = None, detail_level: int = 0) -> str:
        content = {"code": symbol, "cursor_pos": len(symbol), "detail_level": detail_level}
        return self._issue("inspect_request", content, callbacks)

    def _handle_reply(self, reply: KernelReply):
        if reply.msg_type == "status":
            self._set_status(reply.content.get("execution_state", self.status))

        if reply.is_terminal:
            pending = self._pending.pop(reply.msg_id, None)
        else:
            pending = self._pending.get(reply.msg_id)
        if pending is None:
            logger.debug("Dropping %s for unknown request %s", reply.msg_type, reply.msg_id)
            return

        callbacks = pending.callbacks
        if reply.is_terminal:
            handler = callbacks.status_overrides.get(reply.status or "", callbacks.on_reply)
        elif reply.msg_type in STATUS_MESSAGES:
            handler = callbacks.on_status
        elif reply.msg_type in OUTPUT_MESSAGES:
            handler = callbacks.on_output
        else:
            logger.debug("Ignoring %s for %s", reply.msg_type, reply.msg_id)
            handler = None
        if handler is not None:
            handler(reply)

    def has_pending(self, msg_id: str) -> bool:
        return msg_id in self._pending

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    # ------------------------------------------------------------------ #
    # Control
    # ------------------------------------------------------------------ #

    def interrupt(self):
        if not self.is_ready():
            raise KernelNotReady(f"Cannot interrupt kernel in state {self.status}")
        logger.info("Interrupting kernel for %s", self.notebook_id)
        self.transport.interrupt()

    def restart(self):
        """Restart the kernel; every pending request is abandoned."""
        if not self._started:
            raise KernelNotReady("Kernel is not started")
        self._abandon_all("restart")
        self._set_status("restarting")
        logger.info("Restarting kernel for %s", self.notebook_id)
        self.transport.restart()

    def kill(self):
        """Shut the kernel down; every pending request is abandoned."""
        if not self._started:
            return
        self._abandon_all("kill")
        try:
            self.transport.shutdown()
        finally:
            self._started = False
            self._set_status("dead")
            logger.info("Kernel for %s killed", self.notebook_id)

    def expire_pending(self, now: Optional[float] = None) -> list[str]:
        """
        Abandon requests older than ``settings.request_timeout``.

        Returns:
            Message ids that were expired
        """
        timeout = self.settings.request_timeout
        if timeout is None:
            return []
        now = time.monotonic() if now is None else now
        expired = [p for p in self._pending.values() if now - p.issued_at >= timeout]
        for pending in expired:
            del self._pending[pending.msg_id]
            logger.warning("Request %s (%s) timed out after %.1fs", pending.msg_id, pending.msg_type, timeout)
            self._abandon(pending, "timeout")
        return [p.msg_id for p in expired]

    def _abandon_all(self, reason: str):
        abandoned = list(self._pending.values())
        self._pending.clear()
        for pending in abandoned:
            self._abandon(pending, reason)

    def _abandon(self, pending: PendingRequest, reason: str):
        if pending.callbacks.on_abandoned is not None:
            pending.callbacks.on_abandoned(pending, reason)


def _build_mime_bundle(obj) -> dict:
    """
    Build a MIME bundle dictionary from an object.

    Checks for IPython rich display methods and builds a dict
    mapping MIME types to their representations.
    """
    data = {"text/plain": repr(obj)}
    for mime_type, method_name in [
        ("text/html", "_repr_html_"),
        ("text/markdown", "_repr_markdown_"),
        ("application/json", "_repr_json_"),
        ("text/latex", "_repr_latex_"),
        ("image/svg+xml", "_repr_svg_"),
        ("image/png", "_repr_png_"),
    ]:
        method = getattr(obj, method_name, None)
        if callable(method):
            value = method()
            if value is not None:
                data[mime_type] = value
    return data


class InProcessTransport(KernelTransport):
    """
    Kernel transport backed by an IPython shell in this process.

    Replies are delivered synchronously from send(), in the order a Jupyter
    kernel publishes them: status busy, execute_input, outputs, the
    ``*_reply`` message, status idle. The shell is IPython's process-wide
    singleton unless one is passed in, so notebooks sharing the default
    share a namespace.
    """

    def __init__(self, shell: Optional[InteractiveShell] = None):
        self.ip = shell
        self.execution_count = 0
        self.alive = False
        self._on_status: Callable[[str], None] = lambda status: None

    def connect(self, on_status: Callable[[str], None]):
        if self.ip is None:
            self.ip = InteractiveShell.instance()
        self._on_status = on_status
        self._setup_namespace()
        self.alive = True
        on_status("idle")

    def _setup_namespace(self):
        self.ip.user_ns["__notebook__"] = True

    def send(self, request: KernelRequest, deliver: Callable[[KernelReply], None]):
        if not self.alive:
            raise TransportFailure("In-process kernel is not running")

        handlers = {
            "execute_request": self._execute,
            "complete_request": self._complete,
            "inspect_request": self._inspect,
        }
        handler = handlers.get(request.msg_type)
        if handler is None:
            reply_type = request.msg_type.replace("_request", "_reply")
            deliver(KernelReply(request.msg_id, reply_type, {
                "status": "error",
                "ename": "UnsupportedRequest",
                "evalue": request.msg_type,
                "traceback": [],
            }))
            return

        deliver(KernelReply(request.msg_id, "status", {"execution_state": "busy"}))
        try:
            handler(request, deliver)
        finally:
            deliver(KernelReply(request.msg_id, "status", {"execution_state": "idle"}))

    def _execute(self, request: KernelRequest, deliver: Callable[[KernelReply], None]):
        code = request.content.get("code", "")
        msg_id = request.msg_id
        self.execution_count += 1
        count = self.execution_count
        deliver(KernelReply(msg_id, "execute_input", {"code": code, "execution_count": count}))

        try:
            with capture_output() as captured:
                result = self.ip.run_cell(code, silent=False)
        except Exception as e:
            captured, result, error = None, None, e
        else:
            error = None
            if not result.success:
                error = result.error_in_exec or result.error_before_exec or RuntimeError("Execution failed")

        if captured is not None:
            if captured.stdout:
                deliver(KernelReply(msg_id, "stream", {"name": "stdout", "text": captured.stdout}))
            if captured.stderr:
                deliver(KernelReply(msg_id, "stream", {"name": "stderr", "text": captured.stderr}))
            for display_output in captured.outputs:
                data = getattr(display_output, "data", None) or _build_mime_bundle(display_output)
                deliver(KernelReply(msg_id, "display_data", {"data": data, "metadata": {}}))

        if result is not None and result.success and result.result is not None:
            deliver(KernelReply(msg_id, "execute_result", {
                "data": _build_mime_bundle(result.result),
                "metadata": {},
                "execution_count": count,
            }))

        content: dict[str, Any] = {"execution_count": count, "payload": self._read_payload()}
        if error is None:
            content["status"] = "ok"
        else:
            error_content = {
                "ename": type(error).__name__,
                "evalue": str(error),
                "traceback": traceback.format_exception(type(error), error, error.__traceback__),
            }
            deliver(KernelReply(msg_id, "error", error_content))
            content.update(status="error", **error_content)
        deliver(KernelReply(msg_id, "execute_reply", content))

    def _read_payload(self) -> list[dict[str, Any]]:
        payload = []
        next_input = getattr(self.ip, "rl_next_input", None)
        if next_input:
            payload.append({"source": "set_next_input", "text": next_input, "replace": False})
            self.ip.rl_next_input = None
        return payload

    def _complete(self, request: KernelRequest, deliver: Callable[[KernelReply], None]):
        code = request.content.get("code", "")
        cursor_pos = request.content.get("cursor_pos", len(code))
        matched_text, matches = self.ip.complete("", code, cursor_pos)
        deliver(KernelReply(request.msg_id, "complete_reply", {
            "status": "ok",
            "matches": list(matches),
            "cursor_start": cursor_pos - len(matched_text),
            "cursor_end": cursor_pos,
            "metadata": {},
        }))

    def _inspect(self, request: KernelRequest, deliver: Callable[[KernelReply], None]):
        symbol = request.content.get("code", "")
        detail_level = request.content.get("detail_level", 0)
        try:
            data = self.ip.object_inspect_mime(symbol, detail_level=detail_level)
            found = True
        except KeyError:
            data, found = {}, False
        deliver(KernelReply(request.msg_id, "inspect_reply", {
            "status": "ok",
            "found": found,
            "data": data,
            "metadata": {},
        }))

    def interrupt(self):
        # Execution is synchronous, so nothing can be running between calls.
        logger.debug("interrupt ignored by in-process kernel")

    def restart(self):
        self._on_status("starting")
        self.ip.reset()
        self.execution_count = 0
        self._setup_namespace()
        self.alive = True
        self._on_status("idle")

    def shutdown(self):
        self.alive = False

    def get_variable(self, name: str) -> Any:
        """Get a variable from the kernel namespace."""
        return self.ip.user_ns.get(name)
