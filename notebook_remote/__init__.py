"""
notebook-remote: a client runtime for notebooks stored on a remote server.

This package provides:
- A notebook document model with structural edits and a dirty flag
- Kernel sessions that correlate asynchronous replies with their requests
- An execution state machine for code cells
- Saving with retry when the server's success signal is ambiguous
"""

from notebook_remote.cell import (
    Cell,
    CellType,
    CodeCell,
    ExecutionState,
    HeadingCell,
    MarkdownCell,
    Output,
    OutputType,
    RawCell,
    make_cell,
)
from notebook_remote.config import DiscardOutputs, Settings
from notebook_remote.errors import (
    AlreadyStarted,
    AmbiguousSaveResponse,
    InvalidState,
    KernelNotReady,
    NoSuchNeighbor,
    NotebookError,
    TransportFailure,
)
from notebook_remote.events import EventBus
from notebook_remote.execution import ExecutionCoordinator
from notebook_remote.kernel import (
    InProcessTransport,
    KernelReply,
    KernelRequest,
    KernelSession,
    KernelTransport,
    PendingRequest,
    RequestCallbacks,
)
from notebook_remote.notebook import Direction, Notebook, NotebookRegistry, registry
from notebook_remote.persistence import (
    AsyncHttpDocumentStore,
    DocumentStore,
    HttpDocumentStore,
    PersistenceManager,
    SaveAttempt,
    notebook_url,
)

__version__ = "0.1.0"
__all__ = [
    "AlreadyStarted",
    "AmbiguousSaveResponse",
    "AsyncHttpDocumentStore",
    "Cell",
    "CellType",
    "CodeCell",
    "Direction",
    "DiscardOutputs",
    "DocumentStore",
    "EventBus",
    "ExecutionCoordinator",
    "ExecutionState",
    "HeadingCell",
    "HttpDocumentStore",
    "InProcessTransport",
    "InvalidState",
    "KernelNotReady",
    "KernelReply",
    "KernelRequest",
    "KernelSession",
    "KernelTransport",
    "MarkdownCell",
    "NoSuchNeighbor",
    "Notebook",
    "NotebookError",
    "NotebookRegistry",
    "Output",
    "OutputType",
    "PendingRequest",
    "PersistenceManager",
    "RawCell",
    "RequestCallbacks",
    "SaveAttempt",
    "Settings",
    "TransportFailure",
    "make_cell",
    "notebook_url",
]
