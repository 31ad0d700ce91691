"""
Persistence: loading notebooks from, and saving them to, a remote document store.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from functools import partial
from typing import Any, Callable, Optional
from urllib.parse import quote

import httpx
from pydantic import ValidationError

from notebook_remote.config import Settings
from notebook_remote.errors import AmbiguousSaveResponse, NotebookError, TransportFailure
from notebook_remote.kernel import KernelSession
from notebook_remote.notebook import Notebook, NotebookRegistry, registry as default_registry

logger = logging.getLogger(__name__)

SAVED_STATUS = 204


def notebook_url(server: str, notebook_id: str) -> str:
    """URL of a notebook document on ``server``."""
    return f"{server.rstrip('/')}/api/notebooks/{quote(notebook_id, safe='')}"


class DocumentStore(ABC):
    """Asynchronous GET/PUT access to notebook documents."""

    @abstractmethod
    def fetch(self, url: str, on_success: Callable[[dict], None],
              on_failure: Callable[[TransportFailure], None]):
        """Load the document at ``url``."""

    @abstractmethod
    def replace(self, url: str, document: dict, on_response: Callable[[int], None],
                on_failure: Callable[[TransportFailure], None]):
        """Replace the document at ``url``; ``on_response`` gets the status code."""


class HttpDocumentStore(DocumentStore):
    """
    Document store over HTTP using httpx.

    Requests are made synchronously; callbacks run after the request
    completes, outside the error handling of the request itself. Use
    AsyncHttpDocumentStore from inside an event loop.
    """

    def __init__(self, client: Optional[httpx.Client] = None, timeout: float = 30.0):
        self.client = client or httpx.Client(timeout=timeout)

    def fetch(self, url, on_success, on_failure):
        try:
            response = self.client.get(url, headers={"Accept": "application/json"})
            response.raise_for_status()
            document = response.json()
        except httpx.HTTPStatusError as exc:
            on_failure(TransportFailure(f"GET {url} returned {exc.response.status_code}", url))
        except (httpx.HTTPError, ValueError) as exc:
            on_failure(TransportFailure(f"GET {url} failed: {exc}", url))
        else:
            on_success(document)

    def replace(self, url, document, on_response, on_failure):
        try:
            response = self.client.put(
                url,
                json=document,
                headers={"Content-Type": "application/json"},
            )
        except httpx.HTTPError as exc:
            on_failure(TransportFailure(f"PUT {url} failed: {exc}", url))
        else:
            on_response(response.status_code)

    def close(self):
        self.client.close()


class AsyncHttpDocumentStore(DocumentStore):
    """
    Document store over HTTP using ``httpx.AsyncClient``.

    ``fetch`` and ``replace`` schedule the request as a task on the running
    event loop and return at once; callbacks run on that loop when the
    response arrives. Must be used from inside a running loop.
    """

    def __init__(self, client: Optional[httpx.AsyncClient] = None, timeout: float = 30.0):
        self.client = client or httpx.AsyncClient(timeout=timeout)
        self._tasks: set[asyncio.Task] = set()

    def _schedule(self, request, *args) -> asyncio.Task:
        loop = asyncio.get_running_loop()
        task = loop.create_task(request(*args))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def fetch(self, url, on_success, on_failure):
        self._schedule(self._fetch, url, on_success, on_failure)

    def replace(self, url, document, on_response, on_failure):
        self._schedule(self._replace, url, document, on_response, on_failure)

    async def _fetch(self, url, on_success, on_failure):
        try:
            response = await self.client.get(url, headers={"Accept": "application/json"})
            response.raise_for_status()
            document = response.json()
        except httpx.HTTPStatusError as exc:
            on_failure(TransportFailure(f"GET {url} returned {exc.response.status_code}", url))
        except (httpx.HTTPError, ValueError) as exc:
            on_failure(TransportFailure(f"GET {url} failed: {exc}", url))
        else:
            on_success(document)

    async def _replace(self, url, document, on_response, on_failure):
        try:
            response = await self.client.put(
                url,
                json=document,
                headers={"Content-Type": "application/json"},
            )
        except httpx.HTTPError as exc:
            on_failure(TransportFailure(f"PUT {url} failed: {exc}", url))
        else:
            on_response(response.status_code)

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    async def drain(self):
        """Wait until every scheduled request, including retries it triggers, has settled."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks))

    async def aclose(self):
        await self.drain()
        await self.client.aclose()


@dataclass
class SaveAttempt:
    """One submission of a notebook to the store."""
    notebook: Notebook
    retry_count: int
    max_retries: int
    revision: int
    outcome: str = "pending"  # pending | saved | retried | failed


KernelFactory = Callable[[Notebook], KernelSession]


class PersistenceManager:
    """
    Opens and saves notebooks.

    A save that reaches the store but is not answered with 204 is treated as
    ambiguous rather than failed and is resubmitted up to
    ``settings.max_save_retries`` times. Transport failures are never retried.
    """

    def __init__(self, store: DocumentStore, settings: Optional[Settings] = None,
                 registry: Optional[NotebookRegistry] = None):
        self.store = store
        self.settings = settings or Settings()
        self.registry = registry if registry is not None else default_registry

    # ------------------------------------------------------------------ #
    # Open
    # ------------------------------------------------------------------ #

    def open(self, server: str, notebook_id: str, kernel_factory: Optional[KernelFactory] = None,
             on_failure: Optional[Callable[[Notebook, Exception], None]] = None) -> Notebook:
        """
        Open the notebook ``(server, notebook_id)``.

        A notebook that is already open is returned as is. Otherwise an empty
        notebook is registered, the document is requested, and on arrival the
        notebook is populated and its kernel session started.

        Args:
            server: Base URL of the store
            notebook_id: Notebook identifier on that server
            kernel_factory: Creates the kernel session for the loaded notebook
            on_failure: Called if the document cannot be fetched or loaded,
                or the kernel session cannot be started. The notebook is
                unregistered first, so a later open fetches again.

        Returns:
            The live notebook (possibly still empty)
        """
        existing = self.registry.lookup(server, notebook_id)
        if existing is not None:
            logger.debug("Reusing open notebook %s", existing.title)
            return existing

        notebook = Notebook(server=server, notebook_id=notebook_id)
        self.registry.register(notebook)
        self.store.fetch(
            notebook_url(server, notebook_id),
            on_success=partial(self._on_loaded, notebook, kernel_factory, on_failure),
            on_failure=partial(self._on_open_failed, notebook, on_failure),
        )
        return notebook

    def _on_loaded(self, notebook: Notebook, kernel_factory: Optional[KernelFactory], on_failure,
                   document: dict[str, Any]):
        session = None
        try:
            notebook.from_wire_format(document)
            if kernel_factory is not None:
                session = kernel_factory(notebook)
                notebook.attach_session(session)
                session.start(notebook.notebook_id)
        except (NotebookError, ValidationError) as e:
            if session is not None:
                session.kill()
            self._on_open_failed(notebook, on_failure, e)
            return
        logger.info("Loaded %s (%d cells)", notebook.title, len(notebook))
        notebook.bus.trigger("notebook_loaded", {"notebook": notebook})

    def _on_open_failed(self, notebook: Notebook, on_failure, error: Exception):
        logger.error("Could not open %s: %s", notebook.title, error)
        self.registry.unregister(notebook)
        notebook.bus.trigger("open_failed", {"notebook": notebook, "error": error})
        if on_failure is not None:
            on_failure(notebook, error)

    # ------------------------------------------------------------------ #
    # Save
    # ------------------------------------------------------------------ #

    def save(self, notebook: Notebook, retry_count: int = 0) -> SaveAttempt:
        """
        Submit ``notebook`` to the store as a full replace.

        Emits ``saving`` for each submission, then exactly one of ``saved``
        or ``save_failed`` once the attempt chain settles.
        """
        attempt = SaveAttempt(
            notebook=notebook,
            retry_count=retry_count,
            max_retries=self.settings.max_save_retries,
            revision=notebook.revision,
        )
        document = notebook.to_wire_format(self.settings.discard_outputs)
        url = notebook_url(notebook.server, notebook.notebook_id)
        notebook.bus.trigger("saving", {"notebook": notebook, "retry_count": retry_count})
        self.store.replace(
            url,
            document,
            on_response=partial(self._on_save_response, attempt),
            on_failure=partial(self._on_save_failure, attempt),
        )
        return attempt

    def _on_save_response(self, attempt: SaveAttempt, status_code: int):
        notebook = attempt.notebook
        if status_code == SAVED_STATUS:
            attempt.outcome = "saved"
            cleaned = notebook.mark_clean(attempt.revision)
            logger.info("Saved %s", notebook.title)
            notebook.bus.trigger("saved", {
                "notebook": notebook,
                "retry_count": attempt.retry_count,
                "clean": cleaned,
            })
            return

        error = AmbiguousSaveResponse(status_code)
        if attempt.retry_count < attempt.max_retries:
            attempt.outcome = "retried"
            logger.warning("Save of %s answered %d, retrying (%d/%d)",
                           notebook.title, status_code, attempt.retry_count + 1, attempt.max_retries)
            self.save(notebook, attempt.retry_count + 1)
            return

        attempt.outcome = "failed"
        logger.error("Save of %s failed after %d attempt(s): %s",
                     notebook.title, attempt.retry_count + 1, error)
        notebook.bus.trigger("save_failed", {"notebook": notebook, "error": error})

    def _on_save_failure(self, attempt: SaveAttempt, error: TransportFailure):
        attempt.outcome = "failed"
        logger.error("Save of %s failed: %s", attempt.notebook.title, error)
        attempt.notebook.bus.trigger("save_failed", {"notebook": attempt.notebook, "error": error})
