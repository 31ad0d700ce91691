"""
Development document store for notebook-remote using Flask.

Serves notebook documents under /api/notebooks/<id>. PUT answers 204 on
success; ``SAVE_STATUS`` / ``SAVE_STATUSES`` in the app config override the
status so a server that drops the 204 can be reproduced.
"""

import json
import re
from pathlib import Path
from typing import Any, Optional
from uuid import uuid4

from flask import Flask, abort, jsonify, request

from notebook_remote.notebook import empty_document

_ID_PATTERN = re.compile(r"^[A-Za-z0-9_.-]+$")


def create_app(notebook_dir: Optional[Path] = None, save_status: int = 204,
               notebooks: Optional[dict[str, dict[str, Any]]] = None) -> Flask:
    """
    Create the Flask document store.

    Args:
        notebook_dir: Directory of ``<id>.ipynb`` files; in memory if None
        save_status: Status code answered to a successful PUT
        notebooks: Initial in-memory documents keyed by id

    Returns:
        The Flask app
    """
    app = Flask(__name__)
    app.config["SAVE_STATUS"] = save_status
    app.config["SAVE_STATUSES"] = []
    memory: dict[str, dict[str, Any]] = dict(notebooks or {})
    directory = Path(notebook_dir) if notebook_dir is not None else None
    if directory is not None:
        directory.mkdir(parents=True, exist_ok=True)

    # ------------------------------------------------------------------ #
    # Storage
    # ------------------------------------------------------------------ #

    def _check_id(notebook_id: str):
        if not _ID_PATTERN.match(notebook_id):
            abort(400, description=f"Invalid notebook id: {notebook_id}")

    def _path(notebook_id: str) -> Path:
        return directory / f"{notebook_id}.ipynb"

    def _load(notebook_id: str) -> Optional[dict[str, Any]]:
        if directory is None:
            return memory.get(notebook_id)
        path = _path(notebook_id)
        if not path.is_file():
            return None
        with open(path, "r") as f:
            return json.load(f)

    def _store(notebook_id: str, document: dict[str, Any]):
        if directory is None:
            memory[notebook_id] = document
            return
        with open(_path(notebook_id), "w") as f:
            json.dump(document, f, indent=2)

    def _delete(notebook_id: str) -> bool:
        if directory is None:
            return memory.pop(notebook_id, None) is not None
        path = _path(notebook_id)
        if path.exists():
            path.unlink()
            return True
        return False

    def _ids() -> list[str]:
        if directory is None:
            return sorted(memory)
        return sorted(p.stem for p in directory.glob("*.ipynb"))

    def _next_save_status() -> int:
        statuses = app.config["SAVE_STATUSES"]
        if statuses:
            return statuses.pop(0)
        return app.config["SAVE_STATUS"]

    # ------------------------------------------------------------------ #
    # Routes
    # ------------------------------------------------------------------ #

    @app.route("/api/notebooks", methods=["GET"])
    def api_list():
        items = []
        for notebook_id in _ids():
            document = _load(notebook_id) or {}
            worksheets = document.get("worksheets") or [{}]
            items.append({
                "id": notebook_id,
                "name": document.get("metadata", {}).get("name", notebook_id),
                "cell_count": len(worksheets[0].get("cells", [])),
            })
        return jsonify({"notebooks": items})

    @app.route("/api/notebooks", methods=["POST"])
    def api_create():
        data = request.get_json(silent=True) or {}
        notebook_id = data.get("id") or uuid4().hex[:12]
        _check_id(notebook_id)
        if _load(notebook_id) is not None:
            return jsonify({"error": f"Notebook {notebook_id} already exists"}), 409
        _store(notebook_id, empty_document(data.get("name", "Untitled")))
        return jsonify({"id": notebook_id}), 201

    @app.route("/api/notebooks/<notebook_id>", methods=["GET"])
    def api_get(notebook_id):
        _check_id(notebook_id)
        document = _load(notebook_id)
        if document is None:
            return jsonify({"error": f"Notebook {notebook_id} not found"}), 404
        return jsonify(document)

    @app.route("/api/notebooks/<notebook_id>", methods=["PUT"])
    def api_put(notebook_id):
        _check_id(notebook_id)
        document = request.get_json(silent=True)
        if not isinstance(document, dict) or "worksheets" not in document:
            return jsonify({"error": "Body must be a notebook document"}), 400
        _store(notebook_id, document)
        return "", _next_save_status()

    @app.route("/api/notebooks/<notebook_id>", methods=["DELETE"])
    def api_delete(notebook_id):
        _check_id(notebook_id)
        if not _delete(notebook_id):
            return jsonify({"error": f"Notebook {notebook_id} not found"}), 404
        return "", 204

    return app


def launch_server(host: str = "127.0.0.1", port: int = 8888, notebook_dir: Optional[Path] = None,
                  save_status: int = 204):
    """Run the document store until interrupted."""
    app = create_app(notebook_dir=notebook_dir, save_status=save_status)
    app.run(host=host, port=port, debug=False)
