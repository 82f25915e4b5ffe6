"""HTTP request handlers for the operator API.

Provides a JSON view of the cloud (allocations, quota problems, backoff
counters, live nodes) and the operator actions on it.
"""

from __future__ import annotations

import json
import logging
import re
import time
from http import HTTPStatus
from http.server import BaseHTTPRequestHandler
from typing import TYPE_CHECKING, Any, Dict, Optional
from urllib.parse import unquote, urlparse

if TYPE_CHECKING:
    from ..provisioning.cloud import MansionCloud
    from .workers import WorkerManager

log = logging.getLogger(__name__)

_ACTION_RE = re.compile(r"^/api/(allocations|templates|nodes)/([^/]+)/([a-z-]+)$")


def build_status_payload(cloud: "MansionCloud") -> Dict[str, Any]:
    """Everything an operator needs to see, as plain JSON types."""
    allocations = cloud.allocations()
    return {
        "meta": {
            "generated_at": time.time(),
            "in_provisioning": cloud.registry.in_provisioning_count(),
        },
        "templates": [
            {"id": t.id, "display_name": t.display_name, "enabled": t.enabled,
             "mansion_type": t.mansion_type}
            for t in cloud.templates
        ],
        "allocations": [a.to_dict() for a in allocations],
        "quota_problems": [p.to_dict() for p in cloud.quota_problems()],
        "backoff": {tid: c.to_dict() for tid, c in sorted(cloud.backoff_counters().items())},
        "nodes": [n.to_dict() for n in cloud.nodes()],
    }


class ProvisionerRequestHandler(BaseHTTPRequestHandler):
    """HTTP request handler for the operator API.

    Serves:
    - GET /api/status
    - POST /api/allocations/<id>/dismiss
    - POST /api/templates/<id>/retry
    - POST /api/templates/<id>/dispose-clan
    - POST /api/quota/clear
    - POST /api/provision
    - POST /api/nodes/<name>/dispatch
    - POST /api/nodes/<name>/complete
    """

    # These will be set by the server
    cloud: Optional["MansionCloud"] = None
    workers: Optional["WorkerManager"] = None

    def do_GET(self):
        parsed = urlparse(self.path)
        if parsed.path == "/api/status":
            return self._handle_status()
        if parsed.path == "/api/workers":
            return self._handle_workers()
        self.send_error(HTTPStatus.NOT_FOUND, "Unknown endpoint")

    def do_POST(self):
        parsed = urlparse(self.path)
        if not self.cloud:
            self.send_error(HTTPStatus.SERVICE_UNAVAILABLE, "Server not initialized.")
            return
        if parsed.path == "/api/quota/clear":
            self.cloud.clear_quota_problems()
            return self._send_json({"ok": True})
        if parsed.path == "/api/provision":
            return self._handle_provision()

        match = _ACTION_RE.match(parsed.path)
        if not match:
            self.send_error(HTTPStatus.NOT_FOUND, "Unknown endpoint")
            return
        kind, ident, action = match.group(1), unquote(match.group(2)), match.group(3)

        if kind == "allocations" and action == "dismiss":
            return self._reply(self.cloud.dismiss(ident), f"Allocation '{ident}' not found.")
        if kind == "templates" and action == "retry":
            return self._reply(self.cloud.retry_now(ident), f"Template '{ident}' not found.")
        if kind == "templates" and action == "dispose-clan":
            future = self.cloud.dispose_clan(ident)
            return self._reply(future is not None, f"Template '{ident}' not found.",
                               status_code=HTTPStatus.ACCEPTED)
        if kind == "nodes" and action in ("dispatch", "complete"):
            return self._handle_task(ident, action)
        self.send_error(HTTPStatus.NOT_FOUND, "Unknown endpoint")

    # --- API Handlers ---

    def _handle_status(self):
        if not self.cloud:
            self.send_error(HTTPStatus.SERVICE_UNAVAILABLE, "Server not initialized.")
            return
        self._send_json(build_status_payload(self.cloud))

    def _handle_workers(self):
        self._send_json(self.workers.get_all_status() if self.workers else {})

    def _handle_provision(self):
        """Demand from the build scheduler: ``{"label", "excess_workload"}``.

        ``template`` may name a template directly instead of resolving
        ``label``.
        """
        body = self._read_json()
        if body is None:
            return
        try:
            excess_workload = int(body.get("excess_workload", 0))
        except (TypeError, ValueError):
            self.send_error(HTTPStatus.BAD_REQUEST, "Invalid excess_workload.")
            return
        label = body.get("label")

        template_id = body.get("template")
        if template_id:
            template = self.cloud.templates.get(template_id)
            if template is None:
                self._send_json({"ok": False, "detail": f"Template '{template_id}' not found."},
                                status_code=HTTPStatus.NOT_FOUND)
                return
            allocations = self.cloud.provision(template, excess_workload, label)
        else:
            allocations = self.cloud.provision_label(label, excess_workload)

        self._send_json({"ok": True, "allocations": [a.id for a in allocations]},
                        status_code=HTTPStatus.ACCEPTED)

    def _handle_task(self, node_name: str, action: str):
        """Task start/end reported by the dispatcher: ``{"task", ...details}``."""
        body = self._read_json()
        if body is None:
            return
        task_id = body.pop("task", None)
        if not task_id:
            self.send_error(HTTPStatus.BAD_REQUEST, "Missing task.")
            return
        node = self.cloud.get_node(node_name)
        if node is None:
            self._send_json({"ok": False, "detail": f"Node '{node_name}' not found."},
                            status_code=HTTPStatus.NOT_FOUND)
            return

        if action == "dispatch":
            if not self.cloud.dispatch(node, str(task_id)):
                self._send_json({"ok": False, "detail": f"Node '{node_name}' is not accepting tasks."},
                                status_code=HTTPStatus.CONFLICT)
                return
        else:
            self.cloud.complete_task(node, str(task_id), **body)
        self._send_json({"ok": True})

    def _read_json(self) -> Optional[Dict[str, Any]]:
        """The request body as a JSON object; None once an error was sent."""
        length = int(self.headers.get("Content-Length") or 0)
        raw = self.rfile.read(length) if length else b""
        try:
            body = json.loads(raw.decode("utf-8")) if raw else {}
        except ValueError:
            self.send_error(HTTPStatus.BAD_REQUEST, "Invalid JSON body.")
            return None
        if not isinstance(body, dict):
            self.send_error(HTTPStatus.BAD_REQUEST, "Expected a JSON object.")
            return None
        return body

    def _reply(self, ok: bool, not_found: str, *, status_code: HTTPStatus = HTTPStatus.OK):
        if not ok:
            self._send_json({"ok": False, "detail": not_found}, status_code=HTTPStatus.NOT_FOUND)
            return
        self._send_json({"ok": True}, status_code=status_code)

    def _send_json(self, data: Any, *, status_code: HTTPStatus = HTTPStatus.OK):
        body = json.dumps(data).encode("utf-8")
        self.send_response(status_code)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(body)))
        self.send_header("Cache-Control", "no-store, max-age=0")
        self.end_headers()
        self.wfile.write(body)

    def log_message(self, format, *args):
        log.debug("%s - %s", self.address_string(), format % args)
