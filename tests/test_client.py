import json
import threading
from http.server import BaseHTTPRequestHandler, HTTPServer

import pytest

from busy_gate.client import BusyGateHTTPClient
from busy_gate.errors import BUSY_E_INTERNAL, BUSY_E_NOT_OWNER, BusyGateError


class _StubGateway(BaseHTTPRequestHandler):
    """Answers like a busy-gate server for a handful of fixed paths."""

    requests = []

    def _send(self, status, obj):
        payload = json.dumps(obj).encode("utf-8")
        self.send_response(status)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(payload)))
        self.end_headers()
        self.wfile.write(payload)

    def do_POST(self):
        length = int(self.headers.get("Content-Length", "0"))
        body = json.loads(self.rfile.read(length).decode("utf-8")) if length else {}
        self.__class__.requests.append((self.path, body))
        if self.path == "/v1/engage/try" and body.get("requester") == "B":
            self._send(409, {
                "code": "BUSY_E_ALREADY_HELD",
                "message": "subject is engaged by another requester",
                "retryable": True,
                "http_status": 409,
                "details": {"subject": body["subject"], "holder": "A", "expires_at": None, "context": None},
            })
        elif self.path == "/v1/engage/try":
            self._send(200, {"acquired": True, "code": "ACQUIRED", "subject": body["subject"], "holder": "A"})
        elif self.path == "/v1/engage/release":
            self._send(403, {
                "code": BUSY_E_NOT_OWNER,
                "message": "requester does not hold this lock",
                "retryable": False,
                "http_status": 403,
            })
        else:
            self._send(500, {"detail": "boom"})

    def do_GET(self):
        self.__class__.requests.append((self.path, None))
        self._send(200, {"history": []})

    def log_message(self, format, *args):
        return


@pytest.fixture
def base_url():
    _StubGateway.requests = []
    server = HTTPServer(("127.0.0.1", 0), _StubGateway)
    host, port = server.server_address
    t = threading.Thread(target=server.serve_forever, daemon=True)
    t.start()
    yield f"http://{host}:{port}"
    server.shutdown()


def test_try_acquire_success_and_contention(base_url):
    client = BusyGateHTTPClient(base_url, timeout_s=2.0)
    ok = client.try_acquire("w1", "A", ttl_seconds=30)
    assert ok["acquired"] is True

    held = client.try_acquire("w1", "B")
    assert held["acquired"] is False
    assert held["code"] == "ALREADY_HELD"
    assert held["holder"] == "A"


def test_error_envelope_becomes_busy_gate_error(base_url):
    client = BusyGateHTTPClient(base_url, timeout_s=2.0)
    with pytest.raises(BusyGateError) as ei:
        client.release("w1", "B")
    assert ei.value.code == BUSY_E_NOT_OWNER
    assert ei.value.http_status == 403


def test_non_envelope_error_is_internal(base_url):
    client = BusyGateHTTPClient(base_url, timeout_s=2.0)
    with pytest.raises(BusyGateError) as ei:
        client.manual_enable("w1")
    assert ei.value.code == BUSY_E_INTERNAL
    assert ei.value.http_status == 500


def test_history_query_drops_unset_params(base_url):
    client = BusyGateHTTPClient(base_url, timeout_s=2.0)
    client.history(party="w1", role="worker")
    path, _ = _StubGateway.requests[-1]
    assert path.startswith("/v1/history?")
    assert "party=w1" in path
    assert "subject" not in path


def test_unreachable_server():
    client = BusyGateHTTPClient("http://127.0.0.1:9", timeout_s=0.2)
    with pytest.raises(BusyGateError) as ei:
        client.busy_list()
    assert ei.value.code == BUSY_E_INTERNAL
