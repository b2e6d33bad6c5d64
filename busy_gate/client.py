"""Minimal HTTP client for collaborators talking to a busy-gate server.

Error envelopes come back as BusyGateError with the server's code, so callers
handle remote and in-process failures the same way.
"""

from __future__ import annotations

import json
import urllib.error
import urllib.parse
import urllib.request
from typing import Any, Dict, Optional

from .errors import BUSY_E_ALREADY_HELD, BUSY_E_INTERNAL, BusyGateError, busy_error


class BusyGateHTTPClient:
    def __init__(self, base_url: str, *, timeout_s: float = 10.0):
        self.base_url = base_url.rstrip("/")
        self.timeout_s = float(timeout_s)

    def _request(self, method: str, path: str, payload: Optional[Dict[str, Any]] = None,
                 query: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"
        if query:
            q = {k: v for k, v in query.items() if v is not None}
            if q:
                url = f"{url}?{urllib.parse.urlencode(q)}"
        data = None
        headers = {"Accept": "application/json"}
        if payload is not None:
            data = json.dumps(payload, separators=(",", ":"), ensure_ascii=False).encode("utf-8")
            headers["Content-Type"] = "application/json"
        req = urllib.request.Request(url, data=data, headers=headers, method=method)
        try:
            with urllib.request.urlopen(req, timeout=self.timeout_s) as resp:
                body = resp.read().decode("utf-8")
                return json.loads(body) if body.strip() else {}
        except urllib.error.HTTPError as e:
            raw = e.read().decode("utf-8", errors="replace")
            try:
                parsed = json.loads(raw)
            except json.JSONDecodeError:
                parsed = {"detail": raw}
            # FastAPI validation errors and HTTPException put content in `detail`
            envelope = parsed.get("detail", parsed) if isinstance(parsed, dict) and "code" not in parsed else parsed
            if isinstance(envelope, dict) and "code" in envelope:
                raise BusyGateError(
                    code=str(envelope.get("code")),
                    message=str(envelope.get("message", "HTTP error")),
                    retryable=bool(envelope.get("retryable", False)),
                    http_status=int(e.code),
                    details=dict(envelope.get("details", {}) or {}),
                )
            raise BusyGateError(
                code=BUSY_E_INTERNAL,
                message=f"HTTP {e.code}",
                http_status=int(e.code),
                details={"body": raw},
            )
        except urllib.error.URLError as e:
            raise busy_error(BUSY_E_INTERNAL, f"busy-gate unreachable: {e.reason}", url=url)

    # Quota

    def allocate(self, subject: str, requester: str, *, hours: Optional[float] = None,
                 requested_ms: Optional[int] = None) -> Dict[str, Any]:
        return self._request("POST", "/v1/quota/allocate", {
            "subject": subject, "requester": requester, "hours": hours, "requested_ms": requested_ms,
        })

    def release_allocation(self, allocation_id: str) -> Dict[str, Any]:
        return self._request("POST", "/v1/quota/release", {"allocation_id": allocation_id})

    def quota_status(self, subject: str) -> Dict[str, Any]:
        return self._request("GET", f"/v1/quota/status/{urllib.parse.quote(subject, safe='')}")

    def manual_enable(self, subject: str) -> Dict[str, Any]:
        return self._request("POST", "/v1/quota/enable", {"subject": subject})

    # Engagement

    def try_acquire(self, subject: str, requester: str, *, ttl_seconds: Optional[float] = None,
                    context: Optional[str] = None) -> Dict[str, Any]:
        """Contention comes back as `{"acquired": False, ...}`, not an exception."""
        try:
            return self._request("POST", "/v1/engage/try", {
                "subject": subject, "requester": requester, "ttl_seconds": ttl_seconds, "context": context,
            })
        except BusyGateError as e:
            if e.code != BUSY_E_ALREADY_HELD:
                raise
            out: Dict[str, Any] = {"acquired": False, "code": "ALREADY_HELD"}
            out.update(e.details)
            return out

    def heartbeat(self, subject: str, requester: str, extend_seconds: float) -> Dict[str, Any]:
        return self._request("POST", "/v1/engage/heartbeat", {
            "subject": subject, "requester": requester, "extend_seconds": extend_seconds,
        })

    def release(self, subject: str, requester: str, *, value: float = 0.0, notes: str = "",
                metadata: Optional[Dict[str, Any]] = None, record_history: bool = True) -> Dict[str, Any]:
        return self._request("POST", "/v1/engage/release", {
            "subject": subject,
            "requester": requester,
            "value": value,
            "notes": notes,
            "metadata": metadata or {},
            "record_history": record_history,
        })

    def lock_status(self, subject: str) -> Dict[str, Any]:
        return self._request("GET", f"/v1/engage/status/{urllib.parse.quote(subject, safe='')}")

    def busy_list(self) -> Dict[str, Any]:
        return self._request("GET", "/v1/engage/busy")

    def history(self, party: Optional[str] = None, role: str = "both", *, limit: int = 50) -> Dict[str, Any]:
        return self._request("GET", "/v1/history", query={"party": party, "role": role, "limit": limit})
