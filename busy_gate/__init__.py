"""busy-gate package.

Coordinates "busy" state for worker identities:

- Exclusive engagement lock per subject (compare-and-swap, expiry, heartbeat)
- Rolling daily busy quota with cooldown and manual re-enable
- Busy allocation ledger drawing bounded intervals from the quota
- Best-effort propagation of the busy flag into collaborator listings
- Hash-chained history of completed engagements

Convenience imports
------------------
The package avoids heavy import-time side effects (FastAPI, Prometheus). For
convenience, these are available as top-level imports:

    from busy_gate import BusyGate, GateConfig, create_app, BusyGateError

All of the above are loaded lazily.
"""

from __future__ import annotations

import re
from importlib import import_module
from importlib.metadata import PackageNotFoundError, version as _dist_version
from pathlib import Path
from typing import Any


def _read_version_from_pyproject() -> str | None:
    """Best-effort version discovery for dev/test environments.

    The project version is a simple `version = "..."` field in
    `pyproject.toml`, so a regex parse is enough.
    """

    try:
        pyproject = Path(__file__).resolve().parents[1] / "pyproject.toml"
        txt = pyproject.read_text(encoding="utf-8")
    except OSError:
        return None
    m = re.search(r"^version\s*=\s*\"([^\"]+)\"\s*$", txt, flags=re.MULTILINE)
    return m.group(1) if m else None


def _read_version_from_dist() -> str | None:
    try:
        return _dist_version("busy-gate")
    except PackageNotFoundError:
        return None


# Prefer repo-local pyproject version (tests), otherwise fall back to the
# packaged distribution version or a hardcoded default.
__version__ = _read_version_from_pyproject() or _read_version_from_dist() or "0.3.0"

__all__ = [
    "__version__",
    "BusyGate",
    "GateConfig",
    "BusyGateError",
    "create_app",
    "BusyGateHTTPClient",
]

# Lazy export map: name -> (module, attribute)
_LAZY_EXPORTS: dict[str, tuple[str, str]] = {
    "BusyGate": ("busy_gate.gateway", "BusyGate"),
    "GateConfig": ("busy_gate.gateway", "GateConfig"),
    "BusyGateError": ("busy_gate.errors", "BusyGateError"),
    "create_app": ("busy_gate.server", "create_app"),
    "BusyGateHTTPClient": ("busy_gate.client", "BusyGateHTTPClient"),
}


def __getattr__(name: str) -> Any:
    if name in _LAZY_EXPORTS:
        module_name, attr = _LAZY_EXPORTS[name]
        module = import_module(module_name)
        value = getattr(module, attr)
        # Cache the resolved attribute on the module for faster future access.
        globals()[name] = value
        return value
    raise AttributeError(f"module 'busy_gate' has no attribute {name!r}")


def __dir__() -> list[str]:
    return sorted(set(list(globals().keys()) + list(_LAZY_EXPORTS.keys())))
