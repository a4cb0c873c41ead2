from __future__ import annotations

from typing import Any, Dict, Optional


# PUBLIC_INTERFACE
def ok(data: Any, meta: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Success envelope for the control API: {"status": "ok", "data": ..., "meta": {...}}."""
    return {"status": "ok", "data": data, "meta": meta or {}}


# PUBLIC_INTERFACE
def error_payload(code: str, message: str, details: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Error envelope with a stable machine-readable code.

    details must never carry token material.
    """
    payload: Dict[str, Any] = {"status": "error", "code": code, "message": message}
    if details:
        payload["details"] = details
    return payload
