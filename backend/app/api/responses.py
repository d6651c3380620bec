"""
Response envelopes shared by the API routers.

Successful calls return ``{"success": true, "data": ...}``; errors are shaped
by the exception handlers in ``app.main``.
"""

from typing import Any, Dict, Optional

from fastapi.encoders import jsonable_encoder


def success_response(data: Any = None, message: Optional[str] = None) -> Dict[str, Any]:
    body: Dict[str, Any] = {"success": True, "data": jsonable_encoder(data)}
    if message:
        body["message"] = message
    return body


def error_body(code: str, message: str, request_id: Optional[str] = None, **details: Any) -> Dict[str, Any]:
    error: Dict[str, Any] = {"code": code, "message": message}
    if details:
        error["details"] = jsonable_encoder(details)
    return {"success": False, "error": error, "request_id": request_id}
