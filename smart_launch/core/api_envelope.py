"""
JSON response envelope for the /api endpoints.

HTML pages (launch errors, index) are rendered separately; anything returning
JSON wraps its payload in this envelope.
"""

from datetime import datetime, timezone
from typing import Any, Dict, Optional


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def success_response(data: Any, request_id: Optional[str] = None, version: str = "1.0", **extra_metadata) -> Dict[str, Any]:
    """
    Create a successful API response.

    Args:
        data: Response data
        request_id: Request correlation ID
        version: API version
        extra_metadata: Additional metadata fields
    """
    metadata = {
        "version": version,
        **({"request_id": request_id} if request_id else {}),
        **extra_metadata,
    }

    return {
        "success": True,
        "data": data,
        "error": None,
        "metadata": metadata,
        "timestamp": _timestamp(),
    }


def error_response(
    code: str,
    message: str,
    details: Optional[Dict[str, Any]] = None,
    request_id: Optional[str] = None,
    version: str = "1.0",
    **extra_metadata,
) -> Dict[str, Any]:
    """
    Create an error API response.

    Args:
        code: Error taxonomy code (e.g., "SessionNotFound")
        message: Human-readable error message
        details: Additional error details
        request_id: Request correlation ID
        version: API version
        extra_metadata: Additional metadata fields
    """
    metadata = {
        "version": version,
        **({"request_id": request_id} if request_id else {}),
        **extra_metadata,
    }

    return {
        "success": False,
        "data": None,
        "error": {"code": code, "message": message, "details": details},
        "metadata": metadata,
        "timestamp": _timestamp(),
    }
