from __future__ import annotations

from typing import Any, Optional

from fastapi import HTTPException, status


def envelope(message: str, data: Any = None) -> dict:
    """Wrap a successful result in the ``{"message", "data"}`` body clients expect."""

    return {"message": message, "data": data}


def not_found(exc: KeyError, default: Optional[str] = None) -> HTTPException:
    message = exc.args[0] if exc.args else (default or "Not found")
    return HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail={"message": message, "code": "NOT_FOUND"},
    )
