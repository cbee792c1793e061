from __future__ import annotations

from typing import Any, Dict, Optional


class StoreUnavailableError(Exception):
    """Raised when the shared store cannot be reached within its deadline."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


__all__ = ["StoreUnavailableError"]
