# support_sync/domain/results.py
from typing import Any


class ActionResult:
    """Outcome of a user-initiated action, handed back to the calling UI."""

    def __init__(self, success: bool, data: Any = None, error: str | None = None):
        self.success = success
        self.data = data
        self.error = error

    @classmethod
    def ok(cls, data: Any = None) -> "ActionResult":
        return cls(True, data=data)

    @classmethod
    def failed(cls, error: str) -> "ActionResult":
        return cls(False, error=error)

    def __repr__(self):
        return f"ActionResult(success={self.success}, error={self.error!r})"
