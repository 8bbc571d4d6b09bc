"""Error log for failed turn actions."""
from typing import List, Optional

from module_chat_events.models import ErrorEntry
from module_chat_events.storage import ErrorStorage


class ErrorLog:
    """Records non-fatal and transient failures seen while processing turns.

    Delegates all state to the ErrorStorage adapter.
    """

    def __init__(self, storage: ErrorStorage) -> None:
        self._storage = storage

    def log_error(self, entry: ErrorEntry) -> None:
        self._storage.append(entry)

    def record(
        self,
        action_attempted: str,
        error_message: str,
        *,
        session_id: Optional[str] = None,
        resolution: str = "",
    ) -> ErrorEntry:
        """Build an ErrorEntry from its parts and log it."""
        entry = ErrorEntry(
            session_id=session_id,
            action_attempted=action_attempted,
            error_message=error_message or "unknown error",
            resolution=resolution,
        )
        self.log_error(entry)
        return entry

    def get_recent_errors(self, limit: int = 10) -> List[ErrorEntry]:
        """Return up to ``limit`` entries, newest first.

        Raises:
            ValueError: If limit < 1.
        """
        if limit < 1:
            raise ValueError(f"limit must be ≥ 1, got {limit}")
        return self._storage.load_recent(limit)
