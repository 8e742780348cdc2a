from __future__ import annotations


class PermanentJobError(Exception):
    """A job failure that retrying cannot fix; the job fails immediately."""

    def __init__(self, message: str, *, task_type: str = "outbound_failed") -> None:
        super().__init__(message)
        self.task_type = task_type
