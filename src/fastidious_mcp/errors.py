"""Domain errors."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class FastidiousApiError(RuntimeError):
    """Raised when the Fastidious API returns a non-success response."""

    operation: str
    status_code: int
    reason: str
    method: str
    url: str

    def __str__(self) -> str:
        return f"Failed to {self.operation}: {self.reason}"
