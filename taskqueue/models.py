from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Any, Literal

TaskStatus = Literal["pending", "processing", "completed", "failed"]

TERMINAL_STATUSES: frozenset[str] = frozenset({"completed", "failed"})

# Store contract: status values are always lower case.
ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
    "pending": frozenset({"processing"}),
    "processing": frozenset({"completed", "failed"}),
    "completed": frozenset(),
    "failed": frozenset(),
}


class InvalidTransition(ValueError):
    pass


@dataclass(slots=True, frozen=True)
class Task:
    id: str
    prompt: str
    status: TaskStatus = "pending"
    response: str | None = None

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> Task | None:
        """Build a task from a store row, or ``None`` when the row has no id."""
        raw_id = record.get("id")
        if raw_id is None or str(raw_id) == "":
            return None
        status = str(record.get("status") or "").lower()
        if status not in ALLOWED_TRANSITIONS:
            return None
        response = record.get("response")
        return cls(
            id=str(raw_id),
            prompt=str(record.get("prompt") or ""),
            status=status,  # type: ignore[arg-type]
            response=None if response is None else str(response),
        )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def transition(self, status: TaskStatus, response: str | None = None) -> Task:
        if status not in ALLOWED_TRANSITIONS.get(self.status, frozenset()):
            raise InvalidTransition(f"Task {self.id}: {self.status} -> {status} is not allowed.")
        if status in TERMINAL_STATUSES:
            return replace(self, status=status, response=response)
        return replace(self, status=status)

    def claimed(self) -> Task:
        return self.transition("processing")

    def completed(self, payload: str) -> Task:
        return self.transition("completed", payload)

    def failed(self, diagnostic: str) -> Task:
        return self.transition("failed", diagnostic)
