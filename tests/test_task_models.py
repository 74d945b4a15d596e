import sys
from pathlib import Path

import pytest

sys.path.append(str(Path(__file__).resolve().parents[1]))

from taskqueue.models import InvalidTransition, Task  # noqa: E402


def test_from_record_parses_store_row() -> None:
    task = Task.from_record({"id": 42, "prompt": "hello", "status": "PENDING", "response": None})

    assert task == Task(id="42", prompt="hello", status="pending", response=None)


def test_from_record_rejects_rows_without_id_or_known_status() -> None:
    assert Task.from_record({"id": "", "prompt": "x", "status": "pending"}) is None
    assert Task.from_record({"prompt": "x", "status": "pending"}) is None
    assert Task.from_record({"id": "1", "prompt": "x", "status": "archived"}) is None


def test_claim_then_complete_sets_response() -> None:
    task = Task(id="t1", prompt="p")

    done = task.claimed().completed("answer")

    assert done.status == "completed"
    assert done.response == "answer"
    assert task.status == "pending"


def test_terminal_transition_without_claim_is_rejected() -> None:
    task = Task(id="t1", prompt="p")

    with pytest.raises(InvalidTransition):
        task.completed("answer")
    with pytest.raises(InvalidTransition):
        task.failed("boom")


def test_terminal_tasks_cannot_move_again() -> None:
    failed = Task(id="t1", prompt="p").claimed().failed("DOM_ERROR: Input box not found")

    assert failed.is_terminal
    with pytest.raises(InvalidTransition):
        failed.completed("late")
