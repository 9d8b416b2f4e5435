from __future__ import annotations

from taskstream.errors import (
    GenerationError,
    InvalidTransitionError,
    StartTimeoutError,
    TaskNotFoundError,
    TransportError,
)


def test_error_payloads_are_serialisable() -> None:
    assert TransportError("down", task_id="t", status_code=502).to_dict() == {
        "title": "Transport failure",
        "detail": "down",
        "task_id": "t",
        "status_code": 502,
    }
    assert InvalidTransitionError("t", "COMPLETED", "STREAMING").to_dict()["current"] == "COMPLETED"
    assert TaskNotFoundError("t").title == "Task not found"


def test_timeout_is_a_transport_error() -> None:
    error = StartTimeoutError(30, task_id="t")

    assert isinstance(error, TransportError)
    assert str(error) == "Request timed out after 30s"
    assert error.title == "Request timed out"


def test_generation_error_has_fallback_message() -> None:
    assert str(GenerationError(None)) == "An error occurred during generation"
    assert str(GenerationError("quota exceeded")) == "quota exceeded"
