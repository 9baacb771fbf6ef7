"""State machine constants and transition logic for generation tasks.

Task status only ever moves forward:
pending -> processing -> completed | failed. A request may also fail while
still pending (blocked before dispatch, or skipped after an abort).
"""

from typing import Dict, Set

# Task states in execution order
TASK_STATES = {
    "pending": "Submitted, waiting for a batch slot",
    "processing": "Dispatched to the provider",
    "completed": "Provider returned a result",
    "failed": "Terminated with an error or never dispatched",
}

# Allowed forward transitions
TRANSITIONS: Dict[str, Set[str]] = {
    "pending": {"processing", "failed"},
    "processing": {"completed", "failed"},
    "completed": set(),
    "failed": set(),
}

TERMINAL_STATES = {"completed", "failed"}


class InvalidTransitionError(ValueError):
    """Raised when a task would move backwards or out of a terminal state."""


def is_terminal(status: str) -> bool:
    """Check if a task status is final."""
    return status in TERMINAL_STATES


def can_transition(current: str, target: str) -> bool:
    """Check if a task may move from current to target.

    Re-entering the current state is allowed so progress updates can be
    written without a state change.

    Args:
        current: Current task status
        target: Requested task status

    Returns:
        True if the move is allowed, False otherwise
    """
    if current == target:
        return not is_terminal(current)
    return target in TRANSITIONS.get(current, set())


def advance(current: str, target: str) -> str:
    """Return target if the move is allowed, else raise InvalidTransitionError."""
    if not can_transition(current, target):
        raise InvalidTransitionError(f"Invalid task transition: {current} -> {target}")
    return target
