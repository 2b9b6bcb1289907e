"""Task status model and the forward-only transition rule.

Statuses advance strictly one step at a time:

    pending -> in-progress -> completed

``completed`` is terminal. Moving a task to the status it already has is
allowed and means "nothing to do".
"""

PENDING = "pending"
IN_PROGRESS = "in-progress"
COMPLETED = "completed"

STATUSES: tuple[str, ...] = (PENDING, IN_PROGRESS, COMPLETED)

LABELS: dict[str, str] = {
    PENDING: "Pending",
    IN_PROGRESS: "In Progress",
    COMPLETED: "Completed",
}

_SUCCESSOR: dict[str, str | None] = {
    PENDING: IN_PROGRESS,
    IN_PROGRESS: COMPLETED,
    COMPLETED: None,
}

_ALIASES = {
    "inprogress": IN_PROGRESS,
    "in_progress": IN_PROGRESS,
    "in progress": IN_PROGRESS,
    "done": COMPLETED,
}

FLOW_DESCRIPTION = "Pending → In Progress → Completed"


def normalize_status(raw: str) -> str:
    """Map a status as reported by the server or typed by a user to its key."""
    value = raw.strip().lower()
    value = _ALIASES.get(value, value)
    if value not in _SUCCESSOR:
        raise ValueError(f"Unknown status: {raw}")
    return value


def to_wire(status: str) -> str:
    """The server stores in-progress without the hyphen."""
    return "inprogress" if status == IN_PROGRESS else status


def label(status: str) -> str:
    return LABELS.get(status, status)


def can_transition(current: str, new: str) -> bool:
    if current == new:
        return True
    return _SUCCESSOR.get(current) == new


def next_allowed(current: str) -> frozenset[str]:
    successor = _SUCCESSOR.get(current)
    return frozenset({successor}) if successor else frozenset()


def explain_rejection(current: str, new: str) -> str:
    if current == new:
        return "Task is already in this status"
    return (
        f"Cannot move task from {label(current)} to {label(new)}. "
        f"Task flow is unidirectional: {FLOW_DESCRIPTION}"
    )


def path_to(current: str, target: str) -> list[str]:
    """Statuses to pass through, one legal step at a time, to reach target.

    Raises ValueError when target lies behind current.
    """
    steps: list[str] = []
    status = current
    while status != target:
        status = _SUCCESSOR.get(status)
        if status is None:
            raise ValueError(explain_rejection(current, target))
        steps.append(status)
    return steps
