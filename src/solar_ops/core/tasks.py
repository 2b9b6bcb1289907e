"""Server-side task operations and the reassignment-approval workflow."""

import sqlite3
from datetime import datetime

from solar_ops.core import customers as customers_mod
from solar_ops.core import employees as employees_mod
from solar_ops.core import status as status_mod
from solar_ops.core.work_types import REASSIGNMENT_PREFIX
from solar_ops.db.models import CustomerSnapshot, Employee, Task, TaskEvent

APPROVE = "approve"
REJECT = "reject"


def create_task(
    db: sqlite3.Connection,
    work: str,
    work_type: str,
    assigned_to: Employee | None = None,
    registered_customer_id: int | None = None,
    reassign_source_task_id: str | None = None,
    reassign_target_id: str | None = None,
) -> Task:
    """Create a new pending task."""
    cur = db.execute(
        """INSERT INTO tasks (work, work_type, assigned_to_id, assigned_to_name, assigned_to_role,
                              registered_customer_id, reassign_source_task_id, reassign_target_id)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
        (
            work,
            work_type,
            assigned_to.id if assigned_to else None,
            assigned_to.name if assigned_to else None,
            assigned_to.role if assigned_to else None,
            registered_customer_id or None,
            reassign_source_task_id,
            reassign_target_id,
        ),
    )
    task_id = str(cur.lastrowid)
    _log_event(db, task_id, "created", None, status_mod.PENDING)
    db.commit()
    return get_task(db, task_id)


def get_task(db: sqlite3.Connection, task_id: str) -> Task | None:
    """Get a task by ID with its customer attached."""
    row = db.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
    if not row:
        return None
    return _row_to_task(db, row)


def list_tasks(
    db: sqlite3.Connection,
    assigned_to_id: str | None = None,
    status: str | None = None,
) -> list[Task]:
    """List tasks with optional filters, oldest first."""
    query = "SELECT * FROM tasks WHERE 1 = 1"
    params: list = []

    if assigned_to_id is not None:
        query += " AND assigned_to_id = ?"
        params.append(assigned_to_id)

    if status:
        query += " AND status = ?"
        params.append(status)

    query += " ORDER BY created_at ASC, id ASC"
    return [_row_to_task(db, r) for r in db.execute(query, params).fetchall()]


def list_reassignment_approvals(db: sqlite3.Connection) -> list[Task]:
    """Approval tasks still waiting for a decision."""
    rows = db.execute(
        "SELECT * FROM tasks WHERE work_type LIKE ? AND resolution IS NULL "
        "ORDER BY created_at ASC, id ASC",
        (f"{REASSIGNMENT_PREFIX}%",),
    ).fetchall()
    return [_row_to_task(db, r) for r in rows]


def update_task_status(
    db: sqlite3.Connection,
    task_id: str,
    status: str,
) -> Task | None:
    """Update a task's status. Returns the updated task.

    Raises ValueError when the move breaks the forward-only rule.
    """
    task = get_task(db, task_id)
    if not task:
        return None

    old_status = task.status
    if old_status == status:
        return task
    if not status_mod.can_transition(old_status, status):
        raise ValueError(status_mod.explain_rejection(old_status, status))

    completed_at = datetime.now().isoformat() if status == status_mod.COMPLETED else None
    db.execute(
        "UPDATE tasks SET status = ?, completed_at = ?, updated_at = datetime('now') WHERE id = ?",
        (status, completed_at, task_id),
    )
    _log_event(db, task_id, "status_changed", old_status, status)
    db.commit()
    return get_task(db, task_id)


def reassign_task(db: sqlite3.Connection, task_id: str, employee: Employee) -> Task | None:
    task = get_task(db, task_id)
    if not task:
        return None
    db.execute(
        """UPDATE tasks SET assigned_to_id = ?, assigned_to_name = ?, assigned_to_role = ?,
                            updated_at = datetime('now')
           WHERE id = ?""",
        (employee.id, employee.name, employee.role, task_id),
    )
    _log_event(db, task_id, "reassigned", task.assigned_to_id, employee.id)
    db.commit()
    return get_task(db, task_id)


def resolve_reassignment(db: sqlite3.Connection, approval_id: str, action: str) -> Task | None:
    """Approve or reject a reassignment request.

    Approval hands the source task to the requested employee. Either way the
    approval task records its resolution and is walked through to completed.
    """
    if action not in (APPROVE, REJECT):
        raise ValueError(f"Invalid action: {action}")

    approval = get_task(db, approval_id)
    if not approval:
        return None
    if not (approval.work_type or "").startswith(REASSIGNMENT_PREFIX):
        raise ValueError(f"{approval.reference} is not a reassignment request")
    if approval.resolution:
        raise ValueError(f"This request was already {approval.resolution}")

    if action == APPROVE:
        target = employees_mod.get_employee(db, approval.reassign_target_id)
        if not target:
            raise ValueError(f"Employee not found: {approval.reassign_target_id}")
        if not reassign_task(db, approval.reassign_source_task_id, target):
            raise ValueError(f"Task not found: {approval.reassign_source_task_id}")

    resolution = "approved" if action == APPROVE else "rejected"
    db.execute(
        "UPDATE tasks SET resolution = ?, updated_at = datetime('now') WHERE id = ?",
        (resolution, approval_id),
    )
    _log_event(db, approval_id, "resolved", None, resolution)
    db.commit()

    for step in status_mod.path_to(approval.status, status_mod.COMPLETED):
        update_task_status(db, approval_id, step)
    return get_task(db, approval_id)


def get_task_events(db: sqlite3.Connection, task_id: str) -> list[TaskEvent]:
    """Get the event history for a task."""
    rows = db.execute(
        "SELECT * FROM task_events WHERE task_id = ? ORDER BY id",
        (task_id,),
    ).fetchall()
    return [
        TaskEvent(
            id=r["id"],
            task_id=str(r["task_id"]),
            event_type=r["event_type"],
            old_value=r["old_value"],
            new_value=r["new_value"],
            created_at=_parse_dt(r["created_at"]),
        )
        for r in rows
    ]


def _log_event(
    db: sqlite3.Connection,
    task_id: str,
    event_type: str,
    old_value: str | None,
    new_value: str | None,
):
    db.execute(
        "INSERT INTO task_events (task_id, event_type, old_value, new_value) VALUES (?, ?, ?, ?)",
        (task_id, event_type, old_value, new_value),
    )


def _row_to_task(db: sqlite3.Connection, row: sqlite3.Row) -> Task:
    customer_id = row["registered_customer_id"]
    customer = customers_mod.get_customer(db, customer_id) if customer_id else None
    created = _parse_dt(row["created_at"])
    return Task(
        id=str(row["id"]),
        work_type=row["work_type"],
        status=row["status"],
        work=row["work"],
        assigned_role=row["assigned_to_role"] or "Unassigned",
        assigned_to_id=_opt_str(row["assigned_to_id"]),
        assigned_to_name=row["assigned_to_name"],
        assigned_on=created.date() if created else None,
        registered_customer_id=customer_id,
        customer=CustomerSnapshot(customer) if customer else None,
        reassign_source_task_id=_opt_str(row["reassign_source_task_id"]),
        reassign_target_id=_opt_str(row["reassign_target_id"]),
        resolution=row["resolution"],
    )


def _opt_str(value) -> str | None:
    return None if value is None else str(value)


def _parse_dt(val: str | None) -> datetime | None:
    if val is None:
        return None
    return datetime.fromisoformat(val)
