"""Employee records and bearer-token lookup."""

import sqlite3

from solar_ops.db.models import Employee


def create_employee(
    db: sqlite3.Connection,
    name: str,
    phone_number: str | None = None,
    role: str | None = None,
    token: str | None = None,
) -> Employee:
    """Create a new employee. The token, if given, authenticates API calls."""
    cur = db.execute(
        "INSERT INTO employees (name, phone_number, employee_role, token) VALUES (?, ?, ?, ?)",
        (name, phone_number, role, token),
    )
    db.commit()
    return get_employee(db, cur.lastrowid)


def get_employee(db: sqlite3.Connection, employee_id) -> Employee | None:
    row = db.execute("SELECT * FROM employees WHERE id = ?", (employee_id,)).fetchone()
    if not row:
        return None
    return _row_to_employee(row)


def list_employees(db: sqlite3.Connection, role: str | None = None) -> list[Employee]:
    query = "SELECT * FROM employees"
    params: list = []
    if role:
        query += " WHERE employee_role = ?"
        params.append(role)
    query += " ORDER BY name ASC"
    return [_row_to_employee(r) for r in db.execute(query, params).fetchall()]


def employee_for_token(db: sqlite3.Connection, token: str | None) -> Employee | None:
    if not token:
        return None
    row = db.execute("SELECT * FROM employees WHERE token = ?", (token,)).fetchone()
    return _row_to_employee(row) if row else None


def _row_to_employee(row: sqlite3.Row) -> Employee:
    return Employee(
        id=str(row["id"]),
        name=row["name"],
        phone_number=row["phone_number"],
        role=row["employee_role"],
    )
