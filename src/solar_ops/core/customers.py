"""Registered customers: details, documents, payments and installation records."""

import json
import sqlite3
from decimal import Decimal
from pathlib import Path

from solar_ops.db.models import to_decimal

DOCUMENT_KINDS = ("customer", "finance", "registration", "indent", "paybill", "warranty", "dcr")

_COLUMNS = {"applicant_name", "mobile_number", "plant_price"}
_READ_ONLY = {"id", "transaction_information", "plant_installation", "created_at", "updated_at"}


def create_customer(
    db: sqlite3.Connection,
    applicant_name: str,
    mobile_number: str | None = None,
    plant_price: Decimal | str | int = 0,
    **data,
) -> dict:
    """Create a customer. Extra keyword arguments are stored as free-form details."""
    cur = db.execute(
        "INSERT INTO registered_customers (applicant_name, mobile_number, plant_price, data) "
        "VALUES (?, ?, ?, ?)",
        (applicant_name, mobile_number, str(to_decimal(plant_price)), json.dumps(data)),
    )
    db.commit()
    return get_customer(db, cur.lastrowid)


def get_customer(db: sqlite3.Connection, customer_id) -> dict | None:
    """Customer details merged with document urls, payments and installation."""
    row = db.execute(
        "SELECT * FROM registered_customers WHERE id = ?", (customer_id,)
    ).fetchone()
    if not row:
        return None

    customer = json.loads(row["data"] or "{}")
    customer.update(
        id=row["id"],
        applicant_name=row["applicant_name"],
        mobile_number=row["mobile_number"],
        plant_price=row["plant_price"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )

    docs = db.execute(
        "SELECT field, path FROM customer_documents WHERE customer_id = ? ORDER BY id ASC",
        (customer_id,),
    ).fetchall()
    for d in docs:
        customer[f"{d['field']}_url"] = f"/uploads/{d['path']}"

    payments = list_payments(db, customer_id)
    customer["transaction_information"] = {
        "paid_amount": str(sum((to_decimal(p["amount"]) for p in payments), Decimal("0"))),
        "payments": payments,
    }
    customer["plant_installation"] = get_installation(db, customer_id)
    return customer


def update_customer(db: sqlite3.Connection, customer_id, fields: dict) -> dict | None:
    """Update customer fields; unknown keys are merged into the details blob."""
    row = db.execute(
        "SELECT data FROM registered_customers WHERE id = ?", (customer_id,)
    ).fetchone()
    if not row:
        return None

    updates = {k: v for k, v in fields.items() if k in _COLUMNS}
    if "plant_price" in updates:
        updates["plant_price"] = str(to_decimal(updates["plant_price"]))
    data = json.loads(row["data"] or "{}")
    data.update({
        k: v for k, v in fields.items()
        if k not in _COLUMNS and k not in _READ_ONLY and not k.endswith("_url")
    })
    updates["data"] = json.dumps(data)

    set_clause = ", ".join(f"{k} = ?" for k in updates)
    db.execute(
        f"UPDATE registered_customers SET {set_clause}, updated_at = datetime('now') WHERE id = ?",
        list(updates.values()) + [customer_id],
    )
    db.commit()
    return get_customer(db, customer_id)


# ── Documents ─────────────────────────────────────────────────────────────────


def store_file(upload_dir: Path, customer_id, kind: str, filename: str, content: bytes) -> str:
    """Write an uploaded file below upload_dir. Returns its path relative to upload_dir."""
    safe_name = Path(filename).name or "upload.bin"
    target_dir = upload_dir / str(customer_id) / kind
    target_dir.mkdir(parents=True, exist_ok=True)
    target = target_dir / safe_name
    i = 2
    while target.exists():
        target = target_dir / f"{Path(safe_name).stem}-{i}{Path(safe_name).suffix}"
        i += 1
    target.write_bytes(content)
    return target.relative_to(upload_dir).as_posix()


def add_document(
    db: sqlite3.Connection,
    customer_id,
    kind: str,
    field: str,
    filename: str,
    path: str,
) -> None:
    if kind not in DOCUMENT_KINDS:
        raise ValueError(f"Unknown document kind: {kind}")
    db.execute(
        "INSERT INTO customer_documents (customer_id, kind, field, filename, path) "
        "VALUES (?, ?, ?, ?, ?)",
        (customer_id, kind, field, filename, path),
    )
    db.execute(
        "UPDATE registered_customers SET updated_at = datetime('now') WHERE id = ?",
        (customer_id,),
    )
    db.commit()


def list_documents(db: sqlite3.Connection, customer_id, kind: str | None = None) -> list[dict]:
    query = "SELECT * FROM customer_documents WHERE customer_id = ?"
    params: list = [customer_id]
    if kind:
        query += " AND kind = ?"
        params.append(kind)
    rows = db.execute(query + " ORDER BY id ASC", params).fetchall()
    return [
        {"kind": r["kind"], "field": r["field"], "filename": r["filename"], "path": r["path"]}
        for r in rows
    ]


# ── Payments ──────────────────────────────────────────────────────────────────


def list_payments(db: sqlite3.Connection, customer_id) -> list[dict]:
    rows = db.execute(
        "SELECT * FROM transactions WHERE customer_id = ? ORDER BY id ASC", (customer_id,)
    ).fetchall()
    return [
        {
            "id": r["id"],
            "amount": r["amount"],
            "proof_url": f"/uploads/{r['proof_path']}",
            "recorded_by": r["recorded_by"],
            "created_at": r["created_at"],
        }
        for r in rows
    ]


def remaining_amount(db: sqlite3.Connection, customer_id) -> Decimal:
    customer = get_customer(db, customer_id)
    if customer is None:
        raise ValueError(f"Customer not found: {customer_id}")
    paid = to_decimal(customer["transaction_information"]["paid_amount"])
    return to_decimal(customer["plant_price"]) - paid


def check_payment(db: sqlite3.Connection, customer_id, amount: Decimal) -> None:
    """Raise ValueError unless 0 < amount <= remaining balance."""
    if not amount.is_finite() or amount <= 0:
        raise ValueError("Please enter a valid amount")
    remaining = remaining_amount(db, customer_id)
    if amount > remaining:
        raise ValueError(f"Amount cannot exceed remaining amount (₹{remaining:,})")


def record_payment(
    db: sqlite3.Connection,
    customer_id,
    amount: Decimal,
    proof_path: str,
    recorded_by=None,
) -> dict:
    """Record a payment against the customer's remaining balance."""
    check_payment(db, customer_id, amount)
    cur = db.execute(
        "INSERT INTO transactions (customer_id, amount, proof_path, recorded_by) VALUES (?, ?, ?, ?)",
        (customer_id, str(amount), proof_path, recorded_by),
    )
    db.commit()
    return next(p for p in list_payments(db, customer_id) if p["id"] == cur.lastrowid)


# ── Plant installation ────────────────────────────────────────────────────────


def record_installation(db: sqlite3.Connection, customer_id, details: dict) -> dict:
    """Create or replace the installation record for a customer."""
    db.execute(
        """INSERT INTO plant_installations
               (customer_id, date_of_installation, internal_technician, external_technician,
                technical_assistant_ids, photo_taker_employee_id)
           VALUES (?, ?, ?, ?, ?, ?)
           ON CONFLICT(customer_id) DO UPDATE SET
               date_of_installation = excluded.date_of_installation,
               internal_technician = excluded.internal_technician,
               external_technician = excluded.external_technician,
               technical_assistant_ids = excluded.technical_assistant_ids,
               photo_taker_employee_id = excluded.photo_taker_employee_id""",
        (
            customer_id,
            details["date_of_installation"],
            json.dumps(details.get("internal_technician") or []),
            json.dumps(details.get("external_technician") or []),
            json.dumps(details.get("technical_assistant_ids") or []),
            details.get("photo_taker_employee_id"),
        ),
    )
    db.commit()
    return get_installation(db, customer_id)


def get_installation(db: sqlite3.Connection, customer_id) -> dict | None:
    row = db.execute(
        "SELECT * FROM plant_installations WHERE customer_id = ?", (customer_id,)
    ).fetchone()
    if not row:
        return None
    return {
        "date_of_installation": row["date_of_installation"],
        "internal_technician": json.loads(row["internal_technician"]),
        "external_technician": json.loads(row["external_technician"]),
        "technical_assistant_ids": json.loads(row["technical_assistant_ids"]),
        "photo_taker_employee_id": row["photo_taker_employee_id"],
    }
