"""Data models for the solar operations console."""

import mimetypes
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from pathlib import Path
from types import MappingProxyType
from typing import Any

from solar_ops.core.status import PENDING, normalize_status


def to_decimal(value: Any) -> Decimal:
    """Parse a money value; blanks and junk count as zero."""
    if value is None or value == "":
        return Decimal("0")
    try:
        return Decimal(str(value))
    except InvalidOperation:
        return Decimal("0")


class CustomerSnapshot(Mapping):
    """Read-only projection of a registered customer attached to a task."""

    def __init__(self, data: Mapping[str, Any] | None = None):
        self._data = MappingProxyType(dict(data or {}))

    def __getitem__(self, key: str) -> Any:
        return self._data[key]

    def __iter__(self):
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def __repr__(self) -> str:
        return f"CustomerSnapshot(id={self.id!r}, name={self.applicant_name!r})"

    @property
    def id(self) -> int | None:
        value = self._data.get("id")
        return int(value) if value not in (None, "") else None

    @property
    def applicant_name(self) -> str:
        return self._data.get("applicant_name") or "Unknown"

    @property
    def plant_price(self) -> Decimal:
        return to_decimal(self._data.get("plant_price"))

    @property
    def paid_amount(self) -> Decimal:
        info = self._data.get("transaction_information") or {}
        return to_decimal(info.get("paid_amount"))

    @property
    def remaining_amount(self) -> Decimal:
        return self.plant_price - self.paid_amount

    @property
    def payments(self) -> list[dict]:
        info = self._data.get("transaction_information") or {}
        return list(info.get("payments") or [])

    def document_url(self, kind: str) -> str | None:
        return self._data.get(f"{kind}_url")


@dataclass
class Task:
    id: str
    work_type: str | None = None
    status: str = PENDING
    work: str | None = None
    assigned_role: str = "Unassigned"
    assigned_to_id: str | None = None
    assigned_to_name: str | None = None
    assigned_on: date | None = None
    registered_customer_id: int | None = None
    customer: CustomerSnapshot | None = None
    reassign_source_task_id: str | None = None
    reassign_target_id: str | None = None
    resolution: str | None = None

    @property
    def reference(self) -> str:
        return f"TASK-{self.id}"

    @property
    def title(self) -> str:
        return self.work or self.work_type or "Untitled"

    @property
    def customer_name(self) -> str:
        return self.customer.applicant_name if self.customer else "Unknown"

    @classmethod
    def from_api(cls, data: Mapping[str, Any]) -> "Task":
        """Build a task from the server's JSON representation."""
        customer_data = data.get("registered_customer_data")
        customer_id = data.get("registered_customer_id")
        return cls(
            id=str(data["id"]),
            work_type=data.get("work_type"),
            status=normalize_status(data.get("status") or PENDING),
            work=data.get("work"),
            assigned_role=data.get("assigned_to_role") or "Unassigned",
            assigned_to_id=_opt_str(data.get("assigned_to_id")),
            assigned_to_name=data.get("assigned_to_name"),
            assigned_on=_parse_date(data.get("created_at")),
            registered_customer_id=int(customer_id) if customer_id else None,
            customer=CustomerSnapshot(customer_data) if customer_data else None,
            reassign_source_task_id=_opt_str(data.get("reassign_source_task_id")),
            reassign_target_id=_opt_str(data.get("reassign_target_id")),
            resolution=data.get("resolution"),
        )


@dataclass(frozen=True)
class AuthContext:
    user_id: str
    token: str
    role: str | None = None
    name: str | None = None
    phone_number: str | None = None


@dataclass(frozen=True)
class Employee:
    id: str
    name: str
    phone_number: str | None = None
    role: str | None = None

    @classmethod
    def from_api(cls, data: Mapping[str, Any]) -> "Employee":
        return cls(
            id=str(data["id"]),
            name=data.get("name") or "Unknown",
            phone_number=data.get("phone_number"),
            role=data.get("employee_role") or data.get("role"),
        )


class EmployeeDirectory:
    """Snapshot of the employee list, fetched once per session."""

    def __init__(self, employees: list[Employee]):
        self._employees = tuple(employees)
        self._by_id = {e.id: e for e in self._employees}

    def __iter__(self):
        return iter(self._employees)

    def __len__(self) -> int:
        return len(self._employees)

    def get(self, employee_id: str) -> Employee | None:
        return self._by_id.get(str(employee_id))

    def roles(self) -> list[str]:
        return sorted({e.role for e in self._employees if e.role})

    def by_role(self, role: str) -> list[Employee]:
        return [e for e in self._employees if e.role == role]


@dataclass(frozen=True)
class Attachment:
    name: str
    content: bytes
    content_type: str = "application/octet-stream"

    @classmethod
    def from_path(cls, path: str | Path) -> "Attachment":
        p = Path(path)
        content_type = mimetypes.guess_type(p.name)[0] or "application/octet-stream"
        return cls(name=p.name, content=p.read_bytes(), content_type=content_type)


@dataclass
class StageSubmission:
    fields: dict[str, Any] = field(default_factory=dict)
    documents: dict[str, Attachment | list[Attachment]] = field(default_factory=dict)


@dataclass
class Result:
    success: bool
    message: str = ""
    data: Any = None
    completed_steps: list[str] = field(default_factory=list)
    failed_step: str | None = None

    @property
    def partial(self) -> bool:
        return not self.success and bool(self.completed_steps)

    @classmethod
    def ok(cls, message: str = "", data: Any = None) -> "Result":
        return cls(success=True, message=message, data=data)

    @classmethod
    def failed(cls, message: str, data: Any = None) -> "Result":
        return cls(success=False, message=message, data=data)


@dataclass
class TaskEvent:
    id: int | None = None
    task_id: str = ""
    event_type: str = ""
    old_value: str | None = None
    new_value: str | None = None
    created_at: datetime | None = None


def _opt_str(value: Any) -> str | None:
    return None if value is None or value == "" else str(value)


def _parse_date(val: str | None) -> date | None:
    if not val:
        return None
    try:
        return datetime.fromisoformat(val.replace("Z", "+00:00")).date()
    except ValueError:
        return None
