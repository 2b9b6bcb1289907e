"""Async HTTP client for the field-operations API."""

import logging
from decimal import Decimal
from typing import Any

import httpx

from solar_ops.core.errors import (
    AuthError,
    ConflictError,
    NetworkError,
    NotFoundError,
    RepositoryError,
    ServerValidationError,
)
from solar_ops.core.status import to_wire
from solar_ops.core.work_types import REASSIGNMENT_PREFIX
from solar_ops.db.models import Attachment, AuthContext, Employee, Result, Task

logger = logging.getLogger(__name__)

_STATUS_ERRORS: dict[int, type[RepositoryError]] = {
    400: ServerValidationError,
    401: AuthError,
    403: AuthError,
    404: NotFoundError,
    409: ConflictError,
    422: ServerValidationError,
}


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict):
        message = body.get("message") or body.get("error") or body.get("detail")
        if message:
            return str(message)
    return f"Request failed (Status: {response.status_code})"


def raise_for_status(response: httpx.Response) -> None:
    """Translate an error response into the matching RepositoryError."""
    if response.status_code < 400:
        return
    error_cls = _STATUS_ERRORS.get(response.status_code, RepositoryError)
    raise error_cls(_error_message(response), status_code=response.status_code)


def _unwrap_list(payload: Any) -> list:
    if isinstance(payload, list):
        return payload
    if isinstance(payload, dict):
        return payload.get("data") or []
    return []


def _parse(factory, data: Any):
    try:
        return factory(data)
    except (AttributeError, KeyError, TypeError, ValueError) as e:
        logger.warning("Malformed record from server: %r (%s)", data, e)
        raise RepositoryError(f"Invalid data from server: {e}") from e


def _multipart(documents: dict[str, Attachment | list[Attachment]]) -> list[tuple]:
    files = []
    for field_name, value in documents.items():
        items = value if isinstance(value, list) else [value]
        for a in items:
            files.append((field_name, (a.name, a.content, a.content_type)))
    return files


class TaskRepository:
    """Remote operations on tasks and their per-stage data.

    Does not check the transition rule; callers run it first.

    Usage:
        async with TaskRepository(base_url, auth) as repo:
            tasks = await repo.list_by_assignee(auth.user_id)
    """

    def __init__(
        self,
        base_url: str,
        auth: AuthContext,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.auth = auth
        self._client = httpx.AsyncClient(
            base_url=base_url,
            timeout=timeout,
            transport=transport,
            headers={"Authorization": f"Bearer {auth.token}"},
        )

    async def __aenter__(self) -> "TaskRepository":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def close(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, path: str, **kwargs) -> Any:
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            raise NetworkError(f"Request to {path} timed out") from e
        except httpx.TransportError as e:
            raise NetworkError(f"Could not reach the server: {e}") from e

        raise_for_status(response)
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise RepositoryError(
                "Invalid JSON response from server", status_code=response.status_code
            ) from e

    def _result(self, payload: Any, default_message: str) -> Result:
        if isinstance(payload, dict) and payload.get("success") is False:
            return Result.failed(payload.get("message") or default_message, data=payload)
        message = payload.get("message", "") if isinstance(payload, dict) else ""
        return Result.ok(message, data=payload)

    # ── Tasks ─────────────────────────────────────────────────────────────────

    async def list_by_assignee(self, assignee_id: str) -> list[Task]:
        payload = await self._request("GET", f"/tasks/employee/{assignee_id}")
        return [_parse(Task.from_api, t) for t in _unwrap_list(payload)]

    async def get_task(self, task_id: str) -> Task:
        payload = await self._request("GET", f"/tasks/{task_id}")
        return _parse(Task.from_api, payload)

    async def update_status(self, task_id: str, new_status: str) -> Result:
        logger.debug("PATCH task %s status=%s", task_id, new_status)
        payload = await self._request(
            "PATCH", f"/tasks/{task_id}", json={"status": to_wire(new_status)}
        )
        return self._result(payload, "Failed to update task status")

    async def create_reassignment_request(
        self, task: Task, from_user: AuthContext, to_user: Employee
    ) -> Result:
        """Ask for approval to hand a task to another employee.

        Creates a new approval task; the original task is left untouched.
        """
        requester = f"{from_user.name or 'Unknown'} ({from_user.phone_number or 'N/A'})"
        target = f"{to_user.name or 'Unknown'} ({to_user.phone_number or 'N/A'})"
        body = {
            "work": (
                f"{requester} requested to reassign the {task.title} "
                f"{task.reference} to {target}"
            ),
            "work_type": f"{REASSIGNMENT_PREFIX}{task.work_type or 'task'}",
            "status": "pending",
            "assigned_to_id": from_user.user_id,
            "assigned_to_name": from_user.name,
            "assigned_to_role": from_user.role,
            "registered_customer_id": task.registered_customer_id or 0,
            "reassign_source_task_id": task.id,
            "reassign_target_id": to_user.id,
        }
        payload = await self._request("POST", "/tasks", json=body)
        return self._result(payload, "Failed to request reassignment")

    async def list_reassignment_approvals(self) -> list[Task]:
        payload = await self._request("GET", "/tasks/reassignment-approvals")
        return [_parse(Task.from_api, t) for t in _unwrap_list(payload)]

    async def act_on_reassignment(self, task_id: str, action: str) -> Result:
        payload = await self._request(
            "POST", f"/tasks/{task_id}/reassignment-action", json={"action": action}
        )
        return self._result(payload, "Failed to process action")

    # ── Customers & stage submissions ────────────────────────────────────────

    async def get_customer(self, customer_id: int) -> dict:
        return await self._request("GET", f"/registered-customers/{customer_id}")

    async def update_customer(self, customer_id: int, fields: dict[str, Any]) -> Result:
        payload = await self._request("PUT", f"/registered-customers/{customer_id}", json=fields)
        return self._result(payload, "Failed to update customer")

    async def upload_customer_documents(
        self, customer_id: int, documents: dict[str, Attachment | list[Attachment]]
    ) -> Result:
        payload = await self._request(
            "POST",
            f"/registered-customers/{customer_id}/upload-batch",
            files=_multipart(documents),
        )
        return self._result(payload, "Failed to upload documents")

    async def submit_stage_documents(
        self,
        customer_id: int,
        document_kind: str,
        documents: dict[str, Attachment | list[Attachment]],
    ) -> Result:
        payload = await self._request(
            "POST",
            f"/additional-documents/{customer_id}/{document_kind}",
            files=_multipart(documents),
        )
        return self._result(payload, f"Failed to upload {document_kind} documents")

    async def record_payment(self, customer_id: int, amount: Decimal, proof: Attachment) -> Result:
        """Send amount and proof together; the server stores both or neither."""
        payload = await self._request(
            "POST",
            f"/transaction-logs/{customer_id}/payment",
            data={"amount": str(amount)},
            files=_multipart({"proof": proof}),
        )
        return self._result(payload, "Failed to record payment")

    async def record_installation(self, customer_id: int, details: dict[str, Any]) -> Result:
        body = {"registered_customer_id": customer_id, **details}
        payload = await self._request("POST", "/plant-installation-details", json=body)
        return self._result(payload, "Failed to save plant installation details")

    # ── Employees ─────────────────────────────────────────────────────────────

    async def list_employees(self, role: str | None = None) -> list[Employee]:
        params = {"role": role} if role else None
        payload = await self._request("GET", "/employees", params=params)
        return [_parse(Employee.from_api, e) for e in _unwrap_list(payload)]
