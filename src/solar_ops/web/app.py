"""Reference field-operations API server."""

import functools
import json
import logging
from pathlib import Path

import uvicorn
from starlette.applications import Starlette
from starlette.datastructures import UploadFile
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Mount, Route
from starlette.staticfiles import StaticFiles

from solar_ops.config import get_config
from solar_ops.core import customers as customers_mod
from solar_ops.core import employees as employees_mod
from solar_ops.core import status as status_mod
from solar_ops.core import tasks as tasks_mod
from solar_ops.core.work_types import REASSIGNMENT_PREFIX
from solar_ops.db.engine import init_db
from solar_ops.db.models import to_decimal

logger = logging.getLogger(__name__)

ADMIN_ROLE = "admin"


def _get_db(request: Request):
    return init_db(request.app.state.db_path)


def _error(message: str, status_code: int) -> JSONResponse:
    return JSONResponse({"success": False, "message": message}, status_code=status_code)


def _bearer_token(request: Request) -> str | None:
    header = request.headers.get("authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token:
        return None
    return token.strip()


def authenticated(handler):
    """Open a connection, resolve the bearer token, and pass both to the handler."""

    @functools.wraps(handler)
    async def endpoint(request: Request):
        db = _get_db(request)
        try:
            user = employees_mod.employee_for_token(db, _bearer_token(request))
            if user is None:
                return _error("Unauthorized", 401)
            return await handler(request, db, user)
        finally:
            db.close()

    return endpoint


async def _json_body(request: Request) -> dict | None:
    try:
        body = await request.json()
    except json.JSONDecodeError:
        return None
    return body if isinstance(body, dict) else None


async def _save_uploads(request: Request, db, customer_id, kind: str) -> list[dict]:
    """Store every file field of a multipart request as a customer document."""
    upload_dir: Path = request.app.state.upload_dir
    saved = []
    async with request.form() as form:
        for field, value in form.multi_items():
            if not isinstance(value, UploadFile):
                continue
            content = await value.read()
            path = customers_mod.store_file(
                upload_dir, customer_id, kind, value.filename or field, content
            )
            customers_mod.add_document(db, customer_id, kind, field, value.filename or field, path)
            saved.append({"field": field, "url": f"/uploads/{path}"})
    return saved


# ── Employees ─────────────────────────────────────────────────────────────────


@authenticated
async def api_list_employees(request: Request, db, user):
    role = request.query_params.get("role")
    return JSONResponse([_employee_dict(e) for e in employees_mod.list_employees(db, role)])


# ── Tasks ─────────────────────────────────────────────────────────────────────


@authenticated
async def api_employee_tasks(request: Request, db, user):
    employee_id = request.path_params["employee_id"]
    tasks = tasks_mod.list_tasks(db, assigned_to_id=employee_id)
    return JSONResponse([_task_dict(t) for t in tasks])


@authenticated
async def api_reassignment_approvals(request: Request, db, user):
    tasks = tasks_mod.list_reassignment_approvals(db)
    return JSONResponse([_task_dict(t) for t in tasks])


@authenticated
async def api_get_task(request: Request, db, user):
    task_id = request.path_params["task_id"]
    task = tasks_mod.get_task(db, task_id)
    if not task:
        return _error("Task not found", 404)
    td = _task_dict(task)
    td["events"] = [_event_dict(e) for e in tasks_mod.get_task_events(db, task_id)]
    return JSONResponse(td)


@authenticated
async def api_update_task(request: Request, db, user):
    task_id = request.path_params["task_id"]
    body = await _json_body(request)
    if not body or not body.get("status"):
        return _error("status is required", 400)
    try:
        new_status = status_mod.normalize_status(str(body["status"]))
    except ValueError as e:
        return _error(str(e), 400)

    try:
        task = tasks_mod.update_task_status(db, task_id, new_status)
    except ValueError as e:
        logger.info("Rejected status change for task %s: %s", task_id, e)
        return _error(str(e), 409)
    if not task:
        return _error("Task not found", 404)
    return JSONResponse({"success": True, "message": "Task status updated", "data": _task_dict(task)})


@authenticated
async def api_create_task(request: Request, db, user):
    body = await _json_body(request)
    if not body or not body.get("work_type"):
        return _error("work_type is required", 400)

    assignee = user
    if assigned_to_id := body.get("assigned_to_id"):
        assignee = employees_mod.get_employee(db, assigned_to_id)
        if not assignee:
            return _error(f"Employee not found: {assigned_to_id}", 400)

    source_id = _opt_id(body.get("reassign_source_task_id"))
    target_id = _opt_id(body.get("reassign_target_id"))
    if str(body["work_type"]).startswith(REASSIGNMENT_PREFIX):
        if not source_id or not tasks_mod.get_task(db, source_id):
            return _error("Task to reassign not found", 404)
        if not target_id or not employees_mod.get_employee(db, target_id):
            return _error("Target employee not found", 400)

    customer_id = body.get("registered_customer_id") or None
    if customer_id and not customers_mod.get_customer(db, customer_id):
        return _error(f"Customer not found: {customer_id}", 400)

    task = tasks_mod.create_task(
        db,
        work=body.get("work") or "",
        work_type=body["work_type"],
        assigned_to=assignee,
        registered_customer_id=customer_id,
        reassign_source_task_id=source_id,
        reassign_target_id=target_id,
    )
    return JSONResponse(
        {"success": True, "message": "Task created", "data": _task_dict(task)}, status_code=201
    )


@authenticated
async def api_reassignment_action(request: Request, db, user):
    task_id = request.path_params["task_id"]
    if user.role != ADMIN_ROLE:
        return _error("Only admins can act on reassignment requests", 403)
    body = await _json_body(request)
    action = (body or {}).get("action")
    if action not in (tasks_mod.APPROVE, tasks_mod.REJECT):
        return _error("action must be 'approve' or 'reject'", 400)

    try:
        task = tasks_mod.resolve_reassignment(db, task_id, action)
    except ValueError as e:
        return _error(str(e), 409)
    if not task:
        return _error("Task not found", 404)
    message = (
        "Task reassignment approved successfully"
        if action == tasks_mod.APPROVE
        else "Task reassignment rejected"
    )
    return JSONResponse({"success": True, "message": message, "data": _task_dict(task)})


# ── Customers ─────────────────────────────────────────────────────────────────


@authenticated
async def api_get_customer(request: Request, db, user):
    customer = customers_mod.get_customer(db, request.path_params["customer_id"])
    if not customer:
        return _error("Customer not found", 404)
    return JSONResponse(customer)


@authenticated
async def api_update_customer(request: Request, db, user):
    body = await _json_body(request)
    if body is None:
        return _error("Expected a JSON object", 400)
    customer = customers_mod.update_customer(db, request.path_params["customer_id"], body)
    if not customer:
        return _error("Customer not found", 404)
    return JSONResponse({"success": True, "message": "Customer updated", "data": customer})


@authenticated
async def api_upload_customer_documents(request: Request, db, user):
    customer_id = request.path_params["customer_id"]
    if not customers_mod.get_customer(db, customer_id):
        return _error("Customer not found", 404)
    saved = await _save_uploads(request, db, customer_id, "customer")
    if not saved:
        return _error("No files uploaded", 400)
    return JSONResponse({"success": True, "message": "Documents uploaded", "data": saved})


@authenticated
async def api_additional_documents(request: Request, db, user):
    customer_id = request.path_params["customer_id"]
    kind = request.path_params["kind"]
    if kind not in customers_mod.DOCUMENT_KINDS or kind == "customer":
        return _error(f"Unknown document kind: {kind}", 404)
    if not customers_mod.get_customer(db, customer_id):
        return _error("Customer not found", 404)
    saved = await _save_uploads(request, db, customer_id, kind)
    if not saved:
        return _error("No files uploaded", 400)
    return JSONResponse(
        {"success": True, "message": f"{kind.capitalize()} documents uploaded", "data": saved}
    )


@authenticated
async def api_record_payment(request: Request, db, user):
    customer_id = request.path_params["customer_id"]
    if not customers_mod.get_customer(db, customer_id):
        return _error("Customer not found", 404)

    async with request.form() as form:
        amount = to_decimal(form.get("amount"))
        proof = form.get("proof")
        if not isinstance(proof, UploadFile):
            return _error("Please upload payment proof", 400)
        try:
            customers_mod.check_payment(db, customer_id, amount)
        except ValueError as e:
            return _error(str(e), 400)
        path = customers_mod.store_file(
            request.app.state.upload_dir,
            customer_id,
            "payment",
            proof.filename or "proof",
            await proof.read(),
        )

    payment = customers_mod.record_payment(db, customer_id, amount, path, user.id)
    return JSONResponse({"success": True, "message": "Payment recorded successfully!", "data": payment})


@authenticated
async def api_plant_installation(request: Request, db, user):
    body = await _json_body(request)
    if not body:
        return _error("Expected a JSON object", 400)
    customer_id = body.get("registered_customer_id")
    if not customer_id or not customers_mod.get_customer(db, customer_id):
        return _error("Customer not found", 404)
    if not body.get("date_of_installation"):
        return _error("Installation date is required", 400)
    installation = customers_mod.record_installation(db, customer_id, body)
    return JSONResponse({
        "success": True,
        "message": "Plant installation details saved successfully!",
        "data": installation,
    })


# ── Serialization ─────────────────────────────────────────────────────────────


def _opt_id(value) -> str | None:
    return str(value) if value not in (None, "", 0) else None


def _employee_dict(e) -> dict:
    return {
        "id": int(e.id),
        "name": e.name,
        "phone_number": e.phone_number,
        "employee_role": e.role,
    }


def _task_dict(t) -> dict:
    return {
        "id": int(t.id),
        "work": t.work,
        "work_type": t.work_type,
        "status": status_mod.to_wire(t.status),
        "assigned_to_id": t.assigned_to_id,
        "assigned_to_name": t.assigned_to_name,
        "assigned_to_role": t.assigned_role,
        "registered_customer_id": t.registered_customer_id,
        "registered_customer_data": dict(t.customer) if t.customer else None,
        "reassign_source_task_id": t.reassign_source_task_id,
        "reassign_target_id": t.reassign_target_id,
        "resolution": t.resolution,
        "created_at": t.assigned_on.isoformat() if t.assigned_on else None,
    }


def _event_dict(e) -> dict:
    return {
        "id": e.id,
        "event_type": e.event_type,
        "old_value": e.old_value,
        "new_value": e.new_value,
        "created_at": e.created_at.isoformat() if e.created_at else None,
    }


# ── App ───────────────────────────────────────────────────────────────────────


def create_app(db_path: Path | None = None, upload_dir: Path | None = None) -> Starlette:
    config = get_config()
    upload_dir = upload_dir or config.upload_dir
    upload_dir.mkdir(parents=True, exist_ok=True)
    routes = [
        Route("/api/employees", api_list_employees),
        Route("/api/tasks", api_create_task, methods=["POST"]),
        Route("/api/tasks/employee/{employee_id}", api_employee_tasks),
        Route("/api/tasks/reassignment-approvals", api_reassignment_approvals),
        Route("/api/tasks/{task_id}", api_get_task, methods=["GET"]),
        Route("/api/tasks/{task_id}", api_update_task, methods=["PATCH"]),
        Route("/api/tasks/{task_id}/reassignment-action", api_reassignment_action, methods=["POST"]),
        Route("/api/registered-customers/{customer_id}", api_get_customer, methods=["GET"]),
        Route("/api/registered-customers/{customer_id}", api_update_customer, methods=["PUT"]),
        Route(
            "/api/registered-customers/{customer_id}/upload-batch",
            api_upload_customer_documents,
            methods=["POST"],
        ),
        Route("/api/transaction-logs/{customer_id}/payment", api_record_payment, methods=["POST"]),
        Route(
            "/api/additional-documents/{customer_id}/{kind}",
            api_additional_documents,
            methods=["POST"],
        ),
        Route("/api/plant-installation-details", api_plant_installation, methods=["POST"]),
        Mount("/uploads", StaticFiles(directory=upload_dir, check_dir=False)),
    ]
    app = Starlette(routes=routes)
    app.state.db_path = db_path or config.db_path
    app.state.upload_dir = upload_dir
    return app


def run_server(host: str = "127.0.0.1", port: int = 3000):
    app = create_app()
    uvicorn.run(app, host=host, port=port)
