"""CLI entry point for the solar operations console."""

import asyncio
import json
import logging
import secrets
import sys

import click

from solar_ops.config import get_config
from solar_ops.core import employees as employees_mod
from solar_ops.core import status as status_mod
from solar_ops.core.board import BoardOrchestrator
from solar_ops.core.errors import ConsoleError
from solar_ops.core.notifications import (
    DEFAULT_DURATION_MS,
    ERROR,
    INFO,
    SUCCESS,
    WARNING,
    CollectingNotifier,
)
from solar_ops.core.stages import build_handler
from solar_ops.core.work_types import HandlerKind, get_registry
from solar_ops.db.engine import get_db
from solar_ops.db.models import Attachment, AuthContext, EmployeeDirectory, StageSubmission
from solar_ops.integrations import slack as slack_mod
from solar_ops.integrations.api import TaskRepository

STATUS_ICONS = {
    status_mod.PENDING: "○",
    status_mod.IN_PROGRESS: "●",
    status_mod.COMPLETED: "✓",
}


class ConsoleNotifier(CollectingNotifier):
    """Echoes notifications to the terminal, optionally forwarding them."""

    _colors = {SUCCESS: "green", INFO: None, WARNING: "yellow", ERROR: "red"}

    def __init__(self, forward=None):
        super().__init__()
        self.forward = forward

    def notify(self, message: str, level: str = INFO, duration_ms: int = DEFAULT_DURATION_MS) -> None:
        super().notify(message, level, duration_ms)
        click.secho(message, fg=self._colors.get(level), err=level in (WARNING, ERROR))
        if self.forward is not None:
            self.forward.notify(message, level, duration_ms)


def _transport():
    """HTTP transport for the API client; None means the network.

    Test hook: tests monkeypatch this to return an ``httpx.ASGITransport``
    so commands run against an in-process app.
    """
    return None


def _get_db():
    config = get_config()
    return get_db(config.db_path)


def _auth(config) -> AuthContext:
    if not config.token or not config.user_id:
        click.echo("Not signed in: set SOPS_TOKEN and SOPS_USER_ID.", err=True)
        sys.exit(1)
    return AuthContext(
        user_id=config.user_id,
        token=config.token,
        role=config.role,
        name=config.user_name,
        phone_number=config.user_phone,
    )


def _run(action):
    """Run an async action against a fresh repository and board.

    Exits non-zero when the action reports failure or an error was notified.
    """
    config = get_config()
    auth = _auth(config)
    forward = None
    if config.slack_bot_token and config.slack_channel:
        forward = slack_mod.SlackNotifier(config.slack_bot_token, config.slack_channel)
    notifier = ConsoleNotifier(forward)

    async def run():
        async with TaskRepository(
            config.api_base, auth, timeout=config.http_timeout, transport=_transport()
        ) as repo:
            board = BoardOrchestrator(repo, auth, notifier, registry=get_registry())
            return await action(board)

    try:
        ok = asyncio.run(run())
    except ConsoleError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    if ok is False or notifier.has_errors:
        sys.exit(1)


def _parse_pairs(pairs: tuple[str, ...], what: str) -> list[tuple[str, str]]:
    parsed = []
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise click.BadParameter(f"expected KEY=VALUE, got {pair!r}", param_hint=what)
        parsed.append((key, value))
    return parsed


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
def main(verbose):
    """sops - Solar Ops console"""
    config = get_config()
    logging.basicConfig(
        level=logging.DEBUG if verbose else config.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


# ── Board Commands ────────────────────────────────────────────────────────────


@main.command("board")
@click.option("--work-type", default=None, help="Only show tasks of this work type")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def board_cmd(work_type, json_output):
    """Show your tasks grouped by status."""

    async def action(board: BoardOrchestrator):
        if not await board.load_tasks():
            return False
        buckets = board.buckets(work_type)

        if json_output:
            click.echo(json.dumps(
                {s: [_task_dict(t) for t in tasks] for s, tasks in buckets.items()}, indent=2
            ))
            return True

        for status, tasks in buckets.items():
            click.echo(f"{status_mod.label(status)} ({len(tasks)})")
            for task in tasks:
                icon = STATUS_ICONS.get(task.status, "?")
                click.echo(
                    f"  {icon} {task.reference}: {task.title} [{task.work_type or '-'}] "
                    f"- {task.customer_name}"
                )
        if not work_type and board.work_types():
            click.echo(f"Work types: {', '.join(board.work_types())}")
        return True

    _run(action)


@main.command("show")
@click.argument("task_id")
def show_cmd(task_id):
    """Show task details and its stage data."""

    async def action(board: BoardOrchestrator):
        if not await board.load_tasks():
            return False
        detail = await board.open_task(task_id)
        task = detail.task
        click.echo(f"Task: {task.reference}")
        click.echo(f"  Work: {task.title}")
        click.echo(f"  Work type: {detail.descriptor.label}")
        click.echo(f"  Status: {status_mod.label(task.status)}")
        click.echo(f"  Assigned to: {task.assigned_to_name or '-'} ({task.assigned_role})")
        if task.assigned_on:
            click.echo(f"  Assigned on: {task.assigned_on}")
        click.echo(f"  Customer: {task.customer_name}")
        allowed = status_mod.next_allowed(task.status)
        if allowed:
            click.echo(f"  Next: {', '.join(status_mod.label(s) for s in sorted(allowed))}")
        click.echo("  Details:")
        for key, value in detail.summary().items():
            click.echo(f"    {key}: {value}")
        return True

    _run(action)


def _post_task_update(channel: str | None, task) -> None:
    if not channel or task is None:
        return
    config = get_config()
    try:
        slack_mod.send_message(
            config.slack_bot_token,
            channel,
            f"{task.reference} moved to {status_mod.label(task.status)}",
            slack_mod.format_task_notification(task),
        )
        click.echo(f"  Slack notification sent to {channel}")
    except slack_mod.SlackError as e:
        click.echo(f"  Slack notification failed: {e}", err=True)


@main.command("move")
@click.argument("task_id")
@click.argument("status")
@click.option("--notify", default=None, help="Slack channel to notify")
def move_cmd(task_id, status, notify):
    """Move a task to STATUS (pending, in-progress, completed)."""

    async def action(board: BoardOrchestrator):
        if not await board.load_tasks():
            return False
        result = await board.request_status_change(task_id, status)
        if result.success:
            _post_task_update(notify, board.get(task_id))
        return result.success

    _run(action)


@main.command("next")
@click.argument("task_id")
@click.option("--notify", default=None, help="Slack channel to notify")
def next_cmd(task_id, notify):
    """Advance a task by one status."""

    async def action(board: BoardOrchestrator):
        if not await board.load_tasks():
            return False
        task = board.get(task_id)
        if task is None:
            click.echo(f"Task not found: {task_id}", err=True)
            return False
        allowed = status_mod.next_allowed(task.status)
        if not allowed:
            click.echo(f"{task.reference} is already {status_mod.label(task.status)}.", err=True)
            return False
        result = await board.request_status_change(task_id, next(iter(allowed)))
        if result.success:
            _post_task_update(notify, board.get(task_id))
        return result.success

    _run(action)


@main.command("post-summary")
@click.option("--channel", default=None, help="Slack channel (defaults to SOPS_SLACK_CHANNEL)")
def post_summary_cmd(channel):
    """Post your board's status counts to Slack."""
    config = get_config()
    channel = channel or config.slack_channel
    if not channel:
        click.echo("No channel specified and SOPS_SLACK_CHANNEL not set.", err=True)
        sys.exit(1)

    async def action(board: BoardOrchestrator):
        if not await board.load_tasks():
            return False
        blocks = slack_mod.format_board_summary(config.user_name or config.user_id, board.counts())
        try:
            result = slack_mod.send_message(
                config.slack_bot_token, channel, "Board summary", blocks
            )
        except slack_mod.SlackError as e:
            click.echo(f"Error: {e}", err=True)
            return False
        click.echo(f"Summary posted to {result.channel}")
        return True

    _run(action)


# ── Stage Commands ────────────────────────────────────────────────────────────


async def _submit_stage(board, task_id, submission, expected: HandlerKind | None = None) -> bool:
    if not await board.load_tasks():
        return False
    detail = await board.open_task(task_id, refresh=False)
    if expected is not None and detail.descriptor.handler is not expected:
        click.echo(
            f"{detail.task.reference} is a {detail.descriptor.label} task, "
            f"not {expected.value.replace('_', ' ')}.",
            err=True,
        )
        return False
    result = await board.submit_stage(task_id, submission)
    if result.partial:
        click.echo(
            f"  Completed: {', '.join(result.completed_steps)}; failed: {result.failed_step}",
            err=True,
        )
    return result.success


@main.command("pay")
@click.argument("task_id")
@click.argument("amount")
@click.argument("proof", type=click.Path(exists=True, dir_okay=False))
def pay_cmd(task_id, amount, proof):
    """Record a payment with its proof for a payment collection task."""
    submission = StageSubmission(
        fields={"amount": amount},
        documents={"proof": Attachment.from_path(proof)},
    )
    _run(lambda board: _submit_stage(board, task_id, submission, HandlerKind.PAYMENT_COLLECTION))


@main.command("upload")
@click.argument("task_id")
@click.argument("documents", nargs=-1, required=True)
@click.option("--field", "-f", "fields", multiple=True, help="Customer field as KEY=VALUE")
def upload_cmd(task_id, documents, fields):
    """Submit a task's stage documents given as NAME=PATH.

    Repeat a NAME to upload several files under it.
    """
    docs: dict = {}
    for name, path in _parse_pairs(documents, "DOCUMENTS"):
        try:
            attachment = Attachment.from_path(path)
        except OSError as e:
            click.echo(f"Cannot read {path}: {e}", err=True)
            sys.exit(1)
        if name in docs:
            existing = docs[name] if isinstance(docs[name], list) else [docs[name]]
            docs[name] = existing + [attachment]
        else:
            docs[name] = attachment
    submission = StageSubmission(fields=dict(_parse_pairs(fields, "--field")), documents=docs)
    _run(lambda board: _submit_stage(board, task_id, submission))


@main.command("install")
@click.argument("task_id")
@click.option("--date", "install_date", required=True, help="Installation date (YYYY-MM-DD)")
@click.option("--photo-taker", required=True, help="Employee ID of the photo taker")
@click.option("--tech", "techs", multiple=True, help="Internal technician employee ID")
@click.option("--external", "externals", multiple=True, help="External technician name")
@click.option("--assistant", "assistants", multiple=True, help="Technical assistant employee ID")
def install_cmd(task_id, install_date, photo_taker, techs, externals, assistants):
    """Log a plant installation and its crew."""
    technicians = [{"type": "internal", "employee_id": t} for t in techs]
    technicians += [{"type": "external", "name": n} for n in externals]
    submission = StageSubmission(fields={
        "date_of_installation": install_date,
        "photo_taker_employee_id": photo_taker,
        "technicians": technicians,
        "technical_assistants": list(assistants),
    })
    _run(lambda board: _submit_stage(board, task_id, submission, HandlerKind.PLANT_INSTALLATION))


# ── Reassignment Commands ────────────────────────────────────────────────────


@main.command("reassign")
@click.argument("task_id")
@click.argument("employee_id")
def reassign_cmd(task_id, employee_id):
    """Request that a task be handed to another employee."""

    async def action(board: BoardOrchestrator):
        if not await board.load_tasks():
            return False
        directory = EmployeeDirectory(await board.repository.list_employees())
        result = await board.request_reassignment(task_id, employee_id, directory)
        return result.success

    _run(action)


@main.group("approvals")
def approvals_group():
    """Review reassignment requests."""
    pass


@approvals_group.command("list")
def approvals_list():
    """List reassignment requests waiting for a decision."""

    async def action(board: BoardOrchestrator):
        approvals = await board.repository.list_reassignment_approvals()
        if not approvals:
            click.echo("No pending reassignment requests.")
            return True
        for task in approvals:
            click.echo(f"  {task.reference}: {task.title}")
        return True

    _run(action)


def _decide(approval_id: str, decision: str):
    async def action(board: BoardOrchestrator):
        task = await board.repository.get_task(approval_id)
        descriptor = board.registry.resolve(task.work_type)
        if descriptor.handler is not HandlerKind.REASSIGNMENT_APPROVAL:
            click.echo(f"{task.reference} is not a reassignment request.", err=True)
            return False
        handler = build_handler(descriptor, task, board.repository, board.notifier)
        result = await handler.submit(StageSubmission(fields={"action": decision}))
        return result.success

    _run(action)


@approvals_group.command("approve")
@click.argument("approval_id")
def approvals_approve(approval_id):
    """Approve a reassignment request."""
    _decide(approval_id, "approve")


@approvals_group.command("reject")
@click.argument("approval_id")
def approvals_reject(approval_id):
    """Reject a reassignment request."""
    _decide(approval_id, "reject")


# ── Configuration Commands ───────────────────────────────────────────────────


@main.command("work-types")
def work_types_cmd():
    """List the configured work types and their handlers."""
    try:
        registry = get_registry()
    except ConsoleError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    for d in registry.descriptors():
        docs = f" docs: {', '.join(d.required_documents)}" if d.required_documents else ""
        click.echo(f"  {d.key}: {d.label} [{d.handler.value}]{docs}")


# ── Server Commands ──────────────────────────────────────────────────────────


@main.command("init-db")
@click.option("--admin", "admin_name", default=None, help="Create an admin employee with this name")
@click.option("--phone", default=None, help="Admin phone number")
def init_db_cmd(admin_name, phone):
    """Create the server database, optionally with an admin account."""
    config = get_config()
    with _get_db() as db:
        click.echo(f"Database ready: {config.db_path}")
        if admin_name:
            token = secrets.token_urlsafe(24)
            employee = employees_mod.create_employee(db, admin_name, phone, "admin", token)
            click.echo(f"Admin created: {employee.id} ({employee.name})")
            click.echo(f"  Token: {token}")


@main.command("serve")
@click.option("--host", default="127.0.0.1", help="Host to bind to")
@click.option("--port", default=3000, type=int, help="Port to listen on")
def serve_cmd(host, port):
    """Run the reference API server."""
    from solar_ops.web.app import run_server

    click.echo(f"Serving API at http://{host}:{port}/api")
    run_server(host=host, port=port)


# ── Helpers ───────────────────────────────────────────────────────────────────


def _task_dict(task) -> dict:
    return {
        "id": task.id,
        "reference": task.reference,
        "work": task.work,
        "work_type": task.work_type,
        "status": task.status,
        "assigned_to": task.assigned_to_name,
        "assigned_role": task.assigned_role,
        "assigned_on": task.assigned_on.isoformat() if task.assigned_on else None,
        "customer": task.customer_name,
    }


if __name__ == "__main__":
    main()
