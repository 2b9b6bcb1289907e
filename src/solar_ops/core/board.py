"""Board orchestrator: owns the session's task list and mediates status changes.

Tasks are grouped into one column per status. Column order is insertion
order; a task that changes status is appended to the end of its new column.
Local state changes only after the server confirms a mutation.
"""

import dataclasses
import logging
from dataclasses import dataclass

from solar_ops.core import status as status_mod
from solar_ops.core.errors import (
    ConflictError,
    NetworkError,
    RepositoryError,
    TaskNotFoundError,
    ValidationError,
)
from solar_ops.core.notifications import ERROR, SUCCESS, WARNING, LogNotifier, Notifier
from solar_ops.core.stages import StageHandler, build_handler
from solar_ops.core.work_types import WorkTypeDescriptor, WorkTypeRegistry, get_registry
from solar_ops.db.models import AuthContext, EmployeeDirectory, Result, StageSubmission, Task

logger = logging.getLogger(__name__)

ILLEGAL_TRANSITION_MS = 6000
FAILURE_MS = 5000


@dataclass
class TaskDetail:
    task: Task
    descriptor: WorkTypeDescriptor
    handler: StageHandler

    def summary(self) -> dict:
        return self.handler.summary()


class BoardOrchestrator:
    """Single owner of the task list for one signed-in user.

    Usage:
        board = BoardOrchestrator(repository, auth, notifier)
        await board.load_tasks()
        await board.request_status_change("42", "in-progress")
    """

    def __init__(
        self,
        repository,
        auth: AuthContext,
        notifier: Notifier | None = None,
        registry: WorkTypeRegistry | None = None,
    ):
        self.repository = repository
        self.auth = auth
        self.notifier = notifier or LogNotifier()
        self.registry = registry or get_registry()
        self._tasks: dict[str, Task] = {}
        self._columns: dict[str, list[str]] = {s: [] for s in status_mod.STATUSES}
        self._latest_request = 0
        self._in_flight: set[str] = set()
        self._submitting: set[str] = set()

    # ── Task list ─────────────────────────────────────────────────────────────

    @property
    def tasks(self) -> list[Task]:
        return [self._tasks[tid] for s in status_mod.STATUSES for tid in self._columns[s]]

    def get(self, task_id: str) -> Task | None:
        return self._tasks.get(str(task_id))

    def _require(self, task_id: str) -> Task:
        task = self.get(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        return task

    async def load_tasks(self) -> bool:
        """Fetch the assignee's tasks and replace the list.

        Returns False when the fetch failed or a newer fetch was issued while
        this one was outstanding; the previous list is kept in both cases.
        """
        self._latest_request += 1
        request_id = self._latest_request
        try:
            tasks = await self.repository.list_by_assignee(self.auth.user_id)
        except RepositoryError as e:
            if request_id != self._latest_request:
                logger.info("Ignoring failure of superseded task fetch #%d: %s", request_id, e)
                return False
            logger.warning("Failed to load tasks: %s", e)
            self.notifier.notify(f"Failed to load tasks: {e.message}", ERROR, FAILURE_MS)
            return False

        if request_id != self._latest_request:
            logger.info(
                "Discarding stale task list from fetch #%d (latest is #%d)",
                request_id,
                self._latest_request,
            )
            return False

        self._tasks = {}
        self._columns = {s: [] for s in status_mod.STATUSES}
        # a repeated id keeps one slot; the last row wins
        for task in tasks:
            self._place(task)
        logger.debug("Loaded %d tasks for %s", len(self._tasks), self.auth.user_id)
        return True

    def buckets(self, work_type: str | None = None) -> dict[str, list[Task]]:
        """Tasks grouped by status, optionally restricted to one work type."""
        return {
            s: [
                self._tasks[tid]
                for tid in self._columns[s]
                if work_type is None or self._tasks[tid].work_type == work_type
            ]
            for s in status_mod.STATUSES
        }

    def counts(self, work_type: str | None = None) -> dict[str, int]:
        return {s: len(tasks) for s, tasks in self.buckets(work_type).items()}

    def work_types(self) -> list[str]:
        return sorted({t.work_type for t in self._tasks.values() if t.work_type})

    def _place(self, task: Task) -> Task:
        """Store a task, moving it to the end of its column if its status changed."""
        previous = self._tasks.get(task.id)
        self._tasks[task.id] = task
        if previous is not None and previous.status == task.status:
            return task
        for column in self._columns.values():
            if task.id in column:
                column.remove(task.id)
        self._columns[task.status].append(task.id)
        return task

    # ── Status changes ────────────────────────────────────────────────────────

    async def request_status_change(self, task_id: str, new_status: str) -> Result:
        task = self._require(task_id)
        try:
            new_status = status_mod.normalize_status(new_status)
        except ValueError as e:
            raise ValidationError(str(e)) from None

        current = task.status
        if not status_mod.can_transition(current, new_status):
            message = status_mod.explain_rejection(current, new_status)
            logger.info("Rejected move of %s: %s -> %s", task.reference, current, new_status)
            self.notifier.notify(message, WARNING, ILLEGAL_TRANSITION_MS)
            return Result.failed(message)

        if current == new_status:
            return Result.ok()

        if task.id in self._in_flight:
            message = f"{task.reference} is already being updated"
            self.notifier.notify(message, WARNING)
            return Result.failed(message)

        self._in_flight.add(task.id)
        try:
            result = await self.repository.update_status(task.id, new_status)
        except ConflictError as e:
            logger.warning("Server rejected move of %s: %s", task.reference, e)
            message = e.message
        except NetworkError as e:
            logger.warning("Network error moving %s: %s", task.reference, e)
            message = "Network error: Could not update task"
        except RepositoryError as e:
            logger.warning("Failed to move %s: %s", task.reference, e)
            message = e.message
        else:
            if result.success:
                # the list may have been reloaded while the request was outstanding
                latest = self._tasks.get(task.id)
                if latest is not None:
                    self._place(dataclasses.replace(latest, status=new_status))
                self.notifier.notify(f"Task moved to {status_mod.label(new_status)}", SUCCESS)
                return result
            message = result.message or "Failed to update task status"
        finally:
            self._in_flight.discard(task.id)

        self.notifier.notify(message, ERROR, FAILURE_MS)
        return Result.failed(message)

    # ── Task detail & stage submissions ───────────────────────────────────────

    async def open_task(self, task_id: str, refresh: bool = True) -> TaskDetail:
        """Resolve the stage handler for a task, refreshing it from the server first."""
        task = self._require(task_id)
        if refresh:
            task = await self._refresh(task)
        descriptor = self.registry.resolve(task.work_type)
        handler = build_handler(descriptor, task, self.repository, self.notifier)
        return TaskDetail(task=task, descriptor=descriptor, handler=handler)

    async def _refresh(self, task: Task) -> Task:
        try:
            fresh = await self.repository.get_task(task.id)
        except RepositoryError as e:
            logger.warning("Could not refresh %s: %s", task.reference, e)
            self.notifier.notify(f"Could not refresh task: {e.message}", WARNING)
            return task
        return self._place(fresh)

    async def submit_stage(self, task_id: str, submission: StageSubmission) -> Result:
        detail = await self.open_task(task_id, refresh=False)
        if detail.task.id in self._submitting:
            message = f"{detail.task.reference} already has a submission in progress"
            self.notifier.notify(message, WARNING)
            return Result.failed(message)

        self._submitting.add(detail.task.id)
        try:
            result = await detail.handler.submit(submission)
        finally:
            self._submitting.discard(detail.task.id)
        if result.success or result.partial:
            await self._refresh(detail.task)
        return result

    async def request_reassignment(
        self, task_id: str, target_employee_id: str, directory: EmployeeDirectory
    ) -> Result:
        """Ask for a task to be handed to another employee.

        Creates an approval task; the task itself keeps its assignee until the
        request is approved.
        """
        task = self._require(task_id)
        target = directory.get(target_employee_id)
        if target is None:
            message = f"Employee not found: {target_employee_id}"
        elif target.id == task.assigned_to_id:
            message = f"{task.reference} is already assigned to {target.name}"
        else:
            message = None
        if message:
            self.notifier.notify(message, WARNING)
            return Result.failed(message)

        try:
            result = await self.repository.create_reassignment_request(task, self.auth, target)
        except RepositoryError as e:
            logger.warning("Reassignment request for %s failed: %s", task.reference, e)
            result = Result.failed(e.message)

        if result.success:
            self.notifier.notify("Reassignment request sent for approval", SUCCESS)
        else:
            self.notifier.notify(
                result.message or "Failed to request reassignment", ERROR, FAILURE_MS
            )
        return result
