"""Tests for the board orchestrator."""

import asyncio
from unittest.mock import AsyncMock

import pytest

from solar_ops.core.board import BoardOrchestrator
from solar_ops.core.errors import ConflictError, NetworkError, TaskNotFoundError
from solar_ops.core.notifications import ERROR, SUCCESS, WARNING, CollectingNotifier
from solar_ops.core.stages import DocumentBundleHandler, GenericHandler
from solar_ops.core.status import COMPLETED, IN_PROGRESS, PENDING
from solar_ops.core.work_types import load_registry
from solar_ops.db.models import (
    Attachment,
    AuthContext,
    CustomerSnapshot,
    Employee,
    EmployeeDirectory,
    Result,
    StageSubmission,
    Task,
)

AUTH = AuthContext(user_id="5", token="t0k", role="field", name="Asha", phone_number="98450")


def make_task(task_id, status=PENDING, work_type="bill_generation", **kwargs) -> Task:
    return Task(id=task_id, status=status, work_type=work_type, **kwargs)


@pytest.fixture
def repo():
    repo = AsyncMock()
    repo.list_by_assignee.return_value = [
        make_task("1", PENDING, "bill_generation", assigned_to_id="5"),
        make_task("2", IN_PROGRESS, "warranty_upload", assigned_to_id="5"),
        make_task("3", COMPLETED, "bill_generation", assigned_to_id="5"),
        make_task("4", PENDING, "inspection", assigned_to_id="5"),
    ]
    repo.update_status.return_value = Result.ok()
    return repo


@pytest.fixture
def notifier():
    return CollectingNotifier()


@pytest.fixture
def board(repo, notifier):
    return BoardOrchestrator(repo, AUTH, notifier, registry=load_registry())


class TestLoadTasks:
    @pytest.mark.asyncio
    async def test_groups_by_status(self, board, repo):
        assert await board.load_tasks() is True
        repo.list_by_assignee.assert_awaited_once_with("5")
        buckets = board.buckets()
        assert [t.id for t in buckets[PENDING]] == ["1", "4"]
        assert [t.id for t in buckets[IN_PROGRESS]] == ["2"]
        assert [t.id for t in buckets[COMPLETED]] == ["3"]

    @pytest.mark.asyncio
    async def test_buckets_partition_filtered_set(self, board):
        await board.load_tasks()
        buckets = board.buckets("bill_generation")
        ids = [t.id for tasks in buckets.values() for t in tasks]
        assert sorted(ids) == ["1", "3"]
        assert len(ids) == len(set(ids))
        assert board.counts("bill_generation") == {PENDING: 1, IN_PROGRESS: 0, COMPLETED: 1}

    @pytest.mark.asyncio
    async def test_repeated_id_keeps_one_slot(self, board, repo):
        repo.list_by_assignee.return_value = [
            make_task("1", PENDING),
            make_task("2", PENDING),
            make_task("1", IN_PROGRESS),
        ]
        await board.load_tasks()
        buckets = board.buckets()
        assert [t.id for t in buckets[PENDING]] == ["2"]
        assert [t.id for t in buckets[IN_PROGRESS]] == ["1"]
        assert len(board.tasks) == 2

        await board.request_status_change("1", COMPLETED)
        assert [t.id for t in board.buckets()[IN_PROGRESS]] == []
        assert [t.id for t in board.buckets()[COMPLETED]] == ["1"]

    @pytest.mark.asyncio
    async def test_work_types(self, board):
        await board.load_tasks()
        assert board.work_types() == ["bill_generation", "inspection", "warranty_upload"]

    @pytest.mark.asyncio
    async def test_failure_keeps_previous_list(self, board, repo, notifier):
        await board.load_tasks()
        repo.list_by_assignee.side_effect = NetworkError("down")
        assert await board.load_tasks() is False
        assert len(board.tasks) == 4
        assert notifier.of_level(ERROR)[0].message == "Failed to load tasks: down"

    @pytest.mark.asyncio
    async def test_stale_response_is_discarded(self, board, repo):
        gate = asyncio.Event()
        calls = 0

        async def list_by_assignee(user_id):
            nonlocal calls
            calls += 1
            if calls == 1:
                await gate.wait()
                return [make_task("old")]
            return [make_task("new")]

        repo.list_by_assignee.side_effect = list_by_assignee
        slow = asyncio.create_task(board.load_tasks())
        await asyncio.sleep(0)
        assert await board.load_tasks() is True
        gate.set()
        assert await slow is False
        assert [t.id for t in board.tasks] == ["new"]


class TestRequestStatusChange:
    @pytest.mark.asyncio
    async def test_success_moves_task(self, board, repo, notifier):
        await board.load_tasks()
        result = await board.request_status_change("1", IN_PROGRESS)

        assert result.success
        assert board.get("1").status == IN_PROGRESS
        repo.update_status.assert_awaited_once_with("1", IN_PROGRESS)
        successes = notifier.of_level(SUCCESS)
        assert len(successes) == 1
        assert "In Progress" in successes[0].message

    @pytest.mark.asyncio
    async def test_moved_task_goes_to_end_of_bucket(self, board):
        await board.load_tasks()
        await board.request_status_change("1", IN_PROGRESS)
        assert [t.id for t in board.buckets()[IN_PROGRESS]] == ["2", "1"]
        assert [t.id for t in board.buckets()[PENDING]] == ["4"]

    @pytest.mark.asyncio
    async def test_server_refusal_keeps_status(self, board, repo, notifier):
        await board.load_tasks()
        repo.update_status.return_value = Result.failed("locked")
        result = await board.request_status_change("2", COMPLETED)

        assert not result.success
        assert board.get("2").status == IN_PROGRESS
        errors = notifier.of_level(ERROR)
        assert len(errors) == 1
        assert "locked" in errors[0].message
        assert errors[0].duration_ms == 5000

    @pytest.mark.asyncio
    async def test_refusal_without_message(self, board, repo, notifier):
        await board.load_tasks()
        repo.update_status.return_value = Result(success=False)
        await board.request_status_change("1", IN_PROGRESS)
        assert notifier.of_level(ERROR)[0].message == "Failed to update task status"

    @pytest.mark.asyncio
    async def test_illegal_transition_has_no_side_effects(self, board, repo, notifier):
        await board.load_tasks()
        before = {s: [t.id for t in ts] for s, ts in board.buckets().items()}
        result = await board.request_status_change("1", COMPLETED)

        assert not result.success
        repo.update_status.assert_not_awaited()
        assert {s: [t.id for t in ts] for s, ts in board.buckets().items()} == before
        warning = notifier.of_level(WARNING)[0]
        assert "unidirectional" in warning.message
        assert warning.duration_ms == 6000

    @pytest.mark.asyncio
    async def test_backward_from_completed_is_rejected(self, board, repo):
        await board.load_tasks()
        result = await board.request_status_change("3", PENDING)
        assert not result.success
        repo.update_status.assert_not_awaited()
        assert board.get("3").status == COMPLETED

    @pytest.mark.asyncio
    async def test_same_status_is_noop(self, board, repo, notifier):
        await board.load_tasks()
        result = await board.request_status_change("2", IN_PROGRESS)
        assert result.success
        repo.update_status.assert_not_awaited()
        assert notifier.notifications == []

    @pytest.mark.asyncio
    async def test_unknown_task_raises(self, board):
        await board.load_tasks()
        with pytest.raises(TaskNotFoundError):
            await board.request_status_change("99", IN_PROGRESS)

    @pytest.mark.asyncio
    async def test_accepts_wire_spelling(self, board, repo):
        await board.load_tasks()
        await board.request_status_change("1", "inprogress")
        repo.update_status.assert_awaited_once_with("1", IN_PROGRESS)

    @pytest.mark.asyncio
    async def test_overlapping_request_is_rejected(self, board, repo, notifier):
        await board.load_tasks()
        gate = asyncio.Event()

        async def update_status(task_id, new_status):
            await gate.wait()
            return Result.ok()

        repo.update_status.side_effect = update_status
        first = asyncio.create_task(board.request_status_change("1", IN_PROGRESS))
        await asyncio.sleep(0)
        second = await board.request_status_change("1", IN_PROGRESS)
        gate.set()
        assert (await first).success

        assert not second.success
        assert "already being updated" in second.message
        assert repo.update_status.await_count == 1

    @pytest.mark.asyncio
    async def test_conflict_is_not_retried(self, board, repo, notifier):
        await board.load_tasks()
        repo.update_status.side_effect = ConflictError("Task was moved elsewhere", 409)
        result = await board.request_status_change("1", IN_PROGRESS)

        assert not result.success
        assert repo.update_status.await_count == 1
        assert board.get("1").status == PENDING
        assert notifier.of_level(ERROR)[0].message == "Task was moved elsewhere"

    @pytest.mark.asyncio
    async def test_network_error(self, board, repo, notifier):
        await board.load_tasks()
        repo.update_status.side_effect = NetworkError("timeout")
        await board.request_status_change("1", IN_PROGRESS)
        assert notifier.of_level(ERROR)[0].message == "Network error: Could not update task"
        assert board.get("1").status == PENDING


class TestOpenTask:
    @pytest.mark.asyncio
    async def test_refresh_and_dispatch(self, board, repo):
        await board.load_tasks()
        repo.get_task.return_value = make_task(
            "1", PENDING, "bill_generation", customer=CustomerSnapshot({"id": 7})
        )
        detail = await board.open_task("1")

        assert isinstance(detail.handler, DocumentBundleHandler)
        assert detail.task.customer.id == 7
        assert board.get("1").customer.id == 7

    @pytest.mark.asyncio
    async def test_unknown_work_type_uses_generic(self, board, repo):
        repo.list_by_assignee.return_value = [make_task("9", work_type="mystery")]
        await board.load_tasks()
        detail = await board.open_task("9", refresh=False)
        assert isinstance(detail.handler, GenericHandler)
        assert detail.summary() == {"notice": "No additional details for this work type"}

    @pytest.mark.asyncio
    async def test_refresh_failure_uses_local_copy(self, board, repo, notifier):
        await board.load_tasks()
        repo.get_task.side_effect = NetworkError("down")
        detail = await board.open_task("2")
        assert detail.task.id == "2"
        assert notifier.of_level(WARNING)


class TestSubmitStage:
    @pytest.mark.asyncio
    async def test_success_refetches_task_in_place(self, board, repo):
        repo.list_by_assignee.return_value = [
            make_task("1", PENDING, "bill_generation", customer=CustomerSnapshot({"id": 7})),
            make_task("4", PENDING, "inspection"),
        ]
        await board.load_tasks()
        repo.submit_stage_documents.return_value = Result.ok()
        repo.get_task.return_value = make_task(
            "1", PENDING, "bill_generation",
            customer=CustomerSnapshot({"id": 7, "paybill_document_url": "/uploads/7/paybill/b.pdf"}),
        )
        bill = Attachment("bill.pdf", b"%PDF", "application/pdf")

        result = await board.submit_stage("1", StageSubmission(documents={"paybill_document": bill}))

        assert result.success
        repo.submit_stage_documents.assert_awaited_once_with(7, "paybill", {"paybill_document": bill})
        assert [t.id for t in board.buckets()[PENDING]] == ["1", "4"]
        assert board.get("1").customer.document_url("paybill_document") == "/uploads/7/paybill/b.pdf"

    @pytest.mark.asyncio
    async def test_overlapping_submission_is_rejected(self, board, repo, notifier):
        repo.list_by_assignee.return_value = [
            make_task("1", PENDING, "bill_generation", customer=CustomerSnapshot({"id": 7})),
        ]
        await board.load_tasks()
        repo.get_task.return_value = board.get("1")
        gate = asyncio.Event()

        async def submit_stage_documents(customer_id, kind, documents):
            await gate.wait()
            return Result.ok()

        repo.submit_stage_documents.side_effect = submit_stage_documents
        bill = Attachment("bill.pdf", b"%PDF", "application/pdf")
        submission = StageSubmission(documents={"paybill_document": bill})

        first = asyncio.create_task(board.submit_stage("1", submission))
        await asyncio.sleep(0)
        second = await board.submit_stage("1", submission)
        gate.set()
        assert (await first).success

        assert not second.success
        assert "already has a submission in progress" in second.message
        assert repo.submit_stage_documents.await_count == 1
        assert (await board.submit_stage("1", submission)).success

    @pytest.mark.asyncio
    async def test_validation_failure_skips_network(self, board, repo):
        await board.load_tasks()
        result = await board.submit_stage("1", StageSubmission())
        assert not result.success
        repo.submit_stage_documents.assert_not_awaited()
        repo.get_task.assert_not_awaited()


class TestRequestReassignment:
    @pytest.fixture
    def directory(self):
        return EmployeeDirectory([
            Employee("5", "Asha", "98450", "field"),
            Employee("6", "Ravi", "98451", "field"),
        ])

    @pytest.mark.asyncio
    async def test_creates_request_without_touching_task(self, board, repo, directory, notifier):
        await board.load_tasks()
        repo.create_reassignment_request.return_value = Result.ok()
        result = await board.request_reassignment("1", "6", directory)

        assert result.success
        task = board.get("1")
        repo.create_reassignment_request.assert_awaited_once_with(task, AUTH, directory.get("6"))
        assert task.assigned_to_id == "5"
        assert notifier.of_level(SUCCESS)

    @pytest.mark.asyncio
    async def test_same_assignee_rejected(self, board, repo, directory):
        await board.load_tasks()
        result = await board.request_reassignment("1", "5", directory)
        assert not result.success
        repo.create_reassignment_request.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unknown_employee_rejected(self, board, repo, directory):
        await board.load_tasks()
        result = await board.request_reassignment("1", "77", directory)
        assert "Employee not found" in result.message
        repo.create_reassignment_request.assert_not_awaited()
