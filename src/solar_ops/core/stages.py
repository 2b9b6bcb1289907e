"""Stage handlers: per-work-type validation and submission.

Each handler checks its own inputs locally, then submits them in a single
request through the repository. Handlers read the task and its customer
snapshot but never touch the board's task list.
"""

import logging
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Any

from solar_ops.core.errors import RepositoryError, ValidationError
from solar_ops.core.notifications import ERROR, SUCCESS, WARNING, LogNotifier, Notifier
from solar_ops.core.work_types import HandlerKind, WorkTypeDescriptor
from solar_ops.db.models import Attachment, CustomerSnapshot, Result, StageSubmission, Task

logger = logging.getLogger(__name__)

MAX_CREW = 10
REASSIGNMENT_ACTIONS = ("approve", "reject")


def _has_document(value: Any) -> bool:
    if isinstance(value, list):
        return bool(value) and all(isinstance(a, Attachment) for a in value)
    return isinstance(value, Attachment)


def _humanize(name: str) -> str:
    return name.replace("_", " ").capitalize()


class StageHandler:
    """Base handler. Subclasses implement validate() and _send()."""

    kind = HandlerKind.GENERIC
    submittable = True

    def __init__(
        self,
        descriptor: WorkTypeDescriptor,
        task: Task,
        repository,
        notifier: Notifier | None = None,
    ):
        self.descriptor = descriptor
        self.task = task
        self.repository = repository
        self.notifier = notifier or LogNotifier()

    @property
    def customer(self) -> CustomerSnapshot:
        return self.task.customer or CustomerSnapshot()

    def customer_id(self) -> int:
        cid = self.customer.id or self.task.registered_customer_id
        if not cid:
            raise ValidationError("Customer ID not found")
        return cid

    def summary(self) -> dict[str, Any]:
        return {"work_type": self.descriptor.label}

    def validate(self, submission: StageSubmission) -> None:
        if not self.submittable:
            raise ValidationError(f"Nothing to submit for {self.descriptor.label}")
        self.require_descriptor_inputs(submission)

    def require_descriptor_inputs(self, submission: StageSubmission) -> None:
        """Check the required fields and documents named by the descriptor."""
        missing_fields = [
            f for f in self.descriptor.required_fields
            if submission.fields.get(f) in (None, "")
        ]
        if missing_fields:
            raise ValidationError(
                f"Missing required fields: {', '.join(missing_fields)}"
            )
        missing_docs = [
            d for d in self.descriptor.required_documents
            if not _has_document(submission.documents.get(d))
        ]
        if len(missing_docs) == 1 and len(self.descriptor.required_documents) == 1:
            raise ValidationError(f"{_humanize(missing_docs[0])} is required")
        if missing_docs:
            raise ValidationError(
                f"All {len(self.descriptor.required_documents)} documents are required "
                f"(missing: {', '.join(missing_docs)})"
            )

    async def _send(self, submission: StageSubmission) -> Result:
        raise NotImplementedError

    async def submit(self, submission: StageSubmission) -> Result:
        """Validate locally, then submit. Never raises for remote failures."""
        try:
            self.validate(submission)
        except ValidationError as e:
            self.notifier.notify(str(e), WARNING)
            return Result.failed(str(e))

        try:
            result = await self._send(submission)
        except RepositoryError as e:
            logger.warning(
                "%s submission for task %s failed: %s", self.kind.value, self.task.id, e
            )
            result = Result.failed(e.message)

        if result.success:
            self.notifier.notify(result.message or "Saved successfully", SUCCESS)
        else:
            self.notifier.notify(result.message or "Submission failed", ERROR, 5000)
        return result


class GenericHandler(StageHandler):
    kind = HandlerKind.GENERIC
    submittable = False

    def summary(self) -> dict[str, Any]:
        return {"notice": "No additional details for this work type"}


class CustomerInfoHandler(StageHandler):
    """Shows the customer attributes relevant to a request-type stage."""

    kind = HandlerKind.CUSTOMER_INFO
    submittable = False

    def summary(self) -> dict[str, Any]:
        return {
            "work_type": self.descriptor.label,
            **{f: self.customer.get(f) for f in self.descriptor.display_fields},
        }


class PaymentReviewHandler(StageHandler):
    kind = HandlerKind.PAYMENT_REVIEW
    submittable = False

    def summary(self) -> dict[str, Any]:
        c = self.customer
        return {
            "work_type": self.descriptor.label,
            "total_price": c.plant_price,
            "paid_amount": c.paid_amount,
            "remaining_amount": c.remaining_amount,
            "payments": c.payments,
        }


class PaymentCollectionHandler(StageHandler):
    """Records a payment together with its proof of payment."""

    kind = HandlerKind.PAYMENT_COLLECTION

    @property
    def remaining(self) -> Decimal:
        return self.customer.plant_price - self.customer.paid_amount

    def summary(self) -> dict[str, Any]:
        return {
            "work_type": self.descriptor.label,
            "total_price": self.customer.plant_price,
            "paid_amount": self.customer.paid_amount,
            "remaining_amount": self.remaining,
        }

    @staticmethod
    def parse_amount(raw: Any) -> Decimal | None:
        if raw in (None, ""):
            return None
        try:
            amount = Decimal(str(raw))
        except InvalidOperation:
            return None
        return amount if amount.is_finite() else None

    def validate(self, submission: StageSubmission) -> None:
        amount = self.parse_amount(submission.fields.get("amount"))
        if amount is None or amount <= 0:
            raise ValidationError("Please enter a valid amount")
        if not _has_document(submission.documents.get("proof")):
            raise ValidationError("Please upload payment proof")
        if amount > self.remaining:
            raise ValidationError(
                f"Amount cannot exceed remaining amount (₹{self.remaining:,})"
            )
        self.require_descriptor_inputs(submission)
        self.customer_id()

    async def _send(self, submission: StageSubmission) -> Result:
        amount = self.parse_amount(submission.fields["amount"])
        proof = submission.documents["proof"]
        if isinstance(proof, list):
            proof = proof[0]
        result = await self.repository.record_payment(self.customer_id(), amount, proof)
        if result.success and not result.message:
            result.message = "Payment recorded successfully!"
        return result


class DocumentBundleHandler(StageHandler):
    """Uploads a stage's whole document set in one request."""

    kind = HandlerKind.DOCUMENT_BUNDLE

    def summary(self) -> dict[str, Any]:
        return {
            "work_type": self.descriptor.label,
            "documents": {
                d: self.customer.document_url(d) for d in self.descriptor.required_documents
            },
        }

    def validate(self, submission: StageSubmission) -> None:
        super().validate(submission)
        self.customer_id()

    async def _send(self, submission: StageSubmission) -> Result:
        documents = {k: v for k, v in submission.documents.items() if _has_document(v)}
        result = await self.repository.submit_stage_documents(
            self.customer_id(), self.descriptor.document_kind, documents
        )
        if result.success and not result.message:
            result.message = f"{self.descriptor.label} documents uploaded successfully"
        return result


class PlantInstallationHandler(StageHandler):
    """Logs the installation date and the crew that did the work.

    Technicians are dicts ``{"type": "internal", "employee_id": ...}`` or
    ``{"type": "external", "name": ...}``; technical assistants are employee
    ids. The photo taker must be one of the selected internal crew.
    """

    kind = HandlerKind.PLANT_INSTALLATION

    def summary(self) -> dict[str, Any]:
        c = self.customer
        return {
            "work_type": self.descriptor.label,
            "plant_size_kw": c.get("plant_size_kw"),
            "solar_plant_type": c.get("solar_plant_type"),
            "site_address": c.get("site_address"),
            "installation_date_feasible": c.get("installation_date_feasible"),
        }

    def validate(self, submission: StageSubmission) -> None:
        f = submission.fields
        raw_date = f.get("date_of_installation")
        if not raw_date:
            raise ValidationError("Installation date is required")
        try:
            date.fromisoformat(str(raw_date))
        except ValueError:
            raise ValidationError(f"Invalid installation date: {raw_date}") from None
        if not f.get("photo_taker_employee_id"):
            raise ValidationError("Photo taker must be selected")

        technicians = f.get("technicians") or []
        assistants = f.get("technical_assistants") or []
        if len(technicians) > MAX_CREW or len(assistants) > MAX_CREW:
            raise ValidationError(f"At most {MAX_CREW} technicians and {MAX_CREW} assistants")

        for i, tech in enumerate(technicians, start=1):
            if tech.get("type", "internal") == "internal":
                if not tech.get("employee_id"):
                    raise ValidationError(f"Please select employee for technician {i}")
            elif tech.get("type") == "external":
                if not tech.get("name"):
                    raise ValidationError(f"Please provide name for external technician {i}")
            else:
                raise ValidationError(f"Unknown technician type: {tech.get('type')}")

        for i, assistant in enumerate(assistants, start=1):
            if not assistant:
                raise ValidationError(f"Please select technical assistant {i}")

        crew = self._internal_crew(technicians, assistants)
        if str(f["photo_taker_employee_id"]) not in crew:
            raise ValidationError("Photo taker must be one of the selected crew")

        self.require_descriptor_inputs(submission)
        self.customer_id()

    @staticmethod
    def _internal_crew(technicians: list[dict], assistants: list) -> set[str]:
        ids = {
            str(t["employee_id"]) for t in technicians
            if t.get("type", "internal") == "internal" and t.get("employee_id")
        }
        return ids | {str(a) for a in assistants if a}

    async def _send(self, submission: StageSubmission) -> Result:
        f = submission.fields
        technicians = f.get("technicians") or []
        details = {
            "date_of_installation": str(f["date_of_installation"]),
            "internal_technician": [
                t["employee_id"] for t in technicians if t.get("type", "internal") == "internal"
            ],
            "external_technician": [
                {"name": t["name"]} for t in technicians if t.get("type") == "external"
            ],
            "technical_assistant_ids": list(f.get("technical_assistants") or []),
            "photo_taker_employee_id": f["photo_taker_employee_id"],
        }
        result = await self.repository.record_installation(self.customer_id(), details)
        if result.success and not result.message:
            result.message = "Plant installation details saved successfully!"
        return result


class DataGatheringHandler(StageHandler):
    """Saves customer details, then uploads the customer's documents.

    The two steps are separate requests. If the upload fails after the details
    were saved, the result names the failed step so only the upload is retried.
    """

    kind = HandlerKind.DATA_GATHERING

    def summary(self) -> dict[str, Any]:
        return {
            "work_type": self.descriptor.label,
            "fields": {f: self.customer.get(f) for f in self.descriptor.required_fields},
            "documents": {
                d: self.customer.document_url(d) for d in self.descriptor.required_documents
            },
        }

    def validate(self, submission: StageSubmission) -> None:
        super().validate(submission)
        self.customer_id()

    async def _send(self, submission: StageSubmission) -> Result:
        cid = self.customer_id()
        saved = await self.repository.update_customer(cid, dict(submission.fields))
        if not saved.success:
            saved.failed_step = "fields"
            return saved

        documents = {k: v for k, v in submission.documents.items() if _has_document(v)}
        if not documents:
            return Result.ok("Customer details saved")

        try:
            uploaded = await self.repository.upload_customer_documents(cid, documents)
        except RepositoryError as e:
            uploaded = Result.failed(e.message)
        if not uploaded.success:
            return Result(
                success=False,
                message=f"Customer details saved, but document upload failed: {uploaded.message}",
                completed_steps=["fields"],
                failed_step="documents",
            )
        return Result.ok("Customer details and documents saved", data=uploaded.data)


class ReassignmentApprovalHandler(StageHandler):
    kind = HandlerKind.REASSIGNMENT_APPROVAL

    def summary(self) -> dict[str, Any]:
        return {
            "work_type": self.descriptor.label,
            "request": self.task.work,
            "source_task_id": self.task.reassign_source_task_id,
            "target_employee_id": self.task.reassign_target_id,
            "resolution": self.task.resolution,
        }

    def validate(self, submission: StageSubmission) -> None:
        action = submission.fields.get("action")
        if action not in REASSIGNMENT_ACTIONS:
            raise ValidationError("Action must be 'approve' or 'reject'")
        if self.task.resolution:
            raise ValidationError(f"This request was already {self.task.resolution}")

    async def _send(self, submission: StageSubmission) -> Result:
        action = submission.fields["action"]
        result = await self.repository.act_on_reassignment(self.task.id, action)
        if result.success and not result.message:
            result.message = (
                "Task reassignment approved successfully"
                if action == "approve"
                else "Task reassignment rejected"
            )
        return result


HANDLERS: dict[HandlerKind, type[StageHandler]] = {
    HandlerKind.DATA_GATHERING: DataGatheringHandler,
    HandlerKind.PAYMENT_COLLECTION: PaymentCollectionHandler,
    HandlerKind.DOCUMENT_BUNDLE: DocumentBundleHandler,
    HandlerKind.PLANT_INSTALLATION: PlantInstallationHandler,
    HandlerKind.CUSTOMER_INFO: CustomerInfoHandler,
    HandlerKind.PAYMENT_REVIEW: PaymentReviewHandler,
    HandlerKind.REASSIGNMENT_APPROVAL: ReassignmentApprovalHandler,
    HandlerKind.GENERIC: GenericHandler,
}


def build_handler(
    descriptor: WorkTypeDescriptor,
    task: Task,
    repository,
    notifier: Notifier | None = None,
) -> StageHandler:
    handler_cls = HANDLERS.get(descriptor.handler, GenericHandler)
    return handler_cls(descriptor, task, repository, notifier)
