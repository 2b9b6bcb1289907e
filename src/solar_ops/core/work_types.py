"""Work-type registry: maps a task's work_type to its stage handler and requirements.

The registry is built once from the built-in table below, optionally overlaid
by a JSON file (``SOPS_WORK_TYPES``) shaped like::

    {
      "warranty_upload": {
        "handler": "document_bundle",
        "label": "Warranty Upload",
        "required_documents": ["warranty_card_document"],
        "document_kind": "warranty"
      }
    }

Resolution never fails: unknown keys get the generic descriptor.
"""

import json
import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from solar_ops.core.errors import WorkTypeConfigError

logger = logging.getLogger(__name__)

REASSIGNMENT_PREFIX = "reassign_task_approval_"


class HandlerKind(str, Enum):
    DATA_GATHERING = "data_gathering"
    PAYMENT_COLLECTION = "payment_collection"
    DOCUMENT_BUNDLE = "document_bundle"
    PLANT_INSTALLATION = "plant_installation"
    CUSTOMER_INFO = "customer_info"
    PAYMENT_REVIEW = "payment_review"
    REASSIGNMENT_APPROVAL = "reassignment_approval"
    GENERIC = "generic"


@dataclass(frozen=True)
class WorkTypeDescriptor:
    key: str
    handler: HandlerKind
    label: str
    required_fields: tuple[str, ...] = ()
    required_documents: tuple[str, ...] = ()
    document_kind: str | None = None
    display_fields: tuple[str, ...] = ()

    @property
    def is_fallback(self) -> bool:
        return self.handler is HandlerKind.GENERIC


FALLBACK = WorkTypeDescriptor(
    key="",
    handler=HandlerKind.GENERIC,
    label="No additional details for this work type",
)

REASSIGNMENT_APPROVAL = WorkTypeDescriptor(
    key=REASSIGNMENT_PREFIX,
    handler=HandlerKind.REASSIGNMENT_APPROVAL,
    label="Task Reassignment Approval",
)

BUILTIN_WORK_TYPES: dict[str, dict] = {
    "customer_data_gathering": {
        "handler": "data_gathering",
        "label": "Customer Data Gathering",
        "required_fields": ["applicant_name", "mobile_number", "district", "plant_size_kw"],
        "required_documents": ["aadhaar_front", "aadhaar_back", "pan_card", "electric_bill"],
    },
    "payment_collection": {
        "handler": "payment_collection",
        "label": "Payment Collection",
        "required_fields": ["amount"],
        "required_documents": ["proof"],
    },
    "finance_registration": {
        "handler": "document_bundle",
        "label": "Finance Registration",
        "required_documents": ["quotation", "approval"],
        "document_kind": "finance",
    },
    "registration_complete": {
        "handler": "document_bundle",
        "label": "Registration Complete",
        "required_documents": [
            "application_form",
            "feasibility_form",
            "etoken_document",
            "net_metering_document",
        ],
        "document_kind": "registration",
    },
    "plant_installation": {
        "handler": "plant_installation",
        "label": "Plant Installation",
        "required_fields": ["date_of_installation", "photo_taker_employee_id"],
    },
    "hard_copy_indent_creation": {
        "handler": "document_bundle",
        "label": "Hard Copy Indent Creation",
        "required_documents": ["indent_document"],
        "document_kind": "indent",
    },
    "bill_generation": {
        "handler": "document_bundle",
        "label": "Bill Generation",
        "required_documents": ["paybill_document"],
        "document_kind": "paybill",
    },
    "warranty_upload": {
        "handler": "document_bundle",
        "label": "Warranty Upload",
        "required_documents": ["warranty_card_document"],
        "document_kind": "warranty",
    },
    "dcr_creation": {
        "handler": "document_bundle",
        "label": "DCR Creation",
        "required_documents": ["dcr_document"],
        "document_kind": "dcr",
    },
    "cot_request": {
        "handler": "customer_info",
        "label": "COT Request",
        "display_fields": ["cot_required", "cot_type"],
    },
    "load_request": {
        "handler": "customer_info",
        "label": "Load Enhancement Request",
        "display_fields": ["load_enhancement_required", "current_load", "required_load"],
    },
    "name_correction_request": {
        "handler": "customer_info",
        "label": "Name Correction Request",
        "display_fields": ["name_correction_required", "correct_name"],
    },
    "inspection": {
        "handler": "customer_info",
        "label": "Inspection",
        "display_fields": ["site_address", "district", "plant_size_kw", "installation_pincode"],
    },
    "subsidy_application": {
        "handler": "customer_info",
        "label": "Subsidy Application",
        "display_fields": ["special_finance_required", "plant_category", "solar_system_type"],
    },
    "payment_approval": {
        "handler": "payment_review",
        "label": "Payment Approval",
    },
}


class WorkTypeRegistry:
    """Read-only lookup from work_type key to descriptor."""

    def __init__(self, descriptors: dict[str, WorkTypeDescriptor]):
        self._descriptors = dict(descriptors)

    def __contains__(self, key: str) -> bool:
        return key in self._descriptors

    def __len__(self) -> int:
        return len(self._descriptors)

    def keys(self) -> list[str]:
        return sorted(self._descriptors)

    def descriptors(self) -> list[WorkTypeDescriptor]:
        return [self._descriptors[k] for k in self.keys()]

    def resolve(self, work_type: str | None) -> WorkTypeDescriptor:
        if not work_type:
            return FALLBACK
        descriptor = self._descriptors.get(work_type)
        if descriptor is not None:
            return descriptor
        if work_type.startswith(REASSIGNMENT_PREFIX):
            return REASSIGNMENT_APPROVAL
        logger.debug("No descriptor for work type %r, using fallback", work_type)
        return FALLBACK


def parse_descriptor(key: str, entry: dict) -> WorkTypeDescriptor:
    """Build a descriptor from one configuration entry."""
    if not isinstance(entry, dict):
        raise WorkTypeConfigError(f"Work type {key!r}: entry must be an object")
    handler_id = entry.get("handler")
    try:
        handler = HandlerKind(handler_id)
    except ValueError:
        raise WorkTypeConfigError(
            f"Work type {key!r}: unknown handler {handler_id!r}"
        ) from None

    document_kind = entry.get("document_kind")
    if handler is HandlerKind.DOCUMENT_BUNDLE and not document_kind:
        raise WorkTypeConfigError(f"Work type {key!r}: document_kind is required")

    return WorkTypeDescriptor(
        key=key,
        handler=handler,
        label=entry.get("label") or key.replace("_", " ").title(),
        required_fields=tuple(entry.get("required_fields") or ()),
        required_documents=tuple(entry.get("required_documents") or ()),
        document_kind=document_kind,
        display_fields=tuple(entry.get("display_fields") or ()),
    )


def load_registry(path: Path | None = None) -> WorkTypeRegistry:
    """Build the registry from the built-in table plus an optional JSON overlay."""
    table = dict(BUILTIN_WORK_TYPES)
    if path is not None:
        try:
            overlay = json.loads(Path(path).read_text())
        except (OSError, json.JSONDecodeError) as e:
            raise WorkTypeConfigError(f"Cannot read work types from {path}: {e}") from e
        if not isinstance(overlay, dict):
            raise WorkTypeConfigError(f"{path}: expected a mapping of work types")
        table.update(overlay)

    registry = WorkTypeRegistry({key: parse_descriptor(key, entry) for key, entry in table.items()})
    logger.info("Loaded %d work types", len(registry))
    return registry


_registry: WorkTypeRegistry | None = None


def get_registry() -> WorkTypeRegistry:
    """Process-wide registry, loaded on first use from configuration."""
    global _registry
    if _registry is None:
        from solar_ops.config import get_config

        _registry = load_registry(get_config().work_types_path)
    return _registry
