"""
Domain entities for the work-breakdown progress engine and the
proposal → invoice lifecycle.

Ownership:
    Project / ChangeOrder  →  WorkBreakdown  →  WorkItem  →  WorkDescription

A WorkBreakdown is the same shape for both owners and is tagged with
``owner_kind`` so the progress aggregator, the pricing calculator and the
step tree store can run against either.

Statuses are ``str`` enums so entities serialise straight to JSON and compare
equal to the raw strings stored by the persistence layer.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from bluecrew.utils.helpers import coerce_number, iso


# ═════════════════════════════════════════════════════════════════════════════
# Enums
# ═════════════════════════════════════════════════════════════════════════════

class StepStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    FINISHED = "finished"


class OwnerKind(str, Enum):
    PROJECT = "project"
    CHANGE_ORDER = "change_order"


class ProjectStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"


class ManagementApproval(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class ClientApproval(str, Enum):
    """Client track. ``None`` on the proposal means "not yet released"."""
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    REQUEST_CHANGES = "request_changes"


class SupervisionType(str, Enum):
    NONE = "none"
    PART_TIME = "part_time"
    FULL_TIME = "full_time"


class InvoiceStatus(str, Enum):
    PENDING = "pending"
    PARTIAL_PAID = "partial_paid"
    PAID = "paid"
    OVERDUE = "overdue"
    CANCELLED = "cancelled"


class ChangeOrderStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


def _value(member) -> str | None:
    return member.value if member is not None else None


# ═════════════════════════════════════════════════════════════════════════════
# Actor
# ═════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class Actor:
    """Who is performing a mutation. Authorization is the caller's concern."""
    id: str
    name: str = ""
    role: str = ""

    def to_dict(self) -> dict:
        return {"id": self.id, "name": self.name, "role": self.role}


# ═════════════════════════════════════════════════════════════════════════════
# Work breakdown
# ═════════════════════════════════════════════════════════════════════════════

@dataclass
class WorkDescription:
    """Unpriced sub-task nested under a work title."""
    id: str
    name: str
    description: str = ""
    status: StepStatus = StepStatus.PENDING
    manual_override: bool = False

    @property
    def is_done(self) -> bool:
        return self.status == StepStatus.FINISHED or self.manual_override

    @property
    def is_started(self) -> bool:
        return self.status in (StepStatus.IN_PROGRESS, StepStatus.FINISHED) or self.manual_override

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "step_type": "child",
            "name": self.name,
            "description": self.description,
            "status": self.status.value,
            "manual_override": self.manual_override,
        }


@dataclass
class WorkItem:
    """Top-level priced work title. Status is derived when children exist."""
    id: str
    name: str
    description: str = ""
    price: float = 0.0
    status: StepStatus = StepStatus.PENDING
    order_index: int = 0
    manual_override: bool = False
    children: list[WorkDescription] = field(default_factory=list)

    @property
    def has_children(self) -> bool:
        return bool(self.children)

    def find_child(self, child_id: str) -> WorkDescription | None:
        for child in self.children:
            if child.id == child_id:
                return child
        return None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "step_type": "parent",
            "name": self.name,
            "description": self.description,
            "price": self.price,
            "status": self.status.value,
            "order_index": self.order_index,
            "manual_override": self.manual_override,
            "children": [c.to_dict() for c in self.children],
        }


@dataclass
class WorkBreakdown:
    """Ordered work titles of one owner (a project or a change order)."""
    owner_kind: OwnerKind
    owner_id: str
    items: list[WorkItem] = field(default_factory=list)

    def find_item(self, item_id: str) -> WorkItem | None:
        for item in self.items:
            if item.id == item_id:
                return item
        return None

    def find_child(self, child_id: str) -> tuple[WorkItem, WorkDescription] | tuple[None, None]:
        for item in self.items:
            child = item.find_child(child_id)
            if child is not None:
                return item, child
        return None, None

    def total_price(self) -> float:
        return sum(coerce_number(item.price) for item in self.items)

    def to_dict(self) -> dict:
        return {
            "owner_kind": self.owner_kind.value,
            "owner_id": self.owner_id,
            "items": [i.to_dict() for i in self.items],
        }


# ═════════════════════════════════════════════════════════════════════════════
# Project & change order
# ═════════════════════════════════════════════════════════════════════════════

@dataclass
class Project:
    id: str
    title: str
    breakdown: WorkBreakdown
    progress_percentage: int = 0
    total_budget: float = 0.0
    client_budget: float | None = None
    proposal_id: str | None = None
    status: ProjectStatus = ProjectStatus.ACTIVE
    created_by: str | None = None
    created_by_name: str | None = None
    completed_by: str | None = None
    completed_by_name: str | None = None
    completed_at: datetime | None = None

    @property
    def work_items(self) -> list[WorkItem]:
        return self.breakdown.items

    @property
    def is_completed(self) -> bool:
        return self.status == ProjectStatus.COMPLETED

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "status": self.status.value,
            "progress_percentage": self.progress_percentage,
            "total_budget": self.total_budget,
            "client_budget": self.client_budget,
            "proposal_id": self.proposal_id,
            "created_by": self.created_by,
            "created_by_name": self.created_by_name,
            "completed_by": self.completed_by,
            "completed_by_name": self.completed_by_name,
            "completed_at": iso(self.completed_at),
            "steps": [i.to_dict() for i in self.breakdown.items],
        }


@dataclass
class ChangeOrder:
    """Supplementary scope with its own approval and completion tracks."""
    id: str
    project_id: str
    title: str
    breakdown: WorkBreakdown
    description: str = ""
    status: ChangeOrderStatus = ChangeOrderStatus.PENDING
    completion_status: StepStatus = StepStatus.PENDING
    requested_by: str | None = None
    approved_by: str | None = None
    approved_by_name: str | None = None
    approved_at: datetime | None = None
    rejected_by: str | None = None
    rejected_by_name: str | None = None
    rejected_at: datetime | None = None
    rejection_reason: str | None = None

    def total_price(self) -> float:
        return self.breakdown.total_price()

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "project_id": self.project_id,
            "title": self.title,
            "description": self.description,
            "status": self.status.value,
            "completion_status": self.completion_status.value,
            "total_price": self.total_price(),
            "requested_by": self.requested_by,
            "approved_by": self.approved_by,
            "approved_by_name": self.approved_by_name,
            "approved_at": iso(self.approved_at),
            "rejected_by": self.rejected_by,
            "rejected_by_name": self.rejected_by_name,
            "rejected_at": iso(self.rejected_at),
            "rejection_reason": self.rejection_reason,
            "steps": [i.to_dict() for i in self.breakdown.items],
        }


# ═════════════════════════════════════════════════════════════════════════════
# Proposal & invoice
# ═════════════════════════════════════════════════════════════════════════════

@dataclass
class LineItem:
    """Priced work title on a proposal or invoice (a copy, never shared)."""
    name: str
    quantity: float | str | None = 0
    unit_price: float | str | None = 0
    descriptions: list[str] = field(default_factory=list)

    @property
    def price(self) -> float:
        return coerce_number(self.quantity) * coerce_number(self.unit_price)

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "quantity": coerce_number(self.quantity),
            "unit_price": coerce_number(self.unit_price),
            "price": self.price,
            "descriptions": list(self.descriptions),
        }

    @classmethod
    def from_dict(cls, data: dict) -> LineItem:
        descriptions = data.get("descriptions")
        if descriptions is None and data.get("description"):
            descriptions = [data["description"]]
        return cls(
            name=(data.get("name") or "").strip(),
            quantity=data.get("quantity", 0),
            unit_price=data.get("unit_price", 0),
            descriptions=[d for d in (descriptions or []) if d and str(d).strip()],
        )


@dataclass
class Supervision:
    type: SupervisionType = SupervisionType.NONE
    weeks: float | str | None = 0

    def to_dict(self) -> dict:
        return {"type": self.type.value, "weeks": coerce_number(self.weeks)}


@dataclass
class Proposal:
    id: str
    proposal_number: str
    client_name: str
    line_items: list[LineItem] = field(default_factory=list)
    general_conditions_percentage: float | str | None = "18.5"
    supervision: Supervision = field(default_factory=Supervision)
    discount: float | str | None = 0
    description: str = ""

    # Derived by the pricing calculator whenever content changes
    items_total: float = 0.0
    supervision_fee: float = 0.0
    general_conditions: float = 0.0
    total_cost: float = 0.0

    management_approval: ManagementApproval = ManagementApproval.PENDING
    client_approval: ClientApproval | None = None

    sent_for_approval_at: datetime | None = None
    sent_for_approval_by: str | None = None
    sent_for_approval_by_name: str | None = None

    management_approved_by: str | None = None
    management_approved_by_name: str | None = None
    management_approved_at: datetime | None = None
    management_rejected_by: str | None = None
    management_rejected_by_name: str | None = None
    management_rejected_at: datetime | None = None
    management_rejection_reason: str | None = None

    client_approved_by: str | None = None
    client_approved_by_name: str | None = None
    client_approved_at: datetime | None = None
    client_rejected_by: str | None = None
    client_rejected_by_name: str | None = None
    client_rejected_at: datetime | None = None
    client_rejection_reason: str | None = None
    client_change_requested_by: str | None = None
    client_change_requested_by_name: str | None = None
    client_change_requested_at: datetime | None = None
    client_change_request_reason: str | None = None

    created_by: str | None = None
    created_by_name: str | None = None
    created_at: datetime | None = None

    @property
    def is_sent_for_approval(self) -> bool:
        return self.sent_for_approval_at is not None

    @property
    def is_rejected(self) -> bool:
        return (
            self.management_approval == ManagementApproval.REJECTED
            or self.client_approval == ClientApproval.REJECTED
        )

    @property
    def is_editable(self) -> bool:
        return self.management_approval == ManagementApproval.PENDING and not self.is_sent_for_approval

    @property
    def both_approved(self) -> bool:
        return (
            self.management_approval == ManagementApproval.APPROVED
            and self.client_approval == ClientApproval.APPROVED
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "proposal_number": self.proposal_number,
            "client_name": self.client_name,
            "description": self.description,
            "line_items": [li.to_dict() for li in self.line_items],
            "general_conditions_percentage": self.general_conditions_percentage,
            "supervision": self.supervision.to_dict(),
            "discount": coerce_number(self.discount),
            "items_total": self.items_total,
            "supervision_fee": self.supervision_fee,
            "general_conditions": self.general_conditions,
            "total_cost": self.total_cost,
            "management_approval": self.management_approval.value,
            "client_approval": _value(self.client_approval),
            "sent_for_approval_at": iso(self.sent_for_approval_at),
            "sent_for_approval_by": self.sent_for_approval_by,
            "sent_for_approval_by_name": self.sent_for_approval_by_name,
            "management_approved_by": self.management_approved_by,
            "management_approved_by_name": self.management_approved_by_name,
            "management_approved_at": iso(self.management_approved_at),
            "management_rejected_by": self.management_rejected_by,
            "management_rejected_by_name": self.management_rejected_by_name,
            "management_rejected_at": iso(self.management_rejected_at),
            "management_rejection_reason": self.management_rejection_reason,
            "client_approved_by": self.client_approved_by,
            "client_approved_by_name": self.client_approved_by_name,
            "client_approved_at": iso(self.client_approved_at),
            "client_rejected_by": self.client_rejected_by,
            "client_rejected_by_name": self.client_rejected_by_name,
            "client_rejected_at": iso(self.client_rejected_at),
            "client_rejection_reason": self.client_rejection_reason,
            "client_change_requested_by": self.client_change_requested_by,
            "client_change_requested_by_name": self.client_change_requested_by_name,
            "client_change_requested_at": iso(self.client_change_requested_at),
            "client_change_request_reason": self.client_change_request_reason,
            "created_by": self.created_by,
            "created_by_name": self.created_by_name,
            "created_at": iso(self.created_at),
            "is_editable": self.is_editable,
        }


@dataclass
class Payment:
    id: str
    amount: float
    paid_by: str | None = None
    paid_by_name: str | None = None
    paid_at: datetime | None = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "amount": self.amount,
            "paid_by": self.paid_by,
            "paid_by_name": self.paid_by_name,
            "paid_at": iso(self.paid_at),
        }


@dataclass
class Invoice:
    """Snapshot of an approved proposal. Only status and payments change."""
    id: str
    invoice_number: str
    proposal_id: str
    client_name: str
    line_items: list[LineItem] = field(default_factory=list)
    items_total: float = 0.0
    supervision_fee: float = 0.0
    general_conditions: float = 0.0
    discount: float = 0.0
    total_cost: float = 0.0
    status: InvoiceStatus = InvoiceStatus.PENDING
    paid_amount: float = 0.0
    payments: list[Payment] = field(default_factory=list)
    project_id: str | None = None
    created_by: str | None = None
    created_by_name: str | None = None
    created_at: datetime | None = None

    @property
    def remaining_balance(self) -> float:
        return max(self.total_cost - self.paid_amount, 0.0)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "invoice_number": self.invoice_number,
            "proposal_id": self.proposal_id,
            "project_id": self.project_id,
            "client_name": self.client_name,
            "line_items": [li.to_dict() for li in self.line_items],
            "items_total": self.items_total,
            "supervision_fee": self.supervision_fee,
            "general_conditions": self.general_conditions,
            "discount": self.discount,
            "total_cost": self.total_cost,
            "status": self.status.value,
            "paid_amount": self.paid_amount,
            "remaining_balance": self.remaining_balance,
            "payments": [p.to_dict() for p in self.payments],
            "created_by": self.created_by,
            "created_by_name": self.created_by_name,
            "created_at": iso(self.created_at),
        }
