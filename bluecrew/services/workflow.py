"""
Workflow Coordinator — cross-entity effects of the proposal lifecycle.

    proposal ──(both approvals)──► invoice ──(paid / partial_paid)──► project
    project  ──(every step finished)──► completed
    change orders ──(approved)──► added on top of the project budget

Rules enforced here:
    - Exactly one invoice per proposal (idempotency key = proposal id).
    - The invoice is a snapshot of the proposal at approval time.
    - A project can only be created once its invoice is paid or partially paid.
    - Completion is one-way and requires every step finished.
    - A change order's completion status is independent of its approval.

Usage:
    coordinator = WorkflowCoordinator(proposals=..., invoices=..., projects=...,
                                      steps=..., change_orders=...)
    machine = coordinator.approval_machine(proposal)
    machine.approve_by_client(actor)          # creates the invoice
    coordinator.record_payment(invoice, 500, actor)
    project = coordinator.create_project_from_proposal(proposal, actor)
"""

from __future__ import annotations

import logging
import uuid
from typing import Iterable

from bluecrew.core.entities import (
    Actor,
    ChangeOrder,
    ChangeOrderStatus,
    Invoice,
    InvoiceStatus,
    LineItem,
    OwnerKind,
    Payment,
    Project,
    ProjectStatus,
    Proposal,
    WorkBreakdown,
    WorkDescription,
    WorkItem,
)
from bluecrew.core.exceptions import (
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
    PaymentRequiredError,
    ValidationError,
)
from bluecrew.services.approval import ApprovalStateMachine, coerce_supervision, refresh_totals
from bluecrew.services.persistence import (
    CREATE_CHANGE_ORDER,
    CREATE_INVOICE,
    CREATE_PROJECT,
    CREATE_PROPOSAL,
    UPDATE_CHANGE_ORDER,
    UPDATE_INVOICE,
    UPDATE_PROJECT,
    ChangeOrderPersistence,
    InvoicePersistence,
    PersistenceCommand,
    ProjectPersistence,
    ProposalPersistence,
    StepPersistence,
    persist,
)
from bluecrew.services.pricing import DEFAULT_GC_PERCENT, proposal_breakdown
from bluecrew.services.progress import all_steps_finished
from bluecrew.services.step_tree import StepTreeStore, parse_step_status
from bluecrew.utils.helpers import coerce_number, utcnow

logger = logging.getLogger(__name__)

# Payments smaller than a cent are treated as settled
_BALANCE_TOLERANCE = 0.005

# Manual invoice status changes; payments move status through record_payment.
INVOICE_STATUS_TRANSITIONS = {
    InvoiceStatus.PENDING: {InvoiceStatus.PARTIAL_PAID, InvoiceStatus.PAID,
                            InvoiceStatus.OVERDUE, InvoiceStatus.CANCELLED},
    InvoiceStatus.OVERDUE: {InvoiceStatus.PARTIAL_PAID, InvoiceStatus.PAID, InvoiceStatus.CANCELLED},
    InvoiceStatus.PARTIAL_PAID: {InvoiceStatus.PAID, InvoiceStatus.OVERDUE, InvoiceStatus.CANCELLED},
    InvoiceStatus.PAID: set(),
    InvoiceStatus.CANCELLED: set(),
}

PROJECT_READY_INVOICE_STATUSES = (InvoiceStatus.PAID, InvoiceStatus.PARTIAL_PAID)


def _new_id() -> str:
    return str(uuid.uuid4())


def remaining_balance(invoice: Invoice) -> float:
    return invoice.remaining_balance


def approved_change_orders_total(orders: Iterable[ChangeOrder]) -> float:
    """Sum of work-title prices over approved change orders only."""
    return sum(
        (order.total_price() for order in orders if order.status == ChangeOrderStatus.APPROVED),
        0.0,
    )


def total_with_changes(project: Project, orders: Iterable[ChangeOrder]) -> float:
    return coerce_number(project.total_budget) + approved_change_orders_total(orders)


def can_mark_project_complete(project: Project) -> bool:
    return not project.is_completed and all_steps_finished(project.work_items)


class WorkflowCoordinator:
    """Owns the side effects that span proposals, invoices, projects and change orders."""

    def __init__(
        self,
        proposals: ProposalPersistence,
        invoices: InvoicePersistence,
        projects: ProjectPersistence | None = None,
        steps: StepPersistence | None = None,
        change_orders: ChangeOrderPersistence | None = None,
    ) -> None:
        self.proposals = proposals
        self.invoices = invoices
        self.projects = projects
        self.steps = steps
        self.change_orders = change_orders

    # ── Proposals ──────────────────────────────────────────────────────────

    def create_proposal(
        self,
        actor: Actor,
        client_name: str,
        line_items: list | None = None,
        gc_percent=DEFAULT_GC_PERCENT,
        supervision=None,
        discount=0,
        description: str = "",
    ) -> Proposal:
        """Number, price and store a new pending proposal."""
        if not (client_name or "").strip():
            raise ValidationError("Client name is required", details={"client_name": "required"})
        items = [li if isinstance(li, LineItem) else LineItem.from_dict(li) for li in (line_items or [])]
        if any(not li.name for li in items):
            raise ValidationError("Every line item needs a name", details={"line_items": "name required"})

        proposal = Proposal(
            id=_new_id(),
            proposal_number=self.proposals.generate_proposal_number(),
            client_name=client_name.strip(),
            description=description or "",
            line_items=items,
            general_conditions_percentage=gc_percent,
            supervision=coerce_supervision(supervision),
            discount=discount,
            created_by=actor.id,
            created_by_name=actor.name,
            created_at=utcnow(),
        )
        refresh_totals(proposal)
        stored_id = persist(
            PersistenceCommand(CREATE_PROPOSAL, proposal.id, {"proposal_number": proposal.proposal_number}),
            self.proposals.create_proposal, proposal,
        )
        if stored_id:
            proposal.id = str(stored_id)
        logger.info(
            "Proposal %s created", proposal.proposal_number,
            extra={"proposal_id": proposal.id, "actor_id": actor.id, "event_type": "proposal.create"},
        )
        return proposal

    def get_proposal(self, proposal_id: str) -> Proposal:
        proposal = self.proposals.get_proposal_by_id(proposal_id)
        if proposal is None:
            raise NotFoundError("Proposal", proposal_id)
        return proposal

    def approval_machine(self, proposal: Proposal) -> ApprovalStateMachine:
        return ApprovalStateMachine(
            proposal, self.proposals, on_both_approved=self.on_both_approvals_approved,
        )

    # ── Invoices ───────────────────────────────────────────────────────────

    def on_both_approvals_approved(self, proposal: Proposal, actor: Actor | None = None) -> Invoice:
        """Snapshot the proposal into a pending invoice, exactly once.

        Returns the existing invoice when one was already created for this
        proposal id. Raises InvalidTransitionError unless both tracks are
        approved.
        """
        if not proposal.both_approved:
            raise InvalidTransitionError(
                "Proposal", "create_invoice",
                f"{proposal.management_approval.value}/{getattr(proposal.client_approval, 'value', None)}",
                "both management and client must approve",
            )
        existing = self.invoices.get_invoice_by_proposal_id(proposal.id)
        if existing is not None:
            logger.info(
                "Invoice already exists for proposal",
                extra={"proposal_id": proposal.id, "invoice_id": existing.id, "event_type": "invoice.exists"},
            )
            return existing

        breakdown = proposal_breakdown(proposal)
        invoice = Invoice(
            id=_new_id(),
            invoice_number=self.invoices.generate_invoice_number(),
            proposal_id=proposal.id,
            client_name=proposal.client_name,
            line_items=[
                LineItem(
                    name=li.name,
                    quantity=coerce_number(li.quantity),
                    unit_price=coerce_number(li.unit_price),
                    descriptions=list(li.descriptions),
                )
                for li in proposal.line_items
            ],
            items_total=breakdown.items_total,
            supervision_fee=breakdown.supervision_fee,
            general_conditions=breakdown.general_conditions,
            discount=breakdown.discount,
            total_cost=breakdown.total_cost,
            created_by=actor.id if actor else None,
            created_by_name=actor.name if actor else None,
            created_at=utcnow(),
        )
        try:
            stored_id = persist(
                PersistenceCommand(CREATE_INVOICE, invoice.id, {"proposal_id": proposal.id}),
                self.invoices.create_invoice, invoice,
            )
        except ConflictError:
            # Another session created it between the lookup and the insert
            existing = self.invoices.get_invoice_by_proposal_id(proposal.id)
            if existing is None:
                raise
            return existing
        if stored_id:
            invoice.id = str(stored_id)

        logger.info(
            "Invoice %s created", invoice.invoice_number,
            extra={
                "proposal_id": proposal.id,
                "invoice_id": invoice.id,
                "actor_id": actor.id if actor else None,
                "event_type": "invoice.create",
            },
        )
        return invoice

    def invoice_for(self, proposal_id: str) -> Invoice | None:
        return self.invoices.get_invoice_by_proposal_id(proposal_id)

    def get_invoice(self, invoice_id: str) -> Invoice:
        invoice = self.invoices.get_invoice_by_id(invoice_id)
        if invoice is None:
            raise NotFoundError("Invoice", invoice_id)
        return invoice

    def record_payment(self, invoice: Invoice, amount, actor: Actor) -> Invoice:
        """Apply a payment: paid when the balance reaches 0, else partial_paid.

        The amount must be positive and must not exceed the remaining balance.
        """
        if invoice.status in (InvoiceStatus.PAID, InvoiceStatus.CANCELLED):
            raise InvalidTransitionError("Invoice", "record_payment", invoice.status.value,
                                         "invoice is closed")
        value = coerce_number(amount)
        if value <= 0:
            raise ValidationError("Payment amount must be greater than 0", details={"amount": "must be > 0"})
        remaining = invoice.remaining_balance
        if value > remaining + _BALANCE_TOLERANCE:
            raise ValidationError(
                f"Payment amount exceeds the remaining balance of {remaining:.2f}",
                details={"amount": "exceeds remaining balance"},
            )

        invoice.payments.append(Payment(
            id=_new_id(), amount=value, paid_by=actor.id, paid_by_name=actor.name, paid_at=utcnow(),
        ))
        invoice.paid_amount = invoice.paid_amount + value
        if invoice.remaining_balance <= _BALANCE_TOLERANCE:
            invoice.status = InvoiceStatus.PAID
        else:
            invoice.status = InvoiceStatus.PARTIAL_PAID

        fields = {
            "status": invoice.status.value,
            "paid_amount": invoice.paid_amount,
            "payments": [p.to_dict() for p in invoice.payments],
        }
        persist(PersistenceCommand(UPDATE_INVOICE, invoice.id, fields),
                self.invoices.update_invoice, invoice.id, fields, actor)
        logger.info(
            "Payment of %.2f recorded", value,
            extra={"invoice_id": invoice.id, "actor_id": actor.id, "event_type": "invoice.payment"},
        )
        return invoice

    def update_invoice_status(self, invoice: Invoice, status, actor: Actor) -> Invoice:
        try:
            target = InvoiceStatus(status)
        except ValueError:
            raise ValidationError(
                f"Invalid invoice status '{status}'",
                details={"status": f"must be one of: {', '.join(s.value for s in InvoiceStatus)}"},
            ) from None
        if target not in INVOICE_STATUS_TRANSITIONS.get(invoice.status, set()):
            raise InvalidTransitionError("Invoice", f"set_{target.value}", invoice.status.value)

        previous = invoice.status
        invoice.status = target
        fields = {"status": target.value}
        persist(PersistenceCommand(UPDATE_INVOICE, invoice.id, fields),
                self.invoices.update_invoice, invoice.id, fields, actor)
        logger.info(
            "Invoice status %s → %s", previous.value, target.value,
            extra={"invoice_id": invoice.id, "actor_id": actor.id, "event_type": "invoice.status"},
        )
        return invoice

    # ── Projects ───────────────────────────────────────────────────────────

    def can_create_project(self, proposal: Proposal) -> bool:
        invoice = self.invoices.get_invoice_by_proposal_id(proposal.id)
        return invoice is not None and invoice.status in PROJECT_READY_INVOICE_STATUSES

    def create_project_from_proposal(self, proposal: Proposal, actor: Actor, title: str | None = None) -> Project:
        """Create the project a paid proposal turns into.

        One work title per line item (priced at its line price) and one work
        description per description string.

        If an earlier call stored the project but failed to link it to the
        invoice, the existing project is linked and returned instead of a
        second one being created.
        """
        invoice = self.invoices.get_invoice_by_proposal_id(proposal.id)
        if invoice is None or invoice.status not in PROJECT_READY_INVOICE_STATUSES:
            raise PaymentRequiredError(proposal.id, invoice.status.value if invoice else None)
        if invoice.project_id:
            raise ConflictError("Project", "proposal_id", proposal.id)

        existing = self.projects.get_project_by_proposal_id(proposal.id)
        if existing is not None:
            self._link_invoice(invoice, existing, actor)
            logger.info(
                "Linked existing project to invoice",
                extra={"project_id": existing.id, "proposal_id": proposal.id,
                       "invoice_id": invoice.id, "event_type": "project.link"},
            )
            return existing

        project_id = _new_id()
        items = [
            WorkItem(
                id=_new_id(),
                name=li.name,
                price=li.price,
                order_index=index,
                children=[WorkDescription(id=_new_id(), name=str(text).strip()) for text in li.descriptions],
            )
            for index, li in enumerate(invoice.line_items or proposal.line_items)
        ]
        project = Project(
            id=project_id,
            title=(title or "").strip() or f"{proposal.client_name} - {proposal.proposal_number}",
            breakdown=WorkBreakdown(OwnerKind.PROJECT, project_id, items),
            total_budget=invoice.total_cost,
            client_budget=invoice.total_cost,
            proposal_id=proposal.id,
            created_by=actor.id,
            created_by_name=actor.name,
        )
        stored_id = persist(
            PersistenceCommand(CREATE_PROJECT, project.id, {"proposal_id": proposal.id}),
            self.projects.create_project, project,
        )
        if stored_id:
            project.id = str(stored_id)
            project.breakdown.owner_id = project.id

        self._link_invoice(invoice, project, actor)
        logger.info(
            "Project created from proposal",
            extra={"project_id": project.id, "proposal_id": proposal.id,
                   "actor_id": actor.id, "event_type": "project.create"},
        )
        return project

    def _link_invoice(self, invoice: Invoice, project: Project, actor: Actor) -> None:
        invoice.project_id = project.id
        fields = {"project_id": project.id}
        persist(PersistenceCommand(UPDATE_INVOICE, invoice.id, fields),
                self.invoices.update_invoice, invoice.id, fields, actor)

    def get_project(self, project_id: str) -> Project:
        project = self.projects.get_project_by_id(project_id)
        if project is None:
            raise NotFoundError("Project", project_id)
        return project

    def step_store(self, project: Project) -> StepTreeStore:
        return StepTreeStore.for_project(project, self.steps, self.projects)

    def mark_project_complete(self, project: Project, actor: Actor) -> Project:
        """One-way: active → completed, progress pinned at 100."""
        if project.is_completed:
            raise InvalidTransitionError("Project", "complete", project.status.value, "already completed")
        if not all_steps_finished(project.work_items):
            raise InvalidTransitionError("Project", "complete", project.status.value,
                                         "every work title and description must be finished")

        project.status = ProjectStatus.COMPLETED
        project.progress_percentage = 100
        project.completed_by = actor.id
        project.completed_by_name = actor.name
        project.completed_at = utcnow()
        fields = {
            "status": project.status.value,
            "progress_percentage": 100,
            "completed_by": actor.id,
            "completed_by_name": actor.name,
            "completed_at": project.completed_at,
        }
        persist(PersistenceCommand(UPDATE_PROJECT, project.id, fields),
                self.projects.update_project, project.id, fields, actor)
        logger.info(
            "Project marked complete",
            extra={"project_id": project.id, "actor_id": actor.id, "event_type": "project.complete"},
        )
        return project

    # ── Change orders ──────────────────────────────────────────────────────

    def get_change_order(self, order_id: str) -> ChangeOrder:
        order = self.change_orders.get_change_order_by_id(order_id)
        if order is None:
            raise NotFoundError("ChangeOrder", order_id)
        return order

    def create_change_order(self, project: Project, actor: Actor, title: str,
                            description: str = "", work_titles: list[dict] | None = None) -> ChangeOrder:
        """Raise a pending change order against a project.

        ``work_titles`` entries: {"name", "description", "price", "descriptions": [str]}.
        """
        if not (title or "").strip():
            raise ValidationError("Change order title is required", details={"title": "required"})
        order_id = _new_id()
        items = []
        for index, data in enumerate(work_titles or []):
            name = (data.get("name") or "").strip()
            if not name:
                raise ValidationError("Every work title needs a name", details={"work_titles": "name required"})
            items.append(WorkItem(
                id=_new_id(),
                name=name,
                description=(data.get("description") or "").strip(),
                price=coerce_number(data.get("price")),
                order_index=index,
                children=[
                    WorkDescription(id=_new_id(), name=str(text).strip())
                    for text in data.get("descriptions") or [] if str(text).strip()
                ],
            ))
        order = ChangeOrder(
            id=order_id,
            project_id=project.id,
            title=title.strip(),
            description=(description or "").strip(),
            breakdown=WorkBreakdown(OwnerKind.CHANGE_ORDER, order_id, items),
            requested_by=actor.id,
        )
        stored_id = persist(
            PersistenceCommand(CREATE_CHANGE_ORDER, order.id, {"project_id": project.id}),
            self.change_orders.create_change_order, order,
        )
        if stored_id:
            order.id = str(stored_id)
            order.breakdown.owner_id = order.id
        logger.info(
            "Change order raised",
            extra={"change_order_id": order.id, "project_id": project.id,
                   "actor_id": actor.id, "event_type": "change_order.create"},
        )
        return order

    def change_order_totals(self, project: Project) -> dict:
        orders = self.change_orders.get_change_orders_by_project(project.id)
        return {
            "project_id": project.id,
            "total_budget": coerce_number(project.total_budget),
            "approved_change_orders_total": approved_change_orders_total(orders),
            "total_with_changes": total_with_changes(project, orders),
            "change_orders": [
                {
                    "id": o.id,
                    "title": o.title,
                    "status": o.status.value,
                    "completion_status": o.completion_status.value,
                    "total_price": o.total_price(),
                }
                for o in orders
            ],
        }

    def approve_change_order(self, order: ChangeOrder, actor: Actor) -> ChangeOrder:
        if order.status != ChangeOrderStatus.PENDING:
            raise InvalidTransitionError("ChangeOrder", "approve", order.status.value)
        order.status = ChangeOrderStatus.APPROVED
        order.approved_by = actor.id
        order.approved_by_name = actor.name
        order.approved_at = utcnow()
        self._save_change_order(order, actor, {
            "status": order.status.value,
            "approved_by": actor.id,
            "approved_by_name": actor.name,
            "approved_at": order.approved_at,
        })
        logger.info(
            "Change order approved",
            extra={"change_order_id": order.id, "project_id": order.project_id,
                   "actor_id": actor.id, "event_type": "change_order.approve"},
        )
        return order

    def reject_change_order(self, order: ChangeOrder, actor: Actor, reason: str | None) -> ChangeOrder:
        text = (reason or "").strip()
        if not text:
            raise ValidationError("A rejection reason is required", details={"reason": "required"})
        if order.status != ChangeOrderStatus.PENDING:
            raise InvalidTransitionError("ChangeOrder", "reject", order.status.value)
        order.status = ChangeOrderStatus.REJECTED
        order.rejected_by = actor.id
        order.rejected_by_name = actor.name
        order.rejected_at = utcnow()
        order.rejection_reason = text
        self._save_change_order(order, actor, {
            "status": order.status.value,
            "rejected_by": actor.id,
            "rejected_by_name": actor.name,
            "rejected_at": order.rejected_at,
            "rejection_reason": text,
        })
        logger.info(
            "Change order rejected",
            extra={"change_order_id": order.id, "project_id": order.project_id,
                   "actor_id": actor.id, "event_type": "change_order.reject"},
        )
        return order

    def set_change_order_completion(self, order: ChangeOrder, status, actor: Actor) -> ChangeOrder:
        """Track completion separately from approval; any approval state is accepted."""
        completion = parse_step_status(status)
        order.completion_status = completion
        self._save_change_order(order, actor, {"completion_status": completion.value})
        logger.info(
            "Change order completion set to %s", completion.value,
            extra={"change_order_id": order.id, "actor_id": actor.id,
                   "event_type": "change_order.completion"},
        )
        return order

    def change_order_store(self, order: ChangeOrder) -> StepTreeStore:
        return StepTreeStore.for_change_order(order, self.steps)

    def _save_change_order(self, order: ChangeOrder, actor: Actor, fields: dict) -> None:
        persist(PersistenceCommand(UPDATE_CHANGE_ORDER, order.id, fields),
                self.change_orders.update_change_order, order.id, fields, actor)
