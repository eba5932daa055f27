"""
Flask-SQLAlchemy implementations of the persistence contracts.

Each adapter maps between the ``*Record`` models and the domain entities and
commits per call. Database errors roll the session back and surface as
PersistenceFailure (or ConflictError for a duplicate unique key), so the core
sees one failure type regardless of backend.

Approval-type updates (proposal, invoice, change order, project status) also
append an AuditLog row in the same transaction.

Usage:
    stores = build_stores()
    coordinator = WorkflowCoordinator(**stores)
"""

from __future__ import annotations

import logging
import uuid
from contextlib import contextmanager
from datetime import datetime

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from bluecrew.core.entities import (
    Actor,
    ChangeOrder,
    ChangeOrderStatus,
    ClientApproval,
    Invoice,
    InvoiceStatus,
    LineItem,
    ManagementApproval,
    OwnerKind,
    Payment,
    Project,
    ProjectStatus,
    Proposal,
    StepStatus,
    Supervision,
    WorkBreakdown,
    WorkDescription,
    WorkItem,
)
from bluecrew.core.exceptions import ConflictError, NotFoundError, PersistenceFailure
from bluecrew.models import db
from bluecrew.models.audit import write_audit
from bluecrew.models.project import ChangeOrderRecord, ProjectRecord, StepRecord
from bluecrew.models.proposal import InvoiceRecord, ProposalRecord
from bluecrew.services.persistence import (
    CREATE_CHANGE_ORDER,
    CREATE_INVOICE,
    CREATE_PROJECT,
    CREATE_PROPOSAL,
    CREATE_STEP,
    DELETE_STEP,
    UPDATE_CHANGE_ORDER,
    UPDATE_INVOICE,
    UPDATE_PROJECT,
    UPDATE_PROPOSAL,
    UPDATE_STEP,
    ChangeOrderPersistence,
    InvoicePersistence,
    PersistenceCommand,
    ProjectPersistence,
    ProposalPersistence,
    StepPersistence,
)
from bluecrew.services.pricing import parse_supervision_type
from bluecrew.utils.helpers import coerce_number, utcnow

logger = logging.getLogger(__name__)

_STEP_FIELDS = {"name", "description", "price", "status", "order_index", "manual_override"}
_PROJECT_FIELDS = {
    "title", "status", "progress_percentage", "total_budget", "client_budget",
    "completed_by", "completed_by_name", "completed_at",
}
_INVOICE_FIELDS = {"status", "paid_amount", "payments", "project_id"}
_CHANGE_ORDER_FIELDS = {
    "title", "description", "status", "completion_status",
    "approved_by", "approved_by_name", "approved_at",
    "rejected_by", "rejected_by_name", "rejected_at", "rejection_reason",
}


# ═════════════════════════════════════════════════════════════════════════════
# Helpers
# ═════════════════════════════════════════════════════════════════════════════

@contextmanager
def _unit_of_work(kind: str, target_id: str | None, fields: dict | None = None,
                  conflict: tuple | None = None):
    """Commit on success; roll back and translate database errors.

    ``conflict`` = (resource, field, value) turns an IntegrityError into
    ConflictError instead of PersistenceFailure.
    """
    try:
        yield
        db.session.commit()
    except IntegrityError as exc:
        db.session.rollback()
        if conflict is not None:
            raise ConflictError(*conflict) from exc
        raise PersistenceFailure(PersistenceCommand(kind, target_id, dict(fields or {})), cause=exc) from exc
    except SQLAlchemyError as exc:
        db.session.rollback()
        logger.error(
            "Database error during %s: %s", kind, exc,
            extra={"event_type": kind, "target_id": target_id},
        )
        raise PersistenceFailure(PersistenceCommand(kind, target_id, dict(fields or {})), cause=exc) from exc


def _parse_dt(value) -> datetime | None:
    if value is None or isinstance(value, datetime):
        return value
    try:
        return datetime.fromisoformat(str(value))
    except ValueError:
        return None


def _audit_actor(actor: Actor | None, fields: dict) -> tuple[str | None, str | None]:
    """Who to record on the audit row: the explicit actor, else the first
    non-empty ``*_by`` / ``*_by_name`` pair of the update."""
    if actor is not None:
        return actor.id, actor.name or None
    for key, value in fields.items():
        if key.endswith("_by") and value:
            return str(value), fields.get(f"{key}_name")
    return None, None


def _apply(record, fields: dict, allowed: set[str]) -> dict:
    """Set allowed attributes on ``record``; return the {field: {old, new}} diff."""
    diff = {}
    for key, value in fields.items():
        if key not in allowed:
            continue
        old = getattr(record, key)
        if old != value:
            diff[key] = {"old": old, "new": value}
        setattr(record, key, value)
    return diff


def _next_number(model, column, prefix: str) -> str:
    year = utcnow().year
    stem = f"{prefix}-{year}-"
    count = db.session.query(func.count(model.id)).filter(column.like(f"{stem}%")).scalar() or 0
    seq = count + 1
    while db.session.query(model.id).filter(column == f"{stem}{seq:04d}").first() is not None:
        seq += 1
    return f"{stem}{seq:04d}"


# ── Step tree mapping ───────────────────────────────────────────────────────

def _load_breakdown(owner_kind: OwnerKind, owner_id: str) -> WorkBreakdown:
    parents = (
        StepRecord.query
        .filter_by(owner_kind=owner_kind.value, owner_id=owner_id, parent_step_id=None)
        .order_by(StepRecord.order_index, StepRecord.created_at)
        .all()
    )
    items = []
    for rec in parents:
        items.append(WorkItem(
            id=rec.id,
            name=rec.name,
            description=rec.description or "",
            price=coerce_number(rec.price),
            status=StepStatus(rec.status),
            order_index=rec.order_index,
            manual_override=bool(rec.manual_override),
            children=[
                WorkDescription(
                    id=child.id,
                    name=child.name,
                    description=child.description or "",
                    status=StepStatus(child.status),
                    manual_override=bool(child.manual_override),
                )
                for child in rec.children
            ],
        ))
    return WorkBreakdown(owner_kind, owner_id, items)


def _add_breakdown(breakdown: WorkBreakdown, owner_id: str) -> None:
    for item in breakdown.items:
        db.session.add(StepRecord(
            id=item.id,
            owner_kind=breakdown.owner_kind.value,
            owner_id=owner_id,
            step_type="parent",
            name=item.name,
            description=item.description,
            price=item.price,
            status=item.status.value,
            order_index=item.order_index,
            manual_override=item.manual_override,
        ))
        for index, child in enumerate(item.children):
            db.session.add(StepRecord(
                id=child.id,
                owner_kind=breakdown.owner_kind.value,
                owner_id=owner_id,
                parent_step_id=item.id,
                step_type="child",
                name=child.name,
                description=child.description,
                status=child.status.value,
                order_index=index,
                manual_override=child.manual_override,
            ))


def _delete_steps(owner_kind: OwnerKind, owner_id: str) -> None:
    # Children first: bulk deletes bypass the ORM cascade
    StepRecord.query.filter(
        StepRecord.owner_kind == owner_kind.value,
        StepRecord.owner_id == owner_id,
        StepRecord.parent_step_id.isnot(None),
    ).delete(synchronize_session=False)
    StepRecord.query.filter_by(owner_kind=owner_kind.value, owner_id=owner_id).delete(
        synchronize_session=False,
    )


# ═════════════════════════════════════════════════════════════════════════════
# Steps
# ═════════════════════════════════════════════════════════════════════════════

class SqlStepStore(StepPersistence):

    def create_step(self, owner_id: str, data: dict) -> str:
        step_id = data.get("id") or str(uuid.uuid4())
        with _unit_of_work(CREATE_STEP, step_id, data):
            record = StepRecord(
                id=step_id,
                owner_kind=data.get("owner_kind") or OwnerKind.PROJECT.value,
                owner_id=owner_id,
                parent_step_id=data.get("parent_step_id"),
                step_type=data.get("step_type") or ("child" if data.get("parent_step_id") else "parent"),
                name=data.get("name") or "",
                description=data.get("description") or "",
                price=data.get("price"),
                status=data.get("status") or StepStatus.PENDING.value,
                order_index=data.get("order_index") or 0,
                manual_override=bool(data.get("manual_override")),
            )
            db.session.add(record)
        return record.id

    def update_step(self, step_id: str, fields: dict) -> None:
        record = db.session.get(StepRecord, step_id)
        if record is None:
            raise NotFoundError("Step", step_id)
        with _unit_of_work(UPDATE_STEP, step_id, fields):
            _apply(record, fields, _STEP_FIELDS)

    def delete_step(self, step_id: str) -> None:
        record = db.session.get(StepRecord, step_id)
        if record is None:
            raise NotFoundError("Step", step_id)
        with _unit_of_work(DELETE_STEP, step_id):
            db.session.delete(record)


# ═════════════════════════════════════════════════════════════════════════════
# Projects
# ═════════════════════════════════════════════════════════════════════════════

def _project_from_record(record: ProjectRecord) -> Project:
    return Project(
        id=record.id,
        title=record.title,
        breakdown=_load_breakdown(OwnerKind.PROJECT, record.id),
        progress_percentage=record.progress_percentage or 0,
        total_budget=coerce_number(record.total_budget),
        client_budget=record.client_budget,
        proposal_id=record.proposal_id,
        status=ProjectStatus(record.status),
        created_by=record.created_by,
        created_by_name=record.created_by_name,
        completed_by=record.completed_by,
        completed_by_name=record.completed_by_name,
        completed_at=record.completed_at,
    )


class SqlProjectStore(ProjectPersistence):

    def create_project(self, project: Project) -> str:
        conflict = ("Project", "proposal_id", project.proposal_id) if project.proposal_id else None
        with _unit_of_work(CREATE_PROJECT, project.id, {"proposal_id": project.proposal_id}, conflict=conflict):
            db.session.add(ProjectRecord(
                id=project.id,
                title=project.title,
                status=project.status.value,
                progress_percentage=project.progress_percentage,
                total_budget=coerce_number(project.total_budget),
                client_budget=project.client_budget,
                proposal_id=project.proposal_id,
                created_by=project.created_by,
                created_by_name=project.created_by_name,
            ))
            db.session.flush()
            _add_breakdown(project.breakdown, project.id)
            write_audit(
                entity_type="project", entity_id=project.id, action="project.create",
                actor_id=project.created_by, actor_name=project.created_by_name,
                diff={"proposal_id": project.proposal_id, "total_budget": project.total_budget},
            )
        return project.id

    def get_project_by_id(self, project_id: str) -> Project | None:
        record = db.session.get(ProjectRecord, project_id)
        return _project_from_record(record) if record else None

    def get_project_by_proposal_id(self, proposal_id: str) -> Project | None:
        record = ProjectRecord.query.filter_by(proposal_id=proposal_id).first()
        return _project_from_record(record) if record else None

    def update_project(self, project_id: str, fields: dict, actor: Actor | None = None) -> None:
        record = db.session.get(ProjectRecord, project_id)
        if record is None:
            raise NotFoundError("Project", project_id)
        with _unit_of_work(UPDATE_PROJECT, project_id, fields):
            diff = _apply(record, fields, _PROJECT_FIELDS)
            if "status" in diff:
                actor_id, actor_name = _audit_actor(actor, fields)
                write_audit(
                    entity_type="project", entity_id=project_id, action="project.update",
                    actor_id=actor_id, actor_name=actor_name, diff=diff,
                )

    def delete_project(self, project_id: str) -> None:
        record = db.session.get(ProjectRecord, project_id)
        if record is None:
            raise NotFoundError("Project", project_id)
        with _unit_of_work("delete_project", project_id):
            for order in record.change_orders:
                _delete_steps(OwnerKind.CHANGE_ORDER, order.id)
            _delete_steps(OwnerKind.PROJECT, project_id)
            db.session.delete(record)


# ═════════════════════════════════════════════════════════════════════════════
# Proposals
# ═════════════════════════════════════════════════════════════════════════════

def _proposal_columns(fields: dict) -> dict:
    """Translate entity-shaped fields into ProposalRecord columns."""
    columns = {}
    for key, value in fields.items():
        if key == "supervision":
            value = value or {}
            columns["supervision_type"] = parse_supervision_type(value.get("type")).value
            columns["supervision_weeks"] = coerce_number(value.get("weeks"))
        elif key == "general_conditions_percentage":
            columns[key] = None if value is None else str(value)
        elif key == "discount":
            columns[key] = coerce_number(value)
        elif key == "line_items":
            columns[key] = [li if isinstance(li, dict) else li.to_dict() for li in value or []]
        elif key.endswith("_at"):
            columns[key] = _parse_dt(value)
        else:
            columns[key] = value
    return columns


def _proposal_from_record(record: ProposalRecord) -> Proposal:
    return Proposal(
        id=record.id,
        proposal_number=record.proposal_number,
        client_name=record.client_name,
        description=record.description or "",
        line_items=[LineItem.from_dict(li) for li in record.line_items or []],
        general_conditions_percentage=record.general_conditions_percentage,
        supervision=Supervision(
            type=parse_supervision_type(record.supervision_type),
            weeks=record.supervision_weeks or 0,
        ),
        discount=record.discount or 0,
        items_total=record.items_total or 0.0,
        supervision_fee=record.supervision_fee or 0.0,
        general_conditions=record.general_conditions or 0.0,
        total_cost=record.total_cost or 0.0,
        management_approval=ManagementApproval(record.management_approval),
        client_approval=ClientApproval(record.client_approval) if record.client_approval else None,
        sent_for_approval_at=record.sent_for_approval_at,
        sent_for_approval_by=record.sent_for_approval_by,
        sent_for_approval_by_name=record.sent_for_approval_by_name,
        management_approved_by=record.management_approved_by,
        management_approved_by_name=record.management_approved_by_name,
        management_approved_at=record.management_approved_at,
        management_rejected_by=record.management_rejected_by,
        management_rejected_by_name=record.management_rejected_by_name,
        management_rejected_at=record.management_rejected_at,
        management_rejection_reason=record.management_rejection_reason,
        client_approved_by=record.client_approved_by,
        client_approved_by_name=record.client_approved_by_name,
        client_approved_at=record.client_approved_at,
        client_rejected_by=record.client_rejected_by,
        client_rejected_by_name=record.client_rejected_by_name,
        client_rejected_at=record.client_rejected_at,
        client_rejection_reason=record.client_rejection_reason,
        client_change_requested_by=record.client_change_requested_by,
        client_change_requested_by_name=record.client_change_requested_by_name,
        client_change_requested_at=record.client_change_requested_at,
        client_change_request_reason=record.client_change_request_reason,
        created_by=record.created_by,
        created_by_name=record.created_by_name,
        created_at=record.created_at,
    )


class SqlProposalStore(ProposalPersistence):

    def create_proposal(self, proposal: Proposal) -> str:
        data = proposal.to_dict()
        fields = {
            key: data[key] for key in (
                "client_name", "description", "line_items", "general_conditions_percentage",
                "supervision", "discount", "items_total", "supervision_fee",
                "general_conditions", "total_cost", "management_approval", "client_approval",
                "created_by", "created_by_name", "created_at",
            )
        }
        with _unit_of_work(CREATE_PROPOSAL, proposal.id, {"proposal_number": proposal.proposal_number},
                           conflict=("Proposal", "proposal_number", proposal.proposal_number)):
            db.session.add(ProposalRecord(
                id=proposal.id, proposal_number=proposal.proposal_number, **_proposal_columns(fields),
            ))
            db.session.flush()
            write_audit(
                entity_type="proposal", entity_id=proposal.id, action="proposal.create",
                actor_id=proposal.created_by, actor_name=proposal.created_by_name,
                diff={"proposal_number": proposal.proposal_number, "total_cost": proposal.total_cost},
            )
        return proposal.id

    def update_proposal(self, proposal_id: str, fields: dict, actor: Actor | None = None) -> None:
        record = db.session.get(ProposalRecord, proposal_id)
        if record is None:
            raise NotFoundError("Proposal", proposal_id)
        columns = _proposal_columns(fields)
        with _unit_of_work(UPDATE_PROPOSAL, proposal_id, fields):
            diff = _apply(record, columns, set(columns) - {"id", "proposal_number"})
            if diff:
                actor_id, actor_name = _audit_actor(actor, fields)
                write_audit(
                    entity_type="proposal", entity_id=proposal_id, action="proposal.update",
                    actor_id=actor_id, actor_name=actor_name, diff=diff,
                )

    def get_proposal_by_id(self, proposal_id: str) -> Proposal | None:
        record = db.session.get(ProposalRecord, proposal_id)
        return _proposal_from_record(record) if record else None

    def get_proposals(self) -> list[Proposal]:
        records = ProposalRecord.query.order_by(ProposalRecord.created_at.desc()).all()
        return [_proposal_from_record(r) for r in records]

    def delete_proposal(self, proposal_id: str) -> None:
        record = db.session.get(ProposalRecord, proposal_id)
        if record is None:
            raise NotFoundError("Proposal", proposal_id)
        with _unit_of_work("delete_proposal", proposal_id):
            db.session.delete(record)

    def generate_proposal_number(self) -> str:
        return _next_number(ProposalRecord, ProposalRecord.proposal_number, "PROP")


# ═════════════════════════════════════════════════════════════════════════════
# Invoices
# ═════════════════════════════════════════════════════════════════════════════

def _invoice_from_record(record: InvoiceRecord) -> Invoice:
    return Invoice(
        id=record.id,
        invoice_number=record.invoice_number,
        proposal_id=record.proposal_id,
        client_name=record.client_name,
        line_items=[LineItem.from_dict(li) for li in record.line_items or []],
        items_total=record.items_total or 0.0,
        supervision_fee=record.supervision_fee or 0.0,
        general_conditions=record.general_conditions or 0.0,
        discount=record.discount or 0.0,
        total_cost=record.total_cost or 0.0,
        status=InvoiceStatus(record.status),
        paid_amount=record.paid_amount or 0.0,
        payments=[
            Payment(
                id=p.get("id"),
                amount=coerce_number(p.get("amount")),
                paid_by=p.get("paid_by"),
                paid_by_name=p.get("paid_by_name"),
                paid_at=_parse_dt(p.get("paid_at")),
            )
            for p in record.payments or []
        ],
        project_id=record.project_id,
        created_by=record.created_by,
        created_by_name=record.created_by_name,
        created_at=record.created_at,
    )


class SqlInvoiceStore(InvoicePersistence):

    def create_invoice(self, invoice: Invoice) -> str:
        with _unit_of_work(CREATE_INVOICE, invoice.id, {"proposal_id": invoice.proposal_id},
                           conflict=("Invoice", "proposal_id", invoice.proposal_id)):
            db.session.add(InvoiceRecord(
                id=invoice.id,
                invoice_number=invoice.invoice_number,
                proposal_id=invoice.proposal_id,
                project_id=invoice.project_id,
                client_name=invoice.client_name,
                line_items=[li.to_dict() for li in invoice.line_items],
                items_total=invoice.items_total,
                supervision_fee=invoice.supervision_fee,
                general_conditions=invoice.general_conditions,
                discount=invoice.discount,
                total_cost=invoice.total_cost,
                status=invoice.status.value,
                paid_amount=invoice.paid_amount,
                payments=[p.to_dict() for p in invoice.payments],
                created_by=invoice.created_by,
                created_by_name=invoice.created_by_name,
                created_at=invoice.created_at,
            ))
            db.session.flush()
            write_audit(
                entity_type="invoice", entity_id=invoice.id, action="invoice.create",
                actor_id=invoice.created_by, actor_name=invoice.created_by_name,
                diff={"proposal_id": invoice.proposal_id, "total_cost": invoice.total_cost},
            )
        return invoice.id

    def update_invoice(self, invoice_id: str, fields: dict, actor: Actor | None = None) -> None:
        record = db.session.get(InvoiceRecord, invoice_id)
        if record is None:
            raise NotFoundError("Invoice", invoice_id)
        with _unit_of_work(UPDATE_INVOICE, invoice_id, fields):
            diff = _apply(record, fields, _INVOICE_FIELDS)
            if diff:
                if actor is not None:
                    actor_id, actor_name = actor.id, actor.name or None
                else:
                    payments = fields.get("payments") or []
                    last = payments[-1] if payments else {}
                    actor_id, actor_name = last.get("paid_by"), last.get("paid_by_name")
                write_audit(
                    entity_type="invoice", entity_id=invoice_id, action="invoice.update",
                    actor_id=actor_id, actor_name=actor_name,
                    diff={k: v for k, v in diff.items() if k != "payments"},
                )

    def generate_invoice_number(self) -> str:
        return _next_number(InvoiceRecord, InvoiceRecord.invoice_number, "INV")

    def get_invoices(self) -> list[Invoice]:
        records = InvoiceRecord.query.order_by(InvoiceRecord.created_at.desc()).all()
        return [_invoice_from_record(r) for r in records]

    def get_invoice_by_id(self, invoice_id: str) -> Invoice | None:
        record = db.session.get(InvoiceRecord, invoice_id)
        return _invoice_from_record(record) if record else None

    def get_invoice_by_proposal_id(self, proposal_id: str) -> Invoice | None:
        record = InvoiceRecord.query.filter_by(proposal_id=proposal_id).first()
        return _invoice_from_record(record) if record else None


# ═════════════════════════════════════════════════════════════════════════════
# Change orders
# ═════════════════════════════════════════════════════════════════════════════

def _change_order_from_record(record: ChangeOrderRecord) -> ChangeOrder:
    return ChangeOrder(
        id=record.id,
        project_id=record.project_id,
        title=record.title,
        description=record.description or "",
        breakdown=_load_breakdown(OwnerKind.CHANGE_ORDER, record.id),
        status=ChangeOrderStatus(record.status),
        completion_status=StepStatus(record.completion_status),
        requested_by=record.requested_by,
        approved_by=record.approved_by,
        approved_by_name=record.approved_by_name,
        approved_at=record.approved_at,
        rejected_by=record.rejected_by,
        rejected_by_name=record.rejected_by_name,
        rejected_at=record.rejected_at,
        rejection_reason=record.rejection_reason,
    )


class SqlChangeOrderStore(ChangeOrderPersistence):

    def create_change_order(self, order: ChangeOrder) -> str:
        with _unit_of_work(CREATE_CHANGE_ORDER, order.id, {"project_id": order.project_id}):
            db.session.add(ChangeOrderRecord(
                id=order.id,
                project_id=order.project_id,
                title=order.title,
                description=order.description,
                status=order.status.value,
                completion_status=order.completion_status.value,
                requested_by=order.requested_by,
            ))
            db.session.flush()
            _add_breakdown(order.breakdown, order.id)
            write_audit(
                entity_type="change_order", entity_id=order.id, action="change_order.create",
                actor_id=order.requested_by, diff={"project_id": order.project_id},
            )
        return order.id

    def get_change_order_by_id(self, order_id: str) -> ChangeOrder | None:
        record = db.session.get(ChangeOrderRecord, order_id)
        return _change_order_from_record(record) if record else None

    def get_change_orders_by_project(self, project_id: str) -> list[ChangeOrder]:
        records = (
            ChangeOrderRecord.query
            .filter_by(project_id=project_id)
            .order_by(ChangeOrderRecord.created_at)
            .all()
        )
        return [_change_order_from_record(r) for r in records]

    def update_change_order(self, order_id: str, fields: dict, actor: Actor | None = None) -> None:
        record = db.session.get(ChangeOrderRecord, order_id)
        if record is None:
            raise NotFoundError("ChangeOrder", order_id)
        with _unit_of_work(UPDATE_CHANGE_ORDER, order_id, fields):
            diff = _apply(record, fields, _CHANGE_ORDER_FIELDS)
            if diff:
                actor_id, actor_name = _audit_actor(actor, fields)
                write_audit(
                    entity_type="change_order", entity_id=order_id, action="change_order.update",
                    actor_id=actor_id, actor_name=actor_name, diff=diff,
                )


def build_stores() -> dict:
    """Keyword arguments for WorkflowCoordinator backed by the SQL adapters."""
    return {
        "proposals": SqlProposalStore(),
        "invoices": SqlInvoiceStore(),
        "projects": SqlProjectStore(),
        "steps": SqlStepStore(),
        "change_orders": SqlChangeOrderStore(),
    }
