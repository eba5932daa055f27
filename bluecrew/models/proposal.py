"""
Proposal and invoice models.

Models:
    - ProposalRecord: priced proposal with its two approval tracks.
    - InvoiceRecord: snapshot of an approved proposal; only status and
      payments change after creation.

Line items and payments are stored as JSON arrays: they are always read and
written as a whole together with their owner.
"""

import uuid
from datetime import datetime, timezone

from bluecrew.models import db


def _uuid():
    return str(uuid.uuid4())


def _utcnow():
    return datetime.now(timezone.utc)


class ProposalRecord(db.Model):
    """
    Proposal row.

    management_approval: pending → approved | rejected
    client_approval:     NULL (not released) → pending → approved | rejected | request_changes
    Number: PROP-<year>-<NNNN>, generated by the persistence adapter.
    """

    __tablename__ = "proposals"
    __table_args__ = (
        db.Index("idx_proposal_approvals", "management_approval", "client_approval"),
    )

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    proposal_number = db.Column(db.String(20), nullable=False, unique=True)
    client_name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, nullable=True)

    line_items = db.Column(db.JSON, nullable=False, default=list)
    general_conditions_percentage = db.Column(
        db.String(20), nullable=True,
        comment="Free text as entered; empty or unparsable prices at 18.5",
    )
    supervision_type = db.Column(
        db.String(20), nullable=False, default="none",
        comment="none | part_time | full_time",
    )
    supervision_weeks = db.Column(db.Float, nullable=False, default=0.0)
    discount = db.Column(db.Float, nullable=False, default=0.0)

    items_total = db.Column(db.Float, nullable=False, default=0.0)
    supervision_fee = db.Column(db.Float, nullable=False, default=0.0)
    general_conditions = db.Column(db.Float, nullable=False, default=0.0)
    total_cost = db.Column(db.Float, nullable=False, default=0.0)

    management_approval = db.Column(db.String(20), nullable=False, default="pending")
    client_approval = db.Column(db.String(20), nullable=True)

    sent_for_approval_at = db.Column(db.DateTime(timezone=True), nullable=True)
    sent_for_approval_by = db.Column(db.String(64), nullable=True)
    sent_for_approval_by_name = db.Column(db.String(150), nullable=True)

    management_approved_by = db.Column(db.String(64), nullable=True)
    management_approved_by_name = db.Column(db.String(150), nullable=True)
    management_approved_at = db.Column(db.DateTime(timezone=True), nullable=True)
    management_rejected_by = db.Column(db.String(64), nullable=True)
    management_rejected_by_name = db.Column(db.String(150), nullable=True)
    management_rejected_at = db.Column(db.DateTime(timezone=True), nullable=True)
    management_rejection_reason = db.Column(db.Text, nullable=True)

    client_approved_by = db.Column(db.String(64), nullable=True)
    client_approved_by_name = db.Column(db.String(150), nullable=True)
    client_approved_at = db.Column(db.DateTime(timezone=True), nullable=True)
    client_rejected_by = db.Column(db.String(64), nullable=True)
    client_rejected_by_name = db.Column(db.String(150), nullable=True)
    client_rejected_at = db.Column(db.DateTime(timezone=True), nullable=True)
    client_rejection_reason = db.Column(db.Text, nullable=True)
    client_change_requested_by = db.Column(db.String(64), nullable=True)
    client_change_requested_by_name = db.Column(db.String(150), nullable=True)
    client_change_requested_at = db.Column(db.DateTime(timezone=True), nullable=True)
    client_change_request_reason = db.Column(db.Text, nullable=True)

    created_by = db.Column(db.String(64), nullable=True)
    created_by_name = db.Column(db.String(150), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    def __repr__(self):
        return f"<ProposalRecord {self.proposal_number}: {self.management_approval}/{self.client_approval}>"


class InvoiceRecord(db.Model):
    """
    Invoice row. One per proposal (unique proposal_id).
    Status: pending → partial_paid → paid; overdue / cancelled set manually.
    Number: INV-<year>-<NNNN>.
    """

    __tablename__ = "invoices"
    __table_args__ = (
        db.UniqueConstraint("proposal_id", name="uq_invoice_proposal"),
    )

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    invoice_number = db.Column(db.String(20), nullable=False, unique=True)
    proposal_id = db.Column(
        db.String(36), db.ForeignKey("proposals.id", ondelete="RESTRICT"),
        nullable=False,
    )
    project_id = db.Column(db.String(36), nullable=True, comment="Project created from this invoice")
    client_name = db.Column(db.String(200), nullable=False)

    line_items = db.Column(db.JSON, nullable=False, default=list)
    items_total = db.Column(db.Float, nullable=False, default=0.0)
    supervision_fee = db.Column(db.Float, nullable=False, default=0.0)
    general_conditions = db.Column(db.Float, nullable=False, default=0.0)
    discount = db.Column(db.Float, nullable=False, default=0.0)
    total_cost = db.Column(db.Float, nullable=False, default=0.0)

    status = db.Column(
        db.String(20), nullable=False, default="pending",
        comment="pending | partial_paid | paid | overdue | cancelled",
    )
    paid_amount = db.Column(db.Float, nullable=False, default=0.0)
    payments = db.Column(db.JSON, nullable=False, default=list)

    created_by = db.Column(db.String(64), nullable=True)
    created_by_name = db.Column(db.String(150), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    def __repr__(self):
        return f"<InvoiceRecord {self.invoice_number}: {self.status}>"
