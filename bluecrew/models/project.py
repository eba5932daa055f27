"""
Project domain models.

Models:
    - ProjectRecord: a job with its progress and budgets.
    - StepRecord: work titles and work descriptions, stored flat with a
      parent pointer and tagged by owner (project or change order).
    - ChangeOrderRecord: supplementary scope raised against a project.
"""

import uuid
from datetime import datetime, timezone

from bluecrew.models import db


def _uuid():
    return str(uuid.uuid4())


def _utcnow():
    return datetime.now(timezone.utc)


class ProjectRecord(db.Model):
    """
    Project row. Its steps live in ``steps`` with owner_kind='project'.
    Status: active → completed (one-way).
    """

    __tablename__ = "projects"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    title = db.Column(db.String(300), nullable=False)
    status = db.Column(
        db.String(20), nullable=False, default="active",
        comment="active | completed",
    )
    progress_percentage = db.Column(db.Integer, nullable=False, default=0)
    total_budget = db.Column(db.Float, nullable=False, default=0.0, comment="Internal budget")
    client_budget = db.Column(db.Float, nullable=True, comment="Client-facing budget from the proposal")
    proposal_id = db.Column(
        db.String(36), db.ForeignKey("proposals.id", ondelete="SET NULL"),
        nullable=True, unique=True, index=True,
        comment="At most one project per proposal",
    )

    created_by = db.Column(db.String(64), nullable=True)
    created_by_name = db.Column(db.String(150), nullable=True)
    completed_by = db.Column(db.String(64), nullable=True)
    completed_by_name = db.Column(db.String(150), nullable=True)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    change_orders = db.relationship(
        "ChangeOrderRecord", backref="project",
        cascade="all, delete-orphan",
    )

    def __repr__(self):
        return f"<ProjectRecord {self.id}: {self.title}>"


class StepRecord(db.Model):
    """
    One work title (step_type='parent') or work description (step_type='child').

    Children point at their work title through parent_step_id and are deleted
    with it. order_index is dense 0..n-1 among work titles of one owner.
    """

    __tablename__ = "steps"
    __table_args__ = (
        db.Index("idx_step_owner", "owner_kind", "owner_id"),
        db.Index("idx_step_parent", "parent_step_id"),
    )

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    owner_kind = db.Column(
        db.String(20), nullable=False, default="project",
        comment="project | change_order",
    )
    owner_id = db.Column(db.String(36), nullable=False, comment="Project or change order id")
    parent_step_id = db.Column(
        db.String(36), db.ForeignKey("steps.id", ondelete="CASCADE"),
        nullable=True,
    )
    step_type = db.Column(
        db.String(10), nullable=False, default="parent",
        comment="parent | child",
    )
    name = db.Column(db.String(300), nullable=False)
    description = db.Column(db.Text, nullable=True)
    price = db.Column(db.Float, nullable=True, comment="Work titles only")
    status = db.Column(
        db.String(20), nullable=False, default="pending",
        comment="pending | in_progress | finished",
    )
    order_index = db.Column(db.Integer, nullable=False, default=0)
    manual_override = db.Column(db.Boolean, nullable=False, default=False)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    children = db.relationship(
        "StepRecord",
        backref=db.backref("parent", remote_side=[id]),
        cascade="all, delete-orphan",
        order_by="StepRecord.order_index",
    )

    def __repr__(self):
        return f"<StepRecord {self.id}: {self.step_type} {self.name}>"


class ChangeOrderRecord(db.Model):
    """
    Change order row. Approval (status) and completion_status are tracked
    independently; its steps live in ``steps`` with owner_kind='change_order'.
    """

    __tablename__ = "change_orders"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    project_id = db.Column(
        db.String(36), db.ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    title = db.Column(db.String(300), nullable=False)
    description = db.Column(db.Text, nullable=True)
    status = db.Column(
        db.String(20), nullable=False, default="pending",
        comment="pending | approved | rejected",
    )
    completion_status = db.Column(
        db.String(20), nullable=False, default="pending",
        comment="pending | in_progress | finished",
    )

    requested_by = db.Column(db.String(64), nullable=True)
    approved_by = db.Column(db.String(64), nullable=True)
    approved_by_name = db.Column(db.String(150), nullable=True)
    approved_at = db.Column(db.DateTime(timezone=True), nullable=True)
    rejected_by = db.Column(db.String(64), nullable=True)
    rejected_by_name = db.Column(db.String(150), nullable=True)
    rejected_at = db.Column(db.DateTime(timezone=True), nullable=True)
    rejection_reason = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    def __repr__(self):
        return f"<ChangeOrderRecord {self.id}: {self.status}>"
