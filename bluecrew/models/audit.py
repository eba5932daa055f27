"""
Audit domain model.

Models:
    - AuditLog: immutable, append-only audit trail for approval-type events.
"""

import json
from datetime import datetime, timezone

from bluecrew.models import db

# ── Constants ────────────────────────────────────────────────────────────────

AUDIT_ENTITY_TYPES = {"proposal", "invoice", "project", "change_order"}

AUDIT_ACTIONS = {
    # Proposal lifecycle
    "proposal.create",
    "proposal.update",
    # Invoice lifecycle
    "invoice.create",
    "invoice.update",
    # Project
    "project.create",
    "project.update",
    # Change orders
    "change_order.create",
    "change_order.update",
}


class AuditLog(db.Model):
    """
    Immutable audit trail for every persisted lifecycle change.

    One row per action. ``diff_json`` carries {field: {old, new}}.
    """

    __tablename__ = "audit_logs"
    __table_args__ = (
        db.Index("idx_audit_entity", "entity_type", "entity_id"),
        db.Index("idx_audit_actor", "actor_id"),
        db.Index("idx_audit_action", "action"),
        db.Index("idx_audit_ts", "timestamp"),
    )

    id = db.Column(db.Integer, primary_key=True)

    # Polymorphic entity reference
    entity_type = db.Column(
        db.String(30), nullable=False,
        comment="proposal | invoice | project | change_order",
    )
    entity_id = db.Column(db.String(36), nullable=False)

    # What happened
    action = db.Column(
        db.String(60), nullable=False,
        comment="proposal.update | invoice.create | …",
    )
    actor_id = db.Column(db.String(64), nullable=False, default="system")
    actor_name = db.Column(db.String(150), nullable=True)

    # Change payload
    diff_json = db.Column(db.Text, default="{}", comment="JSON: {field: {old, new}}")

    timestamp = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    # ── Helpers ──────────────────────────────────────────────────────────

    @property
    def diff(self) -> dict:
        """Deserialise *diff_json* to a Python dict."""
        try:
            return json.loads(self.diff_json or "{}")
        except (json.JSONDecodeError, TypeError):
            return {}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "action": self.action,
            "actor_id": self.actor_id,
            "actor_name": self.actor_name,
            "diff": self.diff,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
        }

    def __repr__(self):
        return f"<AuditLog {self.id}: {self.action} on {self.entity_type}/{self.entity_id}>"


# ── Convenience writer ───────────────────────────────────────────────────────

def write_audit(
    *,
    entity_type: str,
    entity_id: str,
    action: str,
    actor_id: str | None = None,
    actor_name: str | None = None,
    diff: dict | None = None,
) -> AuditLog:
    """
    Append a single audit row. Uses ``flush`` so callers keep
    transaction control.

    Returns the (flushed) AuditLog instance.
    """
    log = AuditLog(
        entity_type=entity_type,
        entity_id=str(entity_id),
        action=action,
        actor_id=actor_id or "system",
        actor_name=actor_name,
        diff_json=json.dumps(diff or {}, default=str),
    )
    db.session.add(log)
    db.session.flush()
    return log
