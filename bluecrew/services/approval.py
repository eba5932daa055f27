"""
Approval State Machine — dual-track proposal approval.

A proposal moves through two independent tracks:

    management:  pending → approved | rejected
    client:      None (not released) → pending → approved | rejected
                                        pending → request_changes → approved | rejected

The client track is released (None → pending) when management approves.
Invoice creation fires on whichever approval is the second to land; the
``on_both_approved`` listener (normally WorkflowCoordinator) is idempotent per
proposal id, so calling it twice never duplicates an invoice.

Failure semantics:
    - Empty rejection / change-request reason → ValidationError, nothing changed.
    - Any action while either track is rejected → InvalidTransitionError.
    - The in-memory proposal is updated before ``update_proposal`` runs; a
      PersistenceFailure leaves it applied.

Usage:
    machine = ApprovalStateMachine(proposal, proposals=store, on_both_approved=coord.on_both_approvals_approved)
    machine.send_for_approval(actor)
    machine.approve_by_management(actor)
    result = machine.approve_by_client(client_actor)
    result.invoice  # created by the listener
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable

from bluecrew.core.entities import (
    Actor,
    ClientApproval,
    LineItem,
    ManagementApproval,
    Proposal,
    Supervision,
)
from bluecrew.core.exceptions import InvalidTransitionError, ValidationError
from bluecrew.services.persistence import (
    UPDATE_PROPOSAL,
    PersistenceCommand,
    ProposalPersistence,
    persist,
)
from bluecrew.services.pricing import parse_supervision_type, proposal_breakdown
from bluecrew.utils.helpers import utcnow

logger = logging.getLogger(__name__)

MANAGEMENT = "management"
CLIENT = "client"

# Track → action → allowed source states / target state
APPROVAL_TRANSITIONS = {
    MANAGEMENT: {
        "approve": {"from": [ManagementApproval.PENDING], "to": ManagementApproval.APPROVED},
        "reject": {"from": [ManagementApproval.PENDING], "to": ManagementApproval.REJECTED},
    },
    CLIENT: {
        "approve": {
            "from": [ClientApproval.PENDING, ClientApproval.REQUEST_CHANGES],
            "to": ClientApproval.APPROVED,
        },
        "reject": {
            "from": [ClientApproval.PENDING, ClientApproval.REQUEST_CHANGES],
            "to": ClientApproval.REJECTED,
        },
        "request_changes": {
            "from": [ClientApproval.PENDING],
            "to": ClientApproval.REQUEST_CHANGES,
        },
    },
}

_CONTENT_FIELDS = (
    "client_name", "description", "line_items", "general_conditions_percentage",
    "supervision", "discount", "items_total", "supervision_fee",
    "general_conditions", "total_cost",
)


@dataclass
class TransitionResult:
    proposal: Proposal
    track: str
    action: str
    previous: str | None
    current: str | None
    invoice: Any = None

    def to_dict(self) -> dict:
        return {
            "proposal_id": self.proposal.id,
            "track": self.track,
            "action": self.action,
            "previous_status": self.previous,
            "new_status": self.current,
            "invoice": self.invoice.to_dict() if self.invoice is not None else None,
            "proposal": self.proposal.to_dict(),
        }


def _state(value) -> str | None:
    return value.value if value is not None else None


def _require_reason(reason: str | None, field_name: str = "reason") -> str:
    text = (reason or "").strip()
    if not text:
        raise ValidationError(f"A {field_name.replace('_', ' ')} is required", details={field_name: "required"})
    return text


def validate_transition(proposal: Proposal, track: str, action: str) -> dict:
    """Check whether ``action`` is allowed on ``track`` in the current state.

    Returns:
        {"valid": bool, "from": str|None, "to": str|None, "reason": str|None}
    """
    current = proposal.management_approval if track == MANAGEMENT else proposal.client_approval
    rule = APPROVAL_TRANSITIONS.get(track, {}).get(action)
    if not rule:
        return {"valid": False, "from": _state(current), "to": None,
                "reason": f"Unknown action: {track}.{action}"}
    if proposal.is_rejected:
        return {"valid": False, "from": _state(current), "to": _state(rule["to"]),
                "reason": "proposal has been rejected"}
    if track == CLIENT and proposal.management_approval != ManagementApproval.APPROVED:
        return {"valid": False, "from": _state(current), "to": _state(rule["to"]),
                "reason": "management has not approved this proposal"}
    if current not in rule["from"]:
        return {"valid": False, "from": _state(current), "to": _state(rule["to"]),
                "reason": f"Cannot '{action}' from '{_state(current)}'"}
    return {"valid": True, "from": _state(current), "to": _state(rule["to"]), "reason": None}


class ApprovalStateMachine:
    """Transitions on one proposal's management and client approval tracks."""

    def __init__(
        self,
        proposal: Proposal,
        proposals: ProposalPersistence,
        on_both_approved: Callable[[Proposal, Actor], Any] | None = None,
    ) -> None:
        self.proposal = proposal
        self._proposals = proposals
        self._on_both_approved = on_both_approved

    # ── Management track ───────────────────────────────────────────────────

    def send_for_approval(self, actor: Actor) -> TransitionResult:
        """Mark the proposal as submitted to management. No status changes."""
        p = self.proposal
        current = _state(p.management_approval)
        if p.is_rejected:
            raise InvalidTransitionError("Proposal", "send_for_approval", current, "proposal has been rejected")
        if p.management_approval != ManagementApproval.PENDING:
            raise InvalidTransitionError("Proposal", "send_for_approval", current,
                                         "management approval is no longer pending")
        if p.is_sent_for_approval:
            raise InvalidTransitionError("Proposal", "send_for_approval", current, "already sent for approval")

        p.sent_for_approval_at = utcnow()
        p.sent_for_approval_by = actor.id
        p.sent_for_approval_by_name = actor.name
        self._save(actor, "sent_for_approval_at", "sent_for_approval_by", "sent_for_approval_by_name")
        self._log("Proposal sent for approval", actor, "send_for_approval")
        return TransitionResult(p, MANAGEMENT, "send_for_approval", current, current)

    def approve_by_management(self, actor: Actor) -> TransitionResult:
        """pending → approved; releases the proposal to the client."""
        p = self.proposal
        rule = self._check(MANAGEMENT, "approve")
        p.management_approval = ManagementApproval(rule["to"])
        p.management_approved_by = actor.id
        p.management_approved_by_name = actor.name
        p.management_approved_at = utcnow()
        changed = ["management_approval", "management_approved_by",
                   "management_approved_by_name", "management_approved_at"]
        if p.client_approval is None:
            p.client_approval = ClientApproval.PENDING
            changed.append("client_approval")
        self._save(actor, *changed)
        self._log("Proposal approved by management", actor, "management.approve")
        return self._result(MANAGEMENT, "approve", rule, actor)

    def reject_by_management(self, actor: Actor, reason: str | None) -> TransitionResult:
        text = _require_reason(reason)
        p = self.proposal
        rule = self._check(MANAGEMENT, "reject")
        p.management_approval = ManagementApproval(rule["to"])
        p.management_rejected_by = actor.id
        p.management_rejected_by_name = actor.name
        p.management_rejected_at = utcnow()
        p.management_rejection_reason = text
        self._save(actor, "management_approval", "management_rejected_by", "management_rejected_by_name",
                   "management_rejected_at", "management_rejection_reason")
        self._log("Proposal rejected by management", actor, "management.reject")
        return TransitionResult(p, MANAGEMENT, "reject", rule["from"], rule["to"])

    def send_back_for_review(self, actor: Actor) -> TransitionResult:
        """Re-open the proposal for edits by its creator.

        Clears the sent-for-approval marker and puts management back to
        pending. A client track that was only released (pending) is withdrawn;
        a client approval that already landed is kept.
        """
        p = self.proposal
        current = _state(p.management_approval)
        if p.is_rejected:
            raise InvalidTransitionError("Proposal", "send_back_for_review", current,
                                         "proposal has been rejected")

        p.sent_for_approval_at = None
        p.sent_for_approval_by = None
        p.sent_for_approval_by_name = None
        p.management_approval = ManagementApproval.PENDING
        p.management_approved_by = None
        p.management_approved_by_name = None
        p.management_approved_at = None
        changed = ["sent_for_approval_at", "sent_for_approval_by", "sent_for_approval_by_name",
                   "management_approval", "management_approved_by",
                   "management_approved_by_name", "management_approved_at"]
        if p.client_approval in (ClientApproval.PENDING, ClientApproval.REQUEST_CHANGES):
            p.client_approval = None
            changed.append("client_approval")
        self._save(actor, *changed)
        self._log("Proposal sent back for review", actor, "send_back_for_review")
        return TransitionResult(p, MANAGEMENT, "send_back_for_review", current, _state(p.management_approval))

    # ── Client track ───────────────────────────────────────────────────────

    def approve_by_client(self, actor: Actor) -> TransitionResult:
        """pending | request_changes → approved; only after management approval."""
        p = self.proposal
        rule = self._check(CLIENT, "approve")
        p.client_approval = ClientApproval(rule["to"])
        p.client_approved_by = actor.id
        p.client_approved_by_name = actor.name
        p.client_approved_at = utcnow()
        self._save(actor, "client_approval", "client_approved_by", "client_approved_by_name", "client_approved_at")
        self._log("Proposal approved by client", actor, "client.approve")
        return self._result(CLIENT, "approve", rule, actor)

    def reject_by_client(self, actor: Actor, reason: str | None) -> TransitionResult:
        text = _require_reason(reason)
        p = self.proposal
        rule = self._check(CLIENT, "reject")
        p.client_approval = ClientApproval(rule["to"])
        p.client_rejected_by = actor.id
        p.client_rejected_by_name = actor.name
        p.client_rejected_at = utcnow()
        p.client_rejection_reason = text
        self._save(actor, "client_approval", "client_rejected_by", "client_rejected_by_name",
                   "client_rejected_at", "client_rejection_reason")
        self._log("Proposal rejected by client", actor, "client.reject")
        return TransitionResult(p, CLIENT, "reject", rule["from"], rule["to"])

    def request_changes_by_client(self, actor: Actor, reason: str | None) -> TransitionResult:
        text = _require_reason(reason)
        p = self.proposal
        rule = self._check(CLIENT, "request_changes")
        p.client_approval = ClientApproval(rule["to"])
        p.client_change_requested_by = actor.id
        p.client_change_requested_by_name = actor.name
        p.client_change_requested_at = utcnow()
        p.client_change_request_reason = text
        self._save(actor, "client_approval", "client_change_requested_by", "client_change_requested_by_name",
                   "client_change_requested_at", "client_change_request_reason")
        self._log("Client requested changes", actor, "client.request_changes")
        return TransitionResult(p, CLIENT, "request_changes", rule["from"], rule["to"])

    # ── Content ────────────────────────────────────────────────────────────

    def update_content(
        self,
        actor: Actor,
        *,
        line_items: list | None = None,
        gc_percent=None,
        supervision: dict | Supervision | None = None,
        discount=None,
        client_name: str | None = None,
        description: str | None = None,
    ) -> Proposal:
        """Replace editable content and recompute the derived totals.

        Only allowed while management approval is pending and the proposal
        has not been sent for approval. Arguments left as None are unchanged.
        """
        p = self.proposal
        if not p.is_editable:
            raise InvalidTransitionError(
                "Proposal", "update_content", _state(p.management_approval),
                "proposal is locked while under review",
            )
        if client_name is not None and not client_name.strip():
            raise ValidationError("Client name is required", details={"client_name": "required"})

        if line_items is not None:
            p.line_items = [li if isinstance(li, LineItem) else LineItem.from_dict(li) for li in line_items]
        if gc_percent is not None:
            p.general_conditions_percentage = gc_percent
        if supervision is not None:
            p.supervision = coerce_supervision(supervision)
        if discount is not None:
            p.discount = discount
        if client_name is not None:
            p.client_name = client_name.strip()
        if description is not None:
            p.description = description

        refresh_totals(p)
        self._save(actor, *_CONTENT_FIELDS)
        self._log("Proposal content updated", actor, "update_content")
        return p

    # ── Internals ──────────────────────────────────────────────────────────

    def _check(self, track: str, action: str) -> dict:
        validation = validate_transition(self.proposal, track, action)
        if not validation["valid"]:
            raise InvalidTransitionError(
                "Proposal", f"{track}.{action}", validation["from"], validation["reason"],
            )
        return validation

    def _result(self, track: str, action: str, rule: dict, actor: Actor) -> TransitionResult:
        invoice = None
        if self.proposal.both_approved and self._on_both_approved is not None:
            invoice = self._on_both_approved(self.proposal, actor)
        return TransitionResult(self.proposal, track, action, rule["from"], rule["to"], invoice=invoice)

    def _save(self, actor: Actor, *names: str) -> None:
        fields = proposal_fields(self.proposal, *names)
        persist(
            PersistenceCommand(UPDATE_PROPOSAL, self.proposal.id, fields),
            self._proposals.update_proposal, self.proposal.id, fields, actor,
        )

    def _log(self, message: str, actor: Actor, event_type: str) -> None:
        logger.info(
            message,
            extra={"proposal_id": self.proposal.id, "actor_id": actor.id, "event_type": event_type},
        )


def coerce_supervision(value) -> Supervision:
    if isinstance(value, Supervision):
        return value
    value = value or {}
    return Supervision(type=parse_supervision_type(value.get("type")), weeks=value.get("weeks", 0))


def refresh_totals(proposal: Proposal) -> Proposal:
    """Write the pricing calculator's breakdown onto the proposal."""
    breakdown = proposal_breakdown(proposal)
    proposal.items_total = breakdown.items_total
    proposal.supervision_fee = breakdown.supervision_fee
    proposal.general_conditions = breakdown.general_conditions
    proposal.total_cost = breakdown.total_cost
    return proposal


def proposal_fields(proposal: Proposal, *names: str) -> dict:
    """Partial-update payload: enum members as values, nested objects as dicts."""
    fields = {}
    for name in names:
        value = getattr(proposal, name)
        if name == "line_items":
            value = [li.to_dict() for li in value]
        elif name == "supervision":
            value = value.to_dict()
        elif hasattr(value, "value"):
            value = value.value
        fields[name] = value
    return fields
