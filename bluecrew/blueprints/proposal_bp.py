"""
Proposal Blueprint — dual approval, invoices and change-order approval.

Endpoints:
    POST   /api/v1/proposals                                   {client_name, line_items, general_conditions_percentage, supervision, discount}
    GET    /api/v1/proposals/<id>
    PUT    /api/v1/proposals/<id>                              content update (editable proposals only)
    POST   /api/v1/proposals/<id>/send-for-approval
    POST   /api/v1/proposals/<id>/management/approve
    POST   /api/v1/proposals/<id>/management/reject            {reason}
    POST   /api/v1/proposals/<id>/send-back
    POST   /api/v1/proposals/<id>/client/approve
    POST   /api/v1/proposals/<id>/client/reject                {reason}
    POST   /api/v1/proposals/<id>/client/request-changes       {reason}
    GET    /api/v1/proposals/<id>/invoice
    POST   /api/v1/proposals/<id>/project                      {title}
    GET    /api/v1/invoices
    GET    /api/v1/invoices/<id>
    POST   /api/v1/invoices/<id>/payments                      {amount}
    PATCH  /api/v1/invoices/<id>/status                        {status}
    POST   /api/v1/change-orders/<id>/approve
    POST   /api/v1/change-orders/<id>/reject                   {reason}
    PATCH  /api/v1/change-orders/<id>/completion               {completion_status}

Layer contract:
    - Blueprint: parse input, resolve the actor, call the service, return JSON.
    - NO db.session calls here; errors map to JSON in the app factory.
"""

import logging

from flask import Blueprint, jsonify

from bluecrew.blueprints import coordinator, current_actor, json_body
from bluecrew.core.exceptions import NotFoundError

logger = logging.getLogger(__name__)

proposal_bp = Blueprint("proposals", __name__, url_prefix="/api/v1")


# ── Proposals ─────────────────────────────────────────────────────────────


@proposal_bp.route("/proposals", methods=["POST"])
def create_proposal():
    actor = current_actor()
    data = json_body()
    proposal = coordinator().create_proposal(
        actor,
        client_name=data.get("client_name"),
        line_items=data.get("line_items") or [],
        gc_percent=data.get("general_conditions_percentage", "18.5"),
        supervision=data.get("supervision"),
        discount=data.get("discount", 0),
        description=data.get("description", ""),
    )
    return jsonify(proposal.to_dict()), 201


@proposal_bp.route("/proposals/<proposal_id>", methods=["GET"])
def get_proposal(proposal_id):
    return jsonify(coordinator().get_proposal(proposal_id).to_dict())


@proposal_bp.route("/proposals/<proposal_id>", methods=["PUT"])
def update_proposal(proposal_id):
    actor = current_actor()
    data = json_body()
    svc = coordinator()
    machine = svc.approval_machine(svc.get_proposal(proposal_id))
    proposal = machine.update_content(
        actor,
        line_items=data.get("line_items"),
        gc_percent=data.get("general_conditions_percentage"),
        supervision=data.get("supervision"),
        discount=data.get("discount"),
        client_name=data.get("client_name"),
        description=data.get("description"),
    )
    return jsonify(proposal.to_dict())


# ── Approval transitions ──────────────────────────────────────────────────

_ACTIONS = {
    "send-for-approval": ("send_for_approval", False),
    "management/approve": ("approve_by_management", False),
    "management/reject": ("reject_by_management", True),
    "send-back": ("send_back_for_review", False),
    "client/approve": ("approve_by_client", False),
    "client/reject": ("reject_by_client", True),
    "client/request-changes": ("request_changes_by_client", True),
}


def _transition(proposal_id: str, route: str):
    method_name, needs_reason = _ACTIONS[route]
    actor = current_actor()
    svc = coordinator()
    machine = svc.approval_machine(svc.get_proposal(proposal_id))
    method = getattr(machine, method_name)
    result = method(actor, json_body().get("reason")) if needs_reason else method(actor)
    return jsonify(result.to_dict())


@proposal_bp.route("/proposals/<proposal_id>/send-for-approval", methods=["POST"])
def send_for_approval(proposal_id):
    return _transition(proposal_id, "send-for-approval")


@proposal_bp.route("/proposals/<proposal_id>/management/approve", methods=["POST"])
def approve_by_management(proposal_id):
    return _transition(proposal_id, "management/approve")


@proposal_bp.route("/proposals/<proposal_id>/management/reject", methods=["POST"])
def reject_by_management(proposal_id):
    return _transition(proposal_id, "management/reject")


@proposal_bp.route("/proposals/<proposal_id>/send-back", methods=["POST"])
def send_back_for_review(proposal_id):
    return _transition(proposal_id, "send-back")


@proposal_bp.route("/proposals/<proposal_id>/client/approve", methods=["POST"])
def approve_by_client(proposal_id):
    return _transition(proposal_id, "client/approve")


@proposal_bp.route("/proposals/<proposal_id>/client/reject", methods=["POST"])
def reject_by_client(proposal_id):
    return _transition(proposal_id, "client/reject")


@proposal_bp.route("/proposals/<proposal_id>/client/request-changes", methods=["POST"])
def request_changes_by_client(proposal_id):
    return _transition(proposal_id, "client/request-changes")


# ── Invoice & project creation ────────────────────────────────────────────


@proposal_bp.route("/proposals/<proposal_id>/invoice", methods=["GET"])
def get_proposal_invoice(proposal_id):
    invoice = coordinator().invoice_for(proposal_id)
    if invoice is None:
        raise NotFoundError("Invoice", f"proposal:{proposal_id}")
    return jsonify(invoice.to_dict())


@proposal_bp.route("/proposals/<proposal_id>/project", methods=["POST"])
def create_project(proposal_id):
    actor = current_actor()
    svc = coordinator()
    project = svc.create_project_from_proposal(
        svc.get_proposal(proposal_id), actor, title=json_body().get("title"),
    )
    return jsonify(project.to_dict()), 201


@proposal_bp.route("/invoices", methods=["GET"])
def list_invoices():
    invoices = coordinator().invoices.get_invoices()
    return jsonify({"items": [i.to_dict() for i in invoices], "total": len(invoices)})


@proposal_bp.route("/invoices/<invoice_id>", methods=["GET"])
def get_invoice(invoice_id):
    return jsonify(coordinator().get_invoice(invoice_id).to_dict())


@proposal_bp.route("/invoices/<invoice_id>/payments", methods=["POST"])
def record_payment(invoice_id):
    actor = current_actor()
    svc = coordinator()
    invoice = svc.record_payment(svc.get_invoice(invoice_id), json_body().get("amount"), actor)
    return jsonify(invoice.to_dict()), 201


@proposal_bp.route("/invoices/<invoice_id>/status", methods=["PATCH"])
def update_invoice_status(invoice_id):
    actor = current_actor()
    svc = coordinator()
    invoice = svc.update_invoice_status(svc.get_invoice(invoice_id), json_body().get("status"), actor)
    return jsonify(invoice.to_dict())


# ── Change-order approval ─────────────────────────────────────────────────


@proposal_bp.route("/change-orders/<order_id>/approve", methods=["POST"])
def approve_change_order(order_id):
    actor = current_actor()
    svc = coordinator()
    order = svc.approve_change_order(svc.get_change_order(order_id), actor)
    return jsonify(order.to_dict())


@proposal_bp.route("/change-orders/<order_id>/reject", methods=["POST"])
def reject_change_order(order_id):
    actor = current_actor()
    svc = coordinator()
    order = svc.reject_change_order(svc.get_change_order(order_id), actor, json_body().get("reason"))
    return jsonify(order.to_dict())


@proposal_bp.route("/change-orders/<order_id>/completion", methods=["PATCH"])
def set_change_order_completion(order_id):
    actor = current_actor()
    svc = coordinator()
    order = svc.set_change_order_completion(
        svc.get_change_order(order_id), json_body().get("completion_status"), actor,
    )
    return jsonify(order.to_dict())
