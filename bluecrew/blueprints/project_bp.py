"""
Project Blueprint — work breakdown, progress and completion.

Endpoints:
    GET    /api/v1/projects/<pid>
    POST   /api/v1/projects/<pid>/steps                                   {name, description, price}
    POST   /api/v1/projects/<pid>/steps/<step_id>/descriptions           {name, description}
    PATCH  /api/v1/projects/<pid>/steps/<step_id>/status                 {status, parent_id?}
    POST   /api/v1/projects/<pid>/steps/<step_id>/move                   {to_index}
    POST   /api/v1/projects/<pid>/steps/<parent_id>/descriptions/<child_id>/override
    DELETE /api/v1/projects/<pid>/steps/<step_id>[?parent_id=]
    POST   /api/v1/projects/<pid>/complete
    GET    /api/v1/projects/<pid>/change-orders
    POST   /api/v1/projects/<pid>/change-orders                          {title, description, work_titles}

Layer contract:
    - Blueprint: parse input, resolve the actor, call the service, return JSON.
    - NO db.session calls here; errors map to JSON in the app factory.
"""

import logging

from flask import Blueprint, jsonify, request

from bluecrew.blueprints import coordinator, current_actor, json_body

logger = logging.getLogger(__name__)

project_bp = Blueprint("projects", __name__, url_prefix="/api/v1")


@project_bp.route("/projects/<project_id>", methods=["GET"])
def get_project(project_id):
    project = coordinator().get_project(project_id)
    return jsonify(project.to_dict())


# ── Step tree ─────────────────────────────────────────────────────────────


@project_bp.route("/projects/<project_id>/steps", methods=["POST"])
def add_work_item(project_id):
    data = json_body()
    svc = coordinator()
    store = svc.step_store(svc.get_project(project_id))
    result = store.add_work_item(data.get("name"), data.get("description", ""), data.get("price"))
    return jsonify(result.to_dict()), 201


@project_bp.route("/projects/<project_id>/steps/<step_id>/descriptions", methods=["POST"])
def add_work_description(project_id, step_id):
    data = json_body()
    svc = coordinator()
    store = svc.step_store(svc.get_project(project_id))
    result = store.add_work_description(step_id, data.get("name"), data.get("description", ""))
    return jsonify(result.to_dict()), 201


@project_bp.route("/projects/<project_id>/steps/<step_id>/status", methods=["PATCH"])
def set_step_status(project_id, step_id):
    data = json_body()
    parent_id = data.get("parent_id")
    svc = coordinator()
    store = svc.step_store(svc.get_project(project_id))
    result = store.set_status(step_id, data.get("status"), is_child=bool(parent_id), parent_id=parent_id)
    return jsonify(result.to_dict())


@project_bp.route("/projects/<project_id>/steps/<step_id>/move", methods=["POST"])
def move_work_item(project_id, step_id):
    data = json_body()
    svc = coordinator()
    store = svc.step_store(svc.get_project(project_id))
    result = store.move_work_item(step_id, data.get("to_index"))
    return jsonify(result.to_dict())


@project_bp.route(
    "/projects/<project_id>/steps/<parent_id>/descriptions/<child_id>/override",
    methods=["POST"],
)
def toggle_override(project_id, parent_id, child_id):
    svc = coordinator()
    store = svc.step_store(svc.get_project(project_id))
    result = store.toggle_manual_override(child_id, parent_id)
    return jsonify(result.to_dict())


@project_bp.route("/projects/<project_id>/steps/<step_id>", methods=["DELETE"])
def delete_step(project_id, step_id):
    parent_id = request.args.get("parent_id")
    svc = coordinator()
    store = svc.step_store(svc.get_project(project_id))
    if parent_id:
        result = store.delete_work_description(step_id, parent_id)
    else:
        result = store.delete_work_item(step_id)
    return jsonify(result.to_dict())


# ── Completion ────────────────────────────────────────────────────────────


@project_bp.route("/projects/<project_id>/complete", methods=["POST"])
def complete_project(project_id):
    actor = current_actor()
    svc = coordinator()
    project = svc.mark_project_complete(svc.get_project(project_id), actor)
    return jsonify(project.to_dict())


# ── Change orders ─────────────────────────────────────────────────────────


@project_bp.route("/projects/<project_id>/change-orders", methods=["GET"])
def change_order_totals(project_id):
    svc = coordinator()
    return jsonify(svc.change_order_totals(svc.get_project(project_id)))


@project_bp.route("/projects/<project_id>/change-orders", methods=["POST"])
def create_change_order(project_id):
    actor = current_actor()
    data = json_body()
    svc = coordinator()
    order = svc.create_change_order(
        svc.get_project(project_id), actor,
        title=data.get("title"),
        description=data.get("description", ""),
        work_titles=data.get("work_titles") or [],
    )
    return jsonify(order.to_dict()), 201
