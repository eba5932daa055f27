"""
Blueprint registry and request helpers shared by the API blueprints.
"""

from flask import request

from bluecrew.core.entities import Actor
from bluecrew.core.exceptions import ValidationError
from bluecrew.services.sql_persistence import build_stores
from bluecrew.services.workflow import WorkflowCoordinator


def current_actor() -> Actor:
    """Actor for audit fields, taken from the X-Actor-* headers.

    Authentication happens upstream; this layer only records who acted.
    """
    actor_id = (request.headers.get("X-Actor-Id") or "").strip()
    if not actor_id:
        raise ValidationError("X-Actor-Id header is required", details={"X-Actor-Id": "required"})
    return Actor(
        id=actor_id,
        name=(request.headers.get("X-Actor-Name") or "").strip(),
        role=(request.headers.get("X-Actor-Role") or "").strip(),
    )


def coordinator() -> WorkflowCoordinator:
    return WorkflowCoordinator(**build_stores())


def json_body() -> dict:
    return request.get_json(silent=True) or {}
