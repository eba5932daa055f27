"""
Persistence contracts consumed by the core, and the command objects used to
reach them.

The core never talks to a database directly. Every mutation is applied to the
in-memory aggregate first and then expressed as a ``PersistenceCommand``
(the mutation intent). ``dispatch`` runs a batch of commands against the
collaborators in order and stops at the first failure:

    results = dispatch(commands, steps=step_store, projects=project_store)

On failure ``PersistenceFailure`` is raised carrying the failed command and
the commands that had already succeeded. Nothing is rolled back: the caller
picks the reconciliation policy (retry the failed command, or reload).

Implementations:
    bluecrew.services.sql_persistence — Flask-SQLAlchemy adapters
    tests/fakes.py                    — in-memory doubles for unit tests
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Iterable

from bluecrew.core.entities import Actor, ChangeOrder, Invoice, Project, Proposal
from bluecrew.core.exceptions import ConflictError, NotFoundError, PersistenceFailure

logger = logging.getLogger(__name__)


# ═════════════════════════════════════════════════════════════════════════════
# Contracts
# ═════════════════════════════════════════════════════════════════════════════

class StepPersistence(ABC):
    """Work titles and work descriptions, stored flat with a parent pointer."""

    @abstractmethod
    def create_step(self, owner_id: str, data: dict) -> str:
        """Store a new step and return its id."""

    @abstractmethod
    def update_step(self, step_id: str, fields: dict) -> None:
        """Apply a partial update; fields not named are left untouched."""

    @abstractmethod
    def delete_step(self, step_id: str) -> None:
        """Delete a step. Deleting a work title deletes its descriptions."""


class ProjectPersistence(ABC):

    @abstractmethod
    def create_project(self, project: Project) -> str:
        """Store a project and its whole work breakdown; return the project id."""

    @abstractmethod
    def get_project_by_id(self, project_id: str) -> Project | None:
        """Load a project with its work breakdown, or None."""

    @abstractmethod
    def get_project_by_proposal_id(self, proposal_id: str) -> Project | None:
        """The project created from a proposal, or None."""

    @abstractmethod
    def update_project(self, project_id: str, fields: dict, actor: Actor | None = None) -> None:
        """Apply a partial update to the project row.

        ``actor`` is who made the change, for the audit trail; None for
        system updates such as progress write-back.
        """

    @abstractmethod
    def delete_project(self, project_id: str) -> None:
        """Delete a project and its steps."""


class ProposalPersistence(ABC):

    @abstractmethod
    def create_proposal(self, proposal: Proposal) -> str:
        """Store a new proposal; return its id."""

    @abstractmethod
    def update_proposal(self, proposal_id: str, fields: dict, actor: Actor | None = None) -> None:
        """Apply a partial update to the proposal on behalf of ``actor``."""

    @abstractmethod
    def get_proposal_by_id(self, proposal_id: str) -> Proposal | None:
        """Load a proposal, or None."""

    @abstractmethod
    def delete_proposal(self, proposal_id: str) -> None:
        """Delete a proposal."""

    @abstractmethod
    def generate_proposal_number(self) -> str:
        """Return a unique proposal number (PROP-<year>-<NNNN>)."""


class InvoicePersistence(ABC):

    @abstractmethod
    def create_invoice(self, invoice: Invoice) -> str:
        """Store a new invoice; return its id."""

    @abstractmethod
    def update_invoice(self, invoice_id: str, fields: dict, actor: Actor | None = None) -> None:
        """Apply a partial update (status, payment and project link fields only)."""

    @abstractmethod
    def generate_invoice_number(self) -> str:
        """Return a unique invoice number (INV-<year>-<NNNN>)."""

    @abstractmethod
    def get_invoices(self) -> list[Invoice]:
        """All invoices, newest first."""

    @abstractmethod
    def get_invoice_by_id(self, invoice_id: str) -> Invoice | None:
        """Load an invoice, or None."""

    @abstractmethod
    def get_invoice_by_proposal_id(self, proposal_id: str) -> Invoice | None:
        """The invoice created for a proposal, or None."""


class ChangeOrderPersistence(ABC):

    @abstractmethod
    def create_change_order(self, order: ChangeOrder) -> str:
        """Store a change order and its work breakdown; return its id."""

    @abstractmethod
    def get_change_order_by_id(self, order_id: str) -> ChangeOrder | None:
        """Load a change order with its work breakdown, or None."""

    @abstractmethod
    def get_change_orders_by_project(self, project_id: str) -> list[ChangeOrder]:
        """All change orders raised against a project."""

    @abstractmethod
    def update_change_order(self, order_id: str, fields: dict, actor: Actor | None = None) -> None:
        """Apply a partial update to the change order row on behalf of ``actor``."""


# ═════════════════════════════════════════════════════════════════════════════
# Commands
# ═════════════════════════════════════════════════════════════════════════════

CREATE_STEP = "create_step"
UPDATE_STEP = "update_step"
DELETE_STEP = "delete_step"
UPDATE_PROJECT = "update_project"

COMMAND_KINDS = frozenset({CREATE_STEP, UPDATE_STEP, DELETE_STEP, UPDATE_PROJECT})

# Single calls made outside a step batch; reported on PersistenceFailure the
# same way.
CREATE_PROJECT = "create_project"
CREATE_PROPOSAL = "create_proposal"
UPDATE_PROPOSAL = "update_proposal"
CREATE_INVOICE = "create_invoice"
UPDATE_INVOICE = "update_invoice"
CREATE_CHANGE_ORDER = "create_change_order"
UPDATE_CHANGE_ORDER = "update_change_order"


@dataclass
class PersistenceCommand:
    """One queued persistence call.

    ``target_id`` is the step id (create/update/delete step) or the project id
    (update_project). For CREATE_STEP ``owner_id`` names the project or change
    order the step belongs to and ``fields`` is the full step payload.
    """
    kind: str
    target_id: str | None
    fields: dict = field(default_factory=dict)
    owner_id: str | None = None

    def to_dict(self) -> dict:
        return {
            "kind": self.kind,
            "target_id": self.target_id,
            "owner_id": self.owner_id,
            "fields": dict(self.fields),
        }


@dataclass
class CommandResult:
    command: PersistenceCommand
    value: Any = None


def _execute(command: PersistenceCommand, steps: StepPersistence | None,
             projects: ProjectPersistence | None) -> Any:
    if command.kind == CREATE_STEP:
        return steps.create_step(command.owner_id, dict(command.fields))
    if command.kind == UPDATE_STEP:
        return steps.update_step(command.target_id, dict(command.fields))
    if command.kind == DELETE_STEP:
        return steps.delete_step(command.target_id)
    if command.kind == UPDATE_PROJECT:
        return projects.update_project(command.target_id, dict(command.fields))
    raise ValueError(f"Unknown persistence command: {command.kind}")


def dispatch(
    commands: Iterable[PersistenceCommand],
    steps: StepPersistence | None = None,
    projects: ProjectPersistence | None = None,
) -> list[CommandResult]:
    """Run commands in order; raise PersistenceFailure at the first error.

    There is no retry and no rollback here. Commands that ran before the
    failure stay persisted and are reported on the exception.
    """
    results: list[CommandResult] = []
    for command in commands:
        try:
            value = _execute(command, steps, projects)
        except PersistenceFailure as exc:
            logger.warning(
                "Persistence command failed",
                extra={"event_type": command.kind, "target_id": command.target_id},
            )
            raise PersistenceFailure(
                command, completed=[r.command for r in results], cause=exc.cause or exc,
            ) from exc
        except Exception as exc:
            logger.warning(
                "Persistence command failed: %s", exc,
                extra={"event_type": command.kind, "target_id": command.target_id},
            )
            raise PersistenceFailure(
                command, completed=[r.command for r in results], cause=exc,
            ) from exc
        results.append(CommandResult(command=command, value=value))
    return results


def persist(command: PersistenceCommand, call, *args) -> Any:
    """Run one collaborator call outside a batch, wrapping failures like ``dispatch``.

    Usage:
        persist(PersistenceCommand(UPDATE_PROPOSAL, p.id, fields),
                proposals.update_proposal, p.id, fields)
    """
    try:
        return call(*args)
    except (ConflictError, NotFoundError):
        raise
    except PersistenceFailure as exc:
        logger.warning(
            "Persistence call failed",
            extra={"event_type": command.kind, "target_id": command.target_id},
        )
        raise PersistenceFailure(command, cause=exc.cause or exc) from exc
    except Exception as exc:
        logger.warning(
            "Persistence call failed: %s", exc,
            extra={"event_type": command.kind, "target_id": command.target_id},
        )
        raise PersistenceFailure(command, cause=exc) from exc
