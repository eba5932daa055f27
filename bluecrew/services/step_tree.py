"""
Step Tree Store — local-first mutations of one work breakdown.

Owns the work titles / work descriptions of a single project or change order
and keeps two invariants after every operation:
    - sibling order indices are exactly 0..n-1
    - a work title with children carries the status derived from them

Each operation mutates the in-memory tree, recomputes progress, then
dispatches the equivalent persistence commands. If a command fails,
PersistenceFailure propagates and the in-memory change is NOT rolled back;
callers reconcile by retrying the failed command or by reloading the tree.

Usage:
    store = StepTreeStore.for_project(project, steps=step_store, projects=project_store)
    store.add_work_item("Demolition", "Remove existing kitchen", price=4200)
    store.set_status(child_id, "finished", is_child=True, parent_id=title_id)
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from typing import Callable

from bluecrew.core.entities import (
    ChangeOrder,
    OwnerKind,
    Project,
    StepStatus,
    WorkBreakdown,
    WorkDescription,
    WorkItem,
)
from bluecrew.core.exceptions import (
    InvalidTransitionError,
    NotFoundError,
    ParentNotFoundError,
    ValidationError,
)
from bluecrew.services.persistence import (
    CREATE_STEP,
    DELETE_STEP,
    UPDATE_PROJECT,
    UPDATE_STEP,
    PersistenceCommand,
    ProjectPersistence,
    StepPersistence,
    dispatch,
)
from bluecrew.services.progress import apply_derived_status, calculate_progress
from bluecrew.utils.helpers import coerce_number

logger = logging.getLogger(__name__)


def parse_step_status(value) -> StepStatus:
    """Validate a status coming from a caller; raise ValidationError if unknown."""
    if isinstance(value, StepStatus):
        return value
    try:
        return StepStatus(str(value or "").strip())
    except ValueError:
        raise ValidationError(
            f"Invalid status '{value}'",
            details={"status": f"must be one of: {', '.join(s.value for s in StepStatus)}"},
        ) from None


@dataclass
class MutationResult:
    """What a store operation did: the new progress and the commands it sent."""
    progress: int
    commands: list[PersistenceCommand] = field(default_factory=list)
    step: WorkItem | WorkDescription | None = None

    def to_dict(self) -> dict:
        return {
            "progress_percentage": self.progress,
            "step": self.step.to_dict() if self.step is not None else None,
            "commands": [c.to_dict() for c in self.commands],
        }


class StepTreeStore:
    """Mutation operations over one WorkBreakdown."""

    def __init__(
        self,
        breakdown: WorkBreakdown,
        steps: StepPersistence,
        projects: ProjectPersistence | None = None,
        project: Project | None = None,
        id_factory: Callable[[], str] | None = None,
    ) -> None:
        self.breakdown = breakdown
        self.project = project
        self._steps = steps
        self._projects = projects
        self._new_id = id_factory or (lambda: str(uuid.uuid4()))
        self._progress = calculate_progress(breakdown.items)

    @classmethod
    def for_project(cls, project: Project, steps: StepPersistence,
                    projects: ProjectPersistence, **kwargs) -> StepTreeStore:
        return cls(project.breakdown, steps, projects=projects, project=project, **kwargs)

    @classmethod
    def for_change_order(cls, order: ChangeOrder, steps: StepPersistence, **kwargs) -> StepTreeStore:
        return cls(order.breakdown, steps, **kwargs)

    @property
    def items(self) -> list[WorkItem]:
        return self.breakdown.items

    @property
    def progress(self) -> int:
        return self._progress

    # ── Operations ─────────────────────────────────────────────────────────

    def add_work_item(self, name: str, description: str = "", price=None) -> MutationResult:
        """Append a pending work title with the next order index."""
        self._guard_writable("add_work_item")
        name = (name or "").strip()
        if not name:
            raise ValidationError("Work title name is required", details={"name": "required"})
        if price is None or (isinstance(price, str) and not price.strip()):
            raise ValidationError("Work title price is required", details={"price": "required"})

        item = WorkItem(
            id=self._new_id(),
            name=name,
            description=(description or "").strip(),
            price=coerce_number(price),
            order_index=len(self.items),
        )
        self.items.append(item)
        command = PersistenceCommand(
            kind=CREATE_STEP,
            target_id=item.id,
            owner_id=self.breakdown.owner_id,
            fields=self._parent_payload(item),
        )
        logger.info("Work title added", extra=self._log_extra(step_id=item.id))
        return self._finish([command], step=item)

    def add_work_description(self, parent_id: str, name: str, description: str = "") -> MutationResult:
        """Append a pending work description under ``parent_id``.

        Raises ParentNotFoundError when the parent is not in the loaded tree
        (possibly stale): reload and retry instead of dropping the write.
        """
        self._guard_writable("add_work_description")
        parent = self.breakdown.find_item(parent_id)
        if parent is None:
            raise ParentNotFoundError(parent_id)
        name = (name or "").strip()
        if not name:
            raise ValidationError("Work description name is required", details={"name": "required"})

        child = WorkDescription(id=self._new_id(), name=name, description=(description or "").strip())
        parent.children.append(child)
        commands = [PersistenceCommand(
            kind=CREATE_STEP,
            target_id=child.id,
            owner_id=self.breakdown.owner_id,
            fields=self._child_payload(child, parent),
        )]
        commands += self._rederive(parent)
        logger.info("Work description added", extra=self._log_extra(step_id=child.id))
        return self._finish(commands, step=child)

    def move_work_item(self, item_id: str, to_index: int) -> MutationResult:
        """Move a work title among work titles only and renumber 0..n-1.

        ``to_index`` is clamped to the valid range. One update command is
        issued per sibling whose index actually changed.
        """
        self._guard_writable("move_work_item")
        item = self.breakdown.find_item(item_id)
        if item is None:
            raise NotFoundError("WorkItem", item_id)
        try:
            target = int(to_index)
        except (TypeError, ValueError):
            raise ValidationError("to_index must be an integer", details={"to_index": "invalid"}) from None

        self.items.remove(item)
        target = max(0, min(target, len(self.items)))
        self.items.insert(target, item)
        return self._finish(self._renumber(), step=item)

    def set_status(self, step_id: str, new_status, is_child: bool = False,
                   parent_id: str | None = None) -> MutationResult:
        """Set a step's status, re-derive its parent, recompute progress.

        A work title that has children cannot be set directly: its status is
        derived from them.
        """
        self._guard_writable("set_status")
        status = parse_step_status(new_status)

        if is_child:
            parent, child = self._resolve_child(step_id, parent_id)
            child.status = status
            commands = [PersistenceCommand(UPDATE_STEP, child.id, {"status": status.value})]
            commands += self._rederive(parent)
            step = child
        else:
            item = self.breakdown.find_item(step_id)
            if item is None:
                raise NotFoundError("WorkItem", step_id)
            if item.has_children:
                raise InvalidTransitionError(
                    "WorkItem", "set_status", item.status.value,
                    "status is derived from its work descriptions",
                )
            item.status = status
            commands = [PersistenceCommand(UPDATE_STEP, item.id, {"status": status.value})]
            step = item

        logger.info(
            "Step status set to %s", status.value,
            extra=self._log_extra(step_id=step_id),
        )
        return self._finish(commands, step=step)

    def toggle_manual_override(self, child_id: str, parent_id: str) -> MutationResult:
        """Flip a work description's checkmark.

        On → status finished. Off → status pending.
        """
        self._guard_writable("toggle_manual_override")
        parent, child = self._resolve_child(child_id, parent_id)
        child.manual_override = not child.manual_override
        child.status = StepStatus.FINISHED if child.manual_override else StepStatus.PENDING
        commands = [PersistenceCommand(
            UPDATE_STEP, child.id,
            {"manual_override": child.manual_override, "status": child.status.value},
        )]
        commands += self._rederive(parent)
        logger.info(
            "Manual override %s", "set" if child.manual_override else "cleared",
            extra=self._log_extra(step_id=child_id),
        )
        return self._finish(commands, step=child)

    def delete_work_item(self, item_id: str) -> MutationResult:
        """Remove a work title and all its descriptions, then renumber."""
        self._guard_writable("delete_work_item")
        item = self.breakdown.find_item(item_id)
        if item is None:
            raise NotFoundError("WorkItem", item_id)
        self.items.remove(item)
        commands = [PersistenceCommand(DELETE_STEP, item.id)]
        commands += self._renumber()
        logger.info("Work title deleted", extra=self._log_extra(step_id=item_id))
        return self._finish(commands)

    def delete_work_description(self, child_id: str, parent_id: str) -> MutationResult:
        self._guard_writable("delete_work_description")
        parent, child = self._resolve_child(child_id, parent_id)
        parent.children.remove(child)
        commands = [PersistenceCommand(DELETE_STEP, child.id)]
        commands += self._rederive(parent)
        logger.info("Work description deleted", extra=self._log_extra(step_id=child_id))
        return self._finish(commands, step=parent)

    def recalculate(self) -> MutationResult:
        """Re-derive every parent and recompute progress (e.g. after a reload)."""
        commands: list[PersistenceCommand] = []
        for item in self.items:
            commands += self._rederive(item)
        return self._finish(commands)

    # ── Internals ──────────────────────────────────────────────────────────

    def _guard_writable(self, action: str) -> None:
        if self.project is not None and self.project.is_completed:
            raise InvalidTransitionError(
                "Project", action, self.project.status.value, "completed projects are read-only",
            )

    def _resolve_child(self, child_id: str, parent_id: str | None) -> tuple[WorkItem, WorkDescription]:
        if parent_id is None:
            parent, child = self.breakdown.find_child(child_id)
            if child is None:
                raise NotFoundError("WorkDescription", child_id)
            return parent, child
        parent = self.breakdown.find_item(parent_id)
        if parent is None:
            raise ParentNotFoundError(parent_id)
        child = parent.find_child(child_id)
        if child is None:
            raise NotFoundError("WorkDescription", child_id)
        return parent, child

    def _rederive(self, parent: WorkItem) -> list[PersistenceCommand]:
        if not apply_derived_status(parent):
            return []
        return [PersistenceCommand(
            UPDATE_STEP, parent.id,
            {"status": parent.status.value, "manual_override": parent.manual_override},
        )]

    def _renumber(self) -> list[PersistenceCommand]:
        commands = []
        for index, item in enumerate(self.items):
            if item.order_index != index:
                item.order_index = index
                commands.append(PersistenceCommand(UPDATE_STEP, item.id, {"order_index": index}))
        return commands

    def _parent_payload(self, item: WorkItem) -> dict:
        return {
            "id": item.id,
            "owner_kind": self.breakdown.owner_kind.value,
            "step_type": "parent",
            "parent_step_id": None,
            "name": item.name,
            "description": item.description,
            "price": item.price,
            "status": item.status.value,
            "order_index": item.order_index,
            "manual_override": item.manual_override,
        }

    def _child_payload(self, child: WorkDescription, parent: WorkItem) -> dict:
        return {
            "id": child.id,
            "owner_kind": self.breakdown.owner_kind.value,
            "step_type": "child",
            "parent_step_id": parent.id,
            "name": child.name,
            "description": child.description,
            "price": None,
            "status": child.status.value,
            "order_index": parent.children.index(child),
            "manual_override": child.manual_override,
        }

    def _finish(self, commands: list[PersistenceCommand], step=None) -> MutationResult:
        self._progress = calculate_progress(self.items)
        if self.project is not None and self.project.progress_percentage != self._progress:
            self.project.progress_percentage = self._progress
            commands.append(PersistenceCommand(
                UPDATE_PROJECT, self.project.id, {"progress_percentage": self._progress},
            ))

        results = dispatch(commands, steps=self._steps, projects=self._projects)
        for result in results:
            if result.command.kind == CREATE_STEP and result.value and result.value != result.command.target_id:
                self._adopt_id(result.command.target_id, str(result.value))
        return MutationResult(progress=self._progress, commands=commands, step=step)

    def _adopt_id(self, provisional_id: str, stored_id: str) -> None:
        item = self.breakdown.find_item(provisional_id)
        if item is not None:
            item.id = stored_id
            return
        _, child = self.breakdown.find_child(provisional_id)
        if child is not None:
            child.id = stored_id

    def _log_extra(self, **extra) -> dict:
        key = "project_id" if self.breakdown.owner_kind == OwnerKind.PROJECT else "change_order_id"
        return {key: self.breakdown.owner_id, **extra}
