"""
Exception hierarchy shared by the progress engine and the approval workflow.

Every service raises one of these types; blueprints register handlers against
them once and get consistent HTTP status codes everywhere.

Usage:
    from bluecrew.core.exceptions import NotFoundError, ValidationError

    raise NotFoundError(resource="Proposal", resource_id="p-1")
    raise ValidationError("A rejection reason is required", details={"reason": "required"})

None of these are fatal: each one describes a single failed operation that
the caller can recover from by correcting input, retrying, or reloading.
"""


class NotFoundError(Exception):
    """Raised when a requested entity does not exist in the loaded state.

    Args:
        resource: Human-readable entity name (e.g. "Project", "WorkItem").
        resource_id: The id that was looked up.
    """

    retryable = False

    def __init__(self, resource: str, resource_id: int | str | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        super().__init__(msg)


class ParentNotFoundError(NotFoundError):
    """Raised when a child step targets a parent missing from the loaded tree.

    The tree may simply be stale (another session added the parent after this
    one loaded), so the caller should reload and retry rather than drop the
    write.
    """

    retryable = True

    def __init__(self, parent_id: str) -> None:
        super().__init__(resource="WorkItem", resource_id=parent_id)
        self.parent_id = parent_id


class ValidationError(Exception):
    """Raised when input is well-formed but violates a business rule.

    No state is mutated when this is raised.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown for structured API responses.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class InvalidTransitionError(Exception):
    """Raised when a state-machine rule forbids the requested action."""

    def __init__(self, entity: str, action: str, current: str | None, reason: str | None = None):
        msg = f"Cannot '{action}' {entity} (state={current})"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)
        self.entity = entity
        self.action = action
        self.current_state = current
        self.reason = reason


class ConflictError(Exception):
    """Raised when a write would duplicate a unique key.

    Args:
        resource: Entity name.
        field: The unique field that would be duplicated.
        value: The conflicting value.
    """

    def __init__(self, resource: str, field: str, value: str | None = None) -> None:
        self.resource = resource
        self.field = field
        self.value = value
        super().__init__(f"{resource} with {field}={value!r} already exists")


class PaymentRequiredError(Exception):
    """Raised when a project is requested for a proposal whose invoice is unpaid."""

    def __init__(self, proposal_id: str, invoice_status: str | None = None) -> None:
        self.proposal_id = proposal_id
        self.invoice_status = invoice_status
        msg = f"Proposal id={proposal_id} has no paid or partially paid invoice"
        if invoice_status:
            msg += f" (invoice status={invoice_status})"
        super().__init__(msg)


class PersistenceFailure(Exception):
    """Raised when an external persistence call fails.

    The in-memory mutation that produced the command has already been
    applied; the caller decides whether to reload-and-discard or to retry the
    failed command.

    Args:
        command: The PersistenceCommand that failed.
        completed: Commands of the same batch that had already succeeded.
        cause: The underlying exception, if any.
    """

    def __init__(self, command, completed: list | None = None, cause: Exception | None = None) -> None:
        self.command = command
        self.completed = list(completed or [])
        self.cause = cause
        msg = f"Persistence call '{command.kind}' failed"
        if command.target_id is not None:
            msg += f" for id={command.target_id}"
        if cause is not None:
            msg += f": {cause}"
        super().__init__(msg)
