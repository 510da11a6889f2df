"""
Platform-wide exception hierarchy.

Services raise only these types. Blueprints register handlers against the
four base classes once and get consistent HTTP status codes everywhere:

    NotFoundError      -> 404
    ConflictError      -> 409
    ValidationError    -> 422
    UnauthorizedError  -> 403

The workflow-specific subclasses carry structured context (step numbers,
prerequisite state) so that callers can render a precise message without
parsing strings.

Usage:
    from salesflow.core.exceptions import NotFoundError, GatingViolationError

    raise NotFoundError(resource="Workflow", resource_id=42)
    raise GatingViolationError(3, prerequisite_state={...})
"""


class NotFoundError(Exception):
    """Raised when a requested resource does not exist (or is inactive).

    Args:
        resource: Human-readable entity name (e.g. "Workflow", "MissingItemApproval").
        resource_id: The key that was looked up. Included in logs and message.
    """

    def __init__(self, resource: str, resource_id: int | str | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        super().__init__(msg)


class ValidationError(Exception):
    """Raised when input is well-formed but violates a business rule.

    Maps to HTTP 422 in blueprint error handlers.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown for structured API responses.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class ConflictError(Exception):
    """Raised when an operation conflicts with the current state of a resource.

    Maps to HTTP 409. Either pass a full ``message`` or the
    ``resource``/``field``/``value`` triple of a uniqueness clash.
    """

    def __init__(
        self,
        resource: str,
        field: str | None = None,
        value: str | None = None,
        *,
        message: str | None = None,
        details: dict | None = None,
    ) -> None:
        self.resource = resource
        self.field = field
        self.value = value
        self.details = details or {}
        if message is None:
            message = f"{resource} with {field}={value!r} already exists"
        super().__init__(message)


class UnauthorizedError(Exception):
    """Raised when the acting role may not perform the requested transition.

    Maps to HTTP 403.
    """

    def __init__(self, actor: str, role: str, action: str) -> None:
        self.actor = actor
        self.role = role
        self.action = action
        super().__init__(f"User {actor!r} with role {role} is not allowed to {action}")


# ── Workflow subclasses ──────────────────────────────────────────────────────


class WorkflowNotFoundError(NotFoundError):
    def __init__(self, workflow_id: int | None = None, project_id: int | None = None) -> None:
        self.workflow_id = workflow_id
        self.project_id = project_id
        if workflow_id is None and project_id is not None:
            super().__init__("Workflow for project", project_id)
        else:
            super().__init__("Workflow", workflow_id)


class StepNotFoundError(NotFoundError):
    def __init__(self, workflow_id: int, step_number: int) -> None:
        self.workflow_id = workflow_id
        self.step_number = step_number
        super().__init__("Workflow step", f"{workflow_id}/{step_number}")


class DuplicateWorkflowError(ConflictError):
    def __init__(self, project_id: int) -> None:
        self.project_id = project_id
        super().__init__(
            "Workflow",
            "project_id",
            str(project_id),
            message=f"Workflow already exists for project {project_id}",
        )


class GatingViolationError(ConflictError):
    """The previous step is not completed, so step ``step_number`` cannot start.

    ``prerequisite_state`` describes the previous step as it actually is:
    completed flag, outcome and delegation state.
    """

    def __init__(self, step_number: int, prerequisite_state: dict, current_step: int | None = None) -> None:
        self.step_number = step_number
        self.prerequisite_state = prerequisite_state
        self.current_step = current_step
        prev = step_number - 1
        msg = (
            f"Step {step_number} cannot start: step {prev} is not completed "
            f"(completed={prerequisite_state.get('completed')}, "
            f"outcome={prerequisite_state.get('outcome')}, "
            f"phase={prerequisite_state.get('phase')})"
        )
        if current_step is not None:
            msg += f"; workflow is at step {current_step}"
        super().__init__(
            "Workflow step",
            message=msg,
            details={"step_number": step_number, "prerequisite": prerequisite_state,
                     "current_step": current_step},
        )


class TerminalStateError(ConflictError):
    def __init__(self, workflow_id: int, status: str) -> None:
        self.workflow_id = workflow_id
        self.status = status
        super().__init__(
            "Workflow",
            message=f"Workflow {workflow_id} is {status}; no further step operations are allowed",
            details={"status": status},
        )


class StepAlreadyCompletedError(ConflictError):
    def __init__(self, workflow_id: int, step_number: int) -> None:
        self.workflow_id = workflow_id
        self.step_number = step_number
        super().__init__(
            "Workflow step",
            message=f"Step {step_number} of workflow {workflow_id} is already completed",
            details={"step_number": step_number},
        )


class ConcurrentModificationError(ConflictError):
    def __init__(self, workflow_id: int, attempts: int) -> None:
        self.workflow_id = workflow_id
        self.attempts = attempts
        super().__init__(
            "Workflow",
            message=f"Workflow {workflow_id} was modified concurrently; gave up after {attempts} attempts",
            details={"attempts": attempts},
        )
