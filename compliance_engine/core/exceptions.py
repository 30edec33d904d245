"""
Engine-wide exception hierarchy.

Services raise these types; ``utils.errors.register_error_handlers`` maps
each of them to one HTTP status and error code, so blueprints never build
error bodies for domain failures themselves.

Usage:
    from compliance_engine.core.exceptions import NotFoundError, ValidationError

    raise NotFoundError(resource="ServiceDefinition", resource_id="gst_returns")
    raise ValidationError("dueDayOfMonth must be between 1 and 28",
                          details={"dueDayOfMonth": 31})
"""


class NotFoundError(Exception):
    """Raised when a requested resource does not exist.

    Args:
        resource: Human-readable model/entity name (e.g. "WorkflowTemplate").
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
    """Raised when input fails business-rule validation in the service layer.

    Maps to HTTP 422.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown for structured API responses.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class ApprovalBlockedError(ValidationError):
    """Approval requested while at least one mandatory checklist item failed."""

    def __init__(self, failed_items: list[str]) -> None:
        self.failed_items = list(failed_items)
        super().__init__(
            "Cannot approve: mandatory checklist items failed",
            details={"failed_items": self.failed_items},
        )


class InvalidTransitionError(ValidationError):
    """Raised for an obligation status change the state machine does not allow.

    Maps to HTTP 409: the request is well-formed but conflicts with the
    current state of the instance.
    """

    def __init__(self, current: str, requested: str) -> None:
        self.current = current
        self.requested = requested
        super().__init__(
            f"Invalid transition: {current} → {requested}",
            details={"current": current, "requested": requested},
        )


class ConflictError(Exception):
    """Raised when an operation would create a duplicate unique constraint violation.

    Maps to HTTP 409.
    """

    def __init__(self, resource: str, field: str, value: str | None = None) -> None:
        self.resource = resource
        self.field = field
        self.value = value
        msg = f"{resource} with {field}={value!r} already exists"
        super().__init__(msg)


class ConfigurationGapError(Exception):
    """Base class for missing administrator configuration.

    Not a transient failure: the caller cannot succeed by retrying until an
    administrator adds the missing rule or template. Rendered as the
    ``not_configured`` state.
    """

    kind = "configuration"

    def __init__(self, message: str, service_key: str) -> None:
        self.service_key = service_key
        super().__init__(message)


class NoRuleFoundError(ConfigurationGapError):
    """No active due-date rule governs the service at the requested date."""

    kind = "due_date_rule"

    def __init__(self, service_key: str, jurisdiction: str, as_of) -> None:
        self.jurisdiction = jurisdiction
        self.as_of = as_of
        super().__init__(
            f"No due-date rule for {service_key} ({jurisdiction}) effective on {as_of}",
            service_key,
        )


class NoPublishedTemplateError(ConfigurationGapError):
    """The service has no published workflow template."""

    kind = "workflow_template"

    def __init__(self, service_key: str) -> None:
        super().__init__(f"No published workflow template for {service_key}", service_key)


class IncompleteDocumentsError(Exception):
    """Submission attempted while mandatory documents are missing.

    Args:
        missing: Doc type codes that still need an uploaded document.
    """

    def __init__(self, missing: list[str]) -> None:
        self.missing = list(missing)
        super().__init__(f"Missing mandatory documents: {', '.join(self.missing)}")


class TransientStoreError(Exception):
    """Persistence kept failing after the configured number of retries."""

    def __init__(self, operation: str, attempts: int, cause: Exception | None = None) -> None:
        self.operation = operation
        self.attempts = attempts
        self.cause = cause
        super().__init__(f"{operation} failed after {attempts} attempts: {cause}")


class EscalationRequired(Exception):
    """The rework limit was exceeded; the instance now waits in the human queue.

    Raised only after the escalation has been persisted and notified.
    """

    def __init__(self, instance_id: int, rework_count: int, limit: int) -> None:
        self.instance_id = instance_id
        self.rework_count = rework_count
        self.limit = limit
        super().__init__(
            f"Obligation {instance_id} exceeded the rework limit ({limit}) and was escalated"
        )


class PermissionDenied(Exception):
    """The acting role may not perform the requested operation."""

    def __init__(self, action: str, actor_role: str | None, allowed: tuple | list = ()) -> None:
        self.action = action
        self.actor_role = actor_role
        self.allowed = tuple(allowed)
        super().__init__(f"Role {actor_role!r} may not {action}")
