"""
Platform-wide exception hierarchy.

Services raise these for conditions that are NOT ordinary business-rule
outcomes (those come back as ``OperationResult``). Blueprints register
handlers against these types once and get consistent HTTP status codes.

Usage:
    from qms.core.exceptions import NotFoundError, AuthorizationError

    raise NotFoundError(resource="Document", resource_id=42)
    raise AuthorizationError("Documents.Approve", user_id=7)
"""


class NotFoundError(Exception):
    """Raised when a requested resource does not exist within the given scope.

    Used for BOTH genuinely missing records AND cross-tenant access
    attempts, so a 404 never confirms that another tenant's row exists.

    Args:
        resource: Human-readable entity name (e.g. "Document", "Capa").
        resource_id: The PK that was looked up. Included in logs, not in HTTP response.
        tenant_id: Optional — the scope that was enforced. For debug logging only.
    """

    def __init__(
        self,
        resource: str,
        resource_id: int | str | None = None,
        tenant_id: int | None = None,
    ) -> None:
        self.resource = resource
        self.resource_id = resource_id
        self.tenant_id = tenant_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        if tenant_id is not None:
            msg += f" (tenant={tenant_id})"
        super().__init__(msg)


class ValidationError(Exception):
    """Raised when well-formed input violates a business rule.

    Maps to HTTP 422 in blueprint error handlers.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown for structured API responses.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class ConflictError(Exception):
    """Raised when an operation would violate a unique constraint.

    Maps to HTTP 409.
    """

    def __init__(self, resource: str, field: str, value: str | None = None) -> None:
        self.resource = resource
        self.field = field
        self.value = value
        msg = f"{resource} with {field}={value!r} already exists"
        super().__init__(msg)


class StaleObjectError(Exception):
    """Raised when an optimistic-concurrency check fails.

    Another request changed the row since the caller read it. Maps to 409;
    clients should reload and retry.
    """

    def __init__(self, resource: str, resource_id: int | str | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        super().__init__(f"{resource} id={resource_id} was modified by another request")


class AuthorizationError(Exception):
    """Raised at explicit guard points when a user lacks a permission.

    Read-path checks (``has_permission``) return False instead. Maps to 403.

    Args:
        permission: The dotted permission string that was required.
        user_id: The denied user.
        message: Optional role-specific explanation shown to the user.
    """

    def __init__(
        self,
        permission: str | None = None,
        user_id: int | None = None,
        message: str | None = None,
    ) -> None:
        self.permission = permission
        self.user_id = user_id
        self.message = message or f"Permission denied: {permission}"
        super().__init__(self.message)


class SchemaNotReadyError(Exception):
    """Raised when a table the code expects has not been migrated yet.

    Lets permission resolution degrade to "no delegated permissions"
    during a schema rollout instead of failing every request.
    """

    def __init__(self, table: str) -> None:
        self.table = table
        super().__init__(f"Table '{table}' is not provisioned")
