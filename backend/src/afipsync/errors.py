"""
Typed exception hierarchy.

Callers catch by type, never by message. Every error carries a
machine-readable ``code`` and structured ``details`` so the HTTP and CLI
surfaces can report it without parsing strings.

    AfipSyncError
    +-- ValidationError        malformed input, caller-fixable, never retried
    +-- DomainError            business rule violation, surfaced, not retried
    |   +-- AuthorityRejectionError
    +-- InfrastructureError    gateway or database failure, retryable
    +-- NotFoundError          referenced order/invoice absent
"""

from typing import Any


class AfipSyncError(Exception):
    """Base class for all application errors."""

    code: str = "APP_ERROR"

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": type(self).__name__,
            "code": self.code,
            "message": self.message,
            "details": self.details,
        }


class ValidationError(AfipSyncError):
    """Input failed validation (CUIT, amount, date format...)."""

    code = "VALIDATION_ERROR"

    def __init__(
        self,
        message: str,
        field: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        self.field = field
        merged = dict(details or {})
        if field is not None:
            merged["field"] = field
        super().__init__(message, merged)

    @classmethod
    def for_field(cls, field: str, message: str) -> "ValidationError":
        return cls(f"{field}: {message}", field=field)


class DomainError(AfipSyncError):
    """A business rule was violated."""

    code = "DOMAIN_ERROR"


class AuthorityRejectionError(DomainError):
    """
    The tax authority itself rejected the invoice.

    Rejections are terminal: resubmitting the same invoice yields the
    same answer, so the order is recorded as failed.
    """

    code = "AUTHORITY_REJECTION"


class InfrastructureError(AfipSyncError):
    """
    An external system failed (database, gateway, network).

    ``retryable`` is True for transport-level problems: the order stays
    pending in the ledger and a later run picks it up again.
    """

    code = "INFRASTRUCTURE_ERROR"

    def __init__(
        self,
        message: str,
        subsystem: str = "unknown",
        retryable: bool = True,
        details: dict[str, Any] | None = None,
    ) -> None:
        self.subsystem = subsystem
        self.retryable = retryable
        merged = {"subsystem": subsystem, "retryable": retryable, **(details or {})}
        super().__init__(message, merged)

    @classmethod
    def database(cls, message: str) -> "InfrastructureError":
        return cls(message, subsystem="database")

    @classmethod
    def external_api(cls, service_name: str, message: str) -> "InfrastructureError":
        return cls(message, subsystem="external-api", details={"service": service_name})


class NotFoundError(AfipSyncError):
    """A referenced resource does not exist."""

    code = "NOT_FOUND"

    def __init__(self, resource_type: str, identifier: Any) -> None:
        self.resource_type = resource_type
        self.identifier = identifier
        super().__init__(
            f"{resource_type} not found: {identifier}",
            {"resource_type": resource_type, "identifier": str(identifier)},
        )

    @classmethod
    def order(cls, order_number: str) -> "NotFoundError":
        return cls("Order", order_number)
