from __future__ import annotations


class ConsortiumError(Exception):
    """Base error for the consortium hub."""


class ValidationFailedError(ConsortiumError):
    """Malformed input or a missing required value."""


class InvalidTransitionError(ConsortiumError):
    """Requested status change is not allowed from the current status."""

    def __init__(self, current: str, target: str, message: str | None = None) -> None:
        self.current = current
        self.target = target
        super().__init__(message or f"Cannot transition from {current} to {target}.")


class NotFoundError(ConsortiumError):
    """Referenced entity does not exist or is not visible."""


class ConflictError(ConsortiumError):
    """Operation would violate a uniqueness invariant."""


class ForbiddenError(ConsortiumError):
    """Caller is not allowed to act on the entity."""


class FulfillmentPreconditionError(ConsortiumError):
    """Automated fulfillment cannot start because an identifier is missing."""

    def __init__(self, code: str, message: str) -> None:
        self.code = code
        super().__init__(message)


class IntegrationError(ConsortiumError):
    """External dependency call failed."""


class CatalogScanError(IntegrationError):
    """Catalog listing could not be fetched."""


class WorkflowServiceError(IntegrationError):
    """Approval workflow submission or polling failed."""


class ShortcutServiceError(IntegrationError):
    """Cross-tenant share or shortcut provisioning failed."""


class TokenAcquisitionError(IntegrationError):
    """No access token could be obtained for an external call."""


class NotificationError(IntegrationError):
    """Notification delivery failed."""
