# Overview: Domain error taxonomy shared by the billing services.

"""
Billing Errors

Every error carries a human-readable message, an optional ``details`` dict
for the caller, and a ``status_code`` hint for whichever HTTP layer maps
it to a response. Tenant mismatches are raised as NotFoundError, never as
a distinct "forbidden" error, so that existence does not leak across
schools.
"""


class BillingError(Exception):
    """Base class for billing domain errors."""
    status_code = 400

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ValidationError(BillingError):
    """Bad input: non-positive amounts, unknown methods, empty item lists."""
    status_code = 422


class NotFoundError(BillingError):
    """Record is absent or belongs to another school."""
    status_code = 404


class InvalidStateError(BillingError):
    """Operation is illegal for the invoice's current status."""
    status_code = 400


class OverpaymentError(BillingError):
    """Payment would push amount paid above the invoice total."""
    status_code = 400


class ConflictError(BillingError):
    """Duplicate term invoice for a family."""
    status_code = 409


class TenantContextError(BillingError):
    """No school has been established for the current operation."""
    status_code = 401


class WebhookVerificationError(BillingError):
    """Webhook payload failed the processor's signature check."""
    status_code = 400
