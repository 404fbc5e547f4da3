"""
Error taxonomy for billing and subscription reconciliation.

Every error here is a per-request outcome; none of them is fatal to the process.
"""


class BillingError(Exception):
    """Base class for all billing errors."""

    code = "billing_error"
    retryable = False


class InvalidSignature(BillingError):
    """Webhook signature missing or not produced with our signing secret."""

    code = "invalid_signature"


class MalformedEvent(BillingError):
    """Signed webhook payload that cannot be decoded into a billing event."""

    code = "malformed_event"

    def __init__(self, message: str, event_id: str = None, event_type: str = None):
        super().__init__(message)
        self.event_id = event_id
        self.event_type = event_type


class GatewayError(BillingError):
    """Failure reported by (or while reaching) the billing provider."""

    code = "gateway_error"

    def __init__(self, message: str, operation: str = None):
        super().__init__(message)
        self.operation = operation


class GatewayUnavailable(GatewayError):
    code = "gateway_unavailable"
    retryable = True


class GatewayRejected(GatewayError):
    code = "gateway_rejected"


class ProfileNotFound(BillingError):
    code = "profile_not_found"


class NoActiveSubscription(BillingError):
    code = "no_active_subscription"


class ReconciliationError(BillingError):
    code = "reconciliation_error"


class InvariantViolation(ReconciliationError):
    """A transition produced an active profile without a tier or subscription id."""

    code = "invariant_violation"


class ConcurrentUpdateError(ReconciliationError):
    code = "concurrent_update"
    retryable = True
