from __future__ import annotations


class ConciergeError(Exception):
    """Base error for Concierge.

    Subclasses carry a stable ``code`` and the HTTP status the API renders them
    with. ``public_message`` is what callers see; ``str(exc)`` keeps the detail
    for logs.
    """

    code = "CONCIERGE_ERROR"
    status_code = 500
    public_message: str | None = None

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.public_message or self.code
        super().__init__(self.message)

    def client_message(self) -> str:
        return self.public_message or self.message


class PaymentNotCompletedError(ConciergeError):
    """Checkout session exists but is not paid yet."""

    code = "PAYMENT_NOT_COMPLETED"
    status_code = 402
    public_message = "Payment not completed. Please finish checkout and try again."


class InvalidCustomerIdError(ConciergeError):
    """Trusted session metadata carries no usable customer id."""

    code = "INVALID_CUSTOMER_ID"
    status_code = 400
    public_message = "Unable to verify this checkout session."


class InvalidSessionMetadataError(ConciergeError):
    """Trusted session metadata carries an unknown tier."""

    code = "INVALID_SESSION_METADATA"
    status_code = 400
    public_message = "Unable to verify this checkout session."


class SessionMismatchError(ConciergeError):
    """Session belongs to a different customer than the caller claims."""

    code = "SESSION_MISMATCH"
    status_code = 403
    public_message = "Unable to verify this checkout session."


class SubscriptionNotFoundError(ConciergeError):
    code = "SUBSCRIPTION_NOT_FOUND"
    status_code = 404
    public_message = "No active subscription found."


class InstanceNotFoundError(ConciergeError):
    code = "INSTANCE_NOT_FOUND"
    status_code = 404
    public_message = "No instance found."


class InvalidInstanceStateError(ConciergeError):
    """Requested lifecycle transition is not allowed from the current state."""

    code = "INVALID_INSTANCE_STATE"
    status_code = 409


class ProvisioningPreconditionError(ConciergeError):
    """Platform misconfiguration; fatal to one attempt, never to the process."""

    code = "PROVISIONING_PRECONDITION"
    status_code = 503


class ProvisioningFailureError(ConciergeError):
    """Cloud platform rejected or failed a provisioning call."""

    code = "PROVISIONING_FAILED"
    status_code = 502

    def __init__(self, message: str | None = None, *, http_status: int | None = None) -> None:
        super().__init__(message)
        # Status the platform answered with; None when no response arrived.
        self.http_status = http_status


class PaymentProcessorError(ConciergeError):
    code = "PAYMENT_PROCESSOR_ERROR"
    status_code = 502
    public_message = "Payment service is temporarily unavailable. Please try again."

    def __init__(
        self,
        message: str | None = None,
        *,
        http_status: int | None = None,
        transient: bool = False,
    ) -> None:
        super().__init__(message)
        self.http_status = http_status
        # Set for connection-level failures that never reached the processor.
        self.transient = transient


class WebhookSignatureError(ConciergeError):
    code = "WEBHOOK_SIGNATURE_INVALID"
    status_code = 400


class AffiliateError(ConciergeError):
    code = "AFFILIATE_ERROR"
    status_code = 400


class AffiliateNotFoundError(AffiliateError):
    code = "AFFILIATE_NOT_FOUND"
    status_code = 404
