"""
Payment Service Domain Exceptions

All exceptions raised by the payment service (grant ledger) layer.
"""


class PaymentServiceError(Exception):
    """Base exception for payment service errors"""
    pass


class ProviderNotConfiguredError(PaymentServiceError):
    """Raised when checkout is requested for a provider that is not configured"""
    pass


class InvalidPlanError(PaymentServiceError):
    """Raised when plan days / device slots / payment type are not sellable"""
    pass


class DeviceLimitReachedError(PaymentServiceError):
    """Raised when a device slot purchase would exceed the maximum device limit"""
    pass


class InvalidWebhookPayloadError(PaymentServiceError):
    """Raised when a webhook body is not a JSON object"""
    pass


class PaymentNotFoundError(PaymentServiceError):
    """Raised when a payment id does not exist"""
    pass
