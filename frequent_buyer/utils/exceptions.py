"""
Custom exceptions for frequent buyer business logic.

These exceptions provide more specific error handling than generic Exception,
allowing for better error messages and appropriate HTTP status codes.
"""


class FrequentBuyerError(Exception):
    """Base exception for all frequent buyer business logic errors."""

    def __init__(self, message: str, code: str = "FREQUENT_BUYER_ERROR"):
        self.message = message
        self.code = code
        super().__init__(message)


class TenantIsolationError(FrequentBuyerError):
    """Operation attempted without a tenant identifier."""

    def __init__(self, operation: str = None):
        message = "tenant_id is required - tenant isolation required"
        if operation:
            message = f"{operation}: {message}"
        super().__init__(message, "TENANT_REQUIRED")


class NotFoundError(FrequentBuyerError):
    """Resource not found."""

    def __init__(self, resource: str, identifier=None):
        message = f"{resource} not found"
        if identifier:
            message = f"{resource} with ID {identifier} not found"
        super().__init__(message, f"{resource.upper()}_NOT_FOUND")


class OfferNotFoundError(NotFoundError):
    """Offer not found (or belongs to another tenant)."""

    def __init__(self, identifier=None):
        super().__init__("Offer", identifier)


class RewardNotFoundError(NotFoundError):
    """Reward not found (or belongs to another tenant)."""

    def __init__(self, identifier=None):
        super().__init__("Reward", identifier)


class ValidationError(FrequentBuyerError):
    """Invalid input data."""

    def __init__(self, message: str, field: str = None):
        self.field = field
        code = f"INVALID_{field.upper()}" if field else "VALIDATION_ERROR"
        super().__init__(message, code)


class BusinessRuleError(FrequentBuyerError):
    """A loyalty business rule rejected the operation."""

    def __init__(self, message: str, code: str = "BUSINESS_RULE_VIOLATION"):
        super().__init__(message, code)


class InvalidStatusTransitionError(BusinessRuleError):
    """Invalid status transition for a resource."""

    def __init__(self, resource: str, from_status: str, to_status: str):
        self.from_status = from_status
        self.to_status = to_status
        message = f"Cannot change {resource} status from '{from_status}' to '{to_status}'"
        super().__init__(message, "INVALID_STATUS_TRANSITION")


class CustomerMismatchError(BusinessRuleError):
    """Reward belongs to a different customer than the one supplied."""

    def __init__(self, reward_id, customer_id: str):
        self.reward_id = reward_id
        self.customer_id = customer_id
        message = f"Customer {customer_id} does not own reward {reward_id}"
        super().__init__(message, "CUSTOMER_MISMATCH")


class DuplicateError(FrequentBuyerError):
    """Resource already exists."""

    def __init__(self, resource: str, identifier=None):
        message = f"{resource} already exists"
        if identifier:
            message = f"{resource} with {identifier} already exists"
        super().__init__(message, "DUPLICATE_ENTRY")


class POSError(FrequentBuyerError):
    """Error communicating with the point-of-sale API."""

    def __init__(self, message: str, status_code: int = None, original_error: Exception = None):
        self.status_code = status_code
        self.original_error = original_error
        super().__init__(message, "POS_ERROR")


class ConfigurationError(FrequentBuyerError):
    """Application configuration error."""

    def __init__(self, message: str):
        super().__init__(message, "CONFIGURATION_ERROR")
