"""
Utility modules for the frequent buyer platform.
"""
from .logging_config import setup_logging, get_logger
from .dates import utcnow, utc_today, parse_timestamp
from .errors import (
    ErrorCode,
    error_response,
    bad_request,
    not_found,
    conflict,
    internal_error,
    exception_response,
)
from .exceptions import (
    FrequentBuyerError,
    TenantIsolationError,
    NotFoundError,
    OfferNotFoundError,
    RewardNotFoundError,
    ValidationError,
    BusinessRuleError,
    InvalidStatusTransitionError,
    CustomerMismatchError,
    DuplicateError,
    POSError,
    ConfigurationError,
)
