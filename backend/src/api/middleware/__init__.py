"""
API middleware module.
"""
from src.api.middleware.error_handler import (
    AppException,
    NotFoundException,
    BadRequestException,
    ConflictException,
    RuleValidationError,
    PersistenceError,
    ServiceUnavailableException,
    ReconciliationConflict,
    UpstreamServiceError,
    app_exception_handler,
    validation_exception_handler,
    http_exception_handler,
    unhandled_exception_handler,
)

__all__ = [
    "AppException",
    "NotFoundException",
    "BadRequestException",
    "ConflictException",
    "RuleValidationError",
    "PersistenceError",
    "ServiceUnavailableException",
    "ReconciliationConflict",
    "UpstreamServiceError",
    "app_exception_handler",
    "validation_exception_handler",
    "http_exception_handler",
    "unhandled_exception_handler",
]
