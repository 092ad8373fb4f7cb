"""Core modules for Warden - centralized definitions and utilities."""

from warden.core.errors import (
    ConfigurationError,
    ErrorKind,
    ForbiddenError,
    InvalidInputError,
    InvalidStateTransitionError,
    NotFoundError,
    PersistenceError,
    ProviderError,
    WardenError,
    describe,
)

__all__ = [
    "ErrorKind",
    "WardenError",
    "NotFoundError",
    "InvalidInputError",
    "InvalidStateTransitionError",
    "ForbiddenError",
    "ProviderError",
    "PersistenceError",
    "ConfigurationError",
    "describe",
]
