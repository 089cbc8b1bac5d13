"""Core mitigation engine components."""

from .exceptions import (
    WorkflowEngineError,
    NoMatchingDefinitionError,
    DefinitionNotFoundError,
    DefinitionValidationError,
    StepHandlerError,
    EscalationUnresolvedError,
    InvalidTransitionError,
    HandlerRegistryError,
    StorageError,
    TransientError,
    ConfigurationError,
)
from .logging import setup_logging, get_logger

__all__ = [
    "WorkflowEngineError",
    "NoMatchingDefinitionError",
    "DefinitionNotFoundError",
    "DefinitionValidationError",
    "StepHandlerError",
    "EscalationUnresolvedError",
    "InvalidTransitionError",
    "HandlerRegistryError",
    "StorageError",
    "TransientError",
    "ConfigurationError",
    "setup_logging",
    "get_logger",
]
