"""Error taxonomy of the mitigation workflow engine.

Every error carries a severity, a category and a ``recoverable`` flag. The
storage retry decorator honours ``recoverable``; the execution engine routes
``StepHandlerError`` through the failed step's ``on_failure`` policy. Keyword
arguments that are not part of the base signature (``step_id``,
``execution_id``, ``table`` ...) are collected into ``context`` so that they
show up in structured logs via ``to_dict()``.
"""

from datetime import datetime, timezone
from typing import Optional, Dict, Any, List
from enum import Enum


class ErrorSeverity(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ErrorCategory(Enum):
    VALIDATION = "validation"
    EXECUTION = "execution"
    STORAGE = "storage"
    CONFIGURATION = "configuration"
    ESCALATION = "escalation"
    BUSINESS_LOGIC = "business_logic"


class WorkflowEngineError(Exception):
    """Base exception for all mitigation engine errors."""

    severity = ErrorSeverity.MEDIUM
    category = ErrorCategory.EXECUTION
    recoverable = False
    retry_after: Optional[int] = None
    default_message = "Mitigation engine error"

    def __init__(
        self,
        message: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        recoverable: Optional[bool] = None,
        context: Optional[Dict[str, Any]] = None,
        **context_fields
    ):
        self.message = message or self.default_message
        super().__init__(self.message)
        self.error_code = type(self).__name__
        self.details = dict(details or {})
        if recoverable is not None:
            self.recoverable = recoverable
        self.context = dict(context or {})
        self.context.update({key: value for key, value in context_fields.items() if value is not None})
        self.timestamp = datetime.now(timezone.utc)

    def to_dict(self) -> Dict[str, Any]:
        """Flatten the error for log records and caller responses."""
        return {
            "error_code": self.error_code,
            "message": self.message,
            "severity": self.severity.value,
            "category": self.category.value,
            "recoverable": self.recoverable,
            "retry_after": self.retry_after,
            "details": self.details,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
        }

    def add_context(self, **kwargs):
        self.context.update(kwargs)
        return self


class NoMatchingDefinitionError(WorkflowEngineError):
    """No active definition scored above the match floor."""

    severity = ErrorSeverity.LOW
    category = ErrorCategory.BUSINESS_LOGIC
    default_message = "No applicable workflow found for the given conditions"

    def __init__(self, message: Optional[str] = None, best_score: Optional[float] = None, **kwargs):
        super().__init__(message, **kwargs)
        if best_score is not None:
            self.details["best_score"] = best_score


class DefinitionNotFoundError(WorkflowEngineError):
    """A definition or escalation rule was referenced by id but is absent or inactive."""

    category = ErrorCategory.CONFIGURATION


class DefinitionValidationError(WorkflowEngineError):
    """A workflow definition failed structural validation."""

    category = ErrorCategory.VALIDATION

    def __init__(self, message: str, validation_errors: Optional[List[str]] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.validation_errors = list(validation_errors or [])
        if self.validation_errors:
            self.details["validation_errors"] = self.validation_errors


class StepHandlerError(WorkflowEngineError):
    """A step handler failed; the engine applies the step's failure policy."""

    severity = ErrorSeverity.HIGH
    recoverable = True


class EscalationUnresolvedError(WorkflowEngineError):
    """Every escalation level was exhausted without a resolving acknowledgment."""

    severity = ErrorSeverity.HIGH
    category = ErrorCategory.ESCALATION


class InvalidTransitionError(WorkflowEngineError):
    """The execution's state does not permit the requested control operation.

    Only raised internally; public control operations turn it into ``False``.
    """

    severity = ErrorSeverity.LOW
    category = ErrorCategory.BUSINESS_LOGIC


class HandlerRegistryError(WorkflowEngineError):
    category = ErrorCategory.CONFIGURATION


class StorageError(WorkflowEngineError):
    """A repository read or write failed."""

    severity = ErrorSeverity.HIGH
    category = ErrorCategory.STORAGE
    recoverable = True
    retry_after = 3


class TransientError(WorkflowEngineError):
    """A temporary failure worth retrying, e.g. an open circuit breaker."""

    recoverable = True
    retry_after = 5


class ConfigurationError(WorkflowEngineError):
    severity = ErrorSeverity.HIGH
    category = ErrorCategory.CONFIGURATION
