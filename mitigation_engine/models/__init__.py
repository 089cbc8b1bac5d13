"""Data models for the mitigation workflow engine."""

from .core import (
    utcnow,
    new_id,
    Priority,
    WorkflowCategory,
    AutomationLevel,
    DependencyPolicy,
    ConditionOperator,
    StepType,
    OnSuccess,
    OnFailure,
    ExecutionStatusEnum,
    StepStatusEnum,
    TERMINAL_STATUSES,
    ACTIVE_STATUSES,
    NotificationChannel,
    EscalationSource,
    EscalationOutcome,
    EscalationDecision,
    MitigationActionType,
    ImplementationCost,
    ReportTimeFrame,
    WorkflowEventType,
    ValidationResult,
    TriggerCondition,
    WorkflowStep,
    WorkflowDefinition,
    StepExecution,
    WorkflowExecution,
    EscalationCondition,
    EscalationLevel,
    EscalationRule,
    EscalationLevelRecord,
    EscalationRecord,
    Notification,
    MitigationAction,
    ApprovalRequest,
    ApprovalResponse,
    EscalationAcknowledgment,
    WorkflowEvent,
    TimedOutStep,
    WorkflowUsage,
    WorkflowEffectiveness,
    WorkflowReport,
)

__all__ = [
    "utcnow",
    "new_id",
    "Priority",
    "WorkflowCategory",
    "AutomationLevel",
    "DependencyPolicy",
    "ConditionOperator",
    "StepType",
    "OnSuccess",
    "OnFailure",
    "ExecutionStatusEnum",
    "StepStatusEnum",
    "TERMINAL_STATUSES",
    "ACTIVE_STATUSES",
    "NotificationChannel",
    "EscalationSource",
    "EscalationOutcome",
    "EscalationDecision",
    "MitigationActionType",
    "ImplementationCost",
    "ReportTimeFrame",
    "WorkflowEventType",
    "ValidationResult",
    "TriggerCondition",
    "WorkflowStep",
    "WorkflowDefinition",
    "StepExecution",
    "WorkflowExecution",
    "EscalationCondition",
    "EscalationLevel",
    "EscalationRule",
    "EscalationLevelRecord",
    "EscalationRecord",
    "Notification",
    "MitigationAction",
    "ApprovalRequest",
    "ApprovalResponse",
    "EscalationAcknowledgment",
    "WorkflowEvent",
    "TimedOutStep",
    "WorkflowUsage",
    "WorkflowEffectiveness",
    "WorkflowReport",
]
