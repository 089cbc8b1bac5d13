"""Core Pydantic models for the mitigation workflow engine."""

import uuid
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


def utcnow() -> datetime:
    """Timezone-aware current UTC time used for every engine timestamp."""
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class Priority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class WorkflowCategory(str, Enum):
    PREVENTIVE = "preventive"
    REACTIVE = "reactive"
    RECOVERY = "recovery"


class AutomationLevel(str, Enum):
    MANUAL = "manual"
    SEMI_AUTOMATED = "semi_automated"
    FULLY_AUTOMATED = "fully_automated"


class DependencyPolicy(str, Enum):
    """How a step with unsatisfied prerequisites is handled."""
    SKIP = "skip"
    BLOCK = "block"


class ConditionOperator(str, Enum):
    GREATER_THAN = ">"
    LESS_THAN = "<"
    EQUALS = "="
    CONTAINS = "contains"
    EXISTS = "exists"


class StepType(str, Enum):
    NOTIFICATION = "notification"
    APPROVAL = "approval"
    ACTION = "action"
    VERIFICATION = "verification"
    ESCALATION = "escalation"
    DOCUMENTATION = "documentation"


class OnSuccess(str, Enum):
    CONTINUE = "continue"
    SKIP_TO = "skip_to"
    COMPLETE = "complete"


class OnFailure(str, Enum):
    RETRY = "retry"
    ESCALATE = "escalate"
    ABORT = "abort"
    CONTINUE = "continue"


class ExecutionStatusEnum(str, Enum):
    """Enumeration of workflow execution statuses."""
    INITIATED = "initiated"
    IN_PROGRESS = "in_progress"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({
    ExecutionStatusEnum.COMPLETED,
    ExecutionStatusEnum.FAILED,
    ExecutionStatusEnum.CANCELLED,
})

ACTIVE_STATUSES = frozenset({
    ExecutionStatusEnum.INITIATED,
    ExecutionStatusEnum.IN_PROGRESS,
    ExecutionStatusEnum.PAUSED,
})


class StepStatusEnum(str, Enum):
    """Enumeration of step execution statuses."""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"


class NotificationChannel(str, Enum):
    EMAIL = "email"
    SMS = "sms"
    PHONE = "phone"
    SLACK = "slack"
    PAGER = "pager"


class EscalationSource(str, Enum):
    """What started an escalation run."""
    STEP_FAILURE = "step_failure"
    STEP_TIMEOUT = "step_timeout"
    ESCALATION_STEP = "escalation_step"


class EscalationOutcome(str, Enum):
    APPROVED = "approved"
    ABORTED = "aborted"
    UNRESOLVED = "unresolved"
    CANCELLED = "cancelled"


class EscalationDecision(str, Enum):
    """Decision carried by an escalation acknowledgment."""
    ACKNOWLEDGE = "acknowledge"
    APPROVE = "approve"
    ABORT = "abort"


class MitigationActionType(str, Enum):
    COMMUNICATION = "communication"
    SYSTEM_ADJUSTMENT = "system_adjustment"
    PROCESS_CHANGE = "process_change"
    ESCALATION = "escalation"
    INSURANCE_CLAIM = "insurance_claim"
    ALTERNATIVE_SETTLEMENT = "alternative_settlement"
    DOCUMENTATION = "documentation"
    MONITORING = "monitoring"


class ImplementationCost(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class ReportTimeFrame(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


class WorkflowEventType(str, Enum):
    """Enumeration of workflow event types."""
    WORKFLOW_TRIGGERED = "workflow_triggered"
    TRIGGER_ERROR = "trigger_error"
    STEP_STARTED = "step_started"
    STEP_COMPLETED = "step_completed"
    STEP_FAILED = "step_failed"
    STEP_SKIPPED = "step_skipped"
    STEP_RETRY = "step_retry"
    STEP_BYPASSED = "step_bypassed"
    STEP_TIMEOUT = "step_timeout"
    WORKFLOW_COMPLETED = "workflow_completed"
    WORKFLOW_FAILED = "workflow_failed"
    WORKFLOW_PAUSED = "workflow_paused"
    WORKFLOW_RESUMED = "workflow_resumed"
    WORKFLOW_CANCELLED = "workflow_cancelled"
    WORKFLOW_ESCALATED = "workflow_escalated"
    ESCALATION_NOTIFICATION_SENT = "escalation_notification_sent"
    ESCALATION_RESOLVED = "escalation_resolved"
    ESCALATION_UNRESOLVED = "escalation_unresolved"
    APPROVAL_REQUESTED = "approval_requested"
    NOTIFICATION_SENT = "notification_sent"
    DOCUMENTATION_CREATED = "documentation_created"


class ValidationResult(BaseModel):
    """Result of definition validation."""
    is_valid: bool = Field(..., description="Whether the definition is valid")
    errors: List[str] = Field(default_factory=list, description="List of validation errors")
    warnings: List[str] = Field(default_factory=list, description="List of validation warnings")


class TriggerCondition(BaseModel):
    """A weighted threshold test against one named signal."""
    model_config = ConfigDict(frozen=True)

    field: str = Field(..., description="Signal name the condition reads")
    operator: ConditionOperator = Field(..., description="Comparison operator")
    threshold: Any = Field(None, description="Value compared against the signal")
    weight: float = Field(1.0, description="Weight in [0, 1] used for match scoring")
    description: str = Field("", description="Human-readable description used in trigger reasons")

    @field_validator('field')
    @classmethod
    def validate_field(cls, field):
        if not field or not field.strip():
            raise ValueError("Condition field cannot be empty")
        return field.strip()

    @field_validator('weight')
    @classmethod
    def validate_weight(cls, weight):
        if not 0 <= weight <= 1:
            raise ValueError("Condition weight must be between 0 and 1")
        return weight


class WorkflowStep(BaseModel):
    """Definition of one step of a mitigation playbook."""
    model_config = ConfigDict(frozen=True)

    id: str = Field(..., description="Unique identifier for the step within its definition")
    step_number: int = Field(..., description="Ordering key of the step")
    name: str = Field(..., description="Step name")
    step_type: StepType = Field(..., description="Which handler executes the step")
    description: str = Field("", description="Step description")
    automation_level: AutomationLevel = Field(AutomationLevel.SEMI_AUTOMATED)
    expected_duration: timedelta = Field(timedelta(minutes=30), description="Expected wall-clock duration")
    assigned_role: str = Field("system", description="Role responsible for the step")
    dependencies: List[str] = Field(default_factory=list, description="Prerequisite step ids")
    parameters: Dict[str, Any] = Field(default_factory=dict, description="Free-form handler parameters")
    on_success: OnSuccess = Field(OnSuccess.CONTINUE)
    skip_to: Optional[str] = Field(None, description="Target step id when on_success is skip_to")
    on_failure: OnFailure = Field(OnFailure.ESCALATE)
    max_retries: int = Field(0, description="Retries allowed before on_failure applies")
    is_required: bool = Field(True)
    is_bypassable: bool = Field(False)

    @field_validator('id', 'name')
    @classmethod
    def validate_not_empty(cls, value):
        if not value or not value.strip():
            raise ValueError("Step id and name cannot be empty")
        return value.strip()

    @field_validator('step_number')
    @classmethod
    def validate_step_number(cls, step_number):
        if step_number < 1:
            raise ValueError("Step number must be at least 1")
        return step_number

    @field_validator('max_retries')
    @classmethod
    def validate_max_retries(cls, max_retries):
        if max_retries < 0:
            raise ValueError("Max retries cannot be negative")
        return max_retries

    @field_validator('expected_duration')
    @classmethod
    def validate_expected_duration(cls, expected_duration):
        if expected_duration <= timedelta(0):
            raise ValueError("Expected duration must be positive")
        return expected_duration

    @model_validator(mode='after')
    def validate_skip_target(self):
        if self.on_success == OnSuccess.SKIP_TO and not self.skip_to:
            raise ValueError(f"Step '{self.id}' uses skip_to without a target step")
        if self.id in self.dependencies:
            raise ValueError(f"Step '{self.id}' cannot depend on itself")
        return self


class WorkflowDefinition(BaseModel):
    """Immutable mitigation playbook: trigger conditions plus ordered steps."""
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_id, description="Definition identifier")
    name: str = Field(..., description="Name of the playbook")
    description: str = Field("", description="Description of the playbook")
    trigger_conditions: List[TriggerCondition] = Field(default_factory=list)
    steps: List[WorkflowStep] = Field(..., description="Steps, ordered by step_number")
    priority: Priority = Field(Priority.MEDIUM)
    category: WorkflowCategory = Field(WorkflowCategory.REACTIVE)
    automation_level: AutomationLevel = Field(AutomationLevel.SEMI_AUTOMATED)
    dependency_policy: DependencyPolicy = Field(DependencyPolicy.SKIP)
    estimated_duration: Optional[timedelta] = Field(None)
    success_rate: Optional[float] = Field(None)
    cost_estimate: Optional[float] = Field(None)
    is_active: bool = Field(True)
    created_by: str = Field("system")
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @field_validator('name')
    @classmethod
    def validate_name_not_empty(cls, name):
        """Ensure definition name is not empty."""
        if not name or not name.strip():
            raise ValueError("Definition name cannot be empty")
        return name.strip()

    @field_validator('steps')
    @classmethod
    def order_steps(cls, steps):
        if not steps:
            raise ValueError("Definition must contain at least one step")
        return sorted(steps, key=lambda step: step.step_number)

    @property
    def step_count(self) -> int:
        return len(self.steps)

    def get_step(self, step_id: str) -> Optional[WorkflowStep]:
        for step in self.steps:
            if step.id == step_id:
                return step
        return None

    def step_at(self, cursor: int) -> Optional[WorkflowStep]:
        """Return the step at a 1-based cursor position."""
        if 1 <= cursor <= len(self.steps):
            return self.steps[cursor - 1]
        return None

    def position_of(self, step_id: str) -> Optional[int]:
        """Return the 1-based cursor position of a step."""
        for index, step in enumerate(self.steps, start=1):
            if step.id == step_id:
                return index
        return None


class StepExecution(BaseModel):
    """One attempt at running a step. Retries append new records."""
    id: str = Field(default_factory=new_id)
    step_id: str
    step_number: int
    status: StepStatusEnum = Field(StepStatusEnum.PENDING)
    assigned_to: Optional[str] = None
    started_at: datetime = Field(default_factory=utcnow)
    ended_at: Optional[datetime] = None
    retry_count: int = 0
    result: Optional[Dict[str, Any]] = None
    notes: Optional[str] = None
    approver: Optional[str] = None
    approval_time: Optional[datetime] = None
    bypassed_by: Optional[str] = None
    bypass_reason: Optional[str] = None

    @property
    def duration(self) -> Optional[timedelta]:
        if self.ended_at is None:
            return None
        return self.ended_at - self.started_at

    @property
    def is_bypassed(self) -> bool:
        return self.status == StepStatusEnum.SKIPPED and self.bypassed_by is not None


class WorkflowExecution(BaseModel):
    """State of one triggered run of a workflow definition."""
    id: str = Field(default_factory=new_id)
    definition_id: str
    definition_name: str = ""
    instruction_id: str
    triggered_by: str
    trigger_reason: str = ""
    trigger_signals: Dict[str, Any] = Field(default_factory=dict)
    status: ExecutionStatusEnum = Field(ExecutionStatusEnum.INITIATED)
    current_step: int = Field(1, description="1-based cursor into the definition's ordered steps")
    step_executions: List[StepExecution] = Field(default_factory=list)
    started_at: datetime = Field(default_factory=utcnow)
    ended_at: Optional[datetime] = None
    effectiveness: Optional[float] = None
    notes: List[str] = Field(default_factory=list)
    pending_retry_count: Optional[int] = Field(
        None, description="Set when the cursor step is due to be re-dispatched with this retry count"
    )
    escalation_reruns: Dict[str, int] = Field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def total_duration(self) -> Optional[timedelta]:
        if self.ended_at is None:
            return None
        return self.ended_at - self.started_at

    def get_step_execution(self, step_execution_id: str) -> Optional[StepExecution]:
        for step_execution in self.step_executions:
            if step_execution.id == step_execution_id:
                return step_execution
        return None

    def latest_step_execution(self, step_id: str) -> Optional[StepExecution]:
        for step_execution in reversed(self.step_executions):
            if step_execution.step_id == step_id:
                return step_execution
        return None

    def add_note(self, note: str):
        self.notes.append(f"[{utcnow().isoformat()}] {note}")


class EscalationCondition(BaseModel):
    model_config = ConfigDict(frozen=True)

    field: str
    operator: ConditionOperator
    value: Any = None
    weight: float = 1.0

    @field_validator('weight')
    @classmethod
    def validate_weight(cls, weight):
        if not 0 <= weight <= 1:
            raise ValueError("Condition weight must be between 0 and 1")
        return weight


class EscalationLevel(BaseModel):
    model_config = ConfigDict(frozen=True)

    level: int
    roles: List[str] = Field(default_factory=list)
    individuals: List[str] = Field(default_factory=list)
    requires_acknowledgment: bool = True
    can_approve: bool = False
    can_abort: bool = False


class EscalationRule(BaseModel):
    """Ranked escalation path with one timeout per level."""
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_id)
    name: str
    conditions: List[EscalationCondition] = Field(default_factory=list)
    levels: List[EscalationLevel]
    timeouts: List[timedelta]
    notification_channels: List[NotificationChannel] = Field(default_factory=lambda: [NotificationChannel.EMAIL])
    is_active: bool = True

    @model_validator(mode='after')
    def validate_levels(self):
        if not self.levels:
            raise ValueError("Escalation rule must have at least one level")
        if len(self.timeouts) != len(self.levels):
            raise ValueError("Escalation rule needs exactly one timeout per level")
        ranks = [level.level for level in self.levels]
        if len(ranks) != len(set(ranks)):
            raise ValueError("Escalation level ranks must be unique")
        return self

    def ranked_levels(self) -> List[tuple]:
        """Return (level, timeout) pairs in ascending rank order."""
        return sorted(zip(self.levels, self.timeouts), key=lambda pair: pair[0].level)


class EscalationLevelRecord(BaseModel):
    level: int
    recipients: List[str] = Field(default_factory=list)
    started_at: datetime = Field(default_factory=utcnow)
    notified: bool = False
    acknowledged: bool = False
    acknowledged_by: Optional[str] = None
    acknowledged_at: Optional[datetime] = None
    decision: Optional[EscalationDecision] = None
    resolved: bool = False


class EscalationRecord(BaseModel):
    """Audit of one escalation run."""
    id: str = Field(default_factory=new_id)
    rule_id: Optional[str] = None
    execution_id: str
    step_execution_id: Optional[str] = None
    reason: str
    source: EscalationSource
    levels: List[EscalationLevelRecord] = Field(default_factory=list)
    outcome: Optional[EscalationOutcome] = None
    resolved_by: Optional[str] = None
    started_at: datetime = Field(default_factory=utcnow)
    ended_at: Optional[datetime] = None


class Notification(BaseModel):
    """Message handed to the external notifier."""
    id: str = Field(default_factory=new_id)
    recipients: List[str]
    channels: List[NotificationChannel] = Field(default_factory=lambda: [NotificationChannel.EMAIL])
    subject: str
    message: str
    priority: Priority = Priority.MEDIUM
    execution_id: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)


class MitigationAction(BaseModel):
    """Catalog entry describing an executable mitigation action."""
    model_config = ConfigDict(frozen=True)

    id: str
    action_type: MitigationActionType
    name: str
    description: str = ""
    parameters: Dict[str, Any] = Field(default_factory=dict)
    estimated_effectiveness: float = 0.5
    implementation_cost: ImplementationCost = ImplementationCost.MEDIUM
    time_to_implement: timedelta = timedelta(minutes=30)
    required_approvals: List[str] = Field(default_factory=list)
    is_reversible: bool = True
    side_effects: List[str] = Field(default_factory=list)


class ApprovalRequest(BaseModel):
    id: str = Field(default_factory=new_id)
    execution_id: str
    step_execution_id: str
    approvers: List[str] = Field(default_factory=list)
    requested_at: datetime = Field(default_factory=utcnow)
    expires_at: datetime


class ApprovalResponse(BaseModel):
    request_id: str
    responder: str
    approved: bool
    notes: Optional[str] = None
    responded_at: datetime = Field(default_factory=utcnow)


class EscalationAcknowledgment(BaseModel):
    escalation_id: str
    level: int
    acknowledged_by: str
    decision: EscalationDecision = EscalationDecision.ACKNOWLEDGE
    acknowledged_at: datetime = Field(default_factory=utcnow)


class WorkflowEvent(BaseModel):
    """Event emitted by the engine to explicit subscribers."""
    event_type: WorkflowEventType
    execution_id: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)
    payload: Dict[str, Any] = Field(default_factory=dict)


class TimedOutStep(BaseModel):
    """A step the deadline monitor found running past its deadline."""
    execution_id: str
    step_execution_id: str
    step_id: str
    elapsed: timedelta
    deadline: timedelta
    escalated: bool = False


class WorkflowUsage(BaseModel):
    definition_id: str
    name: str
    count: int


class WorkflowEffectiveness(BaseModel):
    definition_id: str
    name: str
    effectiveness: float


class WorkflowReport(BaseModel):
    """Usage and effectiveness summary over a time window."""
    time_frame: ReportTimeFrame
    period_start: datetime
    generated_at: datetime = Field(default_factory=utcnow)
    total_executions: int = 0
    successful_executions: int = 0
    failed_executions: int = 0
    cancelled_executions: int = 0
    active_executions: int = 0
    average_execution_time: Optional[timedelta] = None
    most_used_workflows: List[WorkflowUsage] = Field(default_factory=list)
    effectiveness_metrics: List[WorkflowEffectiveness] = Field(default_factory=list)
