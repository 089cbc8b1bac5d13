"""Default playbooks, mitigation actions, escalation rules and role directory."""

from datetime import timedelta
from typing import Dict, List

from .core.definition_store import DefinitionStore
from .core.escalation import EscalationRuleRegistry
from .core.logging import get_logger
from .core.notifications import RecipientDirectory
from .core.step_handlers import MitigationActionCatalog
from .models.core import (
    AutomationLevel,
    ConditionOperator,
    EscalationCondition,
    EscalationLevel,
    EscalationRule,
    ImplementationCost,
    MitigationAction,
    MitigationActionType,
    NotificationChannel,
    OnFailure,
    Priority,
    StepType,
    TriggerCondition,
    WorkflowCategory,
    WorkflowDefinition,
    WorkflowStep,
)

logger = get_logger(__name__)

DEFAULT_ROLES: Dict[str, List[str]] = {
    "risk_analyst": ["risk.analyst@company.com"],
    "operations_manager": ["ops.manager@company.com"],
    "senior_manager": ["senior.manager@company.com"],
    "risk_manager": ["risk.manager@company.com"],
    "senior_operations": ["senior.ops@company.com"],
    "head_of_risk": ["head.risk@company.com"],
    "coo": ["coo@company.com"],
    "client_relations": ["client.relations@company.com"],
    "system": ["system@company.com"],
}


def default_definitions() -> List[WorkflowDefinition]:
    high_risk = WorkflowDefinition(
        id="high-risk-settlement-intervention",
        name="High Risk Settlement Intervention",
        description="Comprehensive workflow for high-risk settlement scenarios",
        trigger_conditions=[
            TriggerCondition(
                field="failure_probability",
                operator=ConditionOperator.GREATER_THAN,
                threshold=0.7,
                weight=0.8,
                description="Settlement failure probability exceeds 70%"
            ),
            TriggerCondition(
                field="risk_score",
                operator=ConditionOperator.GREATER_THAN,
                threshold=0.8,
                weight=0.6,
                description="Overall risk score exceeds 80%"
            ),
        ],
        steps=[
            WorkflowStep(
                id="risk-assessment-review",
                step_number=1,
                name="Risk Assessment Review",
                step_type=StepType.VERIFICATION,
                description="Verify and validate risk assessment results",
                expected_duration=timedelta(minutes=15),
                assigned_role="risk_analyst",
                parameters={"review_required": True},
                on_failure=OnFailure.ESCALATE,
                max_retries=2
            ),
            WorkflowStep(
                id="counterparty-communication",
                step_number=2,
                name="Counterparty Communication",
                step_type=StepType.NOTIFICATION,
                description="Proactive communication with counterparty",
                expected_duration=timedelta(minutes=30),
                assigned_role="operations_manager",
                dependencies=["risk-assessment-review"],
                parameters={"urgency": "high", "require_response": True},
                on_failure=OnFailure.CONTINUE,
                max_retries=3
            ),
            WorkflowStep(
                id="management-approval",
                step_number=3,
                name="Management Approval",
                step_type=StepType.APPROVAL,
                description="Obtain management approval for mitigation actions",
                automation_level=AutomationLevel.MANUAL,
                expected_duration=timedelta(minutes=60),
                assigned_role="senior_manager",
                dependencies=["counterparty-communication"],
                parameters={"approval_level": "senior"},
                on_failure=OnFailure.ABORT,
                max_retries=1
            ),
            WorkflowStep(
                id="enhanced-monitoring",
                step_number=4,
                name="Enhanced Monitoring",
                step_type=StepType.ACTION,
                description="Activate enhanced monitoring and alerts",
                automation_level=AutomationLevel.FULLY_AUTOMATED,
                expected_duration=timedelta(minutes=5),
                dependencies=["management-approval"],
                parameters={
                    "action_type": MitigationActionType.SYSTEM_ADJUSTMENT.value,
                    "monitoring_level": "enhanced",
                    "alert_frequency": "hourly"
                },
                on_failure=OnFailure.ESCALATE,
                max_retries=2
            ),
        ],
        priority=Priority.HIGH,
        category=WorkflowCategory.PREVENTIVE,
        estimated_duration=timedelta(minutes=110),
        success_rate=0.85,
        cost_estimate=500
    )

    settlement_failure = WorkflowDefinition(
        id="settlement-failure-response",
        name="Settlement Failure Response",
        description="Reactive workflow when settlement failure occurs",
        trigger_conditions=[
            TriggerCondition(
                field="system_failure",
                operator=ConditionOperator.EXISTS,
                threshold=True,
                weight=1.0,
                description="Settlement failure has been detected"
            ),
        ],
        steps=[
            WorkflowStep(
                id="immediate-notification",
                step_number=1,
                name="Immediate Notification",
                step_type=StepType.NOTIFICATION,
                description="Immediate notification to relevant parties",
                automation_level=AutomationLevel.FULLY_AUTOMATED,
                expected_duration=timedelta(minutes=2),
                parameters={"priority": "critical", "channels": ["email", "sms", "slack"]},
                on_failure=OnFailure.CONTINUE,
                max_retries=3
            ),
            WorkflowStep(
                id="failure-analysis",
                step_number=2,
                name="Failure Analysis",
                step_type=StepType.VERIFICATION,
                description="Analyze root cause of settlement failure",
                expected_duration=timedelta(minutes=30),
                assigned_role="operations_analyst",
                dependencies=["immediate-notification"],
                parameters={"analysis_depth": "comprehensive"},
                on_failure=OnFailure.ESCALATE,
                max_retries=2
            ),
            WorkflowStep(
                id="recovery-action-plan",
                step_number=3,
                name="Recovery Action Plan",
                step_type=StepType.ACTION,
                description="Execute recovery action plan",
                automation_level=AutomationLevel.MANUAL,
                expected_duration=timedelta(minutes=120),
                assigned_role="senior_operations",
                dependencies=["failure-analysis"],
                parameters={
                    "action_type": MitigationActionType.ALTERNATIVE_SETTLEMENT.value,
                    "recovery_type": "standard"
                },
                on_failure=OnFailure.ESCALATE,
                max_retries=1
            ),
            WorkflowStep(
                id="client-communication",
                step_number=4,
                name="Client Communication",
                step_type=StepType.NOTIFICATION,
                description="Communicate status to affected clients",
                automation_level=AutomationLevel.MANUAL,
                expected_duration=timedelta(minutes=45),
                assigned_role="client_relations",
                dependencies=["recovery-action-plan"],
                parameters={"communication_type": "formal"},
                on_failure=OnFailure.CONTINUE,
                max_retries=2
            ),
        ],
        priority=Priority.CRITICAL,
        category=WorkflowCategory.REACTIVE,
        estimated_duration=timedelta(minutes=197),
        success_rate=0.78,
        cost_estimate=1200
    )

    return [high_risk, settlement_failure]


def default_actions() -> List[MitigationAction]:
    return [
        MitigationAction(
            id="proactive-counterparty-outreach",
            action_type=MitigationActionType.COMMUNICATION,
            name="Proactive Counterparty Outreach",
            description="Contact counterparty to confirm settlement readiness",
            parameters={
                "method": "phone_and_email",
                "urgency": "high",
                "require_confirmation": True,
                "escalation_time_hours": 4
            },
            estimated_effectiveness=0.7,
            implementation_cost=ImplementationCost.LOW,
            time_to_implement=timedelta(minutes=30),
            is_reversible=False,
            side_effects=["May alert counterparty to internal concerns"]
        ),
        MitigationAction(
            id="enhanced-monitoring-activation",
            action_type=MitigationActionType.SYSTEM_ADJUSTMENT,
            name="Enhanced Monitoring Activation",
            description="Activate real-time monitoring with increased alert frequency",
            parameters={
                "monitoring_level": "intensive",
                "alert_interval_minutes": 15,
                "dashboard_update": "real_time",
                "stakeholder_notification": True
            },
            estimated_effectiveness=0.6,
            implementation_cost=ImplementationCost.LOW,
            time_to_implement=timedelta(minutes=5),
            side_effects=["Increased system load", "Higher operational costs"]
        ),
        MitigationAction(
            id="backup-settlement-channel",
            action_type=MitigationActionType.ALTERNATIVE_SETTLEMENT,
            name="Backup Settlement Channel",
            description="Route settlement through alternative channel or custodian",
            parameters={
                "alternative_channel": "backup_custodian",
                "approval_required": True,
                "cost_increase": 0.02,
                "time_delay_hours": 24
            },
            estimated_effectiveness=0.9,
            implementation_cost=ImplementationCost.MEDIUM,
            time_to_implement=timedelta(minutes=120),
            required_approvals=["operations_manager", "risk_manager"],
            is_reversible=False,
            side_effects=["Additional fees", "Potential delay"]
        ),
        MitigationAction(
            id="settlement-insurance-claim",
            action_type=MitigationActionType.INSURANCE_CLAIM,
            name="Settlement Insurance Claim",
            description="Initiate insurance claim for settlement failure coverage",
            parameters={
                "claim_type": "settlement_failure",
                "documentation_required": True,
                "expected_processing_hours": 72,
                "coverage_percentage": 0.8
            },
            estimated_effectiveness=0.8,
            implementation_cost=ImplementationCost.HIGH,
            time_to_implement=timedelta(minutes=240),
            required_approvals=["senior_manager", "legal_team"],
            is_reversible=False,
            side_effects=["Premium increase", "Regulatory notification"]
        ),
    ]


def default_escalation_rules() -> List[EscalationRule]:
    return [
        EscalationRule(
            id="high-risk-settlement-escalation",
            name="High Risk Settlement Escalation",
            conditions=[
                EscalationCondition(field="risk_score", operator=ConditionOperator.GREATER_THAN, value=0.8, weight=0.7),
                EscalationCondition(field="notional_amount", operator=ConditionOperator.GREATER_THAN,
                                    value=10_000_000, weight=0.3),
            ],
            levels=[
                EscalationLevel(level=1, roles=["operations_manager"], can_approve=True),
                EscalationLevel(level=2, roles=["risk_manager", "senior_operations"], can_approve=True, can_abort=True),
                EscalationLevel(level=3, roles=["head_of_risk", "coo"], can_approve=True, can_abort=True),
            ],
            timeouts=[timedelta(minutes=30), timedelta(minutes=60), timedelta(minutes=120)],
            notification_channels=[NotificationChannel.EMAIL, NotificationChannel.SMS, NotificationChannel.SLACK]
        ),
        EscalationRule(
            id="settlement-failure-emergency-escalation",
            name="Settlement Failure Emergency Escalation",
            conditions=[
                EscalationCondition(field="settlement_status", operator=ConditionOperator.EQUALS,
                                    value="FAILED", weight=1.0),
            ],
            levels=[
                EscalationLevel(level=1, roles=["operations_manager", "risk_manager"]),
                EscalationLevel(level=2, roles=["senior_operations", "head_of_risk"], can_approve=True),
                EscalationLevel(level=3, roles=["coo", "ceo"], can_approve=True, can_abort=True),
            ],
            timeouts=[timedelta(minutes=15), timedelta(minutes=30), timedelta(minutes=60)],
            notification_channels=[
                NotificationChannel.EMAIL,
                NotificationChannel.SMS,
                NotificationChannel.PHONE,
                NotificationChannel.PAGER
            ]
        ),
    ]


def install_defaults(
    definition_store: DefinitionStore,
    actions: MitigationActionCatalog,
    rules: EscalationRuleRegistry,
    directory: RecipientDirectory
):
    """Register the default content, leaving definitions already stored untouched."""
    for role, addresses in DEFAULT_ROLES.items():
        directory.register(role, addresses)
    for action in default_actions():
        actions.register(action)
    for rule in default_escalation_rules():
        rules.register(rule)

    created = 0
    for definition in default_definitions():
        if definition_store.get(definition.id) is None:
            definition_store.create(definition)
            created += 1
    logger.info(f"Installed default content ({created} new workflow definitions)")
