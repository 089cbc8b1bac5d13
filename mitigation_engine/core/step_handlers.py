"""Step handler registry, default step handlers and the mitigation action catalog."""

import threading
import uuid
from abc import ABC, abstractmethod
from datetime import timedelta
from functools import partial
from typing import Any, Callable, Dict, List, Optional, Union

from ..models.core import (
    ApprovalResponse,
    AutomationLevel,
    ConditionOperator,
    EscalationOutcome,
    EscalationRecord,
    MitigationAction,
    MitigationActionType,
    Notification,
    NotificationChannel,
    Priority,
    StepExecution,
    StepType,
    WorkflowDefinition,
    WorkflowEventType,
    WorkflowExecution,
    WorkflowStep,
    utcnow,
)
from .exceptions import HandlerRegistryError, StepHandlerError, EscalationUnresolvedError
from .logging import get_logger
from .notifications import Notifier, RecipientDirectory
from .responses import ResponseBroker
from .trigger_matcher import evaluate_operator, extract_field

logger = get_logger(__name__)


class StepContext:
    """Everything a step handler may read or call while running one step.

    The execution and step execution are snapshots; handlers report through
    their return value and never mutate engine state directly.
    """

    def __init__(
        self,
        execution: WorkflowExecution,
        definition: WorkflowDefinition,
        step_execution: StepExecution,
        cancel_token: threading.Event,
        emit: Callable[..., Any],
        escalate: Callable[..., EscalationRecord],
        default_approval_timeout: timedelta = timedelta(minutes=60)
    ):
        self.execution = execution
        self.definition = definition
        self.step_execution = step_execution
        self.cancel_token = cancel_token
        self.emit = emit
        self.escalate = escalate
        self.default_approval_timeout = default_approval_timeout

    @property
    def execution_id(self) -> str:
        return self.execution.id

    @property
    def is_cancelled(self) -> bool:
        return self.cancel_token.is_set()


class AwaitingResponse:
    """Returned by a step handler whose step waits for an outside answer.

    The engine keeps the step in progress, frees the execution's worker and
    then calls ``start(resume)``. ``start`` opens the wait. Whichever thread
    later sees the answer, an expiry or a cancellation calls ``resume(finish)``
    once; the engine then calls ``finish()`` the way it calls a handler: it
    returns the step result or raises the step's failure.
    """

    def __init__(self, start: Callable[[Callable[[Callable[[], Any]], None]], None], waiting_for: str):
        self.start = start
        self.waiting_for = waiting_for

    def __repr__(self) -> str:
        return f"AwaitingResponse({self.waiting_for!r})"


StepHandler = Callable[[WorkflowStep, StepContext], Union[Dict[str, Any], AwaitingResponse, None]]


class ActionExecutor(ABC):
    """Carries out a mitigation action against the outside world."""

    @abstractmethod
    def execute(self, action: MitigationAction, parameters: Dict[str, Any], context: StepContext) -> Dict[str, Any]:
        """Execute the action and return its result payload. Raises on failure."""


class Verifier(ABC):
    """Checks that a verification step's criteria hold."""

    @abstractmethod
    def verify(self, step: WorkflowStep, context: StepContext) -> Dict[str, Any]:
        """Return a payload with a boolean ``verified`` key."""


class DocumentationWriter(ABC):
    """Stores workflow documentation."""

    @abstractmethod
    def write(self, document: Dict[str, Any]) -> str:
        """Store a document and return its identifier."""


class SimulatedActionExecutor(ActionExecutor):
    """Action executor reporting the expected effect of each action type."""

    def execute(self, action: MitigationAction, parameters: Dict[str, Any], context: StepContext) -> Dict[str, Any]:
        logger.info(f"Executing mitigation action '{action.name}' for execution {context.execution_id}")

        if action.action_type == MitigationActionType.COMMUNICATION:
            return {
                "contacted": True,
                "method": parameters.get("method", action.parameters.get("method", "email")),
                "estimated_impact": action.estimated_effectiveness
            }
        if action.action_type == MitigationActionType.SYSTEM_ADJUSTMENT:
            return {
                "adjustment_applied": True,
                "adjustment_type": parameters.get("adjustment_type", "monitoring_enhancement"),
                "system_impact": "minimal",
                "estimated_impact": action.estimated_effectiveness
            }
        if action.action_type == MitigationActionType.ALTERNATIVE_SETTLEMENT:
            return {
                "alternative_route_activated": True,
                "route": parameters.get("alternative_channel", action.parameters.get("alternative_channel", "backup_custodian")),
                "additional_cost": action.parameters.get("cost_increase", 0.02),
                "estimated_delay_hours": action.parameters.get("time_delay_hours", 24),
                "estimated_impact": action.estimated_effectiveness
            }
        return {
            "action_executed": True,
            "estimated_impact": action.estimated_effectiveness
        }


class SignalVerifier(Verifier):
    """Verifies a step's ``checks`` against the execution's trigger signals.

    Each check is a mapping with ``field``, ``operator`` and ``threshold``.
    A step without checks verifies trivially.
    """

    def verify(self, step: WorkflowStep, context: StepContext) -> Dict[str, Any]:
        passed: List[str] = []
        failed: List[str] = []
        for check in step.parameters.get("checks", []):
            label = f"{check['field']} {check['operator']} {check.get('threshold')}"
            value = extract_field(context.execution.trigger_signals, check["field"])
            if evaluate_operator(ConditionOperator(check["operator"]), value, check.get("threshold")):
                passed.append(label)
            else:
                failed.append(label)
        return {
            "verified": not failed,
            "checks_passed": passed,
            "checks_failed": failed,
            "verifier": context.step_execution.assigned_to or "system"
        }


class InMemoryDocumentationWriter(DocumentationWriter):
    """Keeps documents in a lock-guarded dict."""

    def __init__(self):
        self._documents: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.Lock()

    def write(self, document: Dict[str, Any]) -> str:
        document_id = document.get("document_id") or str(uuid.uuid4())
        with self._lock:
            self._documents[document_id] = dict(document, document_id=document_id)
        return document_id

    def get(self, document_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            return self._documents.get(document_id)

    def list_for_execution(self, execution_id: str) -> List[Dict[str, Any]]:
        with self._lock:
            return [d for d in self._documents.values() if d.get("execution_id") == execution_id]


class MitigationActionCatalog:
    """Registry of mitigation actions that action steps can execute."""

    def __init__(self):
        self._actions: Dict[str, MitigationAction] = {}
        self._lock = threading.RLock()

    def register(self, action: MitigationAction):
        with self._lock:
            self._actions[action.id] = action
        logger.debug(f"Registered mitigation action '{action.name}'")

    def get(self, action_id: str) -> Optional[MitigationAction]:
        with self._lock:
            return self._actions.get(action_id)

    def list(self) -> List[MitigationAction]:
        with self._lock:
            return list(self._actions.values())

    def find_by_type(self, action_type: MitigationActionType) -> List[MitigationAction]:
        with self._lock:
            return [a for a in self._actions.values() if a.action_type == action_type]


class StepHandlerRegistry:
    """Registry mapping step types to the handlers that run them."""

    def __init__(self):
        self._handlers: Dict[StepType, StepHandler] = {}
        self._lock = threading.RLock()

    def register(self, step_type: StepType, handler: StepHandler, replace: bool = False) -> None:
        """Register the handler for a step type.

        Args:
            step_type: Step type the handler runs
            handler: Callable ``handler(step, context) -> dict``
            replace: Allow overriding an existing registration

        Raises:
            HandlerRegistryError: If the handler is invalid or already registered
        """
        step_type = StepType(step_type)
        if not callable(handler):
            raise HandlerRegistryError(f"Handler for '{step_type.value}' must be callable", step_type=step_type.value)

        with self._lock:
            if step_type in self._handlers and not replace:
                raise HandlerRegistryError(
                    f"Handler for '{step_type.value}' is already registered",
                    step_type=step_type.value
                )
            self._handlers[step_type] = handler
        logger.info(f"Registered handler for step type '{step_type.value}'")

    def get(self, step_type: StepType) -> StepHandler:
        """
        Retrieve the handler for a step type.

        Raises:
            HandlerRegistryError: If no handler is registered
        """
        with self._lock:
            handler = self._handlers.get(StepType(step_type))
        if handler is None:
            raise HandlerRegistryError(
                f"No handler registered for step type '{StepType(step_type).value}'",
                step_type=StepType(step_type).value
            )
        return handler

    def exists(self, step_type: StepType) -> bool:
        with self._lock:
            return StepType(step_type) in self._handlers

    def list(self) -> List[StepType]:
        with self._lock:
            return list(self._handlers.keys())


class DefaultStepHandlers:
    """The standard handler for each step type, wired to external collaborators."""

    def __init__(
        self,
        notifier: Notifier,
        directory: RecipientDirectory,
        responses: ResponseBroker,
        actions: MitigationActionCatalog,
        action_executor: Optional[ActionExecutor] = None,
        verifier: Optional[Verifier] = None,
        documentation_writer: Optional[DocumentationWriter] = None
    ):
        self.notifier = notifier
        self.directory = directory
        self.responses = responses
        self.actions = actions
        self.action_executor = action_executor or SimulatedActionExecutor()
        self.verifier = verifier or SignalVerifier()
        self.documentation_writer = documentation_writer or InMemoryDocumentationWriter()

    def register_all(self, registry: StepHandlerRegistry, replace: bool = False):
        registry.register(StepType.NOTIFICATION, self.notification, replace=replace)
        registry.register(StepType.APPROVAL, self.approval, replace=replace)
        registry.register(StepType.ACTION, self.action, replace=replace)
        registry.register(StepType.VERIFICATION, self.verification, replace=replace)
        registry.register(StepType.ESCALATION, self.escalation, replace=replace)
        registry.register(StepType.DOCUMENTATION, self.documentation, replace=replace)

    def notification(self, step: WorkflowStep, context: StepContext) -> Dict[str, Any]:
        params = step.parameters
        recipients = self.directory.resolve([step.assigned_role], params.get("recipients", []))
        notification = Notification(
            recipients=recipients,
            channels=[NotificationChannel(c) for c in params.get("channels", ["email"])],
            subject=f"Settlement Risk Workflow: {step.name}",
            message=step.description,
            priority=Priority(params.get("priority", params.get("urgency", "medium"))),
            execution_id=context.execution_id,
            metadata={"instruction_id": context.execution.instruction_id, "step_id": step.id}
        )
        try:
            self.notifier.send(notification)
        except Exception as e:
            raise StepHandlerError(
                f"Notification delivery failed: {str(e)}",
                step_id=step.id,
                execution_id=context.execution_id
            ) from e

        context.emit(WorkflowEventType.NOTIFICATION_SENT, notification_id=notification.id,
                     recipients=recipients, step_id=step.id)
        return {
            "notification_id": notification.id,
            "sent_at": notification.created_at,
            "recipients": len(recipients)
        }

    def approval(self, step: WorkflowStep, context: StepContext) -> Union[Dict[str, Any], AwaitingResponse]:
        params = step.parameters

        if step.automation_level == AutomationLevel.FULLY_AUTOMATED and params.get("auto_approve", True):
            return {"approved": True, "approver": "system", "approval_time": utcnow()}

        timeout = timedelta(minutes=params["timeout_minutes"]) if "timeout_minutes" in params \
            else context.default_approval_timeout
        approvers = self.directory.resolve([step.assigned_role], params.get("approvers", []))

        def start(resume):
            request = self.responses.request_approval(
                context.execution_id, context.step_execution.id, approvers, timeout,
                on_complete=lambda response: resume(partial(self._approval_result, step, context, timeout, response))
            )
            context.emit(WorkflowEventType.APPROVAL_REQUESTED, request_id=request.id, step_id=step.id,
                         approvers=approvers, approval_level=params.get("approval_level"),
                         expires_at=request.expires_at)
            try:
                self.notifier.send(Notification(
                    recipients=approvers,
                    subject=f"Approval required: {step.name}",
                    message=f"{step.description} (request {request.id})",
                    priority=Priority.HIGH,
                    execution_id=context.execution_id,
                    metadata={"request_id": request.id}
                ))
            except Exception as e:
                # The request stays answerable through respond_to_approval
                logger.warning(f"Could not notify approvers for request {request.id}: {str(e)}")

        return AwaitingResponse(start, f"approval of '{step.name}'")

    def _approval_result(self, step: WorkflowStep, context: StepContext, timeout: timedelta,
                         response: Optional[ApprovalResponse]) -> Dict[str, Any]:
        if context.is_cancelled:
            raise StepHandlerError("Approval wait cancelled", step_id=step.id, execution_id=context.execution_id)
        if response is None:
            raise StepHandlerError(
                f"Approval request timed out after {timeout}",
                step_id=step.id,
                execution_id=context.execution_id
            )
        if not response.approved:
            raise StepHandlerError(
                f"Approval request denied by {response.responder}",
                step_id=step.id,
                execution_id=context.execution_id
            )
        return {
            "approved": True,
            "approver": response.responder,
            "approval_time": response.responded_at,
            "request_id": response.request_id,
            "notes": response.notes
        }

    def action(self, step: WorkflowStep, context: StepContext) -> Dict[str, Any]:
        params = step.parameters
        action: Optional[MitigationAction] = None

        if "action_id" in params:
            action = self.actions.get(params["action_id"])
        else:
            action_type = MitigationActionType(params.get("action_type", MitigationActionType.SYSTEM_ADJUSTMENT))
            applicable = self.actions.find_by_type(action_type)
            action = applicable[0] if applicable else None

        if action is None:
            raise StepHandlerError(
                f"No applicable mitigation action for step '{step.name}'",
                step_id=step.id,
                execution_id=context.execution_id
            )

        result = self.action_executor.execute(action, params, context)
        return {
            "action_id": action.id,
            "action_name": action.name,
            "action_type": action.action_type.value,
            "result": result,
            "executed_at": utcnow()
        }

    def verification(self, step: WorkflowStep, context: StepContext) -> Dict[str, Any]:
        result = self.verifier.verify(step, context)
        if not result.get("verified", False):
            raise StepHandlerError(
                "Verification failed - criteria not met",
                step_id=step.id,
                execution_id=context.execution_id,
                details=result
            )
        return dict(result, verified_at=utcnow())

    def escalation(self, step: WorkflowStep, context: StepContext) -> AwaitingResponse:
        reason = step.parameters.get("reason") or step.description or f"Escalation step '{step.name}'"

        def start(resume):
            context.escalate(
                reason,
                rule_id=step.parameters.get("escalation_rule_id"),
                on_complete=lambda record: resume(partial(self._escalation_result, step, context, record))
            )

        return AwaitingResponse(start, f"escalation '{step.name}'")

    @staticmethod
    def _escalation_result(step: WorkflowStep, context: StepContext, record: EscalationRecord) -> Dict[str, Any]:
        if record.outcome == EscalationOutcome.APPROVED:
            return {
                "escalation_id": record.id,
                "outcome": record.outcome.value,
                "resolved_by": record.resolved_by
            }
        if record.outcome == EscalationOutcome.ABORTED:
            raise StepHandlerError(
                f"Escalation {record.id} aborted by {record.resolved_by}",
                step_id=step.id,
                execution_id=context.execution_id
            )
        raise EscalationUnresolvedError(
            f"Escalation {record.id} ended without resolution",
            escalation_id=record.id,
            execution_id=context.execution_id
        )

    def documentation(self, step: WorkflowStep, context: StepContext) -> Dict[str, Any]:
        execution = context.execution
        document = {
            "document_id": str(uuid.uuid4()),
            "definition_id": execution.definition_id,
            "execution_id": execution.id,
            "instruction_id": execution.instruction_id,
            "document_type": step.parameters.get("document_type", "workflow_log"),
            "created_at": utcnow().isoformat(),
            "content": {
                "summary": f"Workflow execution for instruction {execution.instruction_id}",
                "trigger_reason": execution.trigger_reason,
                "steps": [
                    {
                        "step_number": s.step_number,
                        "status": s.status.value,
                        "duration_seconds": s.duration.total_seconds() if s.duration else None,
                        "result": s.result
                    }
                    for s in execution.step_executions
                    if s.id != context.step_execution.id
                ]
            }
        }
        document_id = self.documentation_writer.write(document)
        context.emit(WorkflowEventType.DOCUMENTATION_CREATED, document_id=document_id,
                     document_type=document["document_type"])
        return {"document_id": document_id, "document_type": document["document_type"]}
