"""Execution engine: drives workflow executions through their step state machine."""

import threading
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta
from enum import Enum
from functools import partial
from typing import Any, Callable, Dict, Iterable, List, NamedTuple, Optional, Set

from ..models.core import (
    ACTIVE_STATUSES,
    DependencyPolicy,
    EscalationDecision,
    EscalationOutcome,
    EscalationRecord,
    EscalationSource,
    ExecutionStatusEnum,
    OnFailure,
    OnSuccess,
    ReportTimeFrame,
    StepExecution,
    StepStatusEnum,
    WorkflowDefinition,
    WorkflowEventType,
    WorkflowExecution,
    WorkflowReport,
    WorkflowStep,
    ApprovalRequest,
    utcnow,
)
from ..storage.repositories import ExecutionRepository, InMemoryExecutionRepository
from .definition_store import DefinitionStore
from .error_recovery import RetryConfig
from .escalation import EscalationCoordinator
from .events import EventDispatcher
from .exceptions import (
    DefinitionNotFoundError,
    InvalidTransitionError,
    NoMatchingDefinitionError,
    WorkflowEngineError,
)
from .logging import get_logger, set_logging_context, clear_logging_context
from .reporting import ReportGenerator
from .responses import ResponseBroker
from .step_handlers import AwaitingResponse, StepContext, StepHandlerRegistry
from .trigger_matcher import TriggerMatcher

logger = get_logger(__name__)

RECOVERY_NOTE = "Recovered after restart"


class _Next(Enum):
    CONTINUE = "continue"
    STOP = "stop"


class _EscalationRequest(NamedTuple):
    step_execution_id: str
    reason: str
    rule_id: Optional[str]
    snapshot: WorkflowExecution


class _PreparedStep(NamedTuple):
    step: WorkflowStep
    step_execution_id: str
    context: StepContext


class _Suspension(NamedTuple):
    prepared: _PreparedStep
    awaiting: AwaitingResponse


def _raise(error: Exception):
    raise error


class ExecutionEngine:
    """Matches signals to playbooks and runs each triggered execution to a terminal state.

    Every execution is logically single-threaded: at most one driver runs its
    steps at a time, and all mutation happens under the execution's own lock.
    Step handlers run outside the lock so pause, cancel and bypass requests
    are never blocked by a slow handler. Every mutation is written through to
    the execution repository, which is the system of record.

    No worker waits on a human. An approval step, an escalation step or a
    failure escalation suspends the execution: its driver returns the worker
    to the pool and a continuation reschedules it when the response, the
    expiry timer or a cancellation arrives. Retry backoff works the same way
    through a ``threading.Timer``.

    Terminal executions are dropped from memory once no driver or
    continuation refers to them; queries then read the repository.
    """

    def __init__(
        self,
        definition_store: DefinitionStore,
        handlers: StepHandlerRegistry,
        coordinator: EscalationCoordinator,
        responses: ResponseBroker,
        events: Optional[EventDispatcher] = None,
        repository: Optional[ExecutionRepository] = None,
        matcher: Optional[TriggerMatcher] = None,
        max_concurrent_executions: int = 10,
        match_threshold: float = 0.5,
        retry_backoff_seconds: float = 1.0,
        retry_backoff_max_seconds: float = 60.0,
        max_escalation_reruns: int = 1,
        default_approval_timeout: timedelta = timedelta(minutes=60)
    ):
        """Initialize the execution engine.

        Args:
            definition_store: Store the matcher and recovery read definitions from
            handlers: Registry of step handlers by step type
            coordinator: Escalation coordinator used on step failure
            responses: Broker holding approval and acknowledgment waits
            events: Dispatcher for workflow events
            repository: Execution repository written through on every mutation
            matcher: Trigger matcher; built from the store when omitted
            max_concurrent_executions: Worker threads driving executions
            match_threshold: Match floor used when the matcher is built here
            retry_backoff_seconds: Base delay of the exponential retry backoff
            retry_backoff_max_seconds: Cap on a single retry delay
            max_escalation_reruns: Re-runs of a required step allowed after approved escalations
            default_approval_timeout: Approval wait used when a step sets none
        """
        self.definition_store = definition_store
        self.handlers = handlers
        self.coordinator = coordinator
        self.responses = responses
        self.events = events or coordinator.events
        self.repository = repository or InMemoryExecutionRepository()
        self.matcher = matcher or TriggerMatcher(definition_store, match_threshold)
        self.reports = ReportGenerator(self.repository, definition_store)

        self.retry_backoff_seconds = retry_backoff_seconds
        self.retry_backoff_max_seconds = retry_backoff_max_seconds
        self.max_escalation_reruns = max_escalation_reruns
        self.default_approval_timeout = default_approval_timeout

        self._executions: Dict[str, WorkflowExecution] = {}
        self._bound_definitions: Dict[str, WorkflowDefinition] = {}
        self._cancel_tokens: Dict[str, threading.Event] = {}
        self._retry_timers: Dict[str, threading.Timer] = {}
        self._drivers: Set[str] = set()
        # Execution id -> step execution id whose response or escalation is outstanding
        self._suspended: Dict[str, str] = {}

        self._execution_locks: Dict[str, threading.RLock] = {}
        self._lock_manager = threading.RLock()

        self._statuses: Dict[str, ExecutionStatusEnum] = {}
        self._status_changed = threading.Condition()

        self._executor = ThreadPoolExecutor(
            max_workers=max_concurrent_executions,
            thread_name_prefix="workflow-driver"
        )
        self._shutdown_event = threading.Event()

        logger.info(f"ExecutionEngine initialized with max_concurrent_executions={max_concurrent_executions}")

    # Triggering

    def trigger_workflow(
        self,
        instruction_id: str,
        trigger_signals: Dict[str, Any],
        triggered_by: str = "system",
        definition_id: Optional[str] = None
    ) -> WorkflowExecution:
        """
        Match the signals to a definition and start a new execution of it.

        Concurrent triggers for the same instruction are not coalesced; each
        starts an independent execution.

        Args:
            instruction_id: Settlement instruction the signals describe
            trigger_signals: Flat mapping of signal names to values
            triggered_by: User or system that triggered the workflow
            definition_id: Explicit definition to run, bypassing scoring

        Returns:
            WorkflowExecution: Snapshot of the new execution; its steps run asynchronously

        Raises:
            NoMatchingDefinitionError: If no definition scores above the match floor
            DefinitionNotFoundError: If the explicit definition is absent or inactive
        """
        if self._shutdown_event.is_set():
            raise WorkflowEngineError("Execution engine is shut down")

        try:
            match = self.matcher.match(trigger_signals, definition_id=definition_id, instruction_id=instruction_id)
        except (NoMatchingDefinitionError, DefinitionNotFoundError) as e:
            self.events.emit(
                WorkflowEventType.TRIGGER_ERROR,
                instruction_id=instruction_id,
                definition_id=definition_id,
                error=e.message,
                error_code=e.error_code
            )
            logger.warning(f"Trigger for instruction {instruction_id} rejected: {e.message}")
            raise

        definition = match.definition
        execution = WorkflowExecution(
            definition_id=definition.id,
            definition_name=definition.name,
            instruction_id=instruction_id,
            triggered_by=triggered_by,
            trigger_reason=match.trigger_reason,
            trigger_signals=dict(trigger_signals)
        )

        with self._get_execution_lock(execution.id):
            with self._lock_manager:
                self._executions[execution.id] = execution
                self._bound_definitions[execution.id] = definition
                self._cancel_tokens[execution.id] = threading.Event()
            self._persist(execution)
            self.events.emit(
                WorkflowEventType.WORKFLOW_TRIGGERED, execution.id,
                instruction_id=instruction_id,
                definition_id=definition.id,
                definition_name=definition.name,
                score=match.score,
                trigger_reason=match.trigger_reason,
                triggered_by=triggered_by
            )
            snapshot = execution.model_copy(deep=True)
            self._schedule_driver(execution.id)

        logger.info(
            f"Triggered workflow '{definition.name}' for instruction {instruction_id}: "
            f"execution_id={execution.id}, score={match.score:.3f}"
        )
        return snapshot

    # Control operations

    def pause_execution(self, execution_id: str, reason: str = "Paused by user") -> bool:
        """
        Pause an execution between steps. A step already running completes first.

        Returns:
            True if the execution was paused, False if its state does not allow it
        """
        try:
            with self._get_execution_lock(execution_id):
                execution = self._require(execution_id)
                if execution.status not in (ExecutionStatusEnum.INITIATED, ExecutionStatusEnum.IN_PROGRESS):
                    raise InvalidTransitionError(
                        f"Cannot pause execution in status '{execution.status.value}'",
                        execution_id=execution_id,
                        current_status=execution.status.value
                    )
                self._cancel_retry_timer(execution_id)
                self._pause(execution, reason)
            logger.info(f"Paused execution {execution_id}: {reason}")
            return True
        except InvalidTransitionError as e:
            logger.warning(e.message)
            return False

    def resume_execution(self, execution_id: str) -> bool:
        """
        Resume a paused execution from its current step.

        Returns:
            True if the execution was resumed, False if it was not paused
        """
        try:
            with self._get_execution_lock(execution_id):
                execution = self._require(execution_id)
                if execution.status != ExecutionStatusEnum.PAUSED:
                    raise InvalidTransitionError(
                        f"Cannot resume execution in status '{execution.status.value}'",
                        execution_id=execution_id,
                        current_status=execution.status.value
                    )
                execution.status = ExecutionStatusEnum.IN_PROGRESS
                execution.add_note("Resumed")
                self._persist(execution)
                self.events.emit(WorkflowEventType.WORKFLOW_RESUMED, execution_id,
                                 current_step=execution.current_step)
                self._schedule_driver(execution_id)
            logger.info(f"Resumed execution {execution_id}")
            return True
        except InvalidTransitionError as e:
            logger.warning(e.message)
            return False

    def cancel_execution(self, execution_id: str, reason: str = "Cancelled by user") -> bool:
        """
        Cancel an execution from any non-terminal state.

        Pending approval and acknowledgment waits are released immediately and
        no further step handler is started.

        Returns:
            True if the execution was cancelled, False if it is unknown or already terminal
        """
        try:
            with self._get_execution_lock(execution_id):
                execution = self._require(execution_id)
                if execution.is_terminal:
                    raise InvalidTransitionError(
                        f"Cannot cancel execution in terminal status '{execution.status.value}'",
                        execution_id=execution_id,
                        current_status=execution.status.value
                    )

                now = utcnow()
                execution.status = ExecutionStatusEnum.CANCELLED
                execution.ended_at = now
                execution.pending_retry_count = None
                execution.add_note(f"Cancelled: {reason}")
                for step_execution in execution.step_executions:
                    if step_execution.status == StepStatusEnum.IN_PROGRESS:
                        step_execution.status = StepStatusEnum.CANCELLED
                        step_execution.ended_at = now
                        step_execution.notes = f"Cancelled: {reason}"
                definition = self._bound_definitions.get(execution_id)
                if definition is not None:
                    execution.effectiveness = self._effectiveness_for(execution, definition)
                self._release_waits(execution_id)
                self._persist(execution)
                self.events.emit(WorkflowEventType.WORKFLOW_CANCELLED, execution_id, reason=reason)
                self._evict_if_finished(execution_id)
            logger.info(f"Cancelled execution {execution_id}: {reason}")
            return True
        except InvalidTransitionError as e:
            logger.warning(e.message)
            return False

    def bypass_step(self, execution_id: str, step_execution_id: str,
                    bypass_reason: str, bypassed_by: str) -> bool:
        """
        Manually bypass a failed, skipped or pending step marked as bypassable.

        A new skipped StepExecution carrying the bypass fields is appended. If
        the cursor sits on that step it moves past it; the execution status is
        left unchanged.

        Returns:
            True if the step was bypassed, False otherwise
        """
        try:
            with self._get_execution_lock(execution_id):
                execution = self._require(execution_id)
                if execution.is_terminal:
                    raise InvalidTransitionError(
                        f"Cannot bypass steps of execution in terminal status '{execution.status.value}'",
                        execution_id=execution_id,
                        current_status=execution.status.value
                    )

                record = execution.get_step_execution(step_execution_id)
                if record is None:
                    raise InvalidTransitionError(
                        f"Step execution {step_execution_id} not found",
                        execution_id=execution_id
                    )
                definition = self._definition_for(execution)
                step = definition.get_step(record.step_id)
                if step is None or not step.is_bypassable:
                    raise InvalidTransitionError(
                        f"Step '{record.step_id}' is not bypassable",
                        execution_id=execution_id
                    )
                latest = execution.latest_step_execution(step.id)
                if latest.id != record.id or record.is_bypassed or record.status not in (
                    StepStatusEnum.FAILED, StepStatusEnum.SKIPPED, StepStatusEnum.PENDING
                ):
                    raise InvalidTransitionError(
                        f"Step execution {step_execution_id} cannot be bypassed in status '{record.status.value}'",
                        execution_id=execution_id
                    )

                now = utcnow()
                execution.step_executions.append(StepExecution(
                    step_id=step.id,
                    step_number=step.step_number,
                    status=StepStatusEnum.SKIPPED,
                    assigned_to=bypassed_by,
                    started_at=now,
                    ended_at=now,
                    retry_count=record.retry_count,
                    notes=f"Bypassed: {bypass_reason}",
                    bypassed_by=bypassed_by,
                    bypass_reason=bypass_reason
                ))
                execution.add_note(f"Step '{step.name}' bypassed by {bypassed_by}: {bypass_reason}")

                if definition.position_of(step.id) == execution.current_step:
                    self._cancel_retry_timer(execution_id)
                    self._advance_cursor(execution, definition)

                self._persist(execution)
                self.events.emit(
                    WorkflowEventType.STEP_BYPASSED, execution_id,
                    step_id=step.id, step_execution_id=step_execution_id,
                    bypassed_by=bypassed_by, reason=bypass_reason
                )
                if execution.status == ExecutionStatusEnum.IN_PROGRESS:
                    self._schedule_driver(execution_id)

            logger.info(f"Bypassed step '{step.id}' of execution {execution_id} ({bypassed_by})")
            return True
        except (InvalidTransitionError, DefinitionNotFoundError) as e:
            logger.warning(e.message)
            return False

    # Response inputs

    def respond_to_approval(self, request_id: str, responder: str, approved: bool,
                            notes: Optional[str] = None) -> bool:
        return self.responses.respond_to_approval(request_id, responder, approved, notes)

    def acknowledge_escalation(self, escalation_id: str, level: int, acknowledged_by: str,
                               decision: EscalationDecision = EscalationDecision.ACKNOWLEDGE) -> bool:
        return self.coordinator.acknowledge(escalation_id, level, acknowledged_by, decision)

    # Queries

    def get_execution(self, execution_id: str) -> Optional[WorkflowExecution]:
        with self._lock_manager:
            cached = execution_id in self._executions
        if cached:
            with self._get_execution_lock(execution_id):
                execution = self._executions.get(execution_id)
                if execution is not None:
                    return execution.model_copy(deep=True)
        return self.repository.get(execution_id)

    def get_instruction_executions(self, instruction_id: str) -> List[WorkflowExecution]:
        return self.repository.list_by_instruction(instruction_id)

    def get_active_executions(self) -> List[WorkflowExecution]:
        return self.repository.list_by_status(ACTIVE_STATUSES)

    def get_in_progress_executions(self) -> List[WorkflowExecution]:
        """Snapshots of the executions this engine is currently running."""
        with self._lock_manager:
            execution_ids = list(self._executions.keys())
        snapshots = []
        for execution_id in execution_ids:
            with self._get_execution_lock(execution_id):
                execution = self._executions.get(execution_id)
                if execution is not None and execution.status == ExecutionStatusEnum.IN_PROGRESS:
                    snapshots.append(execution.model_copy(deep=True))
        return snapshots

    def get_escalations(self, execution_id: str) -> List[EscalationRecord]:
        return self.coordinator.get_escalations(execution_id)

    def get_pending_approvals(self, execution_id: Optional[str] = None) -> List[ApprovalRequest]:
        return self.responses.pending_approvals(execution_id)

    def get_bound_definition(self, execution_id: str) -> Optional[WorkflowDefinition]:
        """The definition snapshot an execution was started with."""
        with self._lock_manager:
            return self._bound_definitions.get(execution_id)

    def get_cancel_token(self, execution_id: str) -> Optional[threading.Event]:
        with self._lock_manager:
            return self._cancel_tokens.get(execution_id)

    def generate_report(self, time_frame: ReportTimeFrame = ReportTimeFrame.WEEKLY) -> WorkflowReport:
        return self.reports.generate(ReportTimeFrame(time_frame))

    def wait_for_status(self, execution_id: str, statuses: Iterable[ExecutionStatusEnum],
                        timeout: Optional[float] = None) -> Optional[WorkflowExecution]:
        """
        Block until the execution reaches one of the statuses.

        Executions no longer held in memory are read from the repository.

        Returns:
            Snapshot of the execution, or None if the timeout expired first or
            the execution already ended in a status that was not asked for
        """
        wanted = {ExecutionStatusEnum(s) for s in statuses}
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._status_changed:
            while True:
                status = self._statuses.get(execution_id)
                if status in wanted:
                    break
                if status is None:
                    stored = self.repository.get(execution_id)
                    if stored is not None and stored.status in wanted:
                        return stored
                    if stored is not None and stored.is_terminal:
                        return None
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    return None
                self._status_changed.wait(remaining)
        return self.get_execution(execution_id)

    # Recovery and lifecycle

    def recover_executions(self) -> List[str]:
        """
        Reload executions persisted as initiated or in progress by a previous process.

        Each is paused with a note so a restart never silently loses it; an
        interrupted step is re-run on resume. Executions whose definition no
        longer exists are failed.

        Returns:
            Ids of the recovered executions
        """
        recovered = []
        for stored in self.repository.list_by_status(
            [ExecutionStatusEnum.INITIATED, ExecutionStatusEnum.IN_PROGRESS]
        ):
            with self._get_execution_lock(stored.id):
                if stored.id in self._executions:
                    continue
                execution = stored
                with self._lock_manager:
                    self._executions[execution.id] = execution
                    self._cancel_tokens[execution.id] = threading.Event()

                now = utcnow()
                for step_execution in execution.step_executions:
                    if step_execution.status == StepStatusEnum.IN_PROGRESS:
                        step_execution.status = StepStatusEnum.CANCELLED
                        step_execution.ended_at = now
                        step_execution.notes = "Interrupted by restart"
                        execution.pending_retry_count = step_execution.retry_count

                definition = self.definition_store.get(execution.definition_id)
                if definition is None:
                    self._fail(execution, f"Workflow definition '{execution.definition_id}' no longer exists")
                    self._evict_if_finished(execution.id)
                    continue

                self._bound_definitions[execution.id] = definition
                self._pause(execution, RECOVERY_NOTE)
                recovered.append(execution.id)

        if recovered:
            logger.info(f"Recovered {len(recovered)} interrupted executions")
        return recovered

    def handle_timeout_escalation(self, record: EscalationRecord):
        """Apply the outcome of an escalation started by the deadline monitor.

        An aborted escalation fails the execution; any other outcome is only
        noted, since the timed-out step is still owned by its driver.
        """
        with self._get_execution_lock(record.execution_id):
            execution = self._executions.get(record.execution_id)
            if execution is None or execution.is_terminal:
                return
            if record.outcome == EscalationOutcome.ABORTED:
                self._fail(execution, f"Timed-out step aborted by {record.resolved_by} via escalation {record.id}")
                self._evict_if_finished(execution.id)
            else:
                execution.add_note(f"Timeout escalation {record.id} ended {record.outcome.value}")
                self._persist(execution)

    def shutdown(self, wait: bool = True):
        """Stop accepting work, release pending waits and stop the worker pool."""
        logger.info("Shutting down execution engine")
        self._shutdown_event.set()
        with self._lock_manager:
            timers = list(self._retry_timers.values())
            self._retry_timers.clear()
        for timer in timers:
            timer.cancel()
        self.responses.close()
        self._executor.shutdown(wait=wait)

    # Driver

    def _schedule_driver(self, execution_id: str) -> bool:
        """Start a driver unless one is already running. Caller holds the execution lock."""
        if execution_id in self._drivers or self._shutdown_event.is_set():
            return False
        self._drivers.add(execution_id)
        try:
            self._executor.submit(self._drive, execution_id)
        except RuntimeError as e:
            self._drivers.discard(execution_id)
            logger.warning(f"Could not schedule execution {execution_id}: {str(e)}")
            return False
        return True

    def _drive(self, execution_id: str):
        """Run steps of one execution until it stops, pauses or suspends."""
        lock = self._get_execution_lock(execution_id)
        set_logging_context(execution_id=execution_id)
        try:
            while True:
                with lock:
                    prepared = self._prepare_next_step(execution_id)
                    if prepared is None:
                        self._release_driver(execution_id)
                        return

                result, error = self._invoke_handler(prepared)

                with lock:
                    outcome = self._apply_step_outcome(execution_id, prepared, result, error)
                    if outcome is _Next.CONTINUE:
                        continue
                    self._release_driver(execution_id)

                self._follow(execution_id, outcome)
                return
        except Exception as e:
            logger.error(f"Driver for execution {execution_id} failed: {str(e)}", exc_info=True)
            with lock:
                self._drivers.discard(execution_id)
                self._suspended.pop(execution_id, None)
                self._abandon(execution_id, e)
        finally:
            clear_logging_context()

    def _abandon(self, execution_id: str, error: Exception):
        """Fail an execution whose driver or continuation raised. Caller holds the execution lock."""
        execution = self._executions.get(execution_id)
        if execution is not None and not execution.is_terminal:
            try:
                self._fail(execution, f"Engine error: {str(error)}")
            except Exception as finalize_error:
                logger.error(f"Failed to finalize execution {execution_id}: {str(finalize_error)}")
        self._evict_if_finished(execution_id)

    def _release_driver(self, execution_id: str):
        self._drivers.discard(execution_id)
        self._evict_if_finished(execution_id)

    def _follow(self, execution_id: str, outcome):
        """Act on a routing outcome once no driver owns the execution. Called without the lock."""
        if isinstance(outcome, _Suspension):
            self._start_wait(execution_id, outcome)
        elif isinstance(outcome, _EscalationRequest):
            self._start_failure_escalation(execution_id, outcome)
        else:
            with self._get_execution_lock(execution_id):
                if outcome is _Next.CONTINUE:
                    self._schedule_driver(execution_id)
                else:
                    self._evict_if_finished(execution_id)

    def _prepare_next_step(self, execution_id: str) -> Optional[_PreparedStep]:
        """Move the cursor past finished or skippable steps and start the next one.

        Caller holds the execution lock. Returns None when the driver should stop.
        """
        execution = self._executions[execution_id]
        if self._shutdown_event.is_set() or execution_id in self._suspended:
            return None
        if execution.status == ExecutionStatusEnum.INITIATED:
            execution.status = ExecutionStatusEnum.IN_PROGRESS
            self._persist(execution)
        if execution.status != ExecutionStatusEnum.IN_PROGRESS:
            return None

        definition = self._definition_for(execution)
        for _ in range(definition.step_count + 1):
            step = definition.step_at(execution.current_step)
            if step is None:
                self._complete(execution, definition)
                return None

            if execution.pending_retry_count is None:
                missing = self._unsatisfied_dependencies(execution, step)
                if missing:
                    if definition.dependency_policy == DependencyPolicy.BLOCK:
                        self._pause(execution, f"Step '{step.name}' is waiting on dependencies: {', '.join(missing)}")
                        return None
                    self._skip_step(execution, definition, step, missing)
                    continue

            retry_count = execution.pending_retry_count or 0
            execution.pending_retry_count = None
            step_execution = StepExecution(
                step_id=step.id,
                step_number=step.step_number,
                status=StepStatusEnum.IN_PROGRESS,
                assigned_to=step.assigned_role,
                retry_count=retry_count
            )
            execution.step_executions.append(step_execution)
            self._persist(execution)
            self.events.emit(
                WorkflowEventType.STEP_STARTED, execution_id,
                step_id=step.id, step_execution_id=step_execution.id,
                step_number=step.step_number, retry_count=retry_count
            )

            context = StepContext(
                execution=execution.model_copy(deep=True),
                definition=definition,
                step_execution=step_execution.model_copy(),
                cancel_token=self._cancel_tokens[execution_id],
                emit=partial(self.events.emit, execution_id=execution_id),
                escalate=partial(self._escalate_from_step, execution_id, step_execution.id),
                default_approval_timeout=self.default_approval_timeout
            )
            return _PreparedStep(step, step_execution.id, context)

        raise WorkflowEngineError(f"Cursor of execution {execution_id} did not settle within the step count")

    def _invoke_handler(self, prepared: _PreparedStep, finish: Optional[Callable[[], Any]] = None):
        """Run a step handler, or the ``finish`` of a suspended one, outside the execution lock.

        Returns:
            (result, error): The normalized result dict or ``AwaitingResponse``, or the raised error
        """
        step = prepared.step
        try:
            if finish is None:
                logger.info(
                    f"Executing step '{step.name}' ({step.step_type.value}) "
                    f"for execution {prepared.context.execution_id}"
                )
                handler = self.handlers.get(step.step_type)
                result = handler(step, prepared.context)
            else:
                result = finish()
            if result is None:
                result = {}
            elif not isinstance(result, (dict, AwaitingResponse)):
                result = {"value": result}
            return result, None
        except Exception as e:
            logger.warning(f"Step '{step.name}' failed for execution {prepared.context.execution_id}: {str(e)}")
            return None, e

    def _apply_step_outcome(self, execution_id: str, prepared: _PreparedStep,
                            result: Any, error: Optional[Exception]):
        """Record a handler outcome and route the cursor. Caller holds the execution lock."""
        execution = self._executions[execution_id]
        step = prepared.step
        step_execution = execution.get_step_execution(prepared.step_execution_id)

        if execution.is_terminal or self._shutdown_event.is_set():
            if step_execution.status == StepStatusEnum.IN_PROGRESS:
                step_execution.status = StepStatusEnum.CANCELLED
                step_execution.ended_at = utcnow()
                if not execution.is_terminal:
                    step_execution.notes = "Interrupted by shutdown"
                    execution.pending_retry_count = step_execution.retry_count
                self._persist(execution)
            return _Next.STOP

        if error is None and isinstance(result, AwaitingResponse):
            # Must be registered before the wait opens
            self._suspended[execution_id] = step_execution.id
            logger.info(f"Execution {execution_id} suspended on {result.waiting_for}")
            return _Suspension(prepared, result)

        definition = self._definition_for(execution)
        step_execution.ended_at = utcnow()

        if error is None:
            step_execution.status = StepStatusEnum.COMPLETED
            step_execution.result = result
            step_execution.approver = result.get("approver")
            step_execution.approval_time = result.get("approval_time")
            self.events.emit(
                WorkflowEventType.STEP_COMPLETED, execution_id,
                step_id=step.id, step_execution_id=step_execution.id, result=result
            )

            if step.on_success == OnSuccess.COMPLETE:
                self._complete(execution, definition)
                return _Next.STOP
            if step.on_success == OnSuccess.SKIP_TO:
                self._advance_cursor(execution, definition, to=definition.position_of(step.skip_to))
            else:
                self._advance_cursor(execution, definition)
            self._persist(execution)
            return _Next.CONTINUE if execution.status == ExecutionStatusEnum.IN_PROGRESS else _Next.STOP

        step_execution.status = StepStatusEnum.FAILED
        step_execution.notes = str(error)
        step_execution.result = {"error": str(error), "error_type": type(error).__name__}
        self.events.emit(
            WorkflowEventType.STEP_FAILED, execution_id,
            step_id=step.id, step_execution_id=step_execution.id,
            retry_count=step_execution.retry_count, error=str(error)
        )

        if step_execution.retry_count < step.max_retries:
            return self._schedule_retry(execution, step, step_execution)

        policy = step.on_failure
        if policy == OnFailure.RETRY:
            policy = OnFailure.ESCALATE
        elif policy == OnFailure.CONTINUE and step.is_required:
            execution.add_note(f"Required step '{step.name}' cannot continue past a failure; escalating")
            policy = OnFailure.ESCALATE

        if policy == OnFailure.ABORT:
            self._fail(execution, f"Step '{step.name}' failed: {error}")
            return _Next.STOP
        if policy == OnFailure.CONTINUE:
            self._advance_cursor(execution, definition)
            self._persist(execution)
            return _Next.CONTINUE if execution.status == ExecutionStatusEnum.IN_PROGRESS else _Next.STOP

        self._persist(execution)
        self._suspended[execution_id] = step_execution.id
        return _EscalationRequest(
            step_execution_id=step_execution.id,
            reason=f"Step '{step.name}' failed: {error}",
            rule_id=step.parameters.get("escalation_rule_id"),
            snapshot=execution.model_copy(deep=True)
        )

    def _schedule_retry(self, execution: WorkflowExecution, step: WorkflowStep,
                        step_execution: StepExecution):
        next_retry = step_execution.retry_count + 1
        execution.pending_retry_count = next_retry
        delay = RetryConfig(
            base_delay=self.retry_backoff_seconds,
            max_delay=self.retry_backoff_max_seconds,
            jitter=False
        ).get_delay(next_retry)
        self._persist(execution)
        self.events.emit(
            WorkflowEventType.STEP_RETRY, execution.id,
            step_id=step.id, retry_count=next_retry, max_retries=step.max_retries, delay_seconds=delay
        )
        logger.info(f"Retrying step '{step.name}' ({next_retry}/{step.max_retries}) in {delay:.2f}s")

        if execution.status != ExecutionStatusEnum.IN_PROGRESS:
            return _Next.STOP
        if delay <= 0:
            return _Next.CONTINUE

        timer = threading.Timer(delay, self._on_retry_timer, args=(execution.id,))
        timer.daemon = True
        with self._lock_manager:
            self._retry_timers[execution.id] = timer
        timer.start()
        return _Next.STOP

    def _on_retry_timer(self, execution_id: str):
        with self._get_execution_lock(execution_id):
            with self._lock_manager:
                self._retry_timers.pop(execution_id, None)
            execution = self._executions.get(execution_id)
            if (execution is not None and execution.status == ExecutionStatusEnum.IN_PROGRESS
                    and execution.pending_retry_count is not None):
                self._schedule_driver(execution_id)

    # Suspension

    def _start_wait(self, execution_id: str, suspension: _Suspension):
        """Open the wait a suspended step asked for. Called without the execution lock."""
        resume = partial(self._resume_step, execution_id, suspension.prepared)
        try:
            suspension.awaiting.start(resume)
        except Exception as e:
            logger.error(f"Could not open {suspension.awaiting.waiting_for} for execution {execution_id}: {str(e)}")
            resume(partial(_raise, e))

    def _resume_step(self, execution_id: str, prepared: _PreparedStep, finish: Callable[[], Any]):
        """Continuation of a suspended step, run on whichever thread delivered the response."""
        set_logging_context(execution_id=execution_id)
        lock = self._get_execution_lock(execution_id)
        try:
            result, error = self._invoke_handler(prepared, finish)
            with lock:
                if self._suspended.get(execution_id) != prepared.step_execution_id:
                    logger.debug(f"Ignoring stale response for step execution {prepared.step_execution_id}")
                    return
                del self._suspended[execution_id]
                outcome = self._apply_step_outcome(execution_id, prepared, result, error)
            self._follow(execution_id, outcome)
        except Exception as e:
            logger.error(f"Resuming execution {execution_id} failed: {str(e)}", exc_info=True)
            with lock:
                self._suspended.pop(execution_id, None)
                self._abandon(execution_id, e)
        finally:
            clear_logging_context()

    # Escalation

    def _start_failure_escalation(self, execution_id: str, request: _EscalationRequest):
        """Escalate a failed step. Called without the execution lock."""
        on_complete = partial(self._finish_failure_escalation, execution_id, request)
        try:
            self.coordinator.start_escalation(
                request.snapshot,
                request.reason,
                EscalationSource.STEP_FAILURE,
                on_complete=on_complete,
                step_execution_id=request.step_execution_id,
                rule_id=request.rule_id,
                cancel_token=self.get_cancel_token(execution_id)
            )
        except Exception as e:
            logger.error(f"Escalation for execution {execution_id} failed: {str(e)}", exc_info=True)
            on_complete(None)

    def _finish_failure_escalation(self, execution_id: str, request: _EscalationRequest,
                                   record: Optional[EscalationRecord]):
        set_logging_context(execution_id=execution_id)
        lock = self._get_execution_lock(execution_id)
        try:
            with lock:
                if self._suspended.get(execution_id) != request.step_execution_id:
                    return
                del self._suspended[execution_id]
                outcome = self._apply_escalation_outcome(execution_id, request, record)
            self._follow(execution_id, outcome)
        except Exception as e:
            logger.error(f"Applying escalation for execution {execution_id} failed: {str(e)}", exc_info=True)
            with lock:
                self._suspended.pop(execution_id, None)
                self._abandon(execution_id, e)
        finally:
            clear_logging_context()

    def _escalate_from_step(self, execution_id: str, step_execution_id: str, reason: str,
                            rule_id: Optional[str] = None,
                            on_complete: Optional[Callable[[EscalationRecord], None]] = None) -> EscalationRecord:
        """Escalation entry point handed to escalation-type step handlers.

        Returns the record as started; ``on_complete`` receives it once resolved.
        """
        with self._get_execution_lock(execution_id):
            snapshot = self._require(execution_id).model_copy(deep=True)
        return self.coordinator.start_escalation(
            snapshot,
            reason,
            EscalationSource.ESCALATION_STEP,
            on_complete=on_complete,
            step_execution_id=step_execution_id,
            rule_id=rule_id,
            cancel_token=self.get_cancel_token(execution_id)
        )

    def _apply_escalation_outcome(self, execution_id: str, request: _EscalationRequest,
                                  record: Optional[EscalationRecord]):
        """Route the cursor after a failure escalation. Caller holds the execution lock."""
        execution = self._executions.get(execution_id)
        if execution is None or execution.is_terminal:
            return _Next.STOP

        definition = self._definition_for(execution)
        step_execution = execution.get_step_execution(request.step_execution_id)
        step = definition.get_step(step_execution.step_id)
        outcome = record.outcome if record is not None else EscalationOutcome.UNRESOLVED
        escalation_ref = record.id if record is not None else "(failed)"

        if definition.position_of(step.id) != execution.current_step:
            # The step was bypassed while the escalation ran
            return _Next.CONTINUE if execution.status == ExecutionStatusEnum.IN_PROGRESS else _Next.STOP

        if outcome == EscalationOutcome.ABORTED:
            self._fail(execution, f"Escalation {escalation_ref} aborted by {record.resolved_by}")
            return _Next.STOP

        if outcome == EscalationOutcome.APPROVED:
            if step.is_required:
                reruns = execution.escalation_reruns.get(step.id, 0)
                if reruns >= self.max_escalation_reruns:
                    self._fail(
                        execution,
                        f"Required step '{step.name}' still failing after {reruns} approved escalation re-runs"
                    )
                    return _Next.STOP
                execution.escalation_reruns[step.id] = reruns + 1
                execution.pending_retry_count = step_execution.retry_count
                execution.add_note(f"Escalation {escalation_ref} approved by {record.resolved_by}; re-running '{step.name}'")
            else:
                execution.add_note(f"Escalation {escalation_ref} approved by {record.resolved_by}; passing over '{step.name}'")
                self._advance_cursor(execution, definition)
            self._persist(execution)
            return _Next.CONTINUE if execution.status == ExecutionStatusEnum.IN_PROGRESS else _Next.STOP

        execution.pending_retry_count = step_execution.retry_count
        if execution.status == ExecutionStatusEnum.PAUSED:
            execution.add_note(f"Escalation {escalation_ref} ended {outcome.value}")
            self._persist(execution)
        else:
            self._pause(execution, f"Escalation {escalation_ref} ended {outcome.value}; manual intervention required")
        return _Next.STOP

    # State helpers (caller holds the execution lock)

    def _advance_cursor(self, execution: WorkflowExecution, definition: WorkflowDefinition,
                        to: Optional[int] = None):
        step = definition.step_at(execution.current_step)
        if step is not None:
            execution.escalation_reruns.pop(step.id, None)
        execution.pending_retry_count = None
        target = to if to is not None else execution.current_step + 1
        execution.current_step = max(target, execution.current_step + 1)

    def _skip_step(self, execution: WorkflowExecution, definition: WorkflowDefinition,
                   step: WorkflowStep, missing: List[str]):
        now = utcnow()
        execution.step_executions.append(StepExecution(
            step_id=step.id,
            step_number=step.step_number,
            status=StepStatusEnum.SKIPPED,
            assigned_to=step.assigned_role,
            started_at=now,
            ended_at=now,
            notes=f"Dependencies not satisfied: {', '.join(missing)}"
        ))
        self._advance_cursor(execution, definition)
        self._persist(execution)
        self.events.emit(WorkflowEventType.STEP_SKIPPED, execution.id, step_id=step.id, missing_dependencies=missing)
        logger.info(f"Skipped step '{step.name}': unsatisfied dependencies {missing}")

    @staticmethod
    def _unsatisfied_dependencies(execution: WorkflowExecution, step: WorkflowStep) -> List[str]:
        missing = []
        for dependency in step.dependencies:
            latest = execution.latest_step_execution(dependency)
            if latest is None or not (latest.status == StepStatusEnum.COMPLETED or latest.is_bypassed):
                missing.append(dependency)
        return missing

    def _pause(self, execution: WorkflowExecution, reason: str):
        execution.status = ExecutionStatusEnum.PAUSED
        execution.add_note(f"Paused: {reason}")
        self._persist(execution)
        self.events.emit(WorkflowEventType.WORKFLOW_PAUSED, execution.id, reason=reason,
                         current_step=execution.current_step)

    def _complete(self, execution: WorkflowExecution, definition: WorkflowDefinition):
        failed_required = []
        for step in definition.steps:
            latest = execution.latest_step_execution(step.id)
            if step.is_required and latest is not None and latest.status == StepStatusEnum.FAILED:
                failed_required.append(step.name)
        if failed_required:
            self._fail(execution, f"Required steps failed: {', '.join(failed_required)}")
            return

        execution.status = ExecutionStatusEnum.COMPLETED
        execution.ended_at = utcnow()
        execution.pending_retry_count = None
        execution.effectiveness = self._effectiveness_for(execution, definition)
        self._release_waits(execution.id)
        self._persist(execution)
        self.events.emit(
            WorkflowEventType.WORKFLOW_COMPLETED, execution.id,
            effectiveness=execution.effectiveness,
            duration_seconds=execution.total_duration.total_seconds()
        )
        logger.info(f"Execution {execution.id} completed with effectiveness {execution.effectiveness:.2f}")

    def _fail(self, execution: WorkflowExecution, reason: str):
        execution.status = ExecutionStatusEnum.FAILED
        execution.ended_at = utcnow()
        execution.pending_retry_count = None
        execution.add_note(f"Failed: {reason}")
        definition = self._bound_definitions.get(execution.id)
        if definition is not None:
            execution.effectiveness = self._effectiveness_for(execution, definition)
        self._release_waits(execution.id)
        self._persist(execution)
        self.events.emit(WorkflowEventType.WORKFLOW_FAILED, execution.id, reason=reason,
                         current_step=execution.current_step)
        logger.warning(f"Execution {execution.id} failed: {reason}")

    @staticmethod
    def _effectiveness_for(execution: WorkflowExecution, definition: WorkflowDefinition) -> float:
        """Distinct completed or bypassed steps over the definition's step count."""
        satisfied = {
            s.step_id for s in execution.step_executions
            if s.status == StepStatusEnum.COMPLETED or s.is_bypassed
        }
        return len(satisfied) / definition.step_count

    def _release_waits(self, execution_id: str):
        """Cancel timers and wake handlers blocked on this execution's responses."""
        self._cancel_retry_timer(execution_id)
        token = self._cancel_tokens.get(execution_id)
        if token is not None:
            token.set()
        self.responses.cancel_execution(execution_id)

    def _cancel_retry_timer(self, execution_id: str):
        with self._lock_manager:
            timer = self._retry_timers.pop(execution_id, None)
        if timer is not None:
            timer.cancel()

    def _persist(self, execution: WorkflowExecution):
        self.repository.save(execution)
        with self._status_changed:
            self._statuses[execution.id] = execution.status
            self._status_changed.notify_all()

    def _definition_for(self, execution: WorkflowExecution) -> WorkflowDefinition:
        definition = self._bound_definitions.get(execution.id)
        if definition is None:
            definition = self.definition_store.get(execution.definition_id)
            if definition is None:
                raise DefinitionNotFoundError(
                    f"Workflow definition '{execution.definition_id}' not found",
                    definition_id=execution.definition_id
                )
            self._bound_definitions[execution.id] = definition
        return definition

    def _evict_if_finished(self, execution_id: str):
        """Drop a terminal execution from memory once nothing still refers to it.

        The repository keeps the final state. Caller holds the execution lock.
        """
        execution = self._executions.get(execution_id)
        if execution is not None and not execution.is_terminal:
            return
        if execution_id in self._drivers or execution_id in self._suspended:
            return
        with self._lock_manager:
            self._executions.pop(execution_id, None)
            self._bound_definitions.pop(execution_id, None)
            self._cancel_tokens.pop(execution_id, None)
            self._execution_locks.pop(execution_id, None)
            timer = self._retry_timers.pop(execution_id, None)
        if timer is not None:
            timer.cancel()
        with self._status_changed:
            self._statuses.pop(execution_id, None)
            self._status_changed.notify_all()
        if execution is not None:
            logger.debug(f"Evicted finished execution {execution_id} ({execution.status.value})")

    def _require(self, execution_id: str) -> WorkflowExecution:
        """Return the live execution, loading it from the repository if needed.

        Finished executions read back from the repository are not cached.
        Caller holds the execution lock.
        """
        execution = self._executions.get(execution_id)
        if execution is None:
            execution = self.repository.get(execution_id)
            if execution is None or execution.is_terminal:
                self._evict_if_finished(execution_id)
            if execution is None:
                raise InvalidTransitionError(f"Execution {execution_id} not found", execution_id=execution_id)
            if execution.is_terminal:
                return execution
            with self._lock_manager:
                self._executions[execution_id] = execution
                self._cancel_tokens.setdefault(execution_id, threading.Event())
            with self._status_changed:
                self._statuses[execution_id] = execution.status
        return execution

    def _get_execution_lock(self, execution_id: str) -> threading.RLock:
        """Get or create the lock serializing mutation of one execution."""
        with self._lock_manager:
            if execution_id not in self._execution_locks:
                self._execution_locks[execution_id] = threading.RLock()
            return self._execution_locks[execution_id]
