"""Deadline monitor: periodic sweep for steps running past their deadline."""

import threading
from datetime import datetime
from typing import Dict, List, Optional

from ..models.core import (
    EscalationSource,
    OnFailure,
    StepStatusEnum,
    TimedOutStep,
    WorkflowEventType,
    WorkflowExecution,
    utcnow,
)
from .escalation import EscalationCoordinator
from .events import EventDispatcher
from .execution_engine import ExecutionEngine
from .logging import get_logger

logger = get_logger(__name__)


class DeadlineMonitor:
    """Reports steps whose elapsed time exceeds ``timeout_factor`` times their expected duration.

    The monitor only reads execution state. Timeouts are reported once per
    step execution; a timed-out step whose ``on_failure`` is ``escalate``
    starts an escalation whose outcome is handed back to the engine when it
    resolves. Reports for executions the engine no longer runs are forgotten
    on the next sweep.
    """

    def __init__(
        self,
        engine: ExecutionEngine,
        coordinator: EscalationCoordinator,
        events: EventDispatcher,
        interval_seconds: float = 300.0,
        timeout_factor: float = 1.5
    ):
        self.engine = engine
        self.coordinator = coordinator
        self.events = events
        self.interval_seconds = interval_seconds
        self.timeout_factor = timeout_factor

        # Step execution id -> execution id
        self._reported: Dict[str, str] = {}
        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self):
        """Start the background sweep thread."""
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="deadline-monitor", daemon=True)
        self._thread.start()
        logger.info(f"Deadline monitor started (interval={self.interval_seconds}s, factor={self.timeout_factor})")

    def stop(self, wait: bool = True):
        """Stop the sweep thread. Escalations already started keep running."""
        self._stop_event.set()
        if self._thread is not None and wait:
            self._thread.join(timeout=self.interval_seconds + 5)
        logger.info("Deadline monitor stopped")

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _run(self):
        while not self._stop_event.wait(self.interval_seconds):
            try:
                self.sweep()
            except Exception as e:
                logger.error(f"Deadline sweep failed: {str(e)}", exc_info=True)

    def sweep(self, now: Optional[datetime] = None) -> List[TimedOutStep]:
        """
        Check every in-progress execution once.

        Args:
            now: Reference time; defaults to the current time

        Returns:
            List[TimedOutStep]: Steps newly found past their deadline
        """
        now = now or utcnow()
        timed_out = []
        for execution in self.engine.get_in_progress_executions():
            found = self._check(execution, now)
            if found is not None:
                timed_out.append(found)
        if timed_out:
            logger.warning(f"Deadline sweep found {len(timed_out)} timed-out steps")
        self._prune_reported()
        return timed_out

    def _prune_reported(self):
        with self._lock:
            reported = list(self._reported.items())
        finished = [
            step_execution_id for step_execution_id, execution_id in reported
            if self.engine.get_bound_definition(execution_id) is None
        ]
        if finished:
            with self._lock:
                for step_execution_id in finished:
                    self._reported.pop(step_execution_id, None)
            logger.debug(f"Forgot {len(finished)} timeout reports of finished executions")

    def _check(self, execution: WorkflowExecution, now: datetime) -> Optional[TimedOutStep]:
        definition = self.engine.get_bound_definition(execution.id)
        if definition is None:
            return None
        step = definition.step_at(execution.current_step)
        if step is None:
            return None
        step_execution = execution.latest_step_execution(step.id)
        if step_execution is None or step_execution.status != StepStatusEnum.IN_PROGRESS:
            return None

        elapsed = now - step_execution.started_at
        deadline = step.expected_duration * self.timeout_factor
        if elapsed <= deadline:
            return None

        with self._lock:
            if step_execution.id in self._reported:
                return None
            self._reported[step_execution.id] = execution.id

        escalate = step.on_failure == OnFailure.ESCALATE
        self.events.emit(
            WorkflowEventType.STEP_TIMEOUT, execution.id,
            step_id=step.id, step_execution_id=step_execution.id,
            elapsed_seconds=elapsed.total_seconds(), deadline_seconds=deadline.total_seconds(),
            escalated=escalate
        )
        logger.warning(
            f"Step '{step.name}' of execution {execution.id} running {elapsed} "
            f"(deadline {deadline})"
        )

        if escalate:
            reason = f"Step '{step.name}' exceeded its deadline ({elapsed} elapsed, deadline {deadline})"
            try:
                self.coordinator.start_escalation(
                    execution,
                    reason,
                    EscalationSource.STEP_TIMEOUT,
                    on_complete=self.engine.handle_timeout_escalation,
                    step_execution_id=step_execution.id,
                    rule_id=step.parameters.get("escalation_rule_id"),
                    cancel_token=self.engine.get_cancel_token(execution.id)
                )
            except Exception as e:
                logger.error(f"Timeout escalation for execution {execution.id} failed: {str(e)}", exc_info=True)
                escalate = False

        return TimedOutStep(
            execution_id=execution.id,
            step_execution_id=step_execution.id,
            step_id=step.id,
            elapsed=elapsed,
            deadline=deadline,
            escalated=escalate
        )

