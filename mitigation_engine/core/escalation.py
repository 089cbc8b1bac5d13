"""Escalation rule registry and the leveled escalation coordinator."""

import logging
import threading
from collections import OrderedDict
from functools import partial
from typing import Any, Callable, Dict, List, Mapping, Optional

from ..models.core import (
    EscalationAcknowledgment,
    EscalationDecision,
    EscalationLevel,
    EscalationLevelRecord,
    EscalationOutcome,
    EscalationRecord,
    EscalationRule,
    EscalationSource,
    Notification,
    Priority,
    WorkflowEventType,
    WorkflowExecution,
    utcnow,
)
from .events import EventDispatcher
from .exceptions import DefinitionNotFoundError
from .logging import get_logger, log_with_context
from .notifications import Notifier, RecipientDirectory
from .responses import ResponseBroker
from .trigger_matcher import evaluate_operator, extract_field

logger = get_logger(__name__)

EscalationCallback = Callable[[EscalationRecord], None]


class EscalationRuleRegistry:
    """Lock-guarded registry of escalation rules in registration order."""

    def __init__(self):
        self._rules: Dict[str, EscalationRule] = {}
        self._lock = threading.RLock()

    def register(self, rule: EscalationRule) -> EscalationRule:
        with self._lock:
            self._rules[rule.id] = rule
        logger.info(f"Registered escalation rule '{rule.name}' ({rule.id})")
        return rule

    def get(self, rule_id: str) -> Optional[EscalationRule]:
        with self._lock:
            return self._rules.get(rule_id)

    def list(self) -> List[EscalationRule]:
        with self._lock:
            return list(self._rules.values())

    def list_active(self) -> List[EscalationRule]:
        with self._lock:
            return [rule for rule in self._rules.values() if rule.is_active]

    def deactivate(self, rule_id: str) -> EscalationRule:
        with self._lock:
            rule = self._rules.get(rule_id)
            if rule is None:
                raise DefinitionNotFoundError(f"Escalation rule '{rule_id}' not found", definition_id=rule_id)
            self._rules[rule_id] = rule.model_copy(update={"is_active": False})
            return self._rules[rule_id]


class _EscalationWalk:
    """Progress of one running escalation through its rule's ranked levels."""

    def __init__(self, record: EscalationRecord, rule: Optional[EscalationRule], reason: str,
                 cancel_token: Optional[threading.Event], on_complete: Optional[EscalationCallback]):
        self.record = record
        self.levels = rule.ranked_levels() if rule is not None else []
        self.channels = rule.notification_channels if rule is not None else []
        self.reason = reason
        self.cancel_token = cancel_token
        self.on_complete = on_complete
        self.position = 0
        self.waiting_on: Optional[int] = None
        self.finished = False
        # Held while the walk advances; acknowledgment callbacks queue on it
        self.lock = threading.RLock()

    @property
    def cancelled(self) -> bool:
        return self.cancel_token is not None and self.cancel_token.is_set()


class EscalationCoordinator:
    """Walks an escalation rule's levels in rank order until one resolves it.

    Each level notifies its recipients and, when it requires acknowledgment,
    parks the escalation until the acknowledgment arrives or the level's
    timer expires. No thread waits in between: the walk continues on
    whichever thread delivered the acknowledgment or the expiry.

    An acknowledgment from a level with approval authority resolves the
    escalation as approved; an abort decision from a level with abort
    authority resolves it as aborted. Exhausting the levels leaves it
    unresolved; the coordinator never resolves on its own.

    Finished records are kept in a bounded history of ``history_size``
    entries, oldest evicted first.
    """

    def __init__(
        self,
        rules: EscalationRuleRegistry,
        directory: RecipientDirectory,
        notifier: Notifier,
        responses: ResponseBroker,
        events: EventDispatcher,
        match_threshold: float = 0.5,
        history_size: int = 1000
    ):
        self.rules = rules
        self.directory = directory
        self.notifier = notifier
        self.responses = responses
        self.events = events
        self.match_threshold = match_threshold
        self.history_size = history_size

        self._active: Dict[str, EscalationRecord] = {}
        self._finished: "OrderedDict[str, EscalationRecord]" = OrderedDict()
        self._lock = threading.RLock()

    def score_rule(self, rule: EscalationRule, facts: Mapping[str, Any]) -> float:
        numerator = 0.0
        denominator = 0.0
        for condition in rule.conditions:
            denominator += condition.weight
            if evaluate_operator(condition.operator, extract_field(facts, condition.field), condition.value):
                numerator += condition.weight
        return numerator / denominator if denominator else 0.0

    def select_rule(self, execution: WorkflowExecution, reason: str, source: EscalationSource,
                    rule_id: Optional[str] = None) -> Optional[EscalationRule]:
        """
        Choose the rule for an escalation event.

        An explicit active rule id wins. Otherwise the active rule whose
        conditions best match the execution's trigger signals (plus the
        escalation reason and source) above the match threshold is used,
        falling back to the first active rule.
        """
        if rule_id is not None:
            rule = self.rules.get(rule_id)
            if rule is not None and rule.is_active:
                return rule
            logger.warning(f"Escalation rule '{rule_id}' not found or inactive; selecting by conditions")

        active = self.rules.list_active()
        if not active:
            return None

        facts = dict(execution.trigger_signals, reason=reason, source=source.value)
        best: Optional[EscalationRule] = None
        best_score = 0.0
        for rule in active:
            score = self.score_rule(rule, facts)
            if score > self.match_threshold and (best is None or score > best_score):
                best = rule
                best_score = score

        return best or active[0]

    def start_escalation(
        self,
        execution: WorkflowExecution,
        reason: str,
        source: EscalationSource,
        on_complete: Optional[EscalationCallback] = None,
        step_execution_id: Optional[str] = None,
        rule_id: Optional[str] = None,
        cancel_token: Optional[threading.Event] = None
    ) -> EscalationRecord:
        """
        Start the escalation protocol for an execution without waiting for it.

        Args:
            execution: Snapshot of the escalating execution
            reason: Human-readable reason sent to recipients
            source: What started the escalation
            on_complete: Called once with the finished record. It runs on the
                thread that finished the escalation, which is this one when
                no level has to wait.
            step_execution_id: The step execution that failed or timed out
            rule_id: Explicit rule to use
            cancel_token: Set when the execution is cancelled

        Returns:
            EscalationRecord: Snapshot of the record when this call returns
        """
        rule = self.select_rule(execution, reason, source, rule_id)
        record = EscalationRecord(
            rule_id=rule.id if rule else None,
            execution_id=execution.id,
            step_execution_id=step_execution_id,
            reason=reason,
            source=source
        )
        walk = _EscalationWalk(record, rule, reason, cancel_token, on_complete)
        with self._lock:
            self._active[record.id] = record

        self.events.emit(
            WorkflowEventType.WORKFLOW_ESCALATED, execution.id,
            escalation_id=record.id, rule_id=record.rule_id, reason=reason, source=source.value
        )

        with walk.lock:
            if rule is None:
                logger.warning(f"No active escalation rule for execution {execution.id}")
                self._finish(walk, EscalationOutcome.UNRESOLVED)
            else:
                self._advance(walk)
        return self.get_escalation(record.id)

    def acknowledge(self, escalation_id: str, level: int, acknowledged_by: str,
                    decision: EscalationDecision = EscalationDecision.ACKNOWLEDGE) -> bool:
        """Acknowledge a level that is currently waiting. Returns False otherwise."""
        return self.responses.acknowledge(escalation_id, level, acknowledged_by, EscalationDecision(decision))

    def get_escalation(self, escalation_id: str) -> Optional[EscalationRecord]:
        with self._lock:
            record = self._active.get(escalation_id) or self._finished.get(escalation_id)
            return record.model_copy(deep=True) if record else None

    def get_escalations(self, execution_id: str) -> List[EscalationRecord]:
        with self._lock:
            records = [
                r.model_copy(deep=True)
                for r in list(self._finished.values()) + list(self._active.values())
                if r.execution_id == execution_id
            ]
        return sorted(records, key=lambda r: r.started_at)

    def active_escalations(self, execution_id: Optional[str] = None) -> List[EscalationRecord]:
        """Escalations that have not finished yet."""
        with self._lock:
            return [
                r.model_copy(deep=True) for r in self._active.values()
                if execution_id is None or r.execution_id == execution_id
            ]

    def _advance(self, walk: _EscalationWalk):
        """Notify levels from the walk's position until one waits or none remain.

        Caller holds ``walk.lock``.
        """
        record = walk.record
        while walk.position < len(walk.levels):
            if walk.cancelled:
                self._finish(walk, EscalationOutcome.CANCELLED)
                return

            index = walk.position
            level, timeout = walk.levels[index]
            walk.position += 1
            level_record = EscalationLevelRecord(
                level=level.level,
                recipients=self.directory.resolve(level.roles, level.individuals)
            )
            with self._lock:
                record.levels.append(level_record)

            if level.requires_acknowledgment:
                # Must be open before the level is notified
                opened = self.responses.open_acknowledgment(
                    record.id, level.level, record.execution_id, timeout,
                    partial(self._on_acknowledgment, walk, index, level, level_record)
                )
                if not opened:
                    self._finish(walk, EscalationOutcome.CANCELLED)
                    return
                walk.waiting_on = index

            notification = Notification(
                recipients=level_record.recipients,
                channels=walk.channels,
                subject=f"ESCALATION Level {level.level}: Settlement Risk Workflow",
                message=f"Workflow execution {record.execution_id} requires attention. Reason: {walk.reason}",
                priority=Priority.CRITICAL if level.can_abort else Priority.HIGH,
                execution_id=record.execution_id,
                metadata={
                    "escalation_id": record.id,
                    "level": level.level,
                    "timeout_seconds": timeout.total_seconds()
                }
            )
            try:
                self.notifier.send(notification)
            except Exception as e:
                log_with_context(
                    logger, logging.WARNING,
                    f"Escalation {record.id} could not reach level {level.level}: {str(e)}",
                    escalation_id=record.id, execution_id=record.execution_id, level=level.level
                )
                if level.requires_acknowledgment:
                    walk.waiting_on = None
                    self.responses.close_acknowledgment(record.id, level.level)
                continue

            with self._lock:
                level_record.notified = True
            self.events.emit(
                WorkflowEventType.ESCALATION_NOTIFICATION_SENT, record.execution_id,
                escalation_id=record.id, level=level.level, recipients=level_record.recipients,
                timeout_seconds=timeout.total_seconds()
            )

            if level.requires_acknowledgment:
                return

        self._finish(walk, EscalationOutcome.UNRESOLVED)

    def _on_acknowledgment(self, walk: _EscalationWalk, index: int, level: EscalationLevel,
                           level_record: EscalationLevelRecord,
                           acknowledgment: Optional[EscalationAcknowledgment]):
        """Continue the walk after a level was acknowledged, timed out or released."""
        with walk.lock:
            if walk.finished or walk.waiting_on != index:
                return
            walk.waiting_on = None
            record = walk.record

            if walk.cancelled:
                self._finish(walk, EscalationOutcome.CANCELLED)
                return
            if acknowledgment is None:
                logger.info(f"Escalation {record.id} level {level.level} timed out")
                self._advance(walk)
                return

            with self._lock:
                level_record.acknowledged = True
                level_record.acknowledged_by = acknowledgment.acknowledged_by
                level_record.acknowledged_at = acknowledgment.acknowledged_at
                level_record.decision = acknowledgment.decision

            if acknowledgment.decision == EscalationDecision.ABORT and level.can_abort:
                with self._lock:
                    level_record.resolved = True
                self._finish(walk, EscalationOutcome.ABORTED, acknowledgment.acknowledged_by)
                return
            if acknowledgment.decision != EscalationDecision.ABORT and level.can_approve:
                with self._lock:
                    level_record.resolved = True
                self._finish(walk, EscalationOutcome.APPROVED, acknowledgment.acknowledged_by)
                return

            logger.info(
                f"Escalation {record.id} level {level.level} acknowledged by "
                f"{acknowledgment.acknowledged_by} without authority for '{acknowledgment.decision.value}'"
            )
            self._advance(walk)

    def _finish(self, walk: _EscalationWalk, outcome: EscalationOutcome, resolved_by: Optional[str] = None):
        if walk.finished:
            return
        walk.finished = True
        record = walk.record
        with self._lock:
            record.outcome = outcome
            record.resolved_by = resolved_by
            record.ended_at = utcnow()
            self._active.pop(record.id, None)
            self._finished[record.id] = record
            while len(self._finished) > self.history_size:
                self._finished.popitem(last=False)
            result = record.model_copy(deep=True)

        if outcome in (EscalationOutcome.APPROVED, EscalationOutcome.ABORTED):
            self.events.emit(
                WorkflowEventType.ESCALATION_RESOLVED, record.execution_id,
                escalation_id=record.id, outcome=outcome.value, resolved_by=resolved_by
            )
            logger.info(f"Escalation {record.id} resolved ({outcome.value}) by {resolved_by}")
        else:
            self.events.emit(
                WorkflowEventType.ESCALATION_UNRESOLVED, record.execution_id,
                escalation_id=record.id, outcome=outcome.value
            )
            logger.warning(f"Escalation {record.id} for execution {record.execution_id} ended {outcome.value}")

        if walk.on_complete is not None:
            walk.on_complete(result)
