"""Tests for the deadline monitor."""

import threading
from datetime import timedelta

import pytest

from mitigation_engine.models.core import (
    EscalationDecision,
    EscalationLevel,
    EscalationOutcome,
    EscalationRule,
    EscalationSource,
    ExecutionStatusEnum,
    OnFailure,
    StepStatusEnum,
    WorkflowEventType,
    utcnow,
)

from conftest import WAIT_TIMEOUT, make_definition, make_step, wait_until


@pytest.fixture
def monitor(components):
    return components.monitor


@pytest.fixture
def gate():
    """Blocks the first step until the test releases it."""
    event = threading.Event()
    yield event
    event.set()


def start_gated(engine, store, scripted, gate, **step_kwargs):
    started = threading.Event()

    def gated(step, context):
        started.set()
        gate.wait(WAIT_TIMEOUT)
        return {}

    scripted.script("step-1", gated)
    definition = store.create(make_definition([make_step("step-1", 1, **step_kwargs)]))
    execution = engine.trigger_workflow("INS-200", {}, definition_id=definition.id)
    assert started.wait(WAIT_TIMEOUT)
    return execution


class TestDeadlineMonitor:
    """Test cases for DeadlineMonitor sweeps."""

    def test_step_within_deadline_is_not_reported(self, engine, store, scripted, monitor, gate):
        start_gated(engine, store, scripted, gate)

        assert monitor.sweep() == []

    def test_timeout_reported_once_without_mutation(self, engine, store, scripted, monitor, gate, recorder):
        execution = start_gated(engine, store, scripted, gate, expected_duration=timedelta(minutes=10))
        later = utcnow() + timedelta(minutes=16)

        timed_out = monitor.sweep(now=later)

        assert len(timed_out) == 1
        assert timed_out[0].execution_id == execution.id
        assert timed_out[0].step_id == "step-1"
        assert timed_out[0].deadline == timedelta(minutes=15)
        assert not timed_out[0].escalated
        assert monitor.sweep(now=later + timedelta(minutes=5)) == []

        event = recorder.wait_for(WorkflowEventType.STEP_TIMEOUT)
        assert event.payload["deadline_seconds"] == 900.0

        current = engine.get_execution(execution.id)
        assert current.status == ExecutionStatusEnum.IN_PROGRESS
        assert current.latest_step_execution("step-1").status == StepStatusEnum.IN_PROGRESS

        gate.set()
        finished = engine.wait_for_status(execution.id, [ExecutionStatusEnum.COMPLETED], WAIT_TIMEOUT)
        assert finished is not None

    def test_reports_of_finished_executions_are_forgotten(self, engine, store, scripted, monitor, gate):
        execution = start_gated(engine, store, scripted, gate)
        assert len(monitor.sweep(now=utcnow() + timedelta(hours=2))) == 1
        assert execution.id in monitor._reported.values()

        gate.set()
        assert engine.wait_for_status(execution.id, [ExecutionStatusEnum.COMPLETED], WAIT_TIMEOUT) is not None
        assert wait_until(lambda: engine.get_bound_definition(execution.id) is None)
        monitor.sweep()

        assert monitor._reported == {}

    def test_aborted_timeout_escalation_fails_execution(self, components, engine, store, scripted, monitor, gate):
        components.escalation_rules.register(EscalationRule(
            name="Timeout Escalation",
            levels=[EscalationLevel(level=1, roles=["head_of_risk"], can_abort=True)],
            timeouts=[timedelta(seconds=WAIT_TIMEOUT)]
        ))

        def abort(event):
            engine.acknowledge_escalation(event.payload["escalation_id"], event.payload["level"],
                                          "head.risk@company.com", EscalationDecision.ABORT)
        components.events.subscribe(abort, [WorkflowEventType.ESCALATION_NOTIFICATION_SENT])
        execution = start_gated(engine, store, scripted, gate, on_failure=OnFailure.ESCALATE)

        timed_out = monitor.sweep(now=utcnow() + timedelta(hours=2))

        assert timed_out[0].escalated
        failed = engine.wait_for_status(execution.id, [ExecutionStatusEnum.FAILED], WAIT_TIMEOUT)
        assert failed is not None
        escalation = engine.get_escalations(execution.id)[0]
        assert escalation.source == EscalationSource.STEP_TIMEOUT
        assert escalation.outcome == EscalationOutcome.ABORTED

        gate.set()
        assert wait_until(
            lambda: engine.get_execution(execution.id).latest_step_execution("step-1").status
            == StepStatusEnum.CANCELLED
        )
        assert engine.get_execution(execution.id).status == ExecutionStatusEnum.FAILED

    def test_unresolved_timeout_escalation_only_notes(self, engine, store, scripted, monitor, gate):
        execution = start_gated(engine, store, scripted, gate, on_failure=OnFailure.ESCALATE)

        monitor.sweep(now=utcnow() + timedelta(hours=2))

        assert wait_until(lambda: any(
            "Timeout escalation" in note for note in engine.get_execution(execution.id).notes
        ))
        assert engine.get_execution(execution.id).status == ExecutionStatusEnum.IN_PROGRESS

    def test_start_and_stop(self, monitor):
        monitor.start()
        assert monitor.is_running

        monitor.stop()
        assert not monitor.is_running
