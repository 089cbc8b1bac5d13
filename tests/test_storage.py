"""Tests for the SQL repositories and restart recovery."""

from datetime import timedelta

import pytest

from mitigation_engine.config import get_testing_config
from mitigation_engine.core.execution_engine import RECOVERY_NOTE
from mitigation_engine.defaults import default_definitions
from mitigation_engine.factory import create_engine_from_config
from mitigation_engine.models.core import (
    ExecutionStatusEnum,
    StepExecution,
    StepStatusEnum,
    WorkflowExecution,
    utcnow,
)
from mitigation_engine.storage.database import (
    create_database_engine,
    create_session_factory,
    create_tables,
    drop_tables,
)
from mitigation_engine.storage.repositories import SqlDefinitionRepository, SqlExecutionRepository

from conftest import WAIT_TIMEOUT, ScriptedHandlers, linear_steps, make_definition


@pytest.fixture
def session_factory(temp_db_url):
    engine = create_database_engine(temp_db_url)
    create_tables(engine)
    yield create_session_factory(engine)
    drop_tables(engine)
    engine.dispose()


def build(database_url, notifier, load_defaults=False):
    return create_engine_from_config(
        get_testing_config(database_url=database_url),
        notifier=notifier,
        load_defaults=load_defaults,
        configure_logging=False
    )


class TestSqlDefinitionRepository:
    """Test cases for SqlDefinitionRepository."""

    def test_round_trip(self, session_factory):
        repository = SqlDefinitionRepository(session_factory)
        definition = default_definitions()[0]

        repository.save(definition)
        loaded = repository.get(definition.id)

        assert loaded.model_dump() == definition.model_dump()
        assert loaded.steps[2].expected_duration == timedelta(minutes=60)
        assert repository.get("missing") is None

    def test_replacement_keeps_position(self, session_factory):
        repository = SqlDefinitionRepository(session_factory)
        first = make_definition(linear_steps(1), name="First")
        second = make_definition(linear_steps(1), name="Second")
        repository.save(first)
        repository.save(second)

        repository.save(first.model_copy(update={"name": "First v2", "is_active": False}))

        loaded = repository.list_all()
        assert [d.name for d in loaded] == ["First v2", "Second"]
        assert not loaded[0].is_active


class TestSqlExecutionRepository:
    """Test cases for SqlExecutionRepository."""

    def test_save_and_query(self, session_factory):
        repository = SqlExecutionRepository(session_factory)
        running = WorkflowExecution(
            definition_id="d1", instruction_id="INS-1", triggered_by="test",
            status=ExecutionStatusEnum.IN_PROGRESS,
            trigger_signals={"risk_score": 0.9},
            step_executions=[StepExecution(step_id="step-1", step_number=1, status=StepStatusEnum.IN_PROGRESS)]
        )
        old = WorkflowExecution(
            definition_id="d1", instruction_id="INS-2", triggered_by="test",
            status=ExecutionStatusEnum.COMPLETED,
            started_at=utcnow() - timedelta(days=10),
            ended_at=utcnow() - timedelta(days=10) + timedelta(minutes=5),
            effectiveness=1.0
        )
        repository.save(running)
        repository.save(old)

        loaded = repository.get(running.id)
        assert loaded.model_dump() == running.model_dump()
        assert repository.get("missing") is None
        assert [e.id for e in repository.list_by_instruction("INS-2")] == [old.id]
        assert [e.id for e in repository.list_by_status([ExecutionStatusEnum.IN_PROGRESS])] == [running.id]
        assert [e.id for e in repository.list_started_since(utcnow() - timedelta(days=1))] == [running.id]

    def test_save_replaces_existing_row(self, session_factory):
        repository = SqlExecutionRepository(session_factory)
        execution = WorkflowExecution(definition_id="d1", instruction_id="INS-1", triggered_by="test")
        repository.save(execution)

        execution.status = ExecutionStatusEnum.CANCELLED
        execution.add_note("Cancelled: test")
        repository.save(execution)

        loaded = repository.get(execution.id)
        assert loaded.status == ExecutionStatusEnum.CANCELLED
        assert len(loaded.notes) == 1
        assert repository.list_by_status([ExecutionStatusEnum.INITIATED]) == []


class TestPersistentEngine:
    """Test cases for an engine backed by a database."""

    def test_executions_survive_restart(self, temp_db_url, notifier):
        first = build(temp_db_url, notifier)
        try:
            scripted = ScriptedHandlers()
            scripted.register(first.handlers)
            definition = first.definition_store.create(make_definition(linear_steps(2)))
            execution = first.execution_engine.trigger_workflow("INS-400", {}, definition_id=definition.id)
            first.execution_engine.wait_for_status(execution.id, [ExecutionStatusEnum.COMPLETED], WAIT_TIMEOUT)
        finally:
            first.shutdown()

        second = build(temp_db_url, notifier)
        try:
            assert second.definition_store.get(definition.id).model_dump() == definition.model_dump()
            stored = second.execution_engine.get_execution(execution.id)
            assert stored.status == ExecutionStatusEnum.COMPLETED
            assert len(stored.step_executions) == 2
            assert [e.id for e in second.execution_engine.get_instruction_executions("INS-400")] == [execution.id]
        finally:
            second.shutdown()

    def test_recovery_pauses_interrupted_executions(self, temp_db_url, notifier):
        first = build(temp_db_url, notifier)
        try:
            definition = first.definition_store.create(make_definition(linear_steps(2)))
            interrupted = WorkflowExecution(
                definition_id=definition.id,
                instruction_id="INS-500",
                triggered_by="test",
                status=ExecutionStatusEnum.IN_PROGRESS,
                current_step=2,
                step_executions=[
                    StepExecution(step_id="step-1", step_number=1, status=StepStatusEnum.COMPLETED,
                                  ended_at=utcnow()),
                    StepExecution(step_id="step-2", step_number=2, status=StepStatusEnum.IN_PROGRESS,
                                  retry_count=1),
                ]
            )
            orphan = WorkflowExecution(
                definition_id="deleted-playbook",
                instruction_id="INS-501",
                triggered_by="test"
            )
            first.execution_engine.repository.save(interrupted)
            first.execution_engine.repository.save(orphan)
        finally:
            first.shutdown()

        second = build(temp_db_url, notifier)
        try:
            scripted = ScriptedHandlers()
            scripted.register(second.handlers)
            engine = second.execution_engine

            assert engine.recover_executions() == [interrupted.id]

            recovered = engine.get_execution(interrupted.id)
            assert recovered.status == ExecutionStatusEnum.PAUSED
            assert any(RECOVERY_NOTE in note for note in recovered.notes)
            assert recovered.latest_step_execution("step-2").status == StepStatusEnum.CANCELLED
            assert recovered.pending_retry_count == 1
            assert engine.get_execution(orphan.id).status == ExecutionStatusEnum.FAILED
            assert engine.recover_executions() == []

            assert engine.resume_execution(interrupted.id)
            finished = engine.wait_for_status(interrupted.id, [ExecutionStatusEnum.COMPLETED], WAIT_TIMEOUT)
            assert finished is not None
            assert scripted.calls == ["step-2"]
            assert finished.latest_step_execution("step-2").retry_count == 1
            assert finished.effectiveness == 1.0
        finally:
            second.shutdown()

    def test_default_content_installed_once(self, temp_db_url, notifier):
        first = build(temp_db_url, notifier, load_defaults=True)
        first.shutdown()

        second = build(temp_db_url, notifier, load_defaults=True)
        try:
            ids = [d.id for d in second.definition_store.list()]
            assert ids == ["high-risk-settlement-intervention", "settlement-failure-response"]
            assert second.escalation_rules.get("high-risk-settlement-escalation") is not None
            assert second.actions.get("backup-settlement-channel") is not None
        finally:
            second.shutdown()
