"""Tests for usage and effectiveness reports."""

from datetime import timedelta

import pytest

from mitigation_engine.core.definition_store import DefinitionStore
from mitigation_engine.core.reporting import MOST_USED_LIMIT, ReportGenerator
from mitigation_engine.models.core import ExecutionStatusEnum, ReportTimeFrame, WorkflowExecution, utcnow
from mitigation_engine.storage.repositories import InMemoryExecutionRepository

from conftest import linear_steps, make_definition


@pytest.fixture
def definition_store():
    return DefinitionStore()


@pytest.fixture
def repository():
    return InMemoryExecutionRepository()


@pytest.fixture
def generator(repository, definition_store):
    return ReportGenerator(repository, definition_store)


def record(repository, definition_id, status, started_ago, duration=None, effectiveness=None):
    started_at = utcnow() - started_ago
    execution = WorkflowExecution(
        definition_id=definition_id,
        instruction_id="INS-1",
        triggered_by="test",
        status=status,
        started_at=started_at,
        ended_at=started_at + duration if duration is not None else None,
        effectiveness=effectiveness
    )
    repository.save(execution)
    return execution


class TestReportGenerator:
    """Test cases for ReportGenerator."""

    def test_counts_and_averages(self, repository, definition_store, generator):
        high = definition_store.create(make_definition(linear_steps(2), name="High Risk"))
        failure = definition_store.create(make_definition(linear_steps(2), name="Failure Response"))
        record(repository, high.id, ExecutionStatusEnum.COMPLETED, timedelta(hours=2), timedelta(minutes=10), 1.0)
        record(repository, high.id, ExecutionStatusEnum.FAILED, timedelta(hours=3), timedelta(minutes=20), 0.5)
        record(repository, failure.id, ExecutionStatusEnum.CANCELLED, timedelta(hours=4), timedelta(minutes=30), 0.0)
        record(repository, failure.id, ExecutionStatusEnum.PAUSED, timedelta(hours=5))

        report = generator.generate(ReportTimeFrame.DAILY)

        assert report.total_executions == 4
        assert report.successful_executions == 1
        assert report.failed_executions == 1
        assert report.cancelled_executions == 1
        assert report.active_executions == 1
        assert report.average_execution_time == timedelta(minutes=20)
        assert sorted((u.name, u.count) for u in report.most_used_workflows) == [
            ("Failure Response", 2),
            ("High Risk", 2),
        ]
        assert [(m.name, m.effectiveness) for m in report.effectiveness_metrics] == [
            ("High Risk", 0.75),
            ("Failure Response", 0.0),
        ]

    def test_window_excludes_older_executions(self, repository, definition_store, generator):
        definition = definition_store.create(make_definition(linear_steps(1)))
        record(repository, definition.id, ExecutionStatusEnum.COMPLETED, timedelta(days=3), timedelta(minutes=5), 1.0)

        assert generator.generate(ReportTimeFrame.DAILY).total_executions == 0
        assert generator.generate(ReportTimeFrame.WEEKLY).total_executions == 1
        assert generator.generate(ReportTimeFrame.MONTHLY).total_executions == 1

    def test_empty_window(self, generator):
        report = generator.generate(ReportTimeFrame.WEEKLY)

        assert report.total_executions == 0
        assert report.average_execution_time is None
        assert report.most_used_workflows == []
        assert report.period_start == report.generated_at - timedelta(days=7)

    def test_most_used_is_limited(self, repository, generator):
        for index in range(MOST_USED_LIMIT + 2):
            record(repository, f"definition-{index}", ExecutionStatusEnum.COMPLETED, timedelta(minutes=index + 1))

        report = generator.generate()

        assert len(report.most_used_workflows) == MOST_USED_LIMIT
        assert all(u.name == "Unknown" for u in report.most_used_workflows)
