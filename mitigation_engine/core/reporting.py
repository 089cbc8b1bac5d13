"""Usage and effectiveness reporting over persisted executions."""

from collections import Counter, defaultdict
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from ..models.core import (
    ACTIVE_STATUSES,
    ExecutionStatusEnum,
    ReportTimeFrame,
    WorkflowEffectiveness,
    WorkflowReport,
    WorkflowUsage,
    utcnow,
)
from ..storage.repositories import ExecutionRepository
from .definition_store import DefinitionStore
from .logging import get_logger

logger = get_logger(__name__)

TIME_FRAME_WINDOWS: Dict[ReportTimeFrame, timedelta] = {
    ReportTimeFrame.DAILY: timedelta(days=1),
    ReportTimeFrame.WEEKLY: timedelta(days=7),
    ReportTimeFrame.MONTHLY: timedelta(days=30),
}

MOST_USED_LIMIT = 5


class ReportGenerator:
    """Summarizes executions started within a reporting window."""

    def __init__(self, repository: ExecutionRepository, definition_store: DefinitionStore):
        self.repository = repository
        self.definition_store = definition_store

    def generate(self, time_frame: ReportTimeFrame = ReportTimeFrame.WEEKLY,
                 now: Optional[datetime] = None) -> WorkflowReport:
        """
        Build a report over executions started in the window ending at ``now``.

        Args:
            time_frame: Daily (1 day), weekly (7 days) or monthly (30 days)
            now: End of the window; defaults to the current time

        Returns:
            WorkflowReport: Counts by outcome, average duration of finished
            executions, the most used definitions and per-definition effectiveness
        """
        now = now or utcnow()
        period_start = now - TIME_FRAME_WINDOWS[time_frame]
        executions = [e for e in self.repository.list_started_since(period_start) if e.started_at <= now]

        durations = [e.total_duration for e in executions if e.total_duration is not None]
        average = sum(durations, timedelta()) / len(durations) if durations else None

        usage = Counter(e.definition_id for e in executions)
        most_used = [
            WorkflowUsage(definition_id=definition_id, name=self._name(definition_id), count=count)
            for definition_id, count in usage.most_common(MOST_USED_LIMIT)
        ]

        scores: Dict[str, List[float]] = defaultdict(list)
        for execution in executions:
            if execution.effectiveness is not None:
                scores[execution.definition_id].append(execution.effectiveness)
        effectiveness = sorted(
            (
                WorkflowEffectiveness(
                    definition_id=definition_id,
                    name=self._name(definition_id),
                    effectiveness=sum(values) / len(values)
                )
                for definition_id, values in scores.items()
            ),
            key=lambda metric: metric.effectiveness,
            reverse=True
        )

        report = WorkflowReport(
            time_frame=time_frame,
            period_start=period_start,
            generated_at=now,
            total_executions=len(executions),
            successful_executions=sum(1 for e in executions if e.status == ExecutionStatusEnum.COMPLETED),
            failed_executions=sum(1 for e in executions if e.status == ExecutionStatusEnum.FAILED),
            cancelled_executions=sum(1 for e in executions if e.status == ExecutionStatusEnum.CANCELLED),
            active_executions=sum(1 for e in executions if e.status in ACTIVE_STATUSES),
            average_execution_time=average,
            most_used_workflows=most_used,
            effectiveness_metrics=effectiveness
        )
        logger.info(f"Generated {time_frame.value} report covering {report.total_executions} executions")
        return report

    def _name(self, definition_id: str) -> str:
        definition = self.definition_store.get(definition_id)
        return definition.name if definition else "Unknown"
