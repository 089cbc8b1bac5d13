"""Repositories the engine writes executions and definitions through to."""

import threading
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from ..models.core import WorkflowDefinition, WorkflowExecution, ExecutionStatusEnum
from ..core.exceptions import StorageError, TransientError
from ..core.error_recovery import with_retry, RetryConfig
from ..core.logging import get_logger
from .database import session_scope
from .models import WorkflowDefinitionModel, WorkflowExecutionModel

logger = get_logger(__name__)

_storage_retry = RetryConfig(
    max_attempts=3,
    base_delay=0.1,
    max_delay=2.0,
    retryable_exceptions=[StorageError, TransientError]
)


def _naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Convert an aware timestamp to the naive UTC form stored in columns."""
    if value is None:
        return None
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


class ExecutionRepository(ABC):
    """Durable store for workflow executions."""

    @abstractmethod
    def save(self, execution: WorkflowExecution) -> None:
        """Insert or replace an execution."""

    @abstractmethod
    def get(self, execution_id: str) -> Optional[WorkflowExecution]:
        """Return the execution or None."""

    @abstractmethod
    def list_by_instruction(self, instruction_id: str) -> List[WorkflowExecution]:
        """Return executions triggered for an instruction, oldest first."""

    @abstractmethod
    def list_by_status(self, statuses: Iterable[ExecutionStatusEnum]) -> List[WorkflowExecution]:
        """Return executions in any of the given statuses, oldest first."""

    @abstractmethod
    def list_started_since(self, cutoff: datetime) -> List[WorkflowExecution]:
        """Return executions started at or after the cutoff, oldest first."""


class DefinitionRepository(ABC):
    """Durable store for workflow definitions."""

    @abstractmethod
    def save(self, definition: WorkflowDefinition) -> None:
        """Insert a definition, or replace it keeping its registration position."""

    @abstractmethod
    def get(self, definition_id: str) -> Optional[WorkflowDefinition]:
        """Return the definition or None."""

    @abstractmethod
    def list_all(self) -> List[WorkflowDefinition]:
        """Return all definitions in registration order."""


class InMemoryExecutionRepository(ExecutionRepository):
    """Execution repository backed by a lock-guarded dict of copies."""

    def __init__(self):
        self._executions: Dict[str, WorkflowExecution] = {}
        self._lock = threading.RLock()

    def save(self, execution: WorkflowExecution) -> None:
        with self._lock:
            self._executions[execution.id] = execution.model_copy(deep=True)

    def get(self, execution_id: str) -> Optional[WorkflowExecution]:
        with self._lock:
            execution = self._executions.get(execution_id)
            return execution.model_copy(deep=True) if execution else None

    def _select(self, predicate) -> List[WorkflowExecution]:
        with self._lock:
            selected = [e.model_copy(deep=True) for e in self._executions.values() if predicate(e)]
        return sorted(selected, key=lambda e: e.started_at)

    def list_by_instruction(self, instruction_id: str) -> List[WorkflowExecution]:
        return self._select(lambda e: e.instruction_id == instruction_id)

    def list_by_status(self, statuses: Iterable[ExecutionStatusEnum]) -> List[WorkflowExecution]:
        wanted = set(statuses)
        return self._select(lambda e: e.status in wanted)

    def list_started_since(self, cutoff: datetime) -> List[WorkflowExecution]:
        return self._select(lambda e: e.started_at >= cutoff)


class InMemoryDefinitionRepository(DefinitionRepository):
    """Definition repository backed by an insertion-ordered dict."""

    def __init__(self):
        self._definitions: Dict[str, WorkflowDefinition] = {}
        self._lock = threading.RLock()

    def save(self, definition: WorkflowDefinition) -> None:
        with self._lock:
            # Replacing an existing key keeps its insertion position
            self._definitions[definition.id] = definition

    def get(self, definition_id: str) -> Optional[WorkflowDefinition]:
        with self._lock:
            return self._definitions.get(definition_id)

    def list_all(self) -> List[WorkflowDefinition]:
        with self._lock:
            return list(self._definitions.values())


class SqlExecutionRepository(ExecutionRepository):
    """Execution repository persisting to the workflow_executions table."""

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    @with_retry(_storage_retry)
    def save(self, execution: WorkflowExecution) -> None:
        """
        Insert or replace an execution.

        Args:
            execution: Execution to persist

        Raises:
            StorageError: If database operations fail
        """
        try:
            with session_scope(self._session_factory) as db:
                db.merge(WorkflowExecutionModel(
                    id=execution.id,
                    definition_id=execution.definition_id,
                    instruction_id=execution.instruction_id,
                    status=execution.status.value,
                    current_step=execution.current_step,
                    effectiveness=execution.effectiveness,
                    document=execution.model_dump(mode="json"),
                    started_at=_naive_utc(execution.started_at),
                    ended_at=_naive_utc(execution.ended_at)
                ))
        except SQLAlchemyError as e:
            raise StorageError(
                f"Failed to persist execution: {str(e)}",
                operation="save",
                table=WorkflowExecutionModel.__tablename__
            )

    @with_retry(_storage_retry)
    def get(self, execution_id: str) -> Optional[WorkflowExecution]:
        try:
            with session_scope(self._session_factory) as db:
                row = db.get(WorkflowExecutionModel, execution_id)
                return WorkflowExecution.model_validate(row.document) if row else None
        except SQLAlchemyError as e:
            raise StorageError(
                f"Failed to load execution: {str(e)}",
                operation="get",
                table=WorkflowExecutionModel.__tablename__
            )

    @with_retry(_storage_retry)
    def _query(self, *criteria) -> List[WorkflowExecution]:
        try:
            with session_scope(self._session_factory) as db:
                rows = (
                    db.query(WorkflowExecutionModel)
                    .filter(*criteria)
                    .order_by(WorkflowExecutionModel.started_at)
                    .all()
                )
                return [WorkflowExecution.model_validate(row.document) for row in rows]
        except SQLAlchemyError as e:
            raise StorageError(
                f"Failed to query executions: {str(e)}",
                operation="query",
                table=WorkflowExecutionModel.__tablename__
            )

    def list_by_instruction(self, instruction_id: str) -> List[WorkflowExecution]:
        return self._query(WorkflowExecutionModel.instruction_id == instruction_id)

    def list_by_status(self, statuses: Iterable[ExecutionStatusEnum]) -> List[WorkflowExecution]:
        values = [ExecutionStatusEnum(status).value for status in statuses]
        return self._query(WorkflowExecutionModel.status.in_(values))

    def list_started_since(self, cutoff: datetime) -> List[WorkflowExecution]:
        return self._query(WorkflowExecutionModel.started_at >= _naive_utc(cutoff))


class SqlDefinitionRepository(DefinitionRepository):
    """Definition repository persisting to the workflow_definitions table."""

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    @with_retry(_storage_retry)
    def save(self, definition: WorkflowDefinition) -> None:
        """
        Insert a definition or replace it in place.

        Raises:
            StorageError: If database operations fail
        """
        try:
            with session_scope(self._session_factory) as db:
                row = db.get(WorkflowDefinitionModel, definition.id)
                document = definition.model_dump(mode="json")
                if row is None:
                    next_position = db.query(func.coalesce(func.max(WorkflowDefinitionModel.position), 0)).scalar() + 1
                    db.add(WorkflowDefinitionModel(
                        id=definition.id,
                        name=definition.name,
                        description=definition.description,
                        is_active=definition.is_active,
                        position=next_position,
                        definition=document,
                        created_at=_naive_utc(definition.created_at),
                        updated_at=_naive_utc(definition.updated_at)
                    ))
                else:
                    row.name = definition.name
                    row.description = definition.description
                    row.is_active = definition.is_active
                    row.definition = document
                    row.updated_at = _naive_utc(definition.updated_at)
        except SQLAlchemyError as e:
            raise StorageError(
                f"Failed to persist definition: {str(e)}",
                operation="save",
                table=WorkflowDefinitionModel.__tablename__
            )

    @with_retry(_storage_retry)
    def get(self, definition_id: str) -> Optional[WorkflowDefinition]:
        try:
            with session_scope(self._session_factory) as db:
                row = db.get(WorkflowDefinitionModel, definition_id)
                return WorkflowDefinition.model_validate(row.definition) if row else None
        except SQLAlchemyError as e:
            raise StorageError(
                f"Failed to load definition: {str(e)}",
                operation="get",
                table=WorkflowDefinitionModel.__tablename__
            )

    @with_retry(_storage_retry)
    def list_all(self) -> List[WorkflowDefinition]:
        try:
            with session_scope(self._session_factory) as db:
                rows = db.query(WorkflowDefinitionModel).order_by(WorkflowDefinitionModel.position).all()
                return [WorkflowDefinition.model_validate(row.definition) for row in rows]
        except SQLAlchemyError as e:
            raise StorageError(
                f"Failed to list definitions: {str(e)}",
                operation="list",
                table=WorkflowDefinitionModel.__tablename__
            )
