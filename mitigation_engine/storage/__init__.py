"""Database models and storage layer."""

from .database import Base, create_database_engine, create_session_factory, session_scope, create_tables, drop_tables
from .models import WorkflowDefinitionModel, WorkflowExecutionModel
from .repositories import (
    ExecutionRepository,
    DefinitionRepository,
    InMemoryExecutionRepository,
    InMemoryDefinitionRepository,
    SqlExecutionRepository,
    SqlDefinitionRepository,
)

__all__ = [
    "Base",
    "create_database_engine",
    "create_session_factory",
    "session_scope",
    "create_tables",
    "drop_tables",
    "WorkflowDefinitionModel",
    "WorkflowExecutionModel",
    "ExecutionRepository",
    "DefinitionRepository",
    "InMemoryExecutionRepository",
    "InMemoryDefinitionRepository",
    "SqlExecutionRepository",
    "SqlDefinitionRepository",
]
