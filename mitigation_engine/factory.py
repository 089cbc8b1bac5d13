"""Factory wiring every engine component from an AppConfig."""

from datetime import timedelta
from typing import Optional

from sqlalchemy import Engine

from .config import AppConfig, get_config
from .core.deadline_monitor import DeadlineMonitor
from .core.definition_store import DefinitionStore
from .core.error_recovery import CircuitBreaker
from .core.escalation import EscalationCoordinator, EscalationRuleRegistry
from .core.events import EventDispatcher
from .core.execution_engine import ExecutionEngine
from .core.logging import setup_logging, get_logger
from .core.notifications import GuardedNotifier, LoggingNotifier, Notifier, RecipientDirectory
from .core.responses import ResponseBroker
from .core.step_handlers import (
    ActionExecutor,
    DefaultStepHandlers,
    DocumentationWriter,
    MitigationActionCatalog,
    StepHandlerRegistry,
    Verifier,
)
from .defaults import install_defaults
from .storage.database import create_database_engine, create_session_factory, create_tables
from .storage.repositories import (
    InMemoryDefinitionRepository,
    InMemoryExecutionRepository,
    SqlDefinitionRepository,
    SqlExecutionRepository,
)

logger = get_logger(__name__)


class MitigationEngine:
    """Container for the wired components of one engine instance."""

    def __init__(self):
        self.config: Optional[AppConfig] = None
        self.database_engine: Optional[Engine] = None
        self.definition_store: Optional[DefinitionStore] = None
        self.events: Optional[EventDispatcher] = None
        self.responses: Optional[ResponseBroker] = None
        self.directory: Optional[RecipientDirectory] = None
        self.notifier: Optional[GuardedNotifier] = None
        self.actions: Optional[MitigationActionCatalog] = None
        self.handlers: Optional[StepHandlerRegistry] = None
        self.default_handlers: Optional[DefaultStepHandlers] = None
        self.escalation_rules: Optional[EscalationRuleRegistry] = None
        self.coordinator: Optional[EscalationCoordinator] = None
        self.execution_engine: Optional[ExecutionEngine] = None
        self.monitor: Optional[DeadlineMonitor] = None

    def start(self, recover: bool = True):
        """Recover interrupted executions and start the deadline monitor."""
        if recover:
            recovered = self.execution_engine.recover_executions()
            if recovered:
                logger.info(f"Recovered executions awaiting resume: {', '.join(recovered)}")
        self.monitor.start()
        logger.info(f"{self.config.app_name} v{self.config.app_version} started")

    def shutdown(self, wait: bool = True):
        graceful_shutdown(self, wait=wait)

    def __enter__(self) -> "MitigationEngine":
        return self

    def __exit__(self, exc_type, exc, tb):
        self.shutdown()


def initialize_storage(config: AppConfig):
    """Create the repositories: SQL when a database URL is configured, in-memory otherwise."""
    if not config.uses_database:
        logger.info("No database configured; using in-memory repositories")
        return None, InMemoryDefinitionRepository(), InMemoryExecutionRepository()

    try:
        database_engine = create_database_engine(
            config.database_url,
            echo=config.database_echo,
            connect_args=config.get_database_connect_args()
        )
        create_tables(database_engine)
        session_factory = create_session_factory(database_engine)
        logger.info(f"Database tables created ({config.database_type.value})")
        return database_engine, SqlDefinitionRepository(session_factory), SqlExecutionRepository(session_factory)
    except Exception as e:
        logger.error(f"Database initialization failed: {e}")
        raise


def create_engine_from_config(
    config: Optional[AppConfig] = None,
    notifier: Optional[Notifier] = None,
    action_executor: Optional[ActionExecutor] = None,
    verifier: Optional[Verifier] = None,
    documentation_writer: Optional[DocumentationWriter] = None,
    load_defaults: bool = True,
    configure_logging: bool = True
) -> MitigationEngine:
    """
    Build a fully wired engine.

    Args:
        config: Configuration; the global configuration when omitted
        notifier: Notification transport; defaults to a logging-only notifier
        action_executor: Executor for mitigation actions
        verifier: Verifier for verification steps
        documentation_writer: Store for workflow documentation
        load_defaults: Install the default playbooks, actions, rules and roles
        configure_logging: Apply the configured logging setup

    Returns:
        MitigationEngine: The wired components; call ``start()`` to begin monitoring
    """
    if config is None:
        config = get_config()

    if configure_logging:
        setup_logging(
            level=config.log_level.value,
            log_file=config.log_file,
            log_format=config.log_format,
            structured=config.structured_logging,
            max_size=config.log_max_size,
            backup_count=config.log_backup_count
        )
    logger.info(f"Initializing {config.app_name} v{config.app_version}")

    components = MitigationEngine()
    components.config = config

    database_engine, definition_repository, execution_repository = initialize_storage(config)
    components.database_engine = database_engine

    components.definition_store = DefinitionStore(definition_repository)
    components.events = EventDispatcher()
    components.responses = ResponseBroker()
    components.directory = RecipientDirectory()
    components.notifier = GuardedNotifier(
        notifier or LoggingNotifier(),
        CircuitBreaker(
            failure_threshold=config.notifier_failure_threshold,
            recovery_timeout=config.notifier_recovery_seconds,
            name="notifier"
        )
    )
    components.actions = MitigationActionCatalog()
    components.escalation_rules = EscalationRuleRegistry()

    components.handlers = StepHandlerRegistry()
    components.default_handlers = DefaultStepHandlers(
        notifier=components.notifier,
        directory=components.directory,
        responses=components.responses,
        actions=components.actions,
        action_executor=action_executor,
        verifier=verifier,
        documentation_writer=documentation_writer
    )
    components.default_handlers.register_all(components.handlers)

    components.coordinator = EscalationCoordinator(
        rules=components.escalation_rules,
        directory=components.directory,
        notifier=components.notifier,
        responses=components.responses,
        events=components.events,
        match_threshold=config.match_threshold,
        history_size=config.escalation_history_size
    )
    components.execution_engine = ExecutionEngine(
        definition_store=components.definition_store,
        handlers=components.handlers,
        coordinator=components.coordinator,
        responses=components.responses,
        events=components.events,
        repository=execution_repository,
        max_concurrent_executions=config.max_concurrent_executions,
        match_threshold=config.match_threshold,
        retry_backoff_seconds=config.retry_backoff_seconds,
        retry_backoff_max_seconds=config.retry_backoff_max_seconds,
        max_escalation_reruns=config.max_escalation_reruns,
        default_approval_timeout=timedelta(minutes=config.default_approval_timeout_minutes)
    )
    components.monitor = DeadlineMonitor(
        engine=components.execution_engine,
        coordinator=components.coordinator,
        events=components.events,
        interval_seconds=config.monitor_interval_seconds,
        timeout_factor=config.timeout_factor
    )

    if load_defaults:
        install_defaults(
            components.definition_store,
            components.actions,
            components.escalation_rules,
            components.directory
        )

    logger.info("Core components initialized")
    return components


def graceful_shutdown(components: MitigationEngine, wait: bool = True) -> None:
    """Stop the monitor, then the execution engine, then release the database."""
    logger.info(f"Shutting down {components.config.app_name}")

    try:
        components.monitor.stop(wait=wait)
    except Exception as e:
        logger.error(f"Error stopping deadline monitor: {str(e)}")

    try:
        components.execution_engine.shutdown(wait=wait)
        logger.info("Execution engine shutdown completed")
    except Exception as e:
        logger.error(f"Error during execution engine shutdown: {str(e)}")

    if components.database_engine is not None:
        components.database_engine.dispose()
