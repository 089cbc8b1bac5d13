"""Pytest configuration and fixtures."""

import os
import tempfile
import threading
import time
from collections import defaultdict
from datetime import timedelta
from typing import Any, Dict, List

import pytest

from mitigation_engine.config import get_testing_config
from mitigation_engine.core.notifications import Notifier
from mitigation_engine.factory import create_engine_from_config
from mitigation_engine.models.core import (
    Notification,
    OnFailure,
    StepType,
    WorkflowDefinition,
    WorkflowEventType,
    WorkflowStep,
)

WAIT_TIMEOUT = 5.0


class RecordingNotifier(Notifier):
    """Notifier that keeps every notification and can be told to fail."""

    def __init__(self):
        self.sent: List[Notification] = []
        self.fail_for: set = set()
        self._lock = threading.Lock()

    def send(self, notification: Notification) -> None:
        if self.fail_for & set(notification.recipients):
            raise ConnectionError("notification transport unavailable")
        with self._lock:
            self.sent.append(notification)


class ScriptedHandlers:
    """Step handler whose outcome is scripted per step id.

    Each script entry is consumed per invocation: ``"ok"`` returns a result,
    an exception instance is raised, and a callable is called with
    ``(step, context)``. Once a script is exhausted the step succeeds.
    """

    def __init__(self):
        self.scripts: Dict[str, List[Any]] = defaultdict(list)
        self.calls: List[str] = []
        self._lock = threading.Lock()

    def script(self, step_id: str, *outcomes):
        self.scripts[step_id].extend(outcomes)

    def fail(self, step_id: str, times: int = 1, message: str = "handler failure"):
        self.script(step_id, *[RuntimeError(message) for _ in range(times)])

    def __call__(self, step, context):
        with self._lock:
            self.calls.append(step.id)
            outcome = self.scripts[step.id].pop(0) if self.scripts[step.id] else "ok"
        if isinstance(outcome, Exception):
            raise outcome
        if callable(outcome):
            return outcome(step, context)
        return {"step": step.id}

    def register(self, registry, step_types=(StepType.ACTION, StepType.VERIFICATION, StepType.NOTIFICATION)):
        for step_type in step_types:
            registry.register(step_type, self, replace=True)


class EventRecorder:
    """Collects emitted events and lets a test wait for a specific one."""

    def __init__(self, events):
        self.events = []
        self._condition = threading.Condition()
        events.subscribe(self._record)

    def _record(self, event):
        with self._condition:
            self.events.append(event)
            self._condition.notify_all()

    def of_type(self, event_type: WorkflowEventType, **payload):
        with self._condition:
            return [
                e for e in self.events
                if e.event_type == event_type and all(e.payload.get(k) == v for k, v in payload.items())
            ]

    def wait_for(self, event_type: WorkflowEventType, timeout: float = WAIT_TIMEOUT, **payload):
        with self._condition:
            self._condition.wait_for(lambda: self._matches(event_type, payload), timeout)
        matches = self.of_type(event_type, **payload)
        assert matches, f"timed out waiting for {event_type.value} {payload}"
        return matches[0]

    def _matches(self, event_type, payload):
        return any(
            e.event_type == event_type and all(e.payload.get(k) == v for k, v in payload.items())
            for e in self.events
        )


class CallbackRecorder:
    """Completion callback that records what it was called with."""

    def __init__(self):
        self.calls: List[Any] = []
        self._called = threading.Event()

    def __call__(self, value):
        self.calls.append(value)
        self._called.set()

    @property
    def called(self) -> bool:
        return self._called.is_set()

    def wait(self, timeout: float = WAIT_TIMEOUT):
        """Wait for the first call and return its argument."""
        assert self._called.wait(timeout), "timed out waiting for the callback"
        return self.calls[0]


def wait_until(predicate, timeout: float = WAIT_TIMEOUT, interval: float = 0.01) -> bool:
    """Poll ``predicate`` until it holds or the timeout expires."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


def make_step(step_id: str, step_number: int, **kwargs) -> WorkflowStep:
    """Build a step with quiet defaults: an action with no retries that aborts on failure."""
    values = dict(
        id=step_id,
        step_number=step_number,
        name=kwargs.pop("name", step_id.replace("-", " ").title()),
        step_type=StepType.ACTION,
        expected_duration=timedelta(minutes=10),
        on_failure=OnFailure.ABORT,
    )
    values.update(kwargs)
    return WorkflowStep(**values)


def make_definition(steps, **kwargs) -> WorkflowDefinition:
    values = dict(name=kwargs.pop("name", "Test Playbook"), steps=steps)
    values.update(kwargs)
    return WorkflowDefinition(**values)


def linear_steps(count: int, **kwargs) -> List[WorkflowStep]:
    """``count`` chained steps, each depending on the one before."""
    steps = []
    for number in range(1, count + 1):
        dependencies = [f"step-{number - 1}"] if number > 1 else []
        steps.append(make_step(f"step-{number}", number, dependencies=dependencies, **kwargs))
    return steps


@pytest.fixture
def config():
    """Testing configuration with in-memory storage and no backoff."""
    return get_testing_config()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def components(config, notifier):
    """A fully wired engine without the default playbooks."""
    wired = create_engine_from_config(config, notifier=notifier, load_defaults=False, configure_logging=False)
    yield wired
    wired.shutdown(wait=False)


@pytest.fixture
def engine(components):
    return components.execution_engine


@pytest.fixture
def store(components):
    return components.definition_store


@pytest.fixture
def scripted(components):
    handlers = ScriptedHandlers()
    handlers.register(components.handlers)
    return handlers


@pytest.fixture
def recorder(components):
    return EventRecorder(components.events)


@pytest.fixture
def temp_db_url():
    """Create a temporary SQLite database file."""
    db_fd, db_path = tempfile.mkstemp(suffix=".db")
    os.close(db_fd)

    yield f"sqlite:///{db_path}"

    try:
        os.unlink(db_path)
    except OSError:
        pass
