"""Tests for workflow definition validation and storage."""

from datetime import timedelta

import pytest
from pydantic import ValidationError

from mitigation_engine.core.definition_store import DefinitionStore
from mitigation_engine.core.exceptions import DefinitionNotFoundError, DefinitionValidationError
from mitigation_engine.models.core import OnSuccess, StepType, WorkflowStep

from conftest import linear_steps, make_definition, make_step


@pytest.fixture
def definition_store():
    return DefinitionStore()


class TestDefinitionStore:
    """Test cases for DefinitionStore."""

    def test_create_and_get(self, definition_store):
        definition = definition_store.create(make_definition(linear_steps(3), name="Playbook"))

        assert definition_store.get(definition.id) == definition
        assert definition_store.get("missing") is None
        assert [d.id for d in definition_store.list()] == [definition.id]
        assert definition.step_count == 3

    def test_steps_are_ordered_by_step_number(self):
        definition = make_definition([make_step("late", 20), make_step("early", 10)])

        assert [s.id for s in definition.steps] == ["early", "late"]
        assert definition.step_at(1).id == "early"
        assert definition.step_at(3) is None
        assert definition.position_of("late") == 2

    def test_duplicate_definition_id_rejected(self, definition_store):
        definition = definition_store.create(make_definition(linear_steps(1)))

        with pytest.raises(DefinitionValidationError):
            definition_store.create(make_definition(linear_steps(2), id=definition.id))

    def test_unknown_dependency_rejected(self, definition_store):
        with pytest.raises(DefinitionValidationError) as exc_info:
            definition_store.create(make_definition([make_step("step-1", 1, dependencies=["ghost"])]))

        assert "non-existent step 'ghost'" in exc_info.value.message
        assert definition_store.list() == []

    def test_dependency_cycle_rejected(self, definition_store):
        definition = make_definition([
            make_step("a", 1, dependencies=["b"]),
            make_step("b", 2, dependencies=["a"]),
        ])

        result = definition_store.validate(definition)

        assert not result.is_valid
        assert "Step dependencies contain a cycle" in result.errors

    def test_duplicate_step_ids_and_numbers_rejected(self, definition_store):
        result = definition_store.validate(make_definition([make_step("a", 1), make_step("a", 1)]))

        assert "Duplicate step ids: a" in result.errors
        assert "Duplicate step numbers: 1" in result.errors

    def test_backward_skip_rejected(self, definition_store):
        definition = make_definition([
            make_step("a", 1),
            make_step("b", 2, on_success=OnSuccess.SKIP_TO, skip_to="a"),
        ])

        result = definition_store.validate(definition)

        assert not result.is_valid
        assert any("skips backwards" in error for error in result.errors)

    def test_later_dependency_is_a_warning(self, definition_store):
        definition = make_definition([
            make_step("a", 1, dependencies=["b"]),
            make_step("b", 2),
        ])

        result = definition_store.validate(definition)

        assert result.is_valid
        assert result.warnings == ["Step 'a' depends on later step 'b'"]

    def test_replace_keeps_registration_order(self, definition_store):
        first = definition_store.create(make_definition(linear_steps(1), name="First"))
        second = definition_store.create(make_definition(linear_steps(1), name="Second"))

        replaced = definition_store.replace(make_definition(linear_steps(2), id=first.id, name="First v2"))

        assert [d.name for d in definition_store.list()] == ["First v2", "Second"]
        assert replaced.step_count == 2
        assert replaced.updated_at >= first.updated_at
        assert definition_store.get(second.id) == second

    def test_replace_unknown_definition(self, definition_store):
        with pytest.raises(DefinitionNotFoundError):
            definition_store.replace(make_definition(linear_steps(1), id="missing"))

    def test_deactivate(self, definition_store):
        definition = definition_store.create(make_definition(linear_steps(1)))

        inactive = definition_store.deactivate(definition.id)

        assert not inactive.is_active
        assert definition_store.list_active() == []
        assert len(definition_store.list()) == 1
        with pytest.raises(DefinitionNotFoundError):
            definition_store.deactivate("missing")

    def test_definitions_are_immutable(self, definition_store):
        definition = definition_store.create(make_definition(linear_steps(1)))

        with pytest.raises(ValidationError):
            definition.name = "Changed"


class TestStepValidation:
    """Test cases for WorkflowStep field validation."""

    def test_skip_to_requires_target(self):
        with pytest.raises(ValidationError):
            make_step("a", 1, on_success=OnSuccess.SKIP_TO)

    def test_negative_retries_rejected(self):
        with pytest.raises(ValidationError):
            make_step("a", 1, max_retries=-1)

    def test_expected_duration_must_be_positive(self):
        with pytest.raises(ValidationError):
            make_step("a", 1, expected_duration=timedelta(0))

    def test_defaults(self):
        step = WorkflowStep(id="a", step_number=1, name="A", step_type=StepType.NOTIFICATION)

        assert step.is_required
        assert not step.is_bypassable
        assert step.max_retries == 0
        assert step.on_success == OnSuccess.CONTINUE
