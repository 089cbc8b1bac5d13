"""Workflow definition store: validated, immutable playbooks keyed by id."""

import threading
from typing import Dict, List, Optional

from ..models.core import WorkflowDefinition, ValidationResult, OnSuccess, utcnow
from ..storage.repositories import DefinitionRepository, InMemoryDefinitionRepository
from .exceptions import DefinitionValidationError, DefinitionNotFoundError
from .logging import get_logger

logger = get_logger(__name__)


class DefinitionStore:
    """Manages workflow definitions, validation, and storage."""

    def __init__(self, repository: Optional[DefinitionRepository] = None):
        """Initialize the store, loading any definitions already persisted.

        Args:
            repository: Definition repository written through on every change.
                Defaults to an in-memory repository.
        """
        self._repository = repository or InMemoryDefinitionRepository()
        self._definitions: Dict[str, WorkflowDefinition] = {}
        self._lock = threading.RLock()

        for definition in self._repository.list_all():
            self._definitions[definition.id] = definition
        if self._definitions:
            logger.info(f"Loaded {len(self._definitions)} workflow definitions from storage")

    def create(self, definition: WorkflowDefinition) -> WorkflowDefinition:
        """
        Validate and register a new workflow definition.

        Args:
            definition: The definition to register

        Returns:
            WorkflowDefinition: The registered definition

        Raises:
            DefinitionValidationError: If validation fails or the id is taken
            StorageError: If the write-through fails
        """
        logger.info(f"Creating workflow definition: {definition.name}")
        self._ensure_valid(definition)

        with self._lock:
            if definition.id in self._definitions:
                raise DefinitionValidationError(
                    f"Workflow definition '{definition.id}' already exists",
                    definition_name=definition.name
                )
            self._repository.save(definition)
            self._definitions[definition.id] = definition

        logger.info(f"Successfully created workflow definition '{definition.name}' with ID: {definition.id}")
        return definition

    def replace(self, definition: WorkflowDefinition) -> WorkflowDefinition:
        """
        Replace an existing definition in full, keeping its registration order.

        Executions already running keep the definition they were started with.

        Raises:
            DefinitionNotFoundError: If no definition has this id
            DefinitionValidationError: If validation fails
        """
        self._ensure_valid(definition)

        with self._lock:
            if definition.id not in self._definitions:
                raise DefinitionNotFoundError(
                    f"Workflow definition '{definition.id}' not found",
                    definition_id=definition.id
                )
            replacement = definition.model_copy(update={"updated_at": utcnow()})
            self._repository.save(replacement)
            self._definitions[definition.id] = replacement

        logger.info(f"Replaced workflow definition '{definition.name}' ({definition.id})")
        return replacement

    def deactivate(self, definition_id: str) -> WorkflowDefinition:
        """Replace a definition with an inactive copy."""
        definition = self.get(definition_id)
        if definition is None:
            raise DefinitionNotFoundError(
                f"Workflow definition '{definition_id}' not found",
                definition_id=definition_id
            )
        return self.replace(definition.model_copy(update={"is_active": False}))

    def get(self, definition_id: str) -> Optional[WorkflowDefinition]:
        with self._lock:
            return self._definitions.get(definition_id)

    def list(self) -> List[WorkflowDefinition]:
        """Return every definition in registration order."""
        with self._lock:
            return list(self._definitions.values())

    def list_active(self) -> List[WorkflowDefinition]:
        with self._lock:
            return [d for d in self._definitions.values() if d.is_active]

    def validate(self, definition: WorkflowDefinition) -> ValidationResult:
        """
        Validate a definition's step graph.

        Args:
            definition: The definition to validate

        Returns:
            ValidationResult: Validation result with errors and warnings
        """
        errors: List[str] = []
        warnings: List[str] = []

        try:
            self._validate_unique_steps(definition, errors)
            self._validate_references(definition, errors, warnings)
            self._validate_cycles(definition, errors)
            self._validate_skip_targets(definition, errors)
        except Exception as e:
            errors.append(f"Validation error: {str(e)}")

        return ValidationResult(
            is_valid=len(errors) == 0,
            errors=errors,
            warnings=warnings
        )

    def _ensure_valid(self, definition: WorkflowDefinition):
        validation_result = self.validate(definition)
        if not validation_result.is_valid:
            error_msg = f"Definition validation failed: {'; '.join(validation_result.errors)}"
            logger.error(error_msg)
            raise DefinitionValidationError(
                error_msg,
                validation_errors=validation_result.errors,
                definition_name=definition.name
            )

        if validation_result.warnings:
            logger.warning(f"Definition validation warnings: {'; '.join(validation_result.warnings)}")

    def _validate_unique_steps(self, definition: WorkflowDefinition, errors: List[str]):
        step_ids = [step.id for step in definition.steps]
        duplicates = sorted({step_id for step_id in step_ids if step_ids.count(step_id) > 1})
        if duplicates:
            errors.append(f"Duplicate step ids: {', '.join(duplicates)}")

        numbers = [step.step_number for step in definition.steps]
        duplicate_numbers = sorted({n for n in numbers if numbers.count(n) > 1})
        if duplicate_numbers:
            errors.append(f"Duplicate step numbers: {', '.join(str(n) for n in duplicate_numbers)}")

    def _validate_references(self, definition: WorkflowDefinition, errors: List[str], warnings: List[str]):
        """
        Validate dependency references and update error/warning lists.

        A dependency on a step that runs later is legal but can only be
        satisfied by a bypass, so it is reported as a warning.
        """
        positions = {step.id: index for index, step in enumerate(definition.steps)}

        for index, step in enumerate(definition.steps):
            for dependency in step.dependencies:
                if dependency not in positions:
                    errors.append(
                        f"Step '{step.id}' depends on non-existent step '{dependency}'"
                    )
                elif positions[dependency] > index:
                    warnings.append(
                        f"Step '{step.id}' depends on later step '{dependency}'"
                    )

    def _validate_cycles(self, definition: WorkflowDefinition, errors: List[str]):
        """Check the dependency graph for cycles using DFS."""
        graph = {step.id: list(step.dependencies) for step in definition.steps}

        visited = set()
        rec_stack = set()

        def has_cycle_util(node):
            visited.add(node)
            rec_stack.add(node)

            for neighbor in graph.get(node, []):
                if neighbor not in graph:
                    continue
                if neighbor not in visited:
                    if has_cycle_util(neighbor):
                        return True
                elif neighbor in rec_stack:
                    return True

            rec_stack.remove(node)
            return False

        for step_id in graph:
            if step_id not in visited and has_cycle_util(step_id):
                errors.append("Step dependencies contain a cycle")
                return

    def _validate_skip_targets(self, definition: WorkflowDefinition, errors: List[str]):
        positions = {step.id: index for index, step in enumerate(definition.steps)}

        for index, step in enumerate(definition.steps):
            if step.on_success != OnSuccess.SKIP_TO:
                continue
            target = positions.get(step.skip_to)
            if target is None:
                errors.append(f"Step '{step.id}' skips to non-existent step '{step.skip_to}'")
            elif target <= index:
                errors.append(f"Step '{step.id}' skips backwards to '{step.skip_to}'")
