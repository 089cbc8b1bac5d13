"""Trigger matcher: scores active definitions against incoming risk signals."""

import numbers
from typing import Any, Dict, List, Mapping, Optional, Sequence

from pydantic import BaseModel, Field

from ..models.core import ConditionOperator, TriggerCondition, WorkflowDefinition
from .definition_store import DefinitionStore
from .exceptions import DefinitionNotFoundError, NoMatchingDefinitionError
from .logging import get_logger

logger = get_logger(__name__)

MANUAL_TRIGGER_REASON = "Manual trigger"

# Semantic condition fields mapped to the signal names risk sources publish
FIELD_ALIASES: Dict[str, Sequence[str]] = {
    "risk_score": ("risk_score", "composite_risk"),
    "delay_detected": ("delay_detected", "is_delayed"),
    "system_failure": ("system_failure", "settlement_failed"),
}

_MISSING = object()


class MatchResult(BaseModel):
    """Outcome of matching signals to a definition."""
    definition: WorkflowDefinition
    score: float
    trigger_reason: str
    satisfied_conditions: List[TriggerCondition] = Field(default_factory=list)
    explicit: bool = False


def extract_field(signals: Mapping[str, Any], field: str) -> Any:
    """Read a condition field from the signals, honouring semantic aliases."""
    for name in FIELD_ALIASES.get(field, (field,)):
        if name in signals:
            return signals[name]
    return _MISSING


def _is_number(value: Any) -> bool:
    return isinstance(value, numbers.Real) and not isinstance(value, bool)


def evaluate_operator(operator: ConditionOperator, value: Any, threshold: Any) -> bool:
    """Evaluate one comparison. Incomparable values are unsatisfied, never an error."""
    if operator == ConditionOperator.EXISTS:
        return value is not _MISSING and value is not None
    if value is _MISSING:
        return False

    if operator in (ConditionOperator.GREATER_THAN, ConditionOperator.LESS_THAN):
        if not (_is_number(value) and _is_number(threshold)):
            return False
        if operator == ConditionOperator.GREATER_THAN:
            return value > threshold
        return value < threshold

    if operator == ConditionOperator.EQUALS:
        if isinstance(value, bool) or isinstance(threshold, bool):
            return isinstance(value, bool) and isinstance(threshold, bool) and value == threshold
        return value == threshold

    if operator == ConditionOperator.CONTAINS:
        if isinstance(value, str):
            return isinstance(threshold, str) and threshold in value
        if isinstance(value, (list, tuple, set, frozenset)):
            try:
                return threshold in value
            except TypeError:
                # Unhashable threshold tested against a set
                return False
        return False

    return False


class TriggerMatcher:
    """Selects the best-matching active definition for a set of signals."""

    def __init__(self, definition_store: DefinitionStore, match_threshold: float = 0.5):
        self.definition_store = definition_store
        self.match_threshold = match_threshold

    def evaluate_condition(self, condition: TriggerCondition, signals: Mapping[str, Any]) -> bool:
        return evaluate_operator(condition.operator, extract_field(signals, condition.field), condition.threshold)

    def score(self, definition: WorkflowDefinition, signals: Mapping[str, Any]) -> float:
        """Weighted fraction of satisfied trigger conditions, in [0, 1]."""
        numerator = 0.0
        denominator = 0.0
        for condition in definition.trigger_conditions:
            denominator += condition.weight
            if self.evaluate_condition(condition, signals):
                numerator += condition.weight
        if denominator == 0:
            return 0.0
        return numerator / denominator

    def satisfied_conditions(self, definition: WorkflowDefinition,
                             signals: Mapping[str, Any]) -> List[TriggerCondition]:
        return [c for c in definition.trigger_conditions if self.evaluate_condition(c, signals)]

    def build_trigger_reason(self, definition: WorkflowDefinition, signals: Mapping[str, Any]) -> str:
        descriptions = [
            c.description or f"{c.field} {c.operator.value} {c.threshold}"
            for c in self.satisfied_conditions(definition, signals)
        ]
        return "; ".join(descriptions) if descriptions else MANUAL_TRIGGER_REASON

    def match(self, signals: Mapping[str, Any], definition_id: Optional[str] = None,
              instruction_id: Optional[str] = None) -> MatchResult:
        """
        Select a definition for the signals.

        Args:
            signals: Flat mapping of signal names to values
            definition_id: Explicit definition; bypasses scoring
            instruction_id: Used only for error context

        Returns:
            MatchResult: The selected definition with its score and reason

        Raises:
            DefinitionNotFoundError: If the explicit definition is absent or inactive
            NoMatchingDefinitionError: If no definition scores above the threshold
        """
        if definition_id is not None:
            definition = self.definition_store.get(definition_id)
            if definition is None or not definition.is_active:
                raise DefinitionNotFoundError(
                    f"Workflow definition '{definition_id}' not found or inactive",
                    definition_id=definition_id
                )
            return MatchResult(
                definition=definition,
                score=self.score(definition, signals),
                trigger_reason=self.build_trigger_reason(definition, signals),
                satisfied_conditions=self.satisfied_conditions(definition, signals),
                explicit=True
            )

        best: Optional[WorkflowDefinition] = None
        best_score = 0.0
        for definition in self.definition_store.list_active():
            score = self.score(definition, signals)
            logger.debug(f"Definition '{definition.name}' scored {score:.3f}")
            # Strictly greater keeps the first-registered definition on ties
            if score > self.match_threshold and (best is None or score > best_score):
                best = definition
                best_score = score

        if best is None:
            raise NoMatchingDefinitionError(instruction_id=instruction_id)

        logger.info(f"Matched definition '{best.name}' with score {best_score:.3f}")
        return MatchResult(
            definition=best,
            score=best_score,
            trigger_reason=self.build_trigger_reason(best, signals),
            satisfied_conditions=self.satisfied_conditions(best, signals)
        )
