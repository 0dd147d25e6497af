"""
Conflict resolution.

A conflict is a record that exists on both sides and whose source content
changed since it was last migrated. The resolver is a pure function of the
configured strategy and the candidate: the same inputs always yield the
same decision. The executor applies the decision.

Strategies:
    source_wins  overwrite the target row and store the new content hash
    target_wins  keep the target row, store the new hash so the row stops
                 surfacing as a conflict
    manual       record the conflict for an operator and leave both sides

A manual conflict stays pending until an operator records a decision
(source_wins or target_wins) against it. The next run that sees the
conflict applies that decision instead of the configured strategy.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

from migration_hub.domain.differential import ConflictCandidate
from migration_hub.domain.models import ConflictStrategy, RunOptions
from migration_hub.domain.results import ConflictRecord


class ResolutionAction(str, Enum):
    APPLY_SOURCE = "apply_source"
    REFRESH_HASH = "refresh_hash"
    RECORD_MANUAL = "record_manual"


class ConflictOutcome(str, Enum):
    SOURCE_APPLIED = "source_applied"
    TARGET_KEPT = "target_kept"
    PENDING_MANUAL = "pending_manual"
    FAILED = "failed"


_ACTIONS = {
    ConflictStrategy.SOURCE_WINS: (ResolutionAction.APPLY_SOURCE, ConflictOutcome.SOURCE_APPLIED),
    ConflictStrategy.TARGET_WINS: (ResolutionAction.REFRESH_HASH, ConflictOutcome.TARGET_KEPT),
    ConflictStrategy.MANUAL: (ResolutionAction.RECORD_MANUAL, ConflictOutcome.PENDING_MANUAL),
}


@dataclass(frozen=True)
class Resolution:
    action: ResolutionAction
    record: ConflictRecord


def changed_fields(old_values: Mapping[str, Any], new_values: Mapping[str, Any]) -> List[str]:
    """Sorted field names whose values differ between the two sides."""
    keys = set(old_values) | set(new_values)
    return sorted(k for k in keys if old_values.get(k) != new_values.get(k))


class ConflictResolver:
    """Chooses one strategy per entity for the whole run."""

    def __init__(
        self,
        default_strategy: ConflictStrategy = ConflictStrategy.SOURCE_WINS,
        overrides: Optional[Mapping[str, ConflictStrategy]] = None,
    ):
        self.default_strategy = ConflictStrategy(default_strategy)
        self.overrides: Dict[str, ConflictStrategy] = {
            name: ConflictStrategy(value) for name, value in (overrides or {}).items()
        }

    @classmethod
    def from_options(cls, options: RunOptions) -> "ConflictResolver":
        return cls(options.conflict_strategy, options.conflict_strategy_overrides)

    def strategy_for(self, entity_name: str) -> ConflictStrategy:
        return self.overrides.get(entity_name, self.default_strategy)

    def resolve(
        self,
        entity_name: str,
        candidate: ConflictCandidate,
        old_values: Mapping[str, Any],
        new_values: Mapping[str, Any],
        decision: Optional[str] = None,
    ) -> Resolution:
        strategy = self.strategy_for(entity_name)
        action, outcome = _ACTIONS[ConflictStrategy(decision) if decision else strategy]
        record = ConflictRecord(
            entity_type=entity_name,
            legacy_id=candidate.legacy_id,
            old_values=dict(old_values),
            new_values=dict(new_values),
            strategy=strategy.value,
            outcome=outcome.value,
            changed_fields=changed_fields(old_values, new_values),
            decision=decision,
        )
        return Resolution(action=action, record=record)
