"""
Data models for migration configuration.

Entity definitions are static, immutable descriptors loaded once per run.
RunOptions is the per-run view of the tuning knobs in Settings.
"""

from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from migration_hub.config.settings import Settings

TransformFn = Callable[[Mapping[str, Any]], Dict[str, Any]]


class VolumeClass(str, Enum):
    SMALL = "small"
    MEDIUM = "medium"
    LARGE = "large"
    MASSIVE = "massive"


class ConflictStrategy(str, Enum):
    SOURCE_WINS = "source_wins"
    TARGET_WINS = "target_wins"
    MANUAL = "manual"


class ForeignReference(BaseModel):
    """
    A foreign-key-shaped source field carrying another entity's legacy id.

    The executor swaps the legacy id for the referenced entity's new id
    (looked up in the mapping store) and writes it to ``target_field``.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    field: str = Field(..., description="Source column holding the legacy id")
    entity: str = Field(..., description="Referenced entity name")
    target_field: Optional[str] = Field(
        default=None, description="Target column for the new id (defaults to field)"
    )
    required: bool = Field(
        default=True,
        description="Unresolved required references skip the row; optional ones become NULL",
    )
    label: Optional[str] = Field(
        default=None, description="Name used in skip reasons (defaults to field sans _id)"
    )

    @field_validator("field", "entity")
    @classmethod
    def validate_names(cls, v: str) -> str:
        if not isinstance(v, str) or not v.strip():
            raise ValueError("Reference field and entity must be non-empty strings")
        return v.strip()

    @property
    def output_field(self) -> str:
        return self.target_field or self.field

    @property
    def display_label(self) -> str:
        if self.label:
            return self.label
        return self.field[:-3] if self.field.endswith("_id") else self.field


class FormatCheck(BaseModel):
    """Regex and/or dtype check on one target column."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    field: str
    pattern: Optional[str] = None
    dtype: Optional[str] = None
    nullable: bool = True
    description: Optional[str] = None

    @model_validator(mode="after")
    def validate_has_rule(self) -> "FormatCheck":
        if self.pattern is None and self.dtype is None:
            raise ValueError(f"Format check on '{self.field}' needs a pattern or dtype")
        return self


class EntityDefinition(BaseModel):
    """
    Static descriptor of one migrated entity.

    The idempotency key is ``id_field`` in the source and
    ``target_legacy_field`` in the target; the target row's primary key
    (``target_key``) receives the deterministic new identifier.
    """

    model_config = ConfigDict(extra="forbid", frozen=True, arbitrary_types_allowed=True)

    name: str
    source_table: str
    target_table: str
    depends_on: List[str] = Field(default_factory=list)
    transform: Optional[TransformFn] = None
    volume_class: VolumeClass = VolumeClass.MEDIUM
    id_field: str = "id"
    target_key: str = "id"
    target_legacy_field: str = "legacy_id"
    references: List[ForeignReference] = Field(default_factory=list)
    critical: bool = False
    count_tolerance: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    format_checks: List[FormatCheck] = Field(default_factory=list)
    compare_fields: Optional[List[str]] = None
    source_filter: Optional[str] = None
    description: Optional[str] = None

    @field_validator("name", "source_table", "target_table")
    @classmethod
    def validate_identifiers(cls, v: str) -> str:
        if not isinstance(v, str) or not v.strip():
            raise ValueError("Entity name, source table and target table must be non-empty")
        return v.strip()

    @model_validator(mode="after")
    def validate_references(self) -> "EntityDefinition":
        if self.name in self.depends_on:
            raise ValueError(f"Entity '{self.name}' cannot depend on itself")
        for ref in self.references:
            if ref.entity != self.name and ref.entity not in self.depends_on:
                raise ValueError(
                    f"Entity '{self.name}' references '{ref.entity}' via '{ref.field}' "
                    f"but does not declare it in depends_on"
                )
        return self

    def apply_transform(self, row: Mapping[str, Any]) -> Dict[str, Any]:
        """
        Run the external transform, or copy every non-key, non-reference field.

        The result never carries the legacy id or reference fields; the
        executor owns those columns.
        """
        if self.transform is not None:
            return dict(self.transform(row))
        reference_fields = {ref.field for ref in self.references}
        return {
            key: value
            for key, value in row.items()
            if key != self.id_field and key not in reference_fields
        }


class RunOptions(BaseModel):
    """Per-run configuration derived from Settings."""

    model_config = ConfigDict(frozen=True)

    batch_sizes: Dict[VolumeClass, int] = Field(
        default_factory=lambda: {
            VolumeClass.SMALL: 10000,
            VolumeClass.MEDIUM: 1000,
            VolumeClass.LARGE: 2000,
            VolumeClass.MASSIVE: 5000,
        }
    )
    max_workers: int = Field(default=4, ge=1)
    conflict_strategy: ConflictStrategy = ConflictStrategy.SOURCE_WINS
    conflict_strategy_overrides: Dict[str, ConflictStrategy] = Field(default_factory=dict)
    retry_max_attempts: int = Field(default=3, ge=1)
    retry_backoff_ms: int = Field(default=500, ge=0)
    massive_threshold: int = 100_000
    dry_run: bool = False
    count_parity_tolerance: float = 0.0
    referential_sample_limit: int = 50
    sample_size: int = 500
    sample_confidence: float = 0.95
    sample_max_mismatch_rate: float = 0.0
    sample_seed: int = 1337

    def batch_size_for(self, entity: EntityDefinition) -> int:
        return self.batch_sizes[entity.volume_class]

    @classmethod
    def from_settings(cls, settings: Settings, **overrides: Any) -> "RunOptions":
        values: Dict[str, Any] = {
            "batch_sizes": {vc: settings.batch_size_for(vc.value) for vc in VolumeClass},
            "max_workers": settings.max_workers,
            "conflict_strategy": ConflictStrategy(settings.conflict_strategy),
            "conflict_strategy_overrides": {
                name: ConflictStrategy(value)
                for name, value in settings.conflict_strategy_overrides.items()
            },
            "retry_max_attempts": settings.retry_max_attempts,
            "retry_backoff_ms": settings.retry_backoff_ms,
            "massive_threshold": settings.massive_threshold,
            "dry_run": settings.dry_run,
            "count_parity_tolerance": settings.count_parity_tolerance,
            "referential_sample_limit": settings.referential_sample_limit,
            "sample_size": settings.sample_size,
            "sample_confidence": settings.sample_confidence,
            "sample_max_mismatch_rate": settings.sample_max_mismatch_rate,
            "sample_seed": settings.sample_seed,
        }
        values.update(overrides)
        return cls(**values)
