"""Post-run validation framework."""

from migration_hub.domain.validation.framework import ValidationFramework
from migration_hub.domain.validation.sampling import compare_frames, wilson_upper_bound
from migration_hub.domain.validation.schemas import build_format_schema

__all__ = [
    "ValidationFramework",
    "build_format_schema",
    "compare_frames",
    "wilson_upper_bound",
]
