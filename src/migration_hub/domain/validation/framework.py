"""
Post-run validation.

Four independent checks per entity, each reported as its own
ValidationResult. A check that cannot be evaluated becomes a failed result
carrying the error; it never aborts the remaining checks or the run.

- count parity: source rows vs mapped rows, within a tolerance
- referential integrity: non-null reference columns must point at an
  existing row of the referenced target table
- formats: pandera regex/dtype checks over target columns
- statistical sample: seeded random sample compared field by field between
  the transformed source row and the target row
"""

from typing import Callable, Dict, Iterable, List, Optional, Sequence

import pandas as pd

from migration_hub.domain.errors import ValidationFailure, classify_error
from migration_hub.domain.models import EntityDefinition, RunOptions
from migration_hub.domain.results import CheckType, ValidationResult
from migration_hub.domain.validation.sampling import compare_frames, wilson_upper_bound
from migration_hub.domain.validation.schemas import build_format_schema, collect_format_failures
from migration_hub.utils.logging import get_logger

logger = get_logger(__name__)


class ValidationFramework:
    """
    Runs validation checks against the source, target and mapping stores.

    Args:
        source: SourceReader for the legacy store
        target_store: TargetStore for the normalized store
        mappings: MappingRepository
        options: RunOptions carrying tolerances, limits and sampling knobs
    """

    def __init__(self, source, target_store, mappings, options: Optional[RunOptions] = None):
        self.source = source
        self.target_store = target_store
        self.mappings = mappings
        self.options = options or RunOptions()

    def check_count_parity(self, entity: EntityDefinition) -> ValidationResult:
        source_count = self.source.count(entity)
        mapped_count = self.mappings.count(entity.name)
        tolerance = (
            entity.count_tolerance
            if entity.count_tolerance is not None
            else self.options.count_parity_tolerance
        )
        gap = abs(source_count - mapped_count)
        gap_ratio = gap / source_count if source_count else (1.0 if mapped_count else 0.0)
        return ValidationResult(
            entity=entity.name,
            check_type=CheckType.COUNT_PARITY,
            expected=source_count,
            actual=mapped_count,
            passed=gap_ratio <= tolerance,
            severity="error" if entity.critical else "warning",
            detail={"gap": gap, "gap_ratio": gap_ratio, "tolerance": tolerance},
        )

    def check_referential_integrity(
        self, entity: EntityDefinition, definitions: Sequence[EntityDefinition]
    ) -> List[ValidationResult]:
        by_name = {d.name: d for d in definitions}
        results: List[ValidationResult] = []
        for ref in entity.references:
            referenced = by_name.get(ref.entity)
            if referenced is None:
                continue
            total, sample = self.target_store.find_orphans(
                entity, ref, referenced, self.options.referential_sample_limit
            )
            results.append(
                ValidationResult(
                    entity=entity.name,
                    check_type=CheckType.REFERENTIAL_INTEGRITY,
                    expected=0,
                    actual=total,
                    passed=total == 0,
                    offending_keys=sample,
                    detail={
                        "field": ref.output_field,
                        "references": referenced.target_table,
                        "sample_truncated": total > len(sample),
                    },
                )
            )
        return results

    def check_formats(self, entity: EntityDefinition) -> Optional[ValidationResult]:
        schema = build_format_schema(entity)
        if schema is None:
            return None

        limit = self.options.referential_sample_limit
        columns = [rule.field for rule in entity.format_checks]
        failure_count = 0
        examples: List[dict] = []
        offending: List[int] = []
        rows_checked = 0
        for chunk in self.target_store.read_columns(entity, columns):
            rows_checked += len(chunk)
            failures = collect_format_failures(schema, chunk, entity.target_legacy_field)
            failure_count += len(failures)
            for failure in failures:
                if len(examples) < limit:
                    examples.append(failure)
                legacy_id = failure["legacy_id"]
                if legacy_id is not None and len(offending) < limit and legacy_id not in offending:
                    offending.append(legacy_id)

        return ValidationResult(
            entity=entity.name,
            check_type=CheckType.FORMAT,
            expected=0,
            actual=failure_count,
            passed=failure_count == 0,
            offending_keys=sorted(offending),
            detail={"fields": columns, "rows_checked": rows_checked, "failures": examples},
        )

    def check_sample(self, entity: EntityDefinition) -> ValidationResult:
        options = self.options
        sample_ids = self.mappings.sample_ids(entity.name, options.sample_size, options.sample_seed)
        population = self.mappings.count(entity.name)

        expected_rows: Dict[int, dict] = {}
        transform_errors = 0
        for row in self.source.fetch_by_ids(entity, sample_ids):
            legacy_id = int(row[entity.id_field])
            try:
                expected_rows[legacy_id] = entity.apply_transform(row)
            except Exception as e:
                transform_errors += 1
                logger.warning(
                    "validation.sample.transform_failed",
                    entity=entity.name,
                    legacy_id=legacy_id,
                    error=str(e),
                )

        produced = {key for values in expected_rows.values() for key in values}
        fields = list(entity.compare_fields or []) or sorted(produced)
        unknown = sorted(set(fields) - produced) if expected_rows else []
        if unknown:
            raise ValidationFailure(
                f"compare_fields {unknown} are not produced by the {entity.name} transform",
                entity=entity.name,
            )

        expected = pd.DataFrame.from_dict(expected_rows, orient="index", dtype=object)
        target_rows = self.target_store.fetch_by_legacy_ids(entity, expected_rows.keys())
        actual = pd.DataFrame.from_dict(target_rows, orient="index", dtype=object)
        mismatched, per_field = compare_frames(expected, actual, fields)

        # Rows missing from the source now (deleted upstream) count as mismatches
        vanished = sorted(set(sample_ids) - set(expected_rows))
        mismatched = sorted(set(mismatched) | set(vanished))
        mismatch_count = len(mismatched) + transform_errors
        size = len(sample_ids)
        rate = mismatch_count / size if size else 0.0
        upper = wilson_upper_bound(mismatch_count, size, options.sample_confidence) if size else 0.0

        return ValidationResult(
            entity=entity.name,
            check_type=CheckType.SAMPLE_STATISTICAL,
            expected=options.sample_max_mismatch_rate,
            actual=rate,
            passed=rate <= options.sample_max_mismatch_rate,
            offending_keys=mismatched[: options.referential_sample_limit],
            detail={
                "sample_size": size,
                "population": population,
                "mismatches": mismatch_count,
                "mismatched_fields": per_field,
                "confidence": options.sample_confidence,
                "mismatch_rate_upper_bound": upper,
                "seed": options.sample_seed,
            },
        )

    def _isolated(
        self,
        entity: EntityDefinition,
        check_type: CheckType,
        check: Callable[[], Iterable[Optional[ValidationResult]]],
    ) -> List[ValidationResult]:
        try:
            return [r for r in check() if r is not None]
        except Exception as e:
            logger.error(
                "validation.check.errored",
                entity=entity.name,
                check_type=check_type.value,
                error=str(e),
                kind=classify_error(e).value,
            )
            return [
                ValidationResult(
                    entity=entity.name,
                    check_type=check_type,
                    expected=None,
                    actual=None,
                    passed=False,
                    detail={"error": str(e), "kind": classify_error(e).value},
                )
            ]

    def validate(
        self,
        definitions: Sequence[EntityDefinition],
        entities: Optional[Iterable[str]] = None,
    ) -> List[ValidationResult]:
        """Run every applicable check for the chosen entities (default: all)."""
        chosen = set(entities) if entities is not None else None
        results: List[ValidationResult] = []
        for entity in definitions:
            if chosen is not None and entity.name not in chosen:
                continue
            results.extend(
                self._isolated(entity, CheckType.COUNT_PARITY, lambda e=entity: [self.check_count_parity(e)])
            )
            results.extend(
                self._isolated(
                    entity,
                    CheckType.REFERENTIAL_INTEGRITY,
                    lambda e=entity: self.check_referential_integrity(e, definitions),
                )
            )
            results.extend(
                self._isolated(entity, CheckType.FORMAT, lambda e=entity: [self.check_formats(e)])
            )
            results.extend(
                self._isolated(
                    entity, CheckType.SAMPLE_STATISTICAL, lambda e=entity: [self.check_sample(e)]
                )
            )

        failed = [r for r in results if not r.passed]
        logger.info(
            "validation.completed",
            checks=len(results),
            failed=len(failed),
            errors=sum(1 for r in failed if r.severity == "error"),
        )
        return results
