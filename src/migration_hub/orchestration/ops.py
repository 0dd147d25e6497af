"""
Dagster ops for migration runs.

The op loads entity definitions, builds the orchestrator from settings and
maps the run's exit signal onto the op result: ``fatal`` raises
``dagster.Failure``; ``success`` and ``partial_success`` return the summary.
"""

from typing import Any, Dict, List, Optional

import structlog
from dagster import Config, Failure, MetadataValue, OpExecutionContext, op
from pydantic import Field

from migration_hub.config.entity_loader import load_entity_definitions
from migration_hub.config.settings import get_settings
from migration_hub.domain.orchestrator import MigrationOrchestrator
from migration_hub.domain.results import EntityStatus, ExitSignal, RunSummary

logger = structlog.get_logger(__name__)


class MigrationRunOpConfig(Config):
    """Configuration for migration_run_op."""

    run_id: Optional[str] = Field(
        default=None,
        description="Run identity; reuse an earlier id to resume that run",
    )
    entities: Optional[List[str]] = Field(
        default=None, description="Optional subset of entity names to migrate"
    )
    dry_run: Optional[bool] = Field(
        default=None,
        description="Report the delta only; None falls back to MH_DRY_RUN",
    )
    run_validation: bool = Field(
        default=True, description="Run post-migration validation checks"
    )
    entities_config: Optional[str] = Field(
        default=None,
        description="Entity definition YAML; None falls back to MH_ENTITIES_CONFIG",
    )


def summarize_for_output(summary: RunSummary) -> Dict[str, Any]:
    """Compact, JSON-safe view of a run summary for op output."""
    return {
        "run_id": summary.run_id,
        "status": summary.status.value,
        "exit_signal": summary.exit_signal.value,
        "dry_run": summary.dry_run,
        "levels": summary.levels,
        "completed": summary.entities_with_status(EntityStatus.COMPLETED),
        "failed": summary.entities_with_status(EntityStatus.FAILED),
        "skipped": summary.entities_with_status(EntityStatus.SKIPPED),
        "reasons": {
            name: outcome.reason
            for name, outcome in summary.entities.items()
            if outcome.reason
        },
        "totals": summary.totals,
        "error": summary.error,
    }


@op
def migration_run_op(context: OpExecutionContext, config: MigrationRunOpConfig) -> dict:
    """
    Run (or resume) a migration.

    Returns:
        Compact run summary dictionary

    Raises:
        Failure: The run ended with the fatal exit signal
    """
    settings = get_settings()
    definitions = load_entity_definitions(config.entities_config or settings.entities_config)

    overrides: Dict[str, Any] = {}
    if config.dry_run is not None:
        overrides["dry_run"] = config.dry_run

    logger.info(
        "migration_run_op.start",
        run_id=config.run_id,
        entities=config.entities,
        dry_run=config.dry_run,
        entity_count=len(definitions),
    )
    orchestrator = MigrationOrchestrator.from_settings(definitions, settings, **overrides)
    summary = orchestrator.run(
        run_id=config.run_id,
        entities=config.entities,
        validate=config.run_validation,
    )
    result = summarize_for_output(summary)

    context.log.info(
        f"Migration run {summary.run_id} finished: {summary.status.value} "
        f"({summary.exit_signal.value})"
    )
    if summary.exit_signal == ExitSignal.FATAL:
        raise Failure(
            description=f"Migration run {summary.run_id} failed: {summary.error}",
            metadata={
                "run_id": summary.run_id,
                "error": MetadataValue.text(summary.error or ""),
            },
        )

    return result
