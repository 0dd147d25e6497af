"""
Dagster schedules for migration runs.

The nightly run id is derived from the scheduled date, so a re-triggered
night resumes the same run instead of starting a fresh one.
"""

from typing import Optional

import structlog
from dagster import RunRequest, ScheduleEvaluationContext, schedule

from migration_hub.config.settings import get_settings

from .jobs import migration_run_job

logger = structlog.get_logger(__name__)


@schedule(
    cron_schedule=get_settings().schedule_cron,
    job=migration_run_job,
    execution_timezone="UTC",
)
def migration_nightly_schedule(
    context: ScheduleEvaluationContext,
) -> Optional[RunRequest]:
    """Differential migration of all entities, once per night."""
    settings = get_settings()

    if not settings.schedule_enabled:
        logger.info(
            "migration_nightly_schedule.disabled",
            reason="MH_SCHEDULE_ENABLED=False",
        )
        return None

    scheduled = context.scheduled_execution_time
    run_id = f"nightly-{scheduled:%Y%m%d}" if scheduled else "nightly-manual"

    logger.info(
        "migration_nightly_schedule.triggered",
        scheduled_time=scheduled.isoformat() if scheduled else "unknown",
        run_id=run_id,
    )

    return RunRequest(
        run_key=f"migration_{scheduled.isoformat()}" if scheduled else "migration_manual",
        run_config={
            "ops": {
                "migration_run_op": {
                    "config": {
                        "run_id": run_id,
                        "run_validation": True,
                    }
                }
            }
        },
    )
