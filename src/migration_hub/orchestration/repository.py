"""
Dagster Definitions for MigrationHub.

Exposes a single ``defs`` object for ``dagster dev`` discovery.
"""

from dagster import Definitions

from .jobs import migration_run_job
from .schedules import migration_nightly_schedule

defs = Definitions(
    jobs=[migration_run_job],
    schedules=[migration_nightly_schedule],
)
