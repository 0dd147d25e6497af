"""Dagster jobs for migration runs."""

from dagster import job

from .ops import migration_run_op


@job
def migration_run_job():
    """Migrate every configured entity in dependency order."""
    migration_run_op()
