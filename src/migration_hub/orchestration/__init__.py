"""
MigrationHub orchestration package.

Dagster ops, jobs and schedules that invoke the migration orchestrator.
They only wire configuration to the core; no migration logic lives here.
"""
