"""
Control tables owned by the migration core.

All four live in the target store next to the migrated data so a mapping row
and the target row it describes can commit in one transaction.
"""

import sqlalchemy as sa
from sqlalchemy.engine import Engine

metadata = sa.MetaData()

mappings_table = sa.Table(
    "migration_mappings",
    metadata,
    sa.Column("entity_type", sa.String(128), primary_key=True),
    sa.Column("legacy_id", sa.BigInteger, primary_key=True, autoincrement=False),
    sa.Column("new_id", sa.String(64), nullable=False),
    sa.Column("content_hash", sa.String(64), nullable=False),
    sa.Column("last_synced_at", sa.DateTime(timezone=True), nullable=False),
)

checkpoints_table = sa.Table(
    "migration_checkpoints",
    metadata,
    sa.Column("run_id", sa.String(128), primary_key=True),
    sa.Column("entity_name", sa.String(128), primary_key=True),
    sa.Column("status", sa.String(32), nullable=False),
    sa.Column("cursor", sa.BigInteger, nullable=True),
    sa.Column("processed", sa.Integer, nullable=False, default=0),
    sa.Column("succeeded", sa.Integer, nullable=False, default=0),
    sa.Column("failed", sa.Integer, nullable=False, default=0),
    sa.Column("skipped", sa.Integer, nullable=False, default=0),
    sa.Column("batches_committed", sa.Integer, nullable=False, default=0),
    sa.Column("error", sa.Text, nullable=True),
    sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
)

runs_table = sa.Table(
    "migration_runs",
    metadata,
    sa.Column("run_id", sa.String(128), primary_key=True),
    sa.Column("status", sa.String(32), nullable=False),
    sa.Column("dry_run", sa.Boolean, nullable=False, default=False),
    sa.Column("levels", sa.JSON, nullable=True),
    sa.Column("summary", sa.JSON, nullable=True),
    sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
    sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
)

conflicts_table = sa.Table(
    "migration_conflicts",
    metadata,
    sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
    sa.Column("run_id", sa.String(128), nullable=True),
    sa.Column("entity_type", sa.String(128), nullable=False),
    sa.Column("legacy_id", sa.BigInteger, nullable=False),
    sa.Column("strategy", sa.String(32), nullable=False),
    sa.Column("outcome", sa.String(32), nullable=False),
    sa.Column("old_values", sa.JSON, nullable=True),
    sa.Column("new_values", sa.JSON, nullable=True),
    sa.Column("decision", sa.String(32), nullable=True),
    sa.Column("resolved", sa.Boolean, nullable=False, default=False),
    sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
    sa.UniqueConstraint("entity_type", "legacy_id", "run_id", name="uq_conflict_run"),
)


def ensure_control_tables(engine: Engine) -> None:
    """Create the control tables if they do not exist yet."""
    metadata.create_all(engine, checkfirst=True)
