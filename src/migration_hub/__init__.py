"""
MigrationHub - legacy to normalized schema migration engine.

Migrates interdependent relational entities in dependency order, safely
re-runnable, differential between runs, with conflict resolution and
post-run validation.
"""

__version__ = "0.1.0"
