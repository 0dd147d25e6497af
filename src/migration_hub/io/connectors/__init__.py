"""Connectors for the legacy (source) and normalized (target) stores."""

from migration_hub.io.connectors.source_reader import SourceReader, SqlSourceReader
from migration_hub.io.connectors.target_store import TargetStore

__all__ = ["SourceReader", "SqlSourceReader", "TargetStore"]
