"""I/O layer: store connectors, control-table repositories and retry helpers."""
