"""Migration core: planning, delta analysis, batch execution, checkpoints,
conflict resolution, validation and orchestration."""
