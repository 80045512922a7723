"""Core generation logic: provider adapters and the orchestrator."""
